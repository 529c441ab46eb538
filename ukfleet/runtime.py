from __future__ import annotations

from threading import Lock

from .models import Machine


class WatchRegistry:
    """Machines currently under observation, keyed by machine uid.

    One registry belongs to one watch invocation; all access goes through
    the lock so the control loop and observers can mutate it concurrently.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self._items: dict[str, Machine] = {}

    def add(self, machine: Machine) -> bool:
        """Register ``machine``. Returns False when its uid is already present."""
        with self.lock:
            if machine.uid in self._items:
                return False
            self._items[machine.uid] = machine
            return True

    def update(self, machine: Machine) -> None:
        """Refresh the observed state of a registered machine."""
        with self.lock:
            if machine.uid in self._items:
                self._items[machine.uid] = machine

    def done(self, uid: str) -> None:
        """Remove ``uid``; removing an absent uid is a no-op."""
        with self.lock:
            self._items.pop(uid, None)

    def items(self) -> list[Machine]:
        with self.lock:
            return list(self._items.values())

    def __contains__(self, uid: object) -> bool:
        with self.lock:
            return uid in self._items

    def __len__(self) -> int:
        with self.lock:
            return len(self._items)
