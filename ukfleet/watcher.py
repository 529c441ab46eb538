from __future__ import annotations

import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from queue import Empty, Queue
from threading import Event, Lock, Thread
from typing import Callable, Iterator

from . import db
from .drivers import EventStream, MachineDriver
from .errors import AdapterError, FleetError, StreamEndedOnNonEvent
from .models import Machine
from .runtime import WatchRegistry
from .settings import settings


def _log_state(machine: Machine) -> None:
    db.log_event("INFO", f"{machine.name} : {machine.state}")


def matches(machine: Machine, machine_filter: str) -> bool:
    return not machine_filter or machine_filter in (machine.uid, machine.name)


@dataclass
class _Pass:
    """Bookkeeping shared by the control loop and the observers of one watch call."""

    stop: Event
    registry: WatchRegistry = field(default_factory=WatchRegistry)
    lock: Lock = field(default_factory=Lock)
    unwatchable: set[str] = field(default_factory=set)  # stream could not be opened
    settled: set[str] = field(default_factory=set)  # observer ended on a terminal state


def _pump(stream: EventStream, q: Queue) -> None:
    try:
        for machine in stream:
            q.put(("event", machine))
    except Exception as e:  # forwarded to the observer, which decides how to report it
        q.put(("error", e))
        return
    q.put(("end", None))


class Watcher:
    """Follows the lifecycle of machines until they reach a terminal state."""

    def __init__(
        self,
        driver: MachineDriver,
        on_event: Callable[[Machine], None] | None = None,
        queue_poll_s: float = 0.1,
    ):
        self.driver = driver
        self.on_event = on_event or _log_state
        self.queue_poll_s = queue_poll_s

    def watch(
        self,
        machine_filter: str = "",
        poll_interval: float | None = None,
        quit_together: bool = False,
        stop: Event | None = None,
        registry: WatchRegistry | None = None,
    ) -> None:
        """Block until ``stop`` is set (or, with ``quit_together``, nothing is left to observe).

        A fresh registry is used per call unless one is passed in.
        """
        interval = settings.poll_interval_s if poll_interval is None else max(0.0, float(poll_interval))
        st = _Pass(stop=stop or Event(), registry=registry if registry is not None else WatchRegistry())
        observers: list[Thread] = []

        try:
            while not st.stop.is_set():
                try:
                    machines = self.driver.list()
                except FleetError as e:
                    raise AdapterError(f"could not list machines: {e}") from e

                fresh = self._register(st, machines, machine_filter, quit_together)

                if quit_together and len(st.registry) == 0:
                    st.stop.set()
                    break

                for machine in fresh:
                    t = Thread(target=self._observe, args=(machine, st), name=f"observe-{machine.name}", daemon=True)
                    t.start()
                    observers.append(t)

                st.stop.wait(interval)
        finally:
            # Observers exit once stop is set, whatever ended the loop.
            st.stop.set()
            for t in observers:
                t.join()

    def _register(self, st: _Pass, machines: list[Machine], machine_filter: str, quit_together: bool) -> list[Machine]:
        fresh: list[Machine] = []
        with st.lock:
            for machine in machines:
                if not matches(machine, machine_filter) or machine.uid in st.unwatchable:
                    continue
                if machine.is_terminal:
                    if quit_together or machine.uid in st.settled:
                        continue
                else:
                    st.settled.discard(machine.uid)
                if st.registry.add(machine):
                    fresh.append(machine)
        return fresh

    def _observe(self, machine: Machine, st: _Pass) -> None:
        try:
            stream = self.driver.watch(machine)
        except Exception as e:
            level = "WARN" if isinstance(e, FleetError) else "ERROR"
            db.log_event(level, f"could not listen for status updates: {e}", service_name=machine.name)
            with st.lock:
                st.unwatchable.add(machine.uid)
            st.registry.done(machine.uid)
            return

        q: Queue = Queue()
        Thread(target=_pump, args=(stream, q), name=f"events-{machine.name}", daemon=True).start()
        try:
            while not st.stop.is_set():
                try:
                    kind, payload = q.get(timeout=self.queue_poll_s)
                except Empty:
                    continue

                if kind == "event":
                    self.on_event(payload)
                    st.registry.update(payload)
                    if payload.is_terminal:
                        with st.lock:
                            st.settled.add(machine.uid)
                        return
                elif kind == "error":
                    if isinstance(payload, StreamEndedOnNonEvent):
                        db.log_event("INFO", f"event stream ended: {payload}", service_name=machine.name)
                    else:
                        db.log_event("ERROR", f"event stream failed: {payload}", service_name=machine.name)
                    return
                else:
                    db.log_event("INFO", "event stream closed", service_name=machine.name)
                    return
        finally:
            st.registry.done(machine.uid)
            stream.close()


@contextmanager
def pidfile(path: str | None = None) -> Iterator[bool]:
    """Record this process as the events monitor while the block runs.

    Yields False (and touches nothing) when another monitor already owns the file.
    """
    path = path or settings.events_pidfile
    if os.path.exists(path):
        yield False
        return

    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "w") as f:
        f.write(str(os.getpid()))
        f.flush()
        os.fsync(f.fileno())
    try:
        yield True
    finally:
        try:
            os.remove(path)
        except OSError as e:
            db.log_event("ERROR", f"could not remove pid file: {e}")
