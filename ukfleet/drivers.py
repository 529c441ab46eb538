"""Collaborator contracts the engines depend on.

The reconciler and watcher only ever talk to these interfaces; concrete
drivers (see ``docker_ops``) are selected by platform name through a
:class:`PlatformRegistry`.
"""
from __future__ import annotations

from typing import Iterable, Iterator, Protocol

from .errors import AdapterError, ValidationError
from .models import Machine, Network, Package, Project


class EventStream(Protocol):
    """State-change stream for one machine; yields the machine with its new state."""

    def __iter__(self) -> Iterator[Machine]: ...

    def close(self) -> None: ...


class MachineDriver(Protocol):
    def available(self) -> bool: ...

    def list(self) -> list[Machine]: ...

    def get(self, name: str) -> Machine: ...

    def remove(self, name: str) -> None: ...

    def launch(
        self,
        name: str,
        artifact: str,
        platform: str,
        architecture: str,
        networks: list[str],
        detach: bool = True,
    ) -> Machine: ...

    def watch(self, machine: Machine) -> EventStream: ...

    def logs(self, name: str, follow: bool = True) -> Iterable[str]: ...


class NetworkDriver(Protocol):
    def create(self, name: str, driver: str, subnet: str | None) -> Network: ...

    def list(self) -> list[Network]: ...

    def get(self, name: str) -> Network: ...


class PackageManager(Protocol):
    def catalog(
        self,
        name: str,
        platform: str | None = None,
        architecture: str | None = None,
        version: str | None = None,
        remote: bool = False,
    ) -> list[Package]: ...

    def pull(self, ref: str, platform: str, architecture: str) -> Package: ...

    def push(self, package: Package) -> None: ...


class Builder(Protocol):
    def build(self, context: str, platform: str, architecture: str) -> str: ...

    def package(
        self,
        artifact: str,
        name: str,
        fmt: str,
        platform: str,
        architecture: str,
        overwrite: bool = True,
    ) -> Package: ...


class PlatformRegistry:
    """Platform name -> machine driver."""

    def __init__(self, drivers: dict[str, MachineDriver] | None = None) -> None:
        self._drivers: dict[str, MachineDriver] = dict(drivers or {})

    def register(self, name: str, driver: MachineDriver) -> None:
        self._drivers[name] = driver

    def names(self) -> list[str]:
        return list(self._drivers)

    def get(self, name: str) -> MachineDriver:
        try:
            return self._drivers[name]
        except KeyError:
            available = ", ".join(self._drivers) or "none"
            raise ValidationError(f"unsupported platform driver: {name} (available: {available})") from None

    def detect(self) -> tuple[str, MachineDriver]:
        """Return the first driver whose backend is reachable."""
        for name, driver in self._drivers.items():
            if driver.available():
                return name, driver
        raise AdapterError("no platform driver is available on this host")

    def for_project(self, project: Project) -> dict[str, MachineDriver]:
        out: dict[str, MachineDriver] = {}
        for service in project.services:
            plat, _ = service.platform_arch()
            if plat not in out:
                out[plat] = self.get(plat)
        return out
