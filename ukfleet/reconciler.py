from __future__ import annotations

from dataclasses import dataclass, field
from queue import Empty, Queue
from threading import Event, Thread
from typing import Callable

from . import db
from .compose import assign_ips, validate_project
from .drivers import MachineDriver, NetworkDriver, PlatformRegistry
from .errors import FleetError
from .models import NETWORK_STATE_UP, STATE_RUNNING, CompositeState, Machine, Network, NetworkSpec, Project, ResourceRef, Service
from .resolver import ArtifactResolver
from .settings import settings


@dataclass
class ReconcileResult:
    launched: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)  # service -> error
    networks_created: list[str] = field(default_factory=list)
    state: CompositeState | None = None

    @property
    def ok(self) -> bool:
        return not self.failed


def order_networks(networks: dict[str, NetworkSpec]) -> list[str]:
    """Networks with an explicit subnet first, then the rest; insertion order otherwise."""
    with_subnet = [k for k, n in networks.items() if n.has_subnet]
    without = [k for k, n in networks.items() if not n.has_subnet]
    return with_subnet + without


def attachments(project: Project, service: Service) -> list[str]:
    """``<network-name>:<ipv4>`` pairs for the launcher."""
    out: list[str] = []
    for key, ip in service.networks.items():
        net = project.networks.get(key)
        out.append(f"{net.name if net else key}:{ip}")
    return out


def _pump_logs(driver: MachineDriver, name: str, q: Queue) -> None:
    try:
        for line in driver.logs(name, follow=True):
            q.put(("line", line))
    except Exception as e:  # forwarded to the tailing task, which reports it
        q.put(("error", e))
        return
    q.put(("end", None))


class Reconciler:
    """Converges a project's networks and machines toward its declaration.

    Safe to run repeatedly: networks that exist and machines that are running
    are left alone.
    """

    def __init__(
        self,
        platforms: PlatformRegistry,
        networks: NetworkDriver,
        resolver: ArtifactResolver,
        follow_logs: bool = True,
        sink: Callable[[str], None] = print,
        prune_stale: bool | None = None,
        queue_poll_s: float = 0.1,
    ):
        self.platforms = platforms
        self.networks = networks
        self.resolver = resolver
        self.follow_logs = follow_logs
        self.sink = sink
        self.prune_stale = settings.prune_stale if prune_stale is None else prune_stale
        self.queue_poll_s = queue_poll_s

    def up(self, project: Project, stop: Event | None = None) -> ReconcileResult:
        stop = stop or Event()
        result = ReconcileResult()

        validate_project(project)
        assign_ips(project)
        drivers = self.platforms.for_project(project)

        live_networks = self.networks.list()
        owned_networks = self._ensure_networks(project, live_networks, result)

        machines: list[Machine] = []
        for driver in drivers.values():
            machines.extend(driver.list())
        owned_machines = self._ensure_services(project, drivers, machines, result)

        result.state = self._persist(project, owned_networks, owned_machines, live_networks, machines, result.removed)

        if self.follow_logs:
            self._follow(project, drivers, stop)

        return result

    def _ensure_networks(self, project: Project, live: list[Network], result: ReconcileResult) -> list[ResourceRef]:
        owned: list[ResourceRef] = []
        existing = {n.name for n in live}
        for key in order_networks(project.networks):
            spec = project.networks[key]
            if spec.name in existing:
                continue

            driver = spec.driver or settings.default_network_driver
            db.log_event("INFO", f"creating network {spec.name}...", project=project.name)
            self.networks.create(spec.name, driver, spec.subnet)
            result.networks_created.append(spec.name)
            existing.add(spec.name)

            try:
                net = self.networks.get(spec.name)
            except FleetError as e:
                db.log_event("WARN", f"could not inspect network {spec.name}: {e}", project=project.name)
                continue
            if net.state == NETWORK_STATE_UP:
                owned.append(net.ref)
        return owned

    def _ensure_services(
        self,
        project: Project,
        drivers: dict[str, MachineDriver],
        machines: list[Machine],
        result: ReconcileResult,
    ) -> list[ResourceRef]:
        owned: list[ResourceRef] = []
        by_name = {m.name: m for m in machines}

        for service in project.services:
            plat, arch = service.platform_arch()
            driver = drivers[plat]

            current = by_name.get(service.name)
            if current is not None and current.state == STATE_RUNNING:
                result.skipped.append(service.name)
                continue

            try:
                if current is not None:
                    # Stale instance; it may live on another platform than the one now declared.
                    stale_driver = drivers.get(current.platform, driver) if current.platform else driver
                    db.log_event("INFO", f"removing stale instance ({current.state})", service_name=service.name, project=project.name)
                    stale_driver.remove(service.name)
                    result.removed.append(service.name)

                artifact = self.resolver.resolve(service)
            except FleetError as e:
                self._fail(result, project, service, f"failed to run service {service.name}: {e}", str(e))
                continue

            db.log_event("INFO", f"running service {service.name}...", service_name=service.name, project=project.name)
            try:
                driver.launch(
                    name=service.name,
                    artifact=artifact,
                    platform=plat,
                    architecture=arch,
                    networks=attachments(project, service),
                    detach=True,
                )
            except FleetError as e:
                self._fail(result, project, service, f"failed to run service {service.name}: {e}", str(e))

            # A launch may fail after the instance was started, so it is inspected either way.
            try:
                machine = driver.get(service.name)
            except FleetError as e:
                if service.name not in result.failed:
                    self._fail(result, project, service, f"launched but could not be inspected: {e}", str(e))
                continue

            if machine.state == STATE_RUNNING:
                owned.append(machine.ref)
                if service.name not in result.failed:
                    result.launched.append(service.name)
            elif service.name not in result.failed:
                msg = f"instance is {machine.state} after launch"
                self._fail(result, project, service, msg, msg)
        return owned

    @staticmethod
    def _fail(result: ReconcileResult, project: Project, service: Service, message: str, reason: str) -> None:
        result.failed[service.name] = reason
        db.log_event("ERROR", message, service_name=service.name, project=project.name)

    def _persist(
        self,
        project: Project,
        networks: list[ResourceRef],
        machines: list[ResourceRef],
        live_networks: list[Network],
        live_machines: list[Machine],
        removed: list[str],
    ) -> CompositeState:
        state = CompositeState(
            name=project.name,
            composefile=project.compose_files[0] if project.compose_files else "",
            workdir=project.working_dir,
            networks=networks,
            machines=machines,
        )

        if not self.prune_stale:
            return db.update_compose(state)

        # Previously owned resources survive only while they still exist; instances removed in this pass are gone.
        net_names = {n.name for n in live_networks} | {r.name for r in networks}
        machine_keys = {m.ref.key for m in live_machines if m.name not in removed} | {r.key for r in machines}
        return db.update_compose(
            state,
            keep_networks=lambda r: r.name in net_names,
            keep_machines=lambda r: r.key in machine_keys,
        )

    def _follow(self, project: Project, drivers: dict[str, MachineDriver], stop: Event) -> None:
        width = project.longest_service_name()
        threads: list[Thread] = []
        for service in project.services:
            plat, _ = service.platform_arch()
            t = Thread(
                target=self._tail,
                args=(drivers[plat], service.name, service.name.ljust(width), project.name, stop),
                name=f"logs-{service.name}",
                daemon=True,
            )
            t.start()
            threads.append(t)
        for t in threads:
            t.join()

    def _tail(self, driver: MachineDriver, name: str, prefix: str, project: str, stop: Event) -> None:
        """Forward ``name``'s log lines to the sink until the stream ends or ``stop`` is set."""
        q: Queue = Queue()
        Thread(target=_pump_logs, args=(driver, name, q), name=f"logs-read-{name}", daemon=True).start()
        while not stop.is_set():
            try:
                kind, payload = q.get(timeout=self.queue_poll_s)
            except Empty:
                continue

            if kind == "line":
                self.sink(f"{prefix} | {payload}")
            elif kind == "error":
                db.log_event("ERROR", f"failed to log service {name}: {payload}", service_name=name, project=project)
                return
            else:
                return
