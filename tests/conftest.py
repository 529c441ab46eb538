from __future__ import annotations

import time
from queue import Queue
from threading import Lock

import pytest

from ukfleet import db
from ukfleet.errors import AdapterError
from ukfleet.models import STATE_RUNNING, Machine, Network, NETWORK_STATE_UP, Package, split_image_ref
from ukfleet.settings import Settings


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite journal/state store."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "ukfleet.db")))
    db.init_db()
    yield


def wait_until(pred, timeout: float = 3.0, interval: float = 0.01) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if pred():
            return True
        time.sleep(interval)
    return pred()


_CLOSED = object()
_END = object()


class FakeStream:
    """Event stream fed by the test: push states, exceptions, or end()."""

    def __init__(self, machine: Machine):
        self.machine = machine
        self.q: Queue = Queue()
        self.closed = False

    def push(self, item) -> None:
        self.q.put(item)

    def end(self) -> None:
        self.q.put(_END)

    def __iter__(self):
        while True:
            item = self.q.get()
            if item is _CLOSED or item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield self.machine.with_state(item)

    def close(self) -> None:
        self.closed = True
        self.q.put(_CLOSED)


class FakeMachineDriver:
    def __init__(self, platform: str = "qemu"):
        self.platform = platform
        self.lock = Lock()
        self.machines: dict[str, Machine] = {}
        self.calls: list[tuple] = []
        self.streams: dict[str, FakeStream] = {}
        self.launch_fail: set[str] = set()
        self.launch_fail_after_start: set[str] = set()
        self.watch_fail: set[str] = set()
        self.list_error: Exception | None = None
        self.log_lines: dict[str, list[str]] = {}
        self.logs_fail: set[str] = set()
        self._n = 0

    def add(self, name: str, state: str = STATE_RUNNING, uid: str | None = None) -> Machine:
        with self.lock:
            self._n += 1
            m = Machine(uid=uid or f"uid-{name}-{self._n}", name=name, state=state, platform=self.platform)
            self.machines[name] = m
            return m

    def set_state(self, name: str, state: str) -> None:
        with self.lock:
            self.machines[name] = self.machines[name].with_state(state)

    def stream_for(self, machine: Machine) -> FakeStream:
        with self.lock:
            if machine.uid not in self.streams:
                self.streams[machine.uid] = FakeStream(machine)
            return self.streams[machine.uid]

    def count(self, op: str) -> int:
        with self.lock:
            return sum(1 for c in self.calls if c[0] == op)

    # MachineDriver

    def available(self) -> bool:
        return True

    def list(self) -> list[Machine]:
        with self.lock:
            self.calls.append(("list",))
            if self.list_error is not None:
                raise self.list_error
            return list(self.machines.values())

    def get(self, name: str) -> Machine:
        with self.lock:
            if name not in self.machines:
                raise AdapterError(f"machine {name}: not found")
            return self.machines[name]

    def remove(self, name: str) -> None:
        with self.lock:
            self.calls.append(("remove", name))
            self.machines.pop(name, None)

    def launch(self, name, artifact, platform, architecture, networks, detach=True) -> Machine:
        with self.lock:
            self.calls.append(("launch", name, artifact, tuple(networks)))
            if name in self.launch_fail:
                raise AdapterError(f"launch {name}: boom")
        m = self.add(name, STATE_RUNNING)
        if name in self.launch_fail_after_start:
            raise AdapterError(f"launch {name}: network connect failed")
        return m

    def watch(self, machine: Machine) -> FakeStream:
        with self.lock:
            self.calls.append(("watch", machine.uid))
            if machine.uid in self.watch_fail:
                raise AdapterError(f"events for {machine.name}: refused")
        return self.stream_for(machine)

    def logs(self, name: str, follow: bool = True):
        if name in self.logs_fail:
            raise AdapterError(f"logs for {name}: stream refused")
        return iter(self.log_lines.get(name, []))


class FakeNetworkDriver:
    def __init__(self):
        self.networks: dict[str, Network] = {}
        self.created: list[tuple[str, str, str | None]] = []
        self.fail: set[str] = set()

    def create(self, name, driver, subnet) -> Network:
        if name in self.fail:
            raise AdapterError(f"create network {name}: boom")
        self.created.append((name, driver, subnet))
        net = Network(name=name, uid=f"net-{name}", state=NETWORK_STATE_UP, driver=driver, subnet=subnet)
        self.networks[name] = net
        return net

    def list(self) -> list[Network]:
        return list(self.networks.values())

    def get(self, name) -> Network:
        if name not in self.networks:
            raise AdapterError(f"network {name}: not found")
        return self.networks[name]


class FakePackageManager:
    def __init__(self):
        self.local: set[str] = set()
        self.remote: set[str] = set()
        self.queries: list[tuple[str, bool]] = []
        self.pulled: list[str] = []
        self.pushed: list[str] = []

    def catalog(self, name, platform=None, architecture=None, version=None, remote=False) -> list[Package]:
        self.queries.append((f"{name}:{version}", remote))
        pool = self.remote if remote else self.local
        out = []
        for ref in sorted(pool):
            n, v = split_image_ref(ref)
            if n == name and (version is None or v == version):
                out.append(Package(n, v, platform or "qemu", architecture or "x86_64", size=2_500_000, remote=remote))
        return out

    def pull(self, ref, platform, architecture) -> Package:
        self.pulled.append(ref)
        self.local.add(ref)
        n, v = split_image_ref(ref)
        return Package(n, v, platform, architecture)

    def push(self, package: Package) -> None:
        self.pushed.append(package.ref)


class FakeBuilder:
    def __init__(self, packages: FakePackageManager):
        self.packages = packages
        self.built: list[str] = []
        self.packaged: list[tuple[str, str, str]] = []
        self.fail: set[str] = set()

    def build(self, context, platform, architecture) -> str:
        if context in self.fail:
            raise AdapterError(f"build {context}: compiler error")
        self.built.append(context)
        return f"artifact:{context}"

    def package(self, artifact, name, fmt, platform, architecture, overwrite=True) -> Package:
        self.packaged.append((artifact, name, fmt))
        self.packages.local.add(name)
        n, v = split_image_ref(name)
        return Package(n, v, platform, architecture)


@pytest.fixture
def machines():
    return FakeMachineDriver("qemu")


@pytest.fixture
def networks():
    return FakeNetworkDriver()


@pytest.fixture
def packages():
    return FakePackageManager()


@pytest.fixture
def builder(packages):
    return FakeBuilder(packages)
