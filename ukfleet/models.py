from __future__ import annotations

from dataclasses import dataclass, field, replace

from .errors import ValidationError


STATE_UNKNOWN = "unknown"
STATE_STARTING = "starting"
STATE_RUNNING = "running"
STATE_EXITED = "exited"
STATE_FAILED = "failed"

MACHINE_STATES = frozenset({STATE_UNKNOWN, STATE_STARTING, STATE_RUNNING, STATE_EXITED, STATE_FAILED})
TERMINAL_STATES = frozenset({STATE_EXITED, STATE_FAILED})

NETWORK_STATE_UP = "up"
NETWORK_STATE_DOWN = "down"


def split_image_ref(ref: str) -> tuple[str, str]:
    """Split ``name[:tag]`` into (name, version); version defaults to ``latest``.

    A colon before the last ``/`` belongs to a registry host:port, not a tag.
    """
    slash = ref.rfind("/")
    colon = ref.rfind(":")
    if colon > slash:
        name, version = ref[:colon], ref[colon + 1 :]
        return name, version or "latest"
    return ref, "latest"


@dataclass
class Service:
    name: str
    image: str = ""
    build_context: str | None = None
    platform: str = ""
    networks: dict[str, str] = field(default_factory=dict)  # network name -> requested ipv4 ("" = any)

    def platform_arch(self) -> tuple[str, str]:
        """Return (platform, architecture) from ``<platform>/<architecture>``."""
        parts = self.platform.split("/", 1)
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ValidationError(f"invalid platform: {self.platform!r} for service {self.name}")
        return parts[0], parts[1]


@dataclass
class NetworkSpec:
    name: str
    driver: str = "bridge"
    subnet: str | None = None

    @property
    def has_subnet(self) -> bool:
        return bool(self.subnet)


@dataclass
class Project:
    name: str
    services: list[Service] = field(default_factory=list)
    networks: dict[str, NetworkSpec] = field(default_factory=dict)
    compose_files: list[str] = field(default_factory=list)
    working_dir: str = ""

    def service_names(self) -> list[str]:
        return [s.name for s in self.services]

    def longest_service_name(self) -> int:
        return max((len(s.name) for s in self.services), default=0)


@dataclass(frozen=True)
class ResourceRef:
    name: str
    uid: str = ""

    @property
    def key(self) -> str:
        return self.uid or self.name


def _union(a: list[ResourceRef], b: list[ResourceRef]) -> list[ResourceRef]:
    out: dict[str, ResourceRef] = {}
    for ref in list(a) + list(b):
        out[ref.key] = ref
    return list(out.values())


@dataclass
class CompositeState:
    name: str
    composefile: str = ""
    workdir: str = ""
    networks: list[ResourceRef] = field(default_factory=list)
    machines: list[ResourceRef] = field(default_factory=list)

    def merged(self, other: CompositeState) -> CompositeState:
        """Superset merge; ``other`` wins on composefile and workdir when it sets them."""
        return CompositeState(
            name=self.name,
            composefile=other.composefile or self.composefile,
            workdir=other.workdir or self.workdir,
            networks=_union(self.networks, other.networks),
            machines=_union(self.machines, other.machines),
        )


@dataclass(frozen=True)
class Machine:
    uid: str
    name: str
    state: str = STATE_UNKNOWN
    platform: str = ""
    architecture: str = ""
    image: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(name=self.name, uid=self.uid)

    def with_state(self, state: str) -> Machine:
        return replace(self, state=state)


@dataclass(frozen=True)
class Network:
    name: str
    uid: str = ""
    state: str = NETWORK_STATE_UP
    driver: str = "bridge"
    subnet: str | None = None

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(name=self.name, uid=self.uid)


@dataclass(frozen=True)
class Package:
    name: str
    version: str
    platform: str
    architecture: str
    size: int = 0
    remote: bool = False

    @property
    def ref(self) -> str:
        return f"{self.name}:{self.version}"
