from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

import docker
from docker.errors import DockerException, NotFound
from docker.types import IPAMConfig, IPAMPool

from .drivers import PlatformRegistry
from .errors import AdapterError, StreamEndedOnNonEvent
from .models import (
    NETWORK_STATE_UP,
    STATE_EXITED,
    STATE_FAILED,
    STATE_RUNNING,
    STATE_STARTING,
    STATE_UNKNOWN,
    Machine,
    Network,
    Package,
    split_image_ref,
)


PLATFORM = "docker"

LABEL_MANAGED = "ukfleet.managed"
LABEL_PLATFORM = "ukfleet.platform"
LABEL_ARCH = "ukfleet.architecture"

_ARCH_TO_DOCKER = {"x86_64": "amd64", "amd64": "amd64", "arm64": "arm64", "aarch64": "arm64", "arm": "arm"}
_DOCKER_TO_ARCH = {"amd64": "x86_64", "arm64": "arm64", "arm": "arm"}

_STATUS_TO_STATE = {
    "created": STATE_STARTING,
    "restarting": STATE_STARTING,
    "running": STATE_RUNNING,
    "paused": STATE_RUNNING,
    "exited": STATE_EXITED,
    "dead": STATE_FAILED,
}


def docker_arch(arch: str) -> str:
    return _ARCH_TO_DOCKER.get(arch, arch)


def docker_platform(arch: str) -> str:
    return f"linux/{docker_arch(arch)}"


def _client() -> docker.DockerClient:
    return docker.from_env()


@contextmanager
def _errors(what: str) -> Iterator[None]:
    try:
        yield
    except NotFound as e:
        raise AdapterError(f"{what}: not found ({e.explanation or e})") from e
    except DockerException as e:
        raise AdapterError(f"{what}: {e}") from e


def _container_state(container: Any) -> str:
    status = container.status
    if status == "exited" and int(container.attrs.get("State", {}).get("ExitCode", 0) or 0) != 0:
        return STATE_FAILED
    return _STATUS_TO_STATE.get(status, STATE_UNKNOWN)


def _to_machine(container: Any) -> Machine:
    labels = container.labels or {}
    return Machine(
        uid=container.id,
        name=container.name,
        state=_container_state(container),
        platform=labels.get(LABEL_PLATFORM, PLATFORM),
        architecture=labels.get(LABEL_ARCH, ""),
        image=container.attrs.get("Config", {}).get("Image", ""),
    )


def _event_state(event: dict[str, Any]) -> str | None:
    """Lifecycle state carried by a docker container event, if any."""
    action = (event.get("Action") or event.get("status") or "").split(":", 1)[0]
    if action == "create":
        return STATE_STARTING
    if action in {"start", "restart", "unpause"}:
        return STATE_RUNNING
    if action == "oom":
        return STATE_FAILED
    if action == "die":
        code = (event.get("Actor") or {}).get("Attributes", {}).get("exitCode", "0")
        return STATE_EXITED if str(code) == "0" else STATE_FAILED
    return None


class DockerEventStream:
    def __init__(self, stream: Any, machine: Machine):
        self._stream = stream
        self.machine = machine

    def __iter__(self) -> Iterator[Machine]:
        delivered = False
        try:
            for event in self._stream:
                state = _event_state(event)
                if state is None:
                    continue
                delivered = True
                yield self.machine.with_state(state)
        except DockerException as e:
            raise AdapterError(f"events for {self.machine.name}: {e}") from e
        if not delivered:
            raise StreamEndedOnNonEvent(f"event stream for {self.machine.name} closed without a state change")

    def close(self) -> None:
        self._stream.close()


class DockerMachineDriver:
    """Runs each service instance as a labelled container."""

    def __init__(self, client: docker.DockerClient | None = None):
        self._c = client

    @property
    def client(self) -> docker.DockerClient:
        if self._c is None:
            self._c = _client()
        return self._c

    def available(self) -> bool:
        try:
            self.client.ping()
            return True
        except DockerException:
            return False

    def list(self) -> list[Machine]:
        with _errors("list containers"):
            containers = self.client.containers.list(all=True, filters={"label": f"{LABEL_MANAGED}=true"})
            return [_to_machine(c) for c in containers]

    def get(self, name: str) -> Machine:
        with _errors(f"container {name}"):
            return _to_machine(self.client.containers.get(name))

    def remove(self, name: str) -> None:
        with _errors(f"remove container {name}"):
            self.client.containers.get(name).remove(force=True)

    def launch(
        self,
        name: str,
        artifact: str,
        platform: str,
        architecture: str,
        networks: list[str],
        detach: bool = True,
    ) -> Machine:
        """Create the container on its first network, attach the rest, start it."""
        pairs = [n.split(":", 1) if ":" in n else [n, ""] for n in networks]
        labels = {LABEL_MANAGED: "true", LABEL_PLATFORM: platform, LABEL_ARCH: architecture}

        kwargs: dict[str, Any] = {
            "name": name,
            "labels": labels,
            "detach": detach,
            "platform": docker_platform(architecture),
            # Restarts are the reconciler's call, not the daemon's.
            "restart_policy": {"Name": "no"},
        }
        if pairs:
            first, ip = pairs[0]
            kwargs["network"] = first
            kwargs["networking_config"] = {first: self.client.api.create_endpoint_config(ipv4_address=ip or None)}

        with _errors(f"launch {name}"):
            container = self.client.containers.create(artifact, **kwargs)
            for net_name, ip in pairs[1:]:
                self.client.networks.get(net_name).connect(container, ipv4_address=ip or None)
            container.start()
            container.reload()
            return _to_machine(container)

    def watch(self, machine: Machine) -> DockerEventStream:
        with _errors(f"events for {machine.name}"):
            stream = self.client.events(decode=True, filters={"type": "container", "container": machine.uid})
        return DockerEventStream(stream, machine)

    def logs(self, name: str, follow: bool = True) -> Iterator[str]:
        with _errors(f"logs for {name}"):
            chunks = self.client.containers.get(name).logs(stream=True, follow=follow)
            buf = ""
            for chunk in chunks:
                buf += chunk.decode("utf-8", errors="replace") if isinstance(chunk, bytes) else chunk
                while "\n" in buf:
                    line, buf = buf.split("\n", 1)
                    yield line
            if buf:
                yield buf


class DockerNetworkDriver:
    def __init__(self, client: docker.DockerClient | None = None):
        self._c = client

    @property
    def client(self) -> docker.DockerClient:
        if self._c is None:
            self._c = _client()
        return self._c

    @staticmethod
    def _to_network(net: Any) -> Network:
        pools = (net.attrs.get("IPAM") or {}).get("Config") or []
        return Network(
            name=net.name,
            uid=net.id,
            state=NETWORK_STATE_UP,
            driver=net.attrs.get("Driver", "bridge"),
            subnet=pools[0].get("Subnet") if pools else None,
        )

    def create(self, name: str, driver: str, subnet: str | None) -> Network:
        ipam = IPAMConfig(pool_configs=[IPAMPool(subnet=subnet)]) if subnet else None
        with _errors(f"create network {name}"):
            net = self.client.networks.create(name, driver=driver, ipam=ipam, labels={LABEL_MANAGED: "true"})
            net.reload()
            return self._to_network(net)

    def list(self) -> list[Network]:
        with _errors("list networks"):
            return [self._to_network(n) for n in self.client.networks.list()]

    def get(self, name: str) -> Network:
        with _errors(f"network {name}"):
            return self._to_network(self.client.networks.get(name))


class DockerPackageManager:
    """Local catalog = tagged images; remote catalog = registry distribution data."""

    def __init__(self, client: docker.DockerClient | None = None):
        self._c = client

    @property
    def client(self) -> docker.DockerClient:
        if self._c is None:
            self._c = _client()
        return self._c

    def catalog(
        self,
        name: str,
        platform: str | None = None,
        architecture: str | None = None,
        version: str | None = None,
        remote: bool = False,
    ) -> list[Package]:
        if remote:
            return self._remote(name, platform, architecture, version or "latest")

        out: list[Package] = []
        with _errors(f"catalog {name}"):
            images = self.client.images.list(name=name)
        for image in images:
            img_arch = image.attrs.get("Architecture", "")
            if architecture and img_arch and img_arch != docker_arch(architecture):
                continue
            img_plat = (image.labels or {}).get(LABEL_PLATFORM)
            if platform and img_plat and img_plat != platform:
                continue
            for tag in image.tags:
                tag_name, tag_version = split_image_ref(tag)
                if tag_name != name or (version and tag_version != version):
                    continue
                out.append(
                    Package(
                        name=tag_name,
                        version=tag_version,
                        platform=img_plat or platform or PLATFORM,
                        architecture=architecture or _DOCKER_TO_ARCH.get(img_arch, img_arch),
                        size=int(image.attrs.get("Size", 0) or 0),
                    )
                )
        return out

    def _remote(self, name: str, platform: str | None, architecture: str | None, version: str) -> list[Package]:
        try:
            data = self.client.images.get_registry_data(f"{name}:{version}")
        except NotFound:
            return []
        except DockerException as e:
            raise AdapterError(f"remote catalog {name}:{version}: {e}") from e
        if architecture and not data.has_platform(docker_platform(architecture)):
            return []
        return [
            Package(
                name=name,
                version=version,
                platform=platform or PLATFORM,
                architecture=architecture or "",
                remote=True,
            )
        ]

    def pull(self, ref: str, platform: str, architecture: str) -> Package:
        name, version = split_image_ref(ref)
        with _errors(f"pull {ref}"):
            image = self.client.images.pull(name, tag=version, platform=docker_platform(architecture))
        return Package(
            name=name,
            version=version,
            platform=platform,
            architecture=architecture,
            size=int(image.attrs.get("Size", 0) or 0),
        )

    def push(self, package: Package) -> None:
        with _errors(f"push {package.ref}"):
            for line in self.client.images.push(package.name, tag=package.version, stream=True, decode=True):
                if isinstance(line, dict) and line.get("error"):
                    raise AdapterError(f"push {package.ref}: {line['error']}")


class DockerBuilder:
    def __init__(self, client: docker.DockerClient | None = None):
        self._c = client

    @property
    def client(self) -> docker.DockerClient:
        if self._c is None:
            self._c = _client()
        return self._c

    def build(self, context: str, platform: str, architecture: str) -> str:
        """Build ``context`` and return the resulting image id."""
        with _errors(f"build {context}"):
            image, _ = self.client.images.build(
                path=context,
                platform=docker_platform(architecture),
                labels={LABEL_PLATFORM: platform, LABEL_ARCH: architecture},
                rm=True,
            )
        return image.id

    def package(
        self,
        artifact: str,
        name: str,
        fmt: str,
        platform: str,
        architecture: str,
        overwrite: bool = True,
    ) -> Package:
        if fmt != "oci":
            raise AdapterError(f"package {name}: unsupported format {fmt!r}")
        repo, version = split_image_ref(name)
        with _errors(f"package {name}"):
            if not overwrite:
                try:
                    self.client.images.get(f"{repo}:{version}")
                    raise AdapterError(f"package {name}: already exists")
                except NotFound:
                    pass
            image = self.client.images.get(artifact)
            image.tag(repo, tag=version)
        return Package(
            name=repo,
            version=version,
            platform=platform,
            architecture=architecture,
            size=int(image.attrs.get("Size", 0) or 0),
        )


def default_registry(client: docker.DockerClient | None = None) -> PlatformRegistry:
    return PlatformRegistry({PLATFORM: DockerMachineDriver(client)})
