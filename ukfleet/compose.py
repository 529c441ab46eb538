"""Compose-file loading, validation and address assignment.

The YAML document is validated against pydantic models, then turned into
the plain :class:`~ukfleet.models.Project` the engines work with.
"""
from __future__ import annotations

import ipaddress
import os
import re
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError as SchemaError, field_validator

from .errors import ValidationError
from .models import NetworkSpec, Project, Service
from .settings import settings


COMPOSE_FILENAMES = ("compose.yaml", "compose.yml", "docker-compose.yaml", "docker-compose.yml")
SERVICE_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]{0,62}$")


class BuildConfig(BaseModel):
    context: str


class ServiceNetworkConfig(BaseModel):
    ipv4_address: str = ""


class ServiceConfig(BaseModel):
    image: str = ""
    build: BuildConfig | None = None
    platform: str = Field(..., description="<platform>/<architecture>, e.g. qemu/x86_64")
    networks: dict[str, ServiceNetworkConfig] = Field(default_factory=dict)

    @field_validator("build", mode="before")
    @classmethod
    def _build_shorthand(cls, v: Any) -> Any:
        if isinstance(v, str):
            return {"context": v}
        return v

    @field_validator("networks", mode="before")
    @classmethod
    def _networks_shorthand(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, list):
            return {name: {} for name in v}
        if isinstance(v, dict):
            return {k: (x or {}) for k, x in v.items()}
        return v


class IpamPool(BaseModel):
    subnet: str


class IpamConfig(BaseModel):
    config: list[IpamPool] = Field(default_factory=list)


class NetworkConfig(BaseModel):
    name: str | None = None
    driver: str = ""
    ipam: IpamConfig = Field(default_factory=IpamConfig)


class ComposeFile(BaseModel):
    name: str | None = None
    services: dict[str, ServiceConfig]
    networks: dict[str, NetworkConfig | None] = Field(default_factory=dict)


def find_compose_file(workdir: str) -> str | None:
    for fn in COMPOSE_FILENAMES:
        p = os.path.join(workdir, fn)
        if os.path.isfile(p):
            return p
    return None


def load_project(workdir: str, composefile: str | None = None) -> Project:
    """Read a compose file into a :class:`Project`."""
    workdir = os.path.abspath(workdir)
    path = composefile or find_compose_file(workdir)
    if not path:
        raise ValidationError(f"no compose file found in {workdir}")
    if not os.path.isabs(path):
        path = os.path.join(workdir, path)

    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except OSError as e:
        raise ValidationError(f"could not read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ValidationError(f"invalid YAML in {path}: {e}") from e

    try:
        doc = ComposeFile.model_validate(raw)
    except SchemaError as e:
        raise ValidationError(f"invalid compose file {path}: {e}") from e

    networks: dict[str, NetworkSpec] = {}
    for key, cfg in doc.networks.items():
        cfg = cfg or NetworkConfig()
        networks[key] = NetworkSpec(
            name=cfg.name or key,
            driver=cfg.driver or settings.default_network_driver,
            subnet=cfg.ipam.config[0].subnet if cfg.ipam.config else None,
        )

    services = [
        Service(
            name=name,
            image=cfg.image,
            build_context=os.path.join(os.path.dirname(path), cfg.build.context) if cfg.build else None,
            platform=cfg.platform,
            networks={k: n.ipv4_address for k, n in cfg.networks.items()},
        )
        for name, cfg in doc.services.items()
    ]

    return Project(
        name=doc.name or os.path.basename(workdir),
        services=services,
        networks=networks,
        compose_files=[path],
        working_dir=workdir,
    )


def validate_project(project: Project) -> None:
    """Structural checks; raises ValidationError before anything is created."""
    seen: set[str] = set()
    for service in project.services:
        if not SERVICE_NAME_RE.match(service.name):
            raise ValidationError(f"invalid service name: {service.name!r}")
        if service.name in seen:
            raise ValidationError(f"duplicate service name: {service.name}")
        seen.add(service.name)
        service.platform_arch()

        for key, ip in service.networks.items():
            net = project.networks.get(key)
            if net is None:
                raise ValidationError(f"service {service.name} refers to undefined network {key}")
            if not ip:
                continue
            try:
                addr = ipaddress.IPv4Address(ip)
            except ValueError:
                raise ValidationError(f"service {service.name}: invalid ipv4 address {ip!r} on {key}") from None
            if net.subnet and addr not in _subnet(net):
                raise ValidationError(f"service {service.name}: {ip} is outside {net.subnet} of {key}")

    for net in project.networks.values():
        if net.subnet:
            _subnet(net)


def _subnet(net: NetworkSpec) -> ipaddress.IPv4Network:
    try:
        return ipaddress.IPv4Network(net.subnet, strict=False)
    except ValueError:
        raise ValidationError(f"network {net.name}: invalid subnet {net.subnet!r}") from None


def assign_ips(project: Project) -> None:
    """Give every attachment on a subnet network an address.

    Requested addresses must be unique per network. Missing ones get the next
    free host, skipping the first host (gateway). Networks without a subnet
    are left to the network driver's own allocation.
    """
    taken: dict[str, set[str]] = {key: set() for key in project.networks}
    for service in project.services:
        for key, ip in service.networks.items():
            if not ip:
                continue
            if ip in taken[key]:
                raise ValidationError(f"address {ip} on network {key} is requested twice")
            taken[key].add(ip)

    for service in project.services:
        for key, ip in list(service.networks.items()):
            net = project.networks[key]
            if ip or not net.subnet:
                continue
            hosts = _subnet(net).hosts()
            next(hosts, None)  # gateway
            for candidate in hosts:
                if str(candidate) not in taken[key]:
                    service.networks[key] = str(candidate)
                    taken[key].add(str(candidate))
                    break
            else:
                raise ValidationError(f"network {key} has no free address left for {service.name}")
