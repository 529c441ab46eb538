from __future__ import annotations

from . import db
from .drivers import Builder, PackageManager
from .errors import AdapterError, ResolutionError
from .models import Package, Service, split_image_ref
from .settings import settings


def human_size(n: int) -> str:
    size = float(max(0, n))
    if size < 1000:
        return f"{size:.0f} B"
    for unit in ("kB", "MB", "GB"):
        size /= 1000
        if size < 1000:
            return f"{size:.1f} {unit}"
    return f"{size / 1000:.1f} TB"


class ArtifactResolver:
    """Makes sure a service's package is available in the local catalog.

    Order, stopping at the first hit:
      1) local catalog (no network access)
      2) remote catalog, then pull
      3) build the service's context and package it
    """

    def __init__(self, packages: PackageManager, builder: Builder, package_format: str | None = None):
        self.packages = packages
        self.builder = builder
        self.package_format = package_format or settings.package_format

    def resolve(self, service: Service) -> str:
        """Return the package reference to launch ``service`` from."""
        plat, arch = service.platform_arch()
        if not service.image:
            return self.build_and_package(service, f"{service.name}:latest")

        name, version = split_image_ref(service.image)
        ref = f"{name}:{version}"

        try:
            db.log_event("DEBUG", "searching for package locally", service_name=service.name)
            if self.packages.catalog(name, platform=plat, architecture=arch, version=version):
                db.log_event("DEBUG", f"found {ref} locally", service_name=service.name)
                return ref

            db.log_event("DEBUG", "searching for package remotely", service_name=service.name)
            if self.packages.catalog(name, platform=plat, architecture=arch, version=version, remote=True):
                db.log_event("INFO", f"found {ref} remotely, pulling...", service_name=service.name)
                self.packages.pull(ref, plat, arch)
                return ref
        except AdapterError as e:
            raise ResolutionError(f"service {service.name}: {e}") from e

        return self.build_and_package(service, ref)

    def build_and_package(self, service: Service, ref: str) -> str:
        if not service.build_context:
            raise ResolutionError(f"service {service.name} has no image and no build context")
        plat, arch = service.platform_arch()
        try:
            db.log_event("INFO", f"building {service.build_context} for {plat}/{arch}...", service_name=service.name)
            artifact = self.builder.build(service.build_context, plat, arch)
            db.log_event("INFO", f"packaging {ref}...", service_name=service.name)
            self.builder.package(artifact, ref, self.package_format, plat, arch, overwrite=True)
        except AdapterError as e:
            raise ResolutionError(f"service {service.name}: {e}") from e
        return ref


def push_packages(packages: PackageManager, ref: str) -> list[Package]:
    """Push every local package matching ``ref`` to its remote catalog."""
    name, version = split_image_ref(ref)
    # An untagged ref pushes every local version.
    tagged = ":" in ref.rsplit("/", 1)[-1]
    found = packages.catalog(name, version=version if tagged else None)
    if not found:
        raise ResolutionError("no packages found")

    for p in found:
        db.log_event("INFO", f"pushing {p.ref} ({p.platform}/{p.architecture}, {human_size(p.size)})")
        try:
            packages.push(p)
        except AdapterError as e:
            raise ResolutionError(f"push {p.ref}: {e}") from e
    return found
