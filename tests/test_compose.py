import os

import pytest

from ukfleet.compose import assign_ips, find_compose_file, load_project, validate_project
from ukfleet.errors import ValidationError
from ukfleet.models import NetworkSpec, Project, Service


COMPOSE = """
name: shop
services:
  web:
    image: org/web:1.0
    platform: qemu/x86_64
    networks:
      front:
        ipv4_address: 10.0.0.10
  api:
    build: ./api
    platform: qemu/arm64
    networks: [front, back]
  worker:
    build:
      context: ./worker
    platform: fc/x86_64
networks:
  front:
    ipam:
      config:
        - subnet: 10.0.0.0/24
  back:
    name: shop_back
    driver: macvlan
  plain:
"""


def _write(tmp_path, text, fn="compose.yaml"):
    p = tmp_path / fn
    p.write_text(text)
    return p


def test_load_project(tmp_path):
    path = _write(tmp_path, COMPOSE)

    project = load_project(str(tmp_path))

    assert project.name == "shop"
    assert project.compose_files == [str(path)]
    assert project.working_dir == str(tmp_path)
    assert project.service_names() == ["web", "api", "worker"]

    web, api, worker = project.services
    assert web.image == "org/web:1.0"
    assert web.build_context is None
    assert web.networks == {"front": "10.0.0.10"}
    assert api.build_context == os.path.join(str(tmp_path), "./api")
    assert api.networks == {"front": "", "back": ""}
    assert worker.build_context == os.path.join(str(tmp_path), "./worker")
    assert worker.networks == {}

    assert project.networks["front"] == NetworkSpec("front", "bridge", "10.0.0.0/24")
    assert project.networks["back"] == NetworkSpec("shop_back", "macvlan", None)
    assert project.networks["plain"] == NetworkSpec("plain", "bridge", None)


def test_project_name_defaults_to_directory(tmp_path):
    d = tmp_path / "myapp"
    d.mkdir()
    _write(d, "services:\n  web:\n    image: nginx\n    platform: qemu/x86_64\n", fn="docker-compose.yml")

    project = load_project(str(d))

    assert project.name == "myapp"
    assert find_compose_file(str(d)).endswith("docker-compose.yml")


def test_explicit_relative_compose_file(tmp_path):
    _write(tmp_path, "services:\n  web:\n    image: nginx\n    platform: qemu/x86_64\n", fn="other.yaml")

    project = load_project(str(tmp_path), "other.yaml")

    assert project.compose_files == [str(tmp_path / "other.yaml")]


def test_missing_compose_file(tmp_path):
    with pytest.raises(ValidationError) as ei:
        load_project(str(tmp_path))
    assert "no compose file found" in str(ei.value)


def test_invalid_yaml(tmp_path):
    _write(tmp_path, "services: [unclosed\n")
    with pytest.raises(ValidationError) as ei:
        load_project(str(tmp_path))
    assert "invalid YAML" in str(ei.value)


def test_schema_errors_are_validation_errors(tmp_path):
    _write(tmp_path, "services:\n  web:\n    image: nginx\n")
    with pytest.raises(ValidationError) as ei:
        load_project(str(tmp_path))
    assert "platform" in str(ei.value)


def _project(*services, networks=None):
    return Project(name="demo", services=list(services), networks=networks or {})


def _net24():
    return {"net0": NetworkSpec("net0", subnet="10.0.0.0/24")}


@pytest.mark.parametrize(
    "services, networks, message",
    [
        ([Service("-bad", platform="qemu/x86_64")], {}, "invalid service name"),
        ([Service("web", platform="qemu/x86_64"), Service("web", platform="qemu/x86_64")], {}, "duplicate"),
        ([Service("web", platform="qemu")], {}, "invalid platform"),
        ([Service("web", platform="qemu/x86_64", networks={"nope": ""})], {}, "undefined network"),
        ([Service("web", platform="qemu/x86_64", networks={"net0": "10.0.0.300"})], _net24(), "invalid ipv4"),
        ([Service("web", platform="qemu/x86_64", networks={"net0": "10.9.0.2"})], _net24(), "outside"),
        ([], {"net0": NetworkSpec("net0", subnet="not-a-cidr")}, "invalid subnet"),
    ],
)
def test_validate_project_rejects(services, networks, message):
    with pytest.raises(ValidationError) as ei:
        validate_project(_project(*services, networks=networks))
    assert message in str(ei.value)


def test_validate_project_accepts_well_formed():
    validate_project(
        _project(
            Service("web", platform="qemu/x86_64", networks={"net0": "10.0.0.5"}),
            Service("db", platform="qemu/x86_64", networks={"net0": ""}),
            networks=_net24(),
        )
    )


def test_assign_ips_skips_gateway_and_requested_addresses():
    web = Service("web", platform="qemu/x86_64", networks={"net0": "10.0.0.2"})
    api = Service("api", platform="qemu/x86_64", networks={"net0": ""})
    db = Service("db", platform="qemu/x86_64", networks={"net0": ""})

    assign_ips(_project(web, api, db, networks=_net24()))

    assert web.networks["net0"] == "10.0.0.2"
    assert api.networks["net0"] == "10.0.0.3"
    assert db.networks["net0"] == "10.0.0.4"


def test_assign_ips_leaves_subnetless_networks_to_the_driver():
    svc = Service("web", platform="qemu/x86_64", networks={"lan": ""})

    assign_ips(_project(svc, networks={"lan": NetworkSpec("lan")}))

    assert svc.networks["lan"] == ""


def test_assign_ips_rejects_duplicate_requests():
    a = Service("a", platform="qemu/x86_64", networks={"net0": "10.0.0.7"})
    b = Service("b", platform="qemu/x86_64", networks={"net0": "10.0.0.7"})

    with pytest.raises(ValidationError) as ei:
        assign_ips(_project(a, b, networks=_net24()))
    assert "requested twice" in str(ei.value)


def test_assign_ips_reports_exhausted_network():
    # /30 has two hosts; the first is the gateway.
    nets = {"tiny": NetworkSpec("tiny", subnet="10.0.0.0/30")}
    a = Service("a", platform="qemu/x86_64", networks={"tiny": ""})
    b = Service("b", platform="qemu/x86_64", networks={"tiny": ""})

    with pytest.raises(ValidationError) as ei:
        assign_ips(_project(a, b, networks=nets))
    assert "no free address" in str(ei.value)
    assert a.networks["tiny"] == "10.0.0.2"
