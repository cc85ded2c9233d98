from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from injector.src.errors import ConfigError
from injector.src.sidecar import (
    CERT_MOUNT_PATH,
    CERT_VOLUME_NAME,
    TAG_ENV_NAME,
    SidecarConfig,
    assemble_pod_spec,
    load_sidecar_config,
    prepare_sidecar_containers,
    service_name,
    service_port_patch,
)


SIDECAR_YAML = """\
createRoutes: true
enableMeshTLS: false
meshCertificateID: ""
containers:
  - name: tyk-mesh
    image: tykio/tyk-gateway:v2.8
    env:
      - name: TYK_GW_LISTENPORT
        value: "8080"
initContainers:
  - name: setup-iptables
    image: tykio/mesh-init:latest
"""


def _config(**overrides: object) -> SidecarConfig:
    values: dict = {
        "containers": (
            {"name": "tyk-mesh", "image": "tykio/tyk-gateway:v2.8", "env": []},
        ),
        "init_containers": ({"name": "setup-iptables", "image": "tykio/mesh-init:latest"},),
    }
    values.update(overrides)
    return SidecarConfig(**values)  # type: ignore[arg-type]


def test_load_sidecar_config_logs_fingerprint(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    path = tmp_path / "sidecar.yaml"
    path.write_text(SIDECAR_YAML)
    digest = hashlib.sha256(SIDECAR_YAML.encode()).hexdigest()

    with caplog.at_level(logging.INFO):
        config = load_sidecar_config(path)

    assert config.create_routes is True
    assert config.enable_mesh_tls is False
    assert config.containers[0]["name"] == "tyk-mesh"
    assert config.init_containers[0]["name"] == "setup-iptables"
    assert config.fingerprint == digest
    assert any(digest in record.getMessage() for record in caplog.records)


def test_load_sidecar_config_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_sidecar_config(tmp_path / "missing.yaml")


@pytest.mark.parametrize("content", ["containers: {name: x}", "- a\n- b\n", "key: [unclosed"])
def test_load_sidecar_config_rejects_invalid_content(tmp_path: Path, content: str) -> None:
    path = tmp_path / "sidecar.yaml"
    path.write_text(content)

    with pytest.raises(ConfigError):
        load_sidecar_config(path)


def test_service_name_falls_back_to_placeholder(make_pod: Callable[..., dict[str, Any]]) -> None:
    assert service_name(make_pod(labels={"app": "orders"})) == "orders"
    assert service_name(make_pod(labels={})) == "orders-7d9f-please-set-app-label"


def test_tag_env_appended_when_missing(make_pod: Callable[..., dict[str, Any]]) -> None:
    config = _config()

    containers = prepare_sidecar_containers(make_pod(labels={"app": "orders"}), config.containers)

    assert containers[0]["env"] == [{"name": TAG_ENV_NAME, "value": "mesh,orders"}]
    # the template itself is left untouched
    assert config.containers[0]["env"] == []


def test_tag_env_replaced_in_place(make_pod: Callable[..., dict[str, Any]]) -> None:
    template = (
        {
            "name": "TYK-MESH",
            "env": [
                {"name": TAG_ENV_NAME, "value": "mesh,stale"},
                {"name": "OTHER", "value": "1"},
            ],
        },
    )

    containers = prepare_sidecar_containers(make_pod(labels={"app": "orders"}), template)

    assert containers[0]["env"] == [
        {"name": TAG_ENV_NAME, "value": "mesh,orders"},
        {"name": "OTHER", "value": "1"},
    ]


def test_assemble_appends_containers_and_host_alias(
    make_pod: Callable[..., dict[str, Any]],
) -> None:
    pod = make_pod(labels={"app": "orders"})

    spec = assemble_pod_spec(pod, _config())

    assert [c["name"] for c in spec["containers"]] == ["orders", "tyk-mesh"]
    assert [c["name"] for c in spec["initContainers"]] == ["setup-iptables"]
    assert spec["hostAliases"] == [{"ip": "127.0.0.1", "hostnames": ["mesh", "mesh.local"]}]
    assert "volumes" not in spec
    # the decoded pod is not modified
    assert len(pod["spec"]["containers"]) == 1


def test_assemble_twice_double_injects(make_pod: Callable[..., dict[str, Any]]) -> None:
    pod = make_pod(labels={"app": "orders"})
    config = _config()

    once = assemble_pod_spec(pod, config)
    twice = assemble_pod_spec({**pod, "spec": once}, config)

    assert [c["name"] for c in twice["containers"]] == ["orders", "tyk-mesh", "tyk-mesh"]
    assert len(twice["hostAliases"]) == 2


def test_assemble_with_mesh_tls_adds_volumes_and_mounts(
    make_pod: Callable[..., dict[str, Any]],
) -> None:
    pod = make_pod(
        labels={"app": "orders"},
        containers=[
            {
                "name": "orders",
                "volumeMounts": [{"name": "data", "mountPath": "/data"}],
            }
        ],
    )

    spec = assemble_pod_spec(pod, _config(enable_mesh_tls=True))

    assert spec["volumes"] == [
        {"name": "ca-pem", "configMap": {"name": "ca-pem"}},
        {"name": CERT_VOLUME_NAME, "emptyDir": {}},
    ]
    for container in spec["containers"]:
        assert {"name": CERT_VOLUME_NAME, "mountPath": CERT_MOUNT_PATH} in container[
            "volumeMounts"
        ]
    assert spec["containers"][0]["volumeMounts"][0] == {"name": "data", "mountPath": "/data"}
    assert "volumeMounts" not in spec["initContainers"][0]


@pytest.mark.parametrize(
    ("ports", "op", "path"),
    [
        ([], "replace", "/spec/ports/0"),
        ([{"port": 80}], "replace", "/spec/ports/0"),
        ([{"port": 80}, {"port": 443}], "add", "/spec/ports"),
    ],
)
def test_service_port_patch(ports: list, op: str, path: str) -> None:
    service = {"metadata": {"name": "orders"}, "spec": {"ports": ports}}

    operation = service_port_patch(service)

    assert operation.op == op
    assert operation.path == path
    assert operation.value == {"name": "tyk-sidecar", "port": 8080, "targetPort": 8080}
