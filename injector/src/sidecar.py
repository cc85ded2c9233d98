from __future__ import annotations

import copy
import hashlib
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from injector.src.errors import ConfigError
from injector.src.patch import ADD, REPLACE, PatchOperation

LOGGER = logging.getLogger(__name__)

MESH_CONTAINER_NAME = "tyk-mesh"
TAG_ENV_NAME = "TYK_GW_DBAPPCONFOPTIONS_TAGS"
MESH_TAG = "mesh"
MESH_HOST_ALIAS = {"ip": "127.0.0.1", "hostnames": ["mesh", "mesh.local"]}

CA_VOLUME_NAME = "ca-pem"
CERT_VOLUME_NAME = "ssl-certs"
CERT_MOUNT_PATH = "/etc/ssl/certs"

SIDECAR_PORT = 8080
SIDECAR_PORT_NAME = "tyk-sidecar"


@dataclass(frozen=True)
class SidecarConfig:
    """Immutable sidecar template loaded once at startup.

    Attributes:
        containers:          Containers appended to every injected pod.
        init_containers:     Init containers appended to every injected pod.
        create_routes:       Register inbound and mesh routes with the gateway.
        enable_mesh_tls:     Issue certificates and mount them into the pod.
        mesh_certificate_id: Pre-provisioned certificate for the mesh route;
                             empty means one is generated per workload.
        fingerprint:         sha256 of the raw template file.
    """

    containers: tuple[dict[str, Any], ...] = ()
    init_containers: tuple[dict[str, Any], ...] = ()
    create_routes: bool = False
    enable_mesh_tls: bool = False
    mesh_certificate_id: str = ""
    fingerprint: str = ""


def _container_list(raw: Any, field: str) -> tuple[dict[str, Any], ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list) or not all(isinstance(item, dict) for item in raw):
        raise ConfigError(f"sidecar config field {field!r} must be a list of containers")
    return tuple(raw)


def parse_sidecar_config(data: bytes) -> SidecarConfig:
    fingerprint = hashlib.sha256(data).hexdigest()
    try:
        raw = yaml.safe_load(data) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"sidecar config is not valid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError("sidecar config must be a mapping")

    return SidecarConfig(
        containers=_container_list(raw.get("containers"), "containers"),
        init_containers=_container_list(raw.get("initContainers"), "initContainers"),
        create_routes=bool(raw.get("createRoutes", False)),
        enable_mesh_tls=bool(raw.get("enableMeshTLS", False)),
        mesh_certificate_id=str(raw.get("meshCertificateID") or ""),
        fingerprint=fingerprint,
    )


def load_sidecar_config(path: str | Path) -> SidecarConfig:
    """Read the sidecar template file and log its content hash for audit."""
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise ConfigError(f"cannot read sidecar config {path}: {exc}") from exc

    config = parse_sidecar_config(data)
    LOGGER.info("New sidecar configuration: sha256sum %s", config.fingerprint)
    return config


def service_name(pod: Mapping[str, Any]) -> str:
    """Return the workload's ``app`` label, or a placeholder built from generateName."""
    metadata = pod.get("metadata") or {}
    labels = metadata.get("labels") or {}
    name = labels.get("app")
    if name is None:
        return f"{metadata.get('generateName', '')}please-set-app-label"
    return name


def prepare_sidecar_containers(
    pod: Mapping[str, Any], containers: Sequence[Mapping[str, Any]]
) -> list[dict[str, Any]]:
    """Copy the template containers and tag the mesh gateway with the service name."""
    prepared = [copy.deepcopy(dict(container)) for container in containers]
    tag_env = {"name": TAG_ENV_NAME, "value": f"{MESH_TAG},{service_name(pod)}"}

    for container in prepared:
        if str(container.get("name", "")).lower() != MESH_CONTAINER_NAME:
            continue
        env = list(container.get("env") or [])
        for index, variable in enumerate(env):
            if variable.get("name") == TAG_ENV_NAME:
                env[index] = tag_env
                break
        else:
            env.append(tag_env)
        container["env"] = env
        break

    return prepared


def _mount_cert_volume(containers: list[dict[str, Any]]) -> None:
    for container in containers:
        mounts = list(container.get("volumeMounts") or [])
        mounts.append({"name": CERT_VOLUME_NAME, "mountPath": CERT_MOUNT_PATH})
        container["volumeMounts"] = mounts


def assemble_pod_spec(pod: Mapping[str, Any], config: SidecarConfig) -> dict[str, Any]:
    """Return a new pod spec with the sidecar template merged in.

    Nothing is deduplicated: applying the template twice injects twice.
    The policy engine's ``injected`` marker is what prevents that.
    """
    spec = copy.deepcopy(dict(pod.get("spec") or {}))

    containers = list(spec.get("containers") or [])
    containers.extend(prepare_sidecar_containers(pod, config.containers))
    spec["containers"] = containers

    host_aliases = list(spec.get("hostAliases") or [])
    host_aliases.append(copy.deepcopy(MESH_HOST_ALIAS))
    spec["hostAliases"] = host_aliases

    if config.init_containers:
        init_containers = list(spec.get("initContainers") or [])
        init_containers.extend(copy.deepcopy(list(config.init_containers)))
        spec["initContainers"] = init_containers

    if config.enable_mesh_tls:
        volumes = list(spec.get("volumes") or [])
        volumes.append({"name": CA_VOLUME_NAME, "configMap": {"name": CA_VOLUME_NAME}})
        volumes.append({"name": CERT_VOLUME_NAME, "emptyDir": {}})
        spec["volumes"] = volumes
        _mount_cert_volume(containers)

    return spec


def service_port_patch(service: Mapping[str, Any]) -> PatchOperation:
    """Point the service at the sidecar port.

    Services exposing several ports get the sidecar port added; services
    with zero or one port have their first port replaced.
    """
    ports = (service.get("spec") or {}).get("ports") or []
    port = {"name": SIDECAR_PORT_NAME, "port": SIDECAR_PORT, "targetPort": SIDECAR_PORT}
    if len(ports) > 1:
        return PatchOperation(op=ADD, path="/spec/ports", value=port)
    return PatchOperation(op=REPLACE, path="/spec/ports/0", value=port)
