from __future__ import annotations

import base64
import logging

from kubernetes import client, config
from kubernetes.client import CoreV1Api
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_core_client() -> CoreV1Api:
    return client.CoreV1Api()


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def upsert_tls_secret(
    core_api: CoreV1Api,
    namespace: str,
    name: str,
    certificate_pem: str,
    private_key_pem: str,
    annotations: dict[str, str] | None = None,
    labels: dict[str, str] | None = None,
) -> None:
    """Create a ``kubernetes.io/tls`` Secret, replacing it when it already exists."""
    body = client.V1Secret(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            annotations=annotations or {},
            labels=labels or {},
        ),
        type="kubernetes.io/tls",
        data={"tls.crt": _b64(certificate_pem), "tls.key": _b64(private_key_pem)},
    )

    try:
        core_api.create_namespaced_secret(namespace=namespace, body=body)
        LOGGER.info("Created certificate secret %s/%s", namespace, name)
    except ApiException as exc:
        if exc.status != 409:
            raise
        core_api.replace_namespaced_secret(name=name, namespace=namespace, body=body)
        LOGGER.info("Replaced certificate secret %s/%s", namespace, name)
