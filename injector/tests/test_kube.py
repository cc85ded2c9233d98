from __future__ import annotations

import base64
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.exceptions import ApiException

from injector.src.kube import build_core_client, load_kube_configuration, upsert_tls_secret


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("injector.src.kube.config.load_incluster_config") as mock_incluster,
        patch("injector.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "injector.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("injector.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_core_client() -> None:
    with patch("injector.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        core = build_core_client()

    assert core.name == "core"


def test_upsert_tls_secret_creates_secret() -> None:
    core_api = MagicMock()

    upsert_tls_secret(
        core_api=core_api,
        namespace="tyk",
        name="mesh-cert-abc",
        certificate_pem="CERT",
        private_key_pem="KEY",
        labels={"app.kubernetes.io/managed-by": "tyk-mesh-injector"},
    )

    call_kwargs = core_api.create_namespaced_secret.call_args.kwargs
    assert call_kwargs["namespace"] == "tyk"
    body = call_kwargs["body"]
    assert body.metadata.name == "mesh-cert-abc"
    assert body.data["tls.crt"] == base64.b64encode(b"CERT").decode()
    assert body.data["tls.key"] == base64.b64encode(b"KEY").decode()
    core_api.replace_namespaced_secret.assert_not_called()


def test_upsert_tls_secret_replaces_on_conflict() -> None:
    core_api = MagicMock()
    core_api.create_namespaced_secret.side_effect = ApiException(status=409, reason="Conflict")

    upsert_tls_secret(
        core_api=core_api,
        namespace="tyk",
        name="mesh-cert-abc",
        certificate_pem="CERT",
        private_key_pem="KEY",
    )

    call_kwargs = core_api.replace_namespaced_secret.call_args.kwargs
    assert call_kwargs["name"] == "mesh-cert-abc"
    assert call_kwargs["namespace"] == "tyk"


def test_upsert_tls_secret_propagates_other_errors() -> None:
    core_api = MagicMock()
    core_api.create_namespaced_secret.side_effect = ApiException(status=500, reason="boom")

    with pytest.raises(ApiException):
        upsert_tls_secret(
            core_api=core_api,
            namespace="tyk",
            name="mesh-cert-abc",
            certificate_pem="CERT",
            private_key_pem="KEY",
        )
