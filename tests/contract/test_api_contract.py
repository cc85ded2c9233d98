from __future__ import annotations

import base64
import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from webhook.src.main import create_app

SIDECAR_YAML = """\
containers:
  - name: tyk-mesh
    image: tykio/tyk-gateway:v5.3
    env:
      - name: TYK_GW_LISTENPORT
        value: "8080"
"""


@pytest.fixture
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    sidecar = tmp_path / "sidecar.yaml"
    sidecar.write_text(SIDECAR_YAML)
    monkeypatch.setenv("SIDECAR_CONFIG_PATH", str(sidecar))
    monkeypatch.delenv("GATEWAY_URL", raising=False)
    return TestClient(create_app(), raise_server_exceptions=False)


def _review(api_version: str, kind: str, obj: dict) -> dict:
    return {
        "apiVersion": api_version,
        "kind": "AdmissionReview",
        "request": {
            "uid": "contract-uid",
            "kind": {"group": "", "version": "v1", "kind": kind},
            "namespace": "shop",
            "operation": "CREATE",
            "userInfo": {"username": "contract"},
            "object": obj,
        },
    }


def _pod(annotations: dict[str, str]) -> dict:
    return {
        "metadata": {
            "name": "orders-0",
            "namespace": "shop",
            "labels": {"app": "orders"},
            "annotations": annotations,
        },
        "spec": {"containers": [{"name": "orders", "image": "shop/orders:1.4.2"}]},
    }


def test_openapi_contains_documented_paths(client: TestClient) -> None:
    schema = client.get("/openapi.json")
    assert schema.status_code == 200
    paths = schema.json()["paths"]
    assert "/mutate" in paths
    assert "/healthz" in paths
    assert "/readyz" in paths
    assert "/metrics" in paths


@pytest.mark.parametrize("api_version", ["admission.k8s.io/v1", "admission.k8s.io/v1beta1"])
def test_mutate_contract(client: TestClient, api_version: str) -> None:
    response = client.post(
        "/mutate", json=_review(api_version, "Pod", _pod({"injector.tyk.io/inject": "true"}))
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/json")

    body = response.json()
    assert body["apiVersion"] == api_version
    assert body["kind"] == "AdmissionReview"
    assert body["response"]["uid"] == "contract-uid"
    assert body["response"]["allowed"] is True
    assert body["response"]["patchType"] == "JSONPatch"
    patch = json.loads(base64.b64decode(body["response"]["patch"]))
    assert all(set(op) == {"op", "path", "value"} for op in patch)


def test_mutate_skip_contract(client: TestClient) -> None:
    response = client.post("/mutate", json=_review("admission.k8s.io/v1", "Pod", _pod({})))
    assert response.status_code == 200
    assert response.json()["response"] == {"uid": "contract-uid", "allowed": True}


def test_mutate_denial_contract(client: TestClient) -> None:
    response = client.post(
        "/mutate", json=_review("admission.k8s.io/v1", "ConfigMap", {"metadata": {}})
    )
    assert response.status_code == 200
    assert response.json()["response"] == {
        "uid": "contract-uid",
        "allowed": False,
        "status": {"message": "type not supported"},
    }


def test_mutate_content_type_contract(client: TestClient) -> None:
    response = client.post("/mutate", content=b"{}", headers={"Content-Type": "text/plain"})
    assert response.status_code == 415
    assert response.headers["content-type"].startswith("text/plain")


def test_healthz_contract(client: TestClient) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.text == "ok"
    assert response.headers["content-type"].startswith("text/plain")


def test_readyz_contract(client: TestClient) -> None:
    response = client.get("/readyz")
    assert response.status_code == 200
    assert response.text.startswith("ok sidecar=")
    assert response.headers["content-type"].startswith("text/plain")


def test_metrics_contract(client: TestClient) -> None:
    client.get("/healthz")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "http_requests_total" in response.text


def test_not_found_contract(client: TestClient) -> None:
    response = client.get("/does-not-exist")
    assert response.status_code == 404
    assert response.json() == {"detail": "Not Found"}


def test_internal_error_contract(client: TestClient) -> None:
    app = client.app

    @app.get("/contract-boom")
    def contract_boom() -> str:
        raise RuntimeError("boom")

    response = client.get("/contract-boom")

    assert response.status_code == 500
    assert response.json() == {
        "error": "internal_server_error",
        "detail": "An unexpected error occurred.",
    }
