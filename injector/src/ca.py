from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any, Protocol

import requests
from kubernetes.client import CoreV1Api
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from injector.src.errors import UpstreamError
from injector.src.kube import upsert_tls_secret

LOGGER = logging.getLogger(__name__)

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "tyk-mesh-injector"
HOSTNAME_ANNOTATION = "injector.tyk.io/certificate-hostname"
FINGERPRINT_ANNOTATION = "injector.tyk.io/certificate-id"


@dataclass(frozen=True)
class CertBundle:
    """Certificate material produced by the CA.

    ``bundled`` is the leaf followed by its chain, which is what the
    gateway certificate store expects. ``fingerprint`` is filled in once
    the gateway has accepted the certificate.
    """

    certificate: str
    private_key: str
    bundled: str
    fingerprint: str = ""


@dataclass(frozen=True)
class CertModel:
    hostname: str
    bundle: CertBundle
    created_at: str

    def with_fingerprint(self, fingerprint: str) -> CertModel:
        return replace(self, bundle=replace(self.bundle, fingerprint=fingerprint))


def new_cert_model(hostname: str, bundle: CertBundle) -> CertModel:
    created_at = datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")
    return CertModel(hostname=hostname, bundle=bundle, created_at=created_at)


class CertClient(Protocol):
    def generate_cert(self, hostname: str) -> CertBundle: ...

    def store_cert(self, model: CertModel) -> str: ...


class CertStore(Protocol):
    def save(self, model: CertModel) -> str: ...


def secret_name_for(fingerprint: str) -> str:
    """Return a valid Secret name for a certificate fingerprint."""
    normalized = re.sub(r"[^a-z0-9-]+", "-", fingerprint.lower()).strip("-")
    return f"mesh-cert-{normalized or 'unknown'}"[:253]


class KubernetesCertStore:
    """Keeps a reference copy of issued certificates as TLS Secrets."""

    def __init__(self, core_api: CoreV1Api, namespace: str) -> None:
        self.core_api = core_api
        self.namespace = namespace

    def save(self, model: CertModel) -> str:
        name = secret_name_for(model.bundle.fingerprint)
        try:
            upsert_tls_secret(
                core_api=self.core_api,
                namespace=self.namespace,
                name=name,
                certificate_pem=model.bundle.bundled,
                private_key_pem=model.bundle.private_key,
                annotations={
                    HOSTNAME_ANNOTATION: model.hostname,
                    FINGERPRINT_ANNOTATION: model.bundle.fingerprint,
                },
                labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
            )
        except ApiException as exc:
            raise UpstreamError(
                f"failed to store certificate secret {self.namespace}/{name}: "
                f"status={exc.status} reason={exc.reason}"
            ) from exc
        except HTTPError as exc:
            raise UpstreamError(
                f"failed to store certificate secret {self.namespace}/{name}: {exc}"
            ) from exc
        return name


class CFSSLClient:
    """CA capability talking to a CFSSL-compatible ``newcert`` endpoint."""

    def __init__(
        self,
        base_url: str,
        store: CertStore,
        profile: str = "server",
        key_algorithm: str = "rsa",
        key_size: int = 2048,
        timeout_seconds: float = 10,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.store = store
        self.profile = profile
        self.key_algorithm = key_algorithm
        self.key_size = key_size
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def _request_body(self, hostname: str) -> dict[str, Any]:
        return {
            "request": {
                "CN": hostname,
                "hosts": [hostname],
                "key": {"algo": self.key_algorithm, "size": self.key_size},
            },
            "profile": self.profile,
            "bundle": True,
        }

    def generate_cert(self, hostname: str) -> CertBundle:
        url = f"{self.base_url}/api/v1/cfssl/newcert"
        try:
            response = self.session.post(
                url, json=self._request_body(hostname), timeout=self.timeout_seconds
            )
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            raise UpstreamError(f"CA request for {hostname} failed: {exc}") from exc
        except ValueError as exc:
            raise UpstreamError(f"CA returned invalid JSON for {hostname}") from exc

        if not payload.get("success", False):
            errors = payload.get("errors") or []
            raise UpstreamError(f"CA refused certificate for {hostname}: {errors}")

        result = payload.get("result") or {}
        certificate = result.get("certificate")
        private_key = result.get("private_key")
        if not certificate or not private_key:
            raise UpstreamError(f"CA response for {hostname} is missing certificate material")

        bundled = (result.get("bundle") or {}).get("bundle") or certificate
        LOGGER.info("Generated certificate for %s", hostname)
        return CertBundle(certificate=certificate, private_key=private_key, bundled=bundled)

    def store_cert(self, model: CertModel) -> str:
        return self.store.save(model)
