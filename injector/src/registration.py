from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from injector.src.ca import CertClient, new_cert_model
from injector.src.errors import InjectorError, UpstreamError, ValidationError
from injector.src.gateway import (
    BUILTIN_TEMPLATES,
    DEFAULT_INBOUND_TEMPLATE,
    DEFAULT_MESH_TEMPLATE,
    APIDefOptions,
    GatewayClient,
    build_api_definition,
)
from injector.src.metrics import METRICS
from injector.src.policy import (
    INBOUND_SERVICE_ID_KEY,
    MESH_SERVICE_ID_KEY,
    ROUTE_KEY,
    TEMPLATE_KEY,
)
from injector.src.sidecar import MESH_TAG, SIDECAR_PORT, SidecarConfig

LOGGER = logging.getLogger(__name__)

INBOUND_ROLE = "inbound"
MESH_ROLE = "mesh"
INBOUND_TARGET = "http://localhost:6767"
MESH_HOSTNAME = "mesh"


def route_slug(app: str, role: str) -> str:
    return f"{app}-{role}"


def _template_name(pod_annotations: Mapping[str, str], default: str) -> str:
    return pod_annotations.get(TEMPLATE_KEY) or default


def _ensure_route(
    gateway: GatewayClient,
    role: str,
    options: APIDefOptions,
    templates: Mapping[str, Mapping[str, Any]],
    annotations: dict[str, str],
) -> str:
    try:
        definition = build_api_definition(options, templates)
    except InjectorError as exc:
        exc.partial = annotations
        raise

    try:
        service_id, created = gateway.ensure_service(options.slug, definition)
    except InjectorError as exc:
        raise UpstreamError(
            f"failed to create {role} service {options.slug}: {exc.message}", partial=annotations
        ) from exc

    METRICS.routes_total.labels(role=role, result="created" if created else "reused").inc()
    LOGGER.info(
        "%s route %s for slug %s", "Created" if created else "Reusing", service_id, options.slug
    )
    return service_id


def register_routes(
    pod: Mapping[str, Any],
    annotations: Mapping[str, str],
    namespace: str,
    tls_enabled: bool,
    gateway: GatewayClient,
    templates: Mapping[str, Mapping[str, Any]] = BUILTIN_TEMPLATES,
) -> dict[str, str]:
    """Create or reuse the inbound and mesh routes for a workload.

    Returns a copy of ``annotations`` enriched with both route IDs. When the
    inbound ID is already recorded the routes are assumed to exist and the
    annotations come back unchanged. Failures carry the annotations reached
    so far in ``partial``.
    """
    result = dict(annotations)
    if INBOUND_SERVICE_ID_KEY in result:
        return result

    metadata = pod.get("metadata") or {}
    labels = metadata.get("labels") or {}
    pod_annotations = metadata.get("annotations") or {}
    app = labels.get("app")
    if not app:
        raise ValidationError("app label is required", partial=result)

    hostname = f"{app}.{namespace or 'default'}"

    inbound_slug = route_slug(app, INBOUND_ROLE)
    inbound = APIDefOptions(
        slug=inbound_slug,
        name=inbound_slug,
        target=INBOUND_TARGET,
        listen_path="/",
        hostname=hostname,
        template_name=_template_name(pod_annotations, DEFAULT_INBOUND_TEMPLATE),
        tags=(app,),
        annotations=dict(result),
    )
    result[INBOUND_SERVICE_ID_KEY] = _ensure_route(
        gateway, INBOUND_ROLE, inbound, templates, result
    )

    # The mesh route targets the Kubernetes service so calls are load balanced.
    scheme = "https" if tls_enabled else "http"
    mesh_slug = route_slug(app, MESH_ROLE)
    mesh = APIDefOptions(
        slug=mesh_slug,
        name=mesh_slug,
        target=f"{scheme}://{hostname}:{SIDECAR_PORT}",
        listen_path=pod_annotations.get(ROUTE_KEY) or app,
        hostname=MESH_HOSTNAME,
        template_name=_template_name(pod_annotations, DEFAULT_MESH_TEMPLATE),
        tags=(MESH_TAG,),
    )
    result[MESH_SERVICE_ID_KEY] = _ensure_route(gateway, MESH_ROLE, mesh, templates, result)
    return result


RESOLVE_DOMAIN = "resolve-domain"
GENERATE = "generate"
UPLOAD = "upload"
STORE_REFERENCE = "store-reference"
ATTACH = "attach"
SAGA_STEPS: tuple[str, ...] = (RESOLVE_DOMAIN, GENERATE, UPLOAD, STORE_REFERENCE, ATTACH)


@dataclass
class SagaResult:
    """Progress of one certificate issuance.

    ``completed`` lists finished steps in order, so a failed issuance shows
    exactly which side effects (an uploaded certificate, a stored
    reference) were left behind.
    """

    api_id: str
    certificate_id: str = ""
    completed: list[str] = field(default_factory=list)

    @property
    def furthest_step(self) -> str | None:
        return self.completed[-1] if self.completed else None


class CertificateSaga:
    """Issues a certificate for a gateway API definition and attaches it.

    Steps run in order and the first failure stops the saga. Nothing is
    rolled back: a certificate uploaded before a later failure stays in the
    gateway store.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        ca: CertClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self.gateway = gateway
        self.ca = ca
        self.logger = logger or LOGGER

    def _generate_and_store(self, progress: SagaResult) -> str:
        try:
            definition = self.gateway.get_by_object_id(progress.api_id)
        except InjectorError as exc:
            raise UpstreamError(
                f"can't generate certificate: {exc.message}", partial=progress
            ) from exc
        hostname = definition.domain
        if not hostname:
            raise ValidationError(
                f"can't generate certificate for API {progress.api_id}: domain cannot be empty",
                partial=progress,
            )
        progress.completed.append(RESOLVE_DOMAIN)

        try:
            bundle = self.ca.generate_cert(hostname)
        except InjectorError as exc:
            raise UpstreamError(
                f"can't generate certificate: {exc.message}", partial=progress
            ) from exc
        progress.completed.append(GENERATE)
        self.logger.info("MeshTLS: generated server certificate for %s", hostname)

        try:
            certificate_id = self.gateway.create_certificate(bundle.bundled, bundle.private_key)
        except InjectorError as exc:
            raise UpstreamError(
                f"failed to upload certificate to gateway secure store: {exc.message}",
                partial=progress,
            ) from exc
        progress.certificate_id = certificate_id
        progress.completed.append(UPLOAD)
        self.logger.info("MeshTLS: uploaded certificate %s to gateway store", certificate_id)

        model = new_cert_model(hostname, bundle).with_fingerprint(certificate_id)
        try:
            self.ca.store_cert(model)
        except InjectorError as exc:
            raise UpstreamError(
                f"failed to store certificate reference in controller store: {exc.message}",
                partial=progress,
            ) from exc
        progress.completed.append(STORE_REFERENCE)
        self.logger.info("MeshTLS: stored certificate reference for %s", certificate_id)
        return certificate_id

    def _attach(self, progress: SagaResult) -> None:
        try:
            definition = self.gateway.get_by_object_id(progress.api_id)
        except InjectorError as exc:
            raise UpstreamError(
                f"failed to retrieve API definition: {exc.message}", partial=progress
            ) from exc

        definition.certificates.append(progress.certificate_id)
        try:
            self.gateway.update_api(definition)
        except InjectorError as exc:
            raise UpstreamError(
                f"failed to store updated API definition ({definition.id}): {exc.message}",
                partial=progress,
            ) from exc
        progress.completed.append(ATTACH)

    def issue(self, api_id: str, byo_certificate_id: str = "") -> SagaResult:
        """Run the saga for ``api_id``.

        A ``byo_certificate_id`` skips generation and only attaches the
        given certificate to the definition.
        """
        progress = SagaResult(api_id=api_id, certificate_id=byo_certificate_id)
        if not byo_certificate_id:
            progress.certificate_id = self._generate_and_store(progress)

        self._attach(progress)
        METRICS.certificates_issued_total.labels(
            source="provided" if byo_certificate_id else "generated"
        ).inc()
        self.logger.info(
            "MeshTLS: attached certificate %s to API %s", progress.certificate_id, api_id
        )
        return progress


def handle_mesh_tls(
    annotations: Mapping[str, str], config: SidecarConfig, saga: CertificateSaga | None
) -> list[SagaResult]:
    """Secure the inbound route, then the mesh route, when mesh TLS is enabled."""
    if not config.enable_mesh_tls:
        LOGGER.info("Mesh TLS disabled, skipping certificate issuance")
        return []
    if saga is None:
        raise ValidationError("mesh TLS is enabled but no certificate authority is configured")

    inbound_id = annotations.get(INBOUND_SERVICE_ID_KEY)
    if not inbound_id:
        raise ValidationError("can't generate server cert without an inbound API ID")

    LOGGER.info("MeshTLS: starting last-mile TLS generation")
    results = [saga.issue(inbound_id)]

    mesh_id = annotations.get(MESH_SERVICE_ID_KEY)
    if not mesh_id:
        raise ValidationError("can't generate server cert without a mesh API ID")
    results.append(saga.issue(mesh_id, config.mesh_certificate_id))
    return results
