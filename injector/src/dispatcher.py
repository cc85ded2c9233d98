from __future__ import annotations

import json
import logging
import time
from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from typing import Any

from injector.src.errors import DecodeError, InjectorError, ValidationError
from injector.src.gateway import BUILTIN_TEMPLATES, GatewayClient
from injector.src.metrics import METRICS
from injector.src.patch import (
    PatchOperation,
    add_annotations,
    encode_patch,
    patch_document,
    replace_spec,
)
from injector.src.policy import (
    IGNORED_NAMESPACES,
    INJECT_KEY,
    STATUS_INJECTED,
    STATUS_KEY,
    mutation_required,
)
from injector.src.registration import CertificateSaga, handle_mesh_tls, register_routes
from injector.src.sidecar import SidecarConfig, assemble_pod_spec, service_port_patch

ADMISSION_V1 = "admission.k8s.io/v1"
ADMISSION_V1BETA1 = "admission.k8s.io/v1beta1"

RECEIVED = "Received"
DECODED = "Decoded"
POLICY_CHECKED = "PolicyChecked"
SKIPPED = "Skipped"
MUTATED = "Mutated"
RESPONDED = "Responded"


@dataclass(frozen=True)
class AdmissionRequest:
    """The parts of an AdmissionReview request the injector acts on."""

    uid: str
    kind: str
    namespace: str
    name: str
    operation: str
    user_info: Mapping[str, Any]
    object: Mapping[str, Any]
    api_version: str = ADMISSION_V1


@dataclass(frozen=True)
class AdmissionResponse:
    uid: str
    allowed: bool
    patch: tuple[PatchOperation, ...] = ()
    message: str = ""


@dataclass(frozen=True)
class AdmissionCodec:
    """Decodes AdmissionReview requests and encodes responses.

    Built once at startup and handed to the dispatcher. Responses are
    written in the apiVersion the API server used for the request.
    """

    default_api_version: str = ADMISSION_V1
    supported_versions: frozenset[str] = field(
        default_factory=lambda: frozenset({ADMISSION_V1, ADMISSION_V1BETA1})
    )

    def decode_review(self, body: bytes | str | Mapping[str, Any]) -> AdmissionRequest:
        if isinstance(body, Mapping):
            review: Any = body
        else:
            try:
                review = json.loads(body)
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                raise DecodeError(f"can't decode body: {exc}") from exc

        if not isinstance(review, Mapping):
            raise DecodeError("can't decode body: AdmissionReview must be a JSON object")

        api_version = review.get("apiVersion") or self.default_api_version
        if api_version not in self.supported_versions:
            raise DecodeError(f"unsupported AdmissionReview apiVersion {api_version!r}")
        if review.get("kind", "AdmissionReview") != "AdmissionReview":
            raise DecodeError(f"unexpected kind {review.get('kind')!r}, expected AdmissionReview")

        request = review.get("request")
        if not isinstance(request, Mapping):
            raise DecodeError("AdmissionReview has no request")

        kind = request.get("kind") or {}
        if not isinstance(kind, Mapping):
            raise DecodeError("AdmissionReview request.kind must be an object")

        return AdmissionRequest(
            uid=str(request.get("uid") or ""),
            kind=str(kind.get("kind") or ""),
            namespace=str(request.get("namespace") or ""),
            name=str(request.get("name") or ""),
            operation=str(request.get("operation") or ""),
            user_info=request.get("userInfo") or {},
            object=request.get("object") or {},
            api_version=api_version,
        )

    def decode_object(self, request: AdmissionRequest) -> dict[str, Any]:
        """Return a private copy of the target object with a usable metadata block."""
        raw = request.object
        if not isinstance(raw, Mapping) or not raw:
            raise DecodeError(f"could not unmarshal raw {request.kind or 'object'}")

        target = json.loads(json.dumps(raw))
        metadata = target.get("metadata")
        if metadata is None:
            metadata = target["metadata"] = {}
        if not isinstance(metadata, dict):
            raise DecodeError("object metadata must be a mapping")
        for key in ("labels", "annotations"):
            value = metadata.get(key)
            if value is not None and not isinstance(value, dict):
                raise DecodeError(f"object metadata.{key} must be a mapping")
        spec = target.get("spec")
        if spec is not None and not isinstance(spec, dict):
            raise DecodeError("object spec must be a mapping")
        return target

    def encode_response(
        self, response: AdmissionResponse, api_version: str | None = None
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"uid": response.uid, "allowed": response.allowed}
        if response.patch:
            body["patchType"] = "JSONPatch"
            body["patch"] = encode_patch(response.patch)
        if response.message:
            body["status"] = {"message": response.message}
        return {
            "apiVersion": api_version or self.default_api_version,
            "kind": "AdmissionReview",
            "response": body,
        }


class AdmissionDispatcher:
    """Routes admission reviews to the Pod or Service mutation pipeline.

    Each review moves through ``Received -> Decoded -> PolicyChecked`` and
    then either ``Skipped`` (allowed, no patch) or ``Mutated`` (allowed
    with a JSON Patch) before being ``Responded``. Any failure along the
    way is answered with ``allowed=false`` and a readable message; nothing
    is retried here, the API server's webhook policy decides what happens
    next.
    """

    def __init__(
        self,
        sidecar_config: SidecarConfig,
        gateway: GatewayClient | None = None,
        saga: CertificateSaga | None = None,
        codec: AdmissionCodec | None = None,
        templates: Mapping[str, Mapping[str, Any]] = BUILTIN_TEMPLATES,
        ignored_namespaces: Collection[str] = IGNORED_NAMESPACES,
        logger: logging.Logger | None = None,
    ) -> None:
        self.sidecar_config = sidecar_config
        self.gateway = gateway
        self.saga = saga
        self.codec = codec or AdmissionCodec()
        self.templates = templates
        self.ignored_namespaces = ignored_namespaces
        self.logger = logger or logging.getLogger(__name__)

    def _transition(self, uid: str, state: str) -> None:
        self.logger.debug("AdmissionReview %s -> %s", uid or "<unknown>", state)

    def review(self, body: bytes | str | Mapping[str, Any]) -> dict[str, Any]:
        """Handle one raw AdmissionReview and return the response review."""
        self._transition("", RECEIVED)
        try:
            request = self.codec.decode_review(body)
        except DecodeError as exc:
            self.logger.error("can't decode body: %s", exc.message)
            METRICS.admissions_total.labels(kind="unknown", outcome="denied").inc()
            METRICS.admission_errors_total.labels(kind="unknown", error="DecodeError").inc()
            response = AdmissionResponse(uid="", allowed=False, message=exc.message)
            self._transition("", RESPONDED)
            return self.codec.encode_response(response)

        response = self.mutate(request)
        self._transition(request.uid, RESPONDED)
        return self.codec.encode_response(response, request.api_version)

    def mutate(self, request: AdmissionRequest) -> AdmissionResponse:
        kind = request.kind.lower()
        metric_kind = kind if kind in {"pod", "service"} else "other"
        start = time.monotonic()
        try:
            if kind == "pod":
                response = self._process_pod(request)
            elif kind == "service":
                response = self._process_service(request)
            else:
                raise ValidationError("type not supported")
        except InjectorError as exc:
            self.logger.error(
                "Denying %s %s/%s (uid=%s): %s",
                request.kind,
                request.namespace,
                request.name,
                request.uid,
                exc.message,
            )
            METRICS.admission_errors_total.labels(
                kind=metric_kind, error=type(exc).__name__
            ).inc()
            response = AdmissionResponse(uid=request.uid, allowed=False, message=exc.message)
        except Exception as exc:
            self.logger.exception(
                "Unexpected error handling %s admission (uid=%s)", request.kind, request.uid
            )
            METRICS.admission_errors_total.labels(kind=metric_kind, error="internal").inc()
            response = AdmissionResponse(
                uid=request.uid, allowed=False, message=f"internal error: {exc}"
            )
        finally:
            METRICS.admission_duration_seconds.labels(kind=metric_kind).observe(
                time.monotonic() - start
            )

        if not response.allowed:
            outcome = "denied"
        elif response.patch:
            outcome = "mutated"
        else:
            outcome = "skipped"
        METRICS.admissions_total.labels(kind=metric_kind, outcome=outcome).inc()
        return response

    def _decode(self, request: AdmissionRequest) -> tuple[dict[str, Any], str, str]:
        target = self.codec.decode_object(request)
        self._transition(request.uid, DECODED)
        metadata = target["metadata"]
        namespace = metadata.get("namespace") or request.namespace
        name = metadata.get("name") or metadata.get("generateName") or request.name
        self.logger.info(
            "AdmissionReview for Kind=%s Namespace=%s Name=%s UID=%s Operation=%s User=%s",
            request.kind,
            namespace,
            name,
            request.uid,
            request.operation,
            request.user_info.get("username", ""),
        )
        return target, namespace, name

    def _required(self, target: Mapping[str, Any], namespace: str, name: str, uid: str) -> bool:
        required = mutation_required(
            namespace,
            target["metadata"].get("annotations"),
            name=name,
            ignored_namespaces=self.ignored_namespaces,
        )
        self._transition(uid, POLICY_CHECKED)
        if not required:
            self.logger.info("Skipping mutation for %s/%s due to policy check", namespace, name)
            self._transition(uid, SKIPPED)
        return required

    @staticmethod
    def _mark_injected(target: Mapping[str, Any]) -> dict[str, str]:
        annotations = dict(target["metadata"].get("annotations") or {})
        annotations[STATUS_KEY] = STATUS_INJECTED
        annotations.pop(INJECT_KEY, None)
        return annotations

    def _respond(
        self, request: AdmissionRequest, operations: tuple[PatchOperation, ...]
    ) -> AdmissionResponse:
        self._transition(request.uid, MUTATED)
        self.logger.info(
            "AdmissionResponse uid=%s with %d patch operation(s)", request.uid, len(operations)
        )
        self.logger.debug(
            "AdmissionResponse patch=%s", json.dumps(patch_document(operations))
        )
        return AdmissionResponse(uid=request.uid, allowed=True, patch=operations)

    def _process_pod(self, request: AdmissionRequest) -> AdmissionResponse:
        pod, namespace, name = self._decode(request)
        if not self._required(pod, namespace, name, request.uid):
            return AdmissionResponse(uid=request.uid, allowed=True)

        config = self.sidecar_config
        annotations = self._mark_injected(pod)

        # Routes come first: the certificate saga needs their IDs.
        if config.create_routes:
            if self.gateway is None:
                raise ValidationError("route creation is enabled but no gateway is configured")
            annotations = register_routes(
                pod,
                annotations,
                namespace,
                config.enable_mesh_tls,
                self.gateway,
                self.templates,
            )

        handle_mesh_tls(annotations, config, self.saga)

        spec = assemble_pod_spec(pod, config)
        return self._respond(request, (replace_spec(spec), add_annotations(annotations)))

    def _process_service(self, request: AdmissionRequest) -> AdmissionResponse:
        service, namespace, name = self._decode(request)
        if not self._required(service, namespace, name, request.uid):
            return AdmissionResponse(uid=request.uid, allowed=True)

        annotations = self._mark_injected(service)
        return self._respond(request, (service_port_patch(service), add_annotations(annotations)))
