from __future__ import annotations

import json
import logging
import os
import re
import time

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from injector.src.ca import CFSSLClient, KubernetesCertStore
from injector.src.dispatcher import AdmissionCodec, AdmissionDispatcher
from injector.src.gateway import TykDashboardClient, load_templates
from injector.src.kube import build_core_client, load_kube_configuration
from injector.src.registration import CertificateSaga
from injector.src.sidecar import load_sidecar_config
from webhook.src.config import ConfigError, WebhookConfig, load_config, parse_bool

APP_VERSION = "0.3.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"-----BEGIN (?:[A-Z]+ )?PRIVATE KEY-----.*?-----END (?:[A-Z]+ )?PRIVATE KEY-----",
            re.DOTALL,
        ),
        "[REDACTED PRIVATE KEY]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    """Configure structured JSON logging with a level from ``LOG_LEVEL`` env var."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
REQUEST_IN_FLIGHT = Gauge(
    "http_in_flight_requests",
    "Current number of HTTP requests being processed",
)
CONFIG_LOADED_TIMESTAMP = Gauge(
    "mesh_injector_config_loaded_timestamp_seconds",
    "Unix timestamp when the sidecar template was loaded at startup",
)
CONFIG_LOADED_INFO = Gauge(
    "mesh_injector_config_loaded_info",
    "Startup sidecar template metadata",
    ["sidecar_fingerprint", "create_routes", "mesh_tls", "app_version"],
)
KNOWN_METRIC_PATHS = {"/mutate", "/healthz", "/readyz", "/metrics"}
_TRACING_INITIALIZED = False


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records per-request Prometheus counters and histograms.

    Skips the ``/metrics`` endpoint itself to avoid self-referential inflation.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)
        REQUEST_IN_FLIGHT.inc()
        start = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration = time.monotonic() - start
            metric_path = self._normalize_metric_path(request)
            REQUEST_COUNT.labels(method=request.method, path=metric_path, status=status_code).inc()
            REQUEST_DURATION.labels(method=request.method, path=metric_path).observe(duration)
            REQUEST_IN_FLIGHT.dec()
        return response

    @staticmethod
    def _normalize_metric_path(request: Request) -> str:
        route = request.scope.get("route")
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path in KNOWN_METRIC_PATHS:
            return route_path
        if request.url.path in KNOWN_METRIC_PATHS:
            return request.url.path
        return "other"


def configure_tracing(app: FastAPI, logger: logging.Logger) -> None:
    """Enable OpenTelemetry tracing when ``OTEL_ENABLED=true``.

    The injector stays fully functional when OpenTelemetry packages are
    absent; tracing is then skipped with a warning. Outbound gateway and CA
    calls are traced through the ``requests`` instrumentation.
    """
    global _TRACING_INITIALIZED

    if not parse_bool(os.getenv("OTEL_ENABLED")):
        return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.instrumentation.fastapi import (
            FastAPIInstrumentor,
        )
        from opentelemetry.instrumentation.requests import (
            RequestsInstrumentor,
        )
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            BatchSpanProcessor,
        )
    except ImportError:
        logger.warning(
            "OTEL_ENABLED=true but OpenTelemetry packages are not installed; tracing disabled"
        )
        return

    if not _TRACING_INITIALIZED:
        endpoint_base = os.getenv(
            "OTEL_EXPORTER_OTLP_ENDPOINT",
            "http://otel-collector.monitoring.svc:4318",
        )
        endpoint = os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT") or (
            endpoint_base
            if endpoint_base.endswith("/v1/traces")
            else endpoint_base.rstrip("/") + "/v1/traces"
        )

        resource = Resource.create({
            "service.name": os.getenv("OTEL_SERVICE_NAME", "mesh-injector"),
            "service.namespace": os.getenv("OTEL_SERVICE_NAMESPACE", "tyk"),
        })

        provider = TracerProvider(resource=resource)
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        RequestsInstrumentor().instrument()
        _TRACING_INITIALIZED = True
        logger.info("OpenTelemetry tracing enabled (OTLP endpoint=%s)", endpoint)

    FastAPIInstrumentor.instrument_app(app)


def build_dispatcher(config: WebhookConfig) -> AdmissionDispatcher:
    """Wire the dispatcher and its gateway/CA collaborators from ``config``.

    Collaborators are only built when the sidecar template needs them, so a
    plain injection setup runs without any gateway or cluster credentials.
    """
    sidecar_config = load_sidecar_config(config.sidecar_config_path)
    templates = load_templates(config.template_dir or None)

    gateway = None
    if sidecar_config.create_routes or sidecar_config.enable_mesh_tls:
        if not config.gateway_url:
            raise ConfigError("GATEWAY_URL is required when createRoutes or enableMeshTLS is set")
        gateway = TykDashboardClient(
            base_url=config.gateway_url,
            secret=config.gateway_secret,
            timeout_seconds=config.gateway_timeout_seconds,
        )

    saga = None
    if sidecar_config.enable_mesh_tls:
        if not config.ca_url:
            raise ConfigError("CA_URL is required when enableMeshTLS is set")
        load_kube_configuration()
        store = KubernetesCertStore(build_core_client(), namespace=config.cert_store_namespace)
        ca_client = CFSSLClient(
            base_url=config.ca_url,
            store=store,
            profile=config.ca_profile,
            timeout_seconds=config.ca_timeout_seconds,
        )
        saga = CertificateSaga(gateway=gateway, ca=ca_client)

    return AdmissionDispatcher(
        sidecar_config=sidecar_config,
        gateway=gateway,
        saga=saga,
        codec=AdmissionCodec(),
        templates=templates,
    )


def create_app(
    dispatcher: AdmissionDispatcher | None = None,
    config: WebhookConfig | None = None,
) -> FastAPI:
    """Create and configure the admission webhook FastAPI application.

    Endpoints:
        ``POST /mutate``  AdmissionReview in, AdmissionReview (with JSON Patch) out.
        ``GET /healthz``  Liveness probe (always ``200 ok``).
        ``GET /readyz``   Readiness probe; includes the sidecar template fingerprint.
        ``GET /metrics``  Prometheus metrics in text exposition format.
    """
    configure_logging()
    logger = logging.getLogger(__name__)
    if dispatcher is None:
        dispatcher = build_dispatcher(config or load_config())

    sidecar_config = dispatcher.sidecar_config
    fingerprint = sidecar_config.fingerprint[:12] or "none"
    logger.info(
        "Starting mesh injector (sidecar sha256=%s createRoutes=%s meshTLS=%s)",
        fingerprint,
        sidecar_config.create_routes,
        sidecar_config.enable_mesh_tls,
    )

    app = FastAPI(title="mesh-injector", version=APP_VERSION)
    CONFIG_LOADED_TIMESTAMP.set_to_current_time()
    CONFIG_LOADED_INFO.clear()
    CONFIG_LOADED_INFO.labels(
        sidecar_fingerprint=fingerprint,
        create_routes=str(sidecar_config.create_routes).lower(),
        mesh_tls=str(sidecar_config.enable_mesh_tls).lower(),
        app_version=app.version,
    ).set(1)
    app.state.dispatcher = dispatcher
    app.add_middleware(MetricsMiddleware)
    configure_tracing(app, logger)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Return a standardized JSON error body for unhandled exceptions."""
        logger.exception("Unhandled error for %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "internal_server_error", "detail": "An unexpected error occurred."},
        )

    @app.post("/mutate")
    async def mutate(request: Request) -> Response:
        body = await request.body()
        if not body:
            logger.error("empty body")
            return PlainTextResponse("empty body", status_code=400)

        content_type = request.headers.get("content-type", "")
        if content_type.split(";", 1)[0].strip().lower() != "application/json":
            logger.error("Content-Type=%s, expect application/json", content_type)
            return PlainTextResponse(
                "invalid Content-Type, expect `application/json`", status_code=415
            )

        # Gateway and CA calls block, so keep them off the event loop.
        review = await run_in_threadpool(dispatcher.review, body)
        return JSONResponse(review)

    @app.get("/healthz", response_class=PlainTextResponse)
    def healthz() -> str:
        return "ok"

    @app.get("/readyz", response_class=PlainTextResponse)
    def readyz() -> str:
        return f"ok sidecar={fingerprint}"

    @app.get("/metrics", response_class=PlainTextResponse)
    def metrics() -> bytes:
        return generate_latest()

    return app
