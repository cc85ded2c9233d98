from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from injector.src.errors import ConfigError

__all__ = ["ConfigError", "WebhookConfig", "env_int", "load_config", "parse_bool"]


@dataclass(frozen=True)
class WebhookConfig:
    """Immutable process configuration loaded at startup.

    Attributes:
        sidecar_config_path: YAML sidecar template (containers and feature flags).
        port:                Listen port for the admission endpoint.
        tls_cert_file:       Serving certificate; empty runs plain HTTP (local dev).
        tls_key_file:        Key matching ``tls_cert_file``.
        gateway_url:         Tyk Dashboard base URL, needed when routes are created.
        gateway_secret:      Dashboard API secret sent as ``Authorization``.
        gateway_timeout_seconds: Per-request timeout for dashboard calls.
        ca_url:              CFSSL-compatible CA, needed when mesh TLS is enabled.
        ca_profile:          CA signing profile for server certificates.
        ca_timeout_seconds:  Per-request timeout for CA calls.
        cert_store_namespace: Namespace holding certificate reference Secrets.
        template_dir:        Optional directory of extra API definition templates.
    """

    sidecar_config_path: str
    port: int = 8443
    tls_cert_file: str = ""
    tls_key_file: str = ""
    gateway_url: str = ""
    gateway_secret: str = ""
    gateway_timeout_seconds: int = 10
    ca_url: str = ""
    ca_profile: str = "server"
    ca_timeout_seconds: int = 10
    cert_store_namespace: str = "tyk"
    template_dir: str = ""


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> WebhookConfig:
    """Load the injector configuration from the environment.

    Only ``SIDECAR_CONFIG_PATH`` is mandatory. Whether the gateway and CA
    settings are required depends on the sidecar template flags and is
    checked when the dispatcher is built.
    """
    values = env if env is not None else os.environ

    sidecar_config_path = (values.get("SIDECAR_CONFIG_PATH") or "").strip()
    if not sidecar_config_path:
        raise ConfigError("SIDECAR_CONFIG_PATH is not set. Point it at the sidecar template YAML.")

    tls_cert_file = (values.get("TLS_CERT_FILE") or "").strip()
    tls_key_file = (values.get("TLS_KEY_FILE") or "").strip()
    if bool(tls_cert_file) != bool(tls_key_file):
        raise ConfigError("TLS_CERT_FILE and TLS_KEY_FILE must be set together")

    return WebhookConfig(
        sidecar_config_path=sidecar_config_path,
        port=env_int(values, "PORT", 8443, minimum=1, maximum=65535),
        tls_cert_file=tls_cert_file,
        tls_key_file=tls_key_file,
        gateway_url=(values.get("GATEWAY_URL") or "").strip(),
        gateway_secret=values.get("GATEWAY_SECRET") or "",
        gateway_timeout_seconds=env_int(values, "GATEWAY_TIMEOUT_SECONDS", 10, minimum=1),
        ca_url=(values.get("CA_URL") or "").strip(),
        ca_profile=(values.get("CA_PROFILE") or "server").strip(),
        ca_timeout_seconds=env_int(values, "CA_TIMEOUT_SECONDS", 10, minimum=1),
        cert_store_namespace=(values.get("CERT_STORE_NAMESPACE") or "tyk").strip(),
        template_dir=(values.get("TEMPLATE_DIR") or "").strip(),
    )
