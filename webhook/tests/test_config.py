from __future__ import annotations

import pytest

from webhook.src.config import ConfigError, WebhookConfig, env_int, load_config, parse_bool


def test_load_config_defaults() -> None:
    config = load_config({"SIDECAR_CONFIG_PATH": "/etc/injector/sidecar.yaml"})

    assert config == WebhookConfig(sidecar_config_path="/etc/injector/sidecar.yaml")
    assert config.port == 8443
    assert config.cert_store_namespace == "tyk"
    assert config.ca_profile == "server"


def test_load_config_reads_everything() -> None:
    config = load_config(
        {
            "SIDECAR_CONFIG_PATH": "/etc/injector/sidecar.yaml",
            "PORT": "9443",
            "TLS_CERT_FILE": "/tls/tls.crt",
            "TLS_KEY_FILE": "/tls/tls.key",
            "GATEWAY_URL": "http://dashboard.tyk:3000",
            "GATEWAY_SECRET": "s3cr3t",
            "GATEWAY_TIMEOUT_SECONDS": "5",
            "CA_URL": "http://ca.tyk:8888",
            "CA_PROFILE": "mesh",
            "CA_TIMEOUT_SECONDS": "3",
            "CERT_STORE_NAMESPACE": "mesh-certs",
            "TEMPLATE_DIR": "/etc/injector/templates",
        }
    )

    assert config.port == 9443
    assert config.tls_cert_file == "/tls/tls.crt"
    assert config.gateway_url == "http://dashboard.tyk:3000"
    assert config.gateway_secret == "s3cr3t"
    assert config.gateway_timeout_seconds == 5
    assert config.ca_profile == "mesh"
    assert config.ca_timeout_seconds == 3
    assert config.cert_store_namespace == "mesh-certs"
    assert config.template_dir == "/etc/injector/templates"


def test_load_config_requires_sidecar_path() -> None:
    with pytest.raises(ConfigError, match="SIDECAR_CONFIG_PATH"):
        load_config({"SIDECAR_CONFIG_PATH": "  "})


def test_load_config_requires_tls_pair() -> None:
    with pytest.raises(ConfigError, match="set together"):
        load_config({"SIDECAR_CONFIG_PATH": "/s.yaml", "TLS_CERT_FILE": "/tls/tls.crt"})


def test_load_config_reads_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SIDECAR_CONFIG_PATH", "/from/env.yaml")
    monkeypatch.setenv("PORT", "8444")

    config = load_config()

    assert config.sidecar_config_path == "/from/env.yaml"
    assert config.port == 8444


@pytest.mark.parametrize("raw", ["0", "65536", "http"])
def test_invalid_port_is_rejected(raw: str) -> None:
    with pytest.raises(ConfigError, match="PORT"):
        load_config({"SIDECAR_CONFIG_PATH": "/s.yaml", "PORT": raw})


def test_env_int_defaults_on_blank() -> None:
    assert env_int({"X": ""}, "X", 7) == 7
    assert env_int({}, "X", 7, minimum=1, maximum=10) == 7


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, False), ("true", True), (" YES ", True), ("1", True), ("off", False), ("", False)],
)
def test_parse_bool(raw: str | None, expected: bool) -> None:
    assert parse_bool(raw) is expected
