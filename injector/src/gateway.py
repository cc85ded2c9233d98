from __future__ import annotations

import copy
import json
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import requests
import yaml

from injector.src.errors import ConfigError, UpstreamError, ValidationError
from injector.src.processor import apply_annotations

LOGGER = logging.getLogger(__name__)

DEFAULT_INBOUND_TEMPLATE = "default-inbound"
DEFAULT_MESH_TEMPLATE = "default-mesh"
SLUG_LOCK_STRIPES = 64

_BASE_DEFINITION: dict[str, Any] = {
    "name": "",
    "slug": "",
    "api_id": "",
    "active": True,
    "use_keyless": True,
    "domain": "",
    "tags": [],
    "certificates": [],
    "proxy": {
        "listen_path": "/",
        "target_url": "",
        "strip_listen_path": True,
    },
    "version_data": {
        "not_versioned": True,
        "versions": {"Default": {"name": "Default", "use_extended_paths": True}},
    },
}

BUILTIN_TEMPLATES: dict[str, dict[str, Any]] = {
    DEFAULT_INBOUND_TEMPLATE: _BASE_DEFINITION,
    DEFAULT_MESH_TEMPLATE: {**_BASE_DEFINITION, "enable_context_vars": True},
}


@dataclass(frozen=True)
class APIDefOptions:
    """Everything needed to render the gateway API definition for one route."""

    slug: str
    name: str
    target: str
    listen_path: str
    hostname: str
    template_name: str
    tags: tuple[str, ...] = ()
    annotations: Mapping[str, str] | None = None


@dataclass
class APIDefinition:
    """A gateway-side API definition as returned by the dashboard."""

    id: str
    slug: str = ""
    domain: str = ""
    certificates: list[str] = field(default_factory=list)
    document: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, object_id: str, document: Mapping[str, Any]) -> APIDefinition:
        return cls(
            id=object_id,
            slug=str(document.get("slug") or ""),
            domain=str(document.get("domain") or ""),
            certificates=list(document.get("certificates") or []),
            document=dict(document),
        )

    def to_document(self) -> dict[str, Any]:
        document = dict(self.document)
        document["certificates"] = list(self.certificates)
        return document


class GatewayClient(Protocol):
    def get_by_slug(self, slug: str) -> APIDefinition | None: ...

    def ensure_service(self, slug: str, definition: Mapping[str, Any]) -> tuple[str, bool]: ...

    def get_by_object_id(self, object_id: str) -> APIDefinition: ...

    def update_api(self, definition: APIDefinition) -> None: ...

    def create_certificate(self, certificate_pem: str, private_key_pem: str) -> str: ...


def load_templates(directory: str | Path | None) -> dict[str, dict[str, Any]]:
    """Return the built-in templates plus any ``*.json``/``*.yaml`` files in ``directory``.

    Files are keyed by their stem, so ``team-defaults.yaml`` is selected with
    ``template.service.tyk.io: team-defaults``.
    """
    templates = copy.deepcopy(BUILTIN_TEMPLATES)
    if not directory:
        return templates

    root = Path(directory)
    if not root.is_dir():
        raise ConfigError(f"template directory {root} does not exist")

    for path in sorted(root.iterdir()):
        if path.suffix not in {".json", ".yaml", ".yml"}:
            continue
        try:
            loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"cannot load API template {path}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigError(f"API template {path} must be a mapping")
        templates[path.stem] = loaded
        LOGGER.info("Loaded API definition template %s", path.stem)
    return templates


def build_api_definition(
    options: APIDefOptions, templates: Mapping[str, Mapping[str, Any]] = BUILTIN_TEMPLATES
) -> dict[str, Any]:
    """Render the API definition for ``options`` from its template.

    The route fields are written over the template, then typed
    ``*.service.tyk.io/`` annotations (inbound routes only) are applied on
    top so workload authors can override any field.
    """
    template = templates.get(options.template_name)
    if template is None:
        raise ValidationError(f"unknown API definition template {options.template_name!r}")

    definition = copy.deepcopy(dict(template))
    definition["name"] = options.name
    definition["slug"] = options.slug
    definition["domain"] = options.hostname
    definition["tags"] = list(options.tags)
    proxy = dict(definition.get("proxy") or {})
    proxy["listen_path"] = _normalize_listen_path(options.listen_path)
    proxy["target_url"] = options.target
    definition["proxy"] = proxy

    if options.annotations:
        definition = apply_annotations(options.annotations, definition)
    return definition


def _normalize_listen_path(listen_path: str) -> str:
    if not listen_path.startswith("/"):
        listen_path = "/" + listen_path
    if not listen_path.endswith("/"):
        listen_path += "/"
    return listen_path


class TykDashboardClient:
    """Gateway capability backed by the Tyk Dashboard REST API.

    Lookup failures are logged and reported as "absent", so a flaky lookup
    leads to a create attempt rather than a denied admission. A fixed pool
    of striped locks keyed by slug serializes lookup-then-create inside
    this process; concurrent replicas can still race on the same slug.
    """

    def __init__(
        self,
        base_url: str,
        secret: str,
        timeout_seconds: float = 10,
        session: requests.Session | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": secret})
        self.logger = logger or LOGGER
        self._slug_locks = tuple(threading.Lock() for _ in range(SLUG_LOCK_STRIPES))

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self.session.request(
                method, self._url(path), timeout=self.timeout_seconds, **kwargs
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise UpstreamError(f"gateway {method} {path} failed: {exc}") from exc
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(f"gateway {method} {path} returned invalid JSON") from exc

    def _lock_for(self, slug: str) -> threading.Lock:
        # Striped: distinct slugs may share a lock, the same slug always does.
        return self._slug_locks[hash(slug) % len(self._slug_locks)]

    def get_by_slug(self, slug: str) -> APIDefinition | None:
        try:
            payload = self._request("GET", "/api/apis", params={"p": -1})
        except UpstreamError:
            self.logger.warning("Lookup of API slug %s failed; treating it as absent", slug)
            return None

        for entry in payload.get("apis") or []:
            document = entry.get("api_definition") or {}
            if document.get("slug") == slug:
                return APIDefinition.from_document(str(document.get("id", "")), document)
        return None

    def create_service(self, definition: Mapping[str, Any]) -> str:
        payload = self._request("POST", "/api/apis", json={"api_definition": dict(definition)})
        object_id = payload.get("Meta") or payload.get("ID")
        if not object_id:
            raise UpstreamError(
                f"gateway did not return an ID for API {definition.get('slug')!r}: "
                f"{json.dumps(payload)}"
            )
        return str(object_id)

    def ensure_service(self, slug: str, definition: Mapping[str, Any]) -> tuple[str, bool]:
        with self._lock_for(slug):
            existing = self.get_by_slug(slug)
            if existing is not None:
                return existing.id, False
            return self.create_service(definition), True

    def get_by_object_id(self, object_id: str) -> APIDefinition:
        payload = self._request("GET", f"/api/apis/{object_id}")
        document = payload.get("api_definition")
        if not isinstance(document, dict):
            raise UpstreamError(f"gateway returned no API definition for {object_id}")
        return APIDefinition.from_document(object_id, document)

    def update_api(self, definition: APIDefinition) -> None:
        self._request(
            "PUT",
            f"/api/apis/{definition.id}",
            json={"api_definition": definition.to_document()},
        )

    def create_certificate(self, certificate_pem: str, private_key_pem: str) -> str:
        bundle = f"{certificate_pem.rstrip()}\n{private_key_pem.rstrip()}\n"
        payload = self._request(
            "POST",
            "/api/certs",
            files={"cert": ("cert.pem", bundle.encode("utf-8"), "application/x-pem-file")},
        )
        certificate_id = payload.get("id")
        if not certificate_id:
            raise UpstreamError("gateway certificate store returned no certificate ID")
        return str(certificate_id)
