from __future__ import annotations

import logging
from collections.abc import Collection, Mapping

LOGGER = logging.getLogger(__name__)

INJECT_KEY = "injector.tyk.io/inject"
ROUTE_KEY = "injector.tyk.io/route"
STATUS_KEY = "injector.tyk.io/status"
INBOUND_SERVICE_ID_KEY = "injector.tyk.io/inbound-service-id"
MESH_SERVICE_ID_KEY = "injector.tyk.io/mesh-service-id"
TEMPLATE_KEY = "template.service.tyk.io"

STATUS_INJECTED = "injected"
IGNORED_NAMESPACES: frozenset[str] = frozenset({"kube-system", "kube-public"})
_TRUTHY = {"y", "yes", "true", "on"}


def mutation_required(
    namespace: str,
    annotations: Mapping[str, str] | None,
    name: str = "",
    ignored_namespaces: Collection[str] = IGNORED_NAMESPACES,
) -> bool:
    """Decide whether an object should receive the sidecar.

    System namespaces are never touched, objects already marked
    ``injected`` are left alone, and everything else needs an explicit
    opt-in through the inject annotation.
    """
    if namespace in ignored_namespaces:
        LOGGER.info("Skip mutation for %s, special namespace: %s", name, namespace)
        return False

    values = annotations or {}
    status = values.get(STATUS_KEY, "")
    if status.lower() == STATUS_INJECTED:
        required = False
    else:
        required = values.get(INJECT_KEY, "").lower() in _TRUTHY

    LOGGER.info(
        "Mutation policy for %s/%s: status=%r required=%s", namespace, name, status, required
    )
    return required
