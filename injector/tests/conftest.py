from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from injector.tests.fakes import FakeCA, FakeGateway


def _make_pod(
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
    namespace: str = "shop",
    containers: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"generateName": "orders-7d9f-", "namespace": namespace}
    if labels is not None:
        metadata["labels"] = labels
    if annotations is not None:
        metadata["annotations"] = annotations
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": metadata,
        "spec": {
            "containers": containers
            if containers is not None
            else [{"name": "orders", "image": "shop/orders:1.4.2"}]
        },
    }


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def ca() -> FakeCA:
    return FakeCA()


@pytest.fixture
def make_pod() -> Callable[..., dict[str, Any]]:
    return _make_pod
