from __future__ import annotations

import base64
import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

ADD = "add"
REPLACE = "replace"


@dataclass(frozen=True)
class PatchOperation:
    """A single RFC 6902 operation.

    ``value`` is omitted from the wire form when ``None`` so ``remove``
    operations serialize cleanly.
    """

    op: str
    path: str
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"op": self.op, "path": self.path}
        if self.value is not None:
            data["value"] = self.value
        return data


def replace_spec(spec: Mapping[str, Any]) -> PatchOperation:
    """Replace the whole object spec, carrying added containers, volumes and aliases."""
    return PatchOperation(op=REPLACE, path="/spec", value=dict(spec))


def add_annotations(annotations: Mapping[str, str]) -> PatchOperation:
    # "add" on an existing member replaces it, so the full map is written in one go.
    return PatchOperation(op=ADD, path="/metadata/annotations", value=dict(annotations))


def patch_document(operations: Iterable[PatchOperation]) -> list[dict[str, Any]]:
    return [operation.to_dict() for operation in operations]


def encode_patch(operations: Iterable[PatchOperation]) -> str:
    """Serialize operations as the base64 JSON Patch expected in AdmissionReview responses."""
    payload = json.dumps(patch_document(operations), separators=(",", ":"))
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")
