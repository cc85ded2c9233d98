"""Annotation-driven mutation of JSON documents.

Workload authors shape the gateway API definition created for them by
adding typed annotations to their pods::

    string.service.tyk.io/proxy.listen-path: "/orders"
    bool.service.tyk.io/use-keyless: "true"
    num.service.tyk.io/cache-options.cache-timeout: "60"
    object.service.tyk.io/config-data: '{"team": "orders"}'
    array.service.tyk.io/allowed-ips: '["10.0.0.0/8"]'

The prefix selects how the value is coerced, the remainder is a dotted path
into the document. Dashes in the path become underscores so that keys stay
valid annotation names while matching the gateway's snake_case fields.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from collections.abc import Callable, Mapping
from typing import Any

from injector.src.errors import ParseError, ProcessorError, UnsupportedValue

LOGGER = logging.getLogger(__name__)

STRING_PREFIX = "string.service.tyk.io/"
BOOL_PREFIX = "bool.service.tyk.io/"
NUM_PREFIX = "num.service.tyk.io/"
OBJECT_PREFIX = "object.service.tyk.io/"
ARRAY_PREFIX = "array.service.tyk.io/"

_INTEGER = re.compile(r"[+-]?[0-9]+")
_INDEX = re.compile(r"[0-9]+")


def _as_string(key: str, value: str) -> str:
    return value


def _as_bool(key: str, value: str) -> bool:
    lowered = value.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    raise UnsupportedValue(f"unsupported bool value {value!r} for annotation {key}")


def _as_num(key: str, value: str) -> int:
    if not _INTEGER.fullmatch(value):
        raise ParseError(f"invalid integer {value!r} for annotation {key}")
    return int(value)


def _as_json(expected: type, label: str) -> Callable[[str, str], Any]:
    def convert(key: str, value: str) -> Any:
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ParseError(f"invalid {label} for annotation {key}: {exc}") from exc
        if not isinstance(decoded, expected):
            raise ParseError(f"annotation {key} must hold a JSON {label}")
        return decoded

    return convert


_CONVERTERS: tuple[tuple[str, Callable[[str, str], Any]], ...] = (
    (STRING_PREFIX, _as_string),
    (BOOL_PREFIX, _as_bool),
    (NUM_PREFIX, _as_num),
    (OBJECT_PREFIX, _as_json(dict, "object")),
    (ARRAY_PREFIX, _as_json(list, "array")),
)


def annotation_path(key: str, prefix: str) -> str:
    """Strip the typed prefix and translate ``-`` to ``_``."""
    return key[len(prefix):].replace("-", "_")


def _is_index(segment: str) -> bool:
    return bool(_INDEX.fullmatch(segment))


def _list_index(container: list[Any], segment: str) -> int:
    """Return ``segment`` as a position that overwrites or appends to ``container``."""
    index = int(segment)
    if index > len(container):
        raise ParseError(
            f"index {index} is out of range for a list of length {len(container)}"
        )
    if index == len(container):
        container.append(None)
    return index


def _descend(container: Any, segment: str, next_segment: str) -> Any:
    """Return the child at ``segment``, replacing it when it cannot hold ``next_segment``."""
    if isinstance(container, list):
        index = _list_index(container, segment)
        child = container[index]
    else:
        child = container.get(segment)
    keeps = isinstance(child, dict) or (isinstance(child, list) and _is_index(next_segment))
    if not keeps:
        child = {}
        if isinstance(container, list):
            container[index] = child
        else:
            container[segment] = child
    return child


def set_path(document: dict[str, Any], path: str, value: Any) -> None:
    """Write ``value`` at the dotted ``path``, creating intermediate objects.

    Numeric segments index into lists that already exist, either
    overwriting an element or appending one right after the last; anywhere
    else they are plain object keys. A scalar in the way is overwritten by
    an object.
    """
    segments = path.split(".")
    current: Any = document
    for segment, next_segment in zip(segments, segments[1:]):
        current = _descend(current, segment, next_segment)

    last = segments[-1]
    if isinstance(current, list):
        current[_list_index(current, last)] = value
    else:
        current[last] = value


def apply_annotations(
    annotations: Mapping[str, str], document: Mapping[str, Any]
) -> dict[str, Any]:
    """Apply every typed annotation onto a copy of ``document``.

    Keys are processed in lexicographic order, so when two keys resolve to
    the same path the later one wins deterministically. Unknown prefixes are
    ignored. The first malformed value aborts processing; the raised
    :class:`~injector.src.errors.ProcessorError` carries the document as it
    stood at that point in ``partial``.
    """
    result: dict[str, Any] = copy.deepcopy(dict(document))
    for key in sorted(annotations):
        for prefix, convert in _CONVERTERS:
            if not key.startswith(prefix):
                continue
            path = annotation_path(key, prefix)
            if not path:
                raise ParseError(f"annotation {key} has an empty path", partial=result)
            try:
                value = convert(key, annotations[key])
                LOGGER.debug("Setting %s value at %s", prefix.split(".", 1)[0], path)
                set_path(result, path, value)
            except ProcessorError as exc:
                exc.partial = result
                raise
            break
    return result
