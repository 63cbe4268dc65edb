from __future__ import annotations

import hashlib
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any
from uuid import UUID

import rfc8785
from pydantic import BaseModel

_JSON_SCALARS = (bool, int, float, str, type(None))


def _to_json_primitive(value: Any) -> Any:
    """Reduce artifact content to the JSON primitives rfc8785 accepts.

    Raises:
        TypeError: If the content holds a value with no JSON representation.
    """
    if isinstance(value, Enum):
        return _to_json_primitive(value.value)
    if isinstance(value, _JSON_SCALARS):
        return value
    if isinstance(value, BaseModel):
        return _to_json_primitive(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): _to_json_primitive(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_to_json_primitive(item) for item in value]
        if isinstance(value, (set, frozenset)):
            items.sort(key=lambda item: rfc8785.dumps(item))
        return items
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"Artifact content of type {type(value).__name__} has no canonical JSON form")


def to_canonical_json(value: Any) -> str:
    """Serialize *value* to RFC 8785 canonical JSON."""
    return rfc8785.dumps(_to_json_primitive(value)).decode("utf-8")


def content_fingerprint(value: Any) -> str:
    """Return the sha256 hex digest of the canonical JSON form of *value*."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
