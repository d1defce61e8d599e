# backend/app/canonical.py
"""Deterministic payload encoding and content hashing.

Logically identical payloads must always encode to byte-identical output:
keys are sorted, separators are compact, datetimes are rendered as ISO-8601
UTC and enums as their values. NaN/Infinity are refused since they have no
stable JSON form.
"""
import hashlib
import json
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Union


def _default(value: Any):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not canonically serializable")


def to_iso(value: datetime) -> str:
    # Mongo hands back naive datetimes unless tz_aware is set; treat them as UTC.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def canonical_json(payload: Any) -> bytes:
    return json.dumps(
        payload,
        default=_default,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def content_hash(data: Union[bytes, str]) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()
