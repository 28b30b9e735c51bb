"""JSON codec for event payloads.

Datetimes are written as ISO-8601 UTC strings with millisecond precision
(``2024-06-01T12:00:00.000Z``) and revived on read, so a payload that
crosses the transport comes back with the same types it was sent with.
"""

from __future__ import annotations

import json
import re
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")


def _format_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _default(value: Any) -> Any:
    if isinstance(value, datetime):
        return _format_datetime(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="python")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _revive(value: Any) -> Any:
    if isinstance(value, str) and _ISO_DATE_RE.match(value):
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(
            tzinfo=timezone.utc
        )
    if isinstance(value, list):
        return [_revive(v) for v in value]
    return value


def _object_hook(obj: dict[str, Any]) -> dict[str, Any]:
    return {k: _revive(v) for k, v in obj.items()}


class CustomJson:
    """JSON encode/decode with datetime round-tripping."""

    @staticmethod
    def to_json(data: Any) -> str:
        return json.dumps(data, default=_default, separators=(",", ":"))

    @staticmethod
    def from_json(data: str | bytes | None) -> Any:
        if data is None:
            return None
        return _revive(json.loads(data, object_hook=_object_hook))
