"""Event envelope carried by every transport.

The envelope is the unit a transport stores and redelivers: the event name
is the routing key, the payload is opaque JSON-compatible data that only
the handler validates.

Only the envelope's own fields are typed on the way back from JSON.  The
payload is handed over exactly as decoded, so a date-shaped string sent by
a producer stays a string; deciding what it means is the handler model's
job.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from invoicing_runtime.core.ids import new_id, utc_now
from invoicing_runtime.core.serialization import CustomJson


class EventEnvelope(BaseModel):
    """A named event plus delivery metadata."""

    event_id: str = Field(default_factory=new_id)
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    source: str = "default"
    resources: list[str] = Field(default_factory=list)
    trace_id: str = Field(default_factory=new_id)
    occurred_at: datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True}

    def to_json(self) -> str:
        return CustomJson.to_json({
            "event_id": self.event_id,
            "name": self.name,
            "payload": self.payload,
            "source": self.source,
            "resources": self.resources,
            "trace_id": self.trace_id,
            "occurred_at": self.occurred_at,
        })

    @classmethod
    def from_json(cls, data: str | bytes) -> EventEnvelope:
        # Plain json: payload values must not be revived into datetimes
        raw = json.loads(data)
        if not isinstance(raw, dict):
            raise ValueError("Envelope JSON must be an object")
        return cls.model_validate(raw)
