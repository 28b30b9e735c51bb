"""Canonical ID and timestamp factories for the runtime.

ID Categories
-------------
1. Internal IDs: UUID v4 strings (event_id, job_id, trace_id)
2. Content-derived IDs: SHA256[:N] deterministic hashes (idempotency keys)

Timestamp Rule
--------------
All timestamps are ``datetime`` with ``tzinfo=timezone.utc``, never naive.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone
from typing import Any


def new_id() -> str:
    """Generate a new UUID v4 string.  Use for all internal IDs."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def content_hash(*parts: str, length: int = 16) -> str:
    """Generate a deterministic SHA256-based ID from content strings.

    Concatenates all *parts* with ``':'`` before hashing.
    """
    raw = ":".join(parts)
    return hashlib.sha256(raw.encode()).hexdigest()[:length]


def idempotency_key(*parts: Any, length: int = 32) -> str:
    """Derive a stable idempotency key for a side effect.

    Event handlers may run more than once for the same event; use the key
    when creating derived records so a redelivery finds the existing one.

    Parameters
    ----------
    *parts:
        Values identifying the side effect, typically the event id and the
        id of the record being derived.  ``None`` is rendered as ``""``.
    length:
        Number of hex characters to return (default 32).
    """
    return content_hash(*("" if p is None else str(p) for p in parts), length=length)
