"""Utility helpers shared across the engine."""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone


def stable_id(*parts: str, length: int = 64) -> str:
    """Create a deterministic hex identifier from a set of string parts.

    `length` truncates the sha256 digest; 16 hex digits give a 64-bit space.
    """
    joined = "|".join(p.strip() for p in parts if p is not None)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:length]


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

