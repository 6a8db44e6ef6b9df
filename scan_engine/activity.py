"""Per-user activity feed for run visibility.

Process-scoped and NOT durable: a user's buffer is created on first append,
holds the most recent `MAX_EVENTS_PER_USER` entries (oldest evicted first)
and disappears when the process restarts. Nothing here is ever used to infer
a pause or stop; that is the explicit StopSignal's job.
"""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from .utils import utc_now

MAX_EVENTS_PER_USER = 50


class ActivityEntry(BaseModel):
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class ActivityLog:
    def __init__(self, max_events: int = MAX_EVENTS_PER_USER) -> None:
        self._max_events = max_events
        self._buffers: Dict[str, Deque[ActivityEntry]] = {}
        self._lock = threading.Lock()

    def append(self, user_id: str, type: str, **payload: Any) -> ActivityEntry:
        entry = ActivityEntry(type=type, payload=payload)
        with self._lock:
            buffer = self._buffers.get(user_id)
            if buffer is None:
                buffer = self._buffers[user_id] = deque(maxlen=self._max_events)
            buffer.append(entry)
        return entry

    def recent(self, user_id: str, limit: int = 20) -> List[ActivityEntry]:
        with self._lock:
            buffer = self._buffers.get(user_id)
            if not buffer:
                return []
            return list(buffer)[-limit:]

    def clear(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._buffers.clear()
            else:
                self._buffers.pop(user_id, None)


# Shared by every run in this process.
ACTIVITY = ActivityLog()
