"""Persistence boundary.

The relational store is an external collaborator. The engine talks to it
through the small protocols below; the in-memory implementations are the
reference behaviour (and what the CLI and tests use):
- jobs are upserted by dedupe key, which is unique
- an update replaces every mutable field, keeps `first_seen_at` and the
  earliest known `posted_at`, and bumps `last_seen_at`
- plans are stored as snapshots, so later mutation of a live plan never
  leaks into what was saved
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel

from .models import CanonicalJob, SourceRecord, WorkflowPlan
from .utils import utc_now


class UpsertOutcome(BaseModel):
    dedupe_key: str
    created: bool


class JobStore(Protocol):
    def upsert(self, job: CanonicalJob, now: Optional[datetime] = None) -> UpsertOutcome:
        ...

    def get(self, dedupe_key: str) -> Optional[CanonicalJob]:
        ...


class PlanStore(Protocol):
    def save(self, plan: WorkflowPlan) -> None:
        ...

    def get(self, plan_id: str) -> Optional[WorkflowPlan]:
        ...


class SourceStore(Protocol):
    def get(self, source_id: str) -> Optional[SourceRecord]:
        ...

    def list_enabled(self, user_id: Optional[str] = None) -> List[SourceRecord]:
        ...

    def save(self, source: SourceRecord) -> None:
        ...


class ProfileStore(Protocol):
    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        ...


def _earliest(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b)


class InMemoryJobStore:
    """Job rows keyed (uniquely) by dedupe key."""

    def __init__(self) -> None:
        self._rows: Dict[str, CanonicalJob] = {}
        self._lock = threading.Lock()

    def upsert(self, job: CanonicalJob, now: Optional[datetime] = None) -> UpsertOutcome:
        now = now or utc_now()
        with self._lock:
            existing = self._rows.get(job.dedupe_key)
            if existing is None:
                self._rows[job.dedupe_key] = job.model_copy(
                    update={"first_seen_at": job.first_seen_at or now, "last_seen_at": now}, deep=True
                )
                return UpsertOutcome(dedupe_key=job.dedupe_key, created=True)

            self._rows[job.dedupe_key] = job.model_copy(
                update={
                    "first_seen_at": existing.first_seen_at,
                    "posted_at": _earliest(existing.posted_at, job.posted_at),
                    "last_seen_at": now,
                },
                deep=True,
            )
            return UpsertOutcome(dedupe_key=job.dedupe_key, created=False)

    def get(self, dedupe_key: str) -> Optional[CanonicalJob]:
        with self._lock:
            row = self._rows.get(dedupe_key)
            return row.model_copy(deep=True) if row else None

    def all(self) -> List[CanonicalJob]:
        with self._lock:
            return [row.model_copy(deep=True) for row in self._rows.values()]

    def __len__(self) -> int:
        return len(self._rows)


class InMemoryPlanStore:
    def __init__(self) -> None:
        self._plans: Dict[str, WorkflowPlan] = {}
        self._lock = threading.Lock()

    def save(self, plan: WorkflowPlan) -> None:
        with self._lock:
            self._plans[plan.id] = plan.model_copy(deep=True)

    def get(self, plan_id: str) -> Optional[WorkflowPlan]:
        with self._lock:
            plan = self._plans.get(plan_id)
            return plan.model_copy(deep=True) if plan else None


class InMemorySourceStore:
    def __init__(self, sources: Optional[List[SourceRecord]] = None) -> None:
        self._sources: Dict[str, SourceRecord] = {s.id: s for s in sources or []}
        self._lock = threading.Lock()

    def get(self, source_id: str) -> Optional[SourceRecord]:
        with self._lock:
            return self._sources.get(source_id)

    def list_enabled(self, user_id: Optional[str] = None) -> List[SourceRecord]:
        with self._lock:
            return [
                s
                for s in self._sources.values()
                if s.enabled and (user_id is None or s.user_id in (None, user_id))
            ]

    def save(self, source: SourceRecord) -> None:
        with self._lock:
            self._sources[source.id] = source


class InMemoryProfileStore:
    def __init__(self, profiles: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._profiles = dict(profiles or {})

    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self._profiles.get(user_id)
