"""Base classes for source connectors.

A connector reads one ATS family's public board API and returns canonical
jobs. Connectors only read remote data, so invoking one repeatedly is safe.
They must stop enumerating as soon as the run's budget says so, rather than
fetching everything and discarding the excess.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import httpx
from pydantic import BaseModel, Field

from ..models import AtsType, CanonicalJob
from ..normalize import compute_dedupe_key, normalize_url, url_identifies_posting
from ..policy import PolicyEnforcer, domain_of
from ..utils import utc_now

LOG = logging.getLogger(__name__)


class ConnectorResult(BaseModel):
    """Outcome of one connector fetch."""

    jobs: List[CanonicalJob] = Field(default_factory=list)
    ok: bool = True
    errors: List[str] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list, description="Budget stops, simulation notices.")
    truncated: bool = Field(default=False, description="Enumeration stopped early on a budget cap.")
    pages_fetched: int = 0


class SourceBudget:
    """Per-source view of the run's PolicyEnforcer, handed to connectors.

    Page and job caps are counted against `source_key`; request pacing is keyed
    by the host actually being requested.
    """

    def __init__(self, enforcer: PolicyEnforcer, source_key: str) -> None:
        self.enforcer = enforcer
        self.source_key = source_key

    @classmethod
    def standalone(cls, source_key: str = "standalone") -> "SourceBudget":
        """A budget with default constraints, for using a connector outside a run."""
        return cls(PolicyEnforcer(), source_key)

    @property
    def simulation_mode(self) -> bool:
        return self.enforcer.simulation_mode

    def acquire_page(self, url: str) -> bool:
        """Consume one page and wait for the host's rate-limit slot.

        Returns False, without waiting, once the page cap is reached.
        """
        if not self.enforcer.consume("pages", 1, source=self.source_key):
            return False
        self.enforcer.wait_for_slot(domain_of(url))
        return True

    def accept_job(self) -> bool:
        return self.enforcer.consume("jobs", 1, source=self.source_key)


class JobSource(ABC):
    """Abstract base class for a job source connector."""

    name: str
    ats_type: AtsType

    def __init__(
        self,
        timeout_s: float = 20.0,
        max_retries: int = 3,
        backoff_s: float = 2.0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._timeout = timeout_s
        self._max_retries = max_retries
        self._backoff_s = backoff_s
        self._transport = transport
        self._sleep = sleep

    @abstractmethod
    def fetch(self, config: Mapping[str, Any], budget: Optional[SourceBudget] = None) -> ConnectorResult:
        """Fetch jobs described by `config` and return canonical jobs."""
        raise NotImplementedError

    @abstractmethod
    def map_record(self, raw: Dict[str, Any], config: Mapping[str, Any]) -> Dict[str, Any]:
        """Map one raw board record to CanonicalJob fields (without dedupe_key)."""
        raise NotImplementedError

    # -- HTTP --------------------------------------------------------------

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self._timeout,
            follow_redirects=True,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )

    def _get_json(self, client: httpx.Client, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a JSON document, backing off exponentially on HTTP 429."""
        retries = 0
        while True:
            try:
                resp = client.get(url, params=params)
                resp.raise_for_status()
                break
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code == 429 and retries < self._max_retries:
                    sleep_s = self._backoff_s * (2**retries)
                    LOG.warning("%s: 429 from %s, retrying in %.1fs", self.name, url, sleep_s)
                    self._sleep(sleep_s)
                    retries += 1
                    continue
                raise
        return resp.json()

    def _simulated(self, url: str, budget: SourceBudget) -> ConnectorResult:
        """Dry run: count the page but never touch the network."""
        if not budget.acquire_page(url):
            return ConnectorResult(truncated=True, notes=["page budget reached before first page"])
        return ConnectorResult(pages_fetched=1, notes=[f"simulation: skipped fetch of {url}"])

    # -- normalization -----------------------------------------------------

    def posting_tokens(self, fields: Mapping[str, Any]) -> List[Any]:
        """Identifiers a posting-specific URL from this board would contain."""
        return [fields.get("external_id")]

    def to_canonical(
        self,
        records: Iterable[Dict[str, Any]],
        config: Mapping[str, Any],
        budget: Optional[SourceBudget],
        result: ConnectorResult,
    ) -> bool:
        """Map raw records into keyed CanonicalJobs, appending to `result`.

        A URL that carries none of the record's `posting_tokens` is treated as
        a page several roles may share, and the key gets the company+title
        suffix. The decision looks at one record only, so a posting's key does
        not depend on the batch or page it arrived in. Returns False when the
        job cap stopped the batch early.
        """
        now = utc_now()
        for raw in records:
            try:
                fields = self.map_record(raw, config)
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                result.errors.append(f"Normalize job {raw.get('id') if isinstance(raw, dict) else '?'}: {exc}")
                continue

            url = normalize_url(fields.get("apply_url")) or normalize_url(fields.get("job_url"))
            try:
                key = compute_dedupe_key(
                    apply_url=fields.get("apply_url"),
                    job_url=fields.get("job_url"),
                    company=fields.get("company"),
                    title=fields.get("title"),
                    external_id=fields.get("external_id"),
                    source_prefix=self.name,
                    shared_url=bool(url) and not url_identifies_posting(url, *self.posting_tokens(fields)),
                )
            except ValueError as exc:
                result.errors.append(f"Normalize job {fields.get('external_id')}: {exc}")
                continue

            if budget is not None and not budget.accept_job():
                result.truncated = True
                result.notes.append(f"job budget reached after {len(result.jobs)} jobs")
                return False

            result.jobs.append(
                CanonicalJob(
                    dedupe_key=key,
                    source=self.name,
                    last_seen_at=now,
                    **fields,
                )
            )
        return True


def config_value(config: Mapping[str, Any], *keys: str) -> Optional[str]:
    """First non-empty string value among `keys`."""
    for key in keys:
        value = config.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None
