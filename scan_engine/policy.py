"""Policy constraint enforcement for a single run.

The enforcer is the budget ledger every step consults before doing expensive
work:
- domain allow/block lists
- per-domain request pacing
- page and job caps per source, a token cap per run
- the run's wall-clock budget
- simulation (dry-run) mode

One instance is created per run and shared by every fetch worker of that run.
All counters and rate windows sit behind a single lock, so two workers can
never both observe "budget available" and both consume it. Nothing carries
over between runs: `reset()` (or a new instance) starts from zero.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Mapping, Optional, Set, Tuple, Union
from urllib.parse import urlsplit

from .errors import DomainNotAllowed, PolicyBudgetExceeded
from .models import BudgetStatus, PolicyConstraints
from .normalize import normalize_url

LOG = logging.getLogger(__name__)

COUNTER_KINDS = ("pages", "jobs", "tokens")
RUN_SCOPE = "*"


def domain_of(url: str) -> str:
    """Return the lower-cased host of a URL ("" when there is none)."""
    normalized = normalize_url(url)
    if not normalized:
        return ""
    try:
        return (urlsplit(normalized).hostname or "").lower()
    except ValueError:
        return ""


def _domain_listed(domain: str, entries: Optional[list]) -> bool:
    for entry in entries or []:
        entry = (entry or "").strip().lower().lstrip(".")
        if entry and (domain == entry or domain.endswith("." + entry)):
            return True
    return False


class PolicyEnforcer:
    """Thread-safe budget ledger for one run."""

    def __init__(
        self,
        constraints: Union[PolicyConstraints, Mapping, None] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._constraints = PolicyConstraints.resolve(constraints)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._counters: Dict[str, Dict[str, int]] = {}
        self._exhausted: Set[Tuple[str, str]] = set()
        self._next_slot: Dict[str, float] = {}
        self._started = clock()
        self.reset()

    @property
    def constraints(self) -> PolicyConstraints:
        return self._constraints

    @property
    def simulation_mode(self) -> bool:
        return self._constraints.simulation_mode

    def reset(self) -> None:
        """Zero every counter and restart the run clock."""
        with self._lock:
            self._counters = {kind: {} for kind in COUNTER_KINDS}
            self._exhausted = set()
            self._next_slot = {}
            self._started = self._clock()

    # -- domains -----------------------------------------------------------

    def domain_verdict(self, domain: str) -> Tuple[bool, str]:
        """Return (allowed, reason). The block-list wins over the allow-list."""
        domain = (domain or "").strip().lower()
        if _domain_listed(domain, self._constraints.blocked_domains):
            return False, f"Domain {domain} is blocked"
        allowed = self._constraints.allowed_domains
        if allowed and not _domain_listed(domain, allowed):
            return False, f"Domain {domain} is not in allowed list"
        return True, ""

    def check_domain(self, domain: str) -> bool:
        return self.domain_verdict(domain)[0]

    def require_domain(self, domain: str) -> None:
        allowed, reason = self.domain_verdict(domain)
        if not allowed:
            raise DomainNotAllowed(domain, reason)

    # -- rate limiting -----------------------------------------------------

    @property
    def _interval_s(self) -> float:
        return 1.0 / self._constraints.rate_limit_per_domain

    def check_rate(self, domain: str) -> int:
        """Milliseconds the next request to `domain` would have to wait (no booking)."""
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot.get(domain.lower(), now))
            return int(round((slot - now) * 1000))

    def reserve_request(self, domain: str) -> int:
        """Book the next request slot for `domain` and return the wait in ms.

        Slots are spaced 1 / rate_limit_per_domain seconds apart, so N requests
        issued at once finish no earlier than (N - 1) / rate seconds later.
        """
        key = domain.lower()
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot.get(key, now))
            self._next_slot[key] = slot + self._interval_s
            return int(round((slot - now) * 1000))

    def wait_for_slot(self, domain: str) -> int:
        """Reserve a slot and sleep until it opens. Returns the waited ms."""
        wait_ms = self.reserve_request(domain)
        if wait_ms > 0:
            LOG.debug("rate limit: waiting %dms before next request to %s", wait_ms, domain)
            self._sleep(wait_ms / 1000.0)
        return wait_ms

    # -- counters ----------------------------------------------------------

    def _limit(self, kind: str) -> int:
        if kind == "pages":
            return self._constraints.max_pages_per_source
        if kind == "jobs":
            return self._constraints.max_jobs_per_source
        if kind == "tokens":
            return self._constraints.max_tokens_per_run
        raise ValueError(f"unknown budget counter: {kind}")

    def consume(self, kind: str, amount: int = 1, source: Optional[str] = None) -> bool:
        """Atomically add `amount` to a counter and report whether it stays in budget.

        Pages and jobs are counted per source; tokens per run. A consume that
        would go over the limit is refused and marks the counter exhausted:
        every later consume of that counter returns False until `reset()`.
        """
        if amount < 0:
            raise ValueError("amount must be >= 0")
        limit = self._limit(kind)
        scope = RUN_SCOPE if kind == "tokens" else (source or RUN_SCOPE)
        with self._lock:
            if (kind, scope) in self._exhausted:
                return False
            counters = self._counters[kind]
            updated = counters.get(scope, 0) + amount
            if updated > limit:
                self._exhausted.add((kind, scope))
                LOG.info("%s budget exhausted for %s (limit %d)", kind, scope, limit)
                return False
            counters[scope] = updated
            return True

    def used(self, kind: str, source: Optional[str] = None) -> int:
        scope = RUN_SCOPE if kind == "tokens" else (source or RUN_SCOPE)
        with self._lock:
            return self._counters[kind].get(scope, 0)

    def is_exhausted(self, kind: str, source: Optional[str] = None) -> bool:
        scope = RUN_SCOPE if kind == "tokens" else (source or RUN_SCOPE)
        with self._lock:
            return (kind, scope) in self._exhausted

    def tokens_remaining(self) -> int:
        with self._lock:
            if ("tokens", RUN_SCOPE) in self._exhausted:
                return 0
            return max(0, self._constraints.max_tokens_per_run - self._counters["tokens"].get(RUN_SCOPE, 0))

    # -- wall clock --------------------------------------------------------

    def elapsed_ms(self) -> int:
        return int((self._clock() - self._started) * 1000)

    def remaining_time_ms(self) -> int:
        return max(0, self._constraints.max_time_per_run_ms - self.elapsed_ms())

    def require_run_budget(self, needs_tokens: bool = False) -> None:
        """Raise PolicyBudgetExceeded when a run-global budget is gone."""
        if self.remaining_time_ms() <= 0:
            raise PolicyBudgetExceeded(
                "time",
                f"{self.elapsed_ms()}ms elapsed of {self._constraints.max_time_per_run_ms}ms",
            )
        if needs_tokens and self.tokens_remaining() <= 0:
            raise PolicyBudgetExceeded(
                "tokens",
                f"{self.used('tokens')} of {self._constraints.max_tokens_per_run} tokens used",
            )

    def snapshot(self) -> BudgetStatus:
        with self._lock:
            pages = dict(self._counters["pages"])
            jobs = dict(self._counters["jobs"])
            tokens = self._counters["tokens"].get(RUN_SCOPE, 0)
            exhausted = sorted(f"{kind}:{scope}" for kind, scope in self._exhausted)
        return BudgetStatus(
            pages_by_source=pages,
            jobs_by_source=jobs,
            tokens_used=tokens,
            tokens_remaining=self.tokens_remaining(),
            elapsed_ms=self.elapsed_ms(),
            remaining_ms=self.remaining_time_ms(),
            exhausted=exhausted,
            simulation_mode=self.simulation_mode,
        )
