import threading

import pytest

from scan_engine.errors import DomainNotAllowed, PolicyBudgetExceeded
from scan_engine.models import PolicyConstraints
from scan_engine.policy import PolicyEnforcer, domain_of


def test_resolve_merges_only_explicit_fields():
    defaults = PolicyConstraints(max_pages_per_source=3, max_jobs_per_source=7)
    merged = PolicyConstraints.resolve(PolicyConstraints(max_jobs_per_source=5), defaults=defaults)
    assert merged.max_pages_per_source == 3
    assert merged.max_jobs_per_source == 5

    from_mapping = PolicyConstraints.resolve({"rate_limit_per_domain": 4, "max_pages_per_source": None})
    assert from_mapping.rate_limit_per_domain == 4
    assert from_mapping.max_pages_per_source == 10


def test_domain_of_normalizes_host():
    assert domain_of("HTTPS://Jobs.Lever.co/acme") == "jobs.lever.co"
    assert domain_of("") == ""


def test_block_list_wins_over_allow_list():
    enforcer = PolicyEnforcer({"allowed_domains": ["acme.com"], "blocked_domains": ["jobs.acme.com"]})

    allowed, reason = enforcer.domain_verdict("jobs.acme.com")
    assert allowed is False
    assert "blocked" in reason
    assert enforcer.check_domain("careers.acme.com") is True
    assert enforcer.check_domain("other.com") is False

    with pytest.raises(DomainNotAllowed, match="not in allowed list"):
        enforcer.require_domain("other.com")


def test_empty_allow_list_allows_everything():
    enforcer = PolicyEnforcer({"allowed_domains": []})
    assert enforcer.check_domain("anything.example") is True


def test_consume_refuses_over_limit_and_stays_exhausted():
    enforcer = PolicyEnforcer({"max_jobs_per_source": 5})

    accepted = [enforcer.consume("jobs", source="src-a") for _ in range(7)]

    assert accepted == [True] * 5 + [False, False]
    assert enforcer.used("jobs", "src-a") == 5
    assert enforcer.is_exhausted("jobs", "src-a")
    assert enforcer.consume("jobs", source="src-b") is True


def test_tokens_are_counted_per_run():
    enforcer = PolicyEnforcer({"max_tokens_per_run": 10})
    assert enforcer.consume("tokens", 6, source="a") is True
    assert enforcer.consume("tokens", 6, source="b") is False
    assert enforcer.tokens_remaining() == 0


def test_consume_is_atomic_across_threads():
    enforcer = PolicyEnforcer({"max_jobs_per_source": 500})
    accepted = []
    lock = threading.Lock()

    def _worker() -> None:
        for _ in range(100):
            ok = enforcer.consume("jobs", source="shared")
            with lock:
                accepted.append(ok)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5.0)

    assert accepted.count(True) == 500
    assert enforcer.used("jobs", "shared") == 500


def test_reserve_request_spaces_slots_by_rate(clock):
    enforcer = PolicyEnforcer({"rate_limit_per_domain": 2}, clock=clock, sleep=clock.sleep)

    waits = [enforcer.reserve_request("boards-api.greenhouse.io") for _ in range(10)]

    assert waits == [i * 500 for i in range(10)]
    assert enforcer.reserve_request("api.lever.co") == 0


def test_ten_requests_at_two_per_second_take_at_least_four_and_a_half_seconds(clock):
    enforcer = PolicyEnforcer({"rate_limit_per_domain": 2}, clock=clock, sleep=clock.sleep)
    start = clock()

    for _ in range(10):
        enforcer.wait_for_slot("boards-api.greenhouse.io")

    assert clock() - start >= 4.5


def test_check_rate_does_not_book_a_slot(clock):
    enforcer = PolicyEnforcer({"rate_limit_per_domain": 1}, clock=clock, sleep=clock.sleep)
    enforcer.reserve_request("a.example")

    assert enforcer.check_rate("a.example") == 1000
    assert enforcer.check_rate("a.example") == 1000


def test_remaining_time_and_run_budget(clock):
    enforcer = PolicyEnforcer({"max_time_per_run_ms": 1000}, clock=clock, sleep=clock.sleep)

    clock.advance(0.25)
    assert enforcer.remaining_time_ms() == 750
    enforcer.require_run_budget()

    clock.advance(1.0)
    assert enforcer.remaining_time_ms() == 0
    with pytest.raises(PolicyBudgetExceeded) as excinfo:
        enforcer.require_run_budget()
    assert excinfo.value.resource == "time"
    assert excinfo.value.run_global is True


def test_require_run_budget_checks_tokens_only_when_asked():
    enforcer = PolicyEnforcer({"max_tokens_per_run": 10})
    enforcer.consume("tokens", 10)

    enforcer.require_run_budget()
    with pytest.raises(PolicyBudgetExceeded, match="tokens budget exceeded"):
        enforcer.require_run_budget(needs_tokens=True)


def test_reset_starts_a_fresh_run(clock):
    enforcer = PolicyEnforcer({"max_pages_per_source": 1}, clock=clock, sleep=clock.sleep)
    enforcer.consume("pages", source="s")
    enforcer.consume("pages", source="s")
    clock.advance(5)

    enforcer.reset()

    assert enforcer.used("pages", "s") == 0
    assert not enforcer.is_exhausted("pages", "s")
    assert enforcer.elapsed_ms() == 0


def test_snapshot_reports_counters():
    enforcer = PolicyEnforcer({"max_pages_per_source": 1, "simulation_mode": True})
    enforcer.consume("pages", source="s")
    enforcer.consume("pages", source="s")
    enforcer.consume("tokens", 12)

    status = enforcer.snapshot()

    assert status.pages_by_source == {"s": 1}
    assert status.tokens_used == 12
    assert status.exhausted == ["pages:s"]
    assert status.simulation_mode is True
