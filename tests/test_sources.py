import httpx
import pytest

from scan_engine.errors import NoConnectorForAtsType
from scan_engine.models import AtsType
from scan_engine.policy import PolicyEnforcer
from scan_engine.sources.base import SourceBudget
from scan_engine.sources.greenhouse import GreenhouseSource
from scan_engine.sources.lever import LeverSource
from scan_engine.sources.recruitee import RecruiteeSource
from scan_engine.sources.registry import (
    ConnectorRegistry,
    get_connector,
    get_connector_or_throw,
    supported_ats_types,
)


def _budget(clock, source_key: str = "src-1", **constraints) -> SourceBudget:
    enforcer = PolicyEnforcer(constraints, clock=clock, sleep=clock.sleep)
    return SourceBudget(enforcer, source_key)


def _greenhouse_jobs(n: int) -> dict:
    return {
        "jobs": [
            {
                "id": i,
                "title": f"Engineer {i}",
                "absolute_url": f"https://boards.greenhouse.io/acme/jobs/{i}",
                "location": {"name": "Remote"},
                "updated_at": f"2024-01-0{i}T00:00:00Z",
                "departments": [{"name": "Engineering"}],
            }
            for i in range(1, n + 1)
        ]
    }


def _lever_postings(n: int) -> list:
    return [
        {
            "id": f"p{i}",
            "text": f"Designer {i}",
            "hostedUrl": f"https://jobs.lever.co/acme/p{i}",
            "applyUrl": f"https://jobs.lever.co/acme/p{i}/apply",
            "categories": {"location": "Berlin", "commitment": "Full-time", "team": "Design"},
            "workplaceType": "hybrid",
            "createdAt": 1704067200000,
        }
        for i in range(n)
    ]


def _lever_transport(postings: list, seen: list) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        skip = int(request.url.params["skip"])
        limit = int(request.url.params["limit"])
        seen.append(skip)
        return httpx.Response(200, json=postings[skip : skip + limit])

    return httpx.MockTransport(handler)


def test_greenhouse_job_cap_stops_enumeration_and_is_recorded(clock):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=_greenhouse_jobs(8))

    source = GreenhouseSource(transport=httpx.MockTransport(handler))
    budget = _budget(clock, max_jobs_per_source=5)

    result = source.fetch({"board_token": "acme", "company": "Acme"}, budget)

    assert result.ok is True
    assert len(result.jobs) == 5
    assert result.truncated is True
    assert result.notes == ["job budget reached after 5 jobs"]
    assert budget.enforcer.used("jobs", "src-1") == 5
    assert str(requests[0].url).startswith("https://boards-api.greenhouse.io/v1/boards/acme/jobs")
    assert requests[0].url.params["content"] == "true"

    job = result.jobs[0]
    assert job.dedupe_key == "url:https://boards.greenhouse.io/acme/jobs/1"
    assert job.company == "Acme"
    assert job.remote_type == "REMOTE"
    assert job.level == "Engineering"
    assert job.source == "greenhouse"
    assert job.raw["id"] == 1


def test_greenhouse_http_error_is_reported_not_raised(clock):
    transport = httpx.MockTransport(lambda request: httpx.Response(500, json={"error": "down"}))
    result = GreenhouseSource(transport=transport).fetch({"board_token": "acme"}, _budget(clock))

    assert result.ok is False
    assert result.jobs == []
    assert result.errors[0].startswith("Greenhouse API error:")


def test_greenhouse_backs_off_on_429(clock):
    responses = [httpx.Response(429), httpx.Response(200, json=_greenhouse_jobs(1))]
    sleeps = []
    source = GreenhouseSource(
        transport=httpx.MockTransport(lambda request: responses.pop(0)),
        backoff_s=2.0,
        sleep=sleeps.append,
    )

    result = source.fetch({"board_token": "acme"}, _budget(clock))

    assert sleeps == [2.0]
    assert len(result.jobs) == 1


def test_missing_connector_config_fails_cleanly():
    result = GreenhouseSource().fetch({})
    assert result.ok is False
    assert "board_token" in result.errors[0]


def test_lever_pages_until_short_page(clock):
    seen = []
    source = LeverSource(page_size=2, transport=_lever_transport(_lever_postings(5), seen))

    result = source.fetch({"company_slug": "acme"}, _budget(clock))

    assert seen == [0, 2, 4]
    assert result.pages_fetched == 3
    assert len(result.jobs) == 5
    assert result.truncated is False
    assert result.jobs[0].remote_type == "HYBRID"
    assert result.jobs[0].dedupe_key == "url:https://jobs.lever.co/acme/p0/apply"


def test_lever_page_cap_stops_before_fetching_more(clock):
    seen = []
    source = LeverSource(page_size=2, transport=_lever_transport(_lever_postings(9), seen))

    result = source.fetch({"company_slug": "acme"}, _budget(clock, max_pages_per_source=2))

    assert seen == [0, 2]
    assert len(result.jobs) == 4
    assert result.truncated is True
    assert result.notes == ["page budget reached after 2 pages"]


def test_lever_shared_url_gets_company_title_suffix(clock):
    postings = _lever_postings(2)
    for posting in postings:
        posting["hostedUrl"] = "https://jobs.lever.co/acme"
        posting["applyUrl"] = "https://jobs.lever.co/acme/apply"
    source = LeverSource(transport=_lever_transport(postings, []))

    result = source.fetch({"company_slug": "acme"}, _budget(clock))

    keys = [job.dedupe_key for job in result.jobs]
    assert len(set(keys)) == 2
    assert all(key.startswith("url:https://jobs.lever.co/acme/apply#") for key in keys)


def test_recruitee_maps_hybrid_and_closed_offers(clock):
    payload = {
        "offers": [
            {
                "id": 1,
                "title": "Data Engineer",
                "city": "Amsterdam",
                "country_code": "NL",
                "hybrid": True,
                "status": "published",
                "careers_url": "https://acme.recruitee.com/o/data-engineer",
                "published_at": "2024-02-01 10:00:00 UTC",
            },
            {
                "id": 2,
                "title": "Office Manager",
                "remote": False,
                "status": "closed",
                "careers_url": "https://acme.recruitee.com/o/office-manager",
            },
        ]
    }
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=payload))

    result = RecruiteeSource(transport=transport).fetch({"subdomain": "acme"}, _budget(clock))

    hybrid, closed = result.jobs
    assert hybrid.location == "Amsterdam, NL"
    assert hybrid.remote_type == "HYBRID"
    assert hybrid.company == "acme"
    assert closed.status == "CLOSED"


def test_simulation_counts_pages_without_network(clock):
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("simulation must not fetch")

    budget = _budget(clock, simulation_mode=True)
    result = LeverSource(transport=httpx.MockTransport(handler)).fetch({"company_slug": "acme"}, budget)

    assert result.ok is True
    assert result.jobs == []
    assert result.pages_fetched == 1
    assert result.notes[0].startswith("simulation:")
    assert budget.enforcer.used("pages", "src-1") == 1


def test_registry_resolves_supported_types():
    assert isinstance(get_connector(AtsType.GREENHOUSE), GreenhouseSource)
    assert isinstance(get_connector("LEVER"), LeverSource)
    assert get_connector("not-an-ats") is None
    assert supported_ats_types() == [AtsType.GREENHOUSE, AtsType.LEVER, AtsType.RECRUITEE]


@pytest.mark.parametrize("ats_type", ["UNKNOWN", AtsType.WORKDAY, AtsType.ASHBY])
def test_registry_raises_for_unsupported_types(ats_type):
    with pytest.raises(NoConnectorForAtsType, match="No connector for ATS type"):
        get_connector_or_throw(ats_type)


def test_registry_rejects_connector_for_unknown():
    registry = ConnectorRegistry({})
    with pytest.raises(ValueError):
        registry.register(AtsType.UNKNOWN, GreenhouseSource())
    registry.register(AtsType.ASHBY, GreenhouseSource())
    assert registry.supported() == [AtsType.ASHBY]


def test_register_connector_adds_to_process_registry(monkeypatch):
    from scan_engine.sources import registry

    monkeypatch.setattr(registry, "_DEFAULT_REGISTRY", ConnectorRegistry())
    registry.register_connector(AtsType.ASHBY, LeverSource())

    assert isinstance(get_connector(AtsType.ASHBY), LeverSource)
    assert AtsType.ASHBY in supported_ats_types()


def _careers_page_role(job_id: int, title: str) -> dict:
    return {"id": job_id, "title": title, "absolute_url": "https://acme.test/careers", "location": {"name": "Remote"}}


def test_shared_url_key_does_not_depend_on_the_batch(clock):
    batches = [
        {"jobs": [_careers_page_role(1, "Backend Engineer")]},
        {"jobs": [_careers_page_role(1, "Backend Engineer"), _careers_page_role(2, "Data Engineer")]},
    ]
    source = GreenhouseSource(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=batches.pop(0))))

    first = source.fetch({"board_token": "acme", "company": "Acme"}, _budget(clock))
    second = source.fetch({"board_token": "acme", "company": "Acme"}, _budget(clock))

    backend_key = first.jobs[0].dedupe_key
    assert backend_key.startswith("url:https://acme.test/careers#")
    assert second.jobs[0].dedupe_key == backend_key
    assert second.jobs[1].dedupe_key != backend_key


def test_lever_shared_url_split_across_pages_keeps_roles_apart(clock):
    postings = _lever_postings(2)
    for posting in postings:
        posting["hostedUrl"] = "https://jobs.lever.co/acme"
        posting["applyUrl"] = "https://jobs.lever.co/acme/apply"
    source = LeverSource(page_size=1, transport=_lever_transport(postings, []))

    result = source.fetch({"company_slug": "acme"}, _budget(clock))

    keys = [job.dedupe_key for job in result.jobs]
    assert len(keys) == 2
    assert len(set(keys)) == 2
