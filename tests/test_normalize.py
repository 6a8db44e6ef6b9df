from datetime import datetime, timezone

import pytest

from scan_engine.normalize import (
    IDENTITY_HASH_LENGTH,
    company_title_hash,
    compute_dedupe_key,
    html_to_text,
    infer_remote_type,
    normalize_url,
    parse_timestamp,
    url_identifies_posting,
)


@pytest.mark.parametrize(
    "raw",
    [
        "HTTP://Boards.Greenhouse.io:443//acme/jobs/123/?utm_source=x&b=2&a=1#apply",
        "jobs.lever.co/acme/",
        "https://careers.acme.com/#/jobs/42",
        "https://example.com:8443/a//b/?gh_src=abc&id=7",
        "not a url at all",
    ],
)
def test_normalize_url_is_idempotent(raw: str):
    once = normalize_url(raw)
    assert normalize_url(once) == once


def test_normalize_url_canonicalizes_scheme_host_port_path_and_query():
    raw = "HTTP://Boards.Greenhouse.io:443//acme/jobs/123/?utm_source=x&b=2&a=1#apply"
    assert normalize_url(raw) == "https://boards.greenhouse.io/acme/jobs/123?a=1&b=2"


def test_normalize_url_adds_scheme_and_keeps_non_default_port():
    assert normalize_url("jobs.lever.co/acme/") == "https://jobs.lever.co/acme"
    assert normalize_url("https://example.com:8443/jobs") == "https://example.com:8443/jobs"


def test_normalize_url_keeps_hash_routes_but_drops_anchors():
    assert normalize_url("https://careers.acme.com/#/jobs/42") == "https://careers.acme.com/#/jobs/42"
    assert normalize_url("https://careers.acme.com/jobs#top") == "https://careers.acme.com/jobs"


def test_normalize_url_empty_input():
    assert normalize_url(None) == ""
    assert normalize_url("   ") == ""


def test_dedupe_key_ignores_url_cosmetics():
    a = compute_dedupe_key(apply_url="https://Boards.Greenhouse.io/acme/jobs/1?utm_campaign=x", title="Engineer")
    b = compute_dedupe_key(apply_url="http://boards.greenhouse.io/acme/jobs/1/", title="Engineer")
    assert a == b == "url:https://boards.greenhouse.io/acme/jobs/1"


def test_dedupe_key_prefers_apply_url_over_job_url():
    key = compute_dedupe_key(
        apply_url="https://jobs.lever.co/acme/abc/apply",
        job_url="https://jobs.lever.co/acme/abc",
    )
    assert key == "url:https://jobs.lever.co/acme/abc/apply"


def test_shared_url_keeps_distinct_roles_apart():
    url = "https://careers.acme.com/apply"
    backend = compute_dedupe_key(apply_url=url, company="Acme", title="Backend Engineer", shared_url=True)
    frontend = compute_dedupe_key(apply_url=url, company="Acme", title="Frontend Engineer", shared_url=True)

    assert backend != frontend
    assert backend.startswith("url:https://careers.acme.com/apply#")
    assert len(backend.split("#", 1)[1]) == IDENTITY_HASH_LENGTH


def test_shared_url_without_company_title_uses_external_id():
    key = compute_dedupe_key(apply_url="https://careers.acme.com/apply", external_id="77", shared_url=True)
    assert key == "url:https://careers.acme.com/apply#ext:77"


def test_company_title_key_is_case_and_whitespace_insensitive():
    a = compute_dedupe_key(company="Acme  Corp", title="Senior   Engineer")
    b = compute_dedupe_key(company="acme corp", title=" senior engineer ")
    assert a == b
    assert a.startswith("ct:")


def test_external_id_is_last_resort():
    assert compute_dedupe_key(external_id="42", source_prefix="greenhouse") == "ext:greenhouse:42"


def test_no_identity_raises_value_error():
    with pytest.raises(ValueError):
        compute_dedupe_key(title="Engineer")


def test_company_title_hash_has_no_collisions_across_many_pairs():
    hashes = {company_title_hash(f"Company {i % 37}", f"Role {i}") for i in range(5000)}
    assert len(hashes) == 5000
    assert all(len(h) == IDENTITY_HASH_LENGTH for h in hashes)


def test_infer_remote_type():
    assert infer_remote_type("Remote - US") == "REMOTE"
    assert infer_remote_type("Berlin (Hybrid)") == "HYBRID"
    assert infer_remote_type("NYC", remote_flag=True) == "REMOTE"
    assert infer_remote_type("Austin, TX", remote_flag=False) == "ONSITE"
    assert infer_remote_type(None) == "UNKNOWN"


def test_parse_timestamp_handles_iso_and_epoch_ms():
    expected = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert parse_timestamp("2024-01-02T03:04:05Z") == expected
    assert parse_timestamp(int(expected.timestamp() * 1000)) == expected
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(True) is None


def test_html_to_text_strips_escaped_markup():
    assert html_to_text("&lt;p&gt;Build &amp; ship&lt;/p&gt;") == "Build & ship"
    assert html_to_text("") is None


@pytest.mark.parametrize(
    "url, tokens, expected",
    [
        ("https://boards.greenhouse.io/acme/jobs/4012", ["4012"], True),
        ("https://acme.com/careers?gh_jid=4012", ["4012"], True),
        ("https://acme.com/careers#!/jobs/4012", ["4012"], True),
        ("https://acme.com/jobs/4012-backend-engineer", ["4012"], True),
        ("https://acme.recruitee.com/o/data-engineer", ["17", "data-engineer"], True),
        ("https://acme.com/careers", ["4012"], False),
        ("https://acme.com/careers", [None, ""], True),
    ],
)
def test_url_identifies_posting(url, tokens, expected):
    assert url_identifies_posting(url, *tokens) is expected
