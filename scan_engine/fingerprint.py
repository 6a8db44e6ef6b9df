"""ATS fingerprinting: detect which applicant tracking system serves a career site.

URL rules run first, in a fixed order from most specific to least specific;
the first rule that matches wins. Only when no URL rule matches and the caller
supplies a page signature (rendered HTML obtained from the browser
collaborator) are the DOM rules consulted, in the same vendor order.

The functions here are pure: they never fetch, retry or persist. Callers
decide when to recompute and where to store the result.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from .models import AtsType, FingerprintResult, ScrapeStrategy, SourceRecord
from .normalize import normalize_url
from .utils import utc_now

UrlMatcher = Callable[[str, List[str], Dict[str, List[str]]], Optional[Dict[str, Any]]]

_GREENHOUSE_BOARD_HOSTS = ("boards.greenhouse.io", "job-boards.greenhouse.io")
_GREENHOUSE_RESERVED = ("boards", "job-boards", "api", "boards-api", "app", "www")
_WORKDAY_LOCALE_RE = re.compile(r"^[a-z]{2}-[a-z]{2}$", re.IGNORECASE)


def _subdomain(host: str, suffix: str) -> Optional[str]:
    if not host.endswith(suffix):
        return None
    label = host[: -len(suffix)]
    return label or None


def _greenhouse_board(host: str, segments: List[str], query: Dict[str, List[str]]) -> Optional[Dict[str, Any]]:
    if host not in _GREENHOUSE_BOARD_HOSTS or not segments:
        return None
    if segments[0] == "embed":
        token = (query.get("for") or [""])[0]
        return {"board_token": token} if token else {}
    return {"board_token": segments[0]}


def _greenhouse_subdomain(host: str, segments: List[str], query: Dict[str, List[str]]) -> Optional[Dict[str, Any]]:
    label = _subdomain(host, ".greenhouse.io")
    if not label or label in _GREENHOUSE_RESERVED:
        return None
    return {"board_token": label}


def _slug_under(*hosts: str) -> UrlMatcher:
    def matcher(host: str, segments: List[str], query: Dict[str, List[str]]) -> Optional[Dict[str, Any]]:
        if host not in hosts:
            return None
        return {"company_slug": segments[0]} if segments else {}

    return matcher


def _ashby_subdomain(host: str, segments: List[str], query: Dict[str, List[str]]) -> Optional[Dict[str, Any]]:
    if not _subdomain(host, ".ashbyhq.com"):
        return None
    return {"company_slug": segments[0]} if segments else {}


def _smartrecruiters(host: str, segments: List[str], query: Dict[str, List[str]]) -> Optional[Dict[str, Any]]:
    if not _subdomain(host, ".smartrecruiters.com"):
        return None
    return {"company_identifier": segments[0]} if segments else {}


def _subdomain_config(suffix: str) -> UrlMatcher:
    def matcher(host: str, segments: List[str], query: Dict[str, List[str]]) -> Optional[Dict[str, Any]]:
        label = _subdomain(host, suffix)
        if not label:
            return None
        return {"subdomain": label}

    return matcher


def _workday(host: str, segments: List[str], query: Dict[str, List[str]]) -> Optional[Dict[str, Any]]:
    label = _subdomain(host, ".myworkdayjobs.com")
    if not label:
        return None
    labels = label.split(".")
    config: Dict[str, Any] = {"tenant": labels[0]}
    if len(labels) > 1:
        config["instance"] = labels[1]
    sites = [s for s in segments if not _WORKDAY_LOCALE_RE.match(s)]
    if sites:
        config["site"] = sites[0]
    return config


# (rule name, ATS type, strategy, matcher), most specific first.
URL_RULES: Tuple[Tuple[str, AtsType, ScrapeStrategy, UrlMatcher], ...] = (
    ("greenhouse-board", AtsType.GREENHOUSE, ScrapeStrategy.API_JSON, _greenhouse_board),
    ("greenhouse-subdomain", AtsType.GREENHOUSE, ScrapeStrategy.API_JSON, _greenhouse_subdomain),
    ("lever", AtsType.LEVER, ScrapeStrategy.API_JSON, _slug_under("jobs.lever.co", "jobs.eu.lever.co")),
    ("ashby-jobs", AtsType.ASHBY, ScrapeStrategy.API_JSON, _slug_under("jobs.ashbyhq.com")),
    ("ashby-subdomain", AtsType.ASHBY, ScrapeStrategy.API_JSON, _ashby_subdomain),
    ("smartrecruiters", AtsType.SMARTRECRUITERS, ScrapeStrategy.API_JSON, _smartrecruiters),
    ("recruitee", AtsType.RECRUITEE, ScrapeStrategy.API_JSON, _subdomain_config(".recruitee.com")),
    ("personio-de", AtsType.PERSONIO, ScrapeStrategy.API_JSON, _subdomain_config(".jobs.personio.de")),
    ("personio-com", AtsType.PERSONIO, ScrapeStrategy.API_JSON, _subdomain_config(".jobs.personio.com")),
    ("workday", AtsType.WORKDAY, ScrapeStrategy.API_XML, _workday),
)

# (rule name, ATS type, strategy, pattern, config keys for the capture groups)
DOM_RULES: Tuple[Tuple[str, AtsType, ScrapeStrategy, re.Pattern, Tuple[str, ...]], ...] = (
    (
        "greenhouse-embed",
        AtsType.GREENHOUSE,
        ScrapeStrategy.API_JSON,
        re.compile(r"boards(?:-api)?\.greenhouse\.io/(?:embed/job_board(?:/js)?\?for=|v1/boards/)([A-Za-z0-9_-]+)"),
        ("board_token",),
    ),
    ("greenhouse-app", AtsType.GREENHOUSE, ScrapeStrategy.API_JSON, re.compile(r"\bgrnhse_app\b"), ()),
    ("lever-links", AtsType.LEVER, ScrapeStrategy.API_JSON, re.compile(r"jobs\.(?:eu\.)?lever\.co/([A-Za-z0-9_-]+)"), ("company_slug",)),
    ("ashby-embed", AtsType.ASHBY, ScrapeStrategy.API_JSON, re.compile(r"jobs\.ashbyhq\.com/([A-Za-z0-9_.-]+)"), ("company_slug",)),
    (
        "smartrecruiters-links",
        AtsType.SMARTRECRUITERS,
        ScrapeStrategy.API_JSON,
        re.compile(r"(?:careers|jobs)\.smartrecruiters\.com/([A-Za-z0-9_-]+)"),
        ("company_identifier",),
    ),
    ("recruitee-links", AtsType.RECRUITEE, ScrapeStrategy.API_JSON, re.compile(r"([a-z0-9-]+)\.recruitee\.com"), ("subdomain",)),
    ("personio-links", AtsType.PERSONIO, ScrapeStrategy.API_JSON, re.compile(r"([a-z0-9-]+)\.jobs\.personio\.(?:de|com)"), ("subdomain",)),
    (
        "workday-links",
        AtsType.WORKDAY,
        ScrapeStrategy.API_XML,
        re.compile(r"([a-z0-9-]+)\.(wd\d+)\.myworkdayjobs\.com"),
        ("tenant", "instance"),
    ),
)

UNKNOWN_RESULT = FingerprintResult()


def _match_url(url: str) -> Optional[FingerprintResult]:
    normalized = normalize_url(url)
    if not normalized:
        return None
    try:
        parts = urlsplit(normalized)
    except ValueError:
        return None
    host = parts.hostname or ""
    if not host:
        return None
    segments = [s for s in parts.path.split("/") if s]
    query = parse_qs(parts.query)

    for name, ats_type, strategy, matcher in URL_RULES:
        config = matcher(host, segments, query)
        if config is not None:
            return FingerprintResult(
                ats_type=ats_type,
                scrape_strategy=strategy,
                connector_config=config,
                matched_rule=name,
            )
    return None


def _match_dom(page_signature: str) -> Optional[FingerprintResult]:
    for name, ats_type, strategy, pattern, keys in DOM_RULES:
        found = pattern.search(page_signature)
        if not found:
            continue
        config = {key: found.group(i + 1) for i, key in enumerate(keys)}
        return FingerprintResult(
            ats_type=ats_type,
            scrape_strategy=strategy,
            connector_config=config,
            matched_rule=name,
        )
    return None


def fingerprint_source(url: str, page_signature: Optional[str] = None) -> FingerprintResult:
    """Classify the ATS behind a career-site URL.

    Args:
        url: Career-site or board URL, with or without scheme.
        page_signature: Optional rendered HTML of the page, consulted only when
            no URL rule matches.

    Returns:
        The first matching FingerprintResult, or UNKNOWN with the generic
        rendered-DOM strategy and an empty connector config.
    """
    result = _match_url(url)
    if result is not None:
        return result
    if page_signature:
        result = _match_dom(page_signature)
        if result is not None:
            return result
    return UNKNOWN_RESULT


def needs_page_probe(result: FingerprintResult) -> bool:
    """True when the URL alone was not enough and a DOM probe could help."""
    return result.ats_type == AtsType.UNKNOWN


def refresh_fingerprint(
    source: SourceRecord,
    page_signature: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SourceRecord:
    """Recompute a source's fingerprint and overwrite every cached field.

    A stale cached value never blocks recomputation and is never merged into
    the new result.
    """
    result = fingerprint_source(source.url, page_signature)
    return source.model_copy(
        update={
            "ats_type": result.ats_type,
            "scrape_strategy": result.scrape_strategy,
            "connector_config": dict(result.connector_config),
            "last_fingerprinted_at": now or utc_now(),
        }
    )

