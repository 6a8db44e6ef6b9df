"""Step executors, one per StepKind.

Each executor takes the live step and the RunContext, does its work through
the run's PolicyEnforcer, stores what later steps need on the context and
returns the typed output payload for the step. Executors raise
ScanEngineError subclasses; the engine decides what a raised error means for
the step and the plan.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

import httpx

from .capabilities import CompletionOptions, parse_json_response, render_page
from .errors import (
    CapabilityTimeout,
    ConnectorFetchFailed,
    DomainNotAllowed,
    NoConnectorForAtsType,
    PolicyBudgetExceeded,
    ScanEngineError,
)
from .fingerprint import fingerprint_source, needs_page_probe, refresh_fingerprint
from .models import (
    ApplicationBlueprint,
    BlueprintOutput,
    CanonicalJob,
    Contact,
    ContactHuntInput,
    ContactHuntOutput,
    DoneOutput,
    DraftInput,
    DraftOutput,
    ExtractOutput,
    MatchInput,
    MatchOutput,
    ScrapeInput,
    ScrapeOutput,
    SourceRecord,
    SourceScrapeReport,
    WorkflowStep,
)
from .policy import domain_of
from .sources.base import SourceBudget

if TYPE_CHECKING:
    from .engine import RunContext

LOG = logging.getLogger(__name__)

FAST_MODE = "fast"
WRITING_MODE = "writing"


# -- scrape ------------------------------------------------------------------


def resolve_sources(
    source_ids: Optional[List[str]], ctx: "RunContext"
) -> Tuple[List[SourceRecord], List[SourceScrapeReport]]:
    """Sources to scrape, plus reports for requested ids that do not resolve."""
    if not source_ids:
        return ctx.source_store.list_enabled(ctx.user_id), []

    sources: List[SourceRecord] = []
    missing: List[SourceScrapeReport] = []
    for source_id in source_ids:
        source = ctx.source_store.get(source_id)
        if source is None or not source.enabled:
            missing.append(
                SourceScrapeReport(source_id=source_id, url="", outcome="skipped", errors=["unknown or disabled source"])
            )
        else:
            sources.append(source)
    return sources, missing


def preflight(step: WorkflowStep, ctx: "RunContext") -> None:
    """Domain gate for steps that touch the network.

    A scrape step whose every source domain is refused by policy raises
    DomainNotAllowed; a partially refused list is handled per source.
    """
    if not isinstance(step.inputs, ScrapeInput):
        return
    sources, _ = resolve_sources(step.inputs.source_ids, ctx)
    if not sources:
        return
    domains = [domain_of(source.url) for source in sources]
    allowed = [d for d in domains if ctx.enforcer.check_domain(d)]
    if not allowed:
        raise DomainNotAllowed(", ".join(sorted(set(domains))), "No source domain is allowed by policy")
    for domain in allowed:
        wait_ms = ctx.enforcer.check_rate(domain)
        if wait_ms:
            LOG.debug("%s is rate limited for another %dms", domain, wait_ms)


def _page_signature(source: SourceRecord, ctx: "RunContext", budget: SourceBudget) -> Optional[str]:
    """Rendered HTML of the career page, when a browser is available to probe it."""
    if ctx.browser is None or ctx.simulation_mode:
        return None
    if not budget.acquire_page(source.url):
        return None
    try:
        page = render_page(ctx.browser, source.url, ctx.browser_timeout_s)
    except CapabilityTimeout as exc:
        LOG.warning("page probe of %s gave up: %s", source.url, exc)
        return None
    return page.html


def _scrape_source(source: SourceRecord, ctx: "RunContext") -> Tuple[SourceScrapeReport, List[CanonicalJob]]:
    report = SourceScrapeReport(source_id=source.id, url=source.url)
    allowed, reason = ctx.enforcer.domain_verdict(domain_of(source.url))
    if not allowed:
        report.outcome = "skipped"
        report.errors.append(reason)
        return report, []

    budget = SourceBudget(ctx.enforcer, source.id)
    try:
        signature = None
        if needs_page_probe(fingerprint_source(source.url)):
            signature = _page_signature(source, ctx, budget)
        refreshed = refresh_fingerprint(source, signature)
        if not ctx.simulation_mode:
            ctx.source_store.save(refreshed)
        report.ats_type = refreshed.ats_type

        connector = ctx.registry.get_or_throw(refreshed.ats_type)
        config: Dict[str, Any] = dict(refreshed.connector_config or {})
        if source.company:
            config.setdefault("company", source.company)
        result = connector.fetch(config, budget)
    except NoConnectorForAtsType as exc:
        report.outcome = "unsupported"
        report.errors.append(str(exc))
        return report, []
    except (ScanEngineError, httpx.HTTPError) as exc:
        report.outcome = "failed"
        report.errors.append(str(exc))
        return report, []

    report.jobs_fetched = len(result.jobs)
    report.pages_fetched = result.pages_fetched
    report.truncated = result.truncated
    report.errors.extend(result.errors)
    if result.ok and result.truncated and result.pages_fetched == 0:
        report.outcome = "skipped"
        report.errors.append("page budget exhausted before the first page")
    else:
        report.outcome = "ok" if result.ok else "failed"
    return report, result.jobs


def _page_starved(report: SourceScrapeReport) -> bool:
    return report.outcome == "skipped" and report.truncated and report.pages_fetched == 0


def scrape(step: WorkflowStep, ctx: "RunContext") -> ScrapeOutput:
    """Fetch every configured source in parallel through the shared enforcer."""
    source_ids = step.inputs.source_ids if isinstance(step.inputs, ScrapeInput) else None
    sources, reports = resolve_sources(source_ids, ctx)

    jobs: List[CanonicalJob] = []
    if sources:
        workers = max(1, min(ctx.max_workers, len(sources)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="scrape") as pool:
            outcomes = list(pool.map(lambda source: _scrape_source(source, ctx), sources))
        for report, source_jobs in outcomes:
            LOG.info(
                "source %s (%s): %s, %d jobs over %d pages%s",
                report.source_id,
                report.ats_type.value,
                report.outcome,
                report.jobs_fetched,
                report.pages_fetched,
                " (truncated)" if report.truncated else "",
            )
            ctx.activity.append(
                ctx.user_id,
                "source_scraped",
                source_id=report.source_id,
                outcome=report.outcome,
                jobs=report.jobs_fetched,
            )
            reports.append(report)
            jobs.extend(source_jobs)

    attempted = [r for r in reports if r.outcome in ("ok", "failed")]
    if attempted and all(r.outcome == "failed" for r in attempted):
        details = "; ".join(f"{r.source_id}: {', '.join(r.errors) or 'no jobs'}" for r in attempted)
        raise ConnectorFetchFailed(f"All {len(attempted)} sources failed: {details}")
    starved = [r.source_id for r in reports if _page_starved(r)]
    if starved and not attempted:
        # Every source ran out of pages before fetching anything.
        raise PolicyBudgetExceeded("pages", f"no page budget left for {', '.join(starved)}")

    ctx.scraped_jobs = jobs
    return ScrapeOutput(sources=reports, jobs_fetched=len(jobs))


# -- extract -----------------------------------------------------------------


def dedupe_jobs(jobs: List[CanonicalJob]) -> List[CanonicalJob]:
    """Collapse jobs sharing a dedupe key, keeping first-seen order.

    Fields missing on the first record are filled from later duplicates.
    """
    merged: Dict[str, CanonicalJob] = {}
    for job in jobs:
        existing = merged.get(job.dedupe_key)
        if existing is None:
            merged[job.dedupe_key] = job
            continue
        gaps = {
            name: value
            for name, value in job.model_dump().items()
            if value not in (None, "", "UNKNOWN", {}) and getattr(existing, name) in (None, "", "UNKNOWN", {})
        }
        if gaps:
            merged[job.dedupe_key] = existing.model_copy(update=gaps)
    return list(merged.values())


def extract(step: WorkflowStep, ctx: "RunContext") -> ExtractOutput:
    unique = dedupe_jobs(ctx.scraped_jobs)
    ctx.unique_jobs = unique
    output = ExtractOutput(jobs_in=len(ctx.scraped_jobs), unique_jobs=len(unique))
    if ctx.simulation_mode:
        output.persisted = False
        return output

    for job in unique:
        if ctx.job_store.upsert(job).created:
            output.created += 1
        else:
            output.updated += 1
    LOG.info("persisted %d jobs (%d new, %d updated)", len(unique), output.created, output.updated)
    return output


# -- match -------------------------------------------------------------------


def _recency(job: CanonicalJob) -> float:
    stamp: Optional[datetime] = job.posted_at or job.first_seen_at
    return stamp.timestamp() if stamp else float("-inf")


def select_top_jobs(jobs: List[CanonicalJob], top_k: int, strict: bool) -> List[CanonicalJob]:
    """Newest open jobs first. Strict mode also drops jobs of unknown status."""
    if strict:
        candidates = [j for j in jobs if j.status == "OPEN"]
    else:
        candidates = [j for j in jobs if j.status != "CLOSED"]
    ranked = sorted(candidates, key=lambda j: (-_recency(j), j.dedupe_key))
    return ranked[:top_k]


def match(step: WorkflowStep, ctx: "RunContext") -> MatchOutput:
    inputs = step.inputs if isinstance(step.inputs, MatchInput) else MatchInput()
    ctx.top_jobs = select_top_jobs(ctx.unique_jobs, inputs.top_k, inputs.strict)
    return MatchOutput(candidates=len(ctx.unique_jobs), selected_keys=[j.dedupe_key for j in ctx.top_jobs])


# -- generation --------------------------------------------------------------


def _profile_line(profile: Optional[Dict[str, Any]]) -> str:
    profile = profile or {}
    name = profile.get("name") or "the candidate"
    skills = profile.get("skills") or []
    if isinstance(skills, list):
        skills = ", ".join(str(s) for s in skills[:10])
    return f"{name} (skills: {skills or 'n/a'})"


def _job_line(job: CanonicalJob) -> str:
    where = job.location or job.remote_type.lower()
    return f"{job.title} at {job.company or 'unknown company'} ({where})"


def contact_hunt(step: WorkflowStep, ctx: "RunContext") -> ContactHuntOutput:
    inputs = step.inputs if isinstance(step.inputs, ContactHuntInput) else ContactHuntInput()
    generator = ctx.guarded_generator()
    options = CompletionOptions(timeout_s=ctx.generator_timeout_s, response_format="json", max_tokens=512)
    output = ContactHuntOutput()

    for job in ctx.top_jobs:
        prompt = (
            "List people likely involved in hiring for this role (recruiters, hiring managers).\n"
            f"Role: {_job_line(job)}\n"
            f"Return at most {inputs.max_contacts_per_job} entries as a JSON array of "
            '{"name", "role", "profile_url", "email", "confidence"}.'
        )
        generated = generator.complete(prompt, FAST_MODE, options, fallback="[]")
        parsed = parse_json_response(generated.text, List[Contact])
        if generated.used_fallback or not parsed.success:
            if parsed.error:
                LOG.info("contact output for %s unusable: %s", job.dedupe_key, parsed.error)
            output.fallbacks += 1
            contacts: List[Contact] = []
        else:
            contacts = parsed.data[: inputs.max_contacts_per_job]
        output.contacts[job.dedupe_key] = contacts

    ctx.contacts = output.contacts
    return output


def draft(step: WorkflowStep, ctx: "RunContext") -> DraftOutput:
    inputs = step.inputs if isinstance(step.inputs, DraftInput) else DraftInput()
    generator = ctx.guarded_generator()
    options = CompletionOptions(timeout_s=ctx.generator_timeout_s, max_tokens=400)
    output = DraftOutput()

    for job in ctx.top_jobs:
        recipients = ctx.contacts.get(job.dedupe_key) or []
        recipient = f"{recipients[0].name} ({recipients[0].role})" if recipients else "the hiring team"
        prompt = (
            f"Write a short {inputs.tone} outreach message.\n"
            f"From: {_profile_line(ctx.profile)}\n"
            f"To: {recipient}\n"
            f"About: {_job_line(job)}\n"
            "Return only the message text."
        )
        generated = generator.complete(prompt, WRITING_MODE, options)
        text = generated.text.strip()
        if generated.used_fallback or not text:
            output.fallbacks += 1
            continue
        output.drafts[job.dedupe_key] = text

    ctx.drafts = output.drafts
    return output


def blueprint(step: WorkflowStep, ctx: "RunContext") -> BlueprintOutput:
    generator = ctx.guarded_generator()
    options = CompletionOptions(timeout_s=ctx.generator_timeout_s, response_format="json", max_tokens=600)
    output = BlueprintOutput()

    for job in ctx.top_jobs:
        prompt = (
            "Plan the application for this role.\n"
            f"Candidate: {_profile_line(ctx.profile)}\n"
            f"Role: {_job_line(job)}\n"
            f"Apply link: {job.apply_url or job.job_url or 'unknown'}\n"
            'Return JSON {"steps": [...], "documents": [...], "notes": "..."}.'
        )
        generated = generator.complete(prompt, FAST_MODE, options, fallback="{}")
        parsed = parse_json_response(generated.text, ApplicationBlueprint)
        if generated.used_fallback or not parsed.success:
            output.fallbacks += 1
            output.blueprints[job.dedupe_key] = ApplicationBlueprint()
        else:
            output.blueprints[job.dedupe_key] = parsed.data

    ctx.blueprints = output.blueprints
    return output


# -- done --------------------------------------------------------------------


def done(step: WorkflowStep, ctx: "RunContext") -> DoneOutput:
    return DoneOutput(
        jobs_persisted=0 if ctx.simulation_mode else len(ctx.unique_jobs),
        top_jobs=len(ctx.top_jobs),
        budget=ctx.enforcer.snapshot(),
    )


STEP_EXECUTORS: Dict[str, Callable[[WorkflowStep, "RunContext"], Any]] = {
    "scrape": scrape,
    "extract": extract,
    "match": match,
    "contact_hunt": contact_hunt,
    "draft": draft,
    "blueprint": blueprint,
    "done": done,
}
