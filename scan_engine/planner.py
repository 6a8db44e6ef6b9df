"""Build the ordered workflow plan for a scan.

The step sequence is a pure function of the ScanConfig feature toggles and of
whether the user has a profile. It is fixed here and never re-derived while
the plan runs.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, NamedTuple, Optional

from .models import (
    BlueprintInput,
    ContactHuntInput,
    DoneInput,
    DraftInput,
    ExtractInput,
    MatchInput,
    ScanConfig,
    ScrapeInput,
    StepKind,
    WorkflowPlan,
    WorkflowStep,
)
from .utils import new_id, utc_now


class StepTemplate(NamedTuple):
    name: str
    agent: str
    required: bool
    max_retries: int


STEP_TEMPLATES: Dict[str, StepTemplate] = {
    "scrape": StepTemplate("Scrape Sources", "browser/job-extractor", True, 2),
    "extract": StepTemplate("Normalize & Deduplicate Jobs", "normalize/entity-resolver", True, 0),
    "match": StepTemplate("Select Top Jobs", "rank/top-k-curator", False, 0),
    "contact_hunt": StepTemplate("Hunt Contacts", "contacts/people-search", False, 1),
    "draft": StepTemplate("Draft Outreach", "outreach/writer", False, 1),
    "blueprint": StepTemplate("Create Application Blueprints", "apply/blueprint", False, 1),
    "done": StepTemplate("Finalize Run", "planner/finalize", True, 0),
}

# Steps that spend language-model tokens.
GENERATION_KINDS = ("contact_hunt", "draft", "blueprint")


def step_kinds_for(config: ScanConfig, has_profile: bool) -> List[StepKind]:
    kinds: List[StepKind] = ["scrape", "extract"]
    if has_profile:
        if config.include_contact_hunt or config.include_drafts or config.include_blueprints:
            kinds.append("match")
        if config.include_contact_hunt:
            kinds.append("contact_hunt")
        if config.include_drafts:
            kinds.append("draft")
        if config.include_blueprints:
            kinds.append("blueprint")
    kinds.append("done")
    return kinds


def _inputs_for(kind: str, config: ScanConfig):
    if kind == "scrape":
        return ScrapeInput(source_ids=list(config.source_ids) if config.source_ids else None)
    if kind == "extract":
        return ExtractInput()
    if kind == "match":
        return MatchInput(top_k=config.top_k, strict=config.strict_filter_enabled)
    if kind == "contact_hunt":
        return ContactHuntInput()
    if kind == "draft":
        return DraftInput()
    if kind == "blueprint":
        return BlueprintInput()
    return DoneInput()


def build_scan_plan(
    config: ScanConfig,
    has_profile: bool = True,
    now: Optional[datetime] = None,
) -> WorkflowPlan:
    """Create the deterministic scan plan for `config`.

    Scraping and extraction always run. Top-job selection and the generation
    steps are appended only when a profile exists and the matching toggle is
    on. The plan always ends with the finalize step.
    """
    now = now or utc_now()
    steps: List[WorkflowStep] = []
    for index, kind in enumerate(step_kinds_for(config, has_profile), start=1):
        template = STEP_TEMPLATES[kind]
        steps.append(
            WorkflowStep(
                id=f"step-{index}",
                name=template.name,
                agent=template.agent,
                kind=kind,
                required=template.required,
                max_retries=template.max_retries,
                inputs=_inputs_for(kind, config),
            )
        )

    source_count = len(config.source_ids) if config.source_ids else "all"
    return WorkflowPlan(
        id=new_id("plan"),
        name="Scan & Rank Workflow",
        description=f"Scan {source_count} sources and find top {config.top_k} jobs",
        user_id=config.user_id,
        steps=steps,
        status="pending",
        created_at=now,
        updated_at=now,
    )
