"""Data models for the scan engine.

The engine owns a *stable* canonical schema regardless of which applicant
tracking system produced a posting, plus the run-state models (plans, steps,
budgets) that make every run auditable. The `raw` payload of each job is kept
so records can be re-parsed later without re-fetching.

This file uses Pydantic v2.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class AtsType(str, Enum):
    """Closed set of applicant tracking systems the fingerprinter knows."""

    GREENHOUSE = "GREENHOUSE"
    LEVER = "LEVER"
    ASHBY = "ASHBY"
    SMARTRECRUITERS = "SMARTRECRUITERS"
    RECRUITEE = "RECRUITEE"
    PERSONIO = "PERSONIO"
    WORKDAY = "WORKDAY"
    UNKNOWN = "UNKNOWN"


class ScrapeStrategy(str, Enum):
    API_JSON = "API_JSON"
    API_XML = "API_XML"
    BROWSER_FALLBACK = "BROWSER_FALLBACK"


RemoteType = Literal["REMOTE", "HYBRID", "ONSITE", "UNKNOWN"]
JobStatus = Literal["OPEN", "CLOSED", "UNKNOWN"]
StepStatus = Literal["pending", "running", "completed", "failed", "skipped"]
PlanStatus = Literal["pending", "running", "completed", "failed", "cancelled"]
StepKind = Literal["scrape", "extract", "match", "contact_hunt", "draft", "blueprint", "done"]


class PolicyConstraints(BaseModel):
    """Budget envelope for a single run.

    Every field has a default, so a run always works with a fully resolved
    object. Use `resolve()` to merge a partial override over the defaults.
    """

    model_config = ConfigDict(frozen=True)

    max_pages_per_source: int = Field(default=10, ge=0)
    max_jobs_per_source: int = Field(default=100, ge=0)
    max_tokens_per_run: int = Field(default=50000, ge=0)
    max_time_per_run_ms: int = Field(default=600000, ge=0)
    rate_limit_per_domain: float = Field(default=2.0, gt=0, description="Requests per second per domain.")
    allowed_domains: Optional[List[str]] = None
    blocked_domains: Optional[List[str]] = None
    simulation_mode: bool = Field(
        default=False,
        description="Dry run: budgets are tracked but no fetch or generation is performed.",
    )

    @classmethod
    def resolve(
        cls,
        override: Union["PolicyConstraints", Mapping[str, Any], None] = None,
        defaults: Optional["PolicyConstraints"] = None,
    ) -> "PolicyConstraints":
        """Merge only the explicitly set fields of `override` over `defaults`."""
        base = defaults or cls()
        if override is None:
            return base
        if isinstance(override, PolicyConstraints):
            patch = {name: getattr(override, name) for name in override.model_fields_set}
        else:
            patch = {k: v for k, v in override.items() if v is not None}
        return cls.model_validate({**base.model_dump(), **patch})


class ScanConfig(BaseModel):
    """Immutable per-run input."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    source_ids: Optional[List[str]] = None
    include_contact_hunt: bool = True
    include_drafts: bool = True
    include_blueprints: bool = False
    strict_filter_enabled: bool = True
    top_k: int = Field(default=15, ge=1)
    constraints: Optional[PolicyConstraints] = None


class CanonicalJob(BaseModel):
    """A normalized, identity-bearing job posting.

    The `dedupe_key` is the primary identity: two records with the same key are
    the same real-world posting no matter which source produced them.
    """

    dedupe_key: str = Field(..., description="Stable identity used for upsert.")
    source: str = Field(default="unknown", description="Connector name, e.g. 'greenhouse'.")
    external_id: Optional[str] = None

    title: str
    company: str = ""
    location: Optional[str] = None
    remote_type: RemoteType = "UNKNOWN"
    employment_type: Optional[str] = None
    level: Optional[str] = None
    status: JobStatus = "UNKNOWN"

    posted_at: Optional[datetime] = None
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None

    job_url: Optional[str] = None
    apply_url: Optional[str] = None
    description_text: Optional[str] = None

    raw: Dict[str, Any] = Field(default_factory=dict, description="Original payload.")


class FingerprintResult(BaseModel):
    """Detected ATS family and how to approach the source."""

    model_config = ConfigDict(frozen=True)

    ats_type: AtsType = AtsType.UNKNOWN
    scrape_strategy: ScrapeStrategy = ScrapeStrategy.BROWSER_FALLBACK
    connector_config: Dict[str, Any] = Field(default_factory=dict)
    matched_rule: Optional[str] = None


class SourceRecord(BaseModel):
    """A career site configured by a user, with its cached fingerprint."""

    id: str
    url: str
    company: str = ""
    user_id: Optional[str] = None
    enabled: bool = True

    ats_type: Optional[AtsType] = None
    scrape_strategy: Optional[ScrapeStrategy] = None
    connector_config: Optional[Dict[str, Any]] = None
    last_fingerprinted_at: Optional[datetime] = None


class BudgetStatus(BaseModel):
    """Point-in-time view of a run's budget ledger (used for dry-run reports)."""

    pages_by_source: Dict[str, int] = Field(default_factory=dict)
    jobs_by_source: Dict[str, int] = Field(default_factory=dict)
    tokens_used: int = 0
    tokens_remaining: int = 0
    elapsed_ms: int = 0
    remaining_ms: int = 0
    exhausted: List[str] = Field(default_factory=list)
    simulation_mode: bool = False


class Contact(BaseModel):
    name: str
    role: str = ""
    profile_url: Optional[str] = None
    email: Optional[str] = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class ApplicationBlueprint(BaseModel):
    steps: List[str] = Field(default_factory=list)
    documents: List[str] = Field(default_factory=list)
    notes: str = ""


# -- Step payloads ----------------------------------------------------------
# One variant per step kind, discriminated on `kind`.


class ScrapeInput(BaseModel):
    kind: Literal["scrape"] = "scrape"
    source_ids: Optional[List[str]] = None


class ExtractInput(BaseModel):
    kind: Literal["extract"] = "extract"


class MatchInput(BaseModel):
    kind: Literal["match"] = "match"
    top_k: int = 15
    strict: bool = True


class ContactHuntInput(BaseModel):
    kind: Literal["contact_hunt"] = "contact_hunt"
    max_contacts_per_job: int = 2


class DraftInput(BaseModel):
    kind: Literal["draft"] = "draft"
    tone: str = "professional"


class BlueprintInput(BaseModel):
    kind: Literal["blueprint"] = "blueprint"


class DoneInput(BaseModel):
    kind: Literal["done"] = "done"


class SourceScrapeReport(BaseModel):
    source_id: str
    url: str
    ats_type: AtsType = AtsType.UNKNOWN
    outcome: Literal["ok", "failed", "skipped", "unsupported"] = "ok"
    jobs_fetched: int = 0
    pages_fetched: int = 0
    truncated: bool = False
    errors: List[str] = Field(default_factory=list)


class ScrapeOutput(BaseModel):
    kind: Literal["scrape"] = "scrape"
    sources: List[SourceScrapeReport] = Field(default_factory=list)
    jobs_fetched: int = 0


class ExtractOutput(BaseModel):
    kind: Literal["extract"] = "extract"
    jobs_in: int = 0
    unique_jobs: int = 0
    created: int = 0
    updated: int = 0
    persisted: bool = True


class MatchOutput(BaseModel):
    kind: Literal["match"] = "match"
    candidates: int = 0
    selected_keys: List[str] = Field(default_factory=list)


class ContactHuntOutput(BaseModel):
    kind: Literal["contact_hunt"] = "contact_hunt"
    contacts: Dict[str, List[Contact]] = Field(default_factory=dict)
    fallbacks: int = 0


class DraftOutput(BaseModel):
    kind: Literal["draft"] = "draft"
    drafts: Dict[str, str] = Field(default_factory=dict)
    fallbacks: int = 0


class BlueprintOutput(BaseModel):
    kind: Literal["blueprint"] = "blueprint"
    blueprints: Dict[str, ApplicationBlueprint] = Field(default_factory=dict)
    fallbacks: int = 0


class DoneOutput(BaseModel):
    kind: Literal["done"] = "done"
    jobs_persisted: int = 0
    top_jobs: int = 0
    budget: BudgetStatus = Field(default_factory=BudgetStatus)


StepInput = Annotated[
    Union[ScrapeInput, ExtractInput, MatchInput, ContactHuntInput, DraftInput, BlueprintInput, DoneInput],
    Field(discriminator="kind"),
]
StepOutput = Annotated[
    Union[ScrapeOutput, ExtractOutput, MatchOutput, ContactHuntOutput, DraftOutput, BlueprintOutput, DoneOutput],
    Field(discriminator="kind"),
]


class WorkflowStep(BaseModel):
    """One unit of pipeline work. Only the engine mutates it."""

    id: str
    name: str
    agent: str = Field(..., description="Capability that performs the step, e.g. 'browser/job-extractor'.")
    kind: StepKind
    required: bool = False
    max_retries: int = Field(default=0, ge=0)
    timeout_s: Optional[float] = None

    status: StepStatus = "pending"
    inputs: Optional[StepInput] = None
    outputs: Optional[StepOutput] = None
    error: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class WorkflowPlan(BaseModel):
    """Aggregate root of a run. Step order is the execution order."""

    id: str
    name: str
    description: Optional[str] = None
    user_id: Optional[str] = None
    steps: List[WorkflowStep] = Field(default_factory=list)
    status: PlanStatus = "pending"
    current_step_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    def get_step(self, step_id: str) -> WorkflowStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)
