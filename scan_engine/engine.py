"""Workflow plan engine: runs a WorkflowPlan step by step.

Steps run strictly in plan order. Before each step the engine:
- polls the explicit StopSignal (the only cancellation point)
- asks the PolicyEnforcer whether the run-global budgets (wall clock, and
  tokens for generation steps) still allow new work
- checks the domains the step is about to touch

Outcomes per step:
- success                       -> completed
- retryable error               -> re-run the same step (same id) up to max_retries
- domain or per-source budget   -> skipped when optional, failed when required
- run-global budget exhausted   -> failed, remaining steps stay pending
- anything else                 -> failed; the plan halts only if the step is required

The plan ends `failed` when a required step failed or a run-global budget ran
out, `cancelled` when a stop was requested, and `completed` otherwise. Failed
optional steps stay visible in the plan with their error.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .activity import ACTIVITY, ActivityLog
from .capabilities import BrowserRenderer, ContentGenerator, GuardedGenerator, call_with_timeout
from .config import get_engine_config, get_policy_defaults, load_config_or_default
from .errors import DomainNotAllowed, PolicyBudgetExceeded, ScanEngineError
from .models import (
    ApplicationBlueprint,
    CanonicalJob,
    Contact,
    PolicyConstraints,
    ScanConfig,
    WorkflowPlan,
    WorkflowStep,
)
from .planner import GENERATION_KINDS, build_scan_plan
from .policy import PolicyEnforcer
from .sources.registry import ConnectorRegistry
from .steps import STEP_EXECUTORS, preflight
from .store import JobStore, PlanStore, ProfileStore, SourceStore
from .utils import utc_now

LOG = logging.getLogger(__name__)


class StopSignal:
    """Explicit, externally settable stop flag, polled at step boundaries."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def stop(self, reason: str = "stop requested") -> None:
        self._reason = reason
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason


@dataclass
class RunContext:
    """Everything one run needs, plus the data its steps hand to each other."""

    config: ScanConfig
    enforcer: PolicyEnforcer
    job_store: JobStore
    source_store: SourceStore
    plan_store: Optional[PlanStore] = None
    profile: Optional[Dict[str, Any]] = None
    generator: Optional[ContentGenerator] = None
    browser: Optional[BrowserRenderer] = None
    registry: ConnectorRegistry = field(default_factory=ConnectorRegistry)
    stop: StopSignal = field(default_factory=StopSignal)
    activity: ActivityLog = ACTIVITY
    max_workers: int = 4
    generator_timeout_s: float = 60.0
    browser_timeout_s: float = 30.0

    scraped_jobs: List[CanonicalJob] = field(default_factory=list)
    unique_jobs: List[CanonicalJob] = field(default_factory=list)
    top_jobs: List[CanonicalJob] = field(default_factory=list)
    contacts: Dict[str, List[Contact]] = field(default_factory=dict)
    drafts: Dict[str, str] = field(default_factory=dict)
    blueprints: Dict[str, ApplicationBlueprint] = field(default_factory=dict)

    @property
    def user_id(self) -> str:
        return self.config.user_id

    @property
    def constraints(self) -> PolicyConstraints:
        return self.enforcer.constraints

    @property
    def simulation_mode(self) -> bool:
        return self.enforcer.simulation_mode

    def guarded_generator(self) -> GuardedGenerator:
        return GuardedGenerator(self.generator, self.enforcer, self.generator_timeout_s)


class WorkflowEngine:
    """Sequential state machine over a plan's steps.

    A stop requested while the last step is running still ends the plan
    `cancelled`, even when every step completed: cancellation preempts
    completion.
    """

    def run(self, plan: WorkflowPlan, ctx: RunContext) -> WorkflowPlan:
        plan.status = "running"
        self._save(plan, ctx)
        ctx.activity.append(ctx.user_id, "plan_started", plan_id=plan.id, steps=len(plan.steps))
        LOG.info("plan %s started with %d steps", plan.id, len(plan.steps))

        halted = False
        for step in plan.steps:
            if step.status != "pending":
                continue
            if ctx.stop.is_set():
                LOG.info("plan %s: stop requested before %s (%s)", plan.id, step.id, ctx.stop.reason)
                break

            plan.current_step_id = step.id
            error = self._gate(step, ctx)
            if error is None:
                error = self._execute(plan, step, ctx)
            else:
                step.started_at = utc_now()

            if error is None:
                self._finish(plan, step, ctx, "completed")
                continue

            if isinstance(error, PolicyBudgetExceeded) and error.run_global:
                self._finish(plan, step, ctx, "failed", str(error))
                LOG.warning("plan %s halted: %s", plan.id, error)
                halted = True
                break
            if isinstance(error, (PolicyBudgetExceeded, DomainNotAllowed)) and not step.required:
                self._finish(plan, step, ctx, "skipped", str(error))
                continue

            self._finish(plan, step, ctx, "failed", str(error))
            if step.required:
                LOG.warning("plan %s halted: required step %s failed", plan.id, step.id)
                halted = True
                break

        plan.current_step_id = None
        if halted:
            plan.status = "failed"
        elif ctx.stop.is_set():
            plan.status = "cancelled"
        else:
            plan.status = "completed"
        self._save(plan, ctx)
        ctx.activity.append(ctx.user_id, "plan_finished", plan_id=plan.id, status=plan.status)
        LOG.info("plan %s finished: %s", plan.id, plan.status)
        return plan

    def _gate(self, step: WorkflowStep, ctx: RunContext) -> Optional[ScanEngineError]:
        """Policy check before a step starts. Returns the refusal, if any."""
        try:
            ctx.enforcer.require_run_budget(needs_tokens=step.kind in GENERATION_KINDS)
            preflight(step, ctx)
        except (PolicyBudgetExceeded, DomainNotAllowed) as exc:
            LOG.info("step %s (%s) refused by policy: %s", step.id, step.kind, exc)
            return exc
        return None

    def _execute(self, plan: WorkflowPlan, step: WorkflowStep, ctx: RunContext) -> Optional[BaseException]:
        executor = STEP_EXECUTORS[step.kind]
        step.status = "running"
        step.started_at = utc_now()
        step.error = None
        self._save(plan, ctx)
        ctx.activity.append(ctx.user_id, "step_started", plan_id=plan.id, step_id=step.id, kind=step.kind)

        while True:
            step.attempts += 1
            LOG.info("step %s (%s) attempt %d/%d", step.id, step.kind, step.attempts, step.max_retries + 1)
            try:
                step.outputs = call_with_timeout(lambda: executor(step, ctx), step.timeout_s, f"step:{step.kind}")
                return None
            except ScanEngineError as exc:
                if not exc.retryable or step.attempts > step.max_retries:
                    return exc
                LOG.warning("step %s attempt %d failed, retrying: %s", step.id, step.attempts, exc)
                try:
                    ctx.enforcer.require_run_budget()
                except PolicyBudgetExceeded as budget_exc:
                    return budget_exc
            except Exception as exc:
                # Recorded on the step; the plan is the audit log.
                LOG.exception("step %s (%s) raised unexpectedly", step.id, step.kind)
                return exc

    def _finish(
        self,
        plan: WorkflowPlan,
        step: WorkflowStep,
        ctx: RunContext,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        step.status = status
        step.error = error
        step.completed_at = utc_now()
        self._save(plan, ctx)
        ctx.activity.append(
            ctx.user_id,
            f"step_{status}",
            plan_id=plan.id,
            step_id=step.id,
            kind=step.kind,
            error=error,
        )
        if error:
            LOG.info("step %s (%s) %s: %s", step.id, step.kind, status, error)
        else:
            LOG.info("step %s (%s) %s", step.id, step.kind, status)

    def _save(self, plan: WorkflowPlan, ctx: RunContext) -> None:
        plan.updated_at = utc_now()
        if ctx.plan_store is not None:
            ctx.plan_store.save(plan)


def run_scan(
    config: ScanConfig,
    *,
    job_store: JobStore,
    source_store: SourceStore,
    plan_store: Optional[PlanStore] = None,
    profile_store: Optional[ProfileStore] = None,
    generator: Optional[ContentGenerator] = None,
    browser: Optional[BrowserRenderer] = None,
    registry: Optional[ConnectorRegistry] = None,
    stop: Optional[StopSignal] = None,
    settings: Optional[Dict[str, Any]] = None,
    policy_defaults: Optional[PolicyConstraints] = None,
) -> WorkflowPlan:
    """Build the plan for `config` and run it to a terminal status.

    `settings` is a loaded config file (see `config.py`); when omitted the
    default config file is read if present.
    """
    settings = load_config_or_default() if settings is None else settings
    engine_cfg = get_engine_config(settings)
    constraints = PolicyConstraints.resolve(
        config.constraints, defaults=policy_defaults or get_policy_defaults(settings)
    )
    profile = profile_store.get_profile(config.user_id) if profile_store is not None else None

    ctx = RunContext(
        config=config,
        enforcer=PolicyEnforcer(constraints),
        job_store=job_store,
        source_store=source_store,
        plan_store=plan_store,
        profile=profile,
        generator=generator,
        browser=browser,
        registry=registry or ConnectorRegistry(),
        stop=stop or StopSignal(),
        max_workers=engine_cfg["max_workers"],
        generator_timeout_s=float(engine_cfg["generator_timeout_s"]),
        browser_timeout_s=float(engine_cfg["browser_timeout_s"]),
    )
    plan = build_scan_plan(config, has_profile=profile is not None)
    return WorkflowEngine().run(plan, ctx)
