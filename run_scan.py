"""CLI entry point.

This script fingerprints career-site URLs, runs a scan plan over them, and
writes the finished plan plus the persisted jobs to a JSON file.

Examples:
    python run_scan.py --url https://boards.greenhouse.io/acme --out scan.json
    python run_scan.py --url https://jobs.lever.co/acme --max-jobs 20 --simulate
    python run_scan.py --url https://acme.recruitee.com --profile profile.json --blueprints

The output is a dict with the serialized plan and a list of jobs (Pydantic models).
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from scan_engine.config import configure_logging, get_http_config, get_log_level, load_config_or_default
from scan_engine.engine import run_scan
from scan_engine.models import AtsType, PolicyConstraints, ScanConfig, SourceRecord
from scan_engine.sources.greenhouse import GreenhouseSource
from scan_engine.sources.lever import LeverSource
from scan_engine.sources.recruitee import RecruiteeSource
from scan_engine.sources.registry import ConnectorRegistry
from scan_engine.store import InMemoryJobStore, InMemoryPlanStore, InMemoryProfileStore, InMemorySourceStore
from scan_engine.utils import stable_id

LOG = logging.getLogger("run_scan")


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Scan career sites and normalize their jobs.")
    p.add_argument("--url", action="append", required=True, help="Career-site URL (repeatable).")
    p.add_argument("--out", type=str, default="scan.json", help="Output JSON file path.")
    p.add_argument("--user", type=str, default="cli", help="User id the run is recorded under.")
    p.add_argument("--config", type=str, default=None, help="Config JSON (else SCAN_ENGINE_CONFIG_PATH).")
    p.add_argument("--profile", type=str, default=None, help="Optional profile JSON; enables ranking steps.")
    p.add_argument("--top-k", type=int, default=15, help="How many top jobs to keep.")
    p.add_argument("--max-jobs", type=int, default=None, help="Job cap per source.")
    p.add_argument("--max-pages", type=int, default=None, help="Page cap per source.")
    p.add_argument("--simulate", action="store_true", help="Dry run: track budgets, fetch nothing.")
    p.add_argument("--no-contacts", action="store_true", help="Skip the contact hunt step.")
    p.add_argument("--no-drafts", action="store_true", help="Skip outreach drafting.")
    p.add_argument("--blueprints", action="store_true", help="Also create application blueprints.")
    p.add_argument("--lenient", action="store_true", help="Keep jobs of unknown status when ranking.")
    p.add_argument("--log-level", type=str, default=None, help="Override the configured log level.")
    return p.parse_args()


def build_registry(http: dict) -> ConnectorRegistry:
    kwargs = {
        "timeout_s": float(http["timeout_s"]),
        "max_retries": int(http["max_retries"]),
        "backoff_s": float(http["backoff_s"]),
    }
    return ConnectorRegistry(
        {
            AtsType.GREENHOUSE: GreenhouseSource(**kwargs),
            AtsType.LEVER: LeverSource(**kwargs),
            AtsType.RECRUITEE: RecruiteeSource(**kwargs),
        }
    )


def main() -> None:
    args = parse_args()
    settings = load_config_or_default(args.config)
    configure_logging(args.log_level or get_log_level(settings))

    sources = [
        SourceRecord(id=f"src-{stable_id(url, length=12)}", url=url, user_id=args.user) for url in args.url
    ]
    profiles = {}
    if args.profile:
        profiles[args.user] = json.loads(Path(args.profile).expanduser().read_text(encoding="utf-8"))

    # Only flags given on the command line override the configured policy.
    overrides = {
        "max_jobs_per_source": args.max_jobs,
        "max_pages_per_source": args.max_pages,
        "simulation_mode": True if args.simulate else None,
    }
    constraints = PolicyConstraints(**{k: v for k, v in overrides.items() if v is not None})
    config = ScanConfig(
        user_id=args.user,
        source_ids=[s.id for s in sources],
        include_contact_hunt=not args.no_contacts,
        include_drafts=not args.no_drafts,
        include_blueprints=args.blueprints,
        strict_filter_enabled=not args.lenient,
        top_k=args.top_k,
        constraints=constraints,
    )

    job_store = InMemoryJobStore()
    plan = run_scan(
        config,
        job_store=job_store,
        source_store=InMemorySourceStore(sources),
        plan_store=InMemoryPlanStore(),
        profile_store=InMemoryProfileStore(profiles),
        registry=build_registry(get_http_config(settings)),
        settings=settings,
    )

    out_path = Path(args.out).expanduser().resolve()
    out_path.parent.mkdir(parents=True, exist_ok=True)

    # Use json mode so datetimes and enums serialize as strings for json.dumps
    data = {
        "plan": plan.model_dump(mode="json"),
        "jobs": [j.model_dump(mode="json") for j in job_store.all()],
    }
    out_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")

    LOG.info("plan %s: %s", plan.id, plan.status)
    print(f"Plan {plan.status}; wrote {len(data['jobs'])} jobs to: {out_path}")


if __name__ == "__main__":
    main()
