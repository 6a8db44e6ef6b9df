"""Scan engine package.

The package is laid out around one scan run:
- `models.py` defines the stable schema (canonical jobs, plans, budgets).
- `fingerprint.py` detects which ATS serves a career site.
- `sources/` contains per-ATS connectors that fetch jobs.
- `normalize.py` contains URL canonicalization and dedupe-key derivation.
- `policy.py` is the per-run budget ledger.
- `planner.py`, `engine.py` and `steps.py` build and execute the workflow plan.
"""

from .engine import RunContext, StopSignal, WorkflowEngine, run_scan
from .planner import build_scan_plan

__all__ = ["RunContext", "StopSignal", "WorkflowEngine", "build_scan_plan", "run_scan"]
