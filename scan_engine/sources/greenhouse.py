"""Greenhouse job board connector.

Greenhouse exposes every published job of a board in a single JSON document,
so a fetch costs exactly one page. The job cap is applied while mapping the
response: enumeration stops at the first job the budget refuses.

Docs: https://developers.greenhouse.io/job-board.html
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

import httpx

from ..models import AtsType
from ..normalize import html_to_text, infer_remote_type, parse_timestamp
from .base import ConnectorResult, JobSource, SourceBudget, config_value


class GreenhouseSource(JobSource):
    """Fetch a Greenhouse board and normalize its jobs."""

    name = "greenhouse"
    ats_type = AtsType.GREENHOUSE
    base_url = "https://boards-api.greenhouse.io/v1/boards"

    def board_url(self, board_token: str) -> str:
        return f"{self.base_url}/{board_token}/jobs"

    def map_record(self, raw: Dict[str, Any], config: Mapping[str, Any]) -> Dict[str, Any]:
        absolute_url = (raw.get("absolute_url") or "").strip() or None
        location = ((raw.get("location") or {}).get("name") or "").strip()
        if not location:
            offices = raw.get("offices") or []
            if offices:
                location = (offices[0].get("location") or offices[0].get("name") or "").strip()
        departments = raw.get("departments") or []
        level = (departments[0].get("name") or "").strip() if departments else ""
        description = html_to_text(raw.get("content"))

        return {
            "external_id": str(raw["id"]) if raw.get("id") is not None else None,
            "title": (raw.get("title") or "").strip() or "Untitled",
            "company": config_value(config, "company") or (raw.get("company_name") or "").strip() or config_value(config, "board_token") or "",
            "location": location or None,
            "remote_type": infer_remote_type(location, text=raw.get("title")),
            "level": level or None,
            "status": "OPEN",
            "posted_at": parse_timestamp(raw.get("first_published") or raw.get("updated_at")),
            "job_url": absolute_url,
            "apply_url": absolute_url,
            "description_text": description,
            "raw": raw,
        }

    def fetch(self, config: Mapping[str, Any], budget: Optional[SourceBudget] = None) -> ConnectorResult:
        """Fetch one board.

        Args:
            config: Connector config; needs `board_token`, may carry `company`.
            budget: Per-source budget; a standalone one is used when omitted.

        Returns:
            ConnectorResult with canonical jobs, or ok=False and the error.
        """
        board_token = config_value(config, "board_token")
        if not board_token:
            return ConnectorResult(ok=False, errors=["Missing board_token in connector config"])

        budget = budget or SourceBudget.standalone(board_token)
        url = self.board_url(board_token)
        if budget.simulation_mode:
            return self._simulated(url, budget)

        result = ConnectorResult()
        if not budget.acquire_page(url):
            result.truncated = True
            result.notes.append("page budget reached before first page")
            return result

        try:
            with self._client() as client:
                payload = self._get_json(client, url, params={"content": "true"})
        except (httpx.HTTPError, ValueError) as exc:
            return ConnectorResult(ok=False, errors=[f"Greenhouse API error: {exc}"], pages_fetched=1)
        result.pages_fetched = 1

        jobs = payload.get("jobs") if isinstance(payload, dict) else None
        self.to_canonical(jobs or [], config, budget, result)
        return result
