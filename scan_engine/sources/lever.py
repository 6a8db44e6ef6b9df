"""Lever postings connector.

Lever's public postings API supports `skip`/`limit` paging, so this connector
pages through a company's postings and stops as soon as either the page cap
or the job cap of the run's budget is reached.

Docs: https://github.com/lever/postings-api
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

import httpx

from ..models import AtsType, RemoteType
from ..normalize import infer_remote_type, parse_timestamp
from .base import ConnectorResult, JobSource, SourceBudget, config_value

_WORKPLACE_TYPES: Dict[str, RemoteType] = {
    "remote": "REMOTE",
    "hybrid": "HYBRID",
    "onsite": "ONSITE",
    "on-site": "ONSITE",
}


class LeverSource(JobSource):
    """Fetch Lever postings page by page and normalize them."""

    name = "lever"
    ats_type = AtsType.LEVER
    base_url = "https://api.lever.co/v0/postings"
    eu_base_url = "https://api.eu.lever.co/v0/postings"

    def __init__(self, page_size: int = 50, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._page_size = page_size

    def postings_url(self, account: str, region: Optional[str] = None) -> str:
        base = self.eu_base_url if (region or "").lower() == "eu" else self.base_url
        return f"{base}/{account}"

    def map_record(self, raw: Dict[str, Any], config: Mapping[str, Any]) -> Dict[str, Any]:
        categories = raw.get("categories") or {}
        location = (categories.get("location") or "").strip() or None
        workplace = (raw.get("workplaceType") or "").strip().lower()
        remote_type = _WORKPLACE_TYPES.get(workplace) or infer_remote_type(location)
        hosted_url = (raw.get("hostedUrl") or "").strip() or None
        apply_url = (raw.get("applyUrl") or "").strip() or None

        return {
            "external_id": raw.get("id"),
            "title": (raw.get("text") or "").strip() or "Untitled",
            "company": config_value(config, "company", "company_slug", "account") or "",
            "location": location,
            "remote_type": remote_type,
            "employment_type": (categories.get("commitment") or "").strip() or None,
            "level": (categories.get("team") or categories.get("level") or "").strip() or None,
            "status": "OPEN",
            "posted_at": parse_timestamp(raw.get("createdAt")),
            "job_url": hosted_url or apply_url,
            "apply_url": apply_url or hosted_url,
            "description_text": (raw.get("descriptionPlain") or "").strip() or None,
            "raw": raw,
        }

    def fetch(self, config: Mapping[str, Any], budget: Optional[SourceBudget] = None) -> ConnectorResult:
        """Fetch postings for `company_slug` (or `account`), one budgeted page at a time."""
        account = config_value(config, "company_slug", "account")
        if not account:
            return ConnectorResult(ok=False, errors=["Missing company_slug/account in connector config"])

        budget = budget or SourceBudget.standalone(account)
        url = self.postings_url(account, config_value(config, "region"))
        if budget.simulation_mode:
            return self._simulated(url, budget)

        result = ConnectorResult()
        skip = 0
        with self._client() as client:
            while True:
                if not budget.acquire_page(url):
                    result.truncated = True
                    result.notes.append(f"page budget reached after {result.pages_fetched} pages")
                    break
                params = {"mode": "json", "skip": skip, "limit": self._page_size}
                try:
                    page = self._get_json(client, url, params=params)
                except (httpx.HTTPError, ValueError) as exc:
                    result.ok = bool(result.jobs)
                    result.errors.append(f"Lever API error: {exc}")
                    break
                result.pages_fetched += 1

                if not isinstance(page, list) or not page:
                    break
                if not self.to_canonical(page, config, budget, result):
                    break
                if len(page) < self._page_size:
                    break
                skip += self._page_size

        return result
