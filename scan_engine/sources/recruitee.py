"""Recruitee offers connector.

Uses https://{subdomain}.recruitee.com/api/offers/ (JSON), which returns all
published offers in one response.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import httpx

from ..models import AtsType
from ..normalize import html_to_text, infer_remote_type, parse_timestamp
from .base import ConnectorResult, JobSource, SourceBudget, config_value


class RecruiteeSource(JobSource):
    """Fetch Recruitee offers and normalize them."""

    name = "recruitee"
    ats_type = AtsType.RECRUITEE

    def offers_url(self, subdomain: str) -> str:
        return f"https://{subdomain}.recruitee.com/api/offers/"

    def map_record(self, raw: Dict[str, Any], config: Mapping[str, Any]) -> Dict[str, Any]:
        pieces = [p for p in (raw.get("city"), raw.get("country_code")) if p]
        location = ", ".join(pieces) or (raw.get("location") or "").strip() or None
        careers_url = (raw.get("careers_url") or "").strip() or None
        apply_url = (raw.get("careers_apply_url") or raw.get("apply_url") or "").strip() or None
        hybrid = bool(raw.get("hybrid"))
        remote_flag = raw.get("remote")
        company = (
            config_value(config, "company") or (raw.get("company_name") or "").strip() or config_value(config, "subdomain") or ""
        )

        if hybrid:
            remote_type = "HYBRID"
        else:
            remote_type = infer_remote_type(location, remote_flag=remote_flag if isinstance(remote_flag, bool) else None)

        return {
            "external_id": str(raw["id"]) if raw.get("id") is not None else None,
            "title": (raw.get("title") or "").strip() or "Untitled",
            "company": company,
            "location": location,
            "remote_type": remote_type,
            "employment_type": (raw.get("employment_type_code") or "").strip() or None,
            "status": "CLOSED" if (raw.get("status") or "").lower() == "closed" else "OPEN",
            "posted_at": parse_timestamp(raw.get("published_at") or raw.get("created_at")),
            "job_url": careers_url or apply_url,
            "apply_url": apply_url or careers_url,
            "description_text": html_to_text(raw.get("description")) or html_to_text(raw.get("requirements")),
            "raw": raw,
        }

    def posting_tokens(self, fields: Mapping[str, Any]) -> List[Any]:
        # Offer pages are addressed by slug (/o/<slug>), not by id.
        raw = fields.get("raw") or {}
        return [fields.get("external_id"), raw.get("slug")]

    def fetch(self, config: Mapping[str, Any], budget: Optional[SourceBudget] = None) -> ConnectorResult:
        subdomain = config_value(config, "subdomain")
        if not subdomain:
            return ConnectorResult(ok=False, errors=["Missing subdomain in connector config"])

        budget = budget or SourceBudget.standalone(subdomain)
        url = self.offers_url(subdomain)
        if budget.simulation_mode:
            return self._simulated(url, budget)

        result = ConnectorResult()
        if not budget.acquire_page(url):
            result.truncated = True
            result.notes.append("page budget reached before first page")
            return result

        try:
            with self._client() as client:
                payload = self._get_json(client, url)
        except (httpx.HTTPError, ValueError) as exc:
            return ConnectorResult(ok=False, errors=[f"Recruitee API error: {exc}"], pages_fetched=1)
        result.pages_fetched = 1

        offers = payload.get("offers") if isinstance(payload, dict) else None
        self.to_canonical(offers or [], config, budget, result)
        return result
