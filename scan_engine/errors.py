"""Error kinds raised across the scan engine.

Each error carries a `retryable` flag. The workflow engine only re-invokes a
step when the raised error is retryable; everything else goes straight to
`failed` (or `skipped`, for policy refusals on optional steps).
"""

from __future__ import annotations

from typing import Optional


class ScanEngineError(Exception):
    """Base class for all engine errors."""

    retryable: bool = False


class PolicyBudgetExceeded(ScanEngineError):
    """A budget counter (pages, jobs, tokens, wall-clock) ran out."""

    def __init__(self, resource: str, detail: str = "") -> None:
        self.resource = resource
        msg = f"{resource} budget exceeded"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)

    @property
    def run_global(self) -> bool:
        return self.resource in ("time", "tokens")


class DomainNotAllowed(ScanEngineError):
    """The domain is blocked or missing from the allow-list."""

    def __init__(self, domain: str, reason: str = "") -> None:
        self.domain = domain
        super().__init__(reason or f"Domain {domain} is not allowed")


class NoConnectorForAtsType(ScanEngineError):
    """No connector is registered for the detected ATS type ("not implemented")."""

    def __init__(self, ats_type: str) -> None:
        self.ats_type = ats_type
        super().__init__(f"No connector for ATS type: {ats_type}")


class ConnectorFetchFailed(ScanEngineError):
    """Transient network or parse failure while fetching a source."""

    retryable = True

    def __init__(self, message: str, source: Optional[str] = None) -> None:
        self.source = source
        super().__init__(message)


class CapabilityTimeout(ScanEngineError):
    """An external capability call (LLM, browser) overran its timeout."""

    retryable = True

    def __init__(self, label: str, timeout_s: float) -> None:
        self.label = label
        self.timeout_s = timeout_s
        super().__init__(f"{label} timed out after {timeout_s:g}s")
