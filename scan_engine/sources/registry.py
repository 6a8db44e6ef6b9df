"""Connector registry keyed by the closed AtsType enumeration.

Lookups go through `AtsType`, never a free-form string; an ATS family without
a registered connector takes the explicit `NoConnectorForAtsType` path.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Union

from ..errors import NoConnectorForAtsType
from ..models import AtsType
from .base import JobSource
from .greenhouse import GreenhouseSource
from .lever import LeverSource
from .recruitee import RecruiteeSource


def default_connectors() -> Dict[AtsType, JobSource]:
    return {
        AtsType.GREENHOUSE: GreenhouseSource(),
        AtsType.LEVER: LeverSource(),
        AtsType.RECRUITEE: RecruiteeSource(),
    }


class ConnectorRegistry:
    """Maps each supported AtsType to its connector."""

    def __init__(self, connectors: Optional[Dict[AtsType, JobSource]] = None) -> None:
        self._connectors: Dict[AtsType, JobSource] = {}
        for ats_type, connector in (default_connectors() if connectors is None else connectors).items():
            self.register(ats_type, connector)

    def register(self, ats_type: AtsType, connector: JobSource) -> None:
        ats_type = AtsType(ats_type)
        if ats_type == AtsType.UNKNOWN:
            raise ValueError("UNKNOWN cannot have a connector")
        self._connectors[ats_type] = connector

    def get(self, ats_type: Union[AtsType, str]) -> Optional[JobSource]:
        try:
            key = AtsType(ats_type)
        except ValueError:
            return None
        return self._connectors.get(key)

    def get_or_throw(self, ats_type: Union[AtsType, str]) -> JobSource:
        connector = self.get(ats_type)
        if connector is None:
            raise NoConnectorForAtsType(getattr(ats_type, "value", str(ats_type)))
        return connector

    def supported(self) -> List[AtsType]:
        return [t for t in AtsType if t in self._connectors]


_DEFAULT_REGISTRY = ConnectorRegistry()


def get_connector(ats_type: Union[AtsType, str]) -> Optional[JobSource]:
    return _DEFAULT_REGISTRY.get(ats_type)


def get_connector_or_throw(ats_type: Union[AtsType, str]) -> JobSource:
    """Return the connector for `ats_type` or raise NoConnectorForAtsType."""
    return _DEFAULT_REGISTRY.get_or_throw(ats_type)


def supported_ats_types() -> List[AtsType]:
    return _DEFAULT_REGISTRY.supported()


def register_connector(ats_type: Union[AtsType, str], connector: JobSource) -> None:
    """Register (or replace) the process-wide connector for `ats_type`."""
    _DEFAULT_REGISTRY.register(ats_type, connector)
