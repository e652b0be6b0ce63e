"""
Measure catalog: request types, quality measures, statuses and due-day rules.

Loaded from ``measure_rules.json``. The catalog is the ``lookup`` the due-date
and date-prompt rules consult and the vocabulary the validator checks against.
"""
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple, Union
import json
import logging

from .errors import ConfigMalformedError, ConfigMissingError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusRule:
    """Per-status configuration."""
    code: str
    date_prompt: Optional[str] = None
    base_due_days: Optional[int] = None


@dataclass(frozen=True)
class MeasureCatalog:
    """
    Immutable view over the measure rules document.

    Document shape::

        {
          "requestTypes": {"AWV": ["Annual Wellness Visit"], ...},
          "statuses": {"AWV completed": {"datePrompt": "Date Completed", "baseDueDays": 365}, ...},
          "trackingDueDays": {"Colon cancer screening ordered": {"Colonoscopy": 42}, ...}
        }
    """
    request_types: Mapping[str, Tuple[str, ...]]
    statuses: Mapping[str, StatusRule]
    tracking_due_days_map: Mapping[Tuple[str, str], int]

    @classmethod
    def empty(cls) -> "MeasureCatalog":
        return cls(MappingProxyType({}), MappingProxyType({}), MappingProxyType({}))

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "MeasureCatalog":
        try:
            request_types = {
                str(rt): tuple(str(qm) for qm in measures)
                for rt, measures in document.get("requestTypes", {}).items()
            }
            statuses = {
                code: StatusRule(
                    code=code,
                    date_prompt=entry.get("datePrompt"),
                    base_due_days=None if entry.get("baseDueDays") is None else int(entry["baseDueDays"]),
                )
                for code, entry in document.get("statuses", {}).items()
            }
            tracking = {
                (status, tracking1): int(days)
                for status, rules in document.get("trackingDueDays", {}).items()
                for tracking1, days in rules.items()
            }
        except (AttributeError, TypeError, ValueError) as e:
            raise ConfigMalformedError(f"Measure rules document is malformed: {e}", cause=e)

        return cls(
            request_types=MappingProxyType(request_types),
            statuses=MappingProxyType(statuses),
            tracking_due_days_map=MappingProxyType(tracking),
        )

    @classmethod
    def load(cls, path: Union[str, Path]) -> "MeasureCatalog":
        path = Path(path)
        if not path.exists():
            raise ConfigMissingError(f"Measure rules not found: {path.name}", details={"path": str(path)})
        try:
            with open(path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigMalformedError(
                f"Measure rules are not valid JSON: {path.name}",
                details={"path": str(path)},
                cause=e,
            )
        catalog = cls.from_document(document)
        logger.info(
            f"[CATALOG] Loaded {len(catalog.request_types)} request types, "
            f"{len(catalog.statuses)} statuses, {len(catalog.tracking_due_days_map)} tracking rules"
        )
        return catalog

    # ==================== Rule lookups ====================

    def base_due_days(self, status_code: Optional[str]) -> Optional[int]:
        rule = self.statuses.get(status_code) if status_code else None
        return rule.base_due_days if rule else None

    def tracking_due_days(self, status_code: Optional[str], tracking1: Optional[str]) -> Optional[int]:
        if not status_code or not tracking1:
            return None
        return self.tracking_due_days_map.get((status_code, tracking1))

    def date_prompt(self, status_code: Optional[str]) -> Optional[str]:
        rule = self.statuses.get(status_code) if status_code else None
        return rule.date_prompt if rule else None

    # ==================== Vocabulary ====================

    @property
    def is_empty(self) -> bool:
        return not self.request_types and not self.statuses

    def is_known_request_type(self, request_type: str) -> bool:
        return request_type in self.request_types

    def quality_measures_for(self, request_type: str) -> FrozenSet[str]:
        return frozenset(self.request_types.get(request_type, ()))

    def is_known_status(self, status_code: str) -> bool:
        return status_code in self.statuses
