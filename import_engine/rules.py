"""
Rule framework and the computed-field rules.

Rules are pure: they take field values plus a lookup (normally the
``MeasureCatalog``) and return a result, never touching records themselves.
``engine.RuleEngine`` applies them to record lists.
"""
from abc import ABC, abstractmethod
from calendar import monthrange
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, Optional, Protocol
import re


class RuleLookup(Protocol):
    """Configuration the due-date and prompt rules consult."""

    def base_due_days(self, status_code: Optional[str]) -> Optional[int]: ...

    def tracking_due_days(self, status_code: Optional[str], tracking1: Optional[str]) -> Optional[int]: ...

    def date_prompt(self, status_code: Optional[str]) -> Optional[str]: ...


class Rule(ABC):
    """
    Abstract base class for import rules.

    Each rule has a unique ID and a human-readable name so results and logs
    can say which rule produced a value.
    """

    @property
    @abstractmethod
    def rule_id(self) -> str:
        """Unique identifier for this rule."""
        pass

    @property
    @abstractmethod
    def rule_name(self) -> str:
        """Human-readable name for this rule."""
        pass


def add_months(start: date, months: int) -> date:
    """Add calendar months, clamping the day to the end of the target month."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, monthrange(year, month)[1])
    return date(year, month, day)


# ==================== Due date ====================

SCREENING_DISCUSSED = "Screening discussed"
HGBA1C_GOAL_STATUSES = frozenset({"HgbA1c at goal", "HgbA1c NOT at goal"})

_IN_N_MONTHS = re.compile(r"\bin\s+(\d+)\s+months?\b", re.IGNORECASE)
_N_MONTHS = re.compile(r"(\d+)\s*months?\b", re.IGNORECASE)


@dataclass(frozen=True)
class DueDateResult:
    due_date: Optional[date] = None
    interval_days: Optional[int] = None
    tier: Optional[str] = None


class DueDateRule(Rule):
    """
    Compute the follow-up due date for a measure status.

    Tier order, first match wins:
        1. "Screening discussed" with tracking1 "In N Month(s)" -> N months
        2. HgbA1c goal statuses with tracking2 "N month(s)" -> N months
        3. Configured (status, tracking1) day offset
        4. Configured base day offset for the status

    Month tiers report the actual elapsed days as ``interval_days``; day tiers
    report the offset itself.
    """

    @property
    def rule_id(self) -> str:
        return "DUE_DATE"

    @property
    def rule_name(self) -> str:
        return "Due Date Calculation"

    def evaluate(
        self,
        status_date: Optional[date],
        status_code: Optional[str],
        tracking1: Optional[str],
        tracking2: Optional[str],
        lookup: Optional[RuleLookup],
    ) -> DueDateResult:
        if status_date is None or not status_code:
            return DueDateResult()

        if status_code == SCREENING_DISCUSSED and tracking1:
            match = _IN_N_MONTHS.search(tracking1)
            if match:
                return self._months_later(status_date, int(match.group(1)), "tracking1_months")

        if status_code in HGBA1C_GOAL_STATUSES and tracking2:
            match = _N_MONTHS.search(tracking2)
            if match:
                return self._months_later(status_date, int(match.group(1)), "tracking2_months")

        if lookup is None:
            return DueDateResult()

        days = lookup.tracking_due_days(status_code, tracking1)
        if days is not None:
            return DueDateResult(status_date + timedelta(days=days), days, "tracking_rule")

        days = lookup.base_due_days(status_code)
        if days is not None:
            return DueDateResult(status_date + timedelta(days=days), days, "base_due_days")

        return DueDateResult()

    @staticmethod
    def _months_later(status_date: date, months: int, tier: str) -> DueDateResult:
        due = add_months(status_date, months)
        return DueDateResult(due, (due - status_date).days, tier)


# ==================== Status date prompt ====================

TRACKING_PROMPT_OVERRIDES: Dict[str, str] = {
    "Patient deceased": "Date of Death",
    "Patient in hospice": "Date Reported",
}

# Used when no measure catalog is configured
DEFAULT_DATE_PROMPTS: Dict[str, str] = {
    # AWV
    "Patient called to schedule AWV": "Date Called",
    "AWV scheduled": "Date Scheduled",
    "AWV completed": "Date Completed",
    "Patient declined AWV": "Date Declined",
    "Will call later to schedule": "Follow-up Date",
    # Diabetic eye exam
    "Diabetic eye exam discussed": "Date Discussed",
    "Diabetic eye exam referral made": "Date of Referral",
    "Diabetic eye exam scheduled": "Date Scheduled",
    "Diabetic eye exam completed": "Date Completed",
    "Obtaining outside records": "Date Requested",
    # Screening
    "Screening discussed": "Date Discussed",
    "Colon cancer screening ordered": "Date Ordered",
    "Colon cancer screening completed": "Date Completed",
    "Screening test ordered": "Date Ordered",
    "Screening test completed": "Date Completed",
    "Screening appt made": "Date Scheduled",
    "Screening completed": "Date Completed",
    # GC/Chlamydia
    "Patient contacted for screening": "Date Contacted",
    "Test ordered": "Date Ordered",
    "GC/Clamydia screening completed": "Date Completed",
    # Diabetic nephropathy
    "Urine microalbumin ordered": "Date Ordered",
    "Urine microalbumin completed": "Date Completed",
    # Hypertension
    "Blood pressure at goal": "Date Measured",
    "Scheduled call back - BP not at goal": "Date of Last Call",
    "Scheduled call back - BP at goal": "Date of Last Call",
    "Appointment scheduled": "Date Scheduled",
    # ACE/ARB
    "Patient on ACE/ARB": "Date Verified",
    "ACE/ARB prescribed": "Date Prescribed",
    # Vaccination
    "Vaccination discussed": "Date Discussed",
    "Vaccination scheduled": "Date Scheduled",
    "Vaccination completed": "Date Completed",
    # Diabetes control
    "HgbA1c ordered": "Date Ordered",
    "HgbA1c at goal": "Date of Test",
    "HgbA1c NOT at goal": "Date of Test",
    # Annual serum K&Cr
    "Lab ordered": "Date Ordered",
    "Lab completed": "Date Completed",
    # Chronic diagnosis
    "Chronic diagnosis confirmed": "Date Confirmed",
    "Chronic diagnosis resolved": "Date Resolved",
    "Chronic diagnosis invalid": "Date Invalidated",
    # Declines / endings
    "Patient declined": "Date Declined",
    "Patient declined screening": "Date Declined",
    "Declined BP control": "Date Declined",
    "No longer applicable": "Date Updated",
    "Screening unnecessary": "Date Updated",
    "Contraindicated": "Date Determined",
}


class DatePromptRule(Rule):
    """
    Resolve the label shown next to a record's status date.

    tracking1 overrides ("Patient deceased", "Patient in hospice") win over the
    configured per-status prompt. Without a lookup the static
    ``DEFAULT_DATE_PROMPTS`` table is used.
    """

    def __init__(self, fallback_prompts: Optional[Dict[str, str]] = None):
        self.fallback_prompts = dict(DEFAULT_DATE_PROMPTS if fallback_prompts is None else fallback_prompts)

    @property
    def rule_id(self) -> str:
        return "STATUS_DATE_PROMPT"

    @property
    def rule_name(self) -> str:
        return "Status Date Prompt"

    def evaluate(
        self,
        status_code: Optional[str],
        tracking1: Optional[str],
        lookup: Optional[RuleLookup] = None,
    ) -> Optional[str]:
        if tracking1 in TRACKING_PROMPT_OVERRIDES:
            return TRACKING_PROMPT_OVERRIDES[tracking1]

        if not status_code:
            return None

        if lookup is None:
            return self.fallback_prompts.get(status_code)

        return lookup.date_prompt(status_code)
