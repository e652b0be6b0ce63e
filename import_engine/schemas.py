"""
Record schemas shared by the transform, rules, validation and diff stages.
"""
from dataclasses import asdict, dataclass, fields, replace
from datetime import date
from typing import Any, Dict, Optional, Tuple
import re

from .canonical_fields import CanonicalField
from .dates import from_canonical_date_string, to_canonical_date_string

_WHITESPACE = re.compile(r"\s+")


def normalize_name(name: Optional[str]) -> str:
    """Lower-case and collapse internal whitespace."""
    if not name:
        return ""
    return _WHITESPACE.sub(" ", name).strip().lower()


@dataclass(frozen=True, order=True)
class PatientIdentity:
    """Canonical patient identity: normalized name plus date of birth."""
    name_key: str
    dob: str

    @classmethod
    def from_fields(cls, name: Optional[str], dob: Optional[str]) -> "PatientIdentity":
        return cls(name_key=normalize_name(name), dob=dob or "")

    def as_key(self) -> str:
        return f"{self.name_key}|{self.dob}"


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass(frozen=True)
class CanonicalMeasureRecord:
    """
    One normalized quality-measure row produced by an import.

    Frozen: rules return updated copies through ``with_updates`` so the
    validator and differ can rely on records never changing under them.
    """
    member_name: str
    member_dob: Optional[str] = None
    member_telephone: Optional[str] = None
    member_address: Optional[str] = None
    request_type: Optional[str] = None
    quality_measure: Optional[str] = None
    measure_status: Optional[str] = None
    tracking1: Optional[str] = None
    tracking2: Optional[str] = None
    tracking3: Optional[str] = None
    status_date: Optional[date] = None
    due_date: Optional[date] = None
    interval_days: Optional[int] = None
    status_date_prompt: Optional[str] = None
    notes: Optional[str] = None
    is_duplicate: bool = False
    owner_id: Optional[int] = None
    source_row_index: int = 0
    source_measure: Optional[str] = None

    @property
    def identity(self) -> PatientIdentity:
        return PatientIdentity.from_fields(self.member_name, self.member_dob)

    @property
    def has_measure(self) -> bool:
        return bool(_blank_to_none(self.quality_measure))

    def with_updates(self, **changes: Any) -> "CanonicalMeasureRecord":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data[CanonicalField.STATUS_DATE.value] = to_canonical_date_string(self.status_date) or None
        data[CanonicalField.DUE_DATE.value] = to_canonical_date_string(self.due_date) or None
        return data


@dataclass(frozen=True)
class PersistedRecord:
    """Snapshot view of one stored patient measure."""
    measure_id: Optional[int]
    patient_id: Optional[int]
    member_name: str
    member_dob: Optional[str] = None
    member_telephone: Optional[str] = None
    member_address: Optional[str] = None
    request_type: Optional[str] = None
    quality_measure: Optional[str] = None
    measure_status: Optional[str] = None
    tracking1: Optional[str] = None
    tracking2: Optional[str] = None
    tracking3: Optional[str] = None
    status_date: Optional[date] = None
    due_date: Optional[date] = None
    interval_days: Optional[int] = None
    status_date_prompt: Optional[str] = None
    notes: Optional[str] = None
    is_duplicate: bool = False
    owner_id: Optional[int] = None
    owner_name: Optional[str] = None

    @property
    def identity(self) -> PatientIdentity:
        return PatientIdentity.from_fields(self.member_name, self.member_dob)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistedRecord":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for date_field in (CanonicalField.STATUS_DATE.value, CanonicalField.DUE_DATE.value):
            raw = values.get(date_field)
            if isinstance(raw, str):
                values[date_field] = from_canonical_date_string(raw)
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data[CanonicalField.STATUS_DATE.value] = to_canonical_date_string(self.status_date) or None
        data[CanonicalField.DUE_DATE.value] = to_canonical_date_string(self.due_date) or None
        return data


def snapshot_fields(record: Any, field_names: Tuple[str, ...]) -> Dict[str, Optional[str]]:
    """
    Plain-string view of selected fields, used for changeset before/after.

    Dates become ISO strings and everything else ``str``, so two snapshots of
    the same data always serialize identically.
    """
    result: Dict[str, Optional[str]] = {}
    for name in field_names:
        value = getattr(record, name, None)
        if value is None:
            result[name] = None
        elif isinstance(value, date):
            result[name] = to_canonical_date_string(value)
        elif isinstance(value, bool):
            result[name] = "true" if value else "false"
        else:
            result[name] = str(value)
    return result
