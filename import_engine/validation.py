"""
Validation of transformed measure records.

Errors block a record from being committed; warnings are advisory. Rules are
small ``ValidationRule`` classes registered in a ``ValidationRuleRegistry``,
the same plug-in arrangement the computed-field rules use.

Validation is deterministic and never mutates the records it is given.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from .canonical_fields import CanonicalField
from .catalog import MeasureCatalog
from .dates import from_canonical_date_string
from .duplicates import DuplicateRule
from .schemas import CanonicalMeasureRecord


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationIssue:
    """A single problem with one record (or one source row)."""
    severity: Severity
    row_index: int
    field: str
    message: str
    value: Optional[str] = None
    member_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity.value,
            "row_index": self.row_index,
            "field": self.field,
            "message": self.message,
            "value": self.value,
            "member_name": self.member_name,
        }


@dataclass(frozen=True)
class DuplicateRowGroup:
    """Source rows that produce the same patient + measure."""
    rows: Tuple[int, ...]
    patient: str
    request_type: str
    quality_measure: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rows": list(self.rows),
            "patient": self.patient,
            "request_type": self.request_type,
            "quality_measure": self.quality_measure,
        }


@dataclass(frozen=True)
class ValidationResult:
    errors: Tuple[ValidationIssue, ...] = ()
    warnings: Tuple[ValidationIssue, ...] = ()
    duplicates: Tuple[DuplicateRowGroup, ...] = ()
    blocked_records: Tuple[int, ...] = ()
    total_records: int = 0

    def __post_init__(self):
        for name in ("errors", "warnings", "duplicates", "blocked_records"):
            object.__setattr__(self, name, tuple(getattr(self, name)))

    @property
    def valid(self) -> bool:
        return not self.errors

    def is_eligible(self, record_index: int) -> bool:
        return record_index not in self.blocked_records

    def eligible(self, records: Sequence[CanonicalMeasureRecord]) -> List[CanonicalMeasureRecord]:
        blocked = set(self.blocked_records)
        return [r for i, r in enumerate(records) if i not in blocked]

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "total_records": self.total_records,
            "valid_records": self.total_records - len(self.blocked_records),
            "error_rows": len({e.row_index for e in self.errors}),
            "warning_rows": len({w.row_index for w in self.warnings}),
            "duplicate_groups": len(self.duplicates),
        }

    def merged_with(self, row_issues: Sequence[ValidationIssue]) -> "ValidationResult":
        """Copy with row-level issues from earlier stages folded in."""
        errors = self.errors + tuple(i for i in row_issues if i.severity == Severity.ERROR)
        warnings = tuple(i for i in row_issues if i.severity == Severity.WARNING) + self.warnings
        return ValidationResult(
            errors=errors,
            warnings=warnings,
            duplicates=self.duplicates,
            blocked_records=self.blocked_records,
            total_records=self.total_records,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "duplicates": [d.to_dict() for d in self.duplicates],
            "stats": self.stats,
        }


@dataclass(frozen=True)
class ValidationContext:
    """What a rule may consult besides the record."""
    catalog: MeasureCatalog
    today: date


def _is_patient_level(record: CanonicalMeasureRecord) -> bool:
    return not record.request_type and not record.quality_measure


def _issue(record: CanonicalMeasureRecord, severity: Severity, field_name: CanonicalField,
           message: str, value: Optional[str] = None) -> ValidationIssue:
    return ValidationIssue(
        severity=severity,
        row_index=record.source_row_index,
        field=field_name.value,
        message=message,
        value=value,
        member_name=record.member_name or "Unknown",
    )


class ValidationRule(ABC):
    """Abstract base for record validation rules."""

    @property
    @abstractmethod
    def rule_id(self) -> str:
        pass

    @abstractmethod
    def check(self, record: CanonicalMeasureRecord, context: ValidationContext) -> List[ValidationIssue]:
        pass


class RequiredIdentityRule(ValidationRule):
    """Name and date of birth identify the patient; both are mandatory."""

    @property
    def rule_id(self) -> str:
        return "REQUIRED_IDENTITY"

    def check(self, record, context):
        issues = []
        if not (record.member_name or "").strip():
            issues.append(_issue(record, Severity.ERROR, CanonicalField.MEMBER_NAME, "Member name is required"))
        if not record.member_dob:
            issues.append(_issue(record, Severity.ERROR, CanonicalField.MEMBER_DOB, "Date of birth is required"))
        return issues


class RequestTypeRule(ValidationRule):

    @property
    def rule_id(self) -> str:
        return "REQUEST_TYPE"

    def check(self, record, context):
        if _is_patient_level(record):
            return []
        if not (record.request_type or "").strip():
            return [_issue(record, Severity.ERROR, CanonicalField.REQUEST_TYPE, "Request type is required")]
        if context.catalog.request_types and not context.catalog.is_known_request_type(record.request_type):
            return [_issue(
                record, Severity.ERROR, CanonicalField.REQUEST_TYPE,
                f"Invalid request type: {record.request_type}", record.request_type,
            )]
        return []


class QualityMeasureRule(ValidationRule):
    """Unknown measures only warn: a clinic's catalog may be ahead of ours."""

    @property
    def rule_id(self) -> str:
        return "QUALITY_MEASURE"

    def check(self, record, context):
        if _is_patient_level(record) or not record.request_type:
            return []
        if not (record.quality_measure or "").strip():
            return [_issue(record, Severity.ERROR, CanonicalField.QUALITY_MEASURE, "Quality measure is required")]
        if not context.catalog.is_known_request_type(record.request_type):
            return []
        if record.quality_measure not in context.catalog.quality_measures_for(record.request_type):
            return [_issue(
                record, Severity.WARNING, CanonicalField.QUALITY_MEASURE,
                f'Invalid quality measure "{record.quality_measure}" for request type "{record.request_type}"',
                record.quality_measure,
            )]
        return []


class MeasureStatusRule(ValidationRule):

    @property
    def rule_id(self) -> str:
        return "MEASURE_STATUS"

    def check(self, record, context):
        if _is_patient_level(record):
            return []
        if not record.measure_status:
            return [_issue(
                record, Severity.WARNING, CanonicalField.MEASURE_STATUS,
                'Measure status is empty - will be set to "Not Addressed"',
            )]
        if context.catalog.statuses and not context.catalog.is_known_status(record.measure_status):
            return [_issue(
                record, Severity.WARNING, CanonicalField.MEASURE_STATUS,
                f"Unrecognized measure status: {record.measure_status}", record.measure_status,
            )]
        return []


class DateRangeRule(ValidationRule):
    """Plausible dates: DOB between 1900 and today, status date not far in the future."""

    EARLIEST_DOB = date(1900, 1, 1)
    STATUS_DATE_HORIZON = timedelta(days=365)

    @property
    def rule_id(self) -> str:
        return "DATE_RANGE"

    def check(self, record, context):
        issues = []
        if record.member_dob:
            try:
                dob = from_canonical_date_string(record.member_dob)
            except ValueError:
                dob = None
                issues.append(_issue(
                    record, Severity.ERROR, CanonicalField.MEMBER_DOB,
                    "Invalid date of birth format", record.member_dob,
                ))
            if dob is not None and (dob > context.today or dob < self.EARLIEST_DOB):
                issues.append(_issue(
                    record, Severity.ERROR, CanonicalField.MEMBER_DOB,
                    f"Date of birth {record.member_dob} is outside the plausible range", record.member_dob,
                ))
        if record.status_date and record.status_date > context.today + self.STATUS_DATE_HORIZON:
            issues.append(_issue(
                record, Severity.WARNING, CanonicalField.STATUS_DATE,
                "Status date is more than a year in the future", record.status_date.isoformat(),
            ))
        return issues


class TelephoneRule(ValidationRule):

    @property
    def rule_id(self) -> str:
        return "TELEPHONE"

    def check(self, record, context):
        if not record.member_telephone:
            return [_issue(record, Severity.WARNING, CanonicalField.MEMBER_TELEPHONE, "Phone number is missing")]
        return []


class ValidationRuleRegistry:
    """
    Central registry for validation rules.

    Adding a new rule:
    1. Create a ValidationRule subclass
    2. Register it here
    """

    def __init__(self):
        self._rules: List[ValidationRule] = []

    def register(self, rule: ValidationRule):
        self._rules.append(rule)

    def get_all_rules(self) -> List[ValidationRule]:
        return self._rules.copy()

    def get_rule(self, rule_id: str) -> Optional[ValidationRule]:
        for rule in self._rules:
            if rule.rule_id == rule_id:
                return rule
        return None


def build_default_registry() -> ValidationRuleRegistry:
    registry = ValidationRuleRegistry()
    for rule in (
        RequiredIdentityRule(),
        RequestTypeRule(),
        QualityMeasureRule(),
        MeasureStatusRule(),
        DateRangeRule(),
        TelephoneRule(),
    ):
        registry.register(rule)
    return registry


default_registry = build_default_registry()


class Validator:
    """Runs every registered rule over a batch of records."""

    def __init__(
        self,
        catalog: Optional[MeasureCatalog] = None,
        registry: Optional[ValidationRuleRegistry] = None,
        today: Optional[date] = None,
        duplicate_rule: Optional[DuplicateRule] = None,
    ):
        self.catalog = catalog or MeasureCatalog.empty()
        self.registry = registry or default_registry
        self.today = today
        self.duplicate_rule = duplicate_rule or DuplicateRule()

    def validate(self, records: Sequence[CanonicalMeasureRecord], today: Optional[date] = None) -> ValidationResult:
        """
        Validate ``records``.

        Issues are reported once per (row, field, message) even when a row fans
        out into several records; ``blocked_records`` still lists every record
        that has an error of its own.
        """
        context = ValidationContext(catalog=self.catalog, today=today or self.today or date.today())

        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []
        reported: Set[Tuple[str, int, str, str]] = set()
        blocked: Set[int] = set()

        for record_index, record in enumerate(records):
            for rule in self.registry.get_all_rules():
                for issue in rule.check(record, context):
                    if issue.severity == Severity.ERROR:
                        blocked.add(record_index)
                    dedup_key = (issue.severity.value, issue.row_index, issue.field, issue.message)
                    if dedup_key in reported:
                        continue
                    reported.add(dedup_key)
                    (errors if issue.severity == Severity.ERROR else warnings).append(issue)

        duplicates = self._duplicate_groups(records)
        for group in duplicates:
            for row_index in group.rows[1:]:
                dedup_key = (Severity.WARNING.value, row_index, "duplicate", group.quality_measure)
                if dedup_key in reported:
                    continue
                reported.add(dedup_key)
                warnings.append(ValidationIssue(
                    severity=Severity.WARNING,
                    row_index=row_index,
                    field="duplicate",
                    message=f"Duplicate entry: same patient + measure combination ({group.quality_measure})",
                    member_name=group.patient,
                ))

        return ValidationResult(
            errors=errors,
            warnings=warnings,
            duplicates=duplicates,
            blocked_records=tuple(sorted(blocked)),
            total_records=len(records),
        )

    def _duplicate_groups(self, records: Sequence[CanonicalMeasureRecord]) -> List[DuplicateRowGroup]:
        groups = []
        for group in self.duplicate_rule.find_groups(records):
            rows = tuple(dict.fromkeys(records[p].source_row_index for p in group.positions))
            if len(rows) < 2:
                continue
            first = records[group.positions[0]]
            groups.append(DuplicateRowGroup(
                rows=rows,
                patient=first.member_name,
                request_type=group.request_type,
                quality_measure=group.quality_measure,
            ))
        return groups
