"""
Normalization: parsed sheet rows to canonical measure records.

Each patient row fans out into one ``CanonicalMeasureRecord`` per measure
group that has any data. Row-level problems (missing name, unparseable dates)
become warnings on that row; only a missing required column fails the batch.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence
import logging
import re

from .canonical_fields import CanonicalField
from .dates import FORMAT_INVALID, parse_date, to_canonical_date_string
from .engine import RuleEngine
from .errors import MissingRequiredColumnsError
from .io import ParsedSheet
from .mappings import ColumnMapping, MappingResult, MeasureColumnGroup, group_measure_columns, map_columns
from .registry import SystemProfile
from .schemas import CanonicalMeasureRecord
from .validation import Severity, ValidationIssue

logger = logging.getLogger(__name__)

COMPLIANT_VALUES = frozenset({"compliant", "c", "yes"})
NON_COMPLIANT_VALUES = frozenset({"non compliant", "non-compliant", "noncompliant", "nc", "no"})
DEFAULT_NON_COMPLIANT_STATUS = "Not Addressed"

_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class PatientWithNoMeasures:
    row_index: int
    member_name: str
    member_dob: Optional[str]

    def to_dict(self) -> Dict[str, object]:
        return {"row_index": self.row_index, "member_name": self.member_name, "member_dob": self.member_dob}


@dataclass
class TransformResult:
    records: List[CanonicalMeasureRecord]
    issues: List[ValidationIssue]
    patients_with_no_measures: List[PatientWithNoMeasures]
    mapping: MappingResult
    input_rows: int = 0
    measure_groups: int = 0

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "input_rows": self.input_rows,
            "output_rows": len(self.records),
            "issue_count": len(self.issues),
            "measures_per_patient": self.measure_groups,
            "patients_with_no_measures": len(self.patients_with_no_measures),
        }


def normalize_phone(value: Optional[str]) -> Optional[str]:
    """Format ten-digit (or 1 + ten-digit) numbers as ``(xxx) xxx-xxxx``."""
    if not value:
        return None
    digits = _NON_DIGITS.sub("", value)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    return value.strip() or None


def resolve_measure_status(
    compliance_values: Sequence[str],
    quality_measure: str,
    profile: SystemProfile,
) -> Optional[str]:
    """
    Collapse one or more compliance cells into a measure status.

    Any non-compliant value wins over compliant ones. Values that are neither
    are taken verbatim as a status code (first one wins).
    """
    if not compliance_values:
        return None

    folded = [v.strip().lower() for v in compliance_values]
    labels = profile.status_map.get(quality_measure)

    if any(v in NON_COMPLIANT_VALUES for v in folded):
        return labels.non_compliant if labels else DEFAULT_NON_COMPLIANT_STATUS
    if any(v in COMPLIANT_VALUES for v in folded):
        return labels.compliant if labels else None
    return compliance_values[0].strip()


@dataclass
class _PatientFields:
    member_name: Optional[str] = None
    member_dob: Optional[str] = None
    member_telephone: Optional[str] = None
    member_address: Optional[str] = None
    issues: List[ValidationIssue] = field(default_factory=list)


def _extract_patient(row: Dict[str, Optional[str]], mappings: List[ColumnMapping], row_index: int) -> _PatientFields:
    patient = _PatientFields()
    for mapping in mappings:
        value = row.get(mapping.source_column)
        target = mapping.target_field
        if target == CanonicalField.MEMBER_DOB:
            parsed = parse_date(value)
            if parsed.date is not None:
                patient.member_dob = to_canonical_date_string(parsed.date)
            elif parsed.format_tag == FORMAT_INVALID:
                patient.issues.append(ValidationIssue(
                    severity=Severity.WARNING,
                    row_index=row_index,
                    field=CanonicalField.MEMBER_DOB.value,
                    message=f"Unrecognized date format in '{mapping.source_column}'",
                    value=value,
                ))
        elif target == CanonicalField.MEMBER_TELEPHONE:
            patient.member_telephone = normalize_phone(value)
        elif target == CanonicalField.MEMBER_NAME:
            patient.member_name = value
        elif target == CanonicalField.MEMBER_ADDRESS:
            patient.member_address = value
    return patient


def _status_date_for(
    row: Dict[str, Optional[str]],
    group: MeasureColumnGroup,
    row_index: int,
    issues: List[ValidationIssue],
    member_name: str,
) -> Optional[date]:
    for column in group.status_date_columns:
        value = row.get(column)
        if value is None:
            continue
        parsed = parse_date(value)
        if parsed.date is not None:
            return parsed.date
        issues.append(ValidationIssue(
            severity=Severity.WARNING,
            row_index=row_index,
            field=CanonicalField.STATUS_DATE.value,
            message=f"Unrecognized date format in '{column}'; using the import date",
            value=value,
            member_name=member_name,
        ))
    return None


def _has_any(row: Dict[str, Optional[str]], columns: List[str]) -> bool:
    return any(row.get(c) is not None for c in columns)


def transform_sheet(
    sheet: ParsedSheet,
    profile: SystemProfile,
    rule_engine: RuleEngine,
    import_date: date,
    target_owner_id: Optional[int] = None,
) -> TransformResult:
    """
    Map, fan out and compute fields for every row of ``sheet``.

    Args:
        sheet: Parsed upload
        profile: System profile describing the export
        rule_engine: Computes due dates, prompts and duplicate flags
        import_date: Status date for records whose export gives none
        target_owner_id: Owner the imported patients should belong to

    Raises:
        MissingRequiredColumnsError: patient name / DOB columns absent
    """
    mapping = map_columns(sheet.headers, profile)
    if mapping.missing_required:
        raise MissingRequiredColumnsError(mapping.missing_required)

    patient_mappings = mapping.patient_columns
    groups = group_measure_columns(mapping.measure_columns)

    records: List[CanonicalMeasureRecord] = []
    issues: List[ValidationIssue] = []
    no_measures: List[PatientWithNoMeasures] = []

    for row_index, row in enumerate(sheet.rows):
        patient = _extract_patient(row, patient_mappings, row_index)
        if not patient.member_name:
            issues.append(ValidationIssue(
                severity=Severity.WARNING,
                row_index=row_index,
                field=CanonicalField.MEMBER_NAME.value,
                message=f"Line {sheet.line_for_row(row_index)} skipped: missing patient name",
            ))
            continue

        for issue in patient.issues:
            issues.append(ValidationIssue(
                severity=issue.severity,
                row_index=issue.row_index,
                field=issue.field,
                message=issue.message,
                value=issue.value,
                member_name=patient.member_name,
            ))

        generated = 0
        for group in groups:
            if not _has_any(row, group.status_date_columns) and not _has_any(row, group.compliance_columns):
                continue

            compliance_values = [row[c] for c in group.compliance_columns if row.get(c) is not None]
            status = resolve_measure_status(compliance_values, group.quality_measure, profile)
            status_date = _status_date_for(row, group, row_index, issues, patient.member_name)
            if status_date is None and status:
                status_date = import_date

            records.append(CanonicalMeasureRecord(
                member_name=patient.member_name,
                member_dob=patient.member_dob,
                member_telephone=patient.member_telephone,
                member_address=patient.member_address,
                request_type=group.request_type,
                quality_measure=group.quality_measure,
                measure_status=status,
                status_date=status_date,
                owner_id=target_owner_id,
                source_row_index=row_index,
                source_measure=(group.compliance_columns or group.status_date_columns)[0],
            ))
            generated += 1

        if generated == 0:
            no_measures.append(PatientWithNoMeasures(row_index, patient.member_name, patient.member_dob))
            # Patient-level record: carries demographics only, matched by identity
            records.append(CanonicalMeasureRecord(
                member_name=patient.member_name,
                member_dob=patient.member_dob,
                member_telephone=patient.member_telephone,
                member_address=patient.member_address,
                owner_id=target_owner_id,
                source_row_index=row_index,
            ))

    records = rule_engine.apply(records)

    logger.info(
        f"[TRANSFORM] {sheet.file_name or 'upload'}: {len(sheet.rows)} rows -> {len(records)} records "
        f"({len(groups)} measure groups, {len(issues)} row issues, {len(no_measures)} without measures)"
    )

    return TransformResult(
        records=records,
        issues=issues,
        patients_with_no_measures=no_measures,
        mapping=mapping,
        input_rows=len(sheet.rows),
        measure_groups=len(groups),
    )
