"""
Error report generation for import validation results.
"""
from dataclasses import dataclass
from typing import Any, Dict, List

import pandas as pd

from .validation import Severity, ValidationIssue, ValidationResult

SAMPLES_PER_FIELD = 5
CONDENSED_LIMIT = 10


@dataclass
class ReportSummary:
    status: str
    message: str
    total_records: int
    valid_records: int
    error_count: int
    warning_count: int
    can_proceed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "total_records": self.total_records,
            "valid_records": self.valid_records,
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "can_proceed": self.can_proceed,
        }


def _all_issues(validation: ValidationResult) -> List[ValidationIssue]:
    return list(validation.errors) + list(validation.warnings)


def build_summary(validation: ValidationResult) -> ReportSummary:
    stats = validation.stats
    errors = len(validation.errors)
    warnings = len(validation.warnings)

    if errors == 0 and warnings == 0:
        status = "success"
        message = f"All {stats['total_records']} records passed validation."
    elif errors == 0:
        status = "warning"
        message = f"{stats['total_records']} records validated with {warnings} warning(s). Import can proceed."
    else:
        status = "error"
        message = (
            f"Validation failed: {errors} error(s) in {stats['error_rows']} row(s). "
            f"Please fix errors before importing."
        )

    return ReportSummary(
        status=status,
        message=message,
        total_records=stats["total_records"],
        valid_records=stats["valid_records"],
        error_count=errors,
        warning_count=warnings,
        can_proceed=errors == 0,
    )


def issues_frame(validation: ValidationResult) -> pd.DataFrame:
    """One row per issue; errors first, then warnings, each in report order."""
    columns = ["severity", "row_index", "field", "message", "value", "member_name"]
    issues = _all_issues(validation)
    if not issues:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame([issue.to_dict() for issue in issues], columns=columns)


def group_by_field(validation: ValidationResult) -> Dict[str, Dict[str, Any]]:
    """
    Error and warning counts per field with up to five sample issues.

    Fields appear in the order their first issue was reported.
    """
    df = issues_frame(validation)
    if df.empty:
        return {}

    by_field: Dict[str, Dict[str, Any]] = {}
    for field_name, group in df.groupby("field", sort=False):
        by_field[field_name] = {
            "field": field_name,
            "error_count": int((group["severity"] == Severity.ERROR.value).sum()),
            "warning_count": int((group["severity"] == Severity.WARNING.value).sum()),
            "sample_errors": _records(group.head(SAMPLES_PER_FIELD)),
        }
    return by_field


def group_by_row(validation: ValidationResult) -> Dict[int, Dict[str, Any]]:
    by_row: Dict[int, Dict[str, Any]] = {}
    for issue in _all_issues(validation):
        entry = by_row.setdefault(issue.row_index, {
            "row_index": issue.row_index,
            "patient_name": issue.member_name or "Unknown",
            "errors": [],
            "warnings": [],
        })
        bucket = "errors" if issue.severity == Severity.ERROR else "warnings"
        entry[bucket].append(issue.to_dict())
    return by_row


def duplicate_report(validation: ValidationResult) -> Dict[str, Any]:
    # The first row of each group is the original, the rest are duplicates
    return {
        "total_groups": len(validation.duplicates),
        "total_duplicate_rows": sum(len(g.rows) - 1 for g in validation.duplicates),
        "groups": [g.to_dict() for g in validation.duplicates],
    }


def generate_error_report(validation: ValidationResult) -> Dict[str, Any]:
    """
    Build the full validation report.

    Args:
        validation: Result of ``Validator.validate`` (row issues merged in)

    Returns:
        Dictionary with summary, errors_by_field, errors_by_row and
        duplicate_report sections
    """
    return {
        "summary": build_summary(validation).to_dict(),
        "errors_by_field": group_by_field(validation),
        "errors_by_row": group_by_row(validation),
        "duplicate_report": duplicate_report(validation),
    }


def condensed_report(report: Dict[str, Any]) -> Dict[str, Any]:
    """Short form of ``report`` for API listings."""
    top_errors: List[Dict[str, Any]] = []
    top_warnings: List[Dict[str, Any]] = []
    for field_summary in report["errors_by_field"].values():
        for sample in field_summary["sample_errors"]:
            (top_errors if sample["severity"] == Severity.ERROR.value else top_warnings).append(sample)

    duplicates = report["duplicate_report"]
    return {
        "summary": report["summary"],
        "top_errors": top_errors[:CONDENSED_LIMIT],
        "top_warnings": top_warnings[:CONDENSED_LIMIT],
        "duplicates": {"count": duplicates["total_groups"], "groups": duplicates["groups"][:5]},
    }


def format_report_as_text(report: Dict[str, Any]) -> str:
    """Plain-text rendering for logs."""
    summary = report["summary"]
    rule = "=" * 60
    thin = "-" * 60
    lines = [
        rule,
        "IMPORT VALIDATION REPORT",
        rule,
        "",
        f"Status: {summary['status'].upper()}",
        summary["message"],
        "",
        f"Total Records: {summary['total_records']}",
        f"Valid Records: {summary['valid_records']}",
        f"Errors: {summary['error_count']}",
        f"Warnings: {summary['warning_count']}",
        f"Can Proceed: {'Yes' if summary['can_proceed'] else 'No'}",
        "",
    ]

    if report["errors_by_field"]:
        lines.extend([thin, "ERRORS BY FIELD", thin])
        for field_name, field_summary in report["errors_by_field"].items():
            lines.append(f"\n{field_name}:")
            lines.append(f"  Errors: {field_summary['error_count']}, Warnings: {field_summary['warning_count']}")
            for sample in field_summary["sample_errors"]:
                lines.append(f"  - Row {sample['row_index'] + 1}: {sample['message']}")
        lines.append("")

    duplicates = report["duplicate_report"]
    if duplicates["total_groups"] > 0:
        lines.extend([thin, "DUPLICATE ROWS", thin])
        lines.append(f"Found {duplicates['total_groups']} duplicate group(s)")
        lines.append(f"{duplicates['total_duplicate_rows']} row(s) are duplicates")
        for group in duplicates["groups"]:
            lines.append(f"\n  {group['patient']} - {group['quality_measure']}")
            lines.append(f"  Rows: {', '.join(str(r + 1) for r in group['rows'])}")
        lines.append("")

    lines.append(rule)
    return "\n".join(lines)


def _records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    records = []
    for row in df.to_dict(orient="records"):
        records.append({k: _plain(v) for k, v in row.items()})
    return records


def _plain(value: Any) -> Any:
    """numpy scalars to Python values, NaN to None."""
    if value is None:
        return None
    if hasattr(value, "item"):
        value = value.item()
    if isinstance(value, float) and pd.isna(value):
        return None
    return value
