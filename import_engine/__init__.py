"""
Import Engine - measure import reconciliation pipeline.
"""
from .canonical_fields import CanonicalField, PATIENT_FIELDS, REQUIRED_PATIENT_FIELDS
from .catalog import MeasureCatalog, StatusRule
from .dates import ParsedDate, parse_date, to_canonical_date_string, to_display_date_string
from .duplicates import DuplicateRule
from .engine import RuleEngine
from .errors import ImportPipelineError
from .io import FileIngestor, ParsedSheet, is_report_banner_row, validate_required_columns
from .mappings import map_columns, group_measure_columns
from .normalize import transform_sheet
from .preview_store import PreviewBundle, PreviewStore
from .reconcile import ChangeKind, ChangeSet, MergeMode, PatientReassignment, diff
from .registry import ConfigRegistry, SystemProfile
from .report import generate_error_report, format_report_as_text
from .rules import DatePromptRule, DueDateRule, Rule
from .schemas import CanonicalMeasureRecord, PatientIdentity, PersistedRecord
from .service import ImportService
from .validation import Severity, ValidationIssue, ValidationResult, Validator

__all__ = [
    "CanonicalField",
    "PATIENT_FIELDS",
    "REQUIRED_PATIENT_FIELDS",
    "MeasureCatalog",
    "StatusRule",
    "ParsedDate",
    "parse_date",
    "to_canonical_date_string",
    "to_display_date_string",
    "DuplicateRule",
    "RuleEngine",
    "ImportPipelineError",
    "FileIngestor",
    "ParsedSheet",
    "is_report_banner_row",
    "validate_required_columns",
    "map_columns",
    "group_measure_columns",
    "transform_sheet",
    "PreviewBundle",
    "PreviewStore",
    "ChangeKind",
    "ChangeSet",
    "MergeMode",
    "PatientReassignment",
    "diff",
    "ConfigRegistry",
    "SystemProfile",
    "generate_error_report",
    "format_report_as_text",
    "DatePromptRule",
    "DueDateRule",
    "Rule",
    "CanonicalMeasureRecord",
    "PatientIdentity",
    "PersistedRecord",
    "ImportService",
    "Severity",
    "ValidationIssue",
    "ValidationResult",
    "Validator",
]
