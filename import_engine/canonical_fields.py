"""
Canonical field definitions for the import engine.

This module is the single source of truth for the field names used by the
mapping, rules, validation and diff stages. Raw export column names should
only ever appear in the per-system profile documents.
"""
from enum import Enum
from typing import FrozenSet, Tuple


class CanonicalField(str, Enum):
    """
    Canonical field names for measure records.

    Inheriting from str makes these usable directly as dictionary keys and
    JSON object keys.
    """

    # ==================== Patient ====================
    MEMBER_NAME = "member_name"
    """Patient display name as exported"""

    MEMBER_DOB = "member_dob"
    """Date of birth, ISO ``YYYY-MM-DD``"""

    MEMBER_TELEPHONE = "member_telephone"
    """Telephone formatted ``(xxx) xxx-xxxx`` when it has ten digits"""

    MEMBER_ADDRESS = "member_address"
    """Free-text street address"""

    PATIENT_ID = "patient_id"
    """Persisted patient identifier"""

    # ==================== Measure ====================
    REQUEST_TYPE = "request_type"
    """Request type code (AWV, Quality, Screening, Chronic DX)"""

    QUALITY_MEASURE = "quality_measure"
    """Quality measure code within the request type"""

    MEASURE_STATUS = "measure_status"
    """Measure status code"""

    STATUS_DATE = "status_date"
    """Date the status was recorded"""

    STATUS_DATE_PROMPT = "status_date_prompt"
    """Label describing what the status date means"""

    TRACKING1 = "tracking1"
    TRACKING2 = "tracking2"
    TRACKING3 = "tracking3"

    DUE_DATE = "due_date"
    """Computed follow-up date"""

    INTERVAL_DAYS = "interval_days"
    """Days between status date and due date"""

    NOTES = "notes"

    IS_DUPLICATE = "is_duplicate"

    MEASURE_ID = "measure_id"
    """Persisted measure record identifier"""

    # ==================== Ownership ====================
    OWNER_ID = "owner_id"
    OWNER_NAME = "owner_name"

    # ==================== Provenance ====================
    SOURCE_ROW_INDEX = "source_row_index"
    """0-based index of the export row the record came from"""

    SOURCE_MEASURE = "source_measure"
    """Measure column base name the record came from"""


# Fields a profile's patient column map may target
PATIENT_FIELDS: FrozenSet[CanonicalField] = frozenset({
    CanonicalField.MEMBER_NAME,
    CanonicalField.MEMBER_DOB,
    CanonicalField.MEMBER_TELEPHONE,
    CanonicalField.MEMBER_ADDRESS,
})

# Fields that must be mapped for an import to proceed
REQUIRED_PATIENT_FIELDS: Tuple[CanonicalField, ...] = (
    CanonicalField.MEMBER_NAME,
    CanonicalField.MEMBER_DOB,
)

# Fields whose change makes a measure record "different" for the diff
MEASURE_COMPARE_FIELDS: Tuple[CanonicalField, ...] = (
    CanonicalField.MEASURE_STATUS,
    CanonicalField.STATUS_DATE,
    CanonicalField.TRACKING1,
    CanonicalField.TRACKING2,
    CanonicalField.TRACKING3,
    CanonicalField.NOTES,
)

# Patient-level fields compared for rows without a quality measure
PATIENT_COMPARE_FIELDS: Tuple[CanonicalField, ...] = (
    CanonicalField.MEMBER_TELEPHONE,
    CanonicalField.MEMBER_ADDRESS,
)


def parse_patient_field(value: str) -> CanonicalField:
    """Resolve a patient field name from a profile document; raises ValueError."""
    field = CanonicalField(value)
    if field not in PATIENT_FIELDS:
        raise ValueError(f"'{value}' is not a patient field")
    return field
