"""
Source-to-canonical column mapping for clinic exports.

Exports are "wide": one row per patient, with a pair of columns per measure.
A header ending in `` Q1`` carries the status date and one ending in `` Q2``
carries the compliance value, e.g. ``Annual Wellness Visit Q1`` /
``Annual Wellness Visit Q2``. The profile's measure column map is keyed by the
base name (``Annual Wellness Visit``); a full header in the map is treated as a
compliance column.

Mapping is case-insensitive on header text. Raw header names only ever come
from the profile, never from code.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .canonical_fields import REQUIRED_PATIENT_FIELDS, CanonicalField
from .registry import MeasureColumn, SystemProfile

STATUS_DATE_SUFFIX = " Q1"
COMPLIANCE_SUFFIX = " Q2"


class ColumnRole(str, Enum):
    PATIENT = "patient"
    STATUS_DATE = "status_date"
    COMPLIANCE = "compliance"


@dataclass(frozen=True)
class ColumnMapping:
    """How one source header feeds the canonical record."""
    source_column: str
    role: ColumnRole
    target_field: Optional[CanonicalField] = None
    measure: Optional[MeasureColumn] = None
    measure_base: Optional[str] = None


@dataclass
class MeasureColumnGroup:
    """All source columns that report on one quality measure."""
    request_type: str
    quality_measure: str
    status_date_columns: List[str] = field(default_factory=list)
    compliance_columns: List[str] = field(default_factory=list)


@dataclass
class MappingResult:
    """Outcome of mapping a header row against a profile."""
    mapped: List[ColumnMapping]
    skipped: List[str]
    unmapped: List[str]
    missing_required: List[str]

    @property
    def patient_columns(self) -> List[ColumnMapping]:
        return [m for m in self.mapped if m.role == ColumnRole.PATIENT]

    @property
    def measure_columns(self) -> List[ColumnMapping]:
        return [m for m in self.mapped if m.role != ColumnRole.PATIENT]

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "total": len(self.mapped) + len(self.skipped) + len(self.unmapped),
            "mapped": len(self.mapped),
            "skipped": len(self.skipped),
            "unmapped": len(self.unmapped),
        }

    def to_dict(self) -> Dict[str, object]:
        return {
            "mapped": [
                {
                    "source_column": m.source_column,
                    "role": m.role.value,
                    "target_field": m.target_field.value if m.target_field else None,
                    "quality_measure": m.measure.quality_measure if m.measure else None,
                }
                for m in self.mapped
            ],
            "skipped": list(self.skipped),
            "unmapped": list(self.unmapped),
            "missing_required": list(self.missing_required),
            "stats": self.stats,
        }


def _casefold_index(mapping) -> Dict[str, str]:
    return {key.strip().lower(): key for key in mapping}


def _split_measure_header(header: str) -> Tuple[str, Optional[ColumnRole]]:
    for suffix, role in ((STATUS_DATE_SUFFIX, ColumnRole.STATUS_DATE), (COMPLIANCE_SUFFIX, ColumnRole.COMPLIANCE)):
        if header.upper().endswith(suffix.upper()):
            return header[: -len(suffix)].strip(), role
    return header, None


def map_columns(headers: List[str], profile: SystemProfile) -> MappingResult:
    """
    Classify each header as patient, measure, skipped or unmapped.

    Args:
        headers: Header row from the parsed sheet
        profile: The export's system profile

    Returns:
        MappingResult; ``missing_required`` lists the profile headers for
        patient name / date of birth that the file lacks
    """
    patient_index = _casefold_index(profile.patient_column_map)
    measure_index = _casefold_index(profile.measure_column_map)
    skip_index = {h.strip().lower() for h in profile.skip_headers}

    mapped: List[ColumnMapping] = []
    skipped: List[str] = []
    unmapped: List[str] = []

    for header in headers:
        folded = header.strip().lower()

        if folded in patient_index:
            mapped.append(ColumnMapping(
                source_column=header,
                role=ColumnRole.PATIENT,
                target_field=profile.patient_column_map[patient_index[folded]],
            ))
            continue

        if folded in skip_index:
            skipped.append(header)
            continue

        base, role = _split_measure_header(header)
        base_key = measure_index.get(base.strip().lower()) if role else None
        if base_key is not None:
            mapped.append(ColumnMapping(
                source_column=header,
                role=role,
                target_field=CanonicalField.STATUS_DATE if role == ColumnRole.STATUS_DATE else CanonicalField.MEASURE_STATUS,
                measure=profile.measure_column_map[base_key],
                measure_base=base_key,
            ))
            continue

        if folded in measure_index:
            measure_key = measure_index[folded]
            mapped.append(ColumnMapping(
                source_column=header,
                role=ColumnRole.COMPLIANCE,
                target_field=CanonicalField.MEASURE_STATUS,
                measure=profile.measure_column_map[measure_key],
                measure_base=measure_key,
            ))
            continue

        unmapped.append(header)

    mapped_targets = {m.target_field for m in mapped if m.role == ColumnRole.PATIENT}
    missing_required: List[str] = []
    for required in REQUIRED_PATIENT_FIELDS:
        if required in mapped_targets:
            continue
        candidates = [h for h, target in profile.patient_column_map.items() if target == required]
        missing_required.append(candidates[0] if candidates else required.value)

    return MappingResult(mapped=mapped, skipped=skipped, unmapped=unmapped, missing_required=missing_required)


def group_measure_columns(mappings: List[ColumnMapping]) -> List[MeasureColumnGroup]:
    """
    Group measure columns by (request type, quality measure), first-seen order.

    Several source columns may report on the same measure (e.g. age-banded
    screening columns); they all land in one group.
    """
    groups: Dict[Tuple[str, str], MeasureColumnGroup] = {}
    for mapping in mappings:
        if mapping.measure is None:
            continue
        key = (mapping.measure.request_type, mapping.measure.quality_measure)
        group = groups.get(key)
        if group is None:
            group = MeasureColumnGroup(request_type=key[0], quality_measure=key[1])
            groups[key] = group
        if mapping.role == ColumnRole.STATUS_DATE:
            group.status_date_columns.append(mapping.source_column)
        elif mapping.role == ColumnRole.COMPLIANCE:
            group.compliance_columns.append(mapping.source_column)
    return list(groups.values())
