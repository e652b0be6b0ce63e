"""
Reconciliation - compare imported candidates against the persisted snapshot.

``diff`` is a pure function of (candidates, snapshot, mode): no clock, no
hidden state. The snapshot is sorted before use so the persisted side's
iteration order cannot leak into the result, and ``ChangeSet.to_json`` uses
sorted keys, so identical inputs give byte-identical output.

Matching key:
    patient identity + request type + quality measure  (measure rows)
    patient identity                                    (patient-only rows)

Modes:
    replace  the file is the complete state for its scope; unmatched
             persisted records in scope are deleted
    merge    incremental upsert; matched records follow the compliance
             matrix and unmatched persisted records are untouched
"""
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple
import json
import logging

from .canonical_fields import MEASURE_COMPARE_FIELDS, PATIENT_COMPARE_FIELDS
from .errors import InvalidMergeModeError
from .schemas import CanonicalMeasureRecord, PatientIdentity, PersistedRecord, snapshot_fields

logger = logging.getLogger(__name__)


class MergeMode(str, Enum):
    REPLACE = "replace"
    MERGE = "merge"


def parse_merge_mode(value: Any) -> MergeMode:
    if isinstance(value, MergeMode):
        return value
    try:
        return MergeMode(str(value).strip().lower())
    except ValueError:
        raise InvalidMergeModeError(
            f"Invalid import mode '{value}'; expected one of: {', '.join(m.value for m in MergeMode)}"
        )


class ChangeKind(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"
    REASSIGN = "reassign"


# ==================== Compliance categories ====================

class ComplianceCategory(str, Enum):
    COMPLIANT = "compliant"
    NON_COMPLIANT = "non-compliant"
    UNKNOWN = "unknown"


COMPLIANT_KEYWORDS = ("completed", "at goal", "confirmed", "scheduled", "ordered")
NON_COMPLIANT_KEYWORDS = ("not addressed", "not at goal", "declined", "invalid", "resolved", "discussed", "unnecessary")


def categorize_status(status: Optional[str]) -> ComplianceCategory:
    """
    Keyword-based compliance category of a status code.

    Non-compliant keywords are checked first: "not at goal" contains
    "at goal".
    """
    if not status:
        return ComplianceCategory.UNKNOWN
    lowered = status.lower()
    if any(k in lowered for k in NON_COMPLIANT_KEYWORDS):
        return ComplianceCategory.NON_COMPLIANT
    if any(k in lowered for k in COMPLIANT_KEYWORDS):
        return ComplianceCategory.COMPLIANT
    return ComplianceCategory.UNKNOWN


@dataclass(frozen=True)
class MergeDecision:
    kind: Optional[ChangeKind]
    reason: str
    keeps_existing: bool = False


def merge_decision(old_status: Optional[str], new_status: Optional[str]) -> MergeDecision:
    """Merge-mode matrix for a candidate that matches a persisted record."""
    if not new_status:
        return MergeDecision(None, "New data is blank - keeping existing")

    old = categorize_status(old_status)
    new = categorize_status(new_status)

    if old == ComplianceCategory.NON_COMPLIANT and new == ComplianceCategory.COMPLIANT:
        return MergeDecision(ChangeKind.UPDATE, "Upgrading from non-compliant to compliant")
    if old == ComplianceCategory.COMPLIANT and new == ComplianceCategory.COMPLIANT:
        return MergeDecision(None, "Both compliant - keeping existing")
    if old == ComplianceCategory.NON_COMPLIANT and new == ComplianceCategory.NON_COMPLIANT:
        return MergeDecision(None, "Both non-compliant - keeping existing")
    if old == ComplianceCategory.COMPLIANT and new == ComplianceCategory.NON_COMPLIANT:
        return MergeDecision(
            ChangeKind.ADD,
            "Downgrade detected - keeping both (old compliant + new non-compliant)",
            keeps_existing=True,
        )
    if old == ComplianceCategory.UNKNOWN:
        return MergeDecision(ChangeKind.UPDATE, "Old status unknown, updating with new value")
    return MergeDecision(None, "Cannot determine compliance category - keeping existing")


# ==================== Change set ====================

RECORD_SNAPSHOT_FIELDS: Tuple[str, ...] = (
    "member_name",
    "member_dob",
    "member_telephone",
    "member_address",
    "request_type",
    "quality_measure",
    "measure_status",
    "status_date",
    "tracking1",
    "tracking2",
    "tracking3",
    "due_date",
    "interval_days",
    "status_date_prompt",
    "notes",
    "is_duplicate",
    "owner_id",
)


@dataclass(frozen=True)
class ChangeEntry:
    kind: ChangeKind
    key: str
    reason: str
    before: Optional[Dict[str, Optional[str]]] = None
    after: Optional[Dict[str, Optional[str]]] = None
    patient_id: Optional[int] = None
    measure_id: Optional[int] = None
    source_row_index: Optional[int] = None
    record_index: Optional[int] = None
    keeps_existing: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "key": self.key,
            "reason": self.reason,
            "before": None if self.before is None else dict(self.before),
            "after": None if self.after is None else dict(self.after),
            "patient_id": self.patient_id,
            "measure_id": self.measure_id,
            "source_row_index": self.source_row_index,
            "record_index": self.record_index,
            "keeps_existing": self.keeps_existing,
        }


@dataclass(frozen=True)
class SkippedCandidate:
    """A matched candidate the merge matrix decided to leave alone."""
    key: str
    reason: str
    source_row_index: int
    measure_id: Optional[int] = None
    old_status: Optional[str] = None
    new_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "reason": self.reason,
            "source_row_index": self.source_row_index,
            "measure_id": self.measure_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
        }


@dataclass(frozen=True)
class PatientReassignment:
    """A stored patient whose owner the import would change."""
    patient_id: Optional[int]
    member_name: str
    member_dob: Optional[str]
    current_owner_id: Optional[int]
    current_owner_name: Optional[str]
    new_owner_id: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patient_id": self.patient_id,
            "member_name": self.member_name,
            "member_dob": self.member_dob,
            "current_owner_id": self.current_owner_id,
            "current_owner_name": self.current_owner_name,
            "new_owner_id": self.new_owner_id,
        }


@dataclass(frozen=True)
class ChangeSet:
    mode: MergeMode
    entries: Tuple[ChangeEntry, ...] = ()
    skipped: Tuple[SkippedCandidate, ...] = ()
    reassignments: Tuple[PatientReassignment, ...] = ()
    new_patients: int = 0
    existing_patients: int = 0

    def entries_of(self, kind: ChangeKind) -> List[ChangeEntry]:
        return [e for e in self.entries if e.kind == kind]

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "adds": len(self.entries_of(ChangeKind.ADD)),
            "updates": len(self.entries_of(ChangeKind.UPDATE)),
            "deletes": len(self.entries_of(ChangeKind.DELETE)),
            "reassigns": len(self.entries_of(ChangeKind.REASSIGN)),
            "skips": len(self.skipped),
            "kept_both": sum(1 for e in self.entries if e.keeps_existing),
            "new_patients": self.new_patients,
            "existing_patients": self.existing_patients,
        }

    @property
    def is_empty(self) -> bool:
        return not self.entries

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "summary": self.summary,
            "entries": [e.to_dict() for e in self.entries],
            "skipped": [s.to_dict() for s in self.skipped],
            "reassignments": [r.to_dict() for r in self.reassignments],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    def to_text(self) -> str:
        summary = self.summary
        lines = [
            f"Import Mode: {self.mode.value.upper()}",
            "",
            "Summary:",
            f"  Adds: {summary['adds']}",
            f"  Updates: {summary['updates']}",
            f"  Skips: {summary['skips']}",
            f"  Kept both (downgrades): {summary['kept_both']}",
            f"  Deletes: {summary['deletes']}",
            f"  Reassignments: {summary['reassigns']}",
            "",
            "Patients:",
            f"  New: {self.new_patients}",
            f"  Existing: {self.existing_patients}",
        ]
        return "\n".join(lines)


# ==================== Diff ====================

def _measure_key(identity: PatientIdentity, request_type: Optional[str], quality_measure: Optional[str]) -> str:
    return f"{identity.as_key()}|{(request_type or '').strip()}|{(quality_measure or '').strip()}"


def _snapshot_sort_key(record: PersistedRecord):
    return (
        record.identity.as_key(),
        record.request_type or "",
        record.quality_measure or "",
        record.measure_id is None,
        record.measure_id or 0,
    )


def detect_reassignments(
    candidates: Sequence[CanonicalMeasureRecord],
    snapshot_by_patient: Dict[PatientIdentity, List[PersistedRecord]],
) -> List[PatientReassignment]:
    """Stored patients whose current owner differs from the candidates' owner."""
    reassignments: List[PatientReassignment] = []
    seen: Set[PatientIdentity] = set()
    for candidate in candidates:
        identity = candidate.identity
        if identity in seen or not candidate.member_dob:
            continue
        seen.add(identity)
        persisted = snapshot_by_patient.get(identity)
        if not persisted:
            continue
        current = persisted[0]
        if current.owner_id == candidate.owner_id:
            continue
        reassignments.append(PatientReassignment(
            patient_id=current.patient_id,
            member_name=current.member_name,
            member_dob=current.member_dob,
            current_owner_id=current.owner_id,
            current_owner_name=current.owner_name,
            new_owner_id=candidate.owner_id,
        ))
    return reassignments


def _patient_fields_differ(candidate: CanonicalMeasureRecord, persisted: PersistedRecord) -> bool:
    for name in (f.value for f in PATIENT_COMPARE_FIELDS):
        new_value = getattr(candidate, name)
        if new_value is not None and new_value != getattr(persisted, name):
            return True
    return False


def _measure_fields_differ(candidate: CanonicalMeasureRecord, persisted: PersistedRecord) -> bool:
    return any(
        getattr(candidate, f.value) != getattr(persisted, f.value)
        for f in MEASURE_COMPARE_FIELDS
    ) or _patient_fields_differ(candidate, persisted)


def diff(
    candidates: Sequence[CanonicalMeasureRecord],
    snapshot: Sequence[PersistedRecord],
    mode: Any,
) -> "ChangeSet":
    """
    Compute the change set that would bring the snapshot in line with the import.

    Args:
        candidates: Eligible canonical records, in file order
        snapshot: Currently persisted records
        mode: ``"replace"`` or ``"merge"``

    Returns:
        ChangeSet; reassign entries first, then candidate entries in file
        order, then deletes in snapshot key order
    """
    mode = parse_merge_mode(mode)
    ordered_snapshot = sorted(snapshot, key=_snapshot_sort_key)

    by_measure: Dict[str, PersistedRecord] = {}
    by_patient: Dict[PatientIdentity, List[PersistedRecord]] = OrderedDict()
    for record in ordered_snapshot:
        if record.quality_measure:
            # Newest record per key wins; sorted by measure_id
            by_measure[_measure_key(record.identity, record.request_type, record.quality_measure)] = record
        by_patient.setdefault(record.identity, []).append(record)

    entries: List[ChangeEntry] = []
    skipped: List[SkippedCandidate] = []
    matched: Set[int] = set()

    reassignments = detect_reassignments(candidates, by_patient)
    for reassignment in reassignments:
        entries.append(ChangeEntry(
            kind=ChangeKind.REASSIGN,
            key=PatientIdentity.from_fields(reassignment.member_name, reassignment.member_dob).as_key(),
            reason=f"Owner changes from {reassignment.current_owner_name or reassignment.current_owner_id or 'unassigned'} "
                   f"to {reassignment.new_owner_id if reassignment.new_owner_id is not None else 'unassigned'}",
            before={"owner_id": _str_or_none(reassignment.current_owner_id)},
            after={"owner_id": _str_or_none(reassignment.new_owner_id)},
            patient_id=reassignment.patient_id,
        ))

    for record_index, candidate in enumerate(candidates):
        identity = candidate.identity
        after = snapshot_fields(candidate, RECORD_SNAPSHOT_FIELDS)

        if not candidate.has_measure:
            key = identity.as_key()
            persisted_patient = by_patient.get(identity)
            for placeholder in persisted_patient or ():
                if not placeholder.quality_measure and placeholder.measure_id is not None:
                    matched.add(placeholder.measure_id)
            if not persisted_patient:
                entries.append(ChangeEntry(
                    kind=ChangeKind.ADD, key=key, reason="New patient without measures",
                    after=after, source_row_index=candidate.source_row_index, record_index=record_index,
                ))
            elif mode == MergeMode.REPLACE or _patient_fields_differ(candidate, persisted_patient[0]):
                patient_fields = tuple(f.value for f in PATIENT_COMPARE_FIELDS)
                entries.append(ChangeEntry(
                    kind=ChangeKind.UPDATE, key=key,
                    reason="Patient details changed"
                    if _patient_fields_differ(candidate, persisted_patient[0])
                    else "Replace mode - patient details reaffirmed",
                    before=snapshot_fields(persisted_patient[0], patient_fields),
                    after=snapshot_fields(candidate, patient_fields),
                    patient_id=persisted_patient[0].patient_id,
                    source_row_index=candidate.source_row_index, record_index=record_index,
                ))
            else:
                skipped.append(SkippedCandidate(
                    key=key, reason="Patient details unchanged", source_row_index=candidate.source_row_index,
                ))
            continue

        key = _measure_key(identity, candidate.request_type, candidate.quality_measure)
        existing = by_measure.get(key)

        if existing is None:
            entries.append(ChangeEntry(
                kind=ChangeKind.ADD, key=key, reason="New patient+measure combination",
                after=after,
                patient_id=by_patient[identity][0].patient_id if identity in by_patient else None,
                source_row_index=candidate.source_row_index, record_index=record_index,
            ))
            continue

        if existing.measure_id is not None:
            matched.add(existing.measure_id)
        before = snapshot_fields(existing, RECORD_SNAPSHOT_FIELDS)

        if mode == MergeMode.REPLACE:
            entries.append(ChangeEntry(
                kind=ChangeKind.UPDATE, key=key,
                reason="Replace mode - overwriting existing record"
                if _measure_fields_differ(candidate, existing) else "Replace mode - existing record reaffirmed",
                before=before, after=after,
                patient_id=existing.patient_id, measure_id=existing.measure_id,
                source_row_index=candidate.source_row_index, record_index=record_index,
            ))
            continue

        decision = merge_decision(existing.measure_status, candidate.measure_status)
        if decision.kind is None:
            skipped.append(SkippedCandidate(
                key=key, reason=decision.reason, source_row_index=candidate.source_row_index,
                measure_id=existing.measure_id,
                old_status=existing.measure_status, new_status=candidate.measure_status,
            ))
            continue

        entries.append(ChangeEntry(
            kind=decision.kind, key=key, reason=decision.reason,
            before=before, after=after,
            patient_id=existing.patient_id,
            measure_id=None if decision.keeps_existing else existing.measure_id,
            source_row_index=candidate.source_row_index, record_index=record_index,
            keeps_existing=decision.keeps_existing,
        ))

    if mode == MergeMode.REPLACE:
        entries.extend(_replace_deletes(candidates, ordered_snapshot, matched))

    imported_patients = list(OrderedDict.fromkeys(c.identity for c in candidates))
    existing_patients = sum(1 for p in imported_patients if p in by_patient)

    changeset = ChangeSet(
        mode=mode,
        entries=tuple(entries),
        skipped=tuple(skipped),
        reassignments=tuple(reassignments),
        new_patients=len(imported_patients) - existing_patients,
        existing_patients=existing_patients,
    )
    logger.info(f"[DIFF] {mode.value}: {changeset.summary}")
    return changeset


def _replace_deletes(
    candidates: Sequence[CanonicalMeasureRecord],
    ordered_snapshot: Sequence[PersistedRecord],
    matched: Set[int],
) -> List[ChangeEntry]:
    """
    Persisted records in scope that no candidate matched.

    Scope is every record owned by one of the import's target owners plus
    every record of a patient that appears in the import.
    """
    owners = {c.owner_id for c in candidates}
    patients = {c.identity for c in candidates}
    deletes = []
    for record in ordered_snapshot:
        if record.measure_id is not None and record.measure_id in matched:
            continue
        if record.owner_id not in owners and record.identity not in patients:
            continue
        deletes.append(ChangeEntry(
            kind=ChangeKind.DELETE,
            key=_measure_key(record.identity, record.request_type, record.quality_measure),
            reason="Replace mode - record not present in import",
            before=snapshot_fields(record, RECORD_SNAPSHOT_FIELDS),
            patient_id=record.patient_id,
            measure_id=record.measure_id,
        ))
    return deletes


def _str_or_none(value: Any) -> Optional[str]:
    return None if value is None else str(value)
