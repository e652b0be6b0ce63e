"""
Duplicate measure detection.

Two records are duplicates when they belong to the same patient and share
both request type and quality measure. Records missing either value are never
duplicates. The rule is offered at three granularities (one candidate against
stored records, one patient, a whole dataset) and all three agree.
"""
from collections import OrderedDict, defaultdict
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .rules import Rule
from .schemas import PatientIdentity

DuplicateKey = Tuple[PatientIdentity, str, str]


def duplicate_key(record: Any) -> Optional[DuplicateKey]:
    """Key for duplicate grouping, or None when the record is ineligible."""
    request_type = (getattr(record, "request_type", None) or "").strip()
    quality_measure = (getattr(record, "quality_measure", None) or "").strip()
    if not request_type or not quality_measure:
        return None
    return (record.identity, request_type, quality_measure)


@dataclass(frozen=True)
class DuplicateCheck:
    is_duplicate: bool
    duplicate_ids: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class DuplicateGroup:
    """Positions (within the input sequence) of records sharing one key."""
    key: DuplicateKey
    positions: Tuple[int, ...]

    @property
    def request_type(self) -> str:
        return self.key[1]

    @property
    def quality_measure(self) -> str:
        return self.key[2]


class DuplicateRule(Rule):
    """Compute ``is_duplicate`` flags."""

    @property
    def rule_id(self) -> str:
        return "DUPLICATE_MEASURE"

    @property
    def rule_name(self) -> str:
        return "Duplicate Measure Detection"

    def check_candidate(
        self,
        candidate: Any,
        existing: Sequence[Any],
        exclude_id: Optional[Any] = None,
    ) -> DuplicateCheck:
        """
        Would ``candidate`` be a duplicate among ``existing`` records?

        Args:
            candidate: Record being created or edited
            existing: Stored records (any patient; filtered here)
            exclude_id: ``measure_id`` of the candidate itself when editing

        Returns:
            DuplicateCheck listing the ``measure_id`` of every clash
        """
        key = duplicate_key(candidate)
        if key is None:
            return DuplicateCheck(False)

        clashes = []
        for record in existing:
            record_id = getattr(record, "measure_id", None)
            if exclude_id is not None and record_id == exclude_id:
                continue
            if duplicate_key(record) == key:
                clashes.append(record_id)
        return DuplicateCheck(bool(clashes), tuple(clashes))

    def recompute_patient(self, records: Sequence[Any]) -> List[bool]:
        """Flags for one patient's records, aligned with the input order."""
        keys = [duplicate_key(r) for r in records]
        counts: Dict[DuplicateKey, int] = defaultdict(int)
        for key in keys:
            if key is not None:
                counts[key] += 1
        return [key is not None and counts[key] >= 2 for key in keys]

    def recompute_dataset(self, records: Sequence[Any]) -> List[bool]:
        """Flags for every record, computed patient by patient."""
        by_patient: Dict[PatientIdentity, List[int]] = OrderedDict()
        for position, record in enumerate(records):
            by_patient.setdefault(record.identity, []).append(position)

        flags = [False] * len(records)
        for positions in by_patient.values():
            patient_flags = self.recompute_patient([records[p] for p in positions])
            for position, flag in zip(positions, patient_flags):
                flags[position] = flag
        return flags

    def apply(self, records: Sequence[Any]) -> List[Any]:
        """Return copies of ``records`` with ``is_duplicate`` set."""
        flags = self.recompute_dataset(records)
        return [
            record if record.is_duplicate == flag else _with_flag(record, flag)
            for record, flag in zip(records, flags)
        ]

    def find_groups(self, records: Sequence[Any]) -> List[DuplicateGroup]:
        """Groups of two or more records sharing a key, first-seen order."""
        positions: Dict[DuplicateKey, List[int]] = OrderedDict()
        for position, record in enumerate(records):
            key = duplicate_key(record)
            if key is not None:
                positions.setdefault(key, []).append(position)
        return [DuplicateGroup(key, tuple(p)) for key, p in positions.items() if len(p) >= 2]


def _with_flag(record: Any, flag: bool) -> Any:
    return replace(record, is_duplicate=flag)
