"""
Storage service for patient measure persistence.

Keeps the current measure snapshot in a JSON document on the local
filesystem and records every committed import run beside it.

Structure:
instance/
    measures.json
    imports/<run_id>/
        changeset.json
        run_meta.json
"""
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from import_engine.duplicates import DuplicateRule
from import_engine.reconcile import ChangeEntry, ChangeKind, ChangeSet
from import_engine.schemas import CanonicalMeasureRecord, PatientIdentity, PersistedRecord

logger = logging.getLogger(__name__)

SNAPSHOT_FILE = "measures.json"
IMPORTS_DIR = "imports"

PATIENT_UPDATE_FIELDS = ("member_telephone", "member_address")
MEASURE_UPDATE_FIELDS = (
    "measure_status",
    "status_date",
    "tracking1",
    "tracking2",
    "tracking3",
    "due_date",
    "interval_days",
    "status_date_prompt",
    "notes",
)


@dataclass
class ExecutionError:
    kind: str
    member_name: str
    quality_measure: Optional[str]
    error: str
    source_row_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "member_name": self.member_name,
            "quality_measure": self.quality_measure,
            "error": self.error,
            "source_row_index": self.source_row_index,
        }


@dataclass
class ExecutionResult:
    success: bool
    mode: str
    stats: Dict[str, int]
    errors: List[ExecutionError] = field(default_factory=list)
    duration_ms: int = 0
    run_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "mode": self.mode,
            "stats": dict(self.stats),
            "errors": [e.to_dict() for e in self.errors],
            "duration_ms": self.duration_ms,
            "run_id": self.run_id,
        }


class _Snapshot:
    """Mutable working copy of the stored document while a changeset is applied."""

    def __init__(self, document: Dict[str, Any]):
        self.owners: Dict[str, str] = dict(document.get("owners", {}))
        self.next_patient_id: int = int(document.get("next_patient_id", 1))
        self.next_measure_id: int = int(document.get("next_measure_id", 1))
        self.records: List[PersistedRecord] = [
            PersistedRecord.from_dict(r) for r in document.get("records", [])
        ]

    def owner_name(self, owner_id: Optional[int]) -> Optional[str]:
        if owner_id is None:
            return None
        return self.owners.get(str(owner_id))

    def patient_id_for(self, identity: PatientIdentity) -> Optional[int]:
        for record in self.records:
            if record.identity == identity:
                return record.patient_id
        return None

    def allocate_patient_id(self) -> int:
        patient_id = self.next_patient_id
        self.next_patient_id += 1
        return patient_id

    def allocate_measure_id(self) -> int:
        measure_id = self.next_measure_id
        self.next_measure_id += 1
        return measure_id

    def to_document(self) -> Dict[str, Any]:
        return {
            "owners": self.owners,
            "next_patient_id": self.next_patient_id,
            "next_measure_id": self.next_measure_id,
            "records": [r.to_dict() for r in self.records],
        }


class StorageService:
    """
    Manage measure persistence on the local filesystem.

    ``load_snapshot`` and ``apply_changeset`` are serialized by one lock, and
    the document is replaced atomically, so a reader never sees a half-applied
    import.
    """

    def __init__(self, base_dir: Path, duplicate_rule: Optional[DuplicateRule] = None):
        self.base_dir = Path(base_dir)
        self.duplicate_rule = duplicate_rule or DuplicateRule()
        self._lock = threading.Lock()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"[STORAGE] Using local filesystem: {self.base_dir}")

    @property
    def snapshot_path(self) -> Path:
        return self.base_dir / SNAPSHOT_FILE

    # ==================== Snapshot ====================

    def _read_document(self) -> Dict[str, Any]:
        if not self.snapshot_path.exists():
            return {}
        with open(self.snapshot_path, "r") as f:
            return json.load(f)

    def _write_document(self, document: Dict[str, Any]):
        fd, tmp_path = tempfile.mkstemp(dir=self.base_dir, prefix=".measures-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(document, f, indent=2, default=str)
            os.replace(tmp_path, self.snapshot_path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def load_snapshot(self) -> List[PersistedRecord]:
        """Current persisted records with owner names resolved."""
        with self._lock:
            snapshot = _Snapshot(self._read_document())
        return [replace(r, owner_name=snapshot.owner_name(r.owner_id)) for r in snapshot.records]

    def save_owner(self, owner_id: int, owner_name: str):
        with self._lock:
            snapshot = _Snapshot(self._read_document())
            snapshot.owners[str(owner_id)] = owner_name
            self._write_document(snapshot.to_document())

    def seed(self, records: Sequence[PersistedRecord], owners: Optional[Dict[int, str]] = None):
        """Replace the stored state wholesale (fixtures and first-time setup)."""
        with self._lock:
            document = {
                "owners": {str(k): v for k, v in (owners or {}).items()},
                "next_patient_id": max([r.patient_id or 0 for r in records], default=0) + 1,
                "next_measure_id": max([r.measure_id or 0 for r in records], default=0) + 1,
                "records": [r.to_dict() for r in records],
            }
            self._write_document(document)

    # ==================== Apply ====================

    def apply_changeset(
        self,
        changeset: ChangeSet,
        records: Sequence[CanonicalMeasureRecord],
    ) -> ExecutionResult:
        """
        Apply ``changeset`` to the stored snapshot.

        Args:
            changeset: Change set computed at preview time
            records: The candidate records the change set's ``record_index``
                values point into

        Returns:
            ExecutionResult with per-kind counts and any per-entry errors.
            Entries that fail are reported and skipped; the rest are written.
        """
        started = datetime.now()
        stats = {"inserted": 0, "updated": 0, "deleted": 0, "reassigned": 0,
                 "skipped": len(changeset.skipped), "both_kept": 0}
        errors: List[ExecutionError] = []

        with self._lock:
            snapshot = _Snapshot(self._read_document())

            for entry in changeset.entries:
                try:
                    self._apply_entry(snapshot, entry, records, stats)
                except (KeyError, ValueError, IndexError) as e:
                    candidate = records[entry.record_index] if entry.record_index is not None else None
                    errors.append(ExecutionError(
                        kind=entry.kind.value,
                        member_name=candidate.member_name if candidate else entry.key,
                        quality_measure=candidate.quality_measure if candidate else None,
                        error=str(e),
                        source_row_index=entry.source_row_index,
                    ))

            self._resync_duplicates(snapshot)
            self._write_document(snapshot.to_document())

        duration_ms = int((datetime.now() - started).total_seconds() * 1000)
        logger.info(
            f"[STORAGE] Applied {changeset.mode.value} import: {stats}, {len(errors)} error(s) in {duration_ms}ms"
        )
        return ExecutionResult(
            success=not errors,
            mode=changeset.mode.value,
            stats=stats,
            errors=errors,
            duration_ms=duration_ms,
        )

    def _apply_entry(self, snapshot: _Snapshot, entry: ChangeEntry,
                     records: Sequence[CanonicalMeasureRecord], stats: Dict[str, int]):
        if entry.kind == ChangeKind.REASSIGN:
            new_owner = entry.after.get("owner_id") if entry.after else None
            owner_id = int(new_owner) if new_owner is not None else None
            snapshot.records = [
                replace(r, owner_id=owner_id, owner_name=snapshot.owner_name(owner_id))
                if r.patient_id == entry.patient_id else r
                for r in snapshot.records
            ]
            stats["reassigned"] += 1

        elif entry.kind == ChangeKind.DELETE:
            before = len(snapshot.records)
            snapshot.records = [r for r in snapshot.records if r.measure_id != entry.measure_id]
            if len(snapshot.records) == before:
                raise KeyError(f"Measure {entry.measure_id} no longer exists")
            stats["deleted"] += 1

        elif entry.kind == ChangeKind.ADD:
            candidate = records[entry.record_index]
            if not candidate.member_dob:
                raise ValueError(f"Cannot insert measure for {candidate.member_name}: DOB is required")
            patient_id = snapshot.patient_id_for(candidate.identity) or snapshot.allocate_patient_id()
            snapshot.records.append(PersistedRecord(
                measure_id=snapshot.allocate_measure_id(),
                patient_id=patient_id,
                member_name=candidate.member_name,
                member_dob=candidate.member_dob,
                member_telephone=candidate.member_telephone,
                member_address=candidate.member_address,
                request_type=candidate.request_type,
                quality_measure=candidate.quality_measure,
                measure_status=candidate.measure_status,
                tracking1=candidate.tracking1,
                tracking2=candidate.tracking2,
                tracking3=candidate.tracking3,
                status_date=candidate.status_date,
                due_date=candidate.due_date,
                interval_days=candidate.interval_days,
                status_date_prompt=candidate.status_date_prompt,
                notes=candidate.notes,
                owner_id=candidate.owner_id,
                owner_name=snapshot.owner_name(candidate.owner_id),
            ))
            stats["both_kept" if entry.keeps_existing else "inserted"] += 1

        elif entry.kind == ChangeKind.UPDATE:
            candidate = records[entry.record_index]
            patient_changes = {
                name: getattr(candidate, name)
                for name in PATIENT_UPDATE_FIELDS
                if getattr(candidate, name) is not None
            }
            if entry.measure_id is None:
                if entry.patient_id is None:
                    raise KeyError(f"No stored patient for {candidate.member_name}")
                snapshot.records = [
                    replace(r, **patient_changes) if r.patient_id == entry.patient_id else r
                    for r in snapshot.records
                ]
            else:
                measure_changes = {name: getattr(candidate, name) for name in MEASURE_UPDATE_FIELDS}
                found = False
                updated = []
                for r in snapshot.records:
                    if r.measure_id == entry.measure_id:
                        r = replace(r, **measure_changes, **patient_changes)
                        found = True
                    elif r.patient_id == entry.patient_id and patient_changes:
                        r = replace(r, **patient_changes)
                    updated.append(r)
                if not found:
                    raise KeyError(f"Measure {entry.measure_id} no longer exists")
                snapshot.records = updated
            stats["updated"] += 1

    def _resync_duplicates(self, snapshot: _Snapshot):
        flags = self.duplicate_rule.recompute_dataset(snapshot.records)
        changed = sum(1 for r, flag in zip(snapshot.records, flags) if r.is_duplicate != flag)
        snapshot.records = [
            r if r.is_duplicate == flag else replace(r, is_duplicate=flag)
            for r, flag in zip(snapshot.records, flags)
        ]
        if changed:
            logger.info(f"[STORAGE] Duplicate flags changed on {changed} record(s)")

    # ==================== Import runs ====================

    def save_import_run(self, run_id: str, changeset: ChangeSet, metadata: Dict[str, Any]):
        """Record a committed import beside the snapshot."""
        run_dir = self.base_dir / IMPORTS_DIR / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        with open(run_dir / "changeset.json", "w") as f:
            f.write(changeset.to_json())
        with open(run_dir / "run_meta.json", "w") as f:
            json.dump(metadata, f, indent=2, default=str)
        logger.info(f"[STORAGE] Saved import run {run_id}")

    def list_import_runs(self, limit: int = 10) -> List[Dict[str, Any]]:
        """List recent import runs, newest first."""
        runs = []
        imports_dir = self.base_dir / IMPORTS_DIR
        if not imports_dir.exists():
            return runs

        for run_dir in sorted(imports_dir.iterdir(), reverse=True):
            if run_dir.is_dir():
                meta_path = run_dir / "run_meta.json"
                if meta_path.exists():
                    with open(meta_path, "r") as f:
                        meta = json.load(f)
                        meta["run_id"] = run_dir.name
                        runs.append(meta)

                if len(runs) >= limit:
                    break

        return runs

    @staticmethod
    def generate_run_id() -> str:
        """Generate unique run ID."""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        return f"import_{timestamp}"
