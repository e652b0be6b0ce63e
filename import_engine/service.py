"""
ImportService - the operations the request layer calls.

Preview:  bytes -> FileIngestor -> transform (profile + RuleEngine) ->
          Validator -> diff against the persisted snapshot -> PreviewStore
Commit:   PreviewStore -> checks -> repository.apply_changeset -> delete bundle

Collaborators are passed in by the application factory; nothing here reads
global configuration.
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence
import logging

from .engine import RuleEngine
from .errors import ReassignmentConflictError, ValidationFailedError
from .io import FileIngestor
from .normalize import transform_sheet
from .preview_store import PreviewStore, utc_now
from .reconcile import ChangeSet, MergeMode, diff, parse_merge_mode
from .registry import ConfigRegistry
from .report import build_summary, generate_error_report
from .schemas import CanonicalMeasureRecord, PersistedRecord
from .validation import Validator

logger = logging.getLogger(__name__)


class SnapshotRepository(Protocol):
    """Persistence collaborator: owns storage and transactions."""

    def load_snapshot(self) -> List[PersistedRecord]:
        ...

    def apply_changeset(self, changeset: ChangeSet, records: Sequence[CanonicalMeasureRecord]) -> Any:
        ...

    def save_import_run(self, run_id: str, changeset: ChangeSet, metadata: Dict[str, Any]) -> None:
        ...

    def generate_run_id(self) -> str:
        ...

    def list_import_runs(self, limit: int = 10) -> List[Dict[str, Any]]:
        ...


class AuditSink(Protocol):
    def log_activity(self, activity_type: str, actor: Optional[Dict[str, Any]] = None,
                     details: Optional[Dict[str, Any]] = None) -> bool:
        ...


class ImportService:
    """
    Two-phase import workflow: preview, then commit or cancel.

    Example:
        >>> service = ImportService(registry, RuleEngine(catalog), Validator(catalog), store, storage)
        >>> preview = service.upload_and_preview(content, "export.csv", "hill", "merge", 7)
        >>> service.commit_preview(preview["previewId"], confirm_reassignments=True)
    """

    def __init__(
        self,
        registry: ConfigRegistry,
        rule_engine: RuleEngine,
        validator: Validator,
        preview_store: PreviewStore,
        repository: SnapshotRepository,
        audit: Optional[AuditSink] = None,
        ingestor: Optional[FileIngestor] = None,
        clock: Callable[[], datetime] = utc_now,
        default_mode: MergeMode = MergeMode.MERGE,
    ):
        self.registry = registry
        self.rule_engine = rule_engine
        self.validator = validator
        self.preview_store = preview_store
        self.repository = repository
        self.audit = audit
        self.ingestor = ingestor or FileIngestor()
        self.clock = clock
        self.default_mode = default_mode

    # ==================== Systems ====================

    def list_systems(self) -> List[Dict[str, Any]]:
        return [listing.to_dict() for listing in self.registry.list()]

    def get_system(self, system_id: str) -> Dict[str, Any]:
        return self.registry.get(system_id).to_dict()

    def reload_systems(self, actor: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        self.registry.reload()
        systems = self.list_systems()
        self._audit("ImportConfigReload", actor, {"systems": [s["id"] for s in systems]})
        return systems

    # ==================== Preview ====================

    def upload_and_preview(
        self,
        content: bytes,
        filename: str,
        system_id: Optional[str] = None,
        mode: Optional[Any] = None,
        target_owner_id: Optional[int] = None,
        actor: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Run the whole pipeline over an upload and cache the result.

        Args:
            content: Raw file bytes
            filename: Original filename (selects the parser)
            system_id: Source system; the registry default when omitted
            mode: ``"replace"`` or ``"merge"``; the service default when omitted
            target_owner_id: Owner the imported patients should belong to
            actor: Current user, for the audit trail

        Returns:
            Preview summary: previewId, change counts, expiresAt, validation
            summary and reassignment count

        Raises:
            ImportPipelineError subclasses for whole-batch failures (unknown
            system, bad mode, unsupported or empty file, missing columns).
            Row-level problems never raise; they are reported as issues.
        """
        merge_mode = parse_merge_mode(mode) if mode not in (None, "") else self.default_mode
        system_id = system_id or self.registry.default_id
        profile = self.registry.get(system_id)

        sheet = self.ingestor.parse(content, filename)
        import_date = self.clock().date()

        transform = transform_sheet(sheet, profile, self.rule_engine, import_date, target_owner_id)
        validation = self.validator.validate(transform.records, today=import_date).merged_with(transform.issues)
        eligible = validation.eligible(transform.records)

        changeset = diff(eligible, self.repository.load_snapshot(), merge_mode)

        report = generate_error_report(validation)
        report.update({
            "mapping": transform.mapping.to_dict(),
            "transform": transform.stats,
            "file_warnings": list(sheet.warnings),
            "patients_with_no_measures": [p.to_dict() for p in transform.patients_with_no_measures],
            "data_start_line": sheet.data_start_line,
        })

        preview_id = self.preview_store.store(
            system_id=system_id,
            mode=merge_mode,
            changeset=changeset,
            records=eligible,
            validation=validation,
            warnings=validation.warnings,
            reassignments=changeset.reassignments,
            target_owner_id=target_owner_id,
            file_name=filename,
            report=report,
        )
        bundle = self.preview_store.require(preview_id)

        logger.info(
            f"[PREVIEW] {filename} -> {preview_id}: {len(eligible)}/{len(transform.records)} eligible records, "
            f"{len(validation.errors)} errors, {len(validation.warnings)} warnings"
        )
        self._audit("ImportPreview", actor, {
            "preview_id": preview_id,
            "system_id": system_id,
            "mode": merge_mode.value,
            "file_name": filename,
            "summary": changeset.summary,
        })

        result = bundle.summary()
        result.update({
            "validation": build_summary(validation).to_dict(),
            "reassignmentCount": len(changeset.reassignments),
            "fileWarnings": list(sheet.warnings),
        })
        return result

    def get_preview_detail(self, preview_id: str) -> Dict[str, Any]:
        return self.preview_store.require(preview_id).to_dict()

    def extend_preview(self, preview_id: str) -> Dict[str, Any]:
        """Push a live preview's expiry back by the store's default TTL."""
        if not self.preview_store.extend_ttl(preview_id):
            # Raises the precise not-found / expired error
            self.preview_store.require(preview_id)
        return self.preview_store.require(preview_id).summary()

    def cancel_preview(self, preview_id: str, actor: Optional[Dict[str, Any]] = None) -> bool:
        """Discard a preview. Unknown and expired ids are not errors."""
        removed = self.preview_store.delete(preview_id)
        self._audit("ImportCancel", actor, {"preview_id": preview_id, "removed": removed})
        return removed

    # ==================== Commit ====================

    def commit_preview(
        self,
        preview_id: str,
        actor: Optional[Dict[str, Any]] = None,
        confirm_reassignments: bool = False,
        skip_invalid: bool = False,
    ) -> Dict[str, Any]:
        """
        Apply a previewed change set.

        Args:
            preview_id: Id returned by ``upload_and_preview``
            actor: Current user, for the audit trail
            confirm_reassignments: Operator accepted every owner change
            skip_invalid: Commit the eligible records even though some
                records had errors

        Raises:
            PreviewNotFoundError / PreviewExpiredError
            ValidationFailedError: errors present and ``skip_invalid`` false
            ReassignmentConflictError: owner changes not confirmed
        """
        bundle = self.preview_store.require(preview_id)

        if bundle.validation.errors and not skip_invalid:
            raise ValidationFailedError([e.to_dict() for e in bundle.validation.errors])
        if bundle.reassignments and not confirm_reassignments:
            raise ReassignmentConflictError([r.to_dict() for r in bundle.reassignments])

        result = self.repository.apply_changeset(bundle.changeset, bundle.records)

        run_id = self.repository.generate_run_id()
        self.repository.save_import_run(run_id, bundle.changeset, {
            "preview_id": preview_id,
            "system_id": bundle.system_id,
            "mode": bundle.mode.value,
            "file_name": bundle.file_name,
            "target_owner_id": bundle.target_owner_id,
            "committed_at": self.clock().isoformat(),
            "committed_by": (actor or {}).get("email") or (actor or {}).get("name"),
            "summary": bundle.changeset.summary,
        })
        self.preview_store.delete(preview_id)

        payload = result.to_dict()
        payload.update({"previewId": preview_id, "systemId": bundle.system_id, "runId": run_id})

        logger.info(f"[COMMIT] {preview_id} committed as {run_id}: {payload.get('stats')}")
        self._audit("ImportCommit", actor, {
            "preview_id": preview_id,
            "run_id": run_id,
            "system_id": bundle.system_id,
            "mode": bundle.mode.value,
            "stats": payload.get("stats"),
        })
        return payload

    # ==================== Misc ====================

    def cache_stats(self) -> Dict[str, Any]:
        return self.preview_store.stats()

    def list_import_runs(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Committed import runs, newest first."""
        return self.repository.list_import_runs(limit)

    def _audit(self, activity_type: str, actor: Optional[Dict[str, Any]], details: Dict[str, Any]):
        if self.audit is None:
            return
        self.audit.log_activity(activity_type, actor, details)
