"""
PreviewStore - in-process, TTL-bounded holding area between preview and commit.

One instance is built by the application factory and handed to the import
service. Every read and write of the entry map happens under a single lock,
including the background sweep, so a sweep's eviction can never interleave
with a lookup or store.

Expiry is enforced twice:
    lazily   ``get``/``require``/``extend_ttl`` evict an expired entry on sight
    eagerly  ``sweep`` (run by the sweeper thread every ``sweep_interval``)
             removes every expired entry even if nobody looks it up

The sweeper is an explicit daemon thread with ``start()``/``stop()``; it never
keeps the interpreter alive.
"""
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple
import copy
import logging
import secrets
import threading

from .errors import PreviewExpiredError, PreviewNotFoundError
from .reconcile import ChangeSet, MergeMode, PatientReassignment
from .schemas import CanonicalMeasureRecord
from .validation import ValidationIssue, ValidationResult

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(minutes=30)
DEFAULT_SWEEP_INTERVAL = timedelta(minutes=5)

# How many evicted ids are remembered so lookups can say "expired" not "unknown"
TOMBSTONE_LIMIT = 1000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_preview_id() -> str:
    """128 random bits, hex encoded."""
    return secrets.token_hex(16)


@dataclass(frozen=True)
class PreviewBundle:
    """
    Everything a commit needs, frozen at preview time.

    Only ``expires_at`` ever changes, and only by replacing the bundle with
    ``with_expiry``. The report is a read-only copy and ``to_dict`` hands out
    fresh copies of everything.
    """
    preview_id: str
    system_id: str
    mode: MergeMode
    changeset: ChangeSet
    records: Tuple[CanonicalMeasureRecord, ...]
    validation: ValidationResult
    warnings: Tuple[ValidationIssue, ...]
    reassignments: Tuple[PatientReassignment, ...]
    target_owner_id: Optional[int]
    created_at: datetime
    expires_at: datetime
    file_name: Optional[str] = None
    report: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}), compare=False)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def with_expiry(self, expires_at: datetime) -> "PreviewBundle":
        return replace(self, expires_at=expires_at)

    def summary(self) -> Dict[str, Any]:
        """Short form for listings and upload responses."""
        return {
            "previewId": self.preview_id,
            "systemId": self.system_id,
            "mode": self.mode.value,
            "fileName": self.file_name,
            "summary": self.changeset.summary,
            "totalChanges": len(self.changeset.entries),
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.summary()
        data.update({
            "targetOwnerId": self.target_owner_id,
            "changes": self.changeset.to_dict(),
            "validation": self.validation.to_dict(),
            "warnings": [w.to_dict() for w in self.warnings],
            "reassignments": [r.to_dict() for r in self.reassignments],
            "records": [r.to_dict() for r in self.records],
            "report": copy.deepcopy(dict(self.report)),
        })
        return data


class PreviewStore:
    """
    Keyed, expiring store of ``PreviewBundle`` objects.

    Args:
        clock: Returns the current time (timezone-aware); injectable for tests
        default_ttl: Lifetime of a stored bundle
        sweep_interval: Period of the background sweep
        id_factory: Generates preview ids
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        default_ttl: timedelta = DEFAULT_TTL,
        sweep_interval: timedelta = DEFAULT_SWEEP_INTERVAL,
        id_factory: Callable[[], str] = new_preview_id,
    ):
        self.clock = clock
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self.id_factory = id_factory

        self._lock = threading.Lock()
        self._entries: Dict[str, PreviewBundle] = {}
        self._tombstones: "OrderedDict[str, datetime]" = OrderedDict()

        self._stop_event = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    # ==================== Entries ====================

    def store(
        self,
        system_id: str,
        mode: MergeMode,
        changeset: ChangeSet,
        records: Sequence[CanonicalMeasureRecord],
        validation: ValidationResult,
        warnings: Sequence[ValidationIssue] = (),
        reassignments: Sequence[PatientReassignment] = (),
        target_owner_id: Optional[int] = None,
        ttl: Optional[timedelta] = None,
        file_name: Optional[str] = None,
        report: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Store a new bundle and return its id."""
        now = self.clock()
        with self._lock:
            preview_id = self.id_factory()
            while preview_id in self._entries:
                preview_id = self.id_factory()
            self._entries[preview_id] = PreviewBundle(
                preview_id=preview_id,
                system_id=system_id,
                mode=mode,
                changeset=changeset,
                records=tuple(records),
                validation=validation,
                warnings=tuple(warnings),
                reassignments=tuple(reassignments),
                target_owner_id=target_owner_id,
                created_at=now,
                expires_at=now + (ttl if ttl is not None else self.default_ttl),
                file_name=file_name,
                report=MappingProxyType(copy.deepcopy(dict(report or {}))),
            )
            self._tombstones.pop(preview_id, None)
        logger.info(f"[PREVIEW] Stored {preview_id} ({system_id}, {mode.value})")
        return preview_id

    def get(self, preview_id: str) -> Optional[PreviewBundle]:
        """The live bundle, or None. An expired bundle is evicted here."""
        with self._lock:
            return self._live_entry(preview_id, self.clock())

    def require(self, preview_id: str) -> PreviewBundle:
        """
        Like ``get`` but raising.

        Raises:
            PreviewExpiredError: the id existed but its TTL has run out
            PreviewNotFoundError: the id was never stored or was deleted
        """
        with self._lock:
            bundle = self._live_entry(preview_id, self.clock())
            if bundle is not None:
                return bundle
            if preview_id in self._tombstones:
                raise PreviewExpiredError(preview_id)
        raise PreviewNotFoundError(preview_id)

    def delete(self, preview_id: str) -> bool:
        with self._lock:
            removed = self._entries.pop(preview_id, None) is not None
        if removed:
            logger.info(f"[PREVIEW] Deleted {preview_id}")
        return removed

    def extend_ttl(self, preview_id: str, extra: Optional[timedelta] = None) -> bool:
        """Push the expiry of a live bundle back by ``extra``; False when gone."""
        with self._lock:
            bundle = self._live_entry(preview_id, self.clock())
            if bundle is None:
                return False
            self._entries[preview_id] = bundle.with_expiry(
                bundle.expires_at + (extra if extra is not None else self.default_ttl)
            )
        return True

    def sweep(self) -> int:
        """Remove every expired bundle; returns how many were removed."""
        now = self.clock()
        with self._lock:
            expired = [pid for pid, bundle in self._entries.items() if bundle.is_expired(now)]
            for preview_id in expired:
                self._evict(preview_id, now)
        if expired:
            logger.info(f"[PREVIEW] Swept {len(expired)} expired preview(s)")
        return len(expired)

    def clear(self):
        with self._lock:
            self._entries.clear()
            self._tombstones.clear()

    def stats(self) -> Dict[str, Any]:
        now = self.clock()
        with self._lock:
            bundles = list(self._entries.values())
        active = sum(1 for b in bundles if not b.is_expired(now))
        created = [b.created_at for b in bundles]
        return {
            "total": len(bundles),
            "active": active,
            "expired": len(bundles) - active,
            "oldestCreatedAt": min(created).isoformat() if created else None,
            "newestCreatedAt": max(created).isoformat() if created else None,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ==================== Sweeper lifecycle ====================

    @property
    def running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def start(self):
        """Start the background sweeper (no-op when already running)."""
        if self.running:
            return
        self._stop_event = threading.Event()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            args=(self._stop_event,),
            name="preview-sweeper",
            daemon=True,
        )
        self._sweeper.start()
        logger.info(f"[PREVIEW] Sweeper started (every {self.sweep_interval.total_seconds():g}s)")

    def stop(self, timeout: float = 5.0):
        """Stop the sweeper and wait for it to exit."""
        sweeper = self._sweeper
        if sweeper is None:
            return
        self._stop_event.set()
        sweeper.join(timeout)
        self._sweeper = None
        logger.info("[PREVIEW] Sweeper stopped")

    def _sweep_loop(self, stop_event: threading.Event):
        interval = self.sweep_interval.total_seconds()
        while not stop_event.wait(interval):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"[PREVIEW] Sweep failed: {e}", exc_info=True)

    # ==================== Internals (lock held) ====================

    def _live_entry(self, preview_id: str, now: datetime) -> Optional[PreviewBundle]:
        bundle = self._entries.get(preview_id)
        if bundle is None:
            return None
        if bundle.is_expired(now):
            self._evict(preview_id, now)
            logger.info(f"[PREVIEW] {preview_id} expired on lookup")
            return None
        return bundle

    def _evict(self, preview_id: str, now: datetime):
        self._entries.pop(preview_id, None)
        self._tombstones[preview_id] = now
        while len(self._tombstones) > TOMBSTONE_LIMIT:
            self._tombstones.popitem(last=False)
