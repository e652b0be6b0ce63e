"""
Tests for import_engine.preview_store - TTL-bounded preview bundles.

Validates:
- Lazy expiry on lookup and eager expiry by sweep
- Expired and unknown ids are distinguishable
- The background sweeper evicts without any lookup
- Concurrent stores never collide
"""
import itertools
import threading
import time
from datetime import timedelta

import pytest

from import_engine.errors import PreviewExpiredError, PreviewNotFoundError
from import_engine.preview_store import PreviewStore, new_preview_id
from import_engine.reconcile import ChangeSet, MergeMode, diff
from import_engine.validation import ValidationResult


@pytest.fixture
def store(clock):
    return PreviewStore(clock=clock, default_ttl=timedelta(minutes=30), sweep_interval=timedelta(minutes=5))


def put(store, **kw):
    return store.store("hill", MergeMode.MERGE, ChangeSet(MergeMode.MERGE), [], ValidationResult(), **kw)


class TestStoreAndGet:

    def test_round_trip(self, store, clock, make_record):
        records = [make_record()]
        changeset = diff(records, [], "merge")
        preview_id = store.store("hill", MergeMode.MERGE, changeset, records, ValidationResult(),
                                 target_owner_id=4, file_name="export.csv")

        bundle = store.get(preview_id)
        assert bundle.preview_id == preview_id
        assert bundle.records == tuple(records)
        assert bundle.target_owner_id == 4
        assert bundle.created_at == clock()
        assert bundle.expires_at == clock() + timedelta(minutes=30)
        assert bundle.summary()["fileName"] == "export.csv"
        assert bundle.summary()["summary"]["adds"] == 1

    def test_ids_are_128_bit_hex(self):
        preview_id = new_preview_id()
        assert len(preview_id) == 32
        int(preview_id, 16)
        assert new_preview_id() != preview_id

    def test_id_collision_retries(self, clock):
        ids = iter(["same", "same", "other"])
        store = PreviewStore(clock=clock, id_factory=lambda: next(ids))
        assert put(store) == "same"
        assert put(store) == "other"

    def test_unknown_id(self, store):
        assert store.get("nope") is None
        with pytest.raises(PreviewNotFoundError):
            store.require("nope")

    def test_to_dict_is_complete(self, store, make_record):
        records = [make_record()]
        preview_id = store.store("hill", MergeMode.REPLACE, diff(records, [], "replace"), records, ValidationResult())
        data = store.get(preview_id).to_dict()
        assert data["mode"] == "replace"
        assert data["changes"]["entries"][0]["kind"] == "add"
        assert data["records"][0]["status_date"] == "2026-01-10"


class TestExpiry:

    def test_live_at_boundary_gone_after(self, store, clock):
        preview_id = put(store)
        clock.advance(minutes=30)
        assert store.get(preview_id) is not None
        clock.advance(microseconds=1)
        assert store.get(preview_id) is None

    def test_expired_lookup_raises_expired(self, store, clock):
        preview_id = put(store)
        clock.advance(minutes=31)
        with pytest.raises(PreviewExpiredError) as exc_info:
            store.require(preview_id)
        assert exc_info.value.http_status == 410

    def test_deleted_is_not_found(self, store):
        preview_id = put(store)
        assert store.delete(preview_id)
        assert not store.delete(preview_id)
        with pytest.raises(PreviewNotFoundError):
            store.require(preview_id)

    def test_custom_ttl(self, store, clock):
        preview_id = put(store, ttl=timedelta(seconds=10))
        clock.advance(seconds=11)
        assert store.get(preview_id) is None

    def test_extend(self, store, clock):
        preview_id = put(store)
        clock.advance(minutes=20)
        assert store.extend_ttl(preview_id, timedelta(minutes=30))
        clock.advance(minutes=30)
        assert store.get(preview_id) is not None

    def test_extend_expired_fails(self, store, clock):
        preview_id = put(store)
        clock.advance(hours=1)
        assert not store.extend_ttl(preview_id)
        assert not store.extend_ttl("nope")


class TestSweep:

    def test_sweep_removes_only_expired(self, store, clock):
        short = put(store, ttl=timedelta(minutes=1))
        long = put(store)
        clock.advance(minutes=2)

        assert store.sweep() == 1
        assert len(store) == 1
        assert store.get(long) is not None
        with pytest.raises(PreviewExpiredError):
            store.require(short)

    def test_stats(self, store, clock):
        assert store.stats() == {
            "total": 0, "active": 0, "expired": 0, "oldestCreatedAt": None, "newestCreatedAt": None,
        }
        put(store, ttl=timedelta(minutes=1))
        clock.advance(minutes=5)
        put(store)

        stats = store.stats()
        assert (stats["total"], stats["active"], stats["expired"]) == (2, 1, 1)
        assert stats["oldestCreatedAt"] < stats["newestCreatedAt"]

    def test_clear(self, store):
        put(store)
        store.clear()
        assert len(store) == 0

    def test_background_sweeper_evicts_without_lookup(self, clock):
        store = PreviewStore(clock=clock, sweep_interval=timedelta(milliseconds=10))
        put(store, ttl=timedelta(milliseconds=1))
        active_before = store.stats()["active"]
        clock.advance(milliseconds=2)

        store.start()
        try:
            assert store.running
            deadline = time.monotonic() + 5
            while len(store) and time.monotonic() < deadline:
                time.sleep(0.01)
            assert len(store) == 0
            assert store.stats()["active"] == active_before - 1
        finally:
            store.stop()
        assert not store.running

    def test_start_and_stop_are_idempotent(self, store):
        store.start()
        store.start()
        store.stop()
        store.stop()
        assert not store.running


class TestConcurrency:

    def test_concurrent_stores_get_distinct_ids(self, clock):
        counter = itertools.count()
        store = PreviewStore(clock=clock, id_factory=lambda: f"id-{next(counter) % 50}")
        ids = []
        ids_lock = threading.Lock()

        def worker():
            for _ in range(10):
                preview_id = put(store)
                with ids_lock:
                    ids.append(preview_id)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(ids) == 50
        assert len(set(ids)) == 50
        assert len(store) == 50


class TestImmutability:

    def test_stored_bundle_cannot_be_changed_through_results(self, store, make_record):
        records = [make_record()]
        report = {"summary": {"status": "success"}}
        preview_id = store.store("hill", MergeMode.MERGE, diff(records, [], "merge"), records,
                                 ValidationResult(), report=report)
        report["summary"]["status"] = "error"

        bundle = store.require(preview_id)
        assert isinstance(bundle.validation.errors, tuple)
        with pytest.raises(AttributeError):
            bundle.validation.errors = ()
        with pytest.raises(TypeError):
            bundle.report["injected"] = True

        data = bundle.to_dict()
        data["report"]["summary"]["status"] = "error"
        data["report"]["injected"] = True
        data["changes"]["entries"][0]["after"]["measure_status"] = "Not Addressed"

        fresh = store.require(preview_id).to_dict()
        assert fresh["report"] == {"summary": {"status": "success"}}
        assert fresh["changes"]["entries"][0]["after"]["measure_status"] == "AWV completed"
