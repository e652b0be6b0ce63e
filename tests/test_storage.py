"""
Tests for storage.service - snapshot persistence and import runs.
"""
import json
from datetime import date

import pytest

from import_engine.reconcile import ChangeEntry, ChangeKind, ChangeSet, MergeMode, diff
from storage.service import StorageService


@pytest.fixture
def storage(tmp_path):
    return StorageService(tmp_path / "instance")


class TestSnapshot:

    def test_empty(self, storage):
        assert storage.load_snapshot() == []

    def test_seed_and_load(self, storage, make_persisted):
        storage.seed([make_persisted(10, 1), make_persisted(11, 1, quality_measure="Diabetic Eye Exam")],
                     owners={1: "Dr. Hill"})

        records = storage.load_snapshot()
        assert [r.measure_id for r in records] == [10, 11]
        assert records[0].status_date == date(2025, 6, 1)
        assert records[0].owner_name == "Dr. Hill"

    def test_save_owner(self, storage, make_persisted):
        storage.seed([make_persisted(10, 1, owner_id=2)])
        storage.save_owner(2, "Dr. Metro")
        assert storage.load_snapshot()[0].owner_name == "Dr. Metro"

    def test_no_temp_files_left(self, storage, make_persisted):
        storage.seed([make_persisted(10, 1)])
        storage.apply_changeset(ChangeSet(MergeMode.MERGE), [])
        assert sorted(p.name for p in storage.base_dir.iterdir()) == ["measures.json"]


class TestApplyChangeset:

    def test_add_allocates_ids(self, storage, make_record, make_persisted):
        storage.seed([make_persisted(10, 1, request_type="Quality", quality_measure="Diabetic Eye Exam")])
        candidates = [
            make_record(),
            make_record(member_name="Jones, Ann", member_dob="1970-02-02"),
        ]
        result = storage.apply_changeset(diff(candidates, storage.load_snapshot(), "merge"), candidates)

        assert result.success
        assert result.stats["inserted"] == 2
        records = {(r.member_name, r.quality_measure): r for r in storage.load_snapshot()}
        assert records[("Smith, John", "Annual Wellness Visit")].patient_id == 1
        assert records[("Smith, John", "Annual Wellness Visit")].measure_id == 11
        assert records[("Jones, Ann", "Annual Wellness Visit")].patient_id == 2

    def test_update_measure_and_patient_fields(self, storage, make_record, make_persisted):
        storage.seed([
            make_persisted(10, 1, measure_status="Not Addressed"),
            make_persisted(11, 1, request_type="Quality", quality_measure="Diabetic Eye Exam"),
        ])
        candidates = [make_record(member_telephone="(555) 777-8888", due_date=date(2027, 1, 10))]
        result = storage.apply_changeset(diff(candidates, storage.load_snapshot(), "merge"), candidates)

        assert result.stats["updated"] == 1
        awv, eye = sorted(storage.load_snapshot(), key=lambda r: r.measure_id)
        assert awv.measure_status == "AWV completed"
        assert awv.due_date == date(2027, 1, 10)
        assert eye.member_telephone == "(555) 777-8888"
        assert eye.measure_status == "AWV completed"

    def test_replace_deletes(self, storage, make_record, make_persisted):
        storage.seed([
            make_persisted(10, 1),
            make_persisted(11, 1, request_type="Quality", quality_measure="Diabetic Eye Exam"),
        ])
        candidates = [make_record()]
        result = storage.apply_changeset(diff(candidates, storage.load_snapshot(), "replace"), candidates)

        assert result.stats["deleted"] == 1
        assert [r.measure_id for r in storage.load_snapshot()] == [10]

    def test_reassign(self, storage, make_record, make_persisted):
        storage.seed([make_persisted(10, 1, owner_id=1)], owners={1: "Dr. Hill", 2: "Dr. Metro"})
        candidates = [make_record(owner_id=2)]
        result = storage.apply_changeset(diff(candidates, storage.load_snapshot(), "merge"), candidates)

        assert result.stats["reassigned"] == 1
        record = storage.load_snapshot()[0]
        assert (record.owner_id, record.owner_name) == (2, "Dr. Metro")

    def test_downgrade_keeps_both_and_flags_duplicates(self, storage, make_record, make_persisted):
        storage.seed([make_persisted(10, 1)])
        candidates = [make_record(measure_status="Not Addressed")]
        result = storage.apply_changeset(diff(candidates, storage.load_snapshot(), "merge"), candidates)

        assert result.stats["both_kept"] == 1
        records = storage.load_snapshot()
        assert len(records) == 2
        assert all(r.is_duplicate for r in records)

    def test_delete_resyncs_duplicate_flags(self, storage, make_persisted):
        storage.seed([make_persisted(10, 1, is_duplicate=True), make_persisted(11, 1, is_duplicate=True)])
        changeset = ChangeSet(MergeMode.REPLACE, entries=(
            ChangeEntry(kind=ChangeKind.DELETE, key="k", reason="gone", patient_id=1, measure_id=11),
        ))
        storage.apply_changeset(changeset, [])
        assert [r.is_duplicate for r in storage.load_snapshot()] == [False]

    def test_failed_entries_reported_rest_applied(self, storage, make_record, make_persisted):
        storage.seed([make_persisted(10, 1)])
        candidates = [make_record(member_name="Jones, Ann", member_dob="1970-02-02")]
        changeset = ChangeSet(MergeMode.MERGE, entries=(
            ChangeEntry(kind=ChangeKind.DELETE, key="k", reason="gone", measure_id=99),
            ChangeEntry(kind=ChangeKind.ADD, key="j", reason="new", record_index=0, source_row_index=4),
        ))
        result = storage.apply_changeset(changeset, candidates)

        assert not result.success
        assert result.stats["inserted"] == 1
        assert result.errors[0].kind == "delete"
        assert "99" in result.errors[0].error
        assert len(storage.load_snapshot()) == 2

    def test_add_without_dob_is_an_error(self, storage, make_record):
        candidates = [make_record(member_dob=None)]
        changeset = ChangeSet(MergeMode.MERGE, entries=(
            ChangeEntry(kind=ChangeKind.ADD, key="k", reason="new", record_index=0, source_row_index=0),
        ))
        result = storage.apply_changeset(changeset, candidates)
        assert result.errors[0].member_name == "Smith, John"
        assert result.to_dict()["errors"][0]["quality_measure"] == "Annual Wellness Visit"
        assert storage.load_snapshot() == []


class TestImportRuns:

    def test_save_and_list_newest_first(self, storage, make_record):
        changeset = diff([make_record()], [], "merge")
        storage.save_import_run("import_20260101_000000_000001", changeset, {"system_id": "hill"})
        storage.save_import_run("import_20260102_000000_000001", changeset, {"system_id": "metro"})

        runs = storage.list_import_runs()
        assert [r["system_id"] for r in runs] == ["metro", "hill"]
        assert runs[0]["run_id"] == "import_20260102_000000_000001"
        assert storage.list_import_runs(limit=1)[0]["system_id"] == "metro"

        stored = json.loads((storage.base_dir / "imports" / runs[1]["run_id"] / "changeset.json").read_text())
        assert stored == json.loads(changeset.to_json())

    def test_no_runs(self, storage):
        assert storage.list_import_runs() == []

    def test_run_ids_sort_by_time(self):
        first = StorageService.generate_run_id()
        second = StorageService.generate_run_id()
        assert first.startswith("import_")
        assert first <= second
