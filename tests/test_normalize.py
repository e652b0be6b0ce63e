"""
Tests for import_engine.normalize - wide export rows to canonical records.
"""
from datetime import date

import pytest

from import_engine.engine import RuleEngine
from import_engine.errors import MissingRequiredColumnsError
from import_engine.io import FileIngestor
from import_engine.normalize import normalize_phone, resolve_measure_status, transform_sheet
from import_engine.validation import Severity

IMPORT_DAY = date(2026, 1, 15)


@pytest.fixture
def engine(catalog):
    return RuleEngine(catalog)


def transform(content, profile, engine, owner_id=None):
    sheet = FileIngestor().parse(content, "export.csv")
    return transform_sheet(sheet, profile, engine, IMPORT_DAY, owner_id)


# ── Field helpers ────────────────────────────────────────────────────

class TestNormalizePhone:

    @pytest.mark.parametrize("raw,expected", [
        ("5551234567", "(555) 123-4567"),
        ("555-123-4567", "(555) 123-4567"),
        ("1 (555) 123 4567", "(555) 123-4567"),
        ("12345", "12345"),
        (None, None),
        ("", None),
    ])
    def test_normalize_phone(self, raw, expected):
        assert normalize_phone(raw) == expected


class TestResolveMeasureStatus:

    def test_compliant_uses_profile_label(self, profile):
        assert resolve_measure_status(["Compliant"], "Annual Wellness Visit", profile) == "AWV completed"

    def test_any_non_compliant_wins(self, profile):
        status = resolve_measure_status(["Compliant", "Non Compliant"], "Breast Cancer Screening", profile)
        assert status == "Not Addressed"

    @pytest.mark.parametrize("value", ["non compliant", "Non-Compliant", "NONCOMPLIANT", "NC", "no"])
    def test_non_compliant_spellings(self, value, profile):
        assert resolve_measure_status([value], "Diabetes Control", profile) == "HgbA1c NOT at goal"

    @pytest.mark.parametrize("value", ["compliant", "C", "Yes"])
    def test_compliant_spellings(self, value, profile):
        assert resolve_measure_status([value], "Diabetes Control", profile) == "HgbA1c at goal"

    def test_measure_without_labels(self, profile):
        assert resolve_measure_status(["NC"], "Vaccination", profile) == "Not Addressed"
        assert resolve_measure_status(["Compliant"], "Vaccination", profile) is None

    def test_other_values_kept_verbatim(self, profile):
        assert resolve_measure_status([" Patient declined "], "Annual Wellness Visit", profile) == "Patient declined"

    def test_no_values(self, profile):
        assert resolve_measure_status([], "Annual Wellness Visit", profile) is None


# ── Transform ────────────────────────────────────────────────────────

class TestTransformSheet:

    def test_fan_out(self, hill_csv, profile, engine):
        result = transform(hill_csv, profile, engine, owner_id=7)

        assert [(r.member_name, r.quality_measure) for r in result.records] == [
            ("Smith, John", "Annual Wellness Visit"),
            ("Smith, John", "Diabetic Eye Exam"),
            ("Johnson, Mary", "Diabetic Eye Exam"),
        ]
        assert all(r.owner_id == 7 for r in result.records)
        assert result.stats["input_rows"] == 2
        assert result.stats["output_rows"] == 3
        assert result.issues == []

    def test_patient_fields(self, hill_csv, profile, engine):
        smith = transform(hill_csv, profile, engine).records[0]
        assert smith.member_dob == "1955-01-15"
        assert smith.member_telephone == "(555) 100-1001"
        assert smith.member_address == "101 Oak Street"
        assert smith.source_row_index == 0
        assert smith.source_measure == "Annual Wellness Visit Q2"

    def test_computed_fields(self, hill_csv, profile, engine):
        awv, eye_nc, eye_ok = transform(hill_csv, profile, engine).records

        assert awv.measure_status == "AWV completed"
        assert awv.status_date == date(2026, 1, 10)
        assert awv.due_date == date(2027, 1, 10)
        assert awv.status_date_prompt == "Date Completed"

        assert eye_nc.measure_status == "Not Addressed"
        assert eye_nc.status_date == IMPORT_DAY
        assert eye_nc.due_date is None

        assert eye_ok.measure_status == "Diabetic eye exam completed"
        assert eye_ok.status_date == date(2025, 12, 1)
        assert eye_ok.interval_days == 365

    def test_row_without_name_is_skipped_with_warning(self, profile, engine):
        content = b"Patient,DOB,Eye Exam Q2\n,01/01/1960,Compliant\nDoe,01/01/1960,Compliant\n"
        result = transform(content, profile, engine)

        assert [r.member_name for r in result.records] == ["Doe"]
        assert len(result.issues) == 1
        issue = result.issues[0]
        assert issue.severity == Severity.WARNING
        assert issue.field == "member_name"
        assert "Line 2" in issue.message

    def test_unparseable_status_date_falls_back_to_import_date(self, profile, engine):
        content = b"Patient,DOB,Eye Exam Q1,Eye Exam Q2\nDoe,01/01/1960,someday,Compliant\n"
        result = transform(content, profile, engine)

        assert result.records[0].status_date == IMPORT_DAY
        assert [i.field for i in result.issues] == ["status_date"]
        assert result.issues[0].value == "someday"
        assert result.issues[0].member_name == "Doe"

    def test_unparseable_dob_is_a_warning(self, profile, engine):
        content = b"Patient,DOB,Eye Exam Q2\nDoe,31/31/1960,Compliant\n"
        result = transform(content, profile, engine)

        assert result.records[0].member_dob is None
        assert [i.field for i in result.issues] == ["member_dob"]

    def test_date_without_status(self, profile, engine):
        content = b"Patient,DOB,Eye Exam Q1,Eye Exam Q2\nDoe,01/01/1960,03/01/2026,\n"
        record = transform(content, profile, engine).records[0]
        assert record.measure_status is None
        assert record.status_date == date(2026, 3, 1)

    def test_patient_without_measures(self, profile, engine):
        content = b"Patient,DOB,Phone,Eye Exam Q2\nDoe,01/01/1960,5559990000,\n"
        result = transform(content, profile, engine)

        assert len(result.patients_with_no_measures) == 1
        assert result.patients_with_no_measures[0].to_dict() == {
            "row_index": 0, "member_name": "Doe", "member_dob": "1960-01-01",
        }
        placeholder = result.records[0]
        assert placeholder.quality_measure is None
        assert not placeholder.has_measure
        assert placeholder.member_telephone == "(555) 999-0000"

    def test_age_banded_columns_collapse(self, profile, engine):
        content = (
            b"Patient,DOB,Breast Cancer Screening E 40-49 Q2,Breast Cancer Screening E 50-74 Q2\n"
            b"Doe,01/01/1960,Compliant,Non Compliant\n"
        )
        records = transform(content, profile, engine).records
        assert len(records) == 1
        assert records[0].measure_status == "Not Addressed"
        assert not records[0].is_duplicate

    def test_duplicate_rows_flagged(self, profile, engine):
        content = (
            b"Patient,DOB,Eye Exam Q2\n"
            b"Doe,01/01/1960,Compliant\n"
            b"doe ,1960-01-01,Non Compliant\n"
        )
        records = transform(content, profile, engine).records
        assert [r.is_duplicate for r in records] == [True, True]

    def test_missing_required_columns(self, profile, engine):
        with pytest.raises(MissingRequiredColumnsError) as exc_info:
            transform(b"Patient,Phone\nDoe,5551112222\n", profile, engine)
        assert exc_info.value.missing == ["DOB"]
        assert exc_info.value.to_dict()["missing"] == ["DOB"]
