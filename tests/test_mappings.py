"""
Tests for import_engine.mappings - header classification and measure grouping.
"""
from import_engine.canonical_fields import CanonicalField
from import_engine.mappings import ColumnRole, group_measure_columns, map_columns

HILL_HEADERS = [
    "Patient", "DOB", "Phone", "Address", "Sex", "MembID",
    "Annual Wellness Visit Q1", "Annual Wellness Visit Q2",
    "Eye Exam Q2", "Mystery Column",
]


class TestMapColumns:

    def test_classification(self, profile):
        result = map_columns(HILL_HEADERS, profile)

        assert [m.source_column for m in result.patient_columns] == ["Patient", "DOB", "Phone", "Address"]
        assert result.skipped == ["Sex", "MembID"]
        assert result.unmapped == ["Mystery Column"]
        assert result.missing_required == []
        assert result.stats == {"total": 10, "mapped": 7, "skipped": 2, "unmapped": 1}

    def test_measure_suffix_roles(self, profile):
        result = map_columns(HILL_HEADERS, profile)
        roles = {m.source_column: m for m in result.measure_columns}

        assert roles["Annual Wellness Visit Q1"].role == ColumnRole.STATUS_DATE
        assert roles["Annual Wellness Visit Q1"].target_field == CanonicalField.STATUS_DATE
        assert roles["Annual Wellness Visit Q2"].role == ColumnRole.COMPLIANCE
        assert roles["Eye Exam Q2"].measure.quality_measure == "Diabetic Eye Exam"
        assert roles["Eye Exam Q2"].measure_base == "Eye Exam"

    def test_case_insensitive_headers(self, profile):
        result = map_columns(["patient", "dob", "ANNUAL WELLNESS VISIT q2"], profile)
        assert result.missing_required == []
        assert result.measure_columns[0].measure.request_type == "AWV"

    def test_missing_required_reports_source_header(self, profile):
        result = map_columns(["Patient", "Phone"], profile)
        assert result.missing_required == ["DOB"]

    def test_bare_measure_header_is_compliance(self, profile):
        result = map_columns(["Patient", "DOB", "BP Control"], profile)
        mapping = result.measure_columns[0]
        assert mapping.role == ColumnRole.COMPLIANCE
        assert mapping.measure.quality_measure == "Hypertension Management"

    def test_unknown_suffixed_header_is_unmapped(self, profile):
        result = map_columns(["Patient", "DOB", "Flu Shot Q2"], profile)
        assert result.unmapped == ["Flu Shot Q2"]

    def test_to_dict(self, profile):
        data = map_columns(HILL_HEADERS, profile).to_dict()
        assert data["stats"]["mapped"] == 7
        assert data["mapped"][0] == {
            "source_column": "Patient",
            "role": "patient",
            "target_field": "member_name",
            "quality_measure": None,
        }


class TestGroupMeasureColumns:

    def test_age_banded_columns_share_a_group(self, profile):
        headers = [
            "Patient", "DOB",
            "Breast Cancer Screening E 40-49 Q1", "Breast Cancer Screening E 40-49 Q2",
            "Breast Cancer Screening E 50-74 Q1", "Breast Cancer Screening E 50-74 Q2",
            "Eye Exam Q2",
        ]
        groups = group_measure_columns(map_columns(headers, profile).measure_columns)

        assert [(g.request_type, g.quality_measure) for g in groups] == [
            ("Screening", "Breast Cancer Screening"),
            ("Quality", "Diabetic Eye Exam"),
        ]
        breast = groups[0]
        assert breast.status_date_columns == [
            "Breast Cancer Screening E 40-49 Q1", "Breast Cancer Screening E 50-74 Q1",
        ]
        assert breast.compliance_columns == [
            "Breast Cancer Screening E 40-49 Q2", "Breast Cancer Screening E 50-74 Q2",
        ]

    def test_patient_columns_ignored(self, profile):
        assert group_measure_columns(map_columns(["Patient", "DOB"], profile).mapped) == []
