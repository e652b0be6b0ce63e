"""
Tests for import_engine.catalog - measure catalog loading and lookups.
"""
import json

import pytest

from import_engine.catalog import MeasureCatalog
from import_engine.errors import ConfigMalformedError, ConfigMissingError


class TestShippedCatalog:

    def test_request_types(self, catalog):
        assert set(catalog.request_types) == {"AWV", "Screening", "Quality", "Chronic DX"}
        assert "Colon Cancer Screening" in catalog.quality_measures_for("Screening")
        assert catalog.quality_measures_for("Unknown") == frozenset()

    def test_status_lookups(self, catalog):
        assert catalog.base_due_days("AWV completed") == 365
        assert catalog.base_due_days("Not Addressed") is None
        assert catalog.date_prompt("HgbA1c at goal") == "Test Date"
        assert catalog.is_known_status("Chronic diagnosis invalid")

    def test_tracking_lookups(self, catalog):
        assert catalog.tracking_due_days("Screening test ordered", "Breast MRI") == 21
        assert catalog.tracking_due_days("Scheduled call back - BP not at goal", "Call every 3 wks") == 21
        assert catalog.tracking_due_days("Chronic diagnosis resolved", "Attestation not sent") == 14
        assert catalog.tracking_due_days("Screening test ordered", None) is None
        assert catalog.tracking_due_days(None, "Mammogram") is None

    def test_unknown_status(self, catalog):
        assert catalog.base_due_days("Made up") is None
        assert catalog.date_prompt(None) is None
        assert not catalog.is_known_status("Made up")

    def test_profile_status_labels_exist_in_catalog(self, catalog, registry):
        for listing in registry.list():
            for labels in registry.get(listing.id).status_map.values():
                assert catalog.is_known_status(labels.compliant)
                assert catalog.is_known_status(labels.non_compliant)


class TestLoading:

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigMissingError):
            MeasureCatalog.load(tmp_path / "nope.json")

    def test_not_json(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text("{")
        with pytest.raises(ConfigMalformedError):
            MeasureCatalog.load(path)

    def test_bad_day_count(self):
        with pytest.raises(ConfigMalformedError):
            MeasureCatalog.from_document({"statuses": {"Seen": {"baseDueDays": "soon"}}})

    def test_minimal_document(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({
            "requestTypes": {"AWV": ["Annual Wellness Visit"]},
            "statuses": {"Seen": {"datePrompt": "Date Seen", "baseDueDays": 7}},
        }))
        catalog = MeasureCatalog.load(path)
        assert catalog.base_due_days("Seen") == 7
        assert catalog.tracking_due_days_map == {}

    def test_empty(self):
        catalog = MeasureCatalog.empty()
        assert catalog.is_empty
        assert catalog.base_due_days("AWV completed") is None
