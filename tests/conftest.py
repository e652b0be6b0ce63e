"""Shared pytest configuration and fixtures for the test suite."""
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

from import_engine.catalog import MeasureCatalog
from import_engine.registry import ConfigRegistry
from import_engine.schemas import CanonicalMeasureRecord, PersistedRecord

CONFIG_DIR = Path(__file__).resolve().parent.parent / "import_config"

IMPORT_DAY = date(2026, 1, 15)

HILL_CSV = (
    b"Patient,DOB,Phone,Address,Sex,Annual Wellness Visit Q1,Annual Wellness Visit Q2,Eye Exam Q1,Eye Exam Q2\n"
    b'"Smith, John",01/15/1955,5551001001,101 Oak Street,M,01/10/2026,Compliant,,Non Compliant\n'
    b'"Johnson, Mary",02/20/1956,5551001002,102 Maple Ave,F,,,12/01/2025,Compliant\n'
)


class FakeClock:
    """Manually advanced, timezone-aware clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture(scope="session")
def catalog():
    return MeasureCatalog.load(CONFIG_DIR / "measure_rules.json")


@pytest.fixture(scope="session")
def registry():
    registry = ConfigRegistry(CONFIG_DIR)
    registry.load()
    return registry


@pytest.fixture(scope="session")
def profile(registry):
    return registry.get("hill")


@pytest.fixture
def hill_csv():
    return HILL_CSV


@pytest.fixture
def make_record():
    """Factory for candidate records with sensible defaults."""
    def _make(**overrides):
        values = {
            "member_name": "Smith, John",
            "member_dob": "1955-01-15",
            "member_telephone": "(555) 100-1001",
            "request_type": "AWV",
            "quality_measure": "Annual Wellness Visit",
            "measure_status": "AWV completed",
            "status_date": date(2026, 1, 10),
            "owner_id": 1,
        }
        values.update(overrides)
        return CanonicalMeasureRecord(**values)
    return _make


@pytest.fixture
def make_persisted():
    """Factory for stored records with sensible defaults."""
    def _make(measure_id, patient_id, **overrides):
        values = {
            "member_name": "Smith, John",
            "member_dob": "1955-01-15",
            "member_telephone": "(555) 100-1001",
            "request_type": "AWV",
            "quality_measure": "Annual Wellness Visit",
            "measure_status": "AWV completed",
            "status_date": date(2025, 6, 1),
            "owner_id": 1,
        }
        values.update(overrides)
        return PersistedRecord(measure_id=measure_id, patient_id=patient_id, **values)
    return _make
