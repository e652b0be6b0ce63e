"""
Tests for import_engine.rules and import_engine.engine - computed fields.

Validates:
- Due date tier precedence (month tiers before configured day offsets)
- Calendar month arithmetic with end-of-month clamping
- Status date prompt overrides, catalog prompts and static fallbacks
- RuleEngine fills every computed field
"""
from datetime import date

import pytest

from import_engine.catalog import MeasureCatalog
from import_engine.engine import RuleEngine
from import_engine.rules import DEFAULT_DATE_PROMPTS, DatePromptRule, DueDateResult, DueDateRule, add_months

STATUS_DATE = date(2026, 1, 15)


@pytest.fixture
def due_rule():
    return DueDateRule()


# ── Month arithmetic ─────────────────────────────────────────────────

class TestAddMonths:

    @pytest.mark.parametrize("start,months,expected", [
        (date(2026, 1, 15), 3, date(2026, 4, 15)),
        (date(2026, 1, 31), 1, date(2026, 2, 28)),
        (date(2024, 1, 31), 1, date(2024, 2, 29)),
        (date(2025, 11, 30), 3, date(2026, 2, 28)),
        (date(2026, 1, 15), 12, date(2027, 1, 15)),
        (date(2026, 12, 1), 1, date(2027, 1, 1)),
    ])
    def test_add_months(self, start, months, expected):
        assert add_months(start, months) == expected


# ── Due date tiers ───────────────────────────────────────────────────

class TestDueDateRule:

    def test_screening_discussed_in_three_months(self, due_rule, catalog):
        result = due_rule.evaluate(STATUS_DATE, "Screening discussed", "In 3 Months", None, catalog)
        assert result.due_date.year == 2026
        assert result.due_date.month == 4
        assert 84 <= result.interval_days <= 93
        assert result.interval_days == (result.due_date - STATUS_DATE).days

    def test_hgba1c_twelve_months(self, due_rule, catalog):
        result = due_rule.evaluate(STATUS_DATE, "HgbA1c at goal", None, "12 months", catalog)
        assert result.due_date == date(2027, 1, 15)
        assert result.due_date.year == 2027
        assert result.tier == "tracking2_months"

    def test_hgba1c_not_at_goal_also_uses_months(self, due_rule, catalog):
        result = due_rule.evaluate(STATUS_DATE, "HgbA1c NOT at goal", None, "3 months", catalog)
        assert result.due_date == date(2026, 4, 15)

    def test_month_pattern_case_insensitive_and_singular(self, due_rule):
        result = due_rule.evaluate(STATUS_DATE, "Screening discussed", "in 1 month", None, None)
        assert result.due_date == date(2026, 2, 15)
        assert result.interval_days == 31

    def test_month_tier_beats_configured_tracking_rule(self, due_rule, catalog):
        # The catalog also maps "In 2 Months" to 60 days; calendar months win
        result = due_rule.evaluate(STATUS_DATE, "Screening discussed", "In 2 Months", None, catalog)
        assert result.due_date == date(2026, 3, 15)
        assert result.interval_days == 59
        assert result.tier == "tracking1_months"

    def test_tracking_day_rule(self, due_rule, catalog):
        result = due_rule.evaluate(STATUS_DATE, "Colon cancer screening ordered", "Cologuard", None, catalog)
        assert result.due_date == date(2026, 2, 5)
        assert result.interval_days == 21
        assert result.tier == "tracking_rule"

    def test_tracking_rule_beats_base_days(self, due_rule, catalog):
        result = due_rule.evaluate(STATUS_DATE, "Screening test ordered", "Breast MRI", None, catalog)
        assert result.interval_days == 21

    def test_base_due_days(self, due_rule, catalog):
        result = due_rule.evaluate(STATUS_DATE, "AWV completed", None, None, catalog)
        assert result.due_date == date(2027, 1, 15)
        assert result.interval_days == 365
        assert result.tier == "base_due_days"

    def test_unknown_tracking_falls_back_to_base_days(self, due_rule, catalog):
        result = due_rule.evaluate(STATUS_DATE, "Screening test ordered", "Carrier pigeon", None, catalog)
        assert result.interval_days == 14

    def test_status_without_due_days(self, due_rule, catalog):
        assert due_rule.evaluate(STATUS_DATE, "Not Addressed", None, None, catalog) == DueDateResult()

    def test_missing_status_date(self, due_rule, catalog):
        result = due_rule.evaluate(None, "AWV completed", None, None, catalog)
        assert result.due_date is None
        assert result.interval_days is None

    def test_missing_status(self, due_rule, catalog):
        assert due_rule.evaluate(STATUS_DATE, None, None, None, catalog).due_date is None

    def test_no_lookup_only_month_tiers_apply(self, due_rule):
        assert due_rule.evaluate(STATUS_DATE, "AWV completed", None, None, None).due_date is None

    def test_rule_identity(self, due_rule):
        assert due_rule.rule_id == "DUE_DATE"
        assert due_rule.rule_name == "Due Date Calculation"


# ── Date prompt ──────────────────────────────────────────────────────

class TestDatePromptRule:

    @pytest.mark.parametrize("tracking1,expected", [
        ("Patient deceased", "Date of Death"),
        ("Patient in hospice", "Date Reported"),
    ])
    def test_tracking_overrides_win(self, tracking1, expected, catalog):
        assert DatePromptRule().evaluate("AWV completed", tracking1, catalog) == expected

    def test_catalog_prompt(self, catalog):
        assert DatePromptRule().evaluate("HgbA1c at goal", None, catalog) == "Test Date"

    def test_static_fallback_without_catalog(self):
        rule = DatePromptRule()
        assert rule.evaluate("HgbA1c at goal", None) == DEFAULT_DATE_PROMPTS["HgbA1c at goal"]
        assert rule.evaluate("Unheard of status", None) is None

    def test_status_without_prompt(self, catalog):
        assert DatePromptRule().evaluate("Not Addressed", None, catalog) is None

    def test_missing_status(self, catalog):
        assert DatePromptRule().evaluate(None, None, catalog) is None

    def test_custom_fallback_table(self):
        rule = DatePromptRule(fallback_prompts={"Seen": "Date Seen"})
        assert rule.evaluate("Seen", None) == "Date Seen"
        assert rule.evaluate("AWV completed", None) is None


# ── Engine ───────────────────────────────────────────────────────────

class TestRuleEngine:

    def test_compute_fields(self, catalog, make_record):
        engine = RuleEngine(catalog)
        record = engine.compute_fields(make_record(status_date=STATUS_DATE))
        assert record.due_date == date(2027, 1, 15)
        assert record.interval_days == 365
        assert record.status_date_prompt == "Date Completed"

    def test_compute_fields_clears_stale_values(self, catalog, make_record):
        engine = RuleEngine(catalog)
        stale = make_record(measure_status="Not Addressed", due_date=date(2020, 1, 1), interval_days=7)
        record = engine.compute_fields(stale)
        assert record.due_date is None
        assert record.interval_days is None

    def test_apply_does_not_mutate_input(self, catalog, make_record):
        records = [make_record(), make_record()]
        snapshot = list(records)
        result = RuleEngine(catalog).apply(records)
        assert records == snapshot
        assert all(r.is_duplicate for r in result)
        assert not any(r.is_duplicate for r in records)

    def test_empty_catalog_uses_static_prompts(self, make_record):
        engine = RuleEngine(MeasureCatalog.empty())
        assert engine.lookup is None
        record = engine.compute_fields(make_record())
        assert record.status_date_prompt == DEFAULT_DATE_PROMPTS["AWV completed"]
        assert record.due_date is None

    def test_rules_listed(self, catalog):
        ids = [rule.rule_id for rule in RuleEngine(catalog).rules]
        assert ids == ["DUE_DATE", "STATUS_DATE_PROMPT", "DUPLICATE_MEASURE"]
