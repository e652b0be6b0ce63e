"""
RuleEngine: applies the computed-field rules to transformed records.
"""
from typing import List, Optional, Sequence
import logging

from .catalog import MeasureCatalog
from .duplicates import DuplicateRule
from .rules import DatePromptRule, DueDateRule, Rule
from .schemas import CanonicalMeasureRecord

logger = logging.getLogger(__name__)


class RuleEngine:
    """
    Central holder for the due-date, date-prompt and duplicate rules.

    Example:
        >>> engine = RuleEngine(MeasureCatalog.load("import_config/measure_rules.json"))
        >>> records = engine.apply(records)
    """

    def __init__(
        self,
        catalog: Optional[MeasureCatalog] = None,
        due_date_rule: Optional[DueDateRule] = None,
        prompt_rule: Optional[DatePromptRule] = None,
        duplicate_rule: Optional[DuplicateRule] = None,
    ):
        self.catalog = catalog or MeasureCatalog.empty()
        self.due_date_rule = due_date_rule or DueDateRule()
        self.prompt_rule = prompt_rule or DatePromptRule()
        self.duplicate_rule = duplicate_rule or DuplicateRule()

    @property
    def lookup(self) -> Optional[MeasureCatalog]:
        """The catalog, or None when nothing is configured (static fallbacks apply)."""
        return None if self.catalog.is_empty else self.catalog

    @property
    def rules(self) -> List[Rule]:
        return [self.due_date_rule, self.prompt_rule, self.duplicate_rule]

    def compute_fields(self, record: CanonicalMeasureRecord) -> CanonicalMeasureRecord:
        """Fill due date, interval and status date prompt for one record."""
        due = self.due_date_rule.evaluate(
            record.status_date,
            record.measure_status,
            record.tracking1,
            record.tracking2,
            self.lookup,
        )
        prompt = self.prompt_rule.evaluate(record.measure_status, record.tracking1, self.lookup)
        return record.with_updates(
            due_date=due.due_date,
            interval_days=due.interval_days,
            status_date_prompt=prompt,
        )

    def apply(self, records: Sequence[CanonicalMeasureRecord]) -> List[CanonicalMeasureRecord]:
        """Compute per-record fields, then duplicate flags across the batch."""
        computed = [self.compute_fields(r) for r in records]
        flagged = self.duplicate_rule.apply(computed)
        logger.debug(
            f"[RULES] Applied {len(self.rules)} rules to {len(flagged)} records; "
            f"{sum(1 for r in flagged if r.is_duplicate)} flagged duplicate"
        )
        return flagged
