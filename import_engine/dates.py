"""
Date normalization for clinic exports.

Exports arrive with dates as spreadsheet serial numbers, several US and ISO
text layouts, or whatever the clinic system felt like printing. ``parse_date``
tries, in order:

1. Spreadsheet serial day counts (days since 1899-12-30)
2. The explicit calendar patterns in ``DATE_PATTERNS``
3. A free-form parse through pandas

It never raises. Unparseable values come back with ``format_tag='invalid'``
so callers can record a warning for the row and carry on.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, List, Optional, Tuple
import re
import warnings

import pandas as pd


SPREADSHEET_EPOCH = date(1899, 12, 30)
SERIAL_MIN = 1
SERIAL_MAX = 100000

# Two-digit years below this pivot are 20YY, the rest 19YY
TWO_DIGIT_YEAR_PIVOT = 50

FORMAT_EMPTY = "empty"
FORMAT_INVALID = "invalid"
FORMAT_SERIAL = "excel-serial"
FORMAT_NATIVE = "native"
FORMAT_FREEFORM = "freeform"


@dataclass(frozen=True)
class ParsedDate:
    """Result of parsing one cell value."""
    date: Optional[date]
    original_text: str
    format_tag: str

    @property
    def is_valid(self) -> bool:
        return self.date is not None


def _expand_two_digit_year(yy: int) -> int:
    return 2000 + yy if yy < TWO_DIGIT_YEAR_PIVOT else 1900 + yy


def _mdy(match: re.Match) -> date:
    return date(int(match.group(3)), int(match.group(1)), int(match.group(2)))


def _mdy_short(match: re.Match) -> date:
    year = _expand_two_digit_year(int(match.group(3)))
    return date(year, int(match.group(1)), int(match.group(2)))


def _ymd(match: re.Match) -> date:
    return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))


# (format tag, pattern, builder). Order matters: first match wins.
DATE_PATTERNS: List[Tuple[str, "re.Pattern[str]", Callable[[re.Match], date]]] = [
    ("MM/DD/YYYY", re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$"), _mdy),
    ("MM/DD/YY", re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2})$"), _mdy_short),
    ("YYYY-MM-DD", re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$"), _ymd),
    ("M.D.YYYY", re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{4})$"), _mdy),
    ("MM-DD-YYYY", re.compile(r"^(\d{1,2})-(\d{1,2})-(\d{4})$"), _mdy),
    ("YYYY/MM/DD", re.compile(r"^(\d{4})/(\d{1,2})/(\d{1,2})$"), _ymd),
]

_PURE_DIGITS = re.compile(r"^\d+$")
# ISO timestamps written by spreadsheet loaders, e.g. "2026-01-15T00:00:00"
_ISO_TIMESTAMP = re.compile(r"^(\d{4}-\d{1,2}-\d{1,2})[T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?$")


def serial_to_date(serial: int) -> date:
    """Convert a spreadsheet serial day count to a calendar date."""
    return SPREADSHEET_EPOCH + timedelta(days=serial)


def _is_serial(number: int) -> bool:
    return SERIAL_MIN < number < SERIAL_MAX


def _parse_number(value: float, original: str) -> ParsedDate:
    if float(value).is_integer() and _is_serial(int(value)):
        return ParsedDate(serial_to_date(int(value)), original, FORMAT_SERIAL)
    return ParsedDate(None, original, FORMAT_INVALID)


def _parse_freeform(text: str) -> Optional[date]:
    # Relative words ("now", "today") would resolve against the wall clock
    if not any(ch.isdigit() for ch in text):
        return None
    with warnings.catch_warnings():
        # pandas warns when it has to guess the layout of each element
        warnings.simplefilter("ignore")
        parsed = pd.to_datetime(text, errors="coerce")
    if parsed is None or pd.isna(parsed):
        return None
    return parsed.date()


def parse_date(value: Any) -> ParsedDate:
    """
    Parse a cell value into a calendar date.

    Args:
        value: str, int, float, date, datetime, pandas Timestamp or None

    Returns:
        ParsedDate; ``date`` is None when the value is empty or unparseable
    """
    if value is None or value is pd.NaT:
        return ParsedDate(None, "", FORMAT_EMPTY)

    if isinstance(value, bool):
        return ParsedDate(None, str(value), FORMAT_INVALID)

    if isinstance(value, pd.Timestamp):
        if pd.isna(value):
            return ParsedDate(None, "", FORMAT_EMPTY)
        return ParsedDate(value.date(), value.isoformat(), FORMAT_NATIVE)

    if isinstance(value, datetime):
        return ParsedDate(value.date(), value.isoformat(), FORMAT_NATIVE)

    if isinstance(value, date):
        return ParsedDate(value, value.isoformat(), FORMAT_NATIVE)

    if isinstance(value, (int, float)):
        if isinstance(value, float) and pd.isna(value):
            return ParsedDate(None, "", FORMAT_EMPTY)
        return _parse_number(value, str(value))

    text = str(value).strip()
    if not text:
        return ParsedDate(None, str(value), FORMAT_EMPTY)

    if _PURE_DIGITS.match(text):
        if _is_serial(int(text)):
            return ParsedDate(serial_to_date(int(text)), text, FORMAT_SERIAL)
        return ParsedDate(None, text, FORMAT_INVALID)

    timestamp = _ISO_TIMESTAMP.match(text)
    candidate = timestamp.group(1) if timestamp else text

    for format_tag, pattern, builder in DATE_PATTERNS:
        match = pattern.match(candidate)
        if not match:
            continue
        try:
            return ParsedDate(builder(match), text, format_tag)
        except ValueError:
            # Shape matched but the calendar date does not exist (e.g. 02/30)
            return ParsedDate(None, text, FORMAT_INVALID)

    parsed = _parse_freeform(text)
    if parsed is None:
        return ParsedDate(None, text, FORMAT_INVALID)
    return ParsedDate(parsed, text, FORMAT_FREEFORM)


def to_canonical_date_string(value: Optional[date]) -> str:
    """Format as ``YYYY-MM-DD``; empty string for None."""
    if value is None:
        return ""
    return value.isoformat()


def to_display_date_string(value: Optional[date]) -> str:
    """Format as ``MM/DD/YYYY``; empty string for None."""
    if value is None:
        return ""
    return f"{value.month:02d}/{value.day:02d}/{value.year:04d}"


def from_canonical_date_string(value: Optional[str]) -> Optional[date]:
    """Inverse of ``to_canonical_date_string`` for stored values."""
    if not value:
        return None
    return date.fromisoformat(value)
