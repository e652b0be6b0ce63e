"""
File ingestion: raw upload bytes to a normalized header/row table.

Delimited text goes through ``pandas.read_csv`` and spreadsheets through
``pandas.read_excel``. Both frames take the same row path and end up as a
``ParsedSheet`` in which every value is a trimmed string or None.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import PurePath
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import io
import logging
import re

import pandas as pd

from .errors import EmptyFileError, FileParseError, NoDataRowsError, UnsupportedFileFormatError

logger = logging.getLogger(__name__)

TitleRowPredicate = Callable[[Sequence[Optional[str]]], bool]

# (physical 1-indexed line number, cell values)
RawRow = Tuple[int, List[Optional[str]]]


@dataclass
class ParsedSheet:
    """Normalized upload contents."""
    headers: List[str]
    rows: List[Dict[str, Optional[str]]]
    data_start_line: int
    source_format: str
    file_name: str = ""
    line_numbers: List[int] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return len(self.rows)

    def line_for_row(self, row_index: int) -> int:
        """Physical line of a 0-based data row, for operator messages."""
        if 0 <= row_index < len(self.line_numbers):
            return self.line_numbers[row_index]
        return self.data_start_line + row_index


@dataclass
class ColumnCheck:
    valid: bool
    missing: List[str]


# ==================== Title / banner row heuristic ====================

_BANNER_DASH_RUN = re.compile(r"-{2,}")
WIDE_ROW_MIN_CELLS = 10
WIDE_ROW_MAX_FILLED = 2


def is_report_banner_row(row: Sequence[Optional[str]]) -> bool:
    """
    Heuristic: does this row look like a report title instead of headers?

    Matches exports that print "Report Generated ..." or "All (...)" above the
    header row, dash-run separators, and merged-cell banners (a wide row with
    at most two filled cells). Heuristic only; callers surface a warning when
    it fires because a false positive drops a real header row.
    """
    if not row:
        return False

    first_cell = (row[0] or "").strip().lower()
    if "report generated" in first_cell or first_cell.startswith("all (") or _BANNER_DASH_RUN.search(first_cell):
        return True

    filled = [cell for cell in row if cell is not None and str(cell).strip() != ""]
    return len(row) > WIDE_ROW_MIN_CELLS and len(filled) <= WIDE_ROW_MAX_FILLED


# ==================== Cell normalization ====================

def normalize_cell(value: Any) -> Optional[str]:
    """Trim to a string; empty, whitespace-only and NaN become None."""
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, (pd.Timestamp, datetime)):
        if pd.isna(value):
            return None
        if value.hour == 0 and value.minute == 0 and value.second == 0:
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float):
        if pd.isna(value):
            return None
        if value.is_integer():
            return str(int(value))
        return str(value)
    text = str(value).strip()
    return text or None


# ==================== Loaders ====================

class SheetLoader(ABC):
    """Turns file bytes into raw rows (blank rows already dropped)."""

    source_format = ""

    @abstractmethod
    def read_frame(self, content: bytes) -> pd.DataFrame:
        pass

    def load_rows(self, content: bytes) -> List[RawRow]:
        frame = self.read_frame(content)
        logger.debug(f"[INGEST] {self.source_format} frame shape: {frame.shape}")

        rows: List[RawRow] = []
        for position, values in enumerate(frame.itertuples(index=False, name=None)):
            normalized = [normalize_cell(v) for v in values]
            if any(c is not None for c in normalized):
                rows.append((position + 1, normalized))
        return rows


class DelimitedTextLoader(SheetLoader):
    """Quote-aware delimited text (CSV / TSV)."""

    # Clinic systems on Windows still write cp1252
    ENCODINGS = ("utf-8-sig", "latin-1")

    def __init__(self, delimiter: str = ",", source_format: str = "csv"):
        self.delimiter = delimiter
        self.source_format = source_format

    def read_frame(self, content: bytes) -> pd.DataFrame:
        # Ragged rows: name a column per field of the widest line, drop trailing empty ones after
        separator = self.delimiter.encode("ascii")
        width = max(line.count(separator) for line in content.splitlines()) + 1

        for encoding in self.ENCODINGS:
            try:
                frame = pd.read_csv(
                    io.BytesIO(content),
                    sep=self.delimiter,
                    header=None,
                    names=list(range(width)),
                    dtype=str,
                    keep_default_na=False,
                    skip_blank_lines=False,
                    encoding=encoding,
                )
                break
            except UnicodeDecodeError:
                continue
            except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
                raise FileParseError(f"Could not parse delimited file: {e}", cause=e)
        else:
            raise FileParseError("Could not decode delimited file")

        has_text = frame.fillna("").ne("").any(axis=0).tolist()
        used = max((position + 1 for position, filled in enumerate(has_text) if filled), default=0)
        return frame.iloc[:, :used]


class SpreadsheetLoader(SheetLoader):
    """First worksheet of an .xlsx/.xls workbook."""

    def __init__(self, source_format: str = "xlsx"):
        self.source_format = source_format

    def read_frame(self, content: bytes) -> pd.DataFrame:
        try:
            return pd.read_excel(io.BytesIO(content), sheet_name=0, header=None, dtype=object)
        except ValueError as e:
            raise FileParseError(f"Could not read workbook: {e}", cause=e)
        except Exception as e:
            # Engines raise their own types (zipfile.BadZipFile, xlrd.XLRDError, ...)
            raise FileParseError(f"Could not read workbook: {type(e).__name__}", cause=e)


DEFAULT_LOADERS: Dict[str, SheetLoader] = {
    ".csv": DelimitedTextLoader(",", "csv"),
    ".tsv": DelimitedTextLoader("\t", "tsv"),
    ".txt": DelimitedTextLoader("\t", "tsv"),
    ".xlsx": SpreadsheetLoader("xlsx"),
    ".xls": SpreadsheetLoader("xls"),
}


class FileIngestor:
    """
    Parse uploaded bytes into a ``ParsedSheet``.

    Example:
        >>> sheet = FileIngestor().parse(b"Name,DOB\\nJohn,01/15/1990", "export.csv")
        >>> sheet.headers
        ['Name', 'DOB']
    """

    def __init__(
        self,
        title_row_predicate: TitleRowPredicate = is_report_banner_row,
        loaders: Optional[Dict[str, SheetLoader]] = None,
    ):
        self.title_row_predicate = title_row_predicate
        self.loaders = dict(loaders or DEFAULT_LOADERS)

    @property
    def supported_extensions(self) -> List[str]:
        return sorted(self.loaders)

    def loader_for(self, filename: str) -> SheetLoader:
        extension = PurePath(filename or "").suffix.lower()
        loader = self.loaders.get(extension)
        if loader is None:
            raise UnsupportedFileFormatError(
                f"Unsupported file type '{extension or filename}'. "
                f"Supported: {', '.join(self.supported_extensions)}",
                details={"filename": filename},
            )
        return loader

    def parse(self, content: bytes, filename: str) -> ParsedSheet:
        """
        Parse file bytes.

        Raises:
            UnsupportedFileFormatError: extension not recognized
            EmptyFileError: nothing but blank rows
            NoDataRowsError: a header row but no data below it
        """
        loader = self.loader_for(filename)

        if not content or not content.strip():
            raise EmptyFileError("File is empty", details={"filename": filename})

        raw_rows = loader.load_rows(content)
        if not raw_rows:
            raise EmptyFileError("File contains no rows", details={"filename": filename})

        warnings: List[str] = []
        header_position = 0
        if self.title_row_predicate(raw_rows[0][1]):
            banner = next((c for c in raw_rows[0][1] if c), "")
            warnings.append(
                f"Line {raw_rows[0][0]} looked like a report title and was skipped ('{banner}'); "
                f"headers were read from line {raw_rows[1][0] if len(raw_rows) > 1 else raw_rows[0][0] + 1}"
            )
            logger.info(f"[INGEST] Skipping title row in {filename}: {banner!r}")
            header_position = 1

        if header_position >= len(raw_rows):
            raise NoDataRowsError("File has a title row but no header row", details={"filename": filename})

        header_line, header_cells = raw_rows[header_position]
        headers = [cell or "" for cell in header_cells]
        data_rows = raw_rows[header_position + 1:]
        if not data_rows:
            raise NoDataRowsError("File has headers but no data rows", details={"filename": filename})

        rows: List[Dict[str, Optional[str]]] = []
        line_numbers: List[int] = []
        for line_number, cells in data_rows:
            record: Dict[str, Optional[str]] = {}
            for position, header in enumerate(headers):
                if not header:
                    continue
                record[header] = cells[position] if position < len(cells) else None
            rows.append(record)
            line_numbers.append(line_number)

        logger.info(
            f"[INGEST] Parsed {filename}: {len(rows)} rows, {len([h for h in headers if h])} columns "
            f"({loader.source_format})"
        )

        return ParsedSheet(
            headers=[h for h in headers if h],
            rows=rows,
            data_start_line=header_line + 1,
            source_format=loader.source_format,
            file_name=filename,
            line_numbers=line_numbers,
            warnings=warnings,
        )


def validate_required_columns(headers: Sequence[str], required: Sequence[str]) -> ColumnCheck:
    """Case-insensitive check that every required header is present."""
    present = {h.strip().lower() for h in headers if h}
    missing = [col for col in required if col.strip().lower() not in present]
    return ColumnCheck(valid=not missing, missing=missing)
