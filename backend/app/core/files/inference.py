"""Column schema inference for uploaded spreadsheets and CSV files.

The first occupied row of the first sheet is the header row. Each column with a
non-empty header is typed from the data rows right below it: the first numeric
cell makes it ``number``, the first date-like cell makes it ``date``, and a
column with neither in the sample stays ``string``.
"""
import codecs
import csv
import enum
import itertools
import logging
import re
import zipfile
from contextlib import closing
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Iterable, Iterator

import openpyxl
import xlrd
from dateutil import parser as dateparser
from openpyxl.utils.exceptions import InvalidFileException
from xlrd.compdoc import CompDocError

from app.core.files.exceptions import ReadError
from app.core.files.schemas import ColumnRead, ColumnType

logger = logging.getLogger(__name__)

XLS_MIME = "application/vnd.ms-excel"
XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
CSV_MIME = "text/csv"

_ZIP_MAGIC = b"PK\x03\x04"
_OLE_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"

_INT_RE = re.compile(r"^[+-]?\d+$")
_FLOAT_RE = re.compile(r"^[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?$")

# same day, so month-year text like "Jan 2020" still counts
_DATE_DEFAULTS = (datetime(2000, 1, 1), datetime(2001, 2, 1))
_CSV_ENCODINGS = ("utf-8-sig", "cp1252")
_CSV_SNIFF_BYTES = 64 * 1024

_READ_ERRORS = (
    OSError,
    ValueError,
    KeyError,
    csv.Error,
    zipfile.BadZipFile,
    InvalidFileException,
    xlrd.XLRDError,
    CompDocError,
)


class CellKind(str, enum.Enum):
    numeric = "numeric"
    textual = "textual"
    temporal = "temporal"
    empty = "empty"


@dataclass(frozen=True)
class Cell:
    kind: CellKind
    value: Any = None


EMPTY = Cell(CellKind.empty)


def to_cell(value: Any) -> Cell:
    if value is None:
        return EMPTY
    # bool is an int subclass
    if isinstance(value, bool):
        return Cell(CellKind.textual, str(value).upper())
    if isinstance(value, (int, float)):
        return Cell(CellKind.numeric, value)
    if isinstance(value, (datetime, date, time)):
        return Cell(CellKind.temporal, value)
    text = str(value).strip()
    if not text:
        return EMPTY
    return Cell(CellKind.textual, text)


def parses_as_date(text: str) -> bool:
    """True when the text names a calendar date on its own.

    dateutil fills missing fields from ``default``, so the text is parsed against two
    defaults that differ in year and month. A time, a weekday or a bare ordinal borrows
    its date from the default and comes out different.
    """
    if _FLOAT_RE.match(text):
        return False
    try:
        first, second = (dateparser.parse(text, default=d).date() for d in _DATE_DEFAULTS)
    except (ValueError, OverflowError):
        return False
    return first == second


def classify_cell(cell: Cell) -> ColumnType | None:
    """Type evidence from a single cell, or None when the cell proves nothing."""
    if cell.kind is CellKind.numeric:
        return ColumnType.number
    if cell.kind is CellKind.temporal:
        return ColumnType.date
    if cell.kind is CellKind.textual and parses_as_date(cell.value):
        return ColumnType.date
    return None


def classify_column(cells: Iterable[Cell]) -> ColumnType:
    for cell in cells:
        evidence = classify_cell(cell)
        if evidence is not None:
            return evidence
    return ColumnType.string


def header_label(cell: Cell) -> str:
    value = cell.value
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return str(value)


# ── Readers ──────────────────────────────────────────────────────────────────

def coerce_csv_value(raw: str) -> Any:
    text = raw.strip()
    if not text:
        return None
    if _INT_RE.match(text):
        return int(text)
    if _FLOAT_RE.match(text):
        return float(text)
    return text


def sniff_csv_encoding(path: str) -> str:
    """UTF-8 (BOM optional) when the head of the file decodes as such, else cp1252, else latin-1."""
    with open(path, "rb") as fh:
        head = fh.read(_CSV_SNIFF_BYTES)
    for encoding in _CSV_ENCODINGS:
        # a multi-byte sequence cut at the sniff boundary is not an error
        decoder = codecs.getincrementaldecoder(encoding)()
        try:
            decoder.decode(head, final=False)
        except UnicodeDecodeError:
            continue
        return encoding
    return "latin-1"


def _iter_csv(path: str) -> Iterator[list[Any]]:
    encoding = sniff_csv_encoding(path)
    with open(path, newline="", encoding=encoding) as fh:
        for row in csv.reader(fh):
            yield [coerce_csv_value(v) for v in row]


def _iter_xlsx(path: str) -> Iterator[list[Any]]:
    # openpyxl rejects paths without an .xlsx suffix, file objects are not checked
    with open(path, "rb") as fh:
        wb = openpyxl.load_workbook(fh, read_only=True, data_only=True)
        try:
            if not wb.worksheets:
                return
            sheet = wb.worksheets[0]
            # stored <dimension> may be wrong
            sheet.reset_dimensions()
            for row in sheet.iter_rows(values_only=True):
                yield list(row)
        finally:
            wb.close()


def _xls_value(cell: xlrd.sheet.Cell, datemode: int) -> Any:
    if cell.ctype == xlrd.XL_CELL_NUMBER:
        return int(cell.value) if float(cell.value).is_integer() else cell.value
    if cell.ctype == xlrd.XL_CELL_DATE:
        return xlrd.xldate.xldate_as_datetime(cell.value, datemode)
    if cell.ctype == xlrd.XL_CELL_BOOLEAN:
        return bool(cell.value)
    if cell.ctype == xlrd.XL_CELL_TEXT:
        return cell.value
    return None


def _iter_xls(path: str) -> Iterator[list[Any]]:
    book = xlrd.open_workbook(path, on_demand=True)
    try:
        if book.nsheets == 0:
            return
        sheet = book.sheet_by_index(0)
        for r in range(sheet.nrows):
            yield [_xls_value(c, book.datemode) for c in sheet.row(r)]
    finally:
        book.release_resources()


def detect_format(path: str, content_kind: str) -> str:
    """Pick a reader from the file's magic bytes, falling back to the declared type."""
    with open(path, "rb") as fh:
        head = fh.read(8)
    if head.startswith(_ZIP_MAGIC):
        return XLSX_MIME
    if head.startswith(_OLE_MAGIC):
        return XLS_MIME
    if content_kind in (XLSX_MIME, XLS_MIME) and head:
        # declared spreadsheet without a spreadsheet signature, most often a CSV renamed
        return CSV_MIME
    return content_kind


def iter_rows(path: str, content_kind: str) -> Iterator[list[Any]]:
    fmt = detect_format(path, content_kind)
    if fmt == XLSX_MIME:
        return _iter_xlsx(path)
    if fmt == XLS_MIME:
        return _iter_xls(path)
    return _iter_csv(path)


# ── Inference ────────────────────────────────────────────────────────────────

def _occupied(row: list[Any]) -> bool:
    return any(to_cell(v).kind is not CellKind.empty for v in row)


def infer_from_rows(rows: Iterable[list[Any]], sample_rows: int = 5) -> list[ColumnRead]:
    rows = iter(rows)
    header = next((r for r in rows if _occupied(r)), None)
    if header is None:
        return []
    sample = [[to_cell(v) for v in r] for r in itertools.islice(rows, sample_rows)]

    columns: list[ColumnRead] = []
    for index, raw in enumerate(header):
        head = to_cell(raw)
        if head.kind is CellKind.empty:
            logger.debug("No header found for column %d", index)
            continue
        cells = (r[index] if index < len(r) else EMPTY for r in sample)
        columns.append(ColumnRead(id=f"col_{index}", label=header_label(head), type=classify_column(cells)))
    return columns


def infer_columns(path: str, content_kind: str, sample_rows: int = 5) -> list[ColumnRead]:
    try:
        with closing(iter_rows(path, content_kind)) as rows:
            return infer_from_rows(rows, sample_rows)
    except _READ_ERRORS as exc:
        logger.warning("Could not read %s as tabular data: %s", path, exc)
        raise ReadError(str(exc) or exc.__class__.__name__) from exc
