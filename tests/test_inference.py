import re
import zipfile
from datetime import date, datetime

import openpyxl
import pytest
import xlrd

from app.core.files.exceptions import ReadError
from app.core.files.inference import (
    CSV_MIME,
    XLS_MIME,
    XLSX_MIME,
    Cell,
    CellKind,
    _xls_value,
    classify_cell,
    classify_column,
    coerce_csv_value,
    detect_format,
    header_label,
    infer_columns,
    infer_from_rows,
    parses_as_date,
    sniff_csv_encoding,
    to_cell,
)
from app.core.files.schemas import ColumnType


def _types(columns):
    return [(c.label, c.type.value) for c in columns]


def test_to_cell_tags_values():
    assert to_cell(None).kind is CellKind.empty
    assert to_cell("   ").kind is CellKind.empty
    assert to_cell(36).kind is CellKind.numeric
    assert to_cell(1.5).kind is CellKind.numeric
    assert to_cell(True) == Cell(CellKind.textual, "TRUE")
    assert to_cell(datetime(2020, 1, 15)).kind is CellKind.temporal
    assert to_cell(" Ada ") == Cell(CellKind.textual, "Ada")


def test_classify_cell_precedence():
    assert classify_cell(to_cell(42)) is ColumnType.number
    assert classify_cell(to_cell(date(2020, 1, 15))) is ColumnType.date
    assert classify_cell(to_cell("2020-01-15")) is ColumnType.date
    assert classify_cell(to_cell("15 Jan 2020")) is ColumnType.date
    assert classify_cell(to_cell("Ada")) is None
    assert classify_cell(to_cell(None)) is None


def test_digit_text_is_not_a_date():
    assert classify_cell(Cell(CellKind.textual, "12345")) is None


def test_classify_column_first_evidence_wins():
    cells = [to_cell(None), to_cell("Ada"), to_cell("2021-03-04"), to_cell(7)]
    assert classify_column(cells) is ColumnType.date
    assert classify_column([to_cell(7), to_cell("2021-03-04")]) is ColumnType.number


def test_classify_column_defaults_to_string():
    assert classify_column([]) is ColumnType.string
    assert classify_column([to_cell("Ada"), to_cell("Grace")]) is ColumnType.string


def test_coerce_csv_value():
    assert coerce_csv_value("36") == 36
    assert coerce_csv_value("-2.5") == -2.5
    assert coerce_csv_value("1e3") == 1000.0
    assert coerce_csv_value("") is None
    assert coerce_csv_value("2020-01-15") == "2020-01-15"


def test_header_label_renders_text():
    assert header_label(to_cell(2024.0)) == "2024"
    assert header_label(to_cell(1.5)) == "1.5"
    assert header_label(to_cell("Name")) == "Name"


def test_infer_from_rows_reference_scenario():
    rows = [["Name", "Age", "JoinDate"], ["Ada", 36, "2020-01-15"]]
    columns = infer_from_rows(rows)
    assert _types(columns) == [("Name", "string"), ("Age", "number"), ("JoinDate", "date")]
    assert [c.id for c in columns] == ["col_0", "col_1", "col_2"]


def test_header_without_data_rows_is_string():
    columns = infer_from_rows([["Name", "Age", "JoinDate"]])
    assert {c.type for c in columns} == {ColumnType.string}
    assert len(columns) == 3


def test_empty_sheet_has_no_columns():
    assert infer_from_rows([]) == []
    assert infer_from_rows([[None, None], ["", " "]]) == []


def test_column_without_header_is_skipped():
    rows = [["Name", None, "Score"], ["Ada", 1, 2]]
    columns = infer_from_rows(rows)
    assert [c.id for c in columns] == ["col_0", "col_2"]
    assert _types(columns) == [("Name", "string"), ("Score", "number")]


def test_leading_empty_rows_are_outside_the_range():
    rows = [[None, None], ["Name", "Age"], ["Ada", 36]]
    assert _types(infer_from_rows(rows)) == [("Name", "string"), ("Age", "number")]


def test_only_first_sample_rows_are_inspected():
    rows = [["Value"]] + [["Ada"]] * 5 + [[10]]
    assert infer_from_rows(rows)[0].type is ColumnType.string
    assert infer_from_rows(rows, sample_rows=6)[0].type is ColumnType.number


def test_short_data_rows_count_as_empty():
    rows = [["A", "B"], ["x"], ["y", 3]]
    assert _types(infer_from_rows(rows)) == [("A", "string"), ("B", "number")]


def test_infer_columns_csv(tmp_path):
    path = tmp_path / "people.csv"
    path.write_text("Name,Age,JoinDate\nAda,36,2020-01-15\n", encoding="utf-8")
    columns = infer_columns(str(path), CSV_MIME)
    assert _types(columns) == [("Name", "string"), ("Age", "number"), ("JoinDate", "date")]


def test_infer_columns_is_stable(tmp_path):
    path = tmp_path / "people.csv"
    path.write_text("Name,Age\nAda,36\nGrace,85\n", encoding="utf-8")
    assert infer_columns(str(path), CSV_MIME) == infer_columns(str(path), CSV_MIME)


def test_infer_columns_xlsx(tmp_path):
    path = tmp_path / "people.xlsx"
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.append(["Name", "Age", "Joined", "Notes"])
    ws.append(["Ada", 36, datetime(2020, 1, 15), None])
    ws.append(["Grace", 85, datetime(2019, 6, 1), "2019-06-01"])
    wb.save(path)

    columns = infer_columns(str(path), XLSX_MIME)
    assert _types(columns) == [
        ("Name", "string"), ("Age", "number"), ("Joined", "date"), ("Notes", "date"),
    ]


def test_infer_columns_empty_xlsx(tmp_path):
    path = tmp_path / "empty.xlsx"
    openpyxl.Workbook().save(path)
    assert infer_columns(str(path), XLSX_MIME) == []


def test_detect_format_prefers_magic_bytes(tmp_path):
    path = tmp_path / "export.xls"
    path.write_text("Name,Age\nAda,36\n", encoding="utf-8")
    assert detect_format(str(path), XLS_MIME) == CSV_MIME

    xlsx = tmp_path / "data.csv"
    openpyxl.Workbook().save(xlsx)
    assert detect_format(str(xlsx), CSV_MIME) == XLSX_MIME


def test_corrupt_workbook_raises_read_error(tmp_path):
    path = tmp_path / "broken.xlsx"
    path.write_bytes(b"PK\x03\x04not really a zip archive")
    with pytest.raises(ReadError):
        infer_columns(str(path), XLSX_MIME)


def test_missing_blob_raises_read_error(tmp_path):
    with pytest.raises(ReadError):
        infer_columns(str(tmp_path / "gone.csv"), CSV_MIME)


def test_cp1252_csv_is_read(tmp_path):
    path = tmp_path / "villes.csv"
    path.write_bytes("Name,Ville,Inscrit\nJos\u00e9,Orl\u00e9ans,2021-03-04\n".encode("cp1252"))
    assert sniff_csv_encoding(str(path)) == "cp1252"
    columns = infer_columns(str(path), CSV_MIME)
    assert _types(columns) == [("Name", "string"), ("Ville", "string"), ("Inscrit", "date")]


def test_sniff_csv_encoding(tmp_path):
    path = tmp_path / "people.csv"
    path.write_bytes("\ufeffName\nZo\u00eb\n".encode("utf-8"))
    assert sniff_csv_encoding(str(path)) == "utf-8-sig"
    assert infer_columns(str(path), CSV_MIME)[0].label == "Name"

    # 0x81 is unassigned in cp1252
    path.write_bytes(b"Name\n\x81\xe9\n")
    assert sniff_csv_encoding(str(path)) == "latin-1"


def test_infer_columns_xlsx_with_wrong_stored_dimension(tmp_path):
    path = tmp_path / "people.xlsx"
    wb = openpyxl.Workbook()
    wb.active.append(["Name", "Age", "Joined"])
    wb.active.append(["Ada", 36, datetime(2020, 1, 15)])
    wb.save(path)

    rewritten = tmp_path / "truncated.xlsx"
    with zipfile.ZipFile(path) as src, zipfile.ZipFile(rewritten, "w") as dst:
        for item in src.infolist():
            data = src.read(item.filename)
            if item.filename.startswith("xl/worksheets/"):
                data = re.sub(rb'<dimension ref="[^"]*"\s*/>', b'<dimension ref="A1"/>', data)
            dst.writestr(item, data)

    columns = infer_columns(str(rewritten), XLSX_MIME)
    assert _types(columns) == [("Name", "string"), ("Age", "number"), ("Joined", "date")]


class _FakeSheet:
    def __init__(self, rows):
        self._rows = rows
        self.nrows = len(rows)

    def row(self, index):
        return self._rows[index]


class _FakeBook:
    datemode = 0

    def __init__(self, rows):
        self.nsheets = 1
        self.released = False
        self._sheet = _FakeSheet(rows)

    def sheet_by_index(self, index):
        return self._sheet

    def release_resources(self):
        self.released = True


def test_xls_value_conversions():
    assert _xls_value(xlrd.sheet.Cell(xlrd.XL_CELL_NUMBER, 36.0), 0) == 36
    assert isinstance(_xls_value(xlrd.sheet.Cell(xlrd.XL_CELL_NUMBER, 36.0), 0), int)
    assert _xls_value(xlrd.sheet.Cell(xlrd.XL_CELL_NUMBER, 2.5), 0) == 2.5
    # 43845 is 2020-01-15 in the 1900 date system
    assert _xls_value(xlrd.sheet.Cell(xlrd.XL_CELL_DATE, 43845.0), 0) == datetime(2020, 1, 15)
    assert _xls_value(xlrd.sheet.Cell(xlrd.XL_CELL_BOOLEAN, 1), 0) is True
    assert _xls_value(xlrd.sheet.Cell(xlrd.XL_CELL_TEXT, "Ada"), 0) == "Ada"
    assert _xls_value(xlrd.sheet.Cell(xlrd.XL_CELL_EMPTY, ""), 0) is None


def test_infer_columns_xls(tmp_path, monkeypatch):
    path = tmp_path / "people.xls"
    path.write_bytes(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1" + b"\x00" * 504)
    text, number, when = xlrd.XL_CELL_TEXT, xlrd.XL_CELL_NUMBER, xlrd.XL_CELL_DATE
    book = _FakeBook([
        [xlrd.sheet.Cell(text, "Name"), xlrd.sheet.Cell(text, "Age"), xlrd.sheet.Cell(text, "JoinDate")],
        [xlrd.sheet.Cell(text, "Ada"), xlrd.sheet.Cell(number, 36.0), xlrd.sheet.Cell(when, 43845.0)],
    ])
    opened = []

    def open_workbook(filename, **kwargs):
        opened.append(filename)
        return book

    monkeypatch.setattr(xlrd, "open_workbook", open_workbook)

    columns = infer_columns(str(path), CSV_MIME)
    assert _types(columns) == [("Name", "string"), ("Age", "number"), ("JoinDate", "date")]
    assert opened == [str(path)]
    assert book.released


def test_corrupt_xls_raises_read_error(tmp_path):
    path = tmp_path / "broken.xls"
    path.write_bytes(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1 not a compound document")
    with pytest.raises(ReadError):
        infer_columns(str(path), XLS_MIME)


def test_time_weekday_and_ordinal_text_are_not_dates():
    rows = [["Shift", "Day", "Place", "Joined"], ["10am", "Sunday", "1st", "Jan 2020"]]
    assert _types(infer_from_rows(rows)) == [
        ("Shift", "string"), ("Day", "string"), ("Place", "string"), ("Joined", "date"),
    ]
    assert not parses_as_date("10:30")
    assert parses_as_date("2020-01-15 10:30")
