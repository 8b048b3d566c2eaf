"""
test_normalization.py — Tabular -> text rendering and BOQ column hints.
"""

from __future__ import annotations

from helpers import build_workbook

from tender_boq.ingestion import load_delimited, load_spreadsheet
from tender_boq.normalization import (
    EMPTY_MARKER,
    check_boq_structure,
    map_boq_columns,
    to_text,
)
from tender_boq.schemas import DocumentFormat, SheetData, TabularDocument


def _doc(*sheets: SheetData, fmt: DocumentFormat = DocumentFormat.SPREADSHEET) -> TabularDocument:
    return TabularDocument(file_name="boq.xlsx", format=fmt, sheets=list(sheets))


def test_single_record_renders_header_and_row():
    doc = _doc(SheetData(name="S1", headers=["Item", "Qty"], records=[{"Item": "A", "Qty": "3"}]))
    text = to_text(doc)
    lines = text.splitlines()
    assert "=== Sheet: S1 ===" in lines
    assert "Rows: 1, Columns: 2" in lines
    assert "Item | Qty" in lines
    assert "--- | ---" in lines
    assert "A | 3" in lines
    assert lines.index("Item | Qty") < lines.index("A | 3")
    print("  ✓ test_single_record_renders_header_and_row")


def test_empty_sheet_keeps_its_block():
    doc = _doc(
        SheetData(name="Rates", headers=["Item"], records=[{"Item": "1"}]),
        SheetData(name="Cover"),
    )
    text = to_text(doc)
    assert "=== Sheet: Cover ===" in text
    assert "Rows: 0, Columns: 0" in text
    assert text.count(EMPTY_MARKER) == 1
    assert text.index("=== Sheet: Rates ===") < text.index("=== Sheet: Cover ===")
    print("  ✓ test_empty_sheet_keeps_its_block")


def test_missing_values_render_blank():
    sheet = SheetData(
        name="S1",
        headers=["Item", "Rate", "Unit"],
        records=[{"Item": "2.1", "Unit": "kg"}],
    )
    assert "2.1 |  | kg" in to_text(_doc(sheet))
    print("  ✓ test_missing_values_render_blank")


def test_csv_uses_file_label():
    doc = load_delimited(b"Item,Qty\nA,3\n", "rates.csv")
    text = to_text(doc)
    assert "=== CSV File: rates.csv ===" in text
    assert "A | 3" in text
    print("  ✓ test_csv_uses_file_label")


def test_workbook_round_trip():
    data = build_workbook({
        "Electrical": [
            ["S. No.", "Description of Work", "Unit", "Qty", "Rate", "Amount"],
            ["E1", "LED panel 2x2", "nos", 40, 1250, 50000],
        ],
    })
    text = to_text(load_spreadsheet(data, "elec.xlsx"))
    assert "=== Sheet: Electrical ===" in text
    assert "S. No. | Description of Work | Unit | Qty | Rate | Amount" in text
    assert "E1 | LED panel 2x2 | nos | 40 | 1250 | 50000" in text
    print("  ✓ test_workbook_round_trip")


def test_column_mapping_standard_headers():
    """Common BOQ header variants map to their fields."""
    headers = ["Sr. No.", "Particulars", "Quantity", "UOM", "Unit Rate", "Total Amount"]
    mapping = map_boq_columns(headers)
    assert mapping == {
        "item_number": 0,
        "description": 1,
        "quantity": 2,
        "unit": 3,
        "unit_rate": 4,
        "amount": 5,
    }
    print("  ✓ test_column_mapping_standard_headers")


def test_structure_hints():
    boq = _doc(SheetData(
        name="BOQ",
        headers=["Item No", "Description", "Qty"],
        records=[{"Item No": "1", "Description": "Earthwork", "Qty": "12"}],
    ))
    assert check_boq_structure(boq) == []

    contacts = _doc(SheetData(
        name="Contacts",
        headers=["Email", "Phone"],
        records=[{"Email": "a@b.c", "Phone": "123"}],
    ))
    hints = check_boq_structure(contacts)
    assert len(hints) == 1 and "may not be a BOQ" in hints[0]

    assert check_boq_structure(_doc(SheetData(name="Blank"))) == ["File contains no data rows"]
    print("  ✓ test_structure_hints")
