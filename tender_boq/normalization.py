"""
normalization.py — Tabular documents to model-ready text.

Workbooks and CSV files are rendered as pipe-delimited tables, one block
per sheet:

    === Sheet: Civil Works ===
    Rows: 2, Columns: 3

    Item | Description | Qty
    --- | --- | ---
    1.1 | Excavation | 120
    1.2 | Backfill | 80

Keeping the header row next to every block matters more than it looks.
When tables were flattened to plain text the model started assigning the
unit from one row to the item of another. With the header repeated per
sheet and one record per line, column/value relationships survive.

Sheets without data render "(empty)" instead of disappearing, so a
reviewer comparing the extraction against extracted_text can see that a
sheet existed and was blank.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List

from tender_boq.schemas import DocumentFormat, SheetData, TabularDocument

logger = logging.getLogger(__name__)

COLUMN_SEPARATOR = " | "
EMPTY_MARKER = "(empty)"

# Header names seen in real BOQ sheets. Regex rather than exact match
# because nobody agrees on "Qty" vs "Quantity" vs "Qty.", or "Item No" vs
# "S. No." vs "Sr. No.". Order matters: first pattern to match a header
# claims it.
_BOQ_COLUMN_PATTERNS = [
    ("item_number", re.compile(r"(item\s*(no|number|#|code)|s\.?\s*no|sr\.?\s*no|^no\.?$|^item$)", re.IGNORECASE)),
    ("description", re.compile(r"(descr|particular|work\s*item|name)", re.IGNORECASE)),
    ("quantity", re.compile(r"(quantity|qty)", re.IGNORECASE)),
    ("unit", re.compile(r"(unit(?!\s*(rate|price|cost))|uom|measure)", re.IGNORECASE)),
    ("unit_rate", re.compile(r"(rate|unit\s*(price|cost)|price)", re.IGNORECASE)),
    ("amount", re.compile(r"(amount|total|value)", re.IGNORECASE)),
    ("category", re.compile(r"(category|trade|section|division)", re.IGNORECASE)),
]


def to_text(document: TabularDocument) -> str:
    """Render every sheet of a loader result as one text blob."""
    label = "CSV File" if document.format is DocumentFormat.DELIMITED_TEXT else "Sheet"
    blocks = [_render_sheet(sheet, label) for sheet in document.sheets]
    text = "".join(blocks)
    logger.info(
        "Normalized %s: %d sheets -> %d chars",
        document.file_name, len(document.sheets), len(text),
    )
    return text


def _render_sheet(sheet: SheetData, label: str) -> str:
    lines: List[str] = [
        "",
        f"=== {label}: {sheet.name} ===",
        f"Rows: {sheet.row_count}, Columns: {sheet.column_count}",
        "",
    ]

    if not sheet.records:
        lines.append(EMPTY_MARKER)
        return "\n".join(lines) + "\n"

    headers = sheet.headers
    lines.append(COLUMN_SEPARATOR.join(headers))
    lines.append(COLUMN_SEPARATOR.join("---" for _ in headers))
    for record in sheet.records:
        lines.append(COLUMN_SEPARATOR.join(record.get(h, "") for h in headers))

    return "\n".join(lines) + "\n\n"


def map_boq_columns(headers: List[str]) -> Dict[str, int]:
    """
    Map BOQ fields to column indices via pattern matching.

    Returns something like {"item_number": 0, "description": 1, "quantity": 3}.
    Each field claims at most one column (first match wins) and each
    column is claimed by at most one field.
    """
    mapping: Dict[str, int] = {}
    for idx, header in enumerate(headers):
        for field_name, pattern in _BOQ_COLUMN_PATTERNS:
            if field_name not in mapping and pattern.search(header):
                mapping[field_name] = idx
                break
    return mapping


def check_boq_structure(document: TabularDocument) -> List[str]:
    """
    Non-fatal hints about whether this looks like a BOQ at all.

    An empty list means "looks fine". The model can often still make sense
    of an odd layout, so the caller only logs these; nothing is rejected.
    """
    populated = [s for s in document.sheets if s.records]
    if not populated:
        return ["File contains no data rows"]

    for sheet in populated:
        if len(map_boq_columns(sheet.headers)) >= 2:
            return []

    return [
        "File may not be a BOQ document. Expected columns like "
        "Item, Description, Quantity, Unit, Rate, Amount."
    ]
