"""
helpers.py — Shared fixtures for the test suite.

Everything here is generated in memory: workbooks via openpyxl, PDFs by
hand (a few objects and a correct xref table), and a fake model client
that returns canned JSON. No test needs a network, an API key or a
dataset folder.
"""

from __future__ import annotations

import io
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import openpyxl

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tender_boq.config import Config, DatabaseConfig
from tender_boq.database import create_session_factory
from tender_boq.extraction import BOQExtractor, LLMClient
from tender_boq.service import TenderService

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def sample_extraction(item_count: int = 3) -> Dict[str, Any]:
    """A model response in the camelCase wire format."""
    return {
        "projectName": "Riverside Clinic Extension",
        "projectLocation": "Pune",
        "items": [
            {
                "itemNumber": f"1.{i}",
                "description": f"Work item {i}",
                "quantity": 10 * i,
                "unit": "m3",
                "unitRate": 45.5,
                "amount": 455.0 * i,
                "category": "Civil",
            }
            for i in range(1, item_count + 1)
        ],
        "totalEstimatedCost": 455.0 * sum(range(1, item_count + 1)),
        "currency": "INR",
        "extractionDate": "2026-03-01",
    }


def sample_items(count: int) -> List[Dict[str, Any]]:
    return [
        {"itemNumber": str(i), "description": f"Edited item {i}", "quantity": i, "unit": "nos"}
        for i in range(1, count + 1)
    ]


class FakeClient(LLMClient):
    """Returns a canned response (or raises) and records every prompt."""

    name = "fake"

    def __init__(self, response: Any = None, error: Optional[BaseException] = None):
        if response is None:
            response = sample_extraction()
        self.response = response if isinstance(response, str) else json.dumps(response)
        self.error = error
        self.prompts: List[str] = []

    def complete(self, prompt: str, schema: Dict[str, Any]) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.response


def make_service(client: Optional[FakeClient] = None) -> TenderService:
    """A service on a fresh in-memory database with a fake model."""
    cfg = Config(database=DatabaseConfig(url="sqlite://"))
    return TenderService(
        extractor=BOQExtractor(client or FakeClient()),
        session_factory=create_session_factory(cfg.database),
        config=cfg,
    )


def build_workbook(sheets: Dict[str, Sequence[Sequence[Any]]]) -> bytes:
    """{sheet name: rows} -> .xlsx bytes. An empty row list gives an empty sheet."""
    wb = openpyxl.Workbook()
    wb.remove(wb.active)
    for name, rows in sheets.items():
        ws = wb.create_sheet(title=name)
        for row in rows:
            ws.append(list(row))
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def build_pdf(pages: Sequence[Optional[str]]) -> bytes:
    """
    Minimal PDF, one page per entry. A string becomes a Helvetica text
    line on that page; None gives a page with no content stream at all.
    """
    objects: List[bytes] = []
    page_count = len(pages)
    font_num = 3 + 2 * page_count
    kids = " ".join(f"{3 + 2 * i} 0 R" for i in range(page_count))

    objects.append(b"<< /Type /Catalog /Pages 2 0 R >>")
    objects.append(f"<< /Type /Pages /Kids [{kids}] /Count {page_count} >>".encode())
    for i, text in enumerate(pages):
        page_num = 3 + 2 * i
        content_num = page_num + 1
        resources = f"/Resources << /Font << /F1 {font_num} 0 R >> >>"
        if text is None:
            page = f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] {resources} >>"
            stream = b""
        else:
            page = (
                f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] {resources} "
                f"/Contents {content_num} 0 R >>"
            )
            escaped = text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
            stream = f"BT /F1 12 Tf 72 720 Td ({escaped}) Tj ET".encode("latin-1")
        objects.append(page.encode())
        objects.append(
            b"<< /Length " + str(len(stream)).encode() + b" >>\nstream\n" + stream + b"\nendstream"
        )
    objects.append(b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>")

    out = io.BytesIO()
    out.write(b"%PDF-1.4\n")
    offsets = []
    for num, body in enumerate(objects, start=1):
        offsets.append(out.tell())
        out.write(f"{num} 0 obj\n".encode() + body + b"\nendobj\n")

    xref_at = out.tell()
    out.write(f"xref\n0 {len(objects) + 1}\n".encode())
    out.write(b"0000000000 65535 f \n")
    for offset in offsets:
        out.write(f"{offset:010d} 00000 n \n".encode())
    out.write(
        f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref_at}\n%%EOF\n".encode()
    )
    return out.getvalue()
