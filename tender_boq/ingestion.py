"""
ingestion.py — Format detection and the three document loaders.

This module handles the messiest part of the pipeline: getting usable
content out of whatever the user uploads. Tenders arrive as text PDFs,
workbooks exported from estimating tools, or CSV dumps from procurement
portals. The loaders turn each of those into one of two shapes:

  - PDF            -> one text block with "--- Page N ---" markers
  - XLSX / CSV     -> a TabularDocument (sheets of header-keyed records)

Tabular output goes through normalization.to_text() before the model
sees it, so the model never has to know which format a tender came in.

Loaders never swallow a failure. Every exception leaves this module as one
of the classes in errors.py, classified as well as we can from the
underlying library's exception type and message. Loaders also never touch
the source file beyond reading it; cleaning up uploads is the caller's job.
"""

from __future__ import annotations

import io
import logging
import warnings
import zipfile
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, List, Optional, Sequence, Union

import openpyxl
import pandas as pd
import pdfplumber
from openpyxl.utils.exceptions import InvalidFileException
from pdfminer.pdfdocument import PDFEncryptionError, PDFPasswordIncorrect
from pdfminer.pdfparser import PDFSyntaxError

from tender_boq.config import IngestionConfig, config
from tender_boq.errors import (
    CorruptFileError,
    EmptyFileError,
    FileSizeLimitError,
    ParsingError,
    PasswordProtectedFileError,
    UnsupportedFileTypeError,
)
from tender_boq.schemas import DocumentFormat, SheetData, TabularDocument

logger = logging.getLogger(__name__)

Source = Union[bytes, bytearray, str, Path]

_EXTENSION_FORMATS = {
    ".pdf": DocumentFormat.PDF,
    ".xlsx": DocumentFormat.SPREADSHEET,
    ".xlsm": DocumentFormat.SPREADSHEET,
    ".xls": DocumentFormat.SPREADSHEET,
    ".csv": DocumentFormat.DELIMITED_TEXT,
}

# Compound-file (OLE2) signature. Legacy .xls workbooks use it, and so do
# password-protected .xlsx files: Office wraps the encrypted zip in an OLE
# container with an "EncryptedPackage" stream.
_OLE_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
_ENCRYPTED_PACKAGE = "EncryptedPackage".encode("utf-16-le")

# Lowercased substrings that mean "this isn't a well-formed PDF". pdfminer
# is not consistent about exception types across versions, so the message
# check backs up the isinstance check.
_PDF_CORRUPTION_HINTS = (
    "invalid pdf",
    "corrupt",
    "damaged",
    "no /root object",
    "is this really a pdf",
    "unexpected eof",
    "startxref",
)
_PDF_ENCRYPTION_HINTS = ("encrypt", "password")


# ── Format detection ──────────────────────────────────────────────────────


def detect_format(
    mime_type: Optional[str],
    file_name: Optional[str] = None,
    ingestion: Optional[IngestionConfig] = None,
) -> DocumentFormat:
    """
    Map a declared media type to exactly one DocumentFormat.

    When the uploader didn't know the type (empty or octet-stream) we fall
    back to the file extension. Anything else is rejected with the list of
    accepted type names so the user knows what to send instead.
    """
    ingestion = ingestion or config.ingestion
    mime = (mime_type or "").split(";")[0].strip().lower()

    if mime in ingestion.pdf_mime_types:
        return DocumentFormat.PDF
    if mime in ingestion.spreadsheet_mime_types:
        return DocumentFormat.SPREADSHEET
    if mime in ingestion.delimited_mime_types:
        return DocumentFormat.DELIMITED_TEXT

    if mime in ingestion.generic_mime_types and file_name:
        suffix = Path(file_name).suffix.lower()
        if suffix in _EXTENSION_FORMATS:
            logger.info("No usable media type for %s, using extension %s", file_name, suffix)
            return _EXTENSION_FORMATS[suffix]

    raise UnsupportedFileTypeError(mime_type or "unknown", ingestion.supported_type_names())


def validate_file_size(file_size: int, ingestion: Optional[IngestionConfig] = None) -> None:
    ingestion = ingestion or config.ingestion
    if file_size > ingestion.max_file_size_bytes:
        raise FileSizeLimitError(file_size, ingestion.max_file_size_bytes)


# ── PDF ───────────────────────────────────────────────────────────────────


def load_pdf(source: Source) -> str:
    """
    Extract text from a PDF, page by page.

    Each page is prefixed with a "--- Page N ---" marker so the model (and
    a human reviewer reading extracted_text) can tell where a BOQ table
    continued onto the next page. Scanned PDFs come back with no text at
    all; we report those as EmptyFileError rather than trying OCR.
    """
    data = _read_bytes(source, "PDF")
    pages: List[str] = []

    try:
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            total = len(pdf.pages)
            logger.info("Opening PDF (%d pages, %d bytes)", total, len(data))
            for idx, page in enumerate(pdf.pages, start=1):
                pages.append(page.extract_text() or "")
    except Exception as exc:
        logger.error("Error loading PDF: %s", exc)
        raise classify_pdf_error(exc) from exc

    if not any(text.strip() for text in pages):
        raise EmptyFileError("PDF", "No text could be extracted from the PDF")

    text = "\n\n".join(
        f"--- Page {idx} ---\n{page_text}" for idx, page_text in enumerate(pages, start=1)
    )
    logger.info("PDF loaded: %d pages, %d chars", len(pages), len(text))
    return text


def classify_pdf_error(exc: BaseException) -> Union[CorruptFileError, ParsingError]:
    """
    Turn whatever pdfplumber/pdfminer raised into one of our kinds.

    pdfplumber wraps pdfminer exceptions (PdfminerException(original)), so
    we walk the wrapped exceptions as well as the top-level one.
    """
    chain = list(_exception_chain(exc))

    if any(isinstance(e, (PDFPasswordIncorrect, PDFEncryptionError)) for e in chain):
        return PasswordProtectedFileError("PDF")

    message = " ".join(str(e) for e in chain).lower()
    if any(hint in message for hint in _PDF_ENCRYPTION_HINTS):
        return PasswordProtectedFileError("PDF")

    if any(isinstance(e, PDFSyntaxError) for e in chain) or any(
        hint in message for hint in _PDF_CORRUPTION_HINTS
    ):
        return CorruptFileError("PDF", "The PDF file appears to be corrupted or damaged")

    return ParsingError("PDF", str(exc) or exc.__class__.__name__)


# ── Spreadsheet ───────────────────────────────────────────────────────────


def load_spreadsheet(source: Source, file_name: Optional[str] = None) -> TabularDocument:
    """
    Read every worksheet of an .xlsx workbook.

    The first row of each sheet is the header row. We open the workbook
    with data_only=True so formula cells give us the value Excel last
    computed, not the formula text. A BOQ "Amount" column is nearly
    always =C4*E4 and the model needs the number.
    """
    data = _read_bytes(source, "Excel")
    name = file_name or _source_name(source)

    if not data:
        raise EmptyFileError("Excel", "The workbook has no content")

    if data.startswith(_OLE_MAGIC):
        if _ENCRYPTED_PACKAGE in data:
            raise PasswordProtectedFileError("Excel")
        raise ParsingError(
            "Excel",
            "Legacy binary .xls workbooks cannot be read",
            suggestion="Re-save the workbook as .xlsx and upload it again",
        )

    try:
        workbook = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (zipfile.BadZipFile, InvalidFileException, KeyError) as exc:
        logger.error("Error opening workbook %s: %s", name, exc)
        raise CorruptFileError("Excel", str(exc)) from exc
    except Exception as exc:
        logger.error("Error opening workbook %s: %s", name, exc)
        raise ParsingError("Excel", str(exc)) from exc

    try:
        sheets = [_read_worksheet(ws) for ws in workbook.worksheets]
    except Exception as exc:
        logger.error("Error reading workbook %s: %s", name, exc)
        raise ParsingError("Excel", str(exc)) from exc
    finally:
        workbook.close()

    if not sheets:
        raise EmptyFileError("Excel", "The workbook contains no sheets")
    if not any(sheet.records for sheet in sheets):
        raise EmptyFileError("Excel", "No sheet contains any data rows")

    document = TabularDocument(file_name=name, format=DocumentFormat.SPREADSHEET, sheets=sheets)
    logger.info(
        "Workbook %s loaded: %d sheets, %d records",
        name, len(sheets), document.record_count,
    )
    return document


def _read_worksheet(ws: Any) -> SheetData:
    rows = ws.iter_rows(values_only=True)
    header_row = next(rows, None)
    if header_row is None:
        return SheetData(name=ws.title)

    raw_headers = [cell_to_str(v) for v in header_row]
    headers = make_headers(raw_headers)
    records = []

    for row in rows:
        values = [cell_to_str(v) for v in row]
        if not any(values):
            continue
        # Data wider than the header row gets synthesized headers too.
        while len(headers) < len(values):
            raw_headers.append("")
            headers = make_headers(raw_headers)
        records.append({headers[i]: values[i] if i < len(values) else "" for i in range(len(headers))})

    headers = _drop_vacant_columns(headers, raw_headers, records)
    records = [{h: r.get(h, "") for h in headers} for r in records]
    return SheetData(name=ws.title, headers=headers, records=records)


def _drop_vacant_columns(
    headers: List[str], raw_headers: List[str], records: List[dict]
) -> List[str]:
    """
    Read-only worksheets pad rows out to the sheet's used range, which
    often includes formatted-but-empty columns. A column with no header
    text and no values anywhere is noise; everything else stays.
    """
    kept = []
    for header, raw in zip(headers, raw_headers):
        if raw or any(r.get(header) for r in records):
            kept.append(header)
    return kept


def cell_to_str(value: Any) -> str:
    """Reduce a cell value to the string a user would see in Excel."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    # Plain strings, ints, and rich-text objects (whose str() is the
    # concatenated display text).
    return str(value).strip()


def make_headers(raw: Sequence[str]) -> List[str]:
    """
    Blank header cells become ColumnN (1-based); duplicates get a numeric
    suffix so no record key silently overwrites another.
    """
    headers: List[str] = []
    seen: dict = {}
    for idx, label in enumerate(raw, start=1):
        label = (label or "").strip() or f"Column{idx}"
        if label in seen:
            seen[label] += 1
            label = f"{label}_{seen[label]}"
        else:
            seen[label] = 1
        headers.append(label)
    return headers


# ── Delimited text ────────────────────────────────────────────────────────


def load_delimited(source: Source, file_name: Optional[str] = None) -> TabularDocument:
    """
    Parse a CSV export with the first row as headers.

    Procurement portals produce some truly ragged CSVs (a trailing comma on
    every third row, a notes column that only some rows fill in). We accept
    those rather than rejecting the whole file: short rows are padded with
    empty strings and surplus fields are dropped.
    """
    data = _read_bytes(source, "CSV")
    name = file_name or _source_name(source)
    text = data.decode("utf-8-sig", errors="replace")

    if not text.strip():
        raise EmptyFileError("CSV", "The file has no content")

    try:
        with warnings.catch_warnings():
            # Surplus fields on ragged rows trigger a ParserWarning each.
            warnings.simplefilter("ignore", pd.errors.ParserWarning)
            frame = pd.read_csv(
                io.StringIO(text),
                header=None,
                dtype=str,
                keep_default_na=False,
                na_filter=False,
                skip_blank_lines=True,
                skipinitialspace=True,
                index_col=False,
                engine="python",
                on_bad_lines=lambda fields: fields,
            )
    except pd.errors.EmptyDataError as exc:
        raise EmptyFileError("CSV", str(exc)) from exc
    except Exception as exc:
        logger.error("Error loading CSV %s: %s", name, exc)
        raise ParsingError("CSV", str(exc)) from exc

    # The header row is read as data so duplicate and blank labels go
    # through make_headers, exactly like a worksheet's first row.
    rows = list(frame.fillna("").itertuples(index=False, name=None))
    if not rows:
        raise EmptyFileError("CSV", "No columns were detected")
    headers = make_headers([str(v) for v in rows[0]])

    records = []
    for row in rows[1:]:
        values = [str(v).strip() for v in row]
        if not any(values):
            continue
        records.append(dict(zip(headers, values)))

    if not records:
        raise EmptyFileError("CSV", "The file has a header row but no data rows")

    logger.info("CSV %s loaded: %d records, %d columns", name, len(records), len(headers))
    return TabularDocument(
        file_name=name,
        format=DocumentFormat.DELIMITED_TEXT,
        sheets=[SheetData(name=name, headers=headers, records=records)],
    )


# ── Internal helpers ──────────────────────────────────────────────────────


def _read_bytes(source: Source, file_type: str) -> bytes:
    if isinstance(source, (bytes, bytearray)):
        return bytes(source)
    path = Path(source)
    try:
        return path.read_bytes()
    except OSError as exc:
        logger.error("Cannot read %s file %s: %s", file_type, path, exc)
        raise ParsingError(
            file_type,
            f"{exc.__class__.__name__}: {exc}",
            suggestion="Check that the path points to a readable file",
        ) from exc


def _source_name(source: Source) -> str:
    if isinstance(source, (bytes, bytearray)):
        return "buffer"
    return Path(source).name


def _exception_chain(exc: BaseException):
    seen = set()
    stack = [exc]
    while stack:
        current = stack.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        stack.extend(a for a in current.args if isinstance(a, BaseException))
        stack.append(current.__cause__)
        stack.append(current.__context__)
