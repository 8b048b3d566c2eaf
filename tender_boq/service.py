"""
service.py — Document service: the upload-to-BOQ orchestrator.

One call to process_tender() runs the whole pipeline synchronously:

    detect format -> load -> normalize (tabular only) -> extract -> persist

and either returns a result or raises one of the errors.py kinds
unchanged. There is no retry and no background work; if the model call
fails, the caller hears about it with the adapter's classification.

Persistence happens only after a successful extraction, in one
transaction: the tender row is created in `processing`, its items are
inserted, and it moves to `completed` or `pending_review`. A failed
extraction leaves nothing behind in the store.

Review transitions (approve / reject / update items) live in review.py;
this class exposes them so callers deal with one object.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Iterable, List, Optional

from sqlalchemy.orm import sessionmaker

from tender_boq.config import Config, config as default_config
from tender_boq.database import create_session_factory
from tender_boq.errors import ResourceNotFoundError
from tender_boq.extraction import BOQExtractor, create_client
from tender_boq.ingestion import (
    Source,
    detect_format,
    load_delimited,
    load_pdf,
    load_spreadsheet,
    validate_file_size,
)
from tender_boq.normalization import check_boq_structure, to_text
from tender_boq.repository import TenderRepository
from tender_boq.review import ReviewWorkflow
from tender_boq.schemas import (
    DocumentFormat,
    ProcessResult,
    ReviewLogView,
    TenderStatus,
    TenderView,
)

logger = logging.getLogger(__name__)


class TenderService:
    """
    End-to-end tender processing plus the record/review operations.

    Usage:
        service = TenderService()
        result = service.process_tender("boq.xlsx", "boq.xlsx", 48213,
                                         "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
                                         requires_review=True)
        service.approve_tender(result.tender_id)

    Build one per process and share it. The extractor's model client and
    the session factory are the only state, and neither is per-request.
    """

    def __init__(
        self,
        extractor: Optional[BOQExtractor] = None,
        session_factory: Optional[sessionmaker] = None,
        config: Optional[Config] = None,
    ):
        self.config = config or default_config
        self.extractor = extractor or BOQExtractor(create_client(self.config.llm))
        self.session_factory = session_factory or create_session_factory(self.config.database)
        self.review = ReviewWorkflow(self.session_factory)

    # ── Pipeline ──────────────────────────────────────────────────────────

    def process_tender(
        self,
        source: Source,
        file_name: str,
        file_size: int,
        mime_type: str,
        instruction: Optional[str] = None,
        requires_review: bool = False,
    ) -> ProcessResult:
        overall_start = time.time()
        logger.info(
            "Processing tender %s (%.2f KB, %s, instructions=%s, review=%s)",
            file_name, file_size / 1024, mime_type, bool(instruction), requires_review,
        )

        # ── Stage 1: Intake checks ───────────────────────────────
        validate_file_size(file_size, self.config.ingestion)
        doc_format = detect_format(mime_type, file_name, self.config.ingestion)

        # ── Stage 2: Load + normalize ────────────────────────────
        t0 = time.time()
        text = self.load_text(source, doc_format, file_name)
        logger.info("  ✓ %s loaded, %d chars in %.1fs", doc_format.value, len(text), time.time() - t0)

        # ── Stage 3: Extraction ──────────────────────────────────
        t0 = time.time()
        extraction = self.extractor.extract(text, instruction)
        logger.info("  ✓ %d items extracted in %.1fs", len(extraction.items), time.time() - t0)

        # ── Stage 4: Persist ─────────────────────────────────────
        final_status = TenderStatus.PENDING_REVIEW if requires_review else TenderStatus.COMPLETED
        with self.session_factory.begin() as session:
            repo = TenderRepository(session)
            tender = repo.create_tender(
                file_name=file_name,
                file_size=file_size,
                mime_type=mime_type,
                extracted_text=text,
                extraction_context=instruction,
            )
            item_count = repo.insert_items(tender.id, extraction.items)
            repo.update_status(tender, final_status)
            tender_id = tender.id

        logger.info(
            "DONE in %.1fs | tender=%s | %d items | status=%s",
            time.time() - overall_start, tender_id, item_count, final_status.value,
        )

        return ProcessResult(
            tender_id=tender_id,
            file_name=file_name,
            status=final_status,
            boq_extraction=extraction,
            item_count=item_count,
            extracted_text=text if requires_review else None,
        )

    def load_text(
        self,
        source: Source,
        doc_format: DocumentFormat,
        file_name: Optional[str] = None,
    ) -> str:
        """
        Loader + normalizer for one format. The result is the only thing
        the extractor ever sees, whatever the upload format was.
        """
        if doc_format is DocumentFormat.PDF:
            return load_pdf(source)

        if doc_format is DocumentFormat.SPREADSHEET:
            document = load_spreadsheet(source, file_name)
        elif doc_format is DocumentFormat.DELIMITED_TEXT:
            document = load_delimited(source, file_name)
        else:
            raise ValueError(f"No loader for format: {doc_format}")

        for hint in check_boq_structure(document):
            logger.warning("Structure check for %s: %s", document.file_name, hint)
        return to_text(document)

    # ── Records ───────────────────────────────────────────────────────────

    def get_tender(self, tender_id: str) -> TenderView:
        with self.session_factory() as session:
            tender = TenderRepository(session).get_tender(tender_id, with_items=True)
            if tender is None:
                raise ResourceNotFoundError("Tender", tender_id)
            return TenderView.model_validate(tender)

    def list_tenders(self, skip: int = 0, take: int = 10) -> List[TenderView]:
        with self.session_factory() as session:
            tenders = TenderRepository(session).list_tenders(max(skip, 0), max(take, 0))
            return [TenderView.model_validate(t) for t in tenders]

    def delete_tender(self, tender_id: str) -> None:
        with self.session_factory.begin() as session:
            repo = TenderRepository(session)
            tender = repo.get_tender(tender_id)
            if tender is None:
                raise ResourceNotFoundError("Tender", tender_id)
            repo.delete_tender(tender)
        logger.info("Tender %s deleted", tender_id)

    def get_review_logs(self, tender_id: str) -> List[ReviewLogView]:
        with self.session_factory() as session:
            repo = TenderRepository(session)
            if repo.get_tender(tender_id) is None:
                raise ResourceNotFoundError("Tender", tender_id)
            return [ReviewLogView.model_validate(entry) for entry in repo.list_logs(tender_id)]

    # ── Review ────────────────────────────────────────────────────────────

    def approve_tender(
        self,
        tender_id: str,
        items: Optional[Iterable[Any]] = None,
        ip_address: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> TenderView:
        return self.review.approve(tender_id, items, ip_address=ip_address, user_id=user_id)

    def reject_tender(
        self,
        tender_id: str,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> TenderView:
        return self.review.reject(tender_id, reason, ip_address=ip_address, user_id=user_id)

    def update_boq_items(
        self,
        tender_id: str,
        items: Optional[Iterable[Any]],
        ip_address: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> TenderView:
        return self.review.update_items(tender_id, items, ip_address=ip_address, user_id=user_id)
