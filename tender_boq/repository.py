"""
repository.py — Record-store operations on one SQLAlchemy session.

The repository never commits. Callers open a transaction
(`with session_factory.begin() as session`) and everything they do
through the repository inside that block lands atomically or not at all.
That is what makes "replace the item set and append the audit entry" a
single unit.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, selectinload

from tender_boq.database import BOQItemRecord, ReviewLog, Tender
from tender_boq.schemas import BOQItem, ReviewAction, TenderStatus

logger = logging.getLogger(__name__)


class TenderRepository:
    """Tender, BOQ item and review log persistence."""

    def __init__(self, session: Session):
        self.session = session

    # ── Tenders ───────────────────────────────────────────────────────────

    def create_tender(
        self,
        file_name: str,
        file_size: int,
        mime_type: str,
        extracted_text: str,
        extraction_context: Optional[str] = None,
        status: TenderStatus = TenderStatus.PROCESSING,
    ) -> Tender:
        tender = Tender(
            file_name=file_name,
            file_size=file_size,
            mime_type=mime_type,
            extracted_text=extracted_text,
            extraction_context=extraction_context,
            status=status.value,
        )
        self.session.add(tender)
        self.session.flush()
        return tender

    def get_tender(self, tender_id: str, with_items: bool = False) -> Optional[Tender]:
        stmt = select(Tender).where(Tender.id == tender_id)
        if with_items:
            stmt = stmt.options(selectinload(Tender.items))
        return self.session.scalars(stmt).first()

    def list_tenders(self, skip: int = 0, take: int = 10) -> List[Tender]:
        stmt = (
            select(Tender)
            .options(selectinload(Tender.items))
            .order_by(Tender.created_at.desc())
            .offset(skip)
            .limit(take)
        )
        return list(self.session.scalars(stmt))

    def update_status(self, tender: Tender, status: TenderStatus) -> Tender:
        tender.status = status.value
        self.session.flush()
        return tender

    def delete_tender(self, tender: Tender) -> None:
        # Items and logs go with it (ORM cascade + ON DELETE CASCADE).
        self.session.delete(tender)
        self.session.flush()

    # ── BOQ items ─────────────────────────────────────────────────────────

    def count_items(self, tender_id: str) -> int:
        stmt = select(func.count()).select_from(BOQItemRecord).where(
            BOQItemRecord.tender_id == tender_id
        )
        return self.session.scalar(stmt) or 0

    def insert_items(self, tender_id: str, items: Sequence[BOQItem]) -> int:
        records = [
            BOQItemRecord(
                tender_id=tender_id,
                position=position,
                item_number=item.item_number,
                description=item.description,
                quantity=item.quantity,
                unit=item.unit,
                unit_rate=item.unit_rate,
                amount=item.amount,
                category=item.category,
            )
            for position, item in enumerate(items)
        ]
        self.session.add_all(records)
        self.session.flush()
        return len(records)

    def replace_items(self, tender: Tender, items: Sequence[BOQItem]) -> int:
        """
        Delete every item of the tender, then insert the new set.

        No diffing: when a reviewer deletes row 3 and adds two rows at the
        end, matching old rows to new ones is guesswork. Item identity does
        not survive an edit.
        """
        self.session.execute(
            delete(BOQItemRecord).where(BOQItemRecord.tender_id == tender.id)
        )
        # The bulk delete bypasses the identity map; drop the stale collection.
        self.session.expire(tender, ["items"])
        return self.insert_items(tender.id, items)

    # ── Review log ────────────────────────────────────────────────────────

    def append_log(
        self,
        tender_id: str,
        action: ReviewAction,
        details: Dict[str, Any],
        ip_address: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> ReviewLog:
        entry = ReviewLog(
            tender_id=tender_id,
            action=action.value,
            details=details,
            ip_address=ip_address,
            user_id=user_id,
        )
        self.session.add(entry)
        self.session.flush()
        logger.info("Review log: tender=%s action=%s details=%s", tender_id, action.value, details)
        return entry

    def list_logs(self, tender_id: str) -> List[ReviewLog]:
        stmt = select(ReviewLog).where(ReviewLog.tender_id == tender_id).order_by(ReviewLog.id)
        return list(self.session.scalars(stmt))
