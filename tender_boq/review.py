"""
review.py — The review state machine.

    processing ──► completed                  (requires_review=False)
        │
        └────────► pending_review ──approve──► completed
                        │    ▲
                        │    └─update_items─┘ (status unchanged)
                        └────────reject─────► rejected

`completed` and `rejected` are terminal: approve/reject out of them is an
InvalidStateTransitionError. update_items only swaps the item set and is
allowed in any state.

Every transition runs in a single transaction and checks everything it
needs (tender exists, payload is valid, transition is allowed) before the
first write. A failed transition therefore leaves no item changes and no
log entry behind. A successful one appends exactly one log entry, plus
an `edited` entry when approve also replaced the items.

Nothing here serializes concurrent transitions on the same tender; two
simultaneous approvals are resolved by the database, not by this module.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional

from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker

from tender_boq.database import Tender
from tender_boq.errors import (
    InputValidationError,
    InvalidStateTransitionError,
    ResourceNotFoundError,
)
from tender_boq.repository import TenderRepository
from tender_boq.schemas import BOQItem, ReviewAction, TenderStatus, TenderView

logger = logging.getLogger(__name__)

NO_REASON = "No reason provided"


def validate_items(items: Optional[Iterable[Any]]) -> List[BOQItem]:
    """
    Caller-supplied item payload -> BOQItems, or InputValidationError.

    Accepts BOQItem instances or dicts in either camelCase or snake_case.
    All errors are collected so the reviewer sees every bad row at once.
    """
    if items is None or isinstance(items, (str, bytes, dict)):
        raise InputValidationError("Items array is required")

    validated: List[BOQItem] = []
    errors = []
    for index, item in enumerate(items):
        if isinstance(item, BOQItem):
            validated.append(item)
            continue
        try:
            validated.append(BOQItem.model_validate(item))
        except ValidationError as exc:
            for err in exc.errors():
                errors.append({
                    "index": index,
                    "loc": [str(part) for part in err["loc"]],
                    "msg": err["msg"],
                })

    if errors:
        raise InputValidationError(f"{len(errors)} invalid BOQ item field(s)", errors)
    return validated


class ReviewWorkflow:
    """Approve / reject / update-items transitions with audit logging."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def approve(
        self,
        tender_id: str,
        items: Optional[Iterable[Any]] = None,
        ip_address: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> TenderView:
        with self._session_factory.begin() as session:
            repo = TenderRepository(session)
            tender = _require_tender(repo, tender_id)
            replacement = validate_items(items) if items is not None else None
            _require_pending(tender, "approve")

            previous_status = tender.status
            if replacement is not None:
                old_count = repo.count_items(tender.id)
                repo.replace_items(tender, replacement)
                repo.append_log(
                    tender.id,
                    ReviewAction.EDITED,
                    {"previousItemCount": old_count, "newItemCount": len(replacement)},
                    ip_address=ip_address,
                    user_id=user_id,
                )

            repo.update_status(tender, TenderStatus.COMPLETED)
            repo.append_log(
                tender.id,
                ReviewAction.APPROVED,
                {
                    "previousStatus": previous_status,
                    "itemsEdited": replacement is not None,
                    "itemCount": repo.count_items(tender.id),
                },
                ip_address=ip_address,
                user_id=user_id,
            )
            logger.info("Tender %s approved (items edited: %s)", tender.id, replacement is not None)
            return TenderView.model_validate(tender)

    def reject(
        self,
        tender_id: str,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> TenderView:
        with self._session_factory.begin() as session:
            repo = TenderRepository(session)
            tender = _require_tender(repo, tender_id)
            _require_pending(tender, "reject")

            previous_status = tender.status
            repo.update_status(tender, TenderStatus.REJECTED)
            repo.append_log(
                tender.id,
                ReviewAction.REJECTED,
                {
                    "previousStatus": previous_status,
                    "reason": (reason or "").strip() or NO_REASON,
                },
                ip_address=ip_address,
                user_id=user_id,
            )
            logger.info("Tender %s rejected", tender.id)
            return TenderView.model_validate(tender)

    def update_items(
        self,
        tender_id: str,
        items: Optional[Iterable[Any]],
        ip_address: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> TenderView:
        with self._session_factory.begin() as session:
            repo = TenderRepository(session)
            tender = _require_tender(repo, tender_id)
            replacement = validate_items(items)

            old_count = repo.count_items(tender.id)
            new_count = repo.replace_items(tender, replacement)
            repo.append_log(
                tender.id,
                ReviewAction.ITEMS_UPDATED,
                {"oldItemCount": old_count, "newItemCount": new_count},
                ip_address=ip_address,
                user_id=user_id,
            )
            logger.info("Tender %s items replaced: %d -> %d", tender.id, old_count, new_count)
            return TenderView.model_validate(tender)


def _require_tender(repo: TenderRepository, tender_id: str) -> Tender:
    tender = repo.get_tender(tender_id)
    if tender is None:
        logger.warning("Review action on unknown tender %s", tender_id)
        raise ResourceNotFoundError("Tender", tender_id)
    return tender


def _require_pending(tender: Tender, action: str) -> None:
    if tender.status != TenderStatus.PENDING_REVIEW.value:
        logger.warning(
            "Refusing to %s tender %s in status %s", action, tender.id, tender.status
        )
        raise InvalidStateTransitionError(tender.id, tender.status, action)
