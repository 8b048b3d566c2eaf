"""
test_service.py — Document service and review workflow on in-memory SQLite.

Covers the end-to-end upload path (file bytes -> persisted tender) and
the review state machine:
  - processing lands in completed or pending_review, nothing on failure
  - approve / reject only from pending_review
  - item replacement is all-or-nothing and always audited
  - failed transitions leave no items changed and no log entries
"""

from __future__ import annotations

import pytest

from helpers import XLSX_MIME, FakeClient, build_pdf, build_workbook, make_service, sample_items

from tender_boq.errors import (
    AIExtractionError,
    FileSizeLimitError,
    InputValidationError,
    InvalidStateTransitionError,
    ResourceNotFoundError,
    UnsupportedFileTypeError,
)
from tender_boq.review import NO_REASON, validate_items
from tender_boq.schemas import ReviewAction, TenderStatus

CSV_BYTES = b"Item,Description,Qty,Unit\n1,Excavation,120,m3\n2,Backfill,80,m3\n"


def _process(service, review: bool = True, instruction=None):
    return service.process_tender(
        CSV_BYTES, "boq.csv", len(CSV_BYTES), "text/csv",
        instruction=instruction, requires_review=review,
    )


# ── Processing ────────────────────────────────────────────────────────────


def test_process_without_review_completes():
    service = make_service()
    result = _process(service, review=False)
    assert result.status is TenderStatus.COMPLETED
    assert result.item_count == 3
    assert result.extracted_text is None

    tender = service.get_tender(result.tender_id)
    assert tender.status is TenderStatus.COMPLETED
    assert tender.file_name == "boq.csv"
    assert "=== CSV File: boq.csv ===" in tender.extracted_text
    assert [i.item_number for i in tender.items] == ["1.1", "1.2", "1.3"]
    assert service.get_review_logs(result.tender_id) == []
    print("  ✓ test_process_without_review_completes")


def test_process_with_review_keeps_context_and_text():
    client = FakeClient()
    service = make_service(client)
    result = _process(service, review=True, instruction="Only civil items")
    assert result.status is TenderStatus.PENDING_REVIEW
    assert "Excavation" in result.extracted_text

    tender = service.get_tender(result.tender_id)
    assert tender.extraction_context == "Only civil items"
    assert "Only civil items" in client.prompts[0]
    print("  ✓ test_process_with_review_keeps_context_and_text")


def test_process_each_format():
    service = make_service()
    pdf = build_pdf(["1.1 Excavation 120 m3"])
    xlsx = build_workbook({"BOQ": [["Item", "Description", "Qty"], ["1", "Excavation", 120]]})

    r1 = service.process_tender(pdf, "t.pdf", len(pdf), "application/pdf")
    r2 = service.process_tender(xlsx, "t.xlsx", len(xlsx), XLSX_MIME)
    assert "--- Page 1 ---" in service.get_tender(r1.tender_id).extracted_text
    assert "=== Sheet: BOQ ===" in service.get_tender(r2.tender_id).extracted_text
    print("  ✓ test_process_each_format")


def test_intake_failures_store_nothing():
    service = make_service()
    with pytest.raises(UnsupportedFileTypeError):
        service.process_tender(b"hello", "notes.txt", 5, "text/plain")
    with pytest.raises(FileSizeLimitError):
        service.process_tender(CSV_BYTES, "big.csv", 50 * 1024 * 1024, "text/csv")
    assert service.list_tenders() == []
    print("  ✓ test_intake_failures_store_nothing")


def test_extraction_failure_stores_nothing():
    service = make_service(FakeClient(error=ConnectionError("Connection refused")))
    with pytest.raises(AIExtractionError) as info:
        _process(service)
    assert info.value.status_code == 503
    assert service.list_tenders() == []
    print("  ✓ test_extraction_failure_stores_nothing")


def test_list_and_delete():
    service = make_service()
    first = _process(service)
    second = _process(service)
    assert {t.id for t in service.list_tenders()} == {first.tender_id, second.tender_id}
    assert len(service.list_tenders(skip=0, take=1)) == 1

    service.approve_tender(first.tender_id)
    service.delete_tender(first.tender_id)
    with pytest.raises(ResourceNotFoundError):
        service.get_tender(first.tender_id)
    with pytest.raises(ResourceNotFoundError):
        service.get_review_logs(first.tender_id)
    with pytest.raises(ResourceNotFoundError):
        service.delete_tender(first.tender_id)
    assert [t.id for t in service.list_tenders()] == [second.tender_id]
    print("  ✓ test_list_and_delete")


# ── Approve ───────────────────────────────────────────────────────────────


def test_approve_with_edited_items():
    """Five replacement items -> five stored, an `edited` and an `approved` entry."""
    service = make_service()
    tender_id = _process(service).tender_id

    tender = service.approve_tender(tender_id, sample_items(5), ip_address="10.0.0.7", user_id="qs-lead")
    assert tender.status is TenderStatus.COMPLETED
    assert [i.description for i in tender.items] == [f"Edited item {n}" for n in range(1, 6)]

    logs = service.get_review_logs(tender_id)
    assert [log.action for log in logs] == [ReviewAction.EDITED, ReviewAction.APPROVED]
    assert logs[0].details == {"previousItemCount": 3, "newItemCount": 5}
    assert logs[1].details == {"previousStatus": "pending_review", "itemsEdited": True, "itemCount": 5}
    assert logs[1].ip_address == "10.0.0.7"
    assert logs[1].user_id == "qs-lead"
    print("  ✓ test_approve_with_edited_items")


def test_approve_without_items_keeps_extraction():
    service = make_service()
    tender_id = _process(service).tender_id

    tender = service.approve_tender(tender_id)
    assert tender.status is TenderStatus.COMPLETED
    assert len(tender.items) == 3

    logs = service.get_review_logs(tender_id)
    assert len(logs) == 1
    assert logs[0].details["itemsEdited"] is False
    assert logs[0].details["itemCount"] == 3
    print("  ✓ test_approve_without_items_keeps_extraction")


def test_approve_out_of_terminal_state_is_refused():
    service = make_service()
    tender_id = _process(service, review=False).tender_id

    with pytest.raises(InvalidStateTransitionError) as info:
        service.approve_tender(tender_id, sample_items(2))
    assert info.value.status_code == 409

    tender = service.get_tender(tender_id)
    assert len(tender.items) == 3
    assert service.get_review_logs(tender_id) == []
    print("  ✓ test_approve_out_of_terminal_state_is_refused")


def test_approve_with_invalid_items_changes_nothing():
    service = make_service()
    tender_id = _process(service).tender_id
    bad = sample_items(2)
    bad[1]["quantity"] = 0

    with pytest.raises(InputValidationError) as info:
        service.approve_tender(tender_id, bad)
    assert info.value.details["errors"][0]["index"] == 1

    tender = service.get_tender(tender_id)
    assert tender.status is TenderStatus.PENDING_REVIEW
    assert len(tender.items) == 3
    assert service.get_review_logs(tender_id) == []
    print("  ✓ test_approve_with_invalid_items_changes_nothing")


# ── Reject ────────────────────────────────────────────────────────────────


def test_reject_records_reason():
    service = make_service()
    tender_id = _process(service).tender_id

    tender = service.reject_tender(tender_id, "incomplete data")
    assert tender.status is TenderStatus.REJECTED

    logs = service.get_review_logs(tender_id)
    assert len(logs) == 1
    assert logs[0].action is ReviewAction.REJECTED
    assert logs[0].details == {"previousStatus": "pending_review", "reason": "incomplete data"}

    with pytest.raises(InvalidStateTransitionError):
        service.reject_tender(tender_id, "again")
    with pytest.raises(InvalidStateTransitionError):
        service.approve_tender(tender_id)
    assert len(service.get_review_logs(tender_id)) == 1
    print("  ✓ test_reject_records_reason")


def test_reject_without_reason():
    service = make_service()
    tender_id = _process(service).tender_id
    service.reject_tender(tender_id, "  ")
    assert service.get_review_logs(tender_id)[0].details["reason"] == NO_REASON
    print("  ✓ test_reject_without_reason")


def test_unknown_tender_creates_no_log():
    service = make_service()
    existing = service.get_tender(_process(service).tender_id)
    for action in (
        lambda: service.approve_tender("missing-id", sample_items(5)),
        lambda: service.reject_tender("missing-id", "x"),
        lambda: service.update_boq_items("missing-id", sample_items(1)),
    ):
        with pytest.raises(ResourceNotFoundError) as info:
            action()
        assert info.value.status_code == 404

    for tender in service.list_tenders():
        assert service.get_review_logs(tender.id) == []

    after = service.get_tender(existing.id)
    assert after.status is TenderStatus.PENDING_REVIEW
    assert after.items == existing.items
    assert len(service.list_tenders()) == 1
    print("  ✓ test_unknown_tender_creates_no_log")


# ── Update items ──────────────────────────────────────────────────────────


def test_update_items_twice():
    """Same result both times; each call is logged."""
    service = make_service()
    tender_id = _process(service).tender_id
    items = sample_items(4)

    first = service.update_boq_items(tender_id, items)
    second = service.update_boq_items(tender_id, items)
    assert first.items == second.items
    assert second.status is TenderStatus.PENDING_REVIEW

    logs = service.get_review_logs(tender_id)
    assert [log.action for log in logs] == [ReviewAction.ITEMS_UPDATED, ReviewAction.ITEMS_UPDATED]
    assert logs[0].details == {"oldItemCount": 3, "newItemCount": 4}
    assert logs[1].details == {"oldItemCount": 4, "newItemCount": 4}
    print("  ✓ test_update_items_twice")


def test_update_items_allowed_after_completion():
    service = make_service()
    tender_id = _process(service, review=False).tender_id
    tender = service.update_boq_items(tender_id, [])
    assert tender.status is TenderStatus.COMPLETED
    assert tender.items == []
    print("  ✓ test_update_items_allowed_after_completion")


def test_update_items_requires_array():
    service = make_service()
    tender_id = _process(service).tender_id
    for payload in (None, "not a list", {"itemNumber": "1"}):
        with pytest.raises(InputValidationError) as info:
            service.update_boq_items(tender_id, payload)
        assert info.value.reason == "VALIDATION_ERROR"
    assert service.get_review_logs(tender_id) == []
    print("  ✓ test_update_items_requires_array")


def test_validate_items_accepts_both_spellings():
    items = validate_items([
        {"itemNumber": "1", "description": "A", "quantity": 1, "unit": "m"},
        {"item_number": "2", "description": "B", "quantity": 2, "unit": "m", "unit_rate": 3},
    ])
    assert [i.item_number for i in items] == ["1", "2"]
    assert items[1].unit_rate == 3
    print("  ✓ test_validate_items_accepts_both_spellings")
