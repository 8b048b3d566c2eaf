"""
main.py — Command-line entry point.

Handy for batch-processing a folder of tenders from a shell script and
for reviewing extractions without the dashboard:

    tender-boq process "BOQ - Block A.xlsx" --review
    tender-boq show 3f1c...
    tender-boq approve 3f1c... --items edited_items.json
    tender-boq reject 3f1c... --reason "incomplete data"
    tender-boq logs 3f1c...

Output is JSON on stdout (camelCase, like the HTTP API); logs go to stderr.
"""

from __future__ import annotations

import argparse
import json
import logging
import mimetypes
import sys
from pathlib import Path
from typing import Any, List, Optional

from tender_boq.config import config
from tender_boq.errors import InputValidationError, TenderBOQError

logger = logging.getLogger("tender_boq")

# mimetypes doesn't know .xlsx/.csv on every platform.
_EXTENSION_MIME_TYPES = {
    ".pdf": "application/pdf",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".xls": "application/vnd.ms-excel",
    ".csv": "text/csv",
}


def guess_mime_type(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in _EXTENSION_MIME_TYPES:
        return _EXTENSION_MIME_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tender-boq",
        description="Extract a Bill of Quantities from tender documents (PDF, XLSX, CSV) and review it",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    process = sub.add_parser("process", help="Extract a BOQ from a document")
    process.add_argument("file", help="Path to the tender document")
    process.add_argument("--instruction", "-i", default=None, help="Extra extraction instructions")
    process.add_argument("--review", action="store_true", help="Hold the result for review")
    process.add_argument("--mime", default=None, help="Override the detected media type")

    listing = sub.add_parser("list", help="List tenders, newest first")
    listing.add_argument("--skip", type=int, default=0)
    listing.add_argument("--take", type=int, default=10)

    show = sub.add_parser("show", help="Show one tender with its items")
    show.add_argument("tender_id")

    approve = sub.add_parser("approve", help="Approve a tender pending review")
    approve.add_argument("tender_id")
    approve.add_argument("--items", default=None, help="JSON file with a replacement item list")
    approve.add_argument("--user", default=None, help="Reviewer identifier for the audit log")

    reject = sub.add_parser("reject", help="Reject a tender pending review")
    reject.add_argument("tender_id")
    reject.add_argument("--reason", default=None)
    reject.add_argument("--user", default=None, help="Reviewer identifier for the audit log")

    items = sub.add_parser("update-items", help="Replace a tender's BOQ items")
    items.add_argument("tender_id")
    items.add_argument("items", help="JSON file with the replacement item list")
    items.add_argument("--user", default=None, help="Reviewer identifier for the audit log")

    logs = sub.add_parser("logs", help="Show a tender's review log")
    logs.add_argument("tender_id")

    delete = sub.add_parser("delete", help="Delete a tender with its items and log")
    delete.add_argument("tender_id")

    sub.add_parser("status", help="Show configuration status")
    return parser


def _load_items(path: Optional[str]) -> Optional[List[Any]]:
    if path is None:
        return None
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise InputValidationError(f"Cannot read items file {path}: {exc}") from exc
    # Accept either a bare list or {"items": [...]}, as the API does.
    if isinstance(data, dict):
        return data.get("items")
    return data


def _emit(payload: Any) -> None:
    if hasattr(payload, "model_dump"):
        payload = payload.model_dump(mode="json", by_alias=True)
    elif isinstance(payload, list):
        payload = [p.model_dump(mode="json", by_alias=True) for p in payload]
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def run(args: argparse.Namespace) -> None:
    if args.command == "status":
        _emit(config.status())
        return

    # Deferred so `status` and `--help` work without a database or model.
    from tender_boq.service import TenderService

    service = TenderService()

    if args.command == "process":
        path = Path(args.file)
        result = service.process_tender(
            path,
            file_name=path.name,
            file_size=path.stat().st_size if path.is_file() else 0,
            mime_type=args.mime or guess_mime_type(path),
            instruction=args.instruction,
            requires_review=args.review,
        )
        _emit(result)
    elif args.command == "list":
        _emit(service.list_tenders(args.skip, args.take))
    elif args.command == "show":
        _emit(service.get_tender(args.tender_id))
    elif args.command == "approve":
        _emit(service.approve_tender(args.tender_id, _load_items(args.items), user_id=args.user))
    elif args.command == "reject":
        _emit(service.reject_tender(args.tender_id, args.reason, user_id=args.user))
    elif args.command == "update-items":
        _emit(service.update_boq_items(args.tender_id, _load_items(args.items), user_id=args.user))
    elif args.command == "logs":
        _emit(service.get_review_logs(args.tender_id))
    elif args.command == "delete":
        service.delete_tender(args.tender_id)
        _emit({"deleted": args.tender_id})


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    try:
        run(args)
    except TenderBOQError as exc:
        logger.error("%s [%s]", exc.message, exc.reason)
        if exc.suggestion:
            logger.error("Suggestion: %s", exc.suggestion)
        sys.exit(1)


if __name__ == "__main__":
    main()
