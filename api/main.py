from functools import lru_cache
import logging
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tender_boq.config import config
from tender_boq.errors import InputValidationError, NoFileUploadedError, TenderBOQError
from tender_boq.service import TenderService

logger = logging.getLogger(__name__)

app = FastAPI(title="Tender BOQ")
app.add_middleware(CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_methods=["*"], allow_headers=["*"])


@lru_cache(maxsize=1)
def get_service() -> TenderService:
    return TenderService()


def ok(data: Any, status_code: int = 200) -> JSONResponse:
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json", by_alias=True)
    elif isinstance(data, list):
        data = [d.model_dump(mode="json", by_alias=True) for d in data]
    return JSONResponse({"success": True, "data": data}, status_code=status_code)


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@app.exception_handler(TenderBOQError)
async def tender_error_handler(request: Request, exc: TenderBOQError):
    logger.warning("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.reason)
    return JSONResponse({"success": False, "error": exc.to_dict()}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    return await tender_error_handler(request, InputValidationError("Invalid request payload", errors))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        {"success": False, "error": {
            "message": "An unexpected error occurred",
            "reason": "INTERNAL_SERVER_ERROR",
        }},
        status_code=500,
    )


# ── Tenders ───────────────────────────────────────────────────────────────

@app.post("/api/tenders/upload")
async def upload(
    tender: Optional[UploadFile] = File(None),
    context: Optional[str] = Form(None),
    requiresReview: bool = Form(False),
    service: TenderService = Depends(get_service),
):
    if tender is None or not tender.filename:
        raise NoFileUploadedError()
    content = await tender.read()
    result = await run_in_threadpool(
        service.process_tender,
        content,
        file_name=tender.filename,
        file_size=len(content),
        mime_type=tender.content_type or "application/octet-stream",
        instruction=(context or "").strip() or None,
        requires_review=requiresReview,
    )
    return ok(result, status_code=201)


@app.get("/api/tenders")
def list_tenders(skip: int = 0, take: int = 10, service: TenderService = Depends(get_service)):
    tenders = service.list_tenders(skip, take)
    return ok({
        "tenders": [t.model_dump(mode="json", by_alias=True) for t in tenders],
        "pagination": {"skip": skip, "take": take, "count": len(tenders)},
    })


@app.get("/api/tenders/{tender_id}")
def get_tender(tender_id: str, service: TenderService = Depends(get_service)):
    return ok(service.get_tender(tender_id))


@app.delete("/api/tenders/{tender_id}")
def delete_tender(tender_id: str, service: TenderService = Depends(get_service)):
    service.delete_tender(tender_id)
    return ok({"deleted": tender_id})


# ── Review ────────────────────────────────────────────────────────────────

@app.post("/api/tenders/{tender_id}/approve")
def approve(
    tender_id: str,
    request: Request,
    body: Optional[dict] = Body(None),
    service: TenderService = Depends(get_service),
):
    body = body or {}
    tender = service.approve_tender(
        tender_id,
        body.get("items"),
        ip_address=client_ip(request),
        user_id=body.get("userId"),
    )
    return ok(tender)


@app.post("/api/tenders/{tender_id}/reject")
def reject(
    tender_id: str,
    request: Request,
    body: Optional[dict] = Body(None),
    service: TenderService = Depends(get_service),
):
    body = body or {}
    tender = service.reject_tender(
        tender_id,
        body.get("reason"),
        ip_address=client_ip(request),
        user_id=body.get("userId"),
    )
    return ok(tender)


@app.put("/api/tenders/{tender_id}/items")
def update_items(
    tender_id: str,
    request: Request,
    body: Optional[dict] = Body(None),
    service: TenderService = Depends(get_service),
):
    body = body or {}
    tender = service.update_boq_items(
        tender_id,
        body.get("items"),
        ip_address=client_ip(request),
        user_id=body.get("userId"),
    )
    return ok(tender)


@app.get("/api/tenders/{tender_id}/review-logs")
def review_logs(tender_id: str, service: TenderService = Depends(get_service)):
    return ok(service.get_review_logs(tender_id))


@app.get("/api/status")
def status():
    return ok(config.status())
