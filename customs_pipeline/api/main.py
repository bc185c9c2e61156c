"""
FastAPI Web Application for the Customs Classification Pipeline.

Provides:
- HS code classification endpoints (bulk, single, manual override)
- Review queue for flagged classifications
- Declaration submission, status checks and retries
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from ..models.customs import Invoice
from ..models.errors import (
    InvalidStateError,
    NotFoundError,
    SubmissionFailedError,
    SubmissionRecordError,
)
from ..services.pipeline import CustomsPipeline, create_pipeline
from ..utils.config import SUBMISSION_RULES, get_settings
from ..utils.log_config import configure_logging

logger = logging.getLogger(__name__)

settings = get_settings()

# Initialize FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description="HS code classification, review and customs declaration submission",
    version=settings.APP_VERSION
)

# Global pipeline instance
pipeline: Optional[CustomsPipeline] = None


# Request Models
class BulkClassificationRequest(BaseModel):
    """Request model for bulk classification."""
    items: List[Dict[str, Any]]
    persist: bool = True


class DescriptionRequest(BaseModel):
    """Request model carrying one item description."""
    description: str


class ManualClassificationRequest(BaseModel):
    """Request model for a manual HS code override."""
    hs_code: str = Field(..., max_length=10)
    user_id: int


class ApproveRequest(BaseModel):
    """Request model for approving a flagged classification."""
    user_id: int
    comment: Optional[str] = None


class AdjustRequest(BaseModel):
    """Request model for adjusting a classification."""
    user_id: int
    new_hs_code: str = Field(..., max_length=10)
    comment: Optional[str] = None


class SubmissionRequest(BaseModel):
    """Request model for submitting a rendered declaration."""
    declaration_path: str


def _http_error(e: Exception) -> HTTPException:
    """Translate a pipeline error into an HTTP error."""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidStateError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, SubmissionFailedError):
        return HTTPException(status_code=502, detail={
            "message": str(e),
            "api_error": e.api_error,
            "submission_id": e.submission_id,
        })
    if isinstance(e, SubmissionRecordError):
        return HTTPException(status_code=500, detail={
            "message": str(e),
            "delivered_via": e.delivery.method.value if e.delivery else None,
        })
    logger.exception("Unhandled error in request")
    return HTTPException(status_code=500, detail="Internal server error")


async def _check_submittable(invoice_id: int) -> None:
    row = await asyncio.to_thread(pipeline.db.get_invoice, invoice_id)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Invoice with ID {invoice_id} not found")
    invoice = Invoice(**row)
    if invoice.status.value in SUBMISSION_RULES["terminal_invoice_statuses"]:
        raise HTTPException(
            status_code=409,
            detail=f"Invoice {invoice_id} has already been submitted (status '{invoice.status.value}')"
        )
    if invoice.status.value not in SUBMISSION_RULES["submittable_invoice_statuses"]:
        raise HTTPException(
            status_code=400,
            detail=f"Invoice {invoice_id} cannot be submitted from status '{invoice.status.value}'"
        )


# Lifecycle events
@app.on_event("startup")
async def startup_event():
    """Initialize the customs pipeline on startup."""
    global pipeline
    configure_logging(settings)
    pipeline = await create_pipeline(settings)
    logger.info("Customs pipeline ready")


@app.on_event("shutdown")
async def shutdown_event():
    if pipeline is not None:
        await pipeline.close()


# ============== Classification ==============

@app.post("/api/classification/bulk")
async def bulk_classify(request: BulkClassificationRequest):
    """Classify many items; optionally write the codes back onto their lines."""
    try:
        results = await pipeline.bulk.bulk_classify(request.items)
        persisted = await pipeline.classification.persist_results(results) if request.persist else 0
    except Exception as e:
        raise _http_error(e)
    return {"results": results, "persisted": persisted}


@app.post("/api/classification/single")
async def classify_single(request: DescriptionRequest):
    try:
        result = await pipeline.classifier.classify(request.description)
    except Exception as e:
        raise _http_error(e)
    return result


@app.put("/api/classification/manual/{line_id}")
async def manual_classify(line_id: int, request: ManualClassificationRequest):
    """Override an invoice line's HS code by hand."""
    try:
        return await pipeline.classification.manual_classify(line_id, request.hs_code, request.user_id)
    except Exception as e:
        raise _http_error(e)


@app.post("/api/classification/clear-cache")
async def clear_cache(request: DescriptionRequest):
    try:
        cleared = await pipeline.classifier.clear_cache(request.description)
    except Exception as e:
        raise _http_error(e)
    return {"cleared": cleared}


@app.get("/api/classification/history/{line_id}")
async def classification_history(line_id: int):
    try:
        history = await pipeline.classification.get_line_history(line_id)
    except Exception as e:
        raise _http_error(e)
    return {"history": history}


# ============== Reviews ==============

@app.get("/api/reviews/flagged")
async def get_flagged_items(limit: int = 10, offset: int = 0,
                            sort_by: str = "created_at", sort_order: str = "desc"):
    """Get invoice lines waiting for review."""
    try:
        return await pipeline.review.get_flagged_items(limit, offset, sort_by, sort_order)
    except Exception as e:
        raise _http_error(e)


@app.get("/api/reviews/flagged/{line_id}")
async def get_flagged_item(line_id: int):
    try:
        return await pipeline.review.get_flagged_item_by_id(line_id)
    except Exception as e:
        raise _http_error(e)


@app.post("/api/reviews/approve/{line_id}")
async def approve_classification(line_id: int, request: ApproveRequest):
    """Approve the suggested HS code of a flagged line."""
    try:
        return await pipeline.review.approve(line_id, request.user_id, request.comment)
    except Exception as e:
        raise _http_error(e)


@app.post("/api/reviews/adjust/{line_id}")
async def adjust_classification(line_id: int, request: AdjustRequest):
    """Replace a line's HS code."""
    try:
        return await pipeline.review.adjust(line_id, request.new_hs_code, request.user_id, request.comment)
    except Exception as e:
        raise _http_error(e)


@app.get("/api/reviews/stats")
async def review_stats():
    return await pipeline.review.get_review_stats()


@app.get("/api/reviews/history")
async def review_history(limit: int = 10, offset: int = 0):
    try:
        return await pipeline.review.get_review_history(limit, offset)
    except Exception as e:
        raise _http_error(e)


# ============== Submissions ==============

@app.post("/api/submissions/{invoice_id}")
async def submit_declaration(invoice_id: int, request: SubmissionRequest):
    """Submit an invoice's rendered declaration to customs."""
    await _check_submittable(invoice_id)
    try:
        return await pipeline.submissions.submit(invoice_id, request.declaration_path)
    except Exception as e:
        raise _http_error(e)


@app.get("/api/submissions/{invoice_id}")
async def list_submissions(invoice_id: int):
    submissions = await pipeline.submissions.list_submissions(invoice_id)
    return {"submissions": submissions, "count": len(submissions)}


@app.get("/api/submissions/{invoice_id}/{submission_id}/status")
async def submission_status(invoice_id: int, submission_id: int):
    """Refresh a submission's status from customs."""
    submission = await asyncio.to_thread(pipeline.db.get_submission, submission_id)
    if submission is None or submission["invoice_id"] != invoice_id:
        raise HTTPException(
            status_code=404,
            detail=f"Submission with ID {submission_id} not found for invoice {invoice_id}"
        )
    try:
        return await pipeline.reconciler.check_status(submission_id)
    except Exception as e:
        raise _http_error(e)


@app.post("/api/submissions/{invoice_id}/{submission_id}/retry")
async def retry_submission(invoice_id: int, submission_id: int, request: SubmissionRequest):
    """Retry a failed submission."""
    await _check_submittable(invoice_id)
    try:
        return await pipeline.submissions.retry(invoice_id, submission_id, request.declaration_path)
    except Exception as e:
        raise _http_error(e)


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "version": settings.APP_VERSION,
        "cache_available": pipeline.cache.available if pipeline else False
    }
