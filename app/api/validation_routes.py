"""
Validation routes - single checks, bulk uploads and job polling.

NO DICTIONARIES - All requests/responses use Pydantic models.

Auth: Bearer {jwt} or X-API-Key. API-key callers are rate limited per key.
"""

import math
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import AuthContext, get_orchestrator, get_rate_limited_user
from app.api.errors import to_http_exception
from app.api.responses import checks_response, job_response, result_response
from app.config import settings
from app.db.session import get_write_db
from app.exceptions import ValidatorServiceError
from app.models.api import (
    BulkValidationResponse,
    ChecksResponse,
    JobListResponse,
    JobResponse,
    JobType,
    Pagination,
    ResultListResponse,
    ResultStatus,
    SingleValidationRequest,
    SingleValidationResponse,
)
from app.observability import get_logger, log_context
from app.services.email_checker import extract_addresses
from app.services.jobs import JobStore
from app.services.orchestrator import ValidationOrchestrator

logger = get_logger(__name__)
router = APIRouter(prefix="/validate", tags=["validation"])

MAX_UPLOAD_BYTES = 20 * 1024 * 1024


def estimated_seconds(total_emails: int) -> int:
    return max(1, math.ceil(total_emails / settings.estimated_checks_per_second))


@router.post("/single", response_model=SingleValidationResponse)
async def validate_single(
    request: SingleValidationRequest,
    auth: AuthContext = Depends(get_rate_limited_user),
    orchestrator: ValidationOrchestrator = Depends(get_orchestrator),
) -> SingleValidationResponse:
    """
    Check one address synchronously. Debits one unit.

    400 malformed address, 402 insufficient credits, 429 rate limited,
    500 no validation server available (nothing is charged).
    """
    with log_context(user_id=str(auth.user_id)):
        try:
            _, result = await orchestrator.run_single(
                auth.user_id,
                request.email,
                verify_smtp=request.options.verify_smtp,
                api_key_id=auth.api_key_id,
            )
        except ValidatorServiceError as exc:
            raise to_http_exception(exc) from exc

    return SingleValidationResponse(
        email=result.email,
        status=result.status,
        score=result.score or 0,
        checks=(
            checks_response(result.checks) if result.checks is not None else ChecksResponse()
        ),
        response_time_ms=result.response_time_ms or 0,
    )


@router.post("/bulk", response_model=BulkValidationResponse)
async def validate_bulk(
    file: UploadFile = File(...),
    webhook_url: str | None = Form(None, max_length=2048),
    auth: AuthContext = Depends(get_rate_limited_user),
    db: AsyncSession = Depends(get_write_db),
) -> BulkValidationResponse:
    """
    Upload a CSV of addresses. Credits for every extracted address are
    reserved up front; the job is queued for the worker.
    """
    if webhook_url is not None and not webhook_url.startswith(("http://", "https://")):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="webhook_url must be an http(s) URL",
        )

    content = await file.read(MAX_UPLOAD_BYTES + 1)
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File exceeds {MAX_UPLOAD_BYTES // (1024 * 1024)} MB",
        )
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="File must be UTF-8 encoded CSV",
        ) from exc

    extracted = extract_addresses(text)
    if not extracted.emails:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No valid email addresses found in file",
        )

    store = JobStore(db)
    try:
        job = await store.create_job(
            auth.user_id,
            list(extracted.emails),
            JobType.BULK,
            webhook_url=webhook_url or None,
            file_name=file.filename,
            api_key_id=auth.api_key_id,
        )
        job = await store.enqueue(job.job_id)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc

    logger.info(
        "bulk_upload_accepted",
        job_id=str(job.job_id),
        user_id=str(auth.user_id),
        total_emails=job.total_emails,
        skipped_emails=extracted.skipped,
    )
    return BulkValidationResponse(
        job_id=job.job_id,
        total_emails=job.total_emails,
        skipped_emails=extracted.skipped,
        status=job.status,
        estimated_time_seconds=estimated_seconds(job.total_emails),
    )


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    auth: AuthContext = Depends(get_rate_limited_user),
    db: AsyncSession = Depends(get_write_db),
) -> JobListResponse:
    jobs, total = await JobStore(db).list_jobs(auth.user_id, page, limit)
    return JobListResponse(
        jobs=[job_response(job) for job in jobs],
        pagination=Pagination.build(total, page, limit),
    )


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: UUID,
    auth: AuthContext = Depends(get_rate_limited_user),
    db: AsyncSession = Depends(get_write_db),
) -> JobResponse:
    try:
        job = await JobStore(db).get_job(job_id, auth.user_id)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return job_response(job)


@router.get("/jobs/{job_id}/results", response_model=ResultListResponse)
async def list_results(
    job_id: UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    result_status: ResultStatus | None = Query(None, alias="status"),
    auth: AuthContext = Depends(get_rate_limited_user),
    db: AsyncSession = Depends(get_write_db),
) -> ResultListResponse:
    try:
        results, total = await JobStore(db).list_results(
            job_id, auth.user_id, page, limit, result_status
        )
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return ResultListResponse(
        job_id=job_id,
        results=[result_response(result) for result in results],
        pagination=Pagination.build(total, page, limit),
    )


@router.delete("/jobs/{job_id}", response_model=JobResponse)
async def cancel_job(
    job_id: UUID,
    auth: AuthContext = Depends(get_rate_limited_user),
    db: AsyncSession = Depends(get_write_db),
) -> JobResponse:
    """
    Cancel a pending or running job; unconsumed credits are refunded.
    Cancelling a cancelled job returns it unchanged. 409 once completed or failed.
    """
    try:
        job, _ = await JobStore(db).cancel_job(job_id, auth.user_id)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return job_response(job)
