"""
Account routes - usage statistics, result export and account deletion.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import AuthContext, get_current_user, get_session_user
from app.api.errors import to_http_exception
from app.db.models import User
from app.db.session import get_write_db
from app.exceptions import ValidatorServiceError
from app.models.api import UsageDay, UsageStatsResponse
from app.services.auth import AuthService
from app.services.jobs import JobStore

router = APIRouter(prefix="/account", tags=["account"])


@router.get("/usage", response_model=UsageStatsResponse)
async def usage(
    days: int = Query(30, ge=1, le=365),
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> UsageStatsResponse:
    summary = await JobStore(db).usage_summary(auth.user_id, days)
    return UsageStatsResponse(
        days=summary.days,
        total_jobs=summary.total_jobs,
        total_emails_validated=summary.total_emails_validated,
        valid_count=summary.counts.valid,
        invalid_count=summary.counts.invalid,
        catch_all_count=summary.counts.catch_all,
        disposable_count=summary.counts.disposable,
        role_based_count=summary.counts.role_based,
        unknown_count=summary.counts.unknown,
        daily=[
            UsageDay(date=day.date, jobs=day.jobs, emails_validated=day.emails_validated)
            for day in summary.daily
        ],
    )


@router.get("/export/{job_id}")
async def export_results(
    job_id: UUID,
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> Response:
    """Checked results of one job as a CSV download."""
    try:
        content = await JobStore(db).export_results_csv(job_id, auth.user_id)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="results-{job_id}.csv"'},
    )


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
async def delete_account(
    user: User = Depends(get_session_user),
    db: AsyncSession = Depends(get_write_db),
) -> None:
    """Delete the account with its keys, jobs, results, orders and transactions."""
    try:
        await AuthService(db).delete_account(user.id)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
