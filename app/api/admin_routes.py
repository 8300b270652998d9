"""
Admin API routes for managing users, credits, jobs, pricing and servers.

Protected by JWT authentication; every route requires the admin role.
Mutating routes write exactly one activity log entry through the service
they call.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_actor, invalidate_server_pool, require_admin
from app.api.errors import to_http_exception
from app.api.responses import (
    api_key_fields,
    coupon_response,
    job_fields,
    plan_info,
    plan_response,
    server_response,
    transaction_fields,
)
from app.config import settings
from app.db.models import AdminActivityLog, User
from app.db.session import get_write_db
from app.exceptions import ValidatorServiceError
from app.models.api import (
    ActivityListResponse,
    ActivityLogResponse,
    AdminAPIKeyListResponse,
    AdminAPIKeyResponse,
    AdminJobListResponse,
    AdminJobResponse,
    AdminStatsResponse,
    AdminTransactionListResponse,
    AdminTransactionResponse,
    AdminUserListResponse,
    AdminUserResponse,
    AdminUserUpdateRequest,
    BulkOperationRequest,
    BulkOperationResponse,
    BulkOutcomeResponse,
    CouponCreateRequest,
    CouponResponse,
    CouponUpdateRequest,
    CreditAdjustRequest,
    CreditOperationResponse,
    CreditSetRequest,
    JobResponse,
    JobStatus,
    PasswordResetRequest,
    PlanCreateRequest,
    PlanResponse,
    PlanUpdateRequest,
    PricingConfigResponse,
    ServerCreateRequest,
    ServerHealthRequest,
    ServerResponse,
    ServerTestRequest,
    ServerTestResponse,
    ServerUpdateRequest,
    TransactionType,
    UserRole,
)
from app.models.domain import ActorContext, CreditChange
from app.observability import get_logger
from app.services.admin_override import AdminOverrideService
from app.services.api_key import APIKeyService
from app.services.coupons import CouponService
from app.services.plans import PlanService
from app.services.server_pool import ServerPoolService

logger = get_logger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


# ============================================================================
# Request/Response Models
# ============================================================================


class SeedPlansResponse(BaseModel):
    """Result of seeding the default plan catalog."""

    created: int


def _total_pages(total: int, page_size: int) -> int:
    return (total + page_size - 1) // page_size


def _admin_user(user: User, keys_count: int, jobs_count: int) -> AdminUserResponse:
    return AdminUserResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        role=UserRole(user.role),
        is_active=user.is_active,
        credits=user.plan_credits + user.addon_credits,
        plan=plan_info(user),
        api_keys_count=keys_count,
        jobs_count=jobs_count,
        created_at=user.created_at,
    )


def _credit_operation(change: CreditChange) -> CreditOperationResponse:
    return CreditOperationResponse(
        user_id=change.user_id,
        credits_before=change.credits_before,
        credits_after=change.credits_after,
        transaction_id=change.transaction_id,
    )


def _activity(entry: AdminActivityLog) -> ActivityLogResponse:
    return ActivityLogResponse(
        id=entry.id,
        action=entry.action,
        admin_id=entry.admin_id,
        admin_email=entry.admin_email,
        target_type=entry.target_type,
        target_id=entry.target_id,
        target_label=entry.target_label,
        details=entry.details,
        ip=entry.ip,
        created_at=entry.created_at,
    )


# ============================================================================
# Dashboard
# ============================================================================


@router.get("/stats", response_model=AdminStatsResponse)
async def get_stats(db: AsyncSession = Depends(get_write_db)) -> AdminStatsResponse:
    stats = await AdminOverrideService(db).stats()
    return AdminStatsResponse(
        total_users=stats.total_users,
        active_users=stats.active_users,
        admin_users=stats.admin_users,
        total_jobs=stats.total_jobs,
        active_jobs=stats.active_jobs,
        jobs_by_status=stats.jobs_by_status,
        total_emails_validated=stats.total_emails_validated,
        credits_in_circulation=stats.credits_in_circulation,
        credits_reserved=stats.credits_reserved,
        active_api_keys=stats.active_api_keys,
        revenue_total=stats.revenue_total,
        transactions_last_24h=stats.transactions_last_24h,
        healthy_servers=stats.healthy_servers,
    )


# ============================================================================
# User Management
# ============================================================================


@router.get("/users", response_model=AdminUserListResponse)
async def list_users(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    search: str | None = Query(None, max_length=255),
    role: UserRole | None = None,
    is_active: bool | None = None,
    db: AsyncSession = Depends(get_write_db),
) -> AdminUserListResponse:
    """List users with filtering and pagination."""
    rows, total = await AdminOverrideService(db).list_users(
        page, page_size, search, role, is_active
    )
    return AdminUserListResponse(
        users=[_admin_user(user, keys, jobs) for user, keys, jobs in rows],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=_total_pages(total, page_size),
    )


@router.get("/users/export")
async def export_users(db: AsyncSession = Depends(get_write_db)) -> Response:
    content = await AdminOverrideService(db).export_users_csv()
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="users.csv"'},
    )


@router.post("/users/bulk", response_model=BulkOperationResponse)
async def bulk_users(
    request: BulkOperationRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> BulkOperationResponse:
    """
    Apply one action to many users. Each user is handled in its own
    transaction; a failure for one user does not stop the others.
    """
    try:
        result = await AdminOverrideService(db).bulk(
            list(request.ids), request.action, actor, amount=request.amount, plan=request.plan
        )
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return BulkOperationResponse(
        action=result.action,
        total=len(result.outcomes),
        succeeded=result.succeeded,
        failed=result.failed,
        results=[
            BulkOutcomeResponse(user_id=outcome.user_id, success=outcome.success, error=outcome.error)
            for outcome in result.outcomes
        ],
    )


@router.get("/users/{user_id}", response_model=AdminUserResponse)
async def get_user(user_id: UUID, db: AsyncSession = Depends(get_write_db)) -> AdminUserResponse:
    try:
        user, keys, jobs = await AdminOverrideService(db).get_user(user_id)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return _admin_user(user, keys, jobs)


@router.put("/users/{user_id}", response_model=AdminUserResponse)
async def update_user(
    user_id: UUID,
    request: AdminUserUpdateRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> AdminUserResponse:
    """Change name, role or active flag."""
    service = AdminOverrideService(db)
    try:
        await service.update_user(user_id, request, actor)
        user, keys, jobs = await service.get_user(user_id)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return _admin_user(user, keys, jobs)


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    user_id: UUID,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> None:
    try:
        await AdminOverrideService(db).delete_user(user_id, actor)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc


@router.post("/users/{user_id}/credits/adjust", response_model=CreditOperationResponse)
async def adjust_credits(
    user_id: UUID,
    request: CreditAdjustRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> CreditOperationResponse:
    """Add or remove credits. Removing more than the balance leaves it at zero."""
    try:
        change = await AdminOverrideService(db).adjust_credits(
            user_id, request.amount, request.reason, actor
        )
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return _credit_operation(change)


@router.post("/users/{user_id}/credits/set", response_model=CreditOperationResponse)
async def set_credits(
    user_id: UUID,
    request: CreditSetRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> CreditOperationResponse:
    try:
        change = await AdminOverrideService(db).set_credits(
            user_id, request.credits, request.reason, actor
        )
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return _credit_operation(change)


@router.post("/users/{user_id}/reset-password", status_code=status.HTTP_204_NO_CONTENT)
async def reset_password(
    user_id: UUID,
    request: PasswordResetRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> None:
    try:
        await AdminOverrideService(db).reset_password(user_id, request.new_password, actor)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc


# ============================================================================
# API Key Management
# ============================================================================


@router.get("/api-keys", response_model=AdminAPIKeyListResponse)
async def list_api_keys(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    search: str | None = Query(None, max_length=255),
    db: AsyncSession = Depends(get_write_db),
) -> AdminAPIKeyListResponse:
    rows, total = await APIKeyService(db).list_all(page, page_size, search)
    return AdminAPIKeyListResponse(
        keys=[
            AdminAPIKeyResponse(**api_key_fields(key), user_id=key.user_id, user_email=email)
            for key, email in rows
        ],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=_total_pages(total, page_size),
    )


@router.patch("/api-keys/{key_id}/revoke", response_model=AdminAPIKeyResponse)
async def revoke_api_key(
    key_id: UUID,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> AdminAPIKeyResponse:
    """Revoke any user's key. Revocation is permanent."""
    try:
        key = await APIKeyService(db).revoke_api_key(key_id, actor=actor)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    owner = await db.get(User, key.user_id)
    return AdminAPIKeyResponse(
        **api_key_fields(key),
        user_id=key.user_id,
        user_email=owner.email if owner else None,
    )


@router.delete("/api-keys/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_api_key(
    key_id: UUID,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> None:
    try:
        await APIKeyService(db).delete_api_key(key_id, actor)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc


# ============================================================================
# Activity Log
# ============================================================================


@router.get("/activity", response_model=ActivityListResponse)
async def list_activity(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    action: str | None = Query(None, max_length=100),
    target_type: str | None = Query(None, max_length=50),
    db: AsyncSession = Depends(get_write_db),
) -> ActivityListResponse:
    """Admin audit trail, newest first."""
    entries, total = await AdminOverrideService(db).list_activity(page, limit, action, target_type)
    return ActivityListResponse(
        entries=[_activity(entry) for entry in entries],
        total=total,
        page=page,
        page_size=limit,
        total_pages=_total_pages(total, limit),
    )


# ============================================================================
# Jobs and Transactions
# ============================================================================


@router.get("/jobs", response_model=AdminJobListResponse)
async def list_jobs(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    job_status: JobStatus | None = Query(None, alias="status"),
    db: AsyncSession = Depends(get_write_db),
) -> AdminJobListResponse:
    rows, total = await AdminOverrideService(db).list_jobs(page, page_size, job_status)
    return AdminJobListResponse(
        jobs=[
            AdminJobResponse(**job_fields(job), user_id=job.user_id, user_email=email)
            for job, email in rows
        ],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=_total_pages(total, page_size),
    )


@router.delete("/jobs/{job_id}", response_model=JobResponse)
async def cancel_job(
    job_id: UUID,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> JobResponse:
    """Cancel any user's job; unconsumed credits go back to the owner."""
    try:
        job, _ = await AdminOverrideService(db).cancel_job(job_id, actor)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return JobResponse(**job_fields(job))


@router.get("/transactions", response_model=AdminTransactionListResponse)
async def list_transactions(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    transaction_type: TransactionType | None = Query(None, alias="type"),
    db: AsyncSession = Depends(get_write_db),
) -> AdminTransactionListResponse:
    rows, total = await AdminOverrideService(db).list_transactions(
        page, page_size, transaction_type
    )
    return AdminTransactionListResponse(
        transactions=[
            AdminTransactionResponse(
                **transaction_fields(transaction),
                user_id=transaction.user_id,
                user_email=email,
            )
            for transaction, email in rows
        ],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=_total_pages(total, page_size),
    )


# ============================================================================
# Pricing
# ============================================================================


@router.get("/pricing/config", response_model=PricingConfigResponse)
async def pricing_config() -> PricingConfigResponse:
    return PricingConfigResponse(
        unit_cost=settings.unit_cost,
        currency=settings.default_currency,
        free_plan_name=settings.free_plan_name,
        free_plan_credits=settings.free_plan_credits,
        plan_period_days=settings.plan_period_days,
        max_emails_per_job=settings.max_emails_per_job,
        default_rate_limit_per_minute=settings.default_rate_limit_per_minute,
    )


@router.get("/pricing/plans", response_model=list[PlanResponse])
async def list_plans(db: AsyncSession = Depends(get_write_db)) -> list[PlanResponse]:
    """All plans, including inactive ones."""
    plans = await PlanService(db).list_plans()
    return [plan_response(plan) for plan in plans]


@router.post("/pricing/plans", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(
    request: PlanCreateRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> PlanResponse:
    try:
        plan = await PlanService(db).create(request, actor)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return plan_response(plan)


@router.post("/pricing/plans/seed", response_model=SeedPlansResponse)
async def seed_plans(
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> SeedPlansResponse:
    """Insert the default catalog when no plans exist yet."""
    created = await PlanService(db).seed_defaults(actor)
    return SeedPlansResponse(created=created)


@router.put("/pricing/plans/{plan_id}", response_model=PlanResponse)
async def update_plan(
    plan_id: UUID,
    request: PlanUpdateRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> PlanResponse:
    try:
        plan = await PlanService(db).update(plan_id, request, actor)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return plan_response(plan)


@router.delete("/pricing/plans/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_plan(
    plan_id: UUID,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> None:
    try:
        await PlanService(db).delete(plan_id, actor)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc


@router.get("/pricing/coupons", response_model=list[CouponResponse])
async def list_coupons(
    active: bool | None = None,
    db: AsyncSession = Depends(get_write_db),
) -> list[CouponResponse]:
    coupons = await CouponService(db).list_coupons(active)
    return [coupon_response(coupon) for coupon in coupons]


@router.post(
    "/pricing/coupons", response_model=CouponResponse, status_code=status.HTTP_201_CREATED
)
async def create_coupon(
    request: CouponCreateRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> CouponResponse:
    """Create a coupon. 409 if the code is taken."""
    try:
        coupon = await CouponService(db).create(request, actor)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return coupon_response(coupon)


@router.put("/pricing/coupons/{coupon_id}", response_model=CouponResponse)
async def update_coupon(
    coupon_id: UUID,
    request: CouponUpdateRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> CouponResponse:
    try:
        coupon = await CouponService(db).update(coupon_id, request, actor)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return coupon_response(coupon)


@router.delete("/pricing/coupons/{coupon_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_coupon(
    coupon_id: UUID,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> None:
    try:
        await CouponService(db).delete(coupon_id, actor)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc


# ============================================================================
# Validation Servers
# ============================================================================


@router.get("/servers", response_model=list[ServerResponse])
async def list_servers(db: AsyncSession = Depends(get_write_db)) -> list[ServerResponse]:
    servers = await ServerPoolService(db).list_servers()
    return [server_response(server) for server in servers]


@router.post("/servers", response_model=ServerResponse, status_code=status.HTTP_201_CREATED)
async def create_server(
    request: ServerCreateRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> ServerResponse:
    server = await ServerPoolService(db).create(request, actor)
    invalidate_server_pool()
    return server_response(server)


@router.get("/servers/{server_id}", response_model=ServerResponse)
async def get_server(server_id: UUID, db: AsyncSession = Depends(get_write_db)) -> ServerResponse:
    try:
        server = await ServerPoolService(db).get(server_id)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return server_response(server)


@router.put("/servers/{server_id}", response_model=ServerResponse)
async def update_server(
    server_id: UUID,
    request: ServerUpdateRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> ServerResponse:
    try:
        server = await ServerPoolService(db).update(server_id, request, actor)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    invalidate_server_pool()
    return server_response(server)


@router.delete("/servers/{server_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_server(
    server_id: UUID,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> None:
    try:
        await ServerPoolService(db).delete(server_id, actor)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    invalidate_server_pool()


@router.post("/servers/{server_id}/test", response_model=ServerTestResponse)
async def test_server(
    server_id: UUID,
    request: ServerTestRequest | None = None,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> ServerTestResponse:
    """Request {url}/health and store the outcome as the server's health."""
    try:
        result = await ServerPoolService(db).test(
            server_id, actor, url=request.url if request else None
        )
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    invalidate_server_pool()
    return ServerTestResponse(
        is_healthy=result.is_healthy,
        response_time_ms=result.response_time_ms,
        error=result.error,
    )


@router.patch("/servers/{server_id}/health", response_model=ServerResponse)
async def set_server_health(
    server_id: UUID,
    request: ServerHealthRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_write_db),
) -> ServerResponse:
    try:
        server = await ServerPoolService(db).set_health(server_id, request.is_healthy, actor)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    invalidate_server_pool()
    return server_response(server)
