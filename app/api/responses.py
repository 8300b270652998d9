"""
Response builders shared by the route modules.

NO DICTIONARIES - ORM rows and domain snapshots become Pydantic models here.
"""

from typing import Any

from app.db.models import APIKey, Coupon, PricingPlan, User, ValidationServer
from app.models.api import (
    AmountInfo,
    APIKeyResponse,
    ChecksResponse,
    CouponResponse,
    CreditsInfo,
    DiscountType,
    JobResponse,
    PlanInfo,
    PlanResponse,
    PlanType,
    ResultResponse,
    ServerResponse,
    TransactionResponse,
    UserProfileResponse,
    UserRole,
)
from app.models.domain import EmailChecks, JobData, ResultData, TransactionData


def plan_info(user: User) -> PlanInfo:
    return PlanInfo(
        name=user.plan_name,
        credits_limit=user.credits_limit,
        plan_credits=user.plan_credits,
        addon_credits=user.addon_credits,
        renews_at=user.plan_renews_at,
    )


def user_profile(user: User) -> UserProfileResponse:
    return UserProfileResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        role=UserRole(user.role),
        is_active=user.is_active,
        credits=user.plan_credits + user.addon_credits,
        plan=plan_info(user),
        created_at=user.created_at,
    )


def checks_response(checks: EmailChecks) -> ChecksResponse:
    return ChecksResponse(**checks.as_json())


def job_response(job: JobData) -> JobResponse:
    return JobResponse(**job_fields(job))


def job_fields(job: JobData) -> dict[str, Any]:
    """Keyword arguments for JobResponse and its admin subclass."""
    return {
        "id": job.job_id,
        "type": job.type,
        "status": job.status,
        "total_emails": job.total_emails,
        "processed_emails": job.processed_emails,
        "valid_count": job.counts.valid,
        "invalid_count": job.counts.invalid,
        "catch_all_count": job.counts.catch_all,
        "disposable_count": job.counts.disposable,
        "role_based_count": job.counts.role_based,
        "unknown_count": job.counts.unknown,
        "progress_percentage": job.progress_percentage,
        "file_name": job.file_name,
        "webhook_url": job.webhook_url,
        "result_file": job.result_file,
        "error_message": job.error_message,
        "credits_reserved": job.credits_reserved,
        "credits_consumed": job.credits_consumed,
        "credits_refunded": job.credits_refunded,
        "created_at": job.created_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
    }


def result_response(result: ResultData) -> ResultResponse:
    return ResultResponse(
        position=result.position,
        email=result.email,
        status=result.status,
        score=result.score,
        checks=checks_response(result.checks) if result.checks is not None else None,
        response_time_ms=result.response_time_ms,
        checked_at=result.checked_at,
    )


def transaction_fields(transaction: TransactionData) -> dict[str, Any]:
    """Keyword arguments for TransactionResponse and its admin subclass."""
    return {
        "id": transaction.transaction_id,
        "type": transaction.type,
        "amount": AmountInfo(paid=transaction.amount_paid, currency=transaction.currency),
        "credits": CreditsInfo(
            added=transaction.credits_added,
            deducted=transaction.credits_deducted,
            before=transaction.credits_before,
            after=transaction.credits_after,
        ),
        "description": transaction.description,
        "status": transaction.status,
        "payment_id": transaction.payment_id,
        "created_at": transaction.created_at,
    }


def transaction_response(transaction: TransactionData) -> TransactionResponse:
    return TransactionResponse(**transaction_fields(transaction))


def api_key_fields(api_key: APIKey) -> dict[str, Any]:
    return {
        "id": api_key.id,
        "name": api_key.name,
        "preview": api_key.preview,
        "is_active": api_key.is_active,
        "revoked": api_key.is_revoked,
        "usage_count": api_key.usage_count,
        "rate_limit_per_minute": api_key.rate_limit_per_minute,
        "last_used_at": api_key.last_used_at,
        "created_at": api_key.created_at,
    }


def api_key_response(api_key: APIKey) -> APIKeyResponse:
    return APIKeyResponse(**api_key_fields(api_key))


def plan_response(plan: PricingPlan) -> PlanResponse:
    return PlanResponse(
        id=plan.id,
        name=plan.name,
        slug=plan.slug,
        type=PlanType(plan.type),
        price=plan.price,
        currency=plan.currency,
        interval=plan.interval,
        credits=plan.credits,
        features=list(plan.features or []),
        is_popular=plan.is_popular,
        is_active=plan.is_active,
        sort_order=plan.sort_order,
        description=plan.description,
        cta_text=plan.cta_text,
    )


def coupon_response(coupon: Coupon) -> CouponResponse:
    return CouponResponse(
        id=coupon.id,
        code=coupon.code,
        description=coupon.description,
        discount_type=DiscountType(coupon.discount_type),
        discount_value=coupon.discount_value,
        max_discount=coupon.max_discount,
        min_purchase_amount=coupon.min_purchase_amount,
        max_uses=coupon.max_uses,
        max_uses_per_user=coupon.max_uses_per_user,
        current_uses=coupon.current_uses,
        starts_at=coupon.starts_at,
        expires_at=coupon.expires_at,
        is_active=coupon.is_active,
        applicable_plans=list(coupon.applicable_plans or []),
        created_at=coupon.created_at,
    )


def server_response(server: ValidationServer) -> ServerResponse:
    return ServerResponse(
        id=server.id,
        name=server.name,
        url=server.url,
        weight=server.weight,
        is_active=server.is_active,
        is_healthy=server.is_healthy,
        total_requests=server.total_requests,
        success_rate=server.success_rate,
        avg_response_time_ms=server.avg_response_time_ms,
        last_health_check=server.last_health_check,
        created_at=server.created_at,
    )
