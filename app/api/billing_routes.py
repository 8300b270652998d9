"""
Billing routes - plans, checkout, payment verification and transactions.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_payment_provider, get_session_user
from app.api.errors import to_http_exception
from app.api.responses import plan_response, transaction_response
from app.db.models import User
from app.db.session import get_read_db, get_write_db
from app.exceptions import ValidatorServiceError
from app.models.api import (
    CheckoutRequest,
    CheckoutResponse,
    CreditPurchaseRequest,
    Pagination,
    PaymentVerifyRequest,
    PlanResponse,
    PlanType,
    SubscriptionResponse,
    TransactionListResponse,
    TransactionResponse,
)
from app.models.domain import CheckoutData, SubscriptionData
from app.services.payment_provider import PaymentProvider
from app.services.plans import PlanService
from app.services.purchases import PurchaseService

router = APIRouter(prefix="/billing", tags=["billing"])


def _checkout_response(checkout: CheckoutData) -> CheckoutResponse:
    return CheckoutResponse(
        is_free=checkout.is_free,
        message=checkout.message,
        order_id=checkout.order_id,
        key=checkout.key,
        original_amount=checkout.original_amount,
        discount_amount=checkout.discount_amount,
        amount=checkout.amount,
        bonus_credits=checkout.bonus_credits,
        currency=checkout.currency,
    )


def _subscription_response(subscription: SubscriptionData) -> SubscriptionResponse:
    return SubscriptionResponse(
        plan_name=subscription.plan_name,
        credits_limit=subscription.credits_limit,
        plan_credits=subscription.plan_credits,
        addon_credits=subscription.addon_credits,
        balance=subscription.balance,
        reserved=subscription.reserved,
        available=subscription.available,
        renews_at=subscription.renews_at,
    )


@router.get("/plans", response_model=list[PlanResponse])
async def list_plans(db: AsyncSession = Depends(get_read_db)) -> list[PlanResponse]:
    """Active plans and credit packages, in display order. Public."""
    plans = await PlanService(db).list_public()
    return [plan_response(plan) for plan in plans]


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    user: User = Depends(get_session_user),
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> SubscriptionResponse:
    try:
        subscription = await PurchaseService(db, provider).subscription(user.id)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return _subscription_response(subscription)


@router.post("/checkout", response_model=CheckoutResponse)
async def checkout(
    request: CheckoutRequest,
    user: User = Depends(get_session_user),
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> CheckoutResponse:
    """
    Start a subscription purchase.

    A coupon that brings the price to zero settles immediately (is_free);
    otherwise the response carries the gateway order to pay.
    """
    try:
        result = await PurchaseService(db, provider).checkout(
            user.id, PlanType.SUBSCRIPTION, request.plan, request.currency, request.coupon_code
        )
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return _checkout_response(result)


@router.post("/credits", response_model=CheckoutResponse)
async def buy_credits(
    request: CreditPurchaseRequest,
    user: User = Depends(get_session_user),
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> CheckoutResponse:
    """Start a credit package purchase. Add-on credits never expire."""
    try:
        result = await PurchaseService(db, provider).checkout(
            user.id,
            PlanType.CREDIT_PACKAGE,
            request.package,
            request.currency,
            request.coupon_code,
        )
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return _checkout_response(result)


@router.post("/verify", response_model=TransactionResponse)
async def verify_payment(
    request: PaymentVerifyRequest,
    user: User = Depends(get_session_user),
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> TransactionResponse:
    """Settle a paid order. Re-sending the same payment returns the same transaction."""
    try:
        transaction = await PurchaseService(db, provider).verify_payment(
            user.id, request.order_id, request.payment_id, request.signature
        )
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return transaction_response(transaction)


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    user: User = Depends(get_session_user),
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> SubscriptionResponse:
    try:
        subscription = await PurchaseService(db, provider).cancel_subscription(user.id)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return _subscription_response(subscription)


@router.get("/transactions", response_model=TransactionListResponse)
async def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_session_user),
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> TransactionListResponse:
    transactions, total = await PurchaseService(db, provider).transactions(user.id, page, limit)
    return TransactionListResponse(
        transactions=[transaction_response(transaction) for transaction in transactions],
        pagination=Pagination.build(total, page, limit),
    )
