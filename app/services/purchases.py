"""
Purchase settlement - checkout, payment verification and subscriptions.

NO DICTIONARIES - All operations use strongly typed domain models.

Flow:
1. checkout() prices the plan, applies a coupon (evaluation only) and either
   settles immediately (nothing to pay) or opens a gateway order.
   An unpaid order holds one of the user's coupon uses for
   COUPON_HOLD_MINUTES.
2. verify_payment() checks the gateway signature, then in ONE ledger
   transaction credits the purchase, redeems the coupon exactly once and
   marks the order paid. Re-delivery of the same payment_id returns the
   original Transaction.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import Coupon, PaymentOrder, PricingPlan, Transaction, User
from app.exceptions import (
    CouponNotEligibleError,
    CouponNotFoundError,
    EmailValidationError,
    OrderNotFoundError,
    PaymentVerificationError,
    UserNotFoundError,
)
from app.models.api import OrderStatus, PlanType
from app.models.domain import CheckoutData, CouponEvaluation, SubscriptionData, TransactionData
from app.observability import get_logger
from app.services.coupons import CouponService, normalize_code
from app.services.ledger import CreditLedger, transaction_to_domain
from app.services.payment_provider import PaymentProvider
from app.services.plans import PlanService

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class PurchaseService:
    """Turns verified payments into ledger credits."""

    def __init__(self, session: AsyncSession, provider: PaymentProvider) -> None:
        self.session = session
        self.provider = provider
        self.ledger = CreditLedger(session)
        self.coupons = CouponService(session)
        self.plans = PlanService(session)

    # ========================================================================
    # Checkout
    # ========================================================================

    async def checkout(
        self,
        user_id: UUID,
        plan_type: PlanType,
        slug: str,
        currency: str | None = None,
        coupon_code: str | None = None,
    ) -> CheckoutData:
        """
        Price a subscription or credit package for a user.

        Raises:
            PlanNotFoundError: No active plan of that type and slug
            CouponNotFoundError: Unknown coupon code
            CouponNotEligibleError: Coupon rejected (reason attached)
            EmailValidationError: Currency does not match the plan
        """
        plan = await self.plans.get_by_slug(slug, plan_type)
        currency = (currency or plan.currency).upper()
        if currency != plan.currency:
            raise EmailValidationError(f"plan {plan.slug} is priced in {plan.currency}")

        # Held coupon orders are counted and the new order added under the user lock
        async with self.ledger.locked(user_id) as user:
            coupon_id: UUID | None = None
            evaluation = CouponEvaluation(eligible=True, adjusted_amount=plan.price)
            if coupon_code:
                held = await self._held_coupon_orders(user_id, coupon_code)
                coupon, evaluation = await self.coupons.evaluate_for_user(
                    coupon_code, user_id, plan.price, plan.slug, currency, held_uses=held
                )
                if not evaluation.eligible:
                    raise CouponNotEligibleError(coupon.code, evaluation.reason or "not eligible")
                coupon_id = coupon.id

            if evaluation.adjusted_amount <= 0:
                transaction = await self._settle_free(user, plan, coupon_id, evaluation)
                return CheckoutData(
                    is_free=True,
                    original_amount=plan.price,
                    discount_amount=evaluation.discount_amount,
                    amount=Decimal("0.00"),
                    bonus_credits=evaluation.bonus_credits,
                    currency=currency,
                    transaction=transaction,
                    message=f"{plan.name} activated",
                )

            order = await self.provider.create_order(
                evaluation.adjusted_amount, currency, receipt=f"{plan.slug}:{user_id}"
            )
            self.session.add(
                PaymentOrder(
                    order_id=order.order_id,
                    user_id=user_id,
                    type=plan.type,
                    slug=plan.slug,
                    currency=currency,
                    base_amount=plan.price,
                    discount_amount=evaluation.discount_amount,
                    amount=evaluation.adjusted_amount,
                    credits=plan.credits,
                    bonus_credits=evaluation.bonus_credits,
                    coupon_id=coupon_id,
                    status=OrderStatus.CREATED.value,
                )
            )

        logger.info(
            "checkout_order_created",
            user_id=str(user_id),
            order_id=order.order_id,
            plan=plan.slug,
            amount=str(evaluation.adjusted_amount),
            coupon_applied=coupon_id is not None,
        )
        return CheckoutData(
            is_free=False,
            original_amount=plan.price,
            discount_amount=evaluation.discount_amount,
            amount=evaluation.adjusted_amount,
            bonus_credits=evaluation.bonus_credits,
            currency=currency,
            order_id=order.order_id,
            key=order.key,
        )

    async def _held_coupon_orders(self, user_id: UUID, coupon_code: str) -> int:
        """Unpaid orders of this user that carry the coupon and are still within the hold window."""
        since = _utc_now() - timedelta(minutes=settings.coupon_hold_minutes)
        stmt = (
            select(func.count())
            .select_from(PaymentOrder)
            .join(Coupon, Coupon.id == PaymentOrder.coupon_id)
            .where(
                PaymentOrder.user_id == user_id,
                Coupon.code == normalize_code(coupon_code),
                PaymentOrder.status == OrderStatus.CREATED.value,
                PaymentOrder.created_at >= since,
            )
        )
        return (await self.session.execute(stmt)).scalar_one()

    async def _settle_free(
        self,
        user: User,
        plan: PricingPlan,
        coupon_id: UUID | None,
        evaluation: CouponEvaluation,
    ) -> TransactionData:
        """Credit a purchase with nothing to pay. Caller holds the user lock."""
        payment_id = f"free_{uuid4().hex}"
        bonus = evaluation.bonus_credits
        if coupon_id is not None:
            await self.coupons.redeem(
                coupon_id, user.id, payment_id, evaluation.discount_amount, bonus
            )
        transaction = await self.ledger.credit_purchase(
            user,
            plan_type=PlanType(plan.type),
            plan_name=plan.slug,
            credits=plan.credits,
            bonus_credits=bonus,
            amount_paid=Decimal("0.00"),
            currency=plan.currency,
            payment_id=payment_id,
        )
        view = transaction_to_domain(transaction)

        logger.info(
            "purchase_settled",
            user_id=str(user.id),
            plan=plan.slug,
            payment_id=payment_id,
            credits_after=view.credits_after,
            free=True,
        )
        return view

    # ========================================================================
    # Payment verification
    # ========================================================================

    async def verify_payment(
        self, user_id: UUID, order_id: str, payment_id: str, signature: str
    ) -> TransactionData:
        """
        Settle a paid order. Idempotent per payment_id.

        Raises:
            PaymentVerificationError: Bad signature, or payment/order mismatch
            OrderNotFoundError: Unknown order (or another user's)
        """
        if not self.provider.verify_signature(order_id, payment_id, signature):
            logger.warning("payment_signature_invalid", user_id=str(user_id), order_id=order_id)
            raise PaymentVerificationError("Payment signature verification failed")

        existing = await self._transaction_for_payment(payment_id)
        if existing is not None:
            if existing.user_id != user_id:
                raise PaymentVerificationError("Payment belongs to another account")
            logger.info("payment_already_settled", payment_id=payment_id)
            return transaction_to_domain(existing)

        order = await self._find_order(order_id)
        if order is None or order.user_id != user_id:
            raise OrderNotFoundError(order_id)

        async with self.ledger.locked(user_id) as user:
            order = await self._lock_order(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            if order.status == OrderStatus.PAID.value:
                if order.payment_id != payment_id:
                    raise PaymentVerificationError("Order was already paid by another payment")
                settled = await self._transaction_for_payment(payment_id)
                if settled is None:
                    raise PaymentVerificationError("Order is paid but its transaction is missing")
                return transaction_to_domain(settled)

            bonus = order.bonus_credits
            if order.coupon_id is not None:
                try:
                    await self.coupons.redeem(
                        order.coupon_id, user_id, payment_id, order.discount_amount, bonus
                    )
                except (CouponNotEligibleError, CouponNotFoundError) as e:
                    # Price was already discounted at checkout; only the bonus is withheld.
                    logger.warning(
                        "coupon_redeem_skipped",
                        order_id=order_id,
                        coupon_id=str(order.coupon_id),
                        reason=str(e),
                    )
                    bonus = 0

            transaction = await self.ledger.credit_purchase(
                user,
                plan_type=PlanType(order.type),
                plan_name=order.slug,
                credits=order.credits,
                bonus_credits=bonus,
                amount_paid=order.amount,
                currency=order.currency,
                payment_id=payment_id,
            )
            order.status = OrderStatus.PAID.value
            order.payment_id = payment_id
            order.paid_at = _utc_now()
            view = transaction_to_domain(transaction)

        logger.info(
            "purchase_settled",
            user_id=str(user_id),
            order_id=order_id,
            payment_id=payment_id,
            plan=view.description,
            amount_paid=str(view.amount_paid),
            credits_after=view.credits_after,
        )
        return view

    # ========================================================================
    # Subscription
    # ========================================================================

    async def subscription(self, user_id: UUID) -> SubscriptionData:
        user = await self.session.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        reserved = await self.ledger.outstanding(user_id)
        return SubscriptionData(
            user_id=user.id,
            plan_name=user.plan_name,
            credits_limit=user.credits_limit,
            plan_credits=user.plan_credits,
            addon_credits=user.addon_credits,
            reserved=reserved,
            renews_at=user.plan_renews_at,
        )

    async def cancel_subscription(self, user_id: UUID) -> SubscriptionData:
        """
        Revert to the free plan from the next renewal on.

        Current credits are kept; the next renewal resets plan credits to the
        free allowance.
        """
        async with self.ledger.locked(user_id) as user:
            previous = user.plan_name
            if previous != settings.free_plan_name:
                user.plan_name = settings.free_plan_name
                user.credits_limit = settings.free_plan_credits

        logger.info("subscription_cancelled", user_id=str(user_id), previous_plan=previous)
        return await self.subscription(user_id)

    async def transactions(
        self, user_id: UUID, page: int = 1, limit: int = 20
    ) -> tuple[list[TransactionData], int]:
        """A user's transactions, newest first."""
        count_stmt = select(func.count()).where(Transaction.user_id == user_id)
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc(), Transaction.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [transaction_to_domain(row) for row in rows], total

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _transaction_for_payment(self, payment_id: str) -> Transaction | None:
        stmt = select(Transaction).where(Transaction.payment_id == payment_id)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def _find_order(self, order_id: str) -> PaymentOrder | None:
        stmt = select(PaymentOrder).where(PaymentOrder.order_id == order_id)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def _lock_order(self, order_id: str) -> PaymentOrder | None:
        stmt = (
            select(PaymentOrder)
            .where(PaymentOrder.order_id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()
