"""
Coupon/Discount Engine and coupon registry.

NO DICTIONARIES - All operations use strongly typed domain models.

evaluate() is pure: it never touches the database and never counts a use.
CouponService.redeem() is the only place a use is recorded, exactly once
per payment_id.
"""

from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Coupon, CouponRedemption
from app.exceptions import (
    CouponNotEligibleError,
    CouponNotFoundError,
    DuplicateResourceError,
    WriteVerificationError,
)
from app.models.api import (
    CouponCreateRequest,
    CouponUpdateRequest,
    DiscountType,
    coupon_terms_problem,
)
from app.models.domain import ActorContext, CouponEvaluation, CouponTerms, PurchaseContext
from app.observability import get_logger, metrics
from app.services.audit import record_activity

logger = get_logger(__name__)

CENT = Decimal("0.01")
NULLABLE_COUPON_FIELDS = frozenset(
    {"description", "max_discount", "max_uses", "starts_at", "expires_at"}
)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def normalize_code(code: str) -> str:
    return code.strip().upper()


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


# ============================================================================
# Pure evaluation
# ============================================================================


def evaluate(
    terms: CouponTerms,
    context: PurchaseContext,
    user_redemptions: int,
    now: datetime | None = None,
) -> CouponEvaluation:
    """
    Evaluate a coupon against a purchase. No side effects.

    Rules are checked in order and the first failing one is the reason:
    1. inactive, not started, expired, or used up
    2. user already redeemed it max_uses_per_user times
    3. amount below min_purchase_amount
    4. plan not in a non-empty applicable_plans
    """
    now = _aware(now or _utc_now())
    amount = _money(context.amount)

    def reject(reason: str) -> CouponEvaluation:
        return CouponEvaluation(eligible=False, adjusted_amount=amount, reason=reason)

    if not terms.is_active:
        return reject("coupon is not active")
    if terms.starts_at is not None and now < _aware(terms.starts_at):
        return reject("coupon is not valid yet")
    if terms.expires_at is not None and now > _aware(terms.expires_at):
        return reject("coupon has expired")
    if terms.max_uses is not None and terms.current_uses >= terms.max_uses:
        return reject("coupon usage limit reached")
    if user_redemptions >= terms.max_uses_per_user:
        return reject("you have already used this coupon")
    if amount < terms.min_purchase_amount:
        return reject(f"minimum purchase amount is {_money(terms.min_purchase_amount)}")
    if terms.applicable_plans and context.plan_slug not in terms.applicable_plans:
        return reject("coupon does not apply to this plan")

    if terms.discount_type == DiscountType.PERCENTAGE:
        discount = _money(amount * terms.discount_value / 100)
        if terms.max_discount is not None:
            discount = min(discount, _money(terms.max_discount))
        adjusted = max(Decimal("0.00"), amount - discount)
        return CouponEvaluation(
            eligible=True, adjusted_amount=adjusted, discount_amount=amount - adjusted
        )

    if terms.discount_type == DiscountType.FIXED:
        adjusted = max(Decimal("0.00"), amount - _money(terms.discount_value))
        return CouponEvaluation(
            eligible=True, adjusted_amount=adjusted, discount_amount=amount - adjusted
        )

    return CouponEvaluation(
        eligible=True,
        adjusted_amount=amount,
        bonus_credits=int(terms.discount_value),
    )


def coupon_to_terms(coupon: Coupon) -> CouponTerms:
    """Convert ORM coupon to the engine's input."""
    return CouponTerms(
        code=coupon.code,
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
        applicable_plans=tuple(coupon.applicable_plans or ()),
    )


# ============================================================================
# Registry
# ============================================================================


class CouponService:
    """Coupon CRUD, evaluation against stored coupons, and redemption."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize coupon service with database session."""
        self.session = session

    async def list_coupons(self, active: bool | None = None) -> list[Coupon]:
        stmt = select(Coupon).order_by(Coupon.created_at.desc())
        if active is not None:
            stmt = stmt.where(Coupon.is_active == active)
        return list((await self.session.execute(stmt)).scalars().all())

    async def get_by_code(self, code: str) -> Coupon:
        """
        Raises:
            CouponNotFoundError: No coupon with that code
        """
        normalized = normalize_code(code)
        stmt = select(Coupon).where(Coupon.code == normalized)
        coupon = (await self.session.execute(stmt)).scalar_one_or_none()
        if coupon is None:
            raise CouponNotFoundError(normalized)
        return coupon

    async def create(self, request: CouponCreateRequest, actor: ActorContext) -> Coupon:
        """
        Create a coupon.

        Raises:
            DuplicateResourceError: Code already exists
        """
        code = normalize_code(request.code)
        existing = await self.session.execute(select(Coupon.id).where(Coupon.code == code))
        if existing.scalar_one_or_none() is not None:
            raise DuplicateResourceError("Coupon", code)

        coupon = Coupon(
            code=code,
            description=request.description,
            discount_type=request.discount_type.value,
            discount_value=request.discount_value,
            max_discount=request.max_discount,
            min_purchase_amount=request.min_purchase_amount,
            max_uses=request.max_uses,
            max_uses_per_user=request.max_uses_per_user,
            current_uses=0,
            starts_at=request.starts_at,
            expires_at=request.expires_at,
            is_active=request.is_active,
            applicable_plans=list(request.applicable_plans),
        )
        self.session.add(coupon)
        await self.session.flush()

        verified = await self.session.get(Coupon, coupon.id)
        if verified is None:
            raise WriteVerificationError(f"Coupon {code} not found after insert")

        record_activity(
            self.session,
            actor,
            action="coupon_created",
            target_type="coupon",
            target_id=coupon.id,
            target_label=code,
            details={
                "discount_type": request.discount_type.value,
                "discount_value": request.discount_value,
            },
        )
        await self.session.commit()
        metrics.admin_operations_total.labels(operation="coupon_created").inc()
        logger.info("coupon_created", coupon_id=str(coupon.id), code=code)
        return verified

    async def update(
        self, coupon_id: UUID, request: CouponUpdateRequest, actor: ActorContext
    ) -> Coupon:
        coupon = await self._get(coupon_id)
        changes = request.model_dump(exclude_unset=True)
        for field_name, value in changes.items():
            if value is None and field_name not in NULLABLE_COUPON_FIELDS:
                continue
            setattr(coupon, field_name, value)

        problem = coupon_terms_problem(
            DiscountType(coupon.discount_type),
            coupon.discount_value,
            coupon.starts_at,
            coupon.expires_at,
        )
        if problem is None and coupon.max_uses is not None:
            if coupon.current_uses > coupon.max_uses:
                problem = "max_uses cannot be lower than current uses"
        if problem:
            code = coupon.code
            await self.session.rollback()
            raise CouponNotEligibleError(code, problem)

        record_activity(
            self.session,
            actor,
            action="coupon_updated",
            target_type="coupon",
            target_id=coupon.id,
            target_label=coupon.code,
            details=changes,
        )
        await self.session.commit()
        metrics.admin_operations_total.labels(operation="coupon_updated").inc()
        logger.info("coupon_updated", coupon_id=str(coupon_id), fields=sorted(changes))
        return coupon

    async def delete(self, coupon_id: UUID, actor: ActorContext) -> None:
        coupon = await self._get(coupon_id)
        code = coupon.code
        await self.session.delete(coupon)
        record_activity(
            self.session,
            actor,
            action="coupon_deleted",
            target_type="coupon",
            target_id=coupon_id,
            target_label=code,
        )
        await self.session.commit()
        metrics.admin_operations_total.labels(operation="coupon_deleted").inc()
        logger.info("coupon_deleted", coupon_id=str(coupon_id), code=code)

    async def user_redemptions(self, coupon_id: UUID, user_id: UUID) -> int:
        stmt = select(func.count()).where(
            CouponRedemption.coupon_id == coupon_id,
            CouponRedemption.user_id == user_id,
        )
        return (await self.session.execute(stmt)).scalar_one()

    async def evaluate_for_user(
        self,
        code: str,
        user_id: UUID,
        amount: Decimal,
        plan_slug: str | None,
        currency: str = "USD",
        held_uses: int = 0,
    ) -> tuple[Coupon, CouponEvaluation]:
        """
        Evaluate a stored coupon for a user. Reads only.

        held_uses counts the user's unpaid orders that already carry this
        coupon; they count against max_uses_per_user like redemptions.
        """
        coupon = await self.get_by_code(code)
        used = await self.user_redemptions(coupon.id, user_id)
        evaluation = evaluate(
            coupon_to_terms(coupon),
            PurchaseContext(amount=amount, plan_slug=plan_slug, currency=currency),
            used + held_uses,
        )
        return coupon, evaluation

    async def redeem(
        self,
        coupon_id: UUID,
        user_id: UUID,
        payment_id: str,
        discount_amount: Decimal,
        bonus_credits: int,
    ) -> CouponRedemption:
        """
        Record one use of a coupon for a settled payment.

        Runs in the caller's transaction. Idempotent on payment_id.

        Raises:
            CouponNotFoundError: Coupon was deleted
            CouponNotEligibleError: Coupon used up (globally or for this user)
        """
        existing_stmt = select(CouponRedemption).where(CouponRedemption.payment_id == payment_id)
        existing = (await self.session.execute(existing_stmt)).scalar_one_or_none()
        if existing is not None:
            return existing

        stmt = (
            select(Coupon)
            .where(Coupon.id == coupon_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        coupon = (await self.session.execute(stmt)).scalar_one_or_none()
        if coupon is None:
            raise CouponNotFoundError(str(coupon_id))

        if coupon.max_uses is not None and coupon.current_uses >= coupon.max_uses:
            raise CouponNotEligibleError(coupon.code, "coupon usage limit reached")
        if await self.user_redemptions(coupon_id, user_id) >= coupon.max_uses_per_user:
            raise CouponNotEligibleError(coupon.code, "you have already used this coupon")

        coupon.current_uses = coupon.current_uses + 1
        redemption = CouponRedemption(
            coupon_id=coupon_id,
            user_id=user_id,
            payment_id=payment_id,
            discount_amount=discount_amount,
            bonus_credits=bonus_credits,
        )
        self.session.add(redemption)
        await self.session.flush()

        logger.info(
            "coupon_redeemed",
            coupon_id=str(coupon_id),
            code=coupon.code,
            user_id=str(user_id),
            payment_id=payment_id,
            current_uses=coupon.current_uses,
        )
        return redemption

    async def _get(self, coupon_id: UUID) -> Coupon:
        coupon = await self.session.get(Coupon, coupon_id)
        if coupon is None:
            raise CouponNotFoundError(str(coupon_id))
        return coupon
