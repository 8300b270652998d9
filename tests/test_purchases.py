"""
Tests for checkout, payment verification and subscriptions.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from app.config import settings
from app.db.models import Coupon, PaymentOrder, Transaction
from app.exceptions import (
    CouponNotEligibleError,
    EmailValidationError,
    OrderNotFoundError,
    PaymentVerificationError,
    PlanNotFoundError,
)
from app.models.api import CouponCreateRequest, DiscountType, PlanType
from app.services.coupons import CouponService
from app.services.plans import PlanService
from app.services.purchases import PurchaseService
from conftest import refresh_user


@pytest.fixture
async def catalog(session_factory, actor):
    async with session_factory() as session:
        await PlanService(session).seed_defaults(actor)


async def _coupon(session_factory, actor, **fields):
    request = CouponCreateRequest(**fields)
    async with session_factory() as session:
        return await CouponService(session).create(request, actor)


class TestCheckout:
    """Tests for checkout pricing."""

    @pytest.mark.asyncio
    async def test_paid_plan_opens_order(self, session, catalog, user, payment_provider):
        checkout = await PurchaseService(session, payment_provider).checkout(
            user.id, PlanType.SUBSCRIPTION, "pro"
        )

        assert not checkout.is_free
        assert checkout.amount == Decimal("79.00")
        assert checkout.order_id.startswith("order_")
        assert checkout.key == "key_test"

    @pytest.mark.asyncio
    async def test_coupon_discount_applied(self, session, session_factory, catalog, user, actor, payment_provider):
        await _coupon(
            session_factory,
            actor,
            code="SAVE20",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal("20"),
            max_discount=Decimal("10"),
        )

        checkout = await PurchaseService(session, payment_provider).checkout(
            user.id, PlanType.SUBSCRIPTION, "pro", coupon_code="save20"
        )

        assert checkout.original_amount == Decimal("79.00")
        assert checkout.discount_amount == Decimal("10.00")
        assert checkout.amount == Decimal("69.00")

    @pytest.mark.asyncio
    async def test_ineligible_coupon_rejected(self, session, session_factory, catalog, user, actor, payment_provider):
        await _coupon(
            session_factory,
            actor,
            code="PROONLY",
            discount_type=DiscountType.FIXED,
            discount_value=Decimal("5"),
            applicable_plans=["pro"],
        )

        with pytest.raises(CouponNotEligibleError, match="does not apply"):
            await PurchaseService(session, payment_provider).checkout(
                user.id, PlanType.SUBSCRIPTION, "starter", coupon_code="PROONLY"
            )

    @pytest.mark.asyncio
    async def test_fully_discounted_purchase_settles_immediately(
        self, session, session_factory, catalog, user, actor, payment_provider
    ):
        await _coupon(
            session_factory,
            actor,
            code="FREEPRO",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal("100"),
        )

        checkout = await PurchaseService(session, payment_provider).checkout(
            user.id, PlanType.SUBSCRIPTION, "pro", coupon_code="FREEPRO"
        )

        assert checkout.is_free
        assert checkout.transaction.payment_id.startswith("free_")
        refreshed = await refresh_user(session_factory, user.id)
        assert refreshed.plan_name == "pro"
        assert refreshed.plan_credits == 50_000
        async with session_factory() as check:
            coupon = (await check.execute(select(Coupon))).scalar_one()
        assert coupon.current_uses == 1

    @pytest.mark.asyncio
    async def test_unpaid_order_holds_single_use_coupon(
        self, session, session_factory, catalog, user, actor, payment_provider
    ):
        await _coupon(
            session_factory,
            actor,
            code="ONCE",
            discount_type=DiscountType.FIXED,
            discount_value=Decimal("10"),
        )
        service = PurchaseService(session, payment_provider)
        first = await service.checkout(user.id, PlanType.SUBSCRIPTION, "pro", coupon_code="ONCE")
        assert first.amount == Decimal("69.00")

        with pytest.raises(CouponNotEligibleError, match="already used"):
            await service.checkout(user.id, PlanType.SUBSCRIPTION, "pro", coupon_code="ONCE")

        hold = settings.coupon_hold_minutes
        async with session_factory() as other:
            await other.execute(
                update(PaymentOrder)
                .where(PaymentOrder.order_id == first.order_id)
                .values(created_at=datetime.now(UTC) - timedelta(minutes=hold + 1))
            )
            await other.commit()

        again = await service.checkout(user.id, PlanType.SUBSCRIPTION, "pro", coupon_code="ONCE")
        assert again.amount == Decimal("69.00")

    @pytest.mark.asyncio
    async def test_concurrent_checkouts_share_one_coupon_use(
        self, session_factory, catalog, user, actor, payment_provider
    ):
        await _coupon(
            session_factory,
            actor,
            code="ONCE",
            discount_type=DiscountType.FIXED,
            discount_value=Decimal("10"),
        )

        async def attempt() -> bool:
            async with session_factory() as racer:
                try:
                    await PurchaseService(racer, payment_provider).checkout(
                        user.id, PlanType.SUBSCRIPTION, "pro", coupon_code="ONCE"
                    )
                except CouponNotEligibleError:
                    return False
                return True

        outcomes = await asyncio.gather(attempt(), attempt())

        assert sorted(outcomes) == [False, True]

    @pytest.mark.asyncio
    async def test_wrong_type_or_currency(self, session, catalog, user, payment_provider):
        service = PurchaseService(session, payment_provider)
        with pytest.raises(PlanNotFoundError):
            await service.checkout(user.id, PlanType.CREDIT_PACKAGE, "pro")
        with pytest.raises(EmailValidationError):
            await service.checkout(user.id, PlanType.SUBSCRIPTION, "pro", currency="eur")


class TestVerifyPayment:
    """Tests for payment verification and settlement."""

    @pytest.mark.asyncio
    async def test_credit_package_adds_addon_credits(self, session, session_factory, catalog, user, payment_provider):
        service = PurchaseService(session, payment_provider)
        checkout = await service.checkout(user.id, PlanType.CREDIT_PACKAGE, "credits-1k")
        signature = payment_provider.sign(checkout.order_id, "pay_123")

        transaction = await service.verify_payment(user.id, checkout.order_id, "pay_123", signature)

        assert transaction.credits_added == 1_000
        assert transaction.amount_paid == Decimal("10.00")
        refreshed = await refresh_user(session_factory, user.id)
        assert (refreshed.plan_credits, refreshed.addon_credits) == (100, 1_000)

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, session, session_factory, catalog, user, payment_provider):
        service = PurchaseService(session, payment_provider)
        checkout = await service.checkout(user.id, PlanType.CREDIT_PACKAGE, "credits-1k")
        signature = payment_provider.sign(checkout.order_id, "pay_123")

        first = await service.verify_payment(user.id, checkout.order_id, "pay_123", signature)
        second = await service.verify_payment(user.id, checkout.order_id, "pay_123", signature)

        assert first.transaction_id == second.transaction_id
        refreshed = await refresh_user(session_factory, user.id)
        assert refreshed.addon_credits == 1_000
        count = await session.execute(select(func.count()).select_from(Transaction))
        assert count.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_bad_signature(self, session, catalog, user, payment_provider):
        service = PurchaseService(session, payment_provider)
        checkout = await service.checkout(user.id, PlanType.SUBSCRIPTION, "starter")
        with pytest.raises(PaymentVerificationError):
            await service.verify_payment(user.id, checkout.order_id, "pay_1", "deadbeef")

    @pytest.mark.asyncio
    async def test_other_users_order(self, session, catalog, user, make_user, payment_provider):
        service = PurchaseService(session, payment_provider)
        checkout = await service.checkout(user.id, PlanType.SUBSCRIPTION, "starter")
        stranger = await make_user()
        signature = payment_provider.sign(checkout.order_id, "pay_1")

        with pytest.raises(OrderNotFoundError):
            await service.verify_payment(stranger.id, checkout.order_id, "pay_1", signature)

    @pytest.mark.asyncio
    async def test_credits_coupon_bonus(self, session, session_factory, catalog, user, actor, payment_provider):
        await _coupon(
            session_factory,
            actor,
            code="BONUS500",
            discount_type=DiscountType.CREDITS,
            discount_value=Decimal("500"),
        )
        service = PurchaseService(session, payment_provider)
        checkout = await service.checkout(
            user.id, PlanType.SUBSCRIPTION, "starter", coupon_code="BONUS500"
        )
        assert checkout.bonus_credits == 500

        await service.verify_payment(
            user.id, checkout.order_id, "pay_9", payment_provider.sign(checkout.order_id, "pay_9")
        )

        refreshed = await refresh_user(session_factory, user.id)
        assert refreshed.plan_name == "starter"
        assert (refreshed.plan_credits, refreshed.addon_credits) == (5_000, 500)


class TestSubscription:
    @pytest.mark.asyncio
    async def test_cancel_reverts_to_free_and_keeps_credits(self, session, make_user, payment_provider):
        subscriber = await make_user(plan_name="pro", plan_credits=40_000, credits_limit=50_000)

        subscription = await PurchaseService(session, payment_provider).cancel_subscription(
            subscriber.id
        )

        assert subscription.plan_name == "free"
        assert subscription.credits_limit == 100
        assert subscription.plan_credits == 40_000

    @pytest.mark.asyncio
    async def test_transactions_listed(self, session, catalog, user, payment_provider):
        service = PurchaseService(session, payment_provider)
        checkout = await service.checkout(user.id, PlanType.CREDIT_PACKAGE, "credits-1k")
        await service.verify_payment(
            user.id, checkout.order_id, "pay_1", payment_provider.sign(checkout.order_id, "pay_1")
        )

        transactions, total = await service.transactions(user.id)
        assert total == 1
        assert transactions[0].payment_id == "pay_1"
