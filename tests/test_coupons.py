"""
Tests for the coupon engine and coupon registry.

evaluate() is exercised directly with CouponTerms; CouponService against
the SQLite test database.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from app.db.models import Coupon
from app.exceptions import CouponNotEligibleError, CouponNotFoundError, DuplicateResourceError
from app.models.api import CouponCreateRequest, CouponUpdateRequest, DiscountType
from app.models.domain import CouponTerms, PurchaseContext
from app.services.coupons import CouponService, coupon_to_terms, evaluate, normalize_code

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

amounts = st.decimals(min_value=Decimal("0"), max_value=Decimal("100000"), places=2)


def _terms(**overrides) -> CouponTerms:
    fields = {
        "code": "SAVE20",
        "discount_type": DiscountType.PERCENTAGE,
        "discount_value": Decimal("20"),
    }
    fields.update(overrides)
    return CouponTerms(**fields)


# ============================================================================
# Pure evaluation
# ============================================================================


class TestEvaluateDiscounts:
    """Tests for discount arithmetic."""

    def test_percentage_capped_by_max_discount(self):
        """20% of 100 is 20, capped to 10."""
        result = evaluate(
            _terms(max_discount=Decimal("10")), PurchaseContext(amount=Decimal("100")), 0, NOW
        )
        assert result.eligible
        assert result.discount_amount == Decimal("10.00")
        assert result.adjusted_amount == Decimal("90.00")

    def test_percentage_rounds_to_cents(self):
        result = evaluate(
            _terms(discount_value=Decimal("15")), PurchaseContext(amount=Decimal("19.99")), 0, NOW
        )
        assert result.discount_amount == Decimal("3.00")
        assert result.adjusted_amount == Decimal("16.99")

    def test_fixed_floors_at_zero(self):
        result = evaluate(
            _terms(discount_type=DiscountType.FIXED, discount_value=Decimal("50")),
            PurchaseContext(amount=Decimal("19")),
            0,
            NOW,
        )
        assert result.adjusted_amount == Decimal("0.00")
        assert result.discount_amount == Decimal("19.00")

    def test_credits_add_bonus_without_discount(self):
        result = evaluate(
            _terms(discount_type=DiscountType.CREDITS, discount_value=Decimal("500")),
            PurchaseContext(amount=Decimal("79")),
            0,
            NOW,
        )
        assert result.eligible
        assert result.bonus_credits == 500
        assert result.adjusted_amount == Decimal("79.00")
        assert result.discount_amount == Decimal("0")


class TestEvaluateRejections:
    """Tests for the ordered rejection rules."""

    def test_inactive(self):
        result = evaluate(_terms(is_active=False), PurchaseContext(amount=Decimal("10")), 0, NOW)
        assert not result.eligible
        assert result.reason == "coupon is not active"
        assert result.adjusted_amount == Decimal("10.00")

    def test_not_started(self):
        terms = _terms(starts_at=NOW + timedelta(days=1))
        assert evaluate(terms, PurchaseContext(amount=Decimal("10")), 0, NOW).reason == (
            "coupon is not valid yet"
        )

    def test_expired(self):
        terms = _terms(expires_at=NOW - timedelta(seconds=1))
        assert evaluate(terms, PurchaseContext(amount=Decimal("10")), 0, NOW).reason == (
            "coupon has expired"
        )

    def test_naive_timestamps_treated_as_utc(self):
        terms = _terms(expires_at=datetime(2026, 2, 1))
        assert evaluate(terms, PurchaseContext(amount=Decimal("10")), 0, NOW).reason == (
            "coupon has expired"
        )

    def test_usage_limit(self):
        terms = _terms(max_uses=5, current_uses=5)
        assert evaluate(terms, PurchaseContext(amount=Decimal("10")), 0, NOW).reason == (
            "coupon usage limit reached"
        )

    def test_per_user_limit(self):
        terms = _terms(max_uses_per_user=2)
        context = PurchaseContext(amount=Decimal("10"))
        assert evaluate(terms, context, 1, NOW).eligible
        assert evaluate(terms, context, 2, NOW).reason == "you have already used this coupon"

    def test_minimum_purchase(self):
        terms = _terms(min_purchase_amount=Decimal("50"))
        result = evaluate(terms, PurchaseContext(amount=Decimal("49.99")), 0, NOW)
        assert result.reason == "minimum purchase amount is 50.00"

    def test_applicable_plans(self):
        terms = _terms(applicable_plans=("pro", "business"))
        assert evaluate(terms, PurchaseContext(amount=Decimal("79"), plan_slug="pro"), 0, NOW).eligible
        result = evaluate(terms, PurchaseContext(amount=Decimal("19"), plan_slug="starter"), 0, NOW)
        assert result.reason == "coupon does not apply to this plan"

    def test_first_failing_rule_wins(self):
        """An inactive, expired, used-up coupon reports inactivity."""
        terms = _terms(
            is_active=False,
            expires_at=NOW - timedelta(days=1),
            max_uses=1,
            current_uses=1,
        )
        assert evaluate(terms, PurchaseContext(amount=Decimal("10")), 5, NOW).reason == (
            "coupon is not active"
        )


class TestEvaluateProperties:
    """Property-based tests for evaluate()."""

    @given(amount=amounts, percent=st.integers(min_value=1, max_value=100))
    def test_percentage_never_negative_or_above_amount(self, amount, percent):
        result = evaluate(
            _terms(discount_value=Decimal(percent)), PurchaseContext(amount=amount), 0, NOW
        )
        assert Decimal("0") <= result.adjusted_amount <= amount
        assert result.adjusted_amount + result.discount_amount == amount

    @given(amount=amounts, value=st.decimals(min_value=Decimal("0.01"), max_value=Decimal("1000"), places=2))
    def test_fixed_never_negative(self, amount, value):
        result = evaluate(
            _terms(discount_type=DiscountType.FIXED, discount_value=value),
            PurchaseContext(amount=amount),
            0,
            NOW,
        )
        assert result.adjusted_amount >= 0

    @given(max_uses=st.integers(min_value=1, max_value=50), used_by_user=st.integers(min_value=0, max_value=5))
    def test_used_up_coupon_never_eligible(self, max_uses, used_by_user):
        terms = _terms(max_uses=max_uses, current_uses=max_uses, max_uses_per_user=10)
        result = evaluate(terms, PurchaseContext(amount=Decimal("100")), used_by_user, NOW)
        assert not result.eligible

    @given(amount=amounts)
    def test_rejection_leaves_amount_unchanged(self, amount):
        result = evaluate(_terms(is_active=False), PurchaseContext(amount=amount), 0, NOW)
        assert result.adjusted_amount == amount
        assert result.bonus_credits == 0

    @given(amount=amounts, percent=st.integers(min_value=101, max_value=500))
    def test_oversized_percentage_floors_at_zero(self, amount, percent):
        result = evaluate(
            _terms(discount_value=Decimal(percent)), PurchaseContext(amount=amount), 0, NOW
        )
        assert result.adjusted_amount == Decimal("0.00")
        assert result.discount_amount == amount


def test_normalize_code():
    assert normalize_code("  save20 ") == "SAVE20"


# ============================================================================
# Registry
# ============================================================================


def _create_request(**overrides) -> CouponCreateRequest:
    fields = {
        "code": "save20",
        "discount_type": DiscountType.PERCENTAGE,
        "discount_value": Decimal("20"),
        "max_discount": Decimal("10"),
    }
    fields.update(overrides)
    return CouponCreateRequest(**fields)


class TestCouponService:
    """Tests for CouponService against the database."""

    @pytest.mark.asyncio
    async def test_create_normalizes_code(self, session, actor):
        coupon = await CouponService(session).create(_create_request(), actor)
        assert coupon.code == "SAVE20"
        assert coupon.current_uses == 0

    @pytest.mark.asyncio
    async def test_duplicate_code_rejected(self, session, actor):
        service = CouponService(session)
        await service.create(_create_request(), actor)
        with pytest.raises(DuplicateResourceError):
            await service.create(_create_request(code="SAVE20 "), actor)

    @pytest.mark.asyncio
    async def test_get_by_code_missing(self, session):
        with pytest.raises(CouponNotFoundError):
            await CouponService(session).get_by_code("NOPE")

    @pytest.mark.asyncio
    async def test_evaluate_for_user(self, session, actor, user):
        service = CouponService(session)
        await service.create(_create_request(), actor)
        coupon, evaluation = await service.evaluate_for_user("save20", user.id, Decimal("100"), "pro")
        assert coupon.code == "SAVE20"
        assert evaluation.adjusted_amount == Decimal("90.00")

    @pytest.mark.asyncio
    async def test_redeem_is_idempotent_per_payment(self, session, actor, user):
        service = CouponService(session)
        coupon = await service.create(_create_request(max_uses=10), actor)

        first = await service.redeem(coupon.id, user.id, "pay_1", Decimal("10"), 0)
        second = await service.redeem(coupon.id, user.id, "pay_1", Decimal("10"), 0)
        await session.commit()

        assert first.id == second.id
        refreshed = await session.get(Coupon, coupon.id)
        assert refreshed.current_uses == 1
        assert await service.user_redemptions(coupon.id, user.id) == 1

    @pytest.mark.asyncio
    async def test_redeem_refuses_second_use_by_same_user(self, session, actor, user):
        service = CouponService(session)
        coupon = await service.create(_create_request(), actor)
        await service.redeem(coupon.id, user.id, "pay_1", Decimal("10"), 0)

        with pytest.raises(CouponNotEligibleError, match="already used"):
            await service.redeem(coupon.id, user.id, "pay_2", Decimal("10"), 0)

    @pytest.mark.asyncio
    async def test_redeem_refuses_when_used_up(self, session, actor, make_user):
        service = CouponService(session)
        coupon = await service.create(_create_request(max_uses=1), actor)
        first, second = await make_user(), await make_user()
        await service.redeem(coupon.id, first.id, "pay_1", Decimal("10"), 0)

        with pytest.raises(CouponNotEligibleError, match="usage limit"):
            await service.redeem(coupon.id, second.id, "pay_2", Decimal("10"), 0)

        terms = coupon_to_terms(await session.get(Coupon, coupon.id))
        assert not evaluate(terms, PurchaseContext(amount=Decimal("100")), 0).eligible

    @pytest.mark.asyncio
    async def test_delete(self, session, actor):
        service = CouponService(session)
        coupon = await service.create(_create_request(), actor)
        await service.delete(coupon.id, actor)
        with pytest.raises(CouponNotFoundError):
            await service.get_by_code("SAVE20")

    @pytest.mark.asyncio
    async def test_update_rejects_percentage_over_100(self, session, actor, user):
        service = CouponService(session)
        coupon = await service.create(
            _create_request(code="HALF", discount_value=Decimal("50"), max_discount=None), actor
        )

        with pytest.raises(CouponNotEligibleError, match="cannot exceed 100"):
            await service.update(coupon.id, CouponUpdateRequest(discount_value=Decimal("150")), actor)

        stored = await service.get_by_code("HALF")
        assert stored.discount_value == Decimal("50")
        _, evaluation = await service.evaluate_for_user("HALF", user.id, Decimal("100"), None)
        assert evaluation.adjusted_amount == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_update_rejects_expiry_before_start(self, session, actor):
        service = CouponService(session)
        coupon = await service.create(
            _create_request(code="WINDOW", starts_at=datetime(2026, 1, 1, tzinfo=UTC)), actor
        )

        with pytest.raises(CouponNotEligibleError, match="expires_at"):
            await service.update(
                coupon.id, CouponUpdateRequest(expires_at=datetime(2025, 1, 1, tzinfo=UTC)), actor
            )

        assert (await service.get_by_code("WINDOW")).expires_at is None

    @pytest.mark.asyncio
    async def test_update_rejects_fractional_credits(self, session, actor):
        service = CouponService(session)
        coupon = await service.create(
            _create_request(
                code="BONUS",
                discount_type=DiscountType.CREDITS,
                discount_value=Decimal("100"),
                max_discount=None,
            ),
            actor,
        )

        with pytest.raises(CouponNotEligibleError, match="whole number"):
            await service.update(coupon.id, CouponUpdateRequest(discount_value=Decimal("2.5")), actor)

    @pytest.mark.asyncio
    async def test_valid_update_applies(self, session, actor):
        service = CouponService(session)
        coupon = await service.create(_create_request(), actor)

        updated = await service.update(
            coupon.id, CouponUpdateRequest(discount_value=Decimal("100")), actor
        )

        assert updated.discount_value == Decimal("100")
