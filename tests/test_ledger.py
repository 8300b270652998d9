"""
Tests for the credit ledger.

Bucket arithmetic is tested as pure functions (with Hypothesis); the
reservation protocol and admin operations run against the test database.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from hypothesis import given
from hypothesis import strategies as st
from sqlalchemy import select

from app.db.models import AdminActivityLog, Transaction
from app.exceptions import InsufficientCreditsError, ReservationError, UserNotFoundError
from app.models.api import ReservationStatus
from app.services.ledger import (
    CreditLedger,
    absolute_buckets,
    adjust_buckets,
    next_renewal,
    split_debit,
)
from conftest import refresh_user

buckets = st.integers(min_value=0, max_value=1_000_000)


# ============================================================================
# Bucket arithmetic
# ============================================================================


class TestSplitDebit:
    """Tests for split_debit."""

    def test_plan_credits_drawn_first(self):
        assert split_debit(30, 50, 40) == (0, 40)

    def test_exact_balance(self):
        assert split_debit(30, 50, 80) == (0, 0)

    def test_overdraw_rejected(self):
        with pytest.raises(InsufficientCreditsError) as exc_info:
            split_debit(30, 50, 81)
        assert exc_info.value.available == 80
        assert exc_info.value.required == 81

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            split_debit(10, 0, -1)

    @given(plan=buckets, addon=buckets, data=st.data())
    def test_conserves_credits(self, plan, addon, data):
        units = data.draw(st.integers(min_value=0, max_value=plan + addon))
        new_plan, new_addon = split_debit(plan, addon, units)
        assert new_plan >= 0 and new_addon >= 0
        assert new_plan + new_addon == plan + addon - units


class TestAdjustBuckets:
    """Tests for adjust_buckets."""

    def test_positive_goes_to_addon(self):
        assert adjust_buckets(100, 0, 500) == (100, 500)

    def test_negative_drains_plan_first(self):
        assert adjust_buckets(100, 50, -120) == (0, 30)

    def test_clamps_at_zero(self):
        """Removing more than the balance leaves zero, not an error."""
        assert adjust_buckets(100, 50, -1000) == (0, 0)

    @given(plan=buckets, addon=buckets, delta=st.integers(min_value=-2_000_000, max_value=2_000_000))
    def test_balance_is_clamped_sum(self, plan, addon, delta):
        new_plan, new_addon = adjust_buckets(plan, addon, delta)
        assert new_plan >= 0 and new_addon >= 0
        assert new_plan + new_addon == max(0, plan + addon + delta)


class TestAbsoluteBuckets:
    def test_plan_capped_at_limit(self):
        assert absolute_buckets(700, 500) == (500, 200)

    def test_below_limit(self):
        assert absolute_buckets(40, 500) == (40, 0)

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            absolute_buckets(-1, 100)

    @given(value=buckets, limit=buckets)
    def test_sums_to_value(self, value, limit):
        plan, addon = absolute_buckets(value, limit)
        assert plan + addon == value
        assert 0 <= plan <= limit


class TestNextRenewal:
    def test_advances_whole_periods(self):
        now = datetime(2026, 5, 1, tzinfo=UTC)
        current = now - timedelta(days=65)
        assert next_renewal(current, now, 30) == current + timedelta(days=90)

    def test_missing_date_starts_from_now(self):
        now = datetime(2026, 5, 1, tzinfo=UTC)
        assert next_renewal(None, now, 30) == now + timedelta(days=30)


# ============================================================================
# Reservation protocol
# ============================================================================


class TestReservations:
    """Tests for reserve/settle against the database."""

    @pytest.mark.asyncio
    async def test_reserve_holds_without_debiting(self, session, session_factory, user):
        ledger = CreditLedger(session)
        reservation = await ledger.reserve(user.id, 60, uuid4())

        assert reservation.status == ReservationStatus.HELD
        assert reservation.outstanding == 60
        refreshed = await refresh_user(session_factory, user.id)
        assert refreshed.balance == 100
        assert await ledger.available(refreshed) == 40

    @pytest.mark.asyncio
    async def test_concurrent_reservations_cannot_overcommit(self, session_factory, user):
        """Three sessions race to hold 60 of 100 credits; exactly one wins."""

        async def attempt() -> bool:
            async with session_factory() as racer:
                try:
                    await CreditLedger(racer).reserve(user.id, 60, uuid4())
                except InsufficientCreditsError:
                    return False
                return True

        outcomes = await asyncio.gather(attempt(), attempt(), attempt())

        assert sorted(outcomes) == [False, False, True]
        async with session_factory() as check:
            ledger = CreditLedger(check)
            assert await ledger.outstanding(user.id) == 60
            refreshed = await refresh_user(session_factory, user.id)
            assert await ledger.outstanding(user.id) <= refreshed.balance
            assert await ledger.available(refreshed) == 40

    @pytest.mark.asyncio
    async def test_reserve_beyond_available_rejected(self, session, user):
        ledger = CreditLedger(session)
        await ledger.reserve(user.id, 60, uuid4())

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.reserve(user.id, 41, uuid4())
        assert exc_info.value.available == 40

    @pytest.mark.asyncio
    async def test_reserve_unknown_user(self, session):
        with pytest.raises(UserNotFoundError):
            await CreditLedger(session).reserve(uuid4(), 1, uuid4())

    @pytest.mark.asyncio
    async def test_settle_debits_consumed_and_refunds_rest(self, session, session_factory, user):
        ledger = CreditLedger(session)
        reservation = await ledger.reserve(user.id, 100, uuid4())

        settled = await ledger.settle(reservation.reservation_id, consumed=40, refund=60)

        assert settled.status == ReservationStatus.SETTLED
        assert settled.consumed + settled.refunded == settled.amount
        refreshed = await refresh_user(session_factory, user.id)
        assert refreshed.balance == 60
        assert await ledger.available(refreshed) == 60

    @pytest.mark.asyncio
    async def test_settle_twice_with_same_figures_is_noop(self, session, session_factory, user):
        ledger = CreditLedger(session)
        reservation = await ledger.reserve(user.id, 10, uuid4())
        await ledger.settle(reservation.reservation_id, consumed=10, refund=0)
        await ledger.settle(reservation.reservation_id, consumed=10, refund=0)

        refreshed = await refresh_user(session_factory, user.id)
        assert refreshed.balance == 90

    @pytest.mark.asyncio
    async def test_settle_with_different_figures_rejected(self, session, user):
        ledger = CreditLedger(session)
        reservation = await ledger.reserve(user.id, 10, uuid4())
        await ledger.settle(reservation.reservation_id, consumed=10, refund=0)

        with pytest.raises(ReservationError, match="already settled"):
            await ledger.settle(reservation.reservation_id, consumed=0, refund=10)

    @pytest.mark.asyncio
    async def test_settle_figures_must_add_up(self, session, user):
        ledger = CreditLedger(session)
        reservation = await ledger.reserve(user.id, 10, uuid4())

        with pytest.raises(ReservationError, match="!="):
            await ledger.settle(reservation.reservation_id, consumed=4, refund=4)

    @pytest.mark.asyncio
    async def test_consume_then_release(self, session, session_factory, user):
        ledger = CreditLedger(session)
        reservation = await ledger.reserve(user.id, 10, uuid4())

        async with ledger.locked(user.id) as locked_user:
            row = await ledger.lock_reservation_for_job(reservation.job_id)
            await ledger.consume(locked_user, row, 3)

        async with ledger.locked(user.id) as locked_user:
            row = await ledger.lock_reservation_for_job(reservation.job_id)
            with pytest.raises(ReservationError, match="exceeds"):
                await ledger.consume(locked_user, row, 8)

        async with ledger.locked(user.id) as locked_user:
            row = await ledger.lock_reservation_for_job(reservation.job_id)
            await ledger.release(locked_user, row, consumed=3, refund=7)

        refreshed = await refresh_user(session_factory, user.id)
        assert refreshed.balance == 97


# ============================================================================
# Admin operations
# ============================================================================


class TestAdminOperations:
    """Tests for adjust, set_absolute and renewals."""

    @pytest.mark.asyncio
    async def test_adjust_writes_transaction_and_activity(self, session, session_factory, user, actor):
        change = await CreditLedger(session).adjust(user.id, 500, "goodwill", actor)

        assert (change.credits_before, change.credits_after) == (100, 600)
        transaction = await session.get(Transaction, change.transaction_id)
        assert transaction.credits_added == 500
        assert transaction.description == "goodwill"

        entries = (await session.execute(select(AdminActivityLog))).scalars().all()
        assert [entry.action for entry in entries] == ["credits_adjusted"]
        assert entries[0].details["delta"] == 500

    @pytest.mark.asyncio
    async def test_adjust_clamps_at_zero(self, session, user, actor):
        change = await CreditLedger(session).adjust(user.id, -1000, None, actor)
        assert change.credits_after == 0

    @pytest.mark.asyncio
    async def test_set_absolute(self, session, session_factory, user, actor):
        change = await CreditLedger(session).set_absolute(user.id, 250, None, actor)

        assert change.credits_after == 250
        refreshed = await refresh_user(session_factory, user.id)
        assert (refreshed.plan_credits, refreshed.addon_credits) == (100, 150)

    @pytest.mark.asyncio
    async def test_set_absolute_negative_rejected(self, session, user, actor):
        with pytest.raises(ValueError):
            await CreditLedger(session).set_absolute(user.id, -5, None, actor)

    @pytest.mark.asyncio
    async def test_renew_plan_resets_plan_credits_only(self, session, session_factory, make_user):
        now = datetime.now(UTC)
        due = await make_user(
            plan_credits=3,
            addon_credits=20,
            credits_limit=5000,
            plan_name="starter",
            plan_renews_at=now - timedelta(hours=1),
        )

        assert await CreditLedger(session).renew_plan(due.id, now) is True

        refreshed = await refresh_user(session_factory, due.id)
        assert (refreshed.plan_credits, refreshed.addon_credits) == (5000, 20)
        assert refreshed.plan_renews_at > now

    @pytest.mark.asyncio
    async def test_renew_plan_not_due(self, session, make_user):
        later = await make_user(plan_renews_at=datetime.now(UTC) + timedelta(days=3))
        assert await CreditLedger(session).renew_plan(later.id) is False
