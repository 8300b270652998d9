"""
Credit Ledger - the single interface through which balances change.

NO DICTIONARIES - All operations use strongly typed domain models.

Every mutation runs inside CreditLedger.locked(user_id), which serializes
work on one user's balance:
1. In-process per-user asyncio.Lock
2. SELECT ... FOR UPDATE on the user row
3. Commit on success, rollback on any error

Lock order is always user row first, then job/reservation rows.
"""

import asyncio
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import CreditReservation, Transaction, User
from app.exceptions import (
    DataIntegrityError,
    InsufficientCreditsError,
    ReservationError,
    UserNotFoundError,
    WriteVerificationError,
)
from app.models.api import PlanType, ReservationStatus, TransactionStatus, TransactionType
from app.models.domain import ActorContext, CreditChange, ReservationData, TransactionData
from app.observability import get_logger, metrics
from app.services.audit import record_activity

logger = get_logger(__name__)

_user_locks: "weakref.WeakValueDictionary[UUID, asyncio.Lock]" = weakref.WeakValueDictionary()


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _user_lock(user_id: UUID) -> asyncio.Lock:
    lock = _user_locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _user_locks[user_id] = lock
    return lock


# ============================================================================
# Bucket arithmetic (pure)
# ============================================================================


def split_debit(plan_credits: int, addon_credits: int, units: int) -> tuple[int, int]:
    """
    Debit units, plan credits first. Rejects (never clamps) an overdraw.

    Returns the new (plan_credits, addon_credits).
    """
    if units < 0:
        raise ValueError("Debit must be non-negative")
    balance = plan_credits + addon_credits
    if units > balance:
        raise InsufficientCreditsError(balance, units)
    from_plan = min(plan_credits, units)
    return plan_credits - from_plan, addon_credits - (units - from_plan)


def adjust_buckets(plan_credits: int, addon_credits: int, delta: int) -> tuple[int, int]:
    """
    Apply an admin delta: positive goes to add-on credits, negative drains
    plan credits first and clamps the balance at zero.
    """
    if delta >= 0:
        return plan_credits, addon_credits + delta
    removable = min(-delta, plan_credits + addon_credits)
    return split_debit(plan_credits, addon_credits, removable)


def absolute_buckets(value: int, credits_limit: int) -> tuple[int, int]:
    """Split an absolute balance into (plan, add-on), plan capped at the limit."""
    if value < 0:
        raise ValueError(f"Balance cannot be set negative, got {value}")
    plan = min(value, max(credits_limit, 0))
    return plan, value - plan


def next_renewal(current: datetime | None, now: datetime, period_days: int) -> datetime:
    """Advance a renewal date by whole periods until it is in the future."""
    period = timedelta(days=period_days)
    renews_at = current or now
    while renews_at <= now:
        renews_at += period
    return renews_at


class CreditLedger:
    """
    Credit ledger with write verification.

    Reservation protocol:
    - hold(): records a reservation; the balance is not touched yet
    - consume(): debits units against the hold as the job progresses
    - release(): settles the hold (consumed + refund == amount)
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize the ledger with a database session."""
        self.session = session

    # ========================================================================
    # Serialization boundary
    # ========================================================================

    @asynccontextmanager
    async def locked(self, user_id: UUID) -> AsyncIterator[User]:
        """
        Hold the per-user lock and the user row for one transaction.

        Commits when the block exits normally, rolls back otherwise.
        """
        async with _user_lock(user_id):
            try:
                user = await self._lock_user_for_update(user_id)
                if user is None:
                    raise UserNotFoundError(user_id)
                yield user
                await self.session.commit()
            except BaseException:
                await self.session.rollback()
                raise

    async def outstanding(self, user_id: UUID) -> int:
        """Credits held by unsettled reservations."""
        stmt = select(
            func.coalesce(func.sum(CreditReservation.amount - CreditReservation.consumed), 0)
        ).where(
            CreditReservation.user_id == user_id,
            CreditReservation.status == ReservationStatus.HELD.value,
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def available(self, user: User) -> int:
        """Balance minus outstanding holds."""
        return user.balance - await self.outstanding(user.id)

    # ========================================================================
    # Operations on a locked user (caller owns the transaction)
    # ========================================================================

    async def hold(self, user: User, amount: int, job_id: UUID) -> CreditReservation:
        """
        Reserve credits for a job.

        Raises:
            InsufficientCreditsError: balance - outstanding < amount
        """
        if amount <= 0:
            raise ValueError(f"Reservation amount must be positive, got {amount}")

        available = await self.available(user)
        if available < amount:
            metrics.record_reservation(False)
            logger.info(
                "reservation_rejected",
                user_id=str(user.id),
                available=available,
                required=amount,
            )
            raise InsufficientCreditsError(available, amount)

        reservation = CreditReservation(
            user_id=user.id,
            job_id=job_id,
            amount=amount,
            consumed=0,
            refunded=0,
            status=ReservationStatus.HELD.value,
        )
        self.session.add(reservation)
        await self.session.flush()

        verified = await self.session.get(CreditReservation, reservation.id)
        if verified is None:
            raise WriteVerificationError(f"Reservation {reservation.id} not found after insert")

        metrics.record_reservation(True)
        logger.info(
            "reservation_created",
            user_id=str(user.id),
            job_id=str(job_id),
            reservation_id=str(reservation.id),
            amount=amount,
            available_after=available - amount,
        )
        return verified

    async def consume(self, user: User, reservation: CreditReservation, units: int) -> None:
        """
        Debit units against a held reservation.

        Raises:
            ReservationError: reservation settled, or units exceed what is left
            InsufficientCreditsError: balance fell below the hold (admin removal)
        """
        if reservation.user_id != user.id:
            raise ReservationError(reservation.id, "reservation belongs to another user")
        if reservation.status != ReservationStatus.HELD.value:
            raise ReservationError(reservation.id, "reservation already settled")
        if reservation.consumed + units > reservation.amount:
            raise ReservationError(
                reservation.id,
                f"consuming {units} exceeds reserved amount "
                f"({reservation.consumed}/{reservation.amount})",
            )

        user.plan_credits, user.addon_credits = split_debit(
            user.plan_credits, user.addon_credits, units
        )
        reservation.consumed = reservation.consumed + units
        metrics.credits_consumed_total.inc(units)

    async def release(
        self, user: User, reservation: CreditReservation, consumed: int, refund: int
    ) -> CreditReservation:
        """
        Settle a reservation: debit any not-yet-consumed part of `consumed`,
        return `refund` to availability, and close the hold.

        Settling again with identical figures is a no-op.
        """
        if reservation.status == ReservationStatus.SETTLED.value:
            if reservation.consumed == consumed and reservation.refunded == refund:
                return reservation
            raise ReservationError(reservation.id, "reservation already settled")
        if consumed < 0 or refund < 0:
            raise ReservationError(reservation.id, "consumed and refund must be non-negative")
        if consumed + refund != reservation.amount:
            raise ReservationError(
                reservation.id,
                f"consumed ({consumed}) + refund ({refund}) != reserved ({reservation.amount})",
            )
        if consumed < reservation.consumed:
            raise ReservationError(
                reservation.id,
                f"cannot settle {consumed}, already consumed {reservation.consumed}",
            )

        remaining_debit = consumed - reservation.consumed
        if remaining_debit:
            user.plan_credits, user.addon_credits = split_debit(
                user.plan_credits, user.addon_credits, remaining_debit
            )
            metrics.credits_consumed_total.inc(remaining_debit)

        reservation.consumed = consumed
        reservation.refunded = refund
        reservation.status = ReservationStatus.SETTLED.value
        reservation.settled_at = _utc_now()
        await self.session.flush()

        await self._verify_user(user)
        logger.info(
            "reservation_settled",
            user_id=str(user.id),
            reservation_id=str(reservation.id),
            job_id=str(reservation.job_id),
            consumed=consumed,
            refunded=refund,
            balance_after=user.balance,
        )
        return reservation

    async def apply_adjustment(
        self, user: User, delta: int, reason: str | None
    ) -> Transaction:
        """Apply a signed admin delta, clamped at zero, and record a Transaction."""
        before = user.balance
        user.plan_credits, user.addon_credits = adjust_buckets(
            user.plan_credits, user.addon_credits, delta
        )
        return await self._record_transaction(
            user,
            TransactionType.ADMIN_ADJUSTMENT,
            before,
            description=reason or f"Admin adjustment of {delta:+d} credits",
        )

    async def apply_absolute(self, user: User, value: int, reason: str | None) -> Transaction:
        """Set the balance to `value` (>= 0) and record a Transaction."""
        before = user.balance
        user.plan_credits, user.addon_credits = absolute_buckets(value, user.credits_limit)
        return await self._record_transaction(
            user,
            TransactionType.ADMIN_ADJUSTMENT,
            before,
            description=reason or f"Admin set balance to {value} credits",
        )

    async def apply_plan(
        self,
        user: User,
        plan_name: str,
        credits_limit: int,
        description: str,
        transaction_type: TransactionType = TransactionType.SUBSCRIPTION,
        amount_paid: Decimal = Decimal("0"),
        currency: str | None = None,
        payment_id: str | None = None,
        bonus_credits: int = 0,
    ) -> Transaction:
        """Switch the user onto a plan with a fresh cycle of plan credits."""
        before = user.balance
        user.plan_name = plan_name
        user.credits_limit = credits_limit
        user.plan_credits = credits_limit
        user.addon_credits = user.addon_credits + bonus_credits
        user.plan_renews_at = _utc_now() + timedelta(days=settings.plan_period_days)
        return await self._record_transaction(
            user,
            transaction_type,
            before,
            description=description,
            amount_paid=amount_paid,
            currency=currency,
            payment_id=payment_id,
        )

    async def apply_addon(
        self,
        user: User,
        credits: int,
        description: str,
        amount_paid: Decimal,
        currency: str | None,
        payment_id: str | None,
    ) -> Transaction:
        """Add purchased (never-expiring) credits."""
        if credits < 0:
            raise ValueError("Purchased credits cannot be negative")
        before = user.balance
        user.addon_credits = user.addon_credits + credits
        return await self._record_transaction(
            user,
            TransactionType.CREDIT_PACKAGE,
            before,
            description=description,
            amount_paid=amount_paid,
            currency=currency,
            payment_id=payment_id,
        )

    async def credit_purchase(
        self,
        user: User,
        plan_type: PlanType,
        plan_name: str,
        credits: int,
        bonus_credits: int,
        amount_paid: Decimal,
        currency: str,
        payment_id: str | None,
    ) -> Transaction:
        """
        Credit a settled purchase on a locked user.

        A subscription switches the plan; a credit package adds add-on credits.
        Bonus credits from a coupon always land in add-on credits.
        """
        if plan_type == PlanType.SUBSCRIPTION:
            return await self.apply_plan(
                user,
                plan_name=plan_name,
                credits_limit=credits,
                description=f"Subscription: {plan_name}",
                amount_paid=amount_paid,
                currency=currency,
                payment_id=payment_id,
                bonus_credits=bonus_credits,
            )
        return await self.apply_addon(
            user,
            credits + bonus_credits,
            description=f"Credit package: {plan_name}",
            amount_paid=amount_paid,
            currency=currency,
            payment_id=payment_id,
        )

    async def apply_renewal(self, user: User, now: datetime | None = None) -> Transaction:
        """Reset plan credits to the plan limit; add-on credits carry over."""
        now = now or _utc_now()
        before = user.balance
        user.plan_credits = user.credits_limit
        user.plan_renews_at = next_renewal(user.plan_renews_at, now, settings.plan_period_days)
        return await self._record_transaction(
            user,
            TransactionType.SUBSCRIPTION,
            before,
            description=f"Plan renewal: {user.plan_name}",
        )

    # ========================================================================
    # Self-contained operations (each is one committed transaction)
    # ========================================================================

    async def reserve(self, user_id: UUID, amount: int, job_id: UUID) -> ReservationData:
        """
        Reserve `amount` credits for a job.

        Raises:
            UserNotFoundError: User doesn't exist
            InsufficientCreditsError: balance - outstanding < amount
        """
        async with self.locked(user_id) as user:
            reservation = await self.hold(user, amount, job_id)
        return reservation_to_domain(reservation)

    async def settle(self, reservation_id: UUID, consumed: int, refund: int) -> ReservationData:
        """
        Settle a reservation by id.

        Raises:
            ReservationError: unknown reservation or figures don't add up
        """
        reservation = await self.session.get(CreditReservation, reservation_id)
        if reservation is None:
            raise ReservationError(reservation_id, "reservation not found")

        async with self.locked(reservation.user_id) as user:
            locked_reservation = await self._lock_reservation(reservation_id)
            if locked_reservation is None:
                raise ReservationError(reservation_id, "reservation disappeared")
            await self.release(user, locked_reservation, consumed, refund)
        return reservation_to_domain(locked_reservation)

    async def adjust(
        self, user_id: UUID, delta: int, reason: str | None, actor: ActorContext
    ) -> CreditChange:
        """
        Admin-only signed adjustment; balance = max(0, balance + delta).

        Writes one Transaction and one Activity Log entry.
        """
        async with self.locked(user_id) as user:
            before = user.balance
            transaction = await self.apply_adjustment(user, delta, reason)
            record_activity(
                self.session,
                actor,
                action="credits_adjusted",
                target_type="user",
                target_id=user.id,
                target_label=user.email,
                details={
                    "delta": delta,
                    "credits_before": before,
                    "credits_after": user.balance,
                    "reason": reason,
                },
            )
            change = CreditChange(
                user_id=user.id,
                credits_before=before,
                credits_after=user.balance,
                transaction_id=transaction.id,
            )

        metrics.admin_credit_changes_total.labels(operation="adjust").inc()
        logger.info(
            "credits_adjusted",
            user_id=str(user_id),
            delta=delta,
            credits_before=change.credits_before,
            credits_after=change.credits_after,
            admin_id=str(actor.admin_id),
        )
        return change

    async def set_absolute(
        self, user_id: UUID, value: int, reason: str | None, actor: ActorContext
    ) -> CreditChange:
        """
        Admin-only absolute set; value must be >= 0.

        Writes one Transaction and one Activity Log entry.
        """
        if value < 0:
            raise ValueError(f"Balance cannot be set negative, got {value}")

        async with self.locked(user_id) as user:
            before = user.balance
            transaction = await self.apply_absolute(user, value, reason)
            record_activity(
                self.session,
                actor,
                action="credits_set",
                target_type="user",
                target_id=user.id,
                target_label=user.email,
                details={"credits_before": before, "credits_after": value, "reason": reason},
            )
            change = CreditChange(
                user_id=user.id,
                credits_before=before,
                credits_after=user.balance,
                transaction_id=transaction.id,
            )

        metrics.admin_credit_changes_total.labels(operation="set").inc()
        logger.info(
            "credits_set",
            user_id=str(user_id),
            credits_before=change.credits_before,
            credits_after=change.credits_after,
            admin_id=str(actor.admin_id),
        )
        return change

    async def renew_plan(self, user_id: UUID, now: datetime | None = None) -> bool:
        """Renew one user's plan if it is due. Returns True when renewed."""
        now = now or _utc_now()
        async with self.locked(user_id) as user:
            if user.plan_renews_at is None or user.plan_renews_at > now:
                return False
            await self.apply_renewal(user, now)
        logger.info("plan_renewed", user_id=str(user_id))
        return True

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _record_transaction(
        self,
        user: User,
        transaction_type: TransactionType,
        credits_before: int,
        description: str,
        amount_paid: Decimal = Decimal("0"),
        currency: str | None = None,
        payment_id: str | None = None,
    ) -> Transaction:
        credits_after = user.balance
        change = credits_after - credits_before
        transaction = Transaction(
            user_id=user.id,
            type=transaction_type.value,
            amount_paid=amount_paid,
            currency=currency or settings.default_currency,
            credits_added=max(change, 0),
            credits_deducted=max(-change, 0),
            credits_before=credits_before,
            credits_after=credits_after,
            description=description,
            status=TransactionStatus.COMPLETED.value,
            payment_id=payment_id,
        )
        self.session.add(transaction)
        await self.session.flush()

        verified = await self.session.get(Transaction, transaction.id)
        if verified is None:
            raise WriteVerificationError(f"Transaction {transaction.id} not found after insert")
        await self._verify_user(user)
        return verified

    async def _verify_user(self, user: User) -> None:
        expected_plan, expected_addon = user.plan_credits, user.addon_credits
        await self.session.flush()
        verified = await self.session.get(User, user.id)
        if verified is None:
            raise WriteVerificationError(f"User {user.id} disappeared after update")
        if verified.plan_credits < 0 or verified.addon_credits < 0:
            raise DataIntegrityError(f"Negative credit bucket for user {user.id}")
        if (verified.plan_credits, verified.addon_credits) != (expected_plan, expected_addon):
            raise DataIntegrityError(
                f"Credit mismatch for user {user.id}: expected "
                f"{expected_plan}+{expected_addon}, got "
                f"{verified.plan_credits}+{verified.addon_credits}"
            )

    async def _lock_user_for_update(self, user_id: UUID) -> User | None:
        """Lock user row for update (SELECT FOR UPDATE)."""
        stmt = (
            select(User)
            .where(User.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_reservation(self, reservation_id: UUID) -> CreditReservation | None:
        stmt = (
            select(CreditReservation)
            .where(CreditReservation.id == reservation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def lock_reservation_for_job(self, job_id: UUID) -> CreditReservation | None:
        """Lock the reservation of a job (call inside locked())."""
        stmt = (
            select(CreditReservation)
            .where(CreditReservation.job_id == job_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()


def reservation_to_domain(reservation: CreditReservation) -> ReservationData:
    """Convert ORM reservation to domain model."""
    return ReservationData(
        reservation_id=reservation.id,
        user_id=reservation.user_id,
        job_id=reservation.job_id,
        amount=reservation.amount,
        consumed=reservation.consumed,
        refunded=reservation.refunded,
        status=ReservationStatus(reservation.status),
        created_at=reservation.created_at,
        settled_at=reservation.settled_at,
    )


def transaction_to_domain(transaction: Transaction) -> TransactionData:
    """Convert ORM transaction to domain model."""
    return TransactionData(
        transaction_id=transaction.id,
        user_id=transaction.user_id,
        type=TransactionType(transaction.type),
        amount_paid=transaction.amount_paid,
        currency=transaction.currency,
        credits_added=transaction.credits_added,
        credits_deducted=transaction.credits_deducted,
        credits_before=transaction.credits_before,
        credits_after=transaction.credits_after,
        description=transaction.description,
        status=TransactionStatus(transaction.status),
        payment_id=transaction.payment_id,
        created_at=transaction.created_at,
    )
