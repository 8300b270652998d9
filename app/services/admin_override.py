"""
Admin Override Layer - privileged operations on users, jobs and credits.

NO DICTIONARIES - All operations use strongly typed domain models.

Every override goes through the ledger's locking and invariant checks and
writes exactly one admin activity log entry in the same transaction as the
change. Bulk operations run per user with failure isolation and write one
summary entry for the batch.
"""

import csv
import io
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import Select, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import (
    AdminActivityLog,
    APIKey,
    CreditReservation,
    Transaction,
    User,
    ValidationJob,
    ValidationServer,
)
from app.exceptions import AuthorizationError, UserNotFoundError, ValidatorServiceError
from app.models.api import (
    AdminUserUpdateRequest,
    BulkAction,
    JobStatus,
    PlanType,
    ReservationStatus,
    TransactionType,
    UserRole,
)
from app.models.domain import (
    ActorContext,
    AdminStats,
    BulkOutcome,
    BulkResult,
    CreditChange,
    JobData,
    TransactionData,
)
from app.observability import get_logger, metrics
from app.services.audit import record_activity
from app.services.auth import AuthService, purge_user_rows
from app.services.jobs import JobStore, job_to_domain
from app.services.ledger import CreditLedger, transaction_to_domain
from app.services.plans import PlanService

logger = get_logger(__name__)

USER_CSV_COLUMNS = (
    "id",
    "email",
    "name",
    "role",
    "is_active",
    "plan",
    "credits",
    "plan_credits",
    "addon_credits",
    "created_at",
)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class AdminOverrideService:
    """Privileged operations, each audited."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.ledger = CreditLedger(session)

    # ========================================================================
    # Users
    # ========================================================================

    async def list_users(
        self,
        page: int = 1,
        page_size: int = 20,
        search: str | None = None,
        role: UserRole | None = None,
        is_active: bool | None = None,
    ) -> tuple[list[tuple[User, int, int]], int]:
        """Users with their key and job counts, newest first."""
        conditions = []
        if search:
            pattern = f"%{search.strip()}%"
            conditions.append(or_(User.email.ilike(pattern), User.name.ilike(pattern)))
        if role is not None:
            conditions.append(User.role == role.value)
        if is_active is not None:
            conditions.append(User.is_active == is_active)

        count_stmt = select(func.count()).select_from(User).where(*conditions)
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(User)
            .where(*conditions)
            .order_by(User.created_at.desc(), User.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        users = (await self.session.execute(stmt)).scalars().all()

        rows = []
        for user in users:
            keys_count, jobs_count = await self._owned_counts(user.id)
            rows.append((user, keys_count, jobs_count))
        return rows, total

    async def get_user(self, user_id: UUID) -> tuple[User, int, int]:
        user = await self.session.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        keys_count, jobs_count = await self._owned_counts(user_id)
        return user, keys_count, jobs_count

    async def update_user(
        self, user_id: UUID, request: AdminUserUpdateRequest, actor: ActorContext
    ) -> User:
        """
        Change name, role or active flag.

        Raises:
            AuthorizationError: An admin demoting or deactivating themselves
        """
        changes = request.model_dump(exclude_unset=True, exclude_none=True)
        if user_id == actor.admin_id and (
            changes.get("role") == UserRole.USER or changes.get("is_active") is False
        ):
            raise AuthorizationError("cannot demote or deactivate your own account")

        async with self.ledger.locked(user_id) as user:
            if "name" in changes:
                user.name = changes["name"].strip()
            if "role" in changes:
                user.role = UserRole(changes["role"]).value
            if "is_active" in changes:
                user.is_active = changes["is_active"]
            record_activity(
                self.session,
                actor,
                action="user_updated",
                target_type="user",
                target_id=user.id,
                target_label=user.email,
                details=changes,
            )

        metrics.admin_operations_total.labels(operation="user_updated").inc()
        logger.info("admin_user_updated", user_id=str(user_id), fields=sorted(changes))
        return user

    async def delete_user(self, user_id: UUID, actor: ActorContext) -> None:
        """Delete a user; cascades to keys, jobs, reservations and history."""
        if user_id == actor.admin_id:
            raise AuthorizationError("cannot delete your own account")

        async with self.ledger.locked(user_id) as user:
            email = user.email
            counts = await purge_user_rows(self.session, user)
            record_activity(
                self.session,
                actor,
                action="user_deleted",
                target_type="user",
                target_id=user_id,
                target_label=email,
                details=counts,
            )

        metrics.admin_operations_total.labels(operation="user_deleted").inc()
        logger.info("admin_user_deleted", user_id=str(user_id), **counts)

    async def reset_password(self, user_id: UUID, new_password: str, actor: ActorContext) -> None:
        async with self.ledger.locked(user_id) as user:
            AuthService(self.session).set_password(user, new_password)
            record_activity(
                self.session,
                actor,
                action="password_reset",
                target_type="user",
                target_id=user.id,
                target_label=user.email,
            )

        metrics.admin_operations_total.labels(operation="password_reset").inc()
        logger.info("admin_password_reset", user_id=str(user_id))

    # ========================================================================
    # Credits (thin wrappers over the ledger)
    # ========================================================================

    async def adjust_credits(
        self, user_id: UUID, amount: int, reason: str | None, actor: ActorContext
    ) -> CreditChange:
        return await self.ledger.adjust(user_id, amount, reason, actor)

    async def set_credits(
        self, user_id: UUID, credits: int, reason: str | None, actor: ActorContext
    ) -> CreditChange:
        return await self.ledger.set_absolute(user_id, credits, reason, actor)

    # ========================================================================
    # Bulk operations
    # ========================================================================

    async def bulk(
        self,
        user_ids: list[UUID],
        action: BulkAction,
        actor: ActorContext,
        amount: int | None = None,
        plan: str | None = None,
    ) -> BulkResult:
        """
        Apply one action to each user in its own transaction.

        A failing user (missing, or refused by the ledger) is reported in the
        outcome list and does not affect the others.

        Raises:
            PlanNotFoundError: set_plan with an unknown subscription plan
        """
        plan_slug = plan_credits = None
        if action == BulkAction.SET_PLAN:
            target_plan = await PlanService(self.session).get_by_slug(
                plan or "", PlanType.SUBSCRIPTION
            )
            plan_slug, plan_credits = target_plan.slug, target_plan.credits
            await self.session.rollback()

        outcomes: list[BulkOutcome] = []
        for user_id in dict.fromkeys(user_ids):
            try:
                await self._bulk_one(user_id, action, actor, amount, plan_slug, plan_credits)
                outcomes.append(BulkOutcome(user_id=user_id, success=True))
            except UserNotFoundError:
                outcomes.append(BulkOutcome(user_id=user_id, success=False, error="user not found"))
            except (ValidatorServiceError, SQLAlchemyError) as e:
                logger.warning("bulk_user_failed", user_id=str(user_id), action=action.value, error=str(e))
                outcomes.append(BulkOutcome(user_id=user_id, success=False, error=str(e)))

        result = BulkResult(action=action, outcomes=tuple(outcomes))
        record_activity(
            self.session,
            actor,
            action=f"bulk_{action.value}",
            target_type="user",
            target_label=f"{len(outcomes)} users",
            details={
                "user_ids": [outcome.user_id for outcome in outcomes],
                "succeeded": result.succeeded,
                "failed": result.failed,
                "failed_ids": [outcome.user_id for outcome in outcomes if not outcome.success],
                "amount": amount,
                "plan": plan_slug,
            },
        )
        await self.session.commit()

        metrics.admin_operations_total.labels(operation=f"bulk_{action.value}").inc()
        logger.info(
            "admin_bulk_operation",
            action=action.value,
            succeeded=result.succeeded,
            failed=result.failed,
        )
        return result

    async def _bulk_one(
        self,
        user_id: UUID,
        action: BulkAction,
        actor: ActorContext,
        amount: int | None,
        plan_slug: str | None,
        plan_credits: int | None,
    ) -> None:
        if user_id == actor.admin_id and action in (BulkAction.DEACTIVATE, BulkAction.DELETE):
            raise AuthorizationError("cannot apply to your own account")

        async with self.ledger.locked(user_id) as user:
            if action == BulkAction.ACTIVATE:
                user.is_active = True
            elif action == BulkAction.DEACTIVATE:
                user.is_active = False
            elif action == BulkAction.MAKE_ADMIN:
                user.role = UserRole.ADMIN.value
            elif action == BulkAction.ADD_CREDITS:
                await self.ledger.apply_adjustment(
                    user, amount or 0, f"Bulk credit adjustment of {amount:+d} credits"
                )
            elif action == BulkAction.SET_PLAN:
                await self.ledger.apply_plan(
                    user,
                    plan_name=plan_slug or "",
                    credits_limit=plan_credits or 0,
                    description=f"Admin plan change: {plan_slug}",
                    transaction_type=TransactionType.ADMIN_ADJUSTMENT,
                )
            elif action == BulkAction.DELETE:
                await purge_user_rows(self.session, user)

    # ========================================================================
    # Jobs and transactions
    # ========================================================================

    async def list_jobs(
        self, page: int = 1, page_size: int = 20, status: JobStatus | None = None
    ) -> tuple[list[tuple[JobData, str | None]], int]:
        """Every user's jobs with the owner's email, newest first."""
        conditions = []
        if status is not None:
            conditions.append(ValidationJob.status == status.value)

        count_stmt = select(func.count()).select_from(ValidationJob).where(*conditions)
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(ValidationJob, CreditReservation, User.email)
            .outerjoin(CreditReservation, CreditReservation.job_id == ValidationJob.id)
            .outerjoin(User, User.id == ValidationJob.user_id)
            .where(*conditions)
            .order_by(ValidationJob.created_at.desc(), ValidationJob.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        rows = (await self.session.execute(stmt)).all()
        return [(job_to_domain(job, reservation), email) for job, reservation, email in rows], total

    async def cancel_job(self, job_id: UUID, actor: ActorContext) -> tuple[JobData, bool]:
        """Cancel any user's job; refunds like a user cancel."""
        view, cancelled = await JobStore(self.session).cancel_job(job_id, actor=actor)
        metrics.admin_operations_total.labels(operation="job_cancelled").inc()
        return view, cancelled

    async def list_transactions(
        self,
        page: int = 1,
        page_size: int = 20,
        transaction_type: TransactionType | None = None,
    ) -> tuple[list[tuple[TransactionData, str | None]], int]:
        conditions = []
        if transaction_type is not None:
            conditions.append(Transaction.type == transaction_type.value)

        count_stmt = select(func.count()).select_from(Transaction).where(*conditions)
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(Transaction, User.email)
            .outerjoin(User, User.id == Transaction.user_id)
            .where(*conditions)
            .order_by(Transaction.created_at.desc(), Transaction.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        rows = (await self.session.execute(stmt)).all()
        return [(transaction_to_domain(row), email) for row, email in rows], total

    # ========================================================================
    # Activity log and reporting
    # ========================================================================

    async def list_activity(
        self,
        page: int = 1,
        page_size: int = 20,
        action: str | None = None,
        target_type: str | None = None,
    ) -> tuple[list[AdminActivityLog], int]:
        conditions = []
        if action:
            conditions.append(AdminActivityLog.action == action)
        if target_type:
            conditions.append(AdminActivityLog.target_type == target_type)

        count_stmt = select(func.count()).select_from(AdminActivityLog).where(*conditions)
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(AdminActivityLog)
            .where(*conditions)
            .order_by(AdminActivityLog.created_at.desc(), AdminActivityLog.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        entries = (await self.session.execute(stmt)).scalars().all()
        return list(entries), total

    async def stats(self) -> AdminStats:
        """Dashboard overview."""
        last_24h = _utc_now() - timedelta(hours=24)

        total_users = await self._scalar(select(func.count(User.id)))
        active_users = await self._scalar(select(func.count(User.id)).where(User.is_active.is_(True)))
        admin_users = await self._scalar(
            select(func.count(User.id)).where(User.role == UserRole.ADMIN.value)
        )

        status_rows = (
            await self.session.execute(
                select(ValidationJob.status, func.count(ValidationJob.id)).group_by(
                    ValidationJob.status
                )
            )
        ).all()
        jobs_by_status = {job_status: count for job_status, count in status_rows}
        active_jobs = sum(
            jobs_by_status.get(job_status.value, 0)
            for job_status in (
                JobStatus.CREDITS_RESERVED,
                JobStatus.QUEUED,
                JobStatus.PROCESSING,
            )
        )

        total_emails_validated = await self._scalar(
            select(func.coalesce(func.sum(ValidationJob.processed_emails), 0))
        )
        credits_in_circulation = await self._scalar(
            select(func.coalesce(func.sum(User.plan_credits + User.addon_credits), 0))
        )
        credits_reserved = await self._scalar(
            select(
                func.coalesce(func.sum(CreditReservation.amount - CreditReservation.consumed), 0)
            ).where(CreditReservation.status == ReservationStatus.HELD.value)
        )
        active_api_keys = await self._scalar(
            select(func.count(APIKey.id)).where(
                APIKey.is_active.is_(True), APIKey.revoked_at.is_(None)
            )
        )
        revenue = (
            await self.session.execute(
                select(func.coalesce(func.sum(Transaction.amount_paid), 0))
            )
        ).scalar_one()
        transactions_last_24h = await self._scalar(
            select(func.count(Transaction.id)).where(Transaction.created_at >= last_24h)
        )
        healthy_servers = await self._scalar(
            select(func.count(ValidationServer.id)).where(
                ValidationServer.is_active.is_(True), ValidationServer.is_healthy.is_(True)
            )
        )

        return AdminStats(
            total_users=total_users,
            active_users=active_users,
            admin_users=admin_users,
            total_jobs=sum(jobs_by_status.values()),
            active_jobs=active_jobs,
            jobs_by_status=jobs_by_status,
            total_emails_validated=total_emails_validated,
            credits_in_circulation=credits_in_circulation,
            credits_reserved=credits_reserved,
            active_api_keys=active_api_keys,
            revenue_total=Decimal(revenue),
            transactions_last_24h=transactions_last_24h,
            healthy_servers=healthy_servers,
        )

    async def export_users_csv(self) -> str:
        stmt = select(User).order_by(User.created_at, User.id)
        users = (await self.session.execute(stmt)).scalars().all()

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(USER_CSV_COLUMNS)
        for user in users:
            writer.writerow(
                [
                    user.id,
                    user.email,
                    user.name,
                    user.role,
                    user.is_active,
                    user.plan_name,
                    user.balance,
                    user.plan_credits,
                    user.addon_credits,
                    user.created_at.isoformat(),
                ]
            )
        return buffer.getvalue()

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _owned_counts(self, user_id: UUID) -> tuple[int, int]:
        keys_count = await self._scalar(
            select(func.count(APIKey.id)).where(APIKey.user_id == user_id)
        )
        jobs_count = await self._scalar(
            select(func.count(ValidationJob.id)).where(ValidationJob.user_id == user_id)
        )
        return keys_count, jobs_count

    async def _scalar(self, stmt: Select[Any]) -> int:
        return int((await self.session.execute(stmt)).scalar_one())
