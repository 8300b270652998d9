"""
Job Store - validation job records, their results and cancellation.

NO DICTIONARIES - All operations use strongly typed domain models.

A job is created atomically with its credit reservation: if the reservation
is refused nothing is written. Cancellation refunds the unconsumed part of
the reservation in the same commit as the state transition.
"""

import csv
import io
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import CreditReservation, ValidationJob, ValidationResult
from app.exceptions import (
    EmailValidationError,
    InvalidJobTransitionError,
    JobNotFoundError,
    WriteVerificationError,
)
from app.models.api import JobStatus, JobType, ReservationStatus, ResultStatus
from app.models.domain import (
    ActorContext,
    EmailChecks,
    JobCounts,
    JobData,
    ResultData,
    UsageDayData,
    UsageSummary,
)
from app.observability import get_logger, metrics
from app.services import job_state
from app.services.audit import record_activity
from app.services.ledger import CreditLedger

logger = get_logger(__name__)

CSV_COLUMNS = (
    "email",
    "status",
    "score",
    "response_time_ms",
    "syntax_valid",
    "mx_found",
    "smtp_valid",
    "catch_all",
    "disposable",
    "role_based",
    "free_provider",
    "checked_at",
)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def job_to_domain(job: ValidationJob, reservation: CreditReservation | None = None) -> JobData:
    """Convert ORM job (and its reservation, if any) to domain model."""
    return JobData(
        job_id=job.id,
        user_id=job.user_id,
        type=JobType(job.type),
        status=JobStatus(job.status),
        total_emails=job.total_emails,
        processed_emails=job.processed_emails,
        counts=JobCounts(
            valid=job.valid_count,
            invalid=job.invalid_count,
            catch_all=job.catch_all_count,
            disposable=job.disposable_count,
            role_based=job.role_based_count,
            unknown=job.unknown_count,
        ),
        file_name=job.file_name,
        webhook_url=job.webhook_url,
        result_file=job.result_file,
        error_message=job.error_message,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        credits_reserved=reservation.amount if reservation else 0,
        credits_consumed=reservation.consumed if reservation else 0,
        credits_refunded=reservation.refunded if reservation else 0,
    )


def result_to_domain(result: ValidationResult) -> ResultData:
    """Convert ORM result row to domain model."""
    return ResultData(
        position=result.position,
        email=result.email,
        status=ResultStatus(result.status),
        score=result.score,
        checks=EmailChecks.from_json(result.checks) if result.checks is not None else None,
        response_time_ms=result.response_time_ms,
        checked_at=result.checked_at,
    )


class JobStore:
    """Validation job records and their lifecycle outside the worker."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize job store with database session."""
        self.session = session
        self.ledger = CreditLedger(session)

    # ========================================================================
    # Creation
    # ========================================================================

    async def create_job(
        self,
        user_id: UUID,
        emails: Sequence[str],
        job_type: JobType,
        webhook_url: str | None = None,
        file_name: str | None = None,
        api_key_id: UUID | None = None,
    ) -> JobData:
        """
        Reserve credits and create a job in credits_reserved with one pending
        result row per address, all in one transaction.

        Raises:
            EmailValidationError: No addresses, or more than max_emails_per_job
            InsufficientCreditsError: Reservation refused (nothing is created)
        """
        if not emails:
            raise EmailValidationError("no email addresses to validate")
        if len(emails) > settings.max_emails_per_job:
            raise EmailValidationError(
                f"a job may contain at most {settings.max_emails_per_job} addresses"
            )

        amount = len(emails) * settings.unit_cost
        job_id = uuid4()

        async with self.ledger.locked(user_id) as user:
            job = ValidationJob(
                id=job_id,
                user_id=user.id,
                api_key_id=api_key_id,
                type=job_type.value,
                status=JobStatus.CREDITS_RESERVED.value,
                total_emails=len(emails),
                processed_emails=0,
                valid_count=0,
                invalid_count=0,
                catch_all_count=0,
                disposable_count=0,
                role_based_count=0,
                unknown_count=0,
                file_name=file_name,
                webhook_url=webhook_url,
            )
            self.session.add(job)
            await self.session.flush()

            reservation = await self.ledger.hold(user, amount, job_id)

            await self.session.execute(
                insert(ValidationResult),
                [
                    {
                        "job_id": job_id,
                        "position": position,
                        "email": email,
                        "status": ResultStatus.PENDING.value,
                    }
                    for position, email in enumerate(emails)
                ],
            )

            verified = await self.session.get(ValidationJob, job_id)
            if verified is None:
                raise WriteVerificationError(f"Job {job_id} not found after insert")
            view = job_to_domain(verified, reservation)

        metrics.jobs_created_total.labels(job_type=job_type.value).inc()
        logger.info(
            "job_created",
            job_id=str(job_id),
            user_id=str(user_id),
            job_type=job_type.value,
            total_emails=len(emails),
            credits_reserved=amount,
        )
        return view

    async def enqueue(self, job_id: UUID) -> JobData:
        """
        Move a job from credits_reserved to queued.

        Enqueueing an already queued (or later) job is a no-op.
        """
        job = await self._lock_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.CREDITS_RESERVED.value:
            await self.session.rollback()
            return await self.get_job(job_id)

        job_state.assert_transition(job.id, job.status, JobStatus.QUEUED)
        job.status = JobStatus.QUEUED.value
        await self.session.commit()

        logger.info("job_enqueued", job_id=str(job_id))
        return await self.get_job(job_id)

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_job(self, job_id: UUID, user_id: UUID | None = None) -> JobData:
        """
        Get one job with its reservation figures.

        Raises:
            JobNotFoundError: No such job, or it belongs to another user
        """
        stmt = (
            select(ValidationJob, CreditReservation)
            .outerjoin(CreditReservation, CreditReservation.job_id == ValidationJob.id)
            .where(ValidationJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        row = (await self.session.execute(stmt)).first()
        if row is None:
            raise JobNotFoundError(job_id)
        job, reservation = row
        if user_id is not None and job.user_id != user_id:
            raise JobNotFoundError(job_id)
        return job_to_domain(job, reservation)

    async def list_jobs(
        self,
        user_id: UUID | None,
        page: int = 1,
        limit: int = 20,
        status: JobStatus | None = None,
    ) -> tuple[list[JobData], int]:
        """List jobs newest first. user_id=None lists every user's jobs."""
        conditions = []
        if user_id is not None:
            conditions.append(ValidationJob.user_id == user_id)
        if status is not None:
            conditions.append(ValidationJob.status == status.value)

        count_stmt = select(func.count()).select_from(ValidationJob).where(*conditions)
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(ValidationJob, CreditReservation)
            .outerjoin(CreditReservation, CreditReservation.job_id == ValidationJob.id)
            .where(*conditions)
            .order_by(ValidationJob.created_at.desc(), ValidationJob.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        rows = (await self.session.execute(stmt)).all()
        return [job_to_domain(job, reservation) for job, reservation in rows], total

    async def list_results(
        self,
        job_id: UUID,
        user_id: UUID | None = None,
        page: int = 1,
        limit: int = 50,
        status: ResultStatus | None = None,
    ) -> tuple[list[ResultData], int]:
        """List a job's results in upload order."""
        await self.get_job(job_id, user_id)

        conditions = [ValidationResult.job_id == job_id]
        if status is not None:
            conditions.append(ValidationResult.status == status.value)

        count_stmt = select(func.count()).select_from(ValidationResult).where(*conditions)
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(ValidationResult)
            .where(*conditions)
            .order_by(ValidationResult.position)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        results = (await self.session.execute(stmt)).scalars().all()
        return [result_to_domain(result) for result in results], total

    async def export_results_csv(self, job_id: UUID, user_id: UUID | None = None) -> str:
        """Render the checked results of a job as CSV."""
        await self.get_job(job_id, user_id)

        stmt = (
            select(ValidationResult)
            .where(
                ValidationResult.job_id == job_id,
                ValidationResult.status != ResultStatus.PENDING.value,
            )
            .order_by(ValidationResult.position)
        )
        results = (await self.session.execute(stmt)).scalars().all()

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_COLUMNS)
        for result in results:
            checks = EmailChecks.from_json(result.checks)
            writer.writerow(
                [
                    result.email,
                    result.status,
                    "" if result.score is None else result.score,
                    "" if result.response_time_ms is None else result.response_time_ms,
                    checks.syntax_valid,
                    checks.mx_found,
                    checks.smtp_valid,
                    checks.catch_all,
                    checks.disposable,
                    checks.role_based,
                    checks.free_provider,
                    result.checked_at.isoformat() if result.checked_at else "",
                ]
            )
        return buffer.getvalue()

    async def usage_summary(self, user_id: UUID, days: int = 30) -> UsageSummary:
        """Aggregate a user's jobs created over the last `days` days."""
        since = _utc_now() - timedelta(days=days)
        stmt = (
            select(ValidationJob)
            .where(ValidationJob.user_id == user_id, ValidationJob.created_at >= since)
            .order_by(ValidationJob.created_at)
        )
        jobs = (await self.session.execute(stmt)).scalars().all()

        per_day: dict[str, list[int]] = {}
        valid = invalid = catch_all = disposable = role_based = unknown = 0
        for job in jobs:
            valid += job.valid_count
            invalid += job.invalid_count
            catch_all += job.catch_all_count
            disposable += job.disposable_count
            role_based += job.role_based_count
            unknown += job.unknown_count
            bucket = per_day.setdefault(job.created_at.date().isoformat(), [0, 0])
            bucket[0] += 1
            bucket[1] += job.category_total

        return UsageSummary(
            days=days,
            total_jobs=len(jobs),
            counts=JobCounts(
                valid=valid,
                invalid=invalid,
                catch_all=catch_all,
                disposable=disposable,
                role_based=role_based,
                unknown=unknown,
            ),
            daily=tuple(
                UsageDayData(date=day, jobs=counts[0], emails_validated=counts[1])
                for day, counts in sorted(per_day.items())
            ),
        )

    # ========================================================================
    # Cancellation and deletion
    # ========================================================================

    async def cancel_job(
        self, job_id: UUID, user_id: UUID | None = None, actor: ActorContext | None = None
    ) -> tuple[JobData, bool]:
        """
        Cancel a job and refund reserved - consumed in the same commit.

        Returns the job view and whether this call performed the transition;
        cancelling an already cancelled job is a no-op.

        Raises:
            JobNotFoundError: No such job (or not owned by user_id)
            InvalidJobTransitionError: Job already completed or failed
        """
        job = await self.session.get(ValidationJob, job_id)
        if job is None or (user_id is not None and job.user_id != user_id):
            raise JobNotFoundError(job_id)

        refunded = 0
        async with self.ledger.locked(job.user_id) as user:
            job = await self._lock_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id)

            if job.status == JobStatus.CANCELLED.value:
                reservation = await self.ledger.lock_reservation_for_job(job_id)
                view = job_to_domain(job, reservation)
                cancelled = False
            else:
                if JobStatus(job.status) not in job_state.CANCELLABLE_STATES:
                    raise InvalidJobTransitionError(
                        job_id, job.status, JobStatus.CANCELLED.value
                    )
                job_state.assert_transition(job_id, job.status, JobStatus.CANCELLED)
                job.status = JobStatus.CANCELLED.value
                job.completed_at = _utc_now()
                job.worker_id = None
                job.lease_expires_at = None

                reservation = await self.ledger.lock_reservation_for_job(job_id)
                if (
                    reservation is not None
                    and reservation.status == ReservationStatus.HELD.value
                ):
                    refunded = reservation.amount - reservation.consumed
                    await self.ledger.release(
                        user, reservation, reservation.consumed, refunded
                    )
                view = job_to_domain(job, reservation)
                cancelled = True

            if actor is not None:
                record_activity(
                    self.session,
                    actor,
                    action="job_cancelled",
                    target_type="job",
                    target_id=job_id,
                    target_label=user.email,
                    details={
                        "processed_emails": view.processed_emails,
                        "credits_refunded": refunded,
                        "already_cancelled": not cancelled,
                    },
                )

        if cancelled:
            metrics.record_job_finished(view.type.value, JobStatus.CANCELLED.value, refunded)
            logger.info(
                "job_cancelled",
                job_id=str(job_id),
                user_id=str(view.user_id),
                processed_emails=view.processed_emails,
                credits_refunded=refunded,
            )
        return view, cancelled

    async def delete_jobs_for_user(self, user_id: UUID) -> int:
        """
        Delete a user's jobs with their results and reservations.

        Part of the account deletion cascade; the caller commits.
        """
        job_ids = select(ValidationJob.id).where(ValidationJob.user_id == user_id)
        await self.session.execute(
            delete(ValidationResult).where(ValidationResult.job_id.in_(job_ids))
        )
        await self.session.execute(
            delete(CreditReservation).where(CreditReservation.user_id == user_id)
        )
        result = await self.session.execute(
            delete(ValidationJob).where(ValidationJob.user_id == user_id)
        )
        return result.rowcount or 0

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _lock_job(self, job_id: UUID) -> ValidationJob | None:
        """Lock job row for update (SELECT FOR UPDATE)."""
        stmt = (
            select(ValidationJob)
            .where(ValidationJob.id == job_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
