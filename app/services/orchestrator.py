"""
Validation Orchestrator - the worker side of the job pipeline.

NO DICTIONARIES - All operations use strongly typed domain models.

Guarantees:
- At most one active worker per job: claiming is a conditional UPDATE and
  only the worker whose UPDATE matched owns the job until its lease lapses.
- Single writer per job: checks run concurrently, but every verdict is
  committed in its own transaction (user lock, then job lock) that advances
  processed_emails, exactly one category counter and the reservation's
  consumed credits together. A retried job never re-debits a committed unit.
- Cooperative cancellation: each unit commit re-reads the job status and
  stops as soon as the job is no longer processing by this worker.
- Every job reaches a terminal state; the watchdog force-fails stragglers.
"""

import asyncio
import time
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import ColumnElement, and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.db.models import CreditReservation, User, ValidationJob, ValidationResult
from app.exceptions import (
    ConcurrencyConflictError,
    InsufficientCreditsError,
    JobNotFoundError,
    JobTerminalError,
    ReservationError,
    TransientCheckFailure,
    UpstreamError,
    UserNotFoundError,
)
from app.models.api import JobStatus, JobType, ReservationStatus, ResultStatus
from app.models.domain import CheckVerdict, JobData, ResultData, WatchdogReport
from app.observability import get_logger, log_context, metrics, trace_operation
from app.services import job_state
from app.services.email_checker import EmailChecker, HttpEmailChecker, normalize_email
from app.services.jobs import JobStore, job_to_domain
from app.services.ledger import CreditLedger
from app.services.plans import PlanService
from app.services.webhooks import WebhookNotifier

logger = get_logger(__name__)

_COUNTER_COLUMNS: dict[ResultStatus, str] = {
    ResultStatus.VALID: "valid_count",
    ResultStatus.INVALID: "invalid_count",
    ResultStatus.CATCH_ALL: "catch_all_count",
    ResultStatus.DISPOSABLE: "disposable_count",
    ResultStatus.ROLE_BASED: "role_based_count",
    ResultStatus.UNKNOWN: "unknown_count",
}

MAINTENANCE_INTERVAL_SECONDS = 30.0


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class ValidationOrchestrator:
    """Claims queued jobs, checks their addresses and settles their credits."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        checker: EmailChecker,
        notifier: WebhookNotifier | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.checker = checker
        self.notifier = notifier
        self.worker_id = worker_id or f"worker-{uuid4().hex[:8]}"
        self._semaphore = asyncio.Semaphore(settings.worker_concurrency)

    # ========================================================================
    # Claiming
    # ========================================================================

    async def claim(self, job_id: UUID) -> bool:
        """
        Take ownership of a queued job, or of a processing job whose lease lapsed.

        Returns True only for the one worker whose UPDATE matched.
        """
        now = _utc_now()
        claimable = or_(
            ValidationJob.status == JobStatus.QUEUED.value,
            and_(
                ValidationJob.status == JobStatus.PROCESSING.value,
                or_(
                    ValidationJob.lease_expires_at.is_(None),
                    ValidationJob.lease_expires_at < now,
                ),
            ),
        )
        return await self._take(job_id, claimable, now)

    async def claim_reserved(self, job_id: UUID) -> bool:
        """
        Enqueue and claim a credits_reserved job in one UPDATE.

        The job is never committed as queued, so claim_next() on other
        workers cannot pick it up. Used for inline single-address checks.
        """
        now = _utc_now()
        return await self._take(
            job_id, ValidationJob.status == JobStatus.CREDITS_RESERVED.value, now
        )

    async def _take(self, job_id: UUID, claimable: ColumnElement[bool], now: datetime) -> bool:
        async with self.session_factory() as session:
            stmt = (
                update(ValidationJob)
                .where(ValidationJob.id == job_id, claimable)
                .values(
                    status=JobStatus.PROCESSING.value,
                    worker_id=self.worker_id,
                    lease_expires_at=now + timedelta(seconds=settings.job_lease_seconds),
                    started_at=func.coalesce(ValidationJob.started_at, now),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()

        claimed = result.rowcount == 1
        if claimed:
            logger.info("job_claimed", job_id=str(job_id), worker_id=self.worker_id)
        return claimed

    async def claim_next(self) -> UUID | None:
        """Claim the oldest available job, if any."""
        now = _utc_now()
        async with self.session_factory() as session:
            stmt = (
                select(ValidationJob.id)
                .where(
                    or_(
                        ValidationJob.status == JobStatus.QUEUED.value,
                        and_(
                            ValidationJob.status == JobStatus.PROCESSING.value,
                            ValidationJob.lease_expires_at < now,
                        ),
                    )
                )
                .order_by(ValidationJob.created_at)
                .limit(10)
            )
            candidates = (await session.execute(stmt)).scalars().all()

        for job_id in candidates:
            if await self.claim(job_id):
                return job_id
        return None

    # ========================================================================
    # Processing
    # ========================================================================

    async def process(self, job_id: UUID, verify_smtp: bool = True) -> JobData | None:
        """
        Process a claimed job until it completes, fails, or is taken away.

        Processing errors are recorded on the job, not raised.

        Raises:
            UpstreamError: No validation server available; the job keeps its
                pending rows and is retried once its lease lapses
        """
        with log_context(job_id=str(job_id), worker_id=self.worker_id):
            async with self.session_factory() as session:
                job = await session.get(ValidationJob, job_id)
                if job is None:
                    return None
                user_id = job.user_id

            try:
                while True:
                    batch = await self._next_batch(job_id)
                    if not batch:
                        view, finished = await self._complete(job_id, user_id)
                        if finished:
                            return view
                        continue

                    verdicts = await asyncio.gather(
                        *(self._check_one(email, verify_smtp) for _, email in batch),
                        return_exceptions=True,
                    )

                    upstream_error: UpstreamError | None = None
                    for (position, _), outcome in zip(batch, verdicts, strict=True):
                        if isinstance(outcome, UpstreamError):
                            upstream_error = upstream_error or outcome
                            continue
                        if isinstance(outcome, BaseException):
                            raise JobTerminalError(
                                job_id, f"email checker error: {type(outcome).__name__}"
                            ) from outcome
                        if not await self._commit_unit(job_id, user_id, position, outcome):
                            logger.info("job_processing_stopped")
                            return await self._view(job_id)

                    if upstream_error is not None:
                        logger.warning("job_paused_no_upstream", reason=upstream_error.message)
                        raise upstream_error
            except UpstreamError:
                raise
            except UserNotFoundError:
                logger.warning("job_owner_missing", user_id=str(user_id))
                return None
            except InsufficientCreditsError as e:
                return await self.fail(
                    job_id,
                    f"Insufficient credits: available {e.available}, required {e.required}",
                )
            except (JobTerminalError, ReservationError) as e:
                return await self.fail(job_id, str(e))
            except Exception as e:
                logger.exception("job_processing_error", error=str(e))
                metrics.record_error(type(e).__name__, "process_job")
                return await self.fail(job_id, f"Unexpected processing error: {type(e).__name__}")

    async def _next_batch(self, job_id: UUID) -> list[tuple[int, str]]:
        async with self.session_factory() as session:
            stmt = (
                select(ValidationResult.position, ValidationResult.email)
                .where(
                    ValidationResult.job_id == job_id,
                    ValidationResult.status == ResultStatus.PENDING.value,
                )
                .order_by(ValidationResult.position)
                .limit(settings.worker_concurrency)
            )
            rows = (await session.execute(stmt)).all()
        return [(position, email) for position, email in rows]

    async def _check_one(self, email: str, verify_smtp: bool) -> CheckVerdict:
        """Run one bounded check. Timeouts and transient failures become unknown."""
        async with self._semaphore:
            started = time.perf_counter()
            try:
                verdict = await asyncio.wait_for(
                    self.checker.check(email, verify_smtp),
                    timeout=settings.check_timeout_seconds,
                )
            except TimeoutError:
                logger.warning("check_timed_out", timeout=settings.check_timeout_seconds)
                verdict = CheckVerdict.unknown(email, int((time.perf_counter() - started) * 1000))
            except TransientCheckFailure as e:
                logger.warning("check_failed", reason=e.reason)
                verdict = CheckVerdict.unknown(email, int((time.perf_counter() - started) * 1000))
            metrics.record_check(verdict.status.value, time.perf_counter() - started)
            return verdict

    async def _commit_unit(
        self, job_id: UUID, user_id: UUID, position: int, verdict: CheckVerdict
    ) -> bool:
        """
        Commit one verdict and its debit atomically.

        Returns False when the job is no longer ours to process.
        """
        with trace_operation("job_unit_commit", job_id=job_id, position=position):
            async with self.session_factory() as session:
                ledger = CreditLedger(session)
                async with ledger.locked(user_id) as user:
                    job = await self._lock_job(session, job_id)
                    if (
                        job is None
                        or job.status != JobStatus.PROCESSING.value
                        or job.worker_id != self.worker_id
                    ):
                        return False

                    result_stmt = (
                        select(ValidationResult)
                        .where(
                            ValidationResult.job_id == job_id,
                            ValidationResult.position == position,
                        )
                        .with_for_update()
                    )
                    result = (await session.execute(result_stmt)).scalar_one_or_none()
                    if result is None or result.status != ResultStatus.PENDING.value:
                        return True

                    reservation = await ledger.lock_reservation_for_job(job_id)
                    if reservation is None:
                        raise JobTerminalError(job_id, "job has no credit reservation")
                    await ledger.consume(user, reservation, settings.unit_cost)

                    now = _utc_now()
                    result.status = verdict.status.value
                    result.score = verdict.score
                    result.checks = verdict.checks.as_json()
                    result.response_time_ms = verdict.response_time_ms
                    result.checked_at = now

                    counter = _COUNTER_COLUMNS[verdict.status]
                    setattr(job, counter, getattr(job, counter) + 1)
                    job.processed_emails = job.processed_emails + 1
                    job.lease_expires_at = now + timedelta(seconds=settings.job_lease_seconds)
                    if job.processed_emails > job.total_emails:
                        raise JobTerminalError(job_id, "processed count exceeds total")
        return True

    async def _complete(self, job_id: UUID, user_id: UUID) -> tuple[JobData | None, bool]:
        """
        Complete a job with no pending rows left: verify the counters and
        settle the reservation, refunding anything not consumed.
        """
        async with self.session_factory() as session:
            ledger = CreditLedger(session)
            async with ledger.locked(user_id) as user:
                job = await self._lock_job(session, job_id)
                if job is None:
                    return None, True
                if job.status != JobStatus.PROCESSING.value or job.worker_id != self.worker_id:
                    reservation = await ledger.lock_reservation_for_job(job_id)
                    return job_to_domain(job, reservation), True

                pending_stmt = select(func.count()).where(
                    ValidationResult.job_id == job_id,
                    ValidationResult.status == ResultStatus.PENDING.value,
                )
                if (await session.execute(pending_stmt)).scalar_one():
                    return None, False

                if job.category_total != job.processed_emails:
                    raise JobTerminalError(
                        job_id,
                        f"category counts ({job.category_total}) do not match "
                        f"processed_emails ({job.processed_emails})",
                    )

                reservation = await ledger.lock_reservation_for_job(job_id)
                if reservation is None:
                    raise JobTerminalError(job_id, "job has no credit reservation")
                refund = reservation.amount - reservation.consumed
                await ledger.release(user, reservation, reservation.consumed, refund)

                job_state.assert_transition(job_id, job.status, JobStatus.COMPLETED)
                job.status = JobStatus.COMPLETED.value
                job.completed_at = _utc_now()
                job.worker_id = None
                job.lease_expires_at = None
                if job.type == JobType.BULK.value:
                    job.result_file = f"/account/export/{job_id}"
                view = job_to_domain(job, reservation)

        metrics.record_job_finished(view.type.value, view.status.value, refund)
        logger.info(
            "job_completed",
            processed_emails=view.processed_emails,
            credits_consumed=view.credits_consumed,
            credits_refunded=view.credits_refunded,
        )
        await self._notify(view)
        return view, True

    async def fail(self, job_id: UUID, reason: str) -> JobData | None:
        """
        Move a non-terminal job to failed and refund its unconsumed credits.

        A job that is already terminal is returned unchanged.
        """
        async with self.session_factory() as session:
            job = await session.get(ValidationJob, job_id)
            if job is None:
                return None
            owner_id = job.user_id

            ledger = CreditLedger(session)
            try:
                async with ledger.locked(owner_id) as user:
                    job = await self._lock_job(session, job_id)
                    if job is None:
                        return None
                    reservation = await ledger.lock_reservation_for_job(job_id)
                    if job_state.is_terminal(job.status):
                        return job_to_domain(job, reservation)

                    job_state.assert_transition(job_id, job.status, JobStatus.FAILED)
                    refund = 0
                    if reservation is not None and reservation.status == ReservationStatus.HELD.value:
                        refund = reservation.amount - reservation.consumed
                        await ledger.release(user, reservation, reservation.consumed, refund)
                    self._mark_failed(job, reason)
                    view = job_to_domain(job, reservation)
            except UserNotFoundError:
                return await self._fail_orphan(job_id, reason)

        metrics.record_job_finished(view.type.value, view.status.value, refund)
        logger.warning(
            "job_failed",
            job_id=str(job_id),
            reason=reason,
            processed_emails=view.processed_emails,
            credits_refunded=refund,
        )
        await self._notify(view)
        return view

    async def _fail_orphan(self, job_id: UUID, reason: str) -> JobData | None:
        """Fail a job whose owner no longer exists; there is no balance to refund into."""
        async with self.session_factory() as session:
            job = await self._lock_job(session, job_id)
            if job is None or job_state.is_terminal(job.status):
                await session.rollback()
                return None
            reservation_stmt = select(CreditReservation).where(
                CreditReservation.job_id == job_id
            )
            reservation = (await session.execute(reservation_stmt)).scalar_one_or_none()
            if reservation is not None and reservation.status == ReservationStatus.HELD.value:
                reservation.refunded = reservation.amount - reservation.consumed
                reservation.status = ReservationStatus.SETTLED.value
                reservation.settled_at = _utc_now()
            self._mark_failed(job, reason)
            view = job_to_domain(job, reservation)
            await session.commit()

        metrics.record_job_finished(view.type.value, view.status.value, 0)
        logger.warning("orphan_job_failed", job_id=str(job_id), reason=reason)
        return view

    def _mark_failed(self, job: ValidationJob, reason: str) -> None:
        job.status = JobStatus.FAILED.value
        job.error_message = reason[:2000]
        job.completed_at = _utc_now()
        job.worker_id = None
        job.lease_expires_at = None

    # ========================================================================
    # Single validation (inline)
    # ========================================================================

    async def run_single(
        self,
        user_id: UUID,
        email: str,
        verify_smtp: bool = True,
        api_key_id: UUID | None = None,
    ) -> tuple[JobData, ResultData]:
        """
        Validate one address synchronously as a one-address job.

        Raises:
            EmailValidationError: Malformed address (nothing reserved)
            InsufficientCreditsError: Fewer than unit_cost credits available
            UpstreamError: No validation server could serve the check
        """
        normalized = normalize_email(email)

        async with self.session_factory() as session:
            store = JobStore(session)
            job = await store.create_job(
                user_id, [normalized], JobType.SINGLE, api_key_id=api_key_id
            )

        if not await self.claim_reserved(job.job_id):
            raise ConcurrencyConflictError(f"job {job.job_id}")

        try:
            view = await self.process(job.job_id, verify_smtp=verify_smtp)
        except UpstreamError:
            await self.fail(job.job_id, "No healthy validation server available")
            raise

        if view is None or view.status != JobStatus.COMPLETED:
            reason = view.error_message if view is not None else None
            raise UpstreamError(reason or "validation did not complete")

        async with self.session_factory() as session:
            results, _ = await JobStore(session).list_results(job.job_id, user_id, 1, 1)
        return view, results[0]

    # ========================================================================
    # Watchdog and maintenance
    # ========================================================================

    async def watchdog(self, now: datetime | None = None) -> WatchdogReport:
        """
        Sweep jobs that would otherwise never reach a terminal state:
        - processing longer than job_max_duration_seconds: failed, remainder refunded
        - stuck in credits_reserved longer than stale_reservation_seconds: enqueued
        - owner vanished: failed
        """
        now = now or _utc_now()
        ceiling = now - timedelta(seconds=settings.job_max_duration_seconds)
        stale = now - timedelta(seconds=settings.stale_reservation_seconds)
        open_states = [
            JobStatus.CREDITS_RESERVED.value,
            JobStatus.QUEUED.value,
            JobStatus.PROCESSING.value,
        ]

        async with self.session_factory() as session:
            overdue = (
                await session.execute(
                    select(ValidationJob.id).where(
                        ValidationJob.status == JobStatus.PROCESSING.value,
                        ValidationJob.started_at < ceiling,
                    )
                )
            ).scalars().all()
            unqueued = (
                await session.execute(
                    select(ValidationJob.id).where(
                        ValidationJob.status == JobStatus.CREDITS_RESERVED.value,
                        ValidationJob.created_at < stale,
                    )
                )
            ).scalars().all()
            orphans = (
                await session.execute(
                    select(ValidationJob.id).where(
                        ValidationJob.status.in_(open_states),
                        ValidationJob.user_id.not_in(select(User.id)),
                    )
                )
            ).scalars().all()

        failed = 0
        for job_id in overdue:
            if await self.fail(job_id, "Job exceeded maximum processing time") is not None:
                failed += 1
                metrics.jobs_watchdog_failed_total.inc()

        enqueued = 0
        for job_id in unqueued:
            if await self._enqueue_stale(job_id):
                enqueued += 1

        orphaned = 0
        for job_id in orphans:
            if await self._fail_orphan(job_id, "Job owner no longer exists") is not None:
                orphaned += 1

        report = WatchdogReport(failed=failed, enqueued=enqueued, orphaned=orphaned)
        if failed or enqueued or orphaned:
            logger.info("watchdog_sweep", failed=failed, enqueued=enqueued, orphaned=orphaned)
        return report

    async def _enqueue_stale(self, job_id: UUID) -> bool:
        """Queue a job still in credits_reserved. False if it moved on meanwhile."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(ValidationJob)
                .where(
                    ValidationJob.id == job_id,
                    ValidationJob.status == JobStatus.CREDITS_RESERVED.value,
                )
                .values(status=JobStatus.QUEUED.value, updated_at=_utc_now())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount != 1:
            return False
        logger.info("job_enqueued", job_id=str(job_id), by="watchdog")
        return True

    async def renew_due_plans(self, now: datetime | None = None) -> int:
        async with self.session_factory() as session:
            return await PlanService(session).renew_due_plans(now)

    async def run_once(self) -> bool:
        """Claim and process one job. Returns False when the queue was empty."""
        job_id = await self.claim_next()
        if job_id is None:
            return False
        await self.process(job_id)
        return True

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Worker loop: process jobs, run maintenance, idle when the queue is empty."""
        logger.info("worker_started", worker_id=self.worker_id)
        last_maintenance = 0.0

        while not stop_event.is_set():
            busy = False
            try:
                busy = await self.run_once()
            except UpstreamError:
                busy = False
            except Exception as e:
                logger.exception("worker_iteration_failed", error=str(e))
                metrics.record_error(type(e).__name__, "worker_loop")

            if time.monotonic() - last_maintenance >= MAINTENANCE_INTERVAL_SECONDS:
                try:
                    await self.watchdog()
                    await self.renew_due_plans()
                    if isinstance(self.checker, HttpEmailChecker):
                        await self.checker.flush_stats()
                except Exception as e:
                    logger.exception("worker_maintenance_failed", error=str(e))
                    metrics.record_error(type(e).__name__, "worker_maintenance")
                last_maintenance = time.monotonic()

            if not busy:
                try:
                    await asyncio.wait_for(
                        stop_event.wait(), timeout=settings.worker_poll_interval_seconds
                    )
                except TimeoutError:
                    pass

        logger.info("worker_stopped", worker_id=self.worker_id)

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _view(self, job_id: UUID) -> JobData | None:
        async with self.session_factory() as session:
            try:
                return await JobStore(session).get_job(job_id)
            except JobNotFoundError:
                return None

    async def _notify(self, view: JobData) -> None:
        if self.notifier is not None and view.webhook_url:
            await self.notifier.notify(view)

    @staticmethod
    async def _lock_job(session: AsyncSession, job_id: UUID) -> ValidationJob | None:
        stmt = (
            select(ValidationJob)
            .where(ValidationJob.id == job_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return (await session.execute(stmt)).scalar_one_or_none()
