"""
Tests for the validation orchestrator (worker side of the job pipeline).
"""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select, update

from app.config import settings
from app.db.models import CreditReservation, User, ValidationJob
from app.exceptions import (
    EmailValidationError,
    InsufficientCreditsError,
    TransientCheckFailure,
    UpstreamError,
)
from app.models.api import JobStatus, JobType, ReservationStatus, ResultStatus
from app.services.jobs import JobStore
from app.services.orchestrator import ValidationOrchestrator
from conftest import FakeChecker, refresh_user


def _emails(count: int) -> list[str]:
    return [f"person{i}@example.com" for i in range(count)]


async def _create(session_factory, user_id, emails, enqueue=True):
    async with session_factory() as session:
        store = JobStore(session)
        job = await store.create_job(user_id, emails, JobType.BULK, webhook_url=None)
        if enqueue:
            job = await store.enqueue(job.job_id)
        return job


class RecordingNotifier:
    def __init__(self):
        self.notified = []

    async def notify(self, job):
        self.notified.append(job)
        return True


# ============================================================================
# Claiming
# ============================================================================


class TestClaim:
    """Tests for job claiming."""

    @pytest.mark.asyncio
    async def test_only_one_worker_claims(self, session_factory, user, checker):
        job = await _create(session_factory, user.id, _emails(1))
        first = ValidationOrchestrator(session_factory, checker, worker_id="w1")
        second = ValidationOrchestrator(session_factory, checker, worker_id="w2")

        assert await first.claim(job.job_id) is True
        assert await second.claim(job.job_id) is False

    @pytest.mark.asyncio
    async def test_unqueued_job_not_claimable(self, session_factory, user, checker):
        job = await _create(session_factory, user.id, _emails(1), enqueue=False)
        assert await ValidationOrchestrator(session_factory, checker).claim(job.job_id) is False

    @pytest.mark.asyncio
    async def test_lapsed_lease_can_be_reclaimed(self, session_factory, user, checker):
        job = await _create(session_factory, user.id, _emails(1))
        first = ValidationOrchestrator(session_factory, checker, worker_id="w1")
        assert await first.claim(job.job_id)

        async with session_factory() as session:
            await session.execute(
                update(ValidationJob)
                .where(ValidationJob.id == job.job_id)
                .values(lease_expires_at=datetime.now(UTC) - timedelta(seconds=1))
            )
            await session.commit()

        second = ValidationOrchestrator(session_factory, checker, worker_id="w2")
        assert await second.claim_next() == job.job_id

    @pytest.mark.asyncio
    async def test_reserved_job_claimed_inline_only(self, session_factory, user, checker):
        job = await _create(session_factory, user.id, _emails(1), enqueue=False)
        worker = ValidationOrchestrator(session_factory, checker, worker_id="w1")
        inline = ValidationOrchestrator(session_factory, checker, worker_id="inline")

        assert await worker.claim_next() is None
        assert await inline.claim_reserved(job.job_id) is True
        assert await worker.claim_next() is None
        assert await inline.claim_reserved(job.job_id) is False

        async with session_factory() as session:
            view = await JobStore(session).get_job(job.job_id)
        assert view.status == JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_claim_next_empty_queue(self, session_factory, checker):
        assert await ValidationOrchestrator(session_factory, checker).claim_next() is None


# ============================================================================
# Processing
# ============================================================================


class TestProcess:
    """Tests for processing a claimed job."""

    @pytest.mark.asyncio
    async def test_counts_and_settlement(self, session_factory, user):
        emails = _emails(6)
        checker = FakeChecker(
            {
                emails[0]: ResultStatus.INVALID,
                emails[1]: ResultStatus.CATCH_ALL,
                emails[2]: ResultStatus.DISPOSABLE,
                emails[3]: ResultStatus.ROLE_BASED,
                emails[4]: ResultStatus.UNKNOWN,
            }
        )
        job = await _create(session_factory, user.id, emails)
        orchestrator = ValidationOrchestrator(session_factory, checker)
        assert await orchestrator.claim(job.job_id)

        view = await orchestrator.process(job.job_id)

        assert view.status == JobStatus.COMPLETED
        assert view.processed_emails == 6
        counts = view.counts
        assert (counts.valid, counts.invalid, counts.catch_all) == (1, 1, 1)
        assert (counts.disposable, counts.role_based, counts.unknown) == (1, 1, 1)
        assert counts.total == view.processed_emails
        assert (view.credits_consumed, view.credits_refunded) == (6, 0)
        assert view.result_file == f"/account/export/{job.job_id}"

        refreshed = await refresh_user(session_factory, user.id)
        assert refreshed.balance == 94

    @pytest.mark.asyncio
    async def test_timeout_becomes_unknown_and_is_charged(self, session_factory, user, monkeypatch):
        monkeypatch.setattr(settings, "check_timeout_seconds", 0.05)
        job = await _create(session_factory, user.id, _emails(2))
        orchestrator = ValidationOrchestrator(session_factory, FakeChecker(delay=1.0))
        assert await orchestrator.claim(job.job_id)

        view = await orchestrator.process(job.job_id)

        assert view.status == JobStatus.COMPLETED
        assert view.counts.unknown == 2
        assert view.credits_consumed == 2

    @pytest.mark.asyncio
    async def test_transient_failure_becomes_unknown(self, session_factory, user):
        emails = _emails(2)
        checker = FakeChecker({emails[0]: TransientCheckFailure(emails[0], "HTTP 502")})
        job = await _create(session_factory, user.id, emails)
        orchestrator = ValidationOrchestrator(session_factory, checker)
        assert await orchestrator.claim(job.job_id)

        view = await orchestrator.process(job.job_id)

        assert view.counts.unknown == 1
        assert view.counts.valid == 1

    @pytest.mark.asyncio
    async def test_upstream_outage_is_not_charged(self, session_factory, user, checker):
        job = await _create(session_factory, user.id, _emails(3))
        checker.upstream_down = True
        orchestrator = ValidationOrchestrator(session_factory, checker)
        assert await orchestrator.claim(job.job_id)

        with pytest.raises(UpstreamError):
            await orchestrator.process(job.job_id)

        async with session_factory() as session:
            view = await JobStore(session).get_job(job.job_id)
        assert view.status == JobStatus.PROCESSING
        assert view.processed_emails == 0
        assert view.credits_consumed == 0

    @pytest.mark.asyncio
    async def test_resumes_after_outage_without_recharging(self, session_factory, user, monkeypatch):
        monkeypatch.setattr(settings, "worker_concurrency", 2)
        emails = _emails(4)
        checker = FakeChecker()

        async def go_down_after_two(call_no: int) -> None:
            checker.upstream_down = call_no > 2

        checker.on_call = go_down_after_two
        job = await _create(session_factory, user.id, emails)
        orchestrator = ValidationOrchestrator(session_factory, checker, worker_id="w1")
        assert await orchestrator.claim(job.job_id)
        with pytest.raises(UpstreamError):
            await orchestrator.process(job.job_id)

        checker.on_call = None
        checker.upstream_down = False
        async with session_factory() as session:
            await session.execute(
                update(ValidationJob)
                .where(ValidationJob.id == job.job_id)
                .values(lease_expires_at=datetime.now(UTC) - timedelta(seconds=1))
            )
            await session.commit()
        assert await orchestrator.claim(job.job_id)
        view = await orchestrator.process(job.job_id)

        assert view.status == JobStatus.COMPLETED
        assert view.processed_emails == 4
        assert view.credits_consumed == 4
        refreshed = await refresh_user(session_factory, user.id)
        assert refreshed.balance == 96

    @pytest.mark.asyncio
    async def test_balance_removed_mid_job_fails_with_refund(self, session_factory, user, actor):
        """An admin draining the balance makes the next debit fail the job."""
        from app.services.ledger import CreditLedger

        job = await _create(session_factory, user.id, _emails(5))

        async def drain(call_no: int) -> None:
            if call_no == 1:
                async with session_factory() as session:
                    await CreditLedger(session).adjust(user.id, -1000, "fraud", actor)

        orchestrator = ValidationOrchestrator(session_factory, FakeChecker(on_call=drain))
        assert await orchestrator.claim(job.job_id)

        view = await orchestrator.process(job.job_id)

        assert view.status == JobStatus.FAILED
        assert "Insufficient credits" in view.error_message
        async with session_factory() as session:
            reservation = (
                await session.execute(
                    select(CreditReservation).where(CreditReservation.job_id == job.job_id)
                )
            ).scalar_one()
        assert reservation.status == ReservationStatus.SETTLED.value
        assert reservation.consumed + reservation.refunded == reservation.amount

    @pytest.mark.asyncio
    async def test_webhook_notified_on_completion(self, session_factory, user, checker):
        async with session_factory() as session:
            store = JobStore(session)
            job = await store.create_job(
                user.id, _emails(1), JobType.BULK, webhook_url="https://hooks.example.com/x"
            )
            await store.enqueue(job.job_id)

        notifier = RecordingNotifier()
        orchestrator = ValidationOrchestrator(session_factory, checker, notifier)
        assert await orchestrator.claim(job.job_id)
        await orchestrator.process(job.job_id)

        assert [j.status for j in notifier.notified] == [JobStatus.COMPLETED]


# ============================================================================
# Failure handling
# ============================================================================


class TestFail:
    @pytest.mark.asyncio
    async def test_fail_refunds_and_is_terminal(self, session_factory, user, checker):
        job = await _create(session_factory, user.id, _emails(10))
        orchestrator = ValidationOrchestrator(session_factory, checker)

        view = await orchestrator.fail(job.job_id, "broken")
        again = await orchestrator.fail(job.job_id, "broken twice")

        assert view.status == JobStatus.FAILED
        assert view.credits_refunded == 10
        assert again.error_message == "broken"
        refreshed = await refresh_user(session_factory, user.id)
        assert refreshed.balance == 100


# ============================================================================
# Single validation
# ============================================================================


class TestRunSingle:
    """Tests for inline one-address validation."""

    @pytest.mark.asyncio
    async def test_valid_address(self, session_factory, user, checker):
        orchestrator = ValidationOrchestrator(session_factory, checker)

        view, result = await orchestrator.run_single(user.id, "  Someone@Example.COM ")

        assert view.type == JobType.SINGLE
        assert view.status == JobStatus.COMPLETED
        assert result.status == ResultStatus.VALID
        assert checker.calls == ["Someone@example.com"]
        refreshed = await refresh_user(session_factory, user.id)
        assert refreshed.balance == 99

    @pytest.mark.asyncio
    async def test_background_worker_never_sees_single_job(
        self, session_factory, user, checker, monkeypatch
    ):
        worker = ValidationOrchestrator(session_factory, FakeChecker(), worker_id="background")
        orchestrator = ValidationOrchestrator(session_factory, checker, worker_id="inline")
        claim_reserved = orchestrator.claim_reserved
        seen = []

        async def worker_polls_first(job_id):
            seen.append(await worker.claim_next())
            return await claim_reserved(job_id)

        monkeypatch.setattr(orchestrator, "claim_reserved", worker_polls_first)

        view, result = await orchestrator.run_single(user.id, "someone@example.com")

        assert seen == [None]
        assert view.status == JobStatus.COMPLETED
        assert result.status == ResultStatus.VALID
        assert checker.calls == ["someone@example.com"]
        assert (await refresh_user(session_factory, user.id)).balance == 99

    @pytest.mark.asyncio
    async def test_malformed_address_reserves_nothing(self, session_factory, user, checker):
        orchestrator = ValidationOrchestrator(session_factory, checker)
        with pytest.raises(EmailValidationError):
            await orchestrator.run_single(user.id, "not-an-address")
        assert checker.calls == []

    @pytest.mark.asyncio
    async def test_no_credits(self, session_factory, make_user, checker):
        broke = await make_user(plan_credits=0)
        with pytest.raises(InsufficientCreditsError):
            await ValidationOrchestrator(session_factory, checker).run_single(
                broke.id, "a@example.com"
            )

    @pytest.mark.asyncio
    async def test_upstream_outage_fails_job_and_refunds(self, session_factory, user, checker):
        checker.upstream_down = True
        with pytest.raises(UpstreamError):
            await ValidationOrchestrator(session_factory, checker).run_single(
                user.id, "a@example.com"
            )

        async with session_factory() as session:
            jobs, _ = await JobStore(session).list_jobs(user.id)
        assert jobs[0].status == JobStatus.FAILED
        refreshed = await refresh_user(session_factory, user.id)
        assert refreshed.balance == 100


# ============================================================================
# Watchdog
# ============================================================================


class TestWatchdog:
    """Tests for the straggler sweep."""

    @pytest.mark.asyncio
    async def test_overdue_processing_job_failed(self, session_factory, user, checker):
        job = await _create(session_factory, user.id, _emails(3))
        orchestrator = ValidationOrchestrator(session_factory, checker)
        assert await orchestrator.claim(job.job_id)

        later = datetime.now(UTC) + timedelta(seconds=settings.job_max_duration_seconds + 60)
        report = await orchestrator.watchdog(later)

        assert report.failed == 1
        async with session_factory() as session:
            view = await JobStore(session).get_job(job.job_id)
        assert view.status == JobStatus.FAILED
        assert view.credits_refunded == 3

    @pytest.mark.asyncio
    async def test_stale_reserved_job_enqueued(self, session_factory, user, checker):
        job = await _create(session_factory, user.id, _emails(1), enqueue=False)
        later = datetime.now(UTC) + timedelta(seconds=settings.stale_reservation_seconds + 60)

        report = await ValidationOrchestrator(session_factory, checker).watchdog(later)

        assert report.enqueued == 1
        async with session_factory() as session:
            assert (await JobStore(session).get_job(job.job_id)).status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_stale_job_cancelled_during_sweep_not_counted(
        self, session_factory, user, checker, monkeypatch
    ):
        job = await _create(session_factory, user.id, _emails(1), enqueue=False)
        orchestrator = ValidationOrchestrator(session_factory, checker)
        enqueue_stale = orchestrator._enqueue_stale

        async def cancel_first(job_id):
            async with session_factory() as session:
                await JobStore(session).cancel_job(job_id, user.id)
            return await enqueue_stale(job_id)

        monkeypatch.setattr(orchestrator, "_enqueue_stale", cancel_first)
        later = datetime.now(UTC) + timedelta(seconds=settings.stale_reservation_seconds + 60)

        report = await orchestrator.watchdog(later)

        assert report.enqueued == 0
        async with session_factory() as session:
            assert (await JobStore(session).get_job(job.job_id)).status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_orphaned_job_failed(self, session_factory, make_user, checker):
        owner = await make_user()
        job = await _create(session_factory, owner.id, _emails(2))
        async with session_factory() as session:
            await session.delete(await session.get(User, owner.id))
            await session.commit()

        report = await ValidationOrchestrator(session_factory, checker).watchdog()

        assert report.orphaned == 1
        async with session_factory() as session:
            view = await JobStore(session).get_job(job.job_id)
        assert view.status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_quiet_sweep(self, session_factory, checker):
        report = await ValidationOrchestrator(session_factory, checker).watchdog()
        assert (report.failed, report.enqueued, report.orphaned) == (0, 0, 0)


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_processes_oldest_job(self, session_factory, user, checker):
        job = await _create(session_factory, user.id, _emails(2))
        orchestrator = ValidationOrchestrator(session_factory, checker)

        assert await orchestrator.run_once() is True
        assert await orchestrator.run_once() is False
        async with session_factory() as session:
            assert (await JobStore(session).get_job(job.job_id)).status == JobStatus.COMPLETED
