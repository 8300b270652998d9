"""
Tests for completion webhooks.
"""

import json
from datetime import UTC, datetime
from uuid import uuid4

import httpx
import pytest

from app.models.api import JobStatus, JobType
from app.models.domain import JobCounts, JobData
from app.services.webhooks import WebhookNotifier, build_payload


def _job(webhook_url: str | None = "https://hooks.example.com/done") -> JobData:
    return JobData(
        job_id=uuid4(),
        user_id=uuid4(),
        type=JobType.BULK,
        status=JobStatus.COMPLETED,
        total_emails=3,
        processed_emails=3,
        counts=JobCounts(valid=2, invalid=1),
        file_name="list.csv",
        webhook_url=webhook_url,
        result_file=None,
        error_message=None,
        created_at=datetime.now(UTC),
        started_at=datetime.now(UTC),
        completed_at=datetime.now(UTC),
        credits_reserved=3,
        credits_consumed=3,
    )


def test_payload_summarizes_job():
    job = _job()
    payload = build_payload(job)
    assert payload.event == "job.completed"
    assert payload.job_id == job.job_id
    assert (payload.valid_count, payload.invalid_count) == (2, 1)
    assert payload.credits_consumed == 3


class TestWebhookNotifier:
    """Tests for WebhookNotifier delivery."""

    @pytest.mark.asyncio
    async def test_delivers_json(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(204)

        notifier = WebhookNotifier(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        job = _job()

        assert await notifier.notify(job) is True
        assert received[0]["event"] == "job.completed"
        assert received[0]["job_id"] == str(job.job_id)
        await notifier.close()

    @pytest.mark.asyncio
    async def test_retries_then_gives_up(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(500)

        notifier = WebhookNotifier(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        assert await notifier.notify(_job()) is False
        assert len(attempts) == 2
        await notifier.close()

    @pytest.mark.asyncio
    async def test_second_attempt_succeeds(self):
        responses = iter([httpx.Response(502), httpx.Response(200)])
        notifier = WebhookNotifier(
            httpx.AsyncClient(transport=httpx.MockTransport(lambda request: next(responses)))
        )
        assert await notifier.notify(_job()) is True
        await notifier.close()

    @pytest.mark.asyncio
    async def test_no_url(self):
        notifier = WebhookNotifier()
        assert await notifier.notify(_job(webhook_url=None)) is False
