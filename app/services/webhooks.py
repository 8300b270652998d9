"""
Completion webhooks.

Best effort: a bounded number of attempts, failures are logged and counted,
and nothing here ever changes the job.
"""

import httpx

from app.config import settings
from app.models.api import WebhookPayload
from app.models.domain import JobData
from app.observability import get_logger, metrics

logger = get_logger(__name__)


def build_payload(job: JobData) -> WebhookPayload:
    """Final job summary sent to the webhook_url."""
    return WebhookPayload(
        event=f"job.{job.status.value}",
        job_id=job.job_id,
        status=job.status,
        type=job.type,
        total_emails=job.total_emails,
        processed_emails=job.processed_emails,
        valid_count=job.counts.valid,
        invalid_count=job.counts.invalid,
        catch_all_count=job.counts.catch_all,
        disposable_count=job.counts.disposable,
        role_based_count=job.counts.role_based,
        unknown_count=job.counts.unknown,
        credits_reserved=job.credits_reserved,
        credits_consumed=job.credits_consumed,
        credits_refunded=job.credits_refunded,
        error_message=job.error_message,
        created_at=job.created_at,
        completed_at=job.completed_at,
    )


class WebhookNotifier:
    """POSTs the terminal job summary to the job's webhook_url."""

    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.webhook_timeout_seconds)
        return self._http_client

    async def notify(self, job: JobData) -> bool:
        """Deliver the notification. Returns True on a 2xx response."""
        if not job.webhook_url:
            return False

        body = build_payload(job).model_dump(mode="json")
        attempts = max(settings.webhook_max_attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                response = await self.http_client.post(
                    job.webhook_url,
                    json=body,
                    timeout=settings.webhook_timeout_seconds,
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                metrics.webhooks_total.labels(success="False").inc()
                logger.warning(
                    "webhook_delivery_failed",
                    job_id=str(job.job_id),
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(e) or type(e).__name__,
                )
                continue

            metrics.webhooks_total.labels(success="True").inc()
            logger.info(
                "webhook_delivered",
                job_id=str(job.job_id),
                status_code=response.status_code,
                attempt=attempt,
            )
            return True
        return False

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
