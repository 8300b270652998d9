"""
Validation worker - claims queued jobs and runs the orchestrator loop.

Run with: python -m app.worker
Any number of workers may run against the same database; job leases keep
each job owned by one worker at a time.
"""

import asyncio
import signal

from app.config import settings
from app.db.session import close_engines, get_write_session_factory
from app.observability import get_logger, setup_logging, setup_tracing
from app.services.email_checker import HttpEmailChecker
from app.services.orchestrator import ValidationOrchestrator
from app.services.webhooks import WebhookNotifier

logger = get_logger(__name__)


async def run_worker(stop_event: asyncio.Event | None = None) -> None:
    """Run until SIGINT/SIGTERM (or until stop_event is set)."""
    stop_event = stop_event or asyncio.Event()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except NotImplementedError:
            # Windows event loops; stop with Ctrl+C
            pass

    session_factory = get_write_session_factory()
    checker = HttpEmailChecker(session_factory)
    notifier = WebhookNotifier()
    orchestrator = ValidationOrchestrator(session_factory, checker, notifier)

    logger.info(
        "worker_starting",
        worker_id=orchestrator.worker_id,
        concurrency=settings.worker_concurrency,
        poll_interval_seconds=settings.worker_poll_interval_seconds,
    )
    try:
        await orchestrator.run_forever(stop_event)
    finally:
        await checker.flush_stats()
        await checker.close()
        await notifier.close()
        await close_engines()
        logger.info("worker_shutdown_complete", worker_id=orchestrator.worker_id)


def main() -> None:
    setup_logging()
    setup_tracing()
    asyncio.run(run_worker())


if __name__ == "__main__":  # pragma: no cover
    main()
