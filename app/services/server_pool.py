"""
Validation server pool registry.

Servers are selected by weight among entries that are both active and
healthy. Health is set by health checks (test) or by an admin (set_health).
"""

import random
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from uuid import UUID

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import ValidationServer
from app.exceptions import ServerNotFoundError, WriteVerificationError
from app.models.api import ServerCreateRequest, ServerUpdateRequest
from app.models.domain import ActorContext, PoolServer, HealthCheckResult, ServerStats
from app.observability import get_logger, metrics
from app.services.audit import record_activity

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def select_weighted(
    servers: Sequence[PoolServer], rng: random.Random | None = None
) -> PoolServer | None:
    """Pick one server with probability proportional to its weight."""
    if not servers:
        return None
    chooser = rng or random
    return chooser.choices(list(servers), weights=[server.weight for server in servers])[0]


async def check_health(url: str, client: httpx.AsyncClient | None = None) -> HealthCheckResult:
    """GET {url}/health and time it."""
    target = f"{url.rstrip('/')}/health"
    started = time.perf_counter()
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=settings.server_check_timeout_seconds) as owned:
                response = await owned.get(target)
        else:
            response = await client.get(target, timeout=settings.server_check_timeout_seconds)
    except httpx.HTTPError as e:
        elapsed = int((time.perf_counter() - started) * 1000)
        return HealthCheckResult(is_healthy=False, response_time_ms=elapsed, error=str(e) or type(e).__name__)

    elapsed = int((time.perf_counter() - started) * 1000)
    if response.status_code >= 400:
        return HealthCheckResult(
            is_healthy=False,
            response_time_ms=elapsed,
            error=f"HTTP {response.status_code}",
        )
    return HealthCheckResult(is_healthy=True, response_time_ms=elapsed)


class ServerPoolService:
    """CRUD and health management for validation servers."""

    def __init__(self, session: AsyncSession, http_client: httpx.AsyncClient | None = None) -> None:
        self.session = session
        self.http_client = http_client

    async def list_servers(self) -> list[ValidationServer]:
        stmt = select(ValidationServer).order_by(ValidationServer.created_at)
        return list((await self.session.execute(stmt)).scalars().all())

    async def get(self, server_id: UUID) -> ValidationServer:
        """
        Raises:
            ServerNotFoundError: No such server
        """
        server = await self.session.get(ValidationServer, server_id)
        if server is None:
            raise ServerNotFoundError(server_id)
        return server

    async def healthy_servers(self) -> list[PoolServer]:
        """Active and healthy servers, for selection."""
        stmt = select(ValidationServer).where(
            ValidationServer.is_active.is_(True),
            ValidationServer.is_healthy.is_(True),
        )
        servers = (await self.session.execute(stmt)).scalars().all()
        return [
            PoolServer(server_id=server.id, url=server.url, weight=server.weight)
            for server in servers
        ]

    async def create(self, request: ServerCreateRequest, actor: ActorContext) -> ValidationServer:
        server = ValidationServer(
            name=request.name,
            url=request.url.rstrip("/"),
            weight=request.weight,
            is_active=request.is_active,
            is_healthy=True,
            total_requests=0,
            successful_requests=0,
            avg_response_time_ms=0,
        )
        self.session.add(server)
        await self.session.flush()

        verified = await self.session.get(ValidationServer, server.id)
        if verified is None:
            raise WriteVerificationError(f"Server {server.id} not found after insert")

        record_activity(
            self.session,
            actor,
            action="server_created",
            target_type="server",
            target_id=server.id,
            target_label=server.name,
            details={"url": server.url, "weight": server.weight},
        )
        await self.session.commit()
        metrics.admin_operations_total.labels(operation="server_created").inc()
        logger.info("server_created", server_id=str(server.id), url=server.url)
        return verified

    async def update(
        self, server_id: UUID, request: ServerUpdateRequest, actor: ActorContext
    ) -> ValidationServer:
        server = await self.get(server_id)
        changes = request.model_dump(exclude_unset=True)
        if "url" in changes and changes["url"] is not None:
            changes["url"] = changes["url"].rstrip("/")
        for field_name, value in changes.items():
            if value is not None:
                setattr(server, field_name, value)

        record_activity(
            self.session,
            actor,
            action="server_updated",
            target_type="server",
            target_id=server.id,
            target_label=server.name,
            details=changes,
        )
        await self.session.commit()
        metrics.admin_operations_total.labels(operation="server_updated").inc()
        logger.info("server_updated", server_id=str(server_id), fields=sorted(changes))
        return server

    async def delete(self, server_id: UUID, actor: ActorContext) -> None:
        server = await self.get(server_id)
        name = server.name
        await self.session.delete(server)
        record_activity(
            self.session,
            actor,
            action="server_deleted",
            target_type="server",
            target_id=server_id,
            target_label=name,
        )
        await self.session.commit()
        metrics.admin_operations_total.labels(operation="server_deleted").inc()
        logger.info("server_deleted", server_id=str(server_id))

    async def test(
        self, server_id: UUID, actor: ActorContext, url: str | None = None
    ) -> HealthCheckResult:
        """
        Check a server (or an alternative url for it) and store the outcome
        as the server's health.
        """
        server = await self.get(server_id)
        result = await check_health(url or server.url, self.http_client)

        server.is_healthy = result.is_healthy
        server.last_health_check = _utc_now()
        record_activity(
            self.session,
            actor,
            action="server_tested",
            target_type="server",
            target_id=server.id,
            target_label=server.name,
            details={
                "url": url or server.url,
                "is_healthy": result.is_healthy,
                "response_time_ms": result.response_time_ms,
                "error": result.error,
            },
        )
        await self.session.commit()
        metrics.admin_operations_total.labels(operation="server_tested").inc()
        logger.info(
            "server_checked",
            server_id=str(server_id),
            is_healthy=result.is_healthy,
            response_time_ms=result.response_time_ms,
        )
        return result

    async def set_health(
        self, server_id: UUID, is_healthy: bool, actor: ActorContext
    ) -> ValidationServer:
        server = await self.get(server_id)
        server.is_healthy = is_healthy
        server.last_health_check = _utc_now()
        record_activity(
            self.session,
            actor,
            action="server_health_set",
            target_type="server",
            target_id=server.id,
            target_label=server.name,
            details={"is_healthy": is_healthy},
        )
        await self.session.commit()
        metrics.admin_operations_total.labels(operation="server_health_set").inc()
        logger.info("server_health_set", server_id=str(server_id), is_healthy=is_healthy)
        return server

    async def record_stats(self, stats: Sequence[ServerStats]) -> None:
        """Fold accumulated request counters into the stored aggregates."""
        for entry in stats:
            server = await self.session.get(ValidationServer, entry.server_id)
            if server is None or entry.requests == 0:
                continue
            previous_total = server.total_requests
            combined_time = (
                server.avg_response_time_ms * previous_total + entry.total_response_time_ms
            )
            server.total_requests = previous_total + entry.requests
            server.successful_requests = server.successful_requests + entry.successes
            server.avg_response_time_ms = int(combined_time / server.total_requests)
        await self.session.commit()
