"""
Status API routes - Health checks for the validation service and its dependencies.

Public endpoints (no auth) for load balancers and status page aggregation.
/v1/status is rate limited via a short response cache.
"""

import time
from datetime import UTC, datetime
from enum import Enum

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import ValidationJob, ValidationServer
from app.db.session import get_write_db
from app.models.api import HealthResponse, JobStatus
from app.observability import get_logger

logger = get_logger(__name__)
router = APIRouter(tags=["status"])

DEGRADED_LATENCY_THRESHOLD = 1000  # ms
QUEUE_BACKLOG_THRESHOLD = 1000  # queued jobs

# Rate limiting: cache last result for 10 seconds
_status_cache: dict[str, tuple[datetime, "ServiceStatusResponse"]] = {}
_CACHE_TTL_SECONDS = 10


class StatusLevel(str, Enum):
    """Status levels for health checks."""

    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    OUTAGE = "outage"


class ProviderStatus(BaseModel):
    """Status of a single dependency."""

    status: StatusLevel
    latency_ms: int | None = None
    last_check: str = Field(..., description="ISO 8601 timestamp")
    message: str | None = None


class ServiceStatusResponse(BaseModel):
    """Response for /v1/status endpoint."""

    service: str = "truevalidator"
    status: StatusLevel
    timestamp: str = Field(..., description="ISO 8601 timestamp")
    version: str
    providers: dict[str, ProviderStatus]


async def check_database(db: AsyncSession) -> ProviderStatus:
    """Check database connectivity."""
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()

    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("database_health_check_failed", error=str(e))
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            last_check=timestamp,
            message="Connection failed",
        )

    latency_ms = int((time.perf_counter() - start) * 1000)
    level = (
        StatusLevel.DEGRADED if latency_ms > DEGRADED_LATENCY_THRESHOLD else StatusLevel.OPERATIONAL
    )
    return ProviderStatus(
        status=level,
        latency_ms=latency_ms,
        last_check=timestamp,
        message="High latency" if level == StatusLevel.DEGRADED else None,
    )


async def check_validation_servers(db: AsyncSession) -> ProviderStatus:
    """At least one active, healthy validation server must be available."""
    timestamp = datetime.now(UTC).isoformat()

    try:
        healthy = (
            await db.execute(
                select(func.count(ValidationServer.id)).where(
                    ValidationServer.is_active.is_(True),
                    ValidationServer.is_healthy.is_(True),
                )
            )
        ).scalar_one()
    except Exception as e:
        logger.warning("server_pool_health_check_failed", error=str(e))
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            last_check=timestamp,
            message="Server pool unavailable",
        )

    if healthy == 0:
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            last_check=timestamp,
            message="No healthy validation servers",
        )
    return ProviderStatus(
        status=StatusLevel.OPERATIONAL,
        last_check=timestamp,
        message=f"{healthy} healthy",
    )


async def check_job_queue(db: AsyncSession) -> ProviderStatus:
    """Report the queued backlog; a long backlog means the worker is falling behind."""
    timestamp = datetime.now(UTC).isoformat()

    try:
        queued = (
            await db.execute(
                select(func.count(ValidationJob.id)).where(
                    ValidationJob.status == JobStatus.QUEUED.value
                )
            )
        ).scalar_one()
    except Exception as e:
        logger.warning("job_queue_health_check_failed", error=str(e))
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            last_check=timestamp,
            message="Queue unavailable",
        )

    level = StatusLevel.DEGRADED if queued > QUEUE_BACKLOG_THRESHOLD else StatusLevel.OPERATIONAL
    return ProviderStatus(status=level, last_check=timestamp, message=f"{queued} queued")


def calculate_overall_status(providers: dict[str, ProviderStatus]) -> StatusLevel:
    """Calculate overall service status from provider statuses."""
    statuses = [p.status for p in providers.values()]

    if StatusLevel.OUTAGE in statuses:
        return StatusLevel.OUTAGE
    if StatusLevel.DEGRADED in statuses:
        return StatusLevel.DEGRADED
    return StatusLevel.OPERATIONAL


@router.get("/health", response_model=HealthResponse)
async def health(response: Response, db: AsyncSession = Depends(get_write_db)) -> HealthResponse:
    """Liveness check. 503 when the database is unreachable."""
    database = await check_database(db)
    timestamp = datetime.now(UTC).isoformat()
    if database.status == StatusLevel.OUTAGE:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="unhealthy", database="disconnected", timestamp=timestamp)
    return HealthResponse(status="healthy", database="connected", timestamp=timestamp)


@router.get("/v1/status", response_model=ServiceStatusResponse)
async def get_status(db: AsyncSession = Depends(get_write_db)) -> ServiceStatusResponse:
    """
    Get service status.

    Checks the database, the validation server pool and the job backlog.
    Rate limited via 10-second cache to prevent abuse.
    """
    cache_key = "status"
    now = datetime.now(UTC)

    if cache_key in _status_cache:
        cached_time, cached_response = _status_cache[cache_key]
        age_seconds = (now - cached_time).total_seconds()
        if age_seconds < _CACHE_TTL_SECONDS:
            logger.debug("status_cache_hit", age_seconds=age_seconds)
            return cached_response

    database = await check_database(db)
    if database.status == StatusLevel.OUTAGE:
        # Pool and queue checks share the same connection
        providers = {
            "database": database,
            "validation_servers": database,
            "job_queue": database,
        }
    else:
        providers = {
            "database": database,
            "validation_servers": await check_validation_servers(db),
            "job_queue": await check_job_queue(db),
        }

    response = ServiceStatusResponse(
        status=calculate_overall_status(providers),
        timestamp=now.isoformat(),
        version=settings.api_version,
        providers=providers,
    )

    _status_cache[cache_key] = (now, response)
    return response
