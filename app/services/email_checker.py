"""
Email checker collaborator.

The checker is opaque to the pipeline: it returns one verdict per address.
HttpEmailChecker forwards each address to a validation server chosen by
weight from the pool.
"""

import csv
import io
import random
import time
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import UUID

import httpx
from email_validator import EmailNotValidError, validate_email
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.exceptions import EmailValidationError, TransientCheckFailure, UpstreamError
from app.models.api import ResultStatus
from app.models.domain import CheckVerdict, EmailChecks, PoolServer, ServerStats
from app.observability import get_logger
from app.services.server_pool import ServerPoolService, select_weighted

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    """
    Syntax-check an address and return its normalized form.

    Raises:
        EmailValidationError: Address is malformed
    """
    try:
        validated = validate_email(email.strip(), check_deliverability=False)
    except EmailNotValidError as e:
        raise EmailValidationError(str(e), email=email) from e
    return validated.normalized


@dataclass(frozen=True)
class ExtractedAddresses:
    """Addresses found in an uploaded file."""

    emails: tuple[str, ...]
    skipped: int


def extract_addresses(text: str) -> ExtractedAddresses:
    """
    Pull one address per CSV cell, in file order.

    Cells without an "@" (headers, names) are ignored. Malformed addresses
    are counted in `skipped`; duplicates (case-insensitive) are dropped.
    """
    seen: set[str] = set()
    emails: list[str] = []
    skipped = 0
    for row in csv.reader(io.StringIO(text)):
        for cell in row:
            candidate = cell.strip().strip('"').strip()
            if "@" not in candidate:
                continue
            try:
                normalized = normalize_email(candidate)
            except EmailValidationError:
                skipped += 1
                continue
            key = normalized.lower()
            if key in seen:
                continue
            seen.add(key)
            emails.append(normalized)
    return ExtractedAddresses(emails=tuple(emails), skipped=skipped)


def classify(checks: EmailChecks) -> ResultStatus:
    """Bucket check flags into exactly one category."""
    if not checks.syntax_valid or not checks.mx_found:
        return ResultStatus.INVALID
    if checks.disposable:
        return ResultStatus.DISPOSABLE
    if checks.role_based:
        return ResultStatus.ROLE_BASED
    if checks.catch_all:
        return ResultStatus.CATCH_ALL
    if checks.smtp_valid:
        return ResultStatus.VALID
    return ResultStatus.UNKNOWN


def parse_verdict(email: str, payload: Any, response_time_ms: int) -> CheckVerdict:
    """Map a validation server response body to a verdict."""
    if not isinstance(payload, dict):
        raise TransientCheckFailure(email, "malformed checker response")

    checks = EmailChecks.from_json(payload.get("checks"))
    raw_status = payload.get("status")
    try:
        status = ResultStatus(raw_status) if raw_status else classify(checks)
    except ValueError:
        status = ResultStatus.UNKNOWN
    if status == ResultStatus.PENDING:
        status = ResultStatus.UNKNOWN

    try:
        score = int(payload.get("score", 0))
    except (TypeError, ValueError):
        score = 0

    return CheckVerdict(
        email=email,
        status=status,
        score=max(0, min(score, 100)),
        checks=checks,
        response_time_ms=response_time_ms,
    )


class EmailChecker(Protocol):
    async def check(self, email: str, verify_smtp: bool = True) -> CheckVerdict:
        """
        Check one address.

        Raises:
            TransientCheckFailure: Timeout or upstream error for this address
            UpstreamError: No validation server is available at all
        """
        ...


@dataclass
class _StatsAccumulator:
    requests: int = 0
    successes: int = 0
    total_response_time_ms: int = 0


class HttpEmailChecker:
    """Email checker backed by the validation server pool."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.session_factory = session_factory
        self._http_client = http_client
        self.rng = rng or random.Random()
        self._servers: list[PoolServer] = []
        self._servers_loaded_at: float | None = None
        self._stats: dict[UUID, _StatsAccumulator] = {}

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.check_timeout_seconds)
        return self._http_client

    async def servers(self) -> list[PoolServer]:
        """Healthy servers, cached for server_pool_cache_seconds."""
        now = time.monotonic()
        if (
            self._servers_loaded_at is None
            or now - self._servers_loaded_at >= settings.server_pool_cache_seconds
        ):
            async with self.session_factory() as session:
                self._servers = await ServerPoolService(session).healthy_servers()
            self._servers_loaded_at = now
        return self._servers

    def invalidate(self) -> None:
        """Force a pool reload on next use."""
        self._servers_loaded_at = None

    async def check(self, email: str, verify_smtp: bool = True) -> CheckVerdict:
        server = select_weighted(await self.servers(), self.rng)
        if server is None:
            raise UpstreamError("no healthy validation server available")

        started = time.perf_counter()
        try:
            response = await self.http_client.post(
                f"{server.url}/verify",
                json={"email": email, "verify_smtp": verify_smtp},
                timeout=settings.check_timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            self._record(server, started, success=False)
            logger.warning(
                "checker_http_error",
                server_id=str(server.server_id),
                status=e.response.status_code,
            )
            raise TransientCheckFailure(email, f"HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            self._record(server, started, success=False)
            logger.warning(
                "checker_transport_error",
                server_id=str(server.server_id),
                error=str(e) or type(e).__name__,
            )
            raise TransientCheckFailure(email, str(e) or type(e).__name__) from e

        elapsed = self._record(server, started, success=True)
        return parse_verdict(email, payload, elapsed)

    def drain_stats(self) -> list[ServerStats]:
        """Take and reset the accumulated per-server counters."""
        drained = [
            ServerStats(
                server_id=server_id,
                requests=acc.requests,
                successes=acc.successes,
                total_response_time_ms=acc.total_response_time_ms,
            )
            for server_id, acc in self._stats.items()
            if acc.requests
        ]
        self._stats = {}
        return drained

    async def flush_stats(self) -> None:
        """Persist accumulated per-server counters."""
        stats = self.drain_stats()
        if not stats:
            return
        async with self.session_factory() as session:
            await ServerPoolService(session).record_stats(stats)
        logger.debug("server_stats_flushed", servers=len(stats))

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()

    def _record(self, server: PoolServer, started: float, success: bool) -> int:
        elapsed = int((time.perf_counter() - started) * 1000)
        acc = self._stats.setdefault(server.server_id, _StatsAccumulator())
        acc.requests += 1
        acc.total_response_time_ms += elapsed
        if success:
            acc.successes += 1
        return elapsed
