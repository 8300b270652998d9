"""
FastAPI Dependencies - Authentication, authorization and collaborators.

NO DICTIONARIES - All dependencies return typed objects.
"""

from dataclasses import dataclass
from functools import lru_cache
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.errors import to_http_exception
from app.db.models import User
from app.db.session import get_session_factory, get_write_db
from app.exceptions import AuthenticationError, RateLimitExceededError
from app.models.api import UserRole
from app.models.domain import ActorContext
from app.observability import get_logger
from app.services.api_key import APIKeyService
from app.services.auth import AuthService
from app.services.email_checker import EmailChecker, HttpEmailChecker
from app.services.orchestrator import ValidationOrchestrator
from app.services.payment_provider import HmacPaymentProvider, PaymentProvider
from app.services.rate_limit import rate_limiter
from app.services.webhooks import WebhookNotifier

logger = get_logger(__name__)

# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


# ============================================================================
# Authentication (JWT or API key)
# ============================================================================


@dataclass
class AuthContext:
    """Authenticated caller: a dashboard session or an API key."""

    user: User
    api_key_id: UUID | None = None
    rate_limit_per_minute: int | None = None

    @property
    def user_id(self) -> UUID:
        return self.user.id

    @property
    def via_api_key(self) -> bool:
        return self.api_key_id is not None


def client_ip(request: Request) -> str | None:
    """Client address, honouring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


async def get_current_user(
    request: Request,
    x_api_key: str | None = Header(None, description="Validation API key"),
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_write_db),
) -> AuthContext:
    """
    Authenticate with X-API-Key or Authorization: Bearer {jwt}.

    Priority:
    1. If X-API-Key header is present, use API key auth
    2. If Authorization: Bearer token is present, use JWT auth
    3. If neither, raise 401
    """
    api_key_id: UUID | None = None
    rate_limit: int | None = None
    try:
        if x_api_key:
            validated = await APIKeyService(db).validate_api_key(x_api_key, client_ip(request))
            user_id = validated.user_id
            api_key_id = validated.key_id
            rate_limit = validated.rate_limit_per_minute
        elif credentials:
            user_id = AuthService.verify_access_token(credentials.credentials).user_id
        else:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required. Provide X-API-Key header or Authorization: Bearer {token}",
                headers={"WWW-Authenticate": "Bearer, ApiKey"},
            )
    except AuthenticationError as exc:
        raise to_http_exception(exc) from exc

    user = await db.get(User, user_id)
    if user is None:
        logger.warning("auth_user_not_found", user_id=str(user_id))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        logger.warning("auth_user_inactive", user_id=str(user_id))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is deactivated",
        )

    return AuthContext(user=user, api_key_id=api_key_id, rate_limit_per_minute=rate_limit)


async def get_rate_limited_user(
    auth: AuthContext = Depends(get_current_user),
) -> AuthContext:
    """get_current_user plus the per-key minute window for API-key callers."""
    if auth.api_key_id is not None and auth.rate_limit_per_minute:
        try:
            rate_limiter.hit(auth.api_key_id, auth.rate_limit_per_minute)
        except RateLimitExceededError as exc:
            raise to_http_exception(exc) from exc
    return auth


async def get_session_user(
    auth: AuthContext = Depends(get_current_user),
) -> User:
    """Dashboard-only endpoints: reject API keys."""
    if auth.via_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This endpoint requires a signed-in session",
        )
    return auth.user


async def require_admin(
    user: User = Depends(get_session_user),
) -> User:
    """
    Require admin role.

    Raises:
        HTTPException(403): If user is not an admin
    """
    if user.role != UserRole.ADMIN.value:
        logger.warning("admin_auth_insufficient_role", user_id=str(user.id), role=user.role)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return user


async def get_actor(
    request: Request,
    admin: User = Depends(require_admin),
) -> ActorContext:
    """The admin performing an override, with their client address."""
    return ActorContext(admin_id=admin.id, admin_email=admin.email, ip=client_ip(request))


# ============================================================================
# Collaborators
# ============================================================================

_email_checker: HttpEmailChecker | None = None
_webhook_notifier: WebhookNotifier | None = None


@lru_cache
def get_payment_provider() -> PaymentProvider:
    return HmacPaymentProvider()


def get_email_checker(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> EmailChecker:
    """Process-wide checker backed by the validation server pool."""
    global _email_checker
    if _email_checker is None:
        _email_checker = HttpEmailChecker(session_factory)
    return _email_checker


def get_webhook_notifier() -> WebhookNotifier:
    global _webhook_notifier
    if _webhook_notifier is None:
        _webhook_notifier = WebhookNotifier()
    return _webhook_notifier


def get_orchestrator(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    checker: EmailChecker = Depends(get_email_checker),
    notifier: WebhookNotifier = Depends(get_webhook_notifier),
) -> ValidationOrchestrator:
    """Orchestrator for inline single validations."""
    return ValidationOrchestrator(session_factory, checker, notifier)


def invalidate_server_pool() -> None:
    """Make the API's checker reload the pool after an admin change."""
    if _email_checker is not None:
        _email_checker.invalidate()


async def close_collaborators() -> None:
    """Flush checker stats and close HTTP clients (shutdown)."""
    global _email_checker, _webhook_notifier
    if _email_checker is not None:
        await _email_checker.flush_stats()
        await _email_checker.close()
        _email_checker = None
    if _webhook_notifier is not None:
        await _webhook_notifier.close()
        _webhook_notifier = None
