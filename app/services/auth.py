"""
User Authentication Service - passwords and access tokens.

NO DICTIONARIES - Token claims are returned as a typed object.

Passwords are hashed with Argon2id. Access tokens are HS256 JWTs carrying
the user id (sub), role and expiry.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import APIKey, CouponRedemption, PaymentOrder, Transaction, User
from app.exceptions import (
    AuthenticationError,
    DuplicateResourceError,
    UserNotFoundError,
    WriteVerificationError,
)
from app.models.api import UserRole
from app.observability import get_logger
from app.services.email_checker import normalize_email
from app.services.jobs import JobStore
from app.services.ledger import CreditLedger

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class TokenClaims:
    """Verified access token claims."""

    user_id: UUID
    role: UserRole
    expires_at: datetime


class AuthService:
    """Registration, login and token handling for dashboard users."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.password_hasher = PasswordHasher()

    async def register(self, name: str, email: str, password: str) -> User:
        """
        Create a user on the free plan. The first registered user is an admin.

        Raises:
            EmailValidationError: Malformed email
            DuplicateResourceError: Email already registered
        """
        normalized = normalize_email(email).lower()

        existing = await self.session.execute(select(User.id).where(User.email == normalized))
        if existing.scalar_one_or_none() is not None:
            raise DuplicateResourceError("User", normalized)

        user_count = (await self.session.execute(select(func.count()).select_from(User))).scalar_one()
        role = UserRole.ADMIN if user_count == 0 else UserRole.USER

        user = User(
            email=normalized,
            name=name.strip(),
            password_hash=self.password_hasher.hash(password),
            role=role.value,
            is_active=True,
            plan_name=settings.free_plan_name,
            credits_limit=settings.free_plan_credits,
            plan_credits=settings.free_plan_credits,
            addon_credits=0,
            plan_renews_at=_utc_now() + timedelta(days=settings.plan_period_days),
        )
        self.session.add(user)
        await self.session.flush()

        verified = await self.session.get(User, user.id)
        if verified is None:
            raise WriteVerificationError(f"User {normalized} not found after insert")
        await self.session.commit()

        logger.info("user_registered", user_id=str(user.id), role=role.value)
        return verified

    async def authenticate(self, email: str, password: str) -> User:
        """
        Check credentials.

        Raises:
            AuthenticationError: Unknown email, wrong password or inactive account
        """
        stmt = select(User).where(User.email == email.strip().lower())
        user = (await self.session.execute(stmt)).scalar_one_or_none()
        if user is None or not self.verify_password(user.password_hash, password):
            logger.warning("login_failed")
            raise AuthenticationError("Invalid email or password")
        if not user.is_active:
            logger.warning("inactive_user_login_attempt", user_id=str(user.id))
            raise AuthenticationError("Account is deactivated")

        if self.password_hasher.check_needs_rehash(user.password_hash):
            user.password_hash = self.password_hasher.hash(password)
            await self.session.commit()

        logger.info("user_logged_in", user_id=str(user.id))
        return user

    def verify_password(self, password_hash: str, password: str) -> bool:
        try:
            return self.password_hasher.verify(password_hash, password)
        except (VerificationError, InvalidHashError):
            return False

    @staticmethod
    def create_access_token(user: User) -> str:
        """Create JWT access token for a user."""
        now = _utc_now()
        payload = {
            "sub": str(user.id),
            "role": user.role,
            "iat": now,
            "exp": now + timedelta(hours=settings.jwt_expire_hours),
        }
        return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)

    @staticmethod
    def verify_access_token(token: str) -> TokenClaims:
        """
        Verify a JWT access token.

        Raises:
            AuthenticationError: Expired, tampered or malformed token
        """
        try:
            payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
            return TokenClaims(
                user_id=UUID(str(payload["sub"])),
                role=UserRole(payload.get("role", UserRole.USER.value)),
                expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=UTC),
            )
        except jwt.ExpiredSignatureError as e:
            logger.info("jwt_token_expired")
            raise AuthenticationError("Token has expired") from e
        except (jwt.InvalidTokenError, KeyError, ValueError) as e:
            logger.warning("jwt_token_invalid", error=str(e))
            raise AuthenticationError("Invalid token") from e

    async def get_user(self, user_id: UUID) -> User:
        user = await self.session.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def change_password(self, user_id: UUID, current_password: str, new_password: str) -> None:
        """
        Raises:
            AuthenticationError: current_password is wrong
        """
        user = await self.get_user(user_id)
        if not self.verify_password(user.password_hash, current_password):
            raise AuthenticationError("Current password is incorrect")
        user.password_hash = self.password_hasher.hash(new_password)
        await self.session.commit()
        logger.info("password_changed", user_id=str(user_id))

    def set_password(self, user: User, new_password: str) -> None:
        """Replace a password without the old one (admin reset). Caller commits."""
        user.password_hash = self.password_hasher.hash(new_password)

    async def update_profile(self, user_id: UUID, name: str) -> User:
        user = await self.get_user(user_id)
        user.name = name.strip()
        await self.session.commit()
        logger.info("profile_updated", user_id=str(user_id))
        return user

    async def delete_account(self, user_id: UUID) -> None:
        """Delete a user and everything they own."""
        ledger = CreditLedger(self.session)
        async with ledger.locked(user_id) as user:
            counts = await purge_user_rows(self.session, user)
        logger.info("account_deleted", user_id=str(user_id), **counts)


async def purge_user_rows(session: AsyncSession, user: User) -> dict[str, int]:
    """
    Delete a locked user with their keys, jobs, results, reservations,
    orders, coupon redemptions and transactions. The caller commits.
    """
    jobs_deleted = await JobStore(session).delete_jobs_for_user(user.id)
    keys = await session.execute(delete(APIKey).where(APIKey.user_id == user.id))
    await session.execute(delete(CouponRedemption).where(CouponRedemption.user_id == user.id))
    await session.execute(delete(PaymentOrder).where(PaymentOrder.user_id == user.id))
    await session.execute(delete(Transaction).where(Transaction.user_id == user.id))
    await session.delete(user)
    await session.flush()
    return {"jobs_deleted": jobs_deleted, "api_keys_deleted": keys.rowcount or 0}
