"""
API Key Service - Generation and validation of user API keys.

NO DICTIONARIES - All data uses typed models/dataclasses.

The plaintext key is returned exactly once, from create_api_key(). Only an
Argon2id hash and a non-secret preview are stored. Revocation is terminal
but keeps the record for usage history.
"""

import base64
import secrets
from datetime import UTC, datetime
from uuid import UUID

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerifyMismatchError
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import APIKey, User, ValidationJob
from app.exceptions import APIKeyNotFoundError, APIKeyRevokedError, AuthenticationError
from app.models.domain import ActorContext
from app.observability import get_logger, metrics
from app.services.audit import record_activity

logger = get_logger(__name__)

PREFIX_LENGTH = 20
PREVIEW_LENGTH = 12


class ValidatedKey:
    """Identity behind a valid API key (NO DICTIONARIES)."""

    def __init__(self, key_id: UUID, user_id: UUID, rate_limit_per_minute: int):
        self.key_id = key_id
        self.user_id = user_id
        self.rate_limit_per_minute = rate_limit_per_minute


class GeneratedAPIKey:
    """Newly created API key (includes plaintext, shown once)."""

    def __init__(self, api_key: APIKey, plaintext_key: str):
        self.api_key = api_key
        self.plaintext_key = plaintext_key


class APIKeyUsage:
    """Usage figures of one key."""

    def __init__(
        self,
        key_id: UUID,
        usage_count: int,
        jobs_count: int,
        emails_validated: int,
        last_used_at: datetime | None,
    ):
        self.key_id = key_id
        self.usage_count = usage_count
        self.jobs_count = jobs_count
        self.emails_validated = emails_validated
        self.last_used_at = last_used_at


class APIKeyService:
    """Service for API key management."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.password_hasher = PasswordHasher()

    def generate_api_key(self, environment: str | None = None) -> tuple[str, str, str]:
        """
        Generate a new API key.

        Returns:
            tuple: (plaintext_key, key_hash, key_prefix)
        """
        environment = environment or settings.api_key_environment

        # Generate cryptographically secure random bytes
        random_bytes = secrets.token_bytes(32)
        key_suffix = base64.urlsafe_b64encode(random_bytes).decode("utf-8").rstrip("=")

        # Format: tv_{env}_{suffix}
        plaintext_key = f"{settings.api_key_prefix}_{environment}_{key_suffix}"

        # Prefix for lookup (unique), hash for verification
        key_prefix = plaintext_key[:PREFIX_LENGTH]
        key_hash = self.password_hasher.hash(plaintext_key)

        return plaintext_key, key_hash, key_prefix

    async def create_api_key(
        self, user_id: UUID, name: str, rate_limit_per_minute: int | None = None
    ) -> GeneratedAPIKey:
        """
        Create a new API key for a user.

        Returns:
            GeneratedAPIKey with plaintext key (shown once!)
        """
        plaintext_key, key_hash, key_prefix = self.generate_api_key()

        api_key = APIKey(
            user_id=user_id,
            key_hash=key_hash,
            key_prefix=key_prefix,
            preview=plaintext_key[:PREVIEW_LENGTH],
            name=name,
            is_active=True,
            usage_count=0,
            rate_limit_per_minute=rate_limit_per_minute or settings.default_rate_limit_per_minute,
        )
        self.db.add(api_key)
        await self.db.commit()
        await self.db.refresh(api_key)

        logger.info("api_key_created", key_id=str(api_key.id), user_id=str(user_id), name=name)
        return GeneratedAPIKey(api_key=api_key, plaintext_key=plaintext_key)

    async def validate_api_key(self, provided_key: str, ip: str | None = None) -> ValidatedKey:
        """
        Validate an API key and record its use.

        Raises:
            AuthenticationError: Unknown, malformed, revoked or inactive key
        """
        if not provided_key.startswith(f"{settings.api_key_prefix}_"):
            logger.warning("api_key_invalid_format", prefix=provided_key[:6])
            raise AuthenticationError("Invalid API key format")

        key_prefix = provided_key[:PREFIX_LENGTH]
        stmt = select(APIKey).where(APIKey.key_prefix == key_prefix)
        api_key = (await self.db.execute(stmt)).scalar_one_or_none()

        if not api_key:
            logger.warning("api_key_not_found", prefix=key_prefix[:PREVIEW_LENGTH])
            raise AuthenticationError("Invalid API key")

        try:
            self.password_hasher.verify(api_key.key_hash, provided_key)
        except (VerifyMismatchError, InvalidHashError):
            logger.warning("api_key_hash_mismatch", key_id=str(api_key.id))
            raise AuthenticationError("Invalid API key")

        if api_key.is_revoked:
            logger.warning("api_key_revoked_used", key_id=str(api_key.id))
            raise AuthenticationError("API key has been revoked")
        if not api_key.is_active:
            raise AuthenticationError("API key is inactive")

        api_key.usage_count = api_key.usage_count + 1
        api_key.last_used_at = datetime.now(UTC)
        api_key.last_used_ip = ip
        await self.db.commit()

        return ValidatedKey(
            key_id=api_key.id,
            user_id=api_key.user_id,
            rate_limit_per_minute=api_key.rate_limit_per_minute,
        )

    async def list_api_keys(self, user_id: UUID) -> list[APIKey]:
        """List a user's keys, newest first (revoked keys included)."""
        stmt = (
            select(APIKey)
            .where(APIKey.user_id == user_id)
            .order_by(APIKey.created_at.desc())
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def list_all(
        self, page: int = 1, page_size: int = 20, search: str | None = None
    ) -> tuple[list[tuple[APIKey, str | None]], int]:
        """All keys with their owner's email, for admins."""
        conditions = []
        if search:
            pattern = f"%{search.strip()}%"
            conditions.append(or_(APIKey.name.ilike(pattern), User.email.ilike(pattern)))

        base = select(APIKey, User.email).outerjoin(User, User.id == APIKey.user_id).where(*conditions)
        count_stmt = select(func.count()).select_from(base.subquery())
        total = (await self.db.execute(count_stmt)).scalar_one()

        stmt = base.order_by(APIKey.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
        rows = (await self.db.execute(stmt)).all()
        return [(api_key, email) for api_key, email in rows], total

    async def get_api_key(self, key_id: UUID, user_id: UUID | None = None) -> APIKey:
        """
        Raises:
            APIKeyNotFoundError: No such key (or not owned by user_id)
        """
        api_key = await self.db.get(APIKey, key_id)
        if api_key is None or (user_id is not None and api_key.user_id != user_id):
            raise APIKeyNotFoundError(key_id)
        return api_key

    async def update_api_key(
        self,
        key_id: UUID,
        user_id: UUID,
        name: str | None = None,
        is_active: bool | None = None,
        rate_limit_per_minute: int | None = None,
    ) -> APIKey:
        """Rename, toggle or re-limit a key. A revoked key stays inactive."""
        api_key = await self.get_api_key(key_id, user_id)
        if name is not None:
            api_key.name = name
        if is_active is not None:
            if is_active and api_key.is_revoked:
                raise APIKeyRevokedError(key_id)
            api_key.is_active = is_active
        if rate_limit_per_minute is not None:
            api_key.rate_limit_per_minute = rate_limit_per_minute
        await self.db.commit()

        logger.info("api_key_updated", key_id=str(key_id))
        return api_key

    async def revoke_api_key(
        self, key_id: UUID, user_id: UUID | None = None, actor: ActorContext | None = None
    ) -> APIKey:
        """Revoke a key. Revoking twice keeps the original revocation time."""
        api_key = await self.get_api_key(key_id, user_id)
        if api_key.revoked_at is None:
            api_key.revoked_at = datetime.now(UTC)
        api_key.is_active = False

        if actor is not None:
            record_activity(
                self.db,
                actor,
                action="api_key_revoked",
                target_type="api_key",
                target_id=api_key.id,
                target_label=api_key.preview,
                details={"user_id": api_key.user_id, "name": api_key.name},
            )
            metrics.admin_operations_total.labels(operation="api_key_revoked").inc()
        await self.db.commit()

        logger.info("api_key_revoked", key_id=str(key_id), name=api_key.name)
        return api_key

    async def delete_api_key(self, key_id: UUID, actor: ActorContext) -> None:
        """Hard-delete a key (admin only). Jobs keep running without the link."""
        api_key = await self.get_api_key(key_id)
        preview = api_key.preview
        owner = api_key.user_id
        await self.db.delete(api_key)
        record_activity(
            self.db,
            actor,
            action="api_key_deleted",
            target_type="api_key",
            target_id=key_id,
            target_label=preview,
            details={"user_id": owner},
        )
        await self.db.commit()
        metrics.admin_operations_total.labels(operation="api_key_deleted").inc()
        logger.info("api_key_deleted", key_id=str(key_id))

    async def key_usage(self, key_id: UUID, user_id: UUID) -> APIKeyUsage:
        api_key = await self.get_api_key(key_id, user_id)
        stmt = select(
            func.count(ValidationJob.id),
            func.coalesce(func.sum(ValidationJob.processed_emails), 0),
        ).where(ValidationJob.api_key_id == key_id)
        jobs_count, emails_validated = (await self.db.execute(stmt)).one()
        return APIKeyUsage(
            key_id=api_key.id,
            usage_count=api_key.usage_count,
            jobs_count=int(jobs_count),
            emails_validated=int(emails_validated),
            last_used_at=api_key.last_used_at,
        )
