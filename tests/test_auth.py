"""
Tests for registration, login, tokens and account deletion.
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import jwt
import pytest
from sqlalchemy import func, select

from app.config import settings
from app.db.models import APIKey, User, ValidationJob
from app.exceptions import (
    AuthenticationError,
    DuplicateResourceError,
    EmailValidationError,
    UserNotFoundError,
)
from app.models.api import JobType, UserRole
from app.services.api_key import APIKeyService
from app.services.auth import AuthService
from app.services.jobs import JobStore
from conftest import TEST_PASSWORD


class TestRegister:
    """Tests for registration."""

    @pytest.mark.asyncio
    async def test_first_user_is_admin(self, session):
        service = AuthService(session)
        first = await service.register("Ada", "Ada@Example.com", "long-enough-password")
        second = await service.register("Bob", "bob@example.com", "long-enough-password")

        assert first.email == "ada@example.com"
        assert first.role == UserRole.ADMIN.value
        assert second.role == UserRole.USER.value

    @pytest.mark.asyncio
    async def test_starts_on_free_plan(self, session):
        user = await AuthService(session).register("Ada", "ada@example.com", "long-enough-password")
        assert user.plan_name == "free"
        assert (user.plan_credits, user.addon_credits, user.credits_limit) == (100, 0, 100)
        assert user.plan_renews_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_email(self, session, user):
        with pytest.raises(DuplicateResourceError):
            await AuthService(session).register("Again", "USER@example.com", "long-enough-password")

    @pytest.mark.asyncio
    async def test_malformed_email(self, session):
        with pytest.raises(EmailValidationError):
            await AuthService(session).register("Ada", "not-an-email", "long-enough-password")


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_valid_credentials(self, session, user):
        assert (await AuthService(session).authenticate(" User@Example.com ", TEST_PASSWORD)).id == user.id

    @pytest.mark.asyncio
    async def test_wrong_password(self, session, user):
        with pytest.raises(AuthenticationError, match="Invalid email or password"):
            await AuthService(session).authenticate("user@example.com", "wrong-password")

    @pytest.mark.asyncio
    async def test_unknown_email(self, session):
        with pytest.raises(AuthenticationError):
            await AuthService(session).authenticate("ghost@example.com", TEST_PASSWORD)

    @pytest.mark.asyncio
    async def test_deactivated(self, session, make_user):
        await make_user(email="gone@example.com", is_active=False)
        with pytest.raises(AuthenticationError, match="deactivated"):
            await AuthService(session).authenticate("gone@example.com", TEST_PASSWORD)


class TestTokens:
    """Tests for JWT access tokens."""

    def test_round_trip(self, user):
        claims = AuthService.verify_access_token(AuthService.create_access_token(user))
        assert claims.user_id == user.id
        assert claims.role == UserRole.USER
        assert claims.expires_at > datetime.now(UTC)

    def test_expired(self):
        past = datetime.now(UTC) - timedelta(hours=1)
        token = jwt.encode(
            {"sub": str(uuid4()), "role": "user", "iat": past, "exp": past},
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
        )
        with pytest.raises(AuthenticationError, match="expired"):
            AuthService.verify_access_token(token)

    def test_wrong_secret(self):
        token = jwt.encode(
            {"sub": str(uuid4()), "exp": datetime.now(UTC) + timedelta(hours=1)},
            "another-secret-that-is-long-enough-to-sign",
            algorithm=settings.jwt_algorithm,
        )
        with pytest.raises(AuthenticationError, match="Invalid token"):
            AuthService.verify_access_token(token)

    def test_missing_subject(self):
        token = jwt.encode(
            {"exp": datetime.now(UTC) + timedelta(hours=1)},
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
        )
        with pytest.raises(AuthenticationError):
            AuthService.verify_access_token(token)


class TestAccount:
    """Tests for profile, password and deletion."""

    @pytest.mark.asyncio
    async def test_change_password(self, session, user):
        service = AuthService(session)
        await service.change_password(user.id, TEST_PASSWORD, "brand-new-password")
        assert (await service.authenticate("user@example.com", "brand-new-password")).id == user.id

    @pytest.mark.asyncio
    async def test_change_password_wrong_current(self, session, user):
        with pytest.raises(AuthenticationError):
            await AuthService(session).change_password(user.id, "nope", "brand-new-password")

    @pytest.mark.asyncio
    async def test_update_profile(self, session, user):
        updated = await AuthService(session).update_profile(user.id, "  Grace  ")
        assert updated.name == "Grace"

    @pytest.mark.asyncio
    async def test_delete_account_removes_owned_rows(self, session, session_factory, user):
        await APIKeyService(session).create_api_key(user.id, "CI")
        async with session_factory() as other:
            await JobStore(other).create_job(user.id, ["a@example.com"], JobType.BULK)

        await AuthService(session).delete_account(user.id)

        async with session_factory() as check:
            assert await check.get(User, user.id) is None
            keys = await check.execute(select(func.count()).select_from(APIKey))
            jobs = await check.execute(select(func.count()).select_from(ValidationJob))
            assert (keys.scalar_one(), jobs.scalar_one()) == (0, 0)

    @pytest.mark.asyncio
    async def test_delete_unknown_account(self, session):
        with pytest.raises(UserNotFoundError):
            await AuthService(session).delete_account(uuid4())
