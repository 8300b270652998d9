"""
Tests for API dependencies.

Tests authentication, authorization and rate limiting helpers.
"""

from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from app.api.dependencies import (
    AuthContext,
    client_ip,
    get_actor,
    get_current_user,
    get_rate_limited_user,
    get_session_user,
    require_admin,
)
from app.services.api_key import APIKeyService
from app.services.auth import AuthService


def _request(headers: dict[str, str] | None = None, host: str | None = "10.0.0.5") -> MagicMock:
    request = MagicMock()
    request.headers = headers or {}
    request.client = MagicMock(host=host) if host else None
    return request


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestClientIp:
    def test_forwarded_for_first_hop(self):
        request = _request({"X-Forwarded-For": "198.51.100.1, 10.0.0.1"})
        assert client_ip(request) == "198.51.100.1"

    def test_socket_address(self):
        assert client_ip(_request()) == "10.0.0.5"

    def test_no_client(self):
        assert client_ip(_request(host=None)) is None


class TestGetCurrentUser:
    """Tests for get_current_user (X-API-Key or Bearer JWT)."""

    @pytest.mark.asyncio
    async def test_no_credentials_raises_401(self, session):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(_request(), x_api_key=None, credentials=None, db=session)
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_jwt(self, session, user):
        auth = await get_current_user(
            _request(), x_api_key=None, credentials=_bearer(AuthService.create_access_token(user)), db=session
        )
        assert auth.user_id == user.id
        assert not auth.via_api_key

    @pytest.mark.asyncio
    async def test_api_key_takes_priority(self, session, user, admin):
        generated = await APIKeyService(session).create_api_key(user.id, "CI", rate_limit_per_minute=7)

        auth = await get_current_user(
            _request(),
            x_api_key=generated.plaintext_key,
            credentials=_bearer(AuthService.create_access_token(admin)),
            db=session,
        )

        assert auth.user_id == user.id
        assert auth.api_key_id == generated.api_key.id
        assert auth.rate_limit_per_minute == 7

    @pytest.mark.asyncio
    async def test_invalid_api_key_raises_401(self, session):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(_request(), x_api_key="tv_live_nope", credentials=None, db=session)
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_deleted_user_raises_401(self, session, user, session_factory):
        token = AuthService.create_access_token(user)
        async with session_factory() as other:
            await AuthService(other).delete_account(user.id)

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(_request(), x_api_key=None, credentials=_bearer(token), db=session)
        assert exc_info.value.status_code == 401


class TestAuthorization:
    """Tests for session-only and admin-only guards."""

    @pytest.mark.asyncio
    async def test_session_user_rejects_api_key(self, user):
        with pytest.raises(HTTPException) as exc_info:
            await get_session_user(AuthContext(user=user, api_key_id=uuid4()))
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_require_admin(self, user, admin):
        assert await require_admin(admin) is admin
        with pytest.raises(HTTPException) as exc_info:
            await require_admin(user)
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_actor_carries_ip(self, admin):
        actor = await get_actor(_request({"X-Forwarded-For": "203.0.113.9"}), admin)
        assert actor.admin_id == admin.id
        assert actor.admin_email == "admin@example.com"
        assert actor.ip == "203.0.113.9"


class TestRateLimitedUser:
    @pytest.mark.asyncio
    async def test_jwt_callers_not_limited(self, user):
        auth = AuthContext(user=user)
        for _ in range(5):
            assert await get_rate_limited_user(auth) is auth

    @pytest.mark.asyncio
    async def test_api_key_window(self, user):
        auth = AuthContext(user=user, api_key_id=uuid4(), rate_limit_per_minute=1)
        await get_rate_limited_user(auth)

        with pytest.raises(HTTPException) as exc_info:
            await get_rate_limited_user(auth)

        assert exc_info.value.status_code == 429
        assert "Retry-After" in exc_info.value.headers
