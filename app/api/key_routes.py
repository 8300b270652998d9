"""
API key routes - a user's own keys.

NO DICTIONARIES - All requests/responses use Pydantic models.

The secret is returned only from POST /keys.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_session_user
from app.api.errors import to_http_exception
from app.api.responses import api_key_fields, api_key_response
from app.db.models import User
from app.db.session import get_write_db
from app.exceptions import ValidatorServiceError
from app.models.api import (
    APIKeyCreateRequest,
    APIKeyCreateResponse,
    APIKeyResponse,
    APIKeyUpdateRequest,
    APIKeyUsageResponse,
)
from app.services.api_key import APIKeyService

router = APIRouter(prefix="/keys", tags=["keys"])


@router.get("", response_model=list[APIKeyResponse])
async def list_keys(
    user: User = Depends(get_session_user),
    db: AsyncSession = Depends(get_write_db),
) -> list[APIKeyResponse]:
    keys = await APIKeyService(db).list_api_keys(user.id)
    return [api_key_response(key) for key in keys]


@router.post("", response_model=APIKeyCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_key(
    request: APIKeyCreateRequest,
    user: User = Depends(get_session_user),
    db: AsyncSession = Depends(get_write_db),
) -> APIKeyCreateResponse:
    generated = await APIKeyService(db).create_api_key(
        user.id, request.name, request.rate_limit_per_minute
    )
    return APIKeyCreateResponse(
        **api_key_fields(generated.api_key), key=generated.plaintext_key
    )


@router.put("/{key_id}", response_model=APIKeyResponse)
async def update_key(
    key_id: UUID,
    request: APIKeyUpdateRequest,
    user: User = Depends(get_session_user),
    db: AsyncSession = Depends(get_write_db),
) -> APIKeyResponse:
    """Rename, pause/resume or re-limit a key. 409 when resuming a revoked key."""
    try:
        key = await APIKeyService(db).update_api_key(
            key_id,
            user.id,
            name=request.name,
            is_active=request.is_active,
            rate_limit_per_minute=request.rate_limit_per_minute,
        )
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return api_key_response(key)


@router.delete("/{key_id}", response_model=APIKeyResponse)
async def revoke_key(
    key_id: UUID,
    user: User = Depends(get_session_user),
    db: AsyncSession = Depends(get_write_db),
) -> APIKeyResponse:
    """Revoke a key. The record is kept for usage history."""
    try:
        key = await APIKeyService(db).revoke_api_key(key_id, user.id)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return api_key_response(key)


@router.get("/{key_id}/usage", response_model=APIKeyUsageResponse)
async def key_usage(
    key_id: UUID,
    user: User = Depends(get_session_user),
    db: AsyncSession = Depends(get_write_db),
) -> APIKeyUsageResponse:
    try:
        usage = await APIKeyService(db).key_usage(key_id, user.id)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return APIKeyUsageResponse(
        key_id=usage.key_id,
        usage_count=usage.usage_count,
        jobs_count=usage.jobs_count,
        emails_validated=usage.emails_validated,
        last_used_at=usage.last_used_at,
    )
