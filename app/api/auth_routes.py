"""
Auth routes - registration, login and profile for dashboard users.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_session_user
from app.api.errors import to_http_exception
from app.api.responses import user_profile
from app.db.models import User
from app.db.session import get_write_db
from app.exceptions import AuthenticationError, ValidatorServiceError
from app.models.api import (
    LoginRequest,
    PasswordChangeRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    TokenResponse,
    UserProfileResponse,
)
from app.services.auth import AuthService

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    db: AsyncSession = Depends(get_write_db),
) -> TokenResponse:
    """Create an account on the free plan and sign it in."""
    service = AuthService(db)
    try:
        user = await service.register(request.name, request.email, request.password)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return TokenResponse(token=service.create_access_token(user), user=user_profile(user))


@router.post("/login", response_model=TokenResponse)
async def login(
    request: LoginRequest,
    db: AsyncSession = Depends(get_write_db),
) -> TokenResponse:
    service = AuthService(db)
    try:
        user = await service.authenticate(request.email, request.password)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return TokenResponse(token=service.create_access_token(user), user=user_profile(user))


@router.get("/me", response_model=UserProfileResponse)
async def me(user: User = Depends(get_session_user)) -> UserProfileResponse:
    return user_profile(user)


@router.put("/profile", response_model=UserProfileResponse)
async def update_profile(
    request: ProfileUpdateRequest,
    user: User = Depends(get_session_user),
    db: AsyncSession = Depends(get_write_db),
) -> UserProfileResponse:
    try:
        updated = await AuthService(db).update_profile(user.id, request.name)
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
    return user_profile(updated)


@router.put("/password", status_code=status.HTTP_204_NO_CONTENT)
async def change_password(
    request: PasswordChangeRequest,
    user: User = Depends(get_session_user),
    db: AsyncSession = Depends(get_write_db),
) -> None:
    """Change password. A wrong current password is a 400, not a 401."""
    try:
        await AuthService(db).change_password(
            user.id, request.current_password, request.new_password
        )
    except AuthenticationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Current password is incorrect",
        ) from exc
    except ValidatorServiceError as exc:
        raise to_http_exception(exc) from exc
