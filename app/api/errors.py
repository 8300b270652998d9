"""
HTTP translation of service exceptions.

Routes catch ValidatorServiceError and re-raise the HTTPException built
here with ``raise ... from exc`` so the cause stays attached in logs.
"""

from fastapi import HTTPException, status

from app.exceptions import (
    APIKeyNotFoundError,
    APIKeyRevokedError,
    AuthenticationError,
    AuthorizationError,
    ConcurrencyConflictError,
    CouponNotEligibleError,
    CouponNotFoundError,
    DataIntegrityError,
    DuplicateResourceError,
    EmailValidationError,
    InsufficientCreditsError,
    InvalidJobTransitionError,
    JobNotFoundError,
    OrderNotFoundError,
    PaymentVerificationError,
    PlanNotFoundError,
    RateLimitExceededError,
    ReservationError,
    ServerNotFoundError,
    UpstreamError,
    UserNotFoundError,
    ValidatorServiceError,
    WriteVerificationError,
)

_NOT_FOUND = (
    UserNotFoundError,
    JobNotFoundError,
    APIKeyNotFoundError,
    CouponNotFoundError,
    PlanNotFoundError,
    ServerNotFoundError,
    OrderNotFoundError,
)


def to_http_exception(exc: ValidatorServiceError) -> HTTPException:
    """Map a service exception to the status code the client expects."""
    if isinstance(exc, EmailValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    if isinstance(exc, CouponNotEligibleError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Coupon {exc.code} cannot be applied: {exc.reason}",
        )
    if isinstance(exc, PaymentVerificationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    if isinstance(exc, AuthenticationError):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer, ApiKey"},
        )
    if isinstance(exc, InsufficientCreditsError):
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=f"Insufficient credits. Available: {exc.available}, Required: {exc.required}",
        )
    if isinstance(exc, AuthorizationError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, _NOT_FOUND):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InvalidJobTransitionError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job is already {exc.current}",
        )
    if isinstance(exc, (ConcurrencyConflictError, DuplicateResourceError, APIKeyRevokedError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, RateLimitExceededError):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Rate limit exceeded ({exc.limit} requests per minute)",
            headers={"Retry-After": str(exc.retry_after)},
        )
    if isinstance(exc, UpstreamError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Validation service unavailable",
        )
    if isinstance(exc, (WriteVerificationError, DataIntegrityError, ReservationError)):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal server error",
    )
