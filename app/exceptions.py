"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class ValidatorServiceError(Exception):
    """Base exception for all ledger and job errors."""

    pass


class EmailValidationError(ValidatorServiceError):
    """Raised for malformed input, before any credit movement."""

    def __init__(self, message: str, email: str | None = None) -> None:
        self.message = message
        self.email = email
        super().__init__(f"Invalid input: {message}")


class InsufficientCreditsError(ValidatorServiceError):
    """Raised when a reservation or debit exceeds what the user can spend."""

    def __init__(self, available: int, required: int) -> None:
        self.available = available
        self.required = required
        super().__init__(f"Insufficient credits. Available: {available}, Required: {required}")


class TransientCheckFailure(ValidatorServiceError):
    """Raised by the email checker for a per-address timeout or upstream error."""

    def __init__(self, email: str, reason: str) -> None:
        self.email = email
        self.reason = reason
        super().__init__(f"Check failed for {email}: {reason}")


class JobTerminalError(ValidatorServiceError):
    """Raised for an unrecoverable processing fault; the job must fail."""

    def __init__(self, job_id: UUID, reason: str) -> None:
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Job {job_id} failed: {reason}")


class ConcurrencyConflictError(ValidatorServiceError):
    """Raised when a concurrent writer won the race for a resource."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")


class InvalidJobTransitionError(ValidatorServiceError):
    """Raised when a job state transition is not allowed."""

    def __init__(self, job_id: UUID, current: str, target: str) -> None:
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")


class ReservationError(ValidatorServiceError):
    """Raised when settlement arithmetic does not match the reservation."""

    def __init__(self, reservation_id: UUID, message: str) -> None:
        self.reservation_id = reservation_id
        self.message = message
        super().__init__(f"Reservation {reservation_id}: {message}")


class UserNotFoundError(ValidatorServiceError):
    """Raised when a user doesn't exist."""

    def __init__(self, user_id: UUID | str) -> None:
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class JobNotFoundError(ValidatorServiceError):
    """Raised when a job doesn't exist (or isn't visible to the caller)."""

    def __init__(self, job_id: UUID) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class APIKeyNotFoundError(ValidatorServiceError):
    """Raised when an API key doesn't exist."""

    def __init__(self, key_id: UUID) -> None:
        self.key_id = key_id
        super().__init__(f"API key not found: {key_id}")


class CouponNotFoundError(ValidatorServiceError):
    """Raised when a coupon code or id doesn't exist."""

    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__(f"Coupon not found: {code}")


class CouponNotEligibleError(ValidatorServiceError):
    """Raised when a coupon cannot be applied or redeemed."""

    def __init__(self, code: str, reason: str) -> None:
        self.code = code
        self.reason = reason
        super().__init__(f"Coupon {code} not eligible: {reason}")


class DuplicateResourceError(ValidatorServiceError):
    """Raised when a unique field is already taken."""

    def __init__(self, resource: str, value: str) -> None:
        self.resource = resource
        self.value = value
        super().__init__(f"{resource} already exists: {value}")


class PlanNotFoundError(ValidatorServiceError):
    """Raised when a pricing plan doesn't exist."""

    def __init__(self, slug: str) -> None:
        self.slug = slug
        super().__init__(f"Plan not found: {slug}")


class ServerNotFoundError(ValidatorServiceError):
    """Raised when a validation server doesn't exist."""

    def __init__(self, server_id: UUID) -> None:
        self.server_id = server_id
        super().__init__(f"Validation server not found: {server_id}")


class OrderNotFoundError(ValidatorServiceError):
    """Raised when a payment order doesn't exist for the user."""

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class WriteVerificationError(ValidatorServiceError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(ValidatorServiceError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class PaymentVerificationError(ValidatorServiceError):
    """Raised when a payment signature does not verify."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment verification error: {message}")


class UpstreamError(ValidatorServiceError):
    """Raised when no validation server can serve a synchronous request."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Upstream failure: {message}")


class AuthenticationError(ValidatorServiceError):
    """Raised when authentication fails (invalid API key, invalid credentials)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class AuthorizationError(ValidatorServiceError):
    """Raised when an admin action is not allowed for this target."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Not allowed: {reason}")


class RateLimitExceededError(ValidatorServiceError):
    """Raised when an API key exhausted its per-minute window."""

    def __init__(self, limit: int, retry_after: int) -> None:
        self.limit = limit
        self.retry_after = retry_after
        super().__init__(f"Rate limit of {limit}/minute exceeded, retry in {retry_after}s")


class APIKeyRevokedError(ValidatorServiceError):
    """Raised when trying to use or reactivate a revoked API key."""

    def __init__(self, key_id: UUID) -> None:
        self.key_id = key_id
        super().__init__(f"API key {key_id} has been revoked")
