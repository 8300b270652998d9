"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class UserRole(str, Enum):
    """User role enumeration."""

    USER = "user"
    ADMIN = "admin"


class JobType(str, Enum):
    """Validation job type."""

    SINGLE = "single"
    BULK = "bulk"


class JobStatus(str, Enum):
    """Validation job lifecycle states."""

    CREDITS_RESERVED = "credits_reserved"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ResultStatus(str, Enum):
    """Per-address verdict category (PENDING until checked)."""

    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    CATCH_ALL = "catch_all"
    DISPOSABLE = "disposable"
    ROLE_BASED = "role_based"
    UNKNOWN = "unknown"


class ReservationStatus(str, Enum):
    """Credit reservation status."""

    HELD = "held"
    SETTLED = "settled"


class TransactionType(str, Enum):
    """Ledger transaction type enumeration."""

    SUBSCRIPTION = "subscription"
    CREDIT_PACKAGE = "credit_package"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class TransactionStatus(str, Enum):
    """Transaction status."""

    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


class DiscountType(str, Enum):
    """Coupon discount type."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"
    CREDITS = "credits"


class PlanType(str, Enum):
    """Pricing plan type."""

    SUBSCRIPTION = "subscription"
    CREDIT_PACKAGE = "credit_package"


class OrderStatus(str, Enum):
    """Payment order status."""

    CREATED = "created"
    PAID = "paid"


class BulkAction(str, Enum):
    """Admin bulk operation actions."""

    ACTIVATE = "activate"
    DEACTIVATE = "deactivate"
    ADD_CREDITS = "add_credits"
    SET_PLAN = "set_plan"
    MAKE_ADMIN = "make_admin"
    DELETE = "delete"


# ============================================================================
# Shared Models
# ============================================================================


class Pagination(BaseModel):
    """Pagination envelope used by client-facing list endpoints."""

    total: int
    page: int
    limit: int
    pages: int

    @classmethod
    def build(cls, total: int, page: int, limit: int) -> "Pagination":
        return cls(total=total, page=page, limit=limit, pages=(total + limit - 1) // limit)


class PlanInfo(BaseModel):
    """Plan summary embedded in user payloads."""

    name: str
    credits_limit: int
    plan_credits: int
    addon_credits: int
    renews_at: datetime | None


# ============================================================================
# Auth Models
# ============================================================================


class RegisterRequest(BaseModel):
    """POST /auth/register request body."""

    name: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)


class LoginRequest(BaseModel):
    """POST /auth/login request body."""

    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)


class UserProfileResponse(BaseModel):
    """Authenticated user's profile."""

    id: UUID
    name: str
    email: str
    role: UserRole
    is_active: bool
    credits: int
    plan: PlanInfo
    created_at: datetime


class TokenResponse(BaseModel):
    """Login/register response."""

    token: str
    user: UserProfileResponse


class ProfileUpdateRequest(BaseModel):
    """PUT /auth/profile request body."""

    name: str = Field(..., min_length=1, max_length=255)


class PasswordChangeRequest(BaseModel):
    """PUT /auth/password request body."""

    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(..., alias="currentPassword", min_length=1)
    new_password: str = Field(..., alias="newPassword", min_length=8, max_length=128)


# ============================================================================
# Validation Models
# ============================================================================


class SingleValidationOptions(BaseModel):
    """Options for a single validation."""

    model_config = ConfigDict(populate_by_name=True)

    verify_smtp: bool = Field(True, alias="verifySMTP")


class SingleValidationRequest(BaseModel):
    """POST /validate/single request body."""

    email: str = Field(..., max_length=320)
    options: SingleValidationOptions = Field(default_factory=SingleValidationOptions)


class ChecksResponse(BaseModel):
    """Individual check flags for one address."""

    syntax_valid: bool = False
    mx_found: bool = False
    smtp_valid: bool = False
    catch_all: bool = False
    disposable: bool = False
    role_based: bool = False
    free_provider: bool = False


class SingleValidationResponse(BaseModel):
    """POST /validate/single response."""

    email: str
    status: ResultStatus
    score: int
    checks: ChecksResponse
    response_time_ms: int


class BulkValidationResponse(BaseModel):
    """POST /validate/bulk response."""

    job_id: UUID
    total_emails: int
    skipped_emails: int
    status: JobStatus
    estimated_time_seconds: int


class JobResponse(BaseModel):
    """Validation job as seen by its owner."""

    id: UUID
    type: JobType
    status: JobStatus
    total_emails: int
    processed_emails: int
    valid_count: int
    invalid_count: int
    catch_all_count: int
    disposable_count: int
    role_based_count: int
    unknown_count: int
    progress_percentage: float
    file_name: str | None
    webhook_url: str | None
    result_file: str | None
    error_message: str | None
    credits_reserved: int
    credits_consumed: int
    credits_refunded: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


class JobListResponse(BaseModel):
    """GET /validate/jobs response."""

    jobs: list[JobResponse]
    pagination: Pagination


class ResultResponse(BaseModel):
    """One checked (or pending) address of a job."""

    position: int
    email: str
    status: ResultStatus
    score: int | None
    checks: ChecksResponse | None
    response_time_ms: int | None
    checked_at: datetime | None


class ResultListResponse(BaseModel):
    """GET /validate/jobs/{id}/results response."""

    job_id: UUID
    results: list[ResultResponse]
    pagination: Pagination


class WebhookPayload(BaseModel):
    """Body POSTed to a job's webhook_url on terminal transition."""

    event: str
    job_id: UUID
    status: JobStatus
    type: JobType
    total_emails: int
    processed_emails: int
    valid_count: int
    invalid_count: int
    catch_all_count: int
    disposable_count: int
    role_based_count: int
    unknown_count: int
    credits_reserved: int
    credits_consumed: int
    credits_refunded: int
    error_message: str | None
    created_at: datetime
    completed_at: datetime | None


# ============================================================================
# API Key Models
# ============================================================================


class APIKeyCreateRequest(BaseModel):
    """POST /keys request body."""

    name: str = Field(..., min_length=1, max_length=255)
    rate_limit_per_minute: int | None = Field(None, ge=1, le=10_000)


class APIKeyUpdateRequest(BaseModel):
    """PUT /keys/{id} request body."""

    name: str | None = Field(None, min_length=1, max_length=255)
    is_active: bool | None = None
    rate_limit_per_minute: int | None = Field(None, ge=1, le=10_000)


class APIKeyResponse(BaseModel):
    """API key without its secret."""

    id: UUID
    name: str
    preview: str
    is_active: bool
    revoked: bool
    usage_count: int
    rate_limit_per_minute: int
    last_used_at: datetime | None
    created_at: datetime


class APIKeyCreateResponse(APIKeyResponse):
    """Response after creating an API key."""

    key: str = Field(..., description="SAVE THIS - It won't be shown again")


class APIKeyUsageResponse(BaseModel):
    """GET /keys/{id}/usage response."""

    key_id: UUID
    usage_count: int
    jobs_count: int
    emails_validated: int
    last_used_at: datetime | None


# ============================================================================
# Billing Models
# ============================================================================


class PlanResponse(BaseModel):
    """Pricing plan."""

    id: UUID
    name: str
    slug: str
    type: PlanType
    price: Decimal
    currency: str
    interval: str | None
    credits: int
    features: list[str]
    is_popular: bool
    is_active: bool
    sort_order: int
    description: str | None
    cta_text: str | None


class SubscriptionResponse(BaseModel):
    """GET /billing/subscription response."""

    plan_name: str
    credits_limit: int
    plan_credits: int
    addon_credits: int
    balance: int
    reserved: int
    available: int
    renews_at: datetime | None


class CheckoutRequest(BaseModel):
    """POST /billing/checkout request body."""

    plan: str = Field(..., min_length=1, max_length=100)
    currency: str | None = Field(None, min_length=3, max_length=3)
    coupon_code: str | None = Field(None, max_length=50)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str | None) -> str | None:
        """Ensure currency is uppercase ISO 4217 code."""
        return v.upper() if v else v


class CreditPurchaseRequest(BaseModel):
    """POST /billing/credits request body."""

    package: str = Field(..., min_length=1, max_length=100)
    currency: str | None = Field(None, min_length=3, max_length=3)
    coupon_code: str | None = Field(None, max_length=50)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str | None) -> str | None:
        """Ensure currency is uppercase ISO 4217 code."""
        return v.upper() if v else v


class CheckoutResponse(BaseModel):
    """Checkout result; either settled immediately (is_free) or an order to pay."""

    is_free: bool
    message: str | None = None
    order_id: str | None = None
    key: str | None = None
    original_amount: Decimal
    discount_amount: Decimal
    amount: Decimal
    bonus_credits: int
    currency: str


class PaymentVerifyRequest(BaseModel):
    """POST /billing/verify request body."""

    order_id: str = Field(..., min_length=1, max_length=100)
    payment_id: str = Field(..., min_length=1, max_length=100)
    signature: str = Field(..., min_length=1, max_length=256)


class AmountInfo(BaseModel):
    paid: Decimal
    currency: str


class CreditsInfo(BaseModel):
    added: int
    deducted: int
    before: int
    after: int


class TransactionResponse(BaseModel):
    """Ledger transaction."""

    id: UUID
    type: TransactionType
    amount: AmountInfo
    credits: CreditsInfo
    description: str
    status: TransactionStatus
    payment_id: str | None
    created_at: datetime


class TransactionListResponse(BaseModel):
    """GET /billing/transactions response."""

    transactions: list[TransactionResponse]
    pagination: Pagination


# ============================================================================
# Account Models
# ============================================================================


class UsageDay(BaseModel):
    date: str  # YYYY-MM-DD
    jobs: int
    emails_validated: int


class UsageStatsResponse(BaseModel):
    """GET /account/usage response."""

    days: int
    total_jobs: int
    total_emails_validated: int
    valid_count: int
    invalid_count: int
    catch_all_count: int
    disposable_count: int
    role_based_count: int
    unknown_count: int
    daily: list[UsageDay]


# ============================================================================
# Admin Models
# ============================================================================


class AdminUserResponse(BaseModel):
    """User as seen by an admin."""

    id: UUID
    name: str
    email: str
    role: UserRole
    is_active: bool
    credits: int
    plan: PlanInfo
    api_keys_count: int
    jobs_count: int
    created_at: datetime


class AdminUserListResponse(BaseModel):
    """Paginated user list response."""

    users: list[AdminUserResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class AdminUserUpdateRequest(BaseModel):
    """PUT /admin/users/{id} request body."""

    name: str | None = Field(None, min_length=1, max_length=255)
    role: UserRole | None = None
    is_active: bool | None = None


class CreditAdjustRequest(BaseModel):
    """POST /admin/users/{id}/credits/adjust request body."""

    amount: int = Field(..., description="Signed delta; negative removes credits")
    reason: str | None = Field(None, max_length=500)

    @field_validator("amount")
    @classmethod
    def validate_nonzero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("amount must be non-zero")
        return v


class CreditSetRequest(BaseModel):
    """POST /admin/users/{id}/credits/set request body."""

    credits: int = Field(..., ge=0)
    reason: str | None = Field(None, max_length=500)


class CreditOperationResponse(BaseModel):
    """Result of an admin credit adjust/set."""

    user_id: UUID
    credits_before: int
    credits_after: int
    transaction_id: UUID


class PasswordResetRequest(BaseModel):
    """POST /admin/users/{id}/reset-password request body."""

    model_config = ConfigDict(populate_by_name=True)

    new_password: str = Field(..., alias="newPassword", min_length=8, max_length=128)


class BulkOperationRequest(BaseModel):
    """POST /admin/users/bulk request body."""

    ids: list[UUID] = Field(..., min_length=1, max_length=500)
    action: BulkAction
    amount: int | None = None
    plan: str | None = Field(None, max_length=100)

    @model_validator(mode="after")
    def validate_params(self) -> "BulkOperationRequest":
        if self.action == BulkAction.ADD_CREDITS and not self.amount:
            raise ValueError("amount is required for add_credits")
        if self.action == BulkAction.SET_PLAN and not self.plan:
            raise ValueError("plan is required for set_plan")
        return self


class BulkOutcomeResponse(BaseModel):
    user_id: UUID
    success: bool
    error: str | None = None


class BulkOperationResponse(BaseModel):
    """Per-user outcome list of a bulk operation."""

    action: BulkAction
    total: int
    succeeded: int
    failed: int
    results: list[BulkOutcomeResponse]


class AdminAPIKeyResponse(APIKeyResponse):
    """API key with owner info."""

    user_id: UUID
    user_email: str | None


class AdminAPIKeyListResponse(BaseModel):
    keys: list[AdminAPIKeyResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class ActivityLogResponse(BaseModel):
    """Admin activity log entry."""

    id: UUID
    action: str
    admin_id: UUID | None
    admin_email: str | None
    target_type: str
    target_id: str | None
    target_label: str | None
    details: dict[str, Any] | None
    ip: str | None
    created_at: datetime


class ActivityListResponse(BaseModel):
    entries: list[ActivityLogResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class AdminJobResponse(JobResponse):
    """Job with owner info."""

    user_id: UUID
    user_email: str | None


class AdminJobListResponse(BaseModel):
    jobs: list[AdminJobResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class AdminTransactionResponse(TransactionResponse):
    """Transaction with owner info."""

    user_id: UUID
    user_email: str | None


class AdminTransactionListResponse(BaseModel):
    transactions: list[AdminTransactionResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class AdminStatsResponse(BaseModel):
    """Dashboard overview."""

    total_users: int
    active_users: int
    admin_users: int
    total_jobs: int
    active_jobs: int
    jobs_by_status: dict[str, int]
    total_emails_validated: int
    credits_in_circulation: int
    credits_reserved: int
    active_api_keys: int
    revenue_total: Decimal
    transactions_last_24h: int
    healthy_servers: int


# ============================================================================
# Pricing Models
# ============================================================================


class PricingConfigResponse(BaseModel):
    """GET /admin/pricing/config response."""

    unit_cost: int
    currency: str
    free_plan_name: str
    free_plan_credits: int
    plan_period_days: int
    max_emails_per_job: int
    default_rate_limit_per_minute: int


class PlanCreateRequest(BaseModel):
    """POST /admin/pricing/plans request body."""

    name: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9][a-z0-9_-]*$")
    type: PlanType = PlanType.SUBSCRIPTION
    price: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    currency: str = Field("USD", min_length=3, max_length=3)
    interval: Literal["month", "year"] | None = "month"
    credits: int = Field(..., ge=0)
    features: list[str] = Field(default_factory=list)
    is_popular: bool = False
    is_active: bool = True
    sort_order: int = 0
    description: str | None = Field(None, max_length=1000)
    cta_text: str | None = Field(None, max_length=100)


class PlanUpdateRequest(BaseModel):
    """PUT /admin/pricing/plans/{id} request body."""

    name: str | None = Field(None, min_length=1, max_length=100)
    price: Decimal | None = Field(None, ge=0, max_digits=12, decimal_places=2)
    currency: str | None = Field(None, min_length=3, max_length=3)
    interval: Literal["month", "year"] | None = None
    credits: int | None = Field(None, ge=0)
    features: list[str] | None = None
    is_popular: bool | None = None
    is_active: bool | None = None
    sort_order: int | None = None
    description: str | None = Field(None, max_length=1000)
    cta_text: str | None = Field(None, max_length=100)


def coupon_terms_problem(
    discount_type: DiscountType,
    discount_value: Decimal,
    starts_at: datetime | None,
    expires_at: datetime | None,
) -> str | None:
    """Return why a coupon's terms are inconsistent, or None. Naive datetimes are UTC."""
    if discount_type == DiscountType.PERCENTAGE and discount_value > 100:
        return "percentage discount cannot exceed 100"
    if discount_type == DiscountType.CREDITS and discount_value != int(discount_value):
        return "credits discount must be a whole number of credits"
    if starts_at and expires_at:
        if starts_at.tzinfo is None:
            starts_at = starts_at.replace(tzinfo=UTC)
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        if expires_at <= starts_at:
            return "expires_at must be after starts_at"
    return None


class CouponCreateRequest(BaseModel):
    """POST /admin/pricing/coupons request body."""

    code: str = Field(..., min_length=2, max_length=50)
    description: str | None = Field(None, max_length=500)
    discount_type: DiscountType
    discount_value: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    max_discount: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)
    min_purchase_amount: Decimal = Field(Decimal("0"), ge=0, max_digits=12, decimal_places=2)
    max_uses: int | None = Field(None, ge=1)
    max_uses_per_user: int = Field(1, ge=1)
    starts_at: datetime | None = None
    expires_at: datetime | None = None
    is_active: bool = True
    applicable_plans: list[str] = Field(default_factory=list)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def validate_terms(self) -> "CouponCreateRequest":
        problem = coupon_terms_problem(
            self.discount_type, self.discount_value, self.starts_at, self.expires_at
        )
        if problem:
            raise ValueError(problem)
        return self


class CouponUpdateRequest(BaseModel):
    """PUT /admin/pricing/coupons/{id} request body."""

    description: str | None = Field(None, max_length=500)
    discount_value: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)
    max_discount: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)
    min_purchase_amount: Decimal | None = Field(None, ge=0, max_digits=12, decimal_places=2)
    max_uses: int | None = Field(None, ge=1)
    max_uses_per_user: int | None = Field(None, ge=1)
    starts_at: datetime | None = None
    expires_at: datetime | None = None
    is_active: bool | None = None
    applicable_plans: list[str] | None = None


class CouponResponse(BaseModel):
    """Coupon as seen by an admin."""

    id: UUID
    code: str
    description: str | None
    discount_type: DiscountType
    discount_value: Decimal
    max_discount: Decimal | None
    min_purchase_amount: Decimal
    max_uses: int | None
    max_uses_per_user: int
    current_uses: int
    starts_at: datetime | None
    expires_at: datetime | None
    is_active: bool
    applicable_plans: list[str]
    created_at: datetime


# ============================================================================
# Validation Server Models
# ============================================================================


class ServerCreateRequest(BaseModel):
    """POST /admin/servers request body."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=100)
    url: str = Field(..., min_length=1, max_length=500, pattern=r"^https?://")
    weight: int = Field(1, ge=1, le=100)
    is_active: bool = Field(True, alias="isActive")


class ServerUpdateRequest(BaseModel):
    """PUT /admin/servers/{id} request body."""

    model_config = ConfigDict(populate_by_name=True)

    name: str | None = Field(None, min_length=1, max_length=100)
    url: str | None = Field(None, min_length=1, max_length=500, pattern=r"^https?://")
    weight: int | None = Field(None, ge=1, le=100)
    is_active: bool | None = Field(None, alias="isActive")


class ServerResponse(BaseModel):
    """Validation server pool entry."""

    id: UUID
    name: str
    url: str
    weight: int
    is_active: bool
    is_healthy: bool
    total_requests: int
    success_rate: float
    avg_response_time_ms: int
    last_health_check: datetime | None
    created_at: datetime


class ServerTestRequest(BaseModel):
    """POST /admin/servers/{id}/test request body."""

    url: str | None = Field(None, max_length=500, pattern=r"^https?://")


class ServerTestResponse(BaseModel):
    """Health check result."""

    is_healthy: bool
    response_time_ms: int
    error: str | None = None


class ServerHealthRequest(BaseModel):
    """PATCH /admin/servers/{id}/health request body."""

    model_config = ConfigDict(populate_by_name=True)

    is_healthy: bool = Field(..., alias="isHealthy")


# ============================================================================
# Health Check Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
