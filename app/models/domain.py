"""
Domain Models - Internal business logic models.

NO DICTIONARIES - All domain objects are strongly typed dataclasses.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from app.models.api import (
    BulkAction,
    DiscountType,
    JobStatus,
    JobType,
    ReservationStatus,
    ResultStatus,
    TransactionStatus,
    TransactionType,
    UserRole,
)


@dataclass(frozen=True)
class EmailChecks:
    """Flags reported by the email checker for one address."""

    syntax_valid: bool = False
    mx_found: bool = False
    smtp_valid: bool = False
    catch_all: bool = False
    disposable: bool = False
    role_based: bool = False
    free_provider: bool = False

    def as_json(self) -> dict[str, bool]:
        """Serialize for the JSON column."""
        return asdict(self)

    @classmethod
    def from_json(cls, data: dict[str, bool] | None) -> "EmailChecks":
        if not data:
            return cls()
        known = {name: bool(data.get(name, False)) for name in cls.__dataclass_fields__}
        return cls(**known)


@dataclass(frozen=True)
class CheckVerdict:
    """Outcome of checking one address."""

    email: str
    status: ResultStatus
    score: int
    checks: EmailChecks
    response_time_ms: int

    def __post_init__(self) -> None:
        if self.status == ResultStatus.PENDING:
            raise ValueError("A verdict cannot be pending")
        if not 0 <= self.score <= 100:
            raise ValueError(f"Score must be between 0 and 100, got {self.score}")
        if self.response_time_ms < 0:
            raise ValueError("Response time cannot be negative")

    @classmethod
    def unknown(cls, email: str, response_time_ms: int = 0) -> "CheckVerdict":
        """Verdict for a timed-out or failed check (still charged)."""
        return cls(
            email=email,
            status=ResultStatus.UNKNOWN,
            score=0,
            checks=EmailChecks(),
            response_time_ms=response_time_ms,
        )


@dataclass(frozen=True)
class ReservationData:
    """Credit hold tied to a job."""

    reservation_id: UUID
    user_id: UUID
    job_id: UUID
    amount: int
    consumed: int
    refunded: int
    status: ReservationStatus
    created_at: datetime
    settled_at: datetime | None

    @property
    def outstanding(self) -> int:
        """Credits still held against the balance."""
        if self.status == ReservationStatus.SETTLED:
            return 0
        return self.amount - self.consumed


@dataclass(frozen=True)
class JobCounts:
    """Per-category counters of a job."""

    valid: int = 0
    invalid: int = 0
    catch_all: int = 0
    disposable: int = 0
    role_based: int = 0
    unknown: int = 0

    @property
    def total(self) -> int:
        return (
            self.valid
            + self.invalid
            + self.catch_all
            + self.disposable
            + self.role_based
            + self.unknown
        )


@dataclass(frozen=True)
class JobData:
    """Validation job snapshot, joined with its reservation figures."""

    job_id: UUID
    user_id: UUID
    type: JobType
    status: JobStatus
    total_emails: int
    processed_emails: int
    counts: JobCounts
    file_name: str | None
    webhook_url: str | None
    result_file: str | None
    error_message: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    credits_reserved: int = 0
    credits_consumed: int = 0
    credits_refunded: int = 0

    def __post_init__(self) -> None:
        if self.processed_emails > self.total_emails:
            raise ValueError(
                f"processed_emails ({self.processed_emails}) exceeds "
                f"total_emails ({self.total_emails})"
            )

    @property
    def progress_percentage(self) -> float:
        if self.total_emails == 0:
            return 0.0
        return round(self.processed_emails * 100 / self.total_emails, 2)


@dataclass(frozen=True)
class ResultData:
    """One address of a job."""

    position: int
    email: str
    status: ResultStatus
    score: int | None
    checks: EmailChecks | None
    response_time_ms: int | None
    checked_at: datetime | None


@dataclass(frozen=True)
class TransactionData:
    """Immutable ledger transaction."""

    transaction_id: UUID
    user_id: UUID
    type: TransactionType
    amount_paid: Decimal
    currency: str
    credits_added: int
    credits_deducted: int
    credits_before: int
    credits_after: int
    description: str
    status: TransactionStatus
    payment_id: str | None
    created_at: datetime


@dataclass(frozen=True)
class ActorContext:
    """Authenticated admin performing an override."""

    admin_id: UUID
    admin_email: str
    ip: str | None = None


# ============================================================================
# Coupon Engine Models
# ============================================================================


@dataclass(frozen=True)
class CouponTerms:
    """Coupon fields the discount engine reads."""

    code: str
    discount_type: DiscountType
    discount_value: Decimal
    max_discount: Decimal | None = None
    min_purchase_amount: Decimal = Decimal("0")
    max_uses: int | None = None
    max_uses_per_user: int = 1
    current_uses: int = 0
    starts_at: datetime | None = None
    expires_at: datetime | None = None
    is_active: bool = True
    applicable_plans: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.discount_value <= 0:
            raise ValueError("discount_value must be positive")
        if self.max_uses is not None and self.current_uses > self.max_uses:
            raise ValueError("current_uses cannot exceed max_uses")


@dataclass(frozen=True)
class PurchaseContext:
    """What is being bought."""

    amount: Decimal
    plan_slug: str | None = None
    currency: str = "USD"

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError("Purchase amount cannot be negative")


@dataclass(frozen=True)
class CouponEvaluation:
    """Outcome of evaluating a coupon; never mutates anything."""

    eligible: bool
    adjusted_amount: Decimal
    discount_amount: Decimal = Decimal("0")
    bonus_credits: int = 0
    reason: str | None = None


# ============================================================================
# Admin Override Models
# ============================================================================


@dataclass(frozen=True)
class CreditChange:
    """Before/after of an admin credit operation."""

    user_id: UUID
    credits_before: int
    credits_after: int
    transaction_id: UUID


@dataclass(frozen=True)
class BulkOutcome:
    user_id: UUID
    success: bool
    error: str | None = None


@dataclass(frozen=True)
class BulkResult:
    """Per-user outcome list of a bulk operation."""

    action: BulkAction
    outcomes: tuple[BulkOutcome, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.succeeded


@dataclass(frozen=True)
class HealthCheckResult:
    """Validation server health check."""

    is_healthy: bool
    response_time_ms: int
    error: str | None = None


# ============================================================================
# Usage Models
# ============================================================================


@dataclass(frozen=True)
class UsageDayData:
    date: str  # YYYY-MM-DD
    jobs: int
    emails_validated: int


@dataclass(frozen=True)
class UsageSummary:
    """Validation usage over a trailing window of days."""

    days: int
    total_jobs: int
    counts: JobCounts
    daily: tuple[UsageDayData, ...] = ()

    @property
    def total_emails_validated(self) -> int:
        return self.counts.total


# ============================================================================
# Validation Server Pool Models
# ============================================================================


@dataclass(frozen=True)
class PoolServer:
    """Active, healthy checker endpoint eligible for selection."""

    server_id: UUID
    url: str
    weight: int

    def __post_init__(self) -> None:
        if self.weight <= 0:
            raise ValueError("Server weight must be positive")


@dataclass(frozen=True)
class ServerStats:
    """Request counters accumulated in memory between flushes."""

    server_id: UUID
    requests: int
    successes: int
    total_response_time_ms: int


@dataclass(frozen=True)
class WatchdogReport:
    """What one watchdog sweep did."""

    failed: int = 0
    enqueued: int = 0
    orphaned: int = 0


# ============================================================================
# Billing Models
# ============================================================================


@dataclass(frozen=True)
class SubscriptionData:
    """A user's plan and spendable credit figures."""

    user_id: UUID
    plan_name: str
    credits_limit: int
    plan_credits: int
    addon_credits: int
    reserved: int
    renews_at: datetime | None

    @property
    def balance(self) -> int:
        return self.plan_credits + self.addon_credits

    @property
    def available(self) -> int:
        return self.balance - self.reserved


@dataclass(frozen=True)
class CheckoutData:
    """
    Outcome of a checkout.

    Either settled immediately (is_free, with its transaction) or a gateway
    order awaiting payment (order_id, key).
    """

    is_free: bool
    original_amount: Decimal
    discount_amount: Decimal
    amount: Decimal
    bonus_credits: int
    currency: str
    order_id: str | None = None
    key: str | None = None
    transaction: TransactionData | None = None
    message: str | None = None


@dataclass(frozen=True)
class AdminStats:
    """Dashboard overview figures."""

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
