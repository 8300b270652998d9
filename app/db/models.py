"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
Column types are portable (PostgreSQL in production, SQLite for tests).
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class AwareDateTime(TypeDecorator):
    """DateTime that always loads as UTC-aware (SQLite drops tzinfo)."""

    impl = DateTime
    cache_ok = True

    def __init__(self) -> None:
        super().__init__(timezone=True)

    def process_result_value(self, value: Any, dialect: Any) -> datetime | None:
        if value is not None and isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


JsonType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(12, 2)


class User(Base):
    """
    ORM model for users table.

    The spendable balance is plan_credits + addon_credits. Plan credits are
    drawn first and reset on renewal; add-on credits persist.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Identity
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="user")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Plan and credit buckets
    plan_name: Mapped[str] = mapped_column(String(100), nullable=False, default="free")
    credits_limit: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    plan_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    addon_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    plan_renews_at: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        AwareDateTime(), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("plan_credits >= 0", name="ck_users_plan_credits_non_negative"),
        CheckConstraint("addon_credits >= 0", name="ck_users_addon_credits_non_negative"),
        CheckConstraint("credits_limit >= 0", name="ck_users_credits_limit_non_negative"),
        CheckConstraint("role IN ('user', 'admin')", name="ck_users_role"),
        Index("idx_users_plan_renews_at", "plan_renews_at"),
    )

    @property
    def balance(self) -> int:
        return self.plan_credits + self.addon_credits


class APIKey(Base):
    """
    ORM model for api_keys table.

    Stores hashed API keys; the raw secret is never persisted.
    """

    __tablename__ = "api_keys"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Key storage (hashed with Argon2id)
    key_hash: Mapped[str] = mapped_column(Text, nullable=False)
    key_prefix: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    preview: Mapped[str] = mapped_column(String(16), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    revoked_at: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)

    # Usage tracking
    usage_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    rate_limit_per_minute: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    last_used_at: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)
    last_used_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)

    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("usage_count >= 0", name="ck_api_keys_usage_non_negative"),
        CheckConstraint("rate_limit_per_minute > 0", name="ck_api_keys_rate_limit_positive"),
    )

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


class ValidationJob(Base):
    """
    ORM model for validation_jobs table.

    Status moves forward only (see app.services.job_state). While processing,
    the job is owned by the worker named in worker_id until lease_expires_at.
    """

    __tablename__ = "validation_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    api_key_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("api_keys.id", ondelete="SET NULL"), nullable=True
    )

    type: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="credits_reserved")

    # Progress
    total_emails: Mapped[int] = mapped_column(Integer, nullable=False)
    processed_emails: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    valid_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    invalid_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    catch_all_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    disposable_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    role_based_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unknown_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Inputs / outputs
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    webhook_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    result_file: Mapped[str | None] = mapped_column(String(500), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Worker ownership
    worker_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False, default=utc_now)
    started_at: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        AwareDateTime(), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("total_emails > 0", name="ck_jobs_total_positive"),
        CheckConstraint("processed_emails >= 0", name="ck_jobs_processed_non_negative"),
        CheckConstraint(
            "processed_emails <= total_emails", name="ck_jobs_processed_not_above_total"
        ),
        CheckConstraint("type IN ('single', 'bulk')", name="ck_jobs_type"),
        Index("idx_validation_jobs_user_created", "user_id", "created_at"),
        Index("idx_validation_jobs_status_created", "status", "created_at"),
    )

    @property
    def category_total(self) -> int:
        return (
            self.valid_count
            + self.invalid_count
            + self.catch_all_count
            + self.disposable_count
            + self.role_based_count
            + self.unknown_count
        )


class ValidationResult(Base):
    """
    ORM model for validation_results table.

    One row per address; status stays 'pending' until the address is checked.
    """

    __tablename__ = "validation_results"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("validation_jobs.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    checks: Mapped[dict[str, bool] | None] = mapped_column(JsonType, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    checked_at: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)

    __table_args__ = (
        UniqueConstraint("job_id", "position", name="uq_validation_results_job_position"),
        Index("idx_validation_results_job_status", "job_id", "status"),
    )


class CreditReservation(Base):
    """
    ORM model for credit_reservations table.

    A hold of `amount` credits for one job. `consumed` advances together with
    the job's processed_emails; the balance is debited as it advances.
    """

    __tablename__ = "credit_reservations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    job_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("validation_jobs.id", ondelete="CASCADE"), nullable=False, unique=True
    )

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    consumed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    refunded: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="held")

    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False, default=utc_now)
    settled_at: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_reservations_amount_positive"),
        CheckConstraint("consumed >= 0", name="ck_reservations_consumed_non_negative"),
        CheckConstraint("refunded >= 0", name="ck_reservations_refunded_non_negative"),
        CheckConstraint(
            "consumed + refunded <= amount", name="ck_reservations_within_amount"
        ),
        Index("idx_credit_reservations_user_status", "user_id", "status"),
    )


class Transaction(Base):
    """
    ORM model for transactions table.

    Append-only audit trail of balance changes outside per-address usage.
    """

    __tablename__ = "transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    type: Mapped[str] = mapped_column(String(30), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    credits_added: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    credits_deducted: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    credits_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    credits_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="completed")
    payment_id: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)

    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("credits_before >= 0", name="ck_transactions_before_non_negative"),
        CheckConstraint("credits_after >= 0", name="ck_transactions_after_non_negative"),
        Index("idx_transactions_created_at", "created_at"),
        Index("idx_transactions_type", "type"),
    )


class AdminActivityLog(Base):
    """
    ORM model for admin_activity_logs table.

    Immutable audit trail; one row per admin operation.
    """

    __tablename__ = "admin_activity_logs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Admin actor (kept after the admin is deleted)
    admin_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    admin_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    action: Mapped[str] = mapped_column(String(100), nullable=False)
    target_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    target_label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)

    ip: Mapped[str | None] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_admin_activity_logs_created_at", "created_at"),
        Index("idx_admin_activity_logs_action", "action"),
        Index("idx_admin_activity_logs_target", "target_type", "target_id"),
    )


class Coupon(Base):
    """ORM model for coupons table."""

    __tablename__ = "coupons"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    discount_type: Mapped[str] = mapped_column(String(20), nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(Money, nullable=False)
    max_discount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    min_purchase_amount: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0")
    )

    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_uses_per_user: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    current_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    starts_at: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    applicable_plans: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        AwareDateTime(), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("current_uses >= 0", name="ck_coupons_uses_non_negative"),
        CheckConstraint(
            "max_uses IS NULL OR current_uses <= max_uses", name="ck_coupons_uses_within_max"
        ),
        CheckConstraint(
            "discount_type IN ('percentage', 'fixed', 'credits')", name="ck_coupons_type"
        ),
    )


class CouponRedemption(Base):
    """ORM model for coupon_redemptions table (one row per paid purchase)."""

    __tablename__ = "coupon_redemptions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    coupon_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    payment_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    discount_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    bonus_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False, default=utc_now)

    __table_args__ = (Index("idx_coupon_redemptions_coupon_user", "coupon_id", "user_id"),)


class PricingPlan(Base):
    """ORM model for pricing_plans table (subscriptions and credit packages)."""

    __tablename__ = "pricing_plans"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="subscription")

    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    interval: Mapped[str | None] = mapped_column(String(10), nullable=True)
    credits: Mapped[int] = mapped_column(BigInteger, nullable=False)

    features: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
    is_popular: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    cta_text: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        AwareDateTime(), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_pricing_plans_price_non_negative"),
        CheckConstraint("credits >= 0", name="ck_pricing_plans_credits_non_negative"),
    )


class PaymentOrder(Base):
    """ORM model for payment_orders table (checkout awaiting payment)."""

    __tablename__ = "payment_orders"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    order_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    type: Mapped[str] = mapped_column(String(20), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    base_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    credits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    bonus_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    coupon_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True
    )

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="created")
    payment_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False, default=utc_now)
    paid_at: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)


class ValidationServer(Base):
    """ORM model for validation_servers table (email-checker pool)."""

    __tablename__ = "validation_servers"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    url: Mapped[str] = mapped_column(String(500), nullable=False)
    weight: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_healthy: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Aggregated request statistics
    total_requests: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    successful_requests: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    avg_response_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_health_check: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        AwareDateTime(), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("weight > 0", name="ck_validation_servers_weight_positive"),)

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 100.0
        return round(self.successful_requests * 100 / self.total_requests, 2)
