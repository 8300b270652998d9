"""initial schema

Revision ID: 2026_10_01_0000
Revises:
Create Date: 2026-10-01 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_01_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()'))


def _created_at() -> sa.Column:
    return sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()'))


def _updated_at() -> sa.Column:
    return sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()'))


def upgrade() -> None:
    """Create the validation service schema."""

    # ========================================================================
    # Create users table
    # ========================================================================
    op.create_table(
        'users',
        _id(),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('password_hash', sa.Text(), nullable=False),
        sa.Column('role', sa.String(20), nullable=False, server_default='user'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('plan_name', sa.String(100), nullable=False, server_default='free'),
        sa.Column('credits_limit', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('plan_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('addon_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('plan_renews_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),

        # Constraints
        sa.UniqueConstraint('email', name='uq_users_email'),
        sa.CheckConstraint('plan_credits >= 0', name='ck_users_plan_credits_non_negative'),
        sa.CheckConstraint('addon_credits >= 0', name='ck_users_addon_credits_non_negative'),
        sa.CheckConstraint('credits_limit >= 0', name='ck_users_credits_limit_non_negative'),
        sa.CheckConstraint("role IN ('user', 'admin')", name='ck_users_role'),
    )
    op.create_index('idx_users_plan_renews_at', 'users', ['plan_renews_at'])

    # ========================================================================
    # Create api_keys table
    # ========================================================================
    op.create_table(
        'api_keys',
        _id(),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('key_hash', sa.Text(), nullable=False),
        sa.Column('key_prefix', sa.String(20), nullable=False),
        sa.Column('preview', sa.String(16), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('usage_count', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('rate_limit_per_minute', sa.Integer(), nullable=False, server_default='60'),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_used_ip', sa.String(45), nullable=True),
        _created_at(),

        sa.UniqueConstraint('key_prefix', name='uq_api_keys_key_prefix'),
        sa.CheckConstraint('usage_count >= 0', name='ck_api_keys_usage_non_negative'),
        sa.CheckConstraint('rate_limit_per_minute > 0', name='ck_api_keys_rate_limit_positive'),
    )
    op.create_index('idx_api_keys_user_id', 'api_keys', ['user_id'])

    # ========================================================================
    # Create validation_jobs table
    # ========================================================================
    op.create_table(
        'validation_jobs',
        _id(),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('api_key_id', UUID(as_uuid=True), sa.ForeignKey('api_keys.id', ondelete='SET NULL'), nullable=True),
        sa.Column('type', sa.String(10), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='credits_reserved'),
        sa.Column('total_emails', sa.Integer(), nullable=False),
        sa.Column('processed_emails', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('valid_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('invalid_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('catch_all_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('disposable_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('role_based_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unknown_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('file_name', sa.String(255), nullable=True),
        sa.Column('webhook_url', sa.String(2048), nullable=True),
        sa.Column('result_file', sa.String(500), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('worker_id', sa.String(100), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        _updated_at(),

        sa.CheckConstraint('total_emails > 0', name='ck_jobs_total_positive'),
        sa.CheckConstraint('processed_emails >= 0', name='ck_jobs_processed_non_negative'),
        sa.CheckConstraint('processed_emails <= total_emails', name='ck_jobs_processed_not_above_total'),
        sa.CheckConstraint("type IN ('single', 'bulk')", name='ck_jobs_type'),
    )
    op.create_index('idx_validation_jobs_user_created', 'validation_jobs', ['user_id', 'created_at'])
    op.create_index('idx_validation_jobs_status_created', 'validation_jobs', ['status', 'created_at'])

    # ========================================================================
    # Create validation_results table
    # ========================================================================
    op.create_table(
        'validation_results',
        _id(),
        sa.Column('job_id', UUID(as_uuid=True), sa.ForeignKey('validation_jobs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(320), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('score', sa.Integer(), nullable=True),
        sa.Column('checks', JSONB(), nullable=True),
        sa.Column('response_time_ms', sa.Integer(), nullable=True),
        sa.Column('checked_at', sa.DateTime(timezone=True), nullable=True),

        sa.UniqueConstraint('job_id', 'position', name='uq_validation_results_job_position'),
    )
    op.create_index('idx_validation_results_job_status', 'validation_results', ['job_id', 'status'])

    # ========================================================================
    # Create credit_reservations table
    # ========================================================================
    op.create_table(
        'credit_reservations',
        _id(),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('job_id', UUID(as_uuid=True), sa.ForeignKey('validation_jobs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('consumed', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('refunded', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='held'),
        _created_at(),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),

        sa.UniqueConstraint('job_id', name='uq_credit_reservations_job_id'),
        sa.CheckConstraint('amount > 0', name='ck_reservations_amount_positive'),
        sa.CheckConstraint('consumed >= 0', name='ck_reservations_consumed_non_negative'),
        sa.CheckConstraint('refunded >= 0', name='ck_reservations_refunded_non_negative'),
        sa.CheckConstraint('consumed + refunded <= amount', name='ck_reservations_within_amount'),
    )
    op.create_index('idx_credit_reservations_user_id', 'credit_reservations', ['user_id'])
    op.create_index('idx_credit_reservations_user_status', 'credit_reservations', ['user_id', 'status'])

    # ========================================================================
    # Create transactions table
    # ========================================================================
    op.create_table(
        'transactions',
        _id(),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('amount_paid', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('credits_added', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('credits_deducted', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('credits_before', sa.BigInteger(), nullable=False),
        sa.Column('credits_after', sa.BigInteger(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='completed'),
        sa.Column('payment_id', sa.String(100), nullable=True),
        _created_at(),

        sa.UniqueConstraint('payment_id', name='uq_transactions_payment_id'),
        sa.CheckConstraint('credits_before >= 0', name='ck_transactions_before_non_negative'),
        sa.CheckConstraint('credits_after >= 0', name='ck_transactions_after_non_negative'),
    )
    op.create_index('idx_transactions_user_id', 'transactions', ['user_id'])
    op.create_index('idx_transactions_created_at', 'transactions', ['created_at'])
    op.create_index('idx_transactions_type', 'transactions', ['type'])

    # ========================================================================
    # Create admin_activity_logs table
    # ========================================================================
    op.create_table(
        'admin_activity_logs',
        _id(),
        sa.Column('admin_id', UUID(as_uuid=True), nullable=True),
        sa.Column('admin_email', sa.String(255), nullable=True),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('target_type', sa.String(50), nullable=False),
        sa.Column('target_id', sa.String(255), nullable=True),
        sa.Column('target_label', sa.String(255), nullable=True),
        sa.Column('details', JSONB(), nullable=True),
        sa.Column('ip', sa.String(45), nullable=True),
        _created_at(),
    )
    op.create_index('idx_admin_activity_logs_admin_id', 'admin_activity_logs', ['admin_id'])
    op.create_index('idx_admin_activity_logs_created_at', 'admin_activity_logs', ['created_at'])
    op.create_index('idx_admin_activity_logs_action', 'admin_activity_logs', ['action'])
    op.create_index('idx_admin_activity_logs_target', 'admin_activity_logs', ['target_type', 'target_id'])

    # ========================================================================
    # Create coupons and coupon_redemptions tables
    # ========================================================================
    op.create_table(
        'coupons',
        _id(),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('discount_type', sa.String(20), nullable=False),
        sa.Column('discount_value', sa.Numeric(12, 2), nullable=False),
        sa.Column('max_discount', sa.Numeric(12, 2), nullable=True),
        sa.Column('min_purchase_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('max_uses_per_user', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('current_uses', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('applicable_plans', JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        _created_at(),
        _updated_at(),

        sa.UniqueConstraint('code', name='uq_coupons_code'),
        sa.CheckConstraint('current_uses >= 0', name='ck_coupons_uses_non_negative'),
        sa.CheckConstraint('max_uses IS NULL OR current_uses <= max_uses', name='ck_coupons_uses_within_max'),
        sa.CheckConstraint("discount_type IN ('percentage', 'fixed', 'credits')", name='ck_coupons_type'),
    )

    op.create_table(
        'coupon_redemptions',
        _id(),
        sa.Column('coupon_id', UUID(as_uuid=True), sa.ForeignKey('coupons.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('payment_id', sa.String(100), nullable=False),
        sa.Column('discount_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('bonus_credits', sa.Integer(), nullable=False, server_default='0'),
        _created_at(),

        sa.UniqueConstraint('payment_id', name='uq_coupon_redemptions_payment_id'),
    )
    op.create_index('idx_coupon_redemptions_coupon_user', 'coupon_redemptions', ['coupon_id', 'user_id'])

    # ========================================================================
    # Create pricing_plans and payment_orders tables
    # ========================================================================
    op.create_table(
        'pricing_plans',
        _id(),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False),
        sa.Column('type', sa.String(20), nullable=False, server_default='subscription'),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('interval', sa.String(10), nullable=True),
        sa.Column('credits', sa.BigInteger(), nullable=False),
        sa.Column('features', JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('is_popular', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('cta_text', sa.String(100), nullable=True),
        _created_at(),
        _updated_at(),

        sa.UniqueConstraint('slug', name='uq_pricing_plans_slug'),
        sa.CheckConstraint('price >= 0', name='ck_pricing_plans_price_non_negative'),
        sa.CheckConstraint('credits >= 0', name='ck_pricing_plans_credits_non_negative'),
    )

    op.create_table(
        'payment_orders',
        _id(),
        sa.Column('order_id', sa.String(100), nullable=False),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('base_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('discount_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('credits', sa.BigInteger(), nullable=False),
        sa.Column('bonus_credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('coupon_id', UUID(as_uuid=True), sa.ForeignKey('coupons.id', ondelete='SET NULL'), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='created'),
        sa.Column('payment_id', sa.String(100), nullable=True),
        _created_at(),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),

        sa.UniqueConstraint('order_id', name='uq_payment_orders_order_id'),
    )
    op.create_index('idx_payment_orders_user_id', 'payment_orders', ['user_id'])

    # ========================================================================
    # Create validation_servers table
    # ========================================================================
    op.create_table(
        'validation_servers',
        _id(),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('url', sa.String(500), nullable=False),
        sa.Column('weight', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('is_healthy', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('total_requests', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('successful_requests', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('avg_response_time_ms', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_health_check', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),

        sa.CheckConstraint('weight > 0', name='ck_validation_servers_weight_positive'),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('validation_servers')
    op.drop_table('payment_orders')
    op.drop_table('pricing_plans')
    op.drop_table('coupon_redemptions')
    op.drop_table('coupons')
    op.drop_table('admin_activity_logs')
    op.drop_table('transactions')
    op.drop_table('credit_reservations')
    op.drop_table('validation_results')
    op.drop_table('validation_jobs')
    op.drop_table('api_keys')
    op.drop_table('users')
