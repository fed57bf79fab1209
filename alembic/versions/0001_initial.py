"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _json() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('hashed_password', sa.String(length=255), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('is_student', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('stripe_customer_id', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('stripe_customer_id', name='uq_users_stripe_customer_id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'plans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('plan_type', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('credits', sa.Integer(), nullable=False),
        sa.Column('is_educational', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.UniqueConstraint('plan_type', 'is_educational', name='uq_plans_type_educational'),
    )
    op.create_index('ix_plans_plan_type', 'plans', ['plan_type'])

    op.create_table(
        'plan_prices',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('plan_id', sa.Integer(), sa.ForeignKey('plans.id'), nullable=False),
        sa.Column('billing_cycle', sa.String(length=16), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('stripe_price_id', sa.String(length=128), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index('ix_plan_prices_plan_id', 'plan_prices', ['plan_id'])
    op.create_index('ix_plan_prices_stripe_price_id', 'plan_prices', ['stripe_price_id'], unique=True)

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('plan_type', sa.String(length=32), nullable=False),
        sa.Column('billing_cycle', sa.String(length=16), nullable=False, server_default='MONTHLY'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='ACTIVE'),
        sa.Column('is_educational', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('credits_per_period', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('stripe_subscription_id', sa.String(length=128), nullable=True),
        sa.Column('stripe_customer_id', sa.String(length=128), nullable=True),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('failed_payment_attempts', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('last_payment_failure_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('stripe_subscription_id', name='uq_subscriptions_stripe_subscription_id'),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'], unique=True)

    op.create_table(
        'sessions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_sessions_user_id', 'sessions', ['user_id'])

    op.create_table(
        'input_images',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('file_name', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('original_url', sa.String(length=1024), nullable=False),
        sa.Column('processed_url', sa.String(length=1024), nullable=True),
        sa.Column('thumbnail_url', sa.String(length=1024), nullable=True),
        sa.Column('width', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('height', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('file_size', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('mask_status', sa.String(length=16), nullable=False, server_default='none'),
        sa.Column('mask_data', _json(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_input_images_user_id', 'input_images', ['user_id'])

    op.create_table(
        'customization_categories',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('slug', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('parent_id', sa.Integer(), sa.ForeignKey('customization_categories.id'), nullable=True),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.UniqueConstraint('slug', name='uq_customization_categories_slug'),
    )

    op.create_table(
        'customization_options',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column(
            'category_id', sa.Integer(), sa.ForeignKey('customization_categories.id'), nullable=False
        ),
        sa.Column('slug', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('prompt_text', sa.Text(), nullable=False, server_default=''),
        sa.Column('image_url', sa.String(length=1024), nullable=True),
        sa.Column('thumbnail_url', sa.String(length=1024), nullable=True),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint('category_id', 'slug', name='uq_customization_options_category_slug'),
    )
    op.create_index('ix_customization_options_category_id', 'customization_options', ['category_id'])

    op.create_table(
        'generation_batches',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column(
            'session_id', sa.Integer(), sa.ForeignKey('sessions.id', ondelete='SET NULL'), nullable=True
        ),
        sa.Column('input_image_id', sa.Integer(), sa.ForeignKey('input_images.id'), nullable=True),
        sa.Column('module_type', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PROCESSING'),
        sa.Column('prompt', sa.Text(), nullable=False, server_default=''),
        sa.Column('negative_prompt', sa.Text(), nullable=False, server_default=''),
        sa.Column('total_variations', sa.Integer(), nullable=False),
        sa.Column('credits_used', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('meta', _json(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_generation_batches_user_id', 'generation_batches', ['user_id'])
    op.create_index('ix_generation_batches_session_id', 'generation_batches', ['session_id'])
    op.create_index('ix_generation_batches_input_image_id', 'generation_batches', ['input_image_id'])
    op.create_index('ix_generation_batches_module_type', 'generation_batches', ['module_type'])

    op.create_table(
        'images',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('batch_id', sa.Integer(), sa.ForeignKey('generation_batches.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('variation_number', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PROCESSING'),
        sa.Column('provider', sa.String(length=16), nullable=False),
        sa.Column('provider_job_id', sa.String(length=128), nullable=True),
        sa.Column('provider_status', sa.String(length=32), nullable=True),
        sa.Column('original_image_url', sa.String(length=1024), nullable=True),
        sa.Column('processed_image_url', sa.String(length=1024), nullable=True),
        sa.Column('thumbnail_url', sa.String(length=1024), nullable=True),
        sa.Column('training_image_url', sa.String(length=1024), nullable=True),
        sa.Column('width', sa.Integer(), nullable=True),
        sa.Column('height', sa.Integer(), nullable=True),
        sa.Column('failure_reason', sa.String(length=255), nullable=True),
        sa.Column('original_base_image_id', sa.Integer(), sa.ForeignKey('input_images.id'), nullable=True),
        sa.Column('source_image_id', sa.Integer(), sa.ForeignKey('images.id'), nullable=True),
        sa.Column('meta', _json(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_images_batch_id', 'images', ['batch_id'])
    op.create_index('ix_images_user_id', 'images', ['user_id'])
    op.create_index('ix_images_provider_job_id', 'images', ['provider_job_id'])
    op.create_index('ix_images_original_base_image_id', 'images', ['original_base_image_id'])
    op.create_index('ix_images_status', 'images', ['status'])

    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='COMPLETED'),
        sa.Column('description', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('batch_id', sa.Integer(), sa.ForeignKey('generation_batches.id'), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('idempotency_key', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('idempotency_key', name='uq_credit_transactions_idempotency_key'),
    )
    op.create_index('ix_credit_transactions_user_id', 'credit_transactions', ['user_id'])
    op.create_index('ix_credit_transactions_batch_id', 'credit_transactions', ['batch_id'])

    op.create_table(
        'mask_regions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('input_image_id', sa.Integer(), sa.ForeignKey('input_images.id'), nullable=False),
        sa.Column('mask_key', sa.String(length=32), nullable=False),
        sa.Column('mask_url', sa.String(length=1024), nullable=False),
        sa.Column('color', sa.String(length=32), nullable=False),
        sa.Column(
            'customization_option_id', sa.Integer(), sa.ForeignKey('customization_options.id'), nullable=True
        ),
        sa.Column(
            'sub_category_id', sa.Integer(), sa.ForeignKey('customization_categories.id'), nullable=True
        ),
        sa.Column('custom_text', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_mask_regions_input_image_id', 'mask_regions', ['input_image_id'])


def downgrade() -> None:
    op.drop_table('mask_regions')
    op.drop_table('credit_transactions')
    op.drop_table('images')
    op.drop_table('generation_batches')
    op.drop_table('customization_options')
    op.drop_table('customization_categories')
    op.drop_table('input_images')
    op.drop_table('sessions')
    op.drop_table('subscriptions')
    op.drop_table('plan_prices')
    op.drop_table('plans')
    op.drop_table('users')
