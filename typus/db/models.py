from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from typus.db.base import Base, JSONType
from typus.utils.time import utcnow


class User(Base):
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    hashed_password: Mapped[str] = mapped_column(String(255))
    full_name: Mapped[str] = mapped_column(String(255), default='')
    is_student: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    subscription: Mapped['Subscription | None'] = relationship(back_populates='user', uselist=False)
    transactions: Mapped[list['CreditTransaction']] = relationship(back_populates='user')


class Plan(Base):
    __tablename__ = 'plans'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan_type: Mapped[str] = mapped_column(String(32), index=True)
    name: Mapped[str] = mapped_column(String(128))
    description: Mapped[str] = mapped_column(Text, default='')
    credits: Mapped[int] = mapped_column(Integer)
    is_educational: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    prices: Mapped[list['PlanPrice']] = relationship(back_populates='plan', order_by='PlanPrice.id')

    __table_args__ = (
        UniqueConstraint('plan_type', 'is_educational', name='uq_plans_type_educational'),
    )


class PlanPrice(Base):
    __tablename__ = 'plan_prices'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey('plans.id'), index=True)
    billing_cycle: Mapped[str] = mapped_column(String(16))
    currency: Mapped[str] = mapped_column(String(3), default='usd')
    amount: Mapped[int] = mapped_column(Integer)
    stripe_price_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    plan: Mapped['Plan'] = relationship(back_populates='prices')


class Subscription(Base):
    __tablename__ = 'subscriptions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), unique=True, index=True)
    plan_type: Mapped[str] = mapped_column(String(32))
    billing_cycle: Mapped[str] = mapped_column(String(16), default='MONTHLY')
    status: Mapped[str] = mapped_column(String(32), default='ACTIVE')
    is_educational: Mapped[bool] = mapped_column(Boolean, default=False)
    credits_per_period: Mapped[int] = mapped_column(Integer, default=0)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    failed_payment_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_payment_failure_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    user: Mapped['User'] = relationship(back_populates='subscription')


class CreditTransaction(Base):
    __tablename__ = 'credit_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    amount: Mapped[int] = mapped_column(Integer)
    type: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(16), default='COMPLETED')
    description: Mapped[str] = mapped_column(String(255), default='')
    batch_id: Mapped[int | None] = mapped_column(ForeignKey('generation_batches.id'), nullable=True, index=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    user: Mapped['User'] = relationship(back_populates='transactions')


class CreationSession(Base):
    __tablename__ = 'sessions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    batches: Mapped[list['GenerationBatch']] = relationship(
        back_populates='session', order_by='GenerationBatch.created_at', passive_deletes=True
    )


class InputImage(Base):
    __tablename__ = 'input_images'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    file_name: Mapped[str] = mapped_column(String(255), default='')
    original_url: Mapped[str] = mapped_column(String(1024))
    processed_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    width: Mapped[int] = mapped_column(Integer, default=0)
    height: Mapped[int] = mapped_column(Integer, default=0)
    file_size: Mapped[int] = mapped_column(Integer, default=0)
    mask_status: Mapped[str] = mapped_column(String(16), default='none')
    mask_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    mask_regions: Mapped[list['MaskRegion']] = relationship(
        back_populates='input_image', order_by='MaskRegion.id', cascade='all, delete-orphan'
    )


class GenerationBatch(Base):
    __tablename__ = 'generation_batches'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    session_id: Mapped[int | None] = mapped_column(ForeignKey('sessions.id', ondelete='SET NULL'), nullable=True, index=True)
    input_image_id: Mapped[int | None] = mapped_column(ForeignKey('input_images.id'), nullable=True, index=True)
    module_type: Mapped[str] = mapped_column(String(16), index=True)
    status: Mapped[str] = mapped_column(String(16), default='PROCESSING')
    prompt: Mapped[str] = mapped_column(Text, default='')
    negative_prompt: Mapped[str] = mapped_column(Text, default='')
    total_variations: Mapped[int] = mapped_column(Integer)
    credits_used: Mapped[int] = mapped_column(Integer, default=0)
    meta: Mapped[dict] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    session: Mapped['CreationSession | None'] = relationship(back_populates='batches')
    variations: Mapped[list['GeneratedImage']] = relationship(
        back_populates='batch', order_by='GeneratedImage.variation_number'
    )


class GeneratedImage(Base):
    __tablename__ = 'images'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey('generation_batches.id'), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    variation_number: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(16), default='PROCESSING')
    provider: Mapped[str] = mapped_column(String(16))
    provider_job_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    provider_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    original_image_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    processed_image_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    training_image_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    original_base_image_id: Mapped[int | None] = mapped_column(
        ForeignKey('input_images.id'), nullable=True, index=True
    )
    source_image_id: Mapped[int | None] = mapped_column(ForeignKey('images.id'), nullable=True)
    meta: Mapped[dict] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    batch: Mapped['GenerationBatch'] = relationship(back_populates='variations')


class CustomizationCategory(Base):
    __tablename__ = 'customization_categories'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(64), unique=True)
    name: Mapped[str] = mapped_column(String(128))
    parent_id: Mapped[int | None] = mapped_column(ForeignKey('customization_categories.id'), nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    options: Mapped[list['CustomizationOption']] = relationship(
        back_populates='category', order_by='CustomizationOption.sort_order'
    )


class CustomizationOption(Base):
    __tablename__ = 'customization_options'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(ForeignKey('customization_categories.id'), index=True)
    slug: Mapped[str] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(128))
    prompt_text: Mapped[str] = mapped_column(Text, default='')
    image_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    category: Mapped['CustomizationCategory'] = relationship(back_populates='options')

    __table_args__ = (
        UniqueConstraint('category_id', 'slug', name='uq_customization_options_category_slug'),
    )


class MaskRegion(Base):
    __tablename__ = 'mask_regions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    input_image_id: Mapped[int] = mapped_column(ForeignKey('input_images.id'), index=True)
    mask_key: Mapped[str] = mapped_column(String(32))
    mask_url: Mapped[str] = mapped_column(String(1024))
    color: Mapped[str] = mapped_column(String(32))
    customization_option_id: Mapped[int | None] = mapped_column(
        ForeignKey('customization_options.id'), nullable=True
    )
    sub_category_id: Mapped[int | None] = mapped_column(
        ForeignKey('customization_categories.id'), nullable=True
    )
    custom_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    input_image: Mapped['InputImage'] = relationship(back_populates='mask_regions')
    option: Mapped['CustomizationOption | None'] = relationship()


class RefineSettings(Base):
    """Last refine parameters a user chose for one image."""

    __tablename__ = 'refine_settings'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    source_type: Mapped[str] = mapped_column(String(16))
    source_id: Mapped[int] = mapped_column(Integer)
    settings: Mapped[dict] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'source_type', 'source_id', name='uq_refine_settings_source'),
    )
