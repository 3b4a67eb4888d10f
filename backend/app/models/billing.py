import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()"))
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    description: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    price: Mapped[float] = mapped_column(sa.Numeric(12, 2), nullable=False, server_default="0")
    billing_period: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="monthly")
    stripe_price_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, server_default=sa.text("true"))
    created_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))

    __table_args__ = (
        sa.CheckConstraint("price >= 0", name="ck_subscription_plans_price"),
        sa.Index("ix_subscription_plans_active_price", "active", "price"),
    )


class SignupIntent(Base):
    __tablename__ = "signup_intents"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()"))
    email: Mapped[str] = mapped_column(sa.Text, nullable=False)
    full_name: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    company_name: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    plan_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("subscription_plans.id"), nullable=False)
    modules: Mapped[list] = mapped_column(sa.JSON, nullable=False, server_default=sa.text("'[]'::jsonb"))
    provider: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="draft")
    amount_usd: Mapped[float] = mapped_column(sa.Numeric(12, 2), nullable=False)
    amount_ars: Mapped[float | None] = mapped_column(sa.Numeric(14, 2), nullable=True)
    fx_rate_usd_ars: Mapped[float | None] = mapped_column(sa.Numeric(14, 4), nullable=True)
    fx_rate_at: Mapped[sa.DateTime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    stripe_checkout_session_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    mp_preapproval_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    mp_preapproval_plan_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    trial_ends_at: Mapped[sa.DateTime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    payment_failed_at: Mapped[sa.DateTime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    company_id: Mapped[sa.Uuid | None] = mapped_column(sa.Uuid, sa.ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)
    version: Mapped[int] = mapped_column(sa.Integer, nullable=False, server_default="1")
    created_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))
    updated_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))

    __table_args__ = (
        sa.CheckConstraint("provider IN ('stripe','mercadopago')", name="ck_signup_intents_provider"),
        sa.CheckConstraint(
            "status IN ('draft','checkout_created','paid_ready','completed','payment_failed','subscription_active','deleted')",
            name="ck_signup_intents_status",
        ),
        sa.Index("ix_signup_intents_trial_sweep", "status", "trial_ends_at"),
        sa.Index("ix_signup_intents_failed_sweep", "status", "payment_failed_at"),
        sa.Index("ix_signup_intents_company", "company_id"),
    )


class SignupPaymentMethod(Base):
    __tablename__ = "signup_payment_methods"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()"))
    email: Mapped[str] = mapped_column(sa.Text, nullable=False)
    name: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    billing_country: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    provider: Mapped[str] = mapped_column(sa.Text, nullable=False)
    payment_method_ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    brand: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    last4: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    exp_month: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    exp_year: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    payment_verified: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, server_default=sa.text("false"))
    payment_error: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    linked_to_company_id: Mapped[sa.Uuid | None] = mapped_column(sa.Uuid, sa.ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))

    __table_args__ = (
        sa.CheckConstraint("provider IN ('stripe','mercadopago')", name="ck_signup_payment_methods_provider"),
        sa.Index("ix_signup_payment_methods_email_created", sa.text("lower(email)"), sa.text("created_at DESC")),
    )


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()"))
    company_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, unique=True)
    plan_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("subscription_plans.id"), nullable=False)
    provider: Mapped[str] = mapped_column(sa.Text, nullable=False)
    provider_customer_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    provider_subscription_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    stripe_payment_method_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    mp_preapproval_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="trialing")
    trial_ends_at: Mapped[sa.DateTime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[sa.DateTime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    payment_failed_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, server_default="0")
    last_payment_failed_at: Mapped[sa.DateTime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    payment_retry_after: Mapped[sa.DateTime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    disabled_until: Mapped[sa.DateTime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[sa.DateTime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    modules: Mapped[list] = mapped_column(sa.JSON, nullable=False, server_default=sa.text("'[]'::jsonb"))
    amount_usd: Mapped[float] = mapped_column(sa.Numeric(12, 2), nullable=False, server_default="0")
    amount_ars: Mapped[float | None] = mapped_column(sa.Numeric(14, 2), nullable=True)
    fx_rate_usd_ars: Mapped[float | None] = mapped_column(sa.Numeric(14, 4), nullable=True)
    version: Mapped[int] = mapped_column(sa.Integer, nullable=False, server_default="1")
    created_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))
    updated_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))

    __table_args__ = (
        sa.CheckConstraint("provider IN ('stripe','mercadopago')", name="ck_subscriptions_provider"),
        sa.CheckConstraint(
            "status IN ('trialing','active','past_due','canceled','incomplete')",
            name="ck_subscriptions_status",
        ),
        sa.CheckConstraint("payment_failed_count >= 0", name="ck_subscriptions_failed_count"),
        sa.CheckConstraint(
            "disabled_until IS NULL OR payment_failed_count >= 3",
            name="ck_subscriptions_disabled_requires_failures",
        ),
        sa.CheckConstraint(
            "stripe_payment_method_id IS NULL OR mp_preapproval_id IS NULL",
            name="ck_subscriptions_single_payment_ref",
        ),
        sa.Index("ix_subscriptions_provider_sub_id", "provider", "provider_subscription_id"),
        sa.Index("ix_subscriptions_status_trial", "status", "trial_ends_at"),
    )


class SubscriptionEvent(Base):
    __tablename__ = "subscription_events"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()"))
    company_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    event_type: Mapped[str] = mapped_column(sa.Text, nullable=False)
    old_plan_id: Mapped[sa.Uuid | None] = mapped_column(sa.Uuid, nullable=True)
    new_plan_id: Mapped[sa.Uuid | None] = mapped_column(sa.Uuid, nullable=True)
    old_status: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    new_status: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    reason: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    data: Mapped[dict] = mapped_column("metadata", sa.JSON, nullable=False, server_default=sa.text("'{}'::jsonb"))
    created_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))

    __table_args__ = (
        sa.CheckConstraint(
            "event_type IN ('payment_failed','payment_recovered','upgraded','downgraded','canceled')",
            name="ck_subscription_events_type",
        ),
        sa.Index("ix_subscription_events_company_created", "company_id", sa.text("created_at DESC")),
        sa.Index("ix_subscription_events_type_created", "event_type", sa.text("created_at DESC")),
    )


class CompanyPaymentMethod(Base):
    __tablename__ = "company_payment_methods"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()"))
    company_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(sa.Text, nullable=False)
    stripe_payment_method_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    mp_preapproval_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    brand: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    last4: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    exp_month: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    exp_year: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    holder_name: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    is_default: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, server_default=sa.text("false"))
    created_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))
    updated_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))

    __table_args__ = (
        sa.CheckConstraint("type IN ('card','mercadopago')", name="ck_company_payment_methods_type"),
        sa.Index(
            "ux_company_payment_methods_one_default",
            "company_id",
            unique=True,
            postgresql_where=sa.text("is_default"),
        ),
        sa.Index("ix_company_payment_methods_company_created", "company_id", "created_at"),
    )


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()"))
    provider: Mapped[str] = mapped_column(sa.Text, nullable=False)
    event_key: Mapped[str] = mapped_column(sa.Text, nullable=False)
    event_type: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    payload: Mapped[dict] = mapped_column(sa.JSON, nullable=False, server_default=sa.text("'{}'::jsonb"))
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="received")
    received_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))
    processed_at: Mapped[sa.DateTime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        sa.CheckConstraint("provider IN ('stripe','mercadopago')", name="ck_webhook_events_provider"),
        sa.CheckConstraint("status IN ('received','processed','ignored')", name="ck_webhook_events_status"),
        sa.UniqueConstraint("provider", "event_key", name="uq_webhook_events_provider_event_key"),
        sa.Index("ix_webhook_events_status_received", "status", sa.text("received_at DESC")),
    )


class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()"))
    kind: Mapped[str] = mapped_column(sa.Text, nullable=False)
    recipient: Mapped[str] = mapped_column(sa.Text, nullable=False)
    subject: Mapped[str] = mapped_column(sa.Text, nullable=False)
    body: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="pending")
    attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False, server_default="0")
    last_error: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    next_attempt_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))
    created_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))
    sent_at: Mapped[sa.DateTime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        sa.CheckConstraint("status IN ('pending','sent','failed','skipped')", name="ck_notification_outbox_status"),
        sa.Index("ix_notification_outbox_due", "status", "next_attempt_at"),
    )
