"""billing lifecycle schema

Revision ID: 0001_billing_lifecycle
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa

revision = "0001_billing_lifecycle"
down_revision = None
branch_labels = None
depends_on = None

PROVIDERS = "provider IN ('stripe','mercadopago')"


def upgrade():
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    # users / tenancy
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("email", sa.Text, nullable=False),
        sa.Column("full_name", sa.Text, nullable=True),
        sa.Column("password_hash", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("status in ('active','blocked')", name="ck_user_status"),
    )
    op.create_index("ux_users_email_lower", "users", [sa.text("lower(email)")], unique=True)

    op.create_table(
        "companies",
        sa.Column("id", sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("email", sa.Text, nullable=True),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    op.create_table(
        "company_users",
        sa.Column("id", sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("company_id", sa.Uuid, sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Uuid, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.Text, nullable=False, server_default="employee"),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column("platform_admin", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("role IN ('admin','manager','employee')", name="ck_company_users_role"),
        sa.UniqueConstraint("company_id", "user_id", name="uq_company_users_company_user"),
    )
    op.create_index("ix_company_users_user_active", "company_users", ["user_id", "active"])

    # plans
    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("price", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("billing_period", sa.Text, nullable=False, server_default="monthly"),
        sa.Column("stripe_price_id", sa.Text, nullable=True),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("price >= 0", name="ck_subscription_plans_price"),
    )
    op.create_index("ix_subscription_plans_active_price", "subscription_plans", ["active", "price"])

    # signup intents
    op.create_table(
        "signup_intents",
        sa.Column("id", sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("email", sa.Text, nullable=False),
        sa.Column("full_name", sa.Text, nullable=True),
        sa.Column("company_name", sa.Text, nullable=True),
        sa.Column("plan_id", sa.Uuid, sa.ForeignKey("subscription_plans.id"), nullable=False),
        sa.Column("modules", sa.JSON, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("provider", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="draft"),
        sa.Column("amount_usd", sa.Numeric(12, 2), nullable=False),
        sa.Column("amount_ars", sa.Numeric(14, 2), nullable=True),
        sa.Column("fx_rate_usd_ars", sa.Numeric(14, 4), nullable=True),
        sa.Column("fx_rate_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_customer_id", sa.Text, nullable=True),
        sa.Column("stripe_checkout_session_id", sa.Text, nullable=True),
        sa.Column("stripe_subscription_id", sa.Text, nullable=True),
        sa.Column("mp_preapproval_id", sa.Text, nullable=True),
        sa.Column("mp_preapproval_plan_id", sa.Text, nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("company_id", sa.Uuid, sa.ForeignKey("companies.id", ondelete="SET NULL"), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(PROVIDERS, name="ck_signup_intents_provider"),
        sa.CheckConstraint(
            "status IN ('draft','checkout_created','paid_ready','completed','payment_failed','subscription_active','deleted')",
            name="ck_signup_intents_status",
        ),
    )
    op.create_index("ix_signup_intents_trial_sweep", "signup_intents", ["status", "trial_ends_at"])
    op.create_index("ix_signup_intents_failed_sweep", "signup_intents", ["status", "payment_failed_at"])
    op.create_index("ix_signup_intents_company", "signup_intents", ["company_id"])

    op.create_table(
        "signup_payment_methods",
        sa.Column("id", sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("email", sa.Text, nullable=False),
        sa.Column("name", sa.Text, nullable=True),
        sa.Column("billing_country", sa.Text, nullable=True),
        sa.Column("provider", sa.Text, nullable=False),
        sa.Column("payment_method_ref", sa.Text, nullable=False),
        sa.Column("brand", sa.Text, nullable=True),
        sa.Column("last4", sa.Text, nullable=True),
        sa.Column("exp_month", sa.Integer, nullable=True),
        sa.Column("exp_year", sa.Integer, nullable=True),
        sa.Column("payment_verified", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("payment_error", sa.Text, nullable=True),
        sa.Column("linked_to_company_id", sa.Uuid, sa.ForeignKey("companies.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(PROVIDERS, name="ck_signup_payment_methods_provider"),
    )
    op.create_index(
        "ix_signup_payment_methods_email_created",
        "signup_payment_methods",
        [sa.text("lower(email)"), sa.text("created_at DESC")],
    )

    # subscriptions
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("company_id", sa.Uuid, sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("plan_id", sa.Uuid, sa.ForeignKey("subscription_plans.id"), nullable=False),
        sa.Column("provider", sa.Text, nullable=False),
        sa.Column("provider_customer_id", sa.Text, nullable=True),
        sa.Column("provider_subscription_id", sa.Text, nullable=True),
        sa.Column("stripe_payment_method_id", sa.Text, nullable=True),
        sa.Column("mp_preapproval_id", sa.Text, nullable=True),
        sa.Column("status", sa.Text, nullable=False, server_default="trialing"),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_failed_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_payment_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_retry_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disabled_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text, nullable=True),
        sa.Column("modules", sa.JSON, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("amount_usd", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("amount_ars", sa.Numeric(14, 2), nullable=True),
        sa.Column("fx_rate_usd_ars", sa.Numeric(14, 4), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(PROVIDERS, name="ck_subscriptions_provider"),
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
    )
    op.create_index("ix_subscriptions_provider_sub_id", "subscriptions", ["provider", "provider_subscription_id"])
    op.create_index("ix_subscriptions_status_trial", "subscriptions", ["status", "trial_ends_at"])

    op.create_table(
        "subscription_events",
        sa.Column("id", sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("company_id", sa.Uuid, sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False),
        sa.Column("event_type", sa.Text, nullable=False),
        sa.Column("old_plan_id", sa.Uuid, nullable=True),
        sa.Column("new_plan_id", sa.Uuid, nullable=True),
        sa.Column("old_status", sa.Text, nullable=True),
        sa.Column("new_status", sa.Text, nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("metadata", sa.JSON, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "event_type IN ('payment_failed','payment_recovered','upgraded','downgraded','canceled')",
            name="ck_subscription_events_type",
        ),
    )
    op.create_index(
        "ix_subscription_events_company_created",
        "subscription_events",
        ["company_id", sa.text("created_at DESC")],
    )
    op.create_index(
        "ix_subscription_events_type_created",
        "subscription_events",
        ["event_type", sa.text("created_at DESC")],
    )

    # append-only trail
    op.execute("""
        CREATE OR REPLACE FUNCTION subscription_events_append_only() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'subscription_events is append-only';
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER trg_subscription_events_append_only
        BEFORE UPDATE ON subscription_events
        FOR EACH ROW EXECUTE FUNCTION subscription_events_append_only()
    """)

    op.create_table(
        "company_payment_methods",
        sa.Column("id", sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("company_id", sa.Uuid, sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.Text, nullable=False),
        sa.Column("stripe_payment_method_id", sa.Text, nullable=True),
        sa.Column("mp_preapproval_id", sa.Text, nullable=True),
        sa.Column("brand", sa.Text, nullable=True),
        sa.Column("last4", sa.Text, nullable=True),
        sa.Column("exp_month", sa.Integer, nullable=True),
        sa.Column("exp_year", sa.Integer, nullable=True),
        sa.Column("holder_name", sa.Text, nullable=True),
        sa.Column("is_default", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("type IN ('card','mercadopago')", name="ck_company_payment_methods_type"),
    )
    op.create_index(
        "ux_company_payment_methods_one_default",
        "company_payment_methods",
        ["company_id"],
        unique=True,
        postgresql_where=sa.text("is_default"),
    )
    op.create_index(
        "ix_company_payment_methods_company_created",
        "company_payment_methods",
        ["company_id", "created_at"],
    )

    # webhook idempotency ledger
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("provider", sa.Text, nullable=False),
        sa.Column("event_key", sa.Text, nullable=False),
        sa.Column("event_type", sa.Text, nullable=True),
        sa.Column("payload", sa.JSON, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.Text, nullable=False, server_default="received"),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(PROVIDERS, name="ck_webhook_events_provider"),
        sa.CheckConstraint("status IN ('received','processed','ignored')", name="ck_webhook_events_status"),
        sa.UniqueConstraint("provider", "event_key", name="uq_webhook_events_provider_event_key"),
    )
    op.create_index(
        "ix_webhook_events_status_received",
        "webhook_events",
        ["status", sa.text("received_at DESC")],
    )

    # notification outbox
    op.create_table(
        "notification_outbox",
        sa.Column("id", sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("kind", sa.Text, nullable=False),
        sa.Column("recipient", sa.Text, nullable=False),
        sa.Column("subject", sa.Text, nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("status IN ('pending','sent','failed','skipped')", name="ck_notification_outbox_status"),
    )
    op.create_index("ix_notification_outbox_due", "notification_outbox", ["status", "next_attempt_at"])


def downgrade():
    op.drop_index("ix_notification_outbox_due", table_name="notification_outbox")
    op.drop_table("notification_outbox")

    op.drop_index("ix_webhook_events_status_received", table_name="webhook_events")
    op.drop_table("webhook_events")

    op.drop_index("ix_company_payment_methods_company_created", table_name="company_payment_methods")
    op.drop_index("ux_company_payment_methods_one_default", table_name="company_payment_methods")
    op.drop_table("company_payment_methods")

    op.execute("DROP TRIGGER IF EXISTS trg_subscription_events_append_only ON subscription_events")
    op.execute("DROP FUNCTION IF EXISTS subscription_events_append_only()")
    op.drop_index("ix_subscription_events_type_created", table_name="subscription_events")
    op.drop_index("ix_subscription_events_company_created", table_name="subscription_events")
    op.drop_table("subscription_events")

    op.drop_index("ix_subscriptions_status_trial", table_name="subscriptions")
    op.drop_index("ix_subscriptions_provider_sub_id", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_index("ix_signup_payment_methods_email_created", table_name="signup_payment_methods")
    op.drop_table("signup_payment_methods")

    op.drop_index("ix_signup_intents_company", table_name="signup_intents")
    op.drop_index("ix_signup_intents_failed_sweep", table_name="signup_intents")
    op.drop_index("ix_signup_intents_trial_sweep", table_name="signup_intents")
    op.drop_table("signup_intents")

    op.drop_index("ix_subscription_plans_active_price", table_name="subscription_plans")
    op.drop_table("subscription_plans")

    op.drop_index("ix_company_users_user_active", table_name="company_users")
    op.drop_table("company_users")
    op.drop_table("companies")

    op.drop_index("ux_users_email_lower", table_name="users")
    op.drop_table("users")
