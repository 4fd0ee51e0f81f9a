"""Initial schema for the credit ledger and SMS dispatcher.

Creates tenants and their credit history, the SMS consent / opt-out /
compliance-log tables, the customer and appointment tables that carry the
notification sent-flags, and the hash-chained audit log.

Row-level security is enabled (not forced) on every table with a
``tenant_id`` column.  Tenant-facing connections set ``app.tenant_id``
through ``set_tenant_context`` and see only their own rows.  The dispatcher
and the monthly reset run as the table owner, which RLS does not restrict,
because their candidate queries span all tenants.

Revision ID: 001
Revises:
Create Date: 2026-10-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_TENANT_TABLES: list[str] = [
    "credit_transactions",
    "sms_consent",
    "sms_compliance_log",
    "customers",
    "appointments",
    "audit_log",
]


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False, server_default=""),
        sa.Column("subscription_tier", sa.String(32), nullable=False, server_default="trial"),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="America/New_York"),
        sa.Column("address", sa.String(512), nullable=True),
        sa.Column("monthly_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("purchased_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_used_this_month", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_reset_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("monthly_credits >= 0", name="ck_tenants_monthly_credits_non_negative"),
        sa.CheckConstraint("purchased_credits >= 0", name="ck_tenants_purchased_credits_non_negative"),
        sa.CheckConstraint("credits_used_this_month >= 0", name="ck_tenants_credits_used_non_negative"),
    )
    op.create_index("ix_tenants_reset_date", "tenants", ["credits_reset_date"])

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "tenant_id",
            sa.String(64),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("operation", sa.String(32), nullable=False),
        sa.Column("feature", sa.String(64), nullable=False),
        sa.Column("metadata_json", JSONB(), nullable=True),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "operation IN ('deduct', 'purchase', 'reset', 'initialize')",
            name="ck_credit_transactions_operation",
        ),
    )
    op.create_index(
        "ix_credit_transactions_tenant_created",
        "credit_transactions",
        ["tenant_id", "created_at"],
    )

    op.create_table(
        "sms_consent",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("phone_number", sa.String(32), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=True),
        sa.Column("consent_type", sa.String(32), nullable=False),
        sa.Column("consent_method", sa.String(32), nullable=False),
        sa.Column("purpose", JSONB(), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("consented_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    )
    op.create_index("ix_sms_consent_phone_tenant", "sms_consent", ["phone_number", "tenant_id"])
    op.create_index("ix_sms_consent_phone", "sms_consent", ["phone_number"])

    op.create_table(
        "sms_opt_outs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("phone_number", sa.String(32), nullable=False),
        sa.Column("opted_out_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("reason", sa.String(128), nullable=False, server_default="user_request"),
    )
    op.create_index("ix_sms_opt_outs_phone", "sms_opt_outs", ["phone_number"])

    op.create_table(
        "sms_compliance_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("phone_number", sa.String(32), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("allowed", sa.Boolean(), nullable=False),
        sa.Column("reason", sa.String(128), nullable=False, server_default="passed_all_checks"),
        sa.Column("message_type", sa.String(32), nullable=True),
        sa.Column("checked_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        "ix_sms_compliance_log_tenant_checked",
        "sms_compliance_log",
        ["tenant_id", "checked_at"],
    )

    op.create_table(
        "customers",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(64),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("first_name", sa.String(128), nullable=True),
        sa.Column("name", sa.String(256), nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("last_appointment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "birthday_message_sent_this_year",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column("service_reminder_sent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("birthday_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("service_reminder_claimed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_customers_tenant", "customers", ["tenant_id"])
    op.create_index("ix_customers_last_appointment", "customers", ["last_appointment_date"])

    op.create_table(
        "appointments",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(64),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "customer_id",
            sa.String(64),
            sa.ForeignKey("customers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("service_name", sa.String(256), nullable=True),
        sa.Column("appointment_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("start_time", sa.String(32), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("reminder_24h_sent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("reminder_24h_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_2h_sent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("reminder_2h_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("no_show_followup_sent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("no_show_followup_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_24h_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_2h_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("no_show_followup_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'completed', 'cancelled', 'no-show')",
            name="ck_appointments_status",
        ),
    )
    op.create_index("ix_appointments_tenant_date", "appointments", ["tenant_id", "appointment_date"])
    op.create_index("ix_appointments_date_status", "appointments", ["appointment_date", "status"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("actor", sa.String(256), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(64), nullable=True),
        sa.Column("entity_id", sa.String(256), nullable=True),
        sa.Column("metadata_json", JSONB(), nullable=True),
        sa.Column("severity", sa.String(16), nullable=False, server_default="low"),
        sa.Column("previous_hash", sa.String(64), nullable=True),
        sa.Column("entry_hash", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_audit_log_tenant_created", "audit_log", ["tenant_id", "created_at"])
    op.create_index("ix_audit_log_action", "audit_log", ["action"])

    for table in _TENANT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(
            f"CREATE POLICY tenant_isolation_{table} ON {table} "
            f"USING (tenant_id = current_setting('app.tenant_id', true)) "
            f"WITH CHECK (tenant_id = current_setting('app.tenant_id', true))"
        )

    op.execute("ALTER TABLE tenants ENABLE ROW LEVEL SECURITY")
    op.execute(
        "CREATE POLICY tenant_isolation_tenants ON tenants "
        "USING (id = current_setting('app.tenant_id', true)) "
        "WITH CHECK (id = current_setting('app.tenant_id', true))"
    )


def downgrade() -> None:
    op.execute("DROP POLICY IF EXISTS tenant_isolation_tenants ON tenants")
    for table in reversed(_TENANT_TABLES):
        op.execute(f"DROP POLICY IF EXISTS tenant_isolation_{table} ON {table}")

    op.drop_table("audit_log")
    op.drop_table("appointments")
    op.drop_table("customers")
    op.drop_table("sms_compliance_log")
    op.drop_table("sms_opt_outs")
    op.drop_table("sms_consent")
    op.drop_table("credit_transactions")
    op.drop_table("tenants")
