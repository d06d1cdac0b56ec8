"""initial schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from datetime import datetime

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


SYSTEM_UTILITY_TYPES = [
    ("Electricity", "Electric power supply", "kWh"),
    ("Water", "Water and sewage", "m³"),
    ("Gas", "Natural gas supply", "m³"),
    ("Internet", "Broadband and internet access", None),
    ("Phone", "Mobile and landline service", None),
    ("Trash", "Waste collection", None),
]


def upgrade():
    utility_types = op.create_table(
        "utility_types",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("unit", sa.String(length=50), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "name", name="uq_utility_type_user_name"),
    )

    op.create_table(
        "recurring_bills",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "utility_type_id",
            sa.Integer(),
            sa.ForeignKey("utility_types.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("day_of_month", sa.Integer(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_generated_period", sa.String(length=7), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "day_of_month >= 1 AND day_of_month <= 28",
            name="ck_recurring_day_of_month",
        ),
        sa.CheckConstraint("amount_cents > 0", name="ck_recurring_amount_positive"),
    )
    op.create_index(
        "ix_recurring_user_active", "recurring_bills", ["user_id", "is_active"]
    )

    op.create_table(
        "bills",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "utility_type_id",
            sa.Integer(),
            sa.ForeignKey("utility_types.id"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("bill_date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("usage_amount", sa.Float(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "payment_status",
            sa.Enum("need_payment", "paid", "auto_pay", name="paymentstatus"),
            nullable=False,
            server_default="need_payment",
        ),
        sa.Column(
            "origin",
            sa.Enum("manual", "recurring", name="billorigin"),
            nullable=False,
            server_default="manual",
        ),
        sa.Column(
            "recurring_bill_id",
            sa.Integer(),
            sa.ForeignKey("recurring_bills.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("period", sa.String(length=7), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "recurring_bill_id", "period", name="uq_bill_recurring_period"
        ),
        sa.CheckConstraint("amount_cents > 0", name="ck_bills_amount_positive"),
    )
    op.create_index("ix_bills_user_date", "bills", ["user_id", "bill_date"])
    op.create_index(
        "ix_bills_user_type_date", "bills", ["user_id", "utility_type_id", "bill_date"]
    )

    op.create_table(
        "alerts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "alert_type",
            sa.Enum(
                "bill_reminder",
                "usage_threshold",
                "cost_threshold",
                "promotion_end",
                name="alerttype",
            ),
            nullable=False,
        ),
        sa.Column(
            "utility_type_id",
            sa.Integer(),
            sa.ForeignKey("utility_types.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("configuration", sa.JSON(), nullable=False),
        sa.Column("last_triggered", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_alerts_user_type_active", "alerts", ["user_id", "alert_type", "is_active"]
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "alert_id",
            sa.Integer(),
            sa.ForeignKey("alerts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column(
            "type",
            sa.Enum("info", "warning", "alert", name="notificationtype"),
            nullable=False,
            server_default="info",
        ),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_notifications_user_read", "notifications", ["user_id", "is_read"]
    )
    op.create_index(
        "ix_notifications_user_created", "notifications", ["user_id", "created_at"]
    )

    now = datetime.utcnow()
    op.bulk_insert(
        utility_types,
        [
            {
                "user_id": None,
                "name": name,
                "description": description,
                "unit": unit,
                "created_at": now,
                "updated_at": now,
            }
            for name, description, unit in SYSTEM_UTILITY_TYPES
        ],
    )


def downgrade():
    op.drop_index("ix_notifications_user_created", table_name="notifications")
    op.drop_index("ix_notifications_user_read", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_alerts_user_type_active", table_name="alerts")
    op.drop_table("alerts")
    op.drop_index("ix_bills_user_type_date", table_name="bills")
    op.drop_index("ix_bills_user_date", table_name="bills")
    op.drop_table("bills")
    op.drop_index("ix_recurring_user_active", table_name="recurring_bills")
    op.drop_table("recurring_bills")
    op.drop_table("utility_types")
