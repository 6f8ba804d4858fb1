"""Coupons, coupon usage ledger, abandoned carts and recovery emails.

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

ENUMS = {
    "discount_type": ("percentage", "fixed", "free_shipping", "buy_x_get_y"),
    "coupon_status": ("active", "expired", "scheduled", "used", "disabled"),
    "coupon_scope": ("cart", "product", "category", "customer"),
    "cart_status": ("active", "recovered", "expired", "converted"),
    "recovery_email_type": ("first_reminder", "second_reminder", "final_reminder", "discount_offer"),
    "recovery_email_status": ("pending", "sending", "sent", "failed", "opened", "clicked"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(op.get_bind(), checkfirst=True)

    # Coupons
    op.create_table(
        "coupons",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("discount_type", _enum("discount_type"), nullable=False),
        sa.Column("discount_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("min_order_value", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("max_discount_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", _enum("coupon_status"), nullable=False, server_default="active"),
        sa.Column("usage_limit", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("individual_use_only", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("exclude_sale_items", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("scope", _enum("coupon_scope"), nullable=False, server_default="cart"),
        sa.Column("product_ids", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("category_ids", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("customer_ids", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("buy_x_get_y", postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_coupons")),
    )
    op.create_index(op.f("ix_coupons_code"), "coupons", ["code"], unique=True)
    op.create_index("ix_coupons_status", "coupons", ["status"])
    op.create_index("ix_coupons_window", "coupons", ["start_date", "end_date"])

    # Coupon usage ledger
    op.create_table(
        "coupon_usages",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("coupon_id", sa.UUID(), nullable=True),
        sa.Column("coupon_code", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("order_id", sa.String(255), nullable=False),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["coupon_id"],
            ["coupons.id"],
            name=op.f("fk_coupon_usages_coupon_id_coupons"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_coupon_usages")),
    )
    op.create_index(op.f("ix_coupon_usages_coupon_id"), "coupon_usages", ["coupon_id"])
    op.create_index(op.f("ix_coupon_usages_user_id"), "coupon_usages", ["user_id"])
    op.create_index(op.f("ix_coupon_usages_order_id"), "coupon_usages", ["order_id"])

    # Abandoned carts
    op.create_table(
        "abandoned_carts",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("cart_items", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False),
        sa.Column("coupon_code", sa.String(64), nullable=True),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", _enum("cart_status"), nullable=False, server_default="active"),
        sa.Column("recovery_token", sa.String(64), nullable=False),
        sa.Column("recovery_url", sa.String(2048), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("recovered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("converted_order_id", sa.String(255), nullable=True),
        sa.Column("emails_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("emails_opened", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("emails_clicked", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_email_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("extra_data", postgresql.JSONB(), nullable=False, server_default="{}"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_abandoned_carts")),
    )
    op.create_index(op.f("ix_abandoned_carts_email"), "abandoned_carts", ["email"])
    op.create_index(op.f("ix_abandoned_carts_status"), "abandoned_carts", ["status"])
    op.create_index(
        op.f("ix_abandoned_carts_recovery_token"),
        "abandoned_carts",
        ["recovery_token"],
        unique=True,
    )
    op.create_index("ix_abandoned_carts_email_status", "abandoned_carts", ["email", "status"])
    op.create_index("ix_abandoned_carts_expires_at", "abandoned_carts", ["expires_at"])

    # Reminder records
    op.create_table(
        "recovery_emails",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("cart_id", sa.UUID(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("email_type", _enum("recovery_email_type"), nullable=False),
        sa.Column(
            "status",
            _enum("recovery_email_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("subject", sa.String(255), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clicked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("coupon_code", sa.String(64), nullable=True),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["cart_id"],
            ["abandoned_carts.id"],
            name=op.f("fk_recovery_emails_cart_id_abandoned_carts"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_recovery_emails")),
    )
    op.create_index(op.f("ix_recovery_emails_cart_id"), "recovery_emails", ["cart_id"])
    op.create_index(
        "ix_recovery_emails_status_scheduled",
        "recovery_emails",
        ["status", "scheduled_for"],
    )


def downgrade() -> None:
    op.drop_table("recovery_emails")
    op.drop_table("abandoned_carts")
    op.drop_table("coupon_usages")
    op.drop_table("coupons")

    for name in reversed(ENUMS):
        op.execute(f"DROP TYPE IF EXISTS {name}")
