"""initial orders schema

Revision ID: 0001_orders
Revises:
Create Date: 2026-10-05
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_orders"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("access_token", sa.String(), nullable=False),
        sa.Column("customer_email", sa.String(), nullable=False),
        sa.Column("customer_first_name", sa.String(), nullable=False),
        sa.Column("customer_last_name", sa.String(), nullable=False),
        sa.Column("customer_phone", sa.String(), nullable=False),
        sa.Column("shipping_country", sa.String(), nullable=False),
        sa.Column("shipping_state", sa.String(), nullable=True),
        sa.Column("shipping_city", sa.String(), nullable=False),
        sa.Column("shipping_address_1", sa.String(), nullable=False),
        sa.Column("shipping_address_2", sa.String(), nullable=True),
        sa.Column("shipping_postal_code", sa.String(), nullable=False),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False),
        sa.Column("discount", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("shipping", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("total", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="EUR"),
        sa.Column("payment_method", sa.String(), nullable=False),
        sa.Column("promo_code", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("geo_country", sa.String(), nullable=True),
        sa.Column("geo_city", sa.String(), nullable=True),
        sa.Column("geo_region", sa.String(), nullable=True),
        sa.Column("ga_client_id", sa.String(), nullable=True),
        sa.Column("gclid", sa.String(), nullable=True),
        sa.Column("utm_source", sa.String(), nullable=True),
        sa.Column("utm_medium", sa.String(), nullable=True),
        sa.Column("utm_campaign", sa.String(), nullable=True),
        sa.Column("hashed_email", sa.String(length=64), nullable=True),
        sa.Column("hashed_phone", sa.String(length=64), nullable=True),
        sa.Column("payment_status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_gateway", sa.String(), nullable=True),
        sa.Column("gateway_payment_id", sa.String(), nullable=True),
        sa.Column("payment_url", sa.String(), nullable=True),
        sa.Column("payment_proof", sa.String(), nullable=True),
        sa.Column("courier", sa.String(), nullable=True),
        sa.Column("tracking_number", sa.String(), nullable=True),
        sa.Column("tracking_url", sa.String(), nullable=True),
        sa.Column("status_version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_orders_access_token", "orders", ["access_token"], unique=True)
    op.create_index("ix_orders_customer_email", "orders", ["customer_email"])
    op.create_index("ix_orders_payment_method", "orders", ["payment_method"])
    op.create_index("ix_orders_payment_status", "orders", ["payment_status"])
    op.create_index("ix_orders_payment_gateway", "orders", ["payment_gateway"])
    op.create_index("ix_orders_gateway_payment_id", "orders", ["gateway_payment_id"])
    op.create_index("ix_orders_created_at", "orders", ["created_at"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("order_id", sa.String(length=32), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("product_name", sa.String(), nullable=False),
        sa.Column("product_slug", sa.String(), nullable=True),
        sa.Column("product_image", sa.String(), nullable=True),
        sa.Column("brand", sa.String(), nullable=True),
        sa.Column("sku", sa.String(), nullable=True),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("options", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    op.create_table(
        "order_statuses",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("order_id", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("location", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("actor", sa.String(), nullable=False, server_default="operator"),
        sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("hashed_email", sa.String(length=64), nullable=True),
        sa.Column("hashed_phone", sa.String(length=64), nullable=True),
        sa.Column("gclid", sa.String(), nullable=True),
        sa.Column("conversion_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_order_statuses_order_id", "order_statuses", ["order_id"])
    op.create_index("ix_order_statuses_status", "order_statuses", ["status"])
    op.create_index("ix_order_statuses_created_at", "order_statuses", ["created_at"])
    # At most one current record per order.
    op.create_index(
        "uq_order_statuses_current",
        "order_statuses",
        ["order_id"],
        unique=True,
        postgresql_where=sa.text("is_current"),
    )

    op.create_table(
        "promo_codes",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("discount", sa.Integer(), nullable=False),
        sa.Column("manager_name", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("used_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("discount BETWEEN 1 AND 100", name="ck_promo_codes_discount"),
    )
    op.create_index("ix_promo_codes_code", "promo_codes", ["code"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_promo_codes_code", table_name="promo_codes")
    op.drop_table("promo_codes")
    op.drop_index("uq_order_statuses_current", table_name="order_statuses")
    op.drop_index("ix_order_statuses_created_at", table_name="order_statuses")
    op.drop_index("ix_order_statuses_status", table_name="order_statuses")
    op.drop_index("ix_order_statuses_order_id", table_name="order_statuses")
    op.drop_table("order_statuses")
    op.drop_index("ix_order_items_order_id", table_name="order_items")
    op.drop_table("order_items")
    for name in (
        "ix_orders_created_at",
        "ix_orders_gateway_payment_id",
        "ix_orders_payment_gateway",
        "ix_orders_payment_status",
        "ix_orders_payment_method",
        "ix_orders_customer_email",
        "ix_orders_access_token",
    ):
        op.drop_index(name, table_name="orders")
    op.drop_table("orders")
