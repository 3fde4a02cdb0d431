"""Create subscription billing tables

Revision ID: 20251018_subscription_billing
Revises:
Create Date: 2025-10-18 09:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20251018_subscription_billing"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSONB = postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("receiver_id", sa.String(64)),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("delivery_zone", sa.String(64), nullable=False),
        sa.Column("payment_token", sa.String(255)),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index("ix_subscriptions_tenant_id", "subscriptions", ["tenant_id"])
    op.create_index("ix_subscriptions_tenant_status", "subscriptions", ["tenant_id", "status"])

    op.create_table(
        "frequencies",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False),
        sa.Column("unit", sa.String(8), nullable=False),
        sa.UniqueConstraint("tenant_id", "count", "unit", name="uq_frequencies_tenant_count_unit"),
        sa.CheckConstraint("count > 0", name="ck_frequencies_count_positive"),
    )

    op.create_table(
        "recipe_items",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("product_id", sa.String(64), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("frequency_id", sa.String(36), sa.ForeignKey("frequencies.id"), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint("quantity > 0", name="ck_recipe_items_quantity_positive"),
    )
    op.create_index("ix_recipe_items_subscription_id", "recipe_items", ["subscription_id"])

    op.create_table(
        "fulfillment_cursors",
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), primary_key=True),
        sa.Column("product_id", sa.String(64), primary_key=True),
        sa.Column("fulfilled_until", sa.Date(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("fulfilled_until", sa.Date(), nullable=False),
        sa.Column("recipe_snapshot", JSONB, nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index("ix_orders_subscription_id", "orders", ["subscription_id"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("recipe_item_id", sa.String(36), nullable=False),
        sa.Column("product_id", sa.String(64), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    op.create_table(
        "deliveries",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id"), nullable=False, unique=True),
        sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("delivery_date", sa.Date(), nullable=False),
        sa.Column("delivered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("packed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cancelled", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_deliveries_tenant_date", "deliveries", ["tenant_id", "delivery_date"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id"), nullable=False, unique=True),
        sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("line_items", JSONB, nullable=False),
        sa.Column("settling_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_attempt", sa.TIMESTAMP(timezone=True)),
        sa.Column("last_response", JSONB),
        sa.Column("error_code", sa.String(64)),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index("ix_payments_tenant_status", "payments", ["tenant_id", "status"])

    op.create_table(
        "subscription_milestones",
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), primary_key=True),
        sa.Column("status", sa.String(16), primary_key=True),
        sa.Column("reached_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )

    op.create_table(
        "event_outbox",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("schema_version", sa.String(16), nullable=False),
        sa.Column("idempotency_key", sa.String(128), unique=True),
        sa.Column("trace_id", sa.String(64)),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index("ix_event_outbox_status_created", "event_outbox", ["status", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_event_outbox_status_created", table_name="event_outbox")
    op.drop_table("event_outbox")
    op.drop_table("subscription_milestones")
    op.drop_index("ix_payments_tenant_status", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_deliveries_tenant_date", table_name="deliveries")
    op.drop_table("deliveries")
    op.drop_index("ix_order_items_order_id", table_name="order_items")
    op.drop_table("order_items")
    op.drop_index("ix_orders_subscription_id", table_name="orders")
    op.drop_table("orders")
    op.drop_table("fulfillment_cursors")
    op.drop_index("ix_recipe_items_subscription_id", table_name="recipe_items")
    op.drop_table("recipe_items")
    op.drop_table("frequencies")
    op.drop_index("ix_subscriptions_tenant_status", table_name="subscriptions")
    op.drop_index("ix_subscriptions_tenant_id", table_name="subscriptions")
    op.drop_table("subscriptions")
