# alembic/versions/20261001_initial_schema.py
"""initial schema: catalog, orders, custom orders, shipments

Revision ID: 20261001_initial_schema
Revises:
"""

import sqlalchemy as sa

from alembic import op

revision = "20261001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, length=32)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    ]


def _order_record_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.String(32), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("total", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False),
        sa.Column("shipping_address", sa.JSON, nullable=False),
        sa.Column("payment_method", _enum("payment_method", "razorpay", "cod", "upi"), nullable=False),
        sa.Column("gateway_order_id", sa.String(64)),
        sa.Column("gateway_payment_id", sa.String(64)),
        sa.Column("gateway_signature", sa.String(128)),
        sa.Column("payment_status", _enum("payment_status", "pending", "paid", "failed", "refunded"), nullable=False),
        sa.Column("paid_at", sa.DateTime),
        sa.Column(
            "refund_status",
            _enum("refund_status", "none", "requested", "processing", "completed", "failed"),
            nullable=False,
        ),
        sa.Column("refund_amount", sa.Numeric(12, 2)),
        sa.Column("refund_id", sa.String(64)),
        sa.Column("tracking_number", sa.String(64)),
        sa.Column("estimated_delivery", sa.DateTime),
        sa.Column("cancellation_reason", sa.Text),
        sa.Column("notes", sa.Text),
        *_timestamps(),
    ]


def _order_record_indexes(table: str) -> None:
    op.create_index(f"ix__{table}__user_id", table, ["user_id"])
    op.create_index(f"ix__{table}__gateway_order_id", table, ["gateway_order_id"])
    op.create_index(f"ix__{table}__gateway_payment_id", table, ["gateway_payment_id"])
    op.create_index(f"ix__{table}__status", table, ["status"])
    op.create_index(f"ix__{table}__created_at", table, ["created_at"])
    op.create_index(f"ix__{table}__user_id_created_at", table, ["user_id", "created_at"])


def upgrade():
    # ---- catalog
    op.create_table(
        "products",
        sa.Column("id", sa.Integer, nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("brand", sa.String(128)),
        sa.Column("model_name", sa.String(128)),
        sa.Column("image_url", sa.String(1024)),
        sa.Column("is_active", sa.Boolean, nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk__products"),
    )
    op.create_index("ix__products__created_at", "products", ["created_at"])

    op.create_table(
        "product_variants",
        sa.Column("id", sa.Integer, nullable=False),
        sa.Column("product_id", sa.Integer, nullable=False),
        sa.Column("sku", sa.String(255)),
        sa.Column("color", sa.String(64)),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("stock", sa.Integer, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk__product_variants"),
        sa.ForeignKeyConstraint(
            ["product_id"],
            ["products.id"],
            name="fk__product_variants__product_id__products",
            ondelete="CASCADE",
        ),
        sa.CheckConstraint("price >= 0", name="ck__product_variants__variant_price_non_negative"),
        sa.CheckConstraint("stock >= 0", name="ck__product_variants__variant_stock_non_negative"),
    )
    op.create_index("ix__product_variants__product_id", "product_variants", ["product_id"])
    op.create_index("ix__product_variants__sku", "product_variants", ["sku"])
    op.create_index("ix__product_variants__created_at", "product_variants", ["created_at"])

    # ---- standard orders
    op.create_table(
        "orders",
        *_order_record_columns(),
        sa.Column(
            "status",
            _enum("order_status", "pending", "confirmed", "processing", "shipped", "delivered", "cancelled"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id", name="pk__orders"),
        sa.CheckConstraint("total >= 0", name="ck__orders__order_total_non_negative"),
    )
    _order_record_indexes("orders")

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("order_id", sa.String(32), nullable=False),
        sa.Column("position", sa.Integer, nullable=False),
        sa.Column("ref_kind", _enum("item_ref_kind", "catalog", "custom"), nullable=False),
        sa.Column("product_id", sa.Integer),
        sa.Column("variant_id", sa.Integer),
        sa.Column("custom_tag", sa.String(128)),
        sa.Column("title", sa.String(255)),
        sa.Column("brand", sa.String(128)),
        sa.Column("model_name", sa.String(128)),
        sa.Column("color", sa.String(64)),
        sa.Column("sku", sa.String(255)),
        sa.Column("image_url", sa.String(1024)),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("quantity", sa.Integer, nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk__order_items"),
        sa.ForeignKeyConstraint(
            ["order_id"], ["orders.id"], name="fk__order_items__order_id__orders", ondelete="CASCADE"
        ),
        sa.CheckConstraint("quantity >= 1", name="ck__order_items__item_quantity_positive"),
        sa.CheckConstraint("unit_price >= 0", name="ck__order_items__item_price_non_negative"),
        sa.CheckConstraint(
            "(ref_kind = 'catalog' AND product_id IS NOT NULL AND variant_id IS NOT NULL)"
            " OR (ref_kind = 'custom' AND custom_tag IS NOT NULL)",
            name="ck__order_items__item_ref_consistent",
        ),
    )
    op.create_index("ix__order_items__order_id", "order_items", ["order_id"])

    # ---- custom orders
    op.create_table(
        "custom_orders",
        *_order_record_columns(),
        sa.Column(
            "status",
            _enum(
                "custom_order_status", "pending", "approved", "rejected", "in_production", "shipped", "delivered"
            ),
            nullable=False,
        ),
        sa.Column("product_id", sa.Integer),
        sa.Column("variant_sku", sa.String(255)),
        sa.Column("variant_color", sa.String(64)),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("quantity", sa.Integer, nullable=False),
        sa.Column("mockup_url", sa.String(1024), nullable=False),
        sa.Column("instructions", sa.String(500)),
        sa.Column("design_data", sa.JSON),
        sa.Column("model_name", sa.String(128)),
        sa.Column("admin_notes", sa.String(500)),
        sa.Column("rejection_reason", sa.Text),
        sa.PrimaryKeyConstraint("id", name="pk__custom_orders"),
        sa.ForeignKeyConstraint(
            ["product_id"], ["products.id"], name="fk__custom_orders__product_id__products", ondelete="SET NULL"
        ),
        sa.CheckConstraint("total >= 0", name="ck__custom_orders__custom_total_non_negative"),
        sa.CheckConstraint("unit_price >= 0", name="ck__custom_orders__custom_price_non_negative"),
        sa.CheckConstraint("quantity >= 1", name="ck__custom_orders__custom_quantity_positive"),
    )
    _order_record_indexes("custom_orders")

    # ---- shipments
    op.create_table(
        "shipments",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("order_kind", _enum("order_kind", "standard", "custom"), nullable=False),
        sa.Column("order_id", sa.String(32), nullable=False),
        sa.Column(
            "state",
            _enum("shipment_state", "creating", "created", "awb_assigned", "pickup_requested", "cancelled"),
            nullable=False,
        ),
        sa.Column("shipment_id", sa.String(64)),
        sa.Column("carrier_order_id", sa.String(64)),
        sa.Column("awb_code", sa.String(64)),
        sa.Column("courier_id", sa.String(32)),
        sa.Column("courier_name", sa.String(128)),
        sa.Column("status", sa.String(64)),
        sa.Column("status_code", sa.Integer),
        sa.Column("current_status", sa.String(64)),
        sa.Column("pickup_status", sa.String(64)),
        sa.Column("pickup_scheduled_at", sa.DateTime),
        sa.Column("label_url", sa.String(1024)),
        sa.Column("manifest_url", sa.String(1024)),
        sa.Column("on_hold_reason", sa.Text),
        sa.Column("rto_reason", sa.Text),
        sa.Column("expected_delivery", sa.DateTime),
        sa.Column("tracking_events", sa.JSON, nullable=False),
        sa.Column("last_synced_at", sa.DateTime),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk__shipments"),
        sa.UniqueConstraint("order_kind", "order_id", name="uq__shipments__order_kind_order_id"),
        sa.UniqueConstraint("shipment_id", name="uq__shipments__shipment_id"),
        sa.CheckConstraint(
            "awb_code IS NULL OR shipment_id IS NOT NULL", name="ck__shipments__awb_requires_shipment"
        ),
    )
    op.create_index("ix__shipments__awb_code", "shipments", ["awb_code"])
    op.create_index("ix__shipments__created_at", "shipments", ["created_at"])


def downgrade():
    op.drop_table("shipments")
    op.drop_table("custom_orders")
    op.drop_table("order_items")
    op.drop_table("orders")
    op.drop_table("product_variants")
    op.drop_table("products")
