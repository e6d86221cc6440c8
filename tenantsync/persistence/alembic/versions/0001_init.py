"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-17 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _synced_at() -> sa.Column:
    return sa.Column("synced_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "progress_checkpoints",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("model_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="idle"),
        sa.Column("cursor", sa.String(), nullable=True),
        sa.Column("rows_read", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_committed_key", sa.String(), nullable=True),
        sa.Column("generation", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("window_start", sa.Date(), nullable=True),
        sa.Column("window_end", sa.Date(), nullable=True),
        sa.Column("run_id", sa.String(), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("batches_committed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rows_written", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("rows_skipped", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "source", "model_type", name="uq_progress_checkpoints_scope"),
    )
    op.create_index("ix_progress_checkpoints_tenant_id", "progress_checkpoints", ["tenant_id"])

    # Persisted natural-key index for idempotent re-runs.
    op.create_table(
        "backfill_committed_keys",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("source", sa.String(), primary_key=True),
        sa.Column("model_type", sa.String(), primary_key=True),
        sa.Column("natural_key", sa.String(), primary_key=True),
        sa.Column("row_hash", sa.String(), nullable=False),
        sa.Column("generation", sa.Integer(), nullable=False),
        sa.Column("committed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "key_mappings",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("external_key", sa.String(), nullable=False),
        sa.Column("internal_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "kind", "external_key", name="uq_key_mappings_external"),
    )
    op.create_index("ix_key_mappings_tenant_id", "key_mappings", ["tenant_id"])

    op.create_table(
        "family_codes",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("fc_code", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "fc_code", name="uq_family_codes_code"),
    )
    op.create_index("ix_family_codes_tenant_id", "family_codes", ["tenant_id"])

    op.create_table(
        "stores",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("store_code", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "store_code", name="uq_stores_code"),
    )
    op.create_index("ix_stores_tenant_id", "stores", ["tenant_id"])

    op.create_table(
        "current_positions",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("store_id", sa.String(), primary_key=True),
        sa.Column("family_id", sa.String(), primary_key=True),
        sa.Column("quantity", sa.Float(), nullable=False, server_default="0"),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("old_value_json", postgresql.JSONB(), nullable=True),
        sa.Column("new_value_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])

    op.create_table(
        "customers",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("natural_key", sa.String(), nullable=False),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("address", sa.String(), nullable=True),
        sa.Column("province", sa.String(), nullable=True),
        sa.Column("lifetime_value", sa.Float(), nullable=True),
        sa.Column("tags", sa.String(), nullable=True),
        sa.Column("source_created_at", sa.DateTime(timezone=True), nullable=True),
        _synced_at(),
        sa.UniqueConstraint("tenant_id", "source", "natural_key", name="uq_customers_natural_key"),
    )
    op.create_index("ix_customers_tenant_id", "customers", ["tenant_id"])
    op.create_index("ix_customers_phone", "customers", ["phone"])

    op.create_table(
        "products",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("natural_key", sa.String(), nullable=False),
        sa.Column("sku", sa.String(), nullable=False),
        sa.Column("barcode", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("brand", sa.String(), nullable=True),
        sa.Column("unit", sa.String(), nullable=True),
        sa.Column("cost_price", sa.Float(), nullable=True),
        sa.Column("sell_price", sa.Float(), nullable=True),
        sa.Column("family_id", sa.String(), nullable=True),
        _synced_at(),
        sa.UniqueConstraint("tenant_id", "source", "natural_key", name="uq_products_natural_key"),
    )
    op.create_index("ix_products_tenant_id", "products", ["tenant_id"])
    op.create_index("ix_products_family_id", "products", ["family_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("natural_key", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=True),
        sa.Column("customer_name", sa.String(), nullable=True),
        sa.Column("customer_phone", sa.String(), nullable=True),
        sa.Column("store_id", sa.String(), nullable=True),
        sa.Column("gross_revenue", sa.Float(), nullable=True),
        sa.Column("net_revenue", sa.Float(), nullable=True),
        sa.Column("discount", sa.Float(), nullable=True),
        sa.Column("payment_method", sa.String(), nullable=True),
        sa.Column("ordered_at", sa.DateTime(timezone=True), nullable=True),
        _synced_at(),
        sa.UniqueConstraint("tenant_id", "source", "natural_key", name="uq_orders_natural_key"),
    )
    op.create_index("ix_orders_tenant_id", "orders", ["tenant_id"])
    op.create_index("ix_orders_tenant_ordered_at", "orders", ["tenant_id", "ordered_at"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("natural_key", sa.String(), nullable=False),
        sa.Column("order_key", sa.String(), nullable=False),
        sa.Column("sku", sa.String(), nullable=True),
        sa.Column("family_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("quantity", sa.Float(), nullable=False, server_default="0"),
        sa.Column("unit_price", sa.Float(), nullable=True),
        sa.Column("discount", sa.Float(), nullable=True),
        sa.Column("line_total", sa.Float(), nullable=True),
        _synced_at(),
        sa.UniqueConstraint("tenant_id", "source", "natural_key", name="uq_order_items_natural_key"),
    )
    op.create_index("ix_order_items_tenant_id", "order_items", ["tenant_id"])
    op.create_index("ix_order_items_order_key", "order_items", ["order_key"])


def downgrade() -> None:
    for table, indexes in (
        ("order_items", ["ix_order_items_order_key", "ix_order_items_tenant_id"]),
        ("orders", ["ix_orders_tenant_ordered_at", "ix_orders_tenant_id"]),
        ("products", ["ix_products_family_id", "ix_products_tenant_id"]),
        ("customers", ["ix_customers_phone", "ix_customers_tenant_id"]),
        (
            "audit_events",
            [
                "ix_audit_events_request_id",
                "ix_audit_events_tenant_id",
                "ix_audit_events_event_type",
                "ix_audit_events_occurred_at",
            ],
        ),
        ("current_positions", []),
        ("stores", ["ix_stores_tenant_id"]),
        ("family_codes", ["ix_family_codes_tenant_id"]),
        ("key_mappings", ["ix_key_mappings_tenant_id"]),
        ("backfill_committed_keys", []),
        ("progress_checkpoints", ["ix_progress_checkpoints_tenant_id"]),
    ):
        for index in indexes:
            op.drop_index(index, table_name=table)
        op.drop_table(table)
