"""order lifecycle core

Revision ID: c4d1e8a0b7f3
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "c4d1e8a0b7f3"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def _index_exists(bind, table_name: str, index_name: str) -> bool:
    try:
        rows = sa.inspect(bind).get_indexes(table_name)
        return any((r.get("name") or "") == index_name for r in rows)
    except Exception:
        return False


def _create_index(bind, name: str, table_name: str, columns: list[str], *, unique: bool = False) -> None:
    if not _index_exists(bind, table_name, name):
        op.create_index(name, table_name, columns, unique=unique)


def _create_listings(bind):
    if _table_exists(bind, "listings"):
        return
    op.create_table(
        "listings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("seller_id", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="active"),
        sa.Column("condition", sa.String(length=24), nullable=True),
        sa.Column("campus_location", sa.String(length=100), nullable=True),
        sa.Column("price_cents", sa.Integer(), nullable=True),
        sa.Column("is_rental", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("rental_day_price_cents", sa.Integer(), nullable=True),
        sa.Column("rental_deposit_cents", sa.Integer(), nullable=True),
        sa.Column("rental_min_days", sa.Integer(), nullable=True),
        sa.Column("rental_max_days", sa.Integer(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("delivery_methods_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    _create_index(bind, "ix_listings_seller_id", "listings", ["seller_id"])
    _create_index(bind, "ix_listings_status", "listings", ["status"])


def _create_orders(bind):
    if _table_exists(bind, "orders"):
        return
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("buyer_id", sa.String(length=64), nullable=False),
        sa.Column("seller_id", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=8), nullable=False, server_default="buy"),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("rental_days", sa.Integer(), nullable=True),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deposit_cents", sa.Integer(), nullable=True),
        sa.Column("fees_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="usd"),
        sa.Column("state", sa.String(length=32), nullable=False, server_default="initiated"),
        sa.Column("delivery_method", sa.String(length=32), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("delivery_proof_path", sa.String(length=1024), nullable=True),
        sa.Column("delivery_notes", sa.Text(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("auto_release_at", sa.DateTime(), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("cancel_reason", sa.String(length=240), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("updated_by", sa.String(length=64), nullable=True),
        sa.UniqueConstraint("stripe_payment_intent_id", name="uq_orders_stripe_payment_intent_id"),
    )
    _create_index(bind, "ix_orders_listing_id", "orders", ["listing_id"])
    _create_index(bind, "ix_orders_buyer_id", "orders", ["buyer_id"])
    _create_index(bind, "ix_orders_seller_id", "orders", ["seller_id"])
    _create_index(bind, "ix_orders_state", "orders", ["state"])
    _create_index(bind, "ix_orders_auto_release_due", "orders", ["state", "auto_release_at"])
    _create_index(bind, "ix_orders_listing_buyer", "orders", ["listing_id", "buyer_id"])


def _create_order_events(bind):
    if _table_exists(bind, "order_events"):
        return
    op.create_table(
        "order_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("type", sa.String(length=48), nullable=False),
        sa.Column("actor", sa.String(length=64), nullable=False, server_default="system"),
        sa.Column("from_state", sa.String(length=32), nullable=True),
        sa.Column("to_state", sa.String(length=32), nullable=True),
        sa.Column("data_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    _create_index(bind, "ix_order_events_order_id", "order_events", ["order_id"])
    _create_index(bind, "ix_order_events_type", "order_events", ["type"])
    _create_index(bind, "ix_order_events_created_at", "order_events", ["created_at"])


def _create_threads(bind):
    if _table_exists(bind, "threads"):
        return
    op.create_table(
        "threads",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("buyer_id", sa.String(length=64), nullable=False),
        sa.Column("seller_id", sa.String(length=64), nullable=False),
        sa.Column("is_anonymous", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    _create_index(bind, "ix_threads_order_id", "threads", ["order_id"], unique=True)
    _create_index(bind, "ix_threads_buyer_id", "threads", ["buyer_id"])
    _create_index(bind, "ix_threads_seller_id", "threads", ["seller_id"])


def _create_job_runs(bind):
    if _table_exists(bind, "job_runs"):
        return
    op.create_table(
        "job_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_name", sa.String(length=64), nullable=False),
        sa.Column("ran_at", sa.DateTime(), nullable=False),
        sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
    )
    _create_index(bind, "ix_job_runs_job_name", "job_runs", ["job_name"])
    _create_index(bind, "ix_job_runs_ran_at", "job_runs", ["ran_at"])
    _create_index(bind, "ix_job_runs_ok", "job_runs", ["ok"])


def upgrade():
    bind = op.get_bind()
    _create_listings(bind)
    _create_orders(bind)
    _create_order_events(bind)
    _create_threads(bind)
    _create_job_runs(bind)


def downgrade():
    bind = op.get_bind()
    for table_name in ("job_runs", "threads", "order_events", "orders", "listings"):
        if _table_exists(bind, table_name):
            op.drop_table(table_name)
