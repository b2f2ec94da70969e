"""initial

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "bots",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("token", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=16), server_default="inactive", nullable=False),
        sa.Column("use_webhooks", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("webhook_url", sa.String(length=512), nullable=True),
        sa.Column("allowed_groups", sa.JSON(), nullable=False),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "app_settings",
        sa.Column("key", sa.String(length=128), primary_key=True),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "promo_codes",
        sa.Column("code", sa.String(length=64), primary_key=True),
        sa.Column("discount_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("used_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("bot_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=32), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", sa.String(length=16), server_default="pending", nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("external_tx_id", sa.String(length=128), nullable=False),
        sa.Column("promo_code", sa.String(length=64), nullable=True),
        sa.Column("player_id", sa.String(length=32), nullable=True),
        sa.Column("chat_id", sa.BigInteger(), nullable=True),
        sa.Column("payment_message_id", sa.Integer(), nullable=True),
        sa.Column("nick", sa.String(length=128), nullable=True),
        sa.Column("delivery_response", sa.JSON(), nullable=True),
        sa.Column("delivery_attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("external_tx_id", name="uq_orders_external_tx_id"),
    )
    op.create_index("ix_orders_bot_id", "orders", ["bot_id"])
    op.create_index("ix_orders_user_id", "orders", ["user_id"])
    op.create_index("ix_orders_status", "orders", ["status"])

    op.create_table(
        "chat_sessions",
        sa.Column("bot_id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=32), primary_key=True),
        sa.Column("step", sa.String(length=32), server_default="START", nullable=False),
        sa.Column("player_id", sa.String(length=32), nullable=True),
        sa.Column("promo_code", sa.String(length=64), nullable=True),
        sa.Column("pending_tx_id", sa.String(length=128), nullable=True),
        sa.Column("pix_code", sa.String(length=512), nullable=True),
        sa.Column("chat_id", sa.BigInteger(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "bot_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("bot_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=32), nullable=True),
        sa.Column("chat_id", sa.String(length=32), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("level", sa.String(length=16), server_default="info", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_bot_logs_bot_id", "bot_logs", ["bot_id"])
    op.create_index("ix_bot_logs_created_at", "bot_logs", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_bot_logs_created_at", table_name="bot_logs")
    op.drop_index("ix_bot_logs_bot_id", table_name="bot_logs")
    op.drop_table("bot_logs")
    op.drop_table("chat_sessions")
    op.drop_index("ix_orders_status", table_name="orders")
    op.drop_index("ix_orders_user_id", table_name="orders")
    op.drop_index("ix_orders_bot_id", table_name="orders")
    op.drop_table("orders")
    op.drop_table("promo_codes")
    op.drop_table("app_settings")
    op.drop_table("bots")
