"""Booking engine schema

Revision ID: 0001_booking_engine
Revises:
Create Date: 2026-10-19

Guests, hotels, bookings, the per-night inventory ledger, notifications
and the payment webhook event log.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = '0001_booking_engine'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "guests",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=True),
    )

    op.create_table(
        "hotels",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("total_rooms", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, nullable=True),
    )

    op.create_table(
        "bookings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("guests.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("hotel_id", sa.String(36), sa.ForeignKey("hotels.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("check_in_date", sa.Date, nullable=False),
        sa.Column("check_out_date", sa.Date, nullable=False),
        sa.Column("room_type", sa.String(50), nullable=False),
        sa.Column("room_quantity", sa.Integer, nullable=False, server_default="1"),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("payment_option", sa.String(20), nullable=False, server_default="pay_later"),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="Pending"),
        sa.Column("payment_intent_id", sa.String(255), nullable=True),
        sa.Column("payment_client_secret", sa.String(255), nullable=True),
        sa.Column("refund_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="Active"),
        sa.Column("cancelled_at", sa.DateTime, nullable=True),
        sa.Column("cancelled_by", sa.String(20), nullable=True),
        sa.Column("cancellation_reason", sa.Text, nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime, nullable=True),
        sa.Column("updated_at", sa.DateTime, nullable=True),
    )
    op.create_index("ix_bookings_user_created", "bookings", ["user_id", "created_at"])
    op.create_index("ix_bookings_hotel_created", "bookings", ["hotel_id", "created_at"])
    op.create_index("ix_bookings_payment_intent", "bookings", ["payment_intent_id"])

    op.create_table(
        "inventory_ledger",
        sa.Column("hotel_id", sa.String(36), sa.ForeignKey("hotels.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("stay_date", sa.Date, primary_key=True),
        sa.Column("rooms_committed", sa.Integer, nullable=False, server_default="0"),
        sa.CheckConstraint("rooms_committed >= 0", name="ck_inventory_ledger_non_negative"),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("recipient_id", sa.String(36), nullable=False),
        sa.Column("recipient_role", sa.String(20), nullable=False, server_default="user"),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("is_read", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("read_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("ix_notifications_recipient_id", "notifications", ["recipient_id"])
    op.create_index("ix_notifications_type", "notifications", ["type"])
    op.create_index("ix_notifications_is_read", "notifications", ["is_read"])
    op.create_index("ix_notifications_created_at", "notifications", ["created_at"])
    op.create_index("ix_notifications_recipient_read", "notifications", ["recipient_id", "is_read"])

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("provider", sa.String(50), nullable=False, server_default="stripe"),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=True),
        sa.Column("payload_hash", sa.String(64), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="received"),
        sa.Column("result_action", sa.String(50), nullable=True),
        sa.Column("booking_id", sa.String(36), nullable=True),
        sa.Column("refund_id", sa.String(255), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("received_at", sa.DateTime, nullable=True),
        sa.Column("processed_at", sa.DateTime, nullable=True),
        sa.UniqueConstraint("provider", "event_id", name="uq_webhook_event_provider_event_id"),
    )
    op.create_index("ix_webhook_event_status", "webhook_events", ["status", "received_at"])


def downgrade() -> None:
    op.drop_table("webhook_events")
    op.drop_table("notifications")
    op.drop_table("inventory_ledger")
    op.drop_table("bookings")
    op.drop_table("hotels")
    op.drop_table("guests")
