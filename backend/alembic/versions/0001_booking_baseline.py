"""Baseline schema for calls, appointments and leads."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision = "0001_booking_baseline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    inspector = inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "calls" not in existing_tables:
        op.create_table(
            "calls",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("vapi_call_id", sa.String(), nullable=False),
            sa.Column("assistant_id", sa.String(), nullable=True),
            sa.Column("phone_number", sa.String(), nullable=True),
            sa.Column("customer_name", sa.String(), nullable=True),
            sa.Column("practice_name", sa.String(), nullable=True),
            sa.Column("status", sa.String(), nullable=False, server_default="in-progress"),
            sa.Column("transcript", sa.Text(), nullable=True),
            sa.Column("recording_url", sa.String(), nullable=True),
            sa.Column("cost", sa.Numeric(10, 4), nullable=False, server_default="0"),
            sa.Column("duration", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("outcome", sa.Text(), nullable=True),
            sa.Column("callback_requested", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index("ix_calls_vapi_call_id", "calls", ["vapi_call_id"], unique=True)
        op.create_index("ix_calls_phone_number", "calls", ["phone_number"])
        op.create_index("ix_calls_created_at", "calls", ["created_at"])

    if "appointments" not in existing_tables:
        op.create_table(
            "appointments",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("call_id", sa.String(), nullable=True),
            sa.Column("customer_name", sa.String(), nullable=False),
            sa.Column("phone", sa.String(), nullable=False),
            sa.Column("email", sa.String(), nullable=False),
            sa.Column("practice_name", sa.String(), nullable=True),
            sa.Column("appointment_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("calendar_event_id", sa.String(), nullable=False),
            sa.Column("calendar_link", sa.String(), nullable=True),
            sa.Column("status", sa.String(), nullable=False, server_default="confirmed"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index("ix_appointments_call_id", "appointments", ["call_id"])
        op.create_index("ix_appointments_phone", "appointments", ["phone"])
        op.create_index(
            "ix_appointments_appointment_time", "appointments", ["appointment_time"]
        )
        op.create_index(
            "ix_appointments_calendar_event_id",
            "appointments",
            ["calendar_event_id"],
            unique=True,
        )
        op.create_index("ix_appointments_created_at", "appointments", ["created_at"])

    if "leads" not in existing_tables:
        op.create_table(
            "leads",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("phone", sa.String(), nullable=False),
            sa.Column("email", sa.String(), nullable=True),
            sa.Column("name", sa.String(), nullable=True),
            sa.Column("practice_name", sa.String(), nullable=True),
            sa.Column("address", sa.String(), nullable=True),
            sa.Column("city", sa.String(), nullable=True),
            sa.Column("status", sa.String(), nullable=False, server_default="contacted"),
            sa.Column("source", sa.String(), nullable=False, server_default="vapi_call"),
            sa.Column("contact_count", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("last_contacted", sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index("ix_leads_phone", "leads", ["phone"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_leads_phone", table_name="leads")
    op.drop_table("leads")
    for name in (
        "ix_appointments_created_at",
        "ix_appointments_calendar_event_id",
        "ix_appointments_appointment_time",
        "ix_appointments_phone",
        "ix_appointments_call_id",
    ):
        op.drop_index(name, table_name="appointments")
    op.drop_table("appointments")
    for name in ("ix_calls_created_at", "ix_calls_phone_number", "ix_calls_vapi_call_id"):
        op.drop_index(name, table_name="calls")
    op.drop_table("calls")
