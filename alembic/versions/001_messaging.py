"""Messaging and reminder schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "clinics",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(32)),
        sa.Column("address", sa.Text()),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        "patients",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("clinic_id", sa.Integer(), sa.ForeignKey("clinics.id"), nullable=False, index=True),
        sa.Column("first_name", sa.String(128), nullable=False),
        sa.Column("last_name", sa.String(128), nullable=False, server_default=""),
        sa.Column("email", sa.String(255)),
        sa.Column("phone", sa.String(32), index=True),
        sa.Column("device_token", sa.Text()),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        "practitioners",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("clinic_id", sa.Integer(), sa.ForeignKey("clinics.id"), nullable=False, index=True),
        sa.Column("first_name", sa.String(128), nullable=False),
        sa.Column("last_name", sa.String(128), nullable=False),
    )
    op.create_table(
        "appointment_types",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("clinic_id", sa.Integer(), sa.ForeignKey("clinics.id"), nullable=False, index=True),
        sa.Column("name", sa.String(128), nullable=False),
    )
    op.create_table(
        "appointments",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("clinic_id", sa.Integer(), sa.ForeignKey("clinics.id"), nullable=False, index=True),
        sa.Column("patient_id", sa.Integer(), sa.ForeignKey("patients.id"), nullable=False, index=True),
        sa.Column("practitioner_id", sa.Integer(), sa.ForeignKey("practitioners.id")),
        sa.Column("appointment_type_id", sa.Integer(), sa.ForeignKey("appointment_types.id")),
        sa.Column("start_time", sa.DateTime(), nullable=False),
        sa.Column("duration", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("status", sa.String(32), nullable=False, server_default="SCHEDULED"),
        sa.Column("confirmation_status", sa.String(32), nullable=False, server_default="UNCONFIRMED"),
        sa.Column("confirmed_at", sa.DateTime()),
        sa.Column("confirmed_by", sa.String(64)),
        sa.Column("cancelled_at", sa.DateTime()),
        sa.Column("cancellation_reason", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_appointments_clinic_start", "appointments", ["clinic_id", "start_time"])
    op.create_table(
        "message_templates",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("clinic_id", sa.Integer(), sa.ForeignKey("clinics.id"), nullable=False, index=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("sms_body", sa.Text()),
        sa.Column("email_subject", sa.String(255)),
        sa.Column("email_body", sa.Text()),
        sa.Column("email_html_body", sa.Text()),
        sa.Column("push_title", sa.String(255)),
        sa.Column("push_body", sa.Text()),
        sa.Column("in_app_title", sa.String(255)),
        sa.Column("in_app_body", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("clinic_id", sa.Integer(), sa.ForeignKey("clinics.id"), nullable=False, index=True),
        sa.Column("patient_id", sa.Integer(), sa.ForeignKey("patients.id"), index=True),
        sa.Column("template_id", sa.Integer(), sa.ForeignKey("message_templates.id")),
        sa.Column("channel", sa.String(16), nullable=False),
        sa.Column("direction", sa.String(16), nullable=False, server_default="OUTBOUND"),
        sa.Column("subject", sa.String(255)),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("html_body", sa.Text()),
        sa.Column("to_address", sa.String(512)),
        sa.Column("from_address", sa.String(255)),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("scheduled_at", sa.DateTime()),
        sa.Column("sent_at", sa.DateTime()),
        sa.Column("delivered_at", sa.DateTime()),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text()),
        sa.Column("tags", postgresql.JSONB()),
        sa.Column("conversation_id", sa.String(64), index=True),
        sa.Column("related_type", sa.String(64)),
        sa.Column("related_id", sa.Integer()),
        sa.Column("created_by", sa.String(64)),
        sa.Column("metadata_json", postgresql.JSONB()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_messages_status_scheduled", "messages", ["status", "scheduled_at"])
    op.create_index("ix_messages_patient_channel_created", "messages", ["patient_id", "channel", "created_at"])
    op.create_table(
        "message_deliveries",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("message_id", sa.Integer(), sa.ForeignKey("messages.id"), nullable=False, index=True),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("provider_message_id", sa.String(255), index=True),
        sa.Column("sent_at", sa.DateTime()),
        sa.Column("delivered_at", sa.DateTime()),
        sa.Column("opened_at", sa.DateTime()),
        sa.Column("clicked_at", sa.DateTime()),
        sa.Column("bounced_at", sa.DateTime()),
        sa.Column("failed_at", sa.DateTime()),
        sa.Column("status_details", sa.Text()),
        sa.Column("webhook_data", postgresql.JSONB()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        "appointment_reminders",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("clinic_id", sa.Integer(), sa.ForeignKey("clinics.id"), nullable=False, index=True),
        sa.Column("appointment_id", sa.Integer(), sa.ForeignKey("appointments.id"), nullable=False, index=True),
        sa.Column("patient_id", sa.Integer(), sa.ForeignKey("patients.id"), nullable=False, index=True),
        sa.Column("channel", sa.String(16), nullable=False),
        sa.Column("reminder_type", sa.String(32), nullable=False, server_default="STANDARD"),
        sa.Column("scheduled_for", sa.DateTime(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="SCHEDULED"),
        sa.Column("message_id", sa.Integer(), sa.ForeignKey("messages.id"), index=True),
        sa.Column("external_message_id", sa.String(255)),
        sa.Column("content_sent", sa.Text()),
        sa.Column("sent_at", sa.DateTime()),
        sa.Column("failure_reason", sa.Text()),
        sa.Column("response_type", sa.String(32)),
        sa.Column("responded_at", sa.DateTime()),
        sa.Column("response_raw", sa.Text()),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_appointment_reminders_status_due", "appointment_reminders", ["status", "scheduled_for"])
    op.create_index(
        "ix_appointment_reminders_slot",
        "appointment_reminders",
        ["appointment_id", "channel", "scheduled_for"],
    )


def downgrade() -> None:
    op.drop_index("ix_appointment_reminders_slot", table_name="appointment_reminders")
    op.drop_index("ix_appointment_reminders_status_due", table_name="appointment_reminders")
    op.drop_table("appointment_reminders")
    op.drop_table("message_deliveries")
    op.drop_index("ix_messages_patient_channel_created", table_name="messages")
    op.drop_index("ix_messages_status_scheduled", table_name="messages")
    op.drop_table("messages")
    op.drop_table("message_templates")
    op.drop_index("ix_appointments_clinic_start", table_name="appointments")
    op.drop_table("appointments")
    op.drop_table("appointment_types")
    op.drop_table("practitioners")
    op.drop_table("patients")
    op.drop_table("clinics")
