"""Message models: templates, messages and delivery attempts."""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from apps.backend.database import Base
from apps.backend.utils.clock import utcnow


class MessageTemplate(Base):
    __tablename__ = "message_templates"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    name = Column(String(128), nullable=False)
    sms_body = Column(Text, nullable=True)
    email_subject = Column(String(255), nullable=True)
    email_body = Column(Text, nullable=True)
    email_html_body = Column(Text, nullable=True)
    push_title = Column(String(255), nullable=True)
    push_body = Column(Text, nullable=True)
    in_app_title = Column(String(255), nullable=True)
    in_app_body = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True, index=True)
    template_id = Column(Integer, ForeignKey("message_templates.id"), nullable=True)
    channel = Column(String(16), nullable=False)  # SMS|EMAIL|PUSH|IN_APP
    direction = Column(String(16), nullable=False, default="OUTBOUND")
    subject = Column(String(255), nullable=True)
    body = Column(Text, nullable=False)
    html_body = Column(Text, nullable=True)
    to_address = Column(String(512), nullable=True)
    from_address = Column(String(255), nullable=True)
    status = Column(String(16), nullable=False, default="PENDING")
    scheduled_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    tags = Column(JSONB, nullable=True)
    conversation_id = Column(String(64), nullable=True, index=True)
    related_type = Column(String(64), nullable=True)
    related_id = Column(Integer, nullable=True)
    created_by = Column(String(64), nullable=True)
    metadata_json = Column(JSONB, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    deliveries = relationship(
        "MessageDelivery",
        back_populates="message",
        order_by="MessageDelivery.id",
    )

    __table_args__ = (
        Index("ix_messages_status_scheduled", "status", "scheduled_at"),
        Index("ix_messages_patient_channel_created", "patient_id", "channel", "created_at"),
    )


class MessageDelivery(Base):
    __tablename__ = "message_deliveries"

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(Integer, ForeignKey("messages.id"), nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default="PENDING")
    provider_message_id = Column(String(255), nullable=True, index=True)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    opened_at = Column(DateTime, nullable=True)
    clicked_at = Column(DateTime, nullable=True)
    bounced_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    status_details = Column(Text, nullable=True)
    webhook_data = Column(JSONB, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    message = relationship("Message", back_populates="deliveries")
