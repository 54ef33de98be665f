"""Appointment reminder model."""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Index
from sqlalchemy.orm import relationship

from apps.backend.database import Base
from apps.backend.utils.clock import utcnow


class AppointmentReminder(Base):
    __tablename__ = "appointment_reminders"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    channel = Column(String(16), nullable=False)
    reminder_type = Column(String(32), nullable=False, default="STANDARD")
    scheduled_for = Column(DateTime, nullable=False)
    status = Column(String(16), nullable=False, default="SCHEDULED")
    message_id = Column(Integer, ForeignKey("messages.id"), nullable=True, index=True)
    external_message_id = Column(String(255), nullable=True)
    content_sent = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)
    response_type = Column(String(32), nullable=True)
    responded_at = Column(DateTime, nullable=True)
    response_raw = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    appointment = relationship("Appointment")

    __table_args__ = (
        Index("ix_appointment_reminders_status_due", "status", "scheduled_for"),
        Index("ix_appointment_reminders_slot", "appointment_id", "channel", "scheduled_for"),
    )
