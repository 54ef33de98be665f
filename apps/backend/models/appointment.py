"""Appointment models."""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Index
from sqlalchemy.orm import relationship

from apps.backend.database import Base
from apps.backend.utils.clock import utcnow


class AppointmentType(Base):
    __tablename__ = "appointment_types"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    name = Column(String(128), nullable=False)


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    practitioner_id = Column(Integer, ForeignKey("practitioners.id"), nullable=True)
    appointment_type_id = Column(Integer, ForeignKey("appointment_types.id"), nullable=True)
    start_time = Column(DateTime, nullable=False)  # naive UTC
    duration = Column(Integer, nullable=False, default=30)  # minutes
    status = Column(String(32), nullable=False, default="SCHEDULED")
    confirmation_status = Column(String(32), nullable=False, default="UNCONFIRMED")
    confirmed_at = Column(DateTime, nullable=True)
    confirmed_by = Column(String(64), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    clinic = relationship("Clinic")
    patient = relationship("Patient")
    practitioner = relationship("Practitioner")
    appointment_type = relationship("AppointmentType")

    __table_args__ = (
        Index("ix_appointments_clinic_start", "clinic_id", "start_time"),
    )
