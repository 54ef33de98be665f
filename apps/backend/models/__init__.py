"""SQLAlchemy models."""
from apps.backend.models.clinic import Clinic, Patient, Practitioner
from apps.backend.models.appointment import Appointment, AppointmentType
from apps.backend.models.message import Message, MessageDelivery, MessageTemplate
from apps.backend.models.reminder import AppointmentReminder

__all__ = [
    "Clinic",
    "Patient",
    "Practitioner",
    "Appointment",
    "AppointmentType",
    "Message",
    "MessageDelivery",
    "MessageTemplate",
    "AppointmentReminder",
]
