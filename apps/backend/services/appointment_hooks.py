"""Hooks the booking flow calls; messaging failures never escape them."""
from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from apps.backend.services.reminders import ReminderService

logger = logging.getLogger(__name__)


def on_appointment_booked(reminders: ReminderService, db: Session, appointment_id: int) -> list[dict] | None:
    try:
        return reminders.schedule_reminders_for_appointment(db, appointment_id)
    except Exception:
        db.rollback()
        logger.exception("appointment_booked_hook_failed appointment_id=%s", appointment_id)
        return None


def on_appointment_cancelled(reminders: ReminderService, db: Session, appointment_id: int) -> int | None:
    try:
        return reminders.cancel_reminders_for_appointment(db, appointment_id)
    except Exception:
        db.rollback()
        logger.exception("appointment_cancelled_hook_failed appointment_id=%s", appointment_id)
        return None


def on_appointment_rescheduled(reminders: ReminderService, db: Session, appointment_id: int) -> dict | None:
    try:
        return reminders.reschedule_reminders_for_appointment(db, appointment_id)
    except Exception:
        db.rollback()
        logger.exception("appointment_rescheduled_hook_failed appointment_id=%s", appointment_id)
        return None
