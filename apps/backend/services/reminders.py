"""Appointment reminders: scheduling, due sweep, confirmations, retries.

Reminders never talk to providers; every send goes through MessagingService.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from apps.backend.config import Settings, get_settings
from apps.backend.constants import (
    ACTIVE_REMINDER_STATUSES,
    INACTIVE_APPOINTMENT_STATUSES,
    MAX_RETRIES,
    AppointmentStatus,
    Channel,
    ConfirmationResponse,
    ConfirmationStatus,
    ErrorCode,
    MessageStatus,
    ReminderStatus,
    ReminderType,
    retry_backoff_seconds,
)
from apps.backend.models.appointment import Appointment
from apps.backend.models.message import Message
from apps.backend.models.reminder import AppointmentReminder
from apps.backend.services.messaging import MessagingService
from apps.backend.services.templates import substitute_variables
from apps.backend.utils.clock import utcnow

logger = logging.getLogger(__name__)

REMINDER_SENDER = "reminder-service"


@dataclass(frozen=True)
class ReminderTiming:
    hours_before: float
    channel: str
    reminder_type: str


DEFAULT_REMINDER_SEQUENCE = (
    ReminderTiming(48, Channel.EMAIL.value, ReminderType.STANDARD.value),
    ReminderTiming(24, Channel.SMS.value, ReminderType.CONFIRMATION.value),
    ReminderTiming(2, Channel.SMS.value, ReminderType.FINAL.value),
)

_CONFIRM_WORDS = {"C", "CONFIRM", "CONFIRMED", "YES", "Y"}
_DECLINE_WORDS = {"X", "CANCEL", "NO", "N"}

# (reminder type, "EMAIL" | "TEXT") -> subject/body templates over the flat variable map.
REMINDER_CONTENT = {
    (ReminderType.STANDARD.value, "EMAIL"): {
        "subject": "Appointment Reminder - {{appointmentDate}}",
        "body": (
            "Hi {{firstName}},\n\nThis is a friendly reminder about your upcoming appointment:\n\n"
            "Date: {{appointmentDate}}\n"
            "Time: {{appointmentTime}}\n"
            "Provider: {{providerName}}\n"
            "Location: {{clinicName}}\n\n"
            "If you need to reschedule or cancel, please contact us at {{clinicPhone}}.\n\n"
            "We look forward to seeing you!\n\n{{clinicName}}"
        ),
    },
    (ReminderType.STANDARD.value, "TEXT"): {
        "body": (
            "Hi {{firstName}}! Reminder: You have an appointment on {{appointmentDate}} at "
            "{{appointmentTime}} with {{providerName}} at {{clinicName}}. Questions? Call {{clinicPhone}}."
        ),
    },
    (ReminderType.CONFIRMATION.value, "EMAIL"): {
        "subject": "Please Confirm Your Appointment - {{appointmentDate}}",
        "body": (
            "Hi {{firstName}},\n\nPlease confirm your upcoming appointment:\n\n"
            "Date: {{appointmentDate}}\n"
            "Time: {{appointmentTime}}\n"
            "Provider: {{providerName}}\n\n"
            "Reply CONFIRM to confirm or CANCEL if you cannot make it.\n\n"
            "{{clinicName}}"
        ),
    },
    (ReminderType.CONFIRMATION.value, "TEXT"): {
        "body": (
            "Hi {{firstName}}! Please confirm your appt on {{appointmentDate}} at {{appointmentTime}}. "
            "Reply C to confirm or X to cancel. {{clinicName}}"
        ),
    },
    (ReminderType.FINAL.value, "TEXT"): {
        "body": (
            "Reminder: Your appointment is TODAY at {{appointmentTime}} with {{providerName}} "
            "at {{clinicName}}. See you soon!"
        ),
    },
    (ReminderType.PRE_VISIT.value, "EMAIL"): {
        "subject": "Prepare for Your Visit - {{appointmentDate}}",
        "body": (
            "Hi {{firstName}},\n\nYour appointment is coming up! Here's what to know:\n\n"
            "Date: {{appointmentDate}}\n"
            "Time: {{appointmentTime}}\n\n"
            "Please arrive 10 minutes early and bring:\n"
            "- Valid ID\n"
            "- Insurance card (if applicable)\n"
            "- List of current medications\n\n"
            "{{clinicName}}"
        ),
    },
    (ReminderType.PRE_VISIT.value, "TEXT"): {
        "body": (
            "Hi {{firstName}}! Your appt is {{appointmentDate}} at {{appointmentTime}}. "
            "Please arrive 10 min early with ID & insurance card. {{clinicName}}"
        ),
    },
    (ReminderType.FIRST_VISIT.value, "EMAIL"): {
        "subject": "Welcome! Your First Appointment - {{appointmentDate}}",
        "body": (
            "Hi {{firstName}},\n\nWe're excited to meet you! Here's your first appointment info:\n\n"
            "Date: {{appointmentDate}}\n"
            "Time: {{appointmentTime}}\n"
            "Provider: {{providerName}}\n"
            "Location: {{clinicName}}{{clinicAddressLine}}\n\n"
            "Please arrive 15 minutes early to complete paperwork.\n\n"
            "Questions? Call us at {{clinicPhone}}.\n\n"
            "We look forward to meeting you!\n\n{{clinicName}}"
        ),
    },
    (ReminderType.FIRST_VISIT.value, "TEXT"): {
        "body": (
            "Welcome {{firstName}}! Your first visit is {{appointmentDate}} at {{appointmentTime}} "
            "at {{clinicName}}. Please arrive 15 min early. See you soon!"
        ),
    },
    (ReminderType.FOLLOW_UP.value, "EMAIL"): {
        "subject": "Thank You for Your Visit - {{clinicName}}",
        "body": (
            "Hi {{firstName}},\n\nThank you for visiting us today!\n\n"
            "We hope everything went well. If you have any questions about your visit "
            "or treatment, please don't hesitate to contact us.\n\n"
            "{{clinicName}}\n{{clinicPhoneLine}}"
        ),
    },
    (ReminderType.FOLLOW_UP.value, "TEXT"): {
        "body": (
            "Thank you for visiting {{clinicName}} today, {{firstName}}! "
            "Questions about your visit? Contact us anytime."
        ),
    },
}

GENERIC_REMINDER = {
    "body": "Reminder: You have an appointment on {{appointmentDate}} at {{appointmentTime}} at {{clinicName}}.",
}


def _clinic_zone(name: str | None):
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("clinic_timezone_unknown tz=%s", name)
        return timezone.utc


def format_appointment_date(value: datetime) -> str:
    return f"{value:%A}, {value:%B} {value.day}, {value.year}"


def format_appointment_time(value: datetime) -> str:
    return f"{value.hour % 12 or 12}:{value:%M} {'AM' if value.hour < 12 else 'PM'}"


def build_reminder_variables(appointment: Appointment) -> dict[str, str]:
    clinic = appointment.clinic
    patient = appointment.patient
    local = appointment.start_time.replace(tzinfo=timezone.utc).astimezone(_clinic_zone(clinic.timezone))
    practitioner = appointment.practitioner
    return {
        "firstName": patient.first_name,
        "lastName": patient.last_name or "",
        "appointmentDate": format_appointment_date(local),
        "appointmentTime": format_appointment_time(local),
        "appointmentType": appointment.appointment_type.name if appointment.appointment_type else "Appointment",
        "duration": str(appointment.duration or ""),
        "providerName": (
            f"Dr. {practitioner.first_name} {practitioner.last_name}" if practitioner else "Your provider"
        ),
        "clinicName": clinic.name,
        "clinicPhone": clinic.phone or "our office",
        "clinicPhoneLine": clinic.phone or "",
        "clinicAddressLine": f"\n   {clinic.address}" if clinic.address else "",
    }


def build_reminder_content(reminder_type: str, channel: str, variables: dict) -> dict:
    """Subject (email only) and body for a reminder type on a channel."""
    kind = "EMAIL" if channel == Channel.EMAIL.value else "TEXT"
    template = REMINDER_CONTENT.get((reminder_type, kind)) or REMINDER_CONTENT.get((reminder_type, "TEXT"))
    template = template or GENERIC_REMINDER
    subject = template.get("subject") if kind == "EMAIL" else None
    return {
        "subject": substitute_variables(subject, variables),
        "body": substitute_variables(template["body"], variables),
    }


def parse_confirmation_reply(text: str | None) -> str | None:
    word = (text or "").strip().upper().rstrip(".!")
    if word in _CONFIRM_WORDS:
        return ConfirmationResponse.CONFIRMED.value
    if word in _DECLINE_WORDS:
        return ConfirmationResponse.DECLINED.value
    return None


def _item(timing: ReminderTiming, success: bool, **extra) -> dict:
    out = {
        "success": success,
        "channel": timing.channel,
        "reminder_type": timing.reminder_type,
    }
    out.update(extra)
    return out


class ReminderService:
    def __init__(self, messaging: MessagingService, settings: Settings | None = None):
        self.messaging = messaging
        self.settings = settings or messaging.settings or get_settings()
        messaging.add_status_listener(self.sync_delivery_status)

    # --- scheduling ----------------------------------------------------------

    def schedule_reminders_for_appointment(
        self,
        db: Session,
        appointment_id: int,
        sequence: list[ReminderTiming] | tuple[ReminderTiming, ...] | None = None,
    ) -> list[dict]:
        appointment = db.get(Appointment, appointment_id)
        if appointment is None:
            return [{"success": False, "error": {
                "code": ErrorCode.APPOINTMENT_NOT_FOUND.value,
                "message": f"Appointment {appointment_id} not found",
            }}]
        if appointment.status in INACTIVE_APPOINTMENT_STATUSES:
            return [{"success": False, "error": {
                "code": ErrorCode.INVALID_STATUS.value,
                "message": f"Cannot schedule reminders for {appointment.status} appointment",
            }}]

        now = utcnow()
        patient = appointment.patient
        results = []
        for timing in sequence or DEFAULT_REMINDER_SEQUENCE:
            scheduled_for = appointment.start_time - timedelta(hours=timing.hours_before)
            if scheduled_for <= now:
                results.append(_item(timing, False, scheduled_for=scheduled_for, error={
                    "code": ErrorCode.TIME_PASSED.value,
                    "message": f"Reminder time ({timing.hours_before:g}h before) has already passed",
                }))
                continue
            missing = self._missing_contact(patient, timing.channel)
            if missing:
                results.append(_item(timing, False, scheduled_for=scheduled_for, error=missing))
                continue
            try:
                existing = db.execute(
                    select(AppointmentReminder.id).where(
                        AppointmentReminder.appointment_id == appointment.id,
                        AppointmentReminder.channel == timing.channel,
                        AppointmentReminder.scheduled_for == scheduled_for,
                        AppointmentReminder.status.in_(ACTIVE_REMINDER_STATUSES),
                    ).limit(1)
                ).scalar()
                if existing is not None:
                    results.append(_item(
                        timing, True, reminder_id=existing, scheduled_for=scheduled_for, duplicate=True,
                    ))
                    continue
                reminder = AppointmentReminder(
                    clinic_id=appointment.clinic_id,
                    appointment_id=appointment.id,
                    patient_id=appointment.patient_id,
                    channel=timing.channel,
                    reminder_type=timing.reminder_type,
                    scheduled_for=scheduled_for,
                    status=ReminderStatus.SCHEDULED.value,
                    retry_count=0,
                )
                db.add(reminder)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.exception("reminder_schedule_failed appointment_id=%s", appointment_id)
                results.append(_item(timing, False, scheduled_for=scheduled_for, error={
                    "code": ErrorCode.SCHEDULE_ERROR.value,
                    "message": str(e)[:200],
                }))
                continue
            results.append(_item(timing, True, reminder_id=reminder.id, scheduled_for=scheduled_for))
        logger.info(
            "reminders_scheduled appointment_id=%s scheduled=%s requested=%s",
            appointment_id, sum(1 for r in results if r["success"]), len(results),
        )
        return results

    @staticmethod
    def _missing_contact(patient, channel: str) -> dict | None:
        if channel == Channel.SMS.value and not patient.phone:
            return {"code": ErrorCode.NO_PHONE.value, "message": "Patient has no phone number"}
        if channel == Channel.EMAIL.value and not patient.email:
            return {"code": ErrorCode.NO_EMAIL.value, "message": "Patient has no email address"}
        if channel == Channel.PUSH.value and not patient.device_token:
            return {"code": ErrorCode.NO_RECIPIENT.value, "message": "Patient has no push device"}
        return None

    def cancel_reminders_for_appointment(self, db: Session, appointment_id: int) -> int:
        res = db.execute(
            update(AppointmentReminder)
            .where(
                AppointmentReminder.appointment_id == appointment_id,
                AppointmentReminder.status.in_(ACTIVE_REMINDER_STATUSES),
            )
            .values(status=ReminderStatus.CANCELLED.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        logger.info("reminders_cancelled appointment_id=%s count=%s", appointment_id, res.rowcount)
        return res.rowcount or 0

    def reschedule_reminders_for_appointment(
        self,
        db: Session,
        appointment_id: int,
        sequence: list[ReminderTiming] | tuple[ReminderTiming, ...] | None = None,
    ) -> dict:
        cancelled = self.cancel_reminders_for_appointment(db, appointment_id)
        db.expire_all()
        return {
            "cancelled": cancelled,
            "scheduled": self.schedule_reminders_for_appointment(db, appointment_id, sequence),
        }

    # --- sending -------------------------------------------------------------

    @staticmethod
    def skip_reason(reminder: AppointmentReminder, now: datetime) -> str | None:
        appointment = reminder.appointment
        if appointment.status in INACTIVE_APPOINTMENT_STATUSES:
            return f"Appointment status: {appointment.status}"
        if appointment.start_time < now:
            return "Appointment has passed"
        if (
            reminder.reminder_type == ReminderType.FINAL.value
            and appointment.confirmation_status == ConfirmationStatus.CONFIRMED.value
        ):
            return "Already confirmed"
        return None

    def _claim(self, db: Session, reminder_id: int, from_status: str, retry_count: int | None = None) -> bool:
        conditions = [AppointmentReminder.id == reminder_id, AppointmentReminder.status == from_status]
        if retry_count is not None:
            conditions.append(AppointmentReminder.retry_count == retry_count)
        res = db.execute(
            update(AppointmentReminder)
            .where(*conditions)
            .values(status=ReminderStatus.SENDING.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.rollback()
            return False
        db.commit()
        return True

    def _send(self, db: Session, reminder: AppointmentReminder) -> tuple[dict, dict]:
        appointment = reminder.appointment
        content = build_reminder_content(
            reminder.reminder_type, reminder.channel, build_reminder_variables(appointment),
        )
        try:
            outcome = self.messaging.send_message(
                db,
                clinic_id=reminder.clinic_id,
                patient_id=reminder.patient_id,
                channel=reminder.channel,
                subject=content["subject"],
                body=content["body"],
                related_type="Appointment",
                related_id=appointment.id,
                tags=["reminder", reminder.channel.lower()],
                created_by=REMINDER_SENDER,
                retry_on_failure=False,
            )
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("reminder_send_failed reminder_id=%s", reminder.id)
            outcome = {"success": False, "error": {"code": ErrorCode.SEND_ERROR.value, "message": str(e)[:200]}}
        return content, outcome

    def _finish(self, db: Session, reminder_id: int, content: dict, outcome: dict) -> bool:
        now = utcnow()
        values = {"updated_at": now, "message_id": outcome.get("message_id")}
        if outcome.get("success"):
            values.update(
                status=ReminderStatus.SENT.value,
                sent_at=now,
                content_sent=content["body"],
                external_message_id=outcome.get("provider_message_id"),
                failure_reason=None,
            )
        else:
            values.update(
                status=ReminderStatus.FAILED.value,
                failure_reason=(outcome.get("error") or {}).get("message") or "Failed to send message",
                retry_count=AppointmentReminder.retry_count + 1,
            )
        res = db.execute(
            update(AppointmentReminder)
            .where(AppointmentReminder.id == reminder_id, AppointmentReminder.status == ReminderStatus.SENDING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if res.rowcount != 1:
            logger.warning("reminder_changed_while_sending reminder_id=%s", reminder_id)
        return bool(outcome.get("success"))

    def _mark_skipped(self, db: Session, reminder_id: int, reason: str) -> None:
        db.execute(
            update(AppointmentReminder)
            .where(AppointmentReminder.id == reminder_id)
            .values(status=ReminderStatus.SKIPPED.value, failure_reason=reason, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()

    def process_due_reminders(self, db: Session, batch_size: int | None = None) -> dict:
        now = utcnow()
        due_ids = db.execute(
            select(AppointmentReminder.id)
            .where(
                AppointmentReminder.status == ReminderStatus.SCHEDULED.value,
                AppointmentReminder.scheduled_for <= now,
            )
            .order_by(AppointmentReminder.scheduled_for.asc(), AppointmentReminder.id.asc())
            .limit(batch_size or self.settings.reminder_batch_size)
        ).scalars().all()
        result = {"processed": 0, "sent": 0, "failed": 0, "skipped": 0, "errors": []}
        for reminder_id in due_ids:
            if not self._claim(db, reminder_id, ReminderStatus.SCHEDULED.value):
                continue
            result["processed"] += 1
            reminder = db.get(AppointmentReminder, reminder_id)
            reason = self.skip_reason(reminder, now)
            if reason:
                self._mark_skipped(db, reminder_id, reason)
                result["skipped"] += 1
                continue
            content, outcome = self._send(db, reminder)
            if self._finish(db, reminder_id, content, outcome):
                result["sent"] += 1
            else:
                result["failed"] += 1
                result["errors"].append({
                    "reminder_id": reminder_id,
                    "error": (outcome.get("error") or {}).get("message") or "Unknown error",
                })
        if due_ids:
            logger.info(
                "due_reminders_done processed=%s sent=%s failed=%s skipped=%s",
                result["processed"], result["sent"], result["failed"], result["skipped"],
            )
        return result

    def retry_failed_reminders(self, db: Session, batch_size: int | None = None) -> dict:
        now = utcnow()
        candidates = db.execute(
            select(AppointmentReminder.id, AppointmentReminder.retry_count, AppointmentReminder.updated_at)
            .where(
                AppointmentReminder.status == ReminderStatus.FAILED.value,
                AppointmentReminder.retry_count < MAX_RETRIES,
            )
            .order_by(AppointmentReminder.updated_at.asc(), AppointmentReminder.id.asc())
            .limit(batch_size or self.settings.retry_batch_size)
        ).all()
        result = {"retried": 0, "succeeded": 0, "skipped": 0, "deferred": 0}
        for reminder_id, retry_count, updated_at in candidates:
            reminder = db.get(AppointmentReminder, reminder_id)
            appointment = reminder.appointment
            if appointment.status in INACTIVE_APPOINTMENT_STATUSES:
                self._mark_skipped(db, reminder_id, "Appointment no longer active")
                result["skipped"] += 1
                continue
            if appointment.start_time < now:
                self._mark_skipped(db, reminder_id, "Appointment has passed")
                result["skipped"] += 1
                continue
            reference = updated_at or now
            if now < reference + timedelta(seconds=retry_backoff_seconds(retry_count or 0)):
                result["deferred"] += 1
                continue
            if not self._claim(db, reminder_id, ReminderStatus.FAILED.value, retry_count=retry_count or 0):
                continue
            result["retried"] += 1
            reminder = db.get(AppointmentReminder, reminder_id)
            content, outcome = self._send(db, reminder)
            if self._finish(db, reminder_id, content, outcome):
                result["succeeded"] += 1
        if candidates:
            logger.info(
                "reminder_retry_done retried=%s succeeded=%s skipped=%s deferred=%s",
                result["retried"], result["succeeded"], result["skipped"], result["deferred"],
            )
        return result

    # --- responses -----------------------------------------------------------

    def process_confirmation_response(
        self,
        db: Session,
        appointment_id: int,
        response: str,
        raw_text: str | None = None,
    ) -> bool:
        response = ConfirmationResponse(response).value
        appointment = db.get(Appointment, appointment_id)
        if appointment is None:
            logger.warning("confirmation_appointment_missing appointment_id=%s", appointment_id)
            return False
        now = utcnow()
        if response == ConfirmationResponse.CONFIRMED.value:
            appointment.confirmation_status = ConfirmationStatus.CONFIRMED.value
            appointment.confirmed_at = now
            appointment.confirmed_by = "patient"
        elif response == ConfirmationResponse.DECLINED.value:
            appointment.confirmation_status = ConfirmationStatus.DECLINED.value
            appointment.status = AppointmentStatus.CANCELLED.value
            appointment.cancelled_at = now
            appointment.cancellation_reason = "Patient declined via reminder"
        db.commit()
        if response == ConfirmationResponse.DECLINED.value:
            self.cancel_reminders_for_appointment(db, appointment_id)

        latest = db.execute(
            select(AppointmentReminder)
            .where(
                AppointmentReminder.appointment_id == appointment_id,
                AppointmentReminder.reminder_type == ReminderType.CONFIRMATION.value,
                AppointmentReminder.status.in_((ReminderStatus.SENT.value, ReminderStatus.DELIVERED.value)),
            )
            .order_by(AppointmentReminder.sent_at.desc(), AppointmentReminder.id.desc())
            .limit(1)
        ).scalars().first()
        if latest is not None:
            latest.response_type = response
            latest.responded_at = now
            latest.response_raw = raw_text
            db.commit()
        logger.info("confirmation_processed appointment_id=%s response=%s", appointment_id, response)
        return True

    def handle_inbound_reply(self, db: Session, patient_id: int, text: str | None) -> dict | None:
        """Match an SMS reply to the patient's open confirmation request."""
        response = parse_confirmation_reply(text)
        if response is None:
            return None
        reminder = db.execute(
            select(AppointmentReminder)
            .join(Appointment, Appointment.id == AppointmentReminder.appointment_id)
            .where(
                AppointmentReminder.patient_id == patient_id,
                AppointmentReminder.reminder_type == ReminderType.CONFIRMATION.value,
                AppointmentReminder.status.in_((ReminderStatus.SENT.value, ReminderStatus.DELIVERED.value)),
                AppointmentReminder.response_type.is_(None),
                Appointment.start_time >= utcnow(),
                Appointment.status.notin_(INACTIVE_APPOINTMENT_STATUSES),
            )
            .order_by(AppointmentReminder.sent_at.desc(), AppointmentReminder.id.desc())
            .limit(1)
        ).scalars().first()
        if reminder is None:
            return None
        appointment_id = reminder.appointment_id
        self.process_confirmation_response(db, appointment_id, response, text)
        return {"appointment_id": appointment_id, "response": response}

    def sync_delivery_status(self, db: Session, message_id: int, status: str) -> int:
        """Carry a provider receipt over to the reminder that sent the message.

        DELIVERED moves SENT to DELIVERED. FAILED and BOUNCED move SENT to FAILED,
        which hands the resend to retry_failed_reminders.
        """
        if status == MessageStatus.DELIVERED.value:
            values = {"status": ReminderStatus.DELIVERED.value}
        elif status in (MessageStatus.FAILED.value, MessageStatus.BOUNCED.value):
            message = db.get(Message, message_id)
            reason = (message.error_message if message is not None else None) or f"Provider reported {status.lower()}"
            values = {
                "status": ReminderStatus.FAILED.value,
                "failure_reason": reason[:1000],
                "retry_count": AppointmentReminder.retry_count + 1,
            }
        else:
            return 0
        res = db.execute(
            update(AppointmentReminder)
            .where(
                AppointmentReminder.message_id == message_id,
                AppointmentReminder.status == ReminderStatus.SENT.value,
            )
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if res.rowcount and status != MessageStatus.DELIVERED.value:
            logger.warning("reminder_delivery_failed message_id=%s status=%s", message_id, status)
        return res.rowcount or 0

    # --- reporting -----------------------------------------------------------

    def get_reminder_stats(self, db: Session, clinic_id: int, start: datetime, end: datetime) -> dict:
        in_range = (
            AppointmentReminder.clinic_id == clinic_id,
            AppointmentReminder.scheduled_for >= start,
            AppointmentReminder.scheduled_for <= end,
        )
        counts = dict(db.execute(
            select(AppointmentReminder.status, func.count(AppointmentReminder.id))
            .where(*in_range)
            .group_by(AppointmentReminder.status)
        ).all())
        confirmation_sent = db.execute(
            select(func.count(AppointmentReminder.id)).where(
                *in_range,
                AppointmentReminder.reminder_type == ReminderType.CONFIRMATION.value,
                AppointmentReminder.status.in_((ReminderStatus.SENT.value, ReminderStatus.DELIVERED.value)),
            )
        ).scalar() or 0
        confirmed = db.execute(
            select(func.count(AppointmentReminder.id)).where(
                *in_range,
                AppointmentReminder.reminder_type == ReminderType.CONFIRMATION.value,
                AppointmentReminder.response_type == ConfirmationResponse.CONFIRMED.value,
            )
        ).scalar() or 0
        return {
            "total": sum(counts.values()),
            "scheduled": counts.get(ReminderStatus.SCHEDULED.value, 0),
            "sent": counts.get(ReminderStatus.SENT.value, 0),
            "delivered": counts.get(ReminderStatus.DELIVERED.value, 0),
            "failed": counts.get(ReminderStatus.FAILED.value, 0),
            "skipped": counts.get(ReminderStatus.SKIPPED.value, 0),
            "cancelled": counts.get(ReminderStatus.CANCELLED.value, 0),
            "confirmation_rate": round(confirmed / confirmation_sent * 100) if confirmation_sent else 0,
        }
