"""ReminderService: scheduling, due sweep, retries, confirmations."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from apps.backend.clients.base import SendResult, WebhookPayload
from apps.backend.constants import MAX_RETRIES, DeliveryStatus, ErrorCode
from apps.backend.models import Appointment, AppointmentReminder, Clinic, Message, Patient
from apps.backend.services import appointment_hooks
from apps.backend.services.reminders import (
    ReminderTiming,
    build_reminder_content,
    build_reminder_variables,
    parse_confirmation_reply,
)
from apps.backend.utils.clock import utcnow


def _reminders_for(db, appointment_id):
    return db.execute(
        select(AppointmentReminder)
        .where(AppointmentReminder.appointment_id == appointment_id)
        .order_by(AppointmentReminder.scheduled_for, AppointmentReminder.id)
    ).scalars().all()


def _make_due(db, reminder_id):
    db.get(AppointmentReminder, reminder_id).scheduled_for = utcnow() - timedelta(seconds=1)
    db.commit()


@pytest.mark.timeout(10)
def test_default_sequence_for_appointment_in_three_days(test_db_session, reminders, make_appointment):
    appt = make_appointment(72)
    results = reminders.schedule_reminders_for_appointment(test_db_session, appt.id)
    assert [r["success"] for r in results] == [True, True, True]
    assert [(r["channel"], r["reminder_type"]) for r in results] == [
        ("EMAIL", "STANDARD"), ("SMS", "CONFIRMATION"), ("SMS", "FINAL"),
    ]
    rows = _reminders_for(test_db_session, appt.id)
    assert [r.scheduled_for for r in rows] == [
        appt.start_time - timedelta(hours=48),
        appt.start_time - timedelta(hours=24),
        appt.start_time - timedelta(hours=2),
    ]
    assert {r.status for r in rows} == {"SCHEDULED"}

    again = reminders.schedule_reminders_for_appointment(test_db_session, appt.id)
    assert all(r["duplicate"] for r in again)
    assert [r["reminder_id"] for r in again] == [r["reminder_id"] for r in results]
    assert len(_reminders_for(test_db_session, appt.id)) == 3


@pytest.mark.timeout(10)
def test_passed_times_and_missing_contacts(test_db_session, reminders, clinic, make_appointment):
    soon = make_appointment(10)
    results = reminders.schedule_reminders_for_appointment(test_db_session, soon.id)
    assert [r.get("error", {}).get("code") for r in results] == [
        ErrorCode.TIME_PASSED.value, ErrorCode.TIME_PASSED.value, None,
    ]

    email_only = Patient(clinic_id=clinic.id, first_name="Eve", email="eve@example.com")
    test_db_session.add(email_only)
    test_db_session.commit()
    appt = make_appointment(72, patient_id=email_only.id)
    results = reminders.schedule_reminders_for_appointment(test_db_session, appt.id)
    assert results[0]["success"] is True
    assert [r["error"]["code"] for r in results[1:]] == [ErrorCode.NO_PHONE.value, ErrorCode.NO_PHONE.value]
    assert len(_reminders_for(test_db_session, appt.id)) == 1


@pytest.mark.timeout(10)
def test_schedule_rejects_missing_or_inactive_appointment(test_db_session, reminders, make_appointment):
    [missing] = reminders.schedule_reminders_for_appointment(test_db_session, 9999)
    assert missing["error"]["code"] == ErrorCode.APPOINTMENT_NOT_FOUND.value
    assert "channel" not in missing

    cancelled = make_appointment(72, status="CANCELLED")
    [inactive] = reminders.schedule_reminders_for_appointment(test_db_session, cancelled.id)
    assert inactive["error"]["code"] == ErrorCode.INVALID_STATUS.value


@pytest.mark.timeout(10)
def test_custom_sequence(test_db_session, reminders, make_appointment):
    appt = make_appointment(72)
    results = reminders.schedule_reminders_for_appointment(
        test_db_session, appt.id, [ReminderTiming(6, "PUSH", "PRE_VISIT")],
    )
    assert results[0]["success"] is True
    [row] = _reminders_for(test_db_session, appt.id)
    assert (row.channel, row.reminder_type) == ("PUSH", "PRE_VISIT")


@pytest.mark.timeout(10)
def test_cancel_is_final_for_the_due_sweep(test_db_session, reminders, fake_providers, make_appointment):
    appt = make_appointment(72)
    reminders.schedule_reminders_for_appointment(test_db_session, appt.id)
    assert reminders.cancel_reminders_for_appointment(test_db_session, appt.id) == 3
    for r in _reminders_for(test_db_session, appt.id):
        _make_due(test_db_session, r.id)

    summary = reminders.process_due_reminders(test_db_session)
    assert summary["processed"] == 0
    assert all(not p.sent for p in fake_providers.values())
    test_db_session.expire_all()
    assert {r.status for r in _reminders_for(test_db_session, appt.id)} == {"CANCELLED"}
    assert reminders.cancel_reminders_for_appointment(test_db_session, appt.id) == 0


@pytest.mark.timeout(10)
def test_reschedule_replaces_active_reminders(test_db_session, reminders, make_appointment):
    appt = make_appointment(72)
    reminders.schedule_reminders_for_appointment(test_db_session, appt.id)
    appt.start_time = appt.start_time + timedelta(days=2)
    test_db_session.commit()

    out = reminders.reschedule_reminders_for_appointment(test_db_session, appt.id)
    assert out["cancelled"] == 3
    assert [r["success"] for r in out["scheduled"]] == [True, True, True]
    rows = _reminders_for(test_db_session, appt.id)
    active = [r for r in rows if r.status == "SCHEDULED"]
    assert len(rows) == 6
    assert active[0].scheduled_for == appt.start_time - timedelta(hours=48)


@pytest.mark.timeout(10)
def test_due_sweep_sends_through_messaging(test_db_session, reminders, fake_providers, make_appointment):
    appt = make_appointment(72)
    reminders.schedule_reminders_for_appointment(test_db_session, appt.id)
    first = _reminders_for(test_db_session, appt.id)[0]
    _make_due(test_db_session, first.id)

    summary = reminders.process_due_reminders(test_db_session)
    assert summary == {"processed": 1, "sent": 1, "failed": 0, "skipped": 0, "errors": []}

    test_db_session.expire_all()
    reminder = test_db_session.get(AppointmentReminder, first.id)
    assert reminder.status == "SENT"
    assert reminder.external_message_id == "sendgrid-1"
    assert reminder.content_sent.startswith("Hi Ana,")
    msg = test_db_session.get(Message, reminder.message_id)
    assert msg.tags == ["reminder", "email"]
    assert (msg.related_type, msg.related_id, msg.created_by) == ("Appointment", appt.id, "reminder-service")
    assert msg.subject.startswith("Appointment Reminder - ")
    assert "Dr. John Doe" in fake_providers["sendgrid"].sent[0].body

    assert reminders.process_due_reminders(test_db_session)["processed"] == 0


@pytest.mark.timeout(10)
def test_final_reminder_skipped_once_confirmed(test_db_session, reminders, fake_providers, make_appointment):
    appt = make_appointment(72, confirmation_status="CONFIRMED")
    reminders.schedule_reminders_for_appointment(test_db_session, appt.id)
    final = _reminders_for(test_db_session, appt.id)[-1]
    _make_due(test_db_session, final.id)

    summary = reminders.process_due_reminders(test_db_session)
    assert summary["skipped"] == 1
    test_db_session.expire_all()
    reminder = test_db_session.get(AppointmentReminder, final.id)
    assert reminder.status == "SKIPPED"
    assert reminder.failure_reason == "Already confirmed"
    assert fake_providers["twilio"].sent == []


@pytest.mark.timeout(10)
def test_due_sweep_skips_inactive_appointment(test_db_session, reminders, make_appointment):
    appt = make_appointment(72)
    reminders.schedule_reminders_for_appointment(test_db_session, appt.id)
    appt.status = "NO_SHOW"
    test_db_session.commit()
    first = _reminders_for(test_db_session, appt.id)[0]
    _make_due(test_db_session, first.id)

    assert reminders.process_due_reminders(test_db_session)["skipped"] == 1
    test_db_session.expire_all()
    assert test_db_session.get(AppointmentReminder, first.id).failure_reason == "Appointment status: NO_SHOW"


@pytest.mark.timeout(10)
def test_failed_reminder_retried_by_reminder_sweep_only(
    test_db_session, messaging, reminders, fake_providers, make_appointment,
):
    appt = make_appointment(72)
    reminders.schedule_reminders_for_appointment(test_db_session, appt.id)
    sms = _reminders_for(test_db_session, appt.id)[1]
    _make_due(test_db_session, sms.id)
    fake_providers["twilio"].queued.append(SendResult.fail("20503", "Service unavailable", retryable=True))

    summary = reminders.process_due_reminders(test_db_session)
    assert summary["failed"] == 1
    assert summary["errors"] == [{"reminder_id": sms.id, "error": "Service unavailable"}]
    test_db_session.expire_all()
    reminder = test_db_session.get(AppointmentReminder, sms.id)
    assert (reminder.status, reminder.retry_count) == ("FAILED", 1)
    first_message = test_db_session.get(Message, reminder.message_id)
    assert first_message.retry_count == MAX_RETRIES

    assert reminders.retry_failed_reminders(test_db_session)["deferred"] == 1
    reminder.updated_at = utcnow() - timedelta(seconds=241)
    test_db_session.commit()

    out = reminders.retry_failed_reminders(test_db_session)
    assert (out["retried"], out["succeeded"]) == (1, 1)
    test_db_session.expire_all()
    reminder = test_db_session.get(AppointmentReminder, sms.id)
    assert reminder.status == "SENT"
    assert reminder.message_id != first_message.id

    # the message-level sweep leaves the reminder's first message alone
    first_message.updated_at = utcnow() - timedelta(days=1)
    test_db_session.commit()
    assert messaging.retry_failed_messages(test_db_session)["processed"] == 0
    assert len(fake_providers["twilio"].sent) == 2


@pytest.mark.timeout(10)
def test_retry_skips_when_appointment_gone(test_db_session, reminders, fake_providers, make_appointment):
    appt = make_appointment(72)
    reminders.schedule_reminders_for_appointment(test_db_session, appt.id)
    first = _reminders_for(test_db_session, appt.id)[0]
    _make_due(test_db_session, first.id)
    fake_providers["sendgrid"].queued.append(SendResult.fail("SENDGRID_500", "down", retryable=True))
    reminders.process_due_reminders(test_db_session)

    appt.status = "CANCELLED"
    test_db_session.commit()
    assert reminders.retry_failed_reminders(test_db_session)["skipped"] == 1
    test_db_session.expire_all()
    reminder = test_db_session.get(AppointmentReminder, first.id)
    assert (reminder.status, reminder.failure_reason) == ("SKIPPED", "Appointment no longer active")


def _send_confirmation_request(db, reminders, appt):
    reminders.schedule_reminders_for_appointment(db, appt.id)
    confirmation = _reminders_for(db, appt.id)[1]
    _make_due(db, confirmation.id)
    reminders.process_due_reminders(db)
    return confirmation.id


@pytest.mark.timeout(10)
def test_confirmation_annotates_latest_request(test_db_session, reminders, make_appointment):
    appt = make_appointment(72)
    reminder_id = _send_confirmation_request(test_db_session, reminders, appt)

    assert reminders.process_confirmation_response(test_db_session, appt.id, "CONFIRMED", "C") is True
    test_db_session.expire_all()
    appt = test_db_session.get(Appointment, appt.id)
    assert appt.confirmation_status == "CONFIRMED"
    assert appt.confirmed_by == "patient"
    reminder = test_db_session.get(AppointmentReminder, reminder_id)
    assert (reminder.response_type, reminder.response_raw) == ("CONFIRMED", "C")
    assert reminder.responded_at is not None

    assert reminders.process_confirmation_response(test_db_session, 9999, "CONFIRMED") is False


@pytest.mark.timeout(10)
def test_decline_cancels_appointment_and_reminders(test_db_session, reminders, make_appointment):
    appt = make_appointment(72)
    reminders.schedule_reminders_for_appointment(test_db_session, appt.id)

    assert reminders.process_confirmation_response(test_db_session, appt.id, "DECLINED") is True
    test_db_session.expire_all()
    appt = test_db_session.get(Appointment, appt.id)
    assert (appt.status, appt.confirmation_status) == ("CANCELLED", "DECLINED")
    assert appt.cancellation_reason == "Patient declined via reminder"
    assert {r.status for r in _reminders_for(test_db_session, appt.id)} == {"CANCELLED"}


@pytest.mark.timeout(10)
def test_reschedule_request_only_annotates(test_db_session, reminders, make_appointment):
    appt = make_appointment(72)
    reminder_id = _send_confirmation_request(test_db_session, reminders, appt)
    reminders.process_confirmation_response(test_db_session, appt.id, "RESCHEDULE_REQUESTED")
    test_db_session.expire_all()
    assert test_db_session.get(Appointment, appt.id).status == "SCHEDULED"
    assert test_db_session.get(AppointmentReminder, reminder_id).response_type == "RESCHEDULE_REQUESTED"


@pytest.mark.timeout(10)
def test_sms_reply_confirms_open_request(test_db_session, messaging, reminders, patient, make_appointment):
    appt = make_appointment(72)
    _send_confirmation_request(test_db_session, reminders, appt)

    assert reminders.handle_inbound_reply(test_db_session, patient.id, "maybe later") is None
    out = reminders.handle_inbound_reply(test_db_session, patient.id, " yes! ")
    assert out == {"appointment_id": appt.id, "response": "CONFIRMED"}
    test_db_session.expire_all()
    assert test_db_session.get(Appointment, appt.id).confirmation_status == "CONFIRMED"
    assert reminders.handle_inbound_reply(test_db_session, patient.id, "Y") is None


@pytest.mark.timeout(10)
def test_delivery_receipt_reaches_reminder(test_db_session, messaging, reminders, make_appointment):
    appt = make_appointment(72)
    reminder_id = _send_confirmation_request(test_db_session, reminders, appt)
    ext = test_db_session.get(AppointmentReminder, reminder_id).external_message_id

    assert messaging.process_webhook(test_db_session, WebhookPayload(ext, DeliveryStatus.DELIVERED, utcnow())) is True
    test_db_session.expire_all()
    assert test_db_session.get(AppointmentReminder, reminder_id).status == "DELIVERED"


@pytest.mark.timeout(10)
def test_failed_receipt_hands_reminder_to_reminder_sweep(test_db_session, messaging, reminders, make_appointment):
    appt = make_appointment(72)
    reminder_id = _send_confirmation_request(test_db_session, reminders, appt)
    reminder = test_db_session.get(AppointmentReminder, reminder_id)
    ext, message_id = reminder.external_message_id, reminder.message_id

    receipt = WebhookPayload(ext, DeliveryStatus.FAILED, utcnow(), status_details="Unreachable handset")
    assert messaging.process_webhook(test_db_session, receipt) is True
    test_db_session.expire_all()
    reminder = test_db_session.get(AppointmentReminder, reminder_id)
    assert (reminder.status, reminder.retry_count) == ("FAILED", 1)
    assert reminder.failure_reason == "Unreachable handset"
    msg = test_db_session.get(Message, message_id)
    assert (msg.status, msg.retry_count) == ("FAILED", MAX_RETRIES)


@pytest.mark.timeout(10)
def test_failed_receipt_is_not_resent_after_decline(
    test_db_session, messaging, reminders, fake_providers, make_appointment,
):
    appt = make_appointment(72)
    reminder_id = _send_confirmation_request(test_db_session, reminders, appt)
    ext = test_db_session.get(AppointmentReminder, reminder_id).external_message_id
    messaging.process_webhook(test_db_session, WebhookPayload(ext, DeliveryStatus.FAILED, utcnow()))
    reminders.process_confirmation_response(test_db_session, appt.id, "DECLINED", "X")
    sends = len(fake_providers["twilio"].sent)

    assert messaging.retry_failed_messages(test_db_session)["retried"] == 0
    assert reminders.retry_failed_reminders(test_db_session)["retried"] == 0
    assert len(fake_providers["twilio"].sent) == sends
    test_db_session.expire_all()
    assert test_db_session.get(AppointmentReminder, reminder_id).status == "SKIPPED"


@pytest.mark.timeout(10)
def test_reminder_stats(test_db_session, reminders, clinic, make_appointment):
    appt = make_appointment(72)
    _send_confirmation_request(test_db_session, reminders, appt)
    reminders.process_confirmation_response(test_db_session, appt.id, "CONFIRMED", "C")
    other = make_appointment(96)
    reminders.schedule_reminders_for_appointment(test_db_session, other.id)
    reminders.cancel_reminders_for_appointment(test_db_session, other.id)

    now = utcnow()
    stats = reminders.get_reminder_stats(test_db_session, clinic.id, now - timedelta(days=1), now + timedelta(days=5))
    assert stats == {
        "total": 6,
        "scheduled": 2,
        "sent": 1,
        "delivered": 0,
        "failed": 0,
        "skipped": 0,
        "cancelled": 3,
        "confirmation_rate": 100,
    }


@pytest.mark.timeout(10)
def test_reminder_content_formatting(test_db_session, clinic, patient, practitioner):
    clinic.timezone = "America/New_York"
    appt = Appointment(
        clinic_id=clinic.id,
        patient_id=patient.id,
        practitioner_id=practitioner.id,
        start_time=datetime(2030, 3, 5, 14, 30),
    )
    test_db_session.add(appt)
    test_db_session.commit()

    variables = build_reminder_variables(appt)
    assert variables["appointmentDate"] == "Tuesday, March 5, 2030"
    assert variables["appointmentTime"] == "9:30 AM"
    assert variables["providerName"] == "Dr. John Doe"

    sms = build_reminder_content("CONFIRMATION", "SMS", variables)
    assert sms["subject"] is None
    assert sms["body"] == (
        "Hi Ana! Please confirm your appt on Tuesday, March 5, 2030 at 9:30 AM. "
        "Reply C to confirm or X to cancel. Smile Ortho"
    )
    final_email = build_reminder_content("FINAL", "EMAIL", variables)
    assert final_email["body"].startswith("Reminder: Your appointment is TODAY at 9:30 AM")


@pytest.mark.timeout(10)
def test_parse_confirmation_reply():
    assert parse_confirmation_reply("c") == "CONFIRMED"
    assert parse_confirmation_reply("Confirm.") == "CONFIRMED"
    assert parse_confirmation_reply("x") == "DECLINED"
    assert parse_confirmation_reply("no") == "DECLINED"
    assert parse_confirmation_reply("what time?") is None
    assert parse_confirmation_reply(None) is None


class _BrokenReminders:
    def schedule_reminders_for_appointment(self, db, appointment_id):
        raise RuntimeError("db down")

    def cancel_reminders_for_appointment(self, db, appointment_id):
        raise RuntimeError("db down")

    def reschedule_reminders_for_appointment(self, db, appointment_id):
        raise RuntimeError("db down")


@pytest.mark.timeout(10)
def test_appointment_hooks_never_raise(test_db_session, reminders, make_appointment):
    appt = make_appointment(72)
    booked = appointment_hooks.on_appointment_booked(reminders, test_db_session, appt.id)
    assert len(booked) == 3
    assert appointment_hooks.on_appointment_cancelled(reminders, test_db_session, appt.id) == 3

    broken = _BrokenReminders()
    assert appointment_hooks.on_appointment_booked(broken, test_db_session, appt.id) is None
    assert appointment_hooks.on_appointment_cancelled(broken, test_db_session, appt.id) is None
    assert appointment_hooks.on_appointment_rescheduled(broken, test_db_session, appt.id) is None
    assert test_db_session.get(Clinic, appt.clinic_id) is not None
