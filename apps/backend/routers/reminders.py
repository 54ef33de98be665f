"""Appointment reminder endpoints."""
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Body, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from apps.backend.constants import Channel, ConfirmationResponse, ErrorCode, ReminderType
from apps.backend.deps import get_db, get_reminder_service
from apps.backend.services.reminders import ReminderService, ReminderTiming
from apps.backend.utils.api_errors import error_response

router = APIRouter()


class ReminderTimingIn(BaseModel):
    hours_before: float
    channel: Channel
    reminder_type: ReminderType = ReminderType.STANDARD


class ScheduleIn(BaseModel):
    sequence: list[ReminderTimingIn] | None = None


class ConfirmationIn(BaseModel):
    response: ConfirmationResponse
    raw_text: str | None = None


def _sequence(data: ScheduleIn | None) -> list[ReminderTiming] | None:
    if data is None or not data.sequence:
        return None
    return [ReminderTiming(t.hours_before, t.channel.value, t.reminder_type.value) for t in data.sequence]


def _schedule_error(request: Request, results: list[dict]):
    """Whole-request failures (missing or inactive appointment) come back as a single item."""
    if len(results) != 1 or results[0].get("success") or "channel" in results[0]:
        return None
    err = results[0]["error"]
    status_code = 404 if err["code"] == ErrorCode.APPOINTMENT_NOT_FOUND.value else 409
    return error_response(request, status_code, err["code"], err["message"])


@router.post("/appointments/{appointment_id}/reminders")
def schedule_reminders(
    appointment_id: int,
    request: Request,
    data: ScheduleIn | None = Body(default=None),
    db: Session = Depends(get_db),
    reminders: ReminderService = Depends(get_reminder_service),
):
    results = reminders.schedule_reminders_for_appointment(db, appointment_id, _sequence(data))
    failed = _schedule_error(request, results)
    if failed is not None:
        return failed
    return {"appointment_id": appointment_id, "results": results}


@router.delete("/appointments/{appointment_id}/reminders")
def cancel_reminders(
    appointment_id: int,
    db: Session = Depends(get_db),
    reminders: ReminderService = Depends(get_reminder_service),
):
    return {"appointment_id": appointment_id, "cancelled": reminders.cancel_reminders_for_appointment(db, appointment_id)}


@router.post("/appointments/{appointment_id}/reminders/reschedule")
def reschedule_reminders(
    appointment_id: int,
    request: Request,
    data: ScheduleIn | None = Body(default=None),
    db: Session = Depends(get_db),
    reminders: ReminderService = Depends(get_reminder_service),
):
    out = reminders.reschedule_reminders_for_appointment(db, appointment_id, _sequence(data))
    failed = _schedule_error(request, out["scheduled"])
    if failed is not None:
        return failed
    return {"appointment_id": appointment_id, **out}


@router.post("/appointments/{appointment_id}/confirmation")
def confirmation(
    appointment_id: int,
    data: ConfirmationIn,
    request: Request,
    db: Session = Depends(get_db),
    reminders: ReminderService = Depends(get_reminder_service),
):
    ok = reminders.process_confirmation_response(db, appointment_id, data.response.value, data.raw_text)
    if not ok:
        return error_response(
            request, 404, ErrorCode.APPOINTMENT_NOT_FOUND.value, f"Appointment {appointment_id} not found",
        )
    return {"ok": True, "appointment_id": appointment_id, "response": data.response.value}


@router.get("/reminders/stats")
def reminder_stats(
    clinic_id: int = Query(...),
    start: datetime = Query(...),
    end: datetime = Query(...),
    db: Session = Depends(get_db),
    reminders: ReminderService = Depends(get_reminder_service),
):
    return reminders.get_reminder_stats(db, clinic_id, start, end)
