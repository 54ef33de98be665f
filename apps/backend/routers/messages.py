"""Outbound message endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from apps.backend.constants import Channel, ErrorCode
from apps.backend.deps import get_db, get_messaging_service
from apps.backend.services.messaging import MessagingService
from apps.backend.utils.api_errors import error_response

router = APIRouter()

_CLIENT_ERRORS = {
    ErrorCode.NO_RECIPIENT.value,
    ErrorCode.PATIENT_NOT_FOUND.value,
    ErrorCode.INVALID_PHONE_NUMBER.value,
    ErrorCode.INVALID_EMAIL.value,
    ErrorCode.INVALID_DEVICE_TOKEN.value,
}


class SendMessageIn(BaseModel):
    clinic_id: int
    channel: Channel
    body: str
    patient_id: int | None = None
    to_address: str | None = None
    subject: str | None = None
    html_body: str | None = None
    template_id: int | None = None
    variables: dict[str, Any] | None = None
    scheduled_at: datetime | None = None
    tags: list[str] | None = None
    related_type: str | None = None
    related_id: int | None = None
    created_by: str | None = None


class BulkRecipientIn(BaseModel):
    patient_id: int
    to_address: str | None = None
    variables: dict[str, Any] | None = None


class BulkSendIn(BaseModel):
    clinic_id: int
    template_id: int
    channel: Channel
    recipients: list[BulkRecipientIn] = Field(min_length=1)
    variables: dict[str, Any] | None = None
    tags: list[str] | None = None
    created_by: str | None = None


@router.post("")
def send_message(
    data: SendMessageIn,
    request: Request,
    db: Session = Depends(get_db),
    messaging: MessagingService = Depends(get_messaging_service),
):
    params = data.model_dump()
    params["channel"] = data.channel.value
    result = messaging.send_message(db, **params)
    if result.get("success"):
        return result
    err = result.get("error") or {}
    status_code = 400 if err.get("code") in _CLIENT_ERRORS else 502
    return error_response(
        request,
        status_code,
        err.get("code") or ErrorCode.SEND_ERROR.value,
        err.get("message") or "send failed",
        message_id=result.get("message_id"),
    )


@router.post("/bulk")
def send_bulk(
    data: BulkSendIn,
    db: Session = Depends(get_db),
    messaging: MessagingService = Depends(get_messaging_service),
):
    return messaging.send_bulk_messages(
        db,
        clinic_id=data.clinic_id,
        template_id=data.template_id,
        channel=data.channel.value,
        recipients=[r.model_dump() for r in data.recipients],
        variables=data.variables,
        tags=data.tags,
        created_by=data.created_by,
    )


@router.get("/providers/status")
def providers_status(messaging: MessagingService = Depends(get_messaging_service)):
    return {"providers": messaging.get_provider_status()}
