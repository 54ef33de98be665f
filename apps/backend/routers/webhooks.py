"""Provider webhook endpoints (delivery receipts and inbound SMS)."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from apps.backend.constants import ProviderType
from apps.backend.deps import Services, get_db, get_services
from apps.backend.utils.api_errors import error_response

router = APIRouter()
logger = logging.getLogger(__name__)

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def _invalid_signature(request: Request, provider: str) -> JSONResponse:
    logger.warning("webhook_signature_rejected provider=%s", provider)
    return error_response(request, 403, "invalid_signature", "invalid signature")


@router.post("/twilio")
async def twilio_webhook(
    request: Request,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    raw = await request.body()
    provider = services.registry.get(ProviderType.TWILIO.value)
    if not provider.validate_webhook_signature(raw, request.headers.get("X-Twilio-Signature")):
        return _invalid_signature(request, provider.name)

    if provider.is_inbound_message(raw):
        inbound = provider.parse_inbound_message(raw)
        if inbound is not None:
            result = services.messaging.process_inbound_message(db, **inbound)
            if result.get("success") and not result.get("duplicate"):
                services.reminders.handle_inbound_reply(db, result["patient_id"], inbound["body"])
        return Response(content=EMPTY_TWIML, media_type="application/xml")

    payload = provider.parse_webhook(raw)
    if payload is None:
        return {"ok": True, "processed": False}
    processed = services.messaging.process_webhook(db, payload, provider=provider.name)
    return {"ok": True, "processed": processed}


@router.post("/sendgrid")
async def sendgrid_webhook(
    request: Request,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    raw = await request.body()
    provider = services.registry.get(ProviderType.SENDGRID.value)
    if not provider.validate_webhook_signature(raw, request.headers.get("X-SendGrid-Signature")):
        return _invalid_signature(request, provider.name)
    events = provider.parse_webhook_events(raw)
    processed = 0
    for event in events:
        if services.messaging.process_webhook(db, event, provider=provider.name):
            processed += 1
    return {"ok": True, "received": len(events), "processed": processed}


@router.post("/firebase")
async def firebase_webhook(
    request: Request,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    raw = await request.body()
    provider = services.registry.get(ProviderType.FIREBASE.value)
    if not provider.validate_webhook_signature(raw, request.headers.get("X-Webhook-Signature")):
        return _invalid_signature(request, provider.name)
    payload = provider.parse_webhook(raw)
    if payload is None:
        return {"ok": True, "processed": False}
    processed = services.messaging.process_webhook(db, payload, provider=provider.name)
    return {"ok": True, "processed": processed}
