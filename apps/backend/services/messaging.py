"""Messaging orchestration: send, bulk fan-out, webhooks, sweeps, inbound SMS."""
from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from apps.backend.clients.base import SendPayload, SendResult, WebhookPayload
from apps.backend.config import Settings, get_settings
from apps.backend.constants import (
    DELIVERY_STATUS_RANK,
    MAX_RETRIES,
    RETRYABLE_CHANNELS,
    WEBHOOK_TERMINAL_STATUSES,
    Channel,
    DeliveryStatus,
    Direction,
    ErrorCode,
    MessageStatus,
    ProviderType,
    retry_backoff_seconds,
)
from apps.backend.models.clinic import Patient
from apps.backend.models.message import Message, MessageDelivery, MessageTemplate
from apps.backend.services.providers import ProviderRegistry
from apps.backend.services.templates import substitute_variables, template_content
from apps.backend.utils.clock import to_naive_utc, utcnow
from apps.backend.utils.phone import digits_suffix, mask_address, to_e164

logger = logging.getLogger(__name__)

NO_CONTACT_INFO = "No contact information available"

_DELIVERY_TIMESTAMP_FIELDS = {
    DeliveryStatus.SENT.value: "sent_at",
    DeliveryStatus.DELIVERED.value: "delivered_at",
    DeliveryStatus.OPENED.value: "opened_at",
    DeliveryStatus.CLICKED.value: "clicked_at",
    DeliveryStatus.BOUNCED.value: "bounced_at",
    DeliveryStatus.FAILED.value: "failed_at",
}


@dataclass
class _Outgoing:
    """Everything a provider call needs, detached from the session."""

    message_id: int
    delivery_id: int
    provider: str
    payload: SendPayload
    retry_on_failure: bool = True


def _error(code, message: str) -> dict:
    return {"code": getattr(code, "value", code), "message": message}


def _fail(code, message: str, **extra) -> dict:
    out = {"success": False, "error": _error(code, message)}
    out.update(extra)
    return out


def recipient_address(patient: Patient | None, channel: str) -> str | None:
    if patient is None:
        return None
    if channel == Channel.SMS.value:
        return patient.phone or None
    if channel == Channel.EMAIL.value:
        return patient.email or None
    if channel == Channel.PUSH.value:
        return patient.device_token or None
    return None


class MessagingService:
    def __init__(self, registry: ProviderRegistry, settings: Settings | None = None):
        self.registry = registry
        self.settings = settings or get_settings()
        self._status_listeners: list[Callable[[Session, int, str], None]] = []

    def add_status_listener(self, listener: Callable[[Session, int, str], None]) -> None:
        """listener(db, message_id, new_status) runs after a webhook promotes a message."""
        self._status_listeners.append(listener)

    def get_provider_status(self) -> dict:
        return self.registry.status()

    # --- send path -----------------------------------------------------------

    def _from_address(self, channel: str) -> str | None:
        if channel == Channel.SMS.value:
            return self.settings.twilio_phone_number or None
        if channel == Channel.EMAIL.value:
            return self.settings.sendgrid_from_email or None
        return None

    def find_open_conversation(self, db: Session, patient_id: int, now: datetime | None = None) -> str | None:
        since = (now or utcnow()) - timedelta(days=self.settings.inbound_thread_window_days)
        return db.execute(
            select(Message.conversation_id)
            .where(
                Message.patient_id == patient_id,
                Message.channel == Channel.SMS.value,
                Message.conversation_id.isnot(None),
                Message.created_at >= since,
            )
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(1)
        ).scalar()

    def _open_delivery(self, db: Session, message: Message) -> _Outgoing:
        provider = self.registry.provider_name(message.channel)
        delivery = MessageDelivery(
            message_id=message.id,
            provider=provider,
            status=DeliveryStatus.PENDING.value,
        )
        db.add(delivery)
        db.flush()
        payload = SendPayload(
            to=message.to_address or "",
            body=message.body,
            subject=message.subject,
            html_body=message.html_body,
            message_id=str(message.id),
            data={"messageId": str(message.id)},
            tags=list(message.tags or []),
        )
        outgoing = _Outgoing(message.id, delivery.id, provider, payload)
        outgoing.retry_on_failure = not (message.metadata_json or {}).get("retryOwner")
        return outgoing

    def _prepare_send(
        self,
        db: Session,
        *,
        clinic_id: int,
        channel: str,
        body: str,
        patient_id: int | None = None,
        to_address: str | None = None,
        subject: str | None = None,
        html_body: str | None = None,
        template_id: int | None = None,
        variables: dict | None = None,
        scheduled_at: datetime | None = None,
        tags: list[str] | None = None,
        related_type: str | None = None,
        related_id: int | None = None,
        created_by: str | None = None,
        retry_on_failure: bool = True,
    ) -> tuple[_Outgoing | None, dict | None]:
        channel = Channel(channel).value
        patient = None
        if patient_id is not None:
            patient = db.get(Patient, patient_id)
            if patient is None and not to_address:
                return None, _fail(ErrorCode.PATIENT_NOT_FOUND, f"Patient {patient_id} not found")
        to = to_address or recipient_address(patient, channel)
        if not to and channel != Channel.IN_APP.value:
            return None, _fail(ErrorCode.NO_RECIPIENT, f"No {channel.lower()} address for recipient")

        if variables:
            body = substitute_variables(body, variables)
            subject = substitute_variables(subject, variables)
            html_body = substitute_variables(html_body, variables)

        now = utcnow()
        conversation_id = None
        if channel == Channel.SMS.value and patient is not None:
            conversation_id = self.find_open_conversation(db, patient.id, now) or uuid.uuid4().hex

        scheduled_at = to_naive_utc(scheduled_at)
        is_scheduled = scheduled_at is not None and scheduled_at > now
        message = Message(
            clinic_id=clinic_id,
            patient_id=patient.id if patient is not None else None,
            template_id=template_id,
            channel=channel,
            direction=Direction.OUTBOUND.value,
            subject=subject,
            body=body,
            html_body=html_body,
            to_address=to,
            from_address=self._from_address(channel),
            status=MessageStatus.SCHEDULED.value if is_scheduled else MessageStatus.PENDING.value,
            scheduled_at=scheduled_at,
            retry_count=0,
            tags=list(tags or []),
            conversation_id=conversation_id,
            related_type=related_type,
            related_id=related_id,
            created_by=created_by,
            metadata_json=None if retry_on_failure else {"retryOwner": created_by or "caller"},
        )
        db.add(message)
        db.flush()
        if is_scheduled:
            db.commit()
            logger.info("message_scheduled message_id=%s channel=%s at=%s", message.id, channel, scheduled_at)
            return None, {
                "success": True,
                "message_id": message.id,
                "status": MessageStatus.SCHEDULED.value,
            }
        outgoing = self._open_delivery(db, message)
        db.commit()
        return outgoing, None

    def _dispatch(self, outgoing: _Outgoing) -> SendResult:
        """Provider call only; safe to run off the session's thread."""
        if outgoing.provider == ProviderType.INTERNAL.value:
            return SendResult.ok(None)
        provider = self.registry.get(outgoing.provider)
        if provider is None:
            return SendResult.fail(
                ErrorCode.PROVIDER_NOT_AVAILABLE.value,
                f"No provider registered for {outgoing.provider}",
            )
        return provider.send(outgoing.payload)

    def _apply_result(self, db: Session, outgoing: _Outgoing, result: SendResult, is_retry: bool = False) -> dict:
        message = db.get(Message, outgoing.message_id)
        delivery = db.get(MessageDelivery, outgoing.delivery_id)
        now = utcnow()
        internal = outgoing.provider == ProviderType.INTERNAL.value
        if result.success:
            delivery.provider_message_id = result.provider_message_id
            delivery.sent_at = now
            message.sent_at = now
            message.error_message = None
            if internal:
                delivery.status = DeliveryStatus.DELIVERED.value
                delivery.delivered_at = now
                message.status = MessageStatus.DELIVERED.value
                message.delivered_at = now
            else:
                delivery.status = DeliveryStatus.SENT.value
                message.status = MessageStatus.SENT.value
            if is_retry:
                message.retry_count = min(MAX_RETRIES, (message.retry_count or 0) + 1)
        else:
            err = result.error
            delivery.status = DeliveryStatus.FAILED.value
            delivery.failed_at = now
            delivery.status_details = f"{err.code}: {err.message}"[:1000]
            message.status = MessageStatus.FAILED.value
            message.error_message = err.message[:1000]
            retry_count = (message.retry_count or 0) + (1 if is_retry else 0)
            if not err.retryable or not outgoing.retry_on_failure or retry_count >= MAX_RETRIES:
                retry_count = MAX_RETRIES
            message.retry_count = retry_count
        db.commit()
        if result.success:
            logger.info(
                "message_sent message_id=%s provider=%s provider_id=%s retry=%s",
                message.id, outgoing.provider, result.provider_message_id, is_retry,
            )
            return {
                "success": True,
                "message_id": message.id,
                "delivery_id": delivery.id,
                "provider_message_id": result.provider_message_id,
                "status": message.status,
            }
        logger.warning(
            "message_send_failed message_id=%s provider=%s code=%s retryable=%s retry_count=%s",
            message.id, outgoing.provider, result.error.code, result.error.retryable, message.retry_count,
        )
        return {
            "success": False,
            "message_id": message.id,
            "delivery_id": delivery.id,
            "status": message.status,
            "error": _error(result.error.code, result.error.message),
        }

    def send_message(self, db: Session, **params) -> dict:
        """Send now, or persist as SCHEDULED when scheduled_at is in the future.

        retry_on_failure=False pins a failed message at the retry cap so the
        retry sweep leaves it to the caller.
        """
        outgoing, early = self._prepare_send(db, **params)
        if early is not None:
            return early
        result = self._dispatch(outgoing)
        return self._apply_result(db, outgoing, result)

    def _fan_out(self, outgoings: list[_Outgoing]) -> dict[int, SendResult]:
        results: dict[int, SendResult] = {}
        if not outgoings:
            return results
        workers = max(1, min(int(self.settings.bulk_max_workers or 1), len(outgoings)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self._dispatch, o): o for o in outgoings}
            for fut in as_completed(futures):
                o = futures[fut]
                try:
                    results[o.delivery_id] = fut.result()
                except Exception as e:
                    logger.exception("message_dispatch_crashed message_id=%s", o.message_id)
                    results[o.delivery_id] = SendResult.fail(ErrorCode.SEND_ERROR.value, str(e)[:200], retryable=True)
        return results

    # --- bulk ----------------------------------------------------------------

    def send_bulk_messages(
        self,
        db: Session,
        *,
        clinic_id: int,
        template_id: int,
        channel: str,
        recipients: list[dict],
        variables: dict | None = None,
        tags: list[str] | None = None,
        created_by: str | None = None,
        related_type: str | None = None,
        related_id: int | None = None,
    ) -> dict:
        channel = Channel(channel).value
        total = len(recipients)

        def _all_failed(code, message: str) -> dict:
            return {
                "success": False,
                "total": total,
                "sent": 0,
                "failed": total,
                "results": [
                    {"patient_id": r.get("patient_id"), "success": False, "message_id": None, "error": _error(code, message)}
                    for r in recipients
                ],
            }

        template = db.get(MessageTemplate, template_id)
        if template is None or template.clinic_id != clinic_id:
            return _all_failed(ErrorCode.TEMPLATE_NOT_FOUND, f"Template {template_id} not found")
        content = template_content(template, channel)
        if content is None:
            return _all_failed(ErrorCode.TEMPLATE_EMPTY, f"Template has no {channel} content")

        rows: list[dict] = []
        outgoings: list[_Outgoing] = []
        for r in recipients:
            row = {"patient_id": r.get("patient_id"), "outgoing": None, "result": None}
            rows.append(row)
            merged = {**(variables or {}), **(r.get("variables") or {})}
            try:
                outgoing, early = self._prepare_send(
                    db,
                    clinic_id=clinic_id,
                    channel=channel,
                    body=content["body"],
                    subject=content["subject"],
                    html_body=content["html_body"],
                    patient_id=r.get("patient_id"),
                    to_address=r.get("to_address"),
                    template_id=template.id,
                    variables=merged,
                    tags=tags,
                    created_by=created_by,
                    related_type=related_type,
                    related_id=related_id,
                )
            except SQLAlchemyError as e:
                db.rollback()
                logger.exception("bulk_prepare_failed patient_id=%s", r.get("patient_id"))
                early, outgoing = _fail(ErrorCode.SEND_ERROR, str(e)[:200]), None
            row["outgoing"] = outgoing
            row["result"] = early
            if outgoing is not None:
                outgoings.append(outgoing)

        dispatched = self._fan_out(outgoings)

        results = []
        for row in rows:
            outcome = row["result"]
            if row["outgoing"] is not None:
                o = row["outgoing"]
                try:
                    outcome = self._apply_result(db, o, dispatched[o.delivery_id])
                except SQLAlchemyError as e:
                    db.rollback()
                    logger.exception("bulk_apply_failed message_id=%s", o.message_id)
                    outcome = _fail(ErrorCode.SEND_ERROR, str(e)[:200], message_id=o.message_id)
            results.append({
                "patient_id": row["patient_id"],
                "success": bool(outcome.get("success")),
                "message_id": outcome.get("message_id"),
                "error": outcome.get("error"),
            })
        sent = sum(1 for r in results if r["success"])
        logger.info("bulk_send_done template_id=%s channel=%s total=%s sent=%s", template_id, channel, total, sent)
        return {
            "success": sent > 0,
            "total": total,
            "sent": sent,
            "failed": total - sent,
            "results": results,
        }

    # --- webhooks ------------------------------------------------------------

    def process_webhook(self, db: Session, payload: WebhookPayload, provider: str | None = None) -> bool:
        """Apply a provider status event. False when the provider id is unknown."""
        q = select(MessageDelivery).where(MessageDelivery.provider_message_id == payload.provider_message_id)
        if provider:
            q = q.where(MessageDelivery.provider == provider)
        delivery = db.execute(q.order_by(MessageDelivery.id.desc()).limit(1)).scalars().first()
        if delivery is None:
            logger.info(
                "webhook_delivery_not_found provider=%s provider_id=%s",
                provider or "-", payload.provider_message_id,
            )
            return False

        status = DeliveryStatus(payload.status).value
        ts = to_naive_utc(payload.timestamp) or utcnow()
        field = _DELIVERY_TIMESTAMP_FIELDS.get(status)
        if field and getattr(delivery, field) is None:
            setattr(delivery, field, ts)
        current_rank = DELIVERY_STATUS_RANK.get(delivery.status, 0)
        if DELIVERY_STATUS_RANK.get(status, 0) > current_rank:
            delivery.status = status
        if payload.status_details:
            delivery.status_details = str(payload.status_details)[:1000]
        delivery.webhook_data = payload.raw or None

        promoted = None
        message = db.get(Message, delivery.message_id)
        if status in WEBHOOK_TERMINAL_STATUSES and message is not None:
            latest_id = db.execute(
                select(func.max(MessageDelivery.id)).where(MessageDelivery.message_id == message.id)
            ).scalar()
            if latest_id == delivery.id and message.status not in WEBHOOK_TERMINAL_STATUSES:
                message.status = status
                if status == MessageStatus.DELIVERED.value:
                    message.delivered_at = ts
                else:
                    message.error_message = payload.status_details or f"Provider reported {status.lower()}"
                    # Retries of caller-owned messages stay with the caller.
                    if (message.metadata_json or {}).get("retryOwner"):
                        message.retry_count = MAX_RETRIES
                promoted = status
        db.commit()
        logger.info(
            "webhook_processed delivery_id=%s status=%s promoted=%s",
            delivery.id, status, promoted or "-",
        )
        if promoted:
            for listener in self._status_listeners:
                try:
                    listener(db, message.id, promoted)
                except Exception:
                    db.rollback()
                    logger.exception("status_listener_failed message_id=%s", message.id)
        return True

    # --- sweeps --------------------------------------------------------------

    def process_scheduled_messages(self, db: Session, batch_size: int | None = None) -> dict:
        now = utcnow()
        limit = batch_size or self.settings.scheduled_batch_size
        due_ids = db.execute(
            select(Message.id)
            .where(Message.status == MessageStatus.SCHEDULED.value, Message.scheduled_at <= now)
            .order_by(Message.scheduled_at.asc(), Message.id.asc())
            .limit(limit)
        ).scalars().all()
        result = {"processed": 0, "sent": 0, "failed": 0, "skipped": 0}
        outgoings: list[_Outgoing] = []
        for message_id in due_ids:
            claimed = db.execute(
                update(Message)
                .where(Message.id == message_id, Message.status == MessageStatus.SCHEDULED.value)
                .values(status=MessageStatus.PENDING.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                db.rollback()
                result["skipped"] += 1
                continue
            message = db.get(Message, message_id)
            db.refresh(message)
            if not message.to_address and message.channel != Channel.IN_APP.value:
                message.status = MessageStatus.FAILED.value
                message.error_message = NO_CONTACT_INFO
                message.retry_count = MAX_RETRIES
                db.commit()
                result["processed"] += 1
                result["failed"] += 1
                continue
            outgoings.append(self._open_delivery(db, message))
            db.commit()
            result["processed"] += 1

        dispatched = self._fan_out(outgoings)
        for o in outgoings:
            try:
                outcome = self._apply_result(db, o, dispatched[o.delivery_id])
            except SQLAlchemyError:
                db.rollback()
                logger.exception("scheduled_apply_failed message_id=%s", o.message_id)
                result["failed"] += 1
                continue
            result["sent" if outcome["success"] else "failed"] += 1
        if due_ids:
            logger.info("scheduled_sweep_done %s", " ".join(f"{k}={v}" for k, v in result.items()))
        return result

    def retry_failed_messages(self, db: Session, batch_size: int | None = None) -> dict:
        now = utcnow()
        limit = batch_size or self.settings.retry_batch_size
        candidates = db.execute(
            select(Message.id, Message.retry_count, Message.updated_at)
            .where(
                Message.status == MessageStatus.FAILED.value,
                Message.direction == Direction.OUTBOUND.value,
                Message.retry_count < MAX_RETRIES,
                Message.channel.in_(RETRYABLE_CHANNELS),
            )
            .order_by(Message.updated_at.asc(), Message.id.asc())
            .limit(limit)
        ).all()
        result = {"processed": 0, "retried": 0, "succeeded": 0, "failed": 0, "skipped": 0, "exhausted": 0}
        for message_id, retry_count, updated_at in candidates:
            result["processed"] += 1
            retry_count = retry_count or 0
            last_failed_at = db.execute(
                select(MessageDelivery.failed_at)
                .where(MessageDelivery.message_id == message_id)
                .order_by(MessageDelivery.id.desc())
                .limit(1)
            ).scalar()
            reference = last_failed_at or updated_at or now
            if now < reference + timedelta(seconds=retry_backoff_seconds(retry_count)):
                result["skipped"] += 1
                continue

            message = db.get(Message, message_id)
            if not message.to_address:
                patient = db.get(Patient, message.patient_id) if message.patient_id else None
                message.to_address = recipient_address(patient, message.channel)
                if not message.to_address:
                    message.retry_count = MAX_RETRIES
                    message.error_message = NO_CONTACT_INFO
                    db.commit()
                    result["exhausted"] += 1
                    continue

            claimed = db.execute(
                update(Message)
                .where(
                    Message.id == message_id,
                    Message.status == MessageStatus.FAILED.value,
                    Message.retry_count == retry_count,
                )
                .values(status=MessageStatus.PENDING.value, to_address=message.to_address, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                db.rollback()
                result["skipped"] += 1
                continue
            db.refresh(message)
            outgoing = self._open_delivery(db, message)
            db.commit()
            result["retried"] += 1
            outcome = self._apply_result(db, outgoing, self._dispatch(outgoing), is_retry=True)
            if outcome["success"]:
                result["succeeded"] += 1
            else:
                result["failed"] += 1
                if db.get(Message, message_id).retry_count >= MAX_RETRIES:
                    result["exhausted"] += 1
        if candidates:
            logger.info("retry_sweep_done %s", " ".join(f"{k}={v}" for k, v in result.items()))
        return result

    # --- inbound -------------------------------------------------------------

    def find_patient_by_phone(self, db: Session, phone: str) -> Patient | None:
        suffix = digits_suffix(phone)
        if not suffix:
            return None
        exact = {phone}
        e164 = to_e164(phone)
        if e164:
            exact.add(e164)
        if len(suffix) < 10:
            # Short codes never suffix-match a full number.
            return db.execute(
                select(Patient)
                .where(Patient.deleted_at.is_(None), Patient.phone.in_(exact))
                .order_by(Patient.id.asc())
            ).scalars().first()
        # Stored numbers mix formats; narrow by the last four digits, then compare digit suffixes.
        rows = db.execute(
            select(Patient)
            .where(
                Patient.deleted_at.is_(None),
                or_(Patient.phone.contains(suffix[-4:]), Patient.phone.in_(exact)),
            )
            .order_by(Patient.id.asc())
        ).scalars().all()
        for p in rows:
            if p.phone in exact or digits_suffix(p.phone, len(suffix)) == suffix:
                return p
        return None

    def process_inbound_message(
        self,
        db: Session,
        *,
        from_number: str,
        to_number: str | None,
        body: str,
        provider_message_id: str,
        media_urls: list[str] | None = None,
    ) -> dict:
        existing = db.execute(
            select(MessageDelivery.message_id)
            .join(Message, Message.id == MessageDelivery.message_id)
            .where(
                MessageDelivery.provider_message_id == provider_message_id,
                Message.direction == Direction.INBOUND.value,
            )
            .limit(1)
        ).scalar()
        if existing is not None:
            message = db.get(Message, existing)
            return {
                "success": True,
                "duplicate": True,
                "message_id": message.id,
                "patient_id": message.patient_id,
                "clinic_id": message.clinic_id,
                "conversation_id": message.conversation_id,
            }

        patient = self.find_patient_by_phone(db, from_number)
        if patient is None:
            logger.warning("inbound_sender_unmatched from=%s", mask_address(from_number))
            return _fail(ErrorCode.PATIENT_NOT_FOUND, "No patient matches the sender")

        now = utcnow()
        conversation_id = self.find_open_conversation(db, patient.id, now) or uuid.uuid4().hex
        message = Message(
            clinic_id=patient.clinic_id,
            patient_id=patient.id,
            channel=Channel.SMS.value,
            direction=Direction.INBOUND.value,
            body=body or "",
            to_address=to_number,
            from_address=to_e164(from_number) or from_number,
            status=MessageStatus.DELIVERED.value,
            sent_at=now,
            delivered_at=now,
            retry_count=0,
            conversation_id=conversation_id,
            created_by="system",
            metadata_json={"providerMessageId": provider_message_id, "mediaUrls": list(media_urls or [])},
        )
        db.add(message)
        db.flush()
        db.add(MessageDelivery(
            message_id=message.id,
            provider=ProviderType.TWILIO.value,
            status=DeliveryStatus.DELIVERED.value,
            provider_message_id=provider_message_id,
            delivered_at=now,
        ))
        db.commit()
        logger.info(
            "inbound_message_stored message_id=%s patient_id=%s conversation_id=%s",
            message.id, patient.id, conversation_id,
        )
        return {
            "success": True,
            "message_id": message.id,
            "patient_id": patient.id,
            "clinic_id": patient.clinic_id,
            "conversation_id": conversation_id,
        }
