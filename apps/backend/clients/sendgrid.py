"""SendGrid email client."""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import re
from datetime import datetime, timezone

from apps.backend.clients.base import (
    BaseMessageProvider,
    ProviderStatus,
    SendPayload,
    SendResult,
    WebhookPayload,
    body_text,
)
from apps.backend.constants import DeliveryStatus, ErrorCode
from apps.backend.utils.clock import utcnow

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

SENDGRID_EVENT_MAP = {
    "processed": DeliveryStatus.PENDING,
    "deferred": DeliveryStatus.PENDING,
    "delivered": DeliveryStatus.DELIVERED,
    "open": DeliveryStatus.OPENED,
    "click": DeliveryStatus.CLICKED,
    "bounce": DeliveryStatus.BOUNCED,
    "dropped": DeliveryStatus.FAILED,
    "blocked": DeliveryStatus.FAILED,
    "unsubscribe": DeliveryStatus.UNSUBSCRIBED,
    "group_unsubscribe": DeliveryStatus.UNSUBSCRIBED,
    "spamreport": DeliveryStatus.COMPLAINED,
}


def is_valid_email(value: str | None) -> bool:
    return bool(value and _EMAIL_RE.match(value.strip()))


def _event_message_id(event: dict) -> str | None:
    """sg_message_id carries the x-message-id plus a ".filter..." routing suffix."""
    sg_id = event.get("sg_message_id")
    if not sg_id:
        return None
    return str(sg_id).split(".", 1)[0]


def _event_timestamp(event: dict) -> datetime:
    ts = event.get("timestamp")
    if ts is None:
        return utcnow()
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError):
        return utcnow()


class SendGridProvider(BaseMessageProvider):
    name = "sendgrid"
    status_map = SENDGRID_EVENT_MAP
    default_status = DeliveryStatus.SENT

    def is_configured(self) -> bool:
        return bool(self.settings.sendgrid_api_key and self.settings.sendgrid_from_email)

    def validate_recipient(self, to: str) -> SendResult | None:
        if not is_valid_email(to):
            return SendResult.fail(ErrorCode.INVALID_EMAIL.value, f"Invalid email address: {to}")
        return None

    def build_request(self, payload: SendPayload) -> dict:
        s = self.settings
        content = [{"type": "text/plain", "value": payload.body}]
        if payload.html_body:
            content.append({"type": "text/html", "value": payload.html_body})
        body = {
            "personalizations": [
                {
                    "to": [{"email": payload.to.strip()}],
                    "subject": payload.subject or f"Message from {s.sendgrid_from_name}",
                }
            ],
            "from": {"email": s.sendgrid_from_email, "name": s.sendgrid_from_name},
            "content": content,
            "tracking_settings": {
                "click_tracking": {"enable": True},
                "open_tracking": {"enable": True},
            },
        }
        if payload.message_id:
            body["headers"] = {"X-Message-Id": str(payload.message_id)}
            body["custom_args"] = {"message_id": str(payload.message_id)}
        if payload.tags:
            body["categories"] = [str(t) for t in payload.tags][:10]
        return body

    def _send(self, payload: SendPayload) -> SendResult:
        r = self._http.post(
            self.settings.sendgrid_api_url,
            json=self.build_request(payload),
            headers={"Authorization": f"Bearer {self.settings.sendgrid_api_key}"},
        )
        if r.status_code == 202:
            provider_id = r.headers.get("x-message-id")
            logger.info("sendgrid_sent provider_id=%s", provider_id)
            return SendResult.ok(provider_id)
        message = "SendGrid request failed"
        try:
            errors = (r.json() or {}).get("errors") or []
            if errors and errors[0].get("message"):
                message = errors[0]["message"]
        except (ValueError, AttributeError):
            pass
        retryable = r.status_code == 429 or r.status_code >= 500
        logger.warning("sendgrid_send_failed status=%s retryable=%s", r.status_code, retryable)
        return SendResult.fail(f"SENDGRID_{r.status_code}", message, retryable=retryable)

    def _load_events(self, raw_body: bytes | str | dict | list) -> list[dict]:
        if isinstance(raw_body, list):
            data = raw_body
        elif isinstance(raw_body, dict):
            data = [raw_body]
        else:
            try:
                data = json.loads(body_text(raw_body) or "null")
            except ValueError:
                return []
        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            return []
        return [e for e in data if isinstance(e, dict)]

    def _to_payload(self, event: dict) -> WebhookPayload | None:
        provider_id = _event_message_id(event)
        if not provider_id:
            return None
        return WebhookPayload(
            provider_message_id=provider_id,
            status=self.map_status(event.get("event")),
            timestamp=_event_timestamp(event),
            status_details=event.get("reason") or event.get("bounce_classification"),
            raw=event,
        )

    def parse_webhook(self, raw_body: bytes | str | dict | list, headers: dict | None = None) -> WebhookPayload | None:
        events = self._load_events(raw_body)
        if not events:
            return None
        return self._to_payload(events[0])

    def parse_webhook_events(self, raw_body: bytes | str | dict | list) -> list[WebhookPayload]:
        out = []
        for event in self._load_events(raw_body):
            parsed = self._to_payload(event)
            if parsed is not None:
                out.append(parsed)
        return out

    def compute_signature(self, timestamp: str, raw_body: bytes | str) -> str:
        digest = hmac.new(
            self.settings.sendgrid_webhook_verification_key.encode("utf-8"),
            (timestamp + body_text(raw_body)).encode("utf-8"),
            hashlib.sha256,
        ).digest()
        return base64.b64encode(digest).decode("ascii")

    def validate_webhook_signature(self, raw_body: bytes | str, signature: str | None) -> bool:
        if not self.settings.sendgrid_webhook_verification_key:
            return self._unsigned_allowed()
        if not signature:
            return False
        parts = {}
        for chunk in signature.split(","):
            key, sep, value = chunk.strip().partition("=")
            if sep:
                parts[key] = value
        timestamp = parts.get("t")
        provided = parts.get("v1")
        if not timestamp or not provided:
            return False
        expected = self.compute_signature(timestamp, raw_body)
        return hmac.compare_digest(expected.encode("ascii"), provided.encode("ascii", errors="replace"))

    def get_status(self) -> ProviderStatus:
        s = self.settings
        details = {
            "hasApiKey": bool(s.sendgrid_api_key),
            "hasFromEmail": bool(s.sendgrid_from_email),
            "hasWebhookKey": bool(s.sendgrid_webhook_verification_key),
        }
        if not self.is_configured():
            return ProviderStatus(False, "SendGrid credentials not configured", details)
        return ProviderStatus(True, "SendGrid configured", details)
