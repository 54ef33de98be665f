"""Twilio SMS client."""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from urllib.parse import parse_qsl

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
from apps.backend.utils.phone import mask_address, to_e164

logger = logging.getLogger(__name__)

# Invalid / unreachable destination, opted out, region not enabled.
NON_RETRYABLE_CODES = frozenset({"21211", "21212", "21408", "21606", "21610", "21614"})

TWILIO_STATUS_MAP = {
    "queued": DeliveryStatus.PENDING,
    "accepted": DeliveryStatus.PENDING,
    "sending": DeliveryStatus.SENT,
    "sent": DeliveryStatus.SENT,
    "delivered": DeliveryStatus.DELIVERED,
    "undelivered": DeliveryStatus.FAILED,
    "failed": DeliveryStatus.FAILED,
}


def parse_twilio_body(raw_body: bytes | str | dict) -> dict | None:
    """Form-encoded callbacks are the norm; JSON is accepted too."""
    if isinstance(raw_body, dict):
        return dict(raw_body)
    text = body_text(raw_body).strip()
    if not text:
        return None
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError:
            return None
        return data if isinstance(data, dict) else None
    return dict(parse_qsl(text, keep_blank_values=True))


class TwilioProvider(BaseMessageProvider):
    name = "twilio"
    status_map = TWILIO_STATUS_MAP
    default_status = DeliveryStatus.PENDING

    def is_configured(self) -> bool:
        s = self.settings
        return bool(s.twilio_account_sid and s.twilio_auth_token and s.twilio_phone_number)

    def _messages_url(self) -> str:
        base = (self.settings.twilio_api_base_url or "https://api.twilio.com").rstrip("/")
        return f"{base}/2010-04-01/Accounts/{self.settings.twilio_account_sid}/Messages.json"

    def validate_recipient(self, to: str) -> SendResult | None:
        if to_e164(to) is None:
            return SendResult.fail(ErrorCode.INVALID_PHONE_NUMBER.value, f"Invalid phone number: {mask_address(to)}")
        return None

    def _send(self, payload: SendPayload) -> SendResult:
        form = {
            "To": to_e164(payload.to),
            "From": self.settings.twilio_phone_number,
            "Body": payload.body,
        }
        if self.settings.twilio_webhook_url:
            form["StatusCallback"] = self.settings.twilio_webhook_url
        r = self._http.post(
            self._messages_url(),
            data=form,
            auth=(self.settings.twilio_account_sid, self.settings.twilio_auth_token),
        )
        try:
            data = r.json()
        except ValueError:
            data = {}
        if r.status_code >= 400 or data.get("error_code"):
            code = str(data.get("code") or data.get("error_code") or f"HTTP_{r.status_code}")
            message = data.get("message") or data.get("error_message") or "Twilio request failed"
            logger.warning("twilio_send_failed to=%s code=%s", mask_address(payload.to), code)
            return SendResult.fail(code, message, retryable=code not in NON_RETRYABLE_CODES)
        sid = data.get("sid")
        logger.info("twilio_sent sid=%s to=%s", sid, mask_address(payload.to))
        return SendResult.ok(sid)

    def is_inbound_message(self, raw_body: bytes | str | dict) -> bool:
        params = parse_twilio_body(raw_body) or {}
        return bool(params.get("Body")) and not params.get("MessageStatus")

    def parse_inbound_message(self, raw_body: bytes | str | dict) -> dict | None:
        params = parse_twilio_body(raw_body)
        if not params or not params.get("MessageSid") or not params.get("From"):
            return None
        try:
            num_media = int(params.get("NumMedia") or 0)
        except ValueError:
            num_media = 0
        media_urls = [params[f"MediaUrl{i}"] for i in range(num_media) if params.get(f"MediaUrl{i}")]
        return {
            "provider_message_id": params["MessageSid"],
            "from_number": params["From"],
            "to_number": params.get("To") or "",
            "body": params.get("Body") or "",
            "media_urls": media_urls,
        }

    def parse_webhook(self, raw_body: bytes | str | dict, headers: dict | None = None) -> WebhookPayload | None:
        params = parse_twilio_body(raw_body)
        if not params:
            return None
        sid = params.get("MessageSid") or params.get("SmsSid")
        raw_status = params.get("MessageStatus") or params.get("SmsStatus")
        if not sid or not raw_status:
            return None
        details = params.get("ErrorMessage")
        error_code = params.get("ErrorCode") or None
        if error_code and not details:
            details = f"Twilio error {error_code}"
        return WebhookPayload(
            provider_message_id=sid,
            status=self.map_status(raw_status),
            timestamp=utcnow(),
            status_details=details,
            error_code=error_code,
            raw=params,
        )

    def compute_signature(self, url: str, params: dict) -> str:
        data = url + "".join(f"{k}{params[k]}" for k in sorted(params))
        digest = hmac.new(
            self.settings.twilio_auth_token.encode("utf-8"),
            data.encode("utf-8"),
            hashlib.sha1,
        ).digest()
        return base64.b64encode(digest).decode("ascii")

    def validate_webhook_signature(self, raw_body: bytes | str, signature: str | None) -> bool:
        if not self.settings.twilio_auth_token or not self.settings.twilio_webhook_url:
            return self._unsigned_allowed()
        if not signature:
            return False
        try:
            params = parse_twilio_body(raw_body) or {}
            expected = self.compute_signature(self.settings.twilio_webhook_url, params)
        except Exception:
            logger.exception("twilio_signature_check_failed")
            return False
        return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("ascii", errors="replace"))

    def get_status(self) -> ProviderStatus:
        s = self.settings
        details = {
            "hasAccountSid": bool(s.twilio_account_sid),
            "hasAuthToken": bool(s.twilio_auth_token),
            "hasPhoneNumber": bool(s.twilio_phone_number),
            "hasWebhookUrl": bool(s.twilio_webhook_url),
        }
        if not self.is_configured():
            return ProviderStatus(False, "Twilio credentials not configured", details)
        return ProviderStatus(True, "Twilio configured", details)
