"""Common contract for outbound message providers."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from apps.backend.config import Settings
from apps.backend.constants import DeliveryStatus, ErrorCode

logger = logging.getLogger(__name__)


@dataclass
class SendPayload:
    to: str
    body: str
    subject: str | None = None
    html_body: str | None = None
    message_id: str | None = None
    data: dict[str, str] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)


@dataclass
class SendError:
    code: str
    message: str
    retryable: bool = False

    def as_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


@dataclass
class SendResult:
    success: bool
    provider_message_id: str | None = None
    error: SendError | None = None

    @classmethod
    def ok(cls, provider_message_id: str | None) -> "SendResult":
        return cls(success=True, provider_message_id=provider_message_id)

    @classmethod
    def fail(cls, code: str, message: str, retryable: bool = False) -> "SendResult":
        return cls(success=False, error=SendError(code=str(code), message=message, retryable=retryable))


@dataclass
class WebhookPayload:
    provider_message_id: str
    status: DeliveryStatus
    timestamp: datetime
    status_details: str | None = None
    error_code: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderStatus:
    healthy: bool
    message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict:
        out: dict[str, Any] = {"healthy": self.healthy}
        if self.message:
            out["message"] = self.message
        if self.details:
            out["details"] = self.details
        return out


class BaseMessageProvider:
    """Send, webhook parsing and signature checks for one transport.

    Subclasses never raise out of `send`, `parse_webhook` or
    `validate_webhook_signature`; failures come back as data.
    """

    name = "base"
    status_map: dict[str, DeliveryStatus] = {}
    default_status = DeliveryStatus.PENDING

    def __init__(self, settings: Settings, http_client: httpx.Client | None = None):
        self.settings = settings
        self._http = http_client or httpx.Client(timeout=settings.provider_timeout_seconds)

    @property
    def api_error_code(self) -> str:
        return f"{self.name.upper()}_API_ERROR"

    def is_configured(self) -> bool:
        raise NotImplementedError

    def validate_recipient(self, to: str) -> SendResult | None:
        """Return a failed result for malformed addresses, None otherwise."""
        return None

    def _send(self, payload: SendPayload) -> SendResult:
        raise NotImplementedError

    def send(self, payload: SendPayload) -> SendResult:
        if not self.is_configured():
            return SendResult.fail(
                ErrorCode.PROVIDER_NOT_CONFIGURED.value,
                f"{self.name} is not configured",
            )
        invalid = self.validate_recipient(payload.to)
        if invalid is not None:
            return invalid
        try:
            return self._send(payload)
        except httpx.TimeoutException as e:
            logger.warning("provider_timeout provider=%s error=%s", self.name, str(e)[:200])
            return SendResult.fail(ErrorCode.PROVIDER_TIMEOUT.value, f"{self.name} request timed out", retryable=True)
        except Exception as e:
            logger.exception("provider_send_failed provider=%s", self.name)
            return SendResult.fail(self.api_error_code, str(e)[:200] or "request failed", retryable=True)

    def map_status(self, raw_status: str | None) -> DeliveryStatus:
        return self.status_map.get((raw_status or "").strip().lower(), self.default_status)

    def parse_webhook(self, raw_body: bytes | str | dict, headers: dict | None = None) -> WebhookPayload | None:
        raise NotImplementedError

    def validate_webhook_signature(self, raw_body: bytes | str, signature: str | None) -> bool:
        raise NotImplementedError

    def get_status(self) -> ProviderStatus:
        raise NotImplementedError

    def _unsigned_allowed(self) -> bool:
        """Webhooks without a configured secret pass only outside production."""
        if self.settings.is_production:
            logger.error("webhook_secret_missing provider=%s env=production", self.name)
            return False
        logger.warning("webhook_signature_unchecked provider=%s", self.name)
        return True

    def close(self) -> None:
        self._http.close()


def body_text(raw_body: bytes | str | None) -> str:
    if raw_body is None:
        return ""
    if isinstance(raw_body, bytes):
        return raw_body.decode("utf-8", errors="replace")
    return raw_body
