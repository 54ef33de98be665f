"""Firebase Cloud Messaging (HTTP v1) push client."""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import threading
import time
from datetime import datetime, timezone

from jose import jwt

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
from apps.backend.utils.phone import mask_address

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
TOKEN_LIFETIME_SECONDS = 3600
TOKEN_EXPIRY_SKEW_SECONDS = 60
MIN_DEVICE_TOKEN_LENGTH = 20

NON_RETRYABLE_CODES = frozenset({"UNREGISTERED", "INVALID_ARGUMENT", "SENDER_ID_MISMATCH"})

FIREBASE_STATUS_MAP = {
    "received": DeliveryStatus.DELIVERED,
    "delivered": DeliveryStatus.DELIVERED,
    "opened": DeliveryStatus.OPENED,
    "read": DeliveryStatus.OPENED,
    "clicked": DeliveryStatus.CLICKED,
    "failed": DeliveryStatus.FAILED,
    "error": DeliveryStatus.FAILED,
}


class AccessTokenCache:
    """OAuth access token with explicit expiry, shared across sender threads."""

    def __init__(self, skew_seconds: int = TOKEN_EXPIRY_SKEW_SECONDS, clock=time.time):
        self._skew = skew_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._token: str | None = None
        self._expires_at = 0.0

    def get(self) -> str | None:
        with self._lock:
            if self._token and self._clock() < self._expires_at - self._skew:
                return self._token
            return None

    def put(self, token: str, expires_in: int) -> None:
        with self._lock:
            self._token = token
            self._expires_at = self._clock() + max(0, int(expires_in))

    def clear(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = 0.0


def normalize_private_key(raw: str) -> str:
    """Accept a PEM, a PEM with literal \\n sequences, or a base64-encoded PEM."""
    key = (raw or "").strip()
    if not key:
        return ""
    if "-----BEGIN" not in key:
        try:
            decoded = base64.b64decode(key, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return key
        if "-----BEGIN" in decoded:
            key = decoded
    return key.replace("\\n", "\n").strip()


class FirebaseProvider(BaseMessageProvider):
    name = "firebase"
    status_map = FIREBASE_STATUS_MAP
    default_status = DeliveryStatus.SENT

    def __init__(self, settings, http_client=None, token_cache: AccessTokenCache | None = None):
        super().__init__(settings, http_client)
        self.token_cache = token_cache or AccessTokenCache()
        self._private_key = normalize_private_key(settings.firebase_private_key)

    def is_configured(self) -> bool:
        s = self.settings
        return bool(s.firebase_project_id and s.firebase_client_email and self._private_key)

    def validate_recipient(self, to: str) -> SendResult | None:
        if not to or len(to.strip()) < MIN_DEVICE_TOKEN_LENGTH:
            return SendResult.fail(ErrorCode.INVALID_DEVICE_TOKEN.value, "Invalid device token")
        return None

    def _service_account_assertion(self) -> str:
        now = int(time.time())
        claims = {
            "iss": self.settings.firebase_client_email,
            "scope": FCM_SCOPE,
            "aud": TOKEN_URL,
            "iat": now,
            "exp": now + TOKEN_LIFETIME_SECONDS,
        }
        return jwt.encode(claims, self._private_key, algorithm="RS256")

    def get_access_token(self) -> tuple[str | None, str | None]:
        cached = self.token_cache.get()
        if cached:
            return cached, None
        try:
            assertion = self._service_account_assertion()
            r = self._http.post(TOKEN_URL, data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion})
            data = r.json()
        except Exception as e:
            logger.warning("firebase_token_fetch_failed error=%s", str(e)[:200])
            return None, str(e)[:200]
        token = data.get("access_token") if isinstance(data, dict) else None
        if r.status_code >= 400 or not token:
            err = (data.get("error_description") or data.get("error")) if isinstance(data, dict) else None
            logger.warning("firebase_token_rejected status=%s", r.status_code)
            return None, err or f"http_{r.status_code}"
        self.token_cache.put(token, int(data.get("expires_in") or TOKEN_LIFETIME_SECONDS))
        return token, None

    def build_request(self, payload: SendPayload) -> dict:
        data = {k: str(v) for k, v in (payload.data or {}).items()}
        if payload.message_id:
            data["messageId"] = str(payload.message_id)
        return {
            "message": {
                "token": payload.to.strip(),
                "notification": {
                    "title": payload.subject or "New Message",
                    "body": payload.body,
                },
                "data": data,
                "android": {
                    "priority": "high",
                    "notification": {"sound": "default"},
                },
                "apns": {
                    "payload": {"aps": {"sound": "default", "badge": 1}},
                },
            }
        }

    def _send(self, payload: SendPayload) -> SendResult:
        token, err = self.get_access_token()
        if not token:
            return SendResult.fail(ErrorCode.AUTH_FAILED.value, f"Firebase auth failed: {err}", retryable=True)
        url = f"https://fcm.googleapis.com/v1/projects/{self.settings.firebase_project_id}/messages:send"
        r = self._http.post(url, json=self.build_request(payload), headers={"Authorization": f"Bearer {token}"})
        try:
            data = r.json()
        except ValueError:
            data = {}
        if r.status_code >= 400:
            error = data.get("error") or {}
            details = error.get("details") or [{}]
            code = (details[0] or {}).get("errorCode") or error.get("status") or f"HTTP_{r.status_code}"
            if r.status_code == 401:
                self.token_cache.clear()
            logger.warning("firebase_send_failed token=%s code=%s", mask_address(payload.to), code)
            return SendResult.fail(
                code,
                error.get("message") or "FCM request failed",
                retryable=code not in NON_RETRYABLE_CODES,
            )
        name = data.get("name") or ""
        provider_id = name.rsplit("/", 1)[-1] or None
        logger.info("firebase_sent provider_id=%s", provider_id)
        return SendResult.ok(provider_id)

    def parse_webhook(self, raw_body: bytes | str | dict, headers: dict | None = None) -> WebhookPayload | None:
        if isinstance(raw_body, dict):
            data = raw_body
        else:
            try:
                data = json.loads(body_text(raw_body) or "null")
            except ValueError:
                return None
        if not isinstance(data, dict) or not data.get("messageId") or not data.get("status"):
            return None
        ts = utcnow()
        raw_ts = data.get("timestamp")
        if raw_ts:
            try:
                parsed = datetime.fromisoformat(str(raw_ts).replace("Z", "+00:00"))
                ts = parsed.astimezone(timezone.utc).replace(tzinfo=None) if parsed.tzinfo else parsed
            except ValueError:
                pass
        return WebhookPayload(
            provider_message_id=str(data["messageId"]),
            status=self.map_status(data.get("status")),
            timestamp=ts,
            status_details=data.get("error") or data.get("details"),
            raw=data,
        )

    def validate_webhook_signature(self, raw_body: bytes | str, signature: str | None) -> bool:
        secret = self.settings.firebase_webhook_secret
        if not secret:
            return self._unsigned_allowed()
        if not signature:
            return False
        provided = signature.strip()
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]
        expected = hmac.new(secret.encode("utf-8"), body_text(raw_body).encode("utf-8"), hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected.encode("ascii"), provided.lower().encode("utf-8"))

    def get_status(self) -> ProviderStatus:
        s = self.settings
        details = {
            "hasProjectId": bool(s.firebase_project_id),
            "hasClientEmail": bool(s.firebase_client_email),
            "hasPrivateKey": bool(self._private_key),
            "hasWebhookSecret": bool(s.firebase_webhook_secret),
        }
        if not self.is_configured():
            return ProviderStatus(False, "Firebase credentials not configured", details)
        token, err = self.get_access_token()
        if not token:
            return ProviderStatus(False, f"Firebase authentication failed: {err}", details)
        return ProviderStatus(True, "Firebase authenticated", details)
