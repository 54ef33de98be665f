"""Firebase push adapter: service-account auth, send, webhook."""
import base64
import hashlib
import hmac
import json
from urllib.parse import parse_qs

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwt

from apps.backend.clients.base import SendPayload
from apps.backend.clients.firebase import (
    TOKEN_URL,
    AccessTokenCache,
    FirebaseProvider,
    normalize_private_key,
)
from apps.backend.config import Settings
from apps.backend.constants import DeliveryStatus, ErrorCode

DEVICE = "fcm-token-0123456789abcdef"


@pytest.fixture(scope="module")
def rsa_keys():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


def _provider(private_pem, handler, **kw):
    base = dict(
        _env_file=None,
        app_env="test",
        firebase_project_id="clinic-app",
        firebase_client_email="push@clinic-app.iam.gserviceaccount.com",
        firebase_private_key=private_pem,
    )
    base.update(kw)
    return FirebaseProvider(Settings(**base), httpx.Client(transport=httpx.MockTransport(handler)))


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.mark.timeout(10)
def test_token_cache_expiry_with_skew():
    clock = FakeClock()
    cache = AccessTokenCache(skew_seconds=60, clock=clock)
    cache.put("tok", 3600)
    assert cache.get() == "tok"
    clock.now += 3600 - 61
    assert cache.get() == "tok"
    clock.now += 2
    assert cache.get() is None
    cache.put("tok2", 3600)
    cache.clear()
    assert cache.get() is None


@pytest.mark.timeout(10)
def test_normalize_private_key_variants(rsa_keys):
    private_pem, _ = rsa_keys
    escaped = private_pem.replace("\n", "\\n")
    encoded = base64.b64encode(private_pem.encode()).decode()
    assert normalize_private_key(escaped) == private_pem.strip()
    assert normalize_private_key(encoded) == private_pem.strip()
    assert normalize_private_key("") == ""


@pytest.mark.timeout(10)
def test_send_exchanges_signed_assertion_and_caches_token(rsa_keys):
    private_pem, public_pem = rsa_keys
    calls = {"token": 0, "send": []}

    def handler(request: httpx.Request):
        if str(request.url) == TOKEN_URL:
            calls["token"] += 1
            form = parse_qs(request.content.decode())
            claims = jwt.decode(form["assertion"][0], public_pem, algorithms=["RS256"], audience=TOKEN_URL)
            assert claims["iss"] == "push@clinic-app.iam.gserviceaccount.com"
            assert "firebase.messaging" in claims["scope"]
            return httpx.Response(200, json={"access_token": "ya29.token", "expires_in": 3600})
        calls["send"].append((request.headers.get("authorization"), json.loads(request.content)))
        return httpx.Response(200, json={"name": "projects/clinic-app/messages/0:1700000000%abc"})

    provider = _provider(private_pem, handler)
    payload = SendPayload(to=DEVICE, body="Your results are ready", message_id="7", data={"kind": "results"})
    first = provider.send(payload)
    second = provider.send(payload)

    assert first.success is True
    assert first.provider_message_id == "0:1700000000%abc"
    assert second.success is True
    assert calls["token"] == 1
    auth, body = calls["send"][0]
    assert auth == "Bearer ya29.token"
    assert body["message"]["token"] == DEVICE
    assert body["message"]["notification"]["title"] == "New Message"
    assert body["message"]["data"] == {"kind": "results", "messageId": "7"}


@pytest.mark.timeout(10)
def test_unregistered_token_is_not_retryable(rsa_keys):
    private_pem, _ = rsa_keys

    def handler(request):
        if str(request.url) == TOKEN_URL:
            return httpx.Response(200, json={"access_token": "ya29.token", "expires_in": 3600})
        return httpx.Response(404, json={"error": {
            "status": "NOT_FOUND",
            "message": "Requested entity was not found.",
            "details": [{"errorCode": "UNREGISTERED"}],
        }})

    result = _provider(private_pem, handler).send(SendPayload(to=DEVICE, body="x"))
    assert result.error.code == "UNREGISTERED"
    assert result.error.retryable is False


@pytest.mark.timeout(10)
def test_token_rejection_is_retryable_auth_failure(rsa_keys):
    private_pem, _ = rsa_keys

    def handler(request):
        return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Invalid JWT"})

    provider = _provider(private_pem, handler)
    result = provider.send(SendPayload(to=DEVICE, body="x"))
    assert result.error.code == ErrorCode.AUTH_FAILED.value
    assert result.error.retryable is True
    assert provider.get_status().healthy is False


@pytest.mark.timeout(10)
def test_short_device_token_rejected(rsa_keys):
    private_pem, _ = rsa_keys
    result = _provider(private_pem, lambda r: httpx.Response(200)).send(SendPayload(to="short", body="x"))
    assert result.error.code == ErrorCode.INVALID_DEVICE_TOKEN.value


@pytest.mark.timeout(10)
def test_webhook_parsing_and_signature(rsa_keys):
    private_pem, _ = rsa_keys
    provider = _provider(private_pem, lambda r: httpx.Response(200), firebase_webhook_secret="push-secret")
    body = b'{"messageId":"0:1700000000%abc","status":"opened","timestamp":"2024-05-01T10:00:00Z"}'
    payload = provider.parse_webhook(body)
    assert payload.provider_message_id == "0:1700000000%abc"
    assert payload.status == DeliveryStatus.OPENED
    assert payload.timestamp.isoformat() == "2024-05-01T10:00:00"
    assert provider.parse_webhook(b'{"status":"opened"}') is None

    digest = hmac.new(b"push-secret", body, hashlib.sha256).hexdigest()
    assert provider.validate_webhook_signature(body, digest) is True
    assert provider.validate_webhook_signature(body, f"sha256={digest}") is True
    assert provider.validate_webhook_signature(body, "sha256=deadbeef") is False
    assert provider.validate_webhook_signature(body, "sïgnäture") is False
