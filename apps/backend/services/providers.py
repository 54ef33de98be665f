"""Channel → provider wiring."""
from __future__ import annotations

import logging

import httpx

from apps.backend.clients.base import BaseMessageProvider
from apps.backend.clients.firebase import FirebaseProvider
from apps.backend.clients.sendgrid import SendGridProvider
from apps.backend.clients.twilio import TwilioProvider
from apps.backend.config import Settings
from apps.backend.constants import Channel, ProviderType

logger = logging.getLogger(__name__)

CHANNEL_PROVIDERS = {
    Channel.SMS.value: ProviderType.TWILIO.value,
    Channel.EMAIL.value: ProviderType.SENDGRID.value,
    Channel.PUSH.value: ProviderType.FIREBASE.value,
    Channel.IN_APP.value: ProviderType.INTERNAL.value,
}


class ProviderRegistry:
    """Long-lived holder of adapter instances; build once per process."""

    def __init__(self, providers: dict[str, BaseMessageProvider]):
        self._providers = dict(providers)

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.Client | None = None) -> "ProviderRegistry":
        client = http_client or httpx.Client(timeout=settings.provider_timeout_seconds)
        return cls({
            ProviderType.TWILIO.value: TwilioProvider(settings, client),
            ProviderType.SENDGRID.value: SendGridProvider(settings, client),
            ProviderType.FIREBASE.value: FirebaseProvider(settings, client),
        })

    def provider_name(self, channel: str) -> str:
        return CHANNEL_PROVIDERS[Channel(channel).value]

    def get(self, name: str) -> BaseMessageProvider | None:
        return self._providers.get(name)

    def for_channel(self, channel: str) -> BaseMessageProvider | None:
        """None for in-app, which is delivered without an adapter."""
        return self._providers.get(self.provider_name(channel))

    def status(self) -> dict[str, dict]:
        out = {}
        for name, provider in self._providers.items():
            try:
                out[name] = provider.get_status().as_dict()
            except Exception as e:
                logger.exception("provider_status_failed provider=%s", name)
                out[name] = {"healthy": False, "message": str(e)[:200]}
        out[ProviderType.INTERNAL.value] = {"healthy": True, "message": "In-app delivery"}
        return out

    def close(self) -> None:
        closed = set()
        for provider in self._providers.values():
            if id(provider._http) not in closed:
                closed.add(id(provider._http))
                provider.close()
