"""FastAPI dependencies."""
from dataclasses import dataclass
from typing import Generator

import httpx
from fastapi import Request
from sqlalchemy.orm import Session

from apps.backend.config import Settings, get_settings
from apps.backend.database import get_session_factory
from apps.backend.services.messaging import MessagingService
from apps.backend.services.providers import ProviderRegistry
from apps.backend.services.reminders import ReminderService


@dataclass
class Services:
    registry: ProviderRegistry
    messaging: MessagingService
    reminders: ReminderService


def build_services(settings: Settings | None = None, http_client: httpx.Client | None = None) -> Services:
    s = settings or get_settings()
    registry = ProviderRegistry.from_settings(s, http_client)
    messaging = MessagingService(registry, s)
    return Services(registry=registry, messaging=messaging, reminders=ReminderService(messaging, s))


def get_db() -> Generator[Session, None, None]:
    factory = get_session_factory()
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = build_services()
        request.app.state.services = services
    return services


def get_messaging_service(request: Request) -> MessagingService:
    return get_services(request).messaging


def get_reminder_service(request: Request) -> ReminderService:
    return get_services(request).reminders
