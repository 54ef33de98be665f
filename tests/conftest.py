"""Shared fixtures: in-memory DB, fake providers, seeded clinic data."""
import threading
from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from apps.backend.clients.base import BaseMessageProvider, ProviderStatus, SendResult
from apps.backend.config import Settings
from apps.backend.database import Base, get_test_engine
from apps.backend.models import Appointment, Clinic, Patient, Practitioner
from apps.backend.services.messaging import MessagingService
from apps.backend.services.providers import ProviderRegistry
from apps.backend.services.reminders import ReminderService
from apps.backend.utils.clock import utcnow


class FakeProvider(BaseMessageProvider):
    """Records payloads; replies with queued results, then with success."""

    def __init__(self, name: str, settings: Settings):
        super().__init__(settings)
        self.name = name
        self.sent = []
        self.queued: list[SendResult] = []
        self._lock = threading.Lock()

    def is_configured(self) -> bool:
        return True

    def _send(self, payload):
        with self._lock:
            self.sent.append(payload)
            if self.queued:
                return self.queued.pop(0)
            return SendResult.ok(f"{self.name}-{len(self.sent)}")

    def get_status(self) -> ProviderStatus:
        return ProviderStatus(True, "fake")


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        app_env="test",
        bulk_max_workers=4,
        twilio_phone_number="+15550000000",
        sendgrid_from_email="clinic@example.com",
    )


@pytest.fixture
def test_db_session():
    engine = get_test_engine()
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def fake_providers(settings):
    return {
        "twilio": FakeProvider("twilio", settings),
        "sendgrid": FakeProvider("sendgrid", settings),
        "firebase": FakeProvider("firebase", settings),
    }


@pytest.fixture
def messaging(settings, fake_providers):
    return MessagingService(ProviderRegistry(fake_providers), settings)


@pytest.fixture
def reminders(messaging, settings):
    return ReminderService(messaging, settings)


@pytest.fixture
def clinic(test_db_session):
    c = Clinic(name="Smile Ortho", phone="555-0100", address="1 Main St", timezone="UTC")
    test_db_session.add(c)
    test_db_session.commit()
    test_db_session.refresh(c)
    return c


@pytest.fixture
def patient(test_db_session, clinic):
    p = Patient(
        clinic_id=clinic.id,
        first_name="Ana",
        last_name="Silva",
        email="ana@example.com",
        phone="(555) 123-4567",
        device_token="fcm-token-0123456789abcdef",
    )
    test_db_session.add(p)
    test_db_session.commit()
    test_db_session.refresh(p)
    return p


@pytest.fixture
def practitioner(test_db_session, clinic):
    pr = Practitioner(clinic_id=clinic.id, first_name="John", last_name="Doe")
    test_db_session.add(pr)
    test_db_session.commit()
    test_db_session.refresh(pr)
    return pr


@pytest.fixture
def make_appointment(test_db_session, clinic, patient, practitioner):
    def _make(hours_from_now: float = 72, **kw):
        appt = Appointment(
            clinic_id=clinic.id,
            patient_id=kw.pop("patient_id", patient.id),
            practitioner_id=practitioner.id,
            start_time=kw.pop("start_time", utcnow() + timedelta(hours=hours_from_now)),
            **kw,
        )
        test_db_session.add(appt)
        test_db_session.commit()
        test_db_session.refresh(appt)
        return appt
    return _make
