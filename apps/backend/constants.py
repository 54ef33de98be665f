"""Enums and limits shared by messaging and reminders."""
from enum import Enum


class Channel(str, Enum):
    SMS = "SMS"
    EMAIL = "EMAIL"
    PUSH = "PUSH"
    IN_APP = "IN_APP"


class Direction(str, Enum):
    OUTBOUND = "OUTBOUND"
    INBOUND = "INBOUND"


class MessageStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    BOUNCED = "BOUNCED"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    OPENED = "OPENED"
    CLICKED = "CLICKED"
    FAILED = "FAILED"
    BOUNCED = "BOUNCED"
    UNSUBSCRIBED = "UNSUBSCRIBED"
    COMPLAINED = "COMPLAINED"


class ProviderType(str, Enum):
    TWILIO = "twilio"
    SENDGRID = "sendgrid"
    FIREBASE = "firebase"
    INTERNAL = "internal"


class ReminderStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    SENDING = "SENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    SKIPPED = "SKIPPED"


class ReminderType(str, Enum):
    STANDARD = "STANDARD"
    CONFIRMATION = "CONFIRMATION"
    FINAL = "FINAL"
    PRE_VISIT = "PRE_VISIT"
    FIRST_VISIT = "FIRST_VISIT"
    FOLLOW_UP = "FOLLOW_UP"


class AppointmentStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    CHECKED_IN = "CHECKED_IN"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


class ConfirmationStatus(str, Enum):
    UNCONFIRMED = "UNCONFIRMED"
    CONFIRMED = "CONFIRMED"
    DECLINED = "DECLINED"


class ConfirmationResponse(str, Enum):
    CONFIRMED = "CONFIRMED"
    DECLINED = "DECLINED"
    RESCHEDULE_REQUESTED = "RESCHEDULE_REQUESTED"


class ErrorCode(str, Enum):
    PATIENT_NOT_FOUND = "PATIENT_NOT_FOUND"
    NO_RECIPIENT = "NO_RECIPIENT"
    NO_PHONE = "NO_PHONE"
    NO_EMAIL = "NO_EMAIL"
    PROVIDER_NOT_CONFIGURED = "PROVIDER_NOT_CONFIGURED"
    PROVIDER_NOT_AVAILABLE = "PROVIDER_NOT_AVAILABLE"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    INVALID_PHONE_NUMBER = "INVALID_PHONE_NUMBER"
    INVALID_EMAIL = "INVALID_EMAIL"
    INVALID_DEVICE_TOKEN = "INVALID_DEVICE_TOKEN"
    AUTH_FAILED = "AUTH_FAILED"
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    TEMPLATE_EMPTY = "TEMPLATE_EMPTY"
    TIME_PASSED = "TIME_PASSED"
    APPOINTMENT_NOT_FOUND = "APPOINTMENT_NOT_FOUND"
    INVALID_STATUS = "INVALID_STATUS"
    SCHEDULE_ERROR = "SCHEDULE_ERROR"
    SEND_ERROR = "SEND_ERROR"


MAX_RETRIES = 3
RETRY_BASE_DELAY_SECONDS = 60
RETRY_BACKOFF_FACTOR = 4

# Message statuses a webhook may promote a message to.
WEBHOOK_TERMINAL_STATUSES = frozenset({
    MessageStatus.DELIVERED.value,
    MessageStatus.FAILED.value,
    MessageStatus.BOUNCED.value,
})

# Ordering used to keep delivery rows from moving backwards.
DELIVERY_STATUS_RANK = {
    DeliveryStatus.PENDING.value: 0,
    DeliveryStatus.SENT.value: 1,
    DeliveryStatus.DELIVERED.value: 2,
    DeliveryStatus.FAILED.value: 2,
    DeliveryStatus.BOUNCED.value: 2,
    DeliveryStatus.OPENED.value: 3,
    DeliveryStatus.CLICKED.value: 4,
    DeliveryStatus.UNSUBSCRIBED.value: 5,
    DeliveryStatus.COMPLAINED.value: 5,
}

RETRYABLE_CHANNELS = (Channel.SMS.value, Channel.EMAIL.value)

INACTIVE_APPOINTMENT_STATUSES = (
    AppointmentStatus.CANCELLED.value,
    AppointmentStatus.COMPLETED.value,
    AppointmentStatus.NO_SHOW.value,
)

ACTIVE_REMINDER_STATUSES = (ReminderStatus.SCHEDULED.value, ReminderStatus.SENDING.value)


def retry_backoff_seconds(retry_count: int) -> int:
    """60s, 240s, 960s for retry_count 0, 1, 2."""
    return RETRY_BASE_DELAY_SECONDS * (RETRY_BACKOFF_FACTOR ** max(0, int(retry_count or 0)))
