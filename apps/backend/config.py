"""Application settings."""
from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import ConfigDict


class Settings(BaseSettings):
    model_config = ConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")
    app_env: str = "development"
    debug: bool = True
    public_base_url: str | None = None
    cron_secret: str = ""

    database_url: str | None = None
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "clinic_messaging"
    postgres_user: str = "clinic_messaging"
    postgres_password: str = "changeme"

    redis_host: str = "localhost"
    redis_port: int = 6379
    rq_messaging_queue_name: str = "messaging"
    sweep_lock_ttl_seconds: int = 240

    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    twilio_webhook_url: str = ""  # public URL Twilio signs callbacks against
    twilio_api_base_url: str = "https://api.twilio.com"

    sendgrid_api_key: str = ""
    sendgrid_from_email: str = ""
    sendgrid_from_name: str = "Clinic"
    sendgrid_webhook_verification_key: str = ""
    sendgrid_api_url: str = "https://api.sendgrid.com/v3/mail/send"

    firebase_project_id: str = ""
    firebase_client_email: str = ""
    firebase_private_key: str = ""  # PEM, PEM with escaped \n, or base64 PEM
    firebase_webhook_secret: str = ""

    provider_timeout_seconds: float = 15.0

    scheduled_batch_size: int = 100
    retry_batch_size: int = 50
    reminder_batch_size: int = 100
    bulk_max_workers: int = 10
    inbound_thread_window_days: int = 7

    @property
    def is_production(self) -> bool:
        return (self.app_env or "").strip().lower() in ("production", "prod")


@lru_cache
def get_settings() -> Settings:
    return Settings()
