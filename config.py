import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel


class Settings(BaseModel):
    backend_url: str = "http://localhost:8000/api"
    database_url: Optional[str] = None

    log_level: str = "INFO"
    log_file: Optional[str] = None

    scheduler_interval_seconds: float = 60
    scheduler_batch_size: int = 100
    scheduler_concurrency: int = 10
    bulk_concurrency: int = 10
    claim_ttl_seconds: int = 300
    # unclaimed active enrollments older than this are advanced by the scheduler
    stalled_grace_seconds: int = 300
    max_steps_per_advance: int = 100

    # "wait until condition" polling; steps may override both
    condition_poll_interval_minutes: int = 60
    condition_max_wait_days: int = 30

    # run the wake scheduler inside the API process
    embedded_scheduler: bool = False

    business_hours_start: int = 9
    business_hours_end: int = 17

    webhook_timeout_seconds: int = 30
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0

    # "live" dispatches through real providers, "mock" only logs
    sender_mode: str = "mock"
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    default_from_email: str = "noreply@example.com"
    default_from_name: str = "Admissions Team"
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_phone_number: Optional[str] = None
    twilio_whatsapp_number: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        """Builds settings from the environment, loading a .env file first."""
        load_dotenv()
        env_map = {
            "backend_url": "AUTOMATION_BACKEND_URL",
            "database_url": "DATABASE_URL",
            "log_level": "LOG_LEVEL",
            "log_file": "LOG_FILE",
            "scheduler_interval_seconds": "SCHEDULER_INTERVAL_SECONDS",
            "scheduler_batch_size": "SCHEDULER_BATCH_SIZE",
            "scheduler_concurrency": "SCHEDULER_CONCURRENCY",
            "bulk_concurrency": "BULK_CONCURRENCY",
            "claim_ttl_seconds": "CLAIM_TTL_SECONDS",
            "stalled_grace_seconds": "STALLED_GRACE_SECONDS",
            "max_steps_per_advance": "MAX_STEPS_PER_ADVANCE",
            "condition_poll_interval_minutes": "CONDITION_POLL_INTERVAL_MINUTES",
            "condition_max_wait_days": "CONDITION_MAX_WAIT_DAYS",
            "embedded_scheduler": "EMBEDDED_SCHEDULER",
            "business_hours_start": "BUSINESS_HOURS_START",
            "business_hours_end": "BUSINESS_HOURS_END",
            "webhook_timeout_seconds": "WEBHOOK_TIMEOUT_SECONDS",
            "retry_base_delay_seconds": "RETRY_BASE_DELAY_SECONDS",
            "retry_max_delay_seconds": "RETRY_MAX_DELAY_SECONDS",
            "sender_mode": "SENDER_MODE",
            "smtp_host": "SMTP_HOST",
            "smtp_port": "SMTP_PORT",
            "smtp_username": "SMTP_USERNAME",
            "smtp_password": "SMTP_PASSWORD",
            "smtp_use_tls": "SMTP_USE_TLS",
            "default_from_email": "DEFAULT_FROM_EMAIL",
            "default_from_name": "DEFAULT_FROM_NAME",
            "twilio_account_sid": "TWILIO_ACCOUNT_SID",
            "twilio_auth_token": "TWILIO_AUTH_TOKEN",
            "twilio_phone_number": "TWILIO_PHONE_NUMBER",
            "twilio_whatsapp_number": "TWILIO_WHATSAPP_NUMBER",
        }
        values = {field: os.getenv(var) for field, var in env_map.items() if os.getenv(var) is not None}
        return cls(**values)
