import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _resolve_database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        return database_url

    environment = os.getenv("ENVIRONMENT", "").strip().lower()
    if environment == "development":
        return "postgresql+psycopg://localhost:5434/dotmac_approvals"

    raise ValueError(
        "DATABASE_URL is not set. Set DATABASE_URL for non-development "
        "environments or set ENVIRONMENT=development for local defaults."
    )


@dataclass(frozen=True)
class Settings:
    database_url: str = _resolve_database_url()
    db_pool_size: int = int(os.getenv("DB_POOL_SIZE", "5"))
    db_max_overflow: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))
    db_pool_timeout: int = int(os.getenv("DB_POOL_TIMEOUT", "30"))
    db_pool_recycle: int = int(os.getenv("DB_POOL_RECYCLE", "1800"))

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Celery
    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    celery_result_backend: str = os.getenv(
        "CELERY_RESULT_BACKEND", "redis://localhost:6379/1"
    )

    # Approval scheduler
    approval_scheduler_interval_minutes: int = int(
        os.getenv("APPROVAL_SCHEDULER_INTERVAL_MINUTES", "15")
    )
    approval_scheduler_queue: str = os.getenv("APPROVAL_SCHEDULER_QUEUE", "approvals")
    approval_notification_batch_size: int = int(
        os.getenv("APPROVAL_NOTIFICATION_BATCH_SIZE", "100")
    )
    approval_notification_max_retries: int = int(
        os.getenv("APPROVAL_NOTIFICATION_MAX_RETRIES", "3")
    )
    approval_notification_retention_days: int = int(
        os.getenv("APPROVAL_NOTIFICATION_RETENTION_DAYS", "90")
    )
    approval_reminder_interval_hours: int = int(
        os.getenv("APPROVAL_REMINDER_INTERVAL_HOURS", "24")
    )

    # Notification transports
    smtp_host: str = os.getenv("SMTP_HOST", "")
    smtp_port: int = int(os.getenv("SMTP_PORT", "587"))
    smtp_username: str = os.getenv("SMTP_USERNAME", "")
    smtp_password: str = os.getenv("SMTP_PASSWORD", "")
    smtp_use_tls: bool = os.getenv("SMTP_USE_TLS", "true").strip().lower() in {
        "1",
        "true",
        "yes",
        "on",
    }
    smtp_from_address: str = os.getenv("SMTP_FROM_ADDRESS", "approvals@localhost")
    sms_gateway_url: str = os.getenv("SMS_GATEWAY_URL", "")
    sms_gateway_token: str = os.getenv("SMS_GATEWAY_TOKEN", "")
    default_webhook_url: str = os.getenv("DEFAULT_WEBHOOK_URL", "")
    webhook_secret: str = os.getenv("WEBHOOK_SECRET", "")
    transport_timeout_seconds: float = float(
        os.getenv("TRANSPORT_TIMEOUT_SECONDS", "30")
    )
    web_app_url: str = os.getenv("WEB_APP_URL", "http://localhost:3000")

    # Branding
    brand_name: str = os.getenv("BRAND_NAME", "DotMac Approvals")


settings = Settings()
