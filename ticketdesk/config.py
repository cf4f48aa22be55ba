from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache
from typing import List


def _split_csv(value: str) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database - PostgreSQL for production, SQLite for development
    database_url: str = Field(
        default="sqlite:///./ticketdesk.db",
        alias="DATABASE_URL"
    )

    # Operator tokens (issued by the identity provider, verified here)
    secret_key: str = Field(default="dev-secret-key-at-least-32-characters-long-for-development", alias="SECRET_KEY")
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    # CORS - Frontend URLs from environment (comma-separated)
    allowed_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173",
        alias="ALLOWED_ORIGINS"
    )

    # ==============================================
    # Bokun (booking platform)
    # ==============================================
    bokun_base_url: str = Field(default="https://api.bokun.io", alias="BOKUN_BASE_URL")
    bokun_access_key: str = Field(default="", alias="BOKUN_ACCESS_KEY")
    bokun_secret_key: str = Field(default="", alias="BOKUN_SECRET_KEY")

    # Webhook HMAC secret. Empty disables verification.
    bokun_webhook_secret: str = Field(default="", alias="BOKUN_WEBHOOK_SECRET")
    # Reject unsigned webhooks when no secret is configured
    bokun_require_signature: bool = Field(default=False, alias="BOKUN_REQUIRE_SIGNATURE")

    bokun_timeout_seconds: int = Field(default=20, alias="BOKUN_TIMEOUT_SECONDS")
    # Pacing delay before every upstream call
    bokun_request_delay_ms: int = Field(default=150, alias="BOKUN_REQUEST_DELAY_MS")
    bokun_page_size: int = Field(default=100, alias="BOKUN_PAGE_SIZE")
    sync_lookback_days: int = Field(default=30, alias="SYNC_LOOKBACK_DAYS")
    sync_horizon_days: int = Field(default=180, alias="SYNC_HORIZON_DAYS")

    # Products we sell tickets for
    eligible_product_ids: str = Field(
        default="961802,961801,962885,962886,1130528,1135055",
        alias="ELIGIBLE_PRODUCT_IDS"
    )
    audio_guide_product_id: str = Field(default="961802", alias="AUDIO_GUIDE_PRODUCT_ID")
    audio_guide_rate_ids: str = Field(default="2263305", alias="AUDIO_GUIDE_RATE_IDS")
    audio_guide_rate_codes: str = Field(default="TG2", alias="AUDIO_GUIDE_RATE_CODES")

    # Webhook processing
    webhook_max_retries: int = Field(default=3, alias="WEBHOOK_MAX_RETRIES")
    webhook_retry_batch_size: int = Field(default=50, alias="WEBHOOK_RETRY_BATCH_SIZE")
    webhook_stale_pending_minutes: int = Field(default=5, alias="WEBHOOK_STALE_PENDING_MINUTES")

    # Reconciliation
    sync_interval_minutes: int = Field(default=15, alias="SYNC_INTERVAL_MINUTES")
    sync_batch_limit: int = Field(default=100, alias="SYNC_BATCH_LIMIT")
    sync_enrichment_limit: int = Field(default=50, alias="SYNC_ENRICHMENT_LIMIT")

    # ==============================================
    # Twilio (WhatsApp + SMS)
    # ==============================================
    twilio_account_sid: str = Field(default="", alias="TWILIO_ACCOUNT_SID")
    twilio_auth_token: str = Field(default="", alias="TWILIO_AUTH_TOKEN")
    twilio_whatsapp_from: str = Field(default="", alias="TWILIO_WHATSAPP_FROM")
    twilio_sms_from: str = Field(default="", alias="TWILIO_SMS_FROM")
    twilio_status_callback_url: str = Field(default="", alias="TWILIO_STATUS_CALLBACK_URL")
    twilio_validate_signatures: bool = Field(default=True, alias="TWILIO_VALIDATE_SIGNATURES")
    whatsapp_excluded_prefixes: str = Field(default="+86,+81,+82,+7,+1", alias="WHATSAPP_EXCLUDED_PREFIXES")
    whatsapp_fallback_enabled: bool = Field(default=True, alias="WHATSAPP_FALLBACK_ENABLED")

    # ==============================================
    # Email (SendGrid)
    # ==============================================
    sendgrid_api_key: str = Field(default="", alias="SENDGRID_API_KEY")
    mail_from_email: str = Field(default="tickets@example.com", alias="MAIL_FROM_EMAIL")
    mail_from_name: str = Field(default="Ticket Desk", alias="MAIL_FROM_NAME")
    mail_reply_to: str = Field(default="", alias="MAIL_REPLY_TO")

    # Messages
    message_max_retries: int = Field(default=3, alias="MESSAGE_MAX_RETRIES")
    message_retry_batch_size: int = Field(default=50, alias="MESSAGE_RETRY_BATCH_SIZE")
    message_retry_interval_minutes: int = Field(default=10, alias="MESSAGE_RETRY_INTERVAL_MINUTES")

    # Short download links
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL")
    download_token_expiry_days: int = Field(default=7, alias="DOWNLOAD_TOKEN_EXPIRY_DAYS")

    # ==============================================
    # Blob storage for ticket PDFs
    # ==============================================
    storage_driver: str = Field(default="local", alias="STORAGE_DRIVER")  # local | s3
    storage_local_path: str = Field(default="./storage", alias="STORAGE_LOCAL_PATH")
    s3_bucket: str = Field(default="", alias="S3_BUCKET")
    s3_region: str = Field(default="eu-south-1", alias="S3_REGION")
    s3_endpoint_url: str = Field(default="", alias="S3_ENDPOINT_URL")
    s3_access_key_id: str = Field(default="", alias="S3_ACCESS_KEY_ID")
    s3_secret_access_key: str = Field(default="", alias="S3_SECRET_ACCESS_KEY")

    # ==============================================
    # Scheduler (runs inside FastAPI process or worker.py)
    # ==============================================
    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    scheduler_timezone: str = Field(default="Europe/Rome", alias="SCHEDULER_TIMEZONE")
    maintenance_time: str = Field(default="03:00", alias="MAINTENANCE_TIME")
    worker_poll_interval: int = Field(default=30, alias="WORKER_POLL_INTERVAL")  # seconds
    booking_retention_enabled: bool = Field(default=False, alias="BOOKING_RETENTION_ENABLED")
    booking_retention_months: int = Field(default=2, alias="BOOKING_RETENTION_MONTHS")

    # Unsent-ticket reminders (WhatsApp to admins, SCHEDULER_TIMEZONE)
    ticket_reminder_times: str = Field(default="07:00,11:00,14:00", alias="TICKET_REMINDER_TIMES")
    admin_whatsapp_numbers: str = Field(default="", alias="ADMIN_WHATSAPP_NUMBERS")
    admin_dashboard_url: str = Field(default="", alias="ADMIN_DASHBOARD_URL")

    @field_validator('secret_key')
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        """Validate SECRET_KEY is strong enough"""
        if not v:
            raise ValueError("SECRET_KEY is required and cannot be empty")
        if len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")
        return v

    @field_validator('storage_driver')
    @classmethod
    def validate_storage_driver(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ("local", "s3"):
            raise ValueError("STORAGE_DRIVER must be 'local' or 's3'")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origins(self) -> List[str]:
        """
        Parse allowed origins from comma-separated string.
        Returns a list suitable for CORSMiddleware.
        """
        origins = []
        for origin in _split_csv(self.allowed_origins):
            origin = origin.rstrip("/")
            if origin not in origins:
                origins.append(origin)
        return origins or ["http://localhost:5173"]

    @property
    def eligible_product_id_list(self) -> List[str]:
        return _split_csv(self.eligible_product_ids)

    @property
    def audio_guide_rate_id_list(self) -> List[str]:
        return _split_csv(self.audio_guide_rate_ids)

    @property
    def audio_guide_rate_code_list(self) -> List[str]:
        return [code.upper() for code in _split_csv(self.audio_guide_rate_codes)]

    @property
    def whatsapp_excluded_prefix_list(self) -> List[str]:
        return _split_csv(self.whatsapp_excluded_prefixes)

    @property
    def admin_whatsapp_number_list(self) -> List[str]:
        return _split_csv(self.admin_whatsapp_numbers)

    @property
    def has_bokun_credentials(self) -> bool:
        return bool(self.bokun_access_key and self.bokun_secret_key)

    @property
    def has_twilio_credentials(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token)

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Initialize settings on module load
settings = get_settings()
