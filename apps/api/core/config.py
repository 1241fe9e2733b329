from functools import lru_cache
import logging
import os


logger = logging.getLogger(__name__)


class Settings:
    def __init__(self) -> None:
        self.app_name = os.getenv("APP_NAME", "consent-lifecycle-api")
        self.app_version = os.getenv("APP_VERSION", "0.1.0")
        self.version_hash = os.getenv("VERSION_HASH", os.getenv("GIT_SHA", "unknown"))
        self.env = os.getenv("ENV", "dev").lower()
        if self.env not in {"dev", "test", "staging", "prod"}:
            raise RuntimeError("ENV must be one of: dev, test, staging, prod")
        self.expected_alembic_head = os.getenv("EXPECTED_ALEMBIC_HEAD", "").strip()
        self.log_level = os.getenv("LOG_LEVEL", "DEBUG" if self.env in {"dev", "test"} else "INFO").upper().strip()

        self.database_url = os.getenv("DATABASE_URL")
        if not self.database_url:
            if self.env == "prod":
                raise RuntimeError("DATABASE_URL is required in prod")
            self.database_url = "postgresql+psycopg://postgres@localhost:5433/consent_lifecycle"
            logger.warning("DATABASE_URL not set, using local dev default")

        self.api_key_hash_secret = os.getenv("API_KEY_HASH_SECRET")
        if not self.api_key_hash_secret:
            if self.env == "prod":
                raise RuntimeError("API_KEY_HASH_SECRET is required in prod")
            self.api_key_hash_secret = "dev-only-change-this-secret"
            logger.warning("API_KEY_HASH_SECRET not set, using insecure dev fallback")

        self.webhook_signing_secret = os.getenv("WEBHOOK_SIGNING_SECRET")
        if not self.webhook_signing_secret:
            if self.env == "prod":
                raise RuntimeError("WEBHOOK_SIGNING_SECRET is required in prod")
            self.webhook_signing_secret = "dev-webhook-signing-secret-change-me"
            logger.warning("WEBHOOK_SIGNING_SECRET not set, using insecure dev fallback")

        self.admin_api_key = os.getenv("ADMIN_API_KEY")
        if not self.admin_api_key:
            if self.env == "prod":
                raise RuntimeError("ADMIN_API_KEY is required in prod")
            self.admin_api_key = "dev-admin-key-change-me"
            logger.warning("ADMIN_API_KEY not set, using insecure dev fallback")

        self.notice_base_url = os.getenv("NOTICE_BASE_URL", "http://localhost:3000").rstrip("/")
        self.consent_request_ttl_minutes = int(os.getenv("CONSENT_REQUEST_TTL_MINUTES", "60"))
        self.default_consent_duration_days = int(os.getenv("DEFAULT_CONSENT_DURATION_DAYS", "365"))
        self.default_renewal_extension_days = int(os.getenv("DEFAULT_RENEWAL_EXTENSION_DAYS", "365"))
        self.reminder_window_days = int(os.getenv("REMINDER_WINDOW_DAYS", "7"))
        self.bulk_validation_limit = int(os.getenv("BULK_VALIDATION_LIMIT", "100"))

        self.scheduler_enabled = os.getenv("SCHEDULER_ENABLED", "false").lower() == "true"
        self.scheduler_interval_seconds = int(os.getenv("SCHEDULER_INTERVAL_SECONDS", "3600"))
        self.expiry_batch_size = int(os.getenv("EXPIRY_BATCH_SIZE", "500"))

        self.notification_worker_enabled = os.getenv("NOTIFICATION_WORKER_ENABLED", "false").lower() == "true"
        self.notification_poll_seconds = int(os.getenv("NOTIFICATION_POLL_SECONDS", "10"))
        self.webhook_max_attempts = int(os.getenv("WEBHOOK_MAX_ATTEMPTS", "8"))
        self.webhook_timeout_seconds = int(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))

        self.api_key_rate_limit_per_min = int(os.getenv("API_KEY_RATE_LIMIT_PER_MIN", "300"))
        self.rate_limit_db_path = os.getenv("RATE_LIMIT_DB_PATH", "rate_limit.sqlite3")

        self.db_pool_size = int(os.getenv("DB_POOL_SIZE", "5"))
        self.db_max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "10"))
        self.db_pool_timeout = int(os.getenv("DB_POOL_TIMEOUT", "30"))
        self.db_pool_recycle = int(os.getenv("DB_POOL_RECYCLE", "1800"))

        self.auto_create_schema = os.getenv("AUTO_CREATE_SCHEMA", "false").lower() == "true"
        self.cors_allowed_origins = self._parse_cors_origins()
        self.validate()

    def _parse_cors_origins(self) -> list[str]:
        raw = os.getenv("CORS_ALLOWED_ORIGINS", "")
        if raw.strip():
            return [origin.strip() for origin in raw.split(",") if origin.strip()]
        if self.env == "dev":
            return ["http://localhost:3000", "http://127.0.0.1:3000"]
        return []

    def validate(self) -> None:
        if self.consent_request_ttl_minutes <= 0:
            raise RuntimeError("CONSENT_REQUEST_TTL_MINUTES must be > 0")
        if self.default_consent_duration_days <= 0:
            raise RuntimeError("DEFAULT_CONSENT_DURATION_DAYS must be > 0")
        if self.reminder_window_days < 0:
            raise RuntimeError("REMINDER_WINDOW_DAYS must be >= 0")
        if not 1 <= self.bulk_validation_limit <= 1000:
            raise RuntimeError("BULK_VALIDATION_LIMIT must be between 1 and 1000")
        if self.env == "prod":
            if not self.cors_allowed_origins:
                raise RuntimeError("CORS_ALLOWED_ORIGINS must be explicitly set in prod")
            if self.api_key_rate_limit_per_min <= 0:
                raise RuntimeError("API_KEY_RATE_LIMIT_PER_MIN must be > 0 in prod")
            if self.auto_create_schema:
                raise RuntimeError("AUTO_CREATE_SCHEMA must be false in prod")
            if self.log_level == "DEBUG":
                raise RuntimeError("LOG_LEVEL=DEBUG is not allowed in prod")
            if not self.notice_base_url.startswith("https://"):
                raise RuntimeError("NOTICE_BASE_URL must use https in prod")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def reset_settings_cache() -> None:
    get_settings.cache_clear()
