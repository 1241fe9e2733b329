import os
import unittest
from unittest.mock import patch

from core.config import Settings, get_settings, reset_settings_cache
from core.logging_utils import log_request, log_structured


PROD_ENV = {
    "ENV": "prod",
    "DATABASE_URL": "sqlite:///prod.db",
    "API_KEY_HASH_SECRET": "api",
    "WEBHOOK_SIGNING_SECRET": "webhook",
    "ADMIN_API_KEY": "admin",
    "CORS_ALLOWED_ORIGINS": "https://example.com",
    "NOTICE_BASE_URL": "https://consent.example.com",
}


class DeploymentSettingsTests(unittest.TestCase):
    def tearDown(self) -> None:
        reset_settings_cache()

    def test_prod_startup_fails_when_required_secret_missing(self) -> None:
        with patch.dict(os.environ, {**PROD_ENV, "ADMIN_API_KEY": ""}, clear=True):
            with self.assertRaisesRegex(RuntimeError, "ADMIN_API_KEY is required in prod"):
                Settings()

    def test_prod_requires_https_notice_url(self) -> None:
        with patch.dict(os.environ, {**PROD_ENV, "NOTICE_BASE_URL": "http://consent.example.com"}, clear=True):
            with self.assertRaisesRegex(RuntimeError, "NOTICE_BASE_URL must use https in prod"):
                Settings()

    def test_prod_settings_load_with_explicit_values(self) -> None:
        with patch.dict(os.environ, PROD_ENV, clear=True):
            settings = Settings()
        self.assertEqual(settings.log_level, "INFO")
        self.assertEqual(settings.cors_allowed_origins, ["https://example.com"])
        self.assertFalse(settings.scheduler_enabled)

    def test_dev_defaults_match_consent_lifecycle_policy(self) -> None:
        with patch.dict(os.environ, {"ENV": "dev"}, clear=True):
            settings = Settings()
        self.assertEqual(settings.consent_request_ttl_minutes, 60)
        self.assertEqual(settings.default_consent_duration_days, 365)
        self.assertEqual(settings.default_renewal_extension_days, 365)
        self.assertEqual(settings.reminder_window_days, 7)
        self.assertEqual(settings.bulk_validation_limit, 100)
        self.assertEqual(settings.notice_base_url, "http://localhost:3000")
        self.assertTrue(bool(settings.admin_api_key))

    def test_invalid_policy_values_are_rejected(self) -> None:
        with patch.dict(os.environ, {"ENV": "dev", "CONSENT_REQUEST_TTL_MINUTES": "0"}, clear=True):
            with self.assertRaisesRegex(RuntimeError, "CONSENT_REQUEST_TTL_MINUTES"):
                Settings()
        with patch.dict(os.environ, {"ENV": "dev", "BULK_VALIDATION_LIMIT": "5000"}, clear=True):
            with self.assertRaisesRegex(RuntimeError, "BULK_VALIDATION_LIMIT"):
                Settings()

    def test_env_misconfiguration_detected_early(self) -> None:
        with patch.dict(os.environ, {"ENV": "production"}, clear=True):
            with self.assertRaisesRegex(RuntimeError, "ENV must be one of"):
                Settings()

    def test_settings_cache_reset_picks_up_new_environment(self) -> None:
        with patch.dict(os.environ, {"ENV": "dev", "REMINDER_WINDOW_DAYS": "3"}, clear=True):
            reset_settings_cache()
            self.assertEqual(get_settings().reminder_window_days, 3)
        with patch.dict(os.environ, {"ENV": "dev", "REMINDER_WINDOW_DAYS": "9"}, clear=True):
            self.assertEqual(get_settings().reminder_window_days, 3)
            reset_settings_cache()
            self.assertEqual(get_settings().reminder_window_days, 9)


class LogRedactionTests(unittest.TestCase):
    def test_contact_details_and_keys_never_logged(self) -> None:
        with self.assertLogs("consent_lifecycle.api", level="INFO") as capture:
            log_request("req-1", "GET", "/health", 200, 1.23)
            log_structured("consent.granted", fiduciary_id="f-1", email="p@example.com", reason="p@example.com")
            log_structured("auth.failed", reason="Bearer clce_secret")
        output = "\n".join(capture.output)
        self.assertIn("event=request.completed", output)
        self.assertIn("fiduciary_id=f-1", output)
        self.assertNotIn("p@example.com", output)
        self.assertNotIn("clce_secret", output)
        self.assertIn("[REDACTED]", output)


if __name__ == "__main__":
    unittest.main()
