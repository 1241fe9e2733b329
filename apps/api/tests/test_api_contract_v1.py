import unittest
import uuid
from unittest.mock import patch

from fastapi.testclient import TestClient

from core.auth import require_fiduciary
from core.contracts import (
    API_VERSION_HEADER,
    API_VERSION_V1,
    DEFAULT_API_VERSION,
    ErrorCode,
    WebhookEvent,
    error_body,
    frozen_contract,
    paginated,
    resolve_api_version,
    success,
)
from core.deps import get_consent_engine, get_db
from factories import Clock, add_fiduciary, build_engine, memory_session_factory
from main import app


class ApiContractV1Tests(unittest.TestCase):
    def test_v1_response_envelopes_match_frozen_schema_exactly(self) -> None:
        self.assertEqual(success({"ok": True}), {"data": {"ok": True}})
        self.assertEqual(
            error_body(ErrorCode.NOT_FOUND, "Not found", "req-1"),
            {
                "error": {
                    "code": "NOT_FOUND",
                    "message": "Not found",
                    "request_id": "req-1",
                }
            },
        )
        self.assertEqual(
            paginated([{"id": 1}], limit=50, offset=0, count=1),
            {
                "data": [{"id": 1}],
                "meta": {
                    "limit": 50,
                    "offset": 0,
                    "count": 1,
                },
            },
        )

    def test_contract_lists_every_webhook_event(self) -> None:
        contract = frozen_contract(API_VERSION_V1)
        self.assertEqual(
            contract["webhook_events"],
            [
                "consent.expired",
                "consent.granted",
                "consent.renewal_initiated",
                "consent.renewed",
                "consent.updated",
                "consent.withdrawn",
            ],
        )
        self.assertEqual(len(contract["webhook_events"]), len(WebhookEvent))
        self.assertIn("sorted", contract["consent_text_hash"])
        with self.assertRaises(ValueError):
            frozen_contract("v2")

    def test_version_selection_is_deterministic(self) -> None:
        self.assertEqual(DEFAULT_API_VERSION, API_VERSION_V1)
        self.assertEqual(resolve_api_version(None), "v1")
        self.assertEqual(resolve_api_version("V1"), "v1")
        with self.assertRaisesRegex(ValueError, "Unsupported API version: v2"):
            resolve_api_version("v2")
        with self.assertRaisesRegex(ValueError, "API version header is empty"):
            resolve_api_version("   ")

    def test_contract_header_name_is_frozen(self) -> None:
        self.assertEqual(API_VERSION_HEADER, "X-API-Version")


class ResponseEnvelopeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.SessionLocal = memory_session_factory()
        self.db = self.SessionLocal()
        self.fiduciary = add_fiduciary(self.db, "fiduciary-envelope")

        def override_db():
            yield self.db

        app.dependency_overrides[get_db] = override_db
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.db.close()
        self.engine.dispose()

    def _validate_params(self) -> dict[str, str]:
        return {"artifact_id": str(uuid.uuid4()), "data_fiduciary_id": str(self.fiduciary.id)}

    def test_success_body_is_wrapped_in_data(self) -> None:
        response = self.client.get("/health", headers={"X-Request-Id": "req-health"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"data": {"status": "ok"}})
        self.assertEqual(response.headers["X-Request-Id"], "req-health")
        self.assertEqual(response.headers[API_VERSION_HEADER], "v1")

    def test_missing_credentials_use_error_envelope(self) -> None:
        response = self.client.get(
            "/consents/validate",
            params=self._validate_params(),
            headers={"X-Request-Id": "req-auth"},
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(
            response.json(),
            {"error": {"code": "AUTH_MISSING", "message": "Missing API key", "request_id": "req-auth"}},
        )

    def test_readiness_reports_each_check(self) -> None:
        with patch("routers.health.database_reachable", return_value=True):
            response = self.client.get("/ready")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json()["data"],
            {
                "status": "ready",
                "checks": {
                    "db": "ok",
                    "migration_head": "skipped",
                    "notification_worker": "skipped",
                    "scheduler": "skipped",
                },
            },
        )

        with patch("routers.health.database_reachable", return_value=False):
            response = self.client.get("/ready")
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["checks"]["db"], "failed")

    def test_unsupported_version_header_is_rejected(self) -> None:
        response = self.client.get("/health", headers={API_VERSION_HEADER: "v2"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_domain_error_maps_to_status_and_code(self) -> None:
        app.dependency_overrides[require_fiduciary] = lambda: self.fiduciary
        app.dependency_overrides[get_consent_engine] = lambda: build_engine(Clock())
        response = self.client.get("/consents/validate", params=self._validate_params())
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "NOT_FOUND")

    def test_request_validation_failure_uses_error_envelope(self) -> None:
        app.dependency_overrides[require_fiduciary] = lambda: self.fiduciary
        response = self.client.post("/consents/initiate", json={"user_id": "user-1"})
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["message"], "Request validation failed")


if __name__ == "__main__":
    unittest.main()
