import types
import unittest
import uuid
from unittest.mock import MagicMock, patch

from fastapi import HTTPException

from core.auth import ensure_same_fiduciary, require_admin, require_fiduciary
from core.config import get_settings
from core.errors import ForbiddenError
from factories import make_request
from models.fiduciary import DataFiduciary, FiduciaryLifecycleState


class AuthDependencyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = object()
        self.fiduciary = DataFiduciary(
            id=uuid.uuid4(),
            name="fiduciary-a",
            is_active=True,
            lifecycle_state=FiduciaryLifecycleState.ACTIVE,
        )
        self.record = types.SimpleNamespace(
            key_hash="hash123",
            data_fiduciary_id=self.fiduciary.id,
            revoked_at=None,
        )
        limiter = MagicMock()
        limiter.allow.return_value = True
        self.limiter_patch = patch("core.auth.RATE_LIMITER", limiter)
        self.limiter = self.limiter_patch.start()
        self.touch_patch = patch("core.auth.touch_api_key")
        self.touch = self.touch_patch.start()

    def tearDown(self) -> None:
        self.limiter_patch.stop()
        self.touch_patch.stop()

    def test_missing_key_returns_401(self) -> None:
        with self.assertRaises(HTTPException) as exc:
            require_fiduciary(make_request({}), self.db)
        self.assertEqual(exc.exception.status_code, 401)
        self.assertEqual(exc.exception.detail, "Missing API key")

    @patch("core.auth.hash_api_key", return_value="hash123")
    @patch("core.auth._get_api_key_record", return_value=None)
    def test_unknown_key_returns_401(self, _mock_get_key, _mock_hash) -> None:
        with self.assertRaises(HTTPException) as exc:
            require_fiduciary(make_request({"Authorization": "Bearer unknown"}), self.db)
        self.assertEqual(exc.exception.status_code, 401)

    @patch("core.auth.hash_api_key", return_value="hash123")
    @patch("core.auth._get_api_key_record")
    def test_revoked_key_returns_401(self, mock_get_key, _mock_hash) -> None:
        mock_get_key.return_value = types.SimpleNamespace(
            key_hash="hash123",
            data_fiduciary_id=self.fiduciary.id,
            revoked_at="2026-01-01T00:00:00Z",
        )
        with self.assertRaises(HTTPException) as exc:
            require_fiduciary(make_request({"Authorization": "Bearer revoked"}), self.db)
        self.assertEqual(exc.exception.status_code, 401)

    @patch("core.auth.hash_api_key", return_value="hash123")
    @patch("core.auth._get_fiduciary")
    @patch("core.auth._get_api_key_record")
    def test_valid_bearer_key_returns_fiduciary(self, mock_get_key, mock_get_fiduciary, _mock_hash) -> None:
        mock_get_key.return_value = self.record
        mock_get_fiduciary.return_value = self.fiduciary
        request = make_request({"Authorization": "Bearer valid"})

        result = require_fiduciary(request, self.db)

        self.assertEqual(result.id, self.fiduciary.id)
        self.assertEqual(request.state.fiduciary_id, self.fiduciary.id)
        self.limiter.allow.assert_called_once_with("apikey:hash123", None)
        self.touch.assert_called_once_with(self.db, "hash123")

    @patch("core.auth.hash_api_key", return_value="hash123")
    @patch("core.auth._get_fiduciary")
    @patch("core.auth._get_api_key_record")
    def test_x_api_key_header_is_accepted(self, mock_get_key, mock_get_fiduciary, _mock_hash) -> None:
        mock_get_key.return_value = self.record
        mock_get_fiduciary.return_value = self.fiduciary
        result = require_fiduciary(make_request({"X-Api-Key": "valid"}), self.db)
        self.assertEqual(result.id, self.fiduciary.id)

    @patch("core.auth.hash_api_key", return_value="hash123")
    @patch("core.auth._get_fiduciary")
    @patch("core.auth._get_api_key_record")
    def test_suspended_fiduciary_returns_403(self, mock_get_key, mock_get_fiduciary, _mock_hash) -> None:
        self.fiduciary.lifecycle_state = FiduciaryLifecycleState.SUSPENDED
        self.fiduciary.is_active = False
        mock_get_key.return_value = self.record
        mock_get_fiduciary.return_value = self.fiduciary
        with self.assertRaises(HTTPException) as exc:
            require_fiduciary(make_request({"Authorization": "Bearer valid"}), self.db)
        self.assertEqual(exc.exception.status_code, 403)
        self.assertEqual(exc.exception.detail, "Access denied")

    @patch("core.auth.hash_api_key", return_value="hash123")
    @patch("core.auth._get_fiduciary")
    @patch("core.auth._get_api_key_record")
    def test_rate_limited_key_returns_429(self, mock_get_key, mock_get_fiduciary, _mock_hash) -> None:
        mock_get_key.return_value = self.record
        mock_get_fiduciary.return_value = self.fiduciary
        self.limiter.allow.return_value = False
        with self.assertRaises(HTTPException) as exc:
            require_fiduciary(make_request({"Authorization": "Bearer valid"}), self.db)
        self.assertEqual(exc.exception.status_code, 429)

    @patch("core.auth.hash_api_key", return_value="hash123")
    @patch("core.auth._get_fiduciary")
    @patch("core.auth._get_api_key_record")
    def test_usage_stamp_failure_does_not_block_auth(self, mock_get_key, mock_get_fiduciary, _mock_hash) -> None:
        mock_get_key.return_value = self.record
        mock_get_fiduciary.return_value = self.fiduciary
        self.touch.side_effect = RuntimeError("database is locked")
        db = MagicMock()
        result = require_fiduciary(make_request({"Authorization": "Bearer valid"}), db)
        self.assertEqual(result.id, self.fiduciary.id)
        db.rollback.assert_called_once()

    def test_mismatched_fiduciary_is_forbidden(self) -> None:
        ensure_same_fiduciary(self.fiduciary, self.fiduciary.id)
        ensure_same_fiduciary(self.fiduciary, None)
        with self.assertRaises(ForbiddenError):
            ensure_same_fiduciary(self.fiduciary, uuid.uuid4())


class AdminAuthTests(unittest.TestCase):
    def test_admin_key_required(self) -> None:
        with self.assertRaises(HTTPException) as exc:
            require_admin(None)
        self.assertEqual(exc.exception.status_code, 401)
        with self.assertRaises(HTTPException) as exc:
            require_admin("wrong-key")
        self.assertEqual(exc.exception.status_code, 401)
        self.assertEqual(require_admin(get_settings().admin_api_key), "admin")


if __name__ == "__main__":
    unittest.main()
