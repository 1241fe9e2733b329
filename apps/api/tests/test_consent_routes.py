import unittest
import uuid
from datetime import timedelta

from fastapi import HTTPException

from core.api_keys import hash_api_key, touch_api_key
from core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailedError
from core.scheduler import reset_results
from core.timeutils import utc_now
from factories import Clock, add_fiduciary, build_engine, make_request, memory_session_factory
from models.fiduciary import DataFiduciary
from routers.admin import (
    create_api_key,
    create_fiduciary,
    disable_fiduciary,
    get_api_keys,
    list_fiduciaries,
    reactivate_fiduciary,
    revoke_api_key,
    run_expiry,
)
from routers.consents import (
    confirm_renewal,
    get_consent,
    get_consent_history,
    get_notice,
    initiate_consent,
    renew_consent,
    submit_consent,
    validate_bulk,
    validate_consent,
    withdraw_consent,
)
from routers.notifications import WebhookConfigIn, get_webhook_config, list_webhook_logs, put_webhook_config
from routers.purposes import (
    create_new_purpose,
    delete_unused_purpose,
    get_purpose,
    get_purpose_history,
    patch_purpose,
)
from schemas.admin import ApiKeyCreateIn, FiduciaryCreateIn
from schemas.consent import (
    BulkValidateIn,
    ConsentInitiateIn,
    ConsentSubmitIn,
    RenewalConfirmIn,
    RenewIn,
    WithdrawIn,
)
from schemas.purpose import PurposeCreateIn, PurposePatchIn


class ConsentRouteTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.SessionLocal = memory_session_factory()
        self.db = self.SessionLocal()
        self.clock = Clock(utc_now())
        self.consent_engine = build_engine(self.clock)
        self.fiduciary = add_fiduciary(self.db, "fiduciary-routes")
        self.other = add_fiduciary(self.db, "fiduciary-routes-other")

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _purpose(self, title: str = "Marketing", **fields):
        return create_new_purpose(
            payload=PurposeCreateIn(title=title, **fields),
            db=self.db,
            fiduciary=self.fiduciary,
        )

    def _grant(self, purpose_ids: list[uuid.UUID], user_id: str = "user-1"):
        initiated = initiate_consent(
            payload=ConsentInitiateIn(
                data_fiduciary_id=self.fiduciary.id,
                user_id=user_id,
                purposes=purpose_ids,
                email="p@example.com",
            ),
            db=self.db,
            fiduciary=self.fiduciary,
        )
        get_notice(cms_request_id=initiated.cms_request_id, language=None, db=self.db)
        return submit_consent(
            payload=ConsentSubmitIn(
                cms_request_id=initiated.cms_request_id,
                selected_purposes=purpose_ids,
                agree=True,
            ),
            request=make_request({"User-Agent": "pytest-browser"}),
            db=self.db,
            engine=self.consent_engine,
        )

    def test_consent_flow_through_routes(self) -> None:
        purpose = self._purpose(retention_period_days=30)
        self.assertTrue(purpose.version_published)
        self.assertEqual(purpose.current_version.version_number, 1)

        submitted = self._grant([purpose.id])
        self.assertEqual(submitted.status, "ACTIVE")
        self.assertEqual(len(submitted.hash), 64)
        self.assertEqual([item.version_number for item in submitted.purposes], [1])

        self.clock.advance(seconds=1)
        validation = validate_consent(
            artifact_id=submitted.artifact_id,
            data_fiduciary_id=self.fiduciary.id,
            purpose_id=purpose.id,
            db=self.db,
            fiduciary=self.fiduciary,
            engine=self.consent_engine,
        )
        self.assertTrue(validation["is_valid"])

        detail = get_consent(
            data_fiduciary_id=self.fiduciary.id,
            artifact_id=submitted.artifact_id,
            db=self.db,
            fiduciary=self.fiduciary,
            engine=self.consent_engine,
        )
        self.assertTrue(detail.integrity_verified)
        self.assertEqual(detail.user_id, "user-1")

        self.clock.advance(seconds=1)
        withdrawn = withdraw_consent(
            data_fiduciary_id=self.fiduciary.id,
            artifact_id=submitted.artifact_id,
            payload=WithdrawIn(reason="no longer needed"),
            db=self.db,
            fiduciary=self.fiduciary,
            engine=self.consent_engine,
        )
        self.assertEqual(withdrawn.status, "WITHDRAWN")

        history = get_consent_history(
            data_fiduciary_id=self.fiduciary.id,
            artifact_id=submitted.artifact_id,
            limit=50,
            offset=0,
            db=self.db,
            fiduciary=self.fiduciary,
            engine=self.consent_engine,
        )
        self.assertEqual(history["meta"], {"limit": 50, "offset": 0, "count": 3})
        self.assertEqual([row.action for row in history["data"]], ["GRANT", "VALIDATE", "WITHDRAW"])

    def test_initiate_for_other_fiduciary_is_forbidden(self) -> None:
        purpose = self._purpose()
        with self.assertRaises(ForbiddenError):
            initiate_consent(
                payload=ConsentInitiateIn(
                    data_fiduciary_id=self.other.id,
                    user_id="user-1",
                    purposes=[purpose.id],
                ),
                db=self.db,
                fiduciary=self.fiduciary,
            )

    def test_bulk_validation_route_wraps_results(self) -> None:
        purpose = self._purpose()
        submitted = self._grant([purpose.id])
        response = validate_bulk(
            payload=BulkValidateIn(
                data_fiduciary_id=self.fiduciary.id,
                validations=[{"artifact_id": submitted.artifact_id}, {"artifact_id": uuid.uuid4()}],
            ),
            db=self.db,
            fiduciary=self.fiduciary,
            engine=self.consent_engine,
        )
        self.assertEqual([item["is_valid"] for item in response["results"]], [True, False])
        self.assertEqual(response["results"][1]["status"], "ERROR")

    def test_renewal_routes(self) -> None:
        purpose = self._purpose(retention_period_days=30)
        submitted = self._grant([purpose.id])

        pending = renew_consent(
            payload=RenewIn(artifact_id=submitted.artifact_id, requested_extension="+30d"),
            db=self.db,
            fiduciary=self.fiduciary,
            engine=self.consent_engine,
        )
        self.assertEqual(pending.status, "RENEWAL_PENDING")
        self.assertEqual(pending.extend_by_days, 30)

        confirmed = confirm_renewal(
            renewal_id=pending.renewal_id,
            payload=RenewalConfirmIn(agree=True),
            db=self.db,
            engine=self.consent_engine,
        )
        self.assertEqual(confirmed.outcome, "EXTENDED")
        self.assertEqual(confirmed.result_artifact_id, submitted.artifact_id)

    def test_submit_route_records_client_evidence(self) -> None:
        purpose = self._purpose()
        submitted = self._grant([purpose.id])
        detail = get_consent(
            data_fiduciary_id=self.fiduciary.id,
            artifact_id=submitted.artifact_id,
            db=self.db,
            fiduciary=self.fiduciary,
            engine=self.consent_engine,
        )
        self.assertEqual(detail.metadata["ip_address"], "127.0.0.1")
        self.assertEqual(detail.metadata["user_agent"], "pytest-browser")
        self.assertEqual(detail.metadata["language_code"], "en")

    def test_renew_route_by_principal(self) -> None:
        marketing = self._purpose(title="Marketing", retention_period_days=30)
        analytics = self._purpose(title="Analytics", retention_period_days=30)
        first = self._grant([marketing.id])
        second = self._grant([analytics.id])

        batch = renew_consent(
            payload=RenewIn(user_id="user-1", extend_by_days=30),
            db=self.db,
            fiduciary=self.fiduciary,
            engine=self.consent_engine,
        )
        self.assertEqual(
            {item.artifact_id for item in batch.renewals},
            {first.artifact_id, second.artifact_id},
        )
        self.assertEqual({item.status for item in batch.renewals}, {"RENEWAL_PENDING"})

        with self.assertRaises(NotFoundError):
            renew_consent(
                payload=RenewIn(user_id="someone-else"),
                db=self.db,
                fiduciary=self.fiduciary,
                engine=self.consent_engine,
            )
        with self.assertRaises(ValidationFailedError):
            renew_consent(payload=RenewIn(), db=self.db, fiduciary=self.fiduciary, engine=self.consent_engine)

    def test_purpose_routes_version_on_tracked_change(self) -> None:
        purpose = self._purpose(title="Analytics")
        cosmetic = patch_purpose(
            purpose_id=purpose.id,
            payload=PurposePatchIn(display_order=3),
            db=self.db,
            fiduciary=self.fiduciary,
        )
        self.assertFalse(cosmetic.version_published)
        self.assertEqual(cosmetic.current_version.version_number, 1)

        tracked = patch_purpose(
            purpose_id=purpose.id,
            payload=PurposePatchIn(title="Analytics and research"),
            db=self.db,
            fiduciary=self.fiduciary,
        )
        self.assertTrue(tracked.version_published)
        self.assertEqual(tracked.current_version.version_number, 2)

        history = get_purpose_history(purpose_id=purpose.id, db=self.db, fiduciary=self.fiduciary)
        self.assertEqual([entry.version_number for entry in history], [2, 1])
        fetched = get_purpose(purpose_id=purpose.id, db=self.db, fiduciary=self.fiduciary)
        self.assertEqual(fetched.title, "Analytics and research")
        with self.assertRaises(ForbiddenError):
            get_purpose(purpose_id=purpose.id, db=self.db, fiduciary=self.other)

    def test_referenced_purpose_cannot_be_deleted_via_route(self) -> None:
        purpose = self._purpose()
        self._grant([purpose.id])
        with self.assertRaises(ConflictError):
            delete_unused_purpose(purpose_id=purpose.id, db=self.db, fiduciary=self.fiduciary)

        unused = self._purpose(title="Unused")
        self.assertEqual(
            delete_unused_purpose(purpose_id=unused.id, db=self.db, fiduciary=self.fiduciary),
            {"deleted": True},
        )

    def test_webhook_config_routes(self) -> None:
        updated = put_webhook_config(
            payload=WebhookConfigIn(url="https://hooks.example.com/consent"),
            db=self.db,
            fiduciary=self.fiduciary,
        )
        self.assertEqual(updated.url, "https://hooks.example.com/consent")
        self.assertTrue(updated.secret_masked.startswith("****"))
        self.assertEqual(get_webhook_config(fiduciary=self.fiduciary).url, "https://hooks.example.com/consent")

        logs = list_webhook_logs(
            limit=50,
            offset=0,
            event_type=None,
            success=None,
            db=self.db,
            fiduciary=self.fiduciary,
        )
        self.assertEqual(logs, {"data": [], "meta": {"limit": 50, "offset": 0, "count": 0}})


class AdminRouteTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_results()
        self.engine, self.SessionLocal = memory_session_factory()
        self.db = self.SessionLocal()
        self.clock = Clock(utc_now())

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()
        reset_results()

    def test_create_fiduciary_and_issue_key(self) -> None:
        created = create_fiduciary(payload=FiduciaryCreateIn(name="acme"), db=self.db)
        self.assertTrue(created.is_active)

        key = create_api_key(fiduciary_id=created.id, payload=ApiKeyCreateIn(label="primary"), db=self.db)
        self.assertTrue(key.api_key.startswith("clce_"))
        self.assertEqual(key.data_fiduciary_id, created.id)

        now = utc_now()
        self.assertTrue(touch_api_key(self.db, hash_api_key(key.api_key), now))
        self.assertFalse(touch_api_key(self.db, hash_api_key(key.api_key), now + timedelta(seconds=30)))
        self.assertTrue(touch_api_key(self.db, hash_api_key(key.api_key), now + timedelta(minutes=2)))

        self.assertEqual(revoke_api_key(api_key_id=key.id, db=self.db), {"revoked": True})
        listed_keys = get_api_keys(fiduciary_id=created.id, db=self.db)
        self.assertEqual([item.label for item in listed_keys], ["primary"])
        self.assertIsNotNone(listed_keys[0].last_used_at)
        self.assertIsNotNone(listed_keys[0].revoked_at)

        listed = list_fiduciaries(limit=50, offset=0, db=self.db)
        self.assertEqual(listed["meta"]["count"], 1)

    def test_duplicate_fiduciary_name_conflicts(self) -> None:
        create_fiduciary(payload=FiduciaryCreateIn(name="acme"), db=self.db)
        with self.assertRaises(HTTPException) as exc:
            create_fiduciary(payload=FiduciaryCreateIn(name="acme"), db=self.db)
        self.assertEqual(exc.exception.status_code, 409)

    def test_disabled_fiduciary_cannot_be_reactivated(self) -> None:
        fiduciary = add_fiduciary(self.db, "fiduciary-disable")
        disabled = disable_fiduciary(fiduciary_id=fiduciary.id, db=self.db)
        self.assertFalse(disabled.is_active)
        self.assertFalse(self.db.get(DataFiduciary, fiduciary.id).can_write)
        with self.assertRaises(HTTPException) as exc:
            reactivate_fiduciary(fiduciary_id=fiduciary.id, db=self.db)
        self.assertEqual(exc.exception.status_code, 409)

    def test_manual_expiry_run_returns_job_result(self) -> None:
        result = run_expiry(db=self.db, engine=build_engine(self.clock))
        self.assertEqual(result.job, "expiry")
        self.assertEqual((result.selected, result.succeeded, result.failed), (0, 0, 0))
        self.assertIsNone(result.error)


if __name__ == "__main__":
    unittest.main()
