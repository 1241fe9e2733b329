import unittest
import uuid

from sqlalchemy import func, select

from core.config import get_settings
from core.consent_requests import build_notice, expire_stale_requests, initiate
from core.errors import ConflictError, ExpiredStateError, NotFoundError, ValidationFailedError
from factories import Clock, add_fiduciary, add_purpose, build_engine, memory_session_factory, open_request
from models.consent import ConsentArtifact, ConsentRequest, ConsentRequestStatus
from models.purpose import PurposeCategory


class ConsentRequestTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.SessionLocal = memory_session_factory()
        self.db = self.SessionLocal()
        self.clock = Clock()
        self.fiduciary = add_fiduciary(self.db, "fiduciary-requests")
        self.other = add_fiduciary(self.db, "fiduciary-requests-other")
        self.marketing, _ = add_purpose(
            self.db, self.fiduciary, "Marketing", self.clock, retention_period_days=90
        )
        self.essential, _ = add_purpose(
            self.db, self.fiduciary, "Essential", self.clock, is_mandatory=True, retention_period_days=30
        )

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def test_initiate_returns_notice_url_and_ttl(self) -> None:
        result = initiate(
            self.db,
            self.fiduciary,
            external_user_id="user-42",
            purpose_ids=[self.marketing.id],
            ttl_minutes=15,
            clock=self.clock,
        )
        settings = get_settings()
        self.assertEqual(result["status"], "INITIATED")
        self.assertEqual(result["notice_url"], f"{settings.notice_base_url}/consents/{result['cms_request_id']}")
        self.assertEqual((result["expires_at"] - self.clock.now).total_seconds(), 15 * 60)

    def test_initiate_rejects_foreign_purpose(self) -> None:
        foreign, _ = add_purpose(self.db, self.other, "Foreign", self.clock)
        with self.assertRaises(ValidationFailedError):
            initiate(
                self.db,
                self.fiduciary,
                external_user_id="user-1",
                purpose_ids=[foreign.id],
                clock=self.clock,
            )

    def test_initiate_rejects_empty_and_duplicate_purposes(self) -> None:
        with self.assertRaises(ValidationFailedError):
            initiate(self.db, self.fiduciary, external_user_id="user-1", purpose_ids=[], clock=self.clock)
        with self.assertRaises(ValidationFailedError):
            initiate(
                self.db,
                self.fiduciary,
                external_user_id="user-1",
                purpose_ids=[self.marketing.id, self.marketing.id],
                clock=self.clock,
            )

    def test_notice_groups_purposes_and_marks_viewed(self) -> None:
        category = PurposeCategory(data_fiduciary_id=self.fiduciary.id, name="Communications", display_order=1)
        self.db.add(category)
        self.db.commit()
        grouped, _ = add_purpose(
            self.db, self.fiduciary, "Newsletter", self.clock, purpose_category_id=category.id
        )
        request_id = open_request(self.db, self.fiduciary, [self.marketing, self.essential, grouped], self.clock)

        notice = build_notice(self.db, request_id, clock=self.clock)

        self.assertEqual(notice["status"], "VIEWED")
        self.assertEqual([group["name"] for group in notice["categories"]], ["General", "Communications"])
        self.assertEqual(notice["mandatory_purposes"], [self.essential.id])
        self.assertEqual(notice["retention_period_days"], 365)
        self.assertEqual(notice["data_fiduciary"]["name"], "fiduciary-requests")
        stored = self.db.get(ConsentRequest, request_id)
        self.db.refresh(stored)
        self.assertEqual(stored.status, ConsentRequestStatus.VIEWED)

    def test_notice_after_ttl_expires_request(self) -> None:
        request_id = open_request(self.db, self.fiduciary, [self.marketing], self.clock)
        self.clock.advance(minutes=61)

        with self.assertRaises(ExpiredStateError):
            build_notice(self.db, request_id, clock=self.clock)
        stored = self.db.get(ConsentRequest, request_id)
        self.db.refresh(stored)
        self.assertEqual(stored.status, ConsentRequestStatus.EXPIRED)

    def test_submit_after_ttl_is_expired(self) -> None:
        request_id = open_request(self.db, self.fiduciary, [self.marketing], self.clock)
        self.clock.advance(minutes=get_settings().consent_request_ttl_minutes + 1)
        with self.assertRaises(ExpiredStateError):
            build_engine(self.clock).submit(self.db, request_id, [self.marketing.id], agree=True)

        stored = self.db.get(ConsentRequest, request_id)
        self.db.refresh(stored)
        self.assertEqual(stored.status, ConsentRequestStatus.EXPIRED)
        self.assertIsNone(stored.artifact_id)
        self.assertEqual(self.db.scalar(select(func.count()).select_from(ConsentArtifact)), 0)

    def test_notice_for_submitted_request_conflicts(self) -> None:
        request_id = open_request(self.db, self.fiduciary, [self.marketing], self.clock)
        build_engine(self.clock).submit(self.db, request_id, [self.marketing.id], agree=True)
        with self.assertRaises(ConflictError):
            build_notice(self.db, request_id, clock=self.clock)

    def test_unknown_request_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            build_notice(self.db, uuid.uuid4(), clock=self.clock)

    def test_expire_stale_requests_only_touches_open_past_ttl(self) -> None:
        stale = open_request(self.db, self.fiduciary, [self.marketing], self.clock)
        self.clock.advance(minutes=30)
        fresh = open_request(self.db, self.fiduciary, [self.marketing], self.clock)
        self.clock.advance(minutes=45)

        self.assertEqual(expire_stale_requests(self.db, self.clock.now), 1)
        self.assertEqual(self.db.get(ConsentRequest, stale).status, ConsentRequestStatus.EXPIRED)
        self.assertEqual(self.db.get(ConsentRequest, fresh).status, ConsentRequestStatus.INITIATED)


if __name__ == "__main__":
    unittest.main()
