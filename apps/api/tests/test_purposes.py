import unittest

from sqlalchemy import select

from core.errors import ConflictError, ForbiddenError, ValidationFailedError
from core.purposes import (
    current_version,
    delete_purpose,
    purpose_history,
    set_purpose_active,
    update_purpose,
)
from factories import Clock, add_fiduciary, add_purpose, build_engine, grant, memory_session_factory
from models.consent import ConsentArtifactPurpose
from models.purpose import PurposeVersion


class PurposeVersioningTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.SessionLocal = memory_session_factory()
        self.db = self.SessionLocal()
        self.clock = Clock()
        self.fiduciary = add_fiduciary(self.db, "fiduciary-purposes")
        self.other = add_fiduciary(self.db, "fiduciary-other")

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def test_create_publishes_version_one(self) -> None:
        purpose, version = add_purpose(
            self.db,
            self.fiduciary,
            "Marketing",
            self.clock,
            data_fields=["email", "email", " phone "],
            retention_period_days=180,
        )
        self.assertEqual(version.version_number, 1)
        self.assertTrue(version.is_current)
        self.assertEqual(version.title, "Marketing")
        self.assertEqual(purpose.data_fields, ["email", "phone"])
        self.assertEqual(current_version(self.db, purpose.id).id, version.id)

    def test_tracked_change_publishes_new_version_and_demotes_previous(self) -> None:
        purpose, first = add_purpose(self.db, self.fiduciary, "Analytics", self.clock)
        self.clock.advance(days=1)

        _, second = update_purpose(
            self.db,
            self.fiduciary.id,
            purpose.id,
            {"description": "Product analytics"},
            clock=self.clock,
        )

        self.assertIsNotNone(second)
        self.assertEqual(second.version_number, 2)
        self.db.refresh(first)
        self.assertFalse(first.is_current)
        self.assertIsNotNone(first.deprecated_at)
        current = list(
            self.db.scalars(
                select(PurposeVersion).where(
                    PurposeVersion.purpose_id == purpose.id,
                    PurposeVersion.is_current.is_(True),
                )
            ).all()
        )
        self.assertEqual([row.id for row in current], [second.id])

    def test_cosmetic_change_does_not_publish_version(self) -> None:
        purpose, _ = add_purpose(self.db, self.fiduciary, "Support", self.clock)
        _, new_version = update_purpose(self.db, self.fiduciary.id, purpose.id, {"display_order": 5})
        self.assertIsNone(new_version)
        self.assertEqual(current_version(self.db, purpose.id).version_number, 1)

    def test_reordered_data_fields_are_not_a_change(self) -> None:
        purpose, _ = add_purpose(self.db, self.fiduciary, "Billing", self.clock, data_fields=["a", "b"])
        _, new_version = update_purpose(self.db, self.fiduciary.id, purpose.id, {"data_fields": ["b", "a"]})
        self.assertIsNone(new_version)

    def test_requires_renewal_needs_period(self) -> None:
        with self.assertRaises(ValidationFailedError):
            add_purpose(self.db, self.fiduciary, "Loyalty", self.clock, requires_renewal=True)

    def test_other_fiduciary_cannot_update(self) -> None:
        purpose, _ = add_purpose(self.db, self.fiduciary, "Private", self.clock)
        with self.assertRaises(ForbiddenError):
            update_purpose(self.db, self.other.id, purpose.id, {"title": "Taken"})

    def test_history_lists_versions_newest_first_with_consent_counts(self) -> None:
        purpose, first = add_purpose(self.db, self.fiduciary, "Research", self.clock)
        engine = build_engine(self.clock)
        grant(self.db, engine, self.fiduciary, [purpose], self.clock)
        self.clock.advance(hours=1)
        update_purpose(self.db, self.fiduciary.id, purpose.id, {"title": "Research v2"}, clock=self.clock)

        history = purpose_history(self.db, self.fiduciary.id, purpose.id)
        self.assertEqual([entry["version_number"] for entry in history], [2, 1])
        self.assertEqual(history[0]["status"], "current")
        self.assertEqual(history[1]["status"], "deprecated")
        self.assertEqual(history[1]["consent_count"], 1)
        self.assertEqual(history[0]["consent_count"], 0)
        self.assertEqual(history[1]["id"], first.id)

    def test_existing_binding_keeps_old_version_after_update(self) -> None:
        purpose, first = add_purpose(self.db, self.fiduciary, "Personalisation", self.clock)
        engine = build_engine(self.clock)
        artifact = grant(self.db, engine, self.fiduciary, [purpose], self.clock)
        update_purpose(self.db, self.fiduciary.id, purpose.id, {"legal_basis": "contract"}, clock=self.clock)

        binding = self.db.scalar(
            select(ConsentArtifactPurpose).where(ConsentArtifactPurpose.artifact_id == artifact.id)
        )
        self.assertEqual(binding.purpose_version_id, first.id)

    def test_delete_referenced_purpose_conflicts(self) -> None:
        purpose, _ = add_purpose(self.db, self.fiduciary, "Referenced", self.clock)
        grant(self.db, build_engine(self.clock), self.fiduciary, [purpose], self.clock)
        with self.assertRaises(ConflictError):
            delete_purpose(self.db, self.fiduciary.id, purpose.id)

    def test_delete_unreferenced_purpose_removes_versions(self) -> None:
        purpose, _ = add_purpose(self.db, self.fiduciary, "Disposable", self.clock)
        purpose_id = purpose.id
        delete_purpose(self.db, self.fiduciary.id, purpose_id)
        remaining = self.db.scalars(select(PurposeVersion).where(PurposeVersion.purpose_id == purpose_id)).all()
        self.assertEqual(list(remaining), [])

    def test_deactivate_is_cosmetic(self) -> None:
        purpose, _ = add_purpose(self.db, self.fiduciary, "Retired", self.clock)
        updated = set_purpose_active(self.db, self.fiduciary.id, purpose.id, False)
        self.assertFalse(updated.is_active)
        self.assertEqual(current_version(self.db, purpose.id).version_number, 1)


if __name__ == "__main__":
    unittest.main()
