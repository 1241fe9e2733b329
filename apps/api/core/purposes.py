"""Versioned purpose store.

A purpose row is the mutable head; every change to a tracked field publishes a
new immutable ``PurposeVersion`` and demotes the previous one. Consent artifacts
bind to versions, so edits never alter what an existing grant covered.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailedError
from core.failure_modes import record_operation_failure
from core.logging_utils import log_structured
from core.observability import METRIC_PURPOSE_VERSION_PUBLISHED, increment_metric
from core.timeutils import utc_now
from models.consent import ConsentArtifactPurpose
from models.purpose import Purpose, PurposeCategory, PurposeVersion

TRACKED_FIELDS = (
    "title",
    "description",
    "purpose_category_id",
    "legal_basis",
    "retention_period_days",
    "is_mandatory",
    "requires_renewal",
    "renewal_period_days",
    "data_fields",
    "processing_activities",
)
SET_FIELDS = frozenset({"data_fields", "processing_activities"})
COSMETIC_FIELDS = ("display_order", "is_active")


def _normalize_list(values: list[str] | None) -> list[str]:
    if not values:
        return []
    cleaned = [str(value).strip() for value in values if str(value).strip()]
    return list(dict.fromkeys(cleaned))


def _differs(field: str, current: Any, proposed: Any) -> bool:
    if field in SET_FIELDS:
        return set(current or []) != set(proposed or [])
    return current != proposed


def _validate_policy(
    *,
    retention_period_days: int | None,
    requires_renewal: bool,
    renewal_period_days: int | None,
) -> None:
    if retention_period_days is not None and retention_period_days <= 0:
        raise ValidationFailedError("retention_period_days must be positive")
    if renewal_period_days is not None and renewal_period_days <= 0:
        raise ValidationFailedError("renewal_period_days must be positive")
    if requires_renewal and renewal_period_days is None:
        raise ValidationFailedError("renewal_period_days is required when requires_renewal is true")


def _check_category(db: Session, fiduciary_id: uuid.UUID, category_id: uuid.UUID | None) -> None:
    if category_id is None:
        return
    category = db.get(PurposeCategory, category_id)
    if category is None:
        raise NotFoundError("Purpose category not found")
    if category.data_fiduciary_id != fiduciary_id:
        raise ValidationFailedError("Purpose category belongs to another data fiduciary")


def _snapshot(purpose: Purpose, version_number: int, now: datetime, language_code: str) -> PurposeVersion:
    return PurposeVersion(
        purpose_id=purpose.id,
        version_number=version_number,
        title=purpose.title,
        description=purpose.description,
        legal_basis=purpose.legal_basis,
        data_fields=list(purpose.data_fields or []),
        retention_period_days=purpose.retention_period_days,
        language_code=language_code,
        is_current=True,
        published_at=now,
    )


def get_owned_purpose(db: Session, fiduciary_id: uuid.UUID, purpose_id: uuid.UUID) -> Purpose:
    purpose = db.get(Purpose, purpose_id)
    if purpose is None:
        raise NotFoundError("Purpose not found")
    if purpose.data_fiduciary_id != fiduciary_id:
        raise ForbiddenError("Purpose belongs to another data fiduciary")
    return purpose


def current_version(db: Session, purpose_id: uuid.UUID) -> PurposeVersion:
    version = db.scalar(
        select(PurposeVersion).where(
            PurposeVersion.purpose_id == purpose_id,
            PurposeVersion.is_current.is_(True),
        )
    )
    if version is None:
        raise NotFoundError("Purpose has no current version")
    return version


def create_purpose(
    db: Session,
    fiduciary_id: uuid.UUID,
    *,
    title: str,
    description: str | None = None,
    purpose_category_id: uuid.UUID | None = None,
    legal_basis: str | None = None,
    data_fields: list[str] | None = None,
    processing_activities: list[str] | None = None,
    retention_period_days: int | None = None,
    is_mandatory: bool = False,
    requires_renewal: bool = False,
    renewal_period_days: int | None = None,
    display_order: int = 0,
    language_code: str = "en",
    clock: Callable[[], datetime] = utc_now,
) -> tuple[Purpose, PurposeVersion]:
    if not title or not title.strip():
        raise ValidationFailedError("title is required")
    _validate_policy(
        retention_period_days=retention_period_days,
        requires_renewal=requires_renewal,
        renewal_period_days=renewal_period_days,
    )
    _check_category(db, fiduciary_id, purpose_category_id)

    now = clock()
    try:
        purpose = Purpose(
            data_fiduciary_id=fiduciary_id,
            purpose_category_id=purpose_category_id,
            title=title.strip(),
            description=description,
            legal_basis=legal_basis,
            data_fields=_normalize_list(data_fields),
            processing_activities=_normalize_list(processing_activities),
            retention_period_days=retention_period_days,
            is_mandatory=is_mandatory,
            requires_renewal=requires_renewal,
            renewal_period_days=renewal_period_days,
            display_order=display_order,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        db.add(purpose)
        db.flush()
        version = _snapshot(purpose, 1, now, language_code)
        db.add(version)
        db.commit()
    except Exception as exc:
        db.rollback()
        record_operation_failure(
            operation="purpose.create",
            exc=exc,
            fiduciary_id=fiduciary_id,
            resource_type="purpose",
        )
        raise
    increment_metric(METRIC_PURPOSE_VERSION_PUBLISHED, reason="created")
    log_structured(
        "purpose.created",
        fiduciary_id=str(fiduciary_id),
        purpose_id=str(purpose.id),
        version_number=1,
    )
    return purpose, version


def update_purpose(
    db: Session,
    fiduciary_id: uuid.UUID,
    purpose_id: uuid.UUID,
    changes: dict[str, Any],
    *,
    clock: Callable[[], datetime] = utc_now,
) -> tuple[Purpose, PurposeVersion | None]:
    """Apply ``changes`` to a purpose.

    Returns the purpose and the newly published version, or ``None`` when only
    cosmetic fields changed.
    """
    purpose = get_owned_purpose(db, fiduciary_id, purpose_id)

    proposed = dict(changes)
    for field in SET_FIELDS:
        if field in proposed:
            proposed[field] = _normalize_list(proposed[field])
    if "title" in proposed:
        if not proposed["title"] or not str(proposed["title"]).strip():
            raise ValidationFailedError("title cannot be empty")
        proposed["title"] = str(proposed["title"]).strip()

    tracked_changes = {
        field: proposed[field]
        for field in TRACKED_FIELDS
        if field in proposed and _differs(field, getattr(purpose, field), proposed[field])
    }
    cosmetic_changes = {
        field: proposed[field]
        for field in COSMETIC_FIELDS
        if field in proposed and proposed[field] is not None and getattr(purpose, field) != proposed[field]
    }

    _validate_policy(
        retention_period_days=tracked_changes.get("retention_period_days", purpose.retention_period_days),
        requires_renewal=tracked_changes.get("requires_renewal", purpose.requires_renewal),
        renewal_period_days=tracked_changes.get("renewal_period_days", purpose.renewal_period_days),
    )
    if "purpose_category_id" in tracked_changes:
        _check_category(db, fiduciary_id, tracked_changes["purpose_category_id"])

    if not tracked_changes and not cosmetic_changes:
        return purpose, None

    now = clock()
    new_version: PurposeVersion | None = None
    try:
        for field, value in {**tracked_changes, **cosmetic_changes}.items():
            setattr(purpose, field, value)
        purpose.updated_at = now

        if tracked_changes:
            previous = current_version(db, purpose.id)
            max_number = db.scalar(
                select(func.max(PurposeVersion.version_number)).where(PurposeVersion.purpose_id == purpose.id)
            ) or 0
            previous.is_current = False
            previous.deprecated_at = now
            db.flush()
            new_version = _snapshot(purpose, max_number + 1, now, previous.language_code)
            db.add(new_version)
        db.commit()
    except Exception as exc:
        db.rollback()
        record_operation_failure(
            operation="purpose.update",
            exc=exc,
            fiduciary_id=fiduciary_id,
            resource_type="purpose",
            resource_id=str(purpose_id),
        )
        raise

    if new_version is not None:
        increment_metric(METRIC_PURPOSE_VERSION_PUBLISHED, reason="updated")
        log_structured(
            "purpose.version_published",
            fiduciary_id=str(fiduciary_id),
            purpose_id=str(purpose.id),
            version_number=new_version.version_number,
        )
    return purpose, new_version


def set_purpose_active(
    db: Session,
    fiduciary_id: uuid.UUID,
    purpose_id: uuid.UUID,
    active: bool,
) -> Purpose:
    purpose, _ = update_purpose(db, fiduciary_id, purpose_id, {"is_active": active})
    return purpose


def version_consent_counts(db: Session, version_ids: list[uuid.UUID]) -> dict[uuid.UUID, int]:
    if not version_ids:
        return {}
    rows = db.execute(
        select(ConsentArtifactPurpose.purpose_version_id, func.count())
        .where(ConsentArtifactPurpose.purpose_version_id.in_(version_ids))
        .group_by(ConsentArtifactPurpose.purpose_version_id)
    ).all()
    return {row[0]: int(row[1]) for row in rows}


def purpose_history(db: Session, fiduciary_id: uuid.UUID, purpose_id: uuid.UUID) -> list[dict[str, Any]]:
    get_owned_purpose(db, fiduciary_id, purpose_id)
    versions = list(
        db.scalars(
            select(PurposeVersion)
            .where(PurposeVersion.purpose_id == purpose_id)
            .order_by(PurposeVersion.version_number.desc())
        ).all()
    )
    counts = version_consent_counts(db, [version.id for version in versions])
    return [
        {
            "id": version.id,
            "version_number": version.version_number,
            "title": version.title,
            "description": version.description,
            "language_code": version.language_code,
            "is_current": version.is_current,
            "status": "current" if version.is_current else "deprecated",
            "published_at": version.published_at,
            "deprecated_at": version.deprecated_at,
            "consent_count": counts.get(version.id, 0),
        }
        for version in versions
    ]


def delete_purpose(db: Session, fiduciary_id: uuid.UUID, purpose_id: uuid.UUID) -> None:
    purpose = get_owned_purpose(db, fiduciary_id, purpose_id)
    referenced = db.scalar(
        select(func.count())
        .select_from(ConsentArtifactPurpose)
        .where(ConsentArtifactPurpose.purpose_id == purpose.id)
    )
    if referenced:
        raise ConflictError("Purpose is referenced by consent artifacts; deactivate it instead")

    try:
        for version in db.scalars(select(PurposeVersion).where(PurposeVersion.purpose_id == purpose.id)).all():
            db.delete(version)
        db.flush()
        db.delete(purpose)
        db.commit()
    except Exception as exc:
        db.rollback()
        record_operation_failure(
            operation="purpose.delete",
            exc=exc,
            fiduciary_id=fiduciary_id,
            resource_type="purpose",
            resource_id=str(purpose_id),
        )
        raise
    log_structured("purpose.deleted", fiduciary_id=str(fiduciary_id), purpose_id=str(purpose_id))


def load_purposes(db: Session, purpose_ids: list[uuid.UUID]) -> dict[uuid.UUID, Purpose]:
    if not purpose_ids:
        return {}
    rows = db.scalars(select(Purpose).where(Purpose.id.in_(purpose_ids))).all()
    return {purpose.id: purpose for purpose in rows}


def current_versions(db: Session, purpose_ids: list[uuid.UUID]) -> dict[uuid.UUID, PurposeVersion]:
    if not purpose_ids:
        return {}
    rows = db.scalars(
        select(PurposeVersion).where(
            PurposeVersion.purpose_id.in_(purpose_ids),
            PurposeVersion.is_current.is_(True),
        )
    ).all()
    return {version.purpose_id: version for version in rows}
