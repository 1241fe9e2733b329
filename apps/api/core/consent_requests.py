from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import update
from sqlalchemy.orm import Session

from core.config import Settings, get_settings
from core.consent_policy import compute_expiry, max_retention_days
from core.errors import ConflictError, ExpiredStateError, NotFoundError, ValidationFailedError
from core.failure_modes import record_operation_failure
from core.logging_utils import log_structured
from core.observability import METRIC_CONSENT_REQUEST_INITIATED, increment_metric
from core.principals import find_principal
from core.purposes import current_versions, load_purposes
from core.timeutils import as_utc, utc_now
from models.consent import ConsentRequest, ConsentRequestStatus
from models.fiduciary import DataFiduciary
from models.purpose import Purpose, PurposeCategory

OPEN_STATUSES = (ConsentRequestStatus.INITIATED, ConsentRequestStatus.VIEWED)


def _parse_purpose_ids(raw_ids: list[uuid.UUID | str]) -> list[uuid.UUID]:
    parsed: list[uuid.UUID] = []
    for raw in raw_ids:
        try:
            parsed.append(raw if isinstance(raw, uuid.UUID) else uuid.UUID(str(raw)))
        except ValueError as exc:
            raise ValidationFailedError(f"Invalid purpose id: {raw}") from exc
    return parsed


def request_purpose_ids(request: ConsentRequest) -> list[uuid.UUID]:
    return [uuid.UUID(str(value)) for value in request.purpose_ids or []]


def initiate(
    db: Session,
    fiduciary: DataFiduciary,
    *,
    external_user_id: str,
    purpose_ids: list[uuid.UUID | str],
    ttl_minutes: int | None = None,
    language: str | None = None,
    redirect_url: str | None = None,
    duration_days: int | None = None,
    email: str | None = None,
    phone: str | None = None,
    metadata: dict[str, Any] | None = None,
    settings: Settings | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> dict[str, Any]:
    settings = settings or get_settings()
    if not external_user_id or not external_user_id.strip():
        raise ValidationFailedError("user_id is required")
    parsed_ids = _parse_purpose_ids(purpose_ids)
    if not parsed_ids:
        raise ValidationFailedError("At least one purpose is required")
    if len(set(parsed_ids)) != len(parsed_ids):
        raise ValidationFailedError("Duplicate purpose ids")
    if ttl_minutes is not None and ttl_minutes <= 0:
        raise ValidationFailedError("ttl_minutes must be positive")
    if duration_days is not None and duration_days <= 0:
        raise ValidationFailedError("duration must be positive")

    purposes = load_purposes(db, parsed_ids)
    unknown = [str(pid) for pid in parsed_ids if pid not in purposes or purposes[pid].data_fiduciary_id != fiduciary.id]
    if unknown:
        raise ValidationFailedError(f"Unknown purposes for this data fiduciary: {', '.join(unknown)}")
    inactive = [str(pid) for pid in parsed_ids if not purposes[pid].is_active]
    if inactive:
        raise ValidationFailedError(f"Inactive purposes cannot be requested: {', '.join(inactive)}")

    now = clock()
    ttl = ttl_minutes or settings.consent_request_ttl_minutes
    existing_principal = find_principal(db, fiduciary.id, external_user_id.strip())
    try:
        request = ConsentRequest(
            data_fiduciary_id=fiduciary.id,
            external_user_id=external_user_id.strip(),
            data_principal_id=existing_principal.id if existing_principal else None,
            purpose_ids=[str(pid) for pid in parsed_ids],
            status=ConsentRequestStatus.INITIATED,
            language=(language or "en").lower(),
            redirect_url=redirect_url,
            duration_days=duration_days,
            email=email,
            phone=phone,
            metadata_json=dict(metadata or {}),
            requested_at=now,
            expires_at=now + timedelta(minutes=ttl),
        )
        db.add(request)
        db.commit()
    except Exception as exc:
        db.rollback()
        record_operation_failure(
            operation="consent_request.initiate",
            exc=exc,
            fiduciary_id=fiduciary.id,
            resource_type="consent_request",
        )
        raise

    increment_metric(METRIC_CONSENT_REQUEST_INITIATED)
    log_structured(
        "consent_request.initiated",
        fiduciary_id=str(fiduciary.id),
        request_ref=str(request.id),
    )
    return {
        "cms_request_id": request.id,
        "notice_url": f"{settings.notice_base_url}/consents/{request.id}",
        "status": ConsentRequestStatus.INITIATED.value,
        "expires_at": as_utc(request.expires_at),
        "redirect_url": request.redirect_url,
    }


def expire_request(db: Session, request: ConsentRequest, now: datetime) -> bool:
    """Flip an open request past its TTL to EXPIRED and commit. Returns True when this call flipped it."""
    result = db.execute(
        update(ConsentRequest)
        .where(
            ConsentRequest.id == request.id,
            ConsentRequest.status.in_(OPEN_STATUSES),
        )
        .values(status=ConsentRequestStatus.EXPIRED)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        log_structured("consent_request.expired", request_ref=str(request.id))
    return bool(result.rowcount)


def load_open_request(db: Session, request_id: uuid.UUID, now: datetime) -> ConsentRequest:
    """Load a request that can still be viewed or submitted.

    A request found past its TTL is flipped to EXPIRED (committed) before
    ``ExpiredStateError`` is raised.
    """
    request = db.get(ConsentRequest, request_id)
    if request is None:
        raise NotFoundError("Consent request not found")
    if request.status == ConsentRequestStatus.SUBMITTED:
        raise ConflictError("Consent request has already been submitted")
    if request.status == ConsentRequestStatus.CANCELLED:
        raise ConflictError("Consent request has been cancelled")
    if request.status == ConsentRequestStatus.EXPIRED:
        raise ExpiredStateError("Consent request has expired")
    if now > as_utc(request.expires_at):
        expire_request(db, request, now)
        raise ExpiredStateError("Consent request has expired")
    return request


def mark_viewed(db: Session, request: ConsentRequest, now: datetime) -> None:
    result = db.execute(
        update(ConsentRequest)
        .where(
            ConsentRequest.id == request.id,
            ConsentRequest.status == ConsentRequestStatus.INITIATED,
        )
        .values(status=ConsentRequestStatus.VIEWED, viewed_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        log_structured("consent_request.viewed", request_ref=str(request.id))


def _purpose_entry(purpose: Purpose, version) -> dict[str, Any]:
    return {
        "purpose_id": purpose.id,
        "purpose_version_id": version.id,
        "version_number": version.version_number,
        "title": version.title,
        "description": version.description,
        "legal_basis": version.legal_basis,
        "data_fields": list(version.data_fields or []),
        "processing_activities": list(purpose.processing_activities or []),
        "retention_period_days": version.retention_period_days,
        "is_mandatory": purpose.is_mandatory,
        "requires_renewal": purpose.requires_renewal,
        "renewal_period_days": purpose.renewal_period_days,
        "display_order": purpose.display_order,
    }


def build_notice(
    db: Session,
    request_id: uuid.UUID,
    *,
    language: str | None = None,
    settings: Settings | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> dict[str, Any]:
    """Render the notice for a pending request from the purposes' current versions."""
    settings = settings or get_settings()
    now = clock()
    request = load_open_request(db, request_id, now)
    mark_viewed(db, request, now)

    fiduciary = db.get(DataFiduciary, request.data_fiduciary_id)
    purpose_ids = request_purpose_ids(request)
    purposes = load_purposes(db, purpose_ids)
    versions = current_versions(db, purpose_ids)

    available = [
        purposes[pid]
        for pid in purpose_ids
        if pid in purposes and purposes[pid].is_active and pid in versions
    ]
    unavailable = [str(pid) for pid in purpose_ids if pid not in {purpose.id for purpose in available}]

    category_ids = {purpose.purpose_category_id for purpose in available if purpose.purpose_category_id}
    categories = {
        category.id: category
        for category in (db.get(PurposeCategory, category_id) for category_id in category_ids)
        if category is not None
    }

    groups: dict[uuid.UUID | None, list[Purpose]] = {}
    for purpose in available:
        key = purpose.purpose_category_id if purpose.purpose_category_id in categories else None
        groups.setdefault(key, []).append(purpose)

    def _group_sort_key(key: uuid.UUID | None) -> tuple[int, int, str]:
        if key is None:
            return (0, 0, "")
        category = categories[key]
        return (1, category.display_order, category.name.lower())

    grouped = []
    for key in sorted(groups, key=_group_sort_key):
        members = sorted(groups[key], key=lambda purpose: (purpose.display_order, purpose.title.lower()))
        category = categories.get(key) if key is not None else None
        grouped.append(
            {
                "category_id": key,
                "name": category.name if category else "General",
                "description": category.description if category else None,
                "purposes": [_purpose_entry(purpose, versions[purpose.id]) for purpose in members],
            }
        )

    valid_until = compute_expiry(
        available,
        now,
        duration_days=request.duration_days,
        default_days=settings.default_consent_duration_days,
    )
    return {
        "cms_request_id": request.id,
        "status": ConsentRequestStatus.VIEWED.value,
        "language": (language or request.language or "en").lower(),
        "expires_at": as_utc(request.expires_at),
        "redirect_url": request.redirect_url,
        "data_fiduciary": {
            "id": fiduciary.id if fiduciary else request.data_fiduciary_id,
            "name": fiduciary.name if fiduciary else None,
        },
        "categories": grouped,
        "mandatory_purposes": [purpose.id for purpose in available if purpose.is_mandatory],
        "unavailable_purposes": unavailable,
        "retention_period_days": max_retention_days(available, settings.default_consent_duration_days),
        "valid_until": valid_until,
    }


def expire_stale_requests(db: Session, now: datetime) -> int:
    result = db.execute(
        update(ConsentRequest)
        .where(
            ConsentRequest.status.in_(OPEN_STATUSES),
            ConsentRequest.expires_at < now,
        )
        .values(status=ConsentRequestStatus.EXPIRED)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return int(result.rowcount or 0)
