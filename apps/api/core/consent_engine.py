"""Consent artifact lifecycle.

Artifacts move PENDING -> ACTIVE -> {WITHDRAWN, EXPIRED} and never back. Every
transition is a conditional UPDATE on the current status plus one history row,
committed together. Notifications are dispatched only after that commit and
their failures never undo it.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import Settings, get_settings
from core.consent_hash import compute_consent_text_hash, verify_consent_text_hash
from core.consent_history import record_history
from core.consent_policy import compute_expiry
from core.consent_requests import (
    OPEN_STATUSES,
    _parse_purpose_ids,
    load_open_request,
    request_purpose_ids,
)
from core.contracts import PrincipalMessage, WebhookEvent
from core.errors import ConflictError, ConsentDomainError, NotFoundError, ValidationFailedError
from core.failure_modes import record_operation_failure
from core.logging_utils import log_structured
from core.notifications import NotificationDispatcher, NotificationEvent, PrincipalMessageRequest
from core.observability import (
    METRIC_CONSENT_EXPIRED,
    METRIC_CONSENT_GRANTED,
    METRIC_CONSENT_RENEWED,
    METRIC_CONSENT_VALIDATED,
    METRIC_CONSENT_VALIDATION_DENIED,
    METRIC_CONSENT_WITHDRAWN,
    METRIC_NOTIFICATION_ENQUEUE_FAILED,
    METRIC_REMINDER_SKIPPED,
    increment_metric,
)
from core.principals import contact_details, find_principal, upsert_principal
from core.purposes import current_versions, load_purposes
from core.timeutils import as_utc, isoformat_utc, utc_now
from models.consent import (
    ArtifactStatus,
    ConsentArtifact,
    ConsentArtifactPurpose,
    ConsentRenewal,
    ConsentRequest,
    ConsentRequestStatus,
    RenewalInitiator,
    RenewalOutcome,
    RenewalStatus,
)
from models.consent_history import HistoryAction, PerformerType
from models.purpose import Purpose, PurposeVersion

EXTENSION_PATTERN = re.compile(r"^\+?(\d{1,4})d$")
MAX_EXTENSION_DAYS = 3650


def _status_value(status: Any) -> str:
    return status.value if hasattr(status, "value") else str(status)


@dataclass(frozen=True)
class _RenewalPlan:
    purpose_ids: list[uuid.UUID]
    purposes: dict[uuid.UUID, Purpose]
    currents: dict[uuid.UUID, PurposeVersion]
    can_extend: bool


@dataclass(frozen=True)
class _AppliedRenewal:
    outcome: RenewalOutcome
    result_artifact_id: uuid.UUID
    new_artifact: ConsentArtifact | None


class ConsentEngine:
    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()
        self.clock = clock

    # -- lookups -----------------------------------------------------------

    def get_artifact(self, db: Session, fiduciary_id: uuid.UUID, artifact_id: uuid.UUID) -> ConsentArtifact:
        artifact = db.get(ConsentArtifact, artifact_id)
        if artifact is None or artifact.is_deleted or artifact.data_fiduciary_id != fiduciary_id:
            raise NotFoundError("Consent artifact not found")
        return artifact

    def artifact_purposes(self, db: Session, artifact_id: uuid.UUID) -> list[tuple[ConsentArtifactPurpose, PurposeVersion]]:
        rows = db.execute(
            select(ConsentArtifactPurpose, PurposeVersion)
            .join(PurposeVersion, PurposeVersion.id == ConsentArtifactPurpose.purpose_version_id)
            .where(ConsentArtifactPurpose.artifact_id == artifact_id)
            .order_by(PurposeVersion.title.asc())
        ).all()
        return [(row[0], row[1]) for row in rows]

    def describe(self, db: Session, artifact: ConsentArtifact) -> dict[str, Any]:
        bindings = self.artifact_purposes(db, artifact.id)
        return {
            "artifact_id": artifact.id,
            "data_fiduciary_id": artifact.data_fiduciary_id,
            "data_principal_id": artifact.data_principal_id,
            "user_id": artifact.external_user_id,
            "status": _status_value(artifact.status),
            "requested_at": as_utc(artifact.requested_at),
            "granted_at": as_utc(artifact.granted_at),
            "valid_till": as_utc(artifact.expires_at),
            "withdrawn_at": as_utc(artifact.withdrawn_at),
            "last_validated_at": as_utc(artifact.last_validated_at),
            "consent_text_hash": artifact.consent_text_hash,
            "supersedes_id": artifact.supersedes_id,
            "superseded_by_id": artifact.superseded_by_id,
            "metadata": dict(artifact.metadata_json or {}),
            "purposes": [
                {
                    "purpose_id": binding.purpose_id,
                    "purpose_version_id": binding.purpose_version_id,
                    "version_number": version.version_number,
                    "title": version.title,
                }
                for binding, version in bindings
            ],
        }

    def verify_integrity(self, db: Session, artifact: ConsentArtifact) -> bool:
        version_ids = [binding.purpose_version_id for binding, _ in self.artifact_purposes(db, artifact.id)]
        return verify_consent_text_hash(
            artifact.consent_text_hash,
            artifact.data_fiduciary_id,
            artifact.data_principal_id,
            version_ids,
            as_utc(artifact.granted_at),
        )

    # -- grant -------------------------------------------------------------

    def _insert_artifact(
        self,
        db: Session,
        *,
        fiduciary_id: uuid.UUID,
        principal_id: uuid.UUID,
        external_user_id: str,
        versions: dict[uuid.UUID, PurposeVersion],
        purposes: list[Purpose],
        granted_at: datetime,
        requested_at: datetime,
        duration_days: int | None,
        metadata: dict[str, Any],
        expires_at: datetime | None = None,
        consent_request_id: uuid.UUID | None = None,
        supersedes_id: uuid.UUID | None = None,
        notes: str | None = None,
    ) -> ConsentArtifact:
        if expires_at is None:
            expires_at = compute_expiry(
                purposes,
                granted_at,
                duration_days=duration_days,
                default_days=self.settings.default_consent_duration_days,
            )
        artifact = ConsentArtifact(
            id=uuid.uuid4(),
            data_fiduciary_id=fiduciary_id,
            data_principal_id=principal_id,
            external_user_id=external_user_id,
            consent_request_id=consent_request_id,
            status=ArtifactStatus.ACTIVE,
            requested_at=requested_at,
            granted_at=granted_at,
            expires_at=expires_at,
            consent_text_hash=compute_consent_text_hash(
                fiduciary_id,
                principal_id,
                [version.id for version in versions.values()],
                granted_at,
            ),
            metadata_json=dict(metadata or {}),
            supersedes_id=supersedes_id,
            is_deleted=False,
            updated_at=granted_at,
        )
        db.add(artifact)
        db.flush()
        for purpose_id, version in versions.items():
            db.add(
                ConsentArtifactPurpose(
                    artifact_id=artifact.id,
                    purpose_id=purpose_id,
                    purpose_version_id=version.id,
                )
            )
        record_history(
            db,
            artifact_id=artifact.id,
            action=HistoryAction.GRANT,
            previous_status=ArtifactStatus.PENDING,
            new_status=ArtifactStatus.ACTIVE,
            performed_by=str(principal_id),
            performed_by_type=PerformerType.PRINCIPAL,
            performed_at=granted_at,
            notes=notes,
        )
        db.flush()
        return artifact

    def submit(
        self,
        db: Session,
        request_id: uuid.UUID,
        selected_purpose_ids: list[uuid.UUID | str],
        *,
        agree: bool,
        metadata: dict[str, Any] | None = None,
    ) -> ConsentArtifact:
        now = self.clock()
        request = load_open_request(db, request_id, now)
        if not agree:
            raise ValidationFailedError("Consent must be explicitly agreed to")

        selected = list(dict.fromkeys(_parse_purpose_ids(selected_purpose_ids)))
        if not selected:
            raise ValidationFailedError("At least one purpose must be selected")
        requested = request_purpose_ids(request)
        not_requested = [str(pid) for pid in selected if pid not in requested]
        if not_requested:
            raise ValidationFailedError(f"Selected purposes were not requested: {', '.join(not_requested)}")

        purposes = load_purposes(db, requested)
        # Mandatory purposes retired since initiation are off the notice and not required.
        missing_mandatory = [
            str(pid)
            for pid in requested
            if pid in purposes and purposes[pid].is_active and purposes[pid].is_mandatory and pid not in selected
        ]
        if missing_mandatory:
            raise ValidationFailedError(f"Mandatory purposes must be accepted: {', '.join(missing_mandatory)}")
        inactive = [str(pid) for pid in selected if pid not in purposes or not purposes[pid].is_active]
        if inactive:
            raise ValidationFailedError(f"Purposes are no longer active: {', '.join(inactive)}")

        fiduciary_id = request.data_fiduciary_id
        try:
            claimed = db.execute(
                update(ConsentRequest)
                .where(
                    ConsentRequest.id == request.id,
                    ConsentRequest.status.in_(OPEN_STATUSES),
                )
                .values(status=ConsentRequestStatus.SUBMITTED, submitted_at=now)
                .execution_options(synchronize_session=False)
            )
            if not claimed.rowcount:
                raise ConflictError("Consent request has already been submitted")

            versions = current_versions(db, selected)
            unversioned = [str(pid) for pid in selected if pid not in versions]
            if unversioned:
                raise ValidationFailedError(f"Purposes have no published version: {', '.join(unversioned)}")

            principal = upsert_principal(
                db,
                fiduciary_id,
                request.external_user_id,
                email=request.email,
                phone=request.phone,
                language=request.language,
            )
            merged_metadata = {
                **(request.metadata_json or {}),
                **(metadata or {}),
                "language_code": request.language,
            }
            artifact = self._insert_artifact(
                db,
                fiduciary_id=fiduciary_id,
                principal_id=principal.id,
                external_user_id=request.external_user_id,
                versions={pid: versions[pid] for pid in selected},
                purposes=[purposes[pid] for pid in selected],
                granted_at=now,
                requested_at=as_utc(request.requested_at),
                duration_days=request.duration_days,
                metadata=merged_metadata,
                consent_request_id=request.id,
            )
            db.execute(
                update(ConsentRequest)
                .where(ConsentRequest.id == request.id)
                .values(artifact_id=artifact.id, data_principal_id=principal.id)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except ConsentDomainError:
            db.rollback()
            raise
        except Exception as exc:
            db.rollback()
            record_operation_failure(
                operation="consent.submit",
                exc=exc,
                fiduciary_id=fiduciary_id,
                resource_type="consent_request",
                resource_id=str(request_id),
            )
            raise

        increment_metric(METRIC_CONSENT_GRANTED)
        log_structured(
            "consent.granted",
            fiduciary_id=str(fiduciary_id),
            artifact_id=str(artifact.id),
            request_ref=str(request_id),
        )
        self._dispatch(db, artifact, WebhookEvent.CONSENT_GRANTED, PrincipalMessage.CONSENT_GRANTED)
        return artifact

    # -- validation --------------------------------------------------------

    def validate(
        self,
        db: Session,
        fiduciary_id: uuid.UUID,
        artifact_id: uuid.UUID,
        purpose_id: uuid.UUID | None = None,
    ) -> dict[str, Any]:
        now = self.clock()
        artifact = self.get_artifact(db, fiduciary_id, artifact_id)
        bindings = self.artifact_purposes(db, artifact.id)
        bound_purpose_ids = {binding.purpose_id for binding, _ in bindings}

        stored_status = _status_value(artifact.status)
        effective_status = stored_status
        reason = None
        if artifact.status != ArtifactStatus.ACTIVE:
            reason = f"Consent is {stored_status.lower()}"
        elif as_utc(artifact.expires_at) <= now:
            effective_status = ArtifactStatus.EXPIRED.value
            reason = "Consent has expired"
        elif purpose_id is not None and purpose_id not in bound_purpose_ids:
            reason = "Purpose is not covered by this consent"
        is_valid = reason is None
        integrity_verified = verify_consent_text_hash(
            artifact.consent_text_hash,
            artifact.data_fiduciary_id,
            artifact.data_principal_id,
            [binding.purpose_version_id for binding, _ in bindings],
            as_utc(artifact.granted_at),
        )

        result = {
            "artifact_id": artifact.id,
            "is_valid": is_valid,
            "status": effective_status,
            "reason": reason,
            "data_principal_id": artifact.data_principal_id,
            "user_id": artifact.external_user_id,
            "valid_till": as_utc(artifact.expires_at),
            "purposes": [
                {
                    "purpose_id": binding.purpose_id,
                    "purpose_version_id": binding.purpose_version_id,
                    "version_number": version.version_number,
                    "title": version.title,
                }
                for binding, version in bindings
            ],
            "integrity_verified": integrity_verified,
            "validated_at": now,
        }

        try:
            db.execute(
                update(ConsentArtifact)
                .where(ConsentArtifact.id == artifact.id)
                .values(last_validated_at=now)
                .execution_options(synchronize_session=False)
            )
            record_history(
                db,
                artifact_id=artifact.id,
                action=HistoryAction.VALIDATE,
                previous_status=stored_status,
                new_status=stored_status,
                performed_by=str(fiduciary_id),
                performed_by_type=PerformerType.FIDUCIARY,
                performed_at=now,
                notes=(f"purpose={purpose_id} " if purpose_id else "") + ("valid" if is_valid else f"invalid: {reason}"),
            )
            db.commit()
        except Exception as exc:
            db.rollback()
            record_operation_failure(
                operation="consent.validate",
                exc=exc,
                fiduciary_id=fiduciary_id,
                resource_type="consent_artifact",
                resource_id=str(artifact_id),
            )
            raise

        increment_metric(METRIC_CONSENT_VALIDATED if is_valid else METRIC_CONSENT_VALIDATION_DENIED)
        return result

    def validate_bulk(
        self,
        db: Session,
        fiduciary_id: uuid.UUID,
        validations: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        if len(validations) > self.settings.bulk_validation_limit:
            raise ValidationFailedError(
                f"At most {self.settings.bulk_validation_limit} validations are allowed per request"
            )
        results: list[dict[str, Any]] = []
        for item in validations:
            artifact_id = item.get("artifact_id")
            try:
                results.append(self.validate(db, fiduciary_id, artifact_id, item.get("purpose_id")))
            except ConsentDomainError as exc:
                results.append(self._bulk_error(artifact_id, str(exc.code), exc.message))
            except Exception as exc:
                db.rollback()
                record_operation_failure(
                    operation="consent.validate_bulk_item",
                    exc=exc,
                    fiduciary_id=fiduciary_id,
                    resource_type="consent_artifact",
                    resource_id=str(artifact_id),
                )
                results.append(self._bulk_error(artifact_id, "INTERNAL_ERROR", "Validation failed"))
        return results

    @staticmethod
    def _bulk_error(artifact_id, code: str, message: str) -> dict[str, Any]:
        return {
            "artifact_id": artifact_id,
            "is_valid": False,
            "status": "ERROR",
            "error": {"code": code, "message": message},
        }

    # -- withdrawal --------------------------------------------------------

    def withdraw(
        self,
        db: Session,
        fiduciary_id: uuid.UUID,
        artifact_id: uuid.UUID,
        *,
        reason: str | None = None,
        notes: str | None = None,
    ) -> ConsentArtifact:
        artifact = self.get_artifact(db, fiduciary_id, artifact_id)
        now = self.clock()
        try:
            result = db.execute(
                update(ConsentArtifact)
                .where(
                    ConsentArtifact.id == artifact.id,
                    ConsentArtifact.status == ArtifactStatus.ACTIVE,
                )
                .values(status=ArtifactStatus.WITHDRAWN, withdrawn_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                current = db.scalar(select(ConsentArtifact.status).where(ConsentArtifact.id == artifact.id))
                if current == ArtifactStatus.WITHDRAWN:
                    raise ConflictError("Consent has already been withdrawn")
                if current == ArtifactStatus.EXPIRED:
                    raise ConflictError("Consent has expired and cannot be withdrawn")
                raise ConflictError("Consent is not active")
            record_history(
                db,
                artifact_id=artifact.id,
                action=HistoryAction.WITHDRAW,
                previous_status=ArtifactStatus.ACTIVE,
                new_status=ArtifactStatus.WITHDRAWN,
                performed_by=str(artifact.data_principal_id),
                performed_by_type=PerformerType.PRINCIPAL,
                performed_at=now,
                notes=" | ".join(part for part in (reason, notes) if part) or None,
            )
            db.commit()
        except ConsentDomainError:
            db.rollback()
            raise
        except Exception as exc:
            db.rollback()
            record_operation_failure(
                operation="consent.withdraw",
                exc=exc,
                fiduciary_id=fiduciary_id,
                resource_type="consent_artifact",
                resource_id=str(artifact_id),
            )
            raise

        db.refresh(artifact)
        increment_metric(METRIC_CONSENT_WITHDRAWN)
        log_structured("consent.withdrawn", fiduciary_id=str(fiduciary_id), artifact_id=str(artifact.id))
        self._dispatch(db, artifact, WebhookEvent.CONSENT_WITHDRAWN, PrincipalMessage.CONSENT_WITHDRAWN)
        return artifact

    # -- renewal -----------------------------------------------------------

    def _extension_days(self, requested_extension: str | None, extend_by_days: int | None) -> int:
        if requested_extension:
            match = EXTENSION_PATTERN.match(requested_extension.strip())
            if match is None:
                raise ValidationFailedError("requested_extension must look like '+365d'")
            days = int(match.group(1))
        elif extend_by_days is not None:
            days = extend_by_days
        else:
            days = self.settings.default_renewal_extension_days
        if not 0 < days <= MAX_EXTENSION_DAYS:
            raise ValidationFailedError(f"Extension must be between 1 and {MAX_EXTENSION_DAYS} days")
        return days

    def _pending_renewal_exists(self, db: Session, artifact_id: uuid.UUID) -> bool:
        pending = db.scalar(
            select(ConsentRenewal.id).where(
                ConsentRenewal.artifact_id == artifact_id,
                ConsentRenewal.status == RenewalStatus.RENEWAL_PENDING,
            )
        )
        return pending is not None

    @staticmethod
    def _new_renewal(
        artifact: ConsentArtifact,
        initiator: RenewalInitiator,
        days: int,
        purpose_ids: list[uuid.UUID],
        now: datetime,
    ) -> ConsentRenewal:
        return ConsentRenewal(
            id=uuid.uuid4(),
            artifact_id=artifact.id,
            data_fiduciary_id=artifact.data_fiduciary_id,
            status=RenewalStatus.RENEWAL_PENDING,
            initiated_by=initiator,
            extend_by_days=days,
            purpose_ids=[str(pid) for pid in purpose_ids],
            requested_at=now,
        )

    @staticmethod
    def _flush_markers(db: Session) -> None:
        # uq_consent_renewals_one_pending rejects a second open marker per artifact.
        try:
            db.flush()
        except IntegrityError as exc:
            raise ConflictError("A renewal is already pending for this consent") from exc

    def initiate_renewal(
        self,
        db: Session,
        fiduciary_id: uuid.UUID,
        artifact_id: uuid.UUID,
        *,
        purpose_ids: list[uuid.UUID | str] | None = None,
        requested_extension: str | None = None,
        extend_by_days: int | None = None,
        initiated_by: RenewalInitiator | str = RenewalInitiator.FIDUCIARY,
        agree: bool = False,
    ) -> dict[str, Any]:
        """Open a renewal of one artifact.

        FIDUCIARY renewals leave a RENEWAL_PENDING marker for the principal to
        confirm. USER renewals insert the marker and confirm it in the same
        transaction, so a failed confirmation leaves nothing pending behind.
        """
        initiator = RenewalInitiator(initiated_by)
        artifact = self.get_artifact(db, fiduciary_id, artifact_id)
        if artifact.superseded_by_id is not None:
            raise ConflictError("Consent has already been superseded by a renewal")
        days = self._extension_days(requested_extension, extend_by_days)

        bound = [binding.purpose_id for binding, _ in self.artifact_purposes(db, artifact.id)]
        chosen = list(dict.fromkeys(_parse_purpose_ids(purpose_ids))) if purpose_ids else bound
        outside = [str(pid) for pid in chosen if pid not in bound]
        if outside:
            raise ValidationFailedError(f"Purposes are not covered by this consent: {', '.join(outside)}")
        if initiator == RenewalInitiator.USER and not agree:
            raise ValidationFailedError("Renewal must be explicitly agreed to")
        if self._pending_renewal_exists(db, artifact.id):
            raise ConflictError("A renewal is already pending for this consent")

        now = self.clock()
        plan = self._renewal_plan(db, artifact, chosen) if initiator == RenewalInitiator.USER else None
        renewal = self._new_renewal(artifact, initiator, days, chosen, now)
        applied = None
        try:
            db.add(renewal)
            self._flush_markers(db)
            if plan is not None:
                applied = self._apply_renewal(db, renewal, artifact, plan, now)
            db.commit()
        except ConsentDomainError:
            db.rollback()
            raise
        except Exception as exc:
            db.rollback()
            record_operation_failure(
                operation="consent.renewal_initiate",
                exc=exc,
                fiduciary_id=fiduciary_id,
                resource_type="consent_renewal",
                resource_id=str(artifact_id),
            )
            raise
        log_structured(
            "consent.renewal_initiated",
            fiduciary_id=str(fiduciary_id),
            artifact_id=str(artifact.id),
            renewal_id=str(renewal.id),
        )

        if applied is not None:
            return self._finish_renewal(db, renewal, artifact, applied)
        self._announce_renewal(db, renewal, artifact)
        return self._renewal_view(renewal)

    def initiate_principal_renewal(
        self,
        db: Session,
        fiduciary_id: uuid.UUID,
        *,
        user_id: str | None = None,
        data_principal_id: uuid.UUID | None = None,
        purpose_ids: list[uuid.UUID | str] | None = None,
        requested_extension: str | None = None,
        extend_by_days: int | None = None,
        initiated_by: RenewalInitiator | str = RenewalInitiator.FIDUCIARY,
        agree: bool = False,
    ) -> list[dict[str, Any]]:
        """Renew every live consent a principal holds with this fiduciary.

        Live means ACTIVE, unexpired, not superseded and with no renewal already
        pending. ``purpose_ids`` narrows both which consents match and which of
        their purposes are renewed. One marker per match is written in a single
        transaction; if any of them fails, none is kept.
        """
        initiator = RenewalInitiator(initiated_by)
        if user_id is None and data_principal_id is None:
            raise ValidationFailedError("One of artifact_id, user_id or data_principal_id is required")
        days = self._extension_days(requested_extension, extend_by_days)
        if initiator == RenewalInitiator.USER and not agree:
            raise ValidationFailedError("Renewal must be explicitly agreed to")
        if data_principal_id is None:
            principal = find_principal(db, fiduciary_id, user_id)
            if principal is None:
                raise NotFoundError("Data principal not found")
            data_principal_id = principal.id

        now = self.clock()
        wanted = set(_parse_purpose_ids(purpose_ids)) if purpose_ids else None
        pending_artifacts = select(ConsentRenewal.artifact_id).where(
            ConsentRenewal.status == RenewalStatus.RENEWAL_PENDING
        )
        candidates = db.scalars(
            select(ConsentArtifact)
            .where(
                ConsentArtifact.data_fiduciary_id == fiduciary_id,
                ConsentArtifact.data_principal_id == data_principal_id,
                ConsentArtifact.status == ArtifactStatus.ACTIVE,
                ConsentArtifact.is_deleted.is_(False),
                ConsentArtifact.expires_at > now,
                ConsentArtifact.superseded_by_id.is_(None),
                ConsentArtifact.id.not_in(pending_artifacts),
            )
            .order_by(ConsentArtifact.granted_at.asc())
        ).all()
        targets: list[tuple[ConsentArtifact, list[uuid.UUID]]] = []
        for artifact in candidates:
            bound = [binding.purpose_id for binding, _ in self.artifact_purposes(db, artifact.id)]
            chosen = [pid for pid in bound if wanted is None or pid in wanted]
            if chosen:
                targets.append((artifact, chosen))
        if not targets:
            raise NotFoundError("No active consents found for renewal")

        plans = [
            self._renewal_plan(db, artifact, chosen) if initiator == RenewalInitiator.USER else None
            for artifact, chosen in targets
        ]
        renewals = [self._new_renewal(artifact, initiator, days, chosen, now) for artifact, chosen in targets]
        applied: list[_AppliedRenewal | None] = [None] * len(targets)
        try:
            db.add_all(renewals)
            self._flush_markers(db)
            for index, plan in enumerate(plans):
                if plan is not None:
                    applied[index] = self._apply_renewal(db, renewals[index], targets[index][0], plan, now)
            db.commit()
        except ConsentDomainError:
            db.rollback()
            raise
        except Exception as exc:
            db.rollback()
            record_operation_failure(
                operation="consent.renewal_initiate_principal",
                exc=exc,
                fiduciary_id=fiduciary_id,
                resource_type="data_principal",
                resource_id=str(data_principal_id),
            )
            raise
        log_structured(
            "consent.renewal_initiated",
            fiduciary_id=str(fiduciary_id),
            principal_id=str(data_principal_id),
            count=len(renewals),
        )

        results: list[dict[str, Any]] = []
        for renewal, (artifact, _), done in zip(renewals, targets, applied):
            if done is not None:
                results.append(self._finish_renewal(db, renewal, artifact, done))
            else:
                self._announce_renewal(db, renewal, artifact)
                results.append(self._renewal_view(renewal))
        return results

    def _announce_renewal(self, db: Session, renewal: ConsentRenewal, artifact: ConsentArtifact) -> None:
        self._dispatch(
            db,
            artifact,
            WebhookEvent.CONSENT_RENEWAL_INITIATED,
            PrincipalMessage.CONSENT_RENEWAL_REQUESTED,
            extra={"renewal_id": str(renewal.id), "extend_by_days": renewal.extend_by_days},
        )

    def _renewal_view(self, renewal: ConsentRenewal) -> dict[str, Any]:
        return {
            "renewal_id": renewal.id,
            "artifact_id": renewal.artifact_id,
            "status": _status_value(renewal.status),
            "initiated_by": _status_value(renewal.initiated_by),
            "extend_by_days": renewal.extend_by_days,
            "purpose_ids": list(renewal.purpose_ids or []),
            "requested_at": as_utc(renewal.requested_at),
            "confirmed_at": as_utc(renewal.confirmed_at),
            "outcome": _status_value(renewal.outcome) if renewal.outcome else None,
            "result_artifact_id": renewal.result_artifact_id,
        }

    def confirm_renewal(self, db: Session, renewal_id: uuid.UUID, *, agree: bool) -> dict[str, Any]:
        renewal = db.get(ConsentRenewal, renewal_id)
        if renewal is None:
            raise NotFoundError("Renewal not found")
        if renewal.status != RenewalStatus.RENEWAL_PENDING:
            raise ConflictError("Renewal is no longer pending")
        if not agree:
            raise ValidationFailedError("Renewal must be explicitly agreed to")
        artifact = db.get(ConsentArtifact, renewal.artifact_id)
        if artifact is None or artifact.is_deleted:
            raise NotFoundError("Consent artifact not found")
        if artifact.superseded_by_id is not None:
            raise ConflictError("Consent has already been superseded by a renewal")

        now = self.clock()
        purpose_ids = [uuid.UUID(str(value)) for value in renewal.purpose_ids or []]
        plan = self._renewal_plan(db, artifact, purpose_ids)
        fiduciary_id = artifact.data_fiduciary_id
        try:
            applied = self._apply_renewal(db, renewal, artifact, plan, now)
            db.commit()
        except ConsentDomainError:
            db.rollback()
            raise
        except Exception as exc:
            db.rollback()
            record_operation_failure(
                operation="consent.renewal_confirm",
                exc=exc,
                fiduciary_id=fiduciary_id,
                resource_type="consent_renewal",
                resource_id=str(renewal_id),
            )
            raise
        return self._finish_renewal(db, renewal, artifact, applied)

    def _renewal_plan(
        self,
        db: Session,
        artifact: ConsentArtifact,
        purpose_ids: list[uuid.UUID],
    ) -> _RenewalPlan:
        purposes = load_purposes(db, purpose_ids)
        inactive = [str(pid) for pid in purpose_ids if pid not in purposes or not purposes[pid].is_active]
        if inactive:
            raise ValidationFailedError(f"Purposes are no longer active: {', '.join(inactive)}")

        bindings = {binding.purpose_id: binding.purpose_version_id for binding, _ in self.artifact_purposes(db, artifact.id)}
        currents = current_versions(db, purpose_ids)
        can_extend = (
            artifact.status == ArtifactStatus.ACTIVE
            and set(purpose_ids) == set(bindings)
            and all(pid in currents and currents[pid].id == bindings[pid] for pid in purpose_ids)
        )
        if not can_extend:
            unversioned = [str(pid) for pid in purpose_ids if pid not in currents]
            if unversioned:
                raise ValidationFailedError(f"Purposes have no published version: {', '.join(unversioned)}")
        return _RenewalPlan(purpose_ids=purpose_ids, purposes=purposes, currents=currents, can_extend=can_extend)

    def _apply_renewal(
        self,
        db: Session,
        renewal: ConsentRenewal,
        artifact: ConsentArtifact,
        plan: _RenewalPlan,
        now: datetime,
    ) -> _AppliedRenewal:
        """Confirm ``renewal`` and extend or supersede its artifact. Flushes only.

        Either way the result is valid for ``extend_by_days`` past the later of
        now and the current expiry of a still ACTIVE artifact.
        """
        claimed = db.execute(
            update(ConsentRenewal)
            .where(
                ConsentRenewal.id == renewal.id,
                ConsentRenewal.status == RenewalStatus.RENEWAL_PENDING,
            )
            .values(status=RenewalStatus.CONFIRMED, confirmed_at=now)
            .execution_options(synchronize_session=False)
        )
        if not claimed.rowcount:
            raise ConflictError("Renewal is no longer pending")

        base = now
        if artifact.status == ArtifactStatus.ACTIVE:
            base = max(as_utc(artifact.expires_at), now)
        new_expiry = base + timedelta(days=renewal.extend_by_days)
        new_artifact: ConsentArtifact | None = None
        if plan.can_extend:
            extended = db.execute(
                update(ConsentArtifact)
                .where(
                    ConsentArtifact.id == artifact.id,
                    ConsentArtifact.status == ArtifactStatus.ACTIVE,
                )
                .values(expires_at=new_expiry, last_reminder_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if not extended.rowcount:
                raise ConflictError("Consent is no longer active")
            record_history(
                db,
                artifact_id=artifact.id,
                action=HistoryAction.UPDATE,
                previous_status=ArtifactStatus.ACTIVE,
                new_status=ArtifactStatus.ACTIVE,
                performed_by=str(artifact.data_principal_id),
                performed_by_type=PerformerType.PRINCIPAL,
                performed_at=now,
                notes=f"renewed until {isoformat_utc(new_expiry)}",
            )
            outcome = RenewalOutcome.EXTENDED
            result_artifact_id = artifact.id
        else:
            new_artifact = self._insert_artifact(
                db,
                fiduciary_id=artifact.data_fiduciary_id,
                principal_id=artifact.data_principal_id,
                external_user_id=artifact.external_user_id,
                versions={pid: plan.currents[pid] for pid in plan.purpose_ids},
                purposes=[plan.purposes[pid] for pid in plan.purpose_ids],
                granted_at=now,
                requested_at=as_utc(renewal.requested_at),
                duration_days=None,
                expires_at=new_expiry,
                metadata=dict(artifact.metadata_json or {}),
                supersedes_id=artifact.id,
                notes=f"renewal of {artifact.id}",
            )
            self._supersede(db, artifact, new_artifact.id, now)
            outcome = RenewalOutcome.SUPERSEDED
            result_artifact_id = new_artifact.id

        db.execute(
            update(ConsentRenewal)
            .where(ConsentRenewal.id == renewal.id)
            .values(outcome=outcome, result_artifact_id=result_artifact_id)
            .execution_options(synchronize_session=False)
        )
        return _AppliedRenewal(outcome=outcome, result_artifact_id=result_artifact_id, new_artifact=new_artifact)

    def _finish_renewal(
        self,
        db: Session,
        renewal: ConsentRenewal,
        artifact: ConsentArtifact,
        applied: _AppliedRenewal,
    ) -> dict[str, Any]:
        increment_metric(METRIC_CONSENT_RENEWED, reason=applied.outcome.value)
        log_structured(
            "consent.renewed",
            fiduciary_id=str(artifact.data_fiduciary_id),
            artifact_id=str(applied.result_artifact_id),
            renewal_id=str(renewal.id),
            result=applied.outcome.value,
        )
        db.refresh(artifact)
        db.refresh(renewal)
        new_artifact = applied.new_artifact
        if new_artifact is None:
            self._dispatch(db, artifact, WebhookEvent.CONSENT_RENEWED, PrincipalMessage.CONSENT_RENEWED)
        else:
            db.refresh(new_artifact)
            self._dispatch(
                db,
                artifact,
                WebhookEvent.CONSENT_UPDATED,
                None,
                extra={"superseded_by_id": str(new_artifact.id)},
            )
            self._dispatch(
                db,
                new_artifact,
                WebhookEvent.CONSENT_RENEWED,
                PrincipalMessage.CONSENT_RENEWED,
                extra={"supersedes_id": str(artifact.id)},
            )
        return self._renewal_view(renewal)

    def _supersede(self, db: Session, artifact: ConsentArtifact, new_artifact_id: uuid.UUID, now: datetime) -> None:
        notes = f"superseded by {new_artifact_id}"
        expired = db.execute(
            update(ConsentArtifact)
            .where(
                ConsentArtifact.id == artifact.id,
                ConsentArtifact.status == ArtifactStatus.ACTIVE,
                ConsentArtifact.superseded_by_id.is_(None),
            )
            .values(status=ArtifactStatus.EXPIRED, superseded_by_id=new_artifact_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if expired.rowcount:
            record_history(
                db,
                artifact_id=artifact.id,
                action=HistoryAction.UPDATE,
                previous_status=ArtifactStatus.ACTIVE,
                new_status=ArtifactStatus.EXPIRED,
                performed_by_type=PerformerType.SYSTEM,
                performed_by="system",
                performed_at=now,
                notes=notes,
            )
            return

        linked = db.execute(
            update(ConsentArtifact)
            .where(
                ConsentArtifact.id == artifact.id,
                ConsentArtifact.superseded_by_id.is_(None),
            )
            .values(superseded_by_id=new_artifact_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if not linked.rowcount:
            raise ConflictError("Consent has already been superseded by a renewal")
        current = db.scalar(select(ConsentArtifact.status).where(ConsentArtifact.id == artifact.id))
        record_history(
            db,
            artifact_id=artifact.id,
            action=HistoryAction.UPDATE,
            previous_status=current,
            new_status=current,
            performed_by_type=PerformerType.SYSTEM,
            performed_by="system",
            performed_at=now,
            notes=notes,
        )

    # -- time-driven transitions ------------------------------------------

    def expire_due(self, db: Session, now: datetime | None = None, *, batch_size: int | None = None) -> tuple[int, list[uuid.UUID]]:
        """Flip ACTIVE artifacts past their expiry to EXPIRED.

        Returns the number of candidates selected and the ids this call expired.
        Rows claimed concurrently by another run or a withdrawal are skipped.
        """
        now = now or self.clock()
        candidates = list(
            db.scalars(
                select(ConsentArtifact.id)
                .where(
                    ConsentArtifact.status == ArtifactStatus.ACTIVE,
                    ConsentArtifact.is_deleted.is_(False),
                    ConsentArtifact.expires_at < now,
                )
                .order_by(ConsentArtifact.expires_at.asc())
                .limit(batch_size or self.settings.expiry_batch_size)
            ).all()
        )
        expired_ids: list[uuid.UUID] = []
        try:
            for artifact_id in candidates:
                result = db.execute(
                    update(ConsentArtifact)
                    .where(
                        ConsentArtifact.id == artifact_id,
                        ConsentArtifact.status == ArtifactStatus.ACTIVE,
                        ConsentArtifact.expires_at < now,
                    )
                    .values(status=ArtifactStatus.EXPIRED, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if not result.rowcount:
                    continue
                record_history(
                    db,
                    artifact_id=artifact_id,
                    action=HistoryAction.EXPIRE,
                    previous_status=ArtifactStatus.ACTIVE,
                    new_status=ArtifactStatus.EXPIRED,
                    performed_by="system",
                    performed_by_type=PerformerType.SYSTEM,
                    performed_at=now,
                    notes="Automatically expired by system",
                )
                expired_ids.append(artifact_id)
            db.commit()
        except Exception:
            db.rollback()
            raise

        if expired_ids:
            increment_metric(METRIC_CONSENT_EXPIRED, value=len(expired_ids))
        for artifact_id in expired_ids:
            artifact = db.get(ConsentArtifact, artifact_id)
            if artifact is not None:
                self._dispatch(db, artifact, WebhookEvent.CONSENT_EXPIRED, PrincipalMessage.CONSENT_EXPIRED)
        return len(candidates), expired_ids

    def send_renewal_reminder(self, db: Session, artifact: ConsentArtifact, now: datetime | None = None) -> str:
        """Claim and send the expiry reminder for ``artifact``.

        Returns ``"sent"``, ``"already_sent"``, ``"no_contact"`` or ``"failed"``.
        A claimed artifact is not reminded again within the same expiry window.
        """
        now = now or self.clock()
        window_start = as_utc(artifact.expires_at) - timedelta(days=self.settings.reminder_window_days)
        claimed = db.execute(
            update(ConsentArtifact)
            .where(
                ConsentArtifact.id == artifact.id,
                ConsentArtifact.status == ArtifactStatus.ACTIVE,
                or_(
                    ConsentArtifact.last_reminder_at.is_(None),
                    ConsentArtifact.last_reminder_at < window_start,
                ),
            )
            .values(last_reminder_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if not claimed.rowcount:
            return "already_sent"

        contact = contact_details(db, artifact.data_principal_id)
        if contact is None or not (contact.email or contact.phone):
            increment_metric(METRIC_REMINDER_SKIPPED, reason="missing_contact")
            log_structured(
                "scheduler.reminder_skipped",
                artifact_id=str(artifact.id),
                fiduciary_id=str(artifact.data_fiduciary_id),
                reason="missing_contact",
            )
            return "no_contact"

        days_remaining = max((as_utc(artifact.expires_at) - now).days, 0)
        result = self._send_principal_message(
            db,
            artifact,
            PrincipalMessage.CONSENT_RENEWAL_REMINDER,
            extra={"days_remaining": days_remaining},
        )
        return "sent" if result else "failed"

    # -- dispatch ----------------------------------------------------------

    def _webhook_payload(self, db: Session, artifact: ConsentArtifact, extra: dict[str, Any] | None) -> dict[str, Any]:
        bindings = self.artifact_purposes(db, artifact.id)
        payload = {
            "user_id": artifact.external_user_id,
            "purposes": [
                {"purpose_id": str(binding.purpose_id), "purpose_version_id": str(binding.purpose_version_id)}
                for binding, _ in bindings
            ],
            "status": _status_value(artifact.status),
            "granted_at": isoformat_utc(artifact.granted_at),
            "valid_till": isoformat_utc(artifact.expires_at),
            "withdrawn_at": isoformat_utc(artifact.withdrawn_at),
        }
        payload.update(extra or {})
        return payload

    def _channels_for(self, db: Session, artifact: ConsentArtifact) -> list[str]:
        contact = contact_details(db, artifact.data_principal_id)
        channels = []
        if contact is not None and contact.email:
            channels.append("EMAIL")
        if contact is not None and contact.phone:
            channels.append("SMS")
        return channels or ["EMAIL"]

    def _send_principal_message(
        self,
        db: Session,
        artifact: ConsentArtifact,
        message_type: PrincipalMessage,
        extra: dict[str, Any] | None = None,
    ) -> bool:
        try:
            contact = contact_details(db, artifact.data_principal_id)
            result = self.dispatcher.send_principal_message(
                db,
                PrincipalMessageRequest(
                    fiduciary_id=artifact.data_fiduciary_id,
                    user_id=artifact.data_principal_id,
                    type=message_type.value,
                    channels=self._channels_for(db, artifact),
                    metadata={
                        "artifact_id": str(artifact.id),
                        "valid_till": isoformat_utc(artifact.expires_at),
                        **(extra or {}),
                    },
                    language=contact.language if contact else "en",
                    artifact_id=artifact.id,
                ),
            )
        except Exception as exc:
            db.rollback()
            self._dispatch_failed(exc, artifact, message_type.value)
            return False
        return bool(result.success)

    def _dispatch(
        self,
        db: Session,
        artifact: ConsentArtifact,
        webhook_event: WebhookEvent,
        message_type: PrincipalMessage | None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        try:
            self.dispatcher.notify(
                db,
                NotificationEvent(
                    type=webhook_event.value,
                    fiduciary_id=artifact.data_fiduciary_id,
                    artifact_id=artifact.id,
                    payload=self._webhook_payload(db, artifact, extra),
                ),
            )
        except Exception as exc:
            db.rollback()
            self._dispatch_failed(exc, artifact, webhook_event.value)
        if message_type is not None:
            self._send_principal_message(db, artifact, message_type, extra)

    @staticmethod
    def _dispatch_failed(exc: Exception, artifact: ConsentArtifact, event_type: str) -> None:
        increment_metric(METRIC_NOTIFICATION_ENQUEUE_FAILED, reason=event_type)
        log_structured(
            "notification.dispatch_failed",
            event_type=event_type,
            artifact_id=str(artifact.id),
            error_class=exc.__class__.__name__,
        )
