import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base
from core.observability import METRIC_APPEND_ONLY_VIOLATION_ATTEMPT, increment_metric


def _str_enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda x: [e.value for e in x],
    )


class ConsentRequestStatus(str, enum.Enum):
    INITIATED = "INITIATED"
    VIEWED = "VIEWED"
    SUBMITTED = "SUBMITTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class ArtifactStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    WITHDRAWN = "WITHDRAWN"
    EXPIRED = "EXPIRED"


class RenewalStatus(str, enum.Enum):
    RENEWAL_PENDING = "RENEWAL_PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class RenewalInitiator(str, enum.Enum):
    FIDUCIARY = "FIDUCIARY"
    USER = "USER"


class RenewalOutcome(str, enum.Enum):
    EXTENDED = "EXTENDED"
    SUPERSEDED = "SUPERSEDED"


class ConsentRequest(Base):
    """Single-use consent request; lives until submission or its TTL."""

    __tablename__ = "consent_requests"
    __table_args__ = (
        Index("ix_consent_requests_status_expires", "status", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    data_fiduciary_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("data_fiduciaries.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    external_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    data_principal_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("data_principals.id", ondelete="SET NULL"),
        nullable=True,
    )
    purpose_ids: Mapped[list] = mapped_column(JSON, nullable=False)
    status: Mapped[ConsentRequestStatus] = mapped_column(
        _str_enum(ConsentRequestStatus, "consentrequeststatus"),
        nullable=False,
        default=ConsentRequestStatus.INITIATED,
    )
    language: Mapped[str] = mapped_column(String(8), nullable=False, default="en")
    redirect_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    viewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    artifact_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)


class ConsentArtifact(Base):
    __tablename__ = "consent_artifacts"
    __table_args__ = (
        Index("ix_consent_artifacts_status_expires", "status", "expires_at"),
        Index("ix_consent_artifacts_fiduciary_principal", "data_fiduciary_id", "data_principal_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    data_fiduciary_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("data_fiduciaries.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    data_principal_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("data_principals.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    external_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    consent_request_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("consent_requests.id", ondelete="SET NULL"),
        nullable=True,
    )
    status: Mapped[ArtifactStatus] = mapped_column(
        _str_enum(ArtifactStatus, "artifactstatus"),
        nullable=False,
        default=ArtifactStatus.PENDING,
    )
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    withdrawn_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_reminder_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    consent_text_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    supersedes_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    superseded_by_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class ConsentArtifactPurpose(Base):
    """Permanent binding of an artifact to the purpose version current at grant time."""

    __tablename__ = "consent_artifact_purposes"
    __table_args__ = (
        UniqueConstraint("artifact_id", "purpose_id", name="uq_artifact_purposes_artifact_purpose"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    artifact_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("consent_artifacts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    purpose_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("purposes.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    purpose_version_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("purpose_versions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )


@event.listens_for(ConsentArtifactPurpose, "before_update", propagate=True)
def _prevent_binding_update(_mapper, _connection, _target) -> None:
    increment_metric(METRIC_APPEND_ONLY_VIOLATION_ATTEMPT, reason="artifact_purpose_update")
    raise ValueError("consent_artifact_purposes is append-only")


@event.listens_for(ConsentArtifactPurpose, "before_delete", propagate=True)
def _prevent_binding_delete(_mapper, _connection, _target) -> None:
    increment_metric(METRIC_APPEND_ONLY_VIOLATION_ATTEMPT, reason="artifact_purpose_delete")
    raise ValueError("consent_artifact_purposes is append-only")


class ConsentRenewal(Base):
    __tablename__ = "consent_renewals"
    __table_args__ = (
        Index("ix_consent_renewals_artifact_status", "artifact_id", "status"),
        Index(
            "uq_consent_renewals_one_pending",
            "artifact_id",
            unique=True,
            postgresql_where=text("status = 'RENEWAL_PENDING'"),
            sqlite_where=text("status = 'RENEWAL_PENDING'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    artifact_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("consent_artifacts.id", ondelete="RESTRICT"),
        nullable=False,
    )
    data_fiduciary_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("data_fiduciaries.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    status: Mapped[RenewalStatus] = mapped_column(
        _str_enum(RenewalStatus, "renewalstatus"),
        nullable=False,
        default=RenewalStatus.RENEWAL_PENDING,
    )
    initiated_by: Mapped[RenewalInitiator] = mapped_column(
        _str_enum(RenewalInitiator, "renewalinitiator"),
        nullable=False,
    )
    extend_by_days: Mapped[int] = mapped_column(Integer, nullable=False)
    purpose_ids: Mapped[list] = mapped_column(JSON, nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    result_artifact_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    outcome: Mapped[RenewalOutcome | None] = mapped_column(
        _str_enum(RenewalOutcome, "renewaloutcome"),
        nullable=True,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
