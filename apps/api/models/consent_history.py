import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Index, String, Text, event
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base
from core.observability import METRIC_APPEND_ONLY_VIOLATION_ATTEMPT, increment_metric


class HistoryAction(str, enum.Enum):
    GRANT = "GRANT"
    UPDATE = "UPDATE"
    WITHDRAW = "WITHDRAW"
    EXPIRE = "EXPIRE"
    VALIDATE = "VALIDATE"


class PerformerType(str, enum.Enum):
    PRINCIPAL = "principal"
    FIDUCIARY = "fiduciary"
    SYSTEM = "system"


class ConsentHistory(Base):
    __tablename__ = "consent_history"
    __table_args__ = (
        Index("ix_consent_history_artifact_performed_at", "artifact_id", "performed_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    artifact_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("consent_artifacts.id", ondelete="RESTRICT"),
        nullable=False,
    )
    action: Mapped[HistoryAction] = mapped_column(
        Enum(HistoryAction, name="historyaction", native_enum=False, length=16, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    previous_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    performed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    performed_by_type: Mapped[PerformerType] = mapped_column(
        Enum(PerformerType, name="performertype", native_enum=False, length=16, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    performed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


@event.listens_for(ConsentHistory, "before_update", propagate=True)
def _prevent_update(_mapper, _connection, _target) -> None:
    increment_metric(METRIC_APPEND_ONLY_VIOLATION_ATTEMPT, reason="consent_history_update")
    raise ValueError("consent_history is append-only")


@event.listens_for(ConsentHistory, "before_delete", propagate=True)
def _prevent_delete(_mapper, _connection, _target) -> None:
    increment_metric(METRIC_APPEND_ONLY_VIOLATION_ATTEMPT, reason="consent_history_delete")
    raise ValueError("consent_history is append-only")
