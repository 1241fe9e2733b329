from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.consent import ArtifactStatus, ConsentArtifact
from models.consent_history import ConsentHistory, HistoryAction, PerformerType


def _status_value(status: ArtifactStatus | str | None) -> str | None:
    if status is None:
        return None
    return status.value if hasattr(status, "value") else str(status)


def record_history(
    db: Session,
    *,
    artifact_id: uuid.UUID,
    action: HistoryAction,
    previous_status: ArtifactStatus | str | None,
    new_status: ArtifactStatus | str | None,
    performed_by_type: PerformerType,
    performed_at: datetime,
    performed_by: str | None = None,
    notes: str | None = None,
) -> ConsentHistory:
    """Stage one history row in the caller's transaction."""
    entry = ConsentHistory(
        artifact_id=artifact_id,
        action=action,
        previous_status=_status_value(previous_status),
        new_status=_status_value(new_status),
        performed_by=performed_by,
        performed_by_type=performed_by_type,
        performed_at=performed_at,
        notes=notes,
    )
    db.add(entry)
    return entry


def list_history(
    db: Session,
    artifact: ConsentArtifact,
    *,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[ConsentHistory], int]:
    total = int(
        db.scalar(
            select(func.count()).select_from(ConsentHistory).where(ConsentHistory.artifact_id == artifact.id)
        )
        or 0
    )
    rows = list(
        db.scalars(
            select(ConsentHistory)
            .where(ConsentHistory.artifact_id == artifact.id)
            .order_by(ConsentHistory.performed_at.asc(), ConsentHistory.id.asc())
            .offset(offset)
            .limit(limit)
        ).all()
    )
    return rows, total


def count_actions(db: Session, artifact_id: uuid.UUID, action: HistoryAction) -> int:
    return int(
        db.scalar(
            select(func.count())
            .select_from(ConsentHistory)
            .where(ConsentHistory.artifact_id == artifact_id, ConsentHistory.action == action)
        )
        or 0
    )
