"""Time-driven consent jobs: expiry reminders and expiry.

Both jobs select over deterministic windows and claim each row with a
conditional update, so running them twice (or concurrently) is harmless.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from core.consent_engine import ConsentEngine
from core.consent_requests import expire_stale_requests
from core.logging_utils import log_structured
from core.observability import METRIC_SCHEDULER_JOB_FAILED, increment_metric
from core.timeutils import as_utc, utc_now
from models.consent import ArtifactStatus, ConsentArtifact

JOB_REMINDERS = "reminders"
JOB_EXPIRY = "expiry"


@dataclass
class JobResult:
    job: str
    started_at: datetime
    finished_at: datetime | None = None
    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


_results_lock = threading.Lock()
LAST_RESULTS: dict[str, JobResult] = {}


def _remember(result: JobResult) -> JobResult:
    with _results_lock:
        LAST_RESULTS[result.job] = result
    log_structured(
        "scheduler.job_completed",
        level=logging.WARNING if result.error else logging.INFO,
        job=result.job,
        selected=result.selected,
        succeeded=result.succeeded,
        failed=result.failed,
        reason=result.error,
    )
    return result


def scheduler_status() -> dict[str, Any]:
    with _results_lock:
        return {job: result.as_dict() for job, result in LAST_RESULTS.items()}


def reminder_candidates(db: Session, now: datetime, window_days: int) -> list[ConsentArtifact]:
    window_end = now + timedelta(days=window_days)
    rows = db.scalars(
        select(ConsentArtifact)
        .where(
            ConsentArtifact.status == ArtifactStatus.ACTIVE,
            ConsentArtifact.is_deleted.is_(False),
            ConsentArtifact.expires_at >= now,
            ConsentArtifact.expires_at <= window_end,
        )
        .order_by(ConsentArtifact.expires_at.asc())
    ).all()
    # Already reminded for the current expiry window.
    return [
        artifact
        for artifact in rows
        if artifact.last_reminder_at is None
        or as_utc(artifact.last_reminder_at) < as_utc(artifact.expires_at) - timedelta(days=window_days)
    ]


def run_reminder_job(db: Session, engine: ConsentEngine, now: datetime | None = None) -> JobResult:
    now = now or utc_now()
    result = JobResult(job=JOB_REMINDERS, started_at=now)
    try:
        candidates = reminder_candidates(db, now, engine.settings.reminder_window_days)
        result.selected = len(candidates)
        for artifact in candidates:
            outcome = engine.send_renewal_reminder(db, artifact, now)
            if outcome == "sent":
                result.succeeded += 1
            elif outcome != "already_sent":
                result.failed += 1
    except Exception as exc:
        db.rollback()
        increment_metric(METRIC_SCHEDULER_JOB_FAILED, reason=JOB_REMINDERS)
        result.error = exc.__class__.__name__
    result.finished_at = utc_now()
    return _remember(result)


def run_expiry_job(db: Session, engine: ConsentEngine, now: datetime | None = None) -> JobResult:
    now = now or utc_now()
    result = JobResult(job=JOB_EXPIRY, started_at=now)
    try:
        selected, expired_ids = engine.expire_due(db, now)
        result.selected = selected
        result.succeeded = len(expired_ids)
        stale = expire_stale_requests(db, now)
        if stale:
            log_structured("scheduler.requests_expired", job=JOB_EXPIRY, value=stale)
    except Exception as exc:
        db.rollback()
        increment_metric(METRIC_SCHEDULER_JOB_FAILED, reason=JOB_EXPIRY)
        result.error = exc.__class__.__name__
        result.failed = max(result.selected - result.succeeded, 1)
    result.finished_at = utc_now()
    return _remember(result)


def pending_expiry_count(db: Session, now: datetime | None = None) -> int:
    now = now or utc_now()
    count = db.scalar(
        select(func.count())
        .select_from(ConsentArtifact)
        .where(
            ConsentArtifact.status == ArtifactStatus.ACTIVE,
            ConsentArtifact.is_deleted.is_(False),
            ConsentArtifact.expires_at < now,
        )
    )
    return int(count or 0)


def reset_results() -> None:
    with _results_lock:
        LAST_RESULTS.clear()
