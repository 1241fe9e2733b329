import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.api_keys import issue_api_key, list_api_keys
from core.auth import require_admin
from core.config import get_settings
from core.consent_engine import ConsentEngine
from core.contracts import paginated
from core.deps import get_consent_engine, get_db
from core.failure_modes import record_operation_failure
from core.logging_utils import log_structured
from core.notifications import process_pending_notifications, validate_webhook_url
from core.scheduler import pending_expiry_count, run_expiry_job, run_reminder_job, scheduler_status
from core.timeutils import utc_now
from models.api_key import ApiKey
from models.fiduciary import DataFiduciary, FiduciaryLifecycleState
from schemas.admin import (
    ApiKeyCreateIn,
    ApiKeyCreateOut,
    ApiKeyOut,
    FiduciaryCreateIn,
    FiduciaryOut,
    JobResultOut,
    SchedulerStatusOut,
)
from schemas.notification import NotificationProcessOut

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])
settings = get_settings()


def _fiduciary_out(fiduciary: DataFiduciary) -> FiduciaryOut:
    return FiduciaryOut(
        id=fiduciary.id,
        name=fiduciary.name,
        webhook_url=fiduciary.webhook_url,
        is_active=fiduciary.is_active,
        created_at=fiduciary.created_at,
    )


def _set_lifecycle(db: Session, fiduciary_id: uuid.UUID, state: FiduciaryLifecycleState) -> FiduciaryOut:
    fiduciary = db.get(DataFiduciary, fiduciary_id)
    if fiduciary is None:
        raise HTTPException(status_code=404, detail="Data fiduciary not found")
    if fiduciary.lifecycle_state == FiduciaryLifecycleState.DISABLED and state != FiduciaryLifecycleState.DISABLED:
        raise HTTPException(status_code=409, detail="Disabled fiduciary cannot be reactivated")
    if fiduciary.lifecycle_state == state:
        return _fiduciary_out(fiduciary)
    try:
        fiduciary.lifecycle_state = state
        fiduciary.is_active = state == FiduciaryLifecycleState.ACTIVE
        db.commit()
        db.refresh(fiduciary)
    except Exception as exc:
        db.rollback()
        record_operation_failure(
            operation=f"admin.fiduciary.{state.value}",
            exc=exc,
            fiduciary_id=fiduciary_id,
            resource_type="data_fiduciary",
            resource_id=str(fiduciary_id),
        )
        raise
    log_structured("admin.fiduciary_lifecycle_changed", fiduciary_id=str(fiduciary.id), status=state.value)
    return _fiduciary_out(fiduciary)


@router.post("/fiduciaries", response_model=FiduciaryOut, description="Admin-only route.")
def create_fiduciary(payload: FiduciaryCreateIn, db: Session = Depends(get_db)):
    webhook_url = validate_webhook_url(payload.webhook_url) if payload.webhook_url else None
    try:
        fiduciary = DataFiduciary(
            name=payload.name.strip(),
            contact_email=payload.contact_email,
            webhook_url=webhook_url,
            rate_limit_per_min=payload.rate_limit_per_min,
        )
        db.add(fiduciary)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        record_operation_failure(operation="admin.fiduciary.create", exc=exc, resource_type="data_fiduciary")
        raise HTTPException(status_code=409, detail="Data fiduciary already exists")
    except Exception as exc:
        db.rollback()
        record_operation_failure(operation="admin.fiduciary.create", exc=exc, resource_type="data_fiduciary")
        raise
    db.refresh(fiduciary)
    log_structured("admin.fiduciary_created", fiduciary_id=str(fiduciary.id))
    return _fiduciary_out(fiduciary)


@router.get("/fiduciaries", response_model=dict, description="Admin-only route. Supports pagination.")
def list_fiduciaries(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    limit = limit if isinstance(limit, int) else int(getattr(limit, "default", 50))
    offset = offset if isinstance(offset, int) else int(getattr(offset, "default", 0))
    total = int(db.scalar(select(func.count()).select_from(DataFiduciary)) or 0)
    fiduciaries = list(
        db.scalars(
            select(DataFiduciary).order_by(DataFiduciary.created_at.desc()).offset(offset).limit(limit)
        ).all()
    )
    return paginated([_fiduciary_out(item) for item in fiduciaries], limit=limit, offset=offset, count=total)


@router.patch("/fiduciaries/{fiduciary_id}/suspend", response_model=FiduciaryOut, description="Admin-only route.")
def suspend_fiduciary(fiduciary_id: uuid.UUID, db: Session = Depends(get_db)):
    return _set_lifecycle(db, fiduciary_id, FiduciaryLifecycleState.SUSPENDED)


@router.patch("/fiduciaries/{fiduciary_id}/reactivate", response_model=FiduciaryOut, description="Admin-only route.")
def reactivate_fiduciary(fiduciary_id: uuid.UUID, db: Session = Depends(get_db)):
    return _set_lifecycle(db, fiduciary_id, FiduciaryLifecycleState.ACTIVE)


@router.patch("/fiduciaries/{fiduciary_id}/disable", response_model=FiduciaryOut, description="Admin-only route.")
def disable_fiduciary(fiduciary_id: uuid.UUID, db: Session = Depends(get_db)):
    return _set_lifecycle(db, fiduciary_id, FiduciaryLifecycleState.DISABLED)


@router.post("/fiduciaries/{fiduciary_id}/api-keys", response_model=ApiKeyCreateOut, description="Admin-only route.")
def create_api_key(fiduciary_id: uuid.UUID, payload: ApiKeyCreateIn, db: Session = Depends(get_db)):
    fiduciary = db.get(DataFiduciary, fiduciary_id)
    if fiduciary is None:
        raise HTTPException(status_code=404, detail="Data fiduciary not found")
    try:
        api_key, plaintext_key = issue_api_key(db, fiduciary, payload.label)
        db.commit()
    except Exception as exc:
        db.rollback()
        record_operation_failure(
            operation="admin.api_key.create",
            exc=exc,
            fiduciary_id=fiduciary.id,
            resource_type="api_key",
        )
        raise
    db.refresh(api_key)
    return ApiKeyCreateOut(
        id=api_key.id,
        data_fiduciary_id=api_key.data_fiduciary_id,
        label=api_key.label,
        created_at=api_key.created_at,
        api_key=plaintext_key,
    )


@router.get(
    "/fiduciaries/{fiduciary_id}/api-keys",
    response_model=list[ApiKeyOut],
    description="Admin-only route. Key metadata only; plaintext keys are never retrievable.",
)
def get_api_keys(fiduciary_id: uuid.UUID, db: Session = Depends(get_db)):
    if db.get(DataFiduciary, fiduciary_id) is None:
        raise HTTPException(status_code=404, detail="Data fiduciary not found")
    return [
        ApiKeyOut(
            id=key.id,
            data_fiduciary_id=key.data_fiduciary_id,
            label=key.label,
            created_at=key.created_at,
            last_used_at=key.last_used_at,
            revoked_at=key.revoked_at,
        )
        for key in list_api_keys(db, fiduciary_id)
    ]


@router.post("/api-keys/{api_key_id}/revoke", description="Admin-only route.")
def revoke_api_key(api_key_id: uuid.UUID, db: Session = Depends(get_db)):
    api_key = db.get(ApiKey, api_key_id)
    if api_key is None:
        raise HTTPException(status_code=404, detail="API key not found")
    if not api_key.is_revoked:
        try:
            api_key.revoked_at = utc_now()
            db.commit()
        except Exception as exc:
            db.rollback()
            record_operation_failure(
                operation="admin.api_key.revoke",
                exc=exc,
                fiduciary_id=api_key.data_fiduciary_id,
                resource_type="api_key",
                resource_id=str(api_key.id),
            )
            raise
    return {"revoked": True}


@router.get("/scheduler/status", response_model=SchedulerStatusOut, description="Admin-only route.")
def get_scheduler_status(request: Request, db: Session = Depends(get_db)):
    task = getattr(request.app.state, "scheduler_task", None)
    return SchedulerStatusOut(
        enabled=settings.scheduler_enabled,
        interval_seconds=settings.scheduler_interval_seconds,
        running=task is not None and not task.done(),
        pending_expiry=pending_expiry_count(db),
        last_results={job: JobResultOut(**result) for job, result in scheduler_status().items()},
    )


@router.post("/scheduler/reminders/run", response_model=JobResultOut, description="Admin-only route.")
def run_reminders(db: Session = Depends(get_db), engine: ConsentEngine = Depends(get_consent_engine)):
    return JobResultOut(**run_reminder_job(db, engine).as_dict())


@router.post("/scheduler/expiry/run", response_model=JobResultOut, description="Admin-only route.")
def run_expiry(db: Session = Depends(get_db), engine: ConsentEngine = Depends(get_consent_engine)):
    return JobResultOut(**run_expiry_job(db, engine).as_dict())


@router.post("/notifications/process", response_model=NotificationProcessOut, description="Admin-only route.")
def process_notifications(
    max_batch: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    max_batch = max_batch if isinstance(max_batch, int) else 100
    processed = process_pending_notifications(db, max_batch=max_batch, settings=settings)
    return NotificationProcessOut(processed=processed)
