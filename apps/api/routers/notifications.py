from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from core.auth import require_fiduciary
from core.contracts import paginated
from core.deps import get_db
from core.failure_modes import record_operation_failure
from core.notifications import derive_webhook_secret, mask_secret, process_pending_notifications, validate_webhook_url
from models.fiduciary import DataFiduciary
from models.notification import WebhookLog
from schemas.notification import NotificationProcessOut, WebhookLogOut

router = APIRouter(prefix="/notifications", tags=["notifications"])


class WebhookConfigIn(BaseModel):
    url: str | None = None


class WebhookConfigOut(BaseModel):
    url: str | None
    secret_masked: str


def _config_out(fiduciary: DataFiduciary) -> WebhookConfigOut:
    return WebhookConfigOut(
        url=fiduciary.webhook_url,
        secret_masked=mask_secret(derive_webhook_secret(fiduciary.id)),
    )


@router.get("/webhook", response_model=WebhookConfigOut, description="Fiduciary-auth route.")
def get_webhook_config(fiduciary: DataFiduciary = Depends(require_fiduciary)):
    return _config_out(fiduciary)


@router.put(
    "/webhook",
    response_model=WebhookConfigOut,
    description=(
        "Fiduciary-auth route. Sets or clears the webhook URL. Deliveries carry "
        "`X-Webhook-Timestamp` and `X-Webhook-Signature` (HMAC-SHA256 over `<timestamp>.<body>`)."
    ),
)
def put_webhook_config(
    payload: WebhookConfigIn,
    db: Session = Depends(get_db),
    fiduciary: DataFiduciary = Depends(require_fiduciary),
):
    url = validate_webhook_url(payload.url) if payload.url else None
    try:
        fiduciary.webhook_url = url
        db.commit()
        db.refresh(fiduciary)
    except Exception as exc:
        db.rollback()
        record_operation_failure(
            operation="notification.webhook_config",
            exc=exc,
            fiduciary_id=fiduciary.id,
            resource_type="data_fiduciary",
        )
        raise
    return _config_out(fiduciary)


@router.get(
    "/webhook-logs",
    response_model=dict,
    description="Fiduciary-auth route. One row per webhook delivery attempt, newest first.",
)
def list_webhook_logs(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    event_type: str | None = Query(default=None),
    success: bool | None = Query(default=None),
    db: Session = Depends(get_db),
    fiduciary: DataFiduciary = Depends(require_fiduciary),
):
    limit = limit if isinstance(limit, int) else int(getattr(limit, "default", 50))
    offset = offset if isinstance(offset, int) else int(getattr(offset, "default", 0))
    event_type = event_type if isinstance(event_type, str) else None
    success = success if isinstance(success, bool) else None

    filters = [WebhookLog.data_fiduciary_id == fiduciary.id]
    if event_type:
        filters.append(WebhookLog.event_type == event_type)
    if success is not None:
        filters.append(WebhookLog.success.is_(success))
    total = int(db.scalar(select(func.count()).select_from(WebhookLog).where(*filters)) or 0)
    rows = list(
        db.scalars(
            select(WebhookLog)
            .where(*filters)
            .order_by(WebhookLog.created_at.desc())
            .offset(offset)
            .limit(limit)
        ).all()
    )
    data = [WebhookLogOut.model_validate(row) for row in rows]
    return paginated(data, limit=limit, offset=offset, count=total)


@router.post("/process-now", response_model=NotificationProcessOut, description="Fiduciary-auth route.")
def process_now(
    db: Session = Depends(get_db),
    fiduciary: DataFiduciary = Depends(require_fiduciary),
):
    processed = process_pending_notifications(db, fiduciary_id=fiduciary.id)
    return NotificationProcessOut(processed=processed)
