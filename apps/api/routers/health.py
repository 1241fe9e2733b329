from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from core.config import get_settings
from core.db import current_migration_heads, database_reachable

router = APIRouter(tags=["health"])
settings = get_settings()

BACKGROUND_TASKS = (
    ("notification_worker", "notification_worker_enabled", "notification_worker_task"),
    ("scheduler", "scheduler_enabled", "scheduler_task"),
)


def _migration_check() -> str:
    expected_head = settings.expected_alembic_head.strip()
    if not expected_head:
        return "skipped"
    try:
        return "ok" if current_migration_heads() == expected_head else "failed"
    except Exception:
        return "failed"


def _task_check(app_state, enabled: bool, attr: str) -> str:
    if not enabled:
        return "skipped"
    task = getattr(app_state, attr, None)
    return "ok" if (task is not None and not task.done()) else "failed"


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/live")
def live():
    return {"status": "ok"}


@router.get("/ready")
def ready(request: Request):
    checks: dict[str, str] = {
        "db": "ok" if database_reachable() else "failed",
        "migration_head": _migration_check(),
    }
    app_state = getattr(request.app, "state", object())
    for check, flag, attr in BACKGROUND_TASKS:
        checks[check] = _task_check(app_state, bool(getattr(settings, flag)), attr)

    if any(result == "failed" for result in checks.values()):
        return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})
    return {"status": "ready", "checks": checks}


@router.get("/version")
def version():
    return {"name": settings.app_name, "version": settings.app_version, "version_hash": settings.version_hash}
