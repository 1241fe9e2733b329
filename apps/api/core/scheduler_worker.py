import asyncio

from core.config import get_settings
from core.db import SessionLocal
from core.deps import get_consent_engine
from core.logging_utils import log_structured
from core.scheduler import run_expiry_job, run_reminder_job

_worker_lock = asyncio.Lock()
_stop_event: asyncio.Event | None = None


def run_scheduled_jobs() -> None:
    """One scheduler cycle: reminders first, then expiry, each in its own session."""
    engine = get_consent_engine()
    for job in (run_reminder_job, run_expiry_job):
        db = SessionLocal()
        try:
            job(db, engine)
        except Exception as exc:
            db.rollback()
            log_structured("worker.scheduler_cycle_failed", job=job.__name__, error_class=exc.__class__.__name__)
        finally:
            db.close()


async def _scheduler_loop(app) -> None:
    global _stop_event
    if _stop_event is None:
        _stop_event = asyncio.Event()
    interval = get_settings().scheduler_interval_seconds
    try:
        while not _stop_event.is_set():
            await asyncio.to_thread(run_scheduled_jobs)
            try:
                await asyncio.wait_for(_stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
    except asyncio.CancelledError:
        return


def start_scheduler_worker(app) -> None:
    global _stop_event
    if not get_settings().scheduler_enabled:
        return
    existing_task = getattr(app.state, "scheduler_task", None)
    if existing_task is not None and not existing_task.done():
        return
    if _stop_event is None:
        _stop_event = asyncio.Event()
    _stop_event.clear()
    app.state.scheduler_task = asyncio.create_task(_scheduler_loop(app))


async def stop_scheduler_worker(app) -> None:
    task = getattr(app.state, "scheduler_task", None)
    if _stop_event is not None:
        _stop_event.set()
    if not task:
        return

    async with _worker_lock:
        task = getattr(app.state, "scheduler_task", None)
        if not task:
            return
        task.cancel()
        try:
            await asyncio.wait_for(task, timeout=5)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass
        app.state.scheduler_task = None
