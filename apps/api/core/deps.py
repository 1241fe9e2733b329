from collections.abc import Iterator

from sqlalchemy.orm import Session

from core.config import get_settings
from core.consent_engine import ConsentEngine
from core.db import SessionLocal
from core.notifications import NotificationDispatcher


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_consent_engine() -> ConsentEngine:
    settings = get_settings()
    return ConsentEngine(dispatcher=NotificationDispatcher(settings=settings), settings=settings)
