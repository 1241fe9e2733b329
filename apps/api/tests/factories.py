import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.requests import Request

import models  # noqa: F401
from core.config import get_settings
from core.consent_engine import ConsentEngine
from core.consent_requests import initiate
from core.db import Base
from core.notifications import NotificationDispatcher
from core.purposes import create_purpose
from models.fiduciary import DataFiduciary

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    """Settable clock shared by the engine, dispatcher and services under test."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


def memory_session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine, sessionmaker(bind=engine, autocommit=False, autoflush=False)


def add_fiduciary(db, name: str | None = None, webhook_url: str | None = None) -> DataFiduciary:
    fiduciary = DataFiduciary(
        id=uuid.uuid4(),
        name=name or f"fiduciary-{uuid.uuid4().hex[:8]}",
        webhook_url=webhook_url,
    )
    db.add(fiduciary)
    db.commit()
    return fiduciary


def add_purpose(db, fiduciary: DataFiduciary, title: str, clock: Clock, **fields):
    purpose, version = create_purpose(db, fiduciary.id, title=title, clock=clock, **fields)
    return purpose, version


def build_engine(clock: Clock, settings=None) -> ConsentEngine:
    settings = settings or get_settings()
    return ConsentEngine(
        dispatcher=NotificationDispatcher(settings=settings, clock=clock),
        settings=settings,
        clock=clock,
    )


def open_request(db, fiduciary, purposes, clock: Clock, *, user_id: str = "user-1", **kwargs) -> uuid.UUID:
    result = initiate(
        db,
        fiduciary,
        external_user_id=user_id,
        purpose_ids=[purpose.id for purpose in purposes],
        clock=clock,
        **kwargs,
    )
    return result["cms_request_id"]


def grant(db, engine: ConsentEngine, fiduciary, purposes, clock: Clock, *, user_id: str = "user-1", **kwargs):
    request_id = open_request(db, fiduciary, purposes, clock, user_id=user_id, **kwargs)
    return engine.submit(db, request_id, [purpose.id for purpose in purposes], agree=True)


def make_request(headers: dict[str, str] | None = None, client: tuple[str, int] = ("127.0.0.1", 12345)) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)
