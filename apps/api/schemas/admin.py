from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class JobResultOut(BaseModel):
    job: str
    started_at: datetime
    finished_at: datetime | None = None
    selected: int
    succeeded: int
    failed: int
    error: str | None = None


class SchedulerStatusOut(BaseModel):
    enabled: bool
    interval_seconds: int
    running: bool
    pending_expiry: int
    last_results: dict[str, JobResultOut]


class FiduciaryCreateIn(BaseModel):
    name: str
    contact_email: str | None = None
    webhook_url: str | None = None
    rate_limit_per_min: int | None = None


class FiduciaryOut(BaseModel):
    id: UUID
    name: str
    webhook_url: str | None
    is_active: bool
    created_at: datetime


class ApiKeyCreateIn(BaseModel):
    label: str = "admin-created-key"


class ApiKeyCreateOut(BaseModel):
    id: UUID
    data_fiduciary_id: UUID
    label: str
    created_at: datetime
    api_key: str


class ApiKeyOut(BaseModel):
    id: UUID
    data_fiduciary_id: UUID
    label: str
    created_at: datetime
    last_used_at: datetime | None = None
    revoked_at: datetime | None = None
