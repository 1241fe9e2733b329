from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class WebhookLogOut(BaseModel):
    id: UUID
    notification_id: UUID | None
    event_type: str
    url: str
    method: str
    status_code: int | None
    response_time_ms: int | None
    success: bool
    error_message: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationProcessOut(BaseModel):
    processed: int
