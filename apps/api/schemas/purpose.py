from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class PurposeCreateIn(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    purpose_category_id: UUID | None = None
    legal_basis: str | None = Field(default=None, max_length=64)
    data_fields: list[str] = Field(default_factory=list)
    processing_activities: list[str] = Field(default_factory=list)
    retention_period_days: int | None = Field(default=None, gt=0)
    is_mandatory: bool = False
    requires_renewal: bool = False
    renewal_period_days: int | None = Field(default=None, gt=0)
    display_order: int = 0
    language_code: str = Field(default="en", max_length=8)


class PurposePatchIn(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    purpose_category_id: UUID | None = None
    legal_basis: str | None = Field(default=None, max_length=64)
    data_fields: list[str] | None = None
    processing_activities: list[str] | None = None
    retention_period_days: int | None = Field(default=None, gt=0)
    is_mandatory: bool | None = None
    requires_renewal: bool | None = None
    renewal_period_days: int | None = Field(default=None, gt=0)
    display_order: int | None = None
    is_active: bool | None = None


class PurposeVersionOut(BaseModel):
    id: UUID
    purpose_id: UUID
    version_number: int
    title: str
    description: str | None
    legal_basis: str | None
    data_fields: list[str]
    retention_period_days: int | None
    language_code: str
    is_current: bool
    published_at: datetime
    deprecated_at: datetime | None = None


class PurposeOut(BaseModel):
    id: UUID
    data_fiduciary_id: UUID
    purpose_category_id: UUID | None
    title: str
    description: str | None
    legal_basis: str | None
    data_fields: list[str]
    processing_activities: list[str]
    retention_period_days: int | None
    is_mandatory: bool
    is_active: bool
    requires_renewal: bool
    renewal_period_days: int | None
    display_order: int
    created_at: datetime
    updated_at: datetime
    current_version: PurposeVersionOut | None = None
    version_published: bool = False


class PurposeHistoryEntryOut(BaseModel):
    id: UUID
    version_number: int
    title: str
    description: str | None
    language_code: str
    is_current: bool
    status: str
    published_at: datetime
    deprecated_at: datetime | None = None
    consent_count: int
