from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ConsentInitiateIn(BaseModel):
    data_fiduciary_id: UUID
    user_id: str = Field(min_length=1, max_length=255)
    purposes: list[UUID] = Field(min_length=1)
    duration: int | None = Field(default=None, gt=0)
    language: str | None = Field(default=None, max_length=8)
    redirect_url: str | None = Field(default=None, max_length=2048)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=32)
    ttl_minutes: int | None = Field(default=None, gt=0)
    metadata: dict[str, Any] | None = None


class ConsentInitiateOut(BaseModel):
    cms_request_id: UUID
    notice_url: str
    status: str
    expires_at: datetime
    redirect_url: str | None = None


class ConsentSubmitIn(BaseModel):
    cms_request_id: UUID
    selected_purposes: list[UUID] = Field(min_length=1)
    agree: bool
    metadata: dict[str, Any] | None = None


class BoundPurposeOut(BaseModel):
    purpose_id: UUID
    purpose_version_id: UUID
    version_number: int
    title: str


class ConsentSubmitOut(BaseModel):
    artifact_id: UUID
    status: str
    valid_till: datetime
    purposes: list[BoundPurposeOut]
    hash: str


class ValidationItemIn(BaseModel):
    artifact_id: UUID
    purpose_id: UUID | None = None


class BulkValidateIn(BaseModel):
    data_fiduciary_id: UUID
    validations: list[ValidationItemIn] = Field(min_length=1)


class WithdrawIn(BaseModel):
    reason: str | None = Field(default=None, max_length=500)
    notes: str | None = Field(default=None, max_length=2000)


class WithdrawOut(BaseModel):
    artifact_id: UUID
    status: str
    withdrawn_at: datetime


class RenewIn(BaseModel):
    artifact_id: UUID | None = None
    user_id: str | None = Field(default=None, min_length=1, max_length=255)
    data_principal_id: UUID | None = None
    purpose_ids: list[UUID] | None = None
    requested_extension: str | None = Field(default=None, max_length=16)
    extend_by_days: int | None = Field(default=None, gt=0)
    initiated_by: Literal["FIDUCIARY", "USER"] = "FIDUCIARY"
    agree: bool = False


class RenewalConfirmIn(BaseModel):
    agree: bool


class RenewalOut(BaseModel):
    renewal_id: UUID
    artifact_id: UUID
    status: str
    initiated_by: str
    extend_by_days: int
    purpose_ids: list[str]
    requested_at: datetime
    confirmed_at: datetime | None = None
    outcome: str | None = None
    result_artifact_id: UUID | None = None


class RenewalBatchOut(BaseModel):
    renewals: list[RenewalOut]


class ArtifactOut(BaseModel):
    artifact_id: UUID
    data_fiduciary_id: UUID
    data_principal_id: UUID
    user_id: str
    status: str
    requested_at: datetime
    granted_at: datetime
    valid_till: datetime
    withdrawn_at: datetime | None = None
    last_validated_at: datetime | None = None
    consent_text_hash: str
    integrity_verified: bool
    supersedes_id: UUID | None = None
    superseded_by_id: UUID | None = None
    metadata: dict[str, Any]
    purposes: list[BoundPurposeOut]


class HistoryOut(BaseModel):
    id: UUID
    action: str
    previous_status: str | None
    new_status: str | None
    performed_by: str | None
    performed_by_type: str
    performed_at: datetime
    notes: str | None

    model_config = ConfigDict(from_attributes=True)
