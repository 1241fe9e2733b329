import uuid

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from core.auth import ensure_same_fiduciary, require_fiduciary
from core.config import get_settings
from core.consent_engine import ConsentEngine
from core.consent_history import list_history
from core.consent_requests import build_notice, initiate
from core.contracts import paginated
from core.deps import get_consent_engine, get_db
from models.fiduciary import DataFiduciary
from schemas.consent import (
    ArtifactOut,
    BoundPurposeOut,
    BulkValidateIn,
    ConsentInitiateIn,
    ConsentInitiateOut,
    ConsentSubmitIn,
    ConsentSubmitOut,
    HistoryOut,
    RenewalBatchOut,
    RenewalConfirmIn,
    RenewalOut,
    RenewIn,
    WithdrawIn,
    WithdrawOut,
)

router = APIRouter(prefix="/consents", tags=["consents"])
fiduciary_router = APIRouter(tags=["consents"])


@router.post(
    "/initiate",
    response_model=ConsentInitiateOut,
    description=(
        "Fiduciary-auth route. Opens a single-use consent request and returns the notice URL "
        "to show the data principal. `data_fiduciary_id` must be the caller."
    ),
)
def initiate_consent(
    payload: ConsentInitiateIn,
    db: Session = Depends(get_db),
    fiduciary: DataFiduciary = Depends(require_fiduciary),
):
    ensure_same_fiduciary(fiduciary, payload.data_fiduciary_id)
    result = initiate(
        db,
        fiduciary,
        external_user_id=payload.user_id,
        purpose_ids=payload.purposes,
        ttl_minutes=payload.ttl_minutes,
        language=payload.language,
        redirect_url=payload.redirect_url,
        duration_days=payload.duration,
        email=payload.email,
        phone=payload.phone,
        metadata=payload.metadata,
        settings=get_settings(),
    )
    return ConsentInitiateOut(**result)


@router.get(
    "/validate",
    response_model=dict,
    description="Fiduciary-auth route. Every call is recorded in the artifact history.",
)
def validate_consent(
    artifact_id: uuid.UUID,
    data_fiduciary_id: uuid.UUID,
    purpose_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    fiduciary: DataFiduciary = Depends(require_fiduciary),
    engine: ConsentEngine = Depends(get_consent_engine),
):
    purpose_id = purpose_id if isinstance(purpose_id, uuid.UUID) else None
    ensure_same_fiduciary(fiduciary, data_fiduciary_id)
    return engine.validate(db, fiduciary.id, artifact_id, purpose_id)


@router.post(
    "/validate-bulk",
    response_model=dict,
    description=(
        "Fiduciary-auth route. Validates up to 100 artifacts; a failing item is reported "
        "with `status: ERROR` and never fails the batch."
    ),
)
def validate_bulk(
    payload: BulkValidateIn,
    db: Session = Depends(get_db),
    fiduciary: DataFiduciary = Depends(require_fiduciary),
    engine: ConsentEngine = Depends(get_consent_engine),
):
    ensure_same_fiduciary(fiduciary, payload.data_fiduciary_id)
    items = [item.model_dump() for item in payload.validations]
    return {"results": engine.validate_bulk(db, fiduciary.id, items)}


@router.post(
    "/submit",
    response_model=ConsentSubmitOut,
    description="Public route used by the notice page. Grants consent for the selected purposes.",
)
def submit_consent(
    payload: ConsentSubmitIn,
    request: Request,
    db: Session = Depends(get_db),
    engine: ConsentEngine = Depends(get_consent_engine),
):
    evidence = {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }
    artifact = engine.submit(
        db,
        payload.cms_request_id,
        payload.selected_purposes,
        agree=payload.agree,
        metadata={**(payload.metadata or {}), **evidence},
    )
    detail = engine.describe(db, artifact)
    return ConsentSubmitOut(
        artifact_id=detail["artifact_id"],
        status=detail["status"],
        valid_till=detail["valid_till"],
        purposes=[BoundPurposeOut(**item) for item in detail["purposes"]],
        hash=detail["consent_text_hash"],
    )


@router.post(
    "/renew",
    response_model=RenewalOut | RenewalBatchOut,
    description=(
        "Fiduciary-auth route. `initiated_by=FIDUCIARY` opens a renewal the principal confirms later; "
        "`initiated_by=USER` with `agree=true` renews immediately. With `artifact_id` one consent is renewed. "
        "With `user_id` or `data_principal_id` every live consent of that principal is renewed and the "
        "result is `{renewals: [...]}`."
    ),
)
def renew_consent(
    payload: RenewIn,
    db: Session = Depends(get_db),
    fiduciary: DataFiduciary = Depends(require_fiduciary),
    engine: ConsentEngine = Depends(get_consent_engine),
):
    options = {
        "purpose_ids": payload.purpose_ids,
        "requested_extension": payload.requested_extension,
        "extend_by_days": payload.extend_by_days,
        "initiated_by": payload.initiated_by,
        "agree": payload.agree,
    }
    if payload.artifact_id is not None:
        return RenewalOut(**engine.initiate_renewal(db, fiduciary.id, payload.artifact_id, **options))
    results = engine.initiate_principal_renewal(
        db,
        fiduciary.id,
        user_id=payload.user_id,
        data_principal_id=payload.data_principal_id,
        **options,
    )
    return RenewalBatchOut(renewals=[RenewalOut(**result) for result in results])


@router.post(
    "/renewals/{renewal_id}/confirm",
    response_model=RenewalOut,
    description="Public route used by the data principal to confirm a pending renewal.",
)
def confirm_renewal(
    renewal_id: uuid.UUID,
    payload: RenewalConfirmIn,
    db: Session = Depends(get_db),
    engine: ConsentEngine = Depends(get_consent_engine),
):
    return RenewalOut(**engine.confirm_renewal(db, renewal_id, agree=payload.agree))


@router.get(
    "/{cms_request_id}",
    response_model=dict,
    description="Public route. Renders the notice for a pending request and marks it viewed.",
)
def get_notice(
    cms_request_id: uuid.UUID,
    language: str | None = Query(default=None, max_length=8),
    db: Session = Depends(get_db),
):
    language = language if isinstance(language, str) else None
    return build_notice(db, cms_request_id, language=language, settings=get_settings())


@fiduciary_router.post(
    "/{data_fiduciary_id}/consents/{artifact_id}/withdraw",
    response_model=WithdrawOut,
    description="Fiduciary-auth route. Relays the data principal's withdrawal.",
)
def withdraw_consent(
    data_fiduciary_id: uuid.UUID,
    artifact_id: uuid.UUID,
    payload: WithdrawIn,
    db: Session = Depends(get_db),
    fiduciary: DataFiduciary = Depends(require_fiduciary),
    engine: ConsentEngine = Depends(get_consent_engine),
):
    ensure_same_fiduciary(fiduciary, data_fiduciary_id)
    artifact = engine.withdraw(db, fiduciary.id, artifact_id, reason=payload.reason, notes=payload.notes)
    return WithdrawOut(artifact_id=artifact.id, status=artifact.status.value, withdrawn_at=artifact.withdrawn_at)


@fiduciary_router.get(
    "/{data_fiduciary_id}/consents/{artifact_id}",
    response_model=ArtifactOut,
    description="Fiduciary-auth route.",
)
def get_consent(
    data_fiduciary_id: uuid.UUID,
    artifact_id: uuid.UUID,
    db: Session = Depends(get_db),
    fiduciary: DataFiduciary = Depends(require_fiduciary),
    engine: ConsentEngine = Depends(get_consent_engine),
):
    ensure_same_fiduciary(fiduciary, data_fiduciary_id)
    artifact = engine.get_artifact(db, fiduciary.id, artifact_id)
    detail = engine.describe(db, artifact)
    detail["purposes"] = [BoundPurposeOut(**item) for item in detail["purposes"]]
    return ArtifactOut(**detail, integrity_verified=engine.verify_integrity(db, artifact))


@fiduciary_router.get(
    "/{data_fiduciary_id}/consents/{artifact_id}/history",
    response_model=dict,
    description="Fiduciary-auth route. Append-only lifecycle history, oldest first.",
)
def get_consent_history(
    data_fiduciary_id: uuid.UUID,
    artifact_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    fiduciary: DataFiduciary = Depends(require_fiduciary),
    engine: ConsentEngine = Depends(get_consent_engine),
):
    limit = limit if isinstance(limit, int) else int(getattr(limit, "default", 50))
    offset = offset if isinstance(offset, int) else int(getattr(offset, "default", 0))
    ensure_same_fiduciary(fiduciary, data_fiduciary_id)
    artifact = engine.get_artifact(db, fiduciary.id, artifact_id)
    rows, total = list_history(db, artifact, limit=limit, offset=offset)
    data = [
        HistoryOut(
            id=row.id,
            action=row.action.value,
            previous_status=row.previous_status,
            new_status=row.new_status,
            performed_by=row.performed_by,
            performed_by_type=row.performed_by_type.value,
            performed_at=row.performed_at,
            notes=row.notes,
        )
        for row in rows
    ]
    return paginated(data, limit=limit, offset=offset, count=total)
