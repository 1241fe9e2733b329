import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.auth import require_fiduciary
from core.deps import get_db
from core.purposes import (
    create_purpose,
    current_version,
    delete_purpose,
    get_owned_purpose,
    purpose_history,
    update_purpose,
)
from models.fiduciary import DataFiduciary
from models.purpose import Purpose, PurposeVersion
from schemas.purpose import (
    PurposeCreateIn,
    PurposeHistoryEntryOut,
    PurposeOut,
    PurposePatchIn,
    PurposeVersionOut,
)

router = APIRouter(prefix="/purposes", tags=["purposes"])


def _version_out(version: PurposeVersion) -> PurposeVersionOut:
    return PurposeVersionOut(
        id=version.id,
        purpose_id=version.purpose_id,
        version_number=version.version_number,
        title=version.title,
        description=version.description,
        legal_basis=version.legal_basis,
        data_fields=list(version.data_fields or []),
        retention_period_days=version.retention_period_days,
        language_code=version.language_code,
        is_current=version.is_current,
        published_at=version.published_at,
        deprecated_at=version.deprecated_at,
    )


def _purpose_out(purpose: Purpose, version: PurposeVersion | None, *, published: bool = False) -> PurposeOut:
    return PurposeOut(
        id=purpose.id,
        data_fiduciary_id=purpose.data_fiduciary_id,
        purpose_category_id=purpose.purpose_category_id,
        title=purpose.title,
        description=purpose.description,
        legal_basis=purpose.legal_basis,
        data_fields=list(purpose.data_fields or []),
        processing_activities=list(purpose.processing_activities or []),
        retention_period_days=purpose.retention_period_days,
        is_mandatory=purpose.is_mandatory,
        is_active=purpose.is_active,
        requires_renewal=purpose.requires_renewal,
        renewal_period_days=purpose.renewal_period_days,
        display_order=purpose.display_order,
        created_at=purpose.created_at,
        updated_at=purpose.updated_at,
        current_version=_version_out(version) if version is not None else None,
        version_published=published,
    )


@router.post("", response_model=PurposeOut, description="Fiduciary-auth route. Publishes version 1.")
def create_new_purpose(
    payload: PurposeCreateIn,
    db: Session = Depends(get_db),
    fiduciary: DataFiduciary = Depends(require_fiduciary),
):
    purpose, version = create_purpose(db, fiduciary.id, **payload.model_dump())
    return _purpose_out(purpose, version, published=True)


@router.patch(
    "/{purpose_id}",
    response_model=PurposeOut,
    description=(
        "Fiduciary-auth route. Changing a tracked field publishes a new version; "
        "`display_order` and `is_active` change in place."
    ),
)
def patch_purpose(
    purpose_id: uuid.UUID,
    payload: PurposePatchIn,
    db: Session = Depends(get_db),
    fiduciary: DataFiduciary = Depends(require_fiduciary),
):
    purpose, new_version = update_purpose(db, fiduciary.id, purpose_id, payload.model_dump(exclude_unset=True))
    return _purpose_out(purpose, new_version or current_version(db, purpose.id), published=new_version is not None)


@router.get("/{purpose_id}", response_model=PurposeOut, description="Fiduciary-auth route.")
def get_purpose(
    purpose_id: uuid.UUID,
    db: Session = Depends(get_db),
    fiduciary: DataFiduciary = Depends(require_fiduciary),
):
    purpose = get_owned_purpose(db, fiduciary.id, purpose_id)
    return _purpose_out(purpose, current_version(db, purpose.id))


@router.get("/{purpose_id}/versions/current", response_model=PurposeVersionOut, description="Fiduciary-auth route.")
def get_current_purpose_version(
    purpose_id: uuid.UUID,
    db: Session = Depends(get_db),
    fiduciary: DataFiduciary = Depends(require_fiduciary),
):
    get_owned_purpose(db, fiduciary.id, purpose_id)
    return _version_out(current_version(db, purpose_id))


@router.get(
    "/{purpose_id}/history",
    response_model=list[PurposeHistoryEntryOut],
    description="Fiduciary-auth route. Versions newest first with the number of consents bound to each.",
)
def get_purpose_history(
    purpose_id: uuid.UUID,
    db: Session = Depends(get_db),
    fiduciary: DataFiduciary = Depends(require_fiduciary),
):
    return [PurposeHistoryEntryOut(**entry) for entry in purpose_history(db, fiduciary.id, purpose_id)]


@router.delete(
    "/{purpose_id}",
    description="Fiduciary-auth route. Only purposes no consent has ever bound can be deleted.",
)
def delete_unused_purpose(
    purpose_id: uuid.UUID,
    db: Session = Depends(get_db),
    fiduciary: DataFiduciary = Depends(require_fiduciary),
):
    delete_purpose(db, fiduciary.id, purpose_id)
    return {"deleted": True}
