from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.principal import DataPrincipal, PrincipalFiduciaryMap


@dataclass(frozen=True)
class ContactDetails:
    email: str | None
    phone: str | None
    language: str

    def address_for(self, channel: str) -> str | None:
        if channel == "EMAIL":
            return self.email
        if channel == "SMS":
            return self.phone
        return None


def find_principal(db: Session, fiduciary_id: uuid.UUID, external_ref: str) -> DataPrincipal | None:
    mapping = db.scalar(
        select(PrincipalFiduciaryMap).where(
            PrincipalFiduciaryMap.data_fiduciary_id == fiduciary_id,
            PrincipalFiduciaryMap.external_ref == external_ref,
        )
    )
    if mapping is None:
        return None
    return db.get(DataPrincipal, mapping.data_principal_id)


def upsert_principal(
    db: Session,
    fiduciary_id: uuid.UUID,
    external_ref: str,
    *,
    email: str | None = None,
    phone: str | None = None,
    language: str | None = None,
) -> DataPrincipal:
    """Resolve the principal a fiduciary knows as ``external_ref``, creating it on first sight.

    Flushes only; the caller owns the transaction.
    """
    principal = find_principal(db, fiduciary_id, external_ref)
    if principal is None:
        principal = DataPrincipal(
            external_id=external_ref,
            email=email,
            phone=phone,
            language=language or "en",
        )
        db.add(principal)
        db.flush()
        db.add(
            PrincipalFiduciaryMap(
                data_fiduciary_id=fiduciary_id,
                data_principal_id=principal.id,
                external_ref=external_ref,
            )
        )
        db.flush()
        return principal

    if email and principal.email != email:
        principal.email = email
    if phone and principal.phone != phone:
        principal.phone = phone
    if language and principal.language != language:
        principal.language = language
    db.flush()
    return principal


def contact_details(db: Session, principal_id: uuid.UUID | None) -> ContactDetails | None:
    if principal_id is None:
        return None
    principal = db.get(DataPrincipal, principal_id)
    if principal is None:
        return None
    return ContactDetails(email=principal.email, phone=principal.phone, language=principal.language or "en")
