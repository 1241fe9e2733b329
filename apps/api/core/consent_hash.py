import hmac
import uuid
from collections.abc import Iterable
from datetime import datetime

from core.canonical import sha256_hex
from core.timeutils import isoformat_utc


def consent_hash_material(
    fiduciary_id: uuid.UUID | str,
    principal_id: uuid.UUID | str,
    purpose_version_ids: Iterable[uuid.UUID | str],
    granted_at: datetime,
) -> dict:
    return {
        "data_fiduciary_id": str(fiduciary_id),
        "data_principal_id": str(principal_id),
        "purpose_version_ids": sorted(str(version_id) for version_id in purpose_version_ids),
        "granted_at": isoformat_utc(granted_at),
    }


def compute_consent_text_hash(
    fiduciary_id: uuid.UUID | str,
    principal_id: uuid.UUID | str,
    purpose_version_ids: Iterable[uuid.UUID | str],
    granted_at: datetime,
) -> str:
    return sha256_hex(consent_hash_material(fiduciary_id, principal_id, purpose_version_ids, granted_at))


def verify_consent_text_hash(
    stored_hash: str,
    fiduciary_id: uuid.UUID | str,
    principal_id: uuid.UUID | str,
    purpose_version_ids: Iterable[uuid.UUID | str],
    granted_at: datetime,
) -> bool:
    expected = compute_consent_text_hash(fiduciary_id, principal_id, purpose_version_ids, granted_at)
    return hmac.compare_digest(expected, stored_hash or "")
