import hashlib
import hmac
import secrets
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from core.config import get_settings
from core.timeutils import utc_now
from models.api_key import ApiKey
from models.fiduciary import DataFiduciary

API_KEY_PREFIX = "clce"
API_KEY_HEADER = "Authorization: Bearer <api_key>"
LAST_USED_RESOLUTION = timedelta(minutes=1)


def generate_api_key() -> str:
    token = secrets.token_urlsafe(32)
    return f"{API_KEY_PREFIX}_{token}"


def _get_hash_secret() -> str:
    return get_settings().api_key_hash_secret


def hash_api_key(raw_key: str) -> str:
    secret = _get_hash_secret().encode("utf-8")
    return hmac.new(secret, raw_key.encode("utf-8"), hashlib.sha256).hexdigest()


def issue_api_key(db: Session, fiduciary: DataFiduciary, label: str) -> tuple[ApiKey, str]:
    """Create a key record for ``fiduciary``. The plaintext is returned once and never stored."""
    plaintext_key = generate_api_key()
    record = ApiKey(
        data_fiduciary_id=fiduciary.id,
        key_hash=hash_api_key(plaintext_key),
        label=label,
    )
    db.add(record)
    db.flush()
    return record, plaintext_key


def touch_api_key(db: Session, key_hash: str, now: datetime | None = None) -> bool:
    """Stamp ``last_used_at`` unless it was already stamped within the last minute."""
    now = now or utc_now()
    stale_before = now - LAST_USED_RESOLUTION
    result = db.execute(
        update(ApiKey)
        .where(
            ApiKey.key_hash == key_hash,
            or_(ApiKey.last_used_at.is_(None), ApiKey.last_used_at < stale_before),
        )
        .values(last_used_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def list_api_keys(db: Session, fiduciary_id) -> list[ApiKey]:
    return list(
        db.scalars(
            select(ApiKey).where(ApiKey.data_fiduciary_id == fiduciary_id).order_by(ApiKey.created_at.desc())
        ).all()
    )
