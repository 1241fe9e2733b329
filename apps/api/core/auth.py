import hmac
import uuid
from typing import Protocol

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from core.api_keys import hash_api_key, touch_api_key
from core.config import get_settings
from core.deps import get_db
from core.errors import ForbiddenError
from core.failure_modes import classify_failure
from core.logging_utils import log_structured
from core.observability import (
    METRIC_FIDUCIARY_WRITE_DENIED,
    METRIC_RATE_LIMIT_ENFORCED,
    increment_metric,
)
from core.rate_limit import SQLiteRateLimiter
from models.api_key import ApiKey
from models.fiduciary import DataFiduciary


AUTH_ERROR = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Invalid authentication credentials",
)


class RateLimitHook(Protocol):
    def allow(self, identity: str, limit: int | None = None) -> bool: ...


settings = get_settings()
RATE_LIMITER: RateLimitHook = SQLiteRateLimiter(
    db_path=settings.rate_limit_db_path,
    limit_per_minute=settings.api_key_rate_limit_per_min,
)
bearer_scheme = HTTPBearer(auto_error=False)
admin_key_header = APIKeyHeader(name="X-Admin-Api-Key", auto_error=False)


def extract_api_key(
    request: Request,
    bearer: HTTPAuthorizationCredentials | None = None,
) -> str | None:
    if bearer and hasattr(bearer, "scheme") and bearer.scheme.lower() == "bearer" and bearer.credentials:
        return bearer.credentials.strip()
    authorization = request.headers.get("Authorization")
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token:
            return token.strip()
    x_api_key = request.headers.get("X-Api-Key")
    if x_api_key:
        return x_api_key.strip()
    return None


def _reject() -> None:
    raise AUTH_ERROR


def _request_id(request: Request) -> str | None:
    return getattr(getattr(request, "state", None), "request_id", None)


def _get_api_key_record(db: Session, presented_key_hash: str) -> ApiKey | None:
    return db.scalar(select(ApiKey).where(ApiKey.key_hash == presented_key_hash))


def _get_fiduciary(db: Session, fiduciary_id) -> DataFiduciary | None:
    return db.get(DataFiduciary, fiduciary_id)


def require_fiduciary(
    request: Request,
    db: Session = Depends(get_db),
    bearer: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
) -> DataFiduciary:
    raw_key = extract_api_key(request, bearer=bearer)
    if not raw_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing API key")

    key_fingerprint = hash_api_key(raw_key)
    record = _get_api_key_record(db, key_fingerprint)
    if record is None:
        _reject()
    if not hmac.compare_digest(record.key_hash, key_fingerprint):
        _reject()
    if record.revoked_at is not None:
        _reject()

    fiduciary = _get_fiduciary(db, record.data_fiduciary_id)
    if fiduciary is None:
        _reject()
    if not fiduciary.can_write:
        increment_metric(
            METRIC_FIDUCIARY_WRITE_DENIED,
            request_id=_request_id(request),
            reason="fiduciary_inactive",
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

    identity = f"apikey:{key_fingerprint}"
    try:
        if not RATE_LIMITER.allow(identity, fiduciary.rate_limit_per_min):
            increment_metric(
                METRIC_RATE_LIMIT_ENFORCED,
                request_id=_request_id(request),
                reason="limit_exceeded",
            )
            log_structured(
                "security.rate_limit_enforced",
                reason="limit_exceeded",
                fiduciary_id=str(fiduciary.id),
                request_id=_request_id(request),
            )
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
            )
    except HTTPException:
        raise
    except Exception as exc:
        log_structured(
            "security.rate_limiter_unavailable",
            failure_class=classify_failure(exc).value,
            request_id=_request_id(request),
        )
        if settings.env == "prod":
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Authentication unavailable",
            )

    try:
        touch_api_key(db, key_fingerprint)
    except Exception as exc:
        db.rollback()
        log_structured(
            "security.api_key_touch_failed",
            failure_class=classify_failure(exc).value,
            request_id=_request_id(request),
        )

    request.state.fiduciary_id = fiduciary.id
    return fiduciary


def ensure_same_fiduciary(fiduciary: DataFiduciary, claimed_id: uuid.UUID | str | None) -> None:
    """Reject requests that name a fiduciary other than the authenticated one."""
    if claimed_id is None:
        return
    if str(claimed_id) != str(fiduciary.id):
        increment_metric(METRIC_FIDUCIARY_WRITE_DENIED, reason="fiduciary_mismatch")
        raise ForbiddenError("Authenticated fiduciary does not match data_fiduciary_id")


def require_admin(admin_key: str | None = Security(admin_key_header)) -> str:
    if not admin_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing admin credentials")
    if not hmac.compare_digest(admin_key, settings.admin_api_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin credentials")
    return "admin"
