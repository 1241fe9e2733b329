from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
import logging
from typing import Any
import uuid

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from core.errors import ConsentDomainError
from core.logging_utils import log_structured
from core.observability import unexpected_exception_metric


class FailureClass(StrEnum):
    DOMAIN_RULE = "domain.rule"
    DB_UNAVAILABLE = "db.unavailable"
    DB_CONSTRAINT_VIOLATION = "db.constraint_violation"
    SERIALIZATION_FAILED = "serialization.failed"
    UNEXPECTED_EXCEPTION = "unexpected.exception"


@dataclass(frozen=True)
class FailurePolicy:
    failure_class: FailureClass
    http_status: int
    fail_closed: bool


def classify_failure(exc: Exception) -> FailureClass:
    if isinstance(exc, ConsentDomainError):
        return FailureClass.DOMAIN_RULE
    if isinstance(exc, IntegrityError):
        return FailureClass.DB_CONSTRAINT_VIOLATION
    if isinstance(exc, (OperationalError, DBAPIError)):
        return FailureClass.DB_UNAVAILABLE

    lowered = str(exc).lower()
    if "serializ" in lowered or "json" in lowered:
        return FailureClass.SERIALIZATION_FAILED
    return FailureClass.UNEXPECTED_EXCEPTION


def failure_policy(exc: Exception) -> FailurePolicy:
    failure_class = classify_failure(exc)
    if failure_class == FailureClass.DOMAIN_RULE:
        return FailurePolicy(failure_class=failure_class, http_status=exc.status_code, fail_closed=True)
    if failure_class == FailureClass.DB_UNAVAILABLE:
        return FailurePolicy(failure_class=failure_class, http_status=503, fail_closed=True)
    if failure_class == FailureClass.DB_CONSTRAINT_VIOLATION:
        return FailurePolicy(failure_class=failure_class, http_status=409, fail_closed=True)
    if failure_class == FailureClass.SERIALIZATION_FAILED:
        return FailurePolicy(failure_class=failure_class, http_status=422, fail_closed=True)
    return FailurePolicy(failure_class=failure_class, http_status=500, fail_closed=True)


def record_operation_failure(
    *,
    operation: str,
    exc: Exception,
    fiduciary_id: uuid.UUID | str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    extra_payload: dict[str, Any] | None = None,
) -> None:
    """Failure telemetry emitted after rollback boundaries. Never raises."""
    failure_class = classify_failure(exc)
    extra = extra_payload or {}
    if failure_class == FailureClass.UNEXPECTED_EXCEPTION:
        unexpected_exception_metric(exc.__class__.__name__, request_id=extra.get("request_id"))
    log_structured(
        f"{operation}.failed",
        level=logging.INFO if failure_class == FailureClass.DOMAIN_RULE else logging.WARNING,
        failure_class=failure_class.value,
        error_class=exc.__class__.__name__,
        fiduciary_id=str(fiduciary_id) if fiduciary_id is not None else None,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=extra.get("request_id"),
        path=extra.get("path"),
    )
