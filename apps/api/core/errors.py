from core.contracts import ErrorCode


class ConsentDomainError(Exception):
    """Base class for business-rule failures surfaced to API callers."""

    status_code = 400
    code = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(ConsentDomainError):
    status_code = 404
    code = ErrorCode.NOT_FOUND


class ConflictError(ConsentDomainError):
    status_code = 409
    code = ErrorCode.CONFLICT


class ForbiddenError(ConsentDomainError):
    status_code = 403
    code = ErrorCode.FORBIDDEN


class ValidationFailedError(ConsentDomainError):
    status_code = 422
    code = ErrorCode.VALIDATION_ERROR


class ExpiredStateError(ConsentDomainError):
    status_code = 410
    code = ErrorCode.EXPIRED
