import json
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import get_settings
from core.contracts import API_VERSION_HEADER, ErrorCode, error_body, resolve_api_version
from core.db import Base, current_migration_heads, database_reachable, engine
from core.errors import ConsentDomainError
from core.failure_modes import failure_policy, record_operation_failure
from core.logging_utils import configure_logging, log_request, log_structured, monotonic_ms, request_id_from_request
from core.notification_worker import start_notification_worker, stop_notification_worker
from core.scheduler_worker import start_scheduler_worker, stop_scheduler_worker
import models  # noqa: F401  registers every table on Base.metadata
from routers.admin import router as admin_router
from routers.consents import fiduciary_router as fiduciary_consents_router
from routers.consents import router as consents_router
from routers.health import router as health_router
from routers.notifications import router as notifications_router
from routers.purposes import router as purposes_router

settings = get_settings()
configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Consent Lifecycle API",
    description=(
        "Fiduciary API uses `Authorization: Bearer <api_key>`. Notice rendering, consent submission and "
        "renewal confirmation are public, principal-facing routes. "
        "Admin API uses `X-Admin-Api-Key` and is isolated from fiduciary authentication."
    ),
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    openapi_tags=[
        {"name": "consents", "description": "Consent requests, artifacts, validation, withdrawal and renewal."},
        {"name": "purposes", "description": "Versioned processing purposes."},
        {"name": "notifications", "description": "Webhook configuration and delivery logs."},
        {"name": "admin", "description": "Admin-only fiduciary, key, scheduler and queue controls."},
        {"name": "health", "description": "Operational liveness and diagnostics."},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Api-Key", "X-Request-Id", API_VERSION_HEADER],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    try:
        api_version = resolve_api_version(request.headers.get(API_VERSION_HEADER))
    except ValueError as exc:
        return JSONResponse(
            status_code=400,
            content=error_body(
                ErrorCode.VALIDATION_ERROR,
                str(exc),
                request_id_from_request(request),
            ),
        )

    request_id = request_id_from_request(request)
    request.state.request_id = request_id
    request.state.api_version = api_version
    started = monotonic_ms()
    response = await call_next(request)
    skip_auto_envelope = request.url.path in {"/openapi.json", "/docs", "/redoc"}
    if (
        not skip_auto_envelope
        and response.status_code < 400
        and response.headers.get("content-type", "").startswith("application/json")
    ):
        body = b""
        async for chunk in response.body_iterator:
            body += chunk
        try:
            decoded = json.loads(body.decode("utf-8")) if body else None
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, dict) and ("data" in decoded or "error" in decoded):
            wrapped = decoded
        else:
            wrapped = {"data": decoded}
        response = JSONResponse(content=wrapped, status_code=response.status_code)
    response.headers["X-Request-Id"] = request_id
    response.headers[API_VERSION_HEADER] = api_version
    elapsed = monotonic_ms() - started
    log_request(request_id, request.method, request.url.path, response.status_code, elapsed)
    return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _map_http_error_code(status_code: int, detail: str) -> ErrorCode:
    lowered = (detail or "").lower()
    if status_code == 429:
        return ErrorCode.RATE_LIMIT_EXCEEDED
    if status_code == 404:
        return ErrorCode.NOT_FOUND
    if status_code == 409:
        return ErrorCode.CONFLICT
    if status_code == 403 and "access denied" in lowered:
        return ErrorCode.FIDUCIARY_DISABLED
    if status_code == 403:
        return ErrorCode.FORBIDDEN
    if status_code == 401 and "missing" in lowered:
        return ErrorCode.AUTH_MISSING
    if status_code == 401:
        return ErrorCode.AUTH_INVALID
    if status_code == 503:
        return ErrorCode.SERVICE_UNAVAILABLE
    return ErrorCode.INTERNAL_ERROR


@app.exception_handler(ConsentDomainError)
async def domain_exception_handler(request: Request, exc: ConsentDomainError):
    log_structured(
        "http.domain_error",
        request_id=_request_id(request),
        path=request.url.path,
        status_code=exc.status_code,
        error_class=exc.__class__.__name__,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.code, exc.message, _request_id(request)),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    message = "Request could not be processed"
    if exc.status_code in {401, 403, 404, 409, 422, 429, 503}:
        message = str(exc.detail) if isinstance(exc.detail, str) else message
    code = _map_http_error_code(exc.status_code, str(exc.detail))
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(code, message, _request_id(request)),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    log_structured(
        "http.validation_error",
        request_id=_request_id(request),
        path=request.url.path,
        method=request.method,
    )
    return JSONResponse(
        status_code=422,
        content=error_body(
            ErrorCode.VALIDATION_ERROR,
            "Request validation failed",
            _request_id(request),
        ),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    policy = failure_policy(exc)
    record_operation_failure(
        operation="http.request",
        exc=exc,
        resource_type="request",
        extra_payload={"request_id": _request_id(request)},
    )
    code = ErrorCode.SERVICE_UNAVAILABLE if policy.http_status == 503 else ErrorCode.INTERNAL_ERROR
    if policy.http_status == 409:
        code = ErrorCode.CONFLICT
    return JSONResponse(
        status_code=policy.http_status,
        content=error_body(code, "Internal server error", _request_id(request)),
    )


app.include_router(health_router)


@app.get("/")
def root():
    return {"status": "Consent Lifecycle API running"}


app.include_router(consents_router)
app.include_router(purposes_router)
app.include_router(notifications_router)
app.include_router(admin_router)
app.include_router(fiduciary_consents_router)


@app.on_event("startup")
async def on_startup() -> None:
    migration_heads = current_migration_heads()
    logger.info(
        "startup env=%s version_hash=%s migration_head=%s",
        settings.env,
        settings.version_hash,
        migration_heads,
    )

    if settings.expected_alembic_head and settings.expected_alembic_head != migration_heads:
        raise RuntimeError("migration head does not match EXPECTED_ALEMBIC_HEAD")
    if settings.env == "prod" and not settings.expected_alembic_head:
        logger.warning("EXPECTED_ALEMBIC_HEAD is not set; skipping migration-head enforcement")

    if settings.env == "dev" and settings.auto_create_schema:
        Base.metadata.create_all(bind=engine)

    if not database_reachable():
        raise RuntimeError("database connectivity check failed")

    start_notification_worker(app)
    start_scheduler_worker(app)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await stop_scheduler_worker(app)
    await stop_notification_worker(app)
