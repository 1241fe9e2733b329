from enum import StrEnum
from typing import Any


API_VERSION_HEADER = "X-API-Version"
API_VERSION_V1 = "v1"
DEFAULT_API_VERSION = API_VERSION_V1
SUPPORTED_API_VERSIONS = frozenset({API_VERSION_V1})


class ErrorCode(StrEnum):
    AUTH_MISSING = "AUTH_MISSING"
    AUTH_INVALID = "AUTH_INVALID"
    FIDUCIARY_DISABLED = "FIDUCIARY_DISABLED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    EXPIRED = "EXPIRED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    FORBIDDEN = "FORBIDDEN"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class WebhookEvent(StrEnum):
    CONSENT_GRANTED = "consent.granted"
    CONSENT_UPDATED = "consent.updated"
    CONSENT_WITHDRAWN = "consent.withdrawn"
    CONSENT_EXPIRED = "consent.expired"
    CONSENT_RENEWAL_INITIATED = "consent.renewal_initiated"
    CONSENT_RENEWED = "consent.renewed"


class PrincipalMessage(StrEnum):
    CONSENT_GRANTED = "consent_granted"
    CONSENT_WITHDRAWN = "consent_withdrawn"
    CONSENT_EXPIRED = "consent_expired"
    CONSENT_RENEWED = "consent_renewed"
    CONSENT_RENEWAL_REQUESTED = "consent_renewal_requested"
    CONSENT_RENEWAL_REMINDER = "consent_renewal_reminder"


FROZEN_CONTRACTS: dict[str, dict[str, Any]] = {
    API_VERSION_V1: {
        "version": API_VERSION_V1,
        "envelopes": {
            "success": {
                "type": "object",
                "required": ["data"],
                "properties": {"data": {"type": "any"}},
                "additionalProperties": False,
            },
            "error": {
                "type": "object",
                "required": ["error"],
                "properties": {
                    "error": {
                        "type": "object",
                        "required": ["code", "message", "request_id"],
                        "properties": {
                            "code": {"type": "string"},
                            "message": {"type": "string"},
                            "request_id": {"type": "string"},
                        },
                        "additionalProperties": False,
                    }
                },
                "additionalProperties": False,
            },
            "pagination": {
                "type": "object",
                "required": ["data", "meta"],
                "properties": {
                    "data": {"type": "array"},
                    "meta": {
                        "type": "object",
                        "required": ["limit", "offset", "count"],
                        "properties": {
                            "limit": {"type": "integer"},
                            "offset": {"type": "integer"},
                            "count": {"type": "integer"},
                        },
                        "additionalProperties": False,
                    },
                },
                "additionalProperties": False,
            },
        },
        "headers": {
            "auth": ["Authorization: Bearer <api_key>", "X-Api-Key (optional fallback)"],
            "admin_auth": ["X-Admin-Api-Key: <admin_api_key>"],
            "version": [f"{API_VERSION_HEADER}: {API_VERSION_V1}"],
            "webhook_signing": ["X-Webhook-Timestamp: <unix-seconds>", "X-Webhook-Signature: <hex-hmac-sha256>"],
        },
        "webhook_events": sorted(event.value for event in WebhookEvent),
        "consent_text_hash": (
            "SHA256(canonical_json({data_fiduciary_id, data_principal_id, "
            "purpose_version_ids (sorted), granted_at (UTC ISO-8601)}))"
        ),
    }
}


def resolve_api_version(version_header: str | None) -> str:
    if version_header is None:
        return DEFAULT_API_VERSION
    normalized = version_header.strip().lower()
    if not normalized:
        raise ValueError("API version header is empty")
    if normalized not in SUPPORTED_API_VERSIONS:
        raise ValueError(f"Unsupported API version: {normalized}")
    return normalized


def frozen_contract(version: str) -> dict[str, Any]:
    if version not in FROZEN_CONTRACTS:
        raise ValueError(f"Unsupported API contract version: {version}")
    return FROZEN_CONTRACTS[version]


def success(data: Any) -> dict[str, Any]:
    return {"data": data}


def paginated(data: list[Any], *, limit: int, offset: int, count: int) -> dict[str, Any]:
    return {
        "data": data,
        "meta": {
            "limit": limit,
            "offset": offset,
            "count": count,
        },
    }


def error_body(code: ErrorCode, message: str, request_id: str) -> dict[str, Any]:
    return {
        "error": {
            "code": str(code),
            "message": message,
            "request_id": request_id,
        }
    }
