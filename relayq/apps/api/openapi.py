from __future__ import annotations

from typing import Any

from relayq.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Missing tenant", code="TENANT_REQUIRED", message="X-Tenant-Id header is required"),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    404: _response("Not found", code="NOT_FOUND", message="Queue entry not found"),
    422: _response(
        "Validation error",
        code="TEMPLATE_VARIABLES_MISSING",
        message="Missing template variables: name",
        details={"missing": ["name"]},
    ),
    500: _response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}

WEBHOOK_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _response("Bad signature", code="WEBHOOK_SIGNATURE_INVALID", message="signature_mismatch"),
    422: _response("Unreadable callback", code="VALIDATION_ERROR", message="Callback payload is missing fields"),
    500: _response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}
