from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from relayq.apps.api.response import error_response, is_versioned_request
from relayq.core.errors import (
    InvalidDestinationError,
    ProviderConfigError,
    TemplateNotFoundError,
    TemplateVariablesMissingError,
    WebhookSignatureError,
)
from relayq.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _envelope(request: Request, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": message}, status_code=status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    # Normalize HTTP exceptions into the shared error envelope for v1 routes.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for client parsing.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_errors(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


def jsonable_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
    # pydantic error contexts can hold exception instances; keep only JSON-safe fields.
    return [
        {"loc": list(err.get("loc", ())), "msg": str(err.get("msg", "")), "type": str(err.get("type", ""))}
        for err in errors
    ]


async def invalid_destination_handler(request: Request, exc: InvalidDestinationError) -> JSONResponse:
    return _envelope(request, 422, "INVALID_DESTINATION", str(exc))


async def template_variables_missing_handler(request: Request, exc: TemplateVariablesMissingError) -> JSONResponse:
    return _envelope(request, 422, "TEMPLATE_VARIABLES_MISSING", str(exc), {"missing": list(exc.missing)})


async def template_not_found_handler(request: Request, exc: TemplateNotFoundError) -> JSONResponse:
    return _envelope(request, 404, "TEMPLATE_NOT_FOUND", str(exc))


async def webhook_signature_handler(request: Request, exc: WebhookSignatureError) -> JSONResponse:
    return _envelope(request, 401, "WEBHOOK_SIGNATURE_INVALID", str(exc))


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    return _envelope(request, 400, "TENANT_REQUIRED", str(exc))


async def provider_config_handler(request: Request, exc: ProviderConfigError) -> JSONResponse:
    logger.error("provider_config_error path=%s error=%s", request.url.path, exc)
    return _envelope(request, 503, "PROVIDER_NOT_CONFIGURED", "Messaging provider is not configured")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_api_error path=%s", request.url.path, exc_info=exc)
    return _envelope(request, 500, "INTERNAL_ERROR", "Internal server error")
