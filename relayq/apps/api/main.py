from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from relayq.apps.api.errors import (
    http_exception_handler,
    invalid_destination_handler,
    provider_config_handler,
    template_not_found_handler,
    template_variables_missing_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
    webhook_signature_handler,
)
from relayq.apps.api.response import API_VERSION
from relayq.apps.api.routes.entries import router as entries_router
from relayq.apps.api.routes.health import router as health_router
from relayq.apps.api.routes.opt_outs import router as opt_outs_router
from relayq.apps.api.routes.settings import router as settings_router
from relayq.apps.api.routes.templates import router as templates_router
from relayq.apps.api.routes.webhooks import router as webhooks_router
from relayq.core.config import get_settings
from relayq.core.errors import (
    InvalidDestinationError,
    ProviderConfigError,
    TemplateNotFoundError,
    TemplateVariablesMissingError,
    WebhookSignatureError,
)
from relayq.core.logging import configure_logging
from relayq.persistence.guards import TenantPredicateError
from relayq.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="relayq API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter(f"http_{response.status_code // 100}xx")
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.add_exception_handler(TenantPredicateError, tenant_predicate_exception_handler)
    app.add_exception_handler(InvalidDestinationError, invalid_destination_handler)
    app.add_exception_handler(TemplateVariablesMissingError, template_variables_missing_handler)
    app.add_exception_handler(TemplateNotFoundError, template_not_found_handler)
    app.add_exception_handler(WebhookSignatureError, webhook_signature_handler)
    app.add_exception_handler(ProviderConfigError, provider_config_handler)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(entries_router, prefix=f"/{API_VERSION}")
    app.include_router(opt_outs_router, prefix=f"/{API_VERSION}")
    app.include_router(templates_router, prefix=f"/{API_VERSION}")
    app.include_router(settings_router, prefix=f"/{API_VERSION}")
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")

    # Unversioned probe for load balancers.
    app.include_router(health_router, include_in_schema=False)

    logger.info("api_created app_name=%s", get_settings().app_name)
    return app


app = create_app()
