from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from relayq.core.config import get_settings
from relayq.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_api_token(authorization: str | None = Header(default=None)) -> None:
    # Shared bearer token; a deployment without api_token configured runs open (local/dev).
    expected = get_settings().api_token
    if not expected:
        return
    if not authorization:
        raise _auth_error("Missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _auth_error("Invalid authorization header")
    if not hmac.compare_digest(token.strip(), expected):
        raise _auth_error("Invalid bearer token")


async def get_tenant_id(
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-Id"),
    _auth: None = Depends(require_api_token),
) -> str:
    # Every producer route is tenant-scoped; reject requests that do not name one.
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "TENANT_REQUIRED", "message": "X-Tenant-Id header is required"},
        )
    return tenant_id
