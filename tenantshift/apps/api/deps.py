from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Header, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tenantshift.core.config import get_settings
from tenantshift.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class AdminPrincipal(BaseModel):
    subject_id: str
    auth_method: str = "admin_token"


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str:
    if not header_value:
        raise _auth_error("Missing or invalid bearer token")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def require_admin(
    authorization: str | None = Header(default=None),
    x_operator: str | None = Header(default=None, alias="X-Operator"),
) -> AdminPrincipal:
    token = _parse_bearer_token(authorization)
    expected = get_settings().admin_api_token
    # Constant-time compare so token probing learns nothing from timing.
    if not expected or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise _auth_error("Missing or invalid bearer token")
    return AdminPrincipal(subject_id=x_operator or "admin")
