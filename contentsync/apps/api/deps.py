from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentsync.core.config import get_settings
from contentsync.realtime.multiplexer import ChannelMultiplexer


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    # The app factory decides which database jobs and requests talk to.
    return request.app.state.session_factory


async def get_db(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with session_factory() as session:
        yield session


def get_multiplexer(request: Request) -> ChannelMultiplexer:
    return request.app.state.multiplexer


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def require_admin(authorization: str | None = Header(default=None)) -> None:
    # Job and realtime endpoints are operator-facing; a single admin token guards them.
    settings = get_settings()
    if not settings.auth_enabled:
        return
    token = _parse_bearer_token(authorization)
    expected = settings.admin_api_token
    if not token or not expected:
        raise _auth_error("Missing or invalid bearer token")
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise _auth_error("Missing or invalid bearer token")
