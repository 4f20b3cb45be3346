"""Bearer-token identity for the HTTP and WebSocket endpoints."""

import logging

from fastapi import Depends, Request, WebSocket
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from memlane.db.models import User
from memlane.db.stores import UserStore
from memlane.errors import Unauthorized

logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)


async def resolve_user(users: UserStore, token: str | None) -> User:
    """Return the user owning *token*; raise Unauthorized otherwise."""
    if not token:
        raise Unauthorized("Missing credentials")
    user = await users.get_by_token(token)
    if user is None:
        logger.warning("Rejected request with unknown token")
        raise Unauthorized("Invalid credentials")
    return user


async def current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> User:
    """FastAPI dependency: the authenticated user of an HTTP request."""
    token = credentials.credentials if credentials else None
    return await resolve_user(request.app.state.users, token)


def _token_from(query_params, headers) -> str | None:
    token = query_params.get("token")
    if token is None:
        header = headers.get("authorization", "")
        if header.lower().startswith("bearer "):
            token = header[7:]
    return token


async def stream_user(request: Request) -> User:
    """Like current_user, but also accepts ``?token=`` since EventSource cannot set headers."""
    return await resolve_user(request.app.state.users, _token_from(request.query_params, request.headers))


async def websocket_user(websocket: WebSocket) -> User:
    return await resolve_user(websocket.app.state.users, _token_from(websocket.query_params, websocket.headers))
