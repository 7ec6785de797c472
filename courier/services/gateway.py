"""Handshake authentication for real-time connections.

Uses the same credentials as the HTTP API: the access token is tried first,
then the refresh token (which must still be stored for the user). Nothing is
registered anywhere until authentication has succeeded.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

from fastapi.websockets import WebSocket
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from courier.core.errors import AuthenticationError, UnavailableError
from courier.services.identity import resolve_by_refresh, resolve_identity
from courier.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


@dataclass(frozen=True)
class ConnectionSession:
    user_id: str
    role: str
    username: str
    connection_id: str


def read_credentials(websocket: WebSocket) -> Tuple[Optional[str], Optional[str]]:
    """Pull (access, refresh) from cookies, then handshake query/auth data."""
    access = (
        websocket.cookies.get(ACCESS_COOKIE)
        or websocket.query_params.get(ACCESS_COOKIE)
        or websocket.headers.get("authorization")
    )
    refresh = websocket.cookies.get(REFRESH_COOKIE) or websocket.query_params.get(REFRESH_COOKIE)
    return access, refresh


async def _lookup(db: Session, fn: Callable[..., Any], *args: Any) -> Any:
    try:
        return await run_in_threadpool(fn, *args)
    except OperationalError as exc:
        db.rollback()
        logger.error("Handshake lookup failed: %s", exc)
        raise UnavailableError() from exc


async def authenticate_handshake(websocket: WebSocket, db: Session) -> ConnectionSession:
    access, refresh = read_credentials(websocket)

    identity = resolve_identity(access)
    if identity is None and refresh:
        identity = await _lookup(db, resolve_by_refresh, db, refresh)
    if identity is None:
        logger.info("Handshake rejected: no valid credentials")
        raise AuthenticationError("Authentication required", code="authentication_required")

    user = await _lookup(db, UserDirectory(db).get, identity.user_id)
    if user is None:
        raise AuthenticationError("Account no longer exists", code="unknown_user")

    return ConnectionSession(
        user_id=user.user_id,
        role=user.role or identity.role,
        username=user.username,
        connection_id=uuid.uuid4().hex,
    )
