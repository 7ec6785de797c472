from typing import Optional

from fastapi import Depends, Request, Response
from sqlalchemy.orm import Session

from courier.core.config import settings
from courier.core.database import get_db
from courier.core.errors import AuthenticationError
from courier.models.user import User
from courier.services.identity import (
    create_access_token,
    resolve_by_refresh,
    resolve_identity,
)

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def set_access_cookie(response: Response, access_token: str) -> None:
    response.set_cookie(
        key=ACCESS_COOKIE,
        value=f"Bearer {access_token}",
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="strict",
        max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        path="/",
    )


def set_auth_cookies(response: Response, access_token: str, refresh_token: str) -> None:
    set_access_cookie(response, access_token)
    response.set_cookie(
        key=REFRESH_COOKIE,
        value=refresh_token,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="strict",
        max_age=settings.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
        path="/",
    )


def clear_auth_cookies(response: Response) -> None:
    response.delete_cookie(ACCESS_COOKIE, path="/")
    response.delete_cookie(REFRESH_COOKIE, path="/")


def _access_token_from(request: Request) -> Optional[str]:
    return request.cookies.get(ACCESS_COOKIE) or request.headers.get("authorization")


async def get_current_user(
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
) -> User:
    """Resolve the caller from the access token, falling back to the refresh token.

    A successful refresh fallback rotates a new access cookie onto the response.
    """
    identity = resolve_identity(_access_token_from(request))
    refreshed = False
    if identity is None:
        identity = resolve_by_refresh(db, request.cookies.get(REFRESH_COOKIE))
        refreshed = identity is not None
    if identity is None:
        raise AuthenticationError()

    user = db.query(User).filter(User.user_id == identity.user_id).first()
    if user is None:
        raise AuthenticationError()
    if refreshed:
        set_access_cookie(response, create_access_token(user))
    return user
