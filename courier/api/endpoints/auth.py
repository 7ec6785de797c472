import logging
import re

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel
from sqlalchemy.orm import Session

from courier.api.deps import (
    REFRESH_COOKIE,
    clear_auth_cookies,
    get_current_user,
    set_access_cookie,
    set_auth_cookies,
)
from courier.core.admin import initial_role
from courier.core.database import get_db
from courier.core.errors import AuthenticationError, ConflictError, ValidationError
from courier.models.user import User
from courier.services.event_publisher import publish_user_registered
from courier.services.identity import (
    create_access_token,
    generate_user_id,
    get_password_hash,
    issue_tokens,
    resolve_by_refresh,
    revoke_refresh_token,
    verify_password,
)
from courier.services.rate_limiter import enforce_login_rate_limit
from courier.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

USERNAME_PATTERN = re.compile(r"^[a-z0-9_]{3,30}$")


# Pydantic models
class UserCreate(BaseModel):
    username: str
    password: str
    display_name: str


def _validate_registration(user: UserCreate) -> None:
    if not USERNAME_PATTERN.match(user.username.strip().lower()):
        raise ValidationError("Username must be 3-30 characters: letters, digits or underscores")
    display_name = user.display_name.strip()
    if not display_name:
        raise ValidationError("Display name is required")
    if len(display_name) > 50:
        raise ValidationError("Display name must be 50 characters or less")
    if len(user.password) < 6:
        raise ValidationError("Password must be at least 6 characters")
    if len(user.password) > 100:
        raise ValidationError("Password must be 100 characters or less")


def get_user(db: Session, username: str):
    return UserDirectory(db).get_by_username(username)


def authenticate_user(db: Session, username: str, password: str):
    user = get_user(db, username)
    if not user:
        return False
    if not verify_password(password, str(user.password_hash)):
        return False
    return user


# API endpoints
@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(response: Response, user: UserCreate, db: Session = Depends(get_db)):
    _validate_registration(user)
    username = user.username.strip().lower()
    if get_user(db, username):
        raise ConflictError("Username already taken", code="username_taken")

    password_hash, password_salt = get_password_hash(user.password)
    new_user = User(
        user_id=generate_user_id(db),
        username=username,
        display_name=user.display_name.strip(),
        password_hash=password_hash,
        password_salt=password_salt,
        role=initial_role(username),
    )
    db.add(new_user)
    db.commit()
    db.refresh(new_user)

    access_token, refresh_token = issue_tokens(db, new_user)
    set_auth_cookies(response, access_token, refresh_token)
    publish_user_registered(new_user.user_id, new_user.username)
    logger.info("User registered user_id=%s username=%s", new_user.user_id, new_user.username)
    return {"message": "Account created successfully", "user": new_user.to_public_profile()}


@router.post("/login")
async def login(
    request: Request,
    response: Response,
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db),
):
    client_host = request.client.host if request.client else "unknown"
    await enforce_login_rate_limit(client_host)

    user = authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise AuthenticationError("Invalid username or password", code="invalid_credentials")

    access_token, refresh_token = issue_tokens(db, user)
    set_auth_cookies(response, access_token, refresh_token)
    logger.info("User logged in user_id=%s", user.user_id)
    return {"message": "Login successful", "user": user.to_public_profile()}


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    revoke_refresh_token(db, current_user.user_id, request.cookies.get(REFRESH_COOKIE))
    clear_auth_cookies(response)
    return {"message": "Logged out successfully"}


@router.post("/refresh")
async def refresh(request: Request, response: Response, db: Session = Depends(get_db)):
    identity = resolve_by_refresh(db, request.cookies.get(REFRESH_COOKIE))
    if identity is None:
        raise AuthenticationError("Invalid or revoked refresh token", code="invalid_refresh_token")
    user = db.query(User).filter(User.user_id == identity.user_id).first()
    if user is None:
        raise AuthenticationError("Invalid or revoked refresh token", code="invalid_refresh_token")
    set_access_cookie(response, create_access_token(user))
    return {"message": "Token refreshed"}


@router.get("/me")
async def read_users_me(current_user: User = Depends(get_current_user)):
    return {"user": current_user.to_public_profile()}
