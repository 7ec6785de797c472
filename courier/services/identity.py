"""Credential issuing and resolution shared by HTTP and WebSocket auth.

Access credentials are short-lived JWTs. Refresh credentials are longer-lived
JWTs signed with a separate key and are only honoured while a matching row
exists in ``refresh_tokens`` (logout and trimming revoke them).
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from courier.core.config import settings
from courier.core.errors import UnavailableError
from courier.models.refresh_token import RefreshToken
from courier.models.user import User

logger = logging.getLogger(__name__)

# Password hashing with bcrypt cost factor 12
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=12)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
USER_ID_ATTEMPTS = 10


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str = "user"


def get_password_hash(password: str) -> Tuple[str, str]:
    """Hash a password; returns (hash, salt). The salt is the one bcrypt embedded."""
    hashed = pwd_context.hash(password)
    # $2b$12$<22 salt chars><31 hash chars>
    return hashed, hashed[7:29]


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify password using bcrypt only. Returns False if hash is invalid."""
    try:
        if not hashed_password.startswith("$2"):
            return False
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        return False


def generate_user_id(db: Session) -> str:
    """Random 8-digit public id, retried until it is unused."""
    for _ in range(USER_ID_ATTEMPTS):
        candidate = str(10000000 + secrets.randbelow(90000000))
        if db.query(User.id).filter(User.user_id == candidate).first() is None:
            return candidate
    raise UnavailableError("Could not generate a unique id, please try again")


def strip_bearer(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    token = token.strip()
    if token.startswith("Bearer "):
        token = token[7:].strip()
    return token or None


def _encode(user: User, token_type: str, expires_delta: timedelta, key: str) -> str:
    payload = {
        "sub": user.user_id,
        "role": user.role,
        "type": token_type,
        "exp": datetime.utcnow() + expires_delta,
        # Two refresh tokens minted in the same second must still differ.
        "jti": secrets.token_hex(8),
    }
    return jwt.encode(payload, key, algorithm=settings.ALGORITHM)


def create_access_token(user: User) -> str:
    return _encode(
        user,
        ACCESS_TOKEN_TYPE,
        timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        settings.SECRET_KEY,
    )


def create_refresh_token(user: User) -> str:
    return _encode(
        user,
        REFRESH_TOKEN_TYPE,
        timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
        settings.refresh_secret_key,
    )


def _decode(token: Optional[str], key: str, token_type: str) -> Optional[Identity]:
    token = strip_bearer(token)
    if token is None:
        return None
    try:
        payload = jwt.decode(token, key, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
    user_id = payload.get("sub")
    if not isinstance(user_id, str) or payload.get("type") != token_type:
        return None
    role = payload.get("role")
    return Identity(user_id=user_id, role=role if role in ("user", "admin") else "user")


def resolve_identity(access_token: Optional[str]) -> Optional[Identity]:
    """Validate an access credential without touching the database."""
    return _decode(access_token, settings.SECRET_KEY, ACCESS_TOKEN_TYPE)


def resolve_by_refresh(db: Session, refresh_token: Optional[str]) -> Optional[Identity]:
    """Validate a refresh credential and confirm it has not been revoked."""
    token = strip_bearer(refresh_token)
    decoded = _decode(token, settings.refresh_secret_key, REFRESH_TOKEN_TYPE)
    if decoded is None:
        return None
    stored = (
        db.query(RefreshToken)
        .filter(RefreshToken.user_id == decoded.user_id, RefreshToken.token == token)
        .first()
    )
    if stored is None:
        logger.info("Rejected revoked refresh token for user_id=%s", decoded.user_id)
        return None
    user = db.query(User).filter(User.user_id == decoded.user_id).first()
    if user is None:
        return None
    # The stored role wins over the claim: it may have changed since issue.
    return Identity(user_id=user.user_id, role=user.role)


def issue_tokens(db: Session, user: User) -> Tuple[str, str]:
    """Mint an access/refresh pair and remember the refresh token."""
    access_token = create_access_token(user)
    refresh_token = create_refresh_token(user)

    active = (
        db.query(RefreshToken)
        .filter(RefreshToken.user_id == user.user_id)
        .order_by(RefreshToken.id.asc())
        .all()
    )
    overflow = len(active) - (settings.MAX_REFRESH_TOKENS - 1)
    for stale in active[:max(0, overflow)]:
        db.delete(stale)

    db.add(
        RefreshToken(
            user_id=user.user_id,
            token=refresh_token,
            expires_at=datetime.now() + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
        )
    )
    db.commit()
    return access_token, refresh_token


def revoke_refresh_token(db: Session, user_id: str, refresh_token: Optional[str]) -> bool:
    token = strip_bearer(refresh_token)
    if token is None:
        return False
    deleted = (
        db.query(RefreshToken)
        .filter(RefreshToken.user_id == user_id, RefreshToken.token == token)
        .delete(synchronize_session=False)
    )
    db.commit()
    return bool(deleted)
