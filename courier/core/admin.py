"""Admin role helpers."""
import logging
from typing import Set
from functools import lru_cache

from fastapi import Depends

from courier.api.deps import get_current_user
from courier.core.config import settings
from courier.core.errors import ForbiddenError
from courier.models.user import User

logger = logging.getLogger(__name__)

ROLES = ("user", "admin")


@lru_cache(maxsize=1)
def get_admin_allowlist() -> Set[str]:
    """Parse ADMIN_ALLOWLIST env var into set of lowercase usernames.

    Cached on first call for performance.
    Format: semicolon-separated usernames
    Example: ADMIN_ALLOWLIST=alice;bob;charlie
    """
    raw = settings.ADMIN_ALLOWLIST or ""

    allowlist = {
        username.strip().lower()
        for username in raw.split(";")
        if username.strip()
    }

    logger.info(f"Admin allowlist loaded: {len(allowlist)} users")
    return allowlist


def initial_role(username: str) -> str:
    """Role assigned at registration: allowlisted usernames start as admins."""
    return "admin" if username.lower() in get_admin_allowlist() else "user"


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Dependency that only lets users with the admin role through."""
    if current_user.role != "admin":
        raise ForbiddenError("Admin access required", code="admin_required")

    return current_user
