"""User lookups the messaging core depends on.

Profile edits go through ``update_profile``, which only touches profile
fields; presence columns are written exclusively by ``set_presence``.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from courier.core.errors import NotFoundError, UnavailableError, ValidationError
from courier.models.user import User

logger = logging.getLogger(__name__)

THEMES = ("light", "dark")
SEARCH_LIMIT = 20


class UserDirectory:
    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: str) -> Optional[User]:
        return self.db.query(User).filter(User.user_id == user_id).first()

    def get_by_username(self, username: str) -> Optional[User]:
        return self.db.query(User).filter(User.username == username.strip().lower()).first()

    def exists(self, user_id: str) -> bool:
        return self.db.query(User.id).filter(User.user_id == user_id).first() is not None

    def require(self, user_id: str) -> User:
        user = self.get(user_id)
        if user is None:
            raise NotFoundError("User not found", code="user_not_found")
        return user

    def find(self, identifier: str) -> Optional[User]:
        """Resolve a user by numeric id or by username."""
        identifier = identifier.strip()
        return (
            self.db.query(User)
            .filter(or_(User.user_id == identifier, User.username == identifier.lower()))
            .first()
        )

    def get_profile(self, user_id: str) -> Dict[str, Any]:
        return self.require(user_id).to_public_profile()

    def set_presence(self, user_id: str, is_online: bool, last_seen: datetime) -> None:
        try:
            self.db.execute(
                update(User)
                .where(User.user_id == user_id)
                .values(is_online=is_online, last_seen=last_seen)
            )
            self.db.commit()
        except OperationalError as exc:
            self.db.rollback()
            raise UnavailableError() from exc

    def search(self, query: str, exclude_user_id: str, limit: int = SEARCH_LIMIT) -> List[User]:
        term = query.strip()
        if not term:
            raise ValidationError("Search query required", code="missing_query")
        return (
            self.db.query(User)
            .filter(
                User.user_id != exclude_user_id,
                or_(
                    User.user_id == term,
                    User.username.ilike(f"%{term.lower()}%"),
                    User.display_name.ilike(f"%{term}%"),
                ),
            )
            .order_by(User.username)
            .limit(limit)
            .all()
        )

    def update_profile(self, user_id: str, changes: Dict[str, Any]) -> User:
        user = self.require(user_id)
        updates: Dict[str, Any] = {}

        if changes.get("display_name") is not None:
            display_name = str(changes["display_name"]).strip()
            if not 1 <= len(display_name) <= 50:
                raise ValidationError("Display name must be 1-50 characters")
            updates["display_name"] = display_name

        if changes.get("bio") is not None:
            bio = str(changes["bio"]).strip()
            if len(bio) > 200:
                raise ValidationError("Bio must be 200 characters or less")
            updates["bio"] = bio

        if changes.get("avatar") is not None:
            avatar = str(changes["avatar"]).strip()
            if avatar and not avatar.startswith(("http://", "https://", "data:")):
                raise ValidationError("Avatar must be a valid URL")
            updates["avatar"] = avatar

        if changes.get("theme") is not None:
            if changes["theme"] not in THEMES:
                raise ValidationError("Theme must be 'light' or 'dark'")
            updates["theme"] = changes["theme"]

        if not updates:
            raise ValidationError("No valid fields to update")

        for field, value in updates.items():
            setattr(user, field, value)
        self.db.commit()
        self.db.refresh(user)
        logger.info("Profile updated user_id=%s fields=%s", user_id, sorted(updates))
        return user
