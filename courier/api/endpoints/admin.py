import logging
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from courier.core.admin import ROLES, require_admin
from courier.core.database import get_db
from courier.core.errors import ForbiddenError, ValidationError
from courier.models.message import Message
from courier.models.refresh_token import RefreshToken
from courier.models.user import User
from courier.services.event_publisher import publish_user_deleted
from courier.services.message_store import MessageStore
from courier.services.presence import presence
from courier.services.user_directory import UserDirectory
from courier.services.websocket_manager import manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

MAX_ADMIN_PAGE_SIZE = 100
WS_ACCOUNT_DELETED = 4403


class RoleUpdate(BaseModel):
    role: str


@router.get("/stats")
async def get_stats(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    day_ago = datetime.now() - timedelta(days=1)
    return {
        "total_users": db.query(func.count(User.id)).scalar() or 0,
        "online_users": len(presence.online_user_ids()),
        "total_messages": db.query(func.count(Message.id)).scalar() or 0,
        "messages_today": db.query(func.count(Message.id)).filter(Message.created_at >= day_ago).scalar() or 0,
        "admins": db.query(func.count(User.id)).filter(User.role == "admin").scalar() or 0,
    }


@router.get("/users")
async def list_users(
    page: int = 1,
    limit: int = 20,
    search: str = "",
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if page < 1:
        raise ValidationError("page must be 1 or greater", code="invalid_page")
    if limit < 1 or limit > MAX_ADMIN_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_ADMIN_PAGE_SIZE}", code="invalid_limit")

    query = db.query(User)
    term = search.strip()
    if term:
        query = query.filter(
            or_(
                User.username.ilike(f"%{term.lower()}%"),
                User.display_name.ilike(f"%{term}%"),
                User.user_id == term,
            )
        )
    total = query.count()
    users = query.order_by(User.created_at.desc(), User.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "users": [user.to_public_profile() for user in users],
        "total": total,
        "page": page,
        "pages": (total + limit - 1) // limit,
    }


@router.delete("/users/{user_id}")
async def delete_user(user_id: str, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    target = UserDirectory(db).require(user_id)
    if target.user_id == admin.user_id:
        raise ForbiddenError("Cannot delete your own account", code="self_delete")
    if target.role == "admin":
        raise ForbiddenError("Cannot delete another admin", code="admin_protected")

    removed_messages = MessageStore(db).delete_for_user(target.user_id)
    db.query(RefreshToken).filter(RefreshToken.user_id == target.user_id).delete(synchronize_session=False)
    db.delete(target)
    db.commit()

    closed = await manager.close_user(user_id, WS_ACCOUNT_DELETED, "account deleted")
    publish_user_deleted(user_id, admin.user_id)
    logger.info(
        "User deleted user_id=%s by=%s messages=%d connections=%d",
        user_id,
        admin.user_id,
        removed_messages,
        closed,
    )
    return {"message": "User deleted", "user_id": user_id}


@router.put("/users/{user_id}/role")
async def update_role(
    user_id: str,
    role_update: RoleUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if role_update.role not in ROLES:
        raise ValidationError("Role must be 'user' or 'admin'", code="invalid_role")
    target = UserDirectory(db).require(user_id)
    if target.user_id == admin.user_id:
        raise ForbiddenError("Cannot change your own role", code="self_role_change")

    target.role = role_update.role
    db.commit()
    db.refresh(target)
    logger.info("Role changed user_id=%s role=%s by=%s", user_id, target.role, admin.user_id)
    return {"message": "Role updated", "user": target.to_public_profile()}
