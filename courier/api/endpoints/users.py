from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from courier.api.deps import get_current_user
from courier.core.database import get_db
from courier.core.errors import NotFoundError
from courier.models.user import User
from courier.services.message_store import MessageStore
from courier.services.user_directory import UserDirectory

router = APIRouter(prefix="/users", tags=["users"])


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = None
    bio: Optional[str] = None
    avatar: Optional[str] = None
    theme: Optional[str] = None


def _last_message_preview(message) -> dict:
    if message.is_deleted:
        content = "Message deleted"
    else:
        content = message.content or f"[{message.type}]"
    return {
        "content": content,
        "type": message.type,
        "created_at": message.created_at.isoformat() if message.created_at else None,
        "is_read": bool(message.is_read),
        "sender_id": message.sender_id,
    }


@router.get("/search")
async def search_users(
    q: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    users = UserDirectory(db).search(q, exclude_user_id=current_user.user_id)
    return {"users": [user.to_public_profile() for user in users]}


@router.get("/contacts")
async def recent_contacts(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    conversations = MessageStore(db).conversations_for(current_user.user_id)
    counterpart_ids = [c["counterpart_id"] for c in conversations]
    users = db.query(User).filter(User.user_id.in_(counterpart_ids)).all() if counterpart_ids else []
    profiles = {user.user_id: user.to_public_profile() for user in users}

    contacts = []
    for conversation in conversations:
        profile = profiles.get(conversation["counterpart_id"])
        if profile is None:
            continue
        contacts.append(
            {
                "user": profile,
                "last_message": _last_message_preview(conversation["last_message"]),
                "unread_count": conversation["unread_count"],
            }
        )
    return {"contacts": contacts}


@router.put("/profile")
async def update_profile(
    profile_update: ProfileUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user = UserDirectory(db).update_profile(current_user.user_id, profile_update.model_dump(exclude_none=True))
    return {"message": "Profile updated", "user": user.to_public_profile()}


@router.get("/{identifier}")
async def get_profile(
    identifier: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user = UserDirectory(db).find(identifier)
    if user is None:
        raise NotFoundError("User not found", code="user_not_found")
    return {"user": user.to_public_profile()}
