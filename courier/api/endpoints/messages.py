import base64
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from courier.api.deps import get_current_user
from courier.core.config import settings
from courier.core.database import get_db
from courier.core.errors import NotFoundError, ValidationError
from courier.models.user import User
from courier.services.activity_log import log_delete, log_read, log_send
from courier.services.message_store import DEFAULT_PAGE_SIZE, MessageStore, conversation_id
from courier.services.payloads import ALLOWED_MIME_TYPES, MediaAttachment, MediaPayload, parse_payload
from courier.services.presence import presence
from courier.services.protocol import deleted_event, message_event, read_receipt_event
from courier.services.user_directory import UserDirectory
from courier.services.websocket_manager import manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])


class MessageSend(BaseModel):
    receiver_id: str
    message_type: str = "text"
    content: Optional[str] = None
    media: Optional[Dict[str, Any]] = None
    gif: Optional[Dict[str, Any]] = None


def _require_user(db: Session, user_id: str) -> User:
    return UserDirectory(db).require(user_id)


async def _deliver(message) -> Dict[str, Any]:
    record = message.to_dict()
    delivered = False
    if presence.is_online(message.receiver_id):
        delivered = await manager.send_to_user(message.receiver_id, message_event(record)) > 0
    log_send(message.sender_id, message.receiver_id, record["id"], record["type"], delivered)
    return record


@router.get("/conversation/{user_id}")
async def get_conversation(
    user_id: str,
    before: Optional[int] = None,
    limit: int = DEFAULT_PAGE_SIZE,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _require_user(db, user_id)
    page = MessageStore(db).page(conversation_id(current_user.user_id, user_id), before=before, limit=limit)
    return {
        "messages": [message.to_dict() for message in page.chronological()],
        "has_more": page.has_more,
        "next_cursor": page.next_cursor,
    }


@router.post("/conversation/{user_id}/read")
async def mark_conversation_read(
    user_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if user_id == current_user.user_id:
        raise ValidationError("counterpart must be another user", code="invalid_payload")
    _require_user(db, user_id)
    conv_id = conversation_id(current_user.user_id, user_id)
    updated = MessageStore(db).mark_read(conv_id, current_user.user_id)
    log_read(current_user.user_id, user_id, updated)
    await manager.send_to_user(user_id, read_receipt_event(current_user.user_id, conv_id, updated))
    return {"conversation_id": conv_id, "updated": updated}


@router.post("/send", status_code=status.HTTP_201_CREATED)
async def send_message(
    body: MessageSend,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    payload = parse_payload(body.model_dump())
    message = MessageStore(db).append(current_user.user_id, body.receiver_id.strip(), payload)
    return {"message": await _deliver(message)}


@router.post("/send/media", status_code=status.HTTP_201_CREATED)
async def send_media(
    receiver_id: str = Form(...),
    content: str = Form(""),
    file: UploadFile = File(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    mime_type = (file.content_type or "").lower()
    category = ALLOWED_MIME_TYPES.get(mime_type)
    if category is None:
        raise ValidationError("File type not allowed", code="unsupported_media_type")

    # Read one byte past the ceiling so oversize uploads fail without buffering them whole.
    data = await file.read(settings.MAX_MEDIA_BYTES + 1)
    if len(data) > settings.MAX_MEDIA_BYTES:
        limit_mb = settings.MAX_MEDIA_BYTES / (1024 * 1024)
        raise ValidationError(f"File too large (max {limit_mb:g}MB)", code="media_too_large")
    if not data:
        raise ValidationError("Uploaded file is empty", code="invalid_media")

    encoded = base64.b64encode(data).decode("ascii")
    payload = MediaPayload(
        message_type=category,
        content=content,
        media=MediaAttachment(
            url=f"data:{mime_type};base64,{encoded}",
            mime_type=mime_type,
            size=len(data),
            filename=file.filename,
        ),
    )
    message = MessageStore(db).append(current_user.user_id, receiver_id.strip(), payload)
    return {"message": await _deliver(message)}


@router.delete("/{message_id}")
async def delete_message(
    message_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    message, changed = MessageStore(db).soft_delete(message_id, current_user.user_id)
    if changed:
        log_delete(current_user.user_id, message_id)
        await manager.send_to_user(message.receiver_id, deleted_event(message_id, message.conversation_id))
    return {"message": "Message deleted", "message_id": message_id}


@router.get("/{message_id}")
async def get_message(
    message_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    message = MessageStore(db).get(message_id)
    if message is None or current_user.user_id not in (message.sender_id, message.receiver_id):
        raise NotFoundError("Message not found", code="message_not_found")
    return {"message": message.to_dict()}
