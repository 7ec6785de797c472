"""Conversation identity, message persistence and history pagination."""
import logging
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import func, or_, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from courier.core.config import settings
from courier.core.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from courier.models.message import TOMBSTONE, Message
from courier.services.payloads import GifPayload, MediaPayload, TextPayload, check_media
from courier.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
CONTACTS_LIMIT = 50

Payload = Union[TextPayload, MediaPayload, GifPayload]


def conversation_id(user_a: str, user_b: str) -> str:
    """Order-independent key for the thread between two users."""
    first, second = sorted((str(user_a), str(user_b)))
    return f"{first}_{second}"


def _store_call(fn):
    """Roll back and surface connection-level database failures as UnavailableError."""
    @wraps(fn)
    def wrapper(self: "MessageStore", *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except OperationalError as exc:
            self.db.rollback()
            logger.error("Message store unavailable during %s: %s", fn.__name__, exc)
            raise UnavailableError() from exc
    return wrapper


@dataclass
class HistoryPage:
    """A window of history, newest first as the database returns it."""
    messages: List[Message] = field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[int] = None

    def chronological(self) -> List[Message]:
        return list(reversed(self.messages))


class MessageStore:
    def __init__(self, db: Session):
        self.db = db

    def _content_fields(self, payload: Payload) -> Dict[str, Any]:
        if isinstance(payload, TextPayload):
            if len(payload.content) > settings.MAX_TEXT_LENGTH:
                raise ValidationError(
                    f"Message too long (max {settings.MAX_TEXT_LENGTH} characters)",
                    code="message_too_long",
                )
            return {"content": payload.content}

        if isinstance(payload, GifPayload):
            title = payload.gif.title or "GIF"
            if len(payload.content) > settings.MAX_TEXT_LENGTH:
                raise ValidationError("Caption too long", code="message_too_long")
            return {"content": payload.content or title, "gif_url": payload.gif.url, "gif_title": title}

        size = check_media(payload)
        if len(payload.content) > settings.MAX_TEXT_LENGTH:
            raise ValidationError("Caption too long", code="message_too_long")
        return {
            "content": payload.content or f"[{payload.message_type}]",
            "media_url": payload.media.url,
            "media_name": payload.media.filename,
            "media_mime_type": payload.media.mime_type.lower(),
            "media_size": size,
        }

    @_store_call
    def append(self, sender_id: str, receiver_id: str, payload: Payload) -> Message:
        if sender_id == receiver_id:
            raise ForbiddenError("Cannot send a message to yourself", code="self_message")
        # Validate everything before the row exists.
        fields = self._content_fields(payload)
        directory = UserDirectory(self.db)
        # A socket can outlive its account for a moment after an admin delete.
        if not directory.exists(sender_id):
            raise AuthenticationError("Account no longer exists", code="account_removed")
        if not directory.exists(receiver_id):
            raise NotFoundError("Recipient not found", code="recipient_not_found")

        message = Message(
            conversation_id=conversation_id(sender_id, receiver_id),
            sender_id=sender_id,
            receiver_id=receiver_id,
            type=payload.message_type,
            is_read=False,
            is_deleted=False,
            **fields,
        )
        self.db.add(message)
        self.db.commit()
        self.db.refresh(message)
        return message

    @_store_call
    def get(self, message_id: int) -> Optional[Message]:
        return self.db.query(Message).filter(Message.id == message_id).first()

    @_store_call
    def page(
        self,
        conv_id: str,
        before: Optional[int] = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> HistoryPage:
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", code="invalid_limit")

        query = self.db.query(Message).filter(Message.conversation_id == conv_id)
        if before is not None:
            query = query.filter(Message.id < before)
        messages = query.order_by(Message.id.desc()).limit(limit).all()

        # Heuristic: a full page means there may be more.
        has_more = len(messages) == limit
        next_cursor = messages[-1].id if has_more else None
        return HistoryPage(messages=messages, has_more=has_more, next_cursor=next_cursor)

    @_store_call
    def mark_read(self, conv_id: str, reader_id: str) -> int:
        """Mark every unread message addressed to ``reader_id`` as read.

        Set-based, so concurrent sends and reads never race on a fetched row.
        Returns the number of rows that changed (0 on a repeat call).
        """
        updated = (
            self.db.query(Message)
            .filter(
                Message.conversation_id == conv_id,
                Message.receiver_id == reader_id,
                Message.is_read.is_(False),
            )
            .update({Message.is_read: True}, synchronize_session=False)
        )
        self.db.commit()
        return int(updated or 0)

    @_store_call
    def soft_delete(self, message_id: int, requester_id: str) -> Tuple[Message, bool]:
        """Tombstone a message authored by ``requester_id``.

        Returns the stored message and whether this call performed the
        transition; a repeat delete returns ``False`` and changes nothing.
        """
        message = self.get(message_id)
        if message is None:
            raise NotFoundError("Message not found", code="message_not_found")
        if message.sender_id != requester_id:
            raise ForbiddenError("Cannot delete another user's message", code="not_message_sender")

        updated = (
            self.db.query(Message)
            .filter(Message.id == message_id, Message.is_deleted.is_(False))
            .update(
                {
                    Message.is_deleted: True,
                    Message.content: TOMBSTONE,
                    Message.media_url: None,
                    Message.media_name: None,
                    Message.media_mime_type: None,
                    Message.media_size: None,
                    Message.gif_url: None,
                    Message.gif_title: None,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        self.db.refresh(message)
        return message, bool(updated)

    @_store_call
    def conversations_for(self, user_id: str, limit: int = CONTACTS_LIMIT) -> List[Dict[str, Any]]:
        """Latest message and unread count per conversation, most recent first."""
        involves_user = or_(Message.sender_id == user_id, Message.receiver_id == user_id)
        latest_ids = (
            select(func.max(Message.id))
            .where(involves_user)
            .group_by(Message.conversation_id)
        )
        latest = (
            self.db.query(Message)
            .filter(Message.id.in_(latest_ids))
            .order_by(Message.id.desc())
            .limit(limit)
            .all()
        )
        unread_rows = (
            self.db.query(Message.conversation_id, func.count(Message.id))
            .filter(Message.receiver_id == user_id, Message.is_read.is_(False))
            .group_by(Message.conversation_id)
            .all()
        )
        unread = {conv: count for conv, count in unread_rows}

        conversations = []
        for message in latest:
            counterpart = message.receiver_id if message.sender_id == user_id else message.sender_id
            conversations.append(
                {
                    "counterpart_id": counterpart,
                    "last_message": message,
                    "unread_count": int(unread.get(message.conversation_id, 0)),
                }
            )
        return conversations

    @_store_call
    def delete_for_user(self, user_id: str) -> int:
        deleted = (
            self.db.query(Message)
            .filter(or_(Message.sender_id == user_id, Message.receiver_id == user_id))
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return int(deleted or 0)
