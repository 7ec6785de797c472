from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, Index
from datetime import datetime
from courier.core.database import Base

TOMBSTONE = "This message was deleted"


class Message(Base):
    __tablename__ = "messages"
    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(String, index=True, nullable=False)
    sender_id = Column(String(16), ForeignKey("users.user_id"), index=True, nullable=False)
    receiver_id = Column(String(16), ForeignKey("users.user_id"), index=True, nullable=False)
    type = Column(String, default="text", nullable=False)
    content = Column(Text, default="")
    media_url = Column(Text, nullable=True)
    media_name = Column(String, nullable=True)
    media_mime_type = Column(String, nullable=True)
    media_size = Column(Integer, nullable=True)
    gif_url = Column(String, nullable=True)
    gif_title = Column(String, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.now)

    __table_args__ = (
        Index("ix_messages_conversation_id_id", "conversation_id", "id"),
    )

    def to_dict(self) -> dict:
        created_at = self.created_at
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "type": self.type,
            "content": self.content or "",
            "media_url": self.media_url,
            "media_name": self.media_name,
            "media_mime_type": self.media_mime_type,
            "media_size": self.media_size,
            "gif_url": self.gif_url,
            "gif_title": self.gif_title,
            "is_read": bool(self.is_read),
            "is_deleted": bool(self.is_deleted),
            "created_at": created_at.isoformat() if created_at is not None else None,
        }
