from sqlalchemy import Column, Integer, String, DateTime, Boolean
from datetime import datetime
from courier.core.database import Base

class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(16), unique=True, index=True, nullable=False)
    username = Column(String(30), unique=True, index=True, nullable=False)
    display_name = Column(String(50), nullable=False)
    password_hash = Column(String, nullable=False)
    password_salt = Column(String, nullable=False)
    avatar = Column(String, default="")
    bio = Column(String(200), default="")
    role = Column(String, default="user")
    # Written only by the presence tracker.
    is_online = Column(Boolean, default=False)
    last_seen = Column(DateTime, default=datetime.now)
    theme = Column(String, default="light")
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    def to_public_profile(self) -> dict:
        last_seen = self.last_seen
        created_at = self.created_at
        return {
            "user_id": self.user_id,
            "username": self.username,
            "display_name": self.display_name,
            "avatar": self.avatar or "",
            "bio": self.bio or "",
            "role": self.role,
            "is_online": bool(self.is_online),
            "last_seen": last_seen.isoformat() if last_seen is not None else None,
            "theme": self.theme,
            "created_at": created_at.isoformat() if created_at is not None else None,
        }
