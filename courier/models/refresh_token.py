from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from courier.core.database import Base


class RefreshToken(Base):
    """One row per refresh credential that is still accepted for a user."""
    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(16), ForeignKey("users.user_id"), index=True, nullable=False)
    token = Column(String, unique=True, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.now)
