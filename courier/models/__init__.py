from courier.models.user import User
from courier.models.message import Message
from courier.models.refresh_token import RefreshToken

__all__ = ["User", "Message", "RefreshToken"]
