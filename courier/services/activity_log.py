import logging
import sys
from typing import Dict, Optional

_logger = logging.getLogger("courier.activity")
if not _logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter("%(asctime)s %(message)s")
    handler.setFormatter(formatter)
    _logger.addHandler(handler)
    _logger.setLevel(logging.INFO)


class HandleStore:
    """Remembers usernames for user ids seen on this process."""

    def __init__(self) -> None:
        self._handles: Dict[str, str] = {}

    def set_handle(self, user_id: str, username: str) -> None:
        self._handles[user_id] = username

    def get_handle(self, user_id: str) -> str:
        return self._handles.get(user_id) or f"user{user_id}"

    def forget(self, user_id: str) -> None:
        self._handles.pop(user_id, None)

    def clear(self) -> None:
        self._handles.clear()


handle_store = HandleStore()


def _prefix(user_id: str) -> str:
    return f"{handle_store.get_handle(user_id)}[{user_id}]"


def log_session_open(user_id: str, username: Optional[str], connection_id: str) -> None:
    if username:
        handle_store.set_handle(user_id, username)
    _logger.info(f"{_prefix(user_id)} OPEN {connection_id}")


def log_session_close(user_id: str, connection_id: str) -> None:
    _logger.info(f"{_prefix(user_id)} CLOSE {connection_id}")


def log_presence(user_id: str, is_online: bool) -> None:
    _logger.info(f"{_prefix(user_id)} {'ONLINE' if is_online else 'OFFLINE'}")
    if not is_online:
        handle_store.forget(user_id)


def log_send(sender_id: str, receiver_id: str, message_id: int, message_type: str, delivered: bool) -> None:
    state = "delivered" if delivered else "stored"
    _logger.info(f"{_prefix(sender_id)} SEND {receiver_id} #{message_id} {message_type} {state}")


def log_read(reader_id: str, counterpart_id: str, updated: int) -> None:
    _logger.info(f"{_prefix(reader_id)} READ {counterpart_id} {updated}")


def log_delete(user_id: str, message_id: int) -> None:
    _logger.info(f"{_prefix(user_id)} DELETE #{message_id}")
