"""Per-connection handler for client protocol events.

Events from one connection are handled one at a time in arrival order; the
only suspension points are store calls, which run in the threadpool.

Every failure is answered on the originating connection only: ``*_ack``
frames for events with an acknowledgment contract, a scoped ``error`` frame
otherwise. Nothing raised here escapes to the receive loop.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from courier.core.errors import CourierError, ForbiddenError, ValidationError
from courier.services.activity_log import log_delete, log_read, log_send
from courier.services.gateway import ConnectionSession
from courier.services.message_store import MessageStore, conversation_id
from courier.services.payloads import parse_payload
from courier.services.presence import PresenceTracker
from courier.services.websocket_manager import ConnectionManager, envelope

logger = logging.getLogger(__name__)

SEND = "message:send"
READ = "message:read"
DELETE = "message:delete"
TYPING_START = "typing:start"
TYPING_STOP = "typing:stop"
PING = "ping"

NEW_MESSAGE = "message:new"
READ_RECEIPT = "message:read_receipt"
DELETED = "message:deleted"

ACKED_EVENTS = {SEND, DELETE}


def _user_id_field(frame: Dict[str, Any], name: str) -> str:
    value = frame.get(name)
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise ValidationError(f"{name} is required", code="invalid_payload")
    value = str(value).strip()
    if not value:
        raise ValidationError(f"{name} is required", code="invalid_payload")
    return value


def _message_id_field(frame: Dict[str, Any]) -> int:
    value = frame.get("message_id")
    if isinstance(value, bool):
        raise ValidationError("message_id must be an integer", code="invalid_payload")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("message_id must be an integer", code="invalid_payload")


def message_event(message_record: Dict[str, Any]) -> Dict[str, Any]:
    return envelope(NEW_MESSAGE, message_record)


def deleted_event(message_id: int, conv_id: str) -> Dict[str, Any]:
    return envelope(DELETED, {"message_id": message_id, "conversation_id": conv_id})


def read_receipt_event(reader_id: str, conv_id: str, updated: int) -> Dict[str, Any]:
    return envelope(READ_RECEIPT, {"read_by": reader_id, "conversation_id": conv_id, "updated": updated})


class ProtocolHandler:
    def __init__(
        self,
        session: ConnectionSession,
        store: MessageStore,
        manager: ConnectionManager,
        presence: PresenceTracker,
    ):
        self.session = session
        self.store = store
        self.manager = manager
        self.presence = presence
        self._handlers: Dict[str, Callable[[Dict[str, Any], Optional[str]], Awaitable[None]]] = {
            SEND: self._on_send,
            READ: self._on_read,
            DELETE: self._on_delete,
            TYPING_START: self._on_typing,
            TYPING_STOP: self._on_typing,
            PING: self._on_ping,
        }

    async def reply(self, message: Dict[str, Any]) -> None:
        await self.manager.send_to_connection(self.session.connection_id, message)

    async def handle(self, frame: Any) -> None:
        if not isinstance(frame, dict):
            await self._fail(None, None, ValidationError("Frames must be JSON objects", code="invalid_frame"))
            return

        event_type = frame.get("type")
        request_id = frame.get("request_id")
        if request_id is not None:
            request_id = str(request_id)

        handler = self._handlers.get(event_type) if isinstance(event_type, str) else None
        if handler is None:
            await self._fail(None, request_id, ValidationError("Unknown event type", code="unknown_event"))
            return

        try:
            await handler(frame, request_id)
        except CourierError as exc:
            await self._fail(event_type, request_id, exc)
        except PydanticValidationError as exc:
            await self._fail(event_type, request_id, ValidationError(str(exc.errors()[0].get("msg", "Invalid payload"))))
        except Exception:
            logger.exception("Unhandled error in %s for user_id=%s", event_type, self.session.user_id)
            await self._fail(event_type, request_id, CourierError(code="internal_error"))

    async def _fail(self, event_type: Optional[str], request_id: Optional[str], error: CourierError) -> None:
        if event_type in ACKED_EVENTS:
            frame = envelope(f"{event_type}_ack", {"success": False, "error": error.to_payload()}, request_id)
        else:
            payload = error.to_payload()
            payload["event"] = event_type
            frame = envelope("error", payload, request_id)
        await self.reply(frame)

    async def _on_send(self, frame: Dict[str, Any], request_id: Optional[str]) -> None:
        sender_id = self.session.user_id
        receiver_id = _user_id_field(frame, "receiver_id")
        if receiver_id == sender_id:
            raise ForbiddenError("Cannot send a message to yourself", code="self_message")
        payload = parse_payload(frame)

        message = await run_in_threadpool(self.store.append, sender_id, receiver_id, payload)
        record = message.to_dict()

        # Always persisted; pushed live only when the receiver has a connection.
        delivered = False
        if self.presence.is_online(receiver_id):
            delivered = await self.manager.send_to_user(receiver_id, message_event(record)) > 0
        log_send(sender_id, receiver_id, record["id"], record["type"], delivered)

        await self.reply(
            envelope(
                f"{SEND}_ack",
                {"success": True, "message": record, "temp_id": frame.get("temp_id")},
                request_id,
            )
        )

    async def _on_read(self, frame: Dict[str, Any], request_id: Optional[str]) -> None:
        reader_id = self.session.user_id
        counterpart_id = _user_id_field(frame, "counterpart_id")
        if counterpart_id == reader_id:
            raise ValidationError("counterpart_id must be another user", code="invalid_payload")

        conv_id = conversation_id(reader_id, counterpart_id)
        updated = await run_in_threadpool(self.store.mark_read, conv_id, reader_id)
        log_read(reader_id, counterpart_id, updated)
        await self.manager.send_to_user(counterpart_id, read_receipt_event(reader_id, conv_id, updated))

    async def _on_typing(self, frame: Dict[str, Any], request_id: Optional[str]) -> None:
        counterpart_id = _user_id_field(frame, "counterpart_id")
        if counterpart_id == self.session.user_id:
            return
        await self.manager.send_to_user(
            counterpart_id,
            envelope(frame["type"], {"user_id": self.session.user_id}),
        )

    async def _on_delete(self, frame: Dict[str, Any], request_id: Optional[str]) -> None:
        message_id = _message_id_field(frame)
        message, changed = await run_in_threadpool(self.store.soft_delete, message_id, self.session.user_id)

        # A repeat delete is a quiet success: the counterpart already knows.
        if changed:
            log_delete(self.session.user_id, message_id)
            await self.manager.send_to_user(
                message.receiver_id,
                deleted_event(message_id, message.conversation_id),
            )

        await self.reply(
            envelope(f"{DELETE}_ack", {"success": True, "message_id": message_id}, request_id)
        )

    async def _on_ping(self, frame: Dict[str, Any], request_id: Optional[str]) -> None:
        ping_payload = frame.get("payload")
        if isinstance(ping_payload, dict):
            sent_at_ms = ping_payload.get("sent_at_ms")
        else:
            sent_at_ms = frame.get("sent_at_ms")
        await self.reply(envelope("pong", {"sent_at_ms": sent_at_ms}, request_id))
