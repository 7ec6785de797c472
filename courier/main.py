import json
import logging
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.websockets import WebSocketState
from sqlalchemy.orm import Session

from courier.api.endpoints.admin import router as admin_router
from courier.api.endpoints.auth import router as auth_router
from courier.api.endpoints.gifs import router as gifs_router
from courier.api.endpoints.messages import router as messages_router
from courier.api.endpoints.users import router as users_router
from courier.core.config import settings
from courier.core.database import Base, engine, get_db
from courier.core.errors import AuthenticationError, CourierError, RateLimitError, ValidationError
from courier.models import Message, RefreshToken, User  # noqa: F401  registers tables
from courier.services.activity_log import log_session_close, log_session_open
from courier.services.gateway import authenticate_handshake
from courier.services.message_store import MessageStore
from courier.services.presence import presence
from courier.services.protocol import ProtocolHandler
from courier.services.user_directory import UserDirectory
from courier.services.websocket_manager import envelope, manager

logger = logging.getLogger("uvicorn.error")

# Close codes sent after a rejected handshake
WS_AUTH_FAILED = 4401
WS_TRY_AGAIN_LATER = 1013


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Alembic owns schema changes; create_all covers fresh local databases.
    Base.metadata.create_all(bind=engine)
    yield
    manager.clear()
    presence.clear()


app = FastAPI(title="Courier API", version="1.0.0", lifespan=lifespan)


def _origin_from_url(value: str) -> str | None:
    parsed = urlparse(value)
    if not parsed.scheme or not parsed.hostname:
        return None
    if parsed.port:
        return f"{parsed.scheme}://{parsed.hostname}:{parsed.port}"
    return f"{parsed.scheme}://{parsed.hostname}"


_default_origins = [
    "http://localhost",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]
_extra_origins = [origin for origin in map(_origin_from_url, settings.allowed_origins) if origin]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_default_origins + _extra_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CourierError)
async def courier_error_handler(request: Request, exc: CourierError):
    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=headers,
    )


app.include_router(auth_router)
app.include_router(users_router)
app.include_router(gifs_router)
app.include_router(messages_router)
app.include_router(admin_router)


@app.get("/health")
async def health_check():
    return {"message": "server is running", "connections": len(manager.active_connections)}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, db: Session = Depends(get_db)):
    client_host = websocket.client.host if websocket.client else "unknown"
    await websocket.accept()

    try:
        session = await authenticate_handshake(websocket, db)
    except CourierError as exc:
        logger.info("WebSocket handshake rejected host=%s code=%s", client_host, exc.code)
        await websocket.send_json(envelope("connect_error", exc.to_payload()))
        close_code = WS_AUTH_FAILED if isinstance(exc, AuthenticationError) else WS_TRY_AGAIN_LATER
        await websocket.close(code=close_code)
        return

    connection_id = session.connection_id
    directory = UserDirectory(db)
    handler = ProtocolHandler(session, MessageStore(db), manager, presence)
    logger.info("WebSocket connect user_id=%s connection_id=%s host=%s", session.user_id, connection_id, client_host)

    manager.join(connection_id, session.user_id, websocket)
    log_session_open(session.user_id, session.username, connection_id)
    try:
        await manager.send_to_connection(
            connection_id,
            envelope(
                "session:ready",
                {"user_id": session.user_id, "role": session.role, "connection_id": connection_id},
            ),
        )
        await presence.connect(session.user_id, connection_id, directory.set_presence)

        # An admin delete can close the socket from another task.
        while websocket.application_state == WebSocketState.CONNECTED:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                error = ValidationError("Frames must be valid JSON", code="invalid_json")
                await handler.reply(envelope("error", {**error.to_payload(), "event": None}))
                continue
            await handler.handle(frame)

    except WebSocketDisconnect as exc:
        logger.info(
            "WebSocket disconnect user_id=%s connection_id=%s code=%s",
            session.user_id,
            connection_id,
            exc.code,
        )
    except Exception:
        logger.exception("WebSocket error user_id=%s connection_id=%s", session.user_id, connection_id)
    finally:
        manager.leave(connection_id)
        log_session_close(session.user_id, connection_id)
        await presence.disconnect(session.user_id, connection_id, directory.set_presence)


if __name__ == "__main__":
    import uvicorn
    import argparse

    parser = argparse.ArgumentParser()
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    uvicorn.run(app, host="0.0.0.0", port=args.port)
