from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
import json
import logging

from config import Settings, get_settings
from contacts import ContactsDirectory, JsonContactsDirectory
from notifier import ContactPresenceNotifier
from presence import PresenceRegistry
from schemas import ChatMessage, EnvelopeType, RegisterUser, SignalingEnvelope, TypingNotice
from signaling import Connection, SignalingRelay

ENVELOPE_TYPES = {t.value for t in EnvelopeType}


async def handle_client_message(registry: PresenceRegistry, relay: SignalingRelay, connection: Connection, data: dict):
    msg_type = data.get("type") if isinstance(data, dict) else None

    if msg_type == "register-user":
        # The claimed identity is trusted as-is
        msg = RegisterUser(**data)
        await registry.register(msg.user_id, connection)
        connection.deliver({"type": "registered", "userId": msg.user_id})
        return

    user_id = registry.identity_of(connection)
    if user_id is None:
        logging.warning(f"Ignoring {msg_type} from unregistered connection {connection.id}")
        return

    if msg_type in ENVELOPE_TYPES:
        envelope = SignalingEnvelope(**data)
        relay.relay(envelope)
    elif msg_type in ("typing", "stop-typing"):
        notice = TypingNotice(**data)
        relay.forward({"type": f"user-{notice.type}", "userId": user_id}, notice.to)
    elif msg_type == "send-message":
        msg = ChatMessage(**data)
        relay.forward({"type": "new-message", "message": msg.message}, msg.to)
    else:
        logging.warning(f"Unknown message type from {user_id}: {msg_type}")


def create_app(settings: Optional[Settings] = None, directory: Optional[ContactsDirectory] = None) -> FastAPI:
    settings = settings or get_settings()
    if directory is None:
        directory = JsonContactsDirectory(settings.CONTACTS_FILE)

    registry = PresenceRegistry(ContactPresenceNotifier(directory))
    relay = SignalingRelay(registry)

    app = FastAPI(title=settings.APP_TITLE, version=settings.APP_VERSION)
    app.state.settings = settings
    app.state.registry = registry
    app.state.relay = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def health():
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/users/{user_id}/presence")
    async def get_user_presence(user_id: str):
        return {"user_id": user_id, "online": registry.is_online(user_id)}

    @app.get("/ice-servers")
    async def get_ice_servers():
        return {"iceServers": [{"urls": url} for url in settings.ICE_SERVERS]}

    @app.websocket("/ws")
    async def signaling_websocket(websocket: WebSocket):
        await websocket.accept()
        connection = Connection(websocket, max_queued=settings.OUTBOX_MAX_SIZE)
        connection.start()
        logging.info(f"Client connected: {connection.id}")
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    data = json.loads(raw)
                    logging.info(f"Received msg on {connection.id}: {data.get('type') if isinstance(data, dict) else None}")
                    await handle_client_message(registry, relay, connection, data)
                except (json.JSONDecodeError, ValidationError) as e:
                    logging.error(f"Invalid message on {connection.id}: {e}")
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logging.error(f"WebSocket error for {connection.id}: {e}")
        finally:
            await registry.unregister(connection)
            await connection.close()
            logging.info(f"Client disconnected: {connection.id}")

    return app


logging.basicConfig(level=get_settings().LOG_LEVEL)

app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
