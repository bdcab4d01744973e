import asyncio
import logging
import uuid
from typing import Optional

from fastapi import WebSocket

from errors import TransportUnavailable
from presence import PresenceRegistry
from schemas import SignalingEnvelope


class Connection:
    """One attached WebSocket with its own outbound queue.

    Frames handed to ``deliver`` are written by a single writer task in the
    order they were queued, so anything relayed along one sender -> recipient
    path arrives in order without the relay ever waiting on a socket.
    """

    def __init__(self, websocket: WebSocket, max_queued: int = 256):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=max_queued)
        self._writer: Optional[asyncio.Task] = None
        self.closed = False

    def start(self):
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop())

    def deliver(self, message: dict) -> bool:
        if self.closed:
            return False
        try:
            self._outbox.put_nowait(message)
            return True
        except asyncio.QueueFull:
            logging.warning(f"Outbox full for connection {self.id}, dropping {message.get('type', 'unknown')}")
            return False

    async def _write_loop(self):
        while True:
            message = await self._outbox.get()
            try:
                await self.websocket.send_json(message)
            except Exception as e:
                logging.error(f"Failed to send message on connection {self.id}: {e}")
                self.closed = True
                return

    async def close(self):
        self.closed = True
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None


class SignalingRelay:
    """Forwards envelopes to whoever is registered under the recipient id.

    Fire-and-forget: an envelope for an unregistered user is dropped and the
    sender is never told.
    """

    def __init__(self, registry: PresenceRegistry):
        self.registry = registry

    def relay(self, envelope: SignalingEnvelope) -> bool:
        return self.forward(envelope.to_wire(), envelope.to_user)

    def forward(self, message: dict, to_user: str) -> bool:
        msg_type = message.get("type", "unknown")
        try:
            connection = self.registry.require(to_user)
        except TransportUnavailable:
            if msg_type in ("user-typing", "user-stop-typing"):
                logging.debug(f"Skipped relaying typing indicator to offline user {to_user}")
            else:
                logging.warning(f"Could not relay {msg_type} to {to_user}: User not connected.")
            return False

        if connection.deliver(message):
            logging.info(f"Relayed {msg_type} to {to_user}")
            return True
        return False
