import asyncio
import json
import uuid
from typing import Any, Optional, Tuple

from fastapi import WebSocket, status
from starlette.websockets import WebSocketState

from backend import SnapshotStore, normalize_code
from exceptions import MalformedMessage, MissingRoomCode, RoomNotFound
from logging_config import get_logger
from registry import RoomRegistry
from schemas.messages import is_full_state_sync

logger = get_logger(__name__)


def room_code_from_handshake(code: Optional[str]) -> str:
    room_code = normalize_code(code)
    if not room_code:
        raise MissingRoomCode("handshake has no room code")
    return room_code


class RelayConnection:
    """One WebSocket tagged with a room code, with its own outbound queue.

    ``deliver`` only enqueues, so a slow recipient never holds up a broadcast.
    A writer task drains the queue in FIFO order.
    """

    def __init__(self, websocket: WebSocket, code: str, max_pending: int = 0):
        self.websocket = websocket
        self.code = code
        self.connection_id = uuid.uuid4().hex[:8]
        self._outbound: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._writer: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    @property
    def pending(self) -> int:
        return self._outbound.qsize()

    def deliver(self, payload: str) -> bool:
        try:
            self._outbound.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning(
                f"Outbound queue full for connection {self.connection_id} in room {self.code}, dropping message"
            )
            return False
        return True

    def start(self):
        self._writer = asyncio.create_task(self._run_writer())

    async def _run_writer(self):
        while True:
            payload = await self._outbound.get()
            try:
                await self.websocket.send_text(payload)
            except Exception as e:
                # The receive loop sees the disconnect and unregisters us
                logger.debug(f"Send failed for connection {self.connection_id} in room {self.code}: {e}")
                self._closed = True
                return

    async def close(self):
        self._closed = True
        if self._writer is None:
            return
        self._writer.cancel()
        try:
            await self._writer
        except asyncio.CancelledError:
            pass
        self._writer = None


class RelayBroker:
    """Fans out JSON frames between the connections of one room."""

    def __init__(
        self,
        registry: RoomRegistry,
        store: SnapshotStore,
        write_through: bool = True,
        max_pending: int = 0,
    ):
        self.registry = registry
        self.store = store
        self.write_through = write_through
        self.max_pending = max_pending

    async def handle(self, websocket: WebSocket, code: Optional[str]):
        """Run one connection from handshake to close."""
        try:
            room_code = room_code_from_handshake(code)
        except MissingRoomCode as e:
            logger.info(f"WebSocket connection rejected: {e}")
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        connection = RelayConnection(websocket, room_code, self.max_pending)
        # Registered before accept; broadcasts skip it until the handshake completes
        self.registry.register(room_code, connection)
        try:
            await websocket.accept()
            connection.start()
            logger.info(f"Connection {connection.connection_id} joined room {room_code}")
            await self._receive_loop(connection)
        except Exception as e:
            logger.error(
                f"WebSocket error for connection {connection.connection_id} in room {room_code}: {e}",
                exc_info=True,
            )
        finally:
            self.registry.unregister(room_code, connection)
            await connection.close()
            logger.info(f"Connection {connection.connection_id} left room {room_code}")

    async def _receive_loop(self, connection: RelayConnection):
        message_count = 0
        while True:
            message = await connection.websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.debug(
                    f"WebSocket disconnected for connection {connection.connection_id} "
                    f"(code {message.get('code')})"
                )
                return
            message_count += 1
            try:
                text, envelope = self.parse_frame(message)
            except MalformedMessage as e:
                logger.warning(
                    f"Dropping malformed message #{message_count} from connection "
                    f"{connection.connection_id} in room {connection.code}: {e}"
                )
                continue
            await self.relay(connection, text, envelope)

    @staticmethod
    def parse_frame(message: dict) -> Tuple[str, Any]:
        """Return the frame text and its parsed JSON, or raise MalformedMessage."""
        text = message.get("text")
        if text is None:
            try:
                text = (message.get("bytes") or b"").decode("utf-8")
            except UnicodeDecodeError as e:
                raise MalformedMessage(f"frame is not UTF-8: {e}") from e
        try:
            return text, json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedMessage(f"frame is not JSON: {e}") from e

    async def relay(self, sender: RelayConnection, text: str, envelope: Any) -> int:
        if self.write_through and is_full_state_sync(envelope):
            await self._persist(sender.code, envelope["payload"])
        delivered = self.registry.broadcast(sender.code, sender, text)
        logger.debug(f"Relayed message from {sender.connection_id} to {delivered} peers in room {sender.code}")
        return delivered

    async def _persist(self, code: str, data: Any):
        try:
            await self.store.update(code, data)
        except RoomNotFound:
            logger.warning(f"Full-state sync for unknown room {code} not persisted")
        except Exception as e:
            logger.error(f"Failed to persist full-state sync for room {code}: {e}", exc_info=True)
