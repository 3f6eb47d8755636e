"""Real-time chat relay.

Connections are registered when the handshake completes, tagged with a room
and user when they send a ``join`` envelope, and removed when the transport
closes. Room membership is never stored: it is the set of live connections
whose ``room_id`` matches at the moment of a broadcast.
"""
import asyncio
import json
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional, Protocol

from fastapi import WebSocket
from pydantic import BaseModel, ValidationError
from starlette.websockets import WebSocketState

from schemas.chat import (
    ChatMessage,
    ChatMessageEnvelope,
    ErrorEnvelope,
    JoinEnvelope,
    MessageEnvelope,
    SystemEnvelope,
)
from logging_config import get_logger

logger = get_logger(__name__)

INBOUND_ENVELOPES = {
    "join": JoinEnvelope,
    "message": MessageEnvelope,
}


class MessageStore(Protocol):
    def insert_message(self, room_id: int, user_id: int, content: str, kind: str = "text") -> ChatMessage:
        ...


class Connection:
    def __init__(self, websocket: WebSocket, connection_id: Optional[str] = None):
        self.connection_id = connection_id or str(uuid.uuid4())
        self.websocket = websocket
        self.user_id: Optional[int] = None
        self.room_id: Optional[int] = None
        self.connected_at = datetime.now(timezone.utc).isoformat()

    @property
    def is_joined(self) -> bool:
        return self.room_id is not None and self.user_id is not None

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.application_state == WebSocketState.CONNECTED
            and self.websocket.client_state == WebSocketState.CONNECTED
        )

    def __repr__(self):
        return f"Connection({self.connection_id[:8]}, room={self.room_id}, user={self.user_id})"


class ConnectionRegistry:
    """Live connections keyed by connection id, guarded by a single lock."""

    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    async def add(self, connection: Connection):
        async with self._lock:
            self._connections[connection.connection_id] = connection
            logger.debug(f"Registered connection {connection.connection_id} (live connections: {len(self._connections)})")

    async def remove(self, connection_id: str) -> Optional[Connection]:
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            logger.debug(f"Unregistered connection {connection_id} (live connections: {len(self._connections)})")
            return connection

    async def tag_join(self, connection_id: str, room_id: int, user_id: int) -> bool:
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return False
            connection.room_id = room_id
            connection.user_id = user_id
            return True

    async def in_room(self, room_id: int) -> list[Connection]:
        async with self._lock:
            return [c for c in self._connections.values() if c.room_id == room_id]

    async def for_each_in_room(self, room_id: int, fn: Callable[[Connection], Awaitable[None]]) -> int:
        """Call `fn` for every connection in the room; returns how many calls completed.

        Membership is snapshotted under the lock and `fn` runs outside it, so a
        slow recipient never holds up registration or removal.
        """
        delivered = 0
        for connection in await self.in_room(room_id):
            try:
                await fn(connection)
                delivered += 1
            except Exception as e:
                logger.debug(f"Skipping connection {connection.connection_id} in room {room_id}: {e}")
        return delivered

    async def count(self) -> int:
        async with self._lock:
            return len(self._connections)

    async def close_all(self, code: int = 1001):
        async with self._lock:
            connections = list(self._connections.values())
        for connection in connections:
            try:
                await connection.websocket.close(code=code)
            except Exception as e:
                logger.debug(f"Error closing connection {connection.connection_id}: {e}")


class ChatRelay:
    def __init__(self, store: MessageStore, registry: Optional[ConnectionRegistry] = None):
        self.store = store
        self.registry = registry or ConnectionRegistry()

    async def connect(self, websocket: WebSocket) -> Connection:
        connection = Connection(websocket)
        await self.registry.add(connection)
        logger.info(f"New chat connection {connection.connection_id} established")
        return connection

    async def handle(self, connection: Connection, raw: str):
        """Dispatch one inbound text frame from `connection`."""
        try:
            data = json.loads(raw)
        except (ValueError, TypeError, RecursionError):
            logger.warning(f"Unparsable frame from connection {connection.connection_id}")
            await self.send_error(connection, "Invalid message format")
            return

        message_type = data.get("type") if isinstance(data, dict) else None
        envelope_cls = INBOUND_ENVELOPES.get(message_type) if isinstance(message_type, str) else None
        if envelope_cls is None:
            logger.warning(f"Unknown message type {message_type!r} from connection {connection.connection_id}")
            await self.send_error(connection, f"Unknown message type: {message_type}")
            return

        try:
            envelope = envelope_cls.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Invalid {message_type} envelope from connection {connection.connection_id}: {e.error_count()} errors")
            await self.send_error(connection, f"Invalid {message_type} envelope")
            return

        logger.debug(f"Received {message_type} envelope from connection {connection.connection_id}")
        if isinstance(envelope, JoinEnvelope):
            await self.join(connection, envelope)
        else:
            await self.send_message(connection, envelope)

    async def join(self, connection: Connection, envelope: JoinEnvelope):
        # Re-joining overwrites the previous room without notifying it
        await self.registry.tag_join(connection.connection_id, envelope.chatRoomId, envelope.userId)
        logger.info(f"User {envelope.userId} joined room {envelope.chatRoomId} on connection {connection.connection_id}")
        await self.broadcast(envelope.chatRoomId, SystemEnvelope(
            content=f"User {envelope.userId} joined the chat",
            userId=envelope.userId,
            chatRoomId=envelope.chatRoomId,
        ))

    async def send_message(self, connection: Connection, envelope: MessageEnvelope):
        room_id, user_id = connection.room_id, connection.user_id
        if room_id is None or user_id is None or not envelope.content:
            logger.debug(f"Dropping message from connection {connection.connection_id}: not joined or empty")
            return

        loop = asyncio.get_running_loop()
        try:
            stored = await loop.run_in_executor(
                None, self.store.insert_message, room_id, user_id, envelope.content, "text"
            )
        except Exception as e:
            logger.error(f"Failed to persist message from user {user_id} in room {room_id}: {e}", exc_info=True)
            await self.send_error(connection, "Failed to send message")
            return

        await self.broadcast(room_id, ChatMessageEnvelope(
            content=stored.content,
            userId=stored.userId,
            chatRoomId=stored.chatRoomId,
            messageId=stored.id,
            createdAt=stored.createdAt,
        ))

    async def disconnect(self, connection: Connection):
        await self.registry.remove(connection.connection_id)
        logger.info(f"Chat connection {connection.connection_id} closed")
        if connection.is_joined:
            await self.broadcast(connection.room_id, SystemEnvelope(
                content=f"User {connection.user_id} left the chat",
                userId=connection.user_id,
                chatRoomId=connection.room_id,
            ))

    async def broadcast(self, room_id: int, envelope: BaseModel) -> int:
        payload = envelope.model_dump_json()

        async def deliver(connection: Connection):
            if not connection.is_open:
                raise ConnectionError("transport not open")
            await connection.websocket.send_text(payload)

        delivered = await self.registry.for_each_in_room(room_id, deliver)
        logger.debug(f"Broadcast {envelope.type} to {delivered} connections in room {room_id}")
        return delivered

    async def send_error(self, connection: Connection, content: str):
        try:
            await connection.websocket.send_text(ErrorEnvelope(content=content).model_dump_json())
        except Exception as e:
            logger.debug(f"Could not send error to connection {connection.connection_id}: {e}")

    async def shutdown(self):
        logger.info("Closing all chat connections")
        await self.registry.close_all(code=1001)
