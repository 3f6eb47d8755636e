import redis
from datetime import datetime, timezone
from typing import Optional
from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD
from redis_keys import (
    REDIS_MESSAGE_SEQ_KEY,
    REDIS_MESSAGE_KEY,
    REDIS_ROOM_MESSAGES_KEY,
    REDIS_ROOM_SEQ_KEY,
    REDIS_ROOM_KEY,
    REDIS_ROOMS_KEY,
    REDIS_READ_KEY,
)
from schemas.chat import ChatMessage, ChatRoom
from logging_config import get_logger

logger = get_logger(__name__)


# Read markers only move forward; compare and set in one server-side step
ADVANCE_READ_MARKER = """
local current = tonumber(redis.call('GET', KEYS[1]))
local incoming = tonumber(ARGV[1])
if current == nil or current < incoming then
    redis.call('SET', KEYS[1], ARGV[1])
    return 1
end
return 0
"""


class StoreError(Exception):
    """Raised when the message store cannot complete a read or write."""


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RedisBackend:
    def __init__(self, client: Optional[redis.Redis] = None):
        # redis-py connects lazily; nothing touches the network until the first command
        self.redis_client = client or redis.Redis(
            host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True
        )
        logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
        self._advance_read_marker = self.redis_client.register_script(ADVANCE_READ_MARKER)

    def ping(self):
        try:
            self.redis_client.ping()
            logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
            raise StoreError(f"Redis unreachable at {REDIS_HOST}:{REDIS_PORT}") from e
        return True

    # Messages

    def insert_message(self, room_id: int, user_id: int, content: str, kind: str = "text") -> ChatMessage:
        """Persist a chat message and return it with its server-assigned id.

        The id is allocated first; the record, the room index entry and the
        room's updatedAt bump are then written in one MULTI/EXEC so a failure
        never leaves a half-written message behind.
        """
        now = utc_now()
        try:
            message_id = int(self.redis_client.incr(REDIS_MESSAGE_SEQ_KEY))
            room_key = REDIS_ROOM_KEY.format(room_id=room_id)
            room_exists = self.redis_client.exists(room_key)

            pipe = self.redis_client.pipeline(transaction=True)
            pipe.hset(REDIS_MESSAGE_KEY.format(message_id=message_id), mapping={
                "id": message_id,
                "chatRoomId": room_id,
                "userId": user_id,
                "content": content,
                "type": kind,
                "createdAt": now,
                "updatedAt": now,
            })
            pipe.zadd(REDIS_ROOM_MESSAGES_KEY.format(room_id=room_id), {str(message_id): message_id})
            if room_exists:
                pipe.hset(room_key, "updatedAt", now)
            pipe.execute()
        except redis.RedisError as e:
            logger.error(f"Error storing message for room {room_id} from user {user_id}: {e}", exc_info=True)
            raise StoreError("Failed to store message") from e

        logger.debug(f"Stored message {message_id} in room {room_id} from user {user_id}")
        return ChatMessage(
            id=message_id,
            chatRoomId=room_id,
            userId=user_id,
            content=content,
            type=kind,
            createdAt=now,
            updatedAt=now,
        )

    def get_message(self, message_id: int) -> Optional[ChatMessage]:
        try:
            data = self.redis_client.hgetall(REDIS_MESSAGE_KEY.format(message_id=message_id))
        except redis.RedisError as e:
            logger.error(f"Error fetching message {message_id}: {e}", exc_info=True)
            raise StoreError("Failed to fetch message") from e
        if not data:
            logger.debug(f"Message {message_id} not found in Redis")
            return None
        return ChatMessage(**data)

    def get_messages(self, room_id: int, limit: int = 50, before: Optional[int] = None) -> list[ChatMessage]:
        """Newest `limit` messages of a room with id below `before`, oldest first."""
        key = REDIS_ROOM_MESSAGES_KEY.format(room_id=room_id)
        upper = f"({before}" if before is not None else "+inf"
        try:
            ids = self.redis_client.zrevrangebyscore(key, upper, "-inf", start=0, num=limit)
            pipe = self.redis_client.pipeline(transaction=False)
            for message_id in ids:
                pipe.hgetall(REDIS_MESSAGE_KEY.format(message_id=message_id))
            rows = pipe.execute() if ids else []
        except redis.RedisError as e:
            logger.error(f"Error fetching history for room {room_id}: {e}", exc_info=True)
            raise StoreError("Failed to fetch messages") from e

        messages = [ChatMessage(**row) for row in rows if row]
        messages.reverse()
        logger.debug(f"Fetched {len(messages)} messages for room {room_id} (before={before})")
        return messages

    # Rooms

    def create_room(self, name: str, room_type: str = "group") -> ChatRoom:
        now = utc_now()
        try:
            room_id = int(self.redis_client.incr(REDIS_ROOM_SEQ_KEY))
            logger.info(f"Creating chat room {room_id} ({name})")
            pipe = self.redis_client.pipeline(transaction=True)
            pipe.hset(REDIS_ROOM_KEY.format(room_id=room_id), mapping={
                "id": room_id,
                "name": name,
                "type": room_type,
                "createdAt": now,
                "updatedAt": now,
            })
            pipe.sadd(REDIS_ROOMS_KEY, room_id)
            pipe.execute()
        except redis.RedisError as e:
            logger.error(f"Error creating chat room {name}: {e}", exc_info=True)
            raise StoreError("Failed to create room") from e
        return ChatRoom(id=room_id, name=name, type=room_type, createdAt=now, updatedAt=now)

    def get_room(self, room_id: int) -> Optional[ChatRoom]:
        logger.debug(f"Fetching room {room_id}")
        try:
            data = self.redis_client.hgetall(REDIS_ROOM_KEY.format(room_id=room_id))
        except redis.RedisError as e:
            logger.error(f"Error fetching room {room_id}: {e}", exc_info=True)
            raise StoreError("Failed to fetch room") from e
        if not data:
            logger.debug(f"Room {room_id} not found in Redis")
            return None
        return ChatRoom(**data)

    def list_rooms(self) -> list[ChatRoom]:
        """All rooms, most recently updated first."""
        try:
            room_ids = self.redis_client.smembers(REDIS_ROOMS_KEY)
            pipe = self.redis_client.pipeline(transaction=False)
            for room_id in room_ids:
                pipe.hgetall(REDIS_ROOM_KEY.format(room_id=room_id))
            rows = pipe.execute() if room_ids else []
        except redis.RedisError as e:
            logger.error(f"Error listing rooms: {e}", exc_info=True)
            raise StoreError("Failed to list rooms") from e

        rooms = [ChatRoom(**row) for row in rows if row]
        rooms.sort(key=lambda room: (room.updatedAt, room.id), reverse=True)
        return rooms

    # Read markers

    def mark_read(self, room_id: int, user_id: int, message_id: int):
        key = REDIS_READ_KEY.format(room_id=room_id, user_id=user_id)
        try:
            self._advance_read_marker(keys=[key], args=[message_id])
        except redis.RedisError as e:
            logger.error(f"Error marking room {room_id} read for user {user_id}: {e}", exc_info=True)
            raise StoreError("Failed to mark room read") from e
        logger.debug(f"User {user_id} read room {room_id} up to message {message_id}")
        return True

    def unread_count(self, room_id: int, user_id: int) -> int:
        try:
            last_read = self.redis_client.get(REDIS_READ_KEY.format(room_id=room_id, user_id=user_id))
            lower = f"({int(last_read)}" if last_read is not None else "-inf"
            return int(self.redis_client.zcount(REDIS_ROOM_MESSAGES_KEY.format(room_id=room_id), lower, "+inf"))
        except redis.RedisError as e:
            logger.error(f"Error counting unread messages in room {room_id} for user {user_id}: {e}", exc_info=True)
            raise StoreError("Failed to count unread messages") from e


redis_backend = RedisBackend()
