"""Unit tests for the Redis message store with a mocked redis client."""
from unittest.mock import MagicMock

import pytest
import redis

from backend import ADVANCE_READ_MARKER, RedisBackend, StoreError


def message_row(message_id, room_id=42, user_id=1, content="hi"):
    return {
        "id": str(message_id),
        "chatRoomId": str(room_id),
        "userId": str(user_id),
        "content": content,
        "type": "text",
        "createdAt": "2026-01-01T00:00:00+00:00",
        "updatedAt": "2026-01-01T00:00:00+00:00",
    }


def room_row(room_id, name, updated_at):
    return {
        "id": str(room_id),
        "name": name,
        "type": "group",
        "createdAt": "2026-01-01T00:00:00+00:00",
        "updatedAt": updated_at,
    }


@pytest.fixture
def client():
    client = MagicMock()
    client.pipeline.return_value = MagicMock()
    return client


@pytest.fixture
def backend(client):
    return RedisBackend(client=client)


class TestInsertMessage:
    def test_assigns_id_and_writes_in_one_transaction(self, backend, client):
        client.incr.return_value = 7
        client.exists.return_value = 1
        pipe = client.pipeline.return_value

        message = backend.insert_message(42, 1, "hello")

        assert message.id == 7
        assert (message.chatRoomId, message.userId, message.content, message.type) == (42, 1, "hello", "text")
        assert message.createdAt == message.updatedAt
        client.incr.assert_called_once_with("chat:message:seq")
        client.pipeline.assert_called_once_with(transaction=True)

        mapping = pipe.hset.call_args_list[0].kwargs["mapping"]
        assert pipe.hset.call_args_list[0].args == ("chat:message:7",)
        assert mapping["content"] == "hello"
        assert mapping["chatRoomId"] == 42
        pipe.zadd.assert_called_once_with("chat:room:42:messages", {"7": 7})
        # Room updatedAt bump
        assert pipe.hset.call_args_list[1].args == ("chat:room:42", "updatedAt", message.updatedAt)
        pipe.execute.assert_called_once()

    def test_unknown_room_is_not_created(self, backend, client):
        client.incr.return_value = 1
        client.exists.return_value = 0
        pipe = client.pipeline.return_value

        backend.insert_message(99, 1, "hello")

        assert pipe.hset.call_count == 1

    def test_redis_failure_raises_store_error(self, backend, client):
        client.incr.return_value = 3
        client.exists.return_value = 1
        client.pipeline.return_value.execute.side_effect = redis.ConnectionError("down")

        with pytest.raises(StoreError):
            backend.insert_message(42, 1, "hello")

    def test_id_allocation_failure_raises_store_error(self, backend, client):
        client.incr.side_effect = redis.TimeoutError("slow")

        with pytest.raises(StoreError):
            backend.insert_message(42, 1, "hello")
        client.pipeline.assert_not_called()


class TestHistory:
    def test_returns_oldest_first(self, backend, client):
        client.zrevrangebyscore.return_value = ["3", "2"]
        client.pipeline.return_value.execute.return_value = [message_row(3), message_row(2)]

        messages = backend.get_messages(42, limit=2)

        assert [m.id for m in messages] == [2, 3]
        client.zrevrangebyscore.assert_called_once_with("chat:room:42:messages", "+inf", "-inf", start=0, num=2)

    def test_before_is_exclusive(self, backend, client):
        client.zrevrangebyscore.return_value = []

        assert backend.get_messages(42, limit=10, before=5) == []
        client.zrevrangebyscore.assert_called_once_with("chat:room:42:messages", "(5", "-inf", start=0, num=10)

    def test_get_message_missing(self, backend, client):
        client.hgetall.return_value = {}

        assert backend.get_message(1) is None

    def test_get_message(self, backend, client):
        client.hgetall.return_value = message_row(4, content="stored")

        message = backend.get_message(4)

        assert message.id == 4
        assert message.content == "stored"


class TestRooms:
    def test_create_room(self, backend, client):
        client.incr.return_value = 12
        pipe = client.pipeline.return_value

        room = backend.create_room("U12 Boys", "event")

        assert room.id == 12
        assert room.type == "event"
        pipe.sadd.assert_called_once_with("chat:rooms", 12)
        pipe.execute.assert_called_once()

    def test_list_rooms_most_recent_first(self, backend, client):
        client.smembers.return_value = {"1", "2"}
        client.pipeline.return_value.execute.return_value = [
            room_row(1, "old", "2026-01-01T00:00:00+00:00"),
            room_row(2, "new", "2026-02-01T00:00:00+00:00"),
        ]

        rooms = backend.list_rooms()

        assert [r.name for r in rooms] == ["new", "old"]

    def test_get_room_missing(self, backend, client):
        client.hgetall.return_value = {}

        assert backend.get_room(5) is None


class TestReadMarkers:
    def test_mark_read_uses_atomic_script(self, backend, client):
        advance = client.register_script.return_value

        backend.mark_read(42, 1, 11)

        client.register_script.assert_called_once_with(ADVANCE_READ_MARKER)
        advance.assert_called_once_with(keys=["chat:room:42:read:1"], args=[11])
        client.get.assert_not_called()
        client.set.assert_not_called()

    def test_mark_read_failure_raises_store_error(self, backend, client):
        client.register_script.return_value.side_effect = redis.ConnectionError("down")

        with pytest.raises(StoreError):
            backend.mark_read(42, 1, 11)

    def test_unread_count_after_marker(self, backend, client):
        client.get.return_value = "10"
        client.zcount.return_value = 3

        assert backend.unread_count(42, 1) == 3
        client.zcount.assert_called_once_with("chat:room:42:messages", "(10", "+inf")

    def test_unread_count_without_marker(self, backend, client):
        client.get.return_value = None
        client.zcount.return_value = 5

        assert backend.unread_count(42, 1) == 5
        client.zcount.assert_called_once_with("chat:room:42:messages", "-inf", "+inf")


def test_ping_failure_raises_store_error(backend, client):
    client.ping.side_effect = redis.ConnectionError("refused")

    with pytest.raises(StoreError):
        backend.ping()
