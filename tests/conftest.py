"""Shared fixtures for the relay tests."""
import json

import pytest

from relay import ChatRelay
from tests.fakes import InMemoryStore


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def relay(store) -> ChatRelay:
    return ChatRelay(store)


@pytest.fixture
def join_frame():
    def make(room_id: int, user_id: int) -> str:
        return json.dumps({"type": "join", "chatRoomId": room_id, "userId": user_id})
    return make


@pytest.fixture
def message_frame():
    def make(content, room_id: int = 0) -> str:
        return json.dumps({"type": "message", "chatRoomId": room_id, "content": content})
    return make
