from pydantic import BaseModel, Field
from typing import Literal, Optional


# Client -> server envelopes

class JoinEnvelope(BaseModel):
    type: Literal["join"]
    chatRoomId: int
    userId: int

class MessageEnvelope(BaseModel):
    type: Literal["message"]
    # The relay routes by the connection's current room, not this field
    chatRoomId: Optional[int] = None
    content: Optional[str] = None


# Server -> client envelopes

class SystemEnvelope(BaseModel):
    type: Literal["system"] = "system"
    content: str
    userId: int
    chatRoomId: int

class ChatMessageEnvelope(BaseModel):
    type: Literal["message"] = "message"
    content: str
    userId: int
    chatRoomId: int
    messageId: int
    createdAt: str

class ErrorEnvelope(BaseModel):
    type: Literal["error"] = "error"
    content: str


# Stored records

class ChatMessage(BaseModel):
    id: int
    chatRoomId: int
    userId: int
    content: str
    type: str = "text"
    createdAt: str
    updatedAt: str

class ChatRoom(BaseModel):
    id: int
    name: str
    type: str = "group"
    createdAt: str
    updatedAt: str


# REST payloads

class CreateChatRoomRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    type: Optional[str] = "group"

class ChatRoomSummary(BaseModel):
    room: ChatRoom
    unreadCount: int = 0

class MarkReadRequest(BaseModel):
    userId: int
    messageId: int

class HealthResponse(BaseModel):
    status: str
    connections: int
