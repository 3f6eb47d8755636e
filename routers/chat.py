from fastapi import APIRouter, HTTPException, Query, Request
from typing import Optional
from schemas.chat import ChatMessage, ChatRoom, ChatRoomSummary, CreateChatRoomRequest, MarkReadRequest
from backend import redis_backend, StoreError
from constants import DEFAULT_HISTORY_LIMIT, MAX_HISTORY_LIMIT
from logging_config import get_logger

logger = get_logger(__name__)

chat_router = APIRouter(prefix="/api/chat", tags=["chat"])


def client_host(request: Request) -> str:
    return request.client.host if request and request.client else 'unknown'


@chat_router.get("/rooms", response_model=list[ChatRoomSummary])
async def list_rooms(request: Request, userId: Optional[int] = Query(None, description="Count unread messages for this user")):
    logger.info(f"Room list request from {client_host(request)}, userId: {userId}")
    try:
        rooms = redis_backend.list_rooms()
        summaries = []
        for room in rooms:
            unread = redis_backend.unread_count(room.id, userId) if userId is not None else 0
            summaries.append(ChatRoomSummary(room=room, unreadCount=unread))
    except StoreError as e:
        logger.error(f"Error listing rooms: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to list rooms")
    return summaries


@chat_router.post("/rooms", response_model=ChatRoom, status_code=201)
async def create_room(room: CreateChatRoomRequest, request: Request):
    logger.info(f"Room creation request from {client_host(request)}, name: {room.name}, type: {room.type}")
    try:
        created = redis_backend.create_room(room.name, room.type or "group")
    except StoreError as e:
        logger.error(f"Error creating room: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create room")
    logger.info(f"Room {created.id} created successfully: name={created.name}")
    return created


def load_room(room_id: int) -> ChatRoom:
    try:
        room = redis_backend.get_room(room_id)
    except StoreError as e:
        logger.error(f"Error fetching room {room_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to fetch room")
    if not room:
        logger.warning(f"Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    return room


@chat_router.get("/rooms/{room_id}", response_model=ChatRoom)
async def get_room(room_id: int, request: Request):
    logger.info(f"Room details request for {room_id} from {client_host(request)}")
    return load_room(room_id)


@chat_router.get("/rooms/{room_id}/messages", response_model=list[ChatMessage])
async def get_messages(
    room_id: int,
    request: Request,
    limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1, le=MAX_HISTORY_LIMIT),
    before: Optional[int] = Query(None, ge=1, description="Only messages with an id below this one"),
):
    """
    Message history for a room, oldest first.

    Page backwards by passing the id of the oldest message already loaded as `before`.
    """
    logger.info(f"History request for room {room_id} from {client_host(request)}, limit: {limit}, before: {before}")
    load_room(room_id)
    try:
        return redis_backend.get_messages(room_id, limit=limit, before=before)
    except StoreError as e:
        logger.error(f"Error fetching history for room {room_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to fetch messages")


@chat_router.post("/rooms/{room_id}/read")
async def mark_read(room_id: int, read: MarkReadRequest, request: Request):
    logger.info(f"Read marker for room {room_id} from {client_host(request)}: user {read.userId} at {read.messageId}")
    load_room(room_id)
    try:
        redis_backend.mark_read(room_id, read.userId, read.messageId)
    except StoreError as e:
        logger.error(f"Error marking room {room_id} read: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to mark room read")
    return {"message": "Read marker updated"}
