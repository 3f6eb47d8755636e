from contextlib import asynccontextmanager
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from routers.chat import chat_router
from backend import redis_backend
from relay import ChatRelay
from schemas.chat import HealthResponse
from constants import CORS_ORIGINS, HMR_PROTOCOL, LOG_FILE, LOG_LEVEL
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)

# One relay per process; it owns the registry of live chat connections
chat_relay = ChatRelay(redis_backend)


@asynccontextmanager
async def lifespan(app: FastAPI):
    redis_backend.ping()
    logger.info("Chat relay ready")
    yield
    await chat_relay.shutdown()
    logger.info("Chat relay stopped")


app = FastAPI(title="TourneyChat", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router)

logger.info("FastAPI application initialized")


def is_hmr_handshake(websocket: WebSocket) -> bool:
    """True when the handshake offers the dev server's hot-reload subprotocol."""
    return HMR_PROTOCOL in websocket.scope.get("subprotocols", [])


@app.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(status="ok", connections=await chat_relay.registry.count())


@app.websocket("/")
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Chat WebSocket endpoint.

    Clients send `join` and `message` envelopes as JSON text frames and receive
    `system`, `message` and `error` envelopes back.
    """
    if is_hmr_handshake(websocket):
        logger.info(f"Rejecting {HMR_PROTOCOL} handshake on chat endpoint")
        await websocket.close(code=1008)
        return

    await websocket.accept()
    connection = await chat_relay.connect(websocket)
    client = websocket.client.host if websocket.client else "unknown"
    logger.info(f"WebSocket connection {connection.connection_id} accepted from {client}")

    try:
        message_count = 0
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
            message_count += 1
            logger.debug(f"Received message #{message_count} from connection {connection.connection_id}")

            data = message.get("text")
            if data is None:
                logger.warning(f"Binary frame from connection {connection.connection_id}")
                await chat_relay.send_error(connection, "Invalid message format")
                continue
            # Frames from one connection are handled strictly in arrival order, so a
            # pending insert holds up only this connection's next frame
            await chat_relay.handle(connection, data)
    except WebSocketDisconnect as e:
        logger.info(f"WebSocket disconnected normally for connection {connection.connection_id} (code {e.code})")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection.connection_id}: {e}", exc_info=True)
    finally:
        await chat_relay.disconnect(connection)
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")
