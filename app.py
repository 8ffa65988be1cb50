from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Callable, Dict, Optional
import json
import os

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from backend import GameStore, create_redis_client
from constants import CORS_ORIGINS, TOKEN_SECRET
from errors import AuthError, MalformedPayloadError, TransportError
from events import dump_payload, parse_payload, to_kind
from logging_config import get_logger, setup_logging
from presence import PresenceRecord
from routers.auth import auth_router
from routers.rooms import rooms_router
from tokens import RealtimeTokenIssuer
from transport import ChannelHandle, TransportClient, default_redis_factory

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def create_app(
    redis_factory: Callable[[], aioredis.Redis] = create_redis_client,
    realtime_redis_factory: Callable[[], aioredis.Redis] = default_redis_factory,
    token_secret: str = TOKEN_SECRET,
) -> FastAPI:
    """Build the API; shared services live on `app.state` for the app's lifetime."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        redis_client = redis_factory()
        try:
            await redis_client.ping()
            logger.info("Redis client connected successfully")
        except RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}", exc_info=True)
            raise
        app.state.redis = redis_client
        app.state.store = GameStore(redis_client)
        app.state.issuer = RealtimeTokenIssuer(token_secret)
        app.state.realtime_redis_factory = realtime_redis_factory
        yield
        await redis_client.aclose()
        logger.info("Redis client closed")

    app = FastAPI(title="Meme Room", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth_router)
    app.include_router(rooms_router)
    app.add_api_websocket_route("/realtime/ws", realtime_endpoint)

    logger.info("FastAPI application initialized")
    return app


async def realtime_endpoint(websocket: WebSocket, token: Optional[str] = None):
    """WebSocket bridge that gives a browser its own realtime connection.

    Query parameters:
    - token: realtime token from GET /auth/realtime-token

    Frames are JSON objects with an `action`: attach, detach, publish, presence,
    leave, or auth (to hand over a refreshed token).
    """
    issuer: RealtimeTokenIssuer = websocket.app.state.issuer
    try:
        details = issuer.verify(token)
    except AuthError as e:
        logger.info(f"WebSocket connection rejected: {e}")
        await websocket.close(code=1008, reason="Invalid token")
        return

    current = {"token": token}
    transport = TransportClient(
        auth_callback=lambda: current["token"],
        verifier=issuer.verify,
        redis_factory=websocket.app.state.realtime_redis_factory,
    )
    handles: Dict[str, ChannelHandle] = {}

    async def send(frame: dict):
        await websocket.send_text(json.dumps(frame))

    def forward(channel: str):
        async def listener(envelope: dict):
            await send({"action": envelope.get("kind"), "channel": channel, **envelope})

        return listener

    async def handle_frame(frame: dict):
        action = frame.get("action")
        channel = frame.get("channel")
        if action == "auth":
            current["token"] = frame.get("token")
            await transport.refresh_token()
            await send({"action": "authorized", "client_id": transport.client_id})
            return
        if not channel or not isinstance(channel, str):
            raise MalformedPayloadError("A channel name is required")

        if action == "attach":
            if channel not in handles:
                handle = transport.channels.get(channel)
                handle.add_listener(forward(channel))
                handles[channel] = handle
            await handles[channel].attach()
            members = await handles[channel].presence_get()
            await send({"action": "attached", "channel": channel, "presence": members})
        elif channel not in handles:
            raise TransportError(f"Channel {channel} is not attached")
        elif action == "detach":
            handles.pop(channel)
            await transport.channels.release(channel)
            await send({"action": "detached", "channel": channel})
        elif action == "publish":
            kind = to_kind(frame.get("name"))
            payload = parse_payload(kind, frame.get("data"))
            await handles[channel].publish(kind.value, dump_payload(payload))
        elif action == "presence":
            record = PresenceRecord.from_wire(frame.get("data"))
            await handles[channel].presence_update(record.to_wire())
        elif action == "leave":
            await handles[channel].presence_leave()
        else:
            raise MalformedPayloadError(f"Unknown action {action!r}")

    await websocket.accept()
    logger.info(f"Realtime WebSocket accepted for client {details.client_id}")
    try:
        await transport.initialize()
        await send({
            "action": "connected",
            "client_id": transport.client_id,
            "connection_id": transport.connection_id,
        })
        while True:
            data = await websocket.receive_text()
            try:
                frame = json.loads(data)
                if not isinstance(frame, dict):
                    raise MalformedPayloadError("Frames must be JSON objects")
                await handle_frame(frame)
            except (json.JSONDecodeError, MalformedPayloadError, TransportError) as e:
                logger.debug(f"Rejected frame from {details.client_id}: {e}")
                await send({"action": "error", "message": str(e)})
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for client {details.client_id}")
    except TransportError as e:
        logger.error(f"Realtime connection for {details.client_id} failed: {e}")
        await websocket.close(code=1011, reason="Realtime backend unavailable")
    finally:
        for channel, handle in handles.items():
            if handle.attached:
                try:
                    await handle.presence_leave()
                except TransportError as e:
                    logger.debug(f"Could not leave presence on {channel}: {e}")
        await transport.close()
        logger.debug(f"Cleaned up realtime connection {transport.connection_id}")


app = create_app()
