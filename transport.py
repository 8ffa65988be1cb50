"""
Realtime transport over Redis pub/sub.

One `TransportClient` is one authenticated realtime connection. It hands out
`ChannelHandle`s, each of which owns a Redis pub/sub subscription and a
background listener task, and keeps channel presence in a Redis hash per
channel.
"""

import asyncio
import inspect
import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Union

import redis.asyncio as aioredis
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.retry import Retry

from constants import PRESENCE_MEMBER_TTL_SECONDS, PRESENCE_TTL_SECONDS, REDIS_DB, REDIS_HOST, REDIS_PASSWORD, REDIS_PORT
from errors import AuthError, TransportError
from logging_config import get_logger
from presence import now_ms
from redis_keys import REDIS_PRESENCE_KEY
from tokens import TokenDetails

logger = get_logger(__name__)

TOKEN_REFRESH_MARGIN_SECONDS = 60
SUBSCRIBE_TIMEOUT_SECONDS = 5.0

AuthCallback = Callable[[], Union[str, Awaitable[str]]]
TokenVerifier = Callable[[str], TokenDetails]
EnvelopeListener = Callable[[dict], Optional[Awaitable[None]]]


class ConnectionState(str, Enum):
    INITIALIZED = "initialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class ConnectionStateChange:
    previous: ConnectionState
    current: ConnectionState
    reason: Optional[str] = None


def default_redis_factory() -> aioredis.Redis:
    return aioredis.Redis(
        host=REDIS_HOST,
        port=REDIS_PORT,
        password=REDIS_PASSWORD,
        db=REDIS_DB,
        decode_responses=True,
        retry=Retry(ExponentialBackoff(), 3),
        retry_on_error=[RedisConnectionError, RedisTimeoutError],
        health_check_interval=30,
    )


async def _maybe_await(result):
    if inspect.isawaitable(result):
        return await result
    return result


def _is_live(member) -> bool:
    """A stored presence member whose heartbeat has not lapsed."""
    if isinstance(member, str):
        try:
            member = json.loads(member)
        except json.JSONDecodeError:
            return False
    if not isinstance(member, dict):
        return False
    expires_at = member.get("expires_at")
    return expires_at is None or expires_at > now_ms()


class ChannelHandle:
    """Raw, untyped view of one named channel on a transport connection."""

    def __init__(self, transport: "TransportClient", name: str):
        self.transport = transport
        self.name = name
        self.presence_key = REDIS_PRESENCE_KEY.format(channel=name)
        self.attached = False
        self.failure: Optional[str] = None
        self._pubsub = None
        self._task: Optional[asyncio.Task] = None
        self._listeners: List[EnvelopeListener] = []
        self._failure_listeners: List[Callable[[str], None]] = []
        self._presence_data: Optional[dict] = None
        self._last_heartbeat = 0.0
        self._refs = 0

    def add_listener(self, listener: EnvelopeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def on_failure(self, listener: Callable[[str], None]) -> Callable[[], None]:
        """Called with a reason when the listener task stops for good."""
        self._failure_listeners.append(listener)

        def remove():
            if listener in self._failure_listeners:
                self._failure_listeners.remove(listener)

        return remove

    @property
    def present(self) -> bool:
        return self._presence_data is not None

    async def attach(self):
        if self.attached:
            return
        if self._pubsub is not None:
            # left over from a listener that failed
            try:
                await self._pubsub.aclose()
            except RedisError as e:
                logger.error(f"Error closing pub/sub for channel {self.name}: {e}")
            self._pubsub = None
        await self.transport.authorize(self.name, "subscribe")
        pubsub = self.transport.redis.pubsub()
        try:
            await pubsub.subscribe(self.name)
            await self._wait_for_subscription(pubsub)
        except (RedisError, TransportError) as e:
            logger.error(f"Failed to subscribe to channel {self.name}: {e}")
            await pubsub.aclose()
            if isinstance(e, TransportError):
                raise
            raise TransportError(f"Could not attach to {self.name}: {e}") from e
        self._pubsub = pubsub
        self.failure = None
        self._task = asyncio.create_task(self._listen())
        self.attached = True
        logger.debug(f"Attached to channel {self.name} as {self.transport.client_id}")

    async def _wait_for_subscription(self, pubsub):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + SUBSCRIBE_TIMEOUT_SECONDS
        while loop.time() < deadline:
            message = await pubsub.get_message(timeout=max(deadline - loop.time(), 0.01))
            if message and message.get("type") == "subscribe":
                return
        raise TransportError(f"Timed out waiting for subscription to {self.name}")

    async def _listen(self):
        """Read the pub/sub subscription and hand every envelope to the listeners."""
        logger.info(f"Starting Redis pub/sub listener for channel: {self.name}")
        try:
            while True:
                try:
                    message = await self._pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=self.transport.poll_timeout
                    )
                except (RedisConnectionError, RedisTimeoutError) as e:
                    logger.error(f"Lost pub/sub connection for channel {self.name}: {e}")
                    self.transport._set_state(ConnectionState.DISCONNECTED, reason=str(e))
                    await asyncio.sleep(self.transport.poll_timeout)
                    continue

                self.transport._mark_connected()
                await self._heartbeat()
                if message is None or message.get("type") != "message":
                    continue

                try:
                    envelope = json.loads(message["data"])
                except (json.JSONDecodeError, TypeError) as e:
                    logger.error(f"Error parsing message from channel {self.name}: {e}")
                    continue
                if not isinstance(envelope, dict):
                    logger.warning(f"Dropping non-object message on channel {self.name}")
                    continue
                await self._dispatch(envelope)
        except asyncio.CancelledError:
            logger.info(f"Redis listener task cancelled for channel: {self.name}")
            raise
        except Exception as e:
            logger.error(f"Redis listener for channel {self.name} stopped: {e}", exc_info=True)
            self._fail(str(e))

    def _fail(self, reason: str):
        self.attached = False
        self.failure = reason
        for listener in list(self._failure_listeners):
            try:
                listener(reason)
            except Exception as e:
                logger.error(f"Channel failure listener failed on {self.name}: {e}", exc_info=True)

    async def _dispatch(self, envelope: dict):
        for listener in list(self._listeners):
            try:
                await _maybe_await(listener(envelope))
            except Exception as e:
                logger.error(f"Error processing message on channel {self.name}: {e}", exc_info=True)

    async def publish(self, name: str, data: dict) -> int:
        await self.transport.authorize(self.name, "publish")
        envelope = self.transport.envelope("message", name=name, data=data)
        try:
            receivers = await self.transport.redis.publish(self.name, json.dumps(envelope))
        except RedisError as e:
            raise TransportError(f"Failed to publish {name} on {self.name}: {e}") from e
        logger.debug(f"Published {name} to channel {self.name}, {receivers} subscribers")
        return receivers

    def _member(self, data: dict) -> dict:
        timestamp = now_ms()
        return {
            "client_id": self.transport.client_id,
            "connection_id": self.transport.connection_id,
            "data": data,
            "timestamp": timestamp,
            "expires_at": timestamp + int(self.transport.presence_member_ttl * 1000),
        }

    async def _write_member(self, data: dict):
        await self.transport.redis.hset(self.presence_key, self.transport.client_id, json.dumps(self._member(data)))
        await self.transport.redis.expire(self.presence_key, self.transport.presence_ttl)
        self._last_heartbeat = asyncio.get_running_loop().time()

    async def _heartbeat(self):
        """Keep our presence member alive while this listener runs."""
        if self._presence_data is None:
            return
        interval = self.transport.presence_member_ttl / 3
        if asyncio.get_running_loop().time() - self._last_heartbeat < interval:
            return
        data = self._presence_data
        try:
            await self._write_member(data)
            if self._presence_data is None:
                # left while the heartbeat was in flight
                await self.transport.redis.hdel(self.presence_key, self.transport.client_id)
        except RedisError as e:
            logger.warning(f"Presence heartbeat failed on {self.name}: {e}")

    async def presence_update(self, data: dict) -> str:
        """Replace this client's presence member; returns "enter" or "update"."""
        await self.transport.authorize(self.name, "presence")
        client_id = self.transport.client_id
        try:
            previous = await self.transport.redis.hget(self.presence_key, client_id)
            await self._write_member(data)
            action = "update" if _is_live(previous) else "enter"
            self._presence_data = data
            await self.transport.redis.publish(
                self.name, json.dumps(self.transport.envelope("presence", action=action, data=data))
            )
        except RedisError as e:
            raise TransportError(f"Failed to update presence on {self.name}: {e}") from e
        logger.debug(f"Presence {action} for {client_id} on channel {self.name}")
        return action

    async def presence_leave(self) -> bool:
        await self.transport.authorize(self.name, "presence")
        client_id = self.transport.client_id
        self._presence_data = None
        try:
            removed = await self.transport.redis.hdel(self.presence_key, client_id)
            if removed:
                await self.transport.redis.publish(
                    self.name, json.dumps(self.transport.envelope("presence", action="leave", data={}))
                )
        except RedisError as e:
            raise TransportError(f"Failed to leave presence on {self.name}: {e}") from e
        logger.debug(f"Presence leave for {client_id} on channel {self.name}: removed={removed}")
        return bool(removed)

    async def presence_get(self) -> List[dict]:
        """Live members only; members whose heartbeat lapsed are removed."""
        await self.transport.authorize(self.name, "presence")
        try:
            raw_members = await self.transport.redis.hgetall(self.presence_key)
        except RedisError as e:
            raise TransportError(f"Failed to read presence on {self.name}: {e}") from e
        members = []
        stale = []
        for client_id, value in raw_members.items():
            try:
                member = json.loads(value)
            except (json.JSONDecodeError, TypeError):
                logger.warning(f"Dropping unreadable presence member {client_id} on {self.name}")
                continue
            if _is_live(member):
                members.append(member)
            else:
                stale.append(client_id)
        if stale:
            logger.info(f"Pruning stale presence members {stale} on {self.name}")
            try:
                await self.transport.redis.hdel(self.presence_key, *stale)
            except RedisError as e:
                logger.warning(f"Could not prune presence on {self.name}: {e}")
        return members

    async def detach(self):
        if self._task is not None:
            if self._task is not asyncio.current_task():
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.error(f"Listener task for channel {self.name} ended with an error: {e}")
            self._task = None
        if self._presence_data is not None:
            try:
                await self.presence_leave()
            except TransportError as e:
                logger.warning(f"Could not leave presence on {self.name} while detaching: {e}")
            self._presence_data = None
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self.name)
                await self._pubsub.aclose()
                logger.debug(f"Closed pub/sub connection for channel: {self.name}")
            except RedisError as e:
                logger.error(f"Error closing pub/sub for channel {self.name}: {e}")
            finally:
                self._pubsub = None
        self.attached = False


class Channels:
    """Reference-counted registry of channel handles, one per name."""

    def __init__(self, transport: "TransportClient"):
        self._transport = transport
        self._handles: Dict[str, ChannelHandle] = {}

    def get(self, name: str) -> ChannelHandle:
        handle = self._handles.get(name)
        if handle is None:
            handle = ChannelHandle(self._transport, name)
            self._handles[name] = handle
        handle._refs += 1
        return handle

    async def release(self, name: str):
        handle = self._handles.get(name)
        if handle is None:
            return
        handle._refs -= 1
        if handle._refs <= 0:
            del self._handles[name]
            await handle.detach()
            logger.debug(f"Released channel {name}")

    async def release_all(self):
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            await handle.detach()

    def __contains__(self, name) -> bool:
        return name in self._handles

    def __len__(self) -> int:
        return len(self._handles)


class TransportClient:
    """
    One realtime connection for one player session.

    `auth_callback` fetches a fresh realtime token from the trusted token
    endpoint; `verifier` turns it into `TokenDetails`. The token is refreshed
    whenever it is about to expire.
    """

    def __init__(
        self,
        auth_callback: AuthCallback,
        verifier: TokenVerifier,
        redis_factory: Callable[[], aioredis.Redis] = default_redis_factory,
        poll_timeout: float = 1.0,
        presence_ttl: int = PRESENCE_TTL_SECONDS,
        presence_member_ttl: float = PRESENCE_MEMBER_TTL_SECONDS,
        token_refresh_margin: float = TOKEN_REFRESH_MARGIN_SECONDS,
    ):
        self.auth_callback = auth_callback
        self.verifier = verifier
        self.redis_factory = redis_factory
        self.poll_timeout = poll_timeout
        self.presence_ttl = presence_ttl
        self.presence_member_ttl = presence_member_ttl
        self.token_refresh_margin = token_refresh_margin
        self.state = ConnectionState.INITIALIZED
        self.redis: Optional[aioredis.Redis] = None
        self.token: Optional[TokenDetails] = None
        self.connection_id = uuid.uuid4().hex
        self.channels = Channels(self)
        self._listeners: Dict[ConnectionState, List[Callable]] = defaultdict(list)
        self._init_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def client_id(self) -> Optional[str]:
        return self.token.client_id if self.token else None

    def on(self, state: ConnectionState, listener: Callable[[ConnectionStateChange], None]):
        self._listeners[ConnectionState(state)].append(listener)

    def off(self, state: Optional[ConnectionState] = None, listener: Optional[Callable] = None):
        if state is None:
            self._listeners.clear()
            return
        listeners = self._listeners.get(ConnectionState(state), [])
        if listener is None:
            listeners.clear()
        elif listener in listeners:
            listeners.remove(listener)

    def _set_state(self, state: ConnectionState, reason: Optional[str] = None):
        if state == self.state:
            return
        change = ConnectionStateChange(previous=self.state, current=state, reason=reason)
        self.state = state
        if state == ConnectionState.FAILED:
            logger.error(f"Realtime connection {self.connection_id} failed: {reason}")
        else:
            logger.info(f"Realtime connection {self.connection_id} is {state.value}")
        for listener in list(self._listeners.get(state, [])):
            try:
                listener(change)
            except Exception as e:
                logger.error(f"Connection state listener failed: {e}", exc_info=True)

    def _mark_connected(self):
        if self.state == ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.CONNECTED)

    async def initialize(self):
        """Open the connection once; later calls are no-ops."""
        async with self._init_lock:
            if self.state in (ConnectionState.CONNECTED, ConnectionState.DISCONNECTED):
                return
            if self.state == ConnectionState.CLOSED:
                raise TransportError("Transport client has been closed")
            self._set_state(ConnectionState.CONNECTING)
            try:
                await self.refresh_token()
                if self.redis is None:
                    self.redis = self.redis_factory()
                await self.redis.ping()
            except AuthError as e:
                self._set_state(ConnectionState.FAILED, reason=str(e))
                raise
            except (RedisError, OSError) as e:
                self._set_state(ConnectionState.FAILED, reason=str(e))
                raise TransportError(f"Could not connect to realtime backend: {e}") from e
            self._set_state(ConnectionState.CONNECTED)

    async def refresh_token(self):
        token = await _maybe_await(self.auth_callback())
        details = self.verifier(token)
        if self.token is not None and details.client_id != self.token.client_id:
            raise AuthError("Refreshed token belongs to a different client")
        self.token = details
        logger.debug(f"Realtime token for {details.client_id} valid until {details.expires_at.isoformat()}")

    async def authorize(self, channel: str, operation: str):
        if self.state not in (ConnectionState.CONNECTED, ConnectionState.DISCONNECTED):
            raise TransportError(f"Transport client is {self.state.value}")
        if self.token is None or self.token.expires_within(self.token_refresh_margin):
            await self.refresh_token()
        if not self.token.allows(channel, operation):
            raise AuthError(f"Token does not allow {operation} on {channel}")

    def envelope(self, kind: str, **fields) -> dict:
        envelope = {
            "kind": kind,
            "client_id": self.client_id,
            "connection_id": self.connection_id,
            "timestamp": now_ms(),
        }
        envelope.update(fields)
        return envelope

    async def close(self):
        if self.state == ConnectionState.CLOSED:
            return
        await self.channels.release_all()
        if self.redis is not None:
            try:
                await self.redis.aclose()
            except RedisError as e:
                logger.error(f"Error closing realtime connection {self.connection_id}: {e}")
            self.redis = None
        self._set_state(ConnectionState.CLOSED)
        self.off()
