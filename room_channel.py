import inspect
from collections import defaultdict
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from errors import ChannelNotAttachedError, MalformedPayloadError, TransportError
from events import (
    ChannelMessage,
    EventPayload,
    PlayerJoined,
    RoomEventKind,
    dump_payload,
    parse_payload,
    to_kind,
)
from logging_config import get_logger
from presence import PresenceMember, PresenceRecord, PresenceSet
from redis_keys import REDIS_ROOM_CHANNEL
from transport import ConnectionState, ConnectionStateChange, TransportClient

logger = get_logger(__name__)


class ChannelState(str, Enum):
    INITIALIZED = "initialized"
    ATTACHING = "attaching"
    ATTACHED = "attached"
    DETACHED = "detached"
    FAILED = "failed"


class _Subscription:
    def __init__(self, callback: Callable, with_message: bool):
        self.callback = callback
        self.with_message = with_message


def channel_name(room_code: str) -> str:
    return REDIS_ROOM_CHANNEL.format(code=room_code.strip().upper())


class RoomChannel:
    """
    Typed publish / subscribe / presence for one room, on top of a transport
    channel handle.
    """

    def __init__(self, transport: TransportClient, room_code: str):
        self.transport = transport
        self.room_code = room_code.strip().upper()
        self.name = channel_name(self.room_code)
        self.state = ChannelState.INITIALIZED
        self.members = PresenceSet()
        self._handle = None
        self._remove_listener = None
        self._remove_failure_listener = None
        self._was_attached = False
        self._subscribers: Dict[RoomEventKind, List[_Subscription]] = defaultdict(list)
        self._presence_listeners: List[Callable[[PresenceSet], None]] = []
        self._state_listeners: List[Callable[[ChannelState], None]] = []
        self._connection_listeners = []

    @property
    def is_attached(self) -> bool:
        return self.state == ChannelState.ATTACHED

    def _set_state(self, state: ChannelState, reason: Optional[str] = None):
        if state == self.state:
            return
        self.state = state
        logger.debug(f"Channel {self.name} is {state.value}" + (f": {reason}" if reason else ""))
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Channel state listener failed on {self.name}: {e}", exc_info=True)

    def on_state_change(self, listener: Callable[[ChannelState], None]) -> Callable[[], None]:
        self._state_listeners.append(listener)
        return lambda: self._state_listeners.remove(listener) if listener in self._state_listeners else None

    def on_presence(self, listener: Callable[[PresenceSet], None]) -> Callable[[], None]:
        self._presence_listeners.append(listener)
        return lambda: self._presence_listeners.remove(listener) if listener in self._presence_listeners else None

    def _follow_connection(self):
        def on_disconnected(change: ConnectionStateChange):
            if self.state == ChannelState.ATTACHED:
                self._set_state(ChannelState.DETACHED, reason=change.reason)

        def on_connected(change: ConnectionStateChange):
            if self._was_attached and self._handle is not None and self._handle.attached:
                self._set_state(ChannelState.ATTACHED)

        def on_failed(change: ConnectionStateChange):
            self._set_state(ChannelState.FAILED, reason=change.reason)

        def on_closed(change: ConnectionStateChange):
            self._set_state(ChannelState.DETACHED, reason="connection closed")

        self._connection_listeners = [
            (ConnectionState.DISCONNECTED, on_disconnected),
            (ConnectionState.CONNECTED, on_connected),
            (ConnectionState.FAILED, on_failed),
            (ConnectionState.CLOSED, on_closed),
        ]
        for state, listener in self._connection_listeners:
            self.transport.on(state, listener)

    async def attach(self):
        if self.state == ChannelState.ATTACHED:
            return
        self._set_state(ChannelState.ATTACHING)
        try:
            await self.transport.initialize()
            if self._handle is None:
                self._handle = self.transport.channels.get(self.name)
                self._remove_listener = self._handle.add_listener(self._on_envelope)
                self._remove_failure_listener = self._handle.on_failure(self._on_handle_failure)
                self._follow_connection()
            await self._handle.attach()
        except TransportError as e:
            logger.error(f"Failed to attach to channel {self.name}: {e}")
            self._set_state(ChannelState.FAILED, reason=str(e))
            raise
        self._was_attached = True
        self._set_state(ChannelState.ATTACHED)
        await self._refresh_members()

    def _on_handle_failure(self, reason: str):
        self._set_state(ChannelState.FAILED, reason=reason)

    def _require_attached(self):
        if not self.is_attached:
            raise ChannelNotAttachedError(f"Channel {self.name} is {self.state.value}, not attached")

    async def publish(self, kind: Union[RoomEventKind, str], payload: Union[EventPayload, dict]):
        self._require_attached()
        kind = to_kind(kind)
        payload = parse_payload(kind, payload)
        await self._handle.publish(kind.value, dump_payload(payload))

    def subscribe(
        self, kind: Union[RoomEventKind, str], callback: Callable, with_message: bool = False
    ) -> Callable[[], None]:
        """
        Register `callback` for one event kind and return its unsubscribe function.

        The callback gets the typed payload; with `with_message=True` it also
        gets the `ChannelMessage` carrying the sender's client id.
        """
        kind = to_kind(kind)
        subscription = _Subscription(callback, with_message)
        self._subscribers[kind].append(subscription)

        def unsubscribe():
            if subscription in self._subscribers[kind]:
                self._subscribers[kind].remove(subscription)

        return unsubscribe

    async def update_presence(self, record: Union[PresenceRecord, dict]):
        """Replace this member's whole presence record."""
        self._require_attached()
        if not isinstance(record, PresenceRecord):
            record = PresenceRecord.from_wire(record)
        await self._handle.presence_update(record.to_wire())

    async def leave_presence(self):
        self._require_attached()
        await self._handle.presence_leave()

    async def _on_envelope(self, envelope: dict):
        kind = envelope.get("kind")
        if kind == "message":
            await self._on_message(envelope)
        elif kind == "presence":
            await self._on_presence(envelope)
        else:
            logger.warning(f"Dropping envelope of unknown kind {kind!r} on {self.name}")

    async def _on_message(self, envelope: dict):
        try:
            kind = to_kind(envelope.get("name"))
            payload = parse_payload(kind, envelope.get("data"))
        except MalformedPayloadError as e:
            logger.warning(f"Dropping malformed event from {envelope.get('client_id')} on {self.name}: {e}")
            return
        message = ChannelMessage(
            kind=kind,
            payload=payload,
            client_id=envelope.get("client_id"),
            connection_id=envelope.get("connection_id"),
            timestamp=envelope.get("timestamp"),
        )
        for subscription in list(self._subscribers.get(kind, [])):
            try:
                if subscription.with_message:
                    result = subscription.callback(payload, message)
                else:
                    result = subscription.callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Subscriber for {kind.value} on {self.name} failed: {e}", exc_info=True)

    async def _on_presence(self, envelope: dict):
        await self._refresh_members()
        if envelope.get("action") == "enter" and envelope.get("client_id") == self.transport.client_id:
            await self._announce_join(envelope)

    async def _refresh_members(self):
        try:
            raw_members = await self._handle.presence_get()
        except TransportError as e:
            logger.warning(f"Could not refresh presence on {self.name}: {e}")
            return
        members = []
        for raw in raw_members:
            try:
                members.append(PresenceMember.from_wire(raw))
            except MalformedPayloadError as e:
                logger.warning(f"Dropping malformed presence member on {self.name}: {e}")
        self.members = PresenceSet(members)
        for listener in list(self._presence_listeners):
            try:
                listener(self.members)
            except Exception as e:
                logger.error(f"Presence listener failed on {self.name}: {e}", exc_info=True)

    async def _announce_join(self, envelope: dict):
        """Turn our own presence entry into an explicit player-joined event."""
        client_id = envelope.get("client_id")
        try:
            record = PresenceRecord.from_wire(envelope.get("data"))
        except MalformedPayloadError as e:
            logger.warning(f"Dropping malformed presence record from {client_id} on {self.name}: {e}")
            return
        identity = record.identity()
        if identity is None:
            logger.warning(f"Presence entry from {client_id} on {self.name} carries no player identity")
            return
        player_id, player_name = identity
        try:
            await self.publish(
                RoomEventKind.PLAYER_JOINED,
                PlayerJoined(player_id=player_id, player_name=player_name, avatar_src=record.avatar_src),
            )
        except TransportError as e:
            logger.error(f"Could not announce {player_id} on {self.name}: {e}")

    async def close(self):
        """Leave presence (best effort) and give the channel handle back to the transport."""
        if self._handle is not None:
            if self._handle.attached:
                try:
                    await self._handle.presence_leave()
                except TransportError as e:
                    logger.warning(f"Could not leave presence on {self.name}: {e}")
            if self._remove_listener:
                self._remove_listener()
                self._remove_listener = None
            if self._remove_failure_listener:
                self._remove_failure_listener()
                self._remove_failure_listener = None
            for state, listener in self._connection_listeners:
                self.transport.off(state, listener)
            self._connection_listeners = []
            await self.transport.channels.release(self.name)
            self._handle = None
        self._subscribers.clear()
        self._presence_listeners.clear()
        self._was_attached = False
        self._set_state(ChannelState.DETACHED)
        self._state_listeners.clear()
