import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from errors import AuthError, TransportError
from tokens import RealtimeTokenIssuer
from transport import ConnectionState, TransportClient


class CountingAuth:
    def __init__(self, issuer, client_id):
        self.issuer = issuer
        self.client_id = client_id
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return self.issuer.issue_realtime(self.client_id).token


class UnreachableRedis:
    async def ping(self):
        raise RedisConnectionError("Connection refused")

    async def aclose(self):
        pass


async def test_initialize_is_idempotent(issuer, redis_factory):
    auth = CountingAuth(issuer, "player-1")
    transport = TransportClient(auth, issuer.verify, redis_factory=redis_factory)
    await asyncio.gather(transport.initialize(), transport.initialize())
    await transport.initialize()
    assert auth.calls == 1
    assert transport.connected
    assert transport.client_id == "player-1"
    await transport.close()


async def test_connection_state_listeners(issuer, redis_factory):
    transport = TransportClient(lambda: issuer.issue_realtime("player-1").token, issuer.verify, redis_factory=redis_factory)
    changes = []
    transport.on(ConnectionState.CONNECTED, changes.append)
    transport.on(ConnectionState.CLOSED, changes.append)
    await transport.initialize()
    await transport.close()
    assert [(c.previous, c.current) for c in changes] == [
        (ConnectionState.CONNECTING, ConnectionState.CONNECTED),
        (ConnectionState.CONNECTED, ConnectionState.CLOSED),
    ]


async def test_bad_token_fails_the_connection(issuer, redis_factory):
    transport = TransportClient(lambda: "not-a-token", issuer.verify, redis_factory=redis_factory)
    with pytest.raises(AuthError):
        await transport.initialize()
    assert transport.state == ConnectionState.FAILED
    assert not transport.connected


async def test_unreachable_backend_fails_the_connection(issuer):
    transport = TransportClient(
        lambda: issuer.issue_realtime("player-1").token, issuer.verify, redis_factory=UnreachableRedis
    )
    with pytest.raises(TransportError):
        await transport.initialize()
    assert transport.state == ConnectionState.FAILED


async def test_closed_client_cannot_reconnect(make_transport):
    transport = make_transport("player-1")
    await transport.initialize()
    await transport.close()
    with pytest.raises(TransportError):
        await transport.initialize()


async def test_operations_before_initialize_are_rejected(make_transport):
    transport = make_transport("player-1")
    with pytest.raises(TransportError):
        await transport.authorize("room:AB12CD", "publish")


async def test_expiring_token_is_refreshed(redis_factory):
    issuer = RealtimeTokenIssuer("secret-for-tests", realtime_ttl=30)
    auth = CountingAuth(issuer, "player-1")
    transport = TransportClient(auth, issuer.verify, redis_factory=redis_factory, poll_timeout=0.05)
    await transport.initialize()
    await transport.authorize("room:AB12CD", "subscribe")
    assert auth.calls == 2
    await transport.close()


async def test_refreshed_token_must_keep_the_client_id(issuer, redis_factory):
    client_ids = iter(["player-1", "player-2"])
    transport = TransportClient(
        lambda: issuer.issue_realtime(next(client_ids)).token, issuer.verify, redis_factory=redis_factory
    )
    await transport.initialize()
    with pytest.raises(AuthError):
        await transport.refresh_token()
    await transport.close()


async def test_capability_is_enforced(redis_factory):
    issuer = RealtimeTokenIssuer("secret-for-tests", capability={"lobby:*": ["subscribe"]})
    transport = TransportClient(lambda: issuer.issue_realtime("player-1").token, issuer.verify, redis_factory=redis_factory)
    await transport.initialize()
    handle = transport.channels.get("room:AB12CD")
    with pytest.raises(AuthError):
        await handle.attach()
    assert not handle.attached
    await transport.close()


async def test_publish_reaches_every_subscriber(make_transport, eventually):
    received = []
    first, second = make_transport("player-1"), make_transport("player-2")
    for transport in (first, second):
        await transport.initialize()
        handle = transport.channels.get("room:AB12CD")
        handle.add_listener(received.append)
        await handle.attach()

    receivers = await first.channels.get("room:AB12CD").publish("player-left", {"playerId": "player-9"})
    assert receivers == 2
    assert await eventually(lambda: len(received) == 2)
    for envelope in received:
        assert envelope["kind"] == "message"
        assert envelope["name"] == "player-left"
        assert envelope["data"] == {"playerId": "player-9"}
        assert envelope["client_id"] == "player-1"
        assert envelope["connection_id"] == first.connection_id


async def test_removed_listener_stops_receiving(make_transport, eventually):
    transport = make_transport("player-1")
    await transport.initialize()
    handle = transport.channels.get("room:AB12CD")
    kept, dropped = [], []
    handle.add_listener(kept.append)
    remove = handle.add_listener(dropped.append)
    await handle.attach()
    remove()
    await handle.publish("player-left", {"playerId": "player-9"})
    assert await eventually(lambda: len(kept) == 1)
    assert dropped == []


async def test_presence_enter_update_leave(make_transport):
    transport = make_transport("player-1")
    await transport.initialize()
    handle = transport.channels.get("room:AB12CD")
    await handle.attach()

    assert await handle.presence_update({"status": "online"}) == "enter"
    assert await handle.presence_update({"status": "away"}) == "update"
    members = await handle.presence_get()
    assert [(m["client_id"], m["data"]) for m in members] == [("player-1", {"status": "away"})]

    assert await handle.presence_leave() is True
    assert await handle.presence_leave() is False
    assert await handle.presence_get() == []


async def test_channels_are_reference_counted(make_transport):
    transport = make_transport("player-1")
    await transport.initialize()
    first = transport.channels.get("room:AB12CD")
    second = transport.channels.get("room:AB12CD")
    assert first is second
    await first.attach()

    await transport.channels.release("room:AB12CD")
    assert "room:AB12CD" in transport.channels
    assert first.attached
    await transport.channels.release("room:AB12CD")
    assert "room:AB12CD" not in transport.channels
    assert not first.attached


async def test_closing_the_transport_leaves_presence(make_transport):
    owner = make_transport("player-1")
    observer = make_transport("player-2")
    await owner.initialize()
    await observer.initialize()
    owner_handle = owner.channels.get("room:AB12CD")
    observer_handle = observer.channels.get("room:AB12CD")
    await owner_handle.attach()
    await observer_handle.attach()
    await owner_handle.presence_update({"status": "online"})

    await owner.close()

    assert await observer_handle.presence_get() == []


async def test_heartbeat_keeps_presence_alive(make_transport):
    owner = make_transport("player-1", presence_member_ttl=0.3)
    observer = make_transport("player-2")
    await owner.initialize()
    await observer.initialize()
    handle = owner.channels.get("room:AB12CD")
    await handle.attach()
    await handle.presence_update({"status": "online"})

    await asyncio.sleep(0.8)
    members = await observer.channels.get("room:AB12CD").presence_get()
    assert [m["client_id"] for m in members] == ["player-1"]


async def test_lapsed_presence_is_pruned_and_reentry_is_an_enter(make_transport):
    crashed = make_transport("player-1", presence_member_ttl=0.2)
    observer = make_transport("player-2")
    await crashed.initialize()
    await observer.initialize()
    handle = crashed.channels.get("room:AB12CD")
    await handle.attach()
    await handle.presence_update({"status": "online"})
    # no more heartbeats from this connection
    handle._task.cancel()

    await asyncio.sleep(0.4)
    observer_handle = observer.channels.get("room:AB12CD")
    assert await observer_handle.presence_get() == []

    rejoined = make_transport("player-1")
    await rejoined.initialize()
    fresh = rejoined.channels.get("room:AB12CD")
    await fresh.attach()
    assert await fresh.presence_update({"status": "online"}) == "enter"


async def test_listener_failure_is_reported(make_transport, eventually, monkeypatch):
    transport = make_transport("player-1")
    await transport.initialize()
    handle = transport.channels.get("room:AB12CD")
    await handle.attach()
    failures = []
    handle.on_failure(failures.append)

    async def broken_get_message(*args, **kwargs):
        raise ResponseError("unexpected reply")

    monkeypatch.setattr(handle._pubsub, "get_message", broken_get_message)

    assert await eventually(lambda: failures == ["unexpected reply"])
    assert not handle.attached
    assert handle.failure == "unexpected reply"
    await transport.channels.release("room:AB12CD")
    assert "room:AB12CD" not in transport.channels
