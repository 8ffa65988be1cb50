import asyncio

import fakeredis
import pytest
from fakeredis import aioredis as fake_aioredis

from backend import GameStore
from phases import PhaseTimings
from room_channel import RoomChannel
from session import RoomSession
from tokens import RealtimeTokenIssuer
from transport import TransportClient

TEST_SECRET = "test-secret"

SLOW = 30.0


@pytest.fixture
def fake_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_factory(fake_server):
    def factory():
        return fake_aioredis.FakeRedis(server=fake_server, decode_responses=True)

    return factory


@pytest.fixture
async def redis_client(redis_factory):
    client = redis_factory()
    yield client
    await client.aclose()


@pytest.fixture
def issuer():
    return RealtimeTokenIssuer(TEST_SECRET)


@pytest.fixture
def store(redis_client):
    return GameStore(redis_client)


@pytest.fixture
def eventually():
    async def wait(predicate, timeout=3.0, interval=0.02):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if predicate():
                return True
            await asyncio.sleep(interval)
        return predicate()

    return wait


@pytest.fixture
async def make_transport(issuer, redis_factory):
    transports = []

    def make(client_id, **kwargs):
        kwargs.setdefault("poll_timeout", 0.05)
        transport = TransportClient(
            auth_callback=lambda: issuer.issue_realtime(client_id).token,
            verifier=issuer.verify,
            redis_factory=redis_factory,
            **kwargs,
        )
        transports.append(transport)
        return transport

    yield make
    for transport in transports:
        await transport.close()


@pytest.fixture
async def make_channel(make_transport):
    channels = []

    async def make(client_id, room_code, attach=True):
        channel = RoomChannel(make_transport(client_id), room_code)
        if attach:
            await channel.attach()
        channels.append(channel)
        return channel

    yield make
    for channel in channels:
        await channel.close()


class Recorder:
    def __init__(self):
        self.navigations = []
        self.notifications = []

    def navigate(self, phase):
        self.navigations.append(phase)

    def notify(self, notification):
        self.notifications.append(notification)

    @property
    def errors(self):
        return [n for n in self.notifications if n.variant == "destructive"]


def _fast_timings(**overrides):
    values = dict(
        meme_selection=SLOW,
        meme_voting=SLOW,
        caption_entry=SLOW,
        caption_voting=SLOW,
        round_results=SLOW,
        poll_interval=0.05,
        start_countdown=0,
    )
    values.update(overrides)
    return PhaseTimings(**values)


@pytest.fixture
def fast_timings():
    return _fast_timings


@pytest.fixture
async def make_session(make_transport, store):
    sessions = []

    def make(room_code, player_id, timings=None, min_players=1):
        recorder = Recorder()
        session = RoomSession(
            room_code,
            player_id,
            gateway=store,
            channel=RoomChannel(make_transport(player_id), room_code),
            navigate=recorder.navigate,
            notify=recorder.notify,
            timings=timings or _fast_timings(),
            min_players=min_players,
        )
        session.recorder = recorder
        sessions.append(session)
        return session

    yield make
    for session in sessions:
        await session.unmount()


@pytest.fixture
def sample_payloads():
    """One valid wire payload per room event kind."""
    from events import RoomEventKind

    return {
        RoomEventKind.PLAYER_JOINED: {"playerId": "p1", "playerName": "Alice", "avatarSrc": "/avatars/cat.png"},
        RoomEventKind.PLAYER_LEFT: {"playerId": "p1"},
        RoomEventKind.PLAYER_READY_UPDATE: {"playerId": "p1", "isReady": True},
        RoomEventKind.PLAYER_AVATAR_CHANGED: {"playerId": "p1", "avatarSrc": "/avatars/dog.png"},
        RoomEventKind.PLAYER_NAME_UPDATE: {"playerId": "p1", "newName": "Alicia"},
        RoomEventKind.GAME_PHASE_CHANGED: {
            "phase": "caption-entry",
            "data": {"roundNumber": 2, "memeUrl": "https://media.example/drake.gif"},
        },
        RoomEventKind.MEME_SELECTED: {"playerId": "p1", "candidateId": "cand-1"},
        RoomEventKind.MEME_VOTE_CAST: {"voterPlayerId": "p2", "votedForCandidateId": "cand-1"},
        RoomEventKind.CAPTION_SUBMITTED: {"playerId": "p1", "captionId": "cap-1"},
        RoomEventKind.CAPTION_VOTE_CAST: {"voterPlayerId": "p2", "votedForCaptionId": "cap-1"},
    }
