import asyncio

import pytest

import backend
from backend import ROOM_CODE_ALPHABET, GameStore
from errors import ConflictError, GatewayError, NotFoundError
from phases import Phase
from redis_keys import REDIS_ROOM_CODE_KEY, REDIS_ROOM_KEY, REDIS_ROOM_PLAYERS_KEY
from schemas.game import RoundResults


async def make_room(store, *names):
    """Create a room hosted by the first name and join the rest; player ids are the lowercased names."""
    host, *guests = names
    room = await store.create_room(host.lower(), host)
    for name in guests:
        await store.join_room(room.room_code, name.lower(), name)
    return room


async def play_to_caption_voting(store, room, captions):
    """Drive a room from the lobby to caption voting; `captions` maps player id to caption text."""
    await store.start_game(room.id)
    await store.propose_meme(room.id, room_host(captions), "https://media.example/drake.gif", "Drake")
    await store.transition_phase(room.id, Phase.MEME_SELECTION, Phase.MEME_VOTING)
    await store.tally_meme_votes(room.id, 1)
    by_player = {}
    for player_id, text in captions.items():
        by_player[player_id] = await store.submit_caption(room.id, player_id, text)
    await store.transition_phase(room.id, Phase.CAPTION_ENTRY, Phase.CAPTION_VOTING)
    return by_player


def room_host(captions):
    return next(iter(captions))


async def scores(store, room):
    return {p.id: p.current_score for p in await store.get_players(room.id)}


class TestRooms:
    async def test_create_room(self, store):
        room = await store.create_room("alice", "Alice")
        assert room.status == Phase.LOBBY
        assert room.current_round_number == 0
        assert len(room.room_code) == 6
        assert set(room.room_code) <= set(ROOM_CODE_ALPHABET)
        players = await store.get_players(room.id)
        assert [(p.id, p.username, p.is_ready) for p in players] == [("alice", "Alice", False)]

    async def test_room_code_collisions_give_up(self, redis_client, monkeypatch):
        monkeypatch.setattr(backend, "generate_room_code", lambda length=6: "AAAAAA")
        store = GameStore(redis_client, code_attempts=3)
        await store.create_room("alice", "Alice")
        with pytest.raises(GatewayError, match="unique room code"):
            await store.create_room("bob", "Bob")

    async def test_join_is_case_insensitive(self, store):
        room = await store.create_room("alice", "Alice")
        joined = await store.join_room(room.room_code.lower(), "bob", "Bob")
        assert joined.id == room.id
        assert {p.id for p in await store.get_players(room.id)} == {"alice", "bob"}

    async def test_join_unknown_room(self, store):
        with pytest.raises(NotFoundError):
            await store.join_room("ZZZZZZ", "bob", "Bob")

    async def test_join_after_start(self, store):
        room = await make_room(store, "Alice")
        await store.start_game(room.id)
        with pytest.raises(NotFoundError):
            await store.join_room(room.room_code, "bob", "Bob")

    async def test_blank_username(self, store):
        room = await store.create_room("alice", "Alice")
        with pytest.raises(GatewayError):
            await store.join_room(room.room_code, "bob", "   ")

    async def test_joining_another_room_leaves_the_first(self, store):
        first = await make_room(store, "Alice", "Bob")
        second = await make_room(store, "Carol")
        await store.join_room(second.room_code, "bob", "Bob")
        assert [p.id for p in await store.get_players(first.id)] == ["alice"]
        assert {p.id for p in await store.get_players(second.id)} == {"bob", "carol"}

    async def test_last_player_leaving_deletes_the_room(self, store):
        room = await make_room(store, "Alice", "Bob")
        assert await store.leave_room(room.id, "bob") is False
        assert await store.leave_room(room.id, "alice") is True
        assert await store.get_room(room.id) is None
        assert await store.get_room_by_code(room.room_code) is None

    async def test_update_player(self, store):
        room = await make_room(store, "Alice")
        player = await store.update_player("alice", is_ready=True, avatar_src="/avatars/cat.png", username=" Ally ")
        assert (player.is_ready, player.avatar_src, player.username) == (True, "/avatars/cat.png", "Ally")
        stored = await store.get_player("alice")
        assert stored == player
        assert stored.room_id == room.id

    async def test_update_unknown_player(self, store):
        with pytest.raises(NotFoundError):
            await store.update_player("ghost", is_ready=True)


class TestPhases:
    async def test_start_game_once(self, store):
        room = await make_room(store, "Alice", "Bob")
        assert await store.start_game(room.id) is True
        assert await store.start_game(room.id) is False
        room = await store.get_room(room.id)
        assert (room.status, room.current_round_number) == (Phase.MEME_SELECTION, 1)

    async def test_stale_transition_conflicts(self, store):
        room = await make_room(store, "Alice")
        await store.start_game(room.id)
        await store.transition_phase(room.id, Phase.MEME_SELECTION, Phase.MEME_VOTING)
        with pytest.raises(ConflictError):
            await store.transition_phase(room.id, Phase.MEME_SELECTION, Phase.MEME_VOTING)

    async def test_concurrent_transitions_have_one_winner(self, store):
        room = await make_room(store, "Alice")
        await store.start_game(room.id)
        outcomes = await asyncio.gather(
            store.transition_phase(room.id, Phase.MEME_SELECTION, Phase.MEME_VOTING),
            store.transition_phase(room.id, Phase.MEME_SELECTION, Phase.MEME_VOTING),
            return_exceptions=True,
        )
        assert sum(isinstance(o, ConflictError) for o in outcomes) == 1

    async def test_phase_writes_refresh_room_key_ttls(self, store, redis_client):
        room = await make_room(store, "Alice", "Bob")
        keys = [
            REDIS_ROOM_KEY.format(room_id=room.id),
            REDIS_ROOM_CODE_KEY.format(code=room.room_code),
            REDIS_ROOM_PLAYERS_KEY.format(room_id=room.id),
        ]
        for key in keys:
            await redis_client.expire(key, 5)

        await store.start_game(room.id)

        for key in keys:
            assert await redis_client.ttl(key) > 5

    async def test_advance_to_next_round(self, store):
        room = await make_room(store, "Alice", "Bob")
        await play_to_caption_voting(store, room, {"alice": "one", "bob": "two"})
        await store.tally_caption_votes(room.id, 1)

        assert await store.advance_to_next_round(room.id, 1) == Phase.MEME_SELECTION
        with pytest.raises(ConflictError):
            await store.advance_to_next_round(room.id, 1)
        room = await store.get_room(room.id)
        assert (room.status, room.current_round_number) == (Phase.MEME_SELECTION, 2)

    async def test_last_round_goes_to_final_results(self, redis_client):
        store = GameStore(redis_client, total_rounds=1)
        room = await make_room(store, "Alice", "Bob")
        await play_to_caption_voting(store, room, {"alice": "one", "bob": "two"})
        await store.tally_caption_votes(room.id, 1)
        assert await store.advance_to_next_round(room.id, 1) == Phase.FINAL_RESULTS

    async def test_reset_game(self, redis_client):
        store = GameStore(redis_client, total_rounds=1)
        room = await make_room(store, "Alice", "Bob")
        await store.update_player("alice", is_ready=True)
        captions = await play_to_caption_voting(store, room, {"alice": "one", "bob": "two"})
        await store.cast_caption_vote(room.id, "bob", captions["alice"].id)
        await store.tally_caption_votes(room.id, 1)
        await store.advance_to_next_round(room.id, 1)

        reset = await store.reset_game(room.id, "bob")
        assert (reset.status, reset.current_round_number) == (Phase.LOBBY, 0)
        players = await store.get_players(room.id)
        assert all(p.current_score == 0 and not p.is_ready for p in players)
        with pytest.raises(ConflictError):
            await store.reset_game(room.id, "alice")


class TestMemes:
    async def test_propose_requires_membership(self, store):
        room = await make_room(store, "Alice")
        await store.start_game(room.id)
        with pytest.raises(GatewayError) as excinfo:
            await store.propose_meme(room.id, "mallory", "https://media.example/x.gif")
        assert excinfo.value.code == "not_member"

    async def test_propose_in_wrong_phase(self, store):
        room = await make_room(store, "Alice")
        with pytest.raises(GatewayError) as excinfo:
            await store.propose_meme(room.id, "alice", "https://media.example/x.gif")
        assert excinfo.value.code == "wrong_phase"

    async def test_reproposing_replaces_the_candidate(self, store):
        room = await make_room(store, "Alice")
        await store.start_game(room.id)
        await store.propose_meme(room.id, "alice", "https://media.example/a.gif")
        second = await store.propose_meme(room.id, "alice", "https://media.example/b.gif")
        assert await store.get_meme_candidates(room.id, 1) == [second]

    async def test_meme_votes(self, store):
        room = await make_room(store, "Alice", "Bob", "Carol")
        await store.start_game(room.id)
        a = await store.propose_meme(room.id, "alice", "https://media.example/a.gif", "A")
        b = await store.propose_meme(room.id, "bob", "https://media.example/b.gif", "B")
        await store.transition_phase(room.id, Phase.MEME_SELECTION, Phase.MEME_VOTING)

        await store.cast_meme_vote(room.id, "alice", b.id)
        await store.cast_meme_vote(room.id, "carol", b.id)
        await store.cast_meme_vote(room.id, "bob", a.id)
        with pytest.raises(ConflictError):
            await store.cast_meme_vote(room.id, "bob", b.id)
        with pytest.raises(GatewayError):
            await store.cast_meme_vote(room.id, "carol", "no-such-candidate")

        winner = await store.tally_meme_votes(room.id, 1)
        assert winner == b
        assert (await store.get_room(room.id)).status == Phase.CAPTION_ENTRY
        with pytest.raises(ConflictError):
            await store.tally_meme_votes(room.id, 1)

    async def test_tally_in_wrong_phase_can_be_retried(self, store):
        room = await make_room(store, "Alice")
        await store.start_game(room.id)
        with pytest.raises(GatewayError) as excinfo:
            await store.tally_meme_votes(room.id, 1)
        assert excinfo.value.code == "wrong_phase"
        await store.transition_phase(room.id, Phase.MEME_SELECTION, Phase.MEME_VOTING)
        assert await store.tally_meme_votes(room.id, 1) is None


class TestCaptions:
    async def test_caption_validation(self, store):
        room = await make_room(store, "Alice", "Bob")
        await store.start_game(room.id)
        await store.transition_phase(room.id, Phase.MEME_SELECTION, Phase.MEME_VOTING)
        await store.tally_meme_votes(room.id, 1)
        for text, x, y in [("", 50, 50), ("x" * 201, 50, 50), ("fine", 101, 50), ("fine", 50, -1)]:
            with pytest.raises(GatewayError):
                await store.submit_caption(room.id, "alice", text, x, y)
        caption = await store.submit_caption(room.id, "alice", "  when the build passes  ", 10, 90)
        assert (caption.text, caption.position_x, caption.position_y) == ("when the build passes", 10, 90)
        with pytest.raises(ConflictError):
            await store.submit_caption(room.id, "alice", "again")

    async def test_caption_votes(self, store):
        room = await make_room(store, "Alice", "Bob")
        captions = await play_to_caption_voting(store, room, {"alice": "one", "bob": "two"})
        with pytest.raises(GatewayError, match="own caption"):
            await store.cast_caption_vote(room.id, "alice", captions["alice"].id)
        await store.cast_caption_vote(room.id, "alice", captions["bob"].id)
        with pytest.raises(ConflictError):
            await store.cast_caption_vote(room.id, "alice", captions["bob"].id)

    async def test_single_winner_takes_100(self, store):
        room = await make_room(store, "Alice", "Bob", "Carol")
        captions = await play_to_caption_voting(store, room, {"alice": "one", "bob": "two", "carol": "three"})
        await store.cast_caption_vote(room.id, "bob", captions["alice"].id)
        await store.cast_caption_vote(room.id, "carol", captions["alice"].id)
        await store.cast_caption_vote(room.id, "alice", captions["bob"].id)

        results = await store.tally_caption_votes(room.id, 1)
        assert results.winning_caption_id == captions["alice"].id
        assert results.points_per_winner == 100
        assert results.meme_url == "https://media.example/drake.gif"
        assert [c.votes for c in results.captions] == [2, 1, 0]
        assert results.leaderboard[0].id == "alice"
        assert await scores(store, room) == {"alice": 100, "bob": 0, "carol": 0}
        assert (await store.get_room(room.id)).status == Phase.ROUND_RESULTS

    async def test_tied_winners_split_the_points(self, store):
        room = await make_room(store, "Alice", "Bob", "Carol")
        captions = await play_to_caption_voting(store, room, {"alice": "one", "bob": "two", "carol": "three"})
        await store.cast_caption_vote(room.id, "carol", captions["alice"].id)
        await store.cast_caption_vote(room.id, "alice", captions["bob"].id)
        await store.cast_caption_vote(room.id, "bob", captions["carol"].id)

        results = await store.tally_caption_votes(room.id, 1)
        assert results.points_per_winner == 33
        assert results.winning_caption_id in {c.id for c in captions.values()}
        assert all(c.is_winner for c in results.captions)
        assert await scores(store, room) == {"alice": 33, "bob": 33, "carol": 33}

    async def test_no_votes_awards_nothing(self, store):
        room = await make_room(store, "Alice", "Bob")
        await play_to_caption_voting(store, room, {"alice": "one", "bob": "two"})
        results = await store.tally_caption_votes(room.id, 1)
        assert results.winning_caption_id is None
        assert results.points_per_winner == 0
        assert await scores(store, room) == {"alice": 0, "bob": 0}

    async def test_concurrent_tallies_award_once(self, store):
        room = await make_room(store, "Alice", "Bob")
        captions = await play_to_caption_voting(store, room, {"alice": "one", "bob": "two"})
        await store.cast_caption_vote(room.id, "bob", captions["alice"].id)

        outcomes = await asyncio.gather(
            store.tally_caption_votes(room.id, 1),
            store.tally_caption_votes(room.id, 1),
            return_exceptions=True,
        )
        assert sorted(type(o).__name__ for o in outcomes) == ["ConflictError", "RoundResults"]
        assert await scores(store, room) == {"alice": 100, "bob": 0}

    async def test_results_only_after_tally(self, store):
        room = await make_room(store, "Alice", "Bob")
        await play_to_caption_voting(store, room, {"alice": "one", "bob": "two"})
        assert await store.get_round_results(room.id, 1) is None
        await store.tally_caption_votes(room.id, 1)
        assert isinstance(await store.get_round_results(room.id, 1), RoundResults)

    async def test_round_progress(self, store):
        room = await make_room(store, "Alice", "Bob")
        assert await store.round_progress(room.id) is None
        captions = await play_to_caption_voting(store, room, {"alice": "one", "bob": "two"})
        await store.cast_caption_vote(room.id, "bob", captions["alice"].id)
        progress = await store.round_progress(room.id)
        assert progress.round_number == 1
        assert progress.proposed == ["alice"]
        assert sorted(progress.captioned) == ["alice", "bob"]
        assert progress.caption_voted == ["bob"]
