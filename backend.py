import json
import random
import string
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from constants import (
    MAX_CAPTION_LENGTH,
    REDIS_DB,
    REDIS_HOST,
    REDIS_PASSWORD,
    REDIS_PORT,
    ROOM_CODE_LENGTH,
    ROOM_CODE_MAX_ATTEMPTS,
    ROOM_TTL_SECONDS,
    TOTAL_ROUNDS,
)
from errors import ConflictError, GatewayError, NotFoundError
from logging_config import get_logger
from phases import Phase, next_after_results
from redis_keys import (
    REDIS_PLAYER_KEY,
    REDIS_ROOM_CODE_KEY,
    REDIS_ROOM_KEY,
    REDIS_ROOM_PLAYERS_KEY,
    REDIS_ROUND_CAPTION_VOTES_KEY,
    REDIS_ROUND_CAPTIONS_KEY,
    REDIS_ROUND_KEY,
    REDIS_ROUND_MEME_VOTES_KEY,
    REDIS_ROUND_MEMES_KEY,
    REDIS_ROUND_TALLY_KEY,
)
from schemas.game import (
    Caption,
    CaptionResult,
    MemeCandidate,
    Player,
    Room,
    RoundProgress,
    RoundResults,
)

logger = get_logger(__name__)

ROOM_CODE_ALPHABET = string.digits + string.ascii_uppercase
ROUND_SUBKEYS = (
    REDIS_ROUND_MEMES_KEY,
    REDIS_ROUND_MEME_VOTES_KEY,
    REDIS_ROUND_CAPTIONS_KEY,
    REDIS_ROUND_CAPTION_VOTES_KEY,
)


def create_redis_client() -> aioredis.Redis:
    logger.info(f"Creating Redis client for {REDIS_HOST}:{REDIS_PORT}")
    return aioredis.Redis(
        host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, db=REDIS_DB, decode_responses=True
    )


def generate_room_code(length: int = ROOM_CODE_LENGTH) -> str:
    return "".join(random.choices(ROOM_CODE_ALPHABET, k=length))


def _to_hash(data: dict) -> Dict[str, str]:
    # Convert values to strings for a Redis hash, skip None values
    result = {}
    for k, v in data.items():
        if v is None:
            continue
        if isinstance(v, bool):
            result[k] = "1" if v else "0"
        elif isinstance(v, (dict, list)):
            result[k] = json.dumps(v)
        else:
            result[k] = str(v)
    return result


def _room_from_hash(data: dict) -> Room:
    return Room(
        id=data["id"],
        room_code=data["room_code"],
        status=Phase(data.get("status", Phase.LOBBY.value)),
        current_round_number=int(data.get("current_round_number", 0)),
        total_rounds=int(data.get("total_rounds", TOTAL_ROUNDS)),
        created_at=data.get("created_at", ""),
    )


def _player_from_hash(data: dict) -> Player:
    return Player(
        id=data["id"],
        room_id=data.get("room_id", ""),
        username=data.get("username", ""),
        avatar_src=data.get("avatar_src") or None,
        is_ready=data.get("is_ready") == "1",
        current_score=int(data.get("current_score", 0)),
    )


class GameStore:
    """
    Authoritative game state in Redis.

    Each procedure either succeeds or raises a `GatewayError`. Races between
    players are settled here: duplicate tallies, duplicate votes and stale phase
    transitions raise `ConflictError` for the caller that lost.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        room_ttl: int = ROOM_TTL_SECONDS,
        code_length: int = ROOM_CODE_LENGTH,
        code_attempts: int = ROOM_CODE_MAX_ATTEMPTS,
        total_rounds: int = TOTAL_ROUNDS,
    ):
        self.redis_client = redis_client
        self.room_ttl = room_ttl
        self.code_length = code_length
        self.code_attempts = code_attempts
        self.total_rounds = total_rounds

    # Rooms and players

    async def create_room(self, player_id: str, username: str) -> Room:
        username = self._clean_username(username)
        logger.info(f"Creating room for player {player_id}")
        room_id = uuid.uuid4().hex
        room_code = None
        for attempt in range(self.code_attempts):
            candidate = generate_room_code(self.code_length)
            claimed = await self.redis_client.set(
                REDIS_ROOM_CODE_KEY.format(code=candidate), room_id, nx=True, ex=self.room_ttl
            )
            if claimed:
                room_code = candidate
                break
            logger.debug(f"Room code {candidate} already taken (attempt {attempt + 1})")
        if room_code is None:
            logger.error(f"Could not generate a unique room code after {self.code_attempts} attempts")
            raise GatewayError("Failed to generate a unique room code")

        await self._leave_current_room(player_id)
        room = Room(
            id=room_id,
            room_code=room_code,
            status=Phase.LOBBY,
            current_round_number=0,
            total_rounds=self.total_rounds,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        key = REDIS_ROOM_KEY.format(room_id=room_id)
        await self.redis_client.hset(key, mapping=_to_hash(room.model_dump(mode="json")))
        await self._add_player(room_id, player_id, username)
        await self._touch(room)
        logger.info(f"Room {room_code} ({room_id}) created by {player_id}")
        return room

    async def join_room(self, room_code: str, player_id: str, username: str) -> Room:
        username = self._clean_username(username)
        room = await self.get_room_by_code(room_code)
        if room is None or room.status != Phase.LOBBY:
            logger.warning(f"Join room failed: {room_code} not found or not in lobby")
            raise NotFoundError("Room not found or is not in lobby state")
        player = await self.get_player(player_id)
        if player is None or player.room_id != room.id:
            await self._leave_current_room(player_id)
        await self._add_player(room.id, player_id, username, existing=player if player and player.room_id == room.id else None)
        await self._touch(room)
        logger.info(f"Player {player_id} joined room {room.room_code}")
        return room

    async def leave_room(self, room_id: str, player_id: str) -> bool:
        """Remove a player; the room is deleted once nobody is left. Returns True if it was deleted."""
        logger.info(f"Player {player_id} leaving room {room_id}")
        await self.redis_client.srem(REDIS_ROOM_PLAYERS_KEY.format(room_id=room_id), player_id)
        await self.redis_client.delete(REDIS_PLAYER_KEY.format(player_id=player_id))
        remaining = await self.redis_client.scard(REDIS_ROOM_PLAYERS_KEY.format(room_id=room_id))
        if remaining == 0:
            await self.delete_room(room_id)
            return True
        return False

    async def delete_room(self, room_id: str):
        logger.info(f"Deleting room {room_id}")
        room = await self.get_room(room_id)
        keys = [REDIS_ROOM_KEY.format(room_id=room_id), REDIS_ROOM_PLAYERS_KEY.format(room_id=room_id)]
        if room is not None:
            keys.append(REDIS_ROOM_CODE_KEY.format(code=room.room_code))
            keys.extend(self._round_keys(room_id, room.current_round_number))
        deleted = await self.redis_client.delete(*keys)
        logger.debug(f"Room {room_id} deleted: {deleted} keys removed")

    async def get_room(self, room_id: str) -> Optional[Room]:
        data = await self.redis_client.hgetall(REDIS_ROOM_KEY.format(room_id=room_id))
        if not data:
            logger.debug(f"Room {room_id} not found in Redis")
            return None
        return _room_from_hash(data)

    async def get_room_by_code(self, room_code: str) -> Optional[Room]:
        code = (room_code or "").strip().upper()
        room_id = await self.redis_client.get(REDIS_ROOM_CODE_KEY.format(code=code))
        if not room_id:
            logger.debug(f"Room code {code} not found")
            return None
        return await self.get_room(room_id)

    async def get_player(self, player_id: str) -> Optional[Player]:
        data = await self.redis_client.hgetall(REDIS_PLAYER_KEY.format(player_id=player_id))
        if not data:
            return None
        return _player_from_hash(data)

    async def get_players(self, room_id: str) -> List[Player]:
        player_ids = await self.redis_client.smembers(REDIS_ROOM_PLAYERS_KEY.format(room_id=room_id))
        players = []
        for player_id in player_ids:
            player = await self.get_player(player_id)
            if player is not None and player.room_id == room_id:
                players.append(player)
        return sorted(players, key=lambda p: (p.username.lower(), p.id))

    async def update_player(
        self,
        player_id: str,
        is_ready: Optional[bool] = None,
        avatar_src: Optional[str] = None,
        username: Optional[str] = None,
    ) -> Player:
        player = await self.get_player(player_id)
        if player is None:
            raise NotFoundError("Player not found")
        updates = {"is_ready": is_ready, "avatar_src": avatar_src}
        if username is not None:
            updates["username"] = self._clean_username(username)
        mapping = _to_hash(updates)
        if mapping:
            await self.redis_client.hset(REDIS_PLAYER_KEY.format(player_id=player_id), mapping=mapping)
            await self.redis_client.expire(REDIS_PLAYER_KEY.format(player_id=player_id), self.room_ttl)
        logger.debug(f"Player {player_id} updated: {sorted(mapping)}")
        return player.model_copy(update={k: v for k, v in updates.items() if v is not None})

    # Phases

    async def start_game(self, room_id: str) -> bool:
        """Move a lobby to the first round. Returns False if the game already left the lobby."""
        try:
            await self._compare_and_set(
                room_id, Phase.LOBBY, {"status": Phase.MEME_SELECTION.value, "current_round_number": 1}
            )
        except ConflictError:
            logger.info(f"Room {room_id} already started")
            return False
        await self._create_round(room_id, 1)
        logger.info(f"Game started in room {room_id}")
        return True

    async def transition_phase(self, room_id: str, expected: Phase, target: Phase) -> Room:
        await self._compare_and_set(room_id, Phase(expected), {"status": Phase(target).value})
        logger.info(f"Room {room_id} moved from {Phase(expected).value} to {Phase(target).value}")
        return await self.get_room(room_id)

    async def advance_to_next_round(self, room_id: str, from_round: int) -> Phase:
        room = await self._require_room(room_id)
        target = next_after_results(from_round, room.total_rounds)
        updates = {"status": target.value}
        if target == Phase.MEME_SELECTION:
            updates["current_round_number"] = from_round + 1
        await self._compare_and_set(room_id, Phase.ROUND_RESULTS, updates, round_number=from_round)
        if target == Phase.MEME_SELECTION:
            await self._create_round(room_id, from_round + 1)
        logger.info(f"Room {room_id} advanced from round {from_round} to {target.value}")
        return target

    async def reset_game(self, room_id: str, player_id: str) -> Room:
        await self._require_member(room_id, player_id)
        room = await self._require_room(room_id)
        await self._compare_and_set(
            room_id, Phase.FINAL_RESULTS, {"status": Phase.LOBBY.value, "current_round_number": 0}
        )
        round_keys = self._round_keys(room_id, room.current_round_number)
        if round_keys:
            await self.redis_client.delete(*round_keys)
        for player in await self.get_players(room_id):
            await self.redis_client.hset(
                REDIS_PLAYER_KEY.format(player_id=player.id), mapping={"is_ready": "0", "current_score": "0"}
            )
        logger.info(f"Room {room_id} reset for another game by {player_id}")
        return await self.get_room(room_id)

    # Memes

    async def propose_meme(self, room_id: str, player_id: str, meme_url: str, meme_name: Optional[str] = None) -> MemeCandidate:
        if not meme_url or not meme_url.strip():
            raise GatewayError("A meme is required")
        room = await self._require_phase(room_id, Phase.MEME_SELECTION)
        await self._require_member(room_id, player_id)
        candidate = MemeCandidate(
            id=uuid.uuid4().hex,
            player_id=player_id,
            round_number=room.current_round_number,
            meme_url=meme_url.strip(),
            meme_name=meme_name,
        )
        key = REDIS_ROUND_MEMES_KEY.format(room_id=room_id, number=room.current_round_number)
        await self.redis_client.hset(key, player_id, candidate.model_dump_json())
        await self.redis_client.expire(key, self.room_ttl)
        logger.debug(f"Player {player_id} proposed a meme for round {room.current_round_number} in {room_id}")
        return candidate

    async def get_meme_candidates(self, room_id: str, round_number: int) -> List[MemeCandidate]:
        raw = await self.redis_client.hgetall(REDIS_ROUND_MEMES_KEY.format(room_id=room_id, number=round_number))
        return [MemeCandidate.model_validate_json(value) for value in raw.values()]

    async def cast_meme_vote(self, room_id: str, voter_id: str, candidate_id: str):
        room = await self._require_phase(room_id, Phase.MEME_VOTING)
        await self._require_member(room_id, voter_id)
        candidates = await self.get_meme_candidates(room_id, room.current_round_number)
        if candidate_id not in {c.id for c in candidates}:
            raise GatewayError("Meme candidate not found in this round")
        key = REDIS_ROUND_MEME_VOTES_KEY.format(room_id=room_id, number=room.current_round_number)
        if not await self.redis_client.hsetnx(key, voter_id, candidate_id):
            raise ConflictError("You have already voted for a meme this round")
        await self.redis_client.expire(key, self.room_ttl)

    async def tally_meme_votes(self, room_id: str, round_number: int) -> Optional[MemeCandidate]:
        await self._claim_tally(room_id, round_number, "memes", Phase.MEME_VOTING)
        candidates = await self.get_meme_candidates(room_id, round_number)
        votes = await self.redis_client.hgetall(REDIS_ROUND_MEME_VOTES_KEY.format(room_id=room_id, number=round_number))
        counts = Counter(votes.values())
        top = max((counts.get(c.id, 0) for c in candidates), default=0)
        contenders = [c for c in candidates if counts.get(c.id, 0) == top]
        winner = random.choice(contenders) if contenders else None

        round_key = REDIS_ROUND_KEY.format(room_id=room_id, number=round_number)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            if winner is not None:
                pipe.hset(round_key, mapping=_to_hash(
                    {"meme_candidate_id": winner.id, "meme_url": winner.meme_url, "meme_name": winner.meme_name}
                ))
            pipe.hset(REDIS_ROOM_KEY.format(room_id=room_id), "status", Phase.CAPTION_ENTRY.value)
            await pipe.execute()
        logger.info(f"Meme votes tallied for round {round_number} in {room_id}: winner={winner.id if winner else None}")
        return winner

    # Captions

    async def submit_caption(
        self, room_id: str, player_id: str, text: str, position_x: int = 50, position_y: int = 50
    ) -> Caption:
        text = (text or "").strip()
        if not text:
            raise GatewayError("Caption text cannot be empty")
        if len(text) > MAX_CAPTION_LENGTH:
            raise GatewayError(f"Caption text cannot exceed {MAX_CAPTION_LENGTH} characters")
        if not (0 <= position_x <= 100 and 0 <= position_y <= 100):
            raise GatewayError("Caption position must be between 0 and 100")
        room = await self._require_phase(room_id, Phase.CAPTION_ENTRY)
        await self._require_member(room_id, player_id)
        caption = Caption(
            id=uuid.uuid4().hex,
            player_id=player_id,
            round_number=room.current_round_number,
            text=text,
            position_x=position_x,
            position_y=position_y,
        )
        key = REDIS_ROUND_CAPTIONS_KEY.format(room_id=room_id, number=room.current_round_number)
        if not await self.redis_client.hsetnx(key, player_id, caption.model_dump_json()):
            raise ConflictError("You have already submitted a caption this round")
        await self.redis_client.expire(key, self.room_ttl)
        logger.debug(f"Player {player_id} submitted caption {caption.id} in {room_id}")
        return caption

    async def get_captions(self, room_id: str, round_number: int) -> List[Caption]:
        raw = await self.redis_client.hgetall(REDIS_ROUND_CAPTIONS_KEY.format(room_id=room_id, number=round_number))
        return [Caption.model_validate_json(value) for value in raw.values()]

    async def cast_caption_vote(self, room_id: str, voter_id: str, caption_id: str):
        room = await self._require_phase(room_id, Phase.CAPTION_VOTING)
        await self._require_member(room_id, voter_id)
        captions = {c.id: c for c in await self.get_captions(room_id, room.current_round_number)}
        caption = captions.get(caption_id)
        if caption is None:
            raise GatewayError("Caption not found in this round")
        if caption.player_id == voter_id:
            raise GatewayError("You cannot vote for your own caption")
        key = REDIS_ROUND_CAPTION_VOTES_KEY.format(room_id=room_id, number=room.current_round_number)
        if not await self.redis_client.hsetnx(key, voter_id, caption_id):
            raise ConflictError("You have already voted this round")
        await self.redis_client.expire(key, self.room_ttl)

    async def tally_caption_votes(self, room_id: str, round_number: int) -> RoundResults:
        """
        Finalize a round: every caption sharing the top vote count earns an
        equal share of 100 points (nothing is awarded when nobody voted), and
        one of them is featured as the round's winner.
        """
        await self._claim_tally(room_id, round_number, "captions", Phase.CAPTION_VOTING)
        captions = await self.get_captions(room_id, round_number)
        votes = await self.redis_client.hgetall(
            REDIS_ROUND_CAPTION_VOTES_KEY.format(room_id=room_id, number=round_number)
        )
        counts = Counter(votes.values())
        top = max((counts.get(c.id, 0) for c in captions), default=0)
        winners = [c for c in captions if counts.get(c.id, 0) == top] if top > 0 else []
        points = 100 // len(winners) if winners else 0
        featured = random.choice(winners) if winners else None
        members = await self.redis_client.smembers(REDIS_ROOM_PLAYERS_KEY.format(room_id=room_id))

        round_key = REDIS_ROUND_KEY.format(room_id=room_id, number=round_number)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            for caption in winners:
                if caption.player_id in members:
                    pipe.hincrby(REDIS_PLAYER_KEY.format(player_id=caption.player_id), "current_score", points)
            pipe.hset(round_key, mapping=_to_hash({
                "winning_caption_id": featured.id if featured else None,
                "points_per_winner": points,
                "winner_ids": [c.id for c in winners],
                "tallied_at": datetime.now(timezone.utc).isoformat(),
            }))
            pipe.hset(REDIS_ROOM_KEY.format(room_id=room_id), "status", Phase.ROUND_RESULTS.value)
            await pipe.execute()
        logger.info(
            f"Caption votes tallied for round {round_number} in {room_id}: "
            f"{len(winners)} winner(s), {points} points each"
        )
        return await self.get_round_results(room_id, round_number)

    async def get_round_results(self, room_id: str, round_number: int) -> Optional[RoundResults]:
        """Results of a tallied round, or None while the round is still being played."""
        data = await self.redis_client.hgetall(REDIS_ROUND_KEY.format(room_id=room_id, number=round_number))
        if not data or "tallied_at" not in data:
            return None
        votes = await self.redis_client.hgetall(
            REDIS_ROUND_CAPTION_VOTES_KEY.format(room_id=room_id, number=round_number)
        )
        counts = Counter(votes.values())
        winner_ids = set(json.loads(data.get("winner_ids", "[]")))
        points = int(data.get("points_per_winner", 0))
        players = await self.get_players(room_id)
        names = {p.id: p.username for p in players}
        captions = [
            CaptionResult(
                caption=caption,
                username=names.get(caption.player_id),
                votes=counts.get(caption.id, 0),
                points_awarded=points if caption.id in winner_ids else 0,
                is_winner=caption.id in winner_ids,
            )
            for caption in await self.get_captions(room_id, round_number)
        ]
        captions.sort(key=lambda c: (-c.votes, c.caption.id))
        return RoundResults(
            round_number=round_number,
            meme_url=data.get("meme_url"),
            meme_name=data.get("meme_name"),
            winning_caption_id=data.get("winning_caption_id"),
            points_per_winner=points,
            captions=captions,
            leaderboard=sorted(players, key=lambda p: (-p.current_score, p.username.lower())),
        )

    async def round_progress(self, room_id: str) -> Optional[RoundProgress]:
        room = await self.get_room(room_id)
        if room is None or room.current_round_number < 1:
            return None
        n = room.current_round_number
        return RoundProgress(
            round_number=n,
            proposed=await self.redis_client.hkeys(REDIS_ROUND_MEMES_KEY.format(room_id=room_id, number=n)),
            meme_voted=await self.redis_client.hkeys(REDIS_ROUND_MEME_VOTES_KEY.format(room_id=room_id, number=n)),
            captioned=await self.redis_client.hkeys(REDIS_ROUND_CAPTIONS_KEY.format(room_id=room_id, number=n)),
            caption_voted=await self.redis_client.hkeys(
                REDIS_ROUND_CAPTION_VOTES_KEY.format(room_id=room_id, number=n)
            ),
        )

    # Helpers

    @staticmethod
    def _clean_username(username: Optional[str]) -> str:
        username = (username or "").strip()
        if not username:
            raise GatewayError("Username cannot be empty")
        return username

    async def _add_player(self, room_id: str, player_id: str, username: str, existing: Optional[Player] = None):
        player = Player(
            id=player_id,
            room_id=room_id,
            username=username,
            avatar_src=existing.avatar_src if existing else None,
            is_ready=existing.is_ready if existing else False,
            current_score=existing.current_score if existing else 0,
        )
        key = REDIS_PLAYER_KEY.format(player_id=player_id)
        await self.redis_client.delete(key)
        await self.redis_client.hset(key, mapping=_to_hash(player.model_dump()))
        await self.redis_client.expire(key, self.room_ttl)
        await self.redis_client.sadd(REDIS_ROOM_PLAYERS_KEY.format(room_id=room_id), player_id)

    async def _leave_current_room(self, player_id: str):
        current_room_id = await self.redis_client.hget(REDIS_PLAYER_KEY.format(player_id=player_id), "room_id")
        if current_room_id:
            await self.leave_room(current_room_id, player_id)

    async def _touch(self, room: Room):
        for key in (
            REDIS_ROOM_KEY.format(room_id=room.id),
            REDIS_ROOM_CODE_KEY.format(code=room.room_code),
            REDIS_ROOM_PLAYERS_KEY.format(room_id=room.id),
        ):
            await self.redis_client.expire(key, self.room_ttl)

    async def _create_round(self, room_id: str, number: int):
        key = REDIS_ROUND_KEY.format(room_id=room_id, number=number)
        await self.redis_client.hset(key, mapping={
            "room_id": room_id,
            "round_number": str(number),
            "created_at": datetime.now(timezone.utc).isoformat(),
        })
        await self.redis_client.expire(key, self.room_ttl)

    def _round_keys(self, room_id: str, last_round: int) -> List[str]:
        keys = []
        for number in range(1, last_round + 1):
            keys.append(REDIS_ROUND_KEY.format(room_id=room_id, number=number))
            keys.extend(template.format(room_id=room_id, number=number) for template in ROUND_SUBKEYS)
            for stage in ("memes", "captions"):
                keys.append(REDIS_ROUND_TALLY_KEY.format(room_id=room_id, number=number, stage=stage))
        return keys

    async def _require_room(self, room_id: str) -> Room:
        room = await self.get_room(room_id)
        if room is None:
            raise NotFoundError("Room not found")
        return room

    async def _require_phase(self, room_id: str, phase: Phase) -> Room:
        room = await self._require_room(room_id)
        if room.status != phase:
            raise GatewayError(f"Room is in {room.status.value}, not {phase.value}", code="wrong_phase")
        return room

    async def _require_member(self, room_id: str, player_id: str):
        if not await self.redis_client.sismember(REDIS_ROOM_PLAYERS_KEY.format(room_id=room_id), player_id):
            raise GatewayError("Player is not a member of this room", code="not_member")

    async def _claim_tally(self, room_id: str, round_number: int, stage: str, phase: Phase) -> Room:
        room = await self._require_room(room_id)
        if room.current_round_number != round_number:
            raise ConflictError(f"Round {round_number} is no longer the current round")
        key = REDIS_ROUND_TALLY_KEY.format(room_id=room_id, number=round_number, stage=stage)
        claimed = await self.redis_client.set(key, datetime.now(timezone.utc).isoformat(), nx=True, ex=self.room_ttl)
        if not claimed:
            logger.info(f"Round {round_number} {stage} in {room_id} already tallied")
            raise ConflictError(f"Round {round_number} {stage} already tallied")
        if room.status != phase:
            await self.redis_client.delete(key)
            raise GatewayError(f"Room is in {room.status.value}, not {phase.value}", code="wrong_phase")
        return room

    async def _compare_and_set(
        self, room_id: str, expected: Phase, updates: dict, round_number: Optional[int] = None
    ):
        """Apply `updates` to the room only if it is still in `expected` (and round)."""
        key = REDIS_ROOM_KEY.format(room_id=room_id)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = await pipe.hgetall(key)
                    if not current:
                        raise NotFoundError("Room not found")
                    if current.get("status") != expected.value:
                        raise ConflictError(
                            f"Room is in {current.get('status')}, expected {expected.value}"
                        )
                    if round_number is not None and int(current.get("current_round_number", 0)) != round_number:
                        raise ConflictError(f"Room already left round {round_number}")
                    pipe.multi()
                    pipe.hset(key, mapping=_to_hash(updates))
                    pipe.expire(key, self.room_ttl)
                    pipe.expire(REDIS_ROOM_PLAYERS_KEY.format(room_id=room_id), self.room_ttl)
                    if current.get("room_code"):
                        pipe.expire(REDIS_ROOM_CODE_KEY.format(code=current["room_code"]), self.room_ttl)
                    await pipe.execute()
                    return
                except WatchError:
                    logger.debug(f"Room {room_id} changed during update, retrying")
                    continue
