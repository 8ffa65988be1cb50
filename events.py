"""
Room channel events.

Every event travelling over a room channel is one of the kinds in
`RoomEventKind`, and each kind has exactly one payload model. Wire payloads
use camelCase keys so browsers and Python clients share the same shapes.
"""

from enum import Enum
from typing import Any, Dict, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from errors import MalformedPayloadError
from phases import Phase


class RoomEventKind(str, Enum):
    PLAYER_JOINED = "player-joined"
    PLAYER_LEFT = "player-left"
    PLAYER_READY_UPDATE = "player-ready-update"
    PLAYER_AVATAR_CHANGED = "player-avatar-changed"
    PLAYER_NAME_UPDATE = "player-name-update"
    GAME_PHASE_CHANGED = "game-phase-changed"
    MEME_SELECTED = "meme-selected-for-round"
    MEME_VOTE_CAST = "meme-vote-cast"
    CAPTION_SUBMITTED = "caption-submitted"
    CAPTION_VOTE_CAST = "caption-vote-cast"


class EventPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


class PlayerJoined(EventPayload):
    player_id: str = Field(alias="playerId", min_length=1)
    player_name: str = Field(alias="playerName", min_length=1)
    avatar_src: Optional[str] = Field(default=None, alias="avatarSrc")


class PlayerLeft(EventPayload):
    player_id: str = Field(alias="playerId", min_length=1)


class PlayerReadyUpdate(EventPayload):
    player_id: str = Field(alias="playerId", min_length=1)
    is_ready: bool = Field(alias="isReady")


class PlayerAvatarChanged(EventPayload):
    player_id: str = Field(alias="playerId", min_length=1)
    avatar_src: str = Field(alias="avatarSrc")


class PlayerNameUpdate(EventPayload):
    player_id: str = Field(alias="playerId", min_length=1)
    new_name: str = Field(alias="newName", min_length=1)


class GamePhaseChanged(EventPayload):
    phase: Phase
    data: Optional[Dict[str, Any]] = None


class MemeSelected(EventPayload):
    player_id: str = Field(alias="playerId", min_length=1)
    candidate_id: str = Field(alias="candidateId", min_length=1)


class MemeVoteCast(EventPayload):
    voter_player_id: str = Field(alias="voterPlayerId", min_length=1)
    voted_for_candidate_id: str = Field(alias="votedForCandidateId", min_length=1)


class CaptionSubmitted(EventPayload):
    player_id: str = Field(alias="playerId", min_length=1)
    caption_id: str = Field(alias="captionId", min_length=1)


class CaptionVoteCast(EventPayload):
    voter_player_id: str = Field(alias="voterPlayerId", min_length=1)
    voted_for_caption_id: str = Field(alias="votedForCaptionId", min_length=1)


RoomEventPayload = Union[
    PlayerJoined,
    PlayerLeft,
    PlayerReadyUpdate,
    PlayerAvatarChanged,
    PlayerNameUpdate,
    GamePhaseChanged,
    MemeSelected,
    MemeVoteCast,
    CaptionSubmitted,
    CaptionVoteCast,
]

EVENT_PAYLOADS: Dict[RoomEventKind, Type[EventPayload]] = {
    RoomEventKind.PLAYER_JOINED: PlayerJoined,
    RoomEventKind.PLAYER_LEFT: PlayerLeft,
    RoomEventKind.PLAYER_READY_UPDATE: PlayerReadyUpdate,
    RoomEventKind.PLAYER_AVATAR_CHANGED: PlayerAvatarChanged,
    RoomEventKind.PLAYER_NAME_UPDATE: PlayerNameUpdate,
    RoomEventKind.GAME_PHASE_CHANGED: GamePhaseChanged,
    RoomEventKind.MEME_SELECTED: MemeSelected,
    RoomEventKind.MEME_VOTE_CAST: MemeVoteCast,
    RoomEventKind.CAPTION_SUBMITTED: CaptionSubmitted,
    RoomEventKind.CAPTION_VOTE_CAST: CaptionVoteCast,
}

_missing = set(RoomEventKind) - set(EVENT_PAYLOADS)
if _missing:
    raise RuntimeError(f"Event kinds without a payload model: {_missing}")


def to_kind(name) -> RoomEventKind:
    try:
        return RoomEventKind(name)
    except ValueError:
        raise MalformedPayloadError(f"Unknown room event kind: {name!r}")


def parse_payload(kind: RoomEventKind, data) -> EventPayload:
    model = EVENT_PAYLOADS[to_kind(kind)]
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        raise MalformedPayloadError(f"{type(data).__name__} is not a payload for {kind}")
    if not isinstance(data, dict):
        raise MalformedPayloadError(f"Payload for {kind} must be an object")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise MalformedPayloadError(f"Invalid payload for {kind}: {e}") from e


def dump_payload(payload: EventPayload) -> dict:
    return payload.model_dump(mode="json", by_alias=True, exclude_none=True)


class ChannelMessage(BaseModel):
    """A delivered event together with the transport metadata it arrived with."""

    kind: RoomEventKind
    payload: EventPayload
    client_id: Optional[str] = None
    connection_id: Optional[str] = None
    timestamp: Optional[int] = None
