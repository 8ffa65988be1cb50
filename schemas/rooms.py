from pydantic import BaseModel, Field
from typing import List, Literal, Optional

from schemas.game import MemeCandidate, Player, Room, RoundResults


class CreateRoomRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=32)

class JoinRoomRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=32)

class RoomResponse(BaseModel):
    room: Room
    channel: str

class RoomDetailsResponse(BaseModel):
    room: Room
    players: List[Player]
    channel: str

class UpdatePlayerRequest(BaseModel):
    is_ready: Optional[bool] = None
    avatar_src: Optional[str] = None
    username: Optional[str] = Field(default=None, min_length=1, max_length=32)

class StartGameResponse(BaseModel):
    started: bool
    room: Room

class ProposeMemeRequest(BaseModel):
    meme_url: str = Field(..., min_length=1)
    meme_name: Optional[str] = None

class MemeVoteRequest(BaseModel):
    candidate_id: str

class CaptionRequest(BaseModel):
    text: str = Field(..., min_length=1)
    position_x: int = Field(default=50, ge=0, le=100)
    position_y: int = Field(default=50, ge=0, le=100)

class CaptionVoteRequest(BaseModel):
    caption_id: str

class TallyRequest(BaseModel):
    stage: Literal["memes", "captions"]
    round_number: int = Field(..., ge=1)

class TallyResponse(BaseModel):
    stage: str
    round_number: int
    meme: Optional[MemeCandidate] = None
    results: Optional[RoundResults] = None

class AdvanceRequest(BaseModel):
    from_round: int = Field(..., ge=1)

class AdvanceResponse(BaseModel):
    phase: str
    room: Room
