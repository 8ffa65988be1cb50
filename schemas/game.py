from pydantic import BaseModel
from typing import List, Optional

from phases import Phase


class Room(BaseModel):
    id: str
    room_code: str
    status: Phase = Phase.LOBBY
    current_round_number: int = 0
    total_rounds: int
    created_at: str

class Player(BaseModel):
    id: str
    room_id: str
    username: str
    avatar_src: Optional[str] = None
    is_ready: bool = False
    current_score: int = 0

class MemeCandidate(BaseModel):
    id: str
    player_id: str
    round_number: int
    meme_url: str
    meme_name: Optional[str] = None

class Caption(BaseModel):
    id: str
    player_id: str
    round_number: int
    text: str
    position_x: int = 50
    position_y: int = 50

class CaptionResult(BaseModel):
    caption: Caption
    username: Optional[str] = None
    votes: int = 0
    points_awarded: int = 0
    is_winner: bool = False

class RoundResults(BaseModel):
    round_number: int
    meme_url: Optional[str] = None
    meme_name: Optional[str] = None
    winning_caption_id: Optional[str] = None
    points_per_winner: int = 0
    captions: List[CaptionResult] = []
    leaderboard: List[Player] = []

class RoundProgress(BaseModel):
    round_number: int
    proposed: List[str] = []
    meme_voted: List[str] = []
    captioned: List[str] = []
    caption_voted: List[str] = []
