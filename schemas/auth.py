from pydantic import BaseModel
from typing import Dict, List


class SessionResponse(BaseModel):
    player_id: str
    session_token: str
    expires_at: str

class RealtimeTokenResponse(BaseModel):
    token: str
    client_id: str
    capability: Dict[str, List[str]]
    expires_at: str
