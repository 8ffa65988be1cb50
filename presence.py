import time
from typing import Dict, Iterator, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from errors import MalformedPayloadError


def now_ms() -> int:
    return int(time.time() * 1000)


class PresenceRecord(BaseModel):
    """
    Live status a player attaches to a room channel.

    Records are replaced wholesale on every update; callers resend the full
    record, and any optional field left out disappears from what others see.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    status: Literal["online", "away", "idle"] = "online"
    is_ready: Optional[bool] = Field(default=None, alias="isReady")
    last_activity: Optional[int] = Field(default=None, alias="lastActivity")
    avatar_src: Optional[str] = Field(default=None, alias="avatarSrc")
    player_id: Optional[str] = Field(default=None, alias="playerId")
    player_name: Optional[str] = Field(default=None, alias="playerName")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_wire(cls, data) -> "PresenceRecord":
        if not isinstance(data, dict):
            raise MalformedPayloadError(f"Presence record must be an object, got {type(data).__name__}")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise MalformedPayloadError(f"Invalid presence record: {e}") from e

    def identity(self) -> Optional[Tuple[str, str]]:
        """(player id, player name) when the record carries both, else None."""
        if self.player_id and self.player_name and self.player_name.strip():
            return self.player_id, self.player_name
        return None


class PresenceMember(BaseModel):
    client_id: str
    connection_id: Optional[str] = None
    record: PresenceRecord
    timestamp: int = Field(default_factory=now_ms)

    def to_wire(self) -> dict:
        return {
            "client_id": self.client_id,
            "connection_id": self.connection_id,
            "data": self.record.to_wire(),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_wire(cls, data) -> "PresenceMember":
        if not isinstance(data, dict) or not data.get("client_id"):
            raise MalformedPayloadError("Presence member is missing a client id")
        return cls(
            client_id=data["client_id"],
            connection_id=data.get("connection_id"),
            record=PresenceRecord.from_wire(data.get("data") or {}),
            timestamp=data.get("timestamp") or now_ms(),
        )


class PresenceSet:
    """Snapshot of the members currently present on one channel."""

    def __init__(self, members: Optional[List[PresenceMember]] = None):
        self._members: Dict[str, PresenceMember] = {m.client_id: m for m in members or []}

    def members(self) -> List[PresenceMember]:
        return sorted(self._members.values(), key=lambda m: m.timestamp)

    def get(self, client_id: str) -> Optional[PresenceMember]:
        return self._members.get(client_id)

    def client_ids(self) -> List[str]:
        return [m.client_id for m in self.members()]

    def ready_count(self) -> int:
        return sum(1 for m in self._members.values() if m.record.is_ready)

    def __len__(self) -> int:
        return len(self._members)

    def __contains__(self, client_id) -> bool:
        return client_id in self._members

    def __iter__(self) -> Iterator[PresenceMember]:
        return iter(self.members())

    def __repr__(self) -> str:
        return f"PresenceSet({self.client_ids()})"
