import datetime
import fnmatch
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import jwt

from constants import (
    REALTIME_CAPABILITY,
    REALTIME_TOKEN_TTL_SECONDS,
    SESSION_TOKEN_TTL_SECONDS,
    TOKEN_ALGORITHM,
)
from errors import AuthError
from logging_config import get_logger

logger = get_logger(__name__)

REALTIME_AUDIENCE = "realtime"
SESSION_AUDIENCE = "session"


@dataclass
class TokenDetails:
    token: str
    client_id: str
    expires_at: datetime.datetime
    capability: Dict[str, List[str]] = field(default_factory=dict)

    def allows(self, channel: str, operation: str) -> bool:
        """Check the capability map, whose keys may be glob patterns like `room:*`."""
        for pattern, operations in self.capability.items():
            if fnmatch.fnmatchcase(channel, pattern) and ("*" in operations or operation in operations):
                return True
        return False

    def expires_within(self, seconds: float) -> bool:
        now = datetime.datetime.now(datetime.timezone.utc)
        return self.expires_at - now <= datetime.timedelta(seconds=seconds)


class RealtimeTokenIssuer:
    """
    Mints and verifies the two kinds of token the service hands out:
    long-lived anonymous session tokens and short-lived realtime tokens bound
    to a session's player id.
    """

    def __init__(
        self,
        secret: str,
        realtime_ttl: int = REALTIME_TOKEN_TTL_SECONDS,
        session_ttl: int = SESSION_TOKEN_TTL_SECONDS,
        capability: Optional[Dict[str, List[str]]] = None,
    ):
        if not secret:
            raise ValueError("A token secret is required")
        self.secret = secret
        self.realtime_ttl = realtime_ttl
        self.session_ttl = session_ttl
        self.capability = capability or REALTIME_CAPABILITY

    def _encode(self, claims: dict, ttl: int) -> Tuple[str, datetime.datetime]:
        expires_at = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(seconds=ttl)
        claims["exp"] = expires_at
        return jwt.encode(claims, self.secret, algorithm=TOKEN_ALGORITHM), expires_at

    def _decode(self, token: str, audience: str) -> dict:
        if not token:
            raise AuthError("Token is required")
        try:
            return jwt.decode(token, self.secret, algorithms=[TOKEN_ALGORITHM], audience=audience)
        except jwt.ExpiredSignatureError:
            raise AuthError("Token has expired")
        except jwt.InvalidTokenError as e:
            raise AuthError(f"Invalid token: {e}")

    def issue_session(self, player_id: Optional[str] = None) -> TokenDetails:
        player_id = player_id or str(uuid.uuid4())
        token, expires_at = self._encode({"sub": player_id, "aud": SESSION_AUDIENCE}, self.session_ttl)
        logger.debug(f"Issued session token for player {player_id}")
        return TokenDetails(token=token, client_id=player_id, expires_at=expires_at)

    def verify_session(self, token: str) -> str:
        """Return the player id a session token belongs to."""
        payload = self._decode(token, SESSION_AUDIENCE)
        player_id = payload.get("sub")
        if not player_id:
            raise AuthError("Invalid token payload")
        return player_id

    def issue_realtime(self, client_id: str) -> TokenDetails:
        if not client_id:
            raise AuthError("A client id is required for a realtime token")
        token, expires_at = self._encode(
            {"sub": client_id, "aud": REALTIME_AUDIENCE, "capability": self.capability},
            self.realtime_ttl,
        )
        logger.info(f"Issued realtime token for client {client_id}, expires at {expires_at.isoformat()}")
        return TokenDetails(token=token, client_id=client_id, expires_at=expires_at, capability=dict(self.capability))

    def verify(self, token: str) -> TokenDetails:
        """Verify a realtime token and return its details."""
        payload = self._decode(token, REALTIME_AUDIENCE)
        client_id = payload.get("sub")
        capability = payload.get("capability")
        if not client_id or not isinstance(capability, dict):
            raise AuthError("Invalid token payload")
        expires_at = datetime.datetime.fromtimestamp(payload["exp"], tz=datetime.timezone.utc)
        return TokenDetails(token=token, client_id=client_id, expires_at=expires_at, capability=capability)
