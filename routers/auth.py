from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from errors import AuthError
from logging_config import get_logger
from schemas.auth import RealtimeTokenResponse, SessionResponse
from tokens import RealtimeTokenIssuer

logger = get_logger(__name__)

auth_router = APIRouter(prefix="/auth", tags=["auth"])


def get_issuer(request: Request) -> RealtimeTokenIssuer:
    return request.app.state.issuer


def get_current_player(
    authorization: Optional[str] = Header(default=None),
    issuer: RealtimeTokenIssuer = Depends(get_issuer),
) -> str:
    """Player id of the bearer session token; 401 without a valid session."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        return issuer.verify_session(authorization[7:].strip())
    except AuthError as e:
        logger.warning(f"Rejected session token: {e}")
        raise HTTPException(status_code=401, detail="Unauthorized")


@auth_router.post("/session", response_model=SessionResponse)
async def create_session(request: Request, issuer: RealtimeTokenIssuer = Depends(get_issuer)):
    session = issuer.issue_session()
    logger.info(f"Anonymous session {session.client_id} created for {request.client.host if request.client else 'unknown'}")
    return SessionResponse(
        player_id=session.client_id,
        session_token=session.token,
        expires_at=session.expires_at.isoformat(),
    )


@auth_router.get("/realtime-token", response_model=RealtimeTokenResponse)
async def create_realtime_token(
    player_id: str = Depends(get_current_player),
    issuer: RealtimeTokenIssuer = Depends(get_issuer),
):
    try:
        details = issuer.issue_realtime(player_id)
    except AuthError as e:
        logger.error(f"Error creating realtime token for {player_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create realtime token")
    return RealtimeTokenResponse(
        token=details.token,
        client_id=details.client_id,
        capability=details.capability,
        expires_at=details.expires_at.isoformat(),
    )
