from fastapi import APIRouter, Depends, HTTPException, Request

from backend import GameStore
from errors import ConflictError, GatewayError, NotFoundError
from logging_config import get_logger
from room_channel import channel_name
from routers.auth import get_current_player
from schemas.game import Caption, MemeCandidate, Player, Room, RoundResults
from schemas.rooms import (
    AdvanceRequest,
    AdvanceResponse,
    CaptionRequest,
    CaptionVoteRequest,
    CreateRoomRequest,
    JoinRoomRequest,
    MemeVoteRequest,
    ProposeMemeRequest,
    RoomDetailsResponse,
    RoomResponse,
    StartGameResponse,
    TallyRequest,
    TallyResponse,
    UpdatePlayerRequest,
)

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def get_store(request: Request) -> GameStore:
    return request.app.state.store


def gateway_http_error(e: GatewayError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=e.message)
    if isinstance(e, ConflictError):
        return HTTPException(status_code=409, detail=e.message)
    if e.code == "not_member":
        return HTTPException(status_code=403, detail=e.message)
    return HTTPException(status_code=400, detail=e.message)


async def room_for_member(room_code: str, player_id: str, store: GameStore) -> Room:
    room = await store.get_room_by_code(room_code)
    if room is None:
        logger.warning(f"Room {room_code} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    player = await store.get_player(player_id)
    if player is None or player.room_id != room.id:
        logger.warning(f"Player {player_id} is not a member of room {room_code}")
        raise HTTPException(status_code=403, detail="Not a member of this room")
    return room


@rooms_router.post("/", status_code=201, response_model=RoomResponse)
async def create_room(
    body: CreateRoomRequest,
    player_id: str = Depends(get_current_player),
    store: GameStore = Depends(get_store),
):
    logger.info(f"Room creation request from player {player_id}")
    try:
        room = await store.create_room(player_id, body.username)
    except GatewayError as e:
        logger.error(f"Error creating room: {e}", exc_info=True)
        raise gateway_http_error(e)
    return RoomResponse(room=room, channel=channel_name(room.room_code))


@rooms_router.post("/{room_code}/join", response_model=RoomResponse)
async def join_room(
    room_code: str,
    body: JoinRoomRequest,
    player_id: str = Depends(get_current_player),
    store: GameStore = Depends(get_store),
):
    logger.info(f"Join room request for {room_code} from player {player_id}")
    try:
        room = await store.join_room(room_code, player_id, body.username)
    except GatewayError as e:
        raise gateway_http_error(e)
    return RoomResponse(room=room, channel=channel_name(room.room_code))


@rooms_router.post("/{room_code}/leave")
async def leave_room(
    room_code: str,
    player_id: str = Depends(get_current_player),
    store: GameStore = Depends(get_store),
):
    room = await room_for_member(room_code, player_id, store)
    deleted = await store.leave_room(room.id, player_id)
    logger.info(f"Player {player_id} left room {room_code} (room deleted: {deleted})")
    return {"message": "Left room", "room_deleted": deleted}


@rooms_router.get("/{room_code}", response_model=RoomDetailsResponse)
async def room_details(room_code: str, store: GameStore = Depends(get_store)):
    room = await store.get_room_by_code(room_code)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    players = await store.get_players(room.id)
    return RoomDetailsResponse(room=room, players=players, channel=channel_name(room.room_code))


@rooms_router.patch("/{room_code}/players/me", response_model=Player)
async def update_me(
    room_code: str,
    body: UpdatePlayerRequest,
    player_id: str = Depends(get_current_player),
    store: GameStore = Depends(get_store),
):
    await room_for_member(room_code, player_id, store)
    try:
        return await store.update_player(
            player_id, is_ready=body.is_ready, avatar_src=body.avatar_src, username=body.username
        )
    except GatewayError as e:
        raise gateway_http_error(e)


@rooms_router.post("/{room_code}/start", response_model=StartGameResponse)
async def start_game(
    room_code: str,
    player_id: str = Depends(get_current_player),
    store: GameStore = Depends(get_store),
):
    room = await room_for_member(room_code, player_id, store)
    started = await store.start_game(room.id)
    return StartGameResponse(started=started, room=await store.get_room(room.id))


@rooms_router.post("/{room_code}/memes", response_model=MemeCandidate)
async def propose_meme(
    room_code: str,
    body: ProposeMemeRequest,
    player_id: str = Depends(get_current_player),
    store: GameStore = Depends(get_store),
):
    room = await room_for_member(room_code, player_id, store)
    try:
        return await store.propose_meme(room.id, player_id, body.meme_url, body.meme_name)
    except GatewayError as e:
        raise gateway_http_error(e)


@rooms_router.get("/{room_code}/memes", response_model=list[MemeCandidate])
async def list_memes(room_code: str, store: GameStore = Depends(get_store)):
    room = await store.get_room_by_code(room_code)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return await store.get_meme_candidates(room.id, room.current_round_number)


@rooms_router.post("/{room_code}/meme-votes", status_code=204)
async def vote_meme(
    room_code: str,
    body: MemeVoteRequest,
    player_id: str = Depends(get_current_player),
    store: GameStore = Depends(get_store),
):
    room = await room_for_member(room_code, player_id, store)
    try:
        await store.cast_meme_vote(room.id, player_id, body.candidate_id)
    except GatewayError as e:
        raise gateway_http_error(e)


@rooms_router.post("/{room_code}/captions", response_model=Caption)
async def submit_caption(
    room_code: str,
    body: CaptionRequest,
    player_id: str = Depends(get_current_player),
    store: GameStore = Depends(get_store),
):
    room = await room_for_member(room_code, player_id, store)
    try:
        return await store.submit_caption(room.id, player_id, body.text, body.position_x, body.position_y)
    except GatewayError as e:
        raise gateway_http_error(e)


@rooms_router.get("/{room_code}/captions", response_model=list[Caption])
async def list_captions(room_code: str, store: GameStore = Depends(get_store)):
    room = await store.get_room_by_code(room_code)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return await store.get_captions(room.id, room.current_round_number)


@rooms_router.post("/{room_code}/caption-votes", status_code=204)
async def vote_caption(
    room_code: str,
    body: CaptionVoteRequest,
    player_id: str = Depends(get_current_player),
    store: GameStore = Depends(get_store),
):
    room = await room_for_member(room_code, player_id, store)
    try:
        await store.cast_caption_vote(room.id, player_id, body.caption_id)
    except GatewayError as e:
        raise gateway_http_error(e)


@rooms_router.post("/{room_code}/tally", response_model=TallyResponse)
async def tally(
    room_code: str,
    body: TallyRequest,
    player_id: str = Depends(get_current_player),
    store: GameStore = Depends(get_store),
):
    room = await room_for_member(room_code, player_id, store)
    try:
        if body.stage == "memes":
            meme = await store.tally_meme_votes(room.id, body.round_number)
            return TallyResponse(stage=body.stage, round_number=body.round_number, meme=meme)
        results = await store.tally_caption_votes(room.id, body.round_number)
        return TallyResponse(stage=body.stage, round_number=body.round_number, results=results)
    except GatewayError as e:
        raise gateway_http_error(e)


@rooms_router.get("/{room_code}/rounds/{round_number}/results", response_model=RoundResults)
async def round_results(room_code: str, round_number: int, store: GameStore = Depends(get_store)):
    room = await store.get_room_by_code(room_code)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    results = await store.get_round_results(room.id, round_number)
    if results is None:
        raise HTTPException(status_code=404, detail="Round has not been tallied yet")
    return results


@rooms_router.post("/{room_code}/advance", response_model=AdvanceResponse)
async def advance(
    room_code: str,
    body: AdvanceRequest,
    player_id: str = Depends(get_current_player),
    store: GameStore = Depends(get_store),
):
    room = await room_for_member(room_code, player_id, store)
    try:
        phase = await store.advance_to_next_round(room.id, body.from_round)
    except GatewayError as e:
        raise gateway_http_error(e)
    return AdvanceResponse(phase=phase.value, room=await store.get_room(room.id))


@rooms_router.post("/{room_code}/reset", response_model=Room)
async def reset(
    room_code: str,
    player_id: str = Depends(get_current_player),
    store: GameStore = Depends(get_store),
):
    room = await room_for_member(room_code, player_id, store)
    try:
        return await store.reset_game(room.id, player_id)
    except GatewayError as e:
        raise gateway_http_error(e)

# **Gateway procedures exposed here**
# - rooms: create, join, leave, details
# - players: ready / avatar / name through PATCH players/me
# - phases: start, tally (memes | captions), advance, reset
# Every conflict (duplicate vote, duplicate tally, stale advance) is a 409 so
# clients can treat it as "someone else already did this".
