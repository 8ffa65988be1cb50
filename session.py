"""
Per-room controller.

A `RoomSession` is what one mounted room page runs: it merges the gateway's
rows, the room channel's events and the player's own optimistic changes into
one view of the room, and moves that view from phase to phase. Phase changes
arrive either as `game-phase-changed` events or through the poll loop, which
re-reads the gateway every poll interval so that missed events heal on their
own.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from backend import GameStore
from constants import MIN_PLAYERS_TO_START
from errors import ConflictError, GatewayError, MalformedPayloadError, TransportError
from events import (
    CaptionSubmitted,
    CaptionVoteCast,
    ChannelMessage,
    GamePhaseChanged,
    MemeSelected,
    MemeVoteCast,
    PlayerAvatarChanged,
    PlayerJoined,
    PlayerLeft,
    PlayerNameUpdate,
    PlayerReadyUpdate,
    RoomEventKind,
)
from logging_config import get_logger
from phases import Phase, PhaseTimings, can_transition, everyone_done, lobby_can_start
from presence import PresenceRecord, now_ms
from room_channel import RoomChannel
from schemas.game import Caption, MemeCandidate, Player, Room, RoundResults

logger = get_logger(__name__)

ROUND_PHASES = (Phase.MEME_SELECTION, Phase.MEME_VOTING, Phase.CAPTION_ENTRY, Phase.CAPTION_VOTING)

EVENT_HANDLERS = {
    RoomEventKind.PLAYER_JOINED: "_on_player_joined",
    RoomEventKind.PLAYER_LEFT: "_on_player_left",
    RoomEventKind.PLAYER_READY_UPDATE: "_on_ready_update",
    RoomEventKind.PLAYER_AVATAR_CHANGED: "_on_avatar_changed",
    RoomEventKind.PLAYER_NAME_UPDATE: "_on_name_update",
    RoomEventKind.GAME_PHASE_CHANGED: "_on_phase_changed",
    RoomEventKind.MEME_SELECTED: "_on_meme_selected",
    RoomEventKind.MEME_VOTE_CAST: "_on_meme_vote_cast",
    RoomEventKind.CAPTION_SUBMITTED: "_on_caption_submitted",
    RoomEventKind.CAPTION_VOTE_CAST: "_on_caption_vote_cast",
}
if set(EVENT_HANDLERS) != set(RoomEventKind):
    raise RuntimeError(f"Room event kinds without a handler: {set(RoomEventKind) - set(EVENT_HANDLERS)}")


@dataclass
class Notification:
    title: str
    description: str = ""
    variant: str = "default"


@dataclass
class MemeOption:
    url: str
    name: Optional[str] = None


Navigate = Callable[[Optional[Phase]], None]
Notify = Callable[[Notification], None]


class RoomSession:
    def __init__(
        self,
        room_code: str,
        player_id: str,
        gateway: GameStore,
        channel: RoomChannel,
        navigate: Navigate,
        notify: Notify,
        timings: Optional[PhaseTimings] = None,
        min_players: int = MIN_PLAYERS_TO_START,
    ):
        self.room_code = room_code.strip().upper()
        self.player_id = player_id
        self.gateway = gateway
        self.channel = channel
        self.navigate = navigate
        self.notify = notify
        self.timings = timings or PhaseTimings()
        self.min_players = min_players

        self.room: Optional[Room] = None
        self.phase: Optional[Phase] = None
        self.round_number = 0
        self.players: Dict[str, Player] = {}
        self.is_participant = False
        self.mounted = False
        self.results: Optional[RoundResults] = None

        self.meme_options: List[MemeOption] = []
        self.highlighted_meme: Optional[MemeOption] = None
        self.my_candidate: Optional[MemeCandidate] = None
        self.my_caption: Optional[Caption] = None
        self.my_meme_vote: Optional[str] = None
        self.my_caption_vote: Optional[str] = None
        self.proposed: Set[str] = set()
        self.meme_voted: Set[str] = set()
        self.captioned: Set[str] = set()
        self.caption_voted: Set[str] = set()

        self._initial_presence_sent = False
        self._starting = False
        self._tallied: Set[Tuple[int, str]] = set()
        self._attempted: Set[Tuple[int, str]] = set()
        self._unsubscribers: List[Callable[[], None]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None
        self._countdown_task: Optional[asyncio.Task] = None
        self.deadline: Optional[float] = None

    @property
    def me(self) -> Optional[Player]:
        return self.players.get(self.player_id)

    @property
    def connected(self) -> bool:
        return self.channel.transport.connected

    @property
    def online_player_ids(self) -> List[str]:
        return [m.record.player_id or m.client_id for m in self.channel.members]

    # Mount / unmount

    async def mount(self) -> bool:
        """Load the room and start syncing. Returns False if the player was sent home."""
        self.mounted = True
        try:
            room = await self.gateway.get_room_by_code(self.room_code)
            players = await self.gateway.get_players(room.id) if room else []
        except GatewayError as e:
            logger.error(f"Could not load room {self.room_code}: {e}")
            self._leave_page("Could not load room", e.message)
            return False
        if not self.mounted:
            return False
        if room is None:
            self._leave_page("Room Not Found", f"Room {self.room_code} does not exist or has closed.")
            return False
        if self.player_id not in {p.id for p in players}:
            self._leave_page("Not in this room", "Join the room from the home screen first.")
            return False

        self.room = room
        self.players = {p.id: p for p in players}
        self.phase = room.status
        self.round_number = room.current_round_number
        self.is_participant = True
        logger.info(f"Player {self.player_id} mounted room {self.room_code} in {self.phase.value}")

        for kind, handler in self._handlers().items():
            self._unsubscribers.append(self.channel.subscribe(kind, handler, with_message=True))
        try:
            await self.channel.attach()
        except TransportError as e:
            logger.error(f"Realtime channel for {self.room_code} unavailable, relying on polling: {e}")
            self.notify(Notification("Connection problem", "Live updates are unavailable right now.", "destructive"))
        else:
            await self._send_initial_presence()

        self._poll_task = asyncio.create_task(self._poll_loop())
        self._restart_countdown()
        if self.phase == Phase.ROUND_RESULTS:
            self._spawn(self._load_results())
        self._check_completion()
        return True

    async def unmount(self):
        """Stop timers, drop subscriptions and leave the channel."""
        self.mounted = False
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        current = asyncio.current_task()
        tasks = [t for t in (self._poll_task, self._countdown_task, *self._tasks) if t and t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._poll_task = None
        self._countdown_task = None
        await self.channel.close()
        logger.info(f"Player {self.player_id} unmounted room {self.room_code}")

    def _leave_page(self, title: str, description: str):
        self.mounted = False
        self.notify(Notification(title, description, "destructive"))
        self._navigate(None)

    def _navigate(self, phase: Optional[Phase]):
        try:
            self.navigate(phase)
        except Exception as e:
            logger.error(f"Navigation to {phase} failed: {e}", exc_info=True)

    # Presence

    def _presence_record(self) -> PresenceRecord:
        me = self.me
        return PresenceRecord(
            status="online",
            is_ready=me.is_ready if me else False,
            last_activity=now_ms(),
            avatar_src=me.avatar_src if me else None,
            player_id=self.player_id,
            player_name=me.username if me else None,
        )

    async def _send_initial_presence(self):
        if self._initial_presence_sent:
            return
        self._initial_presence_sent = True
        try:
            await self.channel.update_presence(self._presence_record())
        except TransportError as e:
            self._initial_presence_sent = False
            logger.warning(f"Initial presence for {self.player_id} in {self.room_code} failed: {e}")

    async def refresh_presence(self):
        """Called again on every re-render; only the first call per mount reaches the channel."""
        await self._send_initial_presence()

    async def _publish_presence(self):
        await self.channel.update_presence(self._presence_record())

    # User actions

    async def _mutate(
        self,
        action: str,
        write: Callable[[], Awaitable],
        apply: Callable[[object], None],
        announce: Callable[[object], Awaitable],
    ) -> bool:
        """Gateway write, then local update, then broadcast."""
        try:
            result = await write()
        except GatewayError as e:
            logger.warning(f"Could not {action} in room {self.room_code}: {e}")
            self.notify(Notification(f"Could not {action}", e.message, "destructive"))
            return False
        if not self.mounted:
            return False
        apply(result)
        try:
            await announce(result)
        except (TransportError, MalformedPayloadError) as e:
            logger.warning(f"Saved but could not broadcast '{action}' in room {self.room_code}: {e}")
        self._check_completion()
        return True

    def _update_player(self, player_id: str, **changes):
        player = self.players.get(player_id)
        if player is not None:
            self.players[player_id] = player.model_copy(update=changes)

    async def toggle_ready(self, is_ready: Optional[bool] = None) -> bool:
        if is_ready is None:
            is_ready = not (self.me.is_ready if self.me else False)

        async def announce(_):
            await self.channel.publish(
                RoomEventKind.PLAYER_READY_UPDATE, PlayerReadyUpdate(player_id=self.player_id, is_ready=is_ready)
            )
            await self._publish_presence()

        return await self._mutate(
            "update ready status",
            lambda: self.gateway.update_player(self.player_id, is_ready=is_ready),
            lambda _: self._update_player(self.player_id, is_ready=is_ready),
            announce,
        )

    async def change_avatar(self, avatar_src: str) -> bool:
        async def announce(_):
            await self.channel.publish(
                RoomEventKind.PLAYER_AVATAR_CHANGED,
                PlayerAvatarChanged(player_id=self.player_id, avatar_src=avatar_src),
            )
            await self._publish_presence()

        return await self._mutate(
            "change avatar",
            lambda: self.gateway.update_player(self.player_id, avatar_src=avatar_src),
            lambda _: self._update_player(self.player_id, avatar_src=avatar_src),
            announce,
        )

    async def change_name(self, new_name: str) -> bool:
        # Names travel as an explicit event only; the presence record catches up on the next presence update.
        return await self._mutate(
            "change name",
            lambda: self.gateway.update_player(self.player_id, username=new_name),
            lambda player: self._update_player(self.player_id, username=player.username),
            lambda player: self.channel.publish(
                RoomEventKind.PLAYER_NAME_UPDATE, PlayerNameUpdate(player_id=self.player_id, new_name=player.username)
            ),
        )

    def offer_memes(self, options: List[MemeOption]):
        """Candidate media from the image search; one of them is auto-picked if time runs out."""
        self.meme_options = list(options)

    def highlight_meme(self, option: Optional[MemeOption]):
        self.highlighted_meme = option

    async def propose_meme(self, meme_url: str, meme_name: Optional[str] = None) -> bool:
        def apply(candidate: MemeCandidate):
            self.my_candidate = candidate
            self.proposed.add(self.player_id)

        return await self._mutate(
            "select meme",
            lambda: self.gateway.propose_meme(self.room.id, self.player_id, meme_url, meme_name),
            apply,
            lambda candidate: self.channel.publish(
                RoomEventKind.MEME_SELECTED, MemeSelected(player_id=self.player_id, candidate_id=candidate.id)
            ),
        )

    async def vote_meme(self, candidate_id: str) -> bool:
        def apply(_):
            self.my_meme_vote = candidate_id
            self.meme_voted.add(self.player_id)

        return await self._mutate(
            "vote for meme",
            lambda: self.gateway.cast_meme_vote(self.room.id, self.player_id, candidate_id),
            apply,
            lambda _: self.channel.publish(
                RoomEventKind.MEME_VOTE_CAST,
                MemeVoteCast(voter_player_id=self.player_id, voted_for_candidate_id=candidate_id),
            ),
        )

    async def submit_caption(self, text: str, position_x: int = 50, position_y: int = 50) -> bool:
        def apply(caption: Caption):
            self.my_caption = caption
            self.captioned.add(self.player_id)

        return await self._mutate(
            "submit caption",
            lambda: self.gateway.submit_caption(self.room.id, self.player_id, text, position_x, position_y),
            apply,
            lambda caption: self.channel.publish(
                RoomEventKind.CAPTION_SUBMITTED, CaptionSubmitted(player_id=self.player_id, caption_id=caption.id)
            ),
        )

    async def vote_caption(self, caption_id: str) -> bool:
        def apply(_):
            self.my_caption_vote = caption_id
            self.caption_voted.add(self.player_id)

        return await self._mutate(
            "vote for caption",
            lambda: self.gateway.cast_caption_vote(self.room.id, self.player_id, caption_id),
            apply,
            lambda _: self.channel.publish(
                RoomEventKind.CAPTION_VOTE_CAST,
                CaptionVoteCast(voter_player_id=self.player_id, voted_for_caption_id=caption_id),
            ),
        )

    async def leave(self) -> bool:
        left = await self._mutate(
            "leave room",
            lambda: self.gateway.leave_room(self.room.id, self.player_id),
            lambda _: self.players.pop(self.player_id, None),
            lambda _: self.channel.publish(RoomEventKind.PLAYER_LEFT, PlayerLeft(player_id=self.player_id)),
        )
        if left:
            self._navigate(None)
            await self.unmount()
        return left

    async def play_again(self) -> bool:
        try:
            room = await self.gateway.reset_game(self.room.id, self.player_id)
        except ConflictError:
            logger.info(f"Room {self.room_code} was already reset")
            await self._sync_phase()
            return True
        except GatewayError as e:
            logger.warning(f"Could not reset room {self.room_code}: {e}")
            self.notify(Notification("Could not start a new game", e.message, "destructive"))
            return False
        if not self.mounted:
            return False
        for player_id in list(self.players):
            self._update_player(player_id, is_ready=False, current_score=0)
        await self._publish_phase(Phase.LOBBY, room.current_round_number)
        self._enter_phase(Phase.LOBBY, room.current_round_number)
        return True

    # Remote events

    def _handlers(self) -> Dict[RoomEventKind, Callable]:
        return {kind: getattr(self, name) for kind, name in EVENT_HANDLERS.items()}

    def _is_own(self, message: ChannelMessage) -> bool:
        return message.client_id is not None and message.client_id == self.channel.transport.client_id

    def _on_player_joined(self, payload: PlayerJoined, message: ChannelMessage):
        if self._is_own(message) or not self.mounted:
            return
        existing = self.players.get(payload.player_id)
        if existing is None:
            self.players[payload.player_id] = Player(
                id=payload.player_id,
                room_id=self.room.id,
                username=payload.player_name,
                avatar_src=payload.avatar_src,
            )
            self.notify(Notification("Player joined", f"{payload.player_name} joined the room"))
        else:
            self._update_player(payload.player_id, username=payload.player_name, avatar_src=payload.avatar_src)

    def _on_player_left(self, payload: PlayerLeft, message: ChannelMessage):
        if self._is_own(message) or not self.mounted:
            return
        player = self.players.pop(payload.player_id, None)
        if player is not None:
            self.notify(Notification("Player left", f"{player.username} left the room"))
        self._check_completion()

    def _on_ready_update(self, payload: PlayerReadyUpdate, message: ChannelMessage):
        if self._is_own(message) or not self.mounted:
            return
        self._update_player(payload.player_id, is_ready=payload.is_ready)
        self._check_completion()

    def _on_avatar_changed(self, payload: PlayerAvatarChanged, message: ChannelMessage):
        if self._is_own(message) or not self.mounted:
            return
        self._update_player(payload.player_id, avatar_src=payload.avatar_src)

    def _on_name_update(self, payload: PlayerNameUpdate, message: ChannelMessage):
        if self._is_own(message) or not self.mounted:
            return
        self._update_player(payload.player_id, username=payload.new_name)

    def _on_phase_changed(self, payload: GamePhaseChanged, message: ChannelMessage):
        if not self.mounted or payload.phase == self.phase:
            return
        if not can_transition(self.phase, payload.phase):
            logger.info(
                f"Ignoring out-of-order phase {payload.phase.value} in {self.room_code} "
                f"(local {self.phase.value}), re-reading the room"
            )
            self._spawn(self._sync_phase())
            return
        round_number = (payload.data or {}).get("roundNumber")
        if round_number is None:
            if payload.phase == Phase.MEME_SELECTION:
                round_number = 1 if self.phase == Phase.LOBBY else self.round_number + 1
            else:
                round_number = self.round_number
        self._enter_phase(payload.phase, int(round_number))

    def _on_meme_selected(self, payload: MemeSelected, message: ChannelMessage):
        self.proposed.add(payload.player_id)
        self._check_completion()

    def _on_meme_vote_cast(self, payload: MemeVoteCast, message: ChannelMessage):
        self.meme_voted.add(payload.voter_player_id)
        self._check_completion()

    def _on_caption_submitted(self, payload: CaptionSubmitted, message: ChannelMessage):
        self.captioned.add(payload.player_id)
        self._check_completion()

    def _on_caption_vote_cast(self, payload: CaptionVoteCast, message: ChannelMessage):
        self.caption_voted.add(payload.voter_player_id)
        self._check_completion()

    # Phases

    def _enter_phase(self, phase: Phase, round_number: Optional[int] = None):
        if not self.mounted:
            return
        phase = Phase(phase)
        new_round = round_number is not None and round_number != self.round_number
        if phase == self.phase and not new_round:
            return
        previous = self.phase
        self.phase = phase
        if round_number is not None:
            self.round_number = round_number
        if new_round or phase in (Phase.LOBBY, Phase.MEME_SELECTION):
            self._reset_round_state()
        if phase == Phase.LOBBY:
            self._starting = False
            self._tallied.clear()
            self._attempted.clear()
        logger.info(
            f"Room {self.room_code} moved from {previous.value if previous else None} "
            f"to {phase.value} (round {self.round_number})"
        )
        self._restart_countdown()
        self._navigate(phase)
        if phase == Phase.ROUND_RESULTS:
            self._spawn(self._load_results())

    def _reset_round_state(self):
        self.proposed.clear()
        self.meme_voted.clear()
        self.captioned.clear()
        self.caption_voted.clear()
        self.my_candidate = None
        self.my_caption = None
        self.my_meme_vote = None
        self.my_caption_vote = None
        self.highlighted_meme = None
        self.results = None

    async def _publish_phase(self, phase: Phase, round_number: int, **data):
        try:
            await self.channel.publish(
                RoomEventKind.GAME_PHASE_CHANGED,
                GamePhaseChanged(phase=phase, data={"roundNumber": round_number, **data}),
            )
        except TransportError as e:
            logger.warning(f"Could not broadcast phase {phase.value} in {self.room_code}: {e}")

    def _check_completion(self):
        """Start the next transition early once every player has done their part."""
        if not self.mounted or self.room is None or self.player_id not in self.players:
            return
        player_ids = set(self.players)
        if self.phase == Phase.LOBBY:
            ready_flags = {p.id: p.is_ready for p in self.players.values()}
            if not self._starting and lobby_can_start(ready_flags, self.min_players):
                self._starting = True
                self._spawn(self._start_game())
        elif self.phase == Phase.MEME_SELECTION and everyone_done(self.proposed, player_ids):
            self._spawn(self._advance(Phase.MEME_SELECTION, Phase.MEME_VOTING))
        elif self.phase == Phase.MEME_VOTING and everyone_done(self.meme_voted, player_ids):
            self._spawn(self._tally_memes())
        elif self.phase == Phase.CAPTION_ENTRY and everyone_done(self.captioned, player_ids):
            self._spawn(self._advance(Phase.CAPTION_ENTRY, Phase.CAPTION_VOTING))
        elif self.phase == Phase.CAPTION_VOTING:
            # nobody can vote for their own caption
            voters = {p for p in player_ids if self.captioned - {p}}
            if voters and everyone_done(self.caption_voted, voters):
                self._spawn(self._tally_captions())

    async def _start_game(self):
        self.notify(Notification("Everyone's ready!", "Starting the game..."))
        try:
            started = await self.gateway.start_game(self.room.id)
        except GatewayError as e:
            self._starting = False
            logger.warning(f"Could not start the game in {self.room_code}: {e}")
            self.notify(Notification("Could not start the game", e.message, "destructive"))
            return
        if not started:
            logger.info(f"Game in {self.room_code} was started by another player")
            await self._sync_phase()
            return
        await asyncio.sleep(self.timings.start_countdown)
        if not self.mounted:
            return
        await self._publish_phase(Phase.MEME_SELECTION, 1)
        self._enter_phase(Phase.MEME_SELECTION, 1)

    async def _advance(self, expected: Phase, target: Phase):
        key = (self.round_number, target.value)
        if key in self._attempted:
            return
        self._attempted.add(key)
        round_number = self.round_number
        try:
            await self.gateway.transition_phase(self.room.id, expected, target)
        except ConflictError:
            logger.debug(f"{target.value} in {self.room_code} was already reached by another player")
            await self._sync_phase()
            return
        except GatewayError as e:
            self._attempted.discard(key)
            logger.warning(f"Could not move {self.room_code} to {target.value}: {e}")
            return
        if not self.mounted:
            return
        await self._publish_phase(target, round_number)
        self._enter_phase(target, round_number)

    async def _tally_memes(self):
        key = (self.round_number, "memes")
        if key in self._tallied:
            return
        self._tallied.add(key)
        round_number = self.round_number
        try:
            winner = await self.gateway.tally_meme_votes(self.room.id, round_number)
        except ConflictError:
            logger.info(f"Meme votes for round {round_number} in {self.room_code} were already tallied")
            await self._sync_phase()
            return
        except GatewayError as e:
            self._tallied.discard(key)
            logger.warning(f"Could not tally meme votes in {self.room_code}: {e}")
            return
        if not self.mounted:
            return
        extra = {"memeUrl": winner.meme_url} if winner else {}
        await self._publish_phase(Phase.CAPTION_ENTRY, round_number, **extra)
        self._enter_phase(Phase.CAPTION_ENTRY, round_number)

    async def _tally_captions(self):
        key = (self.round_number, "captions")
        if key in self._tallied:
            return
        self._tallied.add(key)
        round_number = self.round_number
        try:
            results = await self.gateway.tally_caption_votes(self.room.id, round_number)
        except ConflictError:
            logger.info(f"Caption votes for round {round_number} in {self.room_code} were already tallied")
            await self._sync_phase()
            return
        except GatewayError as e:
            self._tallied.discard(key)
            logger.warning(f"Could not tally caption votes in {self.room_code}: {e}")
            self.notify(Notification("Could not tally votes", e.message, "destructive"))
            return
        if not self.mounted:
            return
        await self._publish_phase(Phase.ROUND_RESULTS, round_number)
        self._enter_phase(Phase.ROUND_RESULTS, round_number)
        self.results = results

    async def _advance_round(self):
        key = (self.round_number, "next-round")
        if key in self._attempted:
            return
        self._attempted.add(key)
        round_number = self.round_number
        try:
            target = await self.gateway.advance_to_next_round(self.room.id, round_number)
        except ConflictError:
            logger.debug(f"Round {round_number} in {self.room_code} was already advanced")
            await self._sync_phase()
            return
        except GatewayError as e:
            self._attempted.discard(key)
            logger.warning(f"Could not advance {self.room_code}: {e}")
            return
        if not self.mounted:
            return
        next_round = round_number + 1 if target == Phase.MEME_SELECTION else round_number
        await self._publish_phase(target, next_round)
        self._enter_phase(target, next_round)

    async def _auto_propose(self):
        if self.player_id in self.proposed:
            return
        option = self.highlighted_meme or (random.choice(self.meme_options) if self.meme_options else None)
        if option is None:
            return
        logger.info(f"Time is up, submitting a meme for {self.player_id} in {self.room_code}")
        await self.propose_meme(option.url, option.name)

    async def _on_countdown_elapsed(self, phase: Phase):
        if phase == Phase.MEME_SELECTION:
            await self._auto_propose()
            await self._advance(Phase.MEME_SELECTION, Phase.MEME_VOTING)
        elif phase == Phase.MEME_VOTING:
            await self._tally_memes()
        elif phase == Phase.CAPTION_ENTRY:
            await self._advance(Phase.CAPTION_ENTRY, Phase.CAPTION_VOTING)
        elif phase == Phase.CAPTION_VOTING:
            await self._tally_captions()
        elif phase == Phase.ROUND_RESULTS:
            await self._advance_round()

    def _restart_countdown(self):
        current = asyncio.current_task()
        if self._countdown_task is not None and self._countdown_task is not current:
            self._countdown_task.cancel()
        self._countdown_task = None
        self.deadline = None
        duration = self.timings.duration_for(self.phase) if self.phase else None
        if duration is None:
            return
        self.deadline = asyncio.get_running_loop().time() + duration
        self._countdown_task = asyncio.create_task(self._countdown(self.phase, self.round_number, duration))

    async def _countdown(self, phase: Phase, round_number: int, duration: float):
        await asyncio.sleep(duration)
        if not self.mounted or self.phase != phase or self.round_number != round_number:
            return
        logger.info(f"{phase.value} countdown elapsed in {self.room_code}")
        try:
            await self._on_countdown_elapsed(phase)
        except Exception as e:
            logger.error(f"Countdown action for {phase.value} in {self.room_code} failed: {e}", exc_info=True)

    # Polling

    async def _sync_phase(self):
        room = await self.gateway.get_room(self.room.id)
        if not self.mounted:
            return
        if room is None:
            self._leave_page("Room closed", "This room no longer exists.")
            return
        self.room = room
        if room.status != self.phase or room.current_round_number != self.round_number:
            self._enter_phase(room.status, room.current_round_number)

    async def _poll_once(self):
        await self._sync_phase()
        if not self.mounted:
            return
        players = await self.gateway.get_players(self.room.id)
        if not self.mounted:
            return
        self.players = {p.id: p for p in players}
        if self.player_id not in self.players:
            self._leave_page("Removed from room", "You are no longer part of this room.")
            return
        if self.phase in ROUND_PHASES:
            progress = await self.gateway.round_progress(self.room.id)
            if not self.mounted:
                return
            if progress is not None and progress.round_number == self.round_number:
                self.proposed.update(progress.proposed)
                self.meme_voted.update(progress.meme_voted)
                self.captioned.update(progress.captioned)
                self.caption_voted.update(progress.caption_voted)
        self._check_completion()

    async def _poll_loop(self):
        while self.mounted:
            await asyncio.sleep(self.timings.poll_interval)
            if not self.mounted:
                break
            try:
                await self._poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Polling room {self.room_code} failed: {e}", exc_info=True)

    async def _load_results(self):
        while self.mounted and self.phase == Phase.ROUND_RESULTS and self.results is None:
            try:
                results = await self.gateway.get_round_results(self.room.id, self.round_number)
            except GatewayError as e:
                logger.warning(f"Could not load results for {self.room_code}: {e}")
                results = None
            if not self.mounted:
                return
            if results is not None:
                self.results = results
                return
            await asyncio.sleep(self.timings.poll_interval)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task in {self.room_code} failed: {task.exception()}", exc_info=task.exception())
