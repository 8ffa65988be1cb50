from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping, Optional

from constants import (
    CAPTION_ENTRY_DURATION,
    CAPTION_VOTING_DURATION,
    MEME_SELECTION_DURATION,
    MEME_VOTING_DURATION,
    POLL_INTERVAL_SECONDS,
    ROUND_RESULTS_DURATION,
    START_COUNTDOWN_SECONDS,
)


class Phase(str, Enum):
    LOBBY = "lobby"
    MEME_SELECTION = "meme-selection"
    MEME_VOTING = "meme-voting"
    CAPTION_ENTRY = "caption-entry"
    CAPTION_VOTING = "caption-voting"
    ROUND_RESULTS = "round-results"
    FINAL_RESULTS = "final-results"


TRANSITIONS: Dict[Phase, FrozenSet[Phase]] = {
    Phase.LOBBY: frozenset({Phase.MEME_SELECTION}),
    Phase.MEME_SELECTION: frozenset({Phase.MEME_VOTING}),
    Phase.MEME_VOTING: frozenset({Phase.CAPTION_ENTRY}),
    Phase.CAPTION_ENTRY: frozenset({Phase.CAPTION_VOTING}),
    Phase.CAPTION_VOTING: frozenset({Phase.ROUND_RESULTS}),
    Phase.ROUND_RESULTS: frozenset({Phase.MEME_SELECTION, Phase.FINAL_RESULTS}),
    # "play again" is the only way out of the final results
    Phase.FINAL_RESULTS: frozenset({Phase.LOBBY}),
}


def can_transition(current: Phase, target: Phase) -> bool:
    return Phase(target) in TRANSITIONS[Phase(current)]


def next_after_results(current_round: int, total_rounds: int) -> Phase:
    if current_round < total_rounds:
        return Phase.MEME_SELECTION
    return Phase.FINAL_RESULTS


@dataclass(frozen=True)
class PhaseTimings:
    meme_selection: float = MEME_SELECTION_DURATION
    meme_voting: float = MEME_VOTING_DURATION
    caption_entry: float = CAPTION_ENTRY_DURATION
    caption_voting: float = CAPTION_VOTING_DURATION
    round_results: float = ROUND_RESULTS_DURATION
    poll_interval: float = POLL_INTERVAL_SECONDS
    start_countdown: float = START_COUNTDOWN_SECONDS

    def duration_for(self, phase: Phase) -> Optional[float]:
        """Countdown length for a phase, or None for phases without one."""
        return {
            Phase.MEME_SELECTION: self.meme_selection,
            Phase.MEME_VOTING: self.meme_voting,
            Phase.CAPTION_ENTRY: self.caption_entry,
            Phase.CAPTION_VOTING: self.caption_voting,
            Phase.ROUND_RESULTS: self.round_results,
        }.get(Phase(phase))


def lobby_can_start(ready_flags: Mapping[str, bool], min_players: int) -> bool:
    """All present players are ready and there are at least `min_players` of them."""
    present = len(ready_flags)
    ready = sum(1 for is_ready in ready_flags.values() if is_ready)
    return present >= max(min_players, 1) and ready == present


def everyone_done(done_ids: Iterable[str], player_ids: Iterable[str]) -> bool:
    players = set(player_ids)
    return bool(players) and players <= set(done_ids)
