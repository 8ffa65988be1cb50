import pytest

from errors import MalformedPayloadError
from events import (
    EVENT_PAYLOADS,
    GamePhaseChanged,
    PlayerReadyUpdate,
    RoomEventKind,
    dump_payload,
    parse_payload,
    to_kind,
)
from phases import Phase


def test_every_kind_has_a_payload_model():
    assert set(EVENT_PAYLOADS) == set(RoomEventKind)
    assert len(RoomEventKind) == 10


def test_wire_names():
    assert RoomEventKind.MEME_SELECTED.value == "meme-selected-for-round"
    assert to_kind("caption-vote-cast") == RoomEventKind.CAPTION_VOTE_CAST


def test_unknown_kind_is_malformed():
    with pytest.raises(MalformedPayloadError):
        to_kind("player-exploded")


def test_sample_payloads_validate(sample_payloads):
    for kind, data in sample_payloads.items():
        payload = parse_payload(kind, data)
        assert isinstance(payload, EVENT_PAYLOADS[kind])
        assert dump_payload(payload) == data


def test_python_names_are_accepted():
    payload = parse_payload(RoomEventKind.PLAYER_READY_UPDATE, {"player_id": "p1", "is_ready": False})
    assert dump_payload(payload) == {"playerId": "p1", "isReady": False}


def test_model_instance_passes_through():
    payload = PlayerReadyUpdate(player_id="p1", is_ready=True)
    assert parse_payload("player-ready-update", payload) is payload


def test_wrong_model_for_kind_is_rejected():
    with pytest.raises(MalformedPayloadError):
        parse_payload(RoomEventKind.PLAYER_LEFT, PlayerReadyUpdate(player_id="p1", is_ready=True))


@pytest.mark.parametrize(
    "kind, data",
    [
        (RoomEventKind.PLAYER_READY_UPDATE, {"playerId": "p1"}),
        (RoomEventKind.PLAYER_JOINED, {"playerId": "p1", "playerName": ""}),
        (RoomEventKind.GAME_PHASE_CHANGED, {"phase": "halftime"}),
        (RoomEventKind.CAPTION_VOTE_CAST, "not an object"),
        (RoomEventKind.PLAYER_LEFT, None),
    ],
)
def test_malformed_payloads(kind, data):
    with pytest.raises(MalformedPayloadError):
        parse_payload(kind, data)


def test_unknown_fields_are_ignored():
    payload = parse_payload(RoomEventKind.PLAYER_LEFT, {"playerId": "p1", "reason": "tab closed"})
    assert dump_payload(payload) == {"playerId": "p1"}


def test_phase_change_without_data():
    payload = parse_payload(RoomEventKind.GAME_PHASE_CHANGED, {"phase": "meme-selection"})
    assert isinstance(payload, GamePhaseChanged)
    assert payload.phase == Phase.MEME_SELECTION
    assert dump_payload(payload) == {"phase": "meme-selection"}
