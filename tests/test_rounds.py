from __future__ import annotations

import pytest

from typerace_core import InMemoryStore, ParticipantRegistry, ResultLedger, RoomDirectory, RoundStateMachine
from typerace_core.elimination import EliminationEngine
from typerace_core.errors import InvalidTransition, ValidationError
from typerace_core.rounds import allowed_start_predecessors, parse_status, screen_for_status, status_for
from typerace_core.scoring import score
from typerace_core.validation import CreateRoomCmd, JoinRoomCmd


class _Clock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


def _setup(rounds: int = 2, qualify: int = 1, players=("p1", "p2", "p3")):
    store = InMemoryStore()
    clock = _Clock()
    rooms = RoomDirectory(store, clock)
    registry = ParticipantRegistry(store, rooms, clock)
    ledger = ResultLedger(store, clock)
    machine = RoundStateMachine(store, rooms, clock)
    engine = EliminationEngine(store, machine, ledger, clock=clock)
    rooms.create_room(
        CreateRoomCmd(
            roomCode="ROUND1",
            roomName="Heats",
            createdBy="admin",
            rounds=[{"paragraph": "the quick fox", "timeLimit": 30, "qualifyCount": qualify}] * rounds,
        ),
        room_id="room1",
    )
    for pid in players:
        registry.join(JoinRoomCmd(roomCode="ROUND1", participantId=pid, name=pid.upper()))
    return machine, engine, registry, ledger


def _submit(ledger: ResultLedger, pid: str, round_number: int, typed: str) -> None:
    ledger.record(
        participant_id=pid,
        room_id="room1",
        round_number=round_number,
        user_name=pid.upper(),
        metrics=score("the quick fox", typed, 30),
        elapsed_seconds=30.0,
    )


def test_status_helpers():
    assert status_for("active", 2) == "round2_active"
    assert status_for("waiting", 0) == "waiting"
    assert parse_status("round3_leaderboard").phase == "leaderboard"
    assert parse_status("round3_leaderboard").round == 3
    assert parse_status("completed").round == 0
    assert allowed_start_predecessors(1) == ("waiting",)
    assert allowed_start_predecessors(2) == ("round2_waiting", "round1_leaderboard")
    assert screen_for_status("round1_active") == "typing"
    assert screen_for_status("round1_result") == "result"
    assert screen_for_status("completed") == "completed"
    assert screen_for_status("garbage") == "waiting"
    with pytest.raises(ValueError):
        parse_status("round0_active")


def test_start_round_activates_waiting_participants():
    machine, _, registry, _ = _setup()
    room = machine.start_round("room1", 1)
    assert room.status == "round1_active"
    assert room.currentRound == 1
    assert room.roundStartedAt is not None
    assert {p.status for p in registry.list_room("room1")} == {"active"}
    assert {p.currentRound for p in registry.list_room("room1")} == {1}


def test_duplicate_start_is_rejected():
    machine, _, _, _ = _setup()
    machine.start_round("room1", 1)
    with pytest.raises(InvalidTransition):
        machine.start_round("room1", 1)


def test_cannot_skip_rounds():
    machine, _, _, _ = _setup(rounds=3)
    with pytest.raises(InvalidTransition):
        machine.start_round("room1", 2)


def test_round_outside_configured_range():
    machine, _, _, _ = _setup(rounds=2)
    with pytest.raises(ValidationError):
        machine.start_round("room1", 3)


def test_presentation_requires_processed_round():
    machine, _, _, _ = _setup()
    machine.start_round("room1", 1)
    with pytest.raises(InvalidTransition):
        machine.advance_presentation("room1", 1)
    with pytest.raises(InvalidTransition):
        machine.show_leaderboard("room1", 1)


def test_full_contest_progression():
    machine, engine, registry, ledger = _setup(rounds=2, qualify=2)
    machine.start_round("room1", 1)
    _submit(ledger, "p1", 1, "the quick fox")
    _submit(ledger, "p2", 1, "the quick fix")
    _submit(ledger, "p3", 1, "teh")

    report = engine.eliminate("room1", 1)
    assert report.already_processed is False
    assert report.outcome.qualified == ["p1", "p2"]
    assert report.outcome.eliminated == ["p3"]
    assert machine.rooms.get_room("room1").status == "round1_result"

    assert machine.advance_presentation("room1", 1).status == "round1_leaderboard"
    assert machine.advance_presentation("room1", 1).status == "round2_waiting"

    machine.start_round("room1", 2)
    statuses = {p.id: p.status for p in registry.list_room("room1")}
    assert statuses == {"p1": "active", "p2": "active", "p3": "eliminated"}
    assert registry.require("p3").eliminatedRound == 1

    _submit(ledger, "p2", 2, "the quick fox")
    engine.eliminate("room1", 2)
    machine.advance_presentation("room1", 2)
    room = machine.advance_presentation("room1", 2)
    assert room.status == "completed"

    final = {p.id: p for p in registry.list_room("room1")}
    assert final["p2"].status == "qualified"
    assert final["p2"].finalRank == 1
    assert final["p1"].status == "eliminated"
    assert final["p1"].eliminatedRound == 2
    # eliminated in round 1, never touched again
    assert final["p3"].eliminatedRound == 1
    assert final["p3"].currentRound == 1


def test_round_two_can_start_straight_from_leaderboard():
    machine, engine, _, ledger = _setup(rounds=2, qualify=1)
    machine.start_round("room1", 1)
    _submit(ledger, "p1", 1, "the quick fox")
    engine.eliminate("room1", 1)
    machine.show_leaderboard("room1", 1)
    room = machine.start_round("room1", 2)
    assert room.status == "round2_active"


def test_last_round_completes_contest():
    machine, engine, _, ledger = _setup(rounds=1, qualify=1)
    machine.start_round("room1", 1)
    _submit(ledger, "p1", 1, "the quick fox")
    engine.eliminate("room1", 1)
    machine.advance_presentation("room1", 1)
    assert machine.advance_presentation("room1", 1).status == "completed"
    with pytest.raises(InvalidTransition):
        machine.start_round("room1", 1)
