"""Round state machine.

Room lifecycle for rounds r = 1..R:

    waiting -> round<r>_active -> round<r>_result -> round<r>_leaderboard
            -> round<r+1>_waiting | completed

Every transition is a conditional write: the room update carries the status the
caller observed as a precondition, so a stale or duplicate trigger fails with
``InvalidTransition`` instead of re-applying. The machine keeps no state of its
own; everything observable lives in the store.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Sequence, Tuple

from .errors import InvalidTransition, PreconditionFailed, TransientStoreError, ValidationError
from .rooms import RoomDirectory
from .store import DocumentStore, SetOp, WriteOp, eq_filters
from .types import PARTICIPANTS, ROOM_STATUS_RE, ROOMS
from .validation import Participant, Room, parse_record

logger = logging.getLogger(__name__)

WAITING = "waiting"
COMPLETED = "completed"
PHASES = ("active", "result", "leaderboard", "waiting")


@dataclass(frozen=True)
class RoomStatus:
    phase: str  # 'waiting' | 'active' | 'result' | 'leaderboard' | 'completed'
    round: int  # 0 for the initial waiting state and for completed

    def __str__(self) -> str:
        return status_for(self.phase, self.round)


def status_for(phase: str, round_number: int) -> str:
    if phase in (WAITING, COMPLETED) and round_number == 0:
        return phase
    if phase not in PHASES or round_number < 1:
        raise ValueError(f"invalid status parts: phase={phase!r} round={round_number}")
    return f"round{round_number}_{phase}"


def parse_status(status: str) -> RoomStatus:
    """Parse a stored room status.

    Examples:
        - "waiting" → RoomStatus("waiting", 0)
        - "round2_leaderboard" → RoomStatus("leaderboard", 2)
    """
    match = ROOM_STATUS_RE.match(status or "")
    if not match:
        raise ValueError(f"unknown room status {status!r}")
    if match.group(1) is None:
        return RoomStatus(status, 0)
    return RoomStatus(match.group(2), int(match.group(1)))


def allowed_start_predecessors(round_number: int) -> Tuple[str, ...]:
    if round_number < 1:
        raise ValueError("round numbers start at 1")
    if round_number == 1:
        return (WAITING,)
    return (
        status_for("waiting", round_number),
        status_for("leaderboard", round_number - 1),
    )


def screen_for_status(status: str) -> str:
    """Client screen for a room status: waiting | typing | result | leaderboard | completed."""
    try:
        parsed = parse_status(status)
    except ValueError:
        return "waiting"
    if parsed.phase == "active":
        return "typing"
    return parsed.phase


def can_activate(participant: Participant, round_number: int) -> bool:
    """Whether a participant may become active for ``round_number``."""
    if participant.status == "eliminated":
        return False
    if round_number == 1:
        return participant.status == "waiting"
    return participant.status == "qualified" and participant.currentRound == round_number - 1


def participant_guard(participant: Participant) -> dict:
    """Precondition pinning the participant state a decision was based on."""
    return {"status": participant.status, "currentRound": participant.currentRound}


class RoundStateMachine:
    def __init__(
        self,
        store: DocumentStore,
        rooms: RoomDirectory | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.rooms = rooms or RoomDirectory(store, clock)
        self.clock = clock

    def room_participants(self, room_id: str) -> List[Participant]:
        docs = self.store.query(PARTICIPANTS, eq_filters(roomId=room_id))
        return [parse_record(Participant, doc, key=doc.get("id")) for doc in docs]

    def _commit(self, room: Room, ops: Sequence[WriteOp]) -> None:
        """Commit ``ops``; a failed room precondition becomes InvalidTransition."""
        try:
            self.store.batch_write(ops)
        except PreconditionFailed as e:
            if e.collection == ROOMS and e.key == room.id:
                current = self.store.get(ROOMS, room.id) or {}
                raise InvalidTransition(
                    f"room {room.id} moved from {room.status} to {current.get('status')} concurrently"
                ) from e
            raise

    def _room_op(self, room: Room, changes: dict) -> SetOp:
        return SetOp(
            ROOMS,
            room.id,
            {**changes, "updatedAt": self.clock()},
            merge=True,
            expect={"status": room.status, "currentRound": room.currentRound},
        )

    def start_round(self, room_id: str, round_number: int) -> Room:
        """Move the room into ``round<r>_active`` and activate eligible participants.

        Raises:
            ValidationError: round number out of range.
            NotFoundError: room or round config missing.
            InvalidTransition: room not in an allowed predecessor state.
            TransientStoreError: a participant changed concurrently (retry).
        """
        room = self.rooms.get_room(room_id)
        if round_number < 1 or round_number > room.totalRounds:
            raise ValidationError(f"round {round_number} outside 1..{room.totalRounds}")
        self.rooms.round_settings(room_id, round_number)

        allowed = allowed_start_predecessors(round_number)
        if room.status not in allowed:
            raise InvalidTransition(
                f"cannot start round {round_number} from state {room.status} (allowed: {', '.join(allowed)})"
            )

        now = self.clock()
        new_status = status_for("active", round_number)
        ops: List[WriteOp] = [
            self._room_op(
                room,
                {
                    "status": new_status,
                    "currentRound": round_number,
                    "roundStartedAt": now,
                    "roundEndedAt": None,
                },
            )
        ]
        activated = 0
        for participant in self.room_participants(room_id):
            if not can_activate(participant, round_number):
                if participant.status != "eliminated":
                    logger.warning(
                        f"Participant {participant.id} ({participant.status}, round {participant.currentRound}) "
                        f"not eligible for round {round_number}"
                    )
                continue
            ops.append(
                SetOp(
                    PARTICIPANTS,
                    participant.id,
                    {"status": "active", "currentRound": round_number, "finalRank": None, "updatedAt": now},
                    merge=True,
                    expect=participant_guard(participant),
                )
            )
            activated += 1

        try:
            self._commit(room, ops)
        except PreconditionFailed as e:
            raise TransientStoreError(f"participant {e.key} changed while starting round; retry") from e
        logger.info(f"[RoomState] Room {room_id}: {room.status} → {new_status}, {activated} participant(s) active")
        return self.rooms.get_room(room_id)

    def advance_after_elimination(
        self,
        room_id: str,
        round_number: int,
        extra_ops: Sequence[WriteOp] = (),
    ) -> Room:
        """``round<r>_active → round<r>_result``, committed atomically with ``extra_ops``.

        ``extra_ops`` are checked before the room op, so a failed precondition on
        one of them surfaces as ``PreconditionFailed`` for that op.
        """
        room = self.rooms.get_room(room_id)
        expected = status_for("active", round_number)
        if room.status != expected:
            raise InvalidTransition(f"cannot end round {round_number} from state {room.status}")
        new_status = status_for("result", round_number)
        ops = list(extra_ops)
        ops.append(self._room_op(room, {"status": new_status, "roundEndedAt": self.clock()}))
        self._commit(room, ops)
        logger.info(f"[RoomState] Room {room_id}: {expected} → {new_status}")
        return self.rooms.get_room(room_id)

    def show_leaderboard(self, room_id: str, round_number: int) -> Room:
        room = self.rooms.get_room(room_id)
        expected = status_for("result", round_number)
        if room.status != expected:
            raise InvalidTransition(f"cannot show round {round_number} leaderboard from state {room.status}")
        new_status = status_for("leaderboard", round_number)
        self._commit(room, [self._room_op(room, {"status": new_status})])
        logger.info(f"[RoomState] Room {room_id}: {expected} → {new_status}")
        return self.rooms.get_room(room_id)

    def finish_round(self, room_id: str, round_number: int) -> Room:
        """Leave the leaderboard: next round's waiting state, or completed."""
        room = self.rooms.get_room(room_id)
        expected = status_for("leaderboard", round_number)
        if room.status != expected:
            raise InvalidTransition(f"cannot finish round {round_number} from state {room.status}")
        qualified = [
            p for p in self.room_participants(room_id)
            if p.status == "qualified" and p.currentRound == round_number
        ]
        if round_number >= room.totalRounds or not qualified:
            new_status = COMPLETED
        else:
            new_status = status_for("waiting", round_number + 1)
        self._commit(room, [self._room_op(room, {"status": new_status})])
        logger.info(f"[RoomState] Room {room_id}: {expected} → {new_status}")
        return self.rooms.get_room(room_id)

    def advance_presentation(self, room_id: str, round_number: int) -> Room:
        """One presentation step: result → leaderboard, or leaderboard → next."""
        room = self.rooms.get_room(room_id)
        status = parse_status(room.status)
        if status.round != round_number:
            raise InvalidTransition(f"room {room_id} is in {room.status}, not round {round_number}")
        if status.phase == "result":
            return self.show_leaderboard(room_id, round_number)
        if status.phase == "leaderboard":
            return self.finish_round(room_id, round_number)
        raise InvalidTransition(f"nothing to present from state {room.status}")


__all__ = [
    "RoomStatus",
    "RoundStateMachine",
    "allowed_start_predecessors",
    "can_activate",
    "parse_status",
    "screen_for_status",
    "status_for",
]
