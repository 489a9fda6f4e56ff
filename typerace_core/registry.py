"""Participant registry: joining rooms and reading participant state.

Participant status and round progress are written only by the round state
machine and the elimination engine; the registry owns creation (join) and
reads.
"""
from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, List

from .errors import InvalidTransition, NotFoundError, PreconditionFailed
from .rooms import RoomDirectory
from .store import DocumentStore, SetOp, eq_filters
from .types import PARTICIPANT_STATUSES, PARTICIPANTS, ROOMS
from .validation import JoinRoomCmd, Participant, parse_record, to_doc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JoinOutcome:
    participant: Participant
    rejoined: bool
    message: str | None = None


class ParticipantRegistry:
    def __init__(
        self,
        store: DocumentStore,
        rooms: RoomDirectory | None = None,
        clock: Callable[[], float] = time.time,
        max_participants: int | None = None,
    ) -> None:
        self.store = store
        self.rooms = rooms or RoomDirectory(store, clock)
        self.clock = clock
        self.max_participants = max_participants

    def get(self, participant_id: str) -> Participant | None:
        doc = self.store.get(PARTICIPANTS, participant_id)
        if doc is None:
            return None
        return parse_record(Participant, doc, key=participant_id)

    def require(self, participant_id: str) -> Participant:
        participant = self.get(participant_id)
        if participant is None:
            raise NotFoundError(f"participant {participant_id} not found")
        return participant

    def list_room(self, room_id: str, status: str | None = None) -> List[Participant]:
        filters = eq_filters(roomId=room_id, status=status) if status else eq_filters(roomId=room_id)
        docs = self.store.query(PARTICIPANTS, filters)
        return [parse_record(Participant, doc, key=doc.get("id")) for doc in docs]

    def status_counts(self, room_id: str) -> Dict[str, int]:
        counts = Counter(p.status for p in self.list_room(room_id))
        return {status: counts.get(status, 0) for status in PARTICIPANT_STATUSES}

    def join(self, cmd: JoinRoomCmd) -> JoinOutcome:
        """Join a room by code; keyed by participant id so re-entry is idempotent.

        Behavior:
            - Completed room → InvalidTransition.
            - Room already started: a participant already in this room re-enters
              unchanged; anyone else is rejected.
            - Room still waiting: the participant document is written fresh
              (status waiting, round 0), dropping state left from another room.
        """
        room = self.rooms.find_by_code(cmd.roomCode)
        if room.status == "completed":
            raise InvalidTransition("this room has completed the competition")

        existing = self.get(cmd.participantId)
        if room.status != "waiting" or room.currentRound >= 1:
            if existing is not None and existing.roomId == room.id:
                logger.info(f"[JoinRoom] {cmd.participantId} re-entered room {room.id} mid-competition")
                return JoinOutcome(existing, rejoined=True, message="Rejoined existing room")
            raise InvalidTransition("this room is no longer accepting new participants")

        rejoined = existing is not None and existing.roomId == room.id
        if not rejoined and self.max_participants is not None:
            if len(self.list_room(room.id)) >= self.max_participants:
                raise InvalidTransition(f"room {room.id} is full")

        participant = Participant(
            id=cmd.participantId,
            name=cmd.name,
            roomId=room.id,
            status="waiting",
            currentRound=0,
            eliminatedRound=None,
            finalRank=None,
            joinedAt=self.clock(),
            updatedAt=None,
        )
        try:
            self.store.batch_write(
                [
                    # only while the room is still waiting for round 1
                    SetOp(ROOMS, room.id, {}, merge=True, expect={"status": "waiting", "currentRound": 0}),
                    SetOp(PARTICIPANTS, participant.id, to_doc(participant)),
                ]
            )
        except PreconditionFailed as e:
            raise InvalidTransition("this room is no longer accepting new participants") from e
        logger.info(f"[JoinRoom] {participant.id} joined room {room.id} as {participant.name!r}")
        return JoinOutcome(
            participant,
            rejoined=rejoined,
            message="Rejoined room - status reset" if rejoined else None,
        )
