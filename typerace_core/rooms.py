"""Room and RoundConfig records: creation, lookup and config edits."""
from __future__ import annotations

import logging
import time
import uuid
from typing import Callable

from .errors import InvalidTransition, NotFoundError, PreconditionFailed, ValidationError
from .store import CreateOp, DocumentStore, SetOp
from .types import ROOM_CODES, ROOM_CONFIG, ROOMS
from .validation import (
    CreateRoomCmd,
    Room,
    RoundConfig,
    RoundSettings,
    parse_record,
    round_key,
    to_doc,
)

logger = logging.getLogger(__name__)


class RoomDirectory:
    def __init__(self, store: DocumentStore, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.clock = clock

    def create_room(self, cmd: CreateRoomCmd, room_id: str | None = None) -> Room:
        """Create a Room and its RoundConfig in one batch.

        The room code is reserved with a create-if-absent write, so two admins
        racing for the same code cannot both succeed.

        Raises:
            ValidationError: if the code is already taken.
        """
        room_id = room_id or uuid.uuid4().hex
        now = self.clock()
        room = Room(
            id=room_id,
            roomCode=cmd.roomCode,
            roomName=cmd.roomName,
            status="waiting",
            currentRound=0,
            totalRounds=len(cmd.rounds),
            createdBy=cmd.createdBy,
            createdAt=now,
            roundStartedAt=None,
            roundEndedAt=None,
            updatedAt=now,
        )
        config = RoundConfig(
            roomId=room_id,
            rounds={round_key(i): settings for i, settings in enumerate(cmd.rounds, start=1)},
        )
        try:
            self.store.batch_write(
                [
                    CreateOp(ROOM_CODES, cmd.roomCode, {"roomId": room_id, "createdAt": now}),
                    CreateOp(ROOMS, room_id, to_doc(room)),
                    CreateOp(ROOM_CONFIG, room_id, to_doc(config)),
                ]
            )
        except PreconditionFailed as e:
            if e.collection == ROOM_CODES:
                raise ValidationError(f"room code {cmd.roomCode} is already in use") from e
            raise ValidationError(f"room {room_id} already exists") from e
        logger.info(f"Created room {room_id} ({cmd.roomCode}) with {room.totalRounds} round(s)")
        return room

    def get_room(self, room_id: str) -> Room:
        doc = self.store.get(ROOMS, room_id)
        if doc is None:
            raise NotFoundError(f"room {room_id} not found")
        return parse_record(Room, doc, key=room_id)

    def find_by_code(self, room_code: str) -> Room:
        reservation = self.store.get(ROOM_CODES, room_code)
        if reservation is None:
            raise NotFoundError(f"no room with code {room_code}")
        return self.get_room(reservation["roomId"])

    def get_config(self, room_id: str) -> RoundConfig:
        doc = self.store.get(ROOM_CONFIG, room_id)
        if doc is None:
            raise NotFoundError(f"round config for room {room_id} not found")
        return parse_record(RoundConfig, doc, key=room_id)

    def round_settings(self, room_id: str, round_number: int) -> RoundSettings:
        settings = self.get_config(room_id).for_round(round_number)
        if settings is None:
            raise NotFoundError(f"room {room_id} has no configuration for round {round_number}")
        return settings

    def update_round_config(self, room_id: str, round_number: int, settings: RoundSettings) -> RoundConfig:
        """Replace one round's settings while that round has not started yet."""
        room = self.get_room(room_id)
        config = self.get_config(room_id)
        key = round_key(round_number)
        if key not in config.rounds:
            raise NotFoundError(f"room {room_id} has no round {round_number}")
        if room.currentRound >= round_number:
            raise InvalidTransition(f"round {round_number} has already started; its config is frozen")
        rounds = dict(config.rounds)
        rounds[key] = settings
        updated = RoundConfig(roomId=room_id, rounds=rounds)
        try:
            self.store.batch_write(
                [
                    # guard: the room must not have moved on since we checked
                    SetOp(ROOMS, room_id, {}, merge=True, expect={"currentRound": room.currentRound}),
                    SetOp(ROOM_CONFIG, room_id, to_doc(updated)),
                ]
            )
        except PreconditionFailed as e:
            raise InvalidTransition(f"room {room_id} changed while updating round {round_number}") from e
        logger.info(f"Updated config for room {room_id} round {round_number}")
        return updated
