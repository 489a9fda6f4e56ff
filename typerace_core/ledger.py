"""Result ledger: append-only, one Result per (participant, room, round).

Results are keyed by ``<roomId>:r<round>:<participantId>`` and written with a
create-if-absent op, so concurrent duplicate submissions collapse onto the
first recorded Result. There is no update or delete.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, List

from .errors import DuplicateSubmission, InvalidTransition, PreconditionFailed, TransientStoreError
from .scoring import Metrics
from .store import CreateOp, DocumentStore, SetOp, eq_filters
from .types import PARTICIPANTS, RESULTS
from .validation import Result, parse_record, result_key

logger = logging.getLogger(__name__)


class ResultLedger:
    def __init__(self, store: DocumentStore, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.clock = clock

    def get(self, room_id: str, round_number: int, participant_id: str) -> Result | None:
        key = result_key(room_id, round_number, participant_id)
        doc = self.store.get(RESULTS, key)
        if doc is None:
            return None
        return parse_record(Result, doc, key=key)

    def record(
        self,
        *,
        participant_id: str,
        room_id: str,
        round_number: int,
        user_name: str,
        metrics: Metrics,
        elapsed_seconds: float,
    ) -> Result:
        """Append a Result unless one exists for the key.

        The create is committed together with a guard on the participant's
        status, so no Result lands once the round's decision has moved the
        participant on.

        Raises:
            DuplicateSubmission: an earlier submission was already recorded;
                the exception carries that first Result unchanged.
            InvalidTransition: the participant is no longer active in the round.
        """
        key = result_key(room_id, round_number, participant_id)
        result = Result(
            id=key,
            participantId=participant_id,
            roomId=room_id,
            round=round_number,
            userName=user_name,
            elapsedSeconds=elapsed_seconds,
            submittedAt=self.clock(),
            **metrics.to_doc(),
        )
        try:
            self.store.batch_write(
                [
                    CreateOp(RESULTS, key, result.model_dump()),
                    SetOp(
                        PARTICIPANTS,
                        participant_id,
                        {},
                        merge=True,
                        expect={"status": "active", "currentRound": round_number},
                    ),
                ]
            )
        except PreconditionFailed as e:
            if e.collection == PARTICIPANTS:
                raise InvalidTransition(
                    f"participant {participant_id} is no longer active in round {round_number}"
                ) from e
            existing = self.get(room_id, round_number, participant_id)
            if existing is None:
                raise TransientStoreError(f"result {key} reported present but could not be read")
            logger.info(f"[Ledger] Duplicate submission for {key}")
            raise DuplicateSubmission(f"result {key} already recorded", existing=existing) from e
        logger.info(
            f"[Ledger] Recorded {key}: {metrics.wpm} WPM, {metrics.accuracy}% accuracy, score {metrics.final_score}"
        )
        return result

    def list_round(self, room_id: str, round_number: int) -> List[Result]:
        docs = self.store.query(RESULTS, eq_filters(roomId=room_id, round=round_number))
        return [parse_record(Result, doc, key=doc.get("id")) for doc in docs]

    def list_room(self, room_id: str) -> List[Result]:
        docs = self.store.query(RESULTS, eq_filters(roomId=room_id), order_by="round")
        return [parse_record(Result, doc, key=doc.get("id")) for doc in docs]
