"""Round lifecycle coordinator: the public entry points of the core.

Every entry point returns an ``Outcome`` (success flag + value or error detail)
instead of raising for contest states. Transient store failures are retried
with exponential backoff; the idempotency of each operation is what makes the
blind retry safe. Conflicts that have a previous outcome resolve to it:
a duplicate submission returns the first Result's metrics, and a repeated
``end_round`` returns the stored round outcome.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Tuple, TypeVar

from .config import CoreSettings, get_settings
from .elimination import EliminationEngine, EliminationReport
from .errors import (
    CoreError,
    DuplicateSubmission,
    ErrorDetail,
    InvalidTransition,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from .ledger import ResultLedger
from .registry import JoinOutcome, ParticipantRegistry
from .rooms import RoomDirectory
from .rounds import RoundStateMachine
from .scoring import Metrics, coerce_elapsed, score
from .store import DocTarget, DocumentStore, InMemoryStore, QueryTarget, Snapshot, eq_filters
from .subscriptions import open_subscription
from .types import PARTICIPANTS, RESULTS, ROOMS
from .validation import (
    CreateRoomCmd,
    InputSanitizer,
    JoinRoomCmd,
    Result,
    Room,
    RoundConfig,
    RoundRef,
    RoundSettings,
    SubmitResultCmd,
)
from .views import LeaderboardRow, RoomStatistics, room_statistics, round_leaderboard

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a coordinator call."""

    ok: bool
    value: T | None = None
    error: ErrorDetail | None = None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: ErrorDetail) -> "Outcome[T]":
        return cls(ok=False, error=error)


@dataclass(frozen=True)
class SubmissionOutcome:
    metrics: Metrics
    already_submitted: bool
    result: Result


def retry_transient(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Call ``fn``, retrying ``TransientStoreError`` with exponential backoff."""
    for attempt in range(attempts):
        try:
            return fn()
        except TransientStoreError as e:
            if attempt == attempts - 1:
                raise
            delay = base_delay * (2 ** attempt)
            logger.warning(f"{label} failed transiently ({e.message}); retry {attempt + 1}/{attempts - 1} in {delay}s")
            sleep(delay)
    raise AssertionError("unreachable")


class RoundCoordinator:
    def __init__(
        self,
        store: DocumentStore | None = None,
        settings: CoreSettings | None = None,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        if store is None:
            store = InMemoryStore.from_settings(self.settings)
        self.store = store
        self.clock = clock
        self.sleep = sleep
        self.rooms = RoomDirectory(store, clock)
        self.registry = ParticipantRegistry(
            store, self.rooms, clock, max_participants=self.settings.max_participants_per_room
        )
        self.ledger = ResultLedger(store, clock)
        self.machine = RoundStateMachine(store, self.rooms, clock)
        self.engine = EliminationEngine(
            store,
            self.machine,
            self.ledger,
            epsilon=self.settings.equality_epsilon,
            policy=self.settings.ranking_policy,
            clock=clock,
        )

    def _run(self, label: str, fn: Callable[[], T]) -> Outcome[T]:
        try:
            value = retry_transient(
                fn,
                attempts=self.settings.retry_attempts,
                base_delay=self.settings.retry_base_delay_seconds,
                sleep=self.sleep,
                label=label,
            )
        except CoreError as e:
            logger.warning(f"[{label}] {e.kind}: {e.message}")
            return Outcome.failure(e.detail())
        return Outcome.success(value)

    # ---- admin ----

    def create_room(self, payload: CreateRoomCmd | Dict[str, Any], room_id: str | None = None) -> Outcome[Room]:
        def action() -> Room:
            cmd = payload if isinstance(payload, CreateRoomCmd) else InputSanitizer.validate(CreateRoomCmd, payload)
            for index, settings in enumerate(cmd.rounds, start=1):
                if settings.timeLimit > self.settings.max_time_limit:
                    raise ValidationError(f"round {index} time limit exceeds {self.settings.max_time_limit}s")
            return self.rooms.create_room(cmd, room_id)

        return self._run("CreateRoom", action)

    def update_round_config(
        self, room_id: str, round_number: int, settings: RoundSettings | Dict[str, Any]
    ) -> Outcome[RoundConfig]:
        def action() -> RoundConfig:
            validated = settings if isinstance(settings, RoundSettings) else InputSanitizer.validate(RoundSettings, settings)
            return self.rooms.update_round_config(room_id, round_number, validated)

        return self._run("UpdateRoundConfig", action)

    # ---- round triggers ----

    def start_round(self, room_id: str, round_number: int) -> Outcome[Room]:
        def action() -> Room:
            ref = InputSanitizer.validate(RoundRef, {"roomId": room_id, "round": round_number})
            return self.machine.start_round(ref.roomId, ref.round)

        return self._run("StartRound", action)

    def end_round(self, room_id: str, round_number: int) -> Outcome[EliminationReport]:
        """Timer- or admin-triggered round end; safe to call repeatedly or concurrently."""
        def action() -> EliminationReport:
            ref = InputSanitizer.validate(RoundRef, {"roomId": room_id, "round": round_number})
            return self.engine.eliminate(ref.roomId, ref.round)

        return self._run("EndRound", action)

    def advance_presentation(self, room_id: str, round_number: int) -> Outcome[Room]:
        return self._run("Presentation", lambda: self.machine.advance_presentation(room_id, round_number))

    # ---- participants ----

    def join_room(self, room_code: str, participant_id: str, name: str) -> Outcome[JoinOutcome]:
        def action() -> JoinOutcome:
            cmd = InputSanitizer.validate(
                JoinRoomCmd, {"roomCode": room_code, "participantId": participant_id, "name": name}
            )
            return self.registry.join(cmd)

        return self._run("JoinRoom", action)

    def submit_result(
        self,
        participant_id: str,
        room_id: str,
        round_number: int,
        reference_text: str,
        submitted_text: str,
        elapsed_seconds: Any,
    ) -> Outcome[SubmissionOutcome]:
        """Score and record a submission; duplicates return the first Result."""
        def action() -> SubmissionOutcome:
            cmd = InputSanitizer.validate(
                SubmitResultCmd,
                {
                    "participantId": participant_id,
                    "roomId": room_id,
                    "round": round_number,
                    "referenceText": reference_text,
                    "submittedText": submitted_text,
                    "elapsedSeconds": elapsed_seconds,
                },
            )
            existing = self.ledger.get(cmd.roomId, cmd.round, cmd.participantId)
            if existing is not None:
                logger.info(f"[Submit] {cmd.participantId} already submitted round {cmd.round}")
                return SubmissionOutcome(Metrics.from_doc(existing.model_dump()), True, existing)

            participant = self.registry.require(cmd.participantId)
            if participant.roomId != cmd.roomId:
                raise NotFoundError(f"participant {cmd.participantId} is not in room {cmd.roomId}")
            if participant.status != "active" or participant.currentRound != cmd.round:
                raise InvalidTransition(
                    f"participant {cmd.participantId} is {participant.status} for round "
                    f"{participant.currentRound}, cannot submit for round {cmd.round}"
                )

            reference = self.rooms.round_settings(cmd.roomId, cmd.round).paragraph
            if cmd.referenceText.strip() != reference:
                logger.warning(
                    f"[Submit] {cmd.participantId} sent a reference text that differs from round "
                    f"{cmd.round}'s paragraph; scoring against the configured paragraph"
                )
            elapsed = coerce_elapsed(cmd.elapsedSeconds)
            metrics = score(reference, cmd.submittedText, elapsed, self.settings.scoring_policy)
            try:
                result = self.ledger.record(
                    participant_id=cmd.participantId,
                    room_id=cmd.roomId,
                    round_number=cmd.round,
                    user_name=participant.name,
                    metrics=metrics,
                    elapsed_seconds=elapsed,
                )
            except DuplicateSubmission as e:
                # a concurrent submission won the create
                return SubmissionOutcome(Metrics.from_doc(e.existing.model_dump()), True, e.existing)
            return SubmissionOutcome(metrics, False, result)

        return self._run("Submit", action)

    # ---- read views ----

    def round_leaderboard(self, room_id: str, round_number: int) -> Outcome[Tuple[LeaderboardRow, ...]]:
        """Live ranking while the round is open; the committed outcome once processed."""
        def action() -> Tuple[LeaderboardRow, ...]:
            return round_leaderboard(
                self.rooms,
                self.registry,
                self.ledger,
                room_id,
                round_number,
                epsilon=self.settings.equality_epsilon,
                policy=self.settings.ranking_policy,
                outcome=self.engine.processed_outcome(room_id, round_number),
            )

        return self._run("Leaderboard", action)

    def room_statistics(self, room_id: str) -> Outcome[RoomStatistics]:
        return self._run("Statistics", lambda: room_statistics(self.rooms, self.registry, self.ledger, room_id))

    # ---- subscriptions ----

    def watch_room(self, room_id: str, callback: Callable[[Snapshot], None]):
        return open_subscription(
            self.store, DocTarget(ROOMS, room_id), callback, poll_interval=self.settings.poll_interval_seconds
        )

    def watch_participant(self, participant_id: str, callback: Callable[[Snapshot], None]):
        return open_subscription(
            self.store,
            DocTarget(PARTICIPANTS, participant_id),
            callback,
            poll_interval=self.settings.poll_interval_seconds,
        )

    def watch_leaderboard(
        self,
        room_id: str,
        round_number: int,
        callback: Callable[[Outcome[Tuple[LeaderboardRow, ...]]], None],
    ):
        """Push the leaderboard ``Outcome`` whenever the round's Results change.

        A failed read reaches the callback as ``ok=False`` with its error detail.
        """
        def on_results(_: Snapshot) -> None:
            callback(self.round_leaderboard(room_id, round_number))

        return open_subscription(
            self.store,
            QueryTarget(RESULTS, eq_filters(roomId=room_id, round=round_number)),
            on_results,
            poll_interval=self.settings.poll_interval_seconds,
        )
