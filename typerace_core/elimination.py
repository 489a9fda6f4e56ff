"""Round elimination engine (ranking comparator + exactly-once decision commit).

Ranking chain, accuracy-first policy (deployed default):
- Higher accuracy; if within epsilon, higher speed (wpm); if within epsilon,
  earlier submission; finally participant id, so the order is total.

The alternate ``score_first`` policy compares final score, accuracy, speed,
then submission time. A deployment picks one policy and uses it everywhere.

Exactly-once: the decision is committed in a single batch that creates the
per-round ``roundOutcomes`` marker (create-if-absent), updates every affected
participant (each guarded by the state it was decided from), and moves the room
from ``round<r>_active`` to ``round<r>_result``. Any racing caller either
finds the marker first or loses the create and reads the winner's outcome.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Callable, Dict, List, Literal, Sequence, Tuple

from .errors import InvalidTransition, NoResultsError, PreconditionFailed, TransientStoreError
from .ledger import ResultLedger
from .rooms import RoomDirectory
from .rounds import RoundStateMachine, participant_guard, status_for
from .store import CreateOp, DocumentStore, SetOp, WriteOp
from .types import PARTICIPANTS, ROUND_OUTCOMES
from .validation import Participant, RankingEntry, Result, RoundOutcome, outcome_key, parse_record, to_doc

logger = logging.getLogger(__name__)

RankingPolicy = Literal["accuracy_first", "score_first"]
DEFAULT_EPSILON = 0.01
# Slack for float noise so values exactly epsilon apart still count as tied.
_FLOAT_SLACK = 1e-9

_CHAINS: Dict[str, Tuple[Tuple[str, Callable[[Result], float]], ...]] = {
    "accuracy_first": (
        ("accuracy", lambda r: r.accuracy),
        ("speed", lambda r: r.wpm),
    ),
    "score_first": (
        ("final_score", lambda r: float(r.finalScore)),
        ("accuracy", lambda r: r.accuracy),
        ("speed", lambda r: r.wpm),
    ),
}


@dataclass(frozen=True)
class RankedResult:
    result: Result
    rank: int
    qualified: bool
    # Criterion that separated this entry from the one ranked above (None for rank 1).
    decided_by: str | None

    @property
    def participant_id(self) -> str:
        return self.result.participantId


@dataclass(frozen=True)
class ParticipantUpdate:
    participant: Participant
    status: str
    final_rank: int | None
    forfeited: bool = False


@dataclass(frozen=True)
class EliminationPlan:
    room_id: str
    round: int
    qualify_count: int
    ranking: Tuple[RankedResult, ...]
    updates: Tuple[ParticipantUpdate, ...]

    @property
    def qualified(self) -> List[str]:
        return [u.participant.id for u in self.updates if u.status == "qualified"]

    @property
    def eliminated(self) -> List[str]:
        return [u.participant.id for u in self.updates if u.status == "eliminated"]

    @property
    def forfeited(self) -> List[str]:
        return [u.participant.id for u in self.updates if u.forfeited]


@dataclass(frozen=True)
class EliminationReport:
    outcome: RoundOutcome
    already_processed: bool


def _chain(policy: str) -> Tuple[Tuple[str, Callable[[Result], float]], ...]:
    try:
        return _CHAINS[policy]
    except KeyError:
        raise ValueError(f"unknown ranking policy: {policy!r}") from None


def compare_results(
    a: Result,
    b: Result,
    epsilon: float = DEFAULT_EPSILON,
    policy: RankingPolicy = "accuracy_first",
) -> Tuple[int, str]:
    """Return (-1 | 1 | 0, deciding criterion). Negative means ``a`` ranks higher."""
    for name, metric in _chain(policy):
        va, vb = metric(a), metric(b)
        if abs(va - vb) > epsilon + _FLOAT_SLACK:
            return (-1 if va > vb else 1), name
    if a.submittedAt != b.submittedAt:
        return (-1 if a.submittedAt < b.submittedAt else 1), "submitted_at"
    if a.participantId != b.participantId:
        return (-1 if a.participantId < b.participantId else 1), "participant_id"
    return 0, "identical"


def rank_results(
    results: Sequence[Result],
    qualify_count: int,
    epsilon: float = DEFAULT_EPSILON,
    policy: RankingPolicy = "accuracy_first",
) -> Tuple[RankedResult, ...]:
    """Rank a round's Results; the top ``qualify_count`` are marked qualified.

    The input is first put in canonical (participant id) order so the outcome
    depends only on the set of Results, not on how the store returned them.
    """
    by_participant: Dict[str, Result] = {}
    for result in sorted(results, key=lambda r: (r.participantId, r.submittedAt)):
        # ledger keys make this unreachable; keep the earliest if it happens
        by_participant.setdefault(result.participantId, result)
    canonical = [by_participant[pid] for pid in sorted(by_participant)]
    ordered = sorted(
        canonical,
        key=cmp_to_key(lambda a, b: compare_results(a, b, epsilon, policy)[0]),
    )
    ranked: List[RankedResult] = []
    for index, result in enumerate(ordered):
        decided_by = None
        if index:
            decided_by = compare_results(ordered[index - 1], result, epsilon, policy)[1]
        ranked.append(
            RankedResult(
                result=result,
                rank=index + 1,
                qualified=index < qualify_count,
                decided_by=decided_by,
            )
        )
    return tuple(ranked)


def plan_elimination(
    *,
    room_id: str,
    round_number: int,
    qualify_count: int,
    participants: Sequence[Participant],
    results: Sequence[Result],
    epsilon: float = DEFAULT_EPSILON,
    policy: RankingPolicy = "accuracy_first",
) -> EliminationPlan:
    """Decide every affected participant's status for the round (pure).

    - Participants already eliminated in an earlier round are left alone.
    - Results from participants who are not eligible (unknown, or eliminated
      earlier) are ignored so they cannot take a qualifying slot.
    - Eligible participants without a Result forfeit: eliminated, ranked
      after every submitter.
    """
    eligible = {p.id: p for p in participants if p.roomId == room_id and p.status != "eliminated"}
    counted = [r for r in results if r.participantId in eligible and r.round == round_number]
    ignored = len(results) - len(counted)
    if ignored:
        logger.warning(f"[Results] Ignoring {ignored} result(s) from ineligible participants in room {room_id}")

    ranking = rank_results(counted, qualify_count, epsilon, policy)
    ranked_by_id = {entry.participant_id: entry for entry in ranking}

    updates: List[ParticipantUpdate] = []
    for participant_id in sorted(eligible):
        participant = eligible[participant_id]
        entry = ranked_by_id.get(participant_id)
        if entry is None:
            updates.append(
                ParticipantUpdate(participant, "eliminated", final_rank=len(ranking) + 1, forfeited=True)
            )
        else:
            updates.append(
                ParticipantUpdate(
                    participant,
                    "qualified" if entry.qualified else "eliminated",
                    final_rank=entry.rank,
                )
            )
    return EliminationPlan(
        room_id=room_id,
        round=round_number,
        qualify_count=qualify_count,
        ranking=ranking,
        updates=tuple(updates),
    )


def build_outcome(plan: EliminationPlan, processed_at: float) -> RoundOutcome:
    return RoundOutcome(
        id=outcome_key(plan.room_id, plan.round),
        roomId=plan.room_id,
        round=plan.round,
        qualifyCount=plan.qualify_count,
        qualified=plan.qualified,
        eliminated=plan.eliminated,
        forfeited=plan.forfeited,
        ranking=[
            RankingEntry(
                participantId=entry.participant_id,
                rank=entry.rank,
                accuracy=entry.result.accuracy,
                wpm=entry.result.wpm,
                finalScore=entry.result.finalScore,
                submittedAt=entry.result.submittedAt,
                qualified=entry.qualified,
            )
            for entry in plan.ranking
        ],
        processedAt=processed_at,
    )


def plan_ops(plan: EliminationPlan, outcome: RoundOutcome, now: float) -> List[WriteOp]:
    """Marker first, so a lost race fails on the marker before anything else."""
    ops: List[WriteOp] = [CreateOp(ROUND_OUTCOMES, outcome.id, to_doc(outcome))]
    for update in plan.updates:
        ops.append(
            SetOp(
                PARTICIPANTS,
                update.participant.id,
                {
                    "status": update.status,
                    "currentRound": plan.round,
                    "finalRank": update.final_rank,
                    "eliminatedRound": plan.round if update.status == "eliminated" else None,
                    "updatedAt": now,
                },
                merge=True,
                expect=participant_guard(update.participant),
            )
        )
    return ops


class EliminationEngine:
    def __init__(
        self,
        store: DocumentStore,
        machine: RoundStateMachine | None = None,
        ledger: ResultLedger | None = None,
        *,
        epsilon: float = DEFAULT_EPSILON,
        policy: RankingPolicy = "accuracy_first",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.machine = machine or RoundStateMachine(store, RoomDirectory(store, clock), clock)
        self.ledger = ledger or ResultLedger(store, clock)
        self.epsilon = epsilon
        self.policy = policy
        self.clock = clock
        _chain(policy)

    @property
    def rooms(self) -> RoomDirectory:
        return self.machine.rooms

    def processed_outcome(self, room_id: str, round_number: int) -> RoundOutcome | None:
        key = outcome_key(room_id, round_number)
        doc = self.store.get(ROUND_OUTCOMES, key)
        if doc is None:
            return None
        return parse_record(RoundOutcome, doc, key=key)

    def _already(self, outcome: RoundOutcome) -> EliminationReport:
        logger.info(f"[Results] Room {outcome.roomId} round {outcome.round} already processed")
        return EliminationReport(outcome=outcome, already_processed=True)

    def eliminate(self, room_id: str, round_number: int) -> EliminationReport:
        """Compute and commit the round's qualify/eliminate decision once.

        Raises:
            NotFoundError: room or round config missing.
            InvalidTransition: room is not in ``round<r>_active`` and the round
                was never processed.
            NoResultsError: nothing submitted yet (retry later).
            TransientStoreError: store failure or concurrent participant change;
                nothing was applied, retry from the start.
        """
        existing = self.processed_outcome(room_id, round_number)
        if existing is not None:
            return self._already(existing)

        room = self.rooms.get_room(room_id)
        settings = self.rooms.round_settings(room_id, round_number)
        if room.status != status_for("active", round_number):
            raise InvalidTransition(f"cannot end round {round_number} from state {room.status}")

        results = self.ledger.list_round(room_id, round_number)
        if not results:
            raise NoResultsError(f"no results yet for room {room_id} round {round_number}")

        participants = self.machine.room_participants(room_id)
        logger.info(
            f"[Results] Processing room {room_id} round {round_number}: "
            f"{len(results)} result(s), {len(participants)} participant(s), qualify {settings.qualifyCount}"
        )
        plan = plan_elimination(
            room_id=room_id,
            round_number=round_number,
            qualify_count=settings.qualifyCount,
            participants=participants,
            results=results,
            epsilon=self.epsilon,
            policy=self.policy,
        )
        for entry in plan.ranking:
            logger.debug(
                f"  {entry.rank}. {entry.participant_id}: {entry.result.accuracy}% / {entry.result.wpm} WPM"
                f" - {'QUALIFIED' if entry.qualified else 'ELIMINATED'}"
            )

        now = self.clock()
        outcome = build_outcome(plan, now)
        try:
            self.machine.advance_after_elimination(room_id, round_number, plan_ops(plan, outcome, now))
        except PreconditionFailed as e:
            if e.collection == ROUND_OUTCOMES:
                winner = self.processed_outcome(room_id, round_number)
                if winner is not None:
                    return self._already(winner)
            raise TransientStoreError(f"{e.collection}/{e.key} changed during elimination; retry") from e
        except InvalidTransition:
            winner = self.processed_outcome(room_id, round_number)
            if winner is not None:
                return self._already(winner)
            raise

        logger.info(
            f"[Results] Room {room_id} round {round_number} complete: {len(outcome.qualified)} qualified, "
            f"{len(outcome.eliminated)} eliminated ({len(outcome.forfeited)} forfeited)"
        )
        return EliminationReport(outcome=outcome, already_processed=False)
