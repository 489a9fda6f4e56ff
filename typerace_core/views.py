"""Read-only views derived from the ledger and registry (leaderboards, stats)."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from .elimination import DEFAULT_EPSILON, RankingPolicy, rank_results
from .ledger import ResultLedger
from .registry import ParticipantRegistry
from .rooms import RoomDirectory
from .types import PARTICIPANT_STATUSES
from .validation import Participant, Result, RoundOutcome


@dataclass(frozen=True)
class LeaderboardRow:
    participant_id: str
    name: str
    status: str
    rank: int | None  # None for participants who did not submit
    accuracy: float
    wpm: float
    final_score: int
    submitted_at: float | None
    qualified: bool


@dataclass(frozen=True)
class RoundStats:
    total: int = 0
    avg_wpm: float = 0.0
    avg_accuracy: float = 0.0
    avg_score: float = 0.0


@dataclass(frozen=True)
class RoomStatistics:
    room_id: str
    status: str
    current_round: int
    participants_total: int
    participants_by_status: Dict[str, int]
    results_total: int
    by_round: Dict[int, RoundStats] = field(default_factory=dict)


def _decided_rows(
    outcome: RoundOutcome,
    participants: Dict[str, Participant],
    results: Dict[str, Result],
) -> Tuple[LeaderboardRow, ...]:
    rows: List[LeaderboardRow] = []
    for entry in outcome.ranking:
        participant = participants.get(entry.participantId)
        result = results.get(entry.participantId)
        rows.append(
            LeaderboardRow(
                participant_id=entry.participantId,
                name=result.userName if result else (participant.name if participant else "Unknown"),
                status=participant.status if participant else "unknown",
                rank=entry.rank,
                accuracy=entry.accuracy,
                wpm=entry.wpm,
                final_score=entry.finalScore,
                submitted_at=entry.submittedAt,
                qualified=entry.qualified,
            )
        )
    forfeited = [participants[pid] for pid in outcome.forfeited if pid in participants]
    for participant in sorted(forfeited, key=lambda p: (p.name.lower(), p.id)):
        rows.append(
            LeaderboardRow(
                participant_id=participant.id,
                name=participant.name,
                status=participant.status,
                rank=None,
                accuracy=0.0,
                wpm=0.0,
                final_score=0,
                submitted_at=None,
                qualified=False,
            )
        )
    return tuple(rows)


def round_leaderboard(
    rooms: RoomDirectory,
    registry: ParticipantRegistry,
    ledger: ResultLedger,
    room_id: str,
    round_number: int,
    *,
    epsilon: float = DEFAULT_EPSILON,
    policy: RankingPolicy = "accuracy_first",
    outcome: RoundOutcome | None = None,
) -> Tuple[LeaderboardRow, ...]:
    """Round Results in ranking order with names joined in.

    Participants who took part in the round without submitting are appended
    after every submitter, ordered by name. Once the round is processed, pass
    its stored ``outcome``: rows then mirror the committed decision instead of
    re-ranking the ledger.
    """
    settings = rooms.round_settings(room_id, round_number)
    participants = {p.id: p for p in registry.list_room(room_id)}
    results = ledger.list_round(room_id, round_number)
    if outcome is not None:
        return _decided_rows(outcome, participants, {r.participantId: r for r in results})
    ranking = rank_results(results, settings.qualifyCount, epsilon, policy)

    rows: List[LeaderboardRow] = []
    for entry in ranking:
        result = entry.result
        participant = participants.get(result.participantId)
        rows.append(
            LeaderboardRow(
                participant_id=result.participantId,
                name=result.userName or (participant.name if participant else "Unknown"),
                status=participant.status if participant else "unknown",
                rank=entry.rank,
                accuracy=result.accuracy,
                wpm=result.wpm,
                final_score=result.finalScore,
                submitted_at=result.submittedAt,
                qualified=entry.qualified,
            )
        )

    submitted = {entry.participant_id for entry in ranking}
    missing = [
        p for p in participants.values()
        if p.id not in submitted
        and p.currentRound >= round_number
        and (p.eliminatedRound is None or p.eliminatedRound >= round_number)
    ]
    for participant in sorted(missing, key=lambda p: (p.name.lower(), p.id)):
        rows.append(
            LeaderboardRow(
                participant_id=participant.id,
                name=participant.name,
                status=participant.status,
                rank=None,
                accuracy=0.0,
                wpm=0.0,
                final_score=0,
                submitted_at=None,
                qualified=False,
            )
        )
    return tuple(rows)


def room_statistics(
    rooms: RoomDirectory,
    registry: ParticipantRegistry,
    ledger: ResultLedger,
    room_id: str,
) -> RoomStatistics:
    room = rooms.get_room(room_id)
    participants = registry.list_room(room_id)
    by_status = {status: 0 for status in PARTICIPANT_STATUSES}
    for participant in participants:
        by_status[participant.status] += 1

    results = ledger.list_room(room_id)
    grouped: Dict[int, list] = {}
    for result in results:
        grouped.setdefault(result.round, []).append(result)
    by_round = {
        round_number: RoundStats(
            total=len(items),
            avg_wpm=round(sum(r.wpm for r in items) / len(items), 2),
            avg_accuracy=round(sum(r.accuracy for r in items) / len(items), 2),
            avg_score=round(sum(r.finalScore for r in items) / len(items), 2),
        )
        for round_number, items in sorted(grouped.items())
    }
    return RoomStatistics(
        room_id=room_id,
        status=room.status,
        current_round=room.currentRound,
        participants_total=len(participants),
        participants_by_status=by_status,
        results_total=len(results),
        by_round=by_round,
    )
