from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, List

from typerace_core import CoreSettings, InMemoryStore, RoundCoordinator, retry_transient
from typerace_core.errors import TransientStoreError
from typerace_core.types import RESULTS, ROUND_OUTCOMES

PARAGRAPH = "the quick fox"


class _Clock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            self.now += 1.0
            return self.now


@dataclass
class _FlakyStore:
    """Fails elimination batches with a transient error ``failures`` times."""

    inner: InMemoryStore
    failures: int
    calls: int = 0

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def batch_write(self, ops):
        if any(op.collection == ROUND_OUTCOMES for op in ops) and self.calls < self.failures:
            self.calls += 1
            raise TransientStoreError("simulated timeout")
        self.inner.batch_write(ops)


@dataclass
class _InterleavingStore:
    """Runs ``before_result`` once, just before the next Result batch commits."""

    inner: InMemoryStore
    before_result: Callable[[], object] | None = None

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def batch_write(self, ops):
        hook = self.before_result
        if hook is not None and any(op.collection == RESULTS for op in ops):
            self.before_result = None
            hook()
        self.inner.batch_write(ops)


@dataclass
class _Sleeps:
    delays: List[float] = field(default_factory=list)

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _settings(**overrides) -> CoreSettings:
    values = {"retry_base_delay_seconds": 0.5, "poll_interval_seconds": 0.05}
    values.update(overrides)
    return CoreSettings(**values)


def _coordinator(store=None, rounds=None, players=("p1", "p2", "p3"), sleep=None, **settings):
    coord = RoundCoordinator(
        store or InMemoryStore(),
        _settings(**settings),
        clock=_Clock(),
        sleep=sleep or _Sleeps(),
    )
    created = coord.create_room(
        {
            "roomCode": "abc123",
            "roomName": "Finals",
            "createdBy": "admin",
            "rounds": rounds or [{"paragraph": PARAGRAPH, "timeLimit": 30, "qualifyCount": 2}],
        },
        room_id="room1",
    )
    assert created.ok, created.error
    for pid in players:
        assert coord.join_room("ABC123", pid, pid.upper()).ok
    return coord


def _submit(coord: RoundCoordinator, pid: str, typed: str = PARAGRAPH, round_number: int = 1):
    return coord.submit_result(pid, "room1", round_number, PARAGRAPH, typed, 30)


def test_create_room_normalizes_code_and_rejects_duplicates():
    coord = _coordinator(players=())
    room = coord.rooms.get_room("room1")
    assert room.roomCode == "ABC123"
    assert room.status == "waiting"
    assert room.totalRounds == 1

    again = coord.create_room(
        {
            "roomCode": "ABC123",
            "roomName": "Other",
            "createdBy": "admin",
            "rounds": [{"paragraph": "x", "timeLimit": 10, "qualifyCount": 1}],
        }
    )
    assert again.ok is False
    assert again.error.kind == "validation"


def test_create_room_validates_rounds():
    coord = RoundCoordinator(InMemoryStore(), _settings(), clock=_Clock())
    bad = [
        {"paragraph": PARAGRAPH, "timeLimit": 0, "qualifyCount": 1},
        {"paragraph": PARAGRAPH, "timeLimit": 30, "qualifyCount": 0},
        {"paragraph": "   ", "timeLimit": 30, "qualifyCount": 1},
    ]
    for settings in bad:
        outcome = coord.create_room(
            {"roomCode": "ZZZ999", "roomName": "Bad", "createdBy": "admin", "rounds": [settings]}
        )
        assert outcome.error.kind == "validation"
    assert coord.create_room(
        {"roomCode": "bad", "roomName": "Bad", "createdBy": "admin", "rounds": [bad[0]]}
    ).error.kind == "validation"

    strict = RoundCoordinator(InMemoryStore(), _settings(max_time_limit=60), clock=_Clock())
    outcome = strict.create_room(
        {
            "roomCode": "ZZZ999",
            "roomName": "Strict",
            "createdBy": "admin",
            "rounds": [{"paragraph": PARAGRAPH, "timeLimit": 120, "qualifyCount": 1}],
        }
    )
    assert outcome.error.kind == "validation"


def test_submission_scores_against_configured_paragraph():
    coord = _coordinator()
    coord.start_round("room1", 1)
    outcome = coord.submit_result("p1", "room1", 1, "something else", PARAGRAPH, 60)
    assert outcome.ok
    assert outcome.value.metrics.accuracy == 100.0
    assert outcome.value.metrics.wpm == 2.6
    assert outcome.value.already_submitted is False
    assert outcome.value.result.userName == "P1"


def test_duplicate_submission_returns_first_metrics():
    coord = _coordinator()
    coord.start_round("room1", 1)
    first = _submit(coord, "p1", PARAGRAPH)
    second = _submit(coord, "p1", "garbage typed later")
    assert second.ok
    assert second.value.already_submitted is True
    assert second.value.metrics == first.value.metrics
    assert len(coord.ledger.list_round("room1", 1)) == 1


def test_concurrent_duplicate_submissions_record_once():
    coord = _coordinator()
    coord.start_round("room1", 1)
    barrier = threading.Barrier(6)
    outcomes = []

    def worker(typed):
        barrier.wait()
        outcomes.append(_submit(coord, "p1", typed))

    threads = [threading.Thread(target=worker, args=(PARAGRAPH[: 8 + i],)) for i in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(o.ok for o in outcomes)
    assert sum(1 for o in outcomes if not o.value.already_submitted) == 1
    assert len({o.value.metrics for o in outcomes}) == 1
    assert len(coord.ledger.list_round("room1", 1)) == 1


def test_submission_rules():
    coord = _coordinator()
    assert _submit(coord, "p1").error.kind == "invalid_transition"  # not started
    coord.start_round("room1", 1)
    assert _submit(coord, "ghost").error.kind == "not_found"
    assert coord.submit_result("p1", "room1", 0, PARAGRAPH, PARAGRAPH, 30).error.kind == "validation"
    _submit(coord, "p1")
    coord.end_round("room1", 1)
    late = _submit(coord, "p2")
    assert late.ok is False
    assert late.error.kind == "invalid_transition"


def test_concurrent_end_round_commits_once():
    coord = _coordinator()
    coord.start_round("room1", 1)
    _submit(coord, "p1", PARAGRAPH)
    _submit(coord, "p2", "the quick fix")
    _submit(coord, "p3", "teh")

    barrier = threading.Barrier(8)
    outcomes = []

    def worker():
        barrier.wait()
        outcomes.append(coord.end_round("room1", 1))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(o.ok for o in outcomes)
    assert sum(1 for o in outcomes if not o.value.already_processed) == 1
    assert all(o.value.outcome == outcomes[0].value.outcome for o in outcomes)
    statuses = coord.registry.status_counts("room1")
    assert statuses["qualified"] == 2
    assert statuses["eliminated"] == 1
    assert coord.rooms.get_room("room1").status == "round1_result"


def test_end_round_is_idempotent():
    coord = _coordinator()
    coord.start_round("room1", 1)
    _submit(coord, "p1")
    first = coord.end_round("room1", 1)
    second = coord.end_round("room1", 1)
    assert second.ok
    assert second.value.already_processed is True
    assert second.value.outcome == first.value.outcome


def test_end_round_without_results_is_recoverable():
    coord = _coordinator()
    coord.start_round("room1", 1)
    outcome = coord.end_round("room1", 1)
    assert outcome.ok is False
    assert outcome.error.kind == "no_results"
    assert outcome.error.retryable is True
    assert coord.rooms.get_room("room1").status == "round1_active"

    _submit(coord, "p2")
    retried = coord.end_round("room1", 1)
    assert retried.ok
    assert retried.value.outcome.qualified == ["p2"]
    assert sorted(retried.value.outcome.forfeited) == ["p1", "p3"]


def test_end_round_from_wrong_state():
    coord = _coordinator()
    outcome = coord.end_round("room1", 1)
    assert outcome.error.kind == "invalid_transition"
    assert coord.end_round("missing", 1).error.kind == "not_found"


def test_transient_batch_failure_is_retried():
    sleeps = _Sleeps()
    store = _FlakyStore(InMemoryStore(), failures=1)
    coord = _coordinator(store=store, sleep=sleeps)
    coord.start_round("room1", 1)
    _submit(coord, "p1")
    outcome = coord.end_round("room1", 1)
    assert outcome.ok
    assert outcome.value.already_processed is False
    assert sleeps.delays == [0.5]


def test_failed_batch_leaves_no_partial_update():
    sleeps = _Sleeps()
    store = _FlakyStore(InMemoryStore(), failures=10)
    coord = _coordinator(store=store, sleep=sleeps)
    coord.start_round("room1", 1)
    _submit(coord, "p1")
    outcome = coord.end_round("room1", 1)
    assert outcome.ok is False
    assert outcome.error.kind == "transient"
    assert outcome.error.retryable is True
    assert sleeps.delays == [0.5, 1.0]
    assert {p.status for p in coord.registry.list_room("room1")} == {"active"}
    assert coord.rooms.get_room("room1").status == "round1_active"
    assert coord.engine.processed_outcome("room1", 1) is None


def test_join_rules():
    coord = _coordinator(players=("p1",))
    rejoin = coord.join_room("abc123", "p1", "P1 again")
    assert rejoin.ok
    assert rejoin.value.rejoined is True
    assert rejoin.value.participant.name == "P1 again"

    cleaned = coord.join_room("ABC123", "p2", "<Bob>")
    assert cleaned.value.participant.name == "Bob"
    assert coord.join_room("ABC123", "p3", "<>").error.kind == "validation"
    assert coord.join_room("NOPE00", "p3", "Cara").error.kind == "not_found"
    assert coord.join_room("bad!", "p3", "Cara").error.kind == "validation"

    coord.start_round("room1", 1)
    late = coord.join_room("ABC123", "p9", "Late")
    assert late.error.kind == "invalid_transition"
    back = coord.join_room("ABC123", "p1", "P1")
    assert back.ok
    assert back.value.rejoined is True
    assert back.value.participant.status == "active"


def test_room_capacity():
    coord = _coordinator(players=("p1", "p2"), max_participants_per_room=2)
    assert coord.join_room("ABC123", "p3", "Cara").error.kind == "invalid_transition"
    assert coord.join_room("ABC123", "p2", "Bob").ok


def test_round_config_frozen_once_started():
    rounds = [
        {"paragraph": PARAGRAPH, "timeLimit": 30, "qualifyCount": 2},
        {"paragraph": "second text", "timeLimit": 30, "qualifyCount": 1},
    ]
    coord = _coordinator(rounds=rounds)
    update = {"paragraph": "new text", "timeLimit": 20, "qualifyCount": 1}
    assert coord.update_round_config("room1", 1, update).ok
    coord.start_round("room1", 1)
    assert coord.update_round_config("room1", 1, update).error.kind == "invalid_transition"
    assert coord.rooms.round_settings("room1", 1).paragraph == "new text"
    assert coord.update_round_config("room1", 2, update).ok
    assert coord.update_round_config("room1", 3, update).error.kind == "not_found"


def test_leaderboard_lists_non_submitters_last():
    coord = _coordinator(players=("p1", "p2", "p3"))
    coord.start_round("room1", 1)
    _submit(coord, "p2", "the quick fix")
    _submit(coord, "p3", PARAGRAPH)
    rows = coord.round_leaderboard("room1", 1).value
    assert [r.participant_id for r in rows] == ["p3", "p2", "p1"]
    assert [r.rank for r in rows] == [1, 2, None]
    assert [r.qualified for r in rows] == [True, True, False]


def test_room_statistics():
    coord = _coordinator()
    coord.start_round("room1", 1)
    _submit(coord, "p1", PARAGRAPH)
    _submit(coord, "p2", "the quick fox jumps")
    coord.end_round("room1", 1)
    stats = coord.room_statistics("room1").value
    assert stats.status == "round1_result"
    assert stats.participants_total == 3
    assert stats.participants_by_status == {"waiting": 0, "active": 0, "qualified": 2, "eliminated": 1}
    assert stats.results_total == 2
    assert stats.by_round[1].total == 2
    assert stats.by_round[1].avg_accuracy == 100.0


def test_watch_leaderboard_pushes_updates():
    coord = _coordinator()
    coord.start_round("room1", 1)
    seen = []
    sub = coord.watch_leaderboard("room1", 1, lambda o: seen.append([r.participant_id for r in o.value]))
    _submit(coord, "p2")
    sub.close()
    assert sub.mode == "streaming"
    assert seen[0] == ["p1", "p2", "p3"]
    assert seen[-1] == ["p2", "p1", "p3"]


def test_retry_transient_backoff():
    sleeps = _Sleeps()
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise TransientStoreError("busy")
        return "done"

    assert retry_transient(flaky, attempts=3, base_delay=1.0, sleep=sleeps) == "done"
    assert sleeps.delays == [1.0, 2.0]


def test_submission_racing_end_round_is_rejected():
    store = _InterleavingStore(InMemoryStore())
    coord = _coordinator(store=store, players=("p1", "p2"))
    coord.start_round("room1", 1)
    assert _submit(coord, "p1").ok
    store.before_result = lambda: coord.end_round("room1", 1)

    late = _submit(coord, "p2")
    assert late.ok is False
    assert late.error.kind == "invalid_transition"
    assert [r.participantId for r in coord.ledger.list_round("room1", 1)] == ["p1"]
    assert coord.registry.require("p2").status == "eliminated"
    assert coord.engine.processed_outcome("room1", 1).qualified == ["p1"]

    rows = coord.round_leaderboard("room1", 1).value
    assert [(r.participant_id, r.rank, r.qualified) for r in rows] == [("p1", 1, True), ("p2", None, False)]


def test_leaderboard_follows_the_committed_outcome():
    coord = _coordinator(
        players=("p1", "p2", "p3"),
        rounds=[{"paragraph": PARAGRAPH, "timeLimit": 30, "qualifyCount": 1}],
    )
    coord.start_round("room1", 1)
    # p1 is exact but slow, p2 is fast with one typo
    assert coord.submit_result("p1", "room1", 1, PARAGRAPH, PARAGRAPH, 600).ok
    assert coord.submit_result("p2", "room1", 1, PARAGRAPH, "the quick fix", 1).ok
    assert coord.end_round("room1", 1).value.outcome.qualified == ["p1"]

    rescored = RoundCoordinator(coord.store, _settings(ranking_policy="score_first"), clock=_Clock())
    for board in (coord, rescored):
        rows = board.round_leaderboard("room1", 1).value
        assert [(r.participant_id, r.rank) for r in rows] == [("p1", 1), ("p2", 2), ("p3", None)]
        for row in rows:
            status = coord.registry.require(row.participant_id).status
            assert row.status == status
            assert row.qualified == (status == "qualified")


def test_watch_leaderboard_reports_errors():
    coord = _coordinator()
    seen = []
    sub = coord.watch_leaderboard("room1", 2, seen.append)
    sub.close()
    assert seen
    assert seen[0].ok is False
    assert seen[0].error.kind == "not_found"


def test_default_store_uses_configured_timeout():
    coord = RoundCoordinator(settings=_settings(store_timeout_seconds=0.2), clock=_Clock())
    assert isinstance(coord.store, InMemoryStore)
    assert coord.store.timeout == 0.2
