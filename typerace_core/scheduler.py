"""Auto-advance timer for a started round.

Pipeline per (room, round): typing time limit -> end_round -> result screen
-> leaderboard screen -> next round waiting / completed. Each step goes through
the coordinator, so a timer that fires late or twice, or races an admin who
already advanced the room, only produces a rejected transition.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Tuple

from .config import CoreSettings
from .coordinator import Outcome, RoundCoordinator

logger = logging.getLogger(__name__)

TimerKey = Tuple[str, int]


class RoundTimer:
    """Schedules the automatic steps of a round.

    Args:
        coordinator: entry points used for every transition.
        settings: screen durations and retry cadence (defaults to the
            coordinator's settings).
        background: run each pipeline on a daemon thread; when False
            ``schedule`` runs the pipeline inline (used by tests).
        sleep: replaces the interruptible wait in inline mode.
    """

    def __init__(
        self,
        coordinator: RoundCoordinator,
        settings: CoreSettings | None = None,
        *,
        background: bool = True,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.settings = settings or coordinator.settings
        self.background = background
        self.sleep = sleep
        self._lock = threading.Lock()
        self._scheduled: Dict[TimerKey, threading.Event] = {}
        self.deadlines: Dict[TimerKey, float] = {}

    def is_scheduled(self, room_id: str, round_number: int) -> bool:
        with self._lock:
            return (room_id, round_number) in self._scheduled

    def schedule(self, room_id: str, round_number: int) -> bool:
        """Start the pipeline for a round; False if it is already scheduled."""
        key = (room_id, round_number)
        time_limit = self.coordinator.rooms.round_settings(room_id, round_number).timeLimit
        with self._lock:
            if key in self._scheduled:
                logger.info(f"[timer-skip] room={room_id} round={round_number} already scheduled")
                return False
            cancel = threading.Event()
            self._scheduled[key] = cancel
            self.deadlines[key] = self.coordinator.clock() + time_limit
        logger.info(f"[timer-set] room={room_id} round={round_number} duration={time_limit}s")

        if not self.background:
            self._run(key, cancel, time_limit)
            return True
        thread = threading.Thread(
            target=self._run,
            args=(key, cancel, time_limit),
            name=f"round-timer:{room_id}:{round_number}",
            daemon=True,
        )
        thread.start()
        return True

    def cancel(self, room_id: str, round_number: int) -> bool:
        with self._lock:
            event = self._scheduled.get((room_id, round_number))
        if event is None:
            return False
        event.set()
        logger.info(f"[timer-cancel] room={room_id} round={round_number}")
        return True

    def _wait(self, cancel: threading.Event, seconds: float) -> bool:
        """Wait ``seconds``; True if the timer was cancelled meanwhile."""
        if self.sleep is not None:
            self.sleep(seconds)
            return cancel.is_set()
        return cancel.wait(seconds)

    def _run(self, key: TimerKey, cancel: threading.Event, time_limit: float) -> None:
        room_id, round_number = key
        try:
            if self._wait(cancel, time_limit):
                return
            if not self._end_round(room_id, round_number, cancel):
                return
            for label, delay in (
                ("result", self.settings.result_screen_seconds),
                ("leaderboard", self.settings.leaderboard_screen_seconds),
            ):
                if self._wait(cancel, delay):
                    return
                outcome = self.coordinator.advance_presentation(room_id, round_number)
                if not self._fired(room_id, round_number, label, outcome):
                    return
        finally:
            with self._lock:
                self._scheduled.pop(key, None)
                self.deadlines.pop(key, None)

    def _end_round(self, room_id: str, round_number: int, cancel: threading.Event) -> bool:
        attempts = self.settings.retry_attempts
        for attempt in range(1, attempts + 1):
            outcome = self.coordinator.end_round(room_id, round_number)
            if outcome.ok or outcome.error is None or outcome.error.kind != "no_results":
                return self._fired(room_id, round_number, "typing", outcome)
            logger.info(
                f"[timer-wait] room={room_id} round={round_number} no results yet ({attempt}/{attempts})"
            )
            if attempt < attempts and self._wait(cancel, self.settings.poll_interval_seconds):
                return False
        logger.warning(f"[timer-abort] room={room_id} round={round_number} ended with no results; left active")
        return False

    @staticmethod
    def _fired(room_id: str, round_number: int, stage: str, outcome: Outcome) -> bool:
        if outcome.ok:
            logger.info(f"[timer-fire] room={room_id} round={round_number} stage={stage}")
            return True
        logger.info(
            f"[timer-abort] room={room_id} round={round_number} stage={stage}: "
            f"{outcome.error.kind if outcome.error else 'unknown'}"
        )
        return False


def start_round_with_timer(timer: RoundTimer, room_id: str, round_number: int) -> Outcome:
    """Start a round and schedule its automatic end."""
    outcome = timer.coordinator.start_round(room_id, round_number)
    if outcome.ok:
        timer.schedule(room_id, round_number)
    return outcome


__all__ = ["RoundTimer", "start_round_with_timer"]
