"""Typing metrics (pure, no store access).

Two comparison policies exist:

- ``character`` (deployed default): every reference character position is
  compared independently. Excess typed characters and missing characters both
  count as errors. Speed is correct characters / 5 per minute.
- ``word``: a word counts only if it equals the reference word at the same
  position. Speed counts the characters of correctly typed words (plus their
  separating space) / 5 per minute, so both policies report WPM on the same
  scale.

A coordinator is configured with exactly one policy; Results record the policy
they were scored with.

The combined ``final_score`` keeps the tiered point system: up to 60 points for
accuracy plus up to 40 points for speed. Speed points are taken from net WPM
(correct minus incorrect characters).
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Literal

ScoringPolicy = Literal["character", "word"]
CHARACTER = "character"
WORD = "word"

PRECISION = 2
CHARS_PER_WORD = 5

# (minimum accuracy %, points) checked top-down; below 70% scales 0..20.
ACCURACY_TIERS = ((100.0, 60), (95.0, 55), (90.0, 50), (80.0, 40), (70.0, 30))
# (minimum wpm, points) checked top-down; below 20 wpm scales 0..10.
SPEED_TIERS = ((60.0, 40), (50.0, 35), (40.0, 30), (30.0, 25), (20.0, 15))


@dataclass(frozen=True)
class Metrics:
    accuracy: float
    wpm: float
    raw_wpm: float
    net_wpm: float
    accuracy_points: int
    speed_points: int
    final_score: int
    correct_chars: int
    incorrect_chars: int
    total_chars_typed: int
    total_chars_expected: int
    policy: str = CHARACTER

    @property
    def speed(self) -> float:
        """Speed metric used by the ranking tie-break chain."""
        return self.wpm

    @classmethod
    def zero(cls, policy: str = CHARACTER) -> "Metrics":
        return cls(
            accuracy=0.0,
            wpm=0.0,
            raw_wpm=0.0,
            net_wpm=0.0,
            accuracy_points=0,
            speed_points=0,
            final_score=0,
            correct_chars=0,
            incorrect_chars=0,
            total_chars_typed=0,
            total_chars_expected=0,
            policy=policy,
        )

    def to_doc(self) -> dict[str, Any]:
        """Camel-cased fields as stored on a Result document."""
        return {
            "policy": self.policy,
            "accuracy": self.accuracy,
            "wpm": self.wpm,
            "rawWpm": self.raw_wpm,
            "netWpm": self.net_wpm,
            "accuracyPoints": self.accuracy_points,
            "speedPoints": self.speed_points,
            "finalScore": self.final_score,
            "correctChars": self.correct_chars,
            "incorrectChars": self.incorrect_chars,
            "totalCharsTyped": self.total_chars_typed,
            "totalCharsExpected": self.total_chars_expected,
        }

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "Metrics":
        return cls(
            accuracy=doc["accuracy"],
            wpm=doc["wpm"],
            raw_wpm=doc["rawWpm"],
            net_wpm=doc["netWpm"],
            accuracy_points=doc["accuracyPoints"],
            speed_points=doc["speedPoints"],
            final_score=doc["finalScore"],
            correct_chars=doc["correctChars"],
            incorrect_chars=doc["incorrectChars"],
            total_chars_typed=doc["totalCharsTyped"],
            total_chars_expected=doc["totalCharsExpected"],
            policy=doc["policy"],
        )

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def coerce_elapsed(value: Any) -> float:
    """Return a usable elapsed time in seconds; invalid or non-positive -> 1.0."""
    if isinstance(value, bool) or value is None:
        return 1.0
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return 1.0
    if not isinstance(value, (int, float)):
        return 1.0
    value = float(value)
    if not math.isfinite(value) or value <= 0:
        return 1.0
    return value


def accuracy_points(accuracy: float) -> int:
    for threshold, points in ACCURACY_TIERS:
        if accuracy >= threshold:
            return points
    return round(accuracy / 70.0 * 20)


def speed_points(wpm: float) -> int:
    for threshold, points in SPEED_TIERS:
        if wpm >= threshold:
            return points
    return round(wpm / 20.0 * 10)


def _compare_characters(reference: str, typed: str) -> tuple[int, int, int]:
    """Return (correct units, incorrect units, reference units)."""
    overlap = min(len(reference), len(typed))
    correct = sum(1 for i in range(overlap) if reference[i] == typed[i])
    incorrect = overlap - correct
    # excess and shortfall are both errors
    incorrect += abs(len(typed) - len(reference))
    return correct, incorrect, len(reference)


def _compare_words(reference: str, typed: str) -> tuple[int, int, int, int]:
    """Return (correct words, correct chars, incorrect chars, reference words)."""
    ref_words = reference.split()
    typed_words = typed.split()
    correct_words = 0
    correct_chars = 0
    last = len(ref_words) - 1
    for i, word in enumerate(ref_words[: len(typed_words)]):
        if typed_words[i] == word:
            correct_words += 1
            # the separator after a correct word counts with it
            correct_chars += len(word) + (1 if i < last else 0)
    typed_chars = len(" ".join(typed_words))
    expected_chars = len(" ".join(ref_words))
    incorrect_chars = max(typed_chars, expected_chars) - correct_chars
    return correct_words, correct_chars, max(0, incorrect_chars), len(ref_words)


def _round(value: float) -> float:
    return max(0.0, round(value, PRECISION))


def score(
    reference: Any,
    submitted: Any,
    elapsed_seconds: Any,
    policy: ScoringPolicy = CHARACTER,
) -> Metrics:
    """Score one submission.

    Args:
        reference: Text the participant was asked to type.
        submitted: Text the participant produced (non-strings count as "").
        elapsed_seconds: Time taken; non-positive or non-finite values count as 1s.
        policy: ``"character"`` or ``"word"``.

    Returns:
        Metrics with every float rounded to 2 places and nothing negative.
    """
    if policy not in (CHARACTER, WORD):
        raise ValueError(f"unknown scoring policy: {policy!r}")
    if not isinstance(reference, str) or not reference.strip():
        return Metrics.zero(policy)
    if not isinstance(submitted, str):
        submitted = ""

    minutes = coerce_elapsed(elapsed_seconds) / 60.0
    original = reference.strip()

    if policy == CHARACTER:
        correct_chars, incorrect_chars, units = _compare_characters(original, submitted)
        correct_units = correct_chars
        total_typed = len(submitted)
        total_expected = len(original)
    else:
        correct_units, correct_chars, incorrect_chars, units = _compare_words(original, submitted)
        total_typed = len(" ".join(submitted.split()))
        total_expected = len(" ".join(original.split()))

    accuracy = min(100.0, max(0.0, correct_units / units * 100.0)) if units else 0.0
    wpm = (correct_chars / CHARS_PER_WORD) / minutes
    raw_wpm = (total_typed / CHARS_PER_WORD) / minutes
    net_wpm = max(0, correct_chars - incorrect_chars) / CHARS_PER_WORD / minutes

    accuracy = _round(accuracy)
    wpm = _round(wpm)
    net_wpm = _round(net_wpm)
    acc_pts = max(0, accuracy_points(accuracy))
    spd_pts = max(0, speed_points(net_wpm))
    return Metrics(
        accuracy=accuracy,
        wpm=wpm,
        raw_wpm=_round(raw_wpm),
        net_wpm=net_wpm,
        accuracy_points=acc_pts,
        speed_points=spd_pts,
        final_score=acc_pts + spd_pts,
        correct_chars=max(0, correct_chars),
        incorrect_chars=max(0, incorrect_chars),
        total_chars_typed=max(0, total_typed),
        total_chars_expected=max(0, total_expected),
        policy=policy,
    )
