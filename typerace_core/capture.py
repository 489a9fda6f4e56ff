"""Per-session keystroke capture.

A ``TypingSession`` owns the typed buffer and timing for one participant and
one round. Callers create one per session and pass it to whatever feeds key
events; nothing is kept at module level.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

# Editing shortcuts that are swallowed instead of typed (copy, paste, ...).
BLOCKED_SHORTCUTS = frozenset({"a", "c", "v", "x", "y", "z"})


@dataclass
class TypingSession:
    paragraph: str
    clock: Callable[[], float] = time.monotonic
    typed: str = ""
    started_at: float | None = None
    stopped_at: float | None = None
    keystrokes: int = field(default=0)

    @property
    def is_typing(self) -> bool:
        return self.started_at is not None and self.stopped_at is None

    @property
    def stopped(self) -> bool:
        return self.stopped_at is not None

    def handle_key(self, key: str, *, ctrl: bool = False, meta: bool = False) -> bool:
        """Apply one key event; returns True when the buffer changed.

        The first printable key, Backspace or Enter starts the clock. Other
        named keys (Shift, arrows, ...) are ignored.
        """
        if self.stopped:
            return False
        if (ctrl or meta) and key.lower() in BLOCKED_SHORTCUTS:
            return False
        if key not in ("Backspace", "Enter") and len(key) != 1:
            return False
        if self.started_at is None:
            self.started_at = self.clock()
        self.keystrokes += 1

        if key == "Backspace":
            if not self.typed:
                return False
            self.typed = self.typed[:-1]
        elif key == "Enter":
            self.typed += "\n"
        else:
            self.typed += key
        return True

    def elapsed(self) -> float:
        """Seconds since the first key, 0.0 before typing started."""
        if self.started_at is None:
            return 0.0
        end = self.stopped_at if self.stopped_at is not None else self.clock()
        return max(0.0, end - self.started_at)

    def stop(self) -> float:
        if self.started_at is not None and self.stopped_at is None:
            self.stopped_at = self.clock()
        return self.elapsed()

    def reset(self) -> None:
        self.typed = ""
        self.started_at = None
        self.stopped_at = None
        self.keystrokes = 0
