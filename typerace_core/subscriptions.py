"""Real-time observation of rooms, participants and leaderboards.

``open_subscription`` returns a streaming subscription when the store offers
one and a polling subscription otherwise. Both call back with the current
snapshot first and then once per observed change (identical consecutive
snapshots are suppressed), so callers cannot tell which one is active.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol, Tuple

from .errors import TransientStoreError
from .store import DocumentStore, Snapshot, SnapshotCallback, Target, read_target
from .types import Document

logger = logging.getLogger(__name__)


class Subscription(Protocol):
    def close(self) -> None:
        ...

    @property
    def mode(self) -> str:
        ...


class _ChangeFilter:
    """Forward a snapshot only when its documents differ from the last one."""

    def __init__(self, callback: SnapshotCallback) -> None:
        self._callback = callback
        self._lock = threading.Lock()
        self._last: Tuple[Document, ...] | None = None
        self._last_version = -1
        self.closed = False

    def __call__(self, snapshot: Snapshot) -> None:
        with self._lock:
            if self.closed:
                return
            # Deliveries from concurrent writers may arrive out of order.
            if snapshot.version and snapshot.version < self._last_version:
                return
            self._last_version = max(self._last_version, snapshot.version)
            if self._last is not None and snapshot.docs == self._last:
                return
            self._last = snapshot.docs
        self._callback(snapshot)


class StreamingSubscription:
    mode = "streaming"

    def __init__(self, store: DocumentStore, target: Target, callback: SnapshotCallback) -> None:
        self.target = target
        self._filter = _ChangeFilter(callback)
        self._unsubscribe = store.subscribe(target, self._filter)

    def close(self) -> None:
        self._filter.closed = True
        self._unsubscribe()


class PollingSubscription:
    """Re-reads the target every ``interval`` seconds on a daemon thread."""

    mode = "polling"

    def __init__(
        self,
        store: DocumentStore,
        target: Target,
        callback: SnapshotCallback,
        interval: float = 2.0,
    ) -> None:
        self.target = target
        self._store = store
        self._interval = interval
        self._filter = _ChangeFilter(callback)
        self._stop = threading.Event()
        self._polls = 0
        self.poll_once()
        self._thread = threading.Thread(
            target=self._run, name=f"poll:{target.collection}", daemon=True
        )
        self._thread.start()

    def poll_once(self) -> None:
        try:
            docs = read_target(self._store, self.target)
        except TransientStoreError as e:
            logger.warning(f"Polling {self.target} failed, will retry: {e}")
            return
        self._polls += 1
        self._filter(Snapshot(self.target, docs, 0))

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self.poll_once()

    def close(self) -> None:
        self._filter.closed = True
        self._stop.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=self._interval + 1)


def open_subscription(
    store: DocumentStore,
    target: Target,
    callback: Callable[[Snapshot], None],
    *,
    poll_interval: float = 2.0,
) -> StreamingSubscription | PollingSubscription:
    """Subscribe to ``target``, degrading to polling when streaming is unavailable."""
    if store.supports_streaming():
        try:
            return StreamingSubscription(store, target, callback)
        except TransientStoreError as e:
            logger.warning(f"Streaming subscription to {target} unavailable, polling instead: {e}")
    return PollingSubscription(store, target, callback, interval=poll_interval)
