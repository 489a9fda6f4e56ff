"""Document store contract and an in-memory reference implementation.

The coordinator is written against ``DocumentStore`` only. Coordination relies
on two store guarantees:

- ``batch_write`` is all-or-nothing.
- Write ops may carry preconditions (``CreateOp`` = create-if-absent, ``expect``
  = compare-and-set on fields). A failed precondition aborts the whole batch
  with ``PreconditionFailed``.

``InMemoryStore`` provides both under an internal lock that stands in for the
database's own transaction isolation. It is used by the tests and by embedders
that run a single process.
"""
from __future__ import annotations

import itertools
import logging
import operator
import threading
from copy import deepcopy
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Protocol, Sequence, Tuple, Union

from .config import CoreSettings
from .errors import PreconditionFailed, TransientStoreError
from .types import Document

logger = logging.getLogger(__name__)

_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda value, options: value in options,
}


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def matches(self, doc: Mapping[str, Any]) -> bool:
        if self.field not in doc:
            return False
        try:
            return _OPERATORS[self.op](doc[self.field], self.value)
        except TypeError:
            return False


def where(field_name: str, op: str, value: Any) -> Filter:
    if op not in _OPERATORS:
        raise ValueError(f"unsupported filter operator {op!r}")
    return Filter(field_name, op, value)


def eq_filters(**fields: Any) -> Tuple[Filter, ...]:
    """Equality filters from keyword arguments, e.g. ``eq_filters(roomId=rid)``."""
    return tuple(where(name, "==", value) for name, value in sorted(fields.items()))


@dataclass(frozen=True)
class SetOp:
    """Overwrite (or merge into) a document; ``expect`` fields must match first."""

    collection: str
    key: str
    doc: Document
    merge: bool = False
    expect: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class CreateOp:
    """Create a document only if the key is absent."""

    collection: str
    key: str
    doc: Document


@dataclass(frozen=True)
class DeleteOp:
    collection: str
    key: str
    expect: Mapping[str, Any] | None = None


WriteOp = Union[SetOp, CreateOp, DeleteOp]


@dataclass(frozen=True)
class DocTarget:
    collection: str
    key: str


@dataclass(frozen=True)
class QueryTarget:
    collection: str
    filters: Tuple[Filter, ...] = ()
    order_by: str | None = None
    descending: bool = False


Target = Union[DocTarget, QueryTarget]


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time view of a subscription target."""

    target: Target
    docs: Tuple[Document, ...]
    version: int = 0

    @property
    def doc(self) -> Document | None:
        return self.docs[0] if self.docs else None

    @property
    def exists(self) -> bool:
        return bool(self.docs)


SnapshotCallback = Callable[[Snapshot], None]
Unsubscribe = Callable[[], None]


class DocumentStore(Protocol):
    def get(self, collection: str, key: str) -> Document | None:
        ...

    def set(self, collection: str, key: str, doc: Document, *, merge: bool = False) -> None:
        ...

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
    ) -> List[Document]:
        ...

    def batch_write(self, ops: Sequence[WriteOp]) -> None:
        ...

    def subscribe(self, target: Target, callback: SnapshotCallback) -> Unsubscribe:
        ...

    def supports_streaming(self) -> bool:
        ...


def read_target(store: DocumentStore, target: Target) -> Tuple[Document, ...]:
    """Read a target with plain get/query calls (used by polling)."""
    if isinstance(target, DocTarget):
        doc = store.get(target.collection, target.key)
        return (doc,) if doc is not None else ()
    return tuple(
        store.query(target.collection, target.filters, target.order_by, target.descending)
    )


def _sort_docs(docs: List[Document], order_by: str | None, descending: bool) -> List[Document]:
    if order_by is None:
        return docs
    # Documents missing the field sort last regardless of direction.
    present = [d for d in docs if d.get(order_by) is not None]
    missing = [d for d in docs if d.get(order_by) is None]
    present.sort(key=lambda d: d[order_by], reverse=descending)
    return present + missing


@dataclass
class _Listener:
    target: Target
    callback: SnapshotCallback


class InMemoryStore:
    """Thread-safe in-memory ``DocumentStore``.

    Args:
        timeout: seconds to wait for the store lock before raising
            ``TransientStoreError``.
        streaming: whether ``subscribe`` is available; when False callers fall
            back to polling.
    """

    def __init__(self, timeout: float = 5.0, streaming: bool = True) -> None:
        self.timeout = timeout
        self.streaming = streaming
        self._data: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.RLock()
        self._version = 0
        self._listeners: Dict[int, _Listener] = {}
        self._listener_ids = itertools.count()

    @classmethod
    def from_settings(cls, settings: CoreSettings, *, streaming: bool = True) -> "InMemoryStore":
        """Store whose lock wait is bounded by ``store_timeout_seconds``."""
        return cls(timeout=settings.store_timeout_seconds, streaming=streaming)

    # ---- locking ----

    def _acquire(self) -> None:
        if not self._lock.acquire(timeout=self.timeout):
            raise TransientStoreError(f"store lock not acquired within {self.timeout}s")

    # ---- reads ----

    def get(self, collection: str, key: str) -> Document | None:
        self._acquire()
        try:
            doc = self._data.get(collection, {}).get(key)
            return deepcopy(doc) if doc is not None else None
        finally:
            self._lock.release()

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
    ) -> List[Document]:
        self._acquire()
        try:
            return self._query_locked(QueryTarget(collection, tuple(filters), order_by, descending))
        finally:
            self._lock.release()

    def _query_locked(self, target: QueryTarget) -> List[Document]:
        rows = [
            deepcopy(doc)
            for key, doc in sorted(self._data.get(target.collection, {}).items())
            if all(f.matches(doc) for f in target.filters)
        ]
        return _sort_docs(rows, target.order_by, target.descending)

    def _read_locked(self, target: Target) -> Tuple[Document, ...]:
        if isinstance(target, DocTarget):
            doc = self._data.get(target.collection, {}).get(target.key)
            return (deepcopy(doc),) if doc is not None else ()
        return tuple(self._query_locked(target))

    # ---- writes ----

    def set(self, collection: str, key: str, doc: Document, *, merge: bool = False) -> None:
        self.batch_write([SetOp(collection, key, doc, merge=merge)])

    def batch_write(self, ops: Sequence[WriteOp]) -> None:
        """Apply every op or none of them."""
        self._acquire()
        try:
            for op in ops:
                self._check_locked(op)
            touched = {op.collection for op in ops}
            for op in ops:
                self._apply_locked(op)
            self._version += 1
            deliveries = [
                (listener, Snapshot(listener.target, self._read_locked(listener.target), self._version))
                for listener in list(self._listeners.values())
                if listener.target.collection in touched
            ]
        finally:
            self._lock.release()
        for listener, snapshot in deliveries:
            self._deliver(listener, snapshot)

    def _check_locked(self, op: WriteOp) -> None:
        current = self._data.get(op.collection, {}).get(op.key)
        if isinstance(op, CreateOp):
            if current is not None:
                raise PreconditionFailed(
                    f"{op.collection}/{op.key} already exists", collection=op.collection, key=op.key
                )
            return
        expect = op.expect
        if not expect:
            return
        if current is None:
            raise PreconditionFailed(
                f"{op.collection}/{op.key} does not exist", collection=op.collection, key=op.key
            )
        for name, value in expect.items():
            if current.get(name) != value:
                raise PreconditionFailed(
                    f"{op.collection}/{op.key}: expected {name}={value!r}, found {current.get(name)!r}",
                    collection=op.collection,
                    key=op.key,
                )

    def _apply_locked(self, op: WriteOp) -> None:
        bucket = self._data.setdefault(op.collection, {})
        if isinstance(op, DeleteOp):
            bucket.pop(op.key, None)
        elif isinstance(op, SetOp) and op.merge and op.key in bucket:
            bucket[op.key].update(deepcopy(op.doc))
        else:
            bucket[op.key] = deepcopy(op.doc)

    # ---- notifications ----

    def supports_streaming(self) -> bool:
        return self.streaming

    def subscribe(self, target: Target, callback: SnapshotCallback) -> Unsubscribe:
        if not self.streaming:
            raise TransientStoreError("streaming subscriptions are unavailable")
        self._acquire()
        try:
            listener_id = next(self._listener_ids)
            listener = _Listener(target=target, callback=callback)
            self._listeners[listener_id] = listener
            initial = Snapshot(target, self._read_locked(target), self._version)
        finally:
            self._lock.release()
        self._deliver(listener, initial)

        def unsubscribe() -> None:
            self._acquire()
            try:
                self._listeners.pop(listener_id, None)
            finally:
                self._lock.release()

        return unsubscribe

    def _deliver(self, listener: _Listener, snapshot: Snapshot) -> None:
        try:
            listener.callback(snapshot)
        except Exception:
            # subscriber errors are logged, never raised into the writer
            logger.exception(f"Subscriber callback failed for {listener.target}")
