"""
Remote document store port, query model and the in-process implementation.

The in-memory store mirrors the document-store semantics the sync layer relies
on: live queries delivering full snapshots asynchronously, atomic batches,
serializable transactions, server timestamps and composite-index failures.
"""
import asyncio
import copy
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from chatsync.services.event_bus import Subscription
from chatsync.utils.time_utils import from_millis, now_ms

logger = logging.getLogger(__name__)


class _ServerTimestamp:
    def __repr__(self):
        return "SERVER_TIMESTAMP"


# Sentinel resolved by the store to its own clock at commit time
SERVER_TIMESTAMP = _ServerTimestamp()

ASCENDING = "asc"
DESCENDING = "desc"

# Pseudo-field addressing the document id in filters and orderings
DOCUMENT_ID = "__name__"

FILTER_OPS = ("==", "!=", "<", "<=", ">", ">=", "array_contains", "in")


class RemoteStoreError(Exception):
    code = "unknown"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class IndexRequiredError(RemoteStoreError):
    code = "failed-precondition"


class PermissionDeniedError(RemoteStoreError):
    code = "permission-denied"


class DocumentNotFoundError(RemoteStoreError):
    code = "not-found"


@dataclass(frozen=True)
class DocumentSnapshot:
    id: str
    path: str
    data: Dict[str, Any] = field(default_factory=dict)
    exists: bool = True

    def get(self, field_name: str, default: Any = None) -> Any:
        return self.data.get(field_name, default)


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class Query:
    collection: str
    filters: Tuple[FieldFilter, ...] = ()
    orders: Tuple[Tuple[str, str], ...] = ()
    limit: Optional[int] = None
    cursor: Optional[DocumentSnapshot] = None

    def where(self, field_name: str, op: str, value: Any) -> "Query":
        if op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter operator: {op}")
        return replace(self, filters=self.filters + (FieldFilter(field_name, op, value),))

    def order_by(self, field_name: str, direction: str = ASCENDING) -> "Query":
        return replace(self, orders=self.orders + ((field_name, direction),))

    def limit_to(self, count: int) -> "Query":
        return replace(self, limit=count)

    def start_after(self, snapshot: DocumentSnapshot) -> "Query":
        return replace(self, cursor=snapshot)

    @property
    def group(self) -> str:
        """Collection id without parent path (``messages`` for a subcollection)."""
        return self.collection.rsplit("/", 1)[-1]

    def fields(self) -> FrozenSet[str]:
        return frozenset([f.field for f in self.filters] + [name for name, _ in self.orders])


@dataclass
class Write:
    """One staged mutation. ``kind`` is ``set`` or ``update``."""
    kind: str
    path: str
    data: Dict[str, Any]
    merge: bool = False


def set_doc(path: str, data: Dict[str, Any], merge: bool = False) -> Write:
    return Write(kind="set", path=path, data=data, merge=merge)


def update_doc(path: str, data: Dict[str, Any]) -> Write:
    return Write(kind="update", path=path, data=data)


def parent_collection(path: str) -> str:
    return path.rsplit("/", 1)[0]


def document_id(path: str) -> str:
    return path.rsplit("/", 1)[-1]


OnSnapshot = Callable[[List[DocumentSnapshot]], None]
OnError = Callable[[RemoteStoreError], None]
Decide = Callable[[List[DocumentSnapshot]], Sequence[Write]]


class DocumentStore(ABC):
    """Port for the remote document store."""

    @abstractmethod
    async def get(self, path: str) -> DocumentSnapshot:
        ...

    @abstractmethod
    async def query(self, query: Query) -> List[DocumentSnapshot]:
        ...

    @abstractmethod
    def listen(self, query: Query, on_next: OnSnapshot, on_error: Optional[OnError] = None) -> Subscription:
        """
        Attach a live query. Every delivery is a full, self-consistent result
        set. Must be called from the event loop; callbacks run on it.
        """

    @abstractmethod
    async def commit(self, writes: Sequence[Write]) -> None:
        """Apply ``writes`` atomically."""

    @abstractmethod
    async def run_transaction(self, read_paths: Sequence[str], decide: Decide) -> List[Write]:
        """
        Read ``read_paths`` and apply the writes returned by ``decide`` as one
        serializable unit. ``decide`` may be retried and must be pure; raising
        from it aborts the transaction.
        """

    @abstractmethod
    def new_id(self, collection: str) -> str:
        ...


# ==================== IN-MEMORY IMPLEMENTATION ====================


@dataclass
class _Listener:
    query: Query
    on_next: OnSnapshot
    on_error: Optional[OnError]
    subscription: Optional[Subscription] = None
    last: Optional[List[Tuple[str, Dict[str, Any]]]] = None


def _comparable(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return False
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return True
    return type(a) is type(b) or (isinstance(a, datetime) and isinstance(b, datetime))


_MISSING = object()


def _field(doc: DocumentSnapshot, name: str) -> Any:
    if name == DOCUMENT_ID:
        return doc.id
    return doc.data.get(name, _MISSING)


def _matches(doc: DocumentSnapshot, flt: FieldFilter) -> bool:
    value = _field(doc, flt.field)
    if value is _MISSING:
        return False
    if flt.op == "==":
        return value == flt.value
    if flt.op == "!=":
        return value != flt.value
    if flt.op == "array_contains":
        return isinstance(value, list) and flt.value in value
    if flt.op == "in":
        return value in flt.value
    if not _comparable(value, flt.value):
        return False
    if flt.op == "<":
        return value < flt.value
    if flt.op == "<=":
        return value <= flt.value
    if flt.op == ">":
        return value > flt.value
    return value >= flt.value


def _merge(target: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(target)
    for key, value in data.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


class InMemoryDocumentStore(DocumentStore):
    """
    In-process document store with live queries.

    ``missing_indexes`` lists ``(collection_group, fields)`` pairs whose
    composite index does not exist; queries over exactly those fields fail
    with IndexRequiredError, like a real store without the index deployed.
    ``operations`` records ``(op, path)`` for every read and write.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], int] = now_ms,
        missing_indexes: Iterable[Tuple[str, Iterable[str]]] = (),
    ):
        self._clock = clock
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._listeners: List[_Listener] = []
        self._missing_indexes: Set[Tuple[str, FrozenSet[str]]] = {
            (group, frozenset(fields)) for group, fields in missing_indexes
        }
        self._lock = asyncio.Lock()
        self._failures: List[RemoteStoreError] = []
        self.operations: List[Tuple[str, str]] = []

    # ---- test/offline controls ----

    def fail_next_commit(self, error: Optional[RemoteStoreError] = None) -> None:
        """Make the next commit or transaction fail with ``error``."""
        self._failures.append(error or RemoteStoreError("write rejected", code="unavailable"))

    def add_index(self, group: str, fields: Iterable[str]) -> None:
        self._missing_indexes.discard((group, frozenset(fields)))

    def listener_count(self) -> int:
        return len(self._listeners)

    def seed(self, path: str, data: Dict[str, Any]) -> None:
        """Write a document directly (no latency, no failure injection)."""
        self._apply([set_doc(path, data)])

    def document(self, path: str) -> Optional[Dict[str, Any]]:
        doc = self._docs.get(path)
        return copy.deepcopy(doc) if doc is not None else None

    def documents(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return {
            path: copy.deepcopy(data)
            for path, data in self._docs.items()
            if parent_collection(path) == collection
        }

    # ---- DocumentStore ----

    def new_id(self, collection: str) -> str:
        return uuid.uuid4().hex[:20]

    async def get(self, path: str) -> DocumentSnapshot:
        await asyncio.sleep(0)
        self.operations.append(("read", path))
        return self._snapshot(path)

    async def query(self, query: Query) -> List[DocumentSnapshot]:
        await asyncio.sleep(0)
        self.operations.append(("query", query.collection))
        return self._evaluate(query)

    def listen(self, query: Query, on_next: OnSnapshot, on_error: Optional[OnError] = None) -> Subscription:
        loop = asyncio.get_running_loop()
        listener = _Listener(query=query, on_next=on_next, on_error=on_error)

        def _detach():
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        listener.subscription = Subscription(_detach)
        self._listeners.append(listener)
        self.operations.append(("listen", query.collection))
        loop.call_soon(self._refresh, listener)
        return listener.subscription

    async def commit(self, writes: Sequence[Write]) -> None:
        async with self._lock:
            await asyncio.sleep(0)
            self._raise_injected_failure()
            self._apply(writes)

    async def run_transaction(self, read_paths: Sequence[str], decide: Decide) -> List[Write]:
        async with self._lock:
            await asyncio.sleep(0)
            self._raise_injected_failure()
            snapshots = []
            for path in read_paths:
                self.operations.append(("read", path))
                snapshots.append(self._snapshot(path))
            writes = list(decide(snapshots))
            self._apply(writes)
            return writes

    # ---- internals ----

    def _raise_injected_failure(self) -> None:
        if self._failures:
            raise self._failures.pop(0)

    def _snapshot(self, path: str) -> DocumentSnapshot:
        data = self._docs.get(path)
        if data is None:
            return DocumentSnapshot(id=document_id(path), path=path, data={}, exists=False)
        return DocumentSnapshot(id=document_id(path), path=path, data=copy.deepcopy(data))

    def _resolve(self, value: Any, stamp: datetime) -> Any:
        if value is SERVER_TIMESTAMP:
            return stamp
        if isinstance(value, dict):
            return {k: self._resolve(v, stamp) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve(v, stamp) for v in value]
        return copy.deepcopy(value)

    def _apply(self, writes: Sequence[Write]) -> None:
        # Validate everything first so a batch is all-or-nothing
        for write in writes:
            if write.kind == "update" and write.path not in self._docs:
                raise DocumentNotFoundError(f"No document to update: {write.path}")
            if write.kind not in ("set", "update"):
                raise ValueError(f"Unknown write kind: {write.kind}")

        stamp = from_millis(self._clock())
        for write in writes:
            data = self._resolve(write.data, stamp)
            current = self._docs.get(write.path)
            if current is None or (write.kind == "set" and not write.merge):
                self._docs[write.path] = data
            else:
                self._docs[write.path] = _merge(current, data)
            self.operations.append(("write", write.path))

        loop = self._running_loop()
        for listener in list(self._listeners):
            if loop is not None:
                loop.call_soon(self._refresh, listener)
            else:
                self._refresh(listener)

    @staticmethod
    def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None

    def _check_index(self, query: Query) -> None:
        fields = query.fields()
        if len(fields) > 1 and (query.group, fields) in self._missing_indexes:
            raise IndexRequiredError(
                f"The query requires an index on {query.group} ({', '.join(sorted(fields))})"
            )

    def _evaluate(self, query: Query) -> List[DocumentSnapshot]:
        self._check_index(query)
        docs = [
            self._snapshot(path)
            for path in self._docs
            if parent_collection(path) == query.collection
        ]
        docs = [d for d in docs if all(_matches(d, flt) for flt in query.filters)]
        # Documents missing an ordered field are excluded, as in the real store
        docs = [
            d for d in docs
            if all(_field(d, name) not in (None, _MISSING) for name, _ in query.orders)
        ]

        tie_desc = bool(query.orders) and query.orders[-1][1] == DESCENDING
        docs.sort(key=lambda d: d.id, reverse=tie_desc)
        for name, direction in reversed(query.orders):
            docs.sort(key=lambda d: _field(d, name), reverse=direction == DESCENDING)

        if query.cursor is not None:
            docs = [d for d in docs if self._after_cursor(d, query.cursor, query.orders, tie_desc)]
        if query.limit is not None:
            docs = docs[: query.limit]
        return docs

    @staticmethod
    def _after_cursor(doc: DocumentSnapshot, cursor: DocumentSnapshot, orders, tie_desc: bool) -> bool:
        for name, direction in orders:
            a, b = _field(doc, name), _field(cursor, name)
            if a == b:
                continue
            return a < b if direction == DESCENDING else a > b
        return doc.id < cursor.id if tie_desc else doc.id > cursor.id

    def _refresh(self, listener: _Listener) -> None:
        if listener.subscription is None or not listener.subscription.active:
            return
        try:
            docs = self._evaluate(listener.query)
        except RemoteStoreError as e:
            listener.subscription.close()
            if listener.on_error is not None:
                listener.on_error(e)
            else:
                logger.warning(f"Listener on {listener.query.collection} failed: {e}")
            return

        fingerprint = [(d.id, d.data) for d in docs]
        if fingerprint == listener.last:
            return
        listener.last = fingerprint
        listener.on_next(docs)
