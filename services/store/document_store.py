"""In-process shared document store.

`DocumentStore` holds a tree of plain JSON-like values addressed by
slash-separated paths and serves any number of live client connections.
It provides the primitives the rendezvous core consumes:

- full-value change subscriptions, delivered asynchronously and in order
  per subscriber (never re-entrantly from inside the write that caused them)
- equality queries over the children of a path
- a conditional update that succeeds for at most one of several racing writers
- server-assigned timestamps, strictly increasing per store instance
- on-disconnect actions, held by `StoreConnection` and executed when the
  connection is closed abruptly

Empty mappings are treated as absent, so removing the last child of a record
removes the record's field entirely.

If a `RecordDAL` is supplied, every top-level record under a persisted root
(``sessions`` by default) is written through to SQLite after each change and
reloaded by `load()`. On-disconnect registrations are connection state and
are never persisted.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import itertools
import logging
import time
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from services.store.contract import (
    SERVER_TIMESTAMP,
    CancelHandle,
    ChangeCallback,
    DisconnectAction,
    ErrorCallback,
    ServerTimestamp,
    StoreError,
    StoreUnavailableError,
    join_path,
    split_path,
)

LOGGER = logging.getLogger(__name__)

_UNSET = object()


class _Subscription:
    """Ordered, asynchronous delivery of one path's value to one listener."""

    def __init__(
        self,
        path: Sequence[str],
        on_change: ChangeCallback,
        on_error: Optional[ErrorCallback],
    ) -> None:
        self.parts = tuple(path)
        self.on_change = on_change
        self.on_error = on_error
        self.active = True
        self._last: Any = _UNSET
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task = asyncio.get_running_loop().create_task(self._pump())

    def offer(self, value: Any) -> None:
        """Queue the current value unless it equals the last one delivered."""
        if not self.active:
            return
        if self._last is not _UNSET and self._last == value:
            return
        self._last = copy.deepcopy(value)
        self._queue.put_nowait(("change", copy.deepcopy(value)))

    def fail(self, exc: Exception) -> None:
        if self.active:
            self._queue.put_nowait(("error", exc))

    def cancel(self) -> None:
        self.active = False
        # A listener may cancel its own subscription from inside its callback;
        # the pump then exits once that callback returns.
        if self._task is not asyncio.current_task():
            self._task.cancel()

    async def _pump(self) -> None:
        while self.active:
            kind, payload = await self._queue.get()
            if not self.active:
                break
            if kind == "error":
                self.active = False
                callback = self.on_error
            else:
                callback = self.on_change
            if callback is None:
                continue
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Listener for %s raised", "/".join(self.parts))


class DocumentStore:
    """Shared path-addressed store serving many `StoreConnection` clients."""

    def __init__(self, record_dal=None, persisted_roots: Iterable[str] = ("sessions",)) -> None:
        """
        Args:
            record_dal: Optional `dal.record_dal.RecordDAL` used for write-through persistence.
            persisted_roots: Top-level path segments whose child records are persisted.
        """
        self._data: Dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self._subscriptions: List[_Subscription] = []
        self._connections: Dict[str, "StoreConnection"] = {}
        self._last_timestamp = 0
        self._key_sequence = itertools.count()
        self._record_dal = record_dal
        self._persisted_roots = frozenset(persisted_roots)
        self.available = True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def persistent(self) -> bool:
        return self._record_dal is not None

    async def load(self) -> int:
        """Reload persisted records into memory and return how many were loaded."""
        if self._record_dal is None:
            return 0
        records = await self._record_dal.list_records()
        async with self._lock:
            for path, value in records:
                self._assign(split_path(path), value)
                for stamp in _iter_ints(value, ("createdAt", "updatedAt", "timestamp")):
                    self._last_timestamp = max(self._last_timestamp, stamp)
        LOGGER.info("Loaded %d persisted record(s)", len(records))
        return len(records)

    def connect(self) -> "StoreConnection":
        """Open a new live client connection."""
        self._ensure_available()
        connection = StoreConnection(self, uuid.uuid4().hex)
        self._connections[connection.connection_id] = connection
        return connection

    def set_available(self, available: bool) -> None:
        """Toggle maintenance mode; while unavailable every operation raises `StoreUnavailableError`."""
        self.available = available

    async def disconnect_all(self, abrupt: bool = False) -> None:
        """Close every live connection.

        All subscriptions are cancelled before any connection runs its
        on-disconnect actions, so no listener reacts to a peer's drop while
        its own connection is about to go too.
        """
        connections = list(self._connections.values())
        for connection in connections:
            connection.drop_subscriptions()
        for connection in connections:
            await connection.close(abrupt=abrupt)

    async def shutdown(self) -> None:
        """Stop serving.

        Every connection is dropped abruptly, so the sessions its clients
        occupied are closed (and persisted as closed) exactly as if their
        network links had failed. Remaining subscribers are then notified
        and further operations refused.
        """
        await self.disconnect_all(abrupt=True)
        self.available = False
        exc = StoreUnavailableError("Store is shutting down")
        for subscription in list(self._subscriptions):
            subscription.fail(exc)
        self._subscriptions.clear()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def _forget_connection(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def snapshot(self, path: str = "") -> Any:
        """Return a deep copy of the value at `path` without going through a connection."""
        return copy.deepcopy(self._get(split_path(path)))

    async def read(self, path: str) -> Optional[Any]:
        self._ensure_available()
        return self.snapshot(path)

    async def query(
        self, path: str, field: str, equals: Any, limit: Optional[int] = None
    ) -> Dict[str, Any]:
        """Return children of `path` whose `field` equals `equals`, ordered by key."""
        self._ensure_available()
        parent = self._get(split_path(path))
        if not isinstance(parent, dict):
            return {}
        matches: Dict[str, Any] = {}
        for key in sorted(parent):
            child = parent[key]
            if isinstance(child, dict) and child.get(field) == equals:
                matches[key] = copy.deepcopy(child)
                if limit is not None and len(matches) >= limit:
                    break
        return matches

    def subscribe(
        self,
        path: str,
        on_change: ChangeCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> _Subscription:
        """Register a listener; the current value (or None) is delivered first."""
        self._ensure_available()
        parts = split_path(path)
        subscription = _Subscription(parts, on_change, on_error)
        self._subscriptions.append(subscription)
        subscription.offer(self._get(parts))
        return subscription

    def unsubscribe(self, subscription: _Subscription) -> None:
        subscription.cancel()
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    async def write(self, path: str, value: Any) -> None:
        self._ensure_available()
        async with self._lock:
            stamp = self._next_timestamp()
            await self._commit([(split_path(path), self._resolve(value, stamp))])

    async def update(self, path: str, fields: Mapping[str, Any]) -> None:
        """Merge `fields` (keys may be relative sub-paths) into the value at `path`."""
        self._ensure_available()
        async with self._lock:
            stamp = self._next_timestamp()
            await self._commit(self._field_changes(path, fields, stamp))

    async def conditional_update(
        self, path: str, expected: Mapping[str, Any], fields: Mapping[str, Any]
    ) -> bool:
        """Apply `fields` only if every key in `expected` still has the expected value.

        An expected value of None matches an absent or null field. A missing
        record never matches. Returns True if the update was applied.
        """
        self._ensure_available()
        async with self._lock:
            current = self._get(split_path(path))
            if not isinstance(current, dict):
                return False
            for key, value in expected.items():
                if current.get(key) != value:
                    return False
            stamp = self._next_timestamp()
            await self._commit(self._field_changes(path, fields, stamp))
            return True

    async def remove(self, path: str) -> None:
        self._ensure_available()
        async with self._lock:
            parts = split_path(path)
            if self._get(parts) is None:
                return
            await self._commit([(parts, None)])

    def server_timestamp(self) -> ServerTimestamp:
        return SERVER_TIMESTAMP

    def push_key(self, path: str) -> str:
        """Return a fresh child key; keys sort in creation order."""
        self._ensure_available()
        stamp = self._next_timestamp()
        return f"{stamp:013d}{next(self._key_sequence) % 10000:04d}{uuid.uuid4().hex[:6]}"

    async def apply_disconnect_action(self, path: str, action: DisconnectAction) -> None:
        """Execute an on-disconnect action on behalf of a dropped connection."""
        self._ensure_available()
        async with self._lock:
            parts = split_path(path)
            stamp = self._next_timestamp()
            if action.kind == "set":
                await self._commit([(parts, self._resolve(action.value, stamp))])
            elif action.kind == "remove":
                await self._commit([(parts, None)])
            elif action.kind == "update":
                if self._get(parts) is None:
                    LOGGER.debug("Skipping on-disconnect update for missing %s", path)
                    return
                await self._commit(self._field_changes(path, action.fields, stamp))
            else:
                raise StoreError(f"Unknown on-disconnect action {action.kind!r}")
        LOGGER.info("Executed on-disconnect %s on %s", action.kind, path)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_available(self) -> None:
        if not self.available:
            raise StoreUnavailableError("Store is unavailable")

    def _next_timestamp(self) -> int:
        now = int(time.time() * 1000)
        self._last_timestamp = max(now, self._last_timestamp + 1)
        return self._last_timestamp

    def _resolve(self, value: Any, stamp: int) -> Any:
        if isinstance(value, ServerTimestamp):
            return stamp
        if isinstance(value, Mapping):
            return {str(k): self._resolve(v, stamp) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._resolve(v, stamp) for v in value]
        return value

    def _field_changes(
        self, path: str, fields: Mapping[str, Any], stamp: int
    ) -> List[Tuple[List[str], Any]]:
        base = split_path(path)
        return [
            (base + split_path(key), self._resolve(value, stamp))
            for key, value in fields.items()
        ]

    def _get(self, parts: Sequence[str]) -> Any:
        node: Any = self._data
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def _assign(self, parts: Sequence[str], value: Any) -> None:
        if isinstance(value, dict) and not value:
            value = None
        if not parts:
            self._data = value if isinstance(value, dict) else {}
            return
        if value is None:
            self._delete(parts)
            return
        node = self._data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = copy.deepcopy(value)

    def _delete(self, parts: Sequence[str]) -> None:
        trail = [self._data]
        node: Any = self._data
        for part in parts[:-1]:
            node = node.get(part) if isinstance(node, dict) else None
            if not isinstance(node, dict):
                return
            trail.append(node)
        trail[-1].pop(parts[-1], None)
        # Prune parents left empty.
        for depth in range(len(parts) - 1, 0, -1):
            if trail[depth]:
                break
            trail[depth - 1].pop(parts[depth - 1], None)

    async def _commit(self, changes: List[Tuple[List[str], Any]]) -> None:
        for parts, value in changes:
            self._assign(parts, value)
        changed = [tuple(parts) for parts, _ in changes]
        for subscription in list(self._subscriptions):
            if any(_related(subscription.parts, parts) for parts in changed):
                subscription.offer(self._get(subscription.parts))
        await self._persist(changed)

    async def _persist(self, changed: List[Tuple[str, ...]]) -> None:
        if self._record_dal is None:
            return
        records = set()
        roots = set()
        for parts in changed:
            if not parts:
                roots.update(self._persisted_roots)
            elif parts[0] not in self._persisted_roots:
                continue
            elif len(parts) == 1:
                roots.add(parts[0])
            else:
                records.add(parts[:2])
        try:
            for root in roots:
                await self._record_dal.delete_prefix(root)
                children = self._get([root])
                if isinstance(children, dict):
                    for key, value in children.items():
                        await self._record_dal.upsert_record(join_path(root, key), value)
            for record in sorted(records):
                value = self._get(record)
                path = join_path(*record)
                if value is None:
                    await self._record_dal.delete_record(path)
                else:
                    await self._record_dal.upsert_record(path, value)
        except Exception:
            # Memory stays authoritative; the next change to the record rewrites it.
            LOGGER.exception("Failed to persist records %s", sorted(records))


class StoreConnection:
    """One client's live connection to a `DocumentStore`.

    Implements the `StoreAdapter` contract. Subscriptions and on-disconnect
    registrations belong to the connection: `close(abrupt=True)` models a
    dropped network link and runs every action still armed, while
    `close(abrupt=False)` is a clean sign-off that runs none.
    """

    def __init__(self, store: DocumentStore, connection_id: str) -> None:
        self._store = store
        self.connection_id = connection_id
        self._armed: Dict[str, DisconnectAction] = {}
        self._subscriptions: List[_Subscription] = []
        self.closed = False

    @property
    def armed_paths(self) -> List[str]:
        return list(self._armed)

    def _ensure_open(self) -> None:
        if self.closed:
            raise StoreUnavailableError("Connection is closed")

    async def read(self, path: str) -> Optional[Any]:
        self._ensure_open()
        return await self._store.read(path)

    async def query(
        self, path: str, field: str, equals: Any, limit: Optional[int] = None
    ) -> Dict[str, Any]:
        self._ensure_open()
        return await self._store.query(path, field, equals, limit)

    def subscribe(
        self,
        path: str,
        on_change: ChangeCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> CancelHandle:
        self._ensure_open()
        subscription = self._store.subscribe(path, on_change, on_error)
        self._subscriptions.append(subscription)

        def cancel() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
            self._store.unsubscribe(subscription)

        return cancel

    async def write(self, path: str, value: Any) -> None:
        self._ensure_open()
        await self._store.write(path, value)

    async def update(self, path: str, fields: Mapping[str, Any]) -> None:
        self._ensure_open()
        await self._store.update(path, fields)

    async def conditional_update(
        self, path: str, expected: Mapping[str, Any], fields: Mapping[str, Any]
    ) -> bool:
        self._ensure_open()
        return await self._store.conditional_update(path, expected, fields)

    async def remove(self, path: str) -> None:
        self._ensure_open()
        await self._store.remove(path)

    def server_timestamp(self) -> ServerTimestamp:
        return self._store.server_timestamp()

    def push_key(self, path: str) -> str:
        self._ensure_open()
        return self._store.push_key(path)

    async def arm_on_disconnect(self, path: str, action: DisconnectAction) -> None:
        self._ensure_open()
        self._store._ensure_available()
        key = join_path(path)
        self._armed.pop(key, None)
        self._armed[key] = action

    async def disarm(self, path: str) -> None:
        self._ensure_open()
        self._armed.pop(join_path(path), None)

    def drop_subscriptions(self) -> None:
        for subscription in list(self._subscriptions):
            self._store.unsubscribe(subscription)
        self._subscriptions.clear()

    async def close(self, abrupt: bool = True) -> None:
        """Drop the connection, cancelling its subscriptions.

        Args:
            abrupt: When True, execute the armed on-disconnect actions in the
                order they were armed.
        """
        if self.closed:
            return
        self.closed = True
        self.drop_subscriptions()
        actions = list(self._armed.items())
        self._armed.clear()
        self._store._forget_connection(self.connection_id)
        if not abrupt:
            return
        for path, action in actions:
            try:
                await self._store.apply_disconnect_action(path, action)
            except StoreError as exc:
                LOGGER.warning("On-disconnect action for %s failed: %s", path, exc)


def _related(a: Sequence[str], b: Sequence[str]) -> bool:
    """True if one path is a prefix of (or equal to) the other."""
    shortest = min(len(a), len(b))
    return tuple(a[:shortest]) == tuple(b[:shortest])


def _iter_ints(value: Any, keys: Sequence[str]) -> Iterable[int]:
    if isinstance(value, dict):
        for key, child in value.items():
            if key in keys and isinstance(child, int):
                yield child
            else:
                yield from _iter_ints(child, keys)
