"""Contract consumed by the rendezvous core from the shared document store.

The coordinator never talks to a concrete store. It relies only on the
primitives below: path-addressed reads and writes, equality queries,
full-value change subscriptions, a single conditional update used for the
matchmaking claim, server-assigned timestamps, and on-disconnect actions
that the store executes if a client's live connection drops.

Paths are slash-separated strings such as ``sessions/<id>/messages``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

ChangeCallback = Callable[[Any], Any]
ErrorCallback = Callable[[Exception], Any]
CancelHandle = Callable[[], None]


class StoreError(Exception):
    """Raised when the store rejects or fails an operation."""


class StoreUnavailableError(StoreError):
    """Raised for transient failures (timeouts, store offline). Safe to retry."""


class ServerTimestamp:
    """Placeholder resolved by the store to a monotonically increasing value at write time."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"

    def __copy__(self) -> "ServerTimestamp":
        return self

    def __deepcopy__(self, memo: Dict[int, Any]) -> "ServerTimestamp":
        return self


SERVER_TIMESTAMP = ServerTimestamp()


@dataclass(frozen=True)
class DisconnectAction:
    """What the store should do to a path when a connection drops unexpectedly.

    Attributes:
        kind: One of ``set``, ``update`` or ``remove``.
        value: The value to set, or the partial fields to merge for ``update``.
            An ``update`` action is skipped if the path no longer exists, so a
            record deleted in the meantime is never resurrected as a fragment.
    """

    kind: str
    value: Any = None
    fields: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def set(cls, value: Any) -> "DisconnectAction":
        return cls(kind="set", value=value)

    @classmethod
    def update(cls, fields: Mapping[str, Any]) -> "DisconnectAction":
        return cls(kind="update", fields=dict(fields))

    @classmethod
    def remove(cls) -> "DisconnectAction":
        return cls(kind="remove")


class StoreAdapter(Protocol):
    """Per-client view of the shared store."""

    async def read(self, path: str) -> Optional[Any]:
        ...

    async def query(
        self, path: str, field: str, equals: Any, limit: Optional[int] = None
    ) -> Dict[str, Any]:
        ...

    def subscribe(
        self,
        path: str,
        on_change: ChangeCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> CancelHandle:
        ...

    async def write(self, path: str, value: Any) -> None:
        ...

    async def update(self, path: str, fields: Mapping[str, Any]) -> None:
        ...

    async def conditional_update(
        self, path: str, expected: Mapping[str, Any], fields: Mapping[str, Any]
    ) -> bool:
        ...

    async def remove(self, path: str) -> None:
        ...

    def server_timestamp(self) -> ServerTimestamp:
        ...

    def push_key(self, path: str) -> str:
        ...

    async def arm_on_disconnect(self, path: str, action: DisconnectAction) -> None:
        ...

    async def disarm(self, path: str) -> None:
        ...


def split_path(path: str) -> List[str]:
    """Return the non-empty segments of a slash-separated path."""
    return [part for part in (path or "").split("/") if part]


def join_path(*parts: str) -> str:
    """Join path fragments, tolerating leading/trailing slashes."""
    segments: List[str] = []
    for part in parts:
        segments.extend(split_path(str(part)))
    return "/".join(segments)
