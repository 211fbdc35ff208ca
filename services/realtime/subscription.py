"""Scoped pair of listeners for one session."""

from __future__ import annotations

from typing import Any, Callable, List, Optional

from services.store.contract import CancelHandle, StoreAdapter, join_path

SnapshotHandler = Callable[[str, Any], Any]
ErrorHandler = Callable[[str, Exception], Any]


class SessionSubscription:
	"""Listen to a session record and its message list as a single resource.

	Every callback receives the session id the subscription was opened for,
	so handlers can drop events that belong to a session the client has
	already left. `close()` is synchronous and idempotent.
	"""

	def __init__(
		self,
		store: StoreAdapter,
		session_id: str,
		on_session: SnapshotHandler,
		on_messages: SnapshotHandler,
		on_error: ErrorHandler,
		sessions_path: str = "sessions",
	) -> None:
		self.store = store
		self.session_id = session_id
		self.sessions_path = sessions_path
		self._on_session = on_session
		self._on_messages = on_messages
		self._on_error = on_error
		self._cancels: List[CancelHandle] = []
		self.closed = False

	def open(self) -> "SessionSubscription":
		session_id = self.session_id
		session_path = join_path(self.sessions_path, session_id)
		try:
			self._cancels.append(
				self.store.subscribe(
					session_path,
					lambda value: self._on_session(session_id, value),
					lambda exc: self._on_error(session_id, exc),
				)
			)
			self._cancels.append(
				self.store.subscribe(
					join_path(session_path, "messages"),
					lambda value: self._on_messages(session_id, value),
					lambda exc: self._on_error(session_id, exc),
				)
			)
		except Exception:
			self.close()
			raise
		return self

	def close(self) -> None:
		self.closed = True
		cancels, self._cancels = self._cancels, []
		for cancel in cancels:
			cancel()

	def __enter__(self) -> "SessionSubscription":
		return self.open()

	def __exit__(self, *exc_info: Optional[Any]) -> None:
		self.close()
