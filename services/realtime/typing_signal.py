"""Short-lived "is typing" flag for the local participant."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Tuple

from services.store.contract import StoreAdapter, StoreError, join_path

LOGGER = logging.getLogger(__name__)

TYPING_TIMEOUT_SECONDS = 3.0


class TypingSignal:
	"""Raise this client's typing flag on keystrokes and drop it after a quiet period.

	Each participant only ever writes its own ``typingStatus/<id>`` entry. The
	remote indicator is read straight off the session record by the coordinator.
	"""

	def __init__(
		self,
		store: StoreAdapter,
		sessions_path: str = "sessions",
		timeout: float = TYPING_TIMEOUT_SECONDS,
	) -> None:
		self.store = store
		self.sessions_path = sessions_path
		self.timeout = timeout
		self._target: Optional[Tuple[str, str]] = None
		self._raised = False
		self._expiry: Optional[asyncio.Task] = None

	@property
	def raised(self) -> bool:
		return self._raised

	async def notify_typing(self, session_id: str, self_id: str) -> None:
		"""Mark this client as typing and restart the expiry timer."""
		if self._target != (session_id, self_id):
			self.cancel()
			self._target = (session_id, self_id)
		self._restart_timer()
		if not self._raised:
			self._raised = True
			await self._write(True)

	async def clear(self) -> None:
		"""Cancel the timer and drop the flag immediately (used when a message is sent)."""
		self._stop_timer()
		if self._target is not None and self._raised:
			self._raised = False
			await self._write(False)

	def cancel(self) -> None:
		"""Forget the pending timer and target without writing to the store."""
		self._stop_timer()
		self._target = None
		self._raised = False

	def _restart_timer(self) -> None:
		self._stop_timer()
		self._expiry = asyncio.create_task(self._expire_after(self.timeout))

	def _stop_timer(self) -> None:
		if self._expiry is not None and self._expiry is not asyncio.current_task():
			self._expiry.cancel()
		self._expiry = None

	async def _expire_after(self, delay: float) -> None:
		await asyncio.sleep(delay)
		self._expiry = None
		if self._raised:
			self._raised = False
			await self._write(False)

	async def _write(self, typing: bool) -> None:
		if self._target is None:
			return
		session_id, self_id = self._target
		try:
			await self.store.write(join_path(self.sessions_path, session_id, "typingStatus", self_id), typing)
		except StoreError as exc:
			LOGGER.warning("Failed to set typing status for %s: %s", self_id, exc)
