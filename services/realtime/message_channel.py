"""Append-only message stream of an active session."""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional

from models.session_models import ChatMessage, ConnectionState
from services.realtime.retry import RetryPolicy
from services.realtime.typing_signal import TypingSignal
from services.store.contract import SERVER_TIMESTAMP, StoreAdapter, join_path

LOGGER = logging.getLogger(__name__)


def order_messages(raw: Any) -> List[ChatMessage]:
	"""Rebuild the ordered message list from a full ``messages`` snapshot.

	Sorted by store timestamp, ties broken by message id so equal timestamps
	never reorder between snapshots. Malformed entries are dropped.
	"""
	if not isinstance(raw, dict):
		return []
	messages = [ChatMessage.from_record(key, value) for key, value in raw.items()]
	return sorted((m for m in messages if m is not None), key=lambda m: (m.timestamp, m.id))


class MessageChannel:
	"""Send messages for the coordinator's current session.

	`state_provider` returns the coordinator's current `ConnectionState`;
	sends are silently rejected unless it reports CONNECTED.
	"""

	def __init__(
		self,
		store: StoreAdapter,
		typing: TypingSignal,
		state_provider: Callable[[], ConnectionState],
		sessions_path: str = "sessions",
		retry: Optional[RetryPolicy] = None,
	) -> None:
		self.store = store
		self.typing = typing
		self.state_provider = state_provider
		self.sessions_path = sessions_path
		self.retry = retry or RetryPolicy()

	async def send(self, session_id: str, self_id: str, text: str) -> Optional[str]:
		"""Append `text` as a new message and return its id, or None if rejected."""
		state = self.state_provider()
		if not state.can_send or state.session_id != session_id:
			LOGGER.debug("Rejected send while %s", state.status.value)
			return None
		cleaned = (text or "").strip()
		if not cleaned:
			return None

		await self.typing.clear()
		session_path = join_path(self.sessions_path, session_id)
		message_id = self.store.push_key(join_path(session_path, "messages"))
		await self.retry.run(
			self.store.write,
			join_path(session_path, "messages", message_id),
			{"senderId": self_id, "text": cleaned, "timestamp": SERVER_TIMESTAMP},
		)
		await self.retry.run(self.store.update, session_path, {"updatedAt": SERVER_TIMESTAMP})
		return message_id
