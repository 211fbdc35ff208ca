"""Dispatch chat websocket events to the client's session coordinator."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import WebSocket

from models.frames import ClientFrame
from models.session_models import ChatMessage, ConnectionState, ConnectionStatus
from services.realtime.presence import LeasePresenceManager, PresenceManager
from services.realtime.retry import RetryPolicy
from services.realtime.session_coordinator import SessionCoordinator
from services.store.document_store import StoreConnection
from utils.settings import Settings

LOGGER = logging.getLogger(__name__)

# A new match may start only when the client is not already waiting or chatting;
# leaving first is how a connected client asks for a different partner.
_MATCHABLE = (ConnectionStatus.IDLE, ConnectionStatus.PARTNER_LEFT, ConnectionStatus.ERROR)


def build_presence(connection: StoreConnection, config: Settings):
	"""Return the presence manager selected by PRESENCE_MODE."""
	if config.presence_mode == "lease":
		return LeasePresenceManager(
			connection,
			sessions_path=config.sessions_path,
			heartbeat_seconds=config.presence_heartbeat_seconds,
		)
	return PresenceManager(connection, sessions_path=config.sessions_path)


class RealtimeSessionHandler:
	"""Route websocket messages for a single chat client.

	The socket's store connection is the client's live connection: if the
	socket drops without a ``leave``, `close()` ends the connection abruptly
	and the store runs the armed on-disconnect actions.
	"""

	def __init__(self, connection: StoreConnection, client_id: Optional[str], config: Settings) -> None:
		self.connection = connection
		self.outbox: asyncio.Queue = asyncio.Queue()
		self.coordinator = SessionCoordinator(
			connection,
			(client_id or "").strip() or None,
			sessions_path=config.sessions_path,
			candidate_limit=config.match_candidate_limit,
			typing_timeout=config.typing_timeout_seconds,
			retry=RetryPolicy(config.store_retry_attempts, config.store_retry_base_delay),
			presence=build_presence(connection, config),
			on_state=self._push_state,
			on_messages=self._push_messages,
		)

	async def handle(self, frame: ClientFrame) -> None:
		"""Process a single inbound websocket frame."""
		request_id = frame.request_id
		message_type = frame.type
		try:
			if message_type == "match.request":
				if self.coordinator.state.status in _MATCHABLE:
					result = self._state_frame(await self.coordinator.connect())
				else:
					# Repeated request (e.g. a double click) while an attempt or chat is live.
					LOGGER.info("Ignoring match request while %s", self.coordinator.state.status.value)
					result = self._state_frame(self.coordinator.state)
					result["ignored"] = True
			elif message_type in ("match.cancel", "leave"):
				state = await self.coordinator.leave()
				result = self._state_frame(state)
			elif message_type == "message.send":
				message_id = await self.coordinator.send_message(frame.text or "")
				result = {"type": "message.ack", "message_id": message_id, "accepted": message_id is not None}
			elif message_type == "typing":
				await self.coordinator.notify_typing()
				result = None
			else:
				raise ValueError("Unsupported message type.")
			if result is not None:
				result["request_id"] = request_id
				self.outbox.put_nowait(result)
		except Exception as exc:
			LOGGER.exception("Failed to handle %r frame", message_type)
			self.push_error(str(exc), request_id)

	def push_error(self, detail: str, request_id: Any = None) -> None:
		self.outbox.put_nowait({"type": "error", "request_id": request_id, "detail": detail})

	def push_current_state(self) -> None:
		self._push_state(self.coordinator.state)

	async def pump(self, websocket: WebSocket) -> None:
		"""Send queued frames to the socket until it closes or the task is cancelled."""
		while True:
			frame = await self.outbox.get()
			try:
				await websocket.send_text(json.dumps(frame))
			except Exception as exc:
				LOGGER.debug("Stopped sending frames: %s", exc)
				return

	async def close(self) -> None:
		"""Release the client's resources after the socket ended."""
		self.coordinator.detach()
		await self.connection.close(abrupt=True)

	def _push_state(self, state: ConnectionState) -> None:
		self.outbox.put_nowait(self._state_frame(state))

	def _push_messages(self, messages: List[ChatMessage]) -> None:
		self.outbox.put_nowait({"type": "messages", "messages": [m.to_payload() for m in messages]})

	def _state_frame(self, state: ConnectionState) -> Dict[str, Any]:
		frame: Dict[str, Any] = {"type": "state", **state.to_payload()}
		frame["client_id"] = self.coordinator.identity_id
		frame["alias"] = self.coordinator.alias
		return frame
