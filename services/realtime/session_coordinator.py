"""Per-client session lifecycle and connection state machine.

The coordinator is the only writer of `ConnectionState`. It drives the
Matchmaker, owns the per-session `SessionSubscription`, keeps the presence
switch armed for exactly the session it is in, and translates the remote
record into client-visible states:

	IDLE -> CONNECTING -> WAITING -> CONNECTED -> PARTNER_LEFT -> IDLE
	                   \\-> CONNECTED             \\-> IDLE (own leave)
	any failure that needs the user's attention -> ERROR

Remote snapshots for the session record and its messages arrive on two
independent subscriptions in no particular order relative to each other or
to local writes. Every handler re-derives state from the snapshot it got,
and drops snapshots tagged with a session id other than the current one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

from models.session_models import (
	ChatMessage,
	ChatSession,
	ConnectionState,
	ConnectionStatus,
	SessionStatus,
)
from services.realtime.aliases import random_alias
from services.realtime.errors import IdentityUnavailableError, RendezvousError
from services.realtime.matchmaker import Matchmaker, MatchResult
from services.realtime.message_channel import MessageChannel, order_messages
from services.realtime.presence import PresenceManager
from services.realtime.retry import RetryPolicy
from services.realtime.subscription import SessionSubscription
from services.realtime.typing_signal import TYPING_TIMEOUT_SECONDS, TypingSignal
from services.store.contract import SERVER_TIMESTAMP, StoreAdapter, StoreError, StoreUnavailableError, join_path

LOGGER = logging.getLogger(__name__)

StateListener = Callable[[ConnectionState], None]
MessagesListener = Callable[[List[ChatMessage]], None]


class SessionCoordinator:
	"""Match this client with a stranger and follow the session until it ends."""

	def __init__(
		self,
		store: StoreAdapter,
		identity_id: Optional[str],
		*,
		sessions_path: str = "sessions",
		candidate_limit: int = 5,
		typing_timeout: float = TYPING_TIMEOUT_SECONDS,
		retry: Optional[RetryPolicy] = None,
		presence=None,
		alias_factory: Callable[[], str] = random_alias,
		on_state: Optional[StateListener] = None,
		on_messages: Optional[MessagesListener] = None,
	) -> None:
		"""
		Args:
			store: Store adapter for this client's live connection.
			identity_id: Stable client id; None or empty makes every attempt fail with ERROR.
			presence: `PresenceManager` or `LeasePresenceManager`; defaults to on-disconnect presence.
			alias_factory: Called once per connection attempt for a fresh alias.
			on_state: Called with every new `ConnectionState`.
			on_messages: Called with the full ordered message list whenever it changes.
		"""
		self.store = store
		self.identity_id = identity_id
		self.sessions_path = sessions_path
		self.retry = retry or RetryPolicy()
		self.matchmaker = Matchmaker(store, sessions_path, candidate_limit, self.retry)
		self.presence = presence or PresenceManager(store, sessions_path)
		self.typing = TypingSignal(store, sessions_path, typing_timeout)
		self.channel = MessageChannel(store, self.typing, lambda: self.state, sessions_path, self.retry)
		self.alias_factory = alias_factory
		self.on_state = on_state
		self.on_messages = on_messages

		self.state = ConnectionState.idle()
		self.messages: List[ChatMessage] = []
		self.alias: Optional[str] = None
		self._session_id: Optional[str] = None
		self._subscription: Optional[SessionSubscription] = None
		self._attempt = 0
		self._connecting = False
		self._subscribe_failures = 0

	@property
	def session_id(self) -> Optional[str]:
		"""Session this client currently occupies (kept while PARTNER_LEFT)."""
		return self._session_id

	# ------------------------------------------------------------------
	# User actions
	# ------------------------------------------------------------------

	async def connect(self) -> ConnectionState:
		"""Leave whatever session is current, then match with a new stranger."""
		if self._connecting:
			LOGGER.info("Connection attempt already in progress for %s", self.identity_id)
			return self.state
		self._connecting = True
		try:
			if self._session_id is not None:
				await self.leave()
			self._reset()
			attempt = self._attempt

			if not self.identity_id:
				self._transition(ConnectionState.error(str(IdentityUnavailableError())))
				return self.state

			self.alias = self.alias_factory()
			self._transition(ConnectionState.connecting())
			try:
				result = await self.matchmaker.find_or_create_session(self.identity_id, self.alias)
			except RendezvousError as exc:
				self._fail_attempt(attempt, str(exc))
				return self.state
			except StoreError as exc:
				self._fail_attempt(attempt, f"Connection error: {exc}")
				return self.state

			if attempt != self._attempt:
				LOGGER.info("Attempt cancelled while matching; retiring session %s", result.session_id)
				await self._retire_quietly(result.session_id, waiting=not result.claimed)
				return self.state
			await self._enter(result)
			return self.state
		finally:
			self._connecting = False

	async def leave(self) -> ConnectionState:
		"""Deliberately leave: cancel waiting, disconnect, or acknowledge a departed partner."""
		status = self.state.status
		session_id = self._session_id
		if session_id is None:
			self._reset()
			self._transition(ConnectionState.idle())
			return self.state

		if status is ConnectionStatus.CONNECTED:
			await self.typing.clear()
		self._close_subscription()
		self.typing.cancel()
		try:
			if status is ConnectionStatus.PARTNER_LEFT:
				await self.retry.run(self.store.remove, self._path(session_id))
			else:
				await self._retire(session_id, waiting=status is ConnectionStatus.WAITING)
		except StoreError as exc:
			LOGGER.warning("Could not close session %s on leave: %s", session_id, exc)
		await self._disarm_presence()
		self._reset()
		self._transition(ConnectionState.idle())
		return self.state

	async def cancel(self) -> ConnectionState:
		"""Stop waiting for a partner (same deliberate path as `leave`)."""
		return await self.leave()

	async def send_message(self, text: str) -> Optional[str]:
		"""Send `text` to the partner; returns the message id or None if rejected."""
		if self._session_id is None or not self.identity_id:
			return None
		return await self.channel.send(self._session_id, self.identity_id, text)

	async def notify_typing(self) -> None:
		if not self.state.can_send or self._session_id is None or not self.identity_id:
			return
		await self.typing.notify_typing(self._session_id, self.identity_id)

	def detach(self) -> None:
		"""Stop all local activity after the hosting connection was lost.

		Nothing is written to the store; armed on-disconnect actions are left
		for the store to execute.
		"""
		self._close_subscription()
		self.typing.cancel()
		self.presence.abandon()
		self._session_id = None
		self._attempt += 1
		self.state = ConnectionState.idle()
		self.messages = []

	# ------------------------------------------------------------------
	# Remote updates
	# ------------------------------------------------------------------

	async def _on_session_snapshot(self, session_id: str, value) -> None:
		if session_id != self._session_id:
			LOGGER.debug("Ignoring stale session update for %s", session_id)
			return
		self._subscribe_failures = 0
		if self.state.status is ConnectionStatus.PARTNER_LEFT:
			return

		if value is None:
			LOGGER.warning("Session %s disappeared", session_id)
			await self._teardown()
			self._transition(ConnectionState.error("Chat session ended abruptly."))
			return

		try:
			session = ChatSession.from_record(session_id, value)
		except ValueError as exc:
			LOGGER.error("Unusable session record: %s", exc)
			await self._teardown()
			self._transition(ConnectionState.error(f"Connection error: {exc}"))
			return

		if not session.is_member(self.identity_id):
			LOGGER.error("Client %s is no longer a member of session %s", self.identity_id, session_id)
			await self._teardown()
			self._transition(ConnectionState.error("Connection error: this chat no longer includes you."))
			return

		if session.status is SessionStatus.CLOSED:
			await self._on_closed(session)
			return

		partner = session.partner_of(self.identity_id)
		if session.status is SessionStatus.ACTIVE and partner is not None:
			self._transition(ConnectionState.connected(session_id, partner, session.is_typing(partner.id)))
		elif session.status is SessionStatus.ACTIVE:
			LOGGER.warning("Session %s is active but has no partner yet; treating as waiting", session_id)
			self._transition(ConnectionState.waiting(session_id))
			if session.participant_a == self.identity_id:
				await self._heal_unpartnered(session_id)
		else:
			self._transition(ConnectionState.waiting(session_id))

	async def _on_closed(self, session: ChatSession) -> None:
		partner = session.partner_of(self.identity_id)
		closer = session.closed_by
		if partner is not None and closer == partner.id:
			# History stays visible; the record is removed when the user acknowledges.
			self._close_subscription()
			self.typing.cancel()
			await self._disarm_presence()
			self._transition(ConnectionState.partner_left(session.session_id, partner))
			return

		await self._teardown()
		if closer == self.identity_id:
			self._transition(ConnectionState.idle("Chat session has been closed."))
		else:
			LOGGER.error("Session %s closed by unknown party %r", session.session_id, closer)
			self._transition(ConnectionState.error("Chat session closed unexpectedly."))

	def _on_messages_snapshot(self, session_id: str, value) -> None:
		if session_id != self._session_id or self.state.status is ConnectionStatus.PARTNER_LEFT:
			return
		self._set_messages(order_messages(value))

	async def _on_subscription_error(self, session_id: str, exc: Exception) -> None:
		if session_id != self._session_id:
			return
		LOGGER.warning("Subscription for session %s failed: %s", session_id, exc)
		self._close_subscription()
		if isinstance(exc, StoreUnavailableError):
			await self._resubscribe(session_id, exc)
			return
		await self._teardown()
		self._transition(ConnectionState.error(f"Connection error: {exc}"))

	# ------------------------------------------------------------------
	# Internals
	# ------------------------------------------------------------------

	def _path(self, session_id: str) -> str:
		return join_path(self.sessions_path, session_id)

	async def _enter(self, result: MatchResult) -> None:
		session_id = result.session_id
		self._session_id = session_id
		if result.claimed:
			self._transition(ConnectionState.connected(session_id, result.partner))
		else:
			self._transition(ConnectionState.waiting(session_id))
		try:
			self._open_subscription(session_id)
		except StoreError as exc:
			await self._resubscribe(session_id, exc)
			if self._session_id != session_id:
				return
		await self._arm_presence(session_id)

	def _open_subscription(self, session_id: str) -> None:
		self._close_subscription()
		self._subscription = SessionSubscription(
			self.store,
			session_id,
			on_session=self._on_session_snapshot,
			on_messages=self._on_messages_snapshot,
			on_error=self._on_subscription_error,
			sessions_path=self.sessions_path,
		).open()

	def _close_subscription(self) -> None:
		if self._subscription is not None:
			self._subscription.close()
			self._subscription = None

	async def _resubscribe(self, session_id: str, exc: Exception) -> None:
		while self._session_id == session_id:
			self._subscribe_failures += 1
			if self._subscribe_failures >= self.retry.attempts:
				await self._teardown()
				self._transition(ConnectionState.error(f"Connection error: {exc}"))
				return
			await asyncio.sleep(self.retry.base_delay * self._subscribe_failures)
			if self._session_id != session_id:
				return
			try:
				self._open_subscription(session_id)
				return
			except StoreError as err:
				exc = err

	async def _arm_presence(self, session_id: str) -> None:
		try:
			await self.retry.run(self.presence.arm, session_id, self.identity_id)
		except StoreError as exc:
			LOGGER.error("Presence for session %s could not be armed: %s", session_id, exc)
			return
		if self._session_id != session_id:
			# Left while arming.
			await self._disarm_presence(session_id)

	async def _disarm_presence(self, session_id: Optional[str] = None) -> None:
		try:
			await self.presence.disarm(session_id)
		except StoreError as exc:
			LOGGER.warning("Failed to disarm presence: %s", exc)

	async def _retire(self, session_id: str, waiting: bool) -> None:
		"""Close a session this client is leaving deliberately.

		An unclaimed waiting record is closed and deleted. Anything else is
		marked closed by this client so the partner sees PARTNER_LEFT; if
		the partner already closed it, this client is the last one out and
		deletes it.
		"""
		path = self._path(session_id)
		closed_fields = {
			"status": SessionStatus.CLOSED.value,
			"closedBy": self.identity_id,
			"updatedAt": SERVER_TIMESTAMP,
			f"typingStatus/{self.identity_id}": False,
		}
		if waiting:
			unclaimed = await self.retry.run(
				self.store.conditional_update,
				path,
				{"status": SessionStatus.WAITING.value, "participantA": self.identity_id, "participantB": None},
				closed_fields,
			)
			if unclaimed:
				await self.retry.run(self.store.remove, path)
				return
		closed = await self.retry.run(
			self.store.conditional_update, path, {"status": SessionStatus.ACTIVE.value}, closed_fields
		)
		if not closed:
			await self.retry.run(self.store.remove, path)

	async def _retire_quietly(self, session_id: str, waiting: bool) -> None:
		try:
			await self._retire(session_id, waiting)
		except StoreError as exc:
			LOGGER.warning("Could not retire abandoned session %s: %s", session_id, exc)

	async def _heal_unpartnered(self, session_id: str) -> None:
		try:
			await self.store.conditional_update(
				self._path(session_id),
				{
					"status": SessionStatus.ACTIVE.value,
					"participantA": self.identity_id,
					"participantB": None,
				},
				{"status": SessionStatus.WAITING.value, "updatedAt": SERVER_TIMESTAMP},
			)
		except StoreError as exc:
			LOGGER.warning("Could not reset session %s to waiting: %s", session_id, exc)

	async def _teardown(self) -> None:
		self._close_subscription()
		self.typing.cancel()
		await self._disarm_presence()
		self._session_id = None
		self._set_messages([])

	def _reset(self) -> None:
		self._close_subscription()
		self.typing.cancel()
		self._session_id = None
		self._attempt += 1
		self._subscribe_failures = 0
		self._set_messages([])

	def _fail_attempt(self, attempt: int, reason: str) -> None:
		if attempt != self._attempt:
			return
		LOGGER.error("Connection attempt for %s failed: %s", self.identity_id, reason)
		self._transition(ConnectionState.error(reason))

	def _transition(self, new_state: ConnectionState) -> None:
		if new_state == self.state:
			return
		if new_state.status is not self.state.status:
			LOGGER.info(
				"Client %s: %s -> %s", self.identity_id, self.state.status.value, new_state.status.value
			)
		self.state = new_state
		if self.on_state is not None:
			self.on_state(new_state)

	def _set_messages(self, messages: List[ChatMessage]) -> None:
		if messages == self.messages:
			return
		self.messages = messages
		if self.on_messages is not None:
			self.on_messages(list(messages))
