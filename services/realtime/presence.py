"""Dead-man's switch for the session a client currently occupies.

`PresenceManager` asks the store to close the session (and drop this
client's typing flag) if the live connection ends without a deliberate
`disarm`. `LeasePresenceManager` gives the same guarantee for stores without
on-disconnect actions: it refreshes a lease timestamp and relies on
`utils.session_cleaner.SessionCleaner.reap_expired_leases` to close sessions
whose lease ran out.

Both keep at most one session armed. Arming a different session always
disarms the previous one first.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Tuple

from models.session_models import SessionStatus
from services.store.contract import SERVER_TIMESTAMP, DisconnectAction, StoreAdapter, join_path

LOGGER = logging.getLogger(__name__)


class PresenceManager:
	"""Arm and disarm store-side on-disconnect actions for one session at a time."""

	def __init__(self, store: StoreAdapter, sessions_path: str = "sessions") -> None:
		self.store = store
		self.sessions_path = sessions_path
		self._armed: Optional[Tuple[str, str]] = None

	@property
	def armed_session_id(self) -> Optional[str]:
		return self._armed[0] if self._armed else None

	async def arm(self, session_id: str, self_id: str) -> None:
		if self._armed == (session_id, self_id):
			return
		if self._armed is not None:
			await self.disarm(*self._armed)
		session_path = join_path(self.sessions_path, session_id)
		await self.store.arm_on_disconnect(
			session_path,
			DisconnectAction.update(
				{
					"status": SessionStatus.CLOSED.value,
					"closedBy": self_id,
					"updatedAt": SERVER_TIMESTAMP,
				}
			),
		)
		await self.store.arm_on_disconnect(
			join_path(session_path, "typingStatus", self_id),
			DisconnectAction.set(False),
		)
		self._armed = (session_id, self_id)
		LOGGER.debug("Armed presence for %s in session %s", self_id, session_id)

	async def disarm(self, session_id: Optional[str] = None, self_id: Optional[str] = None) -> None:
		"""Cancel the armed actions. Passing a session that is not armed is a no-op."""
		if self._armed is None:
			return
		armed_session, armed_self = self._armed
		if session_id is not None and session_id != armed_session:
			return
		# Forget first so a failed cancellation is not retried against a later session.
		self._armed = None
		session_path = join_path(self.sessions_path, armed_session)
		await self.store.disarm(join_path(session_path, "typingStatus", armed_self))
		await self.store.disarm(session_path)
		LOGGER.debug("Disarmed presence for %s in session %s", armed_self, armed_session)

	def abandon(self) -> None:
		"""Forget local state without touching the store; armed actions stay armed."""
		self._armed = None


class LeasePresenceManager:
	"""Heartbeat-based presence: refresh ``leases/<session>/<client>`` until disarmed."""

	def __init__(
		self,
		store: StoreAdapter,
		sessions_path: str = "sessions",
		leases_path: str = "leases",
		heartbeat_seconds: float = 5.0,
	) -> None:
		self.store = store
		self.sessions_path = sessions_path
		self.leases_path = leases_path
		self.heartbeat_seconds = heartbeat_seconds
		self._armed: Optional[Tuple[str, str]] = None
		self._heartbeat: Optional[asyncio.Task] = None

	@property
	def armed_session_id(self) -> Optional[str]:
		return self._armed[0] if self._armed else None

	async def arm(self, session_id: str, self_id: str) -> None:
		if self._armed == (session_id, self_id):
			return
		if self._armed is not None:
			await self.disarm(*self._armed)
		await self._refresh(session_id, self_id)
		self._armed = (session_id, self_id)
		self._heartbeat = asyncio.create_task(self._run(session_id, self_id))

	async def disarm(self, session_id: Optional[str] = None, self_id: Optional[str] = None) -> None:
		if self._armed is None:
			return
		armed_session, armed_self = self._armed
		if session_id is not None and session_id != armed_session:
			return
		self._armed = None
		self._stop_heartbeat()
		await self.store.remove(join_path(self.leases_path, armed_session, armed_self))

	def abandon(self) -> None:
		"""Stop refreshing without removing the lease, so it expires and gets reaped."""
		self._armed = None
		self._stop_heartbeat()

	def _stop_heartbeat(self) -> None:
		if self._heartbeat is not None:
			self._heartbeat.cancel()
			self._heartbeat = None

	async def _refresh(self, session_id: str, self_id: str) -> None:
		await self.store.write(join_path(self.leases_path, session_id, self_id), SERVER_TIMESTAMP)

	async def _run(self, session_id: str, self_id: str) -> None:
		while True:
			try:
				await asyncio.sleep(self.heartbeat_seconds)
				await self._refresh(session_id, self_id)
			except asyncio.CancelledError:
				break
			except Exception as exc:
				# A missed beat only shortens the remaining lease.
				LOGGER.warning("Lease refresh for %s in %s failed: %s", self_id, session_id, exc)
