"""Find a waiting stranger or open a new waiting slot."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from models.session_models import Partner, SessionStatus
from services.realtime.errors import IdentityUnavailableError, MatchmakingError
from services.realtime.retry import RetryPolicy
from services.store.contract import StoreAdapter, StoreError, StoreUnavailableError, join_path

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchResult:
	"""Outcome of `Matchmaker.find_or_create_session`.

	`partner` is set when an existing waiting session was claimed, and None
	when a new waiting session was created for this client.
	"""

	session_id: str
	partner: Optional[Partner] = None

	@property
	def claimed(self) -> bool:
		return self.partner is not None


class Matchmaker:
	"""Claim the first claimable waiting session, otherwise create one.

	Candidates come from a possibly stale query, so a claim is a conditional
	update that only succeeds while the record is still waiting and unclaimed.
	A lost race is expected and simply moves on to the next candidate.
	"""

	def __init__(
		self,
		store: StoreAdapter,
		sessions_path: str = "sessions",
		candidate_limit: int = 5,
		retry: Optional[RetryPolicy] = None,
	) -> None:
		self.store = store
		self.sessions_path = sessions_path
		self.candidate_limit = candidate_limit
		self.retry = retry or RetryPolicy()

	async def find_or_create_session(self, self_id: str, self_alias: str) -> MatchResult:
		"""Return the claimed or newly created session for `self_id`.

		Raises:
			IdentityUnavailableError: If `self_id` is empty.
			MatchmakingError: If a session key could not be generated.
			StoreError: If the store stays unavailable after retries.
		"""
		if not self_id:
			raise IdentityUnavailableError()

		waiting: Dict[str, Any] = await self.retry.run(
			self.store.query,
			self.sessions_path,
			"status",
			SessionStatus.WAITING.value,
		)
		for session_id, record in self._claimable(waiting, self_id)[: self.candidate_limit]:
			owner = record["participantA"]
			if await self._try_claim(session_id, owner, self_id, self_alias):
				LOGGER.info("Client %s claimed session %s from %s", self_id, session_id, owner)
				return MatchResult(session_id=session_id, partner=Partner(owner, record.get("aliasA")))

		session_id = await self._create(self_id, self_alias)
		LOGGER.info("Client %s is waiting in new session %s", self_id, session_id)
		return MatchResult(session_id=session_id)

	@staticmethod
	def _claimable(waiting: Dict[str, Any], self_id: str) -> List[Tuple[str, Dict[str, Any]]]:
		"""Waiting records another client could claim, in key order.

		Own records and records that already name a second participant are
		dropped before the candidate limit applies.
		"""
		claimable = []
		for session_id, record in waiting.items():
			if not isinstance(record, dict):
				continue
			owner = record.get("participantA")
			if not owner or owner == self_id or record.get("participantB"):
				continue
			claimable.append((session_id, record))
		return claimable

	async def _try_claim(self, session_id: str, owner: str, self_id: str, self_alias: str) -> bool:
		timestamp = self.store.server_timestamp()
		try:
			claimed = await self.retry.run(
				self.store.conditional_update,
				join_path(self.sessions_path, session_id),
				{
					"status": SessionStatus.WAITING.value,
					"participantA": owner,
					"participantB": None,
				},
				{
					"participantB": self_id,
					"aliasB": self_alias,
					"status": SessionStatus.ACTIVE.value,
					"typingStatus": {self_id: False, owner: False},
					"updatedAt": timestamp,
				},
			)
		except StoreUnavailableError as exc:
			LOGGER.warning("Giving up on claiming session %s: %s", session_id, exc)
			return False
		if not claimed:
			LOGGER.debug("Lost the claim race for session %s", session_id)
		return claimed

	async def _create(self, self_id: str, self_alias: str) -> str:
		try:
			session_id = self.store.push_key(self.sessions_path)
		except StoreError as exc:
			raise MatchmakingError("Failed to create session key.") from exc
		if not session_id:
			raise MatchmakingError("Failed to create session key.")

		timestamp = self.store.server_timestamp()
		await self.retry.run(
			self.store.write,
			join_path(self.sessions_path, session_id),
			{
				"participantA": self_id,
				"aliasA": self_alias,
				"participantB": None,
				"status": SessionStatus.WAITING.value,
				"closedBy": None,
				"typingStatus": {self_id: False},
				"createdAt": timestamp,
				"updatedAt": timestamp,
			},
		)
		return session_id
