"""Session domain models for random-stranger chat."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class SessionStatus(str, Enum):
	"""Lifecycle of a shared session record."""

	WAITING = "waiting"
	ACTIVE = "active"
	CLOSED = "closed"


class ConnectionStatus(str, Enum):
	"""Client-visible connection status."""

	IDLE = "idle"
	CONNECTING = "connecting"
	WAITING = "waiting"
	CONNECTED = "connected"
	PARTNER_LEFT = "partner_left"
	ERROR = "error"


@dataclass(frozen=True)
class ClientIdentity:
	"""Stable per-device id plus the alias chosen for the current attempt."""

	id: str
	alias: str


@dataclass(frozen=True)
class Partner:
	"""The other participant of an active session."""

	id: str
	alias: Optional[str] = None


@dataclass(frozen=True)
class ChatMessage:
	"""Immutable chat message as stored under a session."""

	id: str
	sender_id: str
	text: str
	timestamp: int

	@classmethod
	def from_record(cls, message_id: str, data: Any) -> Optional["ChatMessage"]:
		"""Build a message from its stored fields, or None if the entry is malformed."""
		if not isinstance(data, Mapping):
			return None
		sender_id = data.get("senderId")
		text = data.get("text")
		timestamp = data.get("timestamp")
		if not sender_id or not isinstance(text, str) or not isinstance(timestamp, int):
			return None
		return cls(id=message_id, sender_id=sender_id, text=text, timestamp=timestamp)

	def to_payload(self) -> Dict[str, Any]:
		return {"id": self.id, "sender_id": self.sender_id, "text": self.text, "timestamp": self.timestamp}


@dataclass
class ChatSession:
	"""Decoded view of a ``sessions/<id>`` record."""

	session_id: str
	participant_a: str
	status: SessionStatus
	participant_b: Optional[str] = None
	alias_a: Optional[str] = None
	alias_b: Optional[str] = None
	closed_by: Optional[str] = None
	typing_status: Dict[str, bool] = field(default_factory=dict)
	created_at: Optional[int] = None
	updated_at: Optional[int] = None

	@classmethod
	def from_record(cls, session_id: str, data: Any) -> "ChatSession":
		"""Decode a stored record. Raises ValueError if it is not a usable session."""
		if not isinstance(data, Mapping):
			raise ValueError(f"Session {session_id} is not a record")
		participant_a = data.get("participantA")
		if not participant_a:
			raise ValueError(f"Session {session_id} has no creator")
		try:
			status = SessionStatus(data.get("status"))
		except ValueError as exc:
			raise ValueError(f"Session {session_id} has unknown status {data.get('status')!r}") from exc
		typing_raw = data.get("typingStatus") or {}
		typing_status = {str(k): bool(v) for k, v in typing_raw.items()} if isinstance(typing_raw, Mapping) else {}
		return cls(
			session_id=session_id,
			participant_a=participant_a,
			status=status,
			participant_b=data.get("participantB") or None,
			alias_a=data.get("aliasA"),
			alias_b=data.get("aliasB"),
			closed_by=data.get("closedBy") or None,
			typing_status=typing_status,
			created_at=data.get("createdAt"),
			updated_at=data.get("updatedAt"),
		)

	def is_member(self, identity_id: str) -> bool:
		return identity_id in (self.participant_a, self.participant_b)

	def partner_of(self, identity_id: str) -> Optional[Partner]:
		"""Return the other participant, or None if the slot is still empty."""
		if identity_id == self.participant_a:
			return Partner(self.participant_b, self.alias_b) if self.participant_b else None
		if identity_id == self.participant_b:
			return Partner(self.participant_a, self.alias_a)
		return None

	def is_typing(self, identity_id: str) -> bool:
		return bool(self.typing_status.get(identity_id))


_PARTNERED = (ConnectionStatus.CONNECTED, ConnectionStatus.PARTNER_LEFT)


@dataclass(frozen=True)
class ConnectionState:
	"""Everything the client shows about its connection, as one consistent value.

	Construction rejects impossible combinations: a partner exists only in
	the CONNECTED and PARTNER_LEFT variants (and is required there), WAITING
	always names its session, IDLE and CONNECTING never do, and ERROR always
	carries a reason. Use the named constructors.
	"""

	status: ConnectionStatus = ConnectionStatus.IDLE
	session_id: Optional[str] = None
	partner: Optional[Partner] = None
	partner_typing: bool = False
	reason: Optional[str] = None

	def __post_init__(self) -> None:
		if self.status in _PARTNERED:
			if self.partner is None or self.session_id is None:
				raise ValueError(f"{self.status.value} requires a session and a partner")
		elif self.partner is not None:
			raise ValueError(f"{self.status.value} cannot carry a partner")
		if self.status is ConnectionStatus.WAITING and self.session_id is None:
			raise ValueError("waiting requires a session")
		if self.status in (ConnectionStatus.IDLE, ConnectionStatus.CONNECTING, ConnectionStatus.ERROR):
			if self.session_id is not None:
				raise ValueError(f"{self.status.value} cannot reference a session")
		if self.status is ConnectionStatus.ERROR and not self.reason:
			raise ValueError("error requires a reason")
		if self.partner_typing and self.status is not ConnectionStatus.CONNECTED:
			raise ValueError("partner typing is only shown while connected")

	@classmethod
	def idle(cls, reason: Optional[str] = None) -> "ConnectionState":
		return cls(ConnectionStatus.IDLE, reason=reason)

	@classmethod
	def connecting(cls) -> "ConnectionState":
		return cls(ConnectionStatus.CONNECTING)

	@classmethod
	def waiting(cls, session_id: str) -> "ConnectionState":
		return cls(ConnectionStatus.WAITING, session_id=session_id)

	@classmethod
	def connected(cls, session_id: str, partner: Partner, partner_typing: bool = False) -> "ConnectionState":
		return cls(ConnectionStatus.CONNECTED, session_id=session_id, partner=partner, partner_typing=partner_typing)

	@classmethod
	def partner_left(cls, session_id: str, partner: Partner) -> "ConnectionState":
		return cls(
			ConnectionStatus.PARTNER_LEFT,
			session_id=session_id,
			partner=partner,
			reason="Your chat partner has left.",
		)

	@classmethod
	def error(cls, reason: str) -> "ConnectionState":
		return cls(ConnectionStatus.ERROR, reason=reason)

	@property
	def can_send(self) -> bool:
		return self.status is ConnectionStatus.CONNECTED

	def to_payload(self) -> Dict[str, Any]:
		return {
			"status": self.status.value,
			"session_id": self.session_id,
			"partner_id": self.partner.id if self.partner else None,
			"partner_alias": self.partner.alias if self.partner else None,
			"partner_typing": self.partner_typing,
			"reason": self.reason,
		}
