"""Exceptions raised by the rendezvous core."""

from __future__ import annotations


class RendezvousError(Exception):
	"""Base class for rendezvous failures that end a connection attempt."""


class IdentityUnavailableError(RendezvousError):
	"""Raised when no local client identifier could be produced."""

	def __init__(self, message: str = "User ID not available.") -> None:
		super().__init__(message)


class MatchmakingError(RendezvousError):
	"""Raised when a session could be neither claimed nor created."""
