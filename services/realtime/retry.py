"""Retry helper for transient store failures."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from services.store.contract import StoreUnavailableError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
	"""Re-issue an operation on `StoreUnavailableError`, sleeping a little longer each attempt."""

	attempts: int = 3
	base_delay: float = 0.1

	async def run(self, operation: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
		"""Await `operation(*args, **kwargs)`; re-raise the last error once attempts are exhausted."""
		for attempt in range(1, self.attempts + 1):
			try:
				return await operation(*args, **kwargs)
			except StoreUnavailableError as exc:
				if attempt >= self.attempts:
					raise
				LOGGER.warning(
					"Store unavailable during %s (attempt %d/%d): %s",
					getattr(operation, "__name__", "operation"),
					attempt,
					self.attempts,
					exc,
				)
				await asyncio.sleep(self.base_delay * attempt)
		raise RuntimeError("RetryPolicy.attempts must be at least 1")
