"""Helpers behind the session statistics and identity routes."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import HTTPException, Request

from models.session_models import SessionStatus
from services.realtime.aliases import random_alias
from services.realtime.identity import new_identity
from services.store.document_store import DocumentStore


async def session_stats(request: Request) -> Dict[str, Any]:
	"""Count session records per status along with live connections."""
	store: DocumentStore = request.app.state.document_store
	if store is None:
		raise HTTPException(status_code=500, detail="Document store unavailable")
	records = store.snapshot(request.app.state.settings.sessions_path) or {}
	counts = {status.value: 0 for status in SessionStatus}
	for record in records.values():
		status = record.get("status") if isinstance(record, dict) else None
		if status in counts:
			counts[status] += 1
	return {"sessions": counts, "connections": store.connection_count}


async def fresh_alias() -> Dict[str, str]:
	"""Return a display alias for the next connection attempt."""
	return {"alias": random_alias()}


async def issue_identity() -> Dict[str, str]:
	"""Issue a new anonymous client id for use as ``/ws?client_id=``."""
	identity = new_identity()
	return {"client_id": identity.id, "alias": identity.alias}
