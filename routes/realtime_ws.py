"""WebSocket endpoint for random-stranger chat."""

from __future__ import annotations

import asyncio
import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, WebSocket
from pydantic import ValidationError
from starlette.websockets import WebSocketDisconnect

from models.frames import ClientFrame
from services.realtime.ws_session import RealtimeSessionHandler
from services.store.contract import StoreError
from services.store.document_store import DocumentStore

router = APIRouter()


def _require_document_store(websocket: WebSocket) -> DocumentStore:
	store = getattr(websocket.app.state, "document_store", None)
	if store is None:
		raise HTTPException(status_code=500, detail="Document store unavailable")
	return store


@router.websocket("/ws")
async def chat_socket(
	websocket: WebSocket,
	client_id: Optional[str] = None,
	store: DocumentStore = Depends(_require_document_store),
):
	"""Serve one chat client; the socket lifetime is the client's presence."""
	await websocket.accept()
	try:
		connection = store.connect()
	except StoreError as exc:
		await websocket.send_text(json.dumps({"type": "error", "detail": f"Connection error: {exc}"}))
		await websocket.close()
		return

	handler = RealtimeSessionHandler(connection, client_id, websocket.app.state.settings)
	writer = asyncio.create_task(handler.pump(websocket))
	handler.push_current_state()
	try:
		while True:
			try:
				raw = await websocket.receive_text()
			except WebSocketDisconnect:
				break
			try:
				payload = json.loads(raw)
			except ValueError:
				handler.push_error("Payload must be JSON")
				continue
			try:
				frame = ClientFrame.model_validate(payload)
			except ValidationError:
				handler.push_error("Frame must be an object with a string \"type\"")
				continue
			await handler.handle(frame)
	finally:
		writer.cancel()
		await handler.close()
	try:
		await websocket.close()
	except Exception:
		pass
