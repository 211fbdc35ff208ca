"""Inbound websocket frame schema."""

from typing import Any, Optional

from pydantic import BaseModel


class ClientFrame(BaseModel):
	"""One JSON frame sent by a chat client."""

	type: str
	request_id: Optional[Any] = None
	text: Optional[str] = None
