"""Anonymous client identities."""

from __future__ import annotations

import random
import string

from models.session_models import ClientIdentity
from services.realtime.aliases import random_alias

_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_client_id() -> str:
	"""Return a fresh opaque id such as ``user_k3j9x0a2b``."""
	return "user_" + "".join(random.choices(_ID_ALPHABET, k=9))


def new_identity() -> ClientIdentity:
	"""Issue an id for a client that has none yet, paired with a first alias.

	The client keeps the id for later connections; nothing is stored here.
	"""
	return ClientIdentity(id=generate_client_id(), alias=random_alias())
