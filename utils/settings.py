from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


load_dotenv()


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {raw!r}.") from exc
    if value < 0:
        raise RuntimeError(f"{name} must not be negative, got {raw!r}.")
    return value


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}.") from exc
    if value < 1:
        raise RuntimeError(f"{name} must be at least 1, got {raw!r}.")
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    """
    Central configuration for the rendezvous service.

    Values are loaded once from environment variables (with sensible defaults)
    and then exposed via typed properties.
    """

    def __init__(self) -> None:
        # Store and persistence
        database_dir = os.getenv("DATABASE_DIR")
        self._database_dir = Path(database_dir).expanduser() if database_dir and database_dir.strip() else None
        self._store_reset_on_start = _bool_env("STORE_RESET_ON_START", True)
        self._sessions_path = os.getenv("SESSIONS_PATH", "sessions").strip("/") or "sessions"

        # Matchmaking and chat behaviour
        self._match_candidate_limit = _int_env("MATCH_CANDIDATE_LIMIT", 5)
        self._typing_timeout_seconds = _float_env("TYPING_TIMEOUT_SECONDS", 3.0)
        self._store_retry_attempts = _int_env("STORE_RETRY_ATTEMPTS", 3)
        self._store_retry_base_delay = _float_env("STORE_RETRY_BASE_DELAY", 0.1)

        # Presence
        self._presence_mode = os.getenv("PRESENCE_MODE", "disconnect").strip().lower()
        if self._presence_mode not in {"disconnect", "lease"}:
            raise RuntimeError(
                f"PRESENCE_MODE must be 'disconnect' or 'lease', got {self._presence_mode!r}."
            )
        self._presence_lease_seconds = _float_env("PRESENCE_LEASE_SECONDS", 15.0)
        self._presence_heartbeat_seconds = _float_env("PRESENCE_HEARTBEAT_SECONDS", 5.0)

        # Cleanup
        self._closed_session_grace_seconds = _float_env("CLOSED_SESSION_GRACE_SECONDS", 30.0)
        self._waiting_session_ttl_seconds = _float_env("WAITING_SESSION_TTL_SECONDS", 600.0)
        self._cleanup_interval_seconds = _float_env("CLEANUP_INTERVAL_SECONDS", 30.0)

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    @property
    def database_dir(self) -> Optional[Path]:
        return self._database_dir

    @property
    def store_reset_on_start(self) -> bool:
        return self._store_reset_on_start

    @property
    def sessions_path(self) -> str:
        return self._sessions_path

    # ------------------------------------------------------------------
    # Matchmaking / chat
    # ------------------------------------------------------------------

    @property
    def match_candidate_limit(self) -> int:
        return self._match_candidate_limit

    @property
    def typing_timeout_seconds(self) -> float:
        return self._typing_timeout_seconds

    @property
    def store_retry_attempts(self) -> int:
        return self._store_retry_attempts

    @property
    def store_retry_base_delay(self) -> float:
        return self._store_retry_base_delay

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    @property
    def presence_mode(self) -> str:
        return self._presence_mode

    @property
    def presence_lease_seconds(self) -> float:
        return self._presence_lease_seconds

    @property
    def presence_heartbeat_seconds(self) -> float:
        return self._presence_heartbeat_seconds

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    @property
    def closed_session_grace_seconds(self) -> float:
        return self._closed_session_grace_seconds

    @property
    def waiting_session_ttl_seconds(self) -> float:
        return self._waiting_session_ttl_seconds

    @property
    def cleanup_interval_seconds(self) -> float:
        return self._cleanup_interval_seconds


settings = Settings()
