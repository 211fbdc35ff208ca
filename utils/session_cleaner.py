"""Periodic removal of finished sessions and reaping of expired presence leases."""

import asyncio
import logging
import time
from typing import Callable, Dict, Optional

from models.session_models import SessionStatus
from services.store.contract import SERVER_TIMESTAMP, StoreAdapter, StoreError, join_path

LOGGER = logging.getLogger(__name__)


class SessionCleaner:
    """Destroy closed sessions after a grace period and close abandoned ones."""

    def __init__(
        self,
        store: StoreAdapter,
        sessions_path: str = "sessions",
        leases_path: str = "leases",
        closed_grace_seconds: float = 30.0,
        waiting_ttl_seconds: float = 600.0,
        lease_seconds: float = 15.0,
        lease_presence: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Args:
            store: Store adapter used for all reads and writes.
            closed_grace_seconds: Age after which a Closed record is deleted.
            waiting_ttl_seconds: Age after which an unclaimed Waiting record is closed.
            lease_seconds: Age after which a presence lease counts as expired.
            lease_presence: Clients hold leases instead of on-disconnect actions, so an
                open session whose participant has no lease at all is abandoned.
            clock: Returns the current time in seconds; store timestamps are milliseconds.
        """
        self._store = store
        self.sessions_path = sessions_path
        self.leases_path = leases_path
        self.closed_grace_seconds = closed_grace_seconds
        self.waiting_ttl_seconds = waiting_ttl_seconds
        self.lease_seconds = lease_seconds
        self.lease_presence = lease_presence
        self._clock = clock

    def _cutoff(self, age_seconds: float) -> int:
        return int((self._clock() - age_seconds) * 1000)

    async def prune_closed_sessions(self) -> int:
        """Delete Closed records last updated before the grace window and return count removed."""
        cutoff = self._cutoff(self.closed_grace_seconds)
        closed = await self._store.query(self.sessions_path, "status", SessionStatus.CLOSED.value)
        removed = 0
        for session_id, record in closed.items():
            updated_at = record.get("updatedAt")
            if isinstance(updated_at, int) and updated_at < cutoff:
                await self._store.remove(join_path(self.sessions_path, session_id))
                removed += 1
        return removed

    async def prune_stale_waiting(self) -> int:
        """Close Waiting records nobody claimed within the TTL and return how many were closed.

        The record is closed on behalf of its creator, so a creator still
        listening returns to idle instead of seeing the record vanish.
        """
        cutoff = self._cutoff(self.waiting_ttl_seconds)
        waiting = await self._store.query(self.sessions_path, "status", SessionStatus.WAITING.value)
        closed = 0
        for session_id, record in waiting.items():
            updated_at = record.get("updatedAt")
            owner = record.get("participantA")
            if not isinstance(updated_at, int) or updated_at >= cutoff:
                continue
            applied = await self._store.conditional_update(
                join_path(self.sessions_path, session_id),
                {"status": SessionStatus.WAITING.value, "participantB": None, "updatedAt": updated_at},
                {"status": SessionStatus.CLOSED.value, "closedBy": owner, "updatedAt": SERVER_TIMESTAMP},
            )
            closed += int(applied)
        return closed

    async def reap_expired_leases(self) -> int:
        """Close sessions whose participant stopped refreshing its lease; return sessions closed."""
        cutoff = self._cutoff(self.lease_seconds)
        leases = await self._store.read(self.leases_path)
        if not isinstance(leases, dict):
            return 0
        reaped = 0
        for session_id, holders in leases.items():
            if not isinstance(holders, dict):
                continue
            for identity_id, refreshed_at in holders.items():
                if isinstance(refreshed_at, int) and refreshed_at >= cutoff:
                    continue
                reaped += int(await self._close_for(session_id, identity_id))
                await self._store.remove(join_path(self.leases_path, session_id, identity_id))
        return reaped

    async def reap_unleased_sessions(self) -> int:
        """Close open sessions in which a participant holds no lease at all.

        Only meaningful with lease presence. Covers sessions whose holder
        never armed (or whose lease was lost with a restart); the record must
        be older than one lease interval so a fresh claim has time to arm.
        """
        if not self.lease_presence:
            return 0
        cutoff = self._cutoff(self.lease_seconds)
        leases = await self._store.read(self.leases_path)
        if not isinstance(leases, dict):
            leases = {}
        closed = 0
        for status in (SessionStatus.WAITING, SessionStatus.ACTIVE):
            records = await self._store.query(self.sessions_path, "status", status.value)
            for session_id, record in records.items():
                updated_at = record.get("updatedAt")
                if not isinstance(updated_at, int) or updated_at >= cutoff:
                    continue
                holders = leases.get(session_id)
                if not isinstance(holders, dict):
                    holders = {}
                for participant in (record.get("participantA"), record.get("participantB")):
                    if participant and participant not in holders:
                        closed += int(await self._close_for(session_id, participant))
                        break
        return closed

    async def close_orphaned_sessions(self) -> int:
        """Close every Waiting or Active session; return how many were closed.

        Run once at startup after persisted records were reloaded: no live
        connection survives a restart, so nobody holds presence for them.
        They are closed on behalf of their creator and removed after the
        usual grace period.
        """
        closed = 0
        for status in (SessionStatus.WAITING, SessionStatus.ACTIVE):
            records = await self._store.query(self.sessions_path, "status", status.value)
            for session_id, record in records.items():
                owner = record.get("participantA")
                closed += int(await self._close_for(session_id, owner))
        if closed:
            LOGGER.info("Closed %d session(s) left open by a previous run", closed)
        return closed

    async def _close_for(self, session_id: str, identity_id: Optional[str]) -> bool:
        path = join_path(self.sessions_path, session_id)
        record = await self._store.read(path)
        if not isinstance(record, dict) or record.get("status") == SessionStatus.CLOSED.value:
            return False
        fields = {
            "status": SessionStatus.CLOSED.value,
            "closedBy": identity_id,
            "updatedAt": SERVER_TIMESTAMP,
        }
        if identity_id:
            fields[f"typingStatus/{identity_id}"] = False
        applied = await self._store.conditional_update(path, {"status": record.get("status")}, fields)
        if applied:
            LOGGER.info("Closed session %s on behalf of %s", session_id, identity_id)
        return applied

    async def run_once(self) -> Dict[str, int]:
        """Run every cleanup step once and return per-step counts."""
        return {
            "leases_reaped": await self.reap_expired_leases(),
            "unleased_closed": await self.reap_unleased_sessions(),
            "waiting_closed": await self.prune_stale_waiting(),
            "closed_removed": await self.prune_closed_sessions(),
        }

    async def run_periodic_cleanup(self, interval_seconds: float = 30.0) -> None:
        """
        Repeatedly run cleanup at the given interval until cancelled.

        Args:
            interval_seconds: Seconds to sleep between cleanup runs.
        """
        while True:
            try:
                counts = await self.run_once()
                if any(counts.values()):
                    LOGGER.info("Session cleanup: %s", counts)
                await asyncio.sleep(interval_seconds)
            except asyncio.CancelledError:
                break
            except StoreError as exc:
                LOGGER.warning("Session cleanup failed: %s", exc)
                await asyncio.sleep(interval_seconds)
