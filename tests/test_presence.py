import asyncio

from services.realtime.presence import LeasePresenceManager, PresenceManager
from helpers import RecordingStore


async def _active_session(store, session_id="s1"):
    await store.write(
        f"sessions/{session_id}",
        {
            "participantA": "user_a",
            "participantB": "user_b",
            "status": "active",
            "typingStatus": {"user_a": True, "user_b": False},
            "updatedAt": 1,
        },
    )


async def test_dropped_connection_closes_the_session(store):
    connection = store.connect()
    await _active_session(store)
    presence = PresenceManager(connection)
    await presence.arm("s1", "user_a")

    await connection.close(abrupt=True)

    record = store.snapshot("sessions/s1")
    assert record["status"] == "closed"
    assert record["closedBy"] == "user_a"
    assert record["typingStatus"]["user_a"] is False
    assert record["updatedAt"] > 1


async def test_disarm_cancels_the_pending_close(store):
    connection = store.connect()
    await _active_session(store)
    presence = PresenceManager(connection)
    await presence.arm("s1", "user_a")
    await presence.disarm("s1")

    await connection.close(abrupt=True)

    assert presence.armed_session_id is None
    assert store.snapshot("sessions/s1/status") == "active"


async def test_disarming_another_session_is_a_noop(store):
    connection = store.connect()
    await _active_session(store)
    presence = PresenceManager(connection)
    await presence.arm("s1", "user_a")
    await presence.disarm("other")

    assert presence.armed_session_id == "s1"
    assert len(connection.armed_paths) == 2


async def test_rearming_disarms_the_previous_session_first(store):
    await _active_session(store, "s1")
    await _active_session(store, "s2")
    recording = RecordingStore(store.connect())
    presence = PresenceManager(recording)

    await presence.arm("s1", "user_a")
    recording.calls.clear()
    await presence.arm("s2", "user_a")

    kinds = [call[0] for call in recording.calls]
    assert kinds == ["disarm", "disarm", "arm", "arm"]
    assert all("s1" in call[1] for call in recording.calls[:2])
    assert all("s2" in call[1] for call in recording.calls[2:])
    assert sorted(recording.armed_paths) == ["sessions/s2", "sessions/s2/typingStatus/user_a"]


async def test_abandon_leaves_actions_for_the_store(store):
    connection = store.connect()
    await _active_session(store)
    presence = PresenceManager(connection)
    await presence.arm("s1", "user_a")
    presence.abandon()

    await connection.close(abrupt=True)

    assert store.snapshot("sessions/s1/status") == "closed"


async def test_lease_is_refreshed_until_disarmed(store):
    connection = store.connect()
    presence = LeasePresenceManager(connection, heartbeat_seconds=0.02)
    await presence.arm("s1", "user_a")
    first = store.snapshot("leases/s1/user_a")

    await asyncio.sleep(0.07)
    refreshed = store.snapshot("leases/s1/user_a")
    await presence.disarm()

    assert refreshed > first
    assert store.snapshot("leases") is None


async def test_abandoned_lease_stays_for_the_reaper(store):
    connection = store.connect()
    presence = LeasePresenceManager(connection, heartbeat_seconds=0.02)
    await presence.arm("s1", "user_a")
    presence.abandon()
    stamp = store.snapshot("leases/s1/user_a")

    await asyncio.sleep(0.05)

    assert store.snapshot("leases/s1/user_a") == stamp
