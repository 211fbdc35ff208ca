import asyncio

import pytest

from dal.record_dal import RecordDAL
from services.store.contract import SERVER_TIMESTAMP, DisconnectAction, StoreUnavailableError
from services.store.document_store import DocumentStore
from utils.database_init import AsyncDatabaseInitializer
from helpers import settle


async def test_subscribe_delivers_current_value_then_changes(store):
    connection = store.connect()
    await connection.write("sessions/s1", {"status": "waiting"})
    seen = []
    connection.subscribe("sessions/s1", seen.append)
    await settle()
    await connection.update("sessions/s1", {"status": "active"})
    await settle()
    assert seen == [{"status": "waiting"}, {"status": "active"}]


async def test_subscription_reports_deletion_as_none(store):
    connection = store.connect()
    await connection.write("sessions/s1", {"status": "waiting"})
    seen = []
    connection.subscribe("sessions/s1", seen.append)
    await settle()
    await connection.remove("sessions/s1")
    await settle()
    assert seen[-1] is None


async def test_child_write_notifies_parent_listener(store):
    connection = store.connect()
    await connection.write("sessions/s1", {"status": "active"})
    seen = []
    connection.subscribe("sessions/s1/messages", seen.append)
    await settle()
    await connection.write("sessions/s1/messages/m1", {"senderId": "a", "text": "hi", "timestamp": 1})
    await settle()
    assert seen == [None, {"m1": {"senderId": "a", "text": "hi", "timestamp": 1}}]


async def test_unrelated_write_is_not_delivered(store):
    connection = store.connect()
    seen = []
    connection.subscribe("sessions/s1", seen.append)
    await settle()
    await connection.write("sessions/s2", {"status": "waiting"})
    await settle()
    assert seen == [None]


async def test_cancelled_subscription_stops_delivery(store):
    connection = store.connect()
    seen = []
    cancel = connection.subscribe("sessions/s1", seen.append)
    await settle()
    cancel()
    await connection.write("sessions/s1", {"status": "waiting"})
    await settle()
    assert seen == [None]


async def test_conditional_update_has_a_single_winner(store):
    await store.write("sessions/s1", {"status": "waiting", "participantA": "a", "participantB": None})
    expected = {"status": "waiting", "participantB": None}

    results = await asyncio.gather(
        *[
            store.conditional_update("sessions/s1", expected, {"participantB": claimant, "status": "active"})
            for claimant in ("b", "c", "d")
        ]
    )

    assert results.count(True) == 1
    record = store.snapshot("sessions/s1")
    assert record["status"] == "active"
    assert record["participantB"] in ("b", "c", "d")


async def test_conditional_update_on_missing_record_fails(store):
    applied = await store.conditional_update("sessions/missing", {"status": None}, {"status": "closed"})
    assert applied is False
    assert store.snapshot("sessions/missing") is None


async def test_update_accepts_nested_field_paths(store):
    await store.write("sessions/s1", {"status": "active", "typingStatus": {"a": False}})
    await store.update("sessions/s1", {"typingStatus/a": True, "typingStatus/b": False})
    assert store.snapshot("sessions/s1/typingStatus") == {"a": True, "b": False}


async def test_server_timestamps_strictly_increase(store):
    for index in range(20):
        await store.write(f"stamps/{index:02d}", SERVER_TIMESTAMP)
    stamps = [value for _, value in sorted(store.snapshot("stamps").items())]
    assert all(later > earlier for earlier, later in zip(stamps, stamps[1:]))


async def test_push_keys_sort_in_creation_order(store):
    keys = [store.push_key("sessions") for _ in range(50)]
    assert keys == sorted(keys)
    assert len(set(keys)) == len(keys)


async def test_query_filters_orders_and_limits(store):
    await store.write("sessions/c", {"status": "waiting"})
    await store.write("sessions/a", {"status": "waiting"})
    await store.write("sessions/b", {"status": "active"})
    await store.write("sessions/d", {"status": "waiting"})

    everything = await store.query("sessions", "status", "waiting")
    limited = await store.query("sessions", "status", "waiting", limit=2)

    assert list(everything) == ["a", "c", "d"]
    assert list(limited) == ["a", "c"]


async def test_abrupt_close_runs_armed_actions(store):
    connection = store.connect()
    await store.write("sessions/s1", {"status": "active", "typingStatus": {"a": True}})
    await connection.arm_on_disconnect("sessions/s1", DisconnectAction.update({"status": "closed", "closedBy": "a"}))
    await connection.arm_on_disconnect("sessions/s1/typingStatus/a", DisconnectAction.set(False))

    await connection.close(abrupt=True)

    record = store.snapshot("sessions/s1")
    assert record["status"] == "closed"
    assert record["closedBy"] == "a"
    assert record["typingStatus"] == {"a": False}
    assert store.connection_count == 0


async def test_graceful_close_and_disarm_skip_actions(store):
    graceful = store.connect()
    disarmed = store.connect()
    await store.write("sessions/s1", {"status": "active"})
    action = DisconnectAction.update({"status": "closed"})
    await graceful.arm_on_disconnect("sessions/s1", action)
    await disarmed.arm_on_disconnect("sessions/s1", action)
    await disarmed.disarm("sessions/s1")

    await graceful.close(abrupt=False)
    await disarmed.close(abrupt=True)

    assert store.snapshot("sessions/s1")["status"] == "active"


async def test_update_action_does_not_resurrect_deleted_record(store):
    connection = store.connect()
    await store.write("sessions/s1", {"status": "active"})
    await connection.arm_on_disconnect("sessions/s1", DisconnectAction.update({"status": "closed"}))
    await store.remove("sessions/s1")

    await connection.close(abrupt=True)

    assert store.snapshot("sessions/s1") is None


async def test_unavailable_store_rejects_operations(store):
    connection = store.connect()
    store.set_available(False)
    with pytest.raises(StoreUnavailableError):
        await connection.read("sessions")
    with pytest.raises(StoreUnavailableError):
        connection.subscribe("sessions/s1", lambda value: None)
    store.set_available(True)
    assert await connection.read("sessions") is None


async def test_closed_connection_rejects_operations(store):
    connection = store.connect()
    await connection.close(abrupt=False)
    with pytest.raises(StoreUnavailableError):
        await connection.write("sessions/s1", {})


async def test_shutdown_notifies_direct_subscribers(store):
    errors = []
    store.subscribe("sessions/s1", lambda value: None, errors.append)
    await settle()
    await store.shutdown()
    await settle()
    assert len(errors) == 1
    assert isinstance(errors[0], StoreUnavailableError)


async def test_sessions_are_written_through_and_reloaded(tmp_path):
    initializer = AsyncDatabaseInitializer(tmp_path, reset_on_start=True)
    dal = RecordDAL(initializer)
    first = DocumentStore(record_dal=dal)
    await first.write("sessions/s1", {"status": "waiting", "participantA": "a", "createdAt": SERVER_TIMESTAMP})
    await first.write("sessions/s2", {"status": "waiting", "participantA": "b"})
    await first.update("sessions/s1", {"status": "active", "participantB": "c"})
    await first.remove("sessions/s2")
    await first.write("leases/s1/a", 1)
    stamp = first.snapshot("sessions/s1/createdAt")

    second = DocumentStore(record_dal=RecordDAL(AsyncDatabaseInitializer(tmp_path, reset_on_start=False)))
    loaded = await second.load()

    assert loaded == 1
    assert second.persistent
    assert second.snapshot("sessions") == {
        "s1": {"status": "active", "participantA": "a", "participantB": "c", "createdAt": stamp}
    }
    assert second.snapshot("leases") is None
    await second.write("sessions/s3", SERVER_TIMESTAMP)
    assert second.snapshot("sessions/s3") > stamp
