from models.session_models import ConnectionState, Partner
from services.realtime.message_channel import MessageChannel, order_messages
from services.realtime.typing_signal import TypingSignal
from helpers import FAST_RETRY


def test_messages_sort_by_timestamp_then_id():
    raw = {
        "m3": {"senderId": "a", "text": "third", "timestamp": 20},
        "m2": {"senderId": "b", "text": "tie-2", "timestamp": 10},
        "m1": {"senderId": "a", "text": "tie-1", "timestamp": 10},
        "m0": {"senderId": "b", "text": "first", "timestamp": 5},
    }
    assert [m.text for m in order_messages(raw)] == ["first", "tie-1", "tie-2", "third"]


def test_malformed_messages_are_dropped():
    raw = {
        "m1": {"senderId": "a", "text": "ok", "timestamp": 1},
        "m2": {"senderId": "a", "text": "no stamp"},
        "m3": "garbage",
    }
    assert [m.id for m in order_messages(raw)] == ["m1"]
    assert order_messages(None) == []


def _channel(connection, state):
    typing = TypingSignal(connection, timeout=1.0)
    return MessageChannel(connection, typing, lambda: state, retry=FAST_RETRY), typing


async def _active_session(store):
    await store.write("sessions/s1", {"participantA": "user_a", "participantB": "user_b", "status": "active", "updatedAt": 1})


async def test_send_appends_message_and_clears_typing(store):
    await _active_session(store)
    channel, typing = _channel(store.connect(), ConnectionState.connected("s1", Partner("user_b")))
    await typing.notify_typing("s1", "user_a")

    message_id = await channel.send("s1", "user_a", "  hello there  ")

    stored = store.snapshot(f"sessions/s1/messages/{message_id}")
    assert stored["senderId"] == "user_a"
    assert stored["text"] == "hello there"
    assert isinstance(stored["timestamp"], int)
    assert store.snapshot("sessions/s1/typingStatus/user_a") is False
    assert store.snapshot("sessions/s1/updatedAt") > stored["timestamp"]


async def test_send_is_rejected_unless_connected(store):
    await _active_session(store)
    channel, _ = _channel(store.connect(), ConnectionState.waiting("s1"))

    assert await channel.send("s1", "user_a", "hello") is None
    assert store.snapshot("sessions/s1/messages") is None


async def test_send_is_rejected_for_another_session(store):
    await _active_session(store)
    channel, _ = _channel(store.connect(), ConnectionState.connected("s1", Partner("user_b")))

    assert await channel.send("s2", "user_a", "hello") is None


async def test_blank_text_is_not_sent(store):
    await _active_session(store)
    channel, _ = _channel(store.connect(), ConnectionState.connected("s1", Partner("user_b")))

    assert await channel.send("s1", "user_a", "   ") is None
    assert store.snapshot("sessions/s1/messages") is None
