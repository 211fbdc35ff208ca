def receive_until(ws, predicate, limit=25):
    for _ in range(limit):
        frame = ws.receive_json()
        if predicate(frame):
            return frame
    raise AssertionError("expected frame never arrived")


def _reply_to(request_id):
    return lambda frame: frame.get("request_id") == request_id


def _state(status):
    return lambda frame: frame["type"] == "state" and frame["status"] == status


def test_two_strangers_chat_until_one_drops(client):
    with client.websocket_connect("/ws?client_id=user_a") as ws_a:
        initial = ws_a.receive_json()
        assert initial["type"] == "state"
        assert initial["status"] == "idle"
        assert initial["client_id"] == "user_a"

        ws_a.send_json({"type": "match.request", "request_id": 1})
        waiting = receive_until(ws_a, _reply_to(1))
        assert waiting["status"] == "waiting"
        assert waiting["alias"]

        with client.websocket_connect("/ws?client_id=user_b") as ws_b:
            ws_b.receive_json()
            ws_b.send_json({"type": "match.request", "request_id": 1})
            connected = receive_until(ws_b, _reply_to(1))
            assert connected["status"] == "connected"
            assert connected["partner_id"] == "user_a"
            assert connected["session_id"] == waiting["session_id"]

            paired = receive_until(ws_a, _state("connected"))
            assert paired["partner_id"] == "user_b"

            ws_b.send_json({"type": "typing"})
            assert receive_until(ws_a, lambda f: f["type"] == "state" and f["partner_typing"])

            ws_b.send_json({"type": "message.send", "text": "hello", "request_id": 2})
            ack = receive_until(ws_b, _reply_to(2))
            assert ack["type"] == "message.ack"
            assert ack["accepted"] is True

            delivered = receive_until(ws_a, lambda f: f["type"] == "messages" and f["messages"])
            assert [(m["sender_id"], m["text"]) for m in delivered["messages"]] == [("user_b", "hello")]

        left = receive_until(ws_a, _state("partner_left"))
        assert left["partner_id"] == "user_b"
        assert left["reason"] == "Your chat partner has left."

        ws_a.send_json({"type": "leave", "request_id": 3})
        assert receive_until(ws_a, _reply_to(3))["status"] == "idle"

    stats = client.get("/sessions/stats").json()
    assert stats["sessions"] == {"waiting": 0, "active": 0, "closed": 0}


def test_cancel_while_waiting(client):
    with client.websocket_connect("/ws?client_id=user_a") as ws:
        ws.receive_json()
        ws.send_json({"type": "match.request", "request_id": "m"})
        assert receive_until(ws, _reply_to("m"))["status"] == "waiting"
        ws.send_json({"type": "match.cancel", "request_id": "c"})
        assert receive_until(ws, _reply_to("c"))["status"] == "idle"

    assert client.get("/sessions/stats").json()["sessions"]["waiting"] == 0


def test_message_before_match_is_not_accepted(client):
    with client.websocket_connect("/ws?client_id=user_a") as ws:
        ws.receive_json()
        ws.send_json({"type": "message.send", "text": "hello?", "request_id": 7})
        ack = receive_until(ws, _reply_to(7))
        assert ack == {"type": "message.ack", "message_id": None, "accepted": False, "request_id": 7}


def test_missing_client_id_is_an_error_state(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json({"type": "match.request", "request_id": 1})
        reply = receive_until(ws, _reply_to(1))
        assert reply["status"] == "error"
        assert reply["reason"] == "User ID not available."


def test_malformed_frames_are_reported(client):
    with client.websocket_connect("/ws?client_id=user_a") as ws:
        ws.receive_json()
        ws.send_text("not json")
        assert ws.receive_json()["detail"] == "Payload must be JSON"

        ws.send_json({"text": "no type"})
        assert ws.receive_json()["type"] == "error"

        ws.send_json({"type": "dance", "request_id": 9})
        error = receive_until(ws, _reply_to(9))
        assert error["type"] == "error"
        assert error["detail"] == "Unsupported message type."


def test_repeated_match_request_keeps_the_claimed_partner(client):
    with client.websocket_connect("/ws?client_id=user_a") as ws_a:
        ws_a.receive_json()
        ws_a.send_json({"type": "match.request", "request_id": "a"})
        waiting = receive_until(ws_a, _reply_to("a"))

        with client.websocket_connect("/ws?client_id=user_b") as ws_b:
            ws_b.receive_json()
            ws_b.send_json({"type": "match.request", "request_id": 1})
            ws_b.send_json({"type": "match.request", "request_id": 2})
            first = receive_until(ws_b, _reply_to(1))
            second = receive_until(ws_b, _reply_to(2))

            assert first["status"] == "connected"
            assert second["status"] == "connected"
            assert second["ignored"] is True
            assert second["session_id"] == first["session_id"] == waiting["session_id"]

            ws_b.send_json({"type": "message.send", "text": "still you?", "request_id": 3})
            receive_until(ws_b, _reply_to(3))
            seen = []
            receive_until(ws_a, lambda f: seen.append(f) or (f["type"] == "messages" and f["messages"]))

        assert all(f.get("status") != "partner_left" for f in seen)
        assert any(f.get("status") == "connected" for f in seen)


def test_match_request_after_partner_left_starts_a_new_attempt(client):
    with client.websocket_connect("/ws?client_id=user_a") as ws_a:
        ws_a.receive_json()
        ws_a.send_json({"type": "match.request", "request_id": 1})
        first = receive_until(ws_a, _reply_to(1))
        with client.websocket_connect("/ws?client_id=user_b") as ws_b:
            ws_b.receive_json()
            ws_b.send_json({"type": "match.request", "request_id": 1})
            receive_until(ws_b, _reply_to(1))
        receive_until(ws_a, _state("partner_left"))

        ws_a.send_json({"type": "match.request", "request_id": 2})
        again = receive_until(ws_a, _reply_to(2))

        assert "ignored" not in again
        assert again["status"] == "waiting"
        assert again["session_id"] != first["session_id"]
