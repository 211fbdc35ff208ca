import re

from services.realtime.aliases import ALIASES, random_alias
from services.realtime.identity import generate_client_id, new_identity


def test_generated_ids_have_expected_shape():
    assert re.fullmatch(r"user_[0-9a-z]{9}", generate_client_id())


def test_generated_ids_do_not_repeat():
    assert len({generate_client_id() for _ in range(200)}) == 200


def test_new_identity_pairs_id_with_alias():
    identity = new_identity()
    assert identity.id.startswith("user_")
    assert identity.alias in ALIASES


def test_random_alias_comes_from_the_list():
    assert all(random_alias() in ALIASES for _ in range(20))


def test_issued_identity_can_be_used_to_connect(client):
    issued = client.post("/identity").json()
    assert re.fullmatch(r"user_[0-9a-z]{9}", issued["client_id"])
    assert issued["alias"] in ALIASES

    with client.websocket_connect(f"/ws?client_id={issued['client_id']}") as ws:
        assert ws.receive_json()["client_id"] == issued["client_id"]
        ws.send_json({"type": "match.request", "request_id": 1})
        reply = ws.receive_json()
        while reply.get("request_id") != 1:
            reply = ws.receive_json()
        assert reply["status"] == "waiting"
