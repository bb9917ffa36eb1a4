import json
import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app import create_app


def envelope(type_, payload):
    return json.dumps({"type": type_, "payload": payload})


def wait_for_live_rooms(client, expected, timeout=3.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        health = client.get("/health").json()
        if health["live_rooms"] == expected:
            return health
        time.sleep(0.05)
    raise AssertionError(f"live_rooms never reached {expected}: {health}")


def test_peer_receives_message_and_sender_gets_no_echo(client):
    client.post("/api/rooms", json={"code": "AB12CD", "mode": "SINGLE", "data": {"notes": "", "players": ["p1"]}})

    with client.websocket_connect("/?code=AB12CD") as a, client.websocket_connect("/?code=AB12CD") as b:
        frame = envelope("SYNC_NOTES", "suspect lied")
        a.send_text(frame)
        assert b.receive_text() == frame

        reply = envelope("SYNC_NOTES", "noted")
        b.send_text(reply)
        # A's next frame is B's reply, not its own message echoed back
        assert a.receive_text() == reply


def test_payload_is_forwarded_verbatim(client):
    with client.websocket_connect("/ws?code=AB12CD") as a, client.websocket_connect("/ws?code=AB12CD") as b:
        frame = '{ "payload" : {"b": 1, "a": [1, 2]},  "type":"CUSTOM" }'
        a.send_text(frame)

        assert b.receive_text() == frame


def test_room_code_is_case_insensitive(client):
    with client.websocket_connect("/ws?code=ab12cd") as a, client.websocket_connect("/ws?code=AB12CD") as b:
        a.send_text(envelope("SYNC_NOTES", "x"))

        assert json.loads(b.receive_text())["payload"] == "x"


def test_messages_do_not_cross_rooms(client):
    with client.websocket_connect("/ws?code=ROOM1") as a, \
            client.websocket_connect("/ws?code=ROOM1") as b, \
            client.websocket_connect("/ws?code=ROOM2") as c, \
            client.websocket_connect("/ws?code=ROOM2") as d:
        a.send_text(envelope("SYNC_NOTES", "room one"))
        assert json.loads(b.receive_text())["payload"] == "room one"

        d.send_text(envelope("SYNC_NOTES", "room two"))
        # C's first frame is from its own room
        assert json.loads(c.receive_text())["payload"] == "room two"


def test_messages_from_one_sender_arrive_in_order(client):
    with client.websocket_connect("/ws?code=AB12CD") as a, client.websocket_connect("/ws?code=AB12CD") as b:
        for i in range(10):
            a.send_text(envelope("SYNC_NOTES", str(i)))

        assert [json.loads(b.receive_text())["payload"] for _ in range(10)] == [str(i) for i in range(10)]


def test_malformed_message_is_dropped_and_connection_stays_open(client):
    with client.websocket_connect("/ws?code=AB12CD") as a, client.websocket_connect("/ws?code=AB12CD") as b:
        a.send_text("not json {")
        a.send_bytes(b"\xff\xfe")
        frame = envelope("SYNC_NOTES", "after garbage")
        a.send_text(frame)

        assert b.receive_text() == frame


def test_binary_json_frame_is_relayed_as_text(client):
    with client.websocket_connect("/ws?code=AB12CD") as a, client.websocket_connect("/ws?code=AB12CD") as b:
        frame = envelope("SYNC_NOTES", "bytes")
        a.send_bytes(frame.encode("utf-8"))

        assert b.receive_text() == frame


@pytest.mark.parametrize("path", ["/ws", "/ws?code=", "/ws?code=%20%20", "/"])
def test_connection_without_room_code_is_refused(client, path):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(path):
            pass

    assert exc.value.code == 1008
    assert client.get("/health").json()["live_connections"] == 0


def test_registry_entry_removed_after_last_disconnect(client):
    with client.websocket_connect("/ws?code=AB12CD"):
        with client.websocket_connect("/ws?code=AB12CD"):
            health = wait_for_live_rooms(client, 1)
            assert health["live_connections"] == 2
        wait_for_live_rooms(client, 1)

    wait_for_live_rooms(client, 0)


def test_disconnect_does_not_touch_snapshot(client):
    client.post("/api/rooms", json={"code": "AB12CD", "mode": "COOP", "data": {"notes": "keep"}})

    with client.websocket_connect("/ws?code=AB12CD"):
        pass
    wait_for_live_rooms(client, 0)

    assert client.get("/api/rooms/AB12CD").json()["data"] == {"notes": "keep"}


def test_full_state_sync_is_persisted_before_fan_out(client):
    client.post("/api/rooms", json={"code": "AB12CD", "mode": "COOP", "data": {"notes": "", "players": ["p1"]}})
    new_state = {"notes": "", "players": ["p1", "p2"], "currentSuspectId": None}

    with client.websocket_connect("/ws?code=AB12CD") as a, client.websocket_connect("/ws?code=AB12CD") as b:
        a.send_text(envelope("SYNC_STATE", new_state))
        b.receive_text()

        assert client.get("/api/rooms/AB12CD").json()["data"] == new_state


def test_partial_syncs_are_not_persisted(client):
    client.post("/api/rooms", json={"code": "AB12CD", "mode": "COOP", "data": {"notes": ""}})

    with client.websocket_connect("/ws?code=AB12CD") as a, client.websocket_connect("/ws?code=AB12CD") as b:
        a.send_text(envelope("SYNC_NOTES", "only relayed"))
        b.receive_text()

        assert client.get("/api/rooms/AB12CD").json()["data"] == {"notes": ""}


def test_full_state_sync_for_unknown_room_is_still_relayed(client):
    with client.websocket_connect("/ws?code=GHOST1") as a, client.websocket_connect("/ws?code=GHOST1") as b:
        frame = envelope("SYNC_STATE", {"notes": "x"})
        a.send_text(frame)

        assert b.receive_text() == frame
    assert client.get("/api/rooms/GHOST1").status_code == 404


def test_write_through_can_be_disabled():
    app = create_app(redis_url=None, sweep_interval=0, write_through=False)
    with TestClient(app) as client:
        client.post("/api/rooms", json={"code": "AB12CD", "mode": "COOP", "data": {"notes": ""}})

        with client.websocket_connect("/ws?code=AB12CD") as a, client.websocket_connect("/ws?code=AB12CD") as b:
            a.send_text(envelope("SYNC_STATE", {"notes": "relay only"}))
            b.receive_text()

        assert client.get("/api/rooms/AB12CD").json()["data"] == {"notes": ""}


def test_restart_loses_in_memory_rooms():
    with TestClient(create_app(redis_url=None, sweep_interval=0)) as first:
        assert first.post("/api/rooms", json={"code": "AB12CD", "mode": "SINGLE", "data": {}}).status_code == 201
        assert first.get("/api/rooms/AB12CD").status_code == 200

    with TestClient(create_app(redis_url=None, sweep_interval=0)) as second:
        assert second.get("/api/rooms/AB12CD").status_code == 404


def test_app_runs_and_stops_with_sweeper_enabled():
    with TestClient(create_app(redis_url=None, sweep_interval=0.01)) as client:
        assert client.post("/api/rooms", json={"code": "AB12CD", "mode": "SINGLE", "data": {}}).status_code == 201
        time.sleep(0.05)
        assert client.get("/api/rooms/AB12CD").status_code == 200
        assert client.get("/health").json()["store"] == "memory"
