"""End-to-end tests for the WebSocket endpoint.

Each test runs the full app (hub loop included) on the in-memory back-ends.
Sockets authenticate as the seeded users u1..u3; room R holds u1 (admin) and
u2, room S holds u3 only.
"""
import pytest
from starlette.testclient import WebSocketDenialResponse

from conftest import auth_headers, events_until, next_event, token_for, ws_url


def connect(api_client, user_id):
    """Open a socket and wait until the hub has registered it."""
    ws = api_client.websocket_connect(ws_url(user_id))
    session = ws.__enter__()
    event = next_event(session, "connect")
    while event["userId"] != user_id:
        event = next_event(session, "connect")
    return ws, session


# =============================================================================
# Handshake
# =============================================================================


def test_handshake_rejects_unknown_client_key(api_client):
    with pytest.raises(WebSocketDenialResponse) as exc:
        with api_client.websocket_connect(ws_url("u1", client_key="nope")):
            pass
    assert exc.value.status_code == 401
    assert exc.value.json() == {"status": 401, "message": "Invalid client key"}


def test_handshake_rejects_missing_credentials(api_client):
    with pytest.raises(WebSocketDenialResponse) as exc:
        with api_client.websocket_connect("/api/ws"):
            pass
    assert exc.value.status_code == 401


def test_handshake_rejects_bad_token(api_client):
    with pytest.raises(WebSocketDenialResponse) as exc:
        with api_client.websocket_connect("/api/ws?client_key=test-client-key&token=bogus"):
            pass
    assert exc.value.status_code == 401


def test_handshake_maps_upstream_forbidden(api_client, auth_endpoint):
    auth_endpoint.responses[token_for("u1")] = (403, "banned")
    with pytest.raises(WebSocketDenialResponse) as exc:
        with api_client.websocket_connect(ws_url("u1")):
            pass
    assert exc.value.status_code == 403


def test_connect_event_carries_user(api_client):
    with api_client.websocket_connect(ws_url("u1")) as ws:
        event = next_event(ws, "connect")
        assert event["userId"] == "u1"
        assert event["payload"]["username"] == "user1"
        assert event["timestamp"] > 0


# =============================================================================
# Scenarios
# =============================================================================


def test_room_fan_out_reaches_members_only(api_client):
    ctx1, ws1 = connect(api_client, "u1")
    ctx2, ws2 = connect(api_client, "u2")
    ctx3, ws3 = connect(api_client, "u3")
    try:
        ws1.send_json({
            "type": "message",
            "chatroomId": "R",
            "userId": "spoofed",
            "timestamp": 1,
            "payload": {"message": "hi", "type": "text"},
        })

        for ws in (ws1, ws2):
            event = next_event(ws, "message")
            assert event["chatroomId"] == "R"
            assert event["userId"] == "u1"
            assert event["timestamp"] > 1
            assert event["payload"]["sender"] == "u1"
            assert event["payload"]["message"] == "hi"
            assert event["payload"]["chatroom"] == "R"
            assert event["payload"]["createdTimestamp"] > 0
            assert event["payload"]["id"]

        # u3 only follows S: the next room event it sees is its own typing
        ws3.send_json({"type": "typing_start", "chatroomId": "S"})
        seen = events_until(ws3, "typing_start")
        assert all(e["type"] != "message" for e in seen)
        assert seen[-1]["payload"] == {"chatroomId": "S", "userId": "u3", "status": True}
    finally:
        for ctx in (ctx3, ctx2, ctx1):
            ctx.__exit__(None, None, None)


def test_muted_sender_is_not_broadcast(api_client):
    resp = api_client.post(
        "/api/v1/chatrooms/R/participants/u2/mute",
        json={"duration": 5},
        headers=auth_headers("u1"),
    )
    assert resp.status_code == 200

    ctx1, ws1 = connect(api_client, "u1")
    ctx2, ws2 = connect(api_client, "u2")
    try:
        ws2.send_json({"type": "message", "chatroomId": "R", "payload": {"message": "let me talk"}})
        error = next_event(ws2, "error")
        assert error["payload"] == {"code": 403, "message": "User is muted"}
        assert error["chatroomId"] == "R"

        # u2's socket is still usable
        ws2.send_json({"type": "typing_start", "chatroomId": "R"})
        assert next_event(ws2, "typing_start")["userId"] == "u2"

        seen = events_until(ws1, "typing_start")
        assert all(e["type"] != "message" for e in seen)
        assert all(e["type"] != "error" for e in seen)
    finally:
        ctx2.__exit__(None, None, None)
        ctx1.__exit__(None, None, None)

    listing = api_client.get("/api/v1/chats", params={"chatroomId": "R"}, headers=auth_headers("u1"))
    assert listing.json()["data"]["metadata"]["total"] == 0


def test_non_participant_frame_is_dropped(api_client):
    ctx3, ws3 = connect(api_client, "u3")
    try:
        # not subscribed to R: the frame never reaches the service
        ws3.send_json({"type": "message", "chatroomId": "R", "payload": {"message": "sneaky"}})
        ws3.send_json({"type": "typing_stop", "chatroomId": "S"})
        seen = events_until(ws3, "typing_stop")
        assert [e["type"] for e in seen if e["type"] != "connect"] == ["typing_stop"]
        assert seen[-1]["payload"]["status"] is False
    finally:
        ctx3.__exit__(None, None, None)

    listing = api_client.get("/api/v1/chats", params={"chatroomId": "R"}, headers=auth_headers("u1"))
    assert listing.json()["data"]["metadata"]["total"] == 0


def test_malformed_and_server_only_frames(api_client):
    ctx1, ws1 = connect(api_client, "u1")
    try:
        ws1.send_text("not json")
        error = next_event(ws1, "error")
        assert error["payload"]["code"] == 422

        ws1.send_json({"type": "disconnect", "chatroomId": "R"})
        ws1.send_json({"type": "message", "payload": {"message": "no room"}})
        ws1.send_json({"type": "message", "chatroomId": "R", "payload": {"text": "wrong shape"}})
        error = next_event(ws1, "error")
        assert error["payload"]["code"] == 422

        ws1.send_json({"type": "message_read", "chatroomId": "R", "payload": {"messageId": "m1"}})
        read = next_event(ws1, "message_read")
        assert read["payload"] == {"chatroomId": "R", "messageId": "m1", "userId": "u1"}
    finally:
        ctx1.__exit__(None, None, None)


def test_direct_messages_reuse_one_room(api_client):
    first = api_client.post(
        "/api/v1/chats/direct",
        json={"receiverId": "u3", "message": "hello"},
        headers=auth_headers("u1"),
    )
    assert first.status_code == 201
    room = first.json()["data"]["chatroom"]
    assert room["isGroup"] is False
    assert room["type"] == "private"
    assert sorted(p["user"]["id"] for p in room["participants"]) == ["u1", "u3"]

    second = api_client.post(
        "/api/v1/chats/direct",
        json={"receiverId": "u3", "message": "again"},
        headers=auth_headers("u1"),
    )
    assert second.json()["data"]["chatroom"]["id"] == room["id"]
    assert second.json()["data"]["chat"]["receiver"] == "u3"

    fetched = api_client.get(f"/api/v1/chatrooms/{room['id']}", headers=auth_headers("u3"))
    assert fetched.json()["data"]["messagesCount"] == 2
    assert fetched.json()["data"]["lastMessage"] == "again"


def test_direct_message_reaches_live_receiver(api_client):
    ctx3, ws3 = connect(api_client, "u3")
    try:
        resp = api_client.post(
            "/api/v1/chats/direct",
            json={"receiverId": "u3", "message": "ping"},
            headers=auth_headers("u1"),
        )
        assert resp.status_code == 201
        meta = next_event(ws3, "chatroom_meta")
        assert meta["payload"]["action"] == "created"
        message = next_event(ws3, "message")
        assert message["payload"]["message"] == "ping"
        assert message["chatroomId"] == meta["chatroomId"]
    finally:
        ctx3.__exit__(None, None, None)


def test_presence_follows_connections(api_client):
    ctx2, ws2 = connect(api_client, "u2")
    try:
        ctx1, ws1 = connect(api_client, "u1")
        resp = api_client.get("/api/ws/connected/u1", headers=auth_headers("u2"))
        assert resp.json()["data"] == {"userId": "u1", "connected": True}
        assert api_client.get("/api/ws/connected", headers=auth_headers("u2")).json()["data"] == ["u1", "u2"]

        ctx1.__exit__(None, None, None)
        event = next_event(ws2, "disconnect")
        assert event["userId"] == "u1"

        resp = api_client.get("/api/ws/connected/u1", headers=auth_headers("u2"))
        assert resp.json()["data"]["connected"] is False
    finally:
        ctx2.__exit__(None, None, None)


def test_token_is_validated_once(api_client, auth_endpoint):
    with api_client.websocket_connect(ws_url("u1")) as ws_a:
        next_event(ws_a, "connect")
        with api_client.websocket_connect(ws_url("u1")) as ws_b:
            next_event(ws_b, "connect")
        api_client.get("/api/v1/users/me", headers=auth_headers("u1"))
    assert auth_endpoint.calls == 1


def test_join_event_subscribes_new_participant(api_client):
    ctx3, ws3 = connect(api_client, "u3")
    try:
        resp = api_client.post(
            "/api/v1/chatrooms/R/participants",
            json={"userId": "u3"},
            headers=auth_headers("u1"),
        )
        assert resp.status_code == 200
        join = next_event(ws3, "user_join")
        assert join["payload"]["userId"] == "u3"

        api_client.post("/api/v1/chats/rooms/R", json={"message": "welcome"}, headers=auth_headers("u1"))
        assert next_event(ws3, "message")["payload"]["message"] == "welcome"
    finally:
        ctx3.__exit__(None, None, None)
