import os
import sys

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.auth import DEMO_PASSWORD, create_access_token
from app.main import app

BOOKING_PAYLOAD = {
    "friendId": "friend_1",
    "packageId": "pkg_2",
    "situation": {"description": "Dinner with new colleagues", "category": "social"},
    "startTime": "2026-12-12T19:00:00Z",
    "endTime": "2026-12-12T21:00:00Z",
    "location": {"address": "Toit, Indiranagar"},
}


def _token(client: TestClient, user_id: str) -> str:
    response = client.post("/auth/login", json={"userId": user_id, "password": DEMO_PASSWORD})
    return response.json()["data"]["accessToken"]


def _confirmed_booking(client: TestClient) -> str:
    created = client.post(
        "/bookings",
        json=BOOKING_PAYLOAD,
        headers={"Authorization": f"Bearer {_token(client, 'user_1')}"},
    )
    booking_id = created.json()["data"]["id"]
    client.put(
        f"/bookings/{booking_id}/status",
        json={"status": "confirmed"},
        headers={"Authorization": f"Bearer {_token(client, 'friend_1')}"},
    )
    return booking_id


def _join(ws, booking_id: str) -> None:
    ws.send_json({"event": "join-booking", "data": {"bookingId": booking_id}})
    assert ws.receive_json() == {"event": "joined-booking", "data": {"bookingId": booking_id}}


def test_invalid_token_closes_with_4401():
    with TestClient(app) as client:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws?token=garbage"):
                pass
        assert exc_info.value.code == 4401


def test_messages_fan_out_to_booking_room():
    with TestClient(app) as client:
        booking_id = _confirmed_booking(client)
        requester_token, _ = create_access_token("user_1")
        friend_token, _ = create_access_token("friend_1")

        with client.websocket_connect(f"/ws?token={requester_token}") as requester, client.websocket_connect(
            f"/ws?token={friend_token}"
        ) as friend:
            _join(requester, booking_id)
            _join(friend, booking_id)

            requester.send_json({"event": "send-message", "data": {"bookingId": booking_id, "content": "Here now"}})
            for ws in (requester, friend):
                frame = ws.receive_json()
                assert frame["event"] == "new-message"
                assert frame["data"]["bookingId"] == booking_id
                assert frame["data"]["message"]["content"] == "Here now"
                assert frame["data"]["message"]["senderId"] == "user_1"

            friend.send_json({"event": "typing", "data": {"bookingId": booking_id}})
            typing = requester.receive_json()
            assert typing == {
                "event": "user-typing",
                "data": {"bookingId": booking_id, "userId": "friend_1", "isTyping": True},
            }

            friend.send_json({"event": "share-location", "data": {"bookingId": booking_id, "lat": 12.97, "lng": 77.64}})
            location = requester.receive_json()
            assert location["event"] == "location-update"
            assert location["data"]["location"] == {"lat": 12.97, "lng": 77.64}

        thread = client.get(
            f"/bookings/{booking_id}/messages",
            headers={"Authorization": f"Bearer {requester_token}"},
        ).json()["data"]
        assert [m["content"] for m in thread] == ["Here now"]


def test_events_for_unjoined_booking_are_rejected():
    with TestClient(app) as client:
        booking_id = _confirmed_booking(client)
        token, _ = create_access_token("user_1")
        with client.websocket_connect(f"/ws?token={token}") as ws:
            ws.send_json({"event": "send-message", "data": {"bookingId": booking_id, "content": "hi"}})
            frame = ws.receive_json()
            assert frame["event"] == "error"
            assert frame["data"]["bookingId"] == booking_id

            ws.send_text("not json")
            assert ws.receive_json()["event"] == "error"


def test_stranger_cannot_join_booking():
    with TestClient(app) as client:
        booking_id = _confirmed_booking(client)
        token, _ = create_access_token("user_2")
        with client.websocket_connect(f"/ws?token={token}") as ws:
            ws.send_json({"event": "join-booking", "data": {"bookingId": booking_id}})
            frame = ws.receive_json()
            assert frame["event"] == "error"
            assert frame["data"]["event"] == "join-booking"


def test_sos_reaches_safety_room():
    with TestClient(app) as client:
        booking_id = _confirmed_booking(client)
        admin_token, _ = create_access_token("admin_1")
        friend_token, _ = create_access_token("friend_1")
        with client.websocket_connect(f"/ws?token={admin_token}") as admin, client.websocket_connect(
            f"/ws?token={friend_token}"
        ) as friend:
            response = client.post(
                "/safety/sos",
                json={"bookingId": booking_id, "location": {"lat": 12.9, "lng": 77.6}},
                headers={"Authorization": f"Bearer {_token(client, 'user_1')}"},
            )
            assert response.status_code == 201

            alert = admin.receive_json()
            assert alert["event"] == "sos-alert"
            assert alert["data"]["bookingId"] == booking_id
            assert alert["data"]["userId"] == "user_1"

            personal = friend.receive_json()
            assert personal["event"] == "sos-alert"
            assert personal["data"]["alertId"] == alert["data"]["alertId"]
