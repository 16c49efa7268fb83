import json

import pytest
from starlette.websockets import WebSocketDisconnect

from app.routers.realtime import format_sse
from app.tests.conftest import OWNER, PARTICIPANT, headers_for


@pytest.fixture
def retro_id(client):
    response = client.post(
        "/api/retrospectives", json={"title": "Realtime retro"}, headers=headers_for(OWNER)
    )
    return response.json()["id"]


def _socket_url(retro_id, **params):
    query = "&".join(f"{key}={value}" for key, value in params.items())
    return f"/ws/retrospectives/{retro_id}?{query}"


def test_websocket_ack_and_timer_events(client, retro_id):
    url = _socket_url(retro_id, userId=PARTICIPANT.user_id, topics="timer,step")
    with client.websocket_connect(url) as websocket:
        ack = websocket.receive_json()
        assert ack["type"] == "connection_ack"
        assert ack["payload"]["userId"] == PARTICIPANT.user_id
        assert ack["payload"]["topics"] == [
            f"retrospective/{retro_id}/step",
            f"retrospective/{retro_id}/timer",
        ]

        client.post(
            f"/api/retrospectives/{retro_id}/timer/start",
            json={"duration": 2},
            headers=headers_for(OWNER),
        )
        started = websocket.receive_json()
        assert started["type"] == "timer_started"
        assert started["duration"] == 2

        client.post(f"/api/retrospectives/{retro_id}/next-step", headers=headers_for(OWNER))
        assert websocket.receive_json()["type"] == "timer_stopped"
        step = websocket.receive_json()
        assert step["type"] == "step_changed"
        assert step["nextStep"] == "review"


def test_websocket_sub_topics_filter_events(client, retro_id):
    url = _socket_url(retro_id, userId=PARTICIPANT.user_id, topics="step")
    with client.websocket_connect(url) as websocket:
        websocket.receive_json()
        client.post(
            f"/api/retrospectives/{retro_id}/items",
            json={"category": "good", "content": "Hidden from step listeners"},
            headers=headers_for(OWNER),
        )
        client.post(f"/api/retrospectives/{retro_id}/next-step", headers=headers_for(OWNER))
        assert websocket.receive_json()["type"] == "step_changed"


def test_websocket_ping_heartbeat_and_unknown_messages(client, retro_id):
    url = _socket_url(
        retro_id, userId=PARTICIPANT.user_id, userName="Milo", topics="connected-users"
    )
    with client.websocket_connect(url) as websocket:
        websocket.receive_json()

        websocket.send_json({"type": "ping"})
        pong = websocket.receive_json()
        assert pong["type"] == "pong"
        assert pong["payload"]["retrospectiveId"] == retro_id

        websocket.send_json({"type": "heartbeat"})
        presence = websocket.receive_json()
        assert presence["type"] == "connected_users_updated"
        assert [user["displayName"] for user in presence["users"]] == ["Milo"]

        websocket.send_json({"type": "shout"})
        assert websocket.receive_json()["type"] == "error"


@pytest.mark.parametrize(
    "params",
    [
        {"userId": "member-1", "topics": "gossip"},
        {"topics": "timer"},
        {"token": "not-a-token"},
    ],
)
def test_websocket_rejections(client, retro_id, params):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(_socket_url(retro_id, **params)) as websocket:
            websocket.receive_json()


def test_websocket_unknown_retrospective_is_rejected(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(
            _socket_url("RTR19990101-0000", userId="member-1")
        ) as websocket:
            websocket.receive_json()


def test_websocket_with_subscription_token(client, retro_id):
    token = client.get(
        f"/api/retrospectives/{retro_id}/subscription-token",
        params={"topics": "timer"},
        headers=headers_for(PARTICIPANT),
    ).json()["token"]

    with client.websocket_connect(_socket_url(retro_id, token=token)) as websocket:
        ack = websocket.receive_json()
        assert ack["payload"]["userId"] == PARTICIPANT.user_id
        assert ack["payload"]["topics"] == [f"retrospective/{retro_id}/timer"]

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(
            _socket_url(retro_id, token=token, topics="timer,step")
        ) as websocket:
            websocket.receive_json()


def test_event_stream_requires_identity(client, retro_id):
    response = client.get(f"/api/retrospectives/{retro_id}/events")
    assert response.status_code == 401


def test_format_sse_frames_json():
    frame = format_sse({"type": "vote_updated", "voteCount": 2})
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame[len("data: "):]) == {"type": "vote_updated", "voteCount": 2}
