import time
from datetime import timedelta

import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import VOTER_ID, seed_session
from deliberation.auth.auth import create_access_token, verify_realtime_credential
from deliberation.schemas.records import SessionStatus


def _socket_url(session_id, headers):
    token = headers["Authorization"].split(" ", 1)[1]
    return f"/ws/sessions/{session_id}?token={token}"


def _receive_until(ws, predicate, limit=10):
    for _ in range(limit):
        message = ws.receive_json()
        if predicate(message):
            return message
    raise AssertionError("expected message never arrived")


def test_realtime_credential_is_short_lived_and_bound_to_caller(client, voter_headers):
    response = client.post("/api/realtime/credential", headers=voter_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["expires_in"] > 0
    assert verify_realtime_credential(body["credential"]).user_id == VOTER_ID


def test_realtime_credential_requires_login(client):
    assert client.post("/api/realtime/credential").status_code == 401


def test_socket_rejects_missing_token(client, gateway):
    seeded = seed_session(gateway)

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/sessions/{seeded.session_id}") as ws:
            ws.receive_json()


def test_socket_rejects_unknown_session(client, voter_headers):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(_socket_url("missing", voter_headers)) as ws:
            ws.receive_json()


def test_socket_pushes_initial_state_and_answers_requests(client, gateway, voter_headers):
    seeded = seed_session(gateway, SessionStatus.PHASE1_OPEN)

    with client.websocket_connect(_socket_url(seeded.session_id, voter_headers)) as ws:
        initial = ws.receive_json()
        assert initial["type"] == "live_state"
        assert initial["payload"]["phase"] == "phase1"
        assert initial["payload"]["viewMode"] == "role_list"

        presence = ws.receive_json()
        assert presence == {
            "type": "presence",
            "payload": {"sessionId": seeded.session_id, "connected": 1},
        }

        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"

        ws.send_json({"type": "refresh"})
        refreshed = ws.receive_json()
        assert refreshed["type"] == "live_state"
        assert refreshed["payload"]["status"] == "phase1_open"

        ws.send_json({"type": "dance"})
        error = ws.receive_json()
        assert error["type"] == "error"
        assert error["payload"]["code"] == "invalid_request"

        ws.send_json({"type": "auth"})
        assert ws.receive_json()["type"] == "auth_ok"


def test_socket_follows_facilitator_into_phase2(
    client, gateway, facilitator_headers, voter_headers
):
    seeded = seed_session(gateway, SessionStatus.PHASE1_OPEN)
    control = f"/api/sessions/{seeded.session_id}/control"

    with client.websocket_connect(_socket_url(seeded.session_id, voter_headers)) as ws:
        assert ws.receive_json()["type"] == "live_state"
        assert ws.receive_json()["type"] == "presence"

        client.post(
            f"{control}/focus",
            json={
                "role_id": seeded.president_role,
                "candidate_id": seeded.president_candidates[0],
            },
            headers=facilitator_headers,
        )
        focused = _receive_until(
            ws,
            lambda m: m["type"] == "live_state" and m["payload"]["candidate"] is not None,
        )
        assert focused["payload"]["candidate"]["name"] == "Ada"
        assert focused["payload"]["canVote"] is True

        client.post(f"{control}/status", json={"status": "phase1_closed"}, headers=facilitator_headers)
        client.post(f"{control}/status", json={"status": "phase2_open"}, headers=facilitator_headers)

        final = _receive_until(
            ws,
            lambda m: m["type"] == "live_state"
            and m["payload"]["phase"] == "phase2"
            and m["payload"]["settled"],
        )

    assert final["payload"]["viewMode"] == "phase2_role_select"
    assert final["payload"]["candidate"] is None
    assert final["payload"]["ballotsOpen"] is True


def test_resume_requires_a_current_access_token(client, gateway):
    seeded = seed_session(gateway, SessionStatus.PHASE1_OPEN)
    short_lived = create_access_token(VOTER_ID, expires_delta=timedelta(seconds=2))

    with client.websocket_connect(
        f"/ws/sessions/{seeded.session_id}?token={short_lived}"
    ) as ws:
        assert ws.receive_json()["type"] == "live_state"
        assert ws.receive_json()["type"] == "presence"

        time.sleep(3)
        ws.send_json({"type": "resume"})
        error = ws.receive_json()
        assert error["type"] == "error"
        assert error["payload"]["code"] == "unauthenticated"

        ws.send_json({"type": "resume", "payload": {"token": create_access_token(VOTER_ID)}})
        resumed = ws.receive_json()
        assert resumed["type"] == "live_state"
        assert resumed["payload"]["status"] == "phase1_open"
