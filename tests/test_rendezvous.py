import time
import uuid

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api import rendezvous


@pytest.fixture
def client():
    app = FastAPI()
    app.include_router(rendezvous.router)
    with TestClient(app) as c:
        yield c


def _peer_id() -> str:
    return f"peershare-{uuid.uuid4().hex[:6]}"


def test_register_then_lookup(client):
    peer_id = _peer_id()
    with client.websocket_connect("/rendezvous") as owner:
        owner.send_json({"op": "register", "peer_id": peer_id, "host": "10.0.0.5", "port": 4242})
        assert owner.receive_json() == {"ok": True}

        with client.websocket_connect("/rendezvous") as other:
            other.send_json({"op": "lookup", "peer_id": peer_id})
            assert other.receive_json() == {"ok": True, "host": "10.0.0.5", "port": 4242}


def test_peer_id_is_exclusive(client):
    peer_id = _peer_id()
    with client.websocket_connect("/rendezvous") as owner:
        owner.send_json({"op": "register", "peer_id": peer_id, "host": "h", "port": 1})
        owner.receive_json()
        with client.websocket_connect("/rendezvous") as rival:
            rival.send_json({"op": "register", "peer_id": peer_id, "host": "h", "port": 2})
            reply = rival.receive_json()
    assert reply["ok"] is False
    assert "taken" in reply["error"]


def test_registration_ends_with_its_socket(client):
    peer_id = _peer_id()
    with client.websocket_connect("/rendezvous") as owner:
        owner.send_json({"op": "register", "peer_id": peer_id, "host": "h", "port": 1})
        owner.receive_json()

    # The server releases the id once it sees the socket close
    for _ in range(50):
        with client.websocket_connect("/rendezvous") as other:
            other.send_json({"op": "lookup", "peer_id": peer_id})
            reply = other.receive_json()
        if not reply["ok"]:
            break
        time.sleep(0.02)
    assert reply["ok"] is False


@pytest.mark.parametrize(
    "message",
    [
        "not json",
        "[1, 2]",
        '{"op": "lookup"}',
        '{"op": "register", "peer_id": "x"}',
        '{"op": "explode", "peer_id": "x"}',
    ],
)
def test_bad_requests_get_error_replies(client, message):
    with client.websocket_connect("/rendezvous") as ws:
        ws.send_text(message)
        assert ws.receive_json()["ok"] is False
