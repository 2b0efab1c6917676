"""Tests for the HTTP API.

Covers: a full room flow over HTTP, error kind to status code mapping,
scheduler endpoints, disputes, and the transaction history.
"""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import inspect
import pytest
from starlette.testclient import TestClient
from server.app import create_app, ACTIONS
from server.store import RoomStore
from server.gateway import SimulatedGateway
from server.notifications import ShortIdDirectory
from conftest import SENDER, RECEIVER, OUTSIDER, CHAIN_ID, FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app(clock):
    return create_app(
        store=RoomStore(":memory:"),
        gateway=SimulatedGateway(),
        directory=ShortIdDirectory({SENDER: "Alice", RECEIVER: "Bob"}),
        clock=clock,
    )


@pytest.fixture
def client(app):
    return TestClient(app)


def _act(client, room_id, action, user_id="", value=None, status=200):
    resp = client.post(f"/rooms/{room_id}/actions/{action}", json={"user_id": user_id, "value": value})
    assert resp.status_code == status, resp.text
    return resp.json()


def _create_and_join(client):
    resp = client.post("/rooms", json={"user_id": SENDER, "name": "Camera", "chain_id": CHAIN_ID})
    assert resp.status_code == 200
    room = resp.json()
    resp = client.post("/rooms/join", json={"user_id": RECEIVER, "room_code": room["room_code"]})
    assert resp.status_code == 200
    return room["room_id"]


def _to_funded(client, fee_payer="SENDER", amount="50"):
    room_id = _create_and_join(client)
    _act(client, room_id, "select_role", SENDER, "SENDER")
    _act(client, room_id, "select_role", RECEIVER, "RECEIVER")
    _act(client, room_id, "confirm_role", SENDER)
    _act(client, room_id, "confirm_role", RECEIVER)
    _act(client, room_id, "propose_amount", SENDER, amount)
    _act(client, room_id, "confirm_amount", SENDER)
    _act(client, room_id, "confirm_amount", RECEIVER)
    _act(client, room_id, "select_fee_payer", RECEIVER, fee_payer)
    _act(client, room_id, "confirm_fee", SENDER)
    _act(client, room_id, "confirm_fee", RECEIVER)
    assert _act(client, room_id, "simulate_deposit")["found"] is True
    return room_id


def test_every_notice_button_has_an_action():
    from server.notifications import Notice

    def walk(cls):
        for sub in cls.__subclasses__():
            yield sub
            yield from walk(sub)

    for notice in walk(Notice):
        for button in notice.buttons:
            assert button.action in ACTIONS, f"{notice.__name__}: {button.action}"


def test_health(client):
    data = client.get("/health").json()
    assert data["status"] == "ok"
    assert data["simulated"] is True
    assert data["token"] == "USDT"


def test_chains(client):
    chains = client.get("/chains").json()["chains"]
    assert CHAIN_ID in [c["id"] for c in chains]


def test_full_release_flow(client):
    room_id = _to_funded(client)
    state = client.get(f"/rooms/{room_id}/state").json()
    assert state["room"]["step"] == "FUNDED"
    assert state["quote"]["deposit"] == "50500000"

    _act(client, room_id, "initiate_release", SENDER)
    data = _act(client, room_id, "confirm_release", RECEIVER)
    assert data["amount"] == "50000000"

    room = client.get(f"/rooms/{room_id}").json()
    assert room["step"] == "COMPLETED"
    assert room["status"] == "COMPLETED"
    assert len(room["participants"]) == 2

    tx = client.get(f"/rooms/{room_id}/transaction").json()
    assert tx["status"] == "COMPLETED"
    assert tx["amount"] == "50000000"
    assert tx["fee"] == "500000"
    assert tx["explorer_url"].endswith(data["tx_ref"])
    assert client.get(f"/transactions/{tx['id']}").json()["room_id"] == room_id

    actions = [m["metadata"]["action"] for m in client.get(f"/rooms/{room_id}/messages").json()["messages"]]
    assert actions[0] == "waiting_for_peer"
    assert actions[-1] == "deal_completed"


def test_cancel_flow(client):
    room_id = _to_funded(client, fee_payer="SPLIT")
    _act(client, room_id, "initiate_cancel", RECEIVER)
    _act(client, room_id, "confirm_cancel", RECEIVER, status=403)
    data = _act(client, room_id, "confirm_cancel", SENDER)
    assert data["amount"] == "50250000"
    assert client.get(f"/rooms/{room_id}/transaction").json()["status"] == "REFUNDED"


def test_room_lookup_by_code(client):
    resp = client.post("/rooms", json={"user_id": SENDER, "name": "Camera", "chain_id": CHAIN_ID})
    code = resp.json()["room_code"]
    assert client.get(f"/rooms/code/{code.lower()}").json()["id"] == resp.json()["room_id"]
    assert client.get("/rooms/code/ZZZZZZ").status_code == 404


def test_list_rooms(client):
    room_id = _create_and_join(client)
    assert [r["id"] for r in client.get("/rooms", params={"user_id": RECEIVER}).json()["rooms"]] == [room_id]
    assert client.get("/rooms", params={"user_id": OUTSIDER}).json()["rooms"] == []
    assert len(client.get("/rooms", params={"status": "open"}).json()["rooms"]) == 1
    assert client.get("/rooms", params={"status": "bogus"}).status_code == 400


# --- Error mapping ---

def test_create_room_validation_400(client):
    resp = client.post("/rooms", json={"user_id": SENDER, "name": "x", "chain_id": 1234})
    assert resp.status_code == 400


def test_join_unknown_code_404(client):
    resp = client.post("/rooms/join", json={"user_id": RECEIVER, "room_code": "QQQQQQ"})
    assert resp.status_code == 404


def test_wrong_step_409(client):
    room_id = _create_and_join(client)
    _act(client, room_id, "initiate_release", SENDER, status=409)


def test_wrong_role_403(client):
    room_id = _to_funded(client)
    _act(client, room_id, "initiate_release", RECEIVER, status=403)


def test_gateway_failure_502(client, app):
    room_id = _to_funded(client)
    _act(client, room_id, "initiate_release", SENDER)
    app.state.engine.gateway.fail_next("execute_release", "node offline")
    body = _act(client, room_id, "confirm_release", RECEIVER, status=502)
    assert "node offline" in body["detail"]
    assert client.get(f"/rooms/{room_id}").json()["step"] == "RELEASING"


def test_unknown_action_404(client):
    room_id = _create_and_join(client)
    _act(client, room_id, "self_destruct", SENDER, status=404)


def test_user_id_required(client):
    room_id = _create_and_join(client)
    _act(client, room_id, "select_role", "", "SENDER", status=400)


def test_missing_room(client):
    assert client.get("/rooms/room_nope").status_code == 404
    assert client.get("/rooms/room_nope/state").status_code == 404
    assert client.get("/rooms/room_nope/messages").status_code == 404


def test_deposit_info_before_address_409(client):
    room_id = _create_and_join(client)
    assert client.get(f"/rooms/{room_id}/deposit-info").status_code == 409


# --- Scheduler ---

def test_timeout_status_and_sweep(client, clock):
    room_id = _create_and_join(client)
    status = client.get(f"/rooms/{room_id}/timeout-status").json()
    assert status["can_expire"] is True
    assert status["seconds_remaining"] == 15 * 60

    clock.advance(11 * 60)
    soon = client.get("/scheduler/expiring-soon").json()["rooms"]
    assert [r["room_id"] for r in soon] == [room_id]
    assert client.post("/scheduler/send-warnings").json() == {"sent": 1, "errors": []}

    clock.advance(5 * 60)
    assert client.post("/scheduler/check-timeouts").json() == {"checked": 1, "expired": 1, "errors": []}
    status = client.get(f"/rooms/{room_id}/timeout-status").json()
    assert status["step"] == "EXPIRED"
    assert status["can_expire"] is False


def test_scheduler_config(client):
    assert client.get("/scheduler/config").json()["funding_timeout_seconds"] == 30 * 60


# --- Disputes ---

def test_dispute_endpoints(client):
    room_id = _to_funded(client)
    resp = client.post(f"/rooms/{room_id}/dispute",
                       json={"user_id": RECEIVER, "explanation": "Seller stopped responding."})
    assert resp.status_code == 200
    dispute_id = resp.json()["dispute"]["id"]
    assert client.get(f"/rooms/{room_id}").json()["status"] == "DISPUTED"

    resp = client.post(f"/rooms/{room_id}/dispute",
                       json={"user_id": OUTSIDER, "explanation": "Seller stopped responding."})
    assert resp.status_code == 403

    assert client.get(f"/disputes/{dispute_id}").json()["status"] == "PENDING"
    assert len(client.get(f"/rooms/{room_id}/disputes").json()["disputes"]) == 1
    assert len(client.get(f"/users/{RECEIVER}/disputes").json()["disputes"]) == 1

    resp = client.post(f"/admin/disputes/{dispute_id}/status", json={"status": "UNDER_REVIEW"})
    assert resp.json()["dispute"]["status"] == "UNDER_REVIEW"
    resp = client.post(f"/admin/disputes/{dispute_id}/notes", json={"notes": "Contacted seller"})
    assert "Contacted seller" in resp.json()["dispute"]["admin_notes"]

    assert client.get("/admin/disputes", params={"status": "under_review"}).json()["disputes"][0]["id"] == dispute_id
    assert client.get("/admin/disputes", params={"status": "nope"}).status_code == 400
    assert client.get("/admin/disputes/stats").json()["under_review"] == 1
    assert client.post(f"/admin/disputes/{dispute_id}/status", json={"status": "WHATEVER"}).status_code == 400
    assert client.get("/disputes/dispute_nope").status_code == 404


# --- Transactions ---

def test_transaction_history(client):
    done = _to_funded(client, amount="20")
    _act(client, done, "initiate_release", SENDER)
    _act(client, done, "confirm_release", RECEIVER)
    refunded = _to_funded(client, amount="10")
    _act(client, refunded, "initiate_cancel", SENDER)
    _act(client, refunded, "confirm_cancel", RECEIVER)

    data = client.get("/transactions").json()
    assert data["total"] == 2
    assert len(data["transactions"]) == 2

    page = client.get("/transactions", params={"status": "refunded"}).json()
    assert [t["room_id"] for t in page["transactions"]] == [refunded]
    assert client.get("/transactions", params={"status": "lost"}).status_code == 400
    assert client.get("/transactions", params={"user_id": OUTSIDER}).json()["total"] == 0

    stats = client.get("/transactions/stats").json()
    assert stats["total_transactions"] == 2
    assert stats["total_volume"] == "30000000"
    assert client.get("/transactions/tx_nope").status_code == 404


def test_locking_routes_run_in_threadpool(app):
    locking = {
        "/rooms/join",
        "/rooms/{room_id}/actions/{action}",
        "/rooms/{room_id}/dispute",
        "/admin/disputes/{dispute_id}/status",
        "/admin/disputes/{dispute_id}/notes",
        "/scheduler/check-timeouts",
        "/scheduler/send-warnings",
    }
    endpoints = {r.path: r.endpoint for r in app.routes if r.path in locking}
    assert set(endpoints) == locking
    for path, endpoint in endpoints.items():
        assert not inspect.iscoroutinefunction(endpoint), path
