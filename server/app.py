# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for escrow rooms (FastAPI).

Endpoints for the room lifecycle: create, join, negotiate roles, amount and
fee, deposit, release or cancel, plus the timeout scheduler, disputes and the
public transaction history.

Requests carry the acting user_id in the body; identity is assumed to be
established upstream. Engine failures map to status codes by error kind.
Routes that take a room lock or may call the settlement gateway are plain
`def` so FastAPI runs them in its threadpool instead of blocking the event
loop.
"""

import sys
import os
import time
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
from typing import Optional

from server.store import RoomStore
from server.locks import RoomLocks
from server.gateway import SimulatedGateway, RpcGateway
from server.notifications import StoreMessageSink, ShortIdDirectory
from server.engine import RoomEngine, serialize_room, serialize_participant
from server.timeouts import TimeoutSweeper, TimeoutConfig
from server.disputes import DisputeDesk, serialize_dispute
from server.errors import ERROR_KINDS
from protocol import (
    NETWORK, SIMULATED_SETTLEMENT, SUPPORTED_CHAINS, TOKEN_SYMBOL, FEE_PERCENTAGE,
    RoomStatus, format_token_amount, explorer_tx_url, chain_name,
)


# --- Request/Response models ---

class CreateRoomRequest(BaseModel):
    user_id: str
    name: str
    chain_id: int
    token_address: Optional[str] = None

class JoinRoomRequest(BaseModel):
    user_id: str
    room_code: str

class ActionRequest(BaseModel):
    user_id: str = ""
    value: Optional[str] = None  # role, amount, fee payer, or wallet address

class DisputeRequest(BaseModel):
    user_id: str
    explanation: str
    proof_url: Optional[str] = None

class DisputeStatusRequest(BaseModel):
    status: str
    admin_notes: Optional[str] = None

class AdminNotesRequest(BaseModel):
    notes: str


# action name -> engine call. Button actions in notices use these names.
ACTIONS = {
    "select_role": lambda e, rid, req: e.select_role(rid, req.user_id, req.value),
    "confirm_role": lambda e, rid, req: e.confirm_role(rid, req.user_id),
    "reset_roles": lambda e, rid, req: e.reset_roles(rid, req.user_id),
    "propose_amount": lambda e, rid, req: e.propose_amount(rid, req.user_id, req.value),
    "confirm_amount": lambda e, rid, req: e.confirm_amount(rid, req.user_id, True),
    "reject_amount": lambda e, rid, req: e.confirm_amount(rid, req.user_id, False),
    "select_fee_payer": lambda e, rid, req: e.select_fee_payer(rid, req.user_id, req.value),
    "confirm_fee": lambda e, rid, req: e.confirm_fee(rid, req.user_id),
    "check_deposit": lambda e, rid, req: e.check_deposit(rid),
    "simulate_deposit": lambda e, rid, req: e.simulate_deposit(rid),
    "initiate_release": lambda e, rid, req: e.initiate_release(rid, req.user_id),
    "confirm_release": lambda e, rid, req: e.confirm_release(rid, req.user_id),
    "cancel_release": lambda e, rid, req: e.cancel_release(rid, req.user_id),
    "submit_payout_address": lambda e, rid, req: e.submit_payout_address(rid, req.user_id, req.value),
    "confirm_payout_address": lambda e, rid, req: e.confirm_payout_address(rid, req.user_id),
    "change_payout_address": lambda e, rid, req: e.change_payout_address(rid, req.user_id),
    "initiate_cancel": lambda e, rid, req: e.initiate_cancel(rid, req.user_id),
    "confirm_cancel": lambda e, rid, req: e.confirm_cancel(rid, req.user_id),
    "reject_cancel": lambda e, rid, req: e.reject_cancel(rid, req.user_id),
    "submit_refund_address": lambda e, rid, req: e.submit_refund_address(rid, req.user_id, req.value),
    "confirm_refund_address": lambda e, rid, req: e.confirm_refund_address(rid, req.user_id),
    "change_refund_address": lambda e, rid, req: e.change_refund_address(rid, req.user_id),
}


def _unwrap(result) -> dict:
    """ActionResult -> response body, or HTTPException with the mapped status."""
    if result.ok:
        return result.data
    error_cls = ERROR_KINDS.get(result.kind)
    status = error_cls.http_status if error_cls else 500
    raise HTTPException(status, result.error)


def serialize_transaction(tx: dict) -> dict:
    out = dict(tx)
    out["amount"] = str(tx["amount"])
    out["fee"] = str(tx["fee"])
    out["fee_payer"] = tx["fee_payer"].value
    out["status"] = tx["status"].value
    out["amount_formatted"] = format_token_amount(tx["amount"])
    out["chain_name"] = chain_name(tx["chain_id"])
    out["explorer_url"] = explorer_tx_url(tx["chain_id"], tx["release_tx_ref"])
    return out


def create_app(
    store: RoomStore | None = None,
    gateway=None,
    directory=None,
    timeout_config: TimeoutConfig | None = None,
    clock=time.time,
) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    Without a gateway, ESCROW_SIMULATED picks SimulatedGateway or RpcGateway.
    Built components are exposed on app.state for the launcher's sweep threads.
    """

    app = FastAPI(title="Escrow Rooms", version="1.0")

    # Defaults
    _store = store or RoomStore()
    if gateway is None:
        gateway = SimulatedGateway() if SIMULATED_SETTLEMENT else RpcGateway()
    _directory = directory or ShortIdDirectory()
    _config = timeout_config or TimeoutConfig()
    _locks = RoomLocks()
    _sink = StoreMessageSink(_store)

    _engine = RoomEngine(_store, gateway, sink=_sink, directory=_directory, locks=_locks,
                         timeout_config=_config, clock=clock)
    _sweeper = TimeoutSweeper(_store, _locks, _sink, config=_config, clock=clock)
    _desk = DisputeDesk(_store, _locks, _sink, directory=_directory, clock=clock)

    app.state.store = _store
    app.state.engine = _engine
    app.state.sweeper = _sweeper
    app.state.disputes = _desk

    def _get_room(room_id: str) -> dict:
        room = _store.get_room(room_id)
        if not room:
            raise HTTPException(404, "Room not found")
        return room

    # --- Rooms ---

    @app.post("/rooms")
    async def create_room(req: CreateRoomRequest):
        """Create a room; the creator is its first participant."""
        return _unwrap(_engine.create_room(req.user_id, req.name, req.chain_id, req.token_address))

    @app.get("/rooms")
    async def list_rooms(user_id: str = "", status: str = "", limit: int = 50):
        limit = min(limit, 200)
        if user_id:
            rooms = _store.list_rooms_for_user(user_id, limit)
        else:
            try:
                room_status = RoomStatus(status.upper()) if status else None
            except ValueError:
                raise HTTPException(400, f"Invalid status {status!r}")
            rooms = _store.list_rooms(room_status, limit)
        return {"rooms": [serialize_room(r) for r in rooms]}

    @app.post("/rooms/join")
    def join_room(req: JoinRoomRequest):
        return _unwrap(_engine.join_room(req.room_code, req.user_id))

    @app.get("/rooms/code/{room_code}")
    async def get_room_by_code(room_code: str):
        room = _store.get_room_by_code(room_code)
        if not room:
            raise HTTPException(404, "Room not found")
        return serialize_room(room)

    @app.get("/rooms/{room_id}")
    async def get_room(room_id: str):
        room = _get_room(room_id)
        result = serialize_room(room)
        result["participants"] = [serialize_participant(p) for p in _store.get_participants(room_id)]
        return result

    @app.get("/rooms/{room_id}/state")
    async def get_room_state(room_id: str):
        """Room, participants, resolved roles, fee quote and time left."""
        return _unwrap(_engine.get_room_state(room_id))

    @app.get("/rooms/{room_id}/deposit-info")
    async def get_deposit_info(room_id: str):
        return _unwrap(_engine.get_deposit_info(room_id))

    @app.get("/rooms/{room_id}/messages")
    async def get_messages(room_id: str, after_id: int = 0, limit: int = 100):
        _get_room(room_id)
        return {"messages": _store.list_messages(room_id, after_id, min(limit, 500))}

    @app.get("/rooms/{room_id}/timeout-status")
    async def get_timeout_status(room_id: str):
        room = _get_room(room_id)
        remaining = _sweeper.time_remaining(room)
        result = {
            "room_id": room_id,
            "step": room["step"].value,
            "status": room["status"].value,
            "can_expire": remaining is not None,
            "seconds_remaining": None,
            "expires_at": None,
        }
        if remaining is not None:
            result["seconds_remaining"] = int(max(remaining, 0))
            result["expires_at"] = room["last_activity_at"] + _config.window_for(room["step"])
        return result

    @app.post("/rooms/{room_id}/actions/{action}")
    def room_action(room_id: str, action: str, req: ActionRequest):
        """Dispatch a workflow action (select_role, confirm_fee, initiate_release, ...)."""
        handler = ACTIONS.get(action)
        if handler is None:
            raise HTTPException(404, f"Unknown action {action!r}")
        if action not in ("check_deposit", "simulate_deposit") and not req.user_id:
            raise HTTPException(400, "user_id is required")
        return _unwrap(handler(_engine, room_id, req))

    # --- Scheduler ---

    @app.post("/scheduler/check-timeouts")
    def check_timeouts():
        return _sweeper.sweep().to_dict()

    @app.post("/scheduler/send-warnings")
    def send_warnings():
        return _sweeper.send_warnings().to_dict()

    @app.get("/scheduler/config")
    async def scheduler_config():
        return _config.to_dict()

    @app.get("/scheduler/expiring-soon")
    async def expiring_soon(within: int | None = None):
        return {"rooms": _sweeper.expiring_soon(within)}

    # --- Disputes ---

    @app.post("/rooms/{room_id}/dispute")
    def file_dispute(room_id: str, req: DisputeRequest):
        return _unwrap(_desk.file_dispute(room_id, req.user_id, req.explanation, req.proof_url))

    @app.get("/rooms/{room_id}/disputes")
    async def list_room_disputes(room_id: str):
        _get_room(room_id)
        return {"disputes": _desk.list_for_room(room_id)}

    @app.get("/disputes/{dispute_id}")
    async def get_dispute(dispute_id: str):
        dispute = _desk.get(dispute_id)
        if not dispute:
            raise HTTPException(404, "Dispute not found")
        return serialize_dispute(dispute)

    @app.get("/users/{user_id}/disputes")
    async def list_user_disputes(user_id: str, limit: int = 50):
        return {"disputes": _desk.list_by_reporter(user_id, min(limit, 200))}

    @app.get("/admin/disputes")
    async def admin_list_disputes(status: str = "", limit: int = 50):
        try:
            return {"disputes": _desk.list_by_status(status.upper() or None, min(limit, 200))}
        except ValueError:
            raise HTTPException(400, f"Invalid status {status!r}")

    @app.get("/admin/disputes/stats")
    async def admin_dispute_stats():
        return _desk.stats()

    @app.post("/admin/disputes/{dispute_id}/status")
    def admin_update_dispute(dispute_id: str, req: DisputeStatusRequest):
        return _unwrap(_desk.update_status(dispute_id, req.status, req.admin_notes))

    @app.post("/admin/disputes/{dispute_id}/notes")
    def admin_add_notes(dispute_id: str, req: AdminNotesRequest):
        return _unwrap(_desk.add_admin_notes(dispute_id, req.notes))

    # --- Transaction history ---

    @app.get("/transactions")
    async def list_transactions(chain_id: int | None = None, status: str = "", user_id: str = "",
                                limit: int = 20, offset: int = 0):
        limit = min(limit, 100)
        try:
            filters = {
                "chain_id": chain_id,
                "status": status.upper() or None,
                "user_id": user_id or None,
            }
            rows = _store.list_transactions(limit=limit, offset=offset, **filters)
            total = _store.count_transactions(**filters)
        except ValueError:
            raise HTTPException(400, f"Invalid status {status!r}")
        return {
            "transactions": [serialize_transaction(t) for t in rows],
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    @app.get("/transactions/stats")
    async def transaction_stats():
        return _store.transaction_stats()

    @app.get("/transactions/{tx_id}")
    async def get_transaction(tx_id: str):
        tx = _store.get_transaction(tx_id)
        if not tx:
            raise HTTPException(404, "Transaction not found")
        return serialize_transaction(tx)

    @app.get("/rooms/{room_id}/transaction")
    async def get_room_transaction(room_id: str):
        _get_room(room_id)
        tx = _store.get_transaction_for_room(room_id)
        if not tx:
            raise HTTPException(404, "Room has no settlement yet")
        return serialize_transaction(tx)

    # --- Platform ---

    @app.get("/chains")
    async def list_chains():
        return {
            "network": NETWORK,
            "chains": [
                {k: c[k] for k in ("id", "name", "short_name", "token_address", "explorer_url")}
                for c in SUPPORTED_CHAINS.values()
            ],
        }

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "network": NETWORK,
            "simulated": _engine.simulated,
            "token": TOKEN_SYMBOL,
            "fee_percentage": FEE_PERCENTAGE,
        }

    return app
