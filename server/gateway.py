# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Settlement gateways for escrow rooms.

The engine never touches funds directly. It derives an escrow address,
registers the deal, polls for the deposit and asks for a release or refund
through one of these backends:

  - SimulatedGateway: synthetic addresses and tx refs, deposits injected by
    hand into a DepositBook. Used in tests and non-production deployments.
  - RpcGateway: JSON-over-HTTP client for the external settlement service
    that owns the on-chain master escrow contract.

Amounts are always integer smallest units.
"""

import hashlib
import itertools
import threading
import requests
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from protocol import FeePayer, GATEWAY_URL, GATEWAY_TIMEOUT


class GatewayError(Exception):
    """The settlement service rejected the call or could not be reached."""


@dataclass(frozen=True)
class DepositStatus:
    found: bool
    amount: int = 0
    tx_ref: str | None = None


class SettlementGateway(ABC):
    """Abstract settlement backend. The engine gets one injected."""

    simulated = False

    @abstractmethod
    def derive_settlement_address(self, room_id: str, chain_id: int) -> str:
        """Deterministic escrow address for a room on a chain."""
        ...

    @abstractmethod
    def create_deal(self, room_id: str, chain_id: int, deposit_amount: int,
                    fee_payer: FeePayer) -> dict:
        """Register the deal off-chain before the sender deposits."""
        ...

    @abstractmethod
    def check_deposit(self, room_id: str, expected_amount: int, chain_id: int) -> DepositStatus:
        """Has a deposit of at least `expected_amount` landed for this room?"""
        ...

    @abstractmethod
    def execute_release(self, room_id: str, destination: str, amount: int, chain_id: int) -> str:
        """Pay the receiver. Returns tx ref."""
        ...

    @abstractmethod
    def execute_refund(self, room_id: str, destination: str, amount: int, chain_id: int) -> str:
        """Return the deposit to the sender. Returns tx ref."""
        ...


@dataclass
class DepositBook:
    """In-memory ledger behind SimulatedGateway: deals, deposits, payouts."""

    deals: dict = field(default_factory=dict)
    deposits: dict = field(default_factory=dict)
    settlements: list = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add_deal(self, room_id: str, deal: dict):
        with self._lock:
            self.deals[room_id] = deal

    def add_deposit(self, room_id: str, amount: int, tx_ref: str):
        with self._lock:
            self.deposits[room_id] = DepositStatus(found=True, amount=amount, tx_ref=tx_ref)

    def get_deposit(self, room_id: str) -> DepositStatus | None:
        with self._lock:
            return self.deposits.get(room_id)

    def add_settlement(self, record: dict):
        with self._lock:
            self.settlements.append(record)

    def settlements_for(self, room_id: str) -> list[dict]:
        with self._lock:
            return [s for s in self.settlements if s["room_id"] == room_id]


class SimulatedGateway(SettlementGateway):
    """Fabricates references instead of moving funds.

    Addresses are sha256("escrow:<chain>:<room>") truncated to 20 bytes, so the
    same room always maps to the same address. Failures can be queued per
    operation with fail_next() to exercise the engine's error paths.
    """

    simulated = True

    def __init__(self, book: DepositBook | None = None):
        self.book = book if book is not None else DepositBook()
        self._counter = itertools.count(1)
        self._failures: dict[str, list[str]] = {}
        self._fail_lock = threading.Lock()

    def fail_next(self, operation: str, message: str = "simulated gateway failure"):
        """Make the next call to `operation` raise GatewayError."""
        if not hasattr(SettlementGateway, operation):
            raise ValueError(f"Unknown gateway operation: {operation}")
        with self._fail_lock:
            self._failures.setdefault(operation, []).append(message)

    def _maybe_fail(self, operation: str):
        with self._fail_lock:
            queued = self._failures.get(operation)
            if queued:
                raise GatewayError(queued.pop(0))

    def _tx_ref(self, *parts) -> str:
        seed = ":".join(str(p) for p in parts) + f":{next(self._counter)}"
        return "0x" + hashlib.sha256(seed.encode()).hexdigest()

    def derive_settlement_address(self, room_id: str, chain_id: int) -> str:
        self._maybe_fail("derive_settlement_address")
        digest = hashlib.sha256(f"escrow:{chain_id}:{room_id}".encode()).hexdigest()
        return "0x" + digest[:40]

    def create_deal(self, room_id: str, chain_id: int, deposit_amount: int,
                    fee_payer: FeePayer) -> dict:
        self._maybe_fail("create_deal")
        deal = {
            "room_id": room_id,
            "chain_id": chain_id,
            "deposit_amount": deposit_amount,
            "fee_payer": FeePayer(fee_payer).value,
        }
        self.book.add_deal(room_id, deal)
        return deal

    def check_deposit(self, room_id: str, expected_amount: int, chain_id: int) -> DepositStatus:
        self._maybe_fail("check_deposit")
        deposit = self.book.get_deposit(room_id)
        if deposit is None or deposit.amount < expected_amount:
            return DepositStatus(found=False)
        return deposit

    def inject_deposit(self, room_id: str, amount: int) -> str:
        """Pretend the sender paid `amount` into the room's escrow."""
        tx_ref = self._tx_ref("deposit", room_id, amount)
        self.book.add_deposit(room_id, amount, tx_ref)
        return tx_ref

    def execute_release(self, room_id: str, destination: str, amount: int, chain_id: int) -> str:
        self._maybe_fail("execute_release")
        tx_ref = self._tx_ref("release", room_id, destination, amount)
        self.book.add_settlement({
            "type": "release", "room_id": room_id, "destination": destination,
            "amount": amount, "chain_id": chain_id, "tx_ref": tx_ref,
        })
        return tx_ref

    def execute_refund(self, room_id: str, destination: str, amount: int, chain_id: int) -> str:
        self._maybe_fail("execute_refund")
        tx_ref = self._tx_ref("refund", room_id, destination, amount)
        self.book.add_settlement({
            "type": "refund", "room_id": room_id, "destination": destination,
            "amount": amount, "chain_id": chain_id, "tx_ref": tx_ref,
        })
        return tx_ref


class RpcGateway(SettlementGateway):
    """Client for the external settlement service.

    Every call is a JSON POST. A non-2xx status, a transport error, or a body
    with "ok": false raises GatewayError. Amounts travel as decimal strings.
    """

    def __init__(self, base_url: str | None = None, timeout: float | None = None,
                 session: requests.Session | None = None):
        self.base_url = (base_url or GATEWAY_URL).rstrip("/")
        if not self.base_url:
            raise ValueError("Gateway URL required: set ESCROW_GATEWAY_URL or pass base_url=")
        self.timeout = timeout if timeout is not None else GATEWAY_TIMEOUT
        self.session = session or requests.Session()

    def _call(self, path: str, payload: dict) -> dict:
        try:
            resp = self.session.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
            resp.raise_for_status()
            result = resp.json()
        except requests.RequestException as e:
            raise GatewayError(f"Settlement RPC {path} failed: {e}") from e
        except ValueError as e:
            raise GatewayError(f"Settlement RPC {path} returned invalid JSON") from e
        if not isinstance(result, dict) or result.get("ok") is False:
            error = result.get("error", "unknown error") if isinstance(result, dict) else "bad response"
            raise GatewayError(f"Settlement RPC {path} error: {error}")
        return result

    def derive_settlement_address(self, room_id: str, chain_id: int) -> str:
        result = self._call("/address", {"room_id": room_id, "chain_id": chain_id})
        return result["address"]

    def create_deal(self, room_id: str, chain_id: int, deposit_amount: int,
                    fee_payer: FeePayer) -> dict:
        return self._call("/deals", {
            "room_id": room_id,
            "chain_id": chain_id,
            "deposit_amount": str(deposit_amount),
            "fee_payer": FeePayer(fee_payer).value,
        })

    def check_deposit(self, room_id: str, expected_amount: int, chain_id: int) -> DepositStatus:
        result = self._call("/deposits/check", {
            "room_id": room_id,
            "expected_amount": str(expected_amount),
            "chain_id": chain_id,
        })
        if not result.get("found"):
            return DepositStatus(found=False)
        return DepositStatus(
            found=True,
            amount=int(result.get("amount", expected_amount)),
            tx_ref=result.get("tx_ref"),
        )

    def execute_release(self, room_id: str, destination: str, amount: int, chain_id: int) -> str:
        result = self._call("/release", {
            "room_id": room_id, "destination": destination,
            "amount": str(amount), "chain_id": chain_id,
        })
        return result["tx_ref"]

    def execute_refund(self, room_id: str, destination: str, amount: int, chain_id: int) -> str:
        result = self._call("/refund", {
            "room_id": room_id, "destination": destination,
            "amount": str(amount), "chain_id": chain_id,
        })
        return result["tx_ref"]
