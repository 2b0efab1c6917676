import sys
import os

# Ensure the project root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from protocol import RoomStep
from server.store import RoomStore
from server.gateway import SimulatedGateway
from server.engine import RoomEngine
from server.notifications import ShortIdDirectory


SENDER = "user_alice_0001"
RECEIVER = "user_bob_0002"
OUTSIDER = "user_eve_0003"
CHAIN_ID = 11155111  # Sepolia, in the default testnet table

PAYOUT_ADDR = "0x" + "ab" * 20
REFUND_ADDR = "0x" + "cd" * 20


class FakeClock:
    """Injected time source so timeout tests never sleep."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class ManualGateway(SimulatedGateway):
    """Simulated book, but the engine treats it as real settlement (address steps required)."""
    simulated = False


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    s = RoomStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def gateway():
    return SimulatedGateway()


@pytest.fixture
def directory():
    return ShortIdDirectory({SENDER: "Alice", RECEIVER: "Bob"})


@pytest.fixture
def engine(store, gateway, directory, clock):
    return RoomEngine(store, gateway, directory=directory, clock=clock)


@pytest.fixture
def manual_engine(store, directory, clock):
    return RoomEngine(store, ManualGateway(), directory=directory, clock=clock)


# --- Flow helpers: each drives a fresh room one step further ---

def ok(result):
    assert result.ok, f"{result.kind}: {result.error}"
    return result.data


def create_and_join(engine) -> str:
    data = ok(engine.create_room(SENDER, "Laptop sale", CHAIN_ID))
    ok(engine.join_room(data["room_code"], RECEIVER))
    return data["room_id"]


def to_amount_agreement(engine) -> str:
    room_id = create_and_join(engine)
    ok(engine.select_role(room_id, SENDER, "SENDER"))
    ok(engine.select_role(room_id, RECEIVER, "RECEIVER"))
    ok(engine.confirm_role(room_id, SENDER))
    ok(engine.confirm_role(room_id, RECEIVER))
    return room_id


def to_fee_selection(engine, amount: str = "100.00") -> str:
    room_id = to_amount_agreement(engine)
    ok(engine.propose_amount(room_id, SENDER, amount))
    ok(engine.confirm_amount(room_id, SENDER))
    ok(engine.confirm_amount(room_id, RECEIVER))
    return room_id


def to_awaiting_deposit(engine, fee_payer: str = "SENDER", amount: str = "100.00") -> str:
    room_id = to_fee_selection(engine, amount)
    ok(engine.select_fee_payer(room_id, SENDER, fee_payer))
    ok(engine.confirm_fee(room_id, SENDER))
    ok(engine.confirm_fee(room_id, RECEIVER))
    assert engine.store.get_room(room_id)["step"] == RoomStep.AWAITING_DEPOSIT
    return room_id


def to_funded(engine, fee_payer: str = "SENDER", amount: str = "100.00") -> str:
    room_id = to_awaiting_deposit(engine, fee_payer, amount)
    if engine.simulated:
        ok(engine.simulate_deposit(room_id))
    else:
        expected = engine.deposits.expected_deposit(engine.store.get_room(room_id))
        engine.gateway.inject_deposit(room_id, expected)
        ok(engine.check_deposit(room_id))
    assert engine.store.get_room(room_id)["step"] == RoomStep.FUNDED
    return room_id


def actions(store, room_id) -> list[str]:
    return [m["metadata"]["action"] for m in store.list_messages(room_id)]
