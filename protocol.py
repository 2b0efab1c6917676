# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Shared constants and enums for the escrow room workflow.

All modules import from here to avoid circular dependencies.
"""

import os
import re
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from enum import Enum

# --- Fee Constants ---

FEE_PERCENTAGE = 1
FEE_DIVISOR = 100 // FEE_PERCENTAGE  # fee = amount // FEE_DIVISOR

# USDT has 6 decimals on every supported chain
TOKEN_DECIMALS = 6
TOKEN_SYMBOL = "USDT"

ZERO_ADDRESS = "0x" + "0" * 40

ROOM_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no 0/O, 1/I
ROOM_CODE_LENGTH = 6

MAX_PARTICIPANTS = 2
MIN_DISPUTE_EXPLANATION = 10


# --- Timeouts (seconds) ---

PRE_FUNDING_TIMEOUT = int(os.environ.get("ESCROW_PRE_FUNDING_TIMEOUT", str(15 * 60)))
FUNDING_TIMEOUT = int(os.environ.get("ESCROW_FUNDING_TIMEOUT", str(30 * 60)))
WARNING_THRESHOLD = int(os.environ.get("ESCROW_WARNING_THRESHOLD", str(5 * 60)))

# Simulated settlement: synthetic tx refs, payouts go to ZERO_ADDRESS
SIMULATED_SETTLEMENT = os.environ.get("ESCROW_SIMULATED", "1") not in ("0", "false", "no", "")

GATEWAY_URL = os.environ.get("ESCROW_GATEWAY_URL", "")
GATEWAY_TIMEOUT = float(os.environ.get("ESCROW_GATEWAY_TIMEOUT", "30"))


# --- State Machine ---

class RoomStep(Enum):
    WAITING_FOR_PEER = "WAITING_FOR_PEER"
    ROLE_SELECTION = "ROLE_SELECTION"
    AMOUNT_AGREEMENT = "AMOUNT_AGREEMENT"
    FEE_SELECTION = "FEE_SELECTION"
    AWAITING_DEPOSIT = "AWAITING_DEPOSIT"
    FUNDED = "FUNDED"
    RELEASING = "RELEASING"
    COMPLETED = "COMPLETED"
    CANCELLING = "CANCELLING"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class RoomStatus(Enum):
    OPEN = "OPEN"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    DISPUTED = "DISPUTED"


class Role(Enum):
    SENDER = "SENDER"
    RECEIVER = "RECEIVER"


class FeePayer(Enum):
    SENDER = "SENDER"
    RECEIVER = "RECEIVER"
    SPLIT = "SPLIT"


class DisputeStatus(Enum):
    PENDING = "PENDING"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED = "RESOLVED"


class TransactionStatus(Enum):
    COMPLETED = "COMPLETED"
    REFUNDED = "REFUNDED"


# Valid step transitions: current step -> set of valid next steps
STEP_TRANSITIONS = {
    RoomStep.WAITING_FOR_PEER: {RoomStep.ROLE_SELECTION, RoomStep.EXPIRED},
    RoomStep.ROLE_SELECTION: {RoomStep.AMOUNT_AGREEMENT, RoomStep.EXPIRED},
    RoomStep.AMOUNT_AGREEMENT: {RoomStep.FEE_SELECTION, RoomStep.EXPIRED},
    RoomStep.FEE_SELECTION: {RoomStep.AWAITING_DEPOSIT, RoomStep.EXPIRED},
    RoomStep.AWAITING_DEPOSIT: {RoomStep.FUNDED, RoomStep.EXPIRED},
    RoomStep.FUNDED: {RoomStep.RELEASING, RoomStep.CANCELLING},
    RoomStep.RELEASING: {RoomStep.COMPLETED, RoomStep.FUNDED},  # confirm or receiver rejects
    RoomStep.CANCELLING: {RoomStep.CANCELLED, RoomStep.FUNDED},  # refund or either side rejects
    RoomStep.COMPLETED: set(),
    RoomStep.CANCELLED: set(),
    RoomStep.EXPIRED: set(),
}

TERMINAL_STEPS = {step for step, nxt in STEP_TRANSITIONS.items() if not nxt}

# Steps covered by each inactivity window
PRE_FUNDING_STEPS = (
    RoomStep.WAITING_FOR_PEER,
    RoomStep.ROLE_SELECTION,
    RoomStep.AMOUNT_AGREEMENT,
    RoomStep.FEE_SELECTION,
)
FUNDING_STEPS = (RoomStep.AWAITING_DEPOSIT,)


def can_transition(current: RoomStep, new: RoomStep) -> bool:
    return new in STEP_TRANSITIONS[current]


# --- Chains ---

MAINNET_CHAINS = {
    1: {
        "id": 1,
        "name": "Ethereum Mainnet",
        "short_name": "ETH",
        "token_address": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
        "master_escrow": os.environ.get("MASTER_ESCROW_ETH", ""),
        "explorer_url": "https://etherscan.io",
        "rpc_url": os.environ.get("ETH_RPC_URL", "https://eth.llamarpc.com"),
    },
    56: {
        "id": 56,
        "name": "BNB Smart Chain",
        "short_name": "BSC",
        "token_address": "0x55d398326f99059fF775485246999027B3197955",
        "master_escrow": os.environ.get("MASTER_ESCROW_BSC", ""),
        "explorer_url": "https://bscscan.com",
        "rpc_url": os.environ.get("BSC_RPC_URL", "https://bsc-dataseed.binance.org"),
    },
}

TESTNET_CHAINS = {
    11155111: {
        "id": 11155111,
        "name": "Sepolia Testnet",
        "short_name": "Sepolia",
        "token_address": "0x7169D38820dfd117C3FA1f22a697dBA58d90BA06",
        "master_escrow": os.environ.get("MASTER_ESCROW_SEPOLIA", ""),
        "explorer_url": "https://sepolia.etherscan.io",
        "rpc_url": os.environ.get("SEPOLIA_RPC_URL", "https://rpc.sepolia.org"),
    },
    97: {
        "id": 97,
        "name": "BSC Testnet",
        "short_name": "BSC Testnet",
        "token_address": "0x337610d27c682E347C9cD60BD4b3b107C9d34dDd",
        "master_escrow": os.environ.get("MASTER_ESCROW_BSC_TESTNET", ""),
        "explorer_url": "https://testnet.bscscan.com",
        "rpc_url": os.environ.get("BSC_TESTNET_RPC_URL", "https://data-seed-prebsc-1-s1.binance.org:8545"),
    },
}

NETWORK = os.environ.get("ESCROW_NETWORK", "testnet")
SUPPORTED_CHAINS = MAINNET_CHAINS if NETWORK == "mainnet" else TESTNET_CHAINS


def get_chain_config(chain_id: int) -> dict | None:
    return SUPPORTED_CHAINS.get(chain_id)


def chain_name(chain_id: int) -> str:
    config = get_chain_config(chain_id)
    return config["name"] if config else f"Chain {chain_id}"


def explorer_address_url(chain_id: int, address: str) -> str | None:
    config = get_chain_config(chain_id)
    if not config:
        return None
    return f"{config['explorer_url']}/address/{address}"


def explorer_tx_url(chain_id: int, tx_ref: str) -> str | None:
    config = get_chain_config(chain_id)
    if not config:
        return None
    return f"{config['explorer_url']}/tx/{tx_ref}"


# --- Amounts and addresses ---

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def is_valid_address(address: str) -> bool:
    """Format check only: 0x followed by 40 hex digits."""
    return bool(address) and bool(_ADDRESS_RE.match(address))


def parse_token_amount(text: str, decimals: int = TOKEN_DECIMALS) -> int:
    """Convert a display amount ("100.00") to the token's smallest unit.

    Digits beyond `decimals` are truncated. Raises ValueError on anything that
    is not a finite decimal number.
    """
    try:
        value = Decimal(str(text).strip())
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {text!r}")
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {text!r}")
    try:
        scaled = (value * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN)
    except ArithmeticError:
        raise ValueError(f"Amount out of range: {text!r}")
    return int(scaled)


def format_token_amount(raw: int | str, decimals: int = TOKEN_DECIMALS) -> str:
    """Format a smallest-unit amount for display, trimming trailing zeros."""
    value = int(raw)
    sign = "-" if value < 0 else ""
    value = abs(value)
    whole, fraction = divmod(value, 10 ** decimals)
    if fraction == 0:
        return f"{sign}{whole}"
    frac = str(fraction).rjust(decimals, "0").rstrip("0")
    return f"{sign}{whole}.{frac}"
