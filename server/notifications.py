# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Bot notices posted into rooms.

Each notice is a frozen dataclass tagged by its `action`. The engine builds
one per event, resolves display names up front, and hands it to a MessageSink.
Text is Markdown for the chat UI; metadata (action, data, buttons) is what a
client uses to render controls.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from enum import Enum
from typing import ClassVar

from protocol import (
    FEE_PERCENTAGE, TOKEN_SYMBOL, FeePayer, Role, format_token_amount,
)

logger = logging.getLogger(__name__)

FEE_PAYER_LABELS = {
    FeePayer.SENDER: "Sender pays fee",
    FeePayer.RECEIVER: "Receiver pays fee",
    FeePayer.SPLIT: "Split 50/50",
}

ROLE_LABELS = {
    Role.SENDER: "Sender",
    Role.RECEIVER: "Receiver",
}

# Integer fields rendered as token amounts in text
_AMOUNT_FIELDS = {"amount", "fee", "deposit", "payout"}


@dataclass(frozen=True)
class Button:
    id: str
    label: str
    action: str
    variant: str = "primary"

    def to_dict(self) -> dict:
        return {"id": self.id, "label": self.label, "action": self.action, "variant": self.variant}


ROLE_BUTTONS = (
    Button("select_sender", "I am Sender", "select_role"),
    Button("select_receiver", "I am Receiver", "select_role"),
)


@dataclass(frozen=True)
class Notice:
    action: ClassVar[str] = ""
    template: ClassVar[str] = ""
    buttons: ClassVar[tuple[Button, ...]] = ()

    def _context(self) -> dict:
        ctx = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in _AMOUNT_FIELDS and isinstance(value, int):
                value = format_token_amount(value)
            elif isinstance(value, FeePayer):
                value = FEE_PAYER_LABELS[value]
            elif isinstance(value, Role):
                value = ROLE_LABELS[value]
            ctx[f.name] = value
        ctx["symbol"] = TOKEN_SYMBOL
        ctx["fee_pct"] = FEE_PERCENTAGE
        return ctx

    def text(self) -> str:
        return self.template.format(**self._context())

    def data(self) -> dict:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif f.name in _AMOUNT_FIELDS and isinstance(value, int):
                value = str(value)
            out[f.name] = value
        return out

    def to_dict(self) -> dict:
        meta = {"action": self.action}
        data = self.data()
        if data:
            meta["data"] = data
        if self.buttons:
            meta["buttons"] = [b.to_dict() for b in self.buttons]
        return meta


# --- Joining and roles ---

@dataclass(frozen=True)
class WaitingForPeer(Notice):
    action = "waiting_for_peer"
    template = ("Welcome! Room \"{room_name}\" has been created.\n\n"
                "Share this code with the other party to join:\n\n**{room_code}**\n\n"
                "Waiting for the other user to join...")
    room_name: str
    room_code: str


@dataclass(frozen=True)
class PeerJoined(Notice):
    action = "peer_joined"
    template = ("**{joiner_name}** has joined the room!\n\n"
                "**Role Assignment**\n\nSelect your role in this transaction:\n\n"
                "- **Sender** sends {symbol} to escrow\n"
                "- **Receiver** receives {symbol} from escrow\n\n"
                "Both users must select different roles to proceed.")
    buttons = ROLE_BUTTONS
    joiner_name: str


@dataclass(frozen=True)
class RoleSelection(Notice):
    action = "role_selection"
    template = ("**Role Assignment**\n\nRoles have been reset. Select your role again.\n\n"
                "Both users must select different roles to proceed.")
    buttons = ROLE_BUTTONS


@dataclass(frozen=True)
class RoleSelected(Notice):
    action = "role_selected"
    template = "**{user_name}** selected: **{role}**"
    buttons = (Button("confirm_role", "Confirm Role", "confirm_role"),)
    user_name: str
    role: Role


@dataclass(frozen=True)
class RoleConflict(Notice):
    action = "role_conflict"
    template = ("Both users selected the same role. Please coordinate and select different roles.\n\n"
                "Use the **Reset** button to start over.")
    buttons = (Button("reset_roles", "Reset Roles", "reset_roles", "danger"),)


@dataclass(frozen=True)
class RoleConfirmedBy(Notice):
    action = "role_confirmed_by"
    template = "**{user_name}** confirmed their role."
    user_name: str


@dataclass(frozen=True)
class RolesConfirmed(Notice):
    action = "roles_confirmed"
    template = ("Roles confirmed!\n\n- **Sender**: {sender_name}\n- **Receiver**: {receiver_name}\n\n"
                "**Deal Amount**\n\n{sender_name}, please enter the deal amount in {symbol}.\n\n"
                "Example: `100` or `50.5`")
    sender_name: str
    receiver_name: str


# --- Amount ---

@dataclass(frozen=True)
class AmountProposed(Notice):
    action = "amount_proposed"
    template = "**{user_name}** proposed amount: **${amount} {symbol}**\n\nBoth parties must confirm this amount."
    buttons = (
        Button("confirm_amount", "Confirm", "confirm_amount"),
        Button("reject_amount", "Reject", "reject_amount", "danger"),
    )
    user_name: str
    amount: int


@dataclass(frozen=True)
class AmountConfirmedBy(Notice):
    action = "amount_confirmed_by"
    template = "**{user_name}** confirmed the amount."
    user_name: str


@dataclass(frozen=True)
class AmountRejected(Notice):
    action = "amount_rejected"
    template = ("**{user_name}** rejected the amount.\n\n"
                "{sender_name}, please propose a new amount in {symbol}.")
    user_name: str
    sender_name: str


# --- Fee ---

@dataclass(frozen=True)
class FeeSelection(Notice):
    action = "fee_selection"
    template = ("**Fee Configuration**\n\nDeal Amount: **${amount} {symbol}**\n"
                "Service Fee ({fee_pct}%): **${fee} {symbol}**\n\nWho will pay the fee?")
    buttons = (
        Button("fee_sender", "Sender pays", "select_fee_payer"),
        Button("fee_receiver", "Receiver pays", "select_fee_payer"),
        Button("fee_split", "Split 50/50", "select_fee_payer"),
    )
    amount: int
    fee: int


@dataclass(frozen=True)
class FeePayerSelected(Notice):
    action = "fee_payer_selected"
    template = "**{user_name}** selected: **{fee_payer}**"
    buttons = (Button("confirm_fee", "Confirm", "confirm_fee"),)
    user_name: str
    fee_payer: FeePayer


@dataclass(frozen=True)
class FeeConfirmedBy(Notice):
    action = "fee_confirmed_by"
    template = "**{user_name}** confirmed the fee arrangement."
    user_name: str


@dataclass(frozen=True)
class AwaitingDeposit(Notice):
    action = "awaiting_deposit"
    template = ("**Deal Summary**\n\n"
                "- Sender: **{sender_name}**\n- Receiver: **{receiver_name}**\n"
                "- Deal Amount: **${amount} {symbol}**\n"
                "- Fee ({fee_pct}%): **${fee} {symbol}** ({fee_payer})\n"
                "- Network: **{chain_name}**\n\n"
                "Receiver will get: **${payout} {symbol}**\n\n"
                "**Send Payment**\n\nPlease send exactly **${deposit} {symbol}** to:\n\n"
                "`{escrow_address}`\n\n"
                "The bot will detect your payment once it is confirmed on chain.")
    sender_name: str
    receiver_name: str
    amount: int
    fee: int
    fee_payer: FeePayer
    deposit: int
    payout: int
    escrow_address: str
    chain_name: str


# --- Funded ---

@dataclass(frozen=True)
class DepositReceived(Notice):
    action = "deposit_received"
    template = ("**Payment Received!**\n\nAmount: **${amount} {symbol}**\nTransaction: `{tx_ref}`\n\n"
                "The funds are now secured in escrow. Once the receiver delivers, "
                "the sender can release the payment.")
    buttons = (
        Button("release", "Release Payment", "initiate_release"),
        Button("cancel", "Cancel Deal", "initiate_cancel", "danger"),
    )
    amount: int
    tx_ref: str


@dataclass(frozen=True)
class ReleaseRequested(Notice):
    action = "release_requested"
    template = "**{sender_name}** wants to release the payment.\n\nPlease confirm to proceed."
    buttons = (
        Button("confirm_release", "Confirm Release", "confirm_release"),
        Button("cancel_release", "Cancel", "cancel_release", "secondary"),
    )
    sender_name: str


@dataclass(frozen=True)
class ReleaseCancelled(Notice):
    action = "release_cancelled"
    template = "**{receiver_name}** declined the release. The funds stay in escrow."
    receiver_name: str


@dataclass(frozen=True)
class RequestPayoutAddress(Notice):
    action = "request_payout_address"
    template = "**{receiver_name}**, please provide your wallet address to receive the payment."
    receiver_name: str


@dataclass(frozen=True)
class ConfirmPayoutAddress(Notice):
    action = "confirm_payout_address"
    template = ("**Confirm Wallet Address**\n\nIs this correct?\n\n`{address}`\n\n"
                "Once confirmed, the funds will be sent to this address and cannot be recovered if incorrect.")
    buttons = (
        Button("confirm_address", "Confirm Address", "confirm_payout_address"),
        Button("change_address", "Change Address", "change_payout_address", "secondary"),
    )
    address: str


@dataclass(frozen=True)
class DealCompleted(Notice):
    action = "deal_completed"
    template = ("**Payment Released!**\n\n**${amount} {symbol}** has been sent to **{receiver_name}**.\n\n"
                "Transaction: `{tx_ref}`\n\n**Deal Complete!** The transaction has been recorded "
                "in the public history.")
    receiver_name: str
    amount: int
    tx_ref: str


@dataclass(frozen=True)
class CancelRequested(Notice):
    action = "cancel_requested"
    template = ("**{user_name}** wants to cancel the deal and refund the payment.\n\n"
                "The other party must confirm cancellation.")
    buttons = (
        Button("confirm_cancel", "Confirm Cancel", "confirm_cancel", "danger"),
        Button("reject_cancel", "Reject", "reject_cancel", "secondary"),
    )
    user_name: str


@dataclass(frozen=True)
class CancelRejected(Notice):
    action = "cancel_rejected"
    template = "**{user_name}** rejected the cancellation. The funds stay in escrow."
    user_name: str


@dataclass(frozen=True)
class RequestRefundAddress(Notice):
    action = "request_refund_address"
    template = "**{sender_name}**, please provide your wallet address for the refund."
    sender_name: str


@dataclass(frozen=True)
class ConfirmRefundAddress(Notice):
    action = "confirm_refund_address"
    template = ("**Confirm Refund Address**\n\nIs this correct?\n\n`{address}`\n\n"
                "Once confirmed, the refund will be sent to this address and cannot be recovered if incorrect.")
    buttons = (
        Button("confirm_address", "Confirm Address", "confirm_refund_address"),
        Button("change_address", "Change Address", "change_refund_address", "secondary"),
    )
    address: str


@dataclass(frozen=True)
class DealCancelled(Notice):
    action = "deal_cancelled"
    template = ("**Payment Refunded**\n\n**${amount} {symbol}** has been refunded to **{sender_name}**.\n\n"
                "Transaction: `{tx_ref}`\n\n**Deal Cancelled.** This room will be archived.")
    sender_name: str
    amount: int
    tx_ref: str


# --- Timeouts and disputes ---

@dataclass(frozen=True)
class RoomExpired(Notice):
    action = "room_expired"
    template = ("**Room Expired**\n\nThis room has been inactive for too long and has expired.\n\n"
                "No funds were deposited, so no action is needed.")


@dataclass(frozen=True)
class DepositExpired(Notice):
    action = "room_expired_deposit"
    template = ("**Room Expired**\n\nNo deposit was received within the time limit.\n\n"
                "If you already sent funds, please file a dispute with the transaction reference.")


@dataclass(frozen=True)
class TimeoutWarning(Notice):
    action = "timeout_warning"
    template = "**Timeout Warning**\n\nThis room will expire in **{minutes_remaining} minutes** if no action is taken."
    minutes_remaining: int


@dataclass(frozen=True)
class DisputeFiled(Notice):
    action = "dispute_filed"
    template = ("**Dispute Filed**\n\n**{reporter_name}** filed a dispute for this transaction.\n\n"
                "**Reason:** {reason}\n\n"
                "The transaction is on hold pending review.\n\nDispute ID: `{dispute_id}`")
    dispute_id: str
    reporter_name: str
    reason: str


@dataclass(frozen=True)
class DisputeUnderReview(Notice):
    action = "dispute_under_review"
    template = "**Dispute Under Review**\n\nThe dispute is now being reviewed.\n\nDispute ID: `{dispute_id}`"
    dispute_id: str


@dataclass(frozen=True)
class DisputeResolved(Notice):
    action = "dispute_resolved"
    template = "**Dispute Resolved**\n\n{resolution}\n\nDispute ID: `{dispute_id}`"
    dispute_id: str
    resolution: str = "The dispute has been resolved."


# --- Sinks and name resolution ---

class MessageSink(ABC):
    """Where notices go. The engine never formats or stores messages itself."""

    @abstractmethod
    def emit(self, room_id: str, notice: Notice):
        ...


class StoreMessageSink(MessageSink):
    """Persists notices into the room store's messages table."""

    def __init__(self, store):
        self.store = store

    def emit(self, room_id: str, notice: Notice):
        self.store.append_message(room_id, notice.text(), notice.to_dict())
        logger.debug("room %s: notice %s", room_id, notice.action)


def deliver(sink: MessageSink, room_id: str, notice: Notice) -> bool:
    """Emit a notice for state that is already committed.

    A failing sink is logged and reported as False; the state change stands.
    """
    try:
        sink.emit(room_id, notice)
    except Exception:
        logger.exception("room %s: could not deliver notice %s", room_id, notice.action)
        return False
    return True


class UserDirectory(ABC):
    @abstractmethod
    def display_name(self, user_id: str) -> str:
        ...


class ShortIdDirectory(UserDirectory):
    """Fallback naming: the first 8 characters of the user id."""

    def __init__(self, names: dict[str, str] | None = None):
        self.names = dict(names or {})

    def display_name(self, user_id: str) -> str:
        if not user_id:
            return "Unknown"
        if user_id in self.names:
            return self.names[user_id]
        return user_id[:8] + "..."
