# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Room workflow engine.

Drives a two-party escrow room through its steps:

  WAITING_FOR_PEER -> ROLE_SELECTION -> AMOUNT_AGREEMENT -> FEE_SELECTION
    -> AWAITING_DEPOSIT -> FUNDED -> RELEASING -> COMPLETED
                                  -> CANCELLING -> CANCELLED

Every public operation runs under the room's lock, validates step and actor,
writes, optionally calls the settlement gateway and posts one notice. Steps
that depend on the gateway are written only after the gateway call returns,
so a failed call leaves the room where it was and the action can be retried.

Operations never raise. They return an ActionResult; failures carry the
error kind (not_found, invalid_phase, forbidden, validation, external).
"""

import logging
import secrets
import time

from protocol import (
    ROOM_CODE_ALPHABET, ROOM_CODE_LENGTH, MAX_PARTICIPANTS, ZERO_ADDRESS, TOKEN_SYMBOL,
    RoomStep, RoomStatus, Role, FeePayer, TransactionStatus,
    get_chain_config, chain_name, explorer_address_url, is_valid_address,
    parse_token_amount, format_token_amount,
)
from server import ledger
from server.confirmations import ConfirmationTracker, Phase
from server.deposits import DepositReconciler
from server.errors import (
    ActionResult, EngineError, NotFound, InvalidPhase, Forbidden, ValidationError, ExternalFailure,
)
from server.locks import RoomLocks
from server.notifications import (
    StoreMessageSink, ShortIdDirectory, deliver,
    WaitingForPeer, PeerJoined, RoleSelection, RoleSelected, RoleConflict, RoleConfirmedBy,
    RolesConfirmed, AmountProposed, AmountConfirmedBy, AmountRejected, FeeSelection,
    FeePayerSelected, FeeConfirmedBy, AwaitingDeposit, ReleaseRequested, ReleaseCancelled,
    RequestPayoutAddress, ConfirmPayoutAddress, DealCompleted, CancelRequested, CancelRejected,
    RequestRefundAddress, ConfirmRefundAddress, DealCancelled,
)
from server.timeouts import TimeoutConfig, seconds_remaining

logger = logging.getLogger(__name__)

# sqlite INTEGER is a signed 64-bit value
MAX_STORED_AMOUNT = 2 ** 63 - 1


def generate_room_code() -> str:
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))


def _parse_enum(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {label} {value!r}: expected one of {allowed}")


def serialize_room(room: dict) -> dict:
    """JSON-safe view of a stored room."""
    out = dict(room)
    out["step"] = room["step"].value
    out["status"] = room["status"].value
    out["fee_payer"] = room["fee_payer"].value if room["fee_payer"] else None
    if room["amount"] is not None:
        out["amount"] = str(room["amount"])
        out["amount_formatted"] = format_token_amount(room["amount"])
    else:
        out["amount_formatted"] = None
    return out


def serialize_participant(participant: dict) -> dict:
    out = dict(participant)
    out["role"] = participant["role"].value if participant["role"] else None
    return out


class RoomEngine:
    def __init__(self, store, gateway, sink=None, directory=None, locks=None,
                 timeout_config: TimeoutConfig | None = None, clock=time.time):
        self.store = store
        self.gateway = gateway
        self.sink = sink or StoreMessageSink(store)
        self.directory = directory or ShortIdDirectory()
        self.locks = locks or RoomLocks()
        self.timeout_config = timeout_config or TimeoutConfig()
        self.clock = clock
        self.confirmations = ConfirmationTracker(store)
        self.deposits = DepositReconciler(store, gateway, self.locks, self.sink, clock)

    @property
    def simulated(self) -> bool:
        return self.gateway.simulated

    # --- Plumbing ---

    def _act(self, room_id: str, handler, *args) -> ActionResult:
        """Run handler(room, *args) under the room lock and wrap the outcome."""
        try:
            with self.locks.hold(room_id):
                room = self._room(room_id)
                data = handler(room, *args) or {}
                self.store.touch(room_id, self.clock())
        except EngineError as e:
            logger.debug("room %s: %s rejected (%s): %s", room_id, handler.__name__, e.kind, e)
            return ActionResult.failure(e)
        return ActionResult.success(**data)

    def _room(self, room_id: str) -> dict:
        room = self.store.get_room(room_id)
        if room is None:
            raise NotFound(f"Room {room_id} not found")
        return room

    def _require_step(self, room: dict, *steps: RoomStep):
        if room["step"] not in steps:
            expected = " or ".join(s.value for s in steps)
            raise InvalidPhase(f"Action requires step {expected}, room is in {room['step'].value}")

    def _participant(self, room: dict, user_id: str) -> dict:
        participant = self.store.get_participant(room["id"], user_id)
        if participant is None:
            raise NotFound(f"User {user_id} is not a participant in room {room['id']}")
        return participant

    def _require_role(self, participant: dict, role: Role):
        if participant["role"] != role:
            raise Forbidden(f"Only the {role.value.lower()} can do this")

    def _parties(self, room_id: str) -> tuple[dict | None, dict | None]:
        by_role = {p["role"]: p for p in self.store.get_participants(room_id) if p["role"]}
        return by_role.get(Role.SENDER), by_role.get(Role.RECEIVER)

    def _name(self, user_id: str | None) -> str:
        return self.directory.display_name(user_id)

    def _emit(self, room_id: str, notice):
        deliver(self.sink, room_id, notice)

    def _advance(self, room: dict, new: RoomStep, **fields):
        if not self.store.advance_step(room["id"], room["step"], new, **fields):
            logger.warning("room %s: lost step race %s -> %s", room["id"], room["step"].value, new.value)
            raise InvalidPhase(f"Room is no longer in {room['step'].value}")
        logger.info("room %s: %s -> %s", room["id"], room["step"].value, new.value)

    def _gateway(self, operation: str, *args):
        try:
            return getattr(self.gateway, operation)(*args)
        except Exception as e:
            logger.warning("gateway %s failed: %s", operation, e)
            raise ExternalFailure(f"Settlement gateway {operation} failed: {e}") from e

    # --- Room lifecycle ---

    def create_room(self, user_id: str, name: str, chain_id: int,
                    token_address: str | None = None) -> ActionResult:
        try:
            name = (name or "").strip()
            if not name:
                raise ValidationError("Room name is required")
            chain = get_chain_config(chain_id)
            if chain is None:
                raise ValidationError(f"Unsupported chain {chain_id}")
            token_address = token_address or chain["token_address"]
            if not is_valid_address(token_address):
                raise ValidationError(f"Invalid token address {token_address!r}")
            code = generate_room_code()
            for _ in range(10):
                if not self.store.code_exists(code):
                    break
                code = generate_room_code()
            else:
                raise ValidationError("Could not allocate a unique room code")
        except EngineError as e:
            return ActionResult.failure(e)

        room = self.store.create_room(name, chain_id, token_address, user_id, code, now=self.clock())
        logger.info("room %s created by %s (code %s)", room["id"], user_id, room["room_code"])
        self._emit(room["id"], WaitingForPeer(room_name=name, room_code=room["room_code"]))
        return ActionResult.success(room_id=room["id"], room_code=room["room_code"])

    def join_room(self, room_code: str, user_id: str) -> ActionResult:
        room = self.store.get_room_by_code(room_code or "")
        if room is None:
            return ActionResult.failure(NotFound(f"No room with code {room_code!r}"))
        return self._act(room["id"], self._join, user_id)

    def _join(self, room: dict, user_id: str) -> dict:
        if self.store.get_participant(room["id"], user_id) is not None:
            return {"room_id": room["id"], "already_joined": True}
        self._require_step(room, RoomStep.WAITING_FOR_PEER)
        if len(self.store.get_participants(room["id"])) >= MAX_PARTICIPANTS:
            raise InvalidPhase("Room is full")
        self.store.add_participant(room["id"], user_id)
        self._advance(room, RoomStep.ROLE_SELECTION)
        self._emit(room["id"], PeerJoined(joiner_name=self._name(user_id)))
        return {"room_id": room["id"], "already_joined": False}

    # --- Roles ---

    def select_role(self, room_id: str, user_id: str, role) -> ActionResult:
        return self._act(room_id, self._select_role, user_id, role)

    def _select_role(self, room: dict, user_id: str, role) -> dict:
        self._require_step(room, RoomStep.ROLE_SELECTION)
        self._participant(room, user_id)
        role = _parse_enum(Role, role, "role")
        if ConfirmationTracker.conflict([p["role"] for p in self.store.get_participants(room["id"])]):
            raise ValidationError("Both participants chose the same role; reset roles first")
        self.confirmations.set_role(room["id"], user_id, role)
        self._emit(room["id"], RoleSelected(user_name=self._name(user_id), role=role))

        roles = [p["role"] for p in self.store.get_participants(room["id"])]
        conflict = ConfirmationTracker.conflict(roles)
        if conflict:
            self._emit(room["id"], RoleConflict())
        return {"role": role.value, "conflict": conflict}

    def confirm_role(self, room_id: str, user_id: str) -> ActionResult:
        return self._act(room_id, self._confirm_role, user_id)

    def _confirm_role(self, room: dict, user_id: str) -> dict:
        self._require_step(room, RoomStep.ROLE_SELECTION)
        participant = self._participant(room, user_id)
        if participant["role"] is None:
            raise ValidationError("Select a role before confirming")
        roles = [p["role"] for p in self.store.get_participants(room["id"])]
        if len([r for r in roles if r]) < MAX_PARTICIPANTS:
            raise ValidationError("Waiting for the other participant to select a role")
        if ConfirmationTracker.conflict(roles):
            raise ValidationError("Both participants chose the same role; reset roles first")

        self.confirmations.confirm_phase(room["id"], user_id, Phase.ROLE)
        if not self.confirmations.all_confirmed(room["id"], Phase.ROLE):
            self._emit(room["id"], RoleConfirmedBy(user_name=self._name(user_id)))
            return {"advanced": False}

        self._advance(room, RoomStep.AMOUNT_AGREEMENT)
        sender, receiver = self._parties(room["id"])
        self._emit(room["id"], RolesConfirmed(
            sender_name=self._name(sender["user_id"]),
            receiver_name=self._name(receiver["user_id"]),
        ))
        return {"advanced": True}

    def reset_roles(self, room_id: str, user_id: str) -> ActionResult:
        return self._act(room_id, self._reset_roles, user_id)

    def _reset_roles(self, room: dict, user_id: str) -> dict:
        self._require_step(room, RoomStep.ROLE_SELECTION)
        self._participant(room, user_id)
        self.confirmations.clear_roles(room["id"])
        self._emit(room["id"], RoleSelection())
        return {}

    # --- Amount ---

    def propose_amount(self, room_id: str, user_id: str, amount_text: str) -> ActionResult:
        return self._act(room_id, self._propose_amount, user_id, amount_text)

    def _propose_amount(self, room: dict, user_id: str, amount_text: str) -> dict:
        self._require_step(room, RoomStep.AMOUNT_AGREEMENT)
        self._require_role(self._participant(room, user_id), Role.SENDER)
        try:
            amount = parse_token_amount(amount_text)
        except ValueError as e:
            raise ValidationError(str(e))
        if amount <= 0:
            raise ValidationError(f"Amount must be greater than zero, got {amount_text!r}")
        if amount > MAX_STORED_AMOUNT:
            raise ValidationError(f"Amount too large: {amount_text!r}")

        self.store.update_room(room["id"], amount=amount)
        self.confirmations.reset_phase(room["id"], Phase.AMOUNT)
        self._emit(room["id"], AmountProposed(user_name=self._name(user_id), amount=amount))
        return {"amount": str(amount), "amount_formatted": format_token_amount(amount)}

    def confirm_amount(self, room_id: str, user_id: str, confirmed: bool = True) -> ActionResult:
        return self._act(room_id, self._confirm_amount, user_id, confirmed)

    def _confirm_amount(self, room: dict, user_id: str, confirmed: bool) -> dict:
        self._require_step(room, RoomStep.AMOUNT_AGREEMENT)
        self._participant(room, user_id)
        if room["amount"] is None:
            raise ValidationError("No amount has been proposed yet")

        if not confirmed:
            self.store.update_room(room["id"], amount=None)
            self.confirmations.reset_phase(room["id"], Phase.AMOUNT)
            sender, _ = self._parties(room["id"])
            self._emit(room["id"], AmountRejected(
                user_name=self._name(user_id),
                sender_name=self._name(sender["user_id"] if sender else None),
            ))
            return {"rejected": True, "advanced": False}

        self.confirmations.confirm_phase(room["id"], user_id, Phase.AMOUNT)
        if not self.confirmations.all_confirmed(room["id"], Phase.AMOUNT):
            self._emit(room["id"], AmountConfirmedBy(user_name=self._name(user_id)))
            return {"rejected": False, "advanced": False}

        self._advance(room, RoomStep.FEE_SELECTION)
        self._emit(room["id"], FeeSelection(amount=room["amount"], fee=ledger.fee(room["amount"])))
        return {"rejected": False, "advanced": True}

    # --- Fee ---

    def select_fee_payer(self, room_id: str, user_id: str, fee_payer) -> ActionResult:
        return self._act(room_id, self._select_fee_payer, user_id, fee_payer)

    def _select_fee_payer(self, room: dict, user_id: str, fee_payer) -> dict:
        self._require_step(room, RoomStep.FEE_SELECTION)
        self._participant(room, user_id)
        fee_payer = _parse_enum(FeePayer, fee_payer, "fee payer")
        self.store.update_room(room["id"], fee_payer=fee_payer)
        self.confirmations.reset_phase(room["id"], Phase.FEE)
        self._emit(room["id"], FeePayerSelected(user_name=self._name(user_id), fee_payer=fee_payer))
        return {"fee_payer": fee_payer.value, "quote": ledger.quote(room["amount"], fee_payer).to_dict()}

    def confirm_fee(self, room_id: str, user_id: str) -> ActionResult:
        return self._act(room_id, self._confirm_fee, user_id)

    def _confirm_fee(self, room: dict, user_id: str) -> dict:
        self._require_step(room, RoomStep.FEE_SELECTION)
        self._participant(room, user_id)
        if room["fee_payer"] is None:
            raise ValidationError("No fee payer has been selected yet")

        self.confirmations.confirm_phase(room["id"], user_id, Phase.FEE)
        if not self.confirmations.all_confirmed(room["id"], Phase.FEE):
            self._emit(room["id"], FeeConfirmedBy(user_name=self._name(user_id)))
            return {"advanced": False}

        quote = ledger.quote(room["amount"], room["fee_payer"])
        address = self._gateway("derive_settlement_address", room["id"], room["chain_id"])
        self._gateway("create_deal", room["id"], room["chain_id"], quote.deposit, quote.fee_payer)
        self._advance(room, RoomStep.AWAITING_DEPOSIT, escrow_address=address)

        sender, receiver = self._parties(room["id"])
        self._emit(room["id"], AwaitingDeposit(
            sender_name=self._name(sender["user_id"]),
            receiver_name=self._name(receiver["user_id"]),
            amount=quote.amount,
            fee=quote.fee,
            fee_payer=quote.fee_payer,
            deposit=quote.deposit,
            payout=quote.payout,
            escrow_address=address,
            chain_name=chain_name(room["chain_id"]),
        ))
        return {"advanced": True, "escrow_address": address, "quote": quote.to_dict()}

    # --- Deposit ---

    def check_deposit(self, room_id: str) -> ActionResult:
        return self.deposits.check_deposit(room_id)

    def simulate_deposit(self, room_id: str) -> ActionResult:
        return self.deposits.simulate_deposit(room_id)

    # --- Release ---

    def initiate_release(self, room_id: str, user_id: str) -> ActionResult:
        return self._act(room_id, self._initiate_release, user_id)

    def _initiate_release(self, room: dict, user_id: str) -> dict:
        self._require_step(room, RoomStep.FUNDED)
        self._require_role(self._participant(room, user_id), Role.SENDER)
        self.confirmations.confirm_phase(room["id"], user_id, Phase.RELEASE)
        self._advance(room, RoomStep.RELEASING)
        self._emit(room["id"], ReleaseRequested(sender_name=self._name(user_id)))
        return {}

    def confirm_release(self, room_id: str, user_id: str) -> ActionResult:
        return self._act(room_id, self._confirm_release, user_id)

    def _confirm_release(self, room: dict, user_id: str) -> dict:
        self._require_step(room, RoomStep.RELEASING)
        self._require_role(self._participant(room, user_id), Role.RECEIVER)
        self.confirmations.confirm_phase(room["id"], user_id, Phase.RELEASE)
        if not self.confirmations.all_confirmed(room["id"], Phase.RELEASE):
            raise InvalidPhase("Release has not been initiated by the sender")
        if self.simulated:
            return self._execute_release(room, ZERO_ADDRESS)
        self._emit(room["id"], RequestPayoutAddress(receiver_name=self._name(user_id)))
        return {"awaiting_address": True}

    def _release_receiver(self, room: dict, user_id: str) -> dict:
        self._require_step(room, RoomStep.RELEASING)
        participant = self._participant(room, user_id)
        self._require_role(participant, Role.RECEIVER)
        if not participant["release_confirmed"]:
            raise InvalidPhase("Confirm the release before giving a payout address")
        return participant

    def submit_payout_address(self, room_id: str, user_id: str, address: str) -> ActionResult:
        return self._act(room_id, self._submit_payout_address, user_id, address)

    def _submit_payout_address(self, room: dict, user_id: str, address: str) -> dict:
        participant = self._release_receiver(room, user_id)
        address = (address or "").strip()
        if not is_valid_address(address):
            raise ValidationError(f"Invalid wallet address {address!r}")
        self.store.update_participant(participant["id"], payout_address=address)
        self._emit(room["id"], ConfirmPayoutAddress(address=address))
        return {"address": address}

    def confirm_payout_address(self, room_id: str, user_id: str) -> ActionResult:
        return self._act(room_id, self._confirm_payout_address, user_id)

    def _confirm_payout_address(self, room: dict, user_id: str) -> dict:
        participant = self._release_receiver(room, user_id)
        if not participant["payout_address"]:
            raise ValidationError("Submit a payout address first")
        return self._execute_release(room, participant["payout_address"])

    def change_payout_address(self, room_id: str, user_id: str) -> ActionResult:
        return self._act(room_id, self._change_payout_address, user_id)

    def _change_payout_address(self, room: dict, user_id: str) -> dict:
        participant = self._release_receiver(room, user_id)
        self.store.update_participant(participant["id"], payout_address=None)
        self._emit(room["id"], RequestPayoutAddress(receiver_name=self._name(user_id)))
        return {}

    def cancel_release(self, room_id: str, user_id: str) -> ActionResult:
        return self._act(room_id, self._cancel_release, user_id)

    def _cancel_release(self, room: dict, user_id: str) -> dict:
        self._require_step(room, RoomStep.RELEASING)
        self._require_role(self._participant(room, user_id), Role.RECEIVER)
        self.store.update_participants(room["id"], release_confirmed=False, payout_address=None)
        self._advance(room, RoomStep.FUNDED)
        self._emit(room["id"], ReleaseCancelled(receiver_name=self._name(user_id)))
        return {}

    def _execute_release(self, room: dict, destination: str) -> dict:
        quote = ledger.quote(room["amount"], room["fee_payer"])
        tx_ref = self._gateway("execute_release", room["id"], destination, quote.payout, room["chain_id"])
        self._advance(room, RoomStep.COMPLETED, release_tx_ref=tx_ref, status=RoomStatus.COMPLETED)

        sender, receiver = self._parties(room["id"])
        self.store.record_transaction(
            room, sender["user_id"], receiver["user_id"], quote.fee, tx_ref, TransactionStatus.COMPLETED,
        )
        logger.info("room %s: released %d to %s (%s)", room["id"], quote.payout, destination, tx_ref)
        self._emit(room["id"], DealCompleted(
            receiver_name=self._name(receiver["user_id"]), amount=quote.payout, tx_ref=tx_ref,
        ))
        return {"tx_ref": tx_ref, "amount": str(quote.payout), "destination": destination}

    # --- Cancel ---

    def initiate_cancel(self, room_id: str, user_id: str) -> ActionResult:
        return self._act(room_id, self._initiate_cancel, user_id)

    def _initiate_cancel(self, room: dict, user_id: str) -> dict:
        self._require_step(room, RoomStep.FUNDED)
        self._participant(room, user_id)
        self.confirmations.confirm_phase(room["id"], user_id, Phase.CANCEL)
        self._advance(room, RoomStep.CANCELLING)
        self._emit(room["id"], CancelRequested(user_name=self._name(user_id)))
        return {}

    def confirm_cancel(self, room_id: str, user_id: str) -> ActionResult:
        return self._act(room_id, self._confirm_cancel, user_id)

    def _confirm_cancel(self, room: dict, user_id: str) -> dict:
        self._require_step(room, RoomStep.CANCELLING)
        participant = self._participant(room, user_id)
        if participant["cancel_confirmed"]:
            raise Forbidden("The other party must confirm the cancellation")
        self.confirmations.confirm_phase(room["id"], user_id, Phase.CANCEL)
        if not self.confirmations.all_confirmed(room["id"], Phase.CANCEL):
            raise InvalidPhase("Cancellation has not been requested by the other party")
        if self.simulated:
            return self._execute_refund(room, ZERO_ADDRESS)
        sender, _ = self._parties(room["id"])
        self._emit(room["id"], RequestRefundAddress(sender_name=self._name(sender["user_id"])))
        return {"awaiting_address": True}

    def reject_cancel(self, room_id: str, user_id: str) -> ActionResult:
        return self._act(room_id, self._reject_cancel, user_id)

    def _reject_cancel(self, room: dict, user_id: str) -> dict:
        self._require_step(room, RoomStep.CANCELLING)
        self._participant(room, user_id)
        self.store.update_participants(room["id"], cancel_confirmed=False, payout_address=None)
        self._advance(room, RoomStep.FUNDED)
        self._emit(room["id"], CancelRejected(user_name=self._name(user_id)))
        return {}

    def _refund_sender(self, room: dict, user_id: str) -> dict:
        self._require_step(room, RoomStep.CANCELLING)
        participant = self._participant(room, user_id)
        self._require_role(participant, Role.SENDER)
        if not self.confirmations.all_confirmed(room["id"], Phase.CANCEL):
            raise InvalidPhase("Both parties must confirm the cancellation first")
        return participant

    def submit_refund_address(self, room_id: str, user_id: str, address: str) -> ActionResult:
        return self._act(room_id, self._submit_refund_address, user_id, address)

    def _submit_refund_address(self, room: dict, user_id: str, address: str) -> dict:
        participant = self._refund_sender(room, user_id)
        address = (address or "").strip()
        if not is_valid_address(address):
            raise ValidationError(f"Invalid wallet address {address!r}")
        self.store.update_participant(participant["id"], payout_address=address)
        self._emit(room["id"], ConfirmRefundAddress(address=address))
        return {"address": address}

    def confirm_refund_address(self, room_id: str, user_id: str) -> ActionResult:
        return self._act(room_id, self._confirm_refund_address, user_id)

    def _confirm_refund_address(self, room: dict, user_id: str) -> dict:
        participant = self._refund_sender(room, user_id)
        if not participant["payout_address"]:
            raise ValidationError("Submit a refund address first")
        return self._execute_refund(room, participant["payout_address"])

    def change_refund_address(self, room_id: str, user_id: str) -> ActionResult:
        return self._act(room_id, self._change_refund_address, user_id)

    def _change_refund_address(self, room: dict, user_id: str) -> dict:
        participant = self._refund_sender(room, user_id)
        self.store.update_participant(participant["id"], payout_address=None)
        self._emit(room["id"], RequestRefundAddress(sender_name=self._name(user_id)))
        return {}

    def _execute_refund(self, room: dict, destination: str) -> dict:
        fee = ledger.fee(room["amount"])
        refund = ledger.refund_amount(room["amount"], fee, room["fee_payer"])
        tx_ref = self._gateway("execute_refund", room["id"], destination, refund, room["chain_id"])
        self._advance(room, RoomStep.CANCELLED, release_tx_ref=tx_ref, status=RoomStatus.CANCELLED)

        sender, receiver = self._parties(room["id"])
        self.store.record_transaction(
            room, sender["user_id"], receiver["user_id"], fee, tx_ref, TransactionStatus.REFUNDED,
        )
        logger.info("room %s: refunded %d to %s (%s)", room["id"], refund, destination, tx_ref)
        self._emit(room["id"], DealCancelled(
            sender_name=self._name(sender["user_id"]), amount=refund, tx_ref=tx_ref,
        ))
        return {"tx_ref": tx_ref, "amount": str(refund), "destination": destination}

    # --- Queries ---

    def get_room_state(self, room_id: str) -> ActionResult:
        room = self.store.get_room(room_id)
        if room is None:
            return ActionResult.failure(NotFound(f"Room {room_id} not found"))
        participants = self.store.get_participants(room_id)
        sender, receiver = self._parties(room_id)
        quote = None
        if room["amount"] is not None and room["fee_payer"] is not None:
            quote = ledger.quote(room["amount"], room["fee_payer"]).to_dict()
        remaining = seconds_remaining(room, self.clock(), self.timeout_config)
        return ActionResult.success(
            room=serialize_room(room),
            participants=[serialize_participant(p) for p in participants],
            sender=sender["user_id"] if sender else None,
            receiver=receiver["user_id"] if receiver else None,
            quote=quote,
            seconds_remaining=int(max(remaining, 0)) if remaining is not None else None,
        )

    def get_deposit_info(self, room_id: str) -> ActionResult:
        room = self.store.get_room(room_id)
        if room is None:
            return ActionResult.failure(NotFound(f"Room {room_id} not found"))
        if not room["escrow_address"]:
            return ActionResult.failure(InvalidPhase("Deposit address has not been assigned yet"))
        expected = self.deposits.expected_deposit(room)
        return ActionResult.success(
            escrow_address=room["escrow_address"],
            expected_amount=str(expected),
            expected_amount_formatted=format_token_amount(expected),
            token_symbol=TOKEN_SYMBOL,
            deposit_tx_ref=room["deposit_tx_ref"],
            chain_id=room["chain_id"],
            chain_name=chain_name(room["chain_id"]),
            explorer_url=explorer_address_url(room["chain_id"], room["escrow_address"]),
        )
