# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Deposit reconciliation.

Asks the settlement gateway whether the sender's deposit has landed and, if
so, records it exactly once. Idempotency comes from the step guard: once the
room has left AWAITING_DEPOSIT a repeated check reports nothing found.
The simulated path only injects a deposit into the gateway's book, then runs
the same check_deposit code as a real deposit.
"""

import logging
import time

from protocol import RoomStep, RoomStatus
from server import ledger
from server.errors import (
    ActionResult, EngineError, ExternalFailure, InvalidPhase, NotFound, ValidationError,
)
from server.notifications import DepositReceived, deliver

logger = logging.getLogger(__name__)


class DepositReconciler:
    def __init__(self, store, gateway, locks, sink, clock=time.time):
        self.store = store
        self.gateway = gateway
        self.locks = locks
        self.sink = sink
        self.clock = clock

    def expected_deposit(self, room: dict) -> int:
        amount = room["amount"]
        return ledger.deposit_amount(amount, ledger.fee(amount), room["fee_payer"])

    def _awaiting_room(self, room_id: str) -> dict:
        room = self.store.get_room(room_id)
        if room is None:
            raise NotFound(f"Room {room_id} not found")
        if room["step"] != RoomStep.AWAITING_DEPOSIT:
            raise InvalidPhase(f"Room is not awaiting a deposit (step {room['step'].value})")
        return room

    def check_deposit(self, room_id: str) -> ActionResult:
        try:
            with self.locks.hold(room_id):
                return self._check_locked(room_id)
        except EngineError as e:
            return ActionResult.failure(e, found=False)

    def _check_locked(self, room_id: str) -> ActionResult:
        room = self._awaiting_room(room_id)
        expected = self.expected_deposit(room)
        try:
            status = self.gateway.check_deposit(room_id, expected, room["chain_id"])
        except Exception as e:
            logger.warning("room %s: deposit check failed: %s", room_id, e)
            raise ExternalFailure(f"Deposit check failed: {e}") from e

        if not status.found:
            return ActionResult.success(found=False)
        if not status.tx_ref:
            raise ExternalFailure("Gateway reported a deposit without a transaction reference")

        recorded = self.store.advance_step(
            room_id, RoomStep.AWAITING_DEPOSIT, RoomStep.FUNDED,
            deposit_tx_ref=status.tx_ref, last_activity_at=self.clock(),
        )
        if not recorded:
            logger.warning("room %s: deposit %s already recorded or step moved", room_id, status.tx_ref)
            return ActionResult.success(found=False)

        logger.info("room %s: deposit %s of %d recorded, room funded", room_id, status.tx_ref, status.amount)
        deliver(self.sink, room_id, DepositReceived(amount=status.amount, tx_ref=status.tx_ref))
        return ActionResult.success(found=True, tx_ref=status.tx_ref, amount=str(status.amount))

    def simulate_deposit(self, room_id: str) -> ActionResult:
        """Inject the exact expected deposit, then reconcile it like a real one."""
        try:
            if not self.gateway.simulated:
                raise ValidationError("Simulated deposits are only available in simulated mode")
            with self.locks.hold(room_id):
                room = self._awaiting_room(room_id)
                self.gateway.inject_deposit(room_id, self.expected_deposit(room))
        except EngineError as e:
            return ActionResult.failure(e, found=False)
        return self.check_deposit(room_id)

    def poll_open_deposits(self) -> dict:
        """Check every open room still waiting on its deposit."""
        report = {"checked": 0, "funded": 0, "errors": []}
        for room in self.store.list_rooms(status=RoomStatus.OPEN):
            if room["step"] != RoomStep.AWAITING_DEPOSIT:
                continue
            report["checked"] += 1
            result = self.check_deposit(room["id"])
            if not result.ok:
                report["errors"].append(f"Room {room['id']}: {result.error}")
            elif result.data.get("found"):
                report["funded"] += 1
        return report
