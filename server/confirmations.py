# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Two-party confirmation flags.

Every negotiated decision (role, amount, fee payer) and every settlement
request (release, cancel) needs a flag from each participant. Replacing a
decision clears the flags for that phase so a stale confirmation never
carries over to a new value.
"""

from enum import Enum

from protocol import MAX_PARTICIPANTS, Role
from server.errors import NotFound


class Phase(Enum):
    ROLE = "role"
    AMOUNT = "amount"
    FEE = "fee"
    RELEASE = "release"
    CANCEL = "cancel"


PHASE_FLAGS = {
    Phase.ROLE: "role_confirmed",
    Phase.AMOUNT: "amount_confirmed",
    Phase.FEE: "fee_confirmed",
    Phase.RELEASE: "release_confirmed",
    Phase.CANCEL: "cancel_confirmed",
}


def _has_decision(phase: Phase, room: dict, participant: dict) -> bool:
    """Is the value this phase confirms actually present?"""
    checks = {
        Phase.ROLE: lambda: participant["role"] is not None,
        Phase.AMOUNT: lambda: room["amount"] is not None,
        Phase.FEE: lambda: room["fee_payer"] is not None,
        Phase.RELEASE: lambda: participant["role"] is not None,
        Phase.CANCEL: lambda: participant["role"] is not None,
    }
    return checks[phase]()


class ConfirmationTracker:
    def __init__(self, store):
        self.store = store

    def _participant(self, room_id: str, user_id: str) -> dict:
        participant = self.store.get_participant(room_id, user_id)
        if participant is None:
            raise NotFound(f"User {user_id} is not a participant in room {room_id}")
        return participant

    def set_role(self, room_id: str, user_id: str, role: Role):
        """Store an unconfirmed role choice. Any role change unconfirms both sides."""
        participant = self._participant(room_id, user_id)
        self.store.update_participant(participant["id"], role=Role(role))
        self.reset_phase(room_id, Phase.ROLE)

    def clear_roles(self, room_id: str):
        self.store.update_participants(room_id, role=None, role_confirmed=False)

    def confirm_phase(self, room_id: str, user_id: str, phase: Phase):
        participant = self._participant(room_id, user_id)
        self.store.update_participant(participant["id"], **{PHASE_FLAGS[Phase(phase)]: True})

    def is_confirmed(self, room_id: str, user_id: str, phase: Phase) -> bool:
        return self._participant(room_id, user_id)[PHASE_FLAGS[Phase(phase)]]

    def reset_phase(self, room_id: str, phase: Phase):
        self.store.update_participants(room_id, **{PHASE_FLAGS[Phase(phase)]: False})

    def all_confirmed(self, room_id: str, phase: Phase) -> bool:
        """True only with exactly two participants, each holding a decision and a set flag."""
        phase = Phase(phase)
        room = self.store.get_room(room_id)
        if room is None:
            return False
        participants = self.store.get_participants(room_id)
        if len(participants) != MAX_PARTICIPANTS:
            return False
        flag = PHASE_FLAGS[phase]
        return all(p[flag] and _has_decision(phase, room, p) for p in participants)

    @staticmethod
    def conflict(roles) -> bool:
        """Both roles chosen and identical."""
        chosen = [r for r in roles if r is not None]
        return len(chosen) == MAX_PARTICIPANTS and len(set(chosen)) == 1
