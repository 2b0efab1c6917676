# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Dispute desk.

A participant can flag a room for manual review. Filing a dispute marks the
room DISPUTED but leaves its step alone: the workflow engine gates on step,
so a disputed room can still be released or refunded once the parties agree.
Only administrators move a dispute through UNDER_REVIEW to RESOLVED.
"""

import logging
import time
from datetime import datetime, timezone

from protocol import MIN_DISPUTE_EXPLANATION, TERMINAL_STEPS, DisputeStatus, RoomStatus
from server.errors import ActionResult, EngineError, NotFound, Forbidden, InvalidPhase, ValidationError
from server.notifications import ShortIdDirectory, DisputeFiled, DisputeUnderReview, DisputeResolved, deliver

logger = logging.getLogger(__name__)

REASON_PREVIEW = 200


def serialize_dispute(dispute: dict) -> dict:
    out = dict(dispute)
    out["status"] = dispute["status"].value
    return out


class DisputeDesk:
    def __init__(self, store, locks, sink, directory=None, clock=time.time):
        self.store = store
        self.locks = locks
        self.sink = sink
        self.directory = directory or ShortIdDirectory()
        self.clock = clock

    def file_dispute(self, room_id: str, reporter_id: str, explanation: str,
                     proof_url: str | None = None) -> ActionResult:
        try:
            with self.locks.hold(room_id):
                dispute = self._file(room_id, reporter_id, explanation, proof_url)
        except EngineError as e:
            return ActionResult.failure(e)
        return ActionResult.success(dispute=serialize_dispute(dispute))

    def _file(self, room_id, reporter_id, explanation, proof_url) -> dict:
        room = self.store.get_room(room_id)
        if room is None:
            raise NotFound(f"Room {room_id} not found")
        if room["step"] in TERMINAL_STEPS:
            raise InvalidPhase(f"Room is already {room['step'].value.lower()}, nothing left to dispute")
        if self.store.get_participant(room_id, reporter_id) is None:
            raise Forbidden("Only room participants can file a dispute")
        explanation = (explanation or "").strip()
        if len(explanation) < MIN_DISPUTE_EXPLANATION:
            raise ValidationError(
                f"Please provide a detailed explanation (at least {MIN_DISPUTE_EXPLANATION} characters)")
        active = [d for d in self.store.list_disputes(room_id=room_id)
                  if d["status"] != DisputeStatus.RESOLVED]
        if active:
            raise InvalidPhase("There is already an active dispute for this room")

        dispute = self.store.create_dispute(room_id, reporter_id, explanation, proof_url or None)
        self.store.update_room(room_id, status=RoomStatus.DISPUTED)
        logger.info("room %s: dispute %s filed by %s", room_id, dispute["id"], reporter_id)

        reason = explanation[:REASON_PREVIEW] + ("..." if len(explanation) > REASON_PREVIEW else "")
        deliver(self.sink, room_id, DisputeFiled(
            dispute_id=dispute["id"],
            reporter_name=self.directory.display_name(reporter_id),
            reason=reason,
        ))
        return dispute

    def get(self, dispute_id: str) -> dict | None:
        return self.store.get_dispute(dispute_id)

    def update_status(self, dispute_id: str, status, admin_notes: str | None = None) -> ActionResult:
        try:
            dispute = self.store.get_dispute(dispute_id)
            if dispute is None:
                raise NotFound(f"Dispute {dispute_id} not found")
            try:
                status = DisputeStatus(status.value if isinstance(status, DisputeStatus) else str(status).upper())
            except ValueError:
                raise ValidationError(f"Invalid dispute status {status!r}")
            with self.locks.hold(dispute["room_id"]):
                fields = {"status": status}
                if admin_notes:
                    fields["admin_notes"] = admin_notes
                self.store.update_dispute(dispute_id, **fields)
        except EngineError as e:
            return ActionResult.failure(e)

        logger.info("dispute %s: %s -> %s", dispute_id, dispute["status"].value, status.value)
        if status == DisputeStatus.UNDER_REVIEW:
            deliver(self.sink, dispute["room_id"], DisputeUnderReview(dispute_id=dispute_id))
        elif status == DisputeStatus.RESOLVED:
            resolution = f"Resolution: {admin_notes}" if admin_notes else "The dispute has been resolved."
            deliver(self.sink, dispute["room_id"], DisputeResolved(dispute_id=dispute_id, resolution=resolution))
        return ActionResult.success(dispute=serialize_dispute(self.store.get_dispute(dispute_id)))

    def add_admin_notes(self, dispute_id: str, notes: str) -> ActionResult:
        """Append a timestamped line to the dispute's admin notes."""
        dispute = self.store.get_dispute(dispute_id)
        if dispute is None:
            return ActionResult.failure(NotFound(f"Dispute {dispute_id} not found"))
        notes = (notes or "").strip()
        if not notes:
            return ActionResult.failure(ValidationError("Notes cannot be empty"))
        stamp = datetime.fromtimestamp(self.clock(), tz=timezone.utc).isoformat()
        entry = f"[{stamp}] {notes}"
        existing = dispute["admin_notes"]
        combined = f"{existing}\n\n{entry}" if existing else entry
        with self.locks.hold(dispute["room_id"]):
            self.store.update_dispute(dispute_id, admin_notes=combined)
        return ActionResult.success(dispute=serialize_dispute(self.store.get_dispute(dispute_id)))

    def list_for_room(self, room_id: str) -> list[dict]:
        return [serialize_dispute(d) for d in self.store.list_disputes(room_id=room_id)]

    def list_by_status(self, status=None, limit: int = 50) -> list[dict]:
        return [serialize_dispute(d) for d in self.store.list_disputes(status=status, limit=limit)]

    def list_by_reporter(self, reporter_id: str, limit: int = 50) -> list[dict]:
        return [serialize_dispute(d) for d in self.store.list_disputes(reporter_id=reporter_id, limit=limit)]

    def stats(self) -> dict:
        disputes = self.store.list_disputes(limit=1000)
        counts = {s: 0 for s in DisputeStatus}
        for d in disputes:
            counts[d["status"]] += 1
        return {
            "total": len(disputes),
            "pending": counts[DisputeStatus.PENDING],
            "under_review": counts[DisputeStatus.UNDER_REVIEW],
            "resolved": counts[DisputeStatus.RESOLVED],
        }
