# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Inactivity timeouts for rooms that never got funded.

Two windows, measured from last_activity_at: a pre-funding window covering
the negotiation steps and a funding window covering AWAITING_DEPOSIT. Funded
rooms never expire; once money is in escrow only release, refund or a
dispute can close the room.

The sweeps are not self-scheduling. Callers (the scheduler endpoints or the
launcher's background thread) decide how often they run.
"""

import logging
import math
import time
from dataclasses import dataclass, field

from protocol import (
    PRE_FUNDING_TIMEOUT, FUNDING_TIMEOUT, WARNING_THRESHOLD,
    PRE_FUNDING_STEPS, FUNDING_STEPS, RoomStep, RoomStatus,
)
from server.notifications import RoomExpired, DepositExpired, TimeoutWarning, deliver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimeoutConfig:
    pre_funding: int = PRE_FUNDING_TIMEOUT
    funding: int = FUNDING_TIMEOUT
    warning_threshold: int = WARNING_THRESHOLD

    def window_for(self, step: RoomStep) -> int | None:
        """Timeout in seconds for a step, or None if the step never expires."""
        if step in PRE_FUNDING_STEPS:
            return self.pre_funding
        if step in FUNDING_STEPS:
            return self.funding
        return None

    def to_dict(self) -> dict:
        return {
            "pre_funding_timeout_seconds": self.pre_funding,
            "funding_timeout_seconds": self.funding,
            "warning_threshold_seconds": self.warning_threshold,
            "pre_funding_steps": [s.value for s in PRE_FUNDING_STEPS],
            "funding_steps": [s.value for s in FUNDING_STEPS],
        }


def seconds_remaining(room: dict, now: float, config: TimeoutConfig) -> float | None:
    """Seconds left before an open room expires. None if it cannot expire."""
    if room["status"] != RoomStatus.OPEN:
        return None
    window = config.window_for(room["step"])
    if window is None:
        return None
    return room["last_activity_at"] + window - now


@dataclass
class SweepReport:
    checked: int = 0
    expired: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"checked": self.checked, "expired": self.expired, "errors": list(self.errors)}


@dataclass
class WarningReport:
    sent: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"sent": self.sent, "errors": list(self.errors)}


class TimeoutSweeper:
    def __init__(self, store, locks, sink, config: TimeoutConfig | None = None, clock=time.time):
        self.store = store
        self.locks = locks
        self.sink = sink
        self.config = config or TimeoutConfig()
        self.clock = clock

    def time_remaining(self, room: dict, now: float | None = None) -> float | None:
        now = self.clock() if now is None else now
        return seconds_remaining(room, now, self.config)

    def _open_rooms(self) -> list[dict]:
        return self.store.list_rooms(status=RoomStatus.OPEN)

    def sweep(self, now: float | None = None) -> SweepReport:
        """Expire every open, unfunded room whose window has elapsed."""
        now = self.clock() if now is None else now
        report = SweepReport()
        for room in self._open_rooms():
            if self.config.window_for(room["step"]) is None:
                continue
            report.checked += 1
            try:
                if self._expire_if_due(room["id"], now):
                    report.expired += 1
            except Exception as e:
                logger.exception("room %s: expiry failed", room["id"])
                report.errors.append(f"Room {room['id']}: {e}")
        if report.expired:
            logger.info("timeout sweep: %d/%d rooms expired", report.expired, report.checked)
        return report

    def _expire_if_due(self, room_id: str, now: float) -> bool:
        with self.locks.hold(room_id):
            # Re-read under the lock: a user action may have just refreshed activity
            room = self.store.get_room(room_id)
            if room is None:
                return False
            remaining = seconds_remaining(room, now, self.config)
            if remaining is None or remaining >= 0:
                return False
            step = room["step"]
            if not self.store.advance_step(room_id, step, RoomStep.EXPIRED, status=RoomStatus.EXPIRED):
                logger.warning("room %s: step moved during expiry, skipping", room_id)
                return False
        logger.info("room %s: expired in %s", room_id, step.value)
        notice = DepositExpired() if step in FUNDING_STEPS else RoomExpired()
        deliver(self.sink, room_id, notice)
        return True

    def _expiring(self, within: float, now: float) -> list[tuple[dict, float]]:
        out = []
        for room in self._open_rooms():
            remaining = seconds_remaining(room, now, self.config)
            if remaining is not None and 0 < remaining < within:
                out.append((room, remaining))
        out.sort(key=lambda pair: pair[1])
        return out

    def expiring_soon(self, within: float | None = None, now: float | None = None) -> list[dict]:
        """Open rooms with 0 < remaining < within seconds, soonest first."""
        now = self.clock() if now is None else now
        within = self.config.warning_threshold if within is None else within
        return [
            {
                "room_id": room["id"],
                "room_code": room["room_code"],
                "step": room["step"].value,
                "seconds_remaining": int(remaining),
            }
            for room, remaining in self._expiring(within, now)
        ]

    def send_warnings(self, now: float | None = None) -> WarningReport:
        """Post a timeout warning into every room inside the warning threshold."""
        now = self.clock() if now is None else now
        report = WarningReport()
        for room, remaining in self._expiring(self.config.warning_threshold, now):
            try:
                minutes = math.ceil(remaining / 60) or 1
                self.sink.emit(room["id"], TimeoutWarning(minutes_remaining=minutes))
                report.sent += 1
            except Exception as e:
                logger.exception("room %s: timeout warning failed", room["id"])
                report.errors.append(f"Room {room['id']}: {e}")
        return report
