# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Per-room write serialization.

One lock per room id, created on first use. Everything that changes a room
(user actions, deposit recording, expiry, disputes) runs inside hold(), so
read-validate-write sequences for one room never interleave.
"""

import threading
from contextlib import contextmanager


class RoomLocks:
    def __init__(self):
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, room_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(room_id)
            if lock is None:
                lock = self._locks[room_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, room_id: str):
        lock = self.get(room_id)
        with lock:
            yield

    def __len__(self):
        with self._guard:
            return len(self._locks)
