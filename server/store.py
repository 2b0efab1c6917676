# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Room storage for the escrow platform.

SQLite-backed CRUD for rooms, participants, disputes, settlement records and
bot messages. Step changes go through advance_step, a compare-and-swap on the
current step that also enforces STEP_TRANSITIONS.
"""

import sqlite3
import json
import threading
import time
import uuid
from enum import Enum

from protocol import (
    RoomStep, RoomStatus, Role, FeePayer, DisputeStatus, TransactionStatus,
    STEP_TRANSITIONS, format_token_amount,
)


# Column -> decoder for values read back from SQLite
_ROOM_DECODERS = {
    "amount": lambda v: int(v) if v is not None else None,
    "fee_payer": lambda v: FeePayer(v) if v else None,
    "step": RoomStep,
    "status": RoomStatus,
}

# Fields update_room may touch. step is only written by advance_step.
_ROOM_MUTABLE = {
    "name", "amount", "fee_payer", "escrow_address", "deposit_tx_ref",
    "release_tx_ref", "status", "last_activity_at",
}

_PARTICIPANT_FLAGS = (
    "role_confirmed", "amount_confirmed", "fee_confirmed",
    "release_confirmed", "cancel_confirmed",
)
_PARTICIPANT_MUTABLE = {"role", "payout_address", *_PARTICIPANT_FLAGS}

_DISPUTE_MUTABLE = {"status", "admin_notes"}


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _encode(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return str(value)
    return value


class RoomStore:
    """SQLite-backed room storage with step transition enforcement."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        # Enable WAL mode for safe concurrent reads during writes
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS rooms (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                room_code TEXT NOT NULL UNIQUE,
                chain_id INTEGER NOT NULL,
                token_address TEXT NOT NULL,
                amount TEXT,
                fee_payer TEXT,
                escrow_address TEXT,
                deposit_tx_ref TEXT,
                release_tx_ref TEXT,
                step TEXT NOT NULL DEFAULT 'WAITING_FOR_PEER',
                status TEXT NOT NULL DEFAULT 'OPEN',
                creator_id TEXT NOT NULL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                last_activity_at REAL NOT NULL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_rooms_status ON rooms(status)")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS participants (
                id TEXT PRIMARY KEY,
                room_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                role TEXT,
                role_confirmed INTEGER NOT NULL DEFAULT 0,
                amount_confirmed INTEGER NOT NULL DEFAULT 0,
                fee_confirmed INTEGER NOT NULL DEFAULT 0,
                release_confirmed INTEGER NOT NULL DEFAULT 0,
                cancel_confirmed INTEGER NOT NULL DEFAULT 0,
                payout_address TEXT,
                created_at REAL NOT NULL,
                UNIQUE (room_id, user_id)
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_participants_room ON participants(room_id)")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS disputes (
                id TEXT PRIMARY KEY,
                room_id TEXT NOT NULL,
                reporter_id TEXT NOT NULL,
                explanation TEXT NOT NULL,
                proof_url TEXT,
                status TEXT NOT NULL DEFAULT 'PENDING',
                admin_notes TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                id TEXT PRIMARY KEY,
                room_id TEXT NOT NULL UNIQUE,
                chain_id INTEGER NOT NULL,
                sender_id TEXT NOT NULL,
                receiver_id TEXT NOT NULL,
                amount TEXT NOT NULL,
                fee TEXT NOT NULL,
                fee_payer TEXT NOT NULL,
                deposit_tx_ref TEXT NOT NULL,
                release_tx_ref TEXT NOT NULL,
                status TEXT NOT NULL,
                completed_at REAL NOT NULL
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                room_id TEXT NOT NULL,
                sender TEXT NOT NULL,
                text TEXT NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at REAL NOT NULL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room_id)")
        self.db.commit()

    # --- Rooms ---

    def create_room(self, name: str, chain_id: int, token_address: str,
                    creator_id: str, room_code: str, now: float | None = None) -> dict:
        """Store a new room together with its creator as first participant."""
        room_id = _new_id("room")
        now = now if now is not None else time.time()
        with self._lock:
            self.db.execute(
                "INSERT INTO rooms (id, name, room_code, chain_id, token_address, creator_id, "
                "created_at, updated_at, last_activity_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (room_id, name, room_code.upper(), chain_id, token_address, creator_id, now, now, now),
            )
            self.db.execute(
                "INSERT INTO participants (id, room_id, user_id, created_at) VALUES (?, ?, ?, ?)",
                (_new_id("part"), room_id, creator_id, now),
            )
            self.db.commit()
        return self.get_room(room_id)

    def get_room(self, room_id: str) -> dict | None:
        with self._lock:
            row = self.db.execute("SELECT * FROM rooms WHERE id = ?", (room_id,)).fetchone()
        if not row:
            return None
        return self._room_to_dict(row)

    def get_room_by_code(self, code: str) -> dict | None:
        """Codes are stored upper-case, so lookups are case-insensitive."""
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM rooms WHERE room_code = ?", ((code or "").strip().upper(),),
            ).fetchone()
        if not row:
            return None
        return self._room_to_dict(row)

    def code_exists(self, code: str) -> bool:
        with self._lock:
            row = self.db.execute("SELECT 1 FROM rooms WHERE room_code = ?", (code.upper(),)).fetchone()
        return row is not None

    def list_rooms(self, status: RoomStatus | str | None = None, limit: int = 1000) -> list[dict]:
        with self._lock:
            if status is None:
                rows = self.db.execute(
                    "SELECT * FROM rooms ORDER BY created_at DESC LIMIT ?", (limit,),
                ).fetchall()
            else:
                rows = self.db.execute(
                    "SELECT * FROM rooms WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                    (_encode(RoomStatus(_encode(status))), limit),
                ).fetchall()
        return [self._room_to_dict(r) for r in rows]

    def list_rooms_for_user(self, user_id: str, limit: int = 50) -> list[dict]:
        with self._lock:
            rows = self.db.execute(
                "SELECT r.* FROM rooms r JOIN participants p ON p.room_id = r.id "
                "WHERE p.user_id = ? ORDER BY r.created_at DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [self._room_to_dict(r) for r in rows]

    def update_room(self, room_id: str, **fields) -> bool:
        """Field-level room update. Use advance_step to change the step."""
        unknown = set(fields) - _ROOM_MUTABLE
        if unknown:
            raise ValueError(f"Cannot update room fields: {sorted(unknown)}")
        if not fields:
            return False
        now = time.time()
        cols = ", ".join(f"{k} = ?" for k in fields)
        params = [_encode(v) for v in fields.values()] + [now, room_id]
        with self._lock:
            cursor = self.db.execute(f"UPDATE rooms SET {cols}, updated_at = ? WHERE id = ?", params)
            self.db.commit()
        return cursor.rowcount > 0

    def advance_step(self, room_id: str, expected: RoomStep, new: RoomStep, **fields) -> bool:
        """Move a room from `expected` to `new`, writing `fields` in the same UPDATE.

        Returns False if the room is no longer at `expected` (someone else won).
        Raises ValueError for a transition STEP_TRANSITIONS does not allow.
        """
        expected, new = RoomStep(expected), RoomStep(new)
        if new not in STEP_TRANSITIONS[expected]:
            raise ValueError(f"Invalid step transition: {expected.value} -> {new.value}")
        unknown = set(fields) - _ROOM_MUTABLE
        if unknown:
            raise ValueError(f"Cannot update room fields: {sorted(unknown)}")

        extra_where = ""
        # Deposit refs are written once; never overwrite an existing one
        if "deposit_tx_ref" in fields:
            extra_where = " AND deposit_tx_ref IS NULL"

        now = time.time()
        sets = ["step = ?", "updated_at = ?"] + [f"{k} = ?" for k in fields]
        params = [new.value, now] + [_encode(v) for v in fields.values()]
        with self._lock:
            cursor = self.db.execute(
                f"UPDATE rooms SET {', '.join(sets)} WHERE id = ? AND step = ?{extra_where}",
                params + [room_id, expected.value],
            )
            self.db.commit()
        return cursor.rowcount > 0

    def touch(self, room_id: str, ts: float | None = None) -> bool:
        """Refresh last_activity_at (timeout accounting)."""
        ts = ts if ts is not None else time.time()
        with self._lock:
            cursor = self.db.execute(
                "UPDATE rooms SET last_activity_at = ? WHERE id = ?", (ts, room_id),
            )
            self.db.commit()
        return cursor.rowcount > 0

    def _room_to_dict(self, row) -> dict:
        data = dict(row)
        for key, decode in _ROOM_DECODERS.items():
            data[key] = decode(data[key])
        return data

    # --- Participants ---

    def add_participant(self, room_id: str, user_id: str) -> dict:
        part_id = _new_id("part")
        with self._lock:
            self.db.execute(
                "INSERT INTO participants (id, room_id, user_id, created_at) VALUES (?, ?, ?, ?)",
                (part_id, room_id, user_id, time.time()),
            )
            self.db.commit()
        return self.get_participant(room_id, user_id)

    def get_participants(self, room_id: str) -> list[dict]:
        """Participants in join order."""
        with self._lock:
            rows = self.db.execute(
                "SELECT * FROM participants WHERE room_id = ? ORDER BY created_at, rowid",
                (room_id,),
            ).fetchall()
        return [self._participant_to_dict(r) for r in rows]

    def get_participant(self, room_id: str, user_id: str) -> dict | None:
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM participants WHERE room_id = ? AND user_id = ?",
                (room_id, user_id),
            ).fetchone()
        if not row:
            return None
        return self._participant_to_dict(row)

    def update_participant(self, participant_id: str, **fields) -> bool:
        unknown = set(fields) - _PARTICIPANT_MUTABLE
        if unknown:
            raise ValueError(f"Cannot update participant fields: {sorted(unknown)}")
        if not fields:
            return False
        cols = ", ".join(f"{k} = ?" for k in fields)
        params = [_encode(v) for v in fields.values()] + [participant_id]
        with self._lock:
            cursor = self.db.execute(f"UPDATE participants SET {cols} WHERE id = ?", params)
            self.db.commit()
        return cursor.rowcount > 0

    def update_participants(self, room_id: str, **fields) -> int:
        """Apply the same field update to every participant in a room."""
        unknown = set(fields) - _PARTICIPANT_MUTABLE
        if unknown:
            raise ValueError(f"Cannot update participant fields: {sorted(unknown)}")
        if not fields:
            return 0
        cols = ", ".join(f"{k} = ?" for k in fields)
        params = [_encode(v) for v in fields.values()] + [room_id]
        with self._lock:
            cursor = self.db.execute(f"UPDATE participants SET {cols} WHERE room_id = ?", params)
            self.db.commit()
        return cursor.rowcount

    def _participant_to_dict(self, row) -> dict:
        data = dict(row)
        data["role"] = Role(data["role"]) if data["role"] else None
        for flag in _PARTICIPANT_FLAGS:
            data[flag] = bool(data[flag])
        return data

    # --- Disputes ---

    def create_dispute(self, room_id: str, reporter_id: str, explanation: str,
                       proof_url: str | None = None) -> dict:
        dispute_id = _new_id("disp")
        now = time.time()
        with self._lock:
            self.db.execute(
                "INSERT INTO disputes (id, room_id, reporter_id, explanation, proof_url, status, "
                "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (dispute_id, room_id, reporter_id, explanation, proof_url,
                 DisputeStatus.PENDING.value, now, now),
            )
            self.db.commit()
        return self.get_dispute(dispute_id)

    def get_dispute(self, dispute_id: str) -> dict | None:
        with self._lock:
            row = self.db.execute("SELECT * FROM disputes WHERE id = ?", (dispute_id,)).fetchone()
        if not row:
            return None
        return self._dispute_to_dict(row)

    def list_disputes(self, room_id: str | None = None, status: DisputeStatus | None = None,
                      reporter_id: str | None = None, limit: int = 50) -> list[dict]:
        clauses, params = [], []
        if room_id is not None:
            clauses.append("room_id = ?")
            params.append(room_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(DisputeStatus(_encode(status)).value)
        if reporter_id is not None:
            clauses.append("reporter_id = ?")
            params.append(reporter_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self.db.execute(
                f"SELECT * FROM disputes {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
                params + [limit],
            ).fetchall()
        return [self._dispute_to_dict(r) for r in rows]

    def update_dispute(self, dispute_id: str, **fields) -> bool:
        unknown = set(fields) - _DISPUTE_MUTABLE
        if unknown:
            raise ValueError(f"Cannot update dispute fields: {sorted(unknown)}")
        if not fields:
            return False
        cols = ", ".join(f"{k} = ?" for k in fields)
        params = [_encode(v) for v in fields.values()] + [time.time(), dispute_id]
        with self._lock:
            cursor = self.db.execute(f"UPDATE disputes SET {cols}, updated_at = ? WHERE id = ?", params)
            self.db.commit()
        return cursor.rowcount > 0

    def _dispute_to_dict(self, row) -> dict:
        data = dict(row)
        data["status"] = DisputeStatus(data["status"])
        return data

    # --- Settlement records ---

    def record_transaction(self, room: dict, sender_id: str, receiver_id: str,
                           fee: int, release_tx_ref: str,
                           status: TransactionStatus) -> dict:
        """Write the immutable settlement snapshot for a room. Written once per room."""
        if room.get("amount") is None or room.get("fee_payer") is None:
            raise ValueError("Room amount and fee payer are required")
        with self._lock:
            self.db.execute(
                "INSERT OR IGNORE INTO transactions (id, room_id, chain_id, sender_id, receiver_id, "
                "amount, fee, fee_payer, deposit_tx_ref, release_tx_ref, status, completed_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (_new_id("tx"), room["id"], room["chain_id"], sender_id, receiver_id,
                 str(room["amount"]), str(fee), _encode(room["fee_payer"]),
                 room.get("deposit_tx_ref") or "", release_tx_ref,
                 TransactionStatus(status).value, time.time()),
            )
            self.db.commit()
        return self.get_transaction_for_room(room["id"])

    def get_transaction(self, tx_id: str) -> dict | None:
        with self._lock:
            row = self.db.execute("SELECT * FROM transactions WHERE id = ?", (tx_id,)).fetchone()
        return self._transaction_to_dict(row) if row else None

    def get_transaction_for_room(self, room_id: str) -> dict | None:
        with self._lock:
            row = self.db.execute("SELECT * FROM transactions WHERE room_id = ?", (room_id,)).fetchone()
        return self._transaction_to_dict(row) if row else None

    def _transaction_filters(self, chain_id=None, status=None, user_id=None):
        clauses, params = [], []
        if chain_id is not None:
            clauses.append("chain_id = ?")
            params.append(chain_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(TransactionStatus(_encode(status)).value)
        if user_id is not None:
            clauses.append("(sender_id = ? OR receiver_id = ?)")
            params.extend([user_id, user_id])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def list_transactions(self, chain_id: int | None = None, status=None, user_id: str | None = None,
                          limit: int = 20, offset: int = 0) -> list[dict]:
        where, params = self._transaction_filters(chain_id, status, user_id)
        with self._lock:
            rows = self.db.execute(
                f"SELECT * FROM transactions {where} ORDER BY completed_at DESC, rowid DESC LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
        return [self._transaction_to_dict(r) for r in rows]

    def count_transactions(self, chain_id: int | None = None, status=None, user_id: str | None = None) -> int:
        where, params = self._transaction_filters(chain_id, status, user_id)
        with self._lock:
            row = self.db.execute(f"SELECT COUNT(*) AS n FROM transactions {where}", params).fetchone()
        return row["n"]

    def transaction_stats(self) -> dict:
        with self._lock:
            rows = self.db.execute("SELECT amount, status FROM transactions").fetchall()
        # amounts are TEXT so sums stay exact past 2**63
        volume = sum(int(r["amount"]) for r in rows)
        return {
            "total_transactions": len(rows),
            "completed_count": sum(1 for r in rows if r["status"] == TransactionStatus.COMPLETED.value),
            "refunded_count": sum(1 for r in rows if r["status"] == TransactionStatus.REFUNDED.value),
            "total_volume": str(volume),
            "total_volume_formatted": format_token_amount(volume),
        }

    def _transaction_to_dict(self, row) -> dict:
        data = dict(row)
        data["amount"] = int(data["amount"])
        data["fee"] = int(data["fee"])
        data["fee_payer"] = FeePayer(data["fee_payer"])
        data["status"] = TransactionStatus(data["status"])
        return data

    # --- Bot messages ---

    def append_message(self, room_id: str, text: str, metadata: dict, sender: str = "bot") -> int:
        with self._lock:
            cursor = self.db.execute(
                "INSERT INTO messages (room_id, sender, text, metadata, created_at) VALUES (?, ?, ?, ?, ?)",
                (room_id, sender, text, json.dumps(metadata), time.time()),
            )
            self.db.commit()
        return cursor.lastrowid

    def list_messages(self, room_id: str, after_id: int = 0, limit: int = 100) -> list[dict]:
        with self._lock:
            rows = self.db.execute(
                "SELECT * FROM messages WHERE room_id = ? AND id > ? ORDER BY id LIMIT ?",
                (room_id, after_id, limit),
            ).fetchall()
        out = []
        for r in rows:
            data = dict(r)
            data["metadata"] = json.loads(data["metadata"])
            out.append(data)
        return out

    def close(self):
        self.db.close()
