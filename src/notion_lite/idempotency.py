"""Persistent idempotency records for mutating commands.

Records live in a local SQLite database keyed by (idempotency_key,
command_name). A record is either pending (a reservation held by a running
invocation) or completed (the stored response to replay). SQLite's
INSERT OR IGNORE and conditional UPDATE give the insert-if-absent and
compare-and-update semantics needed across separate CLI processes.
"""

import hashlib
import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

from .errors import CliError, ErrorCode

logger = logging.getLogger("notion-lite")

PENDING_RESPONSE_JSON = json.dumps({"__notion_lite_pending": True})

# Identical requests are deduplicated within the same 2-minute bucket
KEY_BUCKET_SECONDS = 120

# Seconds SQLite waits on a lock held by another process
BUSY_TIMEOUT = 5.0


# =============================================================================
# Canonical hashing
# =============================================================================

def stable_stringify(value: Any) -> str:
    """Serialize to JSON with object keys sorted at every depth."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def hash_object(value: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of value."""
    return hashlib.sha256(stable_stringify(value).encode("utf-8")).hexdigest()


def build_idempotency_key(
    command_name: str,
    request_shape: Any,
    now: Optional[float] = None,
) -> str:
    """Derive the internal idempotency key for one invocation.

    Requests that differ only in object key order map to the same key; the
    time bucket bounds how long an identical request is deduplicated.
    """
    if now is None:
        now = time.time()
    bucket = int(now // KEY_BUCKET_SECONDS)
    digest = hash_object({"commandName": command_name, "requestShape": request_shape})
    return f"{command_name}:{bucket}:{digest}"


# =============================================================================
# Store
# =============================================================================

class ReservationKind(str, Enum):
    EXECUTE = "execute"
    PENDING = "pending"
    REPLAY = "replay"
    CONFLICT = "conflict"
    MISS = "miss"  # lookup only


@dataclass(frozen=True)
class Reservation:
    kind: ReservationKind
    response: Any = None
    stored_hash: Optional[str] = None


EXECUTE = Reservation(ReservationKind.EXECUTE)
PENDING = Reservation(ReservationKind.PENDING)
MISS = Reservation(ReservationKind.MISS)


_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS idempotency_records (
    idempotency_key TEXT NOT NULL,
    command_name TEXT NOT NULL,
    input_hash TEXT NOT NULL,
    response_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (idempotency_key, command_name)
)
"""

_INSERT_PENDING = """
INSERT OR IGNORE INTO idempotency_records
    (idempotency_key, command_name, input_hash, response_json, created_at)
VALUES (?, ?, ?, ?, ?)
"""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class IdempotencyStore:
    """SQLite-backed idempotency record set."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit: every statement is its own atomic transaction.
        # Calls arrive from worker threads via asyncio.to_thread.
        self._conn = sqlite3.connect(
            str(self.db_path),
            timeout=BUSY_TIMEOUT,
            isolation_level=None,
            check_same_thread=False,
        )
        self._lock = threading.RLock()
        self._execute("PRAGMA journal_mode = WAL")
        self._execute(_CREATE_TABLE)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, params)

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[tuple]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def __enter__(self) -> "IdempotencyStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def lookup(self, idempotency_key: str, command_name: str, input_hash: str) -> Reservation:
        """Read the record state without mutating it."""
        row = self._fetchone(
            "SELECT input_hash, response_json FROM idempotency_records "
            "WHERE idempotency_key = ? AND command_name = ?",
            (idempotency_key, command_name),
        )

        if row is None:
            return MISS

        stored_hash, response_json = row
        if stored_hash != input_hash:
            return Reservation(ReservationKind.CONFLICT, stored_hash=stored_hash)

        if response_json == PENDING_RESPONSE_JSON:
            return PENDING

        try:
            return Reservation(ReservationKind.REPLAY, response=json.loads(response_json))
        except ValueError:
            raise CliError(
                ErrorCode.INTERNAL_ERROR, "Stored idempotency response is corrupt."
            )

    def _try_insert_pending(self, idempotency_key: str, command_name: str, input_hash: str) -> bool:
        cursor = self._execute(
            _INSERT_PENDING,
            (idempotency_key, command_name, input_hash, PENDING_RESPONSE_JSON, _utc_now()),
        )
        return cursor.rowcount == 1

    def reserve(self, idempotency_key: str, command_name: str, input_hash: str) -> Reservation:
        """Claim the record for execution if absent, else report its state."""
        if self._try_insert_pending(idempotency_key, command_name, input_hash):
            return EXECUTE

        existing = self.lookup(idempotency_key, command_name, input_hash)
        if existing.kind is ReservationKind.MISS:
            # The previous owner released between our insert and read.
            # Claim once more; if someone else wins, they own it.
            if self._try_insert_pending(idempotency_key, command_name, input_hash):
                return EXECUTE
            return PENDING

        return existing

    def complete(
        self,
        idempotency_key: str,
        command_name: str,
        input_hash: str,
        response: Any,
    ) -> None:
        """Store the response for a pending reservation this invocation holds."""
        cursor = self._execute(
            "UPDATE idempotency_records SET response_json = ?, created_at = ? "
            "WHERE idempotency_key = ? AND command_name = ? AND input_hash = ? "
            "AND response_json = ?",
            (
                json.dumps(response),
                _utc_now(),
                idempotency_key,
                command_name,
                input_hash,
                PENDING_RESPONSE_JSON,
            ),
        )
        if cursor.rowcount != 1:
            raise CliError(
                ErrorCode.INTERNAL_ERROR,
                "Failed to finalize idempotency record for mutation replay.",
                details={"idempotency_key": idempotency_key, "command": command_name},
            )

    def release(self, idempotency_key: str, command_name: str, input_hash: str) -> None:
        """Drop a pending reservation so a later attempt can execute."""
        self._execute(
            "DELETE FROM idempotency_records "
            "WHERE idempotency_key = ? AND command_name = ? AND input_hash = ? "
            "AND response_json = ?",
            (idempotency_key, command_name, input_hash, PENDING_RESPONSE_JSON),
        )
