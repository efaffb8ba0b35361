"""Persistent key-value store backing the cl-hive-ballot ledger."""

from __future__ import annotations

import contextlib
import json
import os
import sqlite3
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Union


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


@dataclass(frozen=True)
class AdminKey:
    FAMILY = "Admin"

    def encode(self) -> str:
        return _canonical([self.FAMILY])


@dataclass(frozen=True)
class ProposalCountKey:
    FAMILY = "ProposalCount"

    def encode(self) -> str:
        return _canonical([self.FAMILY])


@dataclass(frozen=True)
class ProposalKey:
    proposal_id: int

    FAMILY = "Proposal"

    def encode(self) -> str:
        return _canonical([self.FAMILY, int(self.proposal_id)])


@dataclass(frozen=True)
class HasVotedKey:
    proposal_id: int
    voter: str

    FAMILY = "HasVoted"

    def encode(self) -> str:
        return _canonical([self.FAMILY, int(self.proposal_id), str(self.voter)])


LedgerKey = Union[AdminKey, ProposalCountKey, ProposalKey, HasVotedKey]

KEY_FAMILIES = (
    AdminKey.FAMILY,
    ProposalCountKey.FAMILY,
    ProposalKey.FAMILY,
    HasVotedKey.FAMILY,
)


class Invocation:
    """Handle for one atomic invocation; ``discard()`` forces a rollback on exit."""

    def __init__(self) -> None:
        self.discarded = False

    def discard(self) -> None:
        self.discarded = True


class LedgerStore:
    """SQLite persistence for ledger entries keyed by structured ledger keys.

    Writes are only visible once the surrounding ``invocation()`` commits.
    Each entry carries a ``live_until`` lifetime hint that ``extend_ttl``
    moves forward; entries are never evicted by the store itself.
    """

    def __init__(self, db_path: str, logger: Optional[Callable[[str, str], None]] = None):
        self.db_path = os.path.expanduser(db_path)
        self._logger = logger
        self._local = threading.local()

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
            conn = sqlite3.connect(
                self.db_path,
                isolation_level=None,
                timeout=30.0,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            self._local.conn = conn
        return conn

    def initialize(self) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ledger_entries (
                entry_key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL,
                live_until INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_ledger_entries_live_until
            ON ledger_entries(live_until)
            """
        )
        conn.execute("PRAGMA optimize;")

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    @contextlib.contextmanager
    def invocation(self) -> Iterator[Invocation]:
        """Run the body as one all-or-nothing unit of ledger writes.

        The transaction commits when the body finishes without raising and
        without calling ``discard()``; otherwise every write is rolled back.
        """
        if getattr(self._local, "active", False):
            raise RuntimeError("ledger invocations cannot be nested")

        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        self._local.active = True
        handle = Invocation()
        try:
            yield handle
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            self._log("ballot: invocation aborted by exception, writes rolled back", "warn")
            raise
        else:
            if handle.discarded:
                conn.execute("ROLLBACK")
                self._log("ballot: invocation discarded, writes rolled back", "debug")
            else:
                conn.execute("COMMIT")
        finally:
            self._local.active = False

    def has(self, key: LedgerKey) -> bool:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT 1 FROM ledger_entries WHERE entry_key = ?",
            (key.encode(),),
        ).fetchone()
        return row is not None

    def get(self, key: LedgerKey, default: Any = None) -> Any:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT value_json FROM ledger_entries WHERE entry_key = ?",
            (key.encode(),),
        ).fetchone()
        if row is None:
            return default
        return json.loads(row["value_json"])

    def set(self, key: LedgerKey, value: Any, now_ts: int) -> None:
        # A fresh entry starts with no remaining lifetime; callers extend it.
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO ledger_entries (entry_key, value_json, live_until, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(entry_key) DO UPDATE SET
                value_json = excluded.value_json,
                updated_at = excluded.updated_at
            """,
            (key.encode(), _canonical(value), now_ts, now_ts),
        )

    def extend_ttl(self, key: LedgerKey, threshold: int, extend_to: int, now_ts: int) -> bool:
        """Push ``live_until`` to ``now_ts + extend_to`` when less than
        ``threshold`` seconds remain. Returns True if the hint moved."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT live_until FROM ledger_entries WHERE entry_key = ?",
            (key.encode(),),
        ).fetchone()
        if row is None:
            return False
        remaining = int(row["live_until"]) - now_ts
        if remaining >= threshold:
            return False
        conn.execute(
            "UPDATE ledger_entries SET live_until = ? WHERE entry_key = ?",
            (now_ts + extend_to, key.encode()),
        )
        return True

    def live_until(self, key: LedgerKey) -> Optional[int]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT live_until FROM ledger_entries WHERE entry_key = ?",
            (key.encode(),),
        ).fetchone()
        return int(row["live_until"]) if row else None

    def count_family(self, family: str) -> int:
        if family not in KEY_FAMILIES:
            raise ValueError(f"unknown key family: {family}")
        conn = self._get_connection()
        # Encoded keys are JSON arrays whose first element is the family tag.
        prefix = _canonical([family])[:-1]
        row = conn.execute(
            """
            SELECT COUNT(*) AS cnt FROM ledger_entries
            WHERE entry_key = ? OR substr(entry_key, 1, ?) = ?
            """,
            (prefix + "]", len(prefix) + 1, prefix + ","),
        ).fetchone()
        return int(row["cnt"] or 0)

    def entries_expiring_before(self, before_ts: int, limit: int = 100) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT entry_key, live_until, updated_at FROM ledger_entries
            WHERE live_until < ?
            ORDER BY live_until ASC
            LIMIT ?
            """,
            (before_ts, limit),
        ).fetchall()
        return [dict(row) for row in rows]

    def snapshot(self) -> Dict[str, str]:
        """Raw encoded-key to JSON-value mapping of every stored entry."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT entry_key, value_json FROM ledger_entries ORDER BY entry_key"
        ).fetchall()
        return {row["entry_key"]: row["value_json"] for row in rows}
