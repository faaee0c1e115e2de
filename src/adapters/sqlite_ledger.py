"""SQLite delivery ledger.

Implements the core LedgerPort using a simple SQLite database with versioned
migrations tracked in ``PRAGMA user_version``.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from datetime import datetime
from typing import Optional

from core.errors import LedgerConflictError, LedgerStorageError
from core.models import DeliveryRecord, Outcome

LOGGER = logging.getLogger(__name__)

# Append only. Index N upgrades the schema from version N to N + 1.
MIGRATIONS: tuple[str, ...] = (
    # delivery is the deduplication authority. Fields:
    # - source: normalized subreddit name
    # - item_id: reddit post id, unique within the source
    # - chat_id: destination chat the item was relayed to
    # - title: post title at delivery time, for auditing
    # - delivered_at: ISO timestamp (UTC)
    # - outcome: "delivered" or "skipped" (initial-run seeding)
    """
    CREATE TABLE delivery (
        source        TEXT NOT NULL,
        item_id       TEXT NOT NULL,
        chat_id       INTEGER NOT NULL,
        title         TEXT NOT NULL DEFAULT '',
        delivered_at  TEXT NOT NULL,
        outcome       TEXT NOT NULL,
        PRIMARY KEY (source, item_id, chat_id)
    )
    """,
    """
    CREATE INDEX delivery_by_chat ON delivery (chat_id, source)
    """,
)

SCHEMA_VERSION = len(MIGRATIONS)


class SQLiteLedger:
    """Thin SQLite wrapper that satisfies the LedgerPort contract."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def schema_version(self) -> int:
        with self._lock:
            conn = self._open()
            try:
                return int(conn.execute("PRAGMA user_version").fetchone()[0])
            except sqlite3.Error as exc:
                raise LedgerStorageError(f"cannot read schema version: {exc}") from exc
            finally:
                conn.close()

    def _open(self) -> sqlite3.Connection:
        try:
            return self._connect()
        except sqlite3.Error as exc:
            raise LedgerStorageError(f"cannot open {self._db_path}: {exc}") from exc

    def migrate(self) -> int:
        """Bring the schema to the latest version. Returns the number applied."""

        directory = os.path.dirname(os.path.abspath(self._db_path))
        os.makedirs(directory, exist_ok=True)

        with self._lock:
            conn = self._open()
            try:
                current = int(conn.execute("PRAGMA user_version").fetchone()[0])
                if current > SCHEMA_VERSION:
                    raise LedgerStorageError(
                        f"database schema v{current} is newer than supported v{SCHEMA_VERSION}"
                    )
                # WAL lets readers proceed while a write is committing.
                conn.execute("PRAGMA journal_mode=WAL")
                applied = 0
                for version in range(current, SCHEMA_VERSION):
                    # One transaction per step so a failed upgrade leaves the old version intact.
                    conn.executescript(
                        f"BEGIN;\n{MIGRATIONS[version]};\nPRAGMA user_version = {version + 1};\nCOMMIT;"
                    )
                    applied += 1
                    LOGGER.info("Applied ledger migration v%s", version + 1)
                return applied
            except sqlite3.Error as exc:
                raise LedgerStorageError(f"schema upgrade failed: {exc}") from exc
            finally:
                conn.close()

    def has_delivered(self, source: str, item_id: str, chat_id: int) -> bool:
        """Point lookup on the primary key. Any outcome counts as handled."""

        row = self._fetchone(
            "SELECT 1 FROM delivery WHERE source = ? AND item_id = ? AND chat_id = ?",
            (source, item_id, chat_id),
        )
        return row is not None

    def has_history(self, source: str, chat_id: int) -> bool:
        """Return True if anything was ever recorded for this source and chat."""

        row = self._fetchone(
            "SELECT 1 FROM delivery WHERE chat_id = ? AND source = ? LIMIT 1",
            (chat_id, source),
        )
        return row is not None

    def record_delivered(
        self,
        source: str,
        item_id: str,
        chat_id: int,
        timestamp: datetime,
        title: str = "",
    ) -> None:
        self._insert(source, item_id, chat_id, timestamp, title, Outcome.DELIVERED)

    def record_skipped(
        self,
        source: str,
        item_id: str,
        chat_id: int,
        timestamp: datetime,
        title: str = "",
    ) -> None:
        self._insert(source, item_id, chat_id, timestamp, title, Outcome.SKIPPED)

    def get_record(self, source: str, item_id: str, chat_id: int) -> Optional[DeliveryRecord]:
        row = self._fetchone(
            """
            SELECT source, item_id, chat_id, title, delivered_at, outcome
            FROM delivery
            WHERE source = ? AND item_id = ? AND chat_id = ?
            """,
            (source, item_id, chat_id),
        )
        if row is None:
            return None
        return DeliveryRecord(
            source=row["source"],
            item_id=row["item_id"],
            chat_id=int(row["chat_id"]),
            title=row["title"],
            delivered_at=datetime.fromisoformat(row["delivered_at"]),
            outcome=Outcome(row["outcome"]),
        )

    def count(self, outcome: Optional[Outcome] = None) -> int:
        if outcome is None:
            row = self._fetchone("SELECT COUNT(*) AS n FROM delivery", ())
        else:
            row = self._fetchone("SELECT COUNT(*) AS n FROM delivery WHERE outcome = ?", (outcome.value,))
        return int(row["n"]) if row else 0

    def _fetchone(self, sql: str, params: tuple) -> Optional[sqlite3.Row]:
        with self._lock:
            conn = self._open()
            try:
                return conn.execute(sql, params).fetchone()
            except sqlite3.Error as exc:
                raise LedgerStorageError(f"ledger read failed: {exc}") from exc
            finally:
                conn.close()

    def _insert(
        self,
        source: str,
        item_id: str,
        chat_id: int,
        timestamp: datetime,
        title: str,
        outcome: Outcome,
    ) -> None:
        with self._lock:
            conn = self._open()
            try:
                with conn:
                    conn.execute(
                        """
                        INSERT INTO delivery (source, item_id, chat_id, title, delivered_at, outcome)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (source, item_id, chat_id, title, timestamp.isoformat(), outcome.value),
                    )
            except sqlite3.IntegrityError as exc:
                raise LedgerConflictError(
                    f"{source}/{item_id} already recorded for chat {chat_id}"
                ) from exc
            except sqlite3.Error as exc:
                raise LedgerStorageError(f"ledger write failed: {exc}") from exc
            finally:
                conn.close()
