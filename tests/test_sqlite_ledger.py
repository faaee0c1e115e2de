from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

import pytest

from adapters.sqlite_ledger import SCHEMA_VERSION, SQLiteLedger
from core.errors import LedgerConflictError, LedgerStorageError
from core.models import Outcome

WHEN = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _ledger(tmp_path) -> SQLiteLedger:
    ledger = SQLiteLedger(str(tmp_path / "data" / "ledger.db"))
    ledger.migrate()
    return ledger


def test_migrate_creates_directory_and_is_repeatable(tmp_path) -> None:
    ledger = SQLiteLedger(str(tmp_path / "nested" / "ledger.db"))

    assert ledger.migrate() == SCHEMA_VERSION
    assert ledger.migrate() == 0
    assert ledger.schema_version() == SCHEMA_VERSION
    assert (tmp_path / "nested" / "ledger.db").exists()


def test_newer_schema_is_rejected(tmp_path) -> None:
    path = tmp_path / "ledger.db"
    conn = sqlite3.connect(path)
    conn.execute("PRAGMA user_version = 99")
    conn.close()

    with pytest.raises(LedgerStorageError):
        SQLiteLedger(str(path)).migrate()


def test_delivery_is_keyed_per_chat(tmp_path) -> None:
    ledger = _ledger(tmp_path)
    ledger.record_delivered("example", "a", 1, WHEN, "A post")

    assert ledger.has_delivered("example", "a", 1)
    assert not ledger.has_delivered("example", "a", 2)
    assert not ledger.has_delivered("other", "a", 1)

    record = ledger.get_record("example", "a", 1)
    assert record is not None
    assert record.title == "A post"
    assert record.delivered_at == WHEN
    assert record.outcome == Outcome.DELIVERED


def test_duplicate_record_conflicts(tmp_path) -> None:
    ledger = _ledger(tmp_path)
    ledger.record_delivered("example", "a", 1, WHEN)

    with pytest.raises(LedgerConflictError):
        ledger.record_delivered("example", "a", 1, WHEN)
    with pytest.raises(LedgerConflictError):
        ledger.record_skipped("example", "a", 1, WHEN)


def test_skipped_items_count_as_handled(tmp_path) -> None:
    ledger = _ledger(tmp_path)
    assert not ledger.has_history("example", 1)

    ledger.record_skipped("example", "old", 1, WHEN)
    ledger.record_delivered("example", "new", 1, WHEN)

    assert ledger.has_history("example", 1)
    assert not ledger.has_history("example", 2)
    assert ledger.has_delivered("example", "old", 1)
    assert ledger.count() == 2
    assert ledger.count(Outcome.SKIPPED) == 1


def test_records_survive_reopen(tmp_path) -> None:
    _ledger(tmp_path).record_delivered("example", "a", 1, WHEN)

    reopened = _ledger(tmp_path)
    assert reopened.has_delivered("example", "a", 1)
    assert reopened.get_record("example", "missing", 1) is None


def test_unmigrated_database_raises_storage_error(tmp_path) -> None:
    ledger = SQLiteLedger(str(tmp_path / "empty.db"))

    with pytest.raises(LedgerStorageError):
        ledger.has_delivered("example", "a", 1)
