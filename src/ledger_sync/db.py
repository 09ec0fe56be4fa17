# Ledger Sync - Offline-first ledger synchronization for SMBs
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.


"""
Local store for Ledger Sync.

This module provides all low-level accessors for the embedded SQLite mirror
that keeps a company's ledger usable without network access. It is pure
storage: it knows nothing about the network, the remote store or locking.
Callers (the reconcilers and the transactions service) hold the per-tenant
write lock around every mutation.

It is responsible for:

- Initializing and migrating the database schema.
- Writing local edits (dirty flag, version bump, tombstones).
- Producing restartable snapshots of dirty rows for the push reconciler.
- Recording push acknowledgments (`mark_synced`).
- Merging rows coming from the remote store with the conflict policy.
- Keeping the per-tenant pull cursor, durably and atomically with merges.
- Flagging rows the remote rejected and quarantining corrupt rows.
- Keeping a capped per-tenant sync event log for diagnostics.

Every function that touches ledger rows takes an explicit `tenant_id` and
filters on it. A cycle for tenant A never reads or writes a row of tenant B,
even when both are cached on the same device.

------------------------------------------------------------------------------
Schema Overview (schema version 3)
------------------------------------------------------------------------------

1) transactions_local
   One row per ledger record mirrored on the device.

   Columns:
   - id                  TEXT    PRIMARY KEY  -- client-generated UUID
   - tenant_id           TEXT    NOT NULL     -- company id
   - kind                TEXT    NOT NULL     -- "income" | "expense"
   - date                TEXT    NOT NULL     -- ISO date "YYYY-MM-DD"
   - amount_cents        INTEGER NOT NULL     -- minor currency units
   - description         TEXT
   - category            TEXT
   - time                TEXT                 -- "HH:MM" entered by the user
   - client_name         TEXT
   - expense_type        TEXT                 -- e.g. "operational"
   - source_device       TEXT
   - version             INTEGER NOT NULL     -- strictly increasing
   - dirty               INTEGER NOT NULL     -- unsynced local mutations
   - sync_error          INTEGER NOT NULL     -- excluded from auto-retry
   - sync_error_kind     TEXT                 -- "validation" | "corruption"
   - sync_error_message  TEXT
   - created_at          TEXT                 -- local creation time (UTC)
   - updated_at          TEXT                 -- local edit or server time
   - deleted_at          TEXT                 -- tombstone marker
   - schema_version      INTEGER NOT NULL     -- row layout version

2) sync_state
   One row per tenant: the pull cursor (greatest remote `(updated_at, id)`
   pair durably merged, in `cursor` and `cursor_id`) and the time of the
   last fully successful cycle.

3) sync_log
   Recent push/pull events per tenant (capped), used by the sync monitor.

4) transactions_quarantine
   Raw snapshots of rows that are corrupt or cannot be attributed to a
   tenant, kept for manual review.

------------------------------------------------------------------------------
SQLite Notes
------------------------------------------------------------------------------

- All timestamps are stored as ISO-8601 text (UTC).
- `PRAGMA user_version` holds the schema version.
- The legacy mobile layout (`type`, `company_id`, `clientname`,
  `expensetype` columns, nullable company) is migrated by rebuilding
  `transactions_local`. Legacy rows without a company are moved to
  `transactions_quarantine` since no row may exist without a tenant.
- Version 2 databases gain the new columns in place (`ALTER TABLE`).
- A page of remote rows and the cursor covering it are written in a single
  transaction: a crash mid-merge leaves the cursor where it was, and replays
  are harmless because merging is idempotent.
"""

from __future__ import annotations

import json
import sqlite3
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, Literal

import pandas as pd

from .conflict import Resolution, resolve_conflict
from .errors import LocalStoreCorruption, NotFoundError
from .logging_setup import get_logger

logger = get_logger("ledger_sync.db")

SCHEMA_VERSION = 3
"""Current layout of `transactions_local` rows."""

LEGACY_SCHEMA_VERSION = 1
"""Layout of rows migrated from the legacy mobile table."""

SYNC_LOG_MAX_ROWS = 50
"""Number of sync log rows kept per tenant."""

RecordKind = Literal["income", "expense"]
RECORD_KINDS: frozenset[str] = frozenset({"income", "expense"})

SyncErrorKind = Literal["validation", "corruption"]


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseConfig:
    """
    Database configuration for Ledger Sync.

    Attributes
    ----------
    engine:
        Database engine identifier. Only "sqlite" is supported.
    path:
        Path to the SQLite database file.
    """

    engine: str
    path: Path


@dataclass(frozen=True)
class LedgerRecord:
    """
    A ledger record (cash-flow transaction) as mirrored on the device.

    The same type is used for rows coming from the remote store; for those,
    `dirty` is always False and `updated_at` is the server timestamp.

    Attributes
    ----------
    id:
        Client-generated, globally unique id. Never assigned by the server,
        so records created offline already have their final identity.
    tenant_id:
        Company the record belongs to. Mandatory.
    kind:
        "income" or "expense".
    date:
        Calendar date of the transaction.
    amount_cents:
        Amount in minor currency units. Always an ``int``.
    time, client_name, expense_type:
        Optional details entered on the mobile client (time of day as
        "HH:MM", customer name, expense classification). Stored and synced
        as-is.
    version:
        Strictly increases with every successful write, local or remote.
        Sole tie-breaker for conflicting edits.
    dirty:
        True while the row carries local mutations not yet acknowledged.
    sync_error:
        True when the remote rejected the row (or it was found corrupt);
        such rows are skipped by automatic pushes until the user acts.
    deleted_at:
        Tombstone marker. Deleted records are never physically removed
        before the remote acknowledged the deletion.
    schema_version:
        Layout version the row was last written with.
    """

    id: str
    tenant_id: str
    kind: RecordKind
    date: date
    amount_cents: int
    description: str | None = None
    category: str | None = None
    time: str | None = None
    client_name: str | None = None
    expense_type: str | None = None
    source_device: str | None = None
    version: int = 0
    updated_at: datetime | None = None
    deleted_at: datetime | None = None
    dirty: bool = False
    sync_error: bool = False
    sync_error_kind: SyncErrorKind | None = None
    sync_error_message: str | None = None
    created_at: datetime | None = None
    schema_version: int = SCHEMA_VERSION

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class ApplyOutcome(str, Enum):
    """Result of merging one remote row into the local store."""

    INSERTED = "inserted"
    UPDATED = "updated"
    REMOTE_WON = "remote_won"
    IGNORED_STALE = "ignored_stale"
    UNCHANGED = "unchanged"
    SKIPPED_FOREIGN = "skipped_foreign"


@dataclass(frozen=True, order=True)
class SyncCursor:
    """
    Position of a tenant's pull: the last merged `(updated_at, id)` pair.

    Remote rows are read in `(updated_at, id)` order and the next page starts
    strictly after this pair, so rows sharing one `updated_at` are never
    skipped at a page boundary. Cursors compare as tuples.

    Attributes
    ----------
    updated_at:
        Server timestamp of the last merged row (UTC).
    record_id:
        Id of that row. Empty for cursors stored before ids were kept, which
        makes the next pull re-read that timestamp (harmless).
    """

    updated_at: datetime
    record_id: str = ""


@dataclass(frozen=True)
class PageApplyResult:
    """
    Summary of a page of remote rows merged in one transaction.

    Attributes
    ----------
    outcomes:
        Number of rows per ApplyOutcome.
    cursor:
        Cursor value after the page (never lower than before).
    """

    outcomes: dict[ApplyOutcome, int] = field(default_factory=dict)
    cursor: SyncCursor | None = None

    def count(self, outcome: ApplyOutcome) -> int:
        return self.outcomes.get(outcome, 0)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

_RECORD_COLUMNS = (
    "id",
    "tenant_id",
    "kind",
    "date",
    "amount_cents",
    "description",
    "category",
    "time",
    "client_name",
    "expense_type",
    "source_device",
    "version",
    "updated_at",
    "deleted_at",
    "dirty",
    "sync_error",
    "sync_error_kind",
    "sync_error_message",
    "created_at",
    "schema_version",
)

_SELECT_RECORD = f"SELECT {', '.join(_RECORD_COLUMNS)} FROM transactions_local"


def _ensure_sqlite(cfg: DatabaseConfig) -> None:
    """Raise if the configuration does not refer to a supported engine."""
    if cfg.engine.lower() != "sqlite":
        msg = (
            f"Unsupported database engine: {cfg.engine!r}. "
            "Only 'sqlite' is supported for now."
        )
        raise ValueError(msg)


def _connect(cfg: DatabaseConfig) -> sqlite3.Connection:
    """
    Open a SQLite connection.

    The caller is responsible for closing the connection.
    """
    _ensure_sqlite(cfg)
    conn = sqlite3.connect(cfg.path, timeout=5.0)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _get_table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    """Return the set of column names for the given table (empty if absent)."""
    cur = conn.execute(f"PRAGMA table_info({table});")
    return {row[1] for row in cur.fetchall()}


def _create_transactions_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS transactions_local (
            id                  TEXT    PRIMARY KEY,
            tenant_id           TEXT    NOT NULL CHECK (tenant_id <> ''),
            kind                TEXT    NOT NULL CHECK (kind IN ('income', 'expense')),
            date                TEXT    NOT NULL,  -- ISO date 'YYYY-MM-DD'
            amount_cents        INTEGER NOT NULL,
            description         TEXT,
            category            TEXT,
            time                TEXT,
            client_name         TEXT,
            expense_type        TEXT,
            source_device       TEXT,
            version             INTEGER NOT NULL DEFAULT 1,
            dirty               INTEGER NOT NULL DEFAULT 1,
            sync_error          INTEGER NOT NULL DEFAULT 0,
            sync_error_kind     TEXT,
            sync_error_message  TEXT,
            created_at          TEXT,
            updated_at          TEXT,
            deleted_at          TEXT,
            schema_version      INTEGER NOT NULL DEFAULT 3
        );
        """
    )


def _legacy_column_expr(legacy_columns: set[str], column: str) -> str:
    """Select a legacy column if the table has it, NULL otherwise."""
    return f'"{column}"' if column in legacy_columns else "NULL"


def _migrate_legacy_layout(conn: sqlite3.Connection) -> None:
    """
    Rebuild a legacy `transactions_local` table into the current layout.

    The legacy mobile table used `type` instead of `kind`, `company_id`
    instead of `tenant_id` (nullable), `clientname`/`expensetype` for the
    customer and expense classification, and had no sync error columns.
    Older mobile builds lack some of the optional columns.
    Rows with a company are copied over; rows without one are moved, with
    every legacy column, to `transactions_quarantine`.
    """
    now_iso = _now_utc_iso()
    conn.execute("ALTER TABLE transactions_local RENAME TO transactions_legacy;")
    _create_transactions_table(conn)

    legacy_columns = _get_table_columns(conn, "transactions_legacy")
    created_expr = (
        "COALESCE(\"datetime\", updated_at)" if "datetime" in legacy_columns else "updated_at"
    )
    time_expr = _legacy_column_expr(legacy_columns, "time")
    client_expr = _legacy_column_expr(legacy_columns, "clientname")
    expense_type_expr = _legacy_column_expr(legacy_columns, "expensetype")

    conn.execute(
        f"""
        INSERT INTO transactions_local (
            id, tenant_id, kind, date, amount_cents,
            description, category, time, client_name, expense_type, source_device,
            version, dirty, sync_error, sync_error_kind, sync_error_message,
            created_at, updated_at, deleted_at, schema_version
        )
        SELECT
            id, company_id, type, date, amount_cents,
            description, category, {time_expr}, {client_expr}, {expense_type_expr},
            source_device,
            COALESCE(version, 1), COALESCE(dirty, 1), 0, NULL, NULL,
            {created_expr}, updated_at, deleted_at, ?
        FROM transactions_legacy
        WHERE company_id IS NOT NULL AND company_id <> '';
        """,
        (LEGACY_SCHEMA_VERSION,),
    )

    cur = conn.execute(
        """
        SELECT *
          FROM transactions_legacy
         WHERE company_id IS NULL OR company_id = '';
        """
    )
    column_names = [d[0] for d in cur.description]
    orphans = cur.fetchall()
    for row in orphans:
        payload = dict(zip(column_names, row))
        conn.execute(
            """
            INSERT INTO transactions_quarantine (
                tenant_id, record_id, payload, reason, quarantined_at
            )
            VALUES (NULL, ?, ?, ?, ?);
            """,
            (
                payload["id"],
                json.dumps(payload, default=str),
                "legacy row without company",
                now_iso,
            ),
        )

    if orphans:
        logger.warning(
            "Moved %d legacy row(s) without a company to transactions_quarantine",
            len(orphans),
        )

    conn.execute("DROP TABLE transactions_legacy;")


_ADDED_IN_V3 = {
    "transactions_local": (
        ("time", "TEXT"),
        ("client_name", "TEXT"),
        ("expense_type", "TEXT"),
    ),
    "sync_state": (("cursor_id", "TEXT"),),
}


def _add_missing_columns(conn: sqlite3.Connection) -> None:
    """Add columns introduced in schema version 3 to existing tables."""
    for table, added in _ADDED_IN_V3.items():
        columns = _get_table_columns(conn, table)
        if not columns:
            continue
        for name, decl in added:
            if name not in columns:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl};")
                logger.info("Added column %s.%s", table, name)


def _migrate_schema_if_needed(conn: sqlite3.Connection) -> None:
    """
    Migrate the database schema to the current layout if required.

    This function is idempotent and safe to call multiple times.
    """
    columns = _get_table_columns(conn, "transactions_local")
    if columns and "company_id" in columns and "tenant_id" not in columns:
        _migrate_legacy_layout(conn)
    _add_missing_columns(conn)

    conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION};")


def _create_schema_if_needed(conn: sqlite3.Connection) -> None:
    """
    Create tables and indexes if they do not exist yet and migrate the schema.

    This function is idempotent and can be called multiple times safely.
    """
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS transactions_quarantine (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id       TEXT,
            record_id       TEXT,
            payload         TEXT,
            reason          TEXT    NOT NULL,
            quarantined_at  TEXT    NOT NULL
        );
        """
    )

    # Migrate before CREATE TABLE IF NOT EXISTS so that a legacy table is
    # rebuilt rather than silently kept.
    _migrate_schema_if_needed(conn)
    _create_transactions_table(conn)

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_state (
            tenant_id       TEXT PRIMARY KEY,
            cursor          TEXT,
            cursor_id       TEXT,
            last_synced_at  TEXT
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_log (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id   TEXT    NOT NULL,
            event       TEXT    NOT NULL,  -- 'push' | 'pull' | 'cycle'
            success     INTEGER NOT NULL,
            error       TEXT,
            latency_ms  INTEGER,
            created_at  TEXT    NOT NULL
        );
        """
    )

    # Indexes
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_tx_local_tenant_dirty
            ON transactions_local(tenant_id, dirty, sync_error);
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_tx_local_tenant_date
            ON transactions_local(tenant_id, date);
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_sync_log_tenant
            ON sync_log(tenant_id, id);
        """
    )

    conn.commit()


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _now_utc_iso() -> str:
    """Return the current UTC datetime as ISO string."""
    return _to_iso_timestamp(_now_utc())


def _to_iso_timestamp(value: datetime | None) -> str | None:
    """Normalize a datetime to an ISO string in UTC (naive values are UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str | None) -> datetime | None:
    """
    Parse an ISO-8601 timestamp into a timezone-aware UTC datetime.

    Accepts the trailing "Z" used by JavaScript clients. Naive values are
    assumed to be UTC.
    """
    if value is None or value == "":
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def validate_record(record: LedgerRecord) -> None:
    """
    Check the invariants every stored record must satisfy.

    Raises
    ------
    ValueError
        If the id or tenant id is empty, the kind is unknown, the date is not
        a date, or the amount is not a non-negative integer.
    """
    if not isinstance(record.id, str) or not record.id.strip():
        raise ValueError("Record id must be a non-empty string.")
    if not isinstance(record.tenant_id, str) or not record.tenant_id.strip():
        raise ValueError(f"Record {record.id!r} has no tenant id.")
    if record.kind not in RECORD_KINDS:
        raise ValueError(
            f"Record {record.id!r} has invalid kind {record.kind!r}, "
            "expected 'income' or 'expense'."
        )
    if not isinstance(record.date, date) or isinstance(record.date, datetime):
        raise ValueError(f"Record {record.id!r} date must be a datetime.date.")
    # bool is a subclass of int and must not be accepted as an amount.
    if isinstance(record.amount_cents, bool) or not isinstance(record.amount_cents, int):
        raise ValueError(
            f"Record {record.id!r} amount must be an integer number of cents, "
            f"got {type(record.amount_cents).__name__}."
        )
    if record.amount_cents < 0:
        raise ValueError(f"Record {record.id!r} amount cannot be negative.")


def _row_to_record(row: tuple) -> LedgerRecord:
    """
    Convert a database row (laid out as `_RECORD_COLUMNS`) into a LedgerRecord.

    Raises
    ------
    ValueError, TypeError
        If the stored values cannot be materialized (corrupt row).
    """
    (
        record_id,
        tenant_id,
        kind,
        date_str,
        amount_cents,
        description,
        category,
        time_of_day,
        client_name,
        expense_type,
        source_device,
        version,
        updated_at_str,
        deleted_at_str,
        dirty_int,
        sync_error_int,
        sync_error_kind,
        sync_error_message,
        created_at_str,
        schema_version,
    ) = row

    record = LedgerRecord(
        id=record_id,
        tenant_id=tenant_id,
        kind=kind,
        date=date.fromisoformat(date_str),
        amount_cents=amount_cents,
        description=description,
        category=category,
        time=time_of_day,
        client_name=client_name,
        expense_type=expense_type,
        source_device=source_device,
        version=int(version),
        updated_at=parse_timestamp(updated_at_str),
        deleted_at=parse_timestamp(deleted_at_str),
        dirty=bool(dirty_int),
        sync_error=bool(sync_error_int),
        sync_error_kind=sync_error_kind,
        sync_error_message=sync_error_message,
        created_at=parse_timestamp(created_at_str),
        schema_version=int(schema_version),
    )
    validate_record(record)
    return record


def _fetch_record(
    conn: sqlite3.Connection, tenant_id: str, record_id: str
) -> LedgerRecord | None:
    row = conn.execute(
        f"{_SELECT_RECORD} WHERE id = ? AND tenant_id = ?;",
        (record_id, tenant_id),
    ).fetchone()
    if row is None:
        return None
    return _row_to_record(row)


def _write_remote_row(
    conn: sqlite3.Connection,
    record: LedgerRecord,
    *,
    created_at_iso: str | None,
) -> None:
    """Insert or overwrite a row with remote content, leaving it clean."""
    conn.execute(
        """
        INSERT INTO transactions_local (
            id, tenant_id, kind, date, amount_cents,
            description, category, time, client_name, expense_type, source_device,
            version, dirty, sync_error, sync_error_kind, sync_error_message,
            created_at, updated_at, deleted_at, schema_version
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 0, NULL, NULL, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            kind               = excluded.kind,
            date               = excluded.date,
            amount_cents       = excluded.amount_cents,
            description        = excluded.description,
            category           = excluded.category,
            time               = excluded.time,
            client_name        = excluded.client_name,
            expense_type       = excluded.expense_type,
            source_device      = excluded.source_device,
            version            = excluded.version,
            dirty              = 0,
            sync_error         = 0,
            sync_error_kind    = NULL,
            sync_error_message = NULL,
            updated_at         = excluded.updated_at,
            deleted_at         = excluded.deleted_at,
            schema_version     = excluded.schema_version;
        """,
        (
            record.id,
            record.tenant_id,
            record.kind,
            record.date.isoformat(),
            record.amount_cents,
            record.description,
            record.category,
            record.time,
            record.client_name,
            record.expense_type,
            record.source_device,
            record.version,
            created_at_iso,
            _to_iso_timestamp(record.updated_at),
            _to_iso_timestamp(record.deleted_at),
            SCHEMA_VERSION,
        ),
    )


def _id_taken(conn: sqlite3.Connection, record_id: str) -> bool:
    """True if any row uses this id; no column of that row is read."""
    row = conn.execute(
        "SELECT 1 FROM transactions_local WHERE id = ? LIMIT 1;", (record_id,)
    ).fetchone()
    return row is not None


def _apply_remote_row(
    conn: sqlite3.Connection, tenant_id: str, record: LedgerRecord
) -> ApplyOutcome:
    """
    Merge one remote row, without committing.

    Rules
    -----
    - A row of another tenant is never written (SKIPPED_FOREIGN).
    - Unknown id: inserted clean (INSERTED).
    - Clean local row: overwritten only if the remote version is strictly
      greater (UPDATED), otherwise left alone (UNCHANGED).
    - Dirty local row: the conflict policy decides (REMOTE_WON or
      IGNORED_STALE).
    """
    if record.tenant_id != tenant_id:
        logger.warning(
            "Ignoring remote record %s of tenant %s during sync of tenant %s",
            record.id,
            record.tenant_id,
            tenant_id,
        )
        return ApplyOutcome.SKIPPED_FOREIGN

    validate_record(record)

    existing = conn.execute(
        """
        SELECT version, dirty, created_at
          FROM transactions_local
         WHERE id = ? AND tenant_id = ?;
        """,
        (record.id, tenant_id),
    ).fetchone()

    if existing is None:
        if _id_taken(conn, record.id):
            logger.warning(
                "Remote record %s collides with a local row of another tenant; skipped",
                record.id,
            )
            return ApplyOutcome.SKIPPED_FOREIGN
        _write_remote_row(conn, record, created_at_iso=_to_iso_timestamp(record.updated_at))
        return ApplyOutcome.INSERTED

    local_version, local_dirty, created_at_iso = existing

    if local_dirty:
        resolution = resolve_conflict(int(local_version), record.version)
        if resolution is Resolution.REMOTE_WINS:
            logger.info(
                "Conflict on %s: remote v%d wins over local v%d, local edit discarded",
                record.id,
                record.version,
                local_version,
            )
            _write_remote_row(conn, record, created_at_iso=created_at_iso)
            return ApplyOutcome.REMOTE_WON
        logger.debug(
            "Conflict on %s: stale remote v%d ignored, local v%d kept",
            record.id,
            record.version,
            local_version,
        )
        return ApplyOutcome.IGNORED_STALE

    if record.version > int(local_version):
        _write_remote_row(conn, record, created_at_iso=created_at_iso)
        return ApplyOutcome.UPDATED
    return ApplyOutcome.UNCHANGED


def _read_cursor(conn: sqlite3.Connection, tenant_id: str) -> SyncCursor | None:
    row = conn.execute(
        "SELECT cursor, cursor_id FROM sync_state WHERE tenant_id = ?;", (tenant_id,)
    ).fetchone()
    if row is None or row[0] is None:
        return None
    return SyncCursor(updated_at=parse_timestamp(row[0]), record_id=row[1] or "")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def init_database(cfg: DatabaseConfig) -> None:
    """
    Initialize the database schema if needed.

    - Creates the SQLite file (and its parent directory) if missing.
    - Creates tables and indexes, migrating a legacy layout when found.
    - This function is idempotent: calling it multiple times is safe.

    Raises
    ------
    ValueError
        If cfg.engine is not supported.
    sqlite3.Error
        If schema creation fails.
    """
    cfg.path.parent.mkdir(parents=True, exist_ok=True)

    conn = _connect(cfg)
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
        _create_schema_if_needed(conn)
    finally:
        conn.close()


def get_schema_version(cfg: DatabaseConfig) -> int:
    """Return the `PRAGMA user_version` of the database."""
    init_database(cfg)

    conn = _connect(cfg)
    try:
        return int(conn.execute("PRAGMA user_version;").fetchone()[0])
    finally:
        conn.close()


def upsert_local(cfg: DatabaseConfig, record: LedgerRecord) -> LedgerRecord:
    """
    Write a local edit (creation or update) of a ledger record.

    Parameters
    ----------
    cfg:
        Database configuration.
    record:
        The record content. `version`, `dirty`, `sync_error*`, `updated_at`
        and `created_at` are managed here and ignored on input.

    Behavior
    --------
    - Marks the row dirty.
    - Sets `version = max(existing.version, 0) + 1` (1 for a new row).
    - Keeps `created_at` of an existing row so push order is stable.
    - Clears any sync error: editing a rejected row is how the user acts on
      it, and the row re-enters the automatic push queue.

    Returns
    -------
    LedgerRecord
        The stored record.

    Raises
    ------
    ValueError
        If the record violates the storage invariants.
    LocalStoreCorruption
        If the id already exists under another tenant.
    """
    validate_record(record)
    init_database(cfg)

    now_iso = _now_utc_iso()

    conn = _connect(cfg)
    try:
        existing = conn.execute(
            "SELECT version FROM transactions_local WHERE id = ? AND tenant_id = ?;",
            (record.id, record.tenant_id),
        ).fetchone()

        if existing is None and _id_taken(conn, record.id):
            raise LocalStoreCorruption(
                f"Record {record.id} already exists under another tenant.",
                record_id=record.id,
                tenant_id=record.tenant_id,
            )

        new_version = max(int(existing[0]) if existing else 0, 0) + 1

        conn.execute(
            """
            INSERT INTO transactions_local (
                id, tenant_id, kind, date, amount_cents,
                description, category, time, client_name, expense_type, source_device,
                version, dirty, sync_error, sync_error_kind, sync_error_message,
                created_at, updated_at, deleted_at, schema_version
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, 0, NULL, NULL, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                kind               = excluded.kind,
                date               = excluded.date,
                amount_cents       = excluded.amount_cents,
                description        = excluded.description,
                category           = excluded.category,
                time               = excluded.time,
                client_name        = excluded.client_name,
                expense_type       = excluded.expense_type,
                source_device      = excluded.source_device,
                version            = excluded.version,
                dirty              = 1,
                sync_error         = 0,
                sync_error_kind    = NULL,
                sync_error_message = NULL,
                updated_at         = excluded.updated_at,
                deleted_at         = excluded.deleted_at,
                schema_version     = excluded.schema_version;
            """,
            (
                record.id,
                record.tenant_id,
                record.kind,
                record.date.isoformat(),
                record.amount_cents,
                record.description,
                record.category,
                record.time,
                record.client_name,
                record.expense_type,
                record.source_device,
                new_version,
                now_iso,
                now_iso,
                _to_iso_timestamp(record.deleted_at),
                SCHEMA_VERSION,
            ),
        )
        conn.commit()

        stored = _fetch_record(conn, record.tenant_id, record.id)
    finally:
        conn.close()

    if stored is None:
        msg = f"Record {record.id} was just written but could not be reloaded."
        raise RuntimeError(msg)
    return stored


def soft_delete_local(
    cfg: DatabaseConfig, tenant_id: str, record_id: str
) -> LedgerRecord:
    """
    Tombstone a record: set `deleted_at`, bump the version, mark dirty.

    The row stays in the table until the remote acknowledged the deletion
    (see `purge_synced_tombstones`).

    Raises
    ------
    NotFoundError
        If the record does not exist for the tenant.
    """
    init_database(cfg)

    now_iso = _now_utc_iso()

    conn = _connect(cfg)
    try:
        cur = conn.execute(
            """
            UPDATE transactions_local
               SET deleted_at = COALESCE(deleted_at, ?),
                   updated_at = ?,
                   version    = version + 1,
                   dirty      = 1,
                   sync_error = 0,
                   sync_error_kind    = NULL,
                   sync_error_message = NULL
             WHERE id = ? AND tenant_id = ?;
            """,
            (now_iso, now_iso, record_id, tenant_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError(
                f"Record {record_id} not found.",
                record_id=record_id,
                tenant_id=tenant_id,
            )
        conn.commit()
        stored = _fetch_record(conn, tenant_id, record_id)
    finally:
        conn.close()

    if stored is None:
        msg = f"Record {record_id} was deleted but could not be reloaded."
        raise RuntimeError(msg)
    return stored


def get_record(
    cfg: DatabaseConfig, tenant_id: str, record_id: str
) -> LedgerRecord | None:
    """Load a single record of the tenant, or None if absent."""
    init_database(cfg)

    conn = _connect(cfg)
    try:
        return _fetch_record(conn, tenant_id, record_id)
    finally:
        conn.close()


def list_dirty(
    cfg: DatabaseConfig, tenant_id: str, *, limit: int | None = None
) -> list[LedgerRecord]:
    """
    Return a snapshot of the tenant's dirty rows, oldest first.

    Rows flagged `sync_error` are excluded. The snapshot is finite and
    restartable: calling this again after a partial push returns whatever is
    still dirty, in the same order.

    Rows that cannot be materialized are quarantined in place (flagged with
    `sync_error_kind="corruption"`) and skipped, so a single corrupt row does
    not block the tenant's queue.

    Parameters
    ----------
    cfg:
        Database configuration.
    tenant_id:
        Tenant whose queue is read.
    limit:
        Optional maximum number of rows.
    """
    init_database(cfg)

    sql = (
        f"{_SELECT_RECORD} "
        "WHERE tenant_id = ? AND dirty = 1 AND sync_error = 0 "
        "ORDER BY created_at, rowid"
    )
    params: list[object] = [tenant_id]
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))

    conn = _connect(cfg)
    try:
        rows = conn.execute(sql + ";", params).fetchall()

        records: list[LedgerRecord] = []
        corrupt: list[tuple[str, str]] = []
        for row in rows:
            try:
                records.append(_row_to_record(row))
            except (TypeError, ValueError) as exc:
                corrupt.append((row[0], str(exc)))

        for record_id, reason in corrupt:
            _quarantine_in_place(conn, tenant_id, record_id, reason)
        if corrupt:
            conn.commit()
    finally:
        conn.close()

    return records


def _quarantine_in_place(
    conn: sqlite3.Connection, tenant_id: str, record_id: str, reason: str
) -> bool:
    row = conn.execute(
        "SELECT * FROM transactions_local WHERE id = ? AND tenant_id = ?;",
        (record_id, tenant_id),
    ).fetchone()
    if row is None:
        return False

    column_names = [
        c[1] for c in conn.execute("PRAGMA table_info(transactions_local);").fetchall()
    ]
    payload = json.dumps(dict(zip(column_names, row)), default=str)

    conn.execute(
        """
        INSERT INTO transactions_quarantine (
            tenant_id, record_id, payload, reason, quarantined_at
        )
        VALUES (?, ?, ?, ?, ?);
        """,
        (tenant_id, record_id, payload, reason, _now_utc_iso()),
    )
    conn.execute(
        """
        UPDATE transactions_local
           SET sync_error = 1,
               sync_error_kind = 'corruption',
               sync_error_message = ?
         WHERE id = ? AND tenant_id = ?;
        """,
        (reason, record_id, tenant_id),
    )
    logger.error("Quarantined record %s of tenant %s: %s", record_id, tenant_id, reason)
    return True


def quarantine_record(
    cfg: DatabaseConfig, tenant_id: str, record_id: str, reason: str
) -> bool:
    """
    Quarantine a single row: snapshot it and exclude it from automatic sync.

    Returns
    -------
    bool
        False if the row does not exist (nothing to quarantine).
    """
    init_database(cfg)

    conn = _connect(cfg)
    try:
        done = _quarantine_in_place(conn, tenant_id, record_id, reason)
        conn.commit()
        return done
    finally:
        conn.close()


def list_quarantine(cfg: DatabaseConfig, tenant_id: str | None = None) -> pd.DataFrame:
    """
    Return quarantined snapshots, newest first.

    When `tenant_id` is None, only rows without a tenant (legacy orphans)
    are returned.
    """
    init_database(cfg)

    columns = ["id", "tenant_id", "record_id", "reason", "quarantined_at"]
    conn = _connect(cfg)
    try:
        if tenant_id is None:
            rows = conn.execute(
                """
                SELECT id, tenant_id, record_id, reason, quarantined_at
                  FROM transactions_quarantine
                 WHERE tenant_id IS NULL
                 ORDER BY id DESC;
                """
            ).fetchall()
        else:
            rows = conn.execute(
                """
                SELECT id, tenant_id, record_id, reason, quarantined_at
                  FROM transactions_quarantine
                 WHERE tenant_id = ?
                 ORDER BY id DESC;
                """,
                (tenant_id,),
            ).fetchall()
    finally:
        conn.close()

    return pd.DataFrame(rows, columns=columns)


def mark_synced(
    cfg: DatabaseConfig,
    tenant_id: str,
    record_id: str,
    accepted_version: int,
    *,
    expected_version: int | None = None,
) -> bool:
    """
    Record a positive push acknowledgment for a row.

    Parameters
    ----------
    cfg:
        Database configuration.
    tenant_id, record_id:
        Row being acknowledged.
    accepted_version:
        Version the remote accepted and stored.
    expected_version:
        Version that was sent. When the local version has moved past it (a
        local edit landed while the push was in flight), the row stays dirty
        so the newer edit is pushed on the next cycle; its version is only
        raised to `accepted_version` when that is larger.

    Returns
    -------
    bool
        True if the dirty flag was cleared.

    Raises
    ------
    NotFoundError
        If the row does not exist (race with a concurrent delete).
    """
    init_database(cfg)

    conn = _connect(cfg)
    try:
        row = conn.execute(
            "SELECT version FROM transactions_local WHERE id = ? AND tenant_id = ?;",
            (record_id, tenant_id),
        ).fetchone()
        if row is None:
            raise NotFoundError(
                f"Record {record_id} not found.",
                record_id=record_id,
                tenant_id=tenant_id,
            )

        local_version = int(row[0])
        if expected_version is not None and local_version != expected_version:
            conn.execute(
                """
                UPDATE transactions_local
                   SET version = MAX(version, ?)
                 WHERE id = ? AND tenant_id = ?;
                """,
                (accepted_version, record_id, tenant_id),
            )
            conn.commit()
            logger.debug(
                "Record %s changed during push (v%d sent, v%d local); kept dirty",
                record_id,
                expected_version,
                local_version,
            )
            return False

        conn.execute(
            """
            UPDATE transactions_local
               SET dirty = 0,
                   version = ?,
                   sync_error = 0,
                   sync_error_kind = NULL,
                   sync_error_message = NULL
             WHERE id = ? AND tenant_id = ?;
            """,
            (accepted_version, record_id, tenant_id),
        )
        conn.commit()
        return True
    finally:
        conn.close()


def rebase_version(
    cfg: DatabaseConfig, tenant_id: str, record_id: str, min_version: int
) -> LedgerRecord | None:
    """
    Raise a dirty row's version to at least `min_version`.

    Used when a push conflicts on an equal version and the local edit is
    kept: the row must carry a version above the server's to be accepted.
    Clean rows are left alone.

    Returns
    -------
    LedgerRecord | None
        The row after the update, or None if it no longer exists.
    """
    init_database(cfg)

    conn = _connect(cfg)
    try:
        conn.execute(
            """
            UPDATE transactions_local
               SET version = MAX(version, ?)
             WHERE id = ? AND tenant_id = ? AND dirty = 1;
            """,
            (int(min_version), record_id, tenant_id),
        )
        conn.commit()
        return _fetch_record(conn, tenant_id, record_id)
    finally:
        conn.close()


def apply_remote(
    cfg: DatabaseConfig, tenant_id: str, record: LedgerRecord
) -> ApplyOutcome:
    """
    Merge a single record coming from the remote store.

    If a local row with the same id is dirty, the conflict policy decides
    instead of overwriting blindly. See `_apply_remote_row` for the rules.
    The pull cursor is not touched.
    """
    init_database(cfg)

    conn = _connect(cfg)
    try:
        outcome = _apply_remote_row(conn, tenant_id, record)
        conn.commit()
        return outcome
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def apply_remote_page(
    cfg: DatabaseConfig, tenant_id: str, records: Iterable[LedgerRecord]
) -> PageApplyResult:
    """
    Merge a page of remote rows and advance the tenant's cursor atomically.

    All rows and the new cursor are written in one transaction. If any row
    fails to apply, the whole page is rolled back and the cursor stays where
    it was.

    The new cursor is the maximum of the stored cursor and the greatest
    `(updated_at, id)` pair merged from the page, so it never regresses.
    Rows of another tenant do not move it.

    Returns
    -------
    PageApplyResult
        Per-outcome counts and the cursor after the page.
    """
    init_database(cfg)

    conn = _connect(cfg)
    try:
        current = _read_cursor(conn, tenant_id)
        new_cursor = current
        counts: Counter[ApplyOutcome] = Counter()

        for record in records:
            outcome = _apply_remote_row(conn, tenant_id, record)
            counts[outcome] += 1
            if outcome is ApplyOutcome.SKIPPED_FOREIGN:
                continue
            if record.updated_at is None:
                continue
            seen = SyncCursor(
                updated_at=parse_timestamp(_to_iso_timestamp(record.updated_at)),
                record_id=record.id,
            )
            if new_cursor is None or seen > new_cursor:
                new_cursor = seen

        if new_cursor is not None and new_cursor != current:
            conn.execute(
                """
                INSERT INTO sync_state (tenant_id, cursor, cursor_id)
                VALUES (?, ?, ?)
                ON CONFLICT(tenant_id) DO UPDATE SET
                    cursor    = excluded.cursor,
                    cursor_id = excluded.cursor_id;
                """,
                (
                    tenant_id,
                    _to_iso_timestamp(new_cursor.updated_at),
                    new_cursor.record_id,
                ),
            )

        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    return PageApplyResult(outcomes=dict(counts), cursor=new_cursor)


def get_cursor(cfg: DatabaseConfig, tenant_id: str) -> SyncCursor | None:
    """Return the tenant's pull cursor, or None before the first pull."""
    init_database(cfg)

    conn = _connect(cfg)
    try:
        return _read_cursor(conn, tenant_id)
    finally:
        conn.close()


def get_last_synced_at(cfg: DatabaseConfig, tenant_id: str) -> datetime | None:
    """Return the time of the tenant's last fully successful sync cycle."""
    init_database(cfg)

    conn = _connect(cfg)
    try:
        row = conn.execute(
            "SELECT last_synced_at FROM sync_state WHERE tenant_id = ?;",
            (tenant_id,),
        ).fetchone()
    finally:
        conn.close()

    if row is None:
        return None
    return parse_timestamp(row[0])


def set_last_synced_at(
    cfg: DatabaseConfig, tenant_id: str, when: datetime | None = None
) -> None:
    """Record a fully successful sync cycle for the tenant."""
    init_database(cfg)

    when_iso = _to_iso_timestamp(when) if when is not None else _now_utc_iso()

    conn = _connect(cfg)
    try:
        conn.execute(
            """
            INSERT INTO sync_state (tenant_id, last_synced_at)
            VALUES (?, ?)
            ON CONFLICT(tenant_id) DO UPDATE SET last_synced_at = excluded.last_synced_at;
            """,
            (tenant_id, when_iso),
        )
        conn.commit()
    finally:
        conn.close()


def flag_sync_error(
    cfg: DatabaseConfig,
    tenant_id: str,
    record_id: str,
    kind: SyncErrorKind,
    message: str | None,
) -> None:
    """
    Flag a row as rejected so automatic pushes skip it.

    The row stays dirty: its local edits are not lost, they simply wait for
    the user to correct the record (any local edit clears the flag) or to
    retry it explicitly (`clear_sync_error`).

    Raises
    ------
    NotFoundError
        If the row does not exist for the tenant.
    """
    init_database(cfg)

    conn = _connect(cfg)
    try:
        cur = conn.execute(
            """
            UPDATE transactions_local
               SET sync_error = 1,
                   sync_error_kind = ?,
                   sync_error_message = ?
             WHERE id = ? AND tenant_id = ?;
            """,
            (kind, message, record_id, tenant_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError(
                f"Record {record_id} not found.",
                record_id=record_id,
                tenant_id=tenant_id,
            )
        conn.commit()
    finally:
        conn.close()


def clear_sync_error(cfg: DatabaseConfig, tenant_id: str, record_id: str) -> None:
    """
    Put a rejected row back into the automatic push queue.

    Raises
    ------
    NotFoundError
        If the row does not exist for the tenant.
    """
    init_database(cfg)

    conn = _connect(cfg)
    try:
        cur = conn.execute(
            """
            UPDATE transactions_local
               SET sync_error = 0,
                   sync_error_kind = NULL,
                   sync_error_message = NULL
             WHERE id = ? AND tenant_id = ?;
            """,
            (record_id, tenant_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError(
                f"Record {record_id} not found.",
                record_id=record_id,
                tenant_id=tenant_id,
            )
        conn.commit()
    finally:
        conn.close()


def list_sync_errors(cfg: DatabaseConfig, tenant_id: str) -> list[LedgerRecord]:
    """
    Return the tenant's rows flagged `sync_error`, oldest first.

    Rows too corrupt to be materialized are left out.
    """
    init_database(cfg)

    conn = _connect(cfg)
    try:
        rows = conn.execute(
            f"{_SELECT_RECORD} WHERE tenant_id = ? AND sync_error = 1 "
            "ORDER BY created_at, rowid;",
            (tenant_id,),
        ).fetchall()
    finally:
        conn.close()

    records: list[LedgerRecord] = []
    for row in rows:
        try:
            records.append(_row_to_record(row))
        except (TypeError, ValueError):
            logger.debug("Skipping unreadable flagged row %s", row[0])
    return records


def count_pending(cfg: DatabaseConfig, tenant_id: str) -> int:
    """Number of dirty rows waiting for an automatic push."""
    init_database(cfg)

    conn = _connect(cfg)
    try:
        return int(
            conn.execute(
                """
                SELECT COUNT(*) FROM transactions_local
                 WHERE tenant_id = ? AND dirty = 1 AND sync_error = 0;
                """,
                (tenant_id,),
            ).fetchone()[0]
        )
    finally:
        conn.close()


def count_sync_errors(cfg: DatabaseConfig, tenant_id: str) -> int:
    """Number of rows excluded from automatic pushes."""
    init_database(cfg)

    conn = _connect(cfg)
    try:
        return int(
            conn.execute(
                """
                SELECT COUNT(*) FROM transactions_local
                 WHERE tenant_id = ? AND sync_error = 1;
                """,
                (tenant_id,),
            ).fetchone()[0]
        )
    finally:
        conn.close()


def purge_synced_tombstones(cfg: DatabaseConfig, tenant_id: str) -> int:
    """
    Physically remove tombstones whose deletion the remote acknowledged.

    Only non-dirty tombstones are removed; a tombstone still waiting to be
    pushed is kept.

    Returns
    -------
    int
        Number of rows removed.
    """
    init_database(cfg)

    conn = _connect(cfg)
    try:
        cur = conn.execute(
            """
            DELETE FROM transactions_local
             WHERE tenant_id = ?
               AND deleted_at IS NOT NULL
               AND dirty = 0;
            """,
            (tenant_id,),
        )
        conn.commit()
        return cur.rowcount
    finally:
        conn.close()


def load_transactions(
    cfg: DatabaseConfig,
    tenant_id: str,
    start: date,
    end: date,
    *,
    include_deleted: bool = False,
) -> pd.DataFrame:
    """
    Load the tenant's transactions for a period as a DataFrame.

    Parameters
    ----------
    cfg:
        Database configuration.
    tenant_id:
        Tenant to read.
    start, end:
        Inclusive date bounds.
    include_deleted:
        If True, tombstoned rows are included.

    Returns
    -------
    pandas.DataFrame
        Columns: id, date (datetime64), kind, amount_cents (int),
        description, category, version, dirty (bool), sync_error (bool),
        deleted (bool). Sorted by date then creation order.
    """
    init_database(cfg)

    columns = [
        "id",
        "date",
        "kind",
        "amount_cents",
        "description",
        "category",
        "version",
        "dirty",
        "sync_error",
        "deleted",
    ]

    sql = """
        SELECT id, date, kind, amount_cents, description, category, version,
               dirty, sync_error, deleted_at IS NOT NULL
          FROM transactions_local
         WHERE tenant_id = ?
           AND date BETWEEN ? AND ?
    """
    if not include_deleted:
        sql += " AND deleted_at IS NULL"
    sql += " ORDER BY date, created_at, rowid;"

    conn = _connect(cfg)
    try:
        rows = conn.execute(sql, (tenant_id, start.isoformat(), end.isoformat())).fetchall()
    finally:
        conn.close()

    if not rows:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame(rows, columns=columns)
    df["date"] = pd.to_datetime(df["date"], format="%Y-%m-%d")
    df["amount_cents"] = df["amount_cents"].astype("int64")
    for col in ("dirty", "sync_error", "deleted"):
        df[col] = df[col].astype(bool)
    return df


# ---------------------------------------------------------------------------
# Sync log
# ---------------------------------------------------------------------------


def append_sync_log(
    cfg: DatabaseConfig,
    tenant_id: str,
    event: str,
    success: bool,
    *,
    latency_ms: int | None = None,
    error: str | None = None,
    at: datetime | None = None,
) -> None:
    """
    Append an event to the tenant's sync log, keeping the newest rows only.

    Parameters
    ----------
    event:
        Phase name: "push", "pull" or "cycle".
    success:
        Whether the phase completed.
    latency_ms:
        Duration of the phase.
    error:
        Short error description (never a record payload).
    at:
        Event time, defaults to now.
    """
    init_database(cfg)

    at_iso = _to_iso_timestamp(at) if at is not None else _now_utc_iso()

    conn = _connect(cfg)
    try:
        conn.execute(
            """
            INSERT INTO sync_log (tenant_id, event, success, error, latency_ms, created_at)
            VALUES (?, ?, ?, ?, ?, ?);
            """,
            (tenant_id, event, int(bool(success)), error, latency_ms, at_iso),
        )
        conn.execute(
            """
            DELETE FROM sync_log
             WHERE tenant_id = ?
               AND id NOT IN (
                   SELECT id FROM sync_log
                    WHERE tenant_id = ?
                    ORDER BY id DESC
                    LIMIT ?
               );
            """,
            (tenant_id, tenant_id, SYNC_LOG_MAX_ROWS),
        )
        conn.commit()
    finally:
        conn.close()


def load_sync_log(cfg: DatabaseConfig, tenant_id: str) -> pd.DataFrame:
    """
    Return the tenant's sync log, oldest first.

    Columns: created_at (datetime64, UTC), event, success (bool), error,
    latency_ms (float, NaN when unknown).
    """
    init_database(cfg)

    columns = ["created_at", "event", "success", "error", "latency_ms"]

    conn = _connect(cfg)
    try:
        rows = conn.execute(
            """
            SELECT created_at, event, success, error, latency_ms
              FROM sync_log
             WHERE tenant_id = ?
             ORDER BY id;
            """,
            (tenant_id,),
        ).fetchall()
    finally:
        conn.close()

    if not rows:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame(rows, columns=columns)
    df["created_at"] = pd.to_datetime(df["created_at"], utc=True, format="ISO8601")
    df["success"] = df["success"].astype(bool)
    df["latency_ms"] = pd.to_numeric(df["latency_ms"], errors="coerce")
    return df


def clear_sync_log(cfg: DatabaseConfig, tenant_id: str) -> int:
    """Delete the tenant's sync log. Returns the number of rows removed."""
    init_database(cfg)

    conn = _connect(cfg)
    try:
        cur = conn.execute("DELETE FROM sync_log WHERE tenant_id = ?;", (tenant_id,))
        conn.commit()
        return cur.rowcount
    finally:
        conn.close()
