# Ledger Sync - Offline-first ledger synchronization for SMBs
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.


"""
High-level services for recording transactions and reporting on them.

This module sits between:
- the sync core (`db.py`, `engine.py`, `company.py`), and
- user-facing layers such as the CLI or a host application.

Responsibilities
----------------
1) Recording
   - Create transactions offline (client-generated id, version 1, dirty).
   - Edit transactions using partial updates (version bump, dirty).
   - Soft-delete transactions (tombstone, version bump, dirty).

2) Reporting
   - List transactions for a date range.
   - Daily, weekly and monthly income / expense / net totals.

3) Sync surface
   - Sync status for display (pending rows, last sync, faulted flag).
   - Rows rejected by the remote, and their explicit retry.
   - Login / logout of the company identity.

Design notes
------------
- Every write resolves the tenant first. Without a tenant nothing is
  written (`NoTenantResolvedError` propagates to the caller).
- Every write holds the tenant's write lock, the same lock the
  reconcilers take, so UI edits never interleave with `mark_synced` or
  `apply_remote` on the same tenant.
- Amounts are integers in cents end to end. `parse_amount_cents` converts
  user input with `Decimal`, never with floats.
"""

import uuid
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional

import pandas as pd

from .db import (
    LedgerRecord,
    RecordKind,
    clear_sync_error as _db_clear_sync_error,
    get_record as _db_get_record,
    list_sync_errors as _db_list_sync_errors,
    load_transactions as _db_load_transactions,
    purge_synced_tombstones as _db_purge_synced_tombstones,
    soft_delete_local as _db_soft_delete_local,
    upsert_local as _db_upsert_local,
)
from .engine import SyncEngine, SyncState, SyncStatus
from .errors import NoTenantResolvedError, NotFoundError
from .logging_setup import get_logger

logger = get_logger("ledger_sync.transactions_service")


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransactionInput:
    """
    Fields of a new transaction as entered by the user.

    Attributes
    ----------
    kind:
        "income" or "expense".
    date:
        Calendar date of the transaction.
    amount_cents:
        Amount in cents (integer, non-negative).
    description, category:
        Optional free text.
    time, client_name, expense_type:
        Optional details (time of day as "HH:MM", customer, expense
        classification such as "operational").
    """

    kind: RecordKind
    date: date
    amount_cents: int
    description: Optional[str] = None
    category: Optional[str] = None
    time: Optional[str] = None
    client_name: Optional[str] = None
    expense_type: Optional[str] = None


CLEARABLE_FIELDS: frozenset[str] = frozenset(
    {"description", "category", "time", "client_name", "expense_type"}
)
"""Optional fields an edit can reset to empty."""


@dataclass(frozen=True)
class TransactionUpdate:
    """
    Partial update of a transaction.

    Fields left to None are unchanged. Optional text fields named in
    `clear` are reset to None; naming a field in `clear` and also giving it
    a value is an error.
    """

    kind: Optional[RecordKind] = None
    date: Optional[date] = None
    amount_cents: Optional[int] = None
    description: Optional[str] = None
    category: Optional[str] = None
    time: Optional[str] = None
    client_name: Optional[str] = None
    expense_type: Optional[str] = None
    clear: frozenset[str] = frozenset()

    def changes(self) -> dict[str, object]:
        """
        Return the field changes to apply.

        Raises
        ------
        ValueError
            If `clear` names an unknown field or a field that also has a value.
        """
        unknown = set(self.clear) - CLEARABLE_FIELDS
        if unknown:
            raise ValueError(
                f"Cannot clear {', '.join(sorted(unknown))}; "
                f"clearable fields are {', '.join(sorted(CLEARABLE_FIELDS))}."
            )

        changes: dict[str, object] = {}
        for name in (
            "kind",
            "date",
            "amount_cents",
            "description",
            "category",
            "time",
            "client_name",
            "expense_type",
        ):
            value = getattr(self, name)
            if value is None:
                continue
            if name in self.clear:
                raise ValueError(f"Field {name!r} is both set and cleared.")
            changes[name] = value
        for name in self.clear:
            changes[name] = None
        return changes


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_amount_cents(text: str) -> int:
    """
    Convert a user-entered amount ("15", "15.5", "1,234.56") to cents.

    Raises
    ------
    ValueError
        If the amount is not a number, is negative, or has more than two
        decimal places.
    """
    cleaned = str(text).strip().replace(",", "")
    try:
        value = Decimal(cleaned)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {text!r}") from exc
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {text!r}")
    if value < 0:
        raise ValueError("Amount cannot be negative; use the transaction kind instead.")
    cents = value * 100
    if cents != cents.to_integral_value():
        raise ValueError(f"Amount {text!r} has more than two decimal places.")
    return int(cents)


def format_cents(amount_cents: int) -> str:
    """Format cents as a decimal string with two places (1500 -> '15.00')."""
    sign = "-" if amount_cents < 0 else ""
    amount_cents = abs(int(amount_cents))
    return f"{sign}{amount_cents // 100:,}.{amount_cents % 100:02d}"


def _tenant(engine: SyncEngine) -> str:
    return engine.resolver.resolve_tenant_id()


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------


def record_transaction(
    engine: SyncEngine,
    fields: TransactionInput,
    *,
    device_name: Optional[str] = None,
) -> LedgerRecord:
    """
    Record a new transaction in the local store.

    The transaction gets a client-generated id, version 1 and is marked
    dirty; it is pushed on the next sync cycle.

    Raises
    ------
    NoTenantResolvedError
        If no company is resolved (nothing is written).
    ValueError
        If the fields are invalid.
    """
    tenant_id = _tenant(engine)
    record = LedgerRecord(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        kind=fields.kind,
        date=fields.date,
        amount_cents=fields.amount_cents,
        description=fields.description,
        category=fields.category,
        time=fields.time,
        client_name=fields.client_name,
        expense_type=fields.expense_type,
        source_device=device_name,
    )
    with engine.locks.write(tenant_id):
        stored = _db_upsert_local(engine.cfg, record)
    logger.debug("Recorded transaction %s for tenant %s", stored.id, tenant_id)
    return stored


def get_transaction(engine: SyncEngine, record_id: str) -> LedgerRecord:
    """
    Load one transaction of the current company.

    Raises
    ------
    NotFoundError
        If the id does not exist for the company.
    """
    tenant_id = _tenant(engine)
    record = _db_get_record(engine.cfg, tenant_id, record_id)
    if record is None:
        raise NotFoundError(f"Transaction {record_id} not found.", record_id=record_id)
    return record


def edit_transaction(
    engine: SyncEngine,
    record_id: str,
    update: TransactionUpdate,
    *,
    device_name: Optional[str] = None,
) -> LedgerRecord:
    """
    Apply a partial update to a transaction.

    The version is bumped and the row marked dirty. Editing a row rejected
    by the remote clears its sync error so it is pushed again.

    Raises
    ------
    NotFoundError
        If the id does not exist for the company.
    ValueError
        If the transaction is deleted or the new values are invalid.
    """
    tenant_id = _tenant(engine)
    with engine.locks.write(tenant_id):
        current = _db_get_record(engine.cfg, tenant_id, record_id)
        if current is None:
            raise NotFoundError(f"Transaction {record_id} not found.", record_id=record_id)
        if current.is_deleted:
            raise ValueError(f"Transaction {record_id} is deleted and cannot be edited.")

        changes = update.changes()
        if device_name is not None:
            changes["source_device"] = device_name

        return _db_upsert_local(engine.cfg, replace(current, **changes))


def delete_transaction(engine: SyncEngine, record_id: str) -> LedgerRecord:
    """
    Soft-delete a transaction (tombstone, version bump, dirty).

    Raises
    ------
    NotFoundError
        If the id does not exist for the company.
    """
    tenant_id = _tenant(engine)
    with engine.locks.write(tenant_id):
        return _db_soft_delete_local(engine.cfg, tenant_id, record_id)


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def list_transactions(
    engine: SyncEngine,
    start: date,
    end: date,
    *,
    include_deleted: bool = False,
) -> pd.DataFrame:
    """Return the company's transactions between two dates (inclusive)."""
    if end < start:
        raise ValueError("End date cannot be before start date.")
    tenant_id = _tenant(engine)
    return _db_load_transactions(
        engine.cfg, tenant_id, start, end, include_deleted=include_deleted
    )


def _totals(df: pd.DataFrame, key: pd.Series, label: str) -> pd.DataFrame:
    columns = [label, "income_cents", "expense_cents", "net_cents"]
    if df.empty:
        return pd.DataFrame(columns=columns)

    work = df.assign(
        **{
            label: key,
            "income_cents": df["amount_cents"].where(df["kind"] == "income", 0),
            "expense_cents": df["amount_cents"].where(df["kind"] == "expense", 0),
        }
    )
    grouped = (
        work.groupby(label, sort=True)[["income_cents", "expense_cents"]]
        .sum()
        .reset_index()
    )
    grouped["net_cents"] = grouped["income_cents"] - grouped["expense_cents"]
    for col in ("income_cents", "expense_cents", "net_cents"):
        grouped[col] = grouped[col].astype("int64")
    return grouped[columns]


def daily_totals(engine: SyncEngine, start: date, end: date) -> pd.DataFrame:
    """Income, expense and net totals per day (days without rows omitted)."""
    df = list_transactions(engine, start, end)
    if df.empty:
        return _totals(df, pd.Series(dtype="object"), "day")
    return _totals(df, df["date"].dt.strftime("%Y-%m-%d"), "day")


def weekly_totals(engine: SyncEngine, start: date, end: date) -> pd.DataFrame:
    """Totals per ISO week, labelled 'YYYY-Www'."""
    df = list_transactions(engine, start, end)
    if df.empty:
        return _totals(df, pd.Series(dtype="object"), "week")
    iso = df["date"].dt.isocalendar()
    key = iso["year"].astype(str) + "-W" + iso["week"].astype(str).str.zfill(2)
    return _totals(df, key, "week")


def monthly_totals(engine: SyncEngine, start: date, end: date) -> pd.DataFrame:
    """Totals per calendar month, labelled 'YYYY-MM'."""
    df = list_transactions(engine, start, end)
    if df.empty:
        return _totals(df, pd.Series(dtype="object"), "month")
    return _totals(df, df["date"].dt.strftime("%Y-%m"), "month")


# ---------------------------------------------------------------------------
# Sync surface
# ---------------------------------------------------------------------------


def get_sync_status(engine: SyncEngine) -> SyncStatus:
    """
    Return the sync status of the current company for display.

    Without a resolved company, a faulted status with empty counters is
    returned; nothing is read or written.
    """
    try:
        tenant_id = _tenant(engine)
    except NoTenantResolvedError:
        return SyncStatus(
            pending_count=0,
            last_synced_at=None,
            faulted=True,
            state=SyncState.FAULTED,
            error_count=0,
        )
    return engine.get_sync_status(tenant_id)


def list_sync_errors(engine: SyncEngine) -> list[LedgerRecord]:
    """Transactions rejected by the remote and excluded from automatic sync."""
    return _db_list_sync_errors(engine.cfg, _tenant(engine))


def retry_sync_error(engine: SyncEngine, record_id: str) -> None:
    """Put a rejected transaction back into the automatic push queue."""
    tenant_id = _tenant(engine)
    with engine.locks.write(tenant_id):
        _db_clear_sync_error(engine.cfg, tenant_id, record_id)


def purge_tombstones(engine: SyncEngine) -> int:
    """Remove deleted transactions whose deletion the remote acknowledged."""
    tenant_id = _tenant(engine)
    with engine.locks.write(tenant_id):
        removed = _db_purge_synced_tombstones(engine.cfg, tenant_id)
    logger.info("Purged %d acknowledged tombstone(s) for tenant %s", removed, tenant_id)
    return removed


def login(engine: SyncEngine, company_id: str) -> None:
    """Remember the company after login and leave the faulted state."""
    engine.resolver.remember(company_id)
    engine.clear_fault()


def logout(engine: SyncEngine) -> None:
    """Cancel running cycles and forget the company."""
    engine.cancel(reason="logout")
    engine.resolver.logout()
