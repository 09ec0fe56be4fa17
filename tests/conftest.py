from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import pytest

from ledger_sync.company import CompanyResolver
from ledger_sync.db import DatabaseConfig, LedgerRecord, SyncCursor
from ledger_sync.engine import SyncEngine
from ledger_sync.errors import TransientNetworkError, ValidationError
from ledger_sync.remote import WriteResult

TENANT_A = "11111111-1111-4111-8111-111111111111"
TENANT_B = "22222222-2222-4222-8222-222222222222"


def make_tmp_db_cfg(tmp_path) -> DatabaseConfig:
    """Helper to build a DatabaseConfig pointing to a temporary SQLite file."""
    db_path = tmp_path / "test_ledger.sqlite"
    return DatabaseConfig(engine="sqlite", path=db_path)


def make_record(
    record_id: str = "rec-1",
    tenant_id: str = TENANT_A,
    *,
    kind: str = "expense",
    amount_cents: int = 1500,
    on: date = date(2025, 3, 10),
    description: Optional[str] = "Office supplies",
    **extra,
) -> LedgerRecord:
    return LedgerRecord(
        id=record_id,
        tenant_id=tenant_id,
        kind=kind,
        date=on,
        amount_cents=amount_cents,
        description=description,
        **extra,
    )


def _same_content(a: LedgerRecord, b: LedgerRecord) -> bool:
    return (
        a.kind == b.kind
        and a.date == b.date
        and a.amount_cents == b.amount_cents
        and a.description == b.description
        and a.category == b.category
        and a.time == b.time
        and a.client_name == b.client_name
        and a.expense_type == b.expense_type
        and (a.deleted_at is None) == (b.deleted_at is None)
    )


class FakeRemoteStore:
    """
    In-memory remote store following the versioned write contract.

    A write is accepted when its version is greater than the stored one, or
    equal with the same content (replay of an already applied write).
    Anything else is a conflict carrying the server row.
    """

    def __init__(self) -> None:
        self.rows: dict[str, LedgerRecord] = {}
        self.write_calls: list[tuple[str, list[str]]] = []
        self.read_calls: list[tuple[str, Optional[SyncCursor]]] = []
        self.record_reads: list[str] = []
        self.applied_writes = 0
        self.fail_writes = 0
        self.fail_reads = 0
        self.lose_next_ack = False
        self.reject_ids: dict[str, str] = {}
        self.batch_poison_ids: set[str] = set()
        self.foreign_rows: list[LedgerRecord] = []
        self._now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    @property
    def network_calls(self) -> int:
        return len(self.write_calls) + len(self.read_calls) + len(self.record_reads)

    def _tick(self) -> datetime:
        self._now += timedelta(seconds=1)
        return self._now

    def _store(self, record: LedgerRecord, at: Optional[datetime] = None) -> LedgerRecord:
        stored = replace(
            record,
            dirty=False,
            sync_error=False,
            sync_error_kind=None,
            sync_error_message=None,
            created_at=None,
            updated_at=at or self._tick(),
        )
        self.rows[record.id] = stored
        self.applied_writes += 1
        return stored

    # -- test helpers ------------------------------------------------------

    def seed(self, record: LedgerRecord, at: Optional[datetime] = None) -> LedgerRecord:
        return self._store(record, at)

    def bulk_seed(self, records) -> datetime:
        """Store several rows in one server write: they share one updated_at."""
        at = self._tick()
        for record in records:
            self._store(record, at)
        return at

    def server_update(self, record_id: str, **changes) -> LedgerRecord:
        """Simulate another device updating a row (version + 1)."""
        current = self.rows[record_id]
        return self._store(replace(current, version=current.version + 1, **changes))

    # -- RemoteStore -------------------------------------------------------

    def write(self, tenant_id, records):
        self.write_calls.append((tenant_id, [r.id for r in records]))
        if self.fail_writes:
            self.fail_writes -= 1
            raise TransientNetworkError("network unreachable")
        if len(records) > 1 and any(r.id in self.batch_poison_ids for r in records):
            raise ValidationError("batch rejected", status_code=400)

        results = []
        for record in records:
            assert record.tenant_id == tenant_id
            if record.id in self.reject_ids or record.id in self.batch_poison_ids:
                reason = self.reject_ids.get(record.id, "invalid row")
                results.append(WriteResult.rejected(record.id, reason))
                continue

            current = self.rows.get(record.id)
            if current is None or record.version > current.version:
                self._store(record)
                results.append(WriteResult.accepted(record.id, record.version))
            elif record.version == current.version and _same_content(record, current):
                results.append(WriteResult.accepted(record.id, record.version))
            else:
                results.append(WriteResult.conflict(record.id, current))

        if self.lose_next_ack:
            self.lose_next_ack = False
            raise TransientNetworkError("connection reset before acknowledgment")
        return results

    def read_changes_since(self, tenant_id, after, limit):
        self.read_calls.append((tenant_id, after))
        if self.fail_reads:
            self.fail_reads -= 1
            raise TransientNetworkError("timeout")
        rows = [
            r
            for r in self.rows.values()
            if r.tenant_id == tenant_id
            and (after is None or (r.updated_at, r.id) > (after.updated_at, after.record_id))
        ]
        rows.sort(key=lambda r: (r.updated_at, r.id))
        page = rows[:limit]
        if self.foreign_rows and page:
            page = page + self.foreign_rows
        return page

    def read_record(self, tenant_id, record_id):
        self.record_reads.append(record_id)
        row = self.rows.get(record_id)
        if row is None or row.tenant_id != tenant_id:
            return None
        return row


class StaticSource:
    """Identity source returning a fixed value and counting calls."""

    name = "static"

    def __init__(self, value: Optional[str]) -> None:
        self.value = value
        self.calls = 0

    def get_tenant_id(self) -> Optional[str]:
        self.calls += 1
        return self.value


@pytest.fixture
def db_cfg(tmp_path) -> DatabaseConfig:
    return make_tmp_db_cfg(tmp_path)


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def engine(db_cfg, remote) -> SyncEngine:
    resolver = CompanyResolver([StaticSource(TENANT_A)])
    return SyncEngine(db_cfg, remote, resolver, clock=lambda: 0.0)
