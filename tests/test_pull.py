from dataclasses import replace
from datetime import datetime, timezone

from conftest import TENANT_A, TENANT_B, make_record
from ledger_sync.db import ApplyOutcome, SyncCursor, get_cursor, get_record, upsert_local
from ledger_sync.locks import CancelToken
from ledger_sync.pull import pull_changes
from ledger_sync.push import push_pending


def shared_fields(record):
    return (
        record.id,
        record.tenant_id,
        record.kind,
        record.date,
        record.amount_cents,
        record.description,
        record.category,
        record.time,
        record.client_name,
        record.expense_type,
        record.version,
        record.deleted_at,
    )


def test_pull_walks_pages_and_advances_cursor(db_cfg, remote):
    for i in range(5):
        remote.seed(make_record(f"r{i}", version=1))

    result = pull_changes(db_cfg, remote, TENANT_A, page_size=2)

    assert result.ok
    assert result.caught_up
    assert result.pages == 3
    assert result.received == 5
    assert result.outcomes[ApplyOutcome.INSERTED] == 5
    last = SyncCursor(remote.rows["r4"].updated_at, "r4")
    assert result.cursor == last
    assert get_cursor(db_cfg, TENANT_A) == last

    positions = [after for _, after in remote.read_calls]
    assert positions[0] is None
    assert positions[1] == SyncCursor(remote.rows["r1"].updated_at, "r1")
    assert positions[2] == SyncCursor(remote.rows["r3"].updated_at, "r3")


def test_rows_sharing_a_timestamp_across_pages_are_all_merged(db_cfg, remote):
    at = remote.bulk_seed([make_record(f"r{i}", version=1) for i in range(5)])

    result = pull_changes(db_cfg, remote, TENANT_A, page_size=2)

    assert result.caught_up
    assert result.pages == 3
    assert result.received == 5
    assert result.outcomes[ApplyOutcome.INSERTED] == 5
    for i in range(5):
        assert get_record(db_cfg, TENANT_A, f"r{i}") is not None
    assert get_cursor(db_cfg, TENANT_A) == SyncCursor(at, "r4")


def test_row_added_later_with_an_already_seen_timestamp_is_pulled(db_cfg, remote):
    at = remote.bulk_seed([make_record("b", version=1), make_record("d", version=1)])
    pull_changes(db_cfg, remote, TENANT_A)

    remote.seed(make_record("e", version=1), at=at)
    result = pull_changes(db_cfg, remote, TENANT_A)

    assert result.received == 1
    assert get_record(db_cfg, TENANT_A, "e") is not None
    assert get_cursor(db_cfg, TENANT_A) == SyncCursor(at, "e")


def test_second_pull_only_asks_for_newer_rows(db_cfg, remote):
    remote.seed(make_record("a", version=1))
    pull_changes(db_cfg, remote, TENANT_A)
    remote.read_calls.clear()

    result = pull_changes(db_cfg, remote, TENANT_A)

    assert result.received == 0
    assert result.caught_up
    assert remote.read_calls == [(TENANT_A, SyncCursor(remote.rows["a"].updated_at, "a"))]


def test_pull_skips_rows_of_other_tenants(db_cfg, remote):
    remote.seed(make_record("mine", version=1))
    remote.foreign_rows = [
        replace(
            make_record("theirs", TENANT_B, version=1),
            updated_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
        )
    ]

    result = pull_changes(db_cfg, remote, TENANT_A)

    assert result.skipped_foreign == 1
    assert result.applied == 1
    assert get_record(db_cfg, TENANT_B, "theirs") is None
    assert get_record(db_cfg, TENANT_A, "theirs") is None
    assert get_cursor(db_cfg, TENANT_A) == SyncCursor(remote.rows["mine"].updated_at, "mine")


def test_transient_failure_keeps_cursor(db_cfg, remote):
    remote.seed(make_record("a", version=1))
    remote.fail_reads = 1

    result = pull_changes(db_cfg, remote, TENANT_A)

    assert not result.ok
    assert result.transient_error == "timeout"
    assert get_cursor(db_cfg, TENANT_A) is None
    assert get_record(db_cfg, TENANT_A, "a") is None


class StuckRemote:
    """Returns the same full page forever."""

    def __init__(self, rows):
        self.rows = rows
        self.calls = 0

    def read_changes_since(self, tenant_id, after, limit):
        self.calls += 1
        return list(self.rows)


def test_pull_stops_when_cursor_does_not_advance(db_cfg):
    at = datetime(2025, 5, 1, tzinfo=timezone.utc)
    rows = [replace(make_record(f"r{i}", version=1), updated_at=at) for i in range(2)]
    stuck = StuckRemote(rows)

    result = pull_changes(db_cfg, stuck, TENANT_A, page_size=2)

    assert stuck.calls == 2
    assert result.caught_up
    assert result.cursor == SyncCursor(at, "r1")


def test_cancelled_pull_reads_nothing(db_cfg, remote):
    remote.seed(make_record("a", version=1))
    token = CancelToken()
    token.cancel()

    result = pull_changes(db_cfg, remote, TENANT_A, cancel=token)

    assert result.cancelled
    assert remote.read_calls == []


def test_offline_create_then_remote_update_round_trip(db_cfg, remote):
    created = upsert_local(db_cfg, make_record("tx-1", amount_cents=1500, kind="expense"))
    assert created.dirty
    assert created.version == 1

    push = push_pending(db_cfg, remote, TENANT_A)
    assert push.accepted == 1
    synced = get_record(db_cfg, TENANT_A, "tx-1")
    assert not synced.dirty
    assert synced.version == 1

    server = remote.server_update("tx-1", amount_cents=1800, description="Corrected")

    pull = pull_changes(db_cfg, remote, TENANT_A)

    assert pull.outcomes[ApplyOutcome.UPDATED] == 1
    local = get_record(db_cfg, TENANT_A, "tx-1")
    assert shared_fields(local) == shared_fields(server)
    assert local.version == 2
    assert local.updated_at == server.updated_at
    assert not local.dirty


def test_stale_remote_row_does_not_overwrite_two_offline_edits(db_cfg, remote):
    upsert_local(db_cfg, make_record("tx-1", amount_cents=1000))
    upsert_local(db_cfg, make_record("tx-1", amount_cents=1200))
    remote.seed(make_record("tx-1", version=1, amount_cents=900))

    result = pull_changes(db_cfg, remote, TENANT_A)

    assert result.outcomes[ApplyOutcome.IGNORED_STALE] == 1
    local = get_record(db_cfg, TENANT_A, "tx-1")
    assert local.version == 2
    assert local.amount_cents == 1200
    assert local.dirty
