from conftest import TENANT_A, TENANT_B, make_record
from ledger_sync.db import (
    apply_remote,
    count_sync_errors,
    get_record,
    list_dirty,
    soft_delete_local,
    upsert_local,
)
from ledger_sync.errors import ConflictError
from ledger_sync.locks import CancelToken
from ledger_sync.push import push_pending


def test_push_marks_accepted_rows_clean(db_cfg, remote):
    upsert_local(db_cfg, make_record("a"))
    upsert_local(db_cfg, make_record("b", amount_cents=99))

    result = push_pending(db_cfg, remote, TENANT_A)

    assert result.ok
    assert result.attempted == 2
    assert result.accepted == 2
    assert list_dirty(db_cfg, TENANT_A) == []
    assert remote.rows["b"].amount_cents == 99
    assert get_record(db_cfg, TENANT_A, "a").version == 1


def test_push_with_nothing_dirty_makes_no_network_call(db_cfg, remote):
    result = push_pending(db_cfg, remote, TENANT_A)

    assert result.attempted == 0
    assert remote.network_calls == 0


def test_push_sends_in_batches(db_cfg, remote):
    for i in range(5):
        upsert_local(db_cfg, make_record(f"r{i}"))

    push_pending(db_cfg, remote, TENANT_A, batch_size=2)

    assert [len(ids) for _, ids in remote.write_calls] == [2, 2, 1]
    assert remote.write_calls[0][1] == ["r0", "r1"]


def test_lost_acknowledgment_is_replayed_once(db_cfg, remote):
    upsert_local(db_cfg, make_record("a"))
    remote.lose_next_ack = True

    first = push_pending(db_cfg, remote, TENANT_A)

    assert not first.ok
    assert get_record(db_cfg, TENANT_A, "a").dirty

    second = push_pending(db_cfg, remote, TENANT_A)

    assert second.ok
    assert second.accepted == 1
    assert remote.applied_writes == 1
    assert not get_record(db_cfg, TENANT_A, "a").dirty


def test_transient_failure_leaves_rows_dirty_and_unflagged(db_cfg, remote):
    upsert_local(db_cfg, make_record("a"))
    upsert_local(db_cfg, make_record("b"))
    remote.fail_writes = 1

    result = push_pending(db_cfg, remote, TENANT_A)

    assert result.transient_error == "network unreachable"
    assert result.accepted == 0
    assert [r.id for r in list_dirty(db_cfg, TENANT_A)] == ["a", "b"]
    assert count_sync_errors(db_cfg, TENANT_A) == 0


def test_rejected_row_is_flagged_and_excluded(db_cfg, remote):
    upsert_local(db_cfg, make_record("good"))
    upsert_local(db_cfg, make_record("bad"))
    remote.reject_ids["bad"] = "amount exceeds limit"

    result = push_pending(db_cfg, remote, TENANT_A)

    assert result.accepted == 1
    assert result.rejected == 1
    flagged = get_record(db_cfg, TENANT_A, "bad")
    assert flagged.sync_error
    assert flagged.sync_error_kind == "validation"
    assert flagged.sync_error_message == "amount exceeds limit"
    assert list_dirty(db_cfg, TENANT_A) == []

    # Not retried automatically.
    remote.write_calls.clear()
    push_pending(db_cfg, remote, TENANT_A)
    assert remote.write_calls == []


def test_rejected_batch_is_split_row_by_row(db_cfg, remote):
    for record_id in ("a", "poison", "c"):
        upsert_local(db_cfg, make_record(record_id))
    remote.batch_poison_ids.add("poison")

    result = push_pending(db_cfg, remote, TENANT_A)

    assert result.accepted == 2
    assert result.rejected == 1
    assert [ids for _, ids in remote.write_calls] == [
        ["a", "poison", "c"],
        ["a"],
        ["poison"],
        ["c"],
    ]
    assert get_record(db_cfg, TENANT_A, "poison").sync_error
    assert not get_record(db_cfg, TENANT_A, "c").dirty


def test_conflict_with_newer_remote_discards_local_edit(db_cfg, remote):
    base = remote.seed(make_record("a", version=1, amount_cents=100))
    apply_remote(db_cfg, TENANT_A, base)
    remote.server_update("a", amount_cents=200)
    remote.server_update("a", amount_cents=300)

    upsert_local(db_cfg, make_record("a", amount_cents=150))  # local v2

    result = push_pending(db_cfg, remote, TENANT_A)

    assert result.remote_won == 1
    stored = get_record(db_cfg, TENANT_A, "a")
    assert stored.amount_cents == 300
    assert stored.version == 3
    assert not stored.dirty
    assert remote.rows["a"].amount_cents == 300


def test_conflict_on_equal_version_keeps_local_edit_and_resends(db_cfg, remote):
    base = remote.seed(make_record("a", version=1, amount_cents=100))
    apply_remote(db_cfg, TENANT_A, base)
    remote.server_update("a", amount_cents=200)  # remote v2

    upsert_local(db_cfg, make_record("a", amount_cents=150))  # local v2

    result = push_pending(db_cfg, remote, TENANT_A)

    assert result.remote_won == 0
    assert result.accepted == 1
    assert remote.record_reads == ["a"]
    assert remote.rows["a"].amount_cents == 150
    assert remote.rows["a"].version == 3
    stored = get_record(db_cfg, TENANT_A, "a")
    assert stored.version == 3
    assert not stored.dirty


def test_tombstone_is_pushed_as_deletion(db_cfg, remote):
    upsert_local(db_cfg, make_record("a"))
    push_pending(db_cfg, remote, TENANT_A)

    soft_delete_local(db_cfg, TENANT_A, "a")
    result = push_pending(db_cfg, remote, TENANT_A)

    assert result.accepted == 1
    assert remote.rows["a"].deleted_at is not None
    assert remote.rows["a"].version == 2


def test_push_only_sends_the_given_tenant(db_cfg, remote):
    upsert_local(db_cfg, make_record("a", TENANT_A))
    upsert_local(db_cfg, make_record("b", TENANT_B))

    push_pending(db_cfg, remote, TENANT_A)

    assert remote.write_calls == [(TENANT_A, ["a"])]
    assert get_record(db_cfg, TENANT_B, "b").dirty


def test_cancelled_push_sends_nothing(db_cfg, remote):
    upsert_local(db_cfg, make_record("a"))
    token = CancelToken()
    token.cancel("logout")

    result = push_pending(db_cfg, remote, TENANT_A, cancel=token)

    assert result.cancelled
    assert remote.write_calls == []
    assert get_record(db_cfg, TENANT_A, "a").dirty


def test_conflict_raised_by_gateway_is_resolved(db_cfg, remote):
    base = remote.seed(make_record("a", version=1, amount_cents=100))
    apply_remote(db_cfg, TENANT_A, base)
    remote.server_update("a", amount_cents=200)
    remote.server_update("a", amount_cents=300)
    upsert_local(db_cfg, make_record("a", amount_cents=150))

    def refusing_write(tenant_id, records):
        raise ConflictError("version mismatch", record_id=records[0].id)

    remote.write = refusing_write

    result = push_pending(db_cfg, remote, TENANT_A)

    assert result.remote_won == 1
    assert get_record(db_cfg, TENANT_A, "a").amount_cents == 300
    assert not get_record(db_cfg, TENANT_A, "a").dirty
