import json
from datetime import date, datetime, timezone

import httpx
import pytest

from conftest import TENANT_A, TENANT_B, make_record
from ledger_sync.db import SyncCursor
from ledger_sync.errors import ConflictError, TransientNetworkError, ValidationError
from ledger_sync.remote import (
    Session,
    SupabaseRemoteStore,
    WriteStatus,
    payload_to_record,
    record_to_payload,
)


def make_store(handler) -> SupabaseRemoteStore:
    client = httpx.Client(
        transport=httpx.MockTransport(handler),
        base_url="https://ledger.example.test",
    )
    return SupabaseRemoteStore(
        "https://ledger.example.test", "anon-key", client=client
    )


def server_row(record_id="rec-1", version=3, **overrides):
    row = {
        "id": record_id,
        "company_id": TENANT_A,
        "type": "income",
        "date": "2025-03-10",
        "amount_cents": 4200,
        "description": "Invoice 12",
        "category": None,
        "time": "08:15",
        "clientname": "ACME Corp",
        "expensetype": None,
        "source_device": "laptop",
        "version": version,
        "updated_at": "2025-03-11T09:00:00.123456Z",
        "deleted_at": None,
    }
    row.update(overrides)
    return row


def test_record_to_payload_uses_remote_column_names():
    payload = record_to_payload(
        make_record(version=2, source_device="phone", client_name="ACME Corp")
    )

    assert payload["company_id"] == TENANT_A
    assert payload["type"] == "expense"
    assert payload["date"] == "2025-03-10"
    assert payload["version"] == 2
    assert payload["clientname"] == "ACME Corp"
    assert payload["expensetype"] is None
    assert "client_name" not in payload
    assert "dirty" not in payload
    assert "updated_at" not in payload


def test_payload_to_record_parses_timestamps_and_is_clean():
    record = payload_to_record(server_row())

    assert record.date == date(2025, 3, 10)
    assert record.updated_at == datetime(2025, 3, 11, 9, 0, 0, 123456, tzinfo=timezone.utc)
    assert record.dirty is False
    assert record.kind == "income"
    assert record.time == "08:15"
    assert record.client_name == "ACME Corp"
    assert record.expense_type is None


@pytest.mark.parametrize(
    "row",
    [
        "not a dict",
        {"id": "x"},
        server_row(type="transfer"),
        server_row(amount_cents=-5),
    ],
)
def test_payload_to_record_rejects_malformed_rows(row):
    with pytest.raises(ValidationError):
        payload_to_record(row)


def test_write_posts_to_push_function_and_parses_results():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        seen["apikey"] = request.headers["apikey"]
        return httpx.Response(
            200,
            json=[
                {"id": "a", "status": "accepted", "new_version": 2},
                {"id": "b", "status": "conflict", "server_record": server_row("b", 5)},
                {"id": "c", "status": "rejected", "reason": "amount too large"},
                {"id": "zzz", "status": "accepted", "new_version": 1},
                {"status": "accepted"},
            ],
        )

    store = make_store(handler)
    records = [make_record("a", version=2), make_record("b"), make_record("c")]
    results = store.write(TENANT_A, records)

    assert seen["path"] == "/rest/v1/rpc/sync_push_transactions"
    assert seen["apikey"] == "anon-key"
    assert seen["body"]["p_company_id"] == TENANT_A
    assert [r["id"] for r in seen["body"]["p_records"]] == ["a", "b", "c"]

    by_id = {r.record_id: r for r in results}
    assert set(by_id) == {"a", "b", "c"}
    assert by_id["a"].status is WriteStatus.ACCEPTED
    assert by_id["a"].new_version == 2
    assert by_id["b"].status is WriteStatus.CONFLICT
    assert by_id["b"].server_record.version == 5
    assert by_id["c"].status is WriteStatus.REJECTED
    assert by_id["c"].reason == "amount too large"


def test_write_refuses_records_of_another_tenant():
    store = make_store(lambda request: httpx.Response(200, json=[]))
    with pytest.raises(ValueError):
        store.write(TENANT_A, [make_record(tenant_id=TENANT_B)])


def test_read_changes_since_resumes_after_cursor_pair():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json=[server_row("a"), {"id": "broken"}, server_row("b")])

    store = make_store(handler)
    after = SyncCursor(datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc), "rec-7")
    rows = store.read_changes_since(TENANT_A, after, 100)

    assert seen["params"]["company_id"] == f"eq.{TENANT_A}"
    assert seen["params"]["or"] == (
        '(updated_at.gt."2025-03-01T12:00:00+00:00",'
        'and(updated_at.eq."2025-03-01T12:00:00+00:00",id.gt."rec-7"))'
    )
    assert "updated_at" not in seen["params"]
    assert seen["params"]["order"] == "updated_at.asc,id.asc"
    assert seen["params"]["limit"] == "100"
    assert [r.id for r in rows] == ["a", "b"]


def test_read_changes_since_without_cursor_has_no_filter():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json=[])

    assert make_store(handler).read_changes_since(TENANT_A, None, 10) == []
    assert "or" not in seen["params"]


@pytest.mark.parametrize("status_code", [500, 503, 429, 408, 401])
def test_retryable_statuses_raise_transient(status_code):
    store = make_store(lambda request: httpx.Response(status_code, text="busy"))
    with pytest.raises(TransientNetworkError):
        store.read_changes_since(TENANT_A, None, 10)


def test_client_errors_raise_validation_error():
    store = make_store(lambda request: httpx.Response(400, text="bad column"))
    with pytest.raises(ValidationError) as excinfo:
        store.write(TENANT_A, [make_record()])
    assert excinfo.value.context["status_code"] == 400


def test_transport_failures_raise_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientNetworkError):
        make_store(handler).read_record(TENANT_A, "rec-1")


def test_timeouts_raise_transient():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(TransientNetworkError):
        make_store(handler).read_changes_since(TENANT_A, None, 10)


def test_undecodable_body_is_transient():
    store = make_store(lambda request: httpx.Response(200, text="<html>proxy</html>"))
    with pytest.raises(TransientNetworkError):
        store.read_changes_since(TENANT_A, None, 10)


def test_read_record_returns_none_when_missing():
    store = make_store(lambda request: httpx.Response(200, json=[]))
    assert store.read_record(TENANT_A, "missing") is None


def test_lookup_tenant_id_uses_session_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json=[{"company_id": TENANT_B}])

    store = make_store(handler)
    tenant = store.lookup_tenant_id(Session(access_token="user-token", user_id="u-1"))

    assert tenant == TENANT_B
    assert seen["auth"] == "Bearer user-token"
    assert seen["path"] == "/rest/v1/company_members"
    assert seen["params"]["user_id"] == "eq.u-1"


def test_lookup_tenant_id_returns_none_for_non_members():
    store = make_store(lambda request: httpx.Response(200, json=[]))
    assert store.lookup_tenant_id(Session(access_token="t", user_id="u")) is None


def test_single_row_conflict_status_raises_conflict_error():
    store = make_store(lambda request: httpx.Response(409, text="version mismatch"))
    with pytest.raises(ConflictError) as excinfo:
        store.write(TENANT_A, [make_record("rec-9")])
    assert excinfo.value.record_id == "rec-9"


def test_batch_conflict_status_is_a_validation_error():
    store = make_store(lambda request: httpx.Response(409, text="version mismatch"))
    with pytest.raises(ValidationError):
        store.write(TENANT_A, [make_record("a"), make_record("b")])
