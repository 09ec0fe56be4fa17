# Ledger Sync - Offline-first ledger synchronization for SMBs
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Remote store gateway.

The remote store is the canonical, multi-tenant ledger. The sync core only
consumes its contract (``RemoteStore``):

- ``write(tenant_id, records)`` returns one ``WriteResult`` per record the
  server reported on: accepted (with the version it stored), conflict (with
  the server's row) or rejected (with a reason).
- ``read_changes_since(tenant_id, after, limit)`` returns rows strictly
  after the ``(updated_at, id)`` pair ``after``, ordered by ``updated_at``
  then ``id``.
- ``read_record(tenant_id, record_id)`` returns a single row or None.

All three must be safe to retry. Gateways raise ``TransientNetworkError``
for anything worth retrying later and ``ValidationError`` when the remote
rejected a request as malformed. A single-row write refused by a version
constraint may surface as ``ConflictError`` instead of a conflict result.

``SupabaseRemoteStore`` implements the contract against a Supabase
(PostgREST) backend with ``httpx``. Writes go through a server-side function
that compares versions and refuses stale writes instead of overwriting.
The remote table keeps the column names of the mobile client (``company_id``,
``type``, ``clientname``, ``expensetype``).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol, Sequence

import httpx

from .db import LedgerRecord, SyncCursor, parse_timestamp, validate_record
from .errors import ConflictError, TransientNetworkError, ValidationError
from .logging_setup import get_logger

logger = get_logger("ledger_sync.remote")

RemoteRecord = LedgerRecord
"""Rows read from the remote store (always clean, server `updated_at`)."""


class WriteStatus(str, Enum):
    ACCEPTED = "accepted"
    CONFLICT = "conflict"
    REJECTED = "rejected"


@dataclass(frozen=True)
class WriteResult:
    """
    Outcome of writing one record to the remote store.

    Attributes
    ----------
    record_id:
        Id of the record the result refers to.
    status:
        ACCEPTED, CONFLICT or REJECTED.
    new_version:
        Version stored by the server (ACCEPTED only).
    server_record:
        The server's current row (CONFLICT only, when returned).
    reason:
        Validation message (REJECTED only).
    """

    record_id: str
    status: WriteStatus
    new_version: Optional[int] = None
    server_record: Optional[RemoteRecord] = None
    reason: Optional[str] = None

    @classmethod
    def accepted(cls, record_id: str, new_version: int) -> "WriteResult":
        return cls(record_id=record_id, status=WriteStatus.ACCEPTED, new_version=new_version)

    @classmethod
    def conflict(
        cls, record_id: str, server_record: Optional[RemoteRecord] = None
    ) -> "WriteResult":
        return cls(
            record_id=record_id, status=WriteStatus.CONFLICT, server_record=server_record
        )

    @classmethod
    def rejected(cls, record_id: str, reason: str) -> "WriteResult":
        return cls(record_id=record_id, status=WriteStatus.REJECTED, reason=reason)


class RemoteStore(Protocol):
    """Read/write contract of the canonical remote store."""

    def write(self, tenant_id: str, records: Sequence[LedgerRecord]) -> list[WriteResult]: ...

    def read_changes_since(
        self, tenant_id: str, after: Optional[SyncCursor], limit: int
    ) -> list[RemoteRecord]: ...

    def read_record(self, tenant_id: str, record_id: str) -> Optional[RemoteRecord]: ...


@dataclass(frozen=True)
class Session:
    """Authenticated session used for the membership lookup."""

    access_token: str
    user_id: str


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _quoted(value: str) -> str:
    """Quote a value for a PostgREST logical filter (``or=(...)``)."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def record_to_payload(record: LedgerRecord) -> dict[str, Any]:
    """
    Serialize a record for the remote table.

    Local-only fields (dirty, sync_error, created_at) are not sent;
    ``updated_at`` is set by the server.
    """
    return {
        "id": record.id,
        "company_id": record.tenant_id,
        "type": record.kind,
        "date": record.date.isoformat(),
        "amount_cents": record.amount_cents,
        "description": record.description,
        "category": record.category,
        "time": record.time,
        "clientname": record.client_name,
        "expensetype": record.expense_type,
        "source_device": record.source_device,
        "version": record.version,
        "deleted_at": _iso(record.deleted_at),
    }


def payload_to_record(row: Any) -> RemoteRecord:
    """
    Parse a remote row into a clean ``LedgerRecord``.

    Raises
    ------
    ValidationError
        If the row is missing fields or holds invalid values.
    """
    if not isinstance(row, dict):
        raise ValidationError("Remote row is not a JSON object.")
    try:
        amount = row["amount_cents"]
        if isinstance(amount, float) and amount.is_integer():
            amount = int(amount)
        record = LedgerRecord(
            id=str(row["id"]),
            tenant_id=str(row["company_id"]),
            kind=row["type"],
            date=date.fromisoformat(str(row["date"])[:10]),
            amount_cents=amount,
            description=row.get("description"),
            category=row.get("category"),
            time=row.get("time"),
            client_name=row.get("clientname"),
            expense_type=row.get("expensetype"),
            source_device=row.get("source_device"),
            version=int(row["version"]),
            updated_at=parse_timestamp(row.get("updated_at")),
            deleted_at=parse_timestamp(row.get("deleted_at")),
            dirty=False,
        )
        validate_record(record)
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError(
            f"Malformed remote row: {exc}", record_id=row.get("id")
        ) from exc
    return record


def _parse_write_result(item: Any) -> Optional[WriteResult]:
    if not isinstance(item, dict) or "id" not in item:
        logger.warning("Ignoring malformed write result from remote")
        return None

    record_id = str(item["id"])
    status = str(item.get("status", "")).lower()

    if status == WriteStatus.ACCEPTED.value:
        try:
            return WriteResult.accepted(record_id, int(item["new_version"]))
        except (KeyError, TypeError, ValueError):
            logger.warning("Accepted result for %s has no valid new_version", record_id)
            return None

    if status == WriteStatus.CONFLICT.value:
        server_row = item.get("server_record")
        server_record = None
        if server_row is not None:
            try:
                server_record = payload_to_record(server_row)
            except ValidationError:
                logger.warning("Conflict result for %s carries an unreadable row", record_id)
        return WriteResult.conflict(record_id, server_record)

    if status == WriteStatus.REJECTED.value:
        return WriteResult.rejected(record_id, str(item.get("reason") or "rejected by remote"))

    logger.warning("Unknown write status %r for %s", status, record_id)
    return None


# ---------------------------------------------------------------------------
# Supabase / PostgREST adapter
# ---------------------------------------------------------------------------

_TRANSIENT_STATUS_CODES = frozenset({401, 403, 408, 429})


class SupabaseRemoteStore:
    """
    ``RemoteStore`` implementation over the Supabase REST API.

    Parameters
    ----------
    base_url:
        Project URL, e.g. ``https://xyz.supabase.co``.
    api_key:
        Anonymous or service API key, sent as ``apikey`` header.
    table:
        Remote ledger table.
    push_function:
        Server-side function applying versioned writes.
    membership_table:
        Table mapping users to companies.
    timeout:
        Timeout in seconds applied to every request.
    client:
        Optional preconfigured ``httpx.Client`` (tests pass one built on
        ``httpx.MockTransport``).
    access_token:
        Optional user access token; defaults to the API key.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        table: str = "transactions",
        push_function: str = "sync_push_transactions",
        membership_table: str = "company_members",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
        access_token: Optional[str] = None,
    ) -> None:
        self.table = table
        self.push_function = push_function
        self.membership_table = membership_table
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
        )
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {access_token or api_key}",
            "Accept": "application/json",
        }

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "SupabaseRemoteStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        headers: Optional[dict[str, str]] = None,
        **kwargs: Any,
    ) -> Any:
        """
        Send a request and return the decoded JSON body.

        Raises
        ------
        TransientNetworkError
            On timeouts, transport errors, 5xx/408/429/401/403 responses and
            undecodable bodies.
        ValidationError
            On other 4xx responses.
        """
        merged = dict(self._headers)
        if headers:
            merged.update(headers)

        try:
            response = self._client.request(method, path, headers=merged, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(
                f"Remote request timed out: {method} {path}", path=path
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientNetworkError(
                f"Remote request failed: {method} {path}: {exc}", path=path
            ) from exc

        status_code = response.status_code
        if status_code >= 500 or status_code in _TRANSIENT_STATUS_CODES:
            raise TransientNetworkError(
                f"Remote returned HTTP {status_code} for {method} {path}",
                path=path,
                status_code=status_code,
            )
        if status_code >= 400:
            raise ValidationError(
                f"Remote rejected {method} {path} with HTTP {status_code}: "
                f"{response.text[:200]}",
                path=path,
                status_code=status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise TransientNetworkError(
                f"Remote returned an undecodable body for {method} {path}", path=path
            ) from exc

    # -- RemoteStore -------------------------------------------------------

    def write(self, tenant_id: str, records: Sequence[LedgerRecord]) -> list[WriteResult]:
        if not records:
            return []
        for record in records:
            if record.tenant_id != tenant_id:
                msg = f"Record {record.id} does not belong to tenant {tenant_id}."
                raise ValueError(msg)

        body = {
            "p_company_id": tenant_id,
            "p_records": [record_to_payload(r) for r in records],
        }
        try:
            data = self._request("POST", f"/rest/v1/rpc/{self.push_function}", json=body)
        except ValidationError as exc:
            # 409 on a single row: the unique/version constraint refused it.
            if exc.context.get("status_code") == 409 and len(records) == 1:
                raise ConflictError(
                    f"Remote refused record {records[0].id} as conflicting",
                    record_id=records[0].id,
                    tenant_id=tenant_id,
                ) from exc
            raise
        if not isinstance(data, list):
            raise TransientNetworkError(
                "Remote write returned an unexpected body", tenant_id=tenant_id
            )

        sent_ids = {r.id for r in records}
        results: list[WriteResult] = []
        for item in data:
            result = _parse_write_result(item)
            if result is None:
                continue
            if result.record_id not in sent_ids:
                logger.warning("Remote reported on unknown record %s", result.record_id)
                continue
            results.append(result)
        return results

    def read_changes_since(
        self, tenant_id: str, after: Optional[SyncCursor], limit: int
    ) -> list[RemoteRecord]:
        params: list[tuple[str, str]] = [
            ("select", "*"),
            ("company_id", f"eq.{tenant_id}"),
        ]
        if after is not None:
            at = _quoted(_iso(after.updated_at))
            params.append(
                (
                    "or",
                    f"(updated_at.gt.{at},"
                    f"and(updated_at.eq.{at},id.gt.{_quoted(after.record_id)}))",
                )
            )
        params.append(("order", "updated_at.asc,id.asc"))
        params.append(("limit", str(int(limit))))

        data = self._request("GET", f"/rest/v1/{self.table}", params=params)
        if not isinstance(data, list):
            raise TransientNetworkError(
                "Remote read returned an unexpected body", tenant_id=tenant_id
            )

        records: list[RemoteRecord] = []
        for row in data:
            try:
                records.append(payload_to_record(row))
            except ValidationError as exc:
                logger.warning("Skipping unreadable remote row %s", exc.context.get("record_id"))
        return records

    def read_record(self, tenant_id: str, record_id: str) -> Optional[RemoteRecord]:
        params = [
            ("select", "*"),
            ("id", f"eq.{record_id}"),
            ("company_id", f"eq.{tenant_id}"),
            ("limit", "1"),
        ]
        data = self._request("GET", f"/rest/v1/{self.table}", params=params)
        if not data:
            return None
        return payload_to_record(data[0])

    # -- Identity ----------------------------------------------------------

    def lookup_tenant_id(self, session: Session) -> Optional[str]:
        """Return the company of the session's user, or None if not a member."""
        params = [
            ("select", "company_id"),
            ("user_id", f"eq.{session.user_id}"),
            ("limit", "1"),
        ]
        data = self._request(
            "GET",
            f"/rest/v1/{self.membership_table}",
            params=params,
            headers={"Authorization": f"Bearer {session.access_token}"},
        )
        if not data or not isinstance(data, list):
            return None
        value = data[0].get("company_id") if isinstance(data[0], dict) else None
        return None if value is None else str(value)
