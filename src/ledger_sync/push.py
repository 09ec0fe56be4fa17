# Ledger Sync - Offline-first ledger synchronization for SMBs
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Push reconciler: send a tenant's dirty rows to the remote store.

Rows are read as a snapshot (oldest first) and sent in small batches, one
batch in flight at a time for a tenant. For each row the remote reports on:

- accepted: the local row is marked synced with the accepted version. If a
  newer local edit landed meanwhile, the row stays dirty.
- conflict: the row is fetched again from the remote and the conflict
  policy applied. If the remote wins, the local edit is discarded. If the
  local edit wins, its version is raised above the server's and it is
  re-sent once, alone. A second conflict leaves it dirty for the next cycle.
- rejected: the row is flagged ``sync_error`` and excluded from automatic
  pushes until the user acts.

A batch refused as a whole (``ValidationError``) is split and sent row by
row so only the malformed rows get flagged. A ``ConflictError`` raised by
the gateway is handled like a conflict result. A ``TransientNetworkError``
stops the push: nothing changes locally and the rows are retried later.
Pushing the same row twice is harmless: the remote accepts a replay of the
version it already stored.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional, Sequence

from . import db
from .conflict import Resolution, resolve_conflict
from .db import DatabaseConfig, LedgerRecord
from .errors import ConflictError, NotFoundError, TransientNetworkError, ValidationError
from .locks import CancelToken, TenantLocks
from .logging_setup import get_logger
from .remote import RemoteStore, WriteResult, WriteStatus

logger = get_logger("ledger_sync.push")

DEFAULT_BATCH_SIZE = 25


@dataclass
class PushResult:
    """Counters for one push run of a tenant."""

    tenant_id: str
    attempted: int = 0
    accepted: int = 0
    rejected: int = 0
    remote_won: int = 0
    deferred: int = 0
    corrupted: int = 0
    cancelled: bool = False
    transient_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.transient_error is None


def _chunks(records: Sequence[LedgerRecord], size: int) -> Iterator[Sequence[LedgerRecord]]:
    for start in range(0, len(records), size):
        yield records[start : start + size]


class _PushRun:
    """State of one push run; not reused across runs."""

    def __init__(
        self,
        cfg: DatabaseConfig,
        remote: RemoteStore,
        tenant_id: str,
        locks: TenantLocks,
        cancel: Optional[CancelToken],
    ) -> None:
        self.cfg = cfg
        self.remote = remote
        self.tenant_id = tenant_id
        self.locks = locks
        self.cancel = cancel
        self.result = PushResult(tenant_id=tenant_id)

    def _cancelled(self) -> bool:
        if self.cancel is not None and self.cancel.is_cancelled:
            self.result.cancelled = True
            return True
        return False

    # -- sending -----------------------------------------------------------

    def push_batch(self, batch: Sequence[LedgerRecord]) -> None:
        self.result.attempted += len(batch)
        try:
            results = self.remote.write(self.tenant_id, list(batch))
        except ValidationError as exc:
            if len(batch) == 1:
                self._flag_rejected(batch[0], exc.message)
                return
            logger.info(
                "Batch of %d rows rejected for tenant %s; retrying row by row",
                len(batch),
                self.tenant_id,
            )
            self._send_row_by_row(batch)
            return
        except ConflictError as exc:
            if len(batch) == 1:
                conflict = WriteResult.conflict(batch[0].id, exc.server_record)
                self._handle(batch[0], conflict, allow_resend=True)
                return
            self._send_row_by_row(batch)
            return

        by_id = {r.record_id: r for r in results}
        for record in batch:
            self._handle(record, by_id.get(record.id), allow_resend=True)

    def _send_row_by_row(self, batch: Sequence[LedgerRecord]) -> None:
        for record in batch:
            if self._cancelled():
                return
            result = self._write_one(record)
            self._handle(record, result, allow_resend=True)

    def _write_one(self, record: LedgerRecord) -> Optional[WriteResult]:
        try:
            results = self.remote.write(self.tenant_id, [record])
        except ValidationError as exc:
            return WriteResult.rejected(record.id, exc.message)
        except ConflictError as exc:
            return WriteResult.conflict(record.id, exc.server_record)
        for result in results:
            if result.record_id == record.id:
                return result
        return None

    # -- outcomes ----------------------------------------------------------

    def _handle(
        self,
        record: LedgerRecord,
        result: Optional[WriteResult],
        *,
        allow_resend: bool,
    ) -> None:
        if result is None:
            # No acknowledgment: the row stays dirty and is replayed later.
            logger.debug("No acknowledgment for %s; left dirty", record.id)
            self.result.deferred += 1
            return

        if result.status is WriteStatus.ACCEPTED:
            self._mark_synced(record, result.new_version or record.version)
        elif result.status is WriteStatus.REJECTED:
            self._flag_rejected(record, result.reason)
        elif result.status is WriteStatus.CONFLICT:
            self._resolve_conflict(record, result, allow_resend=allow_resend)

    def _mark_synced(self, record: LedgerRecord, accepted_version: int) -> None:
        try:
            with self.locks.write(self.tenant_id):
                cleared = db.mark_synced(
                    self.cfg,
                    self.tenant_id,
                    record.id,
                    accepted_version,
                    expected_version=record.version,
                )
        except NotFoundError:
            # Accepted remotely but gone locally: should never happen.
            logger.error(
                "Record %s of tenant %s vanished before its acknowledgment was recorded",
                record.id,
                self.tenant_id,
            )
            self.result.corrupted += 1
            return

        self.result.accepted += 1
        if not cleared:
            self.result.deferred += 1

    def _flag_rejected(self, record: LedgerRecord, reason: Optional[str]) -> None:
        logger.warning(
            "Record %s of tenant %s rejected by remote; excluded from automatic sync",
            record.id,
            self.tenant_id,
        )
        try:
            with self.locks.write(self.tenant_id):
                db.flag_sync_error(
                    self.cfg, self.tenant_id, record.id, "validation", reason
                )
        except NotFoundError:
            logger.error("Rejected record %s no longer exists locally", record.id)
            self.result.corrupted += 1
            return
        self.result.rejected += 1

    def _resolve_conflict(
        self, record: LedgerRecord, result: WriteResult, *, allow_resend: bool
    ) -> None:
        try:
            server = self.remote.read_record(self.tenant_id, record.id)
        except ValidationError:
            server = None
        if server is None:
            server = result.server_record
        if server is None:
            logger.warning(
                "Conflict on %s but the server row is unavailable; left dirty", record.id
            )
            self.result.deferred += 1
            return

        with self.locks.write(self.tenant_id):
            local = db.get_record(self.cfg, self.tenant_id, record.id)
            if local is None:
                self.result.corrupted += 1
                logger.error("Conflicting record %s vanished locally", record.id)
                return

            resolution = resolve_conflict(local.version, server.version)
            if resolution is Resolution.REMOTE_WINS:
                db.apply_remote(self.cfg, self.tenant_id, server)
                self.result.remote_won += 1
                return

            if not allow_resend:
                self.result.deferred += 1
                return

            rebased = db.rebase_version(
                self.cfg, self.tenant_id, record.id, server.version + 1
            )

        if rebased is None or not rebased.dirty:
            self.result.deferred += 1
            return

        logger.info(
            "Conflict on %s: local v%d kept over remote v%d; re-sending",
            record.id,
            rebased.version,
            server.version,
        )
        resent = self._write_one(rebased)
        self._handle(rebased, resent, allow_resend=False)


def push_pending(
    cfg: DatabaseConfig,
    remote: RemoteStore,
    tenant_id: str,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    locks: Optional[TenantLocks] = None,
    cancel: Optional[CancelToken] = None,
) -> PushResult:
    """
    Push every dirty row of a tenant to the remote store.

    Parameters
    ----------
    cfg:
        Local database configuration.
    remote:
        Remote store gateway.
    tenant_id:
        Resolved tenant; only its rows are read and sent.
    batch_size:
        Maximum number of rows per remote write.
    locks:
        Per-tenant locks shared with the UI. A private registry is used when
        omitted.
    cancel:
        Checked between batches (and between rows when a batch is split).

    Returns
    -------
    PushResult
        Counters and, if the push stopped on a network failure, the error.
        Transient network failures are reported, not raised.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    run = _PushRun(cfg, remote, tenant_id, locks or TenantLocks(), cancel)

    with run.locks.write(tenant_id):
        snapshot = db.list_dirty(cfg, tenant_id)

    if not snapshot:
        return run.result

    logger.info("Pushing %d dirty row(s) for tenant %s", len(snapshot), tenant_id)

    for batch in _chunks(snapshot, batch_size):
        if run._cancelled():
            logger.info("Push cancelled for tenant %s", tenant_id)
            break
        try:
            run.push_batch(batch)
        except TransientNetworkError as exc:
            logger.warning("Push interrupted for tenant %s: %s", tenant_id, exc)
            run.result.transient_error = exc.message
            break

    return run.result
