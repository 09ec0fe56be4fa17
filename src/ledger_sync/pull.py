# Ledger Sync - Offline-first ledger synchronization for SMBs
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Pull reconciler: merge remote changes into the local store.

Pages of rows strictly after the cursor, a ``(updated_at, id)`` pair, are
requested for the tenant, ordered by ``updated_at`` then ``id``. Rows that
share one ``updated_at`` (a bulk write on the server) may span several pages;
the id part of the cursor resumes right after the last merged one. Each page
is merged together with the cursor advance in a single local transaction
(``db.apply_remote_page``), so the cursor never moves past rows that were
not durably merged and never regresses. A replayed page is harmless:
merging is idempotent.

Paging stops on a short (or empty) page, when the cursor does not advance,
or when the cycle is cancelled.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

from . import db
from .db import ApplyOutcome, DatabaseConfig, SyncCursor
from .errors import TransientNetworkError, ValidationError
from .locks import CancelToken, TenantLocks
from .logging_setup import get_logger
from .remote import RemoteStore

logger = get_logger("ledger_sync.pull")

DEFAULT_PAGE_SIZE = 500


@dataclass
class PullResult:
    """Counters for one pull run of a tenant."""

    tenant_id: str
    pages: int = 0
    received: int = 0
    outcomes: Counter = field(default_factory=Counter)
    cursor: Optional[SyncCursor] = None
    caught_up: bool = False
    cancelled: bool = False
    transient_error: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.transient_error is None and self.error is None

    @property
    def applied(self) -> int:
        return (
            self.outcomes[ApplyOutcome.INSERTED]
            + self.outcomes[ApplyOutcome.UPDATED]
            + self.outcomes[ApplyOutcome.REMOTE_WON]
        )

    @property
    def skipped_foreign(self) -> int:
        return self.outcomes[ApplyOutcome.SKIPPED_FOREIGN]


def pull_changes(
    cfg: DatabaseConfig,
    remote: RemoteStore,
    tenant_id: str,
    *,
    page_size: int = DEFAULT_PAGE_SIZE,
    locks: Optional[TenantLocks] = None,
    cancel: Optional[CancelToken] = None,
) -> PullResult:
    """
    Fetch and merge every remote change of a tenant since its cursor.

    Parameters
    ----------
    cfg:
        Local database configuration.
    remote:
        Remote store gateway.
    tenant_id:
        Resolved tenant; rows of any other tenant are skipped.
    page_size:
        Maximum number of rows per remote read.
    locks:
        Per-tenant locks shared with the UI.
    cancel:
        Checked before each page.

    Returns
    -------
    PullResult
        Counters, final cursor and, on failure, the error. Network failures
        are reported, not raised.
    """
    if page_size < 1:
        raise ValueError("page_size must be >= 1")

    locks = locks or TenantLocks()
    result = PullResult(tenant_id=tenant_id)

    cursor = db.get_cursor(cfg, tenant_id)
    result.cursor = cursor

    while True:
        if cancel is not None and cancel.is_cancelled:
            result.cancelled = True
            logger.info("Pull cancelled for tenant %s", tenant_id)
            break

        try:
            page = remote.read_changes_since(tenant_id, cursor, page_size)
        except TransientNetworkError as exc:
            logger.warning("Pull interrupted for tenant %s: %s", tenant_id, exc)
            result.transient_error = exc.message
            break
        except ValidationError as exc:
            logger.error("Remote refused the pull request for tenant %s: %s", tenant_id, exc)
            result.error = exc.message
            break

        if not page:
            result.caught_up = True
            break

        with locks.write(tenant_id):
            applied = db.apply_remote_page(cfg, tenant_id, page)

        result.pages += 1
        result.received += len(page)
        result.outcomes.update(applied.outcomes)

        if applied.cursor is None or applied.cursor == cursor:
            logger.warning(
                "Cursor for tenant %s did not advance after a page of %d row(s)",
                tenant_id,
                len(page),
            )
            result.caught_up = True
            break

        cursor = applied.cursor
        result.cursor = cursor

        if len(page) < page_size:
            result.caught_up = True
            break

    if result.received:
        logger.info(
            "Pulled %d row(s) in %d page(s) for tenant %s (%d applied, %d skipped)",
            result.received,
            result.pages,
            tenant_id,
            result.applied,
            result.skipped_foreign,
        )
    return result
