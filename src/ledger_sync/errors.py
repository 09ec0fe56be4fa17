# Ledger Sync - Offline-first ledger synchronization for SMBs
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Error taxonomy for Ledger Sync.

Exception hierarchy::

    LedgerSyncError (base)
    ├── TransientNetworkError   retry later with backoff, no state change
    ├── ConflictError           resolved locally, never surfaced as a failure
    ├── ValidationError         remote rejected a record, row flagged sync_error
    ├── NoTenantResolvedError   no company could be resolved, no sync attempted
    ├── LocalStoreCorruption    unexpected local state, offending row quarantined
    └── NotFoundError           record id absent from the local store

Every error carries a human-readable message and an optional ``context``
dictionary (tenant id, record id, HTTP status...) for logging.

Invalid caller input to the local store (empty id, float amount, unknown
kind) raises the built-in ``ValueError`` instead.
"""

from __future__ import annotations

from typing import Any


class LedgerSyncError(Exception):
    """
    Base exception for all Ledger Sync errors.

    Attributes
    ----------
    message:
        Human-readable error message.
    context:
        Additional keyword context (tenant_id, record_id, status_code...).
    """

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        return self.message


class TransientNetworkError(LedgerSyncError):
    """
    The remote store could not be reached or answered with a retryable error.

    Covers timeouts, connection failures, 5xx responses, throttling and
    expired sessions. Rows stay dirty and the cycle is retried later with
    exponential backoff.
    """


class ConflictError(LedgerSyncError):
    """
    The remote refused a write because its version does not match.

    Attributes
    ----------
    record_id:
        Identifier of the conflicting record.
    server_record:
        The remote row as known by the server, when it was returned.
    """

    def __init__(
        self,
        message: str,
        *,
        record_id: str,
        server_record: Any = None,
        **context: Any,
    ) -> None:
        super().__init__(message, record_id=record_id, **context)
        self.record_id = record_id
        self.server_record = server_record


class ValidationError(LedgerSyncError):
    """
    The remote rejected the shape or content of one or more records.

    This is not transient: the affected row is flagged ``sync_error`` and
    excluded from automatic retries until the user edits it.
    """


class NoTenantResolvedError(LedgerSyncError):
    """No identity source produced a well-formed tenant id."""


class LocalStoreCorruption(LedgerSyncError):
    """
    The local store is in a state that should never happen.

    Examples: a pushed row vanished before its acknowledgment was recorded,
    a row id exists under another tenant, or a stored row cannot be parsed.
    Only the offending row is quarantined; the rest of the sync proceeds.
    """


class NotFoundError(LedgerSyncError):
    """The requested record id does not exist for the tenant."""
