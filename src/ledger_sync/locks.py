# Ledger Sync - Offline-first ledger synchronization for SMBs
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Per-tenant serialization and cooperative cancellation.

- ``TenantLocks.write(tenant_id)``: re-entrant lock gating every local store
  write of a tenant (UI edits, ``mark_synced``, ``apply_remote``). Network
  calls are made outside of it.
- ``TenantLocks.try_acquire_cycle(tenant_id)``: non-blocking guard so at most
  one sync cycle runs per tenant. Different tenants never contend.
- ``CancelToken``: set by logout or by backgrounding past the grace period,
  checked by the reconcilers between rows and batches only.
"""

from __future__ import annotations

import threading
from typing import Optional


class TenantLocks:
    """Registry of per-tenant locks, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._write_locks: dict[str, threading.RLock] = {}
        self._cycle_locks: dict[str, threading.Lock] = {}

    def write(self, tenant_id: str) -> threading.RLock:
        """Return the tenant's write lock, to be used as a context manager."""
        with self._guard:
            lock = self._write_locks.get(tenant_id)
            if lock is None:
                lock = threading.RLock()
                self._write_locks[tenant_id] = lock
            return lock

    def _cycle_lock(self, tenant_id: str) -> threading.Lock:
        with self._guard:
            lock = self._cycle_locks.get(tenant_id)
            if lock is None:
                lock = threading.Lock()
                self._cycle_locks[tenant_id] = lock
            return lock

    def try_acquire_cycle(self, tenant_id: str) -> bool:
        """Claim the tenant's cycle slot; False if a cycle is already running."""
        return self._cycle_lock(tenant_id).acquire(blocking=False)

    def release_cycle(self, tenant_id: str) -> None:
        self._cycle_lock(tenant_id).release()

    def cycle_running(self, tenant_id: str) -> bool:
        return self._cycle_lock(tenant_id).locked()


class CancelToken:
    """Cooperative cancellation flag shared between a cycle and its owner."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()
