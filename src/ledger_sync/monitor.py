# Ledger Sync - Offline-first ledger synchronization for SMBs
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Sync monitor: persisted event log, health and diagnostics.

Every push and pull phase of a cycle is recorded in the ``sync_log`` table
(tenant, event, success, error, latency). Only the most recent events are
kept per tenant. The log feeds two read-only views used by the UI and the
CLI:

- ``get_health(tenant_id)``: failure count, average latency of successful
  phases, last event time, connection status and a healthy flag.
- ``run_diagnostics(tenant_id)``: an ``ok`` / ``warning`` / ``error``
  verdict with the detected issues and recommendations.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

import pandas as pd

from . import db
from .db import DatabaseConfig
from .logging_setup import get_logger

logger = get_logger("ledger_sync.monitor")

FAILURE_THRESHOLD = 5
HIGH_LATENCY_MS = 2000
STALE_AFTER = timedelta(minutes=5)
RECENT_LOGS = 10


class ConnectionStatus(str, Enum):
    UNKNOWN = "unknown"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class SyncHealth:
    """Snapshot of a tenant's sync health."""

    is_healthy: bool
    last_sync: Optional[datetime]
    failure_count: int
    average_latency_ms: int
    connection_status: ConnectionStatus
    recent_logs: pd.DataFrame = field(repr=False)


@dataclass(frozen=True)
class Diagnostics:
    status: str  # "ok" | "warning" | "error"
    issues: list[str]
    recommendations: list[str]


HealthListener = Callable[[str, SyncHealth], None]


class SyncMonitor:
    """
    Records sync events and derives health information from them.

    Parameters
    ----------
    cfg:
        Local database configuration (the log lives in the same file).
    failure_threshold:
        Number of failures from which the tenant is reported unhealthy.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        cfg: DatabaseConfig,
        *,
        failure_threshold: int = FAILURE_THRESHOLD,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.cfg = cfg
        self.failure_threshold = failure_threshold
        self._clock = clock
        self._status = ConnectionStatus.UNKNOWN
        self._listeners: list[HealthListener] = []
        self._lock = threading.Lock()

    # -- recording ---------------------------------------------------------

    def log_event(
        self,
        tenant_id: str,
        event: str,
        success: bool,
        *,
        latency_ms: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        """Persist one sync event and alert on repeated failures."""
        db.append_sync_log(
            self.cfg,
            tenant_id,
            event,
            success,
            latency_ms=latency_ms,
            error=error,
            at=self._clock(),
        )

        if success:
            logger.info("[sync] %s ok for tenant %s (%sms)", event, tenant_id, latency_ms)
        else:
            logger.warning("[sync] %s failed for tenant %s: %s", event, tenant_id, error)

        log = db.load_sync_log(self.cfg, tenant_id)
        recent = log.tail(self.failure_threshold)
        if len(recent) >= self.failure_threshold and not recent["success"].any():
            logger.error(
                "%d consecutive sync failures for tenant %s",
                self.failure_threshold,
                tenant_id,
            )

        self._notify(tenant_id)

    def set_connection_status(self, status: ConnectionStatus) -> None:
        with self._lock:
            changed = status is not self._status
            self._status = status
        if changed:
            logger.debug("Connection status: %s", status.value)

    @property
    def connection_status(self) -> ConnectionStatus:
        with self._lock:
            return self._status

    def clear_logs(self, tenant_id: str) -> int:
        removed = db.clear_sync_log(self.cfg, tenant_id)
        self._notify(tenant_id)
        return removed

    # -- listeners ---------------------------------------------------------

    def on_health_change(self, callback: HealthListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, tenant_id: str) -> None:
        with self._lock:
            listeners = list(self._listeners)
        if not listeners:
            return
        health = self.get_health(tenant_id)
        for callback in listeners:
            try:
                callback(tenant_id, health)
            except Exception:  # noqa: BLE001
                logger.exception("Health listener failed")

    # -- views -------------------------------------------------------------

    def get_health(self, tenant_id: str) -> SyncHealth:
        log = db.load_sync_log(self.cfg, tenant_id)
        status = self.connection_status

        if log.empty:
            return SyncHealth(
                is_healthy=status is not ConnectionStatus.DISCONNECTED,
                last_sync=None,
                failure_count=0,
                average_latency_ms=0,
                connection_status=status,
                recent_logs=log,
            )

        failure_count = int((~log["success"]).sum())
        successful = log.loc[log["success"] & log["latency_ms"].notna(), "latency_ms"]
        average = int(round(successful.mean())) if not successful.empty else 0
        last_sync = log["created_at"].iloc[-1].to_pydatetime()

        return SyncHealth(
            is_healthy=(
                failure_count < self.failure_threshold
                and status is not ConnectionStatus.DISCONNECTED
            ),
            last_sync=last_sync,
            failure_count=failure_count,
            average_latency_ms=average,
            connection_status=status,
            recent_logs=log.tail(RECENT_LOGS).reset_index(drop=True),
        )

    def run_diagnostics(self, tenant_id: str) -> Diagnostics:
        health = self.get_health(tenant_id)
        issues: list[str] = []
        recommendations: list[str] = []

        if health.connection_status is ConnectionStatus.DISCONNECTED:
            issues.append("Remote store is unreachable")
            recommendations.append("Check the internet connection")

        if health.failure_count > 0:
            issues.append(f"{health.failure_count} sync failure(s) recorded")
            if health.failure_count >= self.failure_threshold:
                recommendations.append(
                    "Inspect rows flagged with sync errors and the remote configuration"
                )

        if health.average_latency_ms > HIGH_LATENCY_MS:
            issues.append(f"High latency: {health.average_latency_ms}ms on average")
            recommendations.append("The connection may be slow")

        if health.last_sync is not None:
            elapsed = self._clock() - health.last_sync
            if elapsed > STALE_AFTER:
                minutes = int(round(elapsed.total_seconds() / 60))
                issues.append(f"Last sync {minutes} minute(s) ago")
                recommendations.append("Run a manual sync")
        else:
            issues.append("No sync recorded")
            recommendations.append("Run a manual sync and check the remote configuration")

        status = "ok"
        if issues:
            status = "warning"
        if (
            health.failure_count >= self.failure_threshold
            or health.connection_status is ConnectionStatus.DISCONNECTED
        ):
            status = "error"

        return Diagnostics(status=status, issues=issues, recommendations=recommendations)
