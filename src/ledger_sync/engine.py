# Ledger Sync - Offline-first ledger synchronization for SMBs
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Sync cycle orchestration.

A cycle resolves the tenant, pushes its dirty rows, then pulls remote
changes:

    IDLE -> PUSHING -> PULLING -> IDLE
      \\
       -> FAULTED   (no tenant resolved; left only via clear_fault())

Guarantees
----------
- No-tenant gate: when the company resolver fails, the cycle makes no
  network call and no local write.
- At most one cycle per tenant at a time; a trigger arriving while a cycle
  runs is skipped, not queued.
- Transient failures never change local state. They put the tenant in
  exponential backoff; automatic triggers are skipped until it expires,
  manual triggers are not.
- Nothing raises across the cycle boundary: every outcome, including
  unexpected exceptions, comes back as a ``CycleResult``.

``SyncScheduler`` wires the cycle to host events: foreground/background (with
a grace period before the running cycle is cancelled), connectivity
regained, a periodic timer while foregrounded, and local changes.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from . import db
from .company import CompanyResolver
from .db import DatabaseConfig
from .errors import NoTenantResolvedError
from .locks import CancelToken, TenantLocks
from .logging_setup import get_logger
from .monitor import ConnectionStatus, SyncMonitor
from .pull import DEFAULT_PAGE_SIZE, PullResult, pull_changes
from .push import DEFAULT_BATCH_SIZE, PushResult, push_pending
from .remote import RemoteStore
from .retry import Backoff, RetryConfig

logger = get_logger("ledger_sync.engine")


class SyncState(str, Enum):
    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"
    FAULTED = "faulted"


StateListener = Callable[[Optional[str], SyncState], None]
"""Called with (tenant_id, new state); tenant_id is None when faulted without a tenant."""


class SyncTrigger(str, Enum):
    FOREGROUND = "foreground"
    CONNECTIVITY_RESTORED = "connectivity_restored"
    TIMER = "timer"
    LOCAL_CHANGE = "local_change"
    MANUAL = "manual"


class CycleStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    FAILED = "failed"
    NO_TENANT = "no_tenant"


@dataclass
class CycleResult:
    """Normalized outcome of one sync cycle."""

    trigger: SyncTrigger
    status: CycleStatus
    tenant_id: Optional[str] = None
    push: Optional[PushResult] = None
    pull: Optional[PullResult] = None
    error: Optional[str] = None
    skipped_reason: Optional[str] = None
    backoff_seconds: float = 0.0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.status is CycleStatus.COMPLETED


@dataclass(frozen=True)
class SyncStatus:
    """What the UI displays about synchronization."""

    pending_count: int
    last_synced_at: Optional[datetime]
    faulted: bool
    state: SyncState
    error_count: int


class SyncEngine:
    """
    Runs sync cycles for the tenant(s) of a device.

    Parameters
    ----------
    cfg:
        Local database configuration.
    remote:
        Remote store gateway, or None when no remote is configured (local
        use only; cycles then fail without touching the local store).
    resolver:
        Company resolver; consulted at the start of every ``sync()``.
    locks:
        Per-tenant locks, shared with the transactions service.
    monitor:
        Sync monitor; a default one on the same database is created if
        omitted.
    retry_config:
        Backoff settings.
    push_batch_size, pull_page_size:
        Remote request sizes.
    connectivity:
        Returns False when the device is known to be offline; cycles are
        then skipped without touching the network.
    clock:
        Monotonic clock used by backoff (injectable for tests).
    """

    def __init__(
        self,
        cfg: DatabaseConfig,
        remote: Optional[RemoteStore],
        resolver: CompanyResolver,
        *,
        locks: Optional[TenantLocks] = None,
        monitor: Optional[SyncMonitor] = None,
        retry_config: Optional[RetryConfig] = None,
        push_batch_size: int = DEFAULT_BATCH_SIZE,
        pull_page_size: int = DEFAULT_PAGE_SIZE,
        connectivity: Callable[[], bool] = lambda: True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cfg = cfg
        self.remote = remote
        self.resolver = resolver
        self.locks = locks or TenantLocks()
        self.monitor = monitor or SyncMonitor(cfg)
        self.retry_config = retry_config or RetryConfig()
        self.push_batch_size = push_batch_size
        self.pull_page_size = pull_page_size
        self._connectivity = connectivity
        self._clock = clock

        self._guard = threading.Lock()
        self._faulted = False
        self._states: dict[str, SyncState] = {}
        self._backoffs: dict[str, Backoff] = {}
        self._tokens: dict[str, CancelToken] = {}
        self._state_listeners: list[StateListener] = []

    # -- state -------------------------------------------------------------

    @property
    def faulted(self) -> bool:
        with self._guard:
            return self._faulted

    def state_for(self, tenant_id: Optional[str]) -> SyncState:
        with self._guard:
            if self._faulted:
                return SyncState.FAULTED
            if tenant_id is None:
                return SyncState.IDLE
            return self._states.get(tenant_id, SyncState.IDLE)

    @property
    def state(self) -> SyncState:
        return self.state_for(self.resolver.cached_tenant_id())

    def _set_state(self, tenant_id: str, state: SyncState) -> None:
        with self._guard:
            previous = self._states.get(tenant_id, SyncState.IDLE)
            self._states[tenant_id] = state
        if previous is not state:
            self._notify_state(tenant_id, state)

    def on_state_change(self, callback: StateListener) -> Callable[[], None]:
        """
        Register a listener for state transitions (e.g. a "syncing" spinner).

        Returns a function that unregisters it. Listeners run on the thread
        that changed the state; their exceptions are logged and dropped.
        """
        with self._guard:
            self._state_listeners.append(callback)

        def unsubscribe() -> None:
            with self._guard:
                if callback in self._state_listeners:
                    self._state_listeners.remove(callback)

        return unsubscribe

    def _notify_state(self, tenant_id: Optional[str], state: SyncState) -> None:
        with self._guard:
            listeners = list(self._state_listeners)
        for callback in listeners:
            try:
                callback(tenant_id, state)
            except Exception:  # noqa: BLE001
                logger.exception("Sync state listener failed")

    def backoff_for(self, tenant_id: str) -> Backoff:
        with self._guard:
            backoff = self._backoffs.get(tenant_id)
            if backoff is None:
                backoff = Backoff(self.retry_config, clock=self._clock)
                self._backoffs[tenant_id] = backoff
            return backoff

    def clear_fault(self) -> bool:
        """
        Leave FAULTED once a tenant can be resolved again (e.g. re-login).

        Returns
        -------
        bool
            True if the engine is no longer faulted.
        """
        self.resolver.invalidate()
        try:
            tenant_id = self.resolver.resolve_tenant_id()
        except NoTenantResolvedError:
            return False
        with self._guard:
            was_faulted = self._faulted
            self._faulted = False
            self._states[tenant_id] = SyncState.IDLE
        logger.info("Sync fault cleared for tenant %s", tenant_id)
        if was_faulted:
            self._notify_state(tenant_id, SyncState.IDLE)
        return True

    def cancel(self, tenant_id: Optional[str] = None, reason: str = "cancelled") -> None:
        """Cancel the running cycle of a tenant, or of every tenant."""
        with self._guard:
            if tenant_id is None:
                tokens = list(self._tokens.values())
            else:
                tokens = [t for k, t in self._tokens.items() if k == tenant_id]
        for token in tokens:
            token.cancel(reason)
        if tokens:
            logger.info("Cancelled %d running sync cycle(s): %s", len(tokens), reason)

    # -- cycles ------------------------------------------------------------

    def sync(
        self,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
        *,
        cancel: Optional[CancelToken] = None,
    ) -> CycleResult:
        """Resolve the tenant and run a cycle for it."""
        try:
            tenant_id = self.resolver.resolve_tenant_id()
        except NoTenantResolvedError as exc:
            with self._guard:
                was_faulted = self._faulted
                self._faulted = True
            logger.warning("Sync not attempted (%s): %s", trigger.value, exc)
            if not was_faulted:
                self._notify_state(None, SyncState.FAULTED)
            return CycleResult(trigger=trigger, status=CycleStatus.NO_TENANT, error=exc.message)

        return self.run_cycle(tenant_id, trigger, cancel=cancel)

    def run_cycle(
        self,
        tenant_id: str,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
        *,
        cancel: Optional[CancelToken] = None,
        push: bool = True,
        pull: bool = True,
    ) -> CycleResult:
        """
        Run one push/pull cycle for an already resolved tenant.

        ``push`` and ``pull`` allow running a single phase (CLI ``sync push``
        and ``sync pull``).
        """
        result = CycleResult(trigger=trigger, status=CycleStatus.SKIPPED, tenant_id=tenant_id)

        if self.faulted:
            result.skipped_reason = "faulted"
            return result

        if self.remote is None:
            result.status = CycleStatus.FAILED
            result.error = "No remote store is configured."
            return result

        if not self.locks.try_acquire_cycle(tenant_id):
            logger.debug("Cycle already running for tenant %s; %s skipped", tenant_id, trigger.value)
            result.skipped_reason = "already_running"
            return result

        token = cancel or CancelToken()
        with self._guard:
            self._tokens[tenant_id] = token

        try:
            return self._run_locked(tenant_id, trigger, token, result, push=push, pull=pull)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Sync cycle failed unexpectedly for tenant %s", tenant_id)
            result.status = CycleStatus.FAILED
            result.error = f"{type(exc).__name__}: {exc}"
            result.backoff_seconds = self.backoff_for(tenant_id).record_failure()
            return result
        finally:
            self._set_state(tenant_id, SyncState.IDLE)
            with self._guard:
                if self._tokens.get(tenant_id) is token:
                    del self._tokens[tenant_id]
            self.locks.release_cycle(tenant_id)

    def _run_locked(
        self,
        tenant_id: str,
        trigger: SyncTrigger,
        token: CancelToken,
        result: CycleResult,
        *,
        push: bool,
        pull: bool,
    ) -> CycleResult:
        if not self._connectivity():
            self.monitor.set_connection_status(ConnectionStatus.DISCONNECTED)
            result.skipped_reason = "offline"
            return result

        backoff = self.backoff_for(tenant_id)
        if trigger is not SyncTrigger.MANUAL and backoff.is_active():
            result.skipped_reason = "backoff"
            result.backoff_seconds = backoff.remaining()
            return result

        logger.info("Sync cycle started for tenant %s (%s)", tenant_id, trigger.value)

        if push:
            self._set_state(tenant_id, SyncState.PUSHING)
            started = time.monotonic()
            result.push = push_pending(
                self.cfg,
                self.remote,
                tenant_id,
                batch_size=self.push_batch_size,
                locks=self.locks,
                cancel=token,
            )
            self.monitor.log_event(
                tenant_id,
                "push",
                result.push.ok,
                latency_ms=int((time.monotonic() - started) * 1000),
                error=result.push.transient_error,
            )
            if not result.push.ok:
                return self._transient_failure(tenant_id, result, result.push.transient_error)
            if result.push.cancelled:
                result.status = CycleStatus.CANCELLED
                return result

        if pull:
            self._set_state(tenant_id, SyncState.PULLING)
            started = time.monotonic()
            result.pull = pull_changes(
                self.cfg,
                self.remote,
                tenant_id,
                page_size=self.pull_page_size,
                locks=self.locks,
                cancel=token,
            )
            pull_error = result.pull.transient_error or result.pull.error
            self.monitor.log_event(
                tenant_id,
                "pull",
                result.pull.ok,
                latency_ms=int((time.monotonic() - started) * 1000),
                error=pull_error,
            )
            if not result.pull.ok:
                return self._transient_failure(tenant_id, result, pull_error)
            if result.pull.cancelled:
                result.status = CycleStatus.CANCELLED
                return result

        backoff.reset()
        self.monitor.set_connection_status(ConnectionStatus.CONNECTED)
        if push and pull:
            db.set_last_synced_at(self.cfg, tenant_id)
        result.status = CycleStatus.COMPLETED
        logger.info("Sync cycle completed for tenant %s", tenant_id)
        return result

    def _transient_failure(
        self, tenant_id: str, result: CycleResult, error: Optional[str]
    ) -> CycleResult:
        delay = self.backoff_for(tenant_id).record_failure()
        self.monitor.set_connection_status(ConnectionStatus.RECONNECTING)
        logger.warning(
            "Sync cycle for tenant %s failed, next automatic attempt in %.1fs",
            tenant_id,
            delay,
        )
        result.status = CycleStatus.FAILED
        result.error = error
        result.backoff_seconds = delay
        return result

    # -- status ------------------------------------------------------------

    def get_sync_status(self, tenant_id: str) -> SyncStatus:
        return SyncStatus(
            pending_count=db.count_pending(self.cfg, tenant_id),
            last_synced_at=db.get_last_synced_at(self.cfg, tenant_id),
            faulted=self.faulted,
            state=self.state_for(tenant_id),
            error_count=db.count_sync_errors(self.cfg, tenant_id),
        )


def _run_in_thread(fn: Callable[[], None]) -> None:
    threading.Thread(target=fn, name="ledger-sync-cycle", daemon=True).start()


class SyncScheduler:
    """
    Translates host events into sync triggers.

    Parameters
    ----------
    engine:
        The sync engine.
    interval_seconds:
        Period of the TIMER trigger while foregrounded.
    background_grace_seconds:
        Delay after going to background before the running cycle is
        cancelled.
    executor:
        Runs a cycle callable; defaults to a daemon thread. Tests pass a
        synchronous executor.
    timer_factory:
        Builds a started-on-demand timer, ``threading.Timer`` by default.
    """

    def __init__(
        self,
        engine: SyncEngine,
        *,
        interval_seconds: float = 60.0,
        background_grace_seconds: float = 30.0,
        executor: Callable[[Callable[[], None]], None] = _run_in_thread,
        timer_factory: Callable[[float, Callable[[], None]], threading.Timer] = threading.Timer,
    ) -> None:
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.background_grace_seconds = background_grace_seconds
        self._executor = executor
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._foreground = False
        self._interval_timer: Optional[threading.Timer] = None
        self._grace_timer: Optional[threading.Timer] = None
        self.last_result: Optional[CycleResult] = None

    @property
    def foreground(self) -> bool:
        with self._lock:
            return self._foreground

    def trigger(self, trigger: SyncTrigger) -> None:
        def run() -> None:
            self.last_result = self.engine.sync(trigger)

        self._executor(run)

    def on_foreground(self) -> None:
        with self._lock:
            self._foreground = True
            if self._grace_timer is not None:
                self._grace_timer.cancel()
                self._grace_timer = None
        self._schedule_tick()
        self.trigger(SyncTrigger.FOREGROUND)

    def on_background(self) -> None:
        with self._lock:
            self._foreground = False
            if self._interval_timer is not None:
                self._interval_timer.cancel()
                self._interval_timer = None
            timer = self._timer_factory(
                self.background_grace_seconds,
                lambda: self.engine.cancel(reason="background grace period elapsed"),
            )
            timer.daemon = True
            self._grace_timer = timer
        timer.start()

    def on_connectivity_restored(self) -> None:
        if self.foreground:
            self.trigger(SyncTrigger.CONNECTIVITY_RESTORED)

    def on_local_change(self) -> None:
        if self.foreground:
            self.trigger(SyncTrigger.LOCAL_CHANGE)

    def tick(self) -> None:
        """Timer callback: run a TIMER cycle and re-arm while foregrounded."""
        if not self.foreground:
            return
        self.trigger(SyncTrigger.TIMER)
        self._schedule_tick()

    def _schedule_tick(self) -> None:
        with self._lock:
            if not self._foreground:
                return
            if self._interval_timer is not None:
                self._interval_timer.cancel()
            timer = self._timer_factory(self.interval_seconds, self.tick)
            timer.daemon = True
            self._interval_timer = timer
        timer.start()

    def stop(self) -> None:
        with self._lock:
            self._foreground = False
            for timer in (self._interval_timer, self._grace_timer):
                if timer is not None:
                    timer.cancel()
            self._interval_timer = None
            self._grace_timer = None
