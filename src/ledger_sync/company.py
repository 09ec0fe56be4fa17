# Ledger Sync - Offline-first ledger synchronization for SMBs
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Company (tenant) resolution.

Every local and remote operation is scoped to exactly one tenant id. This
module finds it by polling an ordered chain of identity sources:

1. ``SecureStorageSource``: owner-only JSON file (platform secure storage).
2. ``LocalStorageSource``: plain JSON key/value file (browser local storage).
3. ``RemoteLookupSource``: membership lookup keyed by the authenticated
   session.

The first well-formed id wins. A malformed or too-short value is treated as
absent. When no source yields an id, ``NoTenantResolvedError`` is raised and
callers must not attempt any sync operation.

The resolved value is cached for the session; ``invalidate()`` drops the
cache and ``logout()`` also clears the writable sources.
"""

from __future__ import annotations

import json
import os
import re
import stat
import threading
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Sequence, runtime_checkable

from .errors import NoTenantResolvedError
from .logging_setup import get_logger

logger = get_logger("ledger_sync.company")

DEFAULT_IDENTITY_KEY = "auth_company_id"

_TENANT_ID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


def is_well_formed_tenant_id(value: object) -> bool:
    """Return True if ``value`` is a canonical 36-character UUID string."""
    return isinstance(value, str) and bool(_TENANT_ID_RE.match(value))


# ---------------------------------------------------------------------------
# Identity sources
# ---------------------------------------------------------------------------


@runtime_checkable
class IdentitySource(Protocol):
    """A place the current tenant id may be read from."""

    name: str

    def get_tenant_id(self) -> Optional[str]: ...


@runtime_checkable
class WritableIdentitySource(IdentitySource, Protocol):
    """An identity source that can also remember and forget the tenant id."""

    def set_tenant_id(self, tenant_id: str) -> None: ...

    def clear(self) -> None: ...


class _JsonFileSource:
    """Key/value identity storage backed by a JSON object in a file."""

    name = "json_file"

    def __init__(self, path: Path, key: str = DEFAULT_IDENTITY_KEY) -> None:
        self.path = Path(path)
        self.key = key

    def _read_all(self) -> dict[str, Any]:
        if not self.path.is_file():
            return {}
        data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        if not isinstance(data, dict):
            raise ValueError(f"Identity file {self.path} must hold a JSON object.")
        return data

    def _write_all(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def get_tenant_id(self) -> Optional[str]:
        value = self._read_all().get(self.key)
        return None if value is None else str(value)

    def set_tenant_id(self, tenant_id: str) -> None:
        data = self._read_all()
        data[self.key] = tenant_id
        self._write_all(data)

    def clear(self) -> None:
        data = self._read_all()
        if self.key in data:
            del data[self.key]
            self._write_all(data)


class LocalStorageSource(_JsonFileSource):
    """Plain JSON key/value file, the equivalent of browser local storage."""

    name = "local_storage"


class SecureStorageSource(_JsonFileSource):
    """
    Owner-only JSON file, the equivalent of platform secure storage.

    The file is created with mode 0600. On POSIX systems a file readable by
    group or others is not trusted and reads as empty.
    """

    name = "secure_storage"

    def _write_all(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
        if os.name == "posix":
            os.chmod(self.path, 0o600)

    def _read_all(self) -> dict[str, Any]:
        if os.name == "posix" and self.path.is_file():
            mode = self.path.stat().st_mode
            if mode & (stat.S_IRWXG | stat.S_IRWXO):
                logger.warning(
                    "Ignoring %s: file is accessible by other users (mode %o)",
                    self.path,
                    stat.S_IMODE(mode),
                )
                return {}
        return super()._read_all()


class RemoteLookupSource:
    """
    Looks the tenant up in the remote membership store.

    Parameters
    ----------
    lookup:
        Callable taking the session and returning a tenant id or None,
        typically ``SupabaseRemoteStore.lookup_tenant_id``.
    session_provider:
        Returns the authenticated session, or None when logged out. No
        lookup happens without a session.
    """

    name = "remote_lookup"

    def __init__(
        self,
        lookup: Callable[[Any], Optional[str]],
        session_provider: Callable[[], Any],
    ) -> None:
        self._lookup = lookup
        self._session_provider = session_provider

    def get_tenant_id(self) -> Optional[str]:
        session = self._session_provider()
        if session is None:
            return None
        return self._lookup(session)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class CompanyResolver:
    """
    Resolves the tenant id from an ordered chain of identity sources.

    Thread-safe: the scheduler and the UI may call it concurrently.
    """

    def __init__(self, sources: Sequence[IdentitySource]) -> None:
        self.sources = list(sources)
        self._cached: Optional[str] = None
        self._lock = threading.Lock()

    def resolve_tenant_id(self) -> str:
        """
        Return the current tenant id.

        Raises
        ------
        NoTenantResolvedError
            If no source yields a well-formed id.
        """
        with self._lock:
            if self._cached is not None:
                return self._cached

            for source in self.sources:
                try:
                    value = source.get_tenant_id()
                except Exception:  # noqa: BLE001
                    logger.warning(
                        "Identity source %s failed; trying the next one",
                        source.name,
                        exc_info=True,
                    )
                    continue

                if value is None or value == "":
                    continue
                value = value.strip()
                if not is_well_formed_tenant_id(value):
                    logger.warning(
                        "Identity source %s returned a malformed tenant id; ignored",
                        source.name,
                    )
                    continue

                logger.debug("Tenant %s resolved from %s", value, source.name)
                self._cached = value
                return value

        raise NoTenantResolvedError(
            "No company could be resolved for the current session.",
            sources=[s.name for s in self.sources],
        )

    def cached_tenant_id(self) -> Optional[str]:
        """Return the cached tenant id without polling any source."""
        with self._lock:
            return self._cached

    def invalidate(self) -> None:
        """Drop the session cache; the next call polls the sources again."""
        with self._lock:
            self._cached = None

    def remember(self, tenant_id: str) -> None:
        """
        Store the tenant id after login.

        Writes to the first writable source and refreshes the cache.

        Raises
        ------
        ValueError
            If the id is malformed or no writable source is configured.
        """
        tenant_id = tenant_id.strip()
        if not is_well_formed_tenant_id(tenant_id):
            raise ValueError(f"Malformed company id: {tenant_id!r}")

        for source in self.sources:
            if isinstance(source, WritableIdentitySource):
                source.set_tenant_id(tenant_id)
                with self._lock:
                    self._cached = tenant_id
                logger.info("Company %s remembered in %s", tenant_id, source.name)
                return

        raise ValueError("No writable identity source is configured.")

    def logout(self) -> None:
        """Clear every writable source and the session cache."""
        for source in self.sources:
            if isinstance(source, WritableIdentitySource):
                try:
                    source.clear()
                except Exception:  # noqa: BLE001
                    logger.warning(
                        "Could not clear identity source %s", source.name, exc_info=True
                    )
        self.invalidate()
        logger.info("Company identity cleared")
