# Ledger Sync - Offline-first ledger synchronization for SMBs
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Configuration helpers for Ledger Sync.

This module is responsible for:
- loading the application configuration from a TOML file,
- validating the sync tuning values,
- exposing typed dataclasses used by the rest of the application.
"""

import os
import socket
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover - fallback for older Python
    import tomli as tomllib  # type: ignore[import]

from .db import DatabaseConfig

DEFAULT_CONFIG_FILE = "ledger_sync_config.toml"


@dataclass(frozen=True)
class RemoteConfig:
    """
    Remote store (Supabase) settings.

    The API key itself is never stored in the file: `api_key_env` names the
    environment variable holding it.
    """

    url: Optional[str]
    api_key_env: str
    table: str
    push_function: str
    membership_table: str
    timeout_seconds: float

    @property
    def api_key(self) -> Optional[str]:
        return os.getenv(self.api_key_env) or None


@dataclass(frozen=True)
class SyncConfig:
    """Batch sizes, scheduling and backoff settings."""

    push_batch_size: int
    pull_page_size: int
    interval_seconds: float
    background_grace_seconds: float
    backoff_base_seconds: float
    backoff_multiplier: float
    backoff_max_seconds: float
    device_name: str


@dataclass(frozen=True)
class IdentityConfig:
    """Where the current company id is remembered on the device."""

    secure_storage_path: Path
    local_storage_path: Path
    key: str


@dataclass(frozen=True)
class AppConfig:
    """
    Application-wide configuration for Ledger Sync.

    This aggregates:
    - the local database configuration,
    - the remote store settings,
    - the sync tuning values,
    - the identity storage locations,
    - the logging level.
    """

    database: DatabaseConfig
    remote: RemoteConfig
    sync: SyncConfig
    identity: IdentityConfig
    log_level: str


def _load_toml(path: Path) -> dict[str, Any]:
    """
    Load a TOML file and return its content as a dictionary.

    Raises:
        FileNotFoundError: if the file does not exist.
        ValueError: if the TOML content cannot be parsed or is not a table.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:  # noqa: BLE001
        raise ValueError(f"Failed to parse TOML config file: {path}") from exc

    if not isinstance(data, dict):
        raise ValueError(f"Invalid TOML root type in {path}, expected a table.")

    return data


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, Mapping):
        section = {}
    return section


def _positive_int(section: Mapping[str, Any], key: str, default: int, where: str) -> int:
    raw_value = section.get(key, default)
    try:
        value = int(raw_value)
    except (TypeError, ValueError) as exc:
        raise ValueError(
            f"Invalid value for '{where}.{key}' in the configuration. "
            "Expected an integer."
        ) from exc
    if isinstance(raw_value, bool) or value < 1:
        raise ValueError(f"'{where}.{key}' must be a positive integer.")
    return value


def _positive_float(
    section: Mapping[str, Any], key: str, default: float, where: str
) -> float:
    raw_value = section.get(key, default)
    try:
        value = float(raw_value)
    except (TypeError, ValueError) as exc:
        raise ValueError(
            f"Invalid value for '{where}.{key}' in the configuration. "
            "Expected a number."
        ) from exc
    if isinstance(raw_value, bool) or value <= 0:
        raise ValueError(f"'{where}.{key}' must be a positive number.")
    return value


def load_app_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Load the Ledger Sync application configuration from a TOML file.

    Expected top-level sections in the TOML file
    --------------------------------------------
    [database]
        Engine ("sqlite") and path of the local mirror.

    [remote]
        Supabase project URL, the environment variable holding the API key,
        the ledger table, the versioned write function, the membership
        table and the request timeout.

    [sync]
        Push batch size, pull page size, timer interval, background grace
        period, backoff settings and the device label stamped on edits.

    [identity]
        Secure and local storage files remembering the company id, and the
        key used inside them.

    [logging]
        Log level (overridden by LEDGER_SYNC_LOG_LEVEL).

    All file paths in the TOML are resolved relative to the directory of the
    TOML file itself. Every section is optional.

    Parameters
    ----------
    config_path : str, optional
        Path to the TOML configuration file. Defaults to
        ``ledger_sync_config.toml`` in the current directory.

    Returns
    -------
    AppConfig
        Parsed and validated application configuration.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If the file cannot be parsed or a value is invalid.
    """
    if config_path is None:
        config_file = Path(DEFAULT_CONFIG_FILE).resolve()
    else:
        config_file = Path(config_path).resolve()

    raw = _load_toml(config_file)
    base_dir = config_file.parent

    # 1) Database section
    database_section = _section(raw, "database")

    db_engine = str(database_section.get("engine") or "sqlite")
    db_path_raw = database_section.get("path") or "data/db/ledger_sync.sqlite"
    db_path = (base_dir / str(db_path_raw)).resolve()

    database_config = DatabaseConfig(engine=db_engine, path=db_path)

    # 2) Remote section
    remote_section = _section(raw, "remote")

    url_raw = remote_section.get("url")
    remote_config = RemoteConfig(
        url=str(url_raw).rstrip("/") if url_raw else None,
        api_key_env=str(remote_section.get("api_key_env") or "LEDGER_SYNC_API_KEY"),
        table=str(remote_section.get("table") or "transactions"),
        push_function=str(remote_section.get("push_function") or "sync_push_transactions"),
        membership_table=str(remote_section.get("membership_table") or "company_members"),
        timeout_seconds=_positive_float(remote_section, "timeout_seconds", 10.0, "remote"),
    )

    # 3) Sync section
    sync_section = _section(raw, "sync")

    backoff_base = _positive_float(sync_section, "backoff_base_seconds", 2.0, "sync")
    backoff_max = _positive_float(sync_section, "backoff_max_seconds", 300.0, "sync")
    if backoff_max < backoff_base:
        raise ValueError(
            "'sync.backoff_max_seconds' cannot be lower than 'sync.backoff_base_seconds'."
        )
    multiplier = _positive_float(sync_section, "backoff_multiplier", 2.0, "sync")
    if multiplier < 1.0:
        raise ValueError("'sync.backoff_multiplier' must be >= 1.0.")

    sync_config = SyncConfig(
        push_batch_size=_positive_int(sync_section, "push_batch_size", 25, "sync"),
        pull_page_size=_positive_int(sync_section, "pull_page_size", 500, "sync"),
        interval_seconds=_positive_float(sync_section, "interval_seconds", 60.0, "sync"),
        background_grace_seconds=_positive_float(
            sync_section, "background_grace_seconds", 30.0, "sync"
        ),
        backoff_base_seconds=backoff_base,
        backoff_multiplier=multiplier,
        backoff_max_seconds=backoff_max,
        device_name=str(sync_section.get("device_name") or socket.gethostname()),
    )

    # 4) Identity section
    identity_section = _section(raw, "identity")

    secure_raw = identity_section.get("secure_storage_path") or "data/secure/identity.json"
    local_raw = identity_section.get("local_storage_path") or "data/local_storage.json"

    identity_config = IdentityConfig(
        secure_storage_path=(base_dir / str(secure_raw)).resolve(),
        local_storage_path=(base_dir / str(local_raw)).resolve(),
        key=str(identity_section.get("key") or "auth_company_id"),
    )

    # 5) Logging section
    logging_section = _section(raw, "logging")
    log_level = str(logging_section.get("level") or "INFO").upper()

    return AppConfig(
        database=database_config,
        remote=remote_config,
        sync=sync_config,
        identity=identity_config,
        log_level=log_level,
    )
