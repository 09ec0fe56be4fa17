# Ledger Sync - Offline-first ledger synchronization for SMBs
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Centralized logging configuration for the ``ledger_sync`` package.

- ``configure_logging(...)`` attaches a single ``StreamHandler`` to the
  package root logger (``"ledger_sync"``). Entrypoints (the CLI or a host
  application) call it once at startup.
- ``get_logger(name)`` returns a logger and makes sure the package root has
  at least a ``NullHandler`` so library use stays silent until configured.

Library modules never attach handlers themselves. Record payloads
(descriptions, amounts) are never logged, only ids, counts and timings.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

_PKG_LOGGER_NAME = "ledger_sync"
_LEVEL_ENV_VAR = "LEDGER_SYNC_LOG_LEVEL"
_DEFAULT_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"

_configured = False


def parse_level(level: int | str | None) -> int:
    """
    Convert a level given as int, numeric string or name into an int.

    ``None`` falls back to the ``LEDGER_SYNC_LOG_LEVEL`` environment variable,
    then to ``logging.INFO``. Unknown names also map to ``logging.INFO``.
    """
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        level = level.strip().upper()
        if level.isdigit():
            return int(level)
        numeric = getattr(logging, level, None)
        if isinstance(numeric, int):
            return numeric
        return logging.INFO
    env_val = os.getenv(_LEVEL_ENV_VAR)
    if env_val:
        return parse_level(env_val)
    return logging.INFO


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] = sys.stderr,
) -> None:
    """
    Configure the package root logger exactly once.

    Parameters
    ----------
    level:
        Logging level as ``int`` or level name. The ``LEDGER_SYNC_LOG_LEVEL``
        environment variable, when set, takes precedence over this value so
        operators can raise verbosity without editing the config file.
    fmt:
        Optional format string for the handler.
    stream:
        Output stream of the ``StreamHandler`` (defaults to ``sys.stderr``).
    """
    global _configured
    if _configured:
        return

    env_val = os.getenv(_LEVEL_ENV_VAR)
    resolved = parse_level(env_val) if env_val else parse_level(level)

    logger = logging.getLogger(_PKG_LOGGER_NAME)
    for h in list(logger.handlers):
        if isinstance(h, logging.NullHandler):
            logger.removeHandler(h)

    handler = logging.StreamHandler(stream)
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter(fmt or _DEFAULT_FORMAT))

    logger.setLevel(resolved)
    logger.addHandler(handler)
    logger.propagate = False

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger by name, attaching a ``NullHandler`` to the root if needed."""
    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if not _configured and not pkg_logger.handlers:
        pkg_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)
