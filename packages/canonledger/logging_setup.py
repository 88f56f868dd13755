"""Logging for ``canonledger``.

Entrypoints (the CLI and the worker) call :func:`configure_logging` once.
Library modules only call :func:`get_logger` and never attach handlers; until
an entrypoint configures logging, records under ``canonledger`` go to a
``NullHandler``.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

_ROOT_NAME = "canonledger"
_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
_configured = False


def resolve_level(level: int | str | None) -> int:
    """``level`` as a logging constant; ``None`` means ``CANONLEDGER_LOG_LEVEL`` or INFO."""

    if level is None:
        level = os.getenv("CANONLEDGER_LOG_LEVEL") or logging.INFO
    if isinstance(level, int):
        return level
    name = level.strip().upper()
    if name.isdigit():
        return int(name)
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def configure_logging(level: int | str | None = None, *, stream: IO[str] = sys.stderr) -> None:
    """Attach one stream handler to the ``canonledger`` logger; later calls are no-ops."""

    global _configured
    if _configured:
        return

    root = logging.getLogger(_ROOT_NAME)
    for h in [h for h in root.handlers if isinstance(h, logging.NullHandler)]:
        root.removeHandler(h)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)
    root.setLevel(resolve_level(level))
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    root = logging.getLogger(_ROOT_NAME)
    if not _configured and not root.handlers:
        root.addHandler(logging.NullHandler())
    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger", "resolve_level"]
