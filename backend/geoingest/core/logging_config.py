"""Root logger configuration for the ingestion service."""

from __future__ import annotations

import logging

DEFAULT_FMT = "%(asctime)s - %(levelname)s - [%(name)s] %(message)s"


def _coerce_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level: str | int = "INFO", fmt: str = DEFAULT_FMT) -> None:
    """Configure the root logger with a single console handler.

    Idempotent: handlers installed by a previous call are replaced, so
    building several apps in one process does not duplicate log lines.

    Args:
        level: Level name ("DEBUG", "INFO", ...) or numeric level.
        fmt: Log record format.
    """
    root = logging.getLogger()
    root.setLevel(_coerce_level(level))

    for handler in list(root.handlers):
        if getattr(handler, "_geoingest", False):
            root.removeHandler(handler)
            handler.close()

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(fmt))
    handler._geoingest = True  # type: ignore[attr-defined]
    root.addHandler(handler)
