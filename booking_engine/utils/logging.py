"""Logging configuration helpers."""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""

    root = logging.getLogger()
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    root.setLevel(resolved)
    if any(getattr(handler, "_booking_engine", False) for handler in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._booking_engine = True  # type: ignore[attr-defined]
    root.addHandler(handler)
