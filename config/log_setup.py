# Path: config/log_setup.py
# Purpose: Configure process-wide logging from application settings.
# Layer: config.
# Details: Installs a single stream handler on the root logger; repeated calls only adjust the level.

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Attach one stream handler to the root logger and set its level."""

    root = logging.getLogger()
    resolved = logging.getLevelName(str(level).upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    root.setLevel(resolved)
    if any(getattr(handler, "_photosort", False) for handler in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._photosort = True  # type: ignore[attr-defined]
    root.addHandler(handler)


__all__ = ["configure_logging", "LOG_FORMAT"]
