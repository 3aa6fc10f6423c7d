# Path: config/__init__.py
# Purpose: Package initializer for configuration module.
# Layer: config.
# Details: Exposes settings models, persistence helpers, and logging setup.

from .log_setup import configure_logging
from .settings import (
    AnalysisEngine,
    AnalysisSettings,
    ClipSettings,
    RemoteSettings,
    load_settings,
    save_settings,
)

__all__ = [
    "AnalysisEngine",
    "AnalysisSettings",
    "ClipSettings",
    "RemoteSettings",
    "configure_logging",
    "load_settings",
    "save_settings",
]
