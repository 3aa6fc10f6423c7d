# Path: core/storage/__init__.py
# Purpose: Package initializer for result persistence.
# Layer: core/storage.
# Details: Exposes the SQLite-backed result store.

from .result_store import PhotoResultStore

__all__ = ["PhotoResultStore"]
