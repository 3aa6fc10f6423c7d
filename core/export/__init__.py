# Path: core/export/__init__.py
# Purpose: Package initializer for export routing.
# Layer: core/export.
# Details: Exposes the router and the export-tree distribution helper.

from .router import ExportRouter, category_dir, copy_into, folder_distribution

__all__ = ["ExportRouter", "category_dir", "copy_into", "folder_distribution"]
