# Path: core/indexing/__init__.py
# Purpose: Package initializer for source scanning utilities.
# Layer: core/indexing.
# Details: Exposes the image scanner used to enumerate a job's inputs.

from .scanner import SUPPORTED_EXTENSIONS, ImageScanner

__all__ = ["ImageScanner", "SUPPORTED_EXTENSIONS"]
