# Path: core/indexing/scanner.py
# Purpose: Scan folders and collect the image files a job will analyse.
# Layer: core/indexing.
# Details: Walks the source tree recursively, returning a stable sorted list and skipping the export tree.

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".heic", ".dng"}


class ImageScanner:
    """Scan filesystem paths for supported image files."""

    def __init__(self, root: Path, exclude: Optional[Path] = None) -> None:
        self.root = Path(root)
        self.exclude = Path(exclude).resolve() if exclude is not None else None

    def scan(self) -> List[Path]:
        """Return discovered images sorted by path."""

        files = sorted(self._iter_image_files())
        logger.debug("Found %d images under %s", len(files), self.root)
        return files

    def _iter_image_files(self) -> Iterable[Path]:
        """Yield image files under the root directory."""

        for path in self.root.rglob("*"):
            if path.suffix.lower() not in SUPPORTED_EXTENSIONS or not path.is_file():
                continue
            if self.exclude is not None and self.exclude in path.resolve().parents:
                continue
            yield path
