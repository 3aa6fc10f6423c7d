# Path: core/export/router.py
# Purpose: Copy analysed images into per-category export folders and count what was exported.
# Layer: core/export.
# Details: Layout is export_root/<category>/ or export_root/valuable|not-valuable/<category>/ with _<n> de-duplication.

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Dict, Optional

from core.errors import ExportError
from core.models.domain import CATEGORY_KEYS, CategoryKey, Distribution, DistributionMode

logger = logging.getLogger(__name__)

VALUABLE_DIR = "valuable"
NOT_VALUABLE_DIR = "not-valuable"
MAX_DUPLICATE_SUFFIX = 9999


def category_dir(export_root: Path, category: CategoryKey, is_valuable: Optional[bool] = None) -> Path:
    """Return the folder an image of ``category`` is exported to."""

    if is_valuable is None:
        return export_root / category.value
    return export_root / (VALUABLE_DIR if is_valuable else NOT_VALUABLE_DIR) / category.value


def _reserve(target: Path) -> bool:
    try:
        fd = os.open(target, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        return False
    os.close(fd)
    return True


def copy_into(target_dir: Path, source: Path, file_name: Optional[str] = None) -> Path:
    """Copy ``source`` into ``target_dir``, appending ``_<n>`` to the stem on name collisions.

    Names are reserved with an exclusive create so concurrent workers never pick the same target.
    """

    name = file_name or source.name
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / name
        if not _reserve(target):
            stem = Path(name).stem or "image"
            suffix = Path(name).suffix or ".jpg"
            for counter in range(1, MAX_DUPLICATE_SUFFIX + 1):
                target = target_dir / f"{stem}_{counter}{suffix}"
                if _reserve(target):
                    break
            else:
                raise ExportError(f"Too many duplicates for {name} in {target_dir}")
        try:
            shutil.copy2(source, target)
        except OSError:
            target.unlink(missing_ok=True)
            raise
    except ExportError:
        raise
    except OSError as exc:
        raise ExportError(f"Failed to export {source} to {target_dir}: {exc}") from exc
    return target


class ExportRouter:
    """Routes each classified image to its export folder."""

    def __init__(self, export_root: Path, value_layout: bool = False) -> None:
        self.export_root = Path(export_root)
        self.value_layout = value_layout

    def route(self, source: Path, category: CategoryKey, is_valuable: Optional[bool] = None) -> Path:
        valuable = is_valuable if self.value_layout else None
        target = copy_into(category_dir(self.export_root, category, valuable), source)
        logger.debug("Exported %s -> %s", source.name, target)
        return target


def _count_files(folder: Path) -> int:
    if not folder.is_dir():
        return 0
    return sum(1 for entry in folder.iterdir() if entry.is_file())


def folder_distribution(export_root: Path, mode: DistributionMode) -> Distribution:
    """Per-category share of exported files, counting both the flat and the value-split layouts.

    Both modes report file-count ratios since exported files carry no scores.
    """

    root = Path(export_root)
    counts: Dict[str, int] = {}
    for key in CATEGORY_KEYS:
        counts[key.value] = (
            _count_files(category_dir(root, key))
            + _count_files(category_dir(root, key, True))
            + _count_files(category_dir(root, key, False))
        )
    total = sum(counts.values())
    if total <= 0:
        return Distribution(mode=mode, by_category={key: 0.0 for key in counts})
    return Distribution(mode=mode, by_category={key: round(count / total, 4) for key, count in counts.items()})
