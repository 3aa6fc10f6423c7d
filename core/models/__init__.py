# Path: core/models/__init__.py
# Purpose: Package initializer for domain model definitions.
# Layer: core/models.
# Details: Exposes dataclasses and enums shared by scoring, pipeline, storage, and interface layers.

from .domain import (
    CATEGORY_KEYS,
    AccelCapabilities,
    AccelCapability,
    CategoryKey,
    Distribution,
    DistributionMode,
    ExportStatus,
    JobState,
    JobStatus,
    PhotoResult,
    ScoreVector,
    StreamChunk,
    ValueStats,
)

__all__ = [
    "AccelCapabilities",
    "AccelCapability",
    "CATEGORY_KEYS",
    "CategoryKey",
    "Distribution",
    "DistributionMode",
    "ExportStatus",
    "JobState",
    "JobStatus",
    "PhotoResult",
    "ScoreVector",
    "StreamChunk",
    "ValueStats",
]
