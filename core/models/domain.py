# Path: core/models/domain.py
# Purpose: Define domain models shared across scoring, pipeline, storage, and interface layers.
# Layer: core/models.
# Details: Lightweight dataclasses and enums simplify serialization between CLI, API, and core services.

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

SCORE_TOLERANCE = 1e-4


class CategoryKey(str, Enum):
    """Closed set of semantic categories. Member order is the tie-break order."""

    SCREENSHOT_DOCUMENT = "screenshot_document"
    PEOPLE = "people"
    FOOD_CAFE = "food_cafe"
    NATURE_LANDSCAPE = "nature_landscape"
    CITY_STREET_TRAVEL = "city_street_travel"
    PETS_ANIMALS = "pets_animals"
    PRODUCTS_OBJECTS = "products_objects"
    OTHER = "other"

    @classmethod
    def parse(cls, raw: Any) -> "CategoryKey":
        """Map a loosely typed key onto the enum, normalizing anything unknown to ``OTHER``."""

        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            return cls.OTHER

    @classmethod
    def from_key(cls, raw: Any) -> "CategoryKey":
        """Strict variant of :meth:`parse` that rejects unknown keys."""

        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw).strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown category key: {raw!r}") from exc


CATEGORY_KEYS: Tuple[CategoryKey, ...] = tuple(CategoryKey)


@dataclass(frozen=True)
class ScoreVector:
    """Probability-like score per category, stored in enumeration order.

    Every instance holds eight non-negative values summing to one.
    """

    values: Tuple[float, ...]

    def __post_init__(self) -> None:
        if len(self.values) != len(CATEGORY_KEYS):
            raise ValueError(f"ScoreVector needs {len(CATEGORY_KEYS)} values, got {len(self.values)}")
        if any((not math.isfinite(v)) or v < 0.0 for v in self.values):
            raise ValueError("ScoreVector values must be finite and non-negative")
        total = sum(self.values)
        if abs(total - 1.0) > SCORE_TOLERANCE:
            raise ValueError(f"ScoreVector values must sum to 1, got {total:.6f}")

    @classmethod
    def from_probabilities(cls, probabilities: Iterable[float]) -> "ScoreVector":
        """Build from eight probabilities, renormalizing away float32 drift."""

        raw = [max(0.0, float(p)) for p in probabilities]
        total = sum(raw)
        if total <= 0.0:
            return cls.uniform()
        return cls(tuple(v / total for v in raw))

    @classmethod
    def from_mapping(cls, mapping: Mapping[Any, float]) -> "ScoreVector":
        """Build from a key -> score mapping, ignoring unknown keys and normalizing the rest."""

        raw = {key: 0.0 for key in CATEGORY_KEYS}
        for key, value in mapping.items():
            try:
                category = CategoryKey.from_key(key)
            except ValueError:
                continue
            try:
                number = float(value)
            except (TypeError, ValueError):
                continue
            if math.isfinite(number):
                raw[category] = max(0.0, number)
        return cls.from_probabilities(raw[key] for key in CATEGORY_KEYS)

    @classmethod
    def one_hot(cls, category: CategoryKey) -> "ScoreVector":
        return cls(tuple(1.0 if key is category else 0.0 for key in CATEGORY_KEYS))

    @classmethod
    def uniform(cls) -> "ScoreVector":
        share = 1.0 / len(CATEGORY_KEYS)
        return cls(tuple(share for _ in CATEGORY_KEYS))

    def __getitem__(self, key: CategoryKey | str) -> float:
        return self.values[CATEGORY_KEYS.index(CategoryKey.from_key(key))]

    def items(self) -> List[Tuple[CategoryKey, float]]:
        return list(zip(CATEGORY_KEYS, self.values))

    def as_dict(self) -> Dict[str, float]:
        return {key.value: value for key, value in zip(CATEGORY_KEYS, self.values)}

    def top(self) -> Tuple[CategoryKey, float]:
        """Return the arg-max, preferring the earliest category on ties."""

        best_index = 0
        for index, value in enumerate(self.values):
            if value > self.values[best_index]:
                best_index = index
        return CATEGORY_KEYS[best_index], self.values[best_index]


class JobStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELED = "canceled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.CANCELED, JobStatus.ERROR)


class ExportStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class DistributionMode(str, Enum):
    AVG_SCORE = "avg_score"
    COUNT_RATIO = "count_ratio"


@dataclass
class JobState:
    """Progress of the single live job. Mutated only under the owning tracker's lock."""

    job_id: str
    status: JobStatus = JobStatus.IDLE
    processed: int = 0
    total: int = 0
    errors: int = 0
    current_file: Optional[str] = None
    message: Optional[str] = None

    def copy(self) -> "JobState":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload


@dataclass(frozen=True)
class PhotoResult:
    """Outcome of analysing a single image; immutable once recorded."""

    id: str
    path: str
    file_name: str
    scores: ScoreVector
    category: CategoryKey
    top_score: float
    export_status: ExportStatus
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    is_valuable: Optional[bool] = None
    valuable_score: Optional[float] = None
    model: Optional[str] = None
    tags: Tuple[str, ...] = ()
    caption: Optional[str] = None
    text_in_image: Optional[str] = None
    analysis_log: Optional[str] = None

    def to_dict(self, include_log: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "path": self.path,
            "file_name": self.file_name,
            "scores": self.scores.as_dict(),
            "category": self.category.value,
            "top_score": self.top_score,
            "export_status": self.export_status.value,
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
            "is_valuable": self.is_valuable,
            "valuable_score": self.valuable_score,
            "model": self.model,
            "tags": list(self.tags),
            "caption": self.caption,
            "text_in_image": self.text_in_image,
        }
        if include_log:
            payload["analysis_log"] = self.analysis_log
        return payload


@dataclass(frozen=True)
class ValueStats:
    valuable: int = 0
    not_valuable: int = 0
    unknown: int = 0


@dataclass(frozen=True)
class Distribution:
    """Per-category aggregate over stored results or exported files."""

    mode: DistributionMode
    by_category: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"mode": self.mode.value, "by_category": dict(self.by_category)}


@dataclass(frozen=True)
class AccelCapability:
    """Availability report for one execution provider."""

    kind: str
    name: str
    supported: bool
    available: bool
    enabled: bool = True


@dataclass(frozen=True)
class AccelCapabilities:
    cpu: AccelCapability
    coreml: AccelCapability
    cuda: AccelCapability
    rocm: AccelCapability
    directml: AccelCapability
    openvino: AccelCapability

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return asdict(self)


@dataclass(frozen=True)
class StreamChunk:
    """Partial text emitted by the remote engine while it streams a response."""

    job_id: str
    file_name: str
    delta: str = ""
    done: bool = False
    reset: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


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
    "SCORE_TOLERANCE",
    "ScoreVector",
    "StreamChunk",
    "ValueStats",
]
