# Path: core/classifiers/base.py
# Purpose: Define the classifier strategy interface shared by the local CLIP engine and the remote engine.
# Layer: core/classifiers.
# Details: The pipeline delegates each image to a Classifier and records its ClassificationOutput.

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from core.models.domain import CategoryKey, ScoreVector

DeltaCallback = Callable[[str], None]


@dataclass(frozen=True)
class ClassificationOutput:
    """Everything a classifier learned about one image."""

    scores: ScoreVector
    category: CategoryKey
    top_score: float
    model: str
    is_valuable: Optional[bool] = None
    valuable_score: Optional[float] = None
    tags: Tuple[str, ...] = ()
    caption: Optional[str] = None
    text_in_image: Optional[str] = None
    analysis_log: str = ""
    inference_ms: int = 0


class Classifier(ABC):
    """Interface for engines that score raw image bytes against the category set."""

    id: str
    streams: bool = False

    @abstractmethod
    def classify(self, data: bytes, on_delta: Optional[DeltaCallback] = None) -> ClassificationOutput:
        """Classify one encoded image.

        ``on_delta`` receives partial response text for engines that stream; others ignore it.
        """
