# Path: core/classifiers/clip_classifier.py
# Purpose: Classify images locally with the pooled CLIP runtime.
# Layer: core/classifiers.
# Details: Decoding happens outside the session; only the vision forward pass holds a pooled session.

from __future__ import annotations

from typing import Optional

from core.runtime.capabilities import MODEL_ID
from core.runtime.clip_runtime import ClipRuntime
from core.scoring.preprocess import preprocess_image
from core.scoring.scorer import Scorer

from .base import ClassificationOutput, Classifier, DeltaCallback


class ClipClassifier(Classifier):
    """Zero-shot classifier comparing image embeddings with cached prompt embeddings."""

    id = "clip"

    def __init__(self, runtime: ClipRuntime, value_enabled: bool = False) -> None:
        self.runtime = runtime
        self.scorer = Scorer(runtime.pool, runtime.prompts, value_enabled=value_enabled)

    def classify(self, data: bytes, on_delta: Optional[DeltaCallback] = None) -> ClassificationOutput:
        pixel_values = preprocess_image(data)
        verdict = self.scorer.score(pixel_values)

        log = self.runtime.describe() + f"vision_infer_ms: {verdict.inference_ms}\n"
        if verdict.value is not None:
            log += f"value_keep_prob: {verdict.value.keep_prob:.4f}\n"
        return ClassificationOutput(
            scores=verdict.scores,
            category=verdict.category,
            top_score=verdict.top_score,
            model=MODEL_ID,
            is_valuable=verdict.value.is_valuable if verdict.value else None,
            valuable_score=verdict.value.keep_prob if verdict.value else None,
            analysis_log=log,
            inference_ms=verdict.inference_ms,
        )
