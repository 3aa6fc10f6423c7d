# Path: core/scoring/scorer.py
# Purpose: Turn one image embedding into category scores and an optional keep/drop judgment.
# Layer: core/scoring.
# Details: Cosine similarity against cached prompt embeddings, scaled and softmaxed; sessions are held only for inference.

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from core.embedders.prompts import PromptEmbeddingSet
from core.models.domain import CategoryKey, ScoreVector
from core.runtime.session_pool import SessionPool

# CLIP's learned temperature; raw cosine gaps between prompts are too small to softmax directly.
LOGIT_SCALE = 100.0
VALUE_THRESHOLD = 0.5
EPSILON = 1e-12


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    array = np.asarray(vector, dtype=np.float32)
    return array / max(float(np.linalg.norm(array)), EPSILON)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    a = np.asarray(a, dtype=np.float32)
    b = np.asarray(b, dtype=np.float32)
    denominator = max(float(np.linalg.norm(a)) * float(np.linalg.norm(b)), EPSILON)
    return float(np.dot(a, b)) / denominator


def softmax(logits: Sequence[float] | np.ndarray) -> np.ndarray:
    """Numerically stable softmax; a degenerate exponent sum is treated as one."""

    values = np.asarray(logits, dtype=np.float64)
    if values.size == 0:
        return values
    exps = np.exp(values - values.max())
    total = float(exps.sum())
    if total <= 0.0:
        total = 1.0
    return exps / total


def score_categories(
    image_embedding: np.ndarray,
    prompts: PromptEmbeddingSet,
    logit_scale: float = LOGIT_SCALE,
) -> ScoreVector:
    logits = [cosine_similarity(image_embedding, text) * logit_scale for text in prompts.category_matrix()]
    return ScoreVector.from_probabilities(softmax(logits))


@dataclass(frozen=True)
class ValueJudgment:
    is_valuable: bool
    keep_prob: float


def judge_value(
    image_embedding: np.ndarray,
    prompts: PromptEmbeddingSet,
    logit_scale: float = LOGIT_SCALE,
) -> ValueJudgment:
    """Two-way softmax between the keep and drop prompt embeddings."""

    keep_logit = cosine_similarity(image_embedding, prompts.keep) * logit_scale
    drop_logit = cosine_similarity(image_embedding, prompts.drop) * logit_scale
    keep_prob = float(softmax([keep_logit, drop_logit])[0])
    return ValueJudgment(is_valuable=keep_prob >= VALUE_THRESHOLD, keep_prob=keep_prob)


@dataclass(frozen=True)
class Verdict:
    scores: ScoreVector
    category: CategoryKey
    top_score: float
    value: Optional[ValueJudgment]
    inference_ms: int


class Scorer:
    """Scores preprocessed images using pooled sessions and a shared prompt embedding set."""

    def __init__(
        self,
        pool: SessionPool,
        prompts: PromptEmbeddingSet,
        value_enabled: bool = False,
        logit_scale: float = LOGIT_SCALE,
    ) -> None:
        self.pool = pool
        self.prompts = prompts
        self.value_enabled = value_enabled
        self.logit_scale = logit_scale

    def embed(self, pixel_values: np.ndarray) -> np.ndarray:
        """Run the vision tower on a pooled session and return a unit-length embedding."""

        with self.pool.session() as embedder:
            raw = embedder.embed_image(pixel_values)
        return l2_normalize(raw)

    def score(self, pixel_values: np.ndarray) -> Verdict:
        """Embed one image, then score it after the session has been returned to the pool."""

        started = time.perf_counter()
        image_embedding = self.embed(pixel_values)
        inference_ms = int((time.perf_counter() - started) * 1000)

        scores = score_categories(image_embedding, self.prompts, self.logit_scale)
        category, top_score = scores.top()
        value = judge_value(image_embedding, self.prompts, self.logit_scale) if self.value_enabled else None
        return Verdict(
            scores=scores,
            category=category,
            top_score=top_score,
            value=value,
            inference_ms=inference_ms,
        )


__all__ = [
    "LOGIT_SCALE",
    "Scorer",
    "ValueJudgment",
    "Verdict",
    "cosine_similarity",
    "judge_value",
    "l2_normalize",
    "score_categories",
    "softmax",
]
