# Path: core/scoring/__init__.py
# Purpose: Package initializer for image preprocessing and embedding-based scoring.
# Layer: core/scoring.
# Details: Exposes the scorer, its pure math helpers, and the preprocessing entry points.

from .preprocess import encode_jpeg_base64, preprocess_image
from .scorer import LOGIT_SCALE, Scorer, Verdict, cosine_similarity, judge_value, score_categories, softmax

__all__ = [
    "LOGIT_SCALE",
    "Scorer",
    "Verdict",
    "cosine_similarity",
    "encode_jpeg_base64",
    "judge_value",
    "preprocess_image",
    "score_categories",
    "softmax",
]
