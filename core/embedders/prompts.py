# Path: core/embedders/prompts.py
# Purpose: Hold the category and value prompts and the cached text embeddings derived from them.
# Layer: core/embedders.
# Details: Embeddings are computed once per runtime configuration and are read-only afterwards.

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, Mapping, Tuple

import numpy as np

from core.models.domain import CATEGORY_KEYS, CategoryKey

from .base import Embedder

logger = logging.getLogger(__name__)

CATEGORY_PROMPTS: Mapping[CategoryKey, Tuple[str, ...]] = MappingProxyType(
    {
        CategoryKey.SCREENSHOT_DOCUMENT: (
            "a screenshot of a document",
            "a screenshot with text and UI",
            "a photographed document or paper",
        ),
        CategoryKey.PEOPLE: (
            "a photo of people",
            "a portrait of a person",
            "people in a social scene",
        ),
        CategoryKey.FOOD_CAFE: (
            "a photo of food",
            "a cafe or restaurant scene",
            "a drink or dessert on a table",
        ),
        CategoryKey.NATURE_LANDSCAPE: (
            "a nature landscape photo",
            "mountains, forest, ocean, or sky",
            "a scenic outdoor view",
        ),
        CategoryKey.CITY_STREET_TRAVEL: (
            "a city street photo",
            "a travel landmark or tourist place",
            "buildings and urban scenery",
        ),
        CategoryKey.PETS_ANIMALS: (
            "a photo of an animal",
            "a pet dog or cat",
            "wildlife or animals outdoors",
        ),
        CategoryKey.PRODUCTS_OBJECTS: (
            "a photo of an object or product",
            "an item on a table",
            "a close-up of a thing",
        ),
        CategoryKey.OTHER: (
            "a miscellaneous photo",
            "an abstract or unclear scene",
            "something else",
        ),
    }
)

KEEP_PROMPTS: Tuple[str, ...] = (
    "a valuable personal photo worth keeping",
    "a meaningful photo to keep in a personal album",
    "a high quality photo worth saving",
    "an important screenshot to keep",
)

DROP_PROMPTS: Tuple[str, ...] = (
    "a low quality photo not worth keeping",
    "a blurry or accidental photo",
    "a duplicate or unimportant screenshot",
    "a meaningless image to delete",
)


def _frozen(vector: np.ndarray) -> np.ndarray:
    array = np.array(vector, dtype=np.float32, copy=True)
    array.setflags(write=False)
    return array


def mean_embedding(rows: np.ndarray) -> np.ndarray:
    """Average prompt embeddings and re-normalize the mean to unit length."""

    if rows.ndim != 2 or rows.shape[0] == 0:
        raise ValueError("Expected a non-empty (n, d) embedding matrix.")
    mean = rows.astype(np.float32).mean(axis=0)
    norm = float(np.linalg.norm(mean))
    return mean / max(norm, 1e-12)


@dataclass(frozen=True)
class PromptEmbeddingSet:
    """Category, keep, and drop text embeddings shared read-only by every worker."""

    categories: Mapping[CategoryKey, np.ndarray]
    keep: np.ndarray
    drop: np.ndarray
    elapsed_ms: int = 0

    @property
    def dim(self) -> int:
        return int(self.keep.shape[0])

    def category_matrix(self) -> np.ndarray:
        """Return category embeddings stacked in enumeration order."""

        return np.stack([self.categories[key] for key in CATEGORY_KEYS])


def build_prompt_embeddings(embedder: Embedder) -> PromptEmbeddingSet:
    """Embed every prompt with one session and aggregate them per category."""

    started = time.perf_counter()
    flat: list[Tuple[CategoryKey, str]] = [
        (key, prompt) for key in CATEGORY_KEYS for prompt in CATEGORY_PROMPTS[key]
    ]
    rows = embedder.embed_texts([prompt for _, prompt in flat])
    if rows.shape[0] != len(flat):
        raise ValueError(f"Expected {len(flat)} text embeddings, got {rows.shape[0]}")

    categories: Dict[CategoryKey, np.ndarray] = {}
    for key in CATEGORY_KEYS:
        indices = [index for index, (owner, _) in enumerate(flat) if owner is key]
        categories[key] = _frozen(mean_embedding(rows[indices]))

    keep = _frozen(mean_embedding(embedder.embed_texts(list(KEEP_PROMPTS))))
    drop = _frozen(mean_embedding(embedder.embed_texts(list(DROP_PROMPTS))))
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    total = len(flat) + len(KEEP_PROMPTS) + len(DROP_PROMPTS)
    logger.info("Cached %d prompt embeddings in %d ms on %s", total, elapsed_ms, embedder.provider)
    return PromptEmbeddingSet(
        categories=MappingProxyType(categories),
        keep=keep,
        drop=drop,
        elapsed_ms=elapsed_ms,
    )


class PromptEmbeddingCache:
    """Configuration-keyed cache of prompt embeddings.

    Each key is computed at most once until invalidated, even under concurrent first access.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, PromptEmbeddingSet] = {}
        self._lock = threading.Lock()

    def get_or_build(self, key: str, builder: Callable[[], PromptEmbeddingSet]) -> PromptEmbeddingSet:
        with self._lock:
            cached = self._entries.get(key)
            if cached is None:
                cached = builder()
                self._entries[key] = cached
            return cached

    def get(self, key: str) -> PromptEmbeddingSet | None:
        with self._lock:
            return self._entries.get(key)

    def invalidate(self, key: str | None = None) -> None:
        """Drop one configuration's embeddings, or all of them."""

        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

