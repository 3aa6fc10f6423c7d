# Path: core/embedders/base.py
# Purpose: Define the Embedder interface for image and text embeddings.
# Layer: core/embedders.
# Details: Session pools lend Embedder instances to workers; implementations wrap one inference session each.

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

import numpy as np

IMAGE_SIZE = 224


class Embedder(ABC):
    """Abstract base class for embedders lent out by the session pool."""

    name: str
    provider: str

    @abstractmethod
    def embed_images(self, pixel_values: np.ndarray) -> np.ndarray:
        """Return one raw embedding row per image of an NCHW float32 batch."""

    @abstractmethod
    def embed_texts(self, texts: Sequence[str]) -> np.ndarray:
        """Return one raw embedding row per text."""

    def embed_image(self, pixel_values: np.ndarray) -> np.ndarray:
        """Return the raw embedding of a single preprocessed image."""

        rows = self.embed_images(pixel_values)
        if rows.size == 0:
            raise ValueError("Embedder returned an empty image embedding.")
        return np.array(rows[0], dtype=np.float32, copy=True)

    def warmup(self) -> None:
        """Run one dummy text and one dummy image through the session.

        Raises whatever the underlying runtime raises; the provider chain treats that as a failed candidate.
        """

        texts = self.embed_texts([""])
        images = self.embed_images(np.zeros((1, 3, IMAGE_SIZE, IMAGE_SIZE), dtype=np.float32))
        if texts.size == 0 or images.size == 0:
            raise RuntimeError(f"Warmup produced empty embeddings on {self.provider}.")
