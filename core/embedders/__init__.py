# Path: core/embedders/__init__.py
# Purpose: Package initializer for embedder implementations and interfaces.
# Layer: core/embedders.
# Details: Exposes the base interface, the ONNX CLIP embedder, and the prompt embedding cache.

from .base import Embedder
from .clip_embedder import ClipOnnxEmbedder
from .prompts import PromptEmbeddingCache, PromptEmbeddingSet, build_prompt_embeddings

__all__ = ["ClipOnnxEmbedder", "Embedder", "PromptEmbeddingCache", "PromptEmbeddingSet", "build_prompt_embeddings"]
