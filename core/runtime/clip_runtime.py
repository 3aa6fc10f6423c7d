# Path: core/runtime/clip_runtime.py
# Purpose: Assemble the session pool and prompt embeddings for one CLIP configuration and reuse them across jobs.
# Layer: core/runtime.
# Details: Each registry keeps one runtime; a different configuration key replaces it. The classifier factory owns the registry.

from __future__ import annotations

import logging
import math
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from config.settings import ClipSettings, clamp_concurrency
from core.embedders.clip_embedder import ClipOnnxEmbedder
from core.embedders.prompts import PromptEmbeddingCache, PromptEmbeddingSet, build_prompt_embeddings
from core.runtime import capabilities
from core.runtime.capabilities import AcceleratorKind
from core.runtime.session_pool import EmbedderFactory, SessionPool, build_provider_chain

logger = logging.getLogger(__name__)


def intra_op_threads(pool_size: int) -> int:
    """Split the machine's cores evenly across pooled sessions."""

    cores = os.cpu_count() or 1
    return max(1, math.ceil(cores / max(1, pool_size)))


def runtime_key(clip: ClipSettings, concurrency: int) -> str:
    """Identity of a runtime: model location, provider toggles, and pool size."""

    toggles = ",".join(f"{kind.value}={int(capabilities.is_enabled(clip, kind))}" for kind in AcceleratorKind)
    return f"dir={clip.model_dir};file={clip.model_file};auto={int(clip.ep_auto)};{toggles};pool={clamp_concurrency(concurrency)}"


@dataclass(frozen=True)
class ClipRuntime:
    """Warmed-up session pool plus the prompt embeddings computed with it."""

    key: str
    pool: SessionPool
    prompts: PromptEmbeddingSet
    load_ms: int
    model_path: Optional[Path] = None

    @property
    def provider(self) -> AcceleratorKind:
        return self.pool.provider

    def describe(self) -> str:
        """Multi-line summary appended to each result's analysis log."""

        return (
            f"engine: clip\n"
            f"model_path: {self.model_path}\n"
            f"model_load_ms: {self.load_ms}\n"
            f"text_cache_ms: {self.prompts.elapsed_ms}\n"
            f"execution_provider: {self.provider.value}\n"
            f"pool_size: {self.pool.capacity}\n"
        )


class ClipRuntimeRegistry:
    """Builds runtimes on demand and hands the same instance to every job with the same key."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current: Optional[ClipRuntime] = None
        self.prompt_cache = PromptEmbeddingCache()

    def get(self, clip: ClipSettings, concurrency: int, factory: Optional[EmbedderFactory] = None) -> ClipRuntime:
        """Return the runtime for this configuration, building it if the key changed.

        Raises ProviderUnavailable (or ModelFilesNotFound) when no provider can run the model.
        """

        key = runtime_key(clip, concurrency)
        with self._lock:
            if self._current is not None and self._current.key == key:
                return self._current
            if self._current is not None:
                logger.info("Runtime configuration changed; rebuilding sessions")
                self.prompt_cache.invalidate(self._current.key)
                self._current = None
            runtime = self._build(key, clip, concurrency, factory)
            self._current = runtime
            return runtime

    def invalidate(self) -> None:
        with self._lock:
            self._current = None
            self.prompt_cache.invalidate()

    @property
    def current(self) -> Optional[ClipRuntime]:
        with self._lock:
            return self._current

    def _build(
        self,
        key: str,
        clip: ClipSettings,
        concurrency: int,
        factory: Optional[EmbedderFactory],
    ) -> ClipRuntime:
        size = clamp_concurrency(concurrency)
        model_path: Optional[Path] = None
        if factory is None:
            model_path, tokenizer_path = capabilities.resolve_model_files(clip)
            threads = intra_op_threads(size)

            def load_session(kind: AcceleratorKind) -> ClipOnnxEmbedder:
                return ClipOnnxEmbedder.load(model_path, tokenizer_path, kind.provider_name, intra_threads=threads)

            factory = load_session

        started = time.perf_counter()
        pool = SessionPool.build(size, factory, build_provider_chain(clip))
        load_ms = int((time.perf_counter() - started) * 1000)
        with pool.session() as embedder:
            prompts = self.prompt_cache.get_or_build(key, lambda: build_prompt_embeddings(embedder))
        logger.info(
            "CLIP runtime ready: provider=%s pool=%d load=%dms text_cache=%dms",
            pool.provider.value,
            pool.capacity,
            load_ms,
            prompts.elapsed_ms,
        )
        return ClipRuntime(key=key, pool=pool, prompts=prompts, load_ms=load_ms, model_path=model_path)


__all__ = [
    "ClipRuntime",
    "ClipRuntimeRegistry",
    "intra_op_threads",
    "runtime_key",
]
