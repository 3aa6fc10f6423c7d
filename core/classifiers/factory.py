# Path: core/classifiers/factory.py
# Purpose: Choose and build the primary and fallback classifiers for a job's settings snapshot.
# Layer: core/classifiers.
# Details: CLIP classifiers share the cached runtime; the remote engine doubles as the per-item fallback.

from __future__ import annotations

from typing import Optional

import requests

from config.settings import AnalysisEngine, AnalysisSettings
from core.runtime.clip_runtime import ClipRuntimeRegistry
from core.runtime.session_pool import EmbedderFactory

from .base import Classifier
from .clip_classifier import ClipClassifier
from .ollama_classifier import OllamaClassifier


class ClassifierFactory:
    """Builds classifiers; tests inject an embedder factory and an HTTP session."""

    def __init__(
        self,
        registry: Optional[ClipRuntimeRegistry] = None,
        embedder_factory: Optional[EmbedderFactory] = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.registry = registry or ClipRuntimeRegistry()
        self.embedder_factory = embedder_factory
        self.http = http or requests.Session()

    def primary(self, settings: AnalysisSettings) -> Classifier:
        """Raises ProviderUnavailable when the local runtime cannot be built."""

        if settings.engine is AnalysisEngine.CLIP:
            runtime = self.registry.get(settings.clip, settings.concurrency, self.embedder_factory)
            return ClipClassifier(runtime, value_enabled=settings.value_enabled)
        return self.remote(settings)

    def fallback(self, settings: AnalysisSettings) -> Optional[Classifier]:
        if settings.engine is AnalysisEngine.CLIP and settings.clip.fallback_to_remote:
            return self.remote(settings)
        return None

    def remote(self, settings: AnalysisSettings) -> OllamaClassifier:
        return OllamaClassifier(
            settings.remote,
            self.http,
            max_edge=settings.max_edge,
            jpeg_quality=settings.jpeg_quality,
            resize_enabled=settings.resize_enabled,
        )

    def close(self) -> None:
        self.http.close()
