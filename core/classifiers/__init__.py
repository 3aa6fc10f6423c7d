# Path: core/classifiers/__init__.py
# Purpose: Package initializer for classifier strategies.
# Layer: core/classifiers.
# Details: Exposes the strategy interface and the local and remote implementations.

from .base import ClassificationOutput, Classifier, DeltaCallback
from .clip_classifier import ClipClassifier
from .factory import ClassifierFactory
from .ollama_classifier import OllamaClassifier, check_connection, list_models

__all__ = [
    "ClassificationOutput",
    "Classifier",
    "ClassifierFactory",
    "ClipClassifier",
    "DeltaCallback",
    "OllamaClassifier",
    "check_connection",
    "list_models",
]
