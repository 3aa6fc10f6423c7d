# Path: core/errors.py
# Purpose: Define the exception taxonomy raised by the analysis core.
# Layer: core.
# Details: Per-item failures are recorded on results; ProviderUnavailable and command rejections surface to callers.

from __future__ import annotations


class AnalysisError(Exception):
    """Base class for errors raised by the analysis core."""


class InvalidImage(AnalysisError):
    """The bytes of a file could not be decoded as an image."""


class ProviderUnavailable(AnalysisError):
    """No execution provider, CPU included, could build a working session."""


class ModelFilesNotFound(ProviderUnavailable):
    """The model directory, tokenizer, or ONNX file could not be located."""


class ExportError(AnalysisError, OSError):
    """Copying an analysed file into the export tree failed."""


class RemoteEngineError(AnalysisError):
    """The remote vision-language engine failed, timed out, or returned an unusable response."""


class JobAlreadyRunning(AnalysisError):
    """A job was requested while another one is still running."""


class InvalidJobRequest(AnalysisError, ValueError):
    """A job was requested with missing or unusable source or export roots."""


__all__ = [
    "AnalysisError",
    "ExportError",
    "InvalidImage",
    "InvalidJobRequest",
    "JobAlreadyRunning",
    "ModelFilesNotFound",
    "ProviderUnavailable",
    "RemoteEngineError",
]
