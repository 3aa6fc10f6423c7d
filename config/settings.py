# Path: config/settings.py
# Purpose: Provide typed analysis configuration models and their JSON persistence.
# Layer: config.
# Details: Centralizes engine choice, execution-provider toggles, concurrency, and remote-engine options.

from __future__ import annotations

import json
import logging
import os
import sys
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

logger = logging.getLogger(__name__)

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 32


def default_concurrency() -> int:
    """Return the default worker count: the core count capped at four."""

    return max(1, min(os.cpu_count() or 4, 4))


def clamp_concurrency(value: int) -> int:
    return max(MIN_CONCURRENCY, min(int(value), MAX_CONCURRENCY))


class AnalysisEngine(str, Enum):
    """Engine used as the primary classifier for every image of a job."""

    CLIP = "clip"
    OLLAMA = "ollama"


class ClipSettings(BaseModel):
    """Settings describing where the CLIP ONNX model lives and which execution providers to try."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_dir: Optional[Path] = Field(default=None, description="Directory holding tokenizer.json and onnx/ files.")
    model_file: str = Field(default="onnx/model_q4f16.onnx", description="Model file relative to the model directory.")
    ep_auto: bool = Field(default=True, description="Try user-enabled accelerators before CPU.")
    ep_coreml: bool = Field(default=sys.platform == "darwin", description="Enable the CoreML provider.")
    ep_cuda: bool = Field(default=False, description="Enable the CUDA provider.")
    ep_rocm: bool = Field(default=False, description="Enable the ROCm provider.")
    ep_directml: bool = Field(default=False, description="Enable the DirectML provider.")
    ep_openvino: bool = Field(default=False, description="Enable the OpenVINO provider.")
    fallback_to_remote: bool = Field(default=False, description="Retry a failed image once against the remote engine.")


class RemoteSettings(BaseModel):
    """Settings for the remote vision-language model served over the Ollama HTTP API."""

    model_config = ConfigDict(frozen=True)

    base_url: str = Field(default="http://127.0.0.1:11434", description="Base URL of the Ollama server.")
    model: str = Field(default="qwen2.5vl:7b", description="Vision-capable model name.")
    think: bool = Field(default=False, description="Allow the model to emit reasoning traces.")
    stream: bool = Field(default=False, description="Stream partial response text as it is generated.")
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request timeout for remote calls.")


class AnalysisSettings(BaseModel):
    """Top-level settings shared by the job manager, the pipeline, and the HTTP layer.

    Instances are immutable; every job receives the snapshot that was current when it started.
    """

    model_config = ConfigDict(frozen=True)

    engine: AnalysisEngine = Field(default=AnalysisEngine.CLIP, description="Primary analysis engine.")
    concurrency: int = Field(default_factory=default_concurrency, description="Concurrent workers and pooled sessions.")
    value_enabled: bool = Field(default=False, description="Judge whether each image is worth keeping.")
    resize_enabled: bool = Field(default=True, description="Downscale images before sending them to the remote engine.")
    max_edge: int = Field(default=768, ge=1, description="Longest edge after downscaling for the remote engine.")
    jpeg_quality: int = Field(default=60, description="JPEG quality used when re-encoding for the remote engine.")
    clip: ClipSettings = Field(default_factory=ClipSettings)
    remote: RemoteSettings = Field(default_factory=RemoteSettings)
    log_level: str = Field(default="INFO", description="Verbosity level for application logs.")
    database_path: Path = Field(default=Path("storage/db/photos.sqlite3"), description="Path to the result database.")

    @field_validator("concurrency")
    @classmethod
    def _clamp_concurrency(cls, value: int) -> int:
        return clamp_concurrency(value)

    @field_validator("jpeg_quality")
    @classmethod
    def _clamp_quality(cls, value: int) -> int:
        return max(1, min(int(value), 100))

    @field_validator("remote")
    @classmethod
    def _single_stream_producer(cls, value: RemoteSettings, info: ValidationInfo) -> RemoteSettings:
        # Interleaved partial text from several workers is unreadable.
        if value.stream and info.data.get("concurrency", MIN_CONCURRENCY) > 1:
            return value.model_copy(update={"stream": False})
        return value

    @property
    def streaming_enabled(self) -> bool:
        return self.remote.stream and self.concurrency == 1

    def snapshot(self) -> "AnalysisSettings":
        """Return an independent copy suitable for handing to a running job."""

        return self.model_copy(deep=True)

    @classmethod
    def from_env(cls) -> "AnalysisSettings":
        """Instantiate settings, honouring a few environment overrides."""

        overrides = {}
        if os.environ.get("PHOTOSORT_CONCURRENCY"):
            overrides["concurrency"] = int(os.environ["PHOTOSORT_CONCURRENCY"])
        if os.environ.get("PHOTOSORT_LOG_LEVEL"):
            overrides["log_level"] = os.environ["PHOTOSORT_LOG_LEVEL"]
        return cls(**overrides)


def load_settings(path: Path | str) -> AnalysisSettings:
    """Load settings from a JSON file, falling back to defaults when it is missing or unreadable."""

    settings_path = Path(path)
    if not settings_path.exists():
        return AnalysisSettings()
    try:
        payload = json.loads(settings_path.read_text(encoding="utf-8"))
        return AnalysisSettings.model_validate(payload)
    except (OSError, ValueError, ValidationError) as exc:
        logger.warning("Ignoring unreadable settings file %s: %s", settings_path, exc)
        return AnalysisSettings()


def save_settings(settings: AnalysisSettings, path: Path | str) -> None:
    """Persist settings as pretty-printed JSON."""

    settings_path = Path(path)
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    settings_path.write_text(settings.model_dump_json(indent=2), encoding="utf-8")


__all__ = [
    "AnalysisEngine",
    "AnalysisSettings",
    "ClipSettings",
    "RemoteSettings",
    "MAX_CONCURRENCY",
    "MIN_CONCURRENCY",
    "clamp_concurrency",
    "default_concurrency",
    "load_settings",
    "save_settings",
]
