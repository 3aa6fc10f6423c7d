# Path: core/runtime/capabilities.py
# Purpose: Report which ONNX Runtime execution providers are compiled in and actually usable.
# Layer: core/runtime.
# Details: Also owns the process-wide set of demoted accelerators and CLIP model-file discovery.

from __future__ import annotations

import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional, Set, Tuple

import onnxruntime as ort

from config.settings import ClipSettings
from core.embedders.clip_embedder import ClipOnnxEmbedder
from core.errors import ModelFilesNotFound
from core.models.domain import AccelCapabilities, AccelCapability

logger = logging.getLogger(__name__)

MODEL_DIR_NAME = "clip-vit-b32-onnx"
TOKENIZER_FILE = "tokenizer.json"
MODEL_ID = MODEL_DIR_NAME


class AcceleratorKind(str, Enum):
    CPU = "cpu"
    COREML = "coreml"
    CUDA = "cuda"
    ROCM = "rocm"
    DIRECTML = "directml"
    OPENVINO = "openvino"

    @property
    def provider_name(self) -> str:
        return PROVIDER_NAMES[self]

    @property
    def display_name(self) -> str:
        return DISPLAY_NAMES[self]


PROVIDER_NAMES: Dict[AcceleratorKind, str] = {
    AcceleratorKind.CPU: "CPUExecutionProvider",
    AcceleratorKind.COREML: "CoreMLExecutionProvider",
    AcceleratorKind.CUDA: "CUDAExecutionProvider",
    AcceleratorKind.ROCM: "ROCMExecutionProvider",
    AcceleratorKind.DIRECTML: "DmlExecutionProvider",
    AcceleratorKind.OPENVINO: "OpenVINOExecutionProvider",
}

DISPLAY_NAMES: Dict[AcceleratorKind, str] = {
    AcceleratorKind.CPU: "CPU",
    AcceleratorKind.COREML: "CoreML (Apple)",
    AcceleratorKind.CUDA: "CUDA (NVIDIA)",
    AcceleratorKind.ROCM: "ROCm (AMD)",
    AcceleratorKind.DIRECTML: "DirectML (Windows)",
    AcceleratorKind.OPENVINO: "OpenVINO (Intel)",
}

ACCELERATOR_PREFERENCE: Tuple[AcceleratorKind, ...] = (
    AcceleratorKind.COREML,
    AcceleratorKind.CUDA,
    AcceleratorKind.ROCM,
    AcceleratorKind.DIRECTML,
    AcceleratorKind.OPENVINO,
)

Probe = Callable[[AcceleratorKind, Path, Path], bool]

_demoted: Set[AcceleratorKind] = set()
_demoted_lock = threading.Lock()


def demote(kind: AcceleratorKind) -> None:
    """Mark an accelerator unusable for the rest of the process. CPU is never demoted."""

    if kind is AcceleratorKind.CPU:
        return
    with _demoted_lock:
        if kind not in _demoted:
            logger.warning("Demoting %s for the rest of this process", kind.display_name)
        _demoted.add(kind)


def is_demoted(kind: AcceleratorKind) -> bool:
    with _demoted_lock:
        return kind in _demoted


def demoted_kinds() -> FrozenSet[AcceleratorKind]:
    with _demoted_lock:
        return frozenset(_demoted)


def reset_demotions() -> None:
    with _demoted_lock:
        _demoted.clear()


def installed_providers() -> List[str]:
    """Return the providers compiled into the installed onnxruntime build."""

    try:
        return list(ort.get_available_providers())
    except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to query ONNX Runtime providers: %s", exc)
        return [PROVIDER_NAMES[AcceleratorKind.CPU]]


def is_enabled(settings: ClipSettings, kind: AcceleratorKind) -> bool:
    """Return whether the user's toggles allow a provider to be tried."""

    if kind is AcceleratorKind.CPU:
        return True
    return settings.ep_auto and bool(getattr(settings, f"ep_{kind.value}"))


def enabled_accelerators(settings: ClipSettings) -> List[AcceleratorKind]:
    return [kind for kind in ACCELERATOR_PREFERENCE if is_enabled(settings, kind)]


def resolve_model_dir(configured: Optional[Path] = None) -> Optional[Path]:
    """Locate the CLIP model directory; a candidate is valid only if it holds a tokenizer."""

    if configured is not None:
        candidates = [Path(configured)]
    else:
        cwd = Path.cwd()
        candidates = [
            cwd / "models" / MODEL_DIR_NAME,
            cwd.parent / "models" / MODEL_DIR_NAME,
            cwd.parent.parent / "models" / MODEL_DIR_NAME,
        ]
    for candidate in candidates:
        if (candidate / TOKENIZER_FILE).is_file():
            return candidate
    return None


def resolve_model_files(settings: ClipSettings) -> Tuple[Path, Path]:
    """Return (model_path, tokenizer_path) or raise ModelFilesNotFound."""

    model_dir = resolve_model_dir(settings.model_dir)
    if model_dir is None:
        raise ModelFilesNotFound(
            f"CLIP model directory not found (expected models/{MODEL_DIR_NAME}/ containing {TOKENIZER_FILE})"
        )
    model_path = model_dir / settings.model_file
    if not model_path.is_file():
        raise ModelFilesNotFound(f"CLIP model file not found: {model_path}")
    return model_path, model_dir / TOKENIZER_FILE


def list_model_files(model_dir: Optional[Path]) -> List[str]:
    """List ``onnx/*.onnx`` under the model directory, sorted and prefixed with ``onnx/``."""

    if model_dir is None:
        return []
    onnx_dir = Path(model_dir) / "onnx"
    if not onnx_dir.is_dir():
        return []
    return sorted(f"onnx/{path.name}" for path in onnx_dir.iterdir() if path.is_file() and path.suffix == ".onnx")


def smoke_probe(kind: AcceleratorKind, model_path: Path, tokenizer_path: Path) -> bool:
    """Build a throwaway session on one provider and run a dummy inference through it."""

    try:
        embedder = ClipOnnxEmbedder.load(model_path, tokenizer_path, kind.provider_name, intra_threads=1)
        embedder.warmup()
    except Exception as exc:  # noqa: BLE001
        logger.info("Probe failed for %s: %s", kind.display_name, exc)
        return False
    return True


def detect(settings: Optional[ClipSettings] = None, probe: Optional[Probe] = None) -> AccelCapabilities:
    """Build a fresh capability report. Nothing here is cached or mutates shared state."""

    settings = settings or ClipSettings()
    probe = probe or smoke_probe
    compiled = set(installed_providers())

    try:
        model_path, tokenizer_path = resolve_model_files(settings)
        model_files: Optional[Tuple[Path, Path]] = (model_path, tokenizer_path)
    except ModelFilesNotFound as exc:
        logger.info("Capability probe skipped: %s", exc)
        model_files = None

    report: Dict[str, AccelCapability] = {}
    for kind in AcceleratorKind:
        supported = kind is AcceleratorKind.CPU or kind.provider_name in compiled
        if is_demoted(kind) or not supported:
            available = False
        elif model_files is None:
            available = supported
        else:
            available = probe(kind, *model_files)
        report[kind.value] = AccelCapability(
            kind=kind.value,
            name=kind.display_name,
            supported=supported,
            available=available,
            enabled=is_enabled(settings, kind),
        )
    return AccelCapabilities(**report)


__all__ = [
    "ACCELERATOR_PREFERENCE",
    "AcceleratorKind",
    "MODEL_ID",
    "demote",
    "demoted_kinds",
    "detect",
    "enabled_accelerators",
    "installed_providers",
    "is_demoted",
    "is_enabled",
    "list_model_files",
    "reset_demotions",
    "resolve_model_dir",
    "resolve_model_files",
    "smoke_probe",
]
