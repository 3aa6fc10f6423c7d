from __future__ import annotations

import io
import json
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import numpy as np
import pytest
from PIL import Image

from config.settings import AnalysisSettings, ClipSettings
from core.classifiers.base import ClassificationOutput, Classifier, DeltaCallback
from core.classifiers.factory import ClassifierFactory
from core.embedders.base import Embedder
from core.embedders.prompts import CATEGORY_PROMPTS, DROP_PROMPTS, KEEP_PROMPTS
from core.models.domain import CATEGORY_KEYS, CategoryKey, ScoreVector
from core.runtime import capabilities
from core.runtime.capabilities import AcceleratorKind
from core.runtime.clip_runtime import ClipRuntimeRegistry

DIM = 16
KEEP_INDEX = 8
DROP_INDEX = 9
OTHER_TEXT_INDEX = 15

COLOR_CATEGORIES = (CategoryKey.PEOPLE, CategoryKey.NATURE_LANDSCAPE, CategoryKey.PETS_ANIMALS)


def unit(index: int) -> np.ndarray:
    vector = np.zeros(DIM, dtype=np.float32)
    vector[index] = 1.0
    return vector


def text_index(text: str) -> int:
    for position, key in enumerate(CATEGORY_KEYS):
        if text in CATEGORY_PROMPTS[key]:
            return position
    if text in KEEP_PROMPTS:
        return KEEP_INDEX
    if text in DROP_PROMPTS:
        return DROP_INDEX
    return OTHER_TEXT_INDEX


def pick_by_color(pixel_values: np.ndarray) -> CategoryKey:
    """Dominant channel of a normalized image: red -> people, green -> nature, blue -> pets."""

    means = pixel_values[0].reshape(3, -1).mean(axis=1)
    return COLOR_CATEGORIES[int(np.argmax(means))]


class FakeEmbedder(Embedder):
    """Deterministic embedder: prompts map to axes, images point at the axis of their color."""

    def __init__(
        self,
        provider: str = "cpu",
        picker: Callable[[np.ndarray], CategoryKey] = pick_by_color,
        fail_warmup: bool = False,
        hold_seconds: float = 0.0,
    ) -> None:
        self.name = "fake"
        self.provider = provider
        self.picker = picker
        self.fail_warmup = fail_warmup
        self.hold_seconds = hold_seconds
        self.text_calls = 0
        self.image_calls = 0

    def warmup(self) -> None:
        if self.fail_warmup:
            raise RuntimeError(f"{self.provider} cannot run this graph")
        super().warmup()

    def embed_texts(self, texts: Sequence[str]) -> np.ndarray:
        self.text_calls += 1
        return np.stack([unit(text_index(text)) for text in texts])

    def embed_images(self, pixel_values: np.ndarray) -> np.ndarray:
        self.image_calls += 1
        if self.hold_seconds:
            time.sleep(self.hold_seconds)
        rows = []
        for index in range(pixel_values.shape[0]):
            category = self.picker(pixel_values[index : index + 1])
            vector = unit(CATEGORY_KEYS.index(category))
            vector[DROP_INDEX if category is CategoryKey.PETS_ANIMALS else KEEP_INDEX] = 0.5
            rows.append(vector)
        return np.stack(rows)


def fake_embedder_factory(kind: AcceleratorKind) -> FakeEmbedder:
    return FakeEmbedder(provider=kind.value)


class StubClassifier(Classifier):
    """Scripted classifier for pipeline and job tests."""

    def __init__(
        self,
        engine_id: str = "stub",
        category: CategoryKey = CategoryKey.FOOD_CAFE,
        fail: bool = False,
        streams: bool = False,
        deltas: Sequence[str] = (),
        gate: Optional[threading.Event] = None,
    ) -> None:
        self.id = engine_id
        self.category = category
        self.fail = fail
        self.streams = streams
        self.deltas = tuple(deltas)
        self.gate = gate
        self.entered = threading.Event()
        self.calls = 0
        self.delta_callbacks: List[Optional[DeltaCallback]] = []

    def classify(self, data: bytes, on_delta: Optional[DeltaCallback] = None) -> ClassificationOutput:
        self.calls += 1
        self.delta_callbacks.append(on_delta)
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.fail:
            raise RuntimeError(f"{self.id} exploded")
        if on_delta is not None:
            for delta in self.deltas:
                on_delta(delta)
        scores = ScoreVector.one_hot(self.category)
        return ClassificationOutput(
            scores=scores,
            category=self.category,
            top_score=1.0,
            model=self.id,
            analysis_log=f"engine: {self.id}\n",
            inference_ms=3,
        )


class StaticClassifierFactory(ClassifierFactory):
    def __init__(self, primary: Classifier, fallback: Optional[Classifier] = None) -> None:
        super().__init__()
        self._primary = primary
        self._fallback = fallback

    def primary(self, settings: AnalysisSettings) -> Classifier:
        return self._primary

    def fallback(self, settings: AnalysisSettings) -> Optional[Classifier]:
        return self._fallback


class FakeResponse:
    """Just enough of requests.Response for the remote engine."""

    def __init__(self, status_code: int = 200, payload=None, text: Optional[str] = None, lines: Sequence[str] = ()):
        self.status_code = status_code
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text
        self._lines = list(lines)
        self.closed = False

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        return json.loads(self.text)

    def iter_lines(self, decode_unicode: bool = False):
        return iter(self._lines)

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class FakeHttp:
    """Replays scripted responses and records every request."""

    def __init__(self, responses: Sequence[object] = ()) -> None:
        self.responses = list(responses)
        self.posts: List[dict] = []
        self.gets: List[dict] = []
        self.closed = False

    def _next(self):
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def post(self, url, json=None, timeout=None, stream=False):
        self.posts.append({"url": url, "json": json, "timeout": timeout, "stream": stream})
        return self._next()

    def get(self, url, timeout=None):
        self.gets.append({"url": url, "timeout": timeout})
        return self._next()

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "FakeHttp":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def chat_reply(content: str) -> FakeResponse:
    return FakeResponse(payload={"message": {"role": "assistant", "content": content}, "done": True})


def write_image(path: Path, color=(255, 0, 0), size=(32, 24), fmt: Optional[str] = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path, format=fmt)
    return path


def image_bytes(color=(255, 0, 0), size=(32, 24)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture(autouse=True)
def _clean_demotions():
    capabilities.reset_demotions()
    yield
    capabilities.reset_demotions()


@pytest.fixture
def cpu_only(monkeypatch):
    monkeypatch.setattr(capabilities, "installed_providers", lambda: ["CPUExecutionProvider"])


@pytest.fixture
def clip_settings() -> ClipSettings:
    return ClipSettings(ep_coreml=False)


@pytest.fixture
def fake_classifiers(cpu_only) -> ClassifierFactory:
    return ClassifierFactory(registry=ClipRuntimeRegistry(), embedder_factory=fake_embedder_factory)


@pytest.fixture
def photo_tree(tmp_path: Path) -> Path:
    source = tmp_path / "photos"
    write_image(source / "red.jpg", (255, 0, 0))
    write_image(source / "trip" / "green.png", (0, 255, 0))
    write_image(source / "blue.jpg", (0, 0, 255))
    (source / "notes.txt").write_text("not an image", encoding="utf-8")
    return source
