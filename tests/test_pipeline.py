from __future__ import annotations

import threading
from pathlib import Path

import pytest

from conftest import FakeEmbedder, StaticClassifierFactory, StubClassifier, write_image
from config.settings import AnalysisEngine, AnalysisSettings, ClipSettings, RemoteSettings
from core.classifiers.factory import ClassifierFactory
from core.models.domain import CategoryKey, DistributionMode, ExportStatus, JobStatus, ScoreVector
from core.pipeline.orchestrator import AnalysisPipeline, JobRequest
from core.pipeline.progress import JobTracker
from core.runtime import capabilities
from core.runtime.capabilities import AcceleratorKind
from core.runtime.clip_runtime import ClipRuntimeRegistry
from core.storage.result_store import PhotoResultStore


def run_job(pipeline: AnalysisPipeline, source: Path, export: Path, settings: AnalysisSettings, cancel=None):
    tracker = JobTracker("job", pipeline.progress)
    cancel = cancel or threading.Event()
    status = pipeline.run(JobRequest("job", source, export, settings), tracker, cancel)
    return status, tracker.snapshot()


def clip_settings(**overrides) -> AnalysisSettings:
    return AnalysisSettings(engine=AnalysisEngine.CLIP, clip=ClipSettings(ep_coreml=False), **overrides)


@pytest.fixture
def store():
    store = PhotoResultStore()
    yield store
    store.close()


def test_clip_job_sorts_photos_into_category_folders(photo_tree, tmp_path, store, fake_classifiers) -> None:
    (photo_tree / "broken.jpg").write_bytes(b"not really a jpeg")
    export = tmp_path / "sorted"
    pipeline = AnalysisPipeline(store, fake_classifiers)

    status, state = run_job(pipeline, photo_tree, export, clip_settings(concurrency=2))

    assert status is JobStatus.COMPLETED
    assert (state.processed, state.total, state.errors) == (4, 4, 1)
    assert (export / "people" / "red.jpg").is_file()
    assert (export / "nature_landscape" / "green.png").is_file()
    assert (export / "pets_animals" / "blue.jpg").is_file()

    by_name = {photo.file_name: photo for photo in store.list_photos()}
    assert set(by_name) == {"red.jpg", "green.png", "blue.jpg", "broken.jpg"}
    broken = store.get_photo_detail(by_name["broken.jpg"].id)
    assert broken.export_status is ExportStatus.ERROR
    assert broken.category is CategoryKey.OTHER
    assert broken.scores == ScoreVector.uniform()
    assert "Cannot decode image" in broken.error_message

    red = store.get_photo_detail(by_name["red.jpg"].id)
    assert red.category is CategoryKey.PEOPLE
    assert red.model == "clip-vit-b32-onnx"
    assert red.top_score == pytest.approx(max(red.scores.values))
    assert "execution_provider: cpu" in red.analysis_log
    assert red.is_valuable is None

    counts = store.get_distribution(DistributionMode.COUNT_RATIO).by_category
    assert counts["people"] == 0.25
    assert counts["other"] == 0.25


def test_value_judgment_splits_export_tree(photo_tree, tmp_path, store, fake_classifiers) -> None:
    export = tmp_path / "sorted"
    pipeline = AnalysisPipeline(store, fake_classifiers)

    run_job(pipeline, photo_tree, export, clip_settings(concurrency=1, value_enabled=True))

    assert (export / "valuable" / "people" / "red.jpg").is_file()
    assert (export / "not-valuable" / "pets_animals" / "blue.jpg").is_file()
    stats = store.get_value_stats()
    assert (stats.valuable, stats.not_valuable, stats.unknown) == (2, 1, 0)


def test_duplicate_names_are_suffixed(tmp_path, store, fake_classifiers) -> None:
    source = tmp_path / "src"
    write_image(source / "a" / "x.png", (255, 0, 0))
    write_image(source / "b" / "x.png", (255, 0, 0))
    export = tmp_path / "out"

    run_job(AnalysisPipeline(store, fake_classifiers), source, export, clip_settings(concurrency=2))

    assert sorted(path.name for path in (export / "people").iterdir()) == ["x.png", "x_1.png"]


def test_export_root_inside_source_is_not_rescanned(photo_tree, store, fake_classifiers) -> None:
    export = photo_tree / "sorted"
    write_image(export / "people" / "old.jpg", (255, 0, 0))

    status, state = run_job(AnalysisPipeline(store, fake_classifiers), photo_tree, export, clip_settings())

    assert status is JobStatus.COMPLETED
    assert state.total == 3


def test_canceled_before_start_processes_nothing(photo_tree, tmp_path, store, fake_classifiers) -> None:
    cancel = threading.Event()
    cancel.set()

    status, state = run_job(AnalysisPipeline(store, fake_classifiers), photo_tree, tmp_path / "out", clip_settings(), cancel)

    assert status is JobStatus.CANCELED
    assert state.status is JobStatus.CANCELED
    assert (state.processed, state.total) == (0, 3)
    assert store.list_photos() == []


def test_runtime_that_cannot_be_built_fails_the_job(photo_tree, tmp_path, store, cpu_only) -> None:
    def broken(kind):
        raise RuntimeError(f"{kind.value} is missing its libraries")

    pipeline = AnalysisPipeline(store, ClassifierFactory(ClipRuntimeRegistry(), broken))

    status, state = run_job(pipeline, photo_tree, tmp_path / "out", clip_settings())

    assert status is JobStatus.ERROR
    assert "No execution provider" in state.message
    assert state.processed == 0
    assert store.list_photos() == []


def test_missing_model_files_fail_the_job(photo_tree, tmp_path, store, cpu_only) -> None:
    settings = AnalysisSettings(clip=ClipSettings(model_dir=tmp_path / "nowhere"))

    status, state = run_job(AnalysisPipeline(store), photo_tree, tmp_path / "out", settings)

    assert status is JobStatus.ERROR
    assert "not found" in state.message


def test_failed_items_fall_back_to_remote_engine(photo_tree, tmp_path, store) -> None:
    primary = StubClassifier("clip", fail=True)
    fallback = StubClassifier("ollama", category=CategoryKey.FOOD_CAFE)
    pipeline = AnalysisPipeline(store, StaticClassifierFactory(primary, fallback))

    status, state = run_job(pipeline, photo_tree, tmp_path / "out", clip_settings(concurrency=2))

    assert status is JobStatus.COMPLETED
    assert state.errors == 0
    assert fallback.calls == 3
    photo = store.get_photo_detail(store.list_photos()[0].id)
    assert photo.model == "ollama"
    assert photo.analysis_log.startswith("fallback_from: clip\nprimary_error: clip exploded\n")
    assert len(list((tmp_path / "out" / "food_cafe").iterdir())) == 3


def test_failure_without_fallback_is_recorded_per_item(photo_tree, tmp_path, store) -> None:
    pipeline = AnalysisPipeline(store, StaticClassifierFactory(StubClassifier("clip", fail=True)))

    status, state = run_job(pipeline, photo_tree, tmp_path / "out", clip_settings(concurrency=3))

    assert status is JobStatus.COMPLETED
    assert (state.processed, state.errors) == (3, 3)
    assert all(photo.export_status is ExportStatus.ERROR for photo in store.list_photos())
    assert not (tmp_path / "out").exists()


def test_export_failure_is_recorded_on_the_result(photo_tree, tmp_path, store) -> None:
    export = tmp_path / "out"
    export.mkdir()
    (export / "food_cafe").write_text("a file where a folder should be", encoding="utf-8")
    pipeline = AnalysisPipeline(store, StaticClassifierFactory(StubClassifier()))

    status, state = run_job(pipeline, photo_tree, export, clip_settings(concurrency=1))

    assert status is JobStatus.COMPLETED
    assert state.errors == 3
    photo = store.list_photos()[0]
    assert photo.export_status is ExportStatus.ERROR
    assert photo.category is CategoryKey.FOOD_CAFE
    assert photo.error_message


def test_progress_is_monotonic_and_ends_terminal(photo_tree, tmp_path, store, fake_classifiers) -> None:
    pipeline = AnalysisPipeline(store, fake_classifiers)
    subscription = pipeline.progress.subscribe()

    run_job(pipeline, photo_tree, tmp_path / "out", clip_settings(concurrency=3))

    events = []
    while (event := subscription.get(timeout=0)) is not None:
        events.append(event)
    processed = [event.processed for event in events]
    assert processed == sorted(processed)
    assert processed[-1] == 3
    assert events[-1].status is JobStatus.COMPLETED
    assert events[-1].current_file in {"red.jpg", "green.png", "blue.jpg"}


def test_streamed_text_reaches_subscribers_with_one_worker(photo_tree, tmp_path, store) -> None:
    remote = StubClassifier("ollama", streams=True, deltas=("{", '"category"', "}"))
    pipeline = AnalysisPipeline(store, StaticClassifierFactory(remote))
    subscription = pipeline.stream.subscribe()
    settings = AnalysisSettings(engine=AnalysisEngine.OLLAMA, concurrency=1, remote=RemoteSettings(stream=True))

    run_job(pipeline, photo_tree, tmp_path / "out", settings)

    chunks = []
    while (chunk := subscription.get(timeout=0)) is not None:
        chunks.append(chunk)
    assert len(chunks) == 3 * 5
    first = chunks[:5]
    assert first[0].reset and first[-1].done
    assert "".join(chunk.delta for chunk in first) == '{"category"}'
    assert len({chunk.file_name for chunk in first}) == 1


def test_no_streaming_with_several_workers(photo_tree, tmp_path, store) -> None:
    remote = StubClassifier("ollama", streams=True, deltas=("{",))
    pipeline = AnalysisPipeline(store, StaticClassifierFactory(remote))
    subscription = pipeline.stream.subscribe()
    settings = AnalysisSettings(engine=AnalysisEngine.OLLAMA, concurrency=2, remote=RemoteSettings(stream=True))

    run_job(pipeline, photo_tree, tmp_path / "out", settings)

    assert subscription.get(timeout=0) is None
    assert remote.delta_callbacks == [None, None, None]


def test_session_use_stays_within_concurrency(tmp_path, store, cpu_only) -> None:
    source = tmp_path / "many"
    for index in range(8):
        write_image(source / f"{index}.png", (255, 0, 0))
    registry = ClipRuntimeRegistry()
    factory = ClassifierFactory(registry, lambda kind: FakeEmbedder(provider=kind.value, hold_seconds=0.02))

    status, state = run_job(AnalysisPipeline(store, factory), source, tmp_path / "out", clip_settings(concurrency=2))

    assert status is JobStatus.COMPLETED
    assert state.processed == 8
    assert 1 <= registry.current.pool.peak_in_use <= 2


class CancelOnLastItem(StubClassifier):
    def __init__(self, cancel: threading.Event, total: int) -> None:
        super().__init__()
        self.cancel = cancel
        self.total = total

    def classify(self, data, on_delta=None):
        output = super().classify(data, on_delta)
        if self.calls == self.total:
            self.cancel.set()
        return output


def test_cancel_after_every_item_finished_still_completes(photo_tree, tmp_path, store) -> None:
    cancel = threading.Event()
    pipeline = AnalysisPipeline(store, StaticClassifierFactory(CancelOnLastItem(cancel, total=3)))

    status, state = run_job(pipeline, photo_tree, tmp_path / "out", clip_settings(concurrency=1), cancel)

    assert cancel.is_set()
    assert status is JobStatus.COMPLETED
    assert (state.processed, state.total) == (3, 3)


def test_ten_images_with_two_workers_all_complete(tmp_path, store, fake_classifiers) -> None:
    source = tmp_path / "ten"
    colors = [(255, 0, 0), (0, 255, 0), (0, 0, 255)]
    for index in range(10):
        write_image(source / f"{index:02d}.png", colors[index % 3])

    status, state = run_job(AnalysisPipeline(store, fake_classifiers), source, tmp_path / "out", clip_settings(concurrency=2))

    assert status is JobStatus.COMPLETED
    assert (state.processed, state.total, state.errors) == (10, 10, 0)
    assert {photo.category for photo in store.list_photos()} <= set(CategoryKey)


def test_one_corrupt_file_among_five(tmp_path, store, fake_classifiers) -> None:
    source = tmp_path / "five"
    for index in range(4):
        write_image(source / f"{index}.png", (255, 0, 0))
    (source / "corrupt.jpg").write_bytes(b"\xff\xd8 truncated")

    status, state = run_job(AnalysisPipeline(store, fake_classifiers), source, tmp_path / "out", clip_settings(concurrency=2))

    assert status is JobStatus.COMPLETED
    assert (state.processed, state.errors) == (5, 1)
    corrupt = next(photo for photo in store.list_photos() if photo.file_name == "corrupt.jpg")
    assert corrupt.export_status is ExportStatus.ERROR
    assert corrupt.error_message
    counts = store.get_distribution(DistributionMode.COUNT_RATIO).by_category
    assert (counts["people"], counts["other"]) == (0.8, 0.2)


def test_failing_accelerator_falls_back_to_cpu(photo_tree, tmp_path, store, monkeypatch) -> None:
    monkeypatch.setattr(
        capabilities, "installed_providers", lambda: ["CUDAExecutionProvider", "CPUExecutionProvider"]
    )
    registry = ClipRuntimeRegistry()
    factory = ClassifierFactory(
        registry,
        lambda kind: FakeEmbedder(provider=kind.value, fail_warmup=kind is AcceleratorKind.CUDA),
    )
    settings = AnalysisSettings(clip=ClipSettings(ep_coreml=False, ep_cuda=True), concurrency=2)

    status, state = run_job(AnalysisPipeline(store, factory), photo_tree, tmp_path / "out", settings)

    assert status is JobStatus.COMPLETED
    assert state.processed == 3
    assert registry.current.provider is AcceleratorKind.CPU
    assert capabilities.detect(settings.clip).cuda.available is False
