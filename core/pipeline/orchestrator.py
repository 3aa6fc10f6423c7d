# Path: core/pipeline/orchestrator.py
# Purpose: Run one analysis job: enumerate sources, classify them on a bounded worker pool, export, and record results.
# Layer: core/pipeline.
# Details: Per-item failures become error results; only a runtime that cannot be built fails the whole job.

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from config.settings import AnalysisSettings
from core.classifiers.base import ClassificationOutput, Classifier
from core.classifiers.clip_classifier import ClipClassifier
from core.classifiers.factory import ClassifierFactory
from core.errors import AnalysisError, ExportError
from core.export.router import ExportRouter
from core.indexing.scanner import ImageScanner
from core.models.domain import (
    CategoryKey,
    ExportStatus,
    JobState,
    JobStatus,
    PhotoResult,
    ScoreVector,
    StreamChunk,
)
from core.storage.result_store import PhotoResultStore

from .progress import JobTracker, ProgressChannel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobRequest:
    job_id: str
    source_root: Path
    export_root: Path
    settings: AnalysisSettings


@dataclass
class _JobContext:
    request: JobRequest
    tracker: JobTracker
    cancel: threading.Event
    primary: Classifier
    fallback: Optional[Classifier]
    router: ExportRouter
    stream: bool


class AnalysisPipeline:
    """Executes jobs; one instance is shared by the job manager across jobs."""

    def __init__(
        self,
        store: PhotoResultStore,
        classifiers: Optional[ClassifierFactory] = None,
        progress: Optional[ProgressChannel[JobState]] = None,
        stream: Optional[ProgressChannel[StreamChunk]] = None,
    ) -> None:
        self.store = store
        self.classifiers = classifiers or ClassifierFactory()
        self.progress = progress or ProgressChannel()
        self.stream = stream or ProgressChannel()

    def run(self, request: JobRequest, tracker: JobTracker, cancel: threading.Event) -> JobStatus:
        """Process every image under the source root and return the final status."""

        settings = request.settings
        started = time.perf_counter()
        files = ImageScanner(request.source_root, exclude=request.export_root).scan()
        tracker.set_total(len(files))
        logger.info(
            "Job %s started: %d images, engine=%s, concurrency=%d",
            request.job_id,
            len(files),
            settings.engine.value,
            settings.concurrency,
        )

        try:
            primary = self.classifiers.primary(settings)
            fallback = self.classifiers.fallback(settings)
        except AnalysisError as exc:
            logger.error("Job %s failed to start its engine: %s", request.job_id, exc)
            tracker.finish(JobStatus.ERROR, message=str(exc))
            return JobStatus.ERROR

        context = _JobContext(
            request=request,
            tracker=tracker,
            cancel=cancel,
            primary=primary,
            fallback=fallback,
            router=ExportRouter(request.export_root, value_layout=settings.value_enabled),
            stream=settings.streaming_enabled,
        )
        if isinstance(primary, ClipClassifier):
            primary.runtime.pool.reset_peak()

        with ThreadPoolExecutor(max_workers=settings.concurrency, thread_name_prefix="analysis") as executor:
            futures = [executor.submit(self._process, context, path) for path in files]
            for future in futures:
                future.result()

        # A cancel that lands after the last item was recorded changes nothing.
        interrupted = cancel.is_set() and tracker.snapshot().processed < len(files)
        status = JobStatus.CANCELED if interrupted else JobStatus.COMPLETED
        tracker.finish(status)
        self._log_summary(context, status, time.perf_counter() - started)
        return status

    def _process(self, context: _JobContext, path: Path) -> None:
        if context.cancel.is_set():
            return

        started = time.perf_counter()
        try:
            data = path.read_bytes()
        except OSError as exc:
            self._record_failure(context, path, f"Failed to read file: {exc}", started)
            return

        try:
            output = self._classify(context, path, data)
        except Exception as exc:  # noqa: BLE001 - any engine failure is a per-item error
            self._record_failure(context, path, str(exc), started)
            return

        export_status = ExportStatus.SUCCESS
        error_message: Optional[str] = None
        try:
            context.router.route(path, output.category, output.is_valuable)
        except ExportError as exc:
            logger.warning("Export failed for %s: %s", path.name, exc)
            export_status = ExportStatus.ERROR
            error_message = str(exc)

        result = PhotoResult(
            id=uuid.uuid4().hex,
            path=str(path),
            file_name=path.name,
            scores=output.scores,
            category=output.category,
            top_score=output.top_score,
            export_status=export_status,
            error_message=error_message,
            duration_ms=int((time.perf_counter() - started) * 1000),
            is_valuable=output.is_valuable,
            valuable_score=output.valuable_score,
            model=output.model,
            tags=output.tags,
            caption=output.caption,
            text_in_image=output.text_in_image,
            analysis_log=output.analysis_log,
        )
        self.store.insert(result)
        context.tracker.record(path.name, failed=error_message is not None, inference_ms=output.inference_ms)

    def _classify(self, context: _JobContext, path: Path, data: bytes) -> ClassificationOutput:
        """Run the primary engine, retrying once on the fallback engine when one is configured."""

        try:
            return self._run_classifier(context, context.primary, path, data)
        except Exception as primary_error:
            if context.fallback is None:
                raise
            logger.warning(
                "%s failed on %s (%s); retrying on %s",
                context.primary.id,
                path.name,
                primary_error,
                context.fallback.id,
            )
            output = self._run_classifier(context, context.fallback, path, data)
            note = f"fallback_from: {context.primary.id}\nprimary_error: {primary_error}\n"
            return replace(output, analysis_log=note + output.analysis_log)

    def _run_classifier(
        self,
        context: _JobContext,
        classifier: Classifier,
        path: Path,
        data: bytes,
    ) -> ClassificationOutput:
        # Streamed text is forwarded only while a single worker is producing it.
        if not (classifier.streams and context.stream and context.request.settings.concurrency == 1):
            return classifier.classify(data)

        job_id = context.request.job_id
        self.stream.publish(StreamChunk(job_id=job_id, file_name=path.name, reset=True))

        def publish(delta: str) -> None:
            self.stream.publish(StreamChunk(job_id=job_id, file_name=path.name, delta=delta))

        try:
            return classifier.classify(data, publish)
        finally:
            self.stream.publish(StreamChunk(job_id=job_id, file_name=path.name, done=True))

    def _record_failure(self, context: _JobContext, path: Path, message: str, started: float) -> None:
        logger.warning("Analysis failed for %s: %s", path.name, message)
        scores = ScoreVector.uniform()
        result = PhotoResult(
            id=uuid.uuid4().hex,
            path=str(path),
            file_name=path.name,
            scores=scores,
            category=CategoryKey.OTHER,
            top_score=scores[CategoryKey.OTHER],
            export_status=ExportStatus.ERROR,
            error_message=message,
            duration_ms=int((time.perf_counter() - started) * 1000),
            analysis_log=f"error: {message}\n",
        )
        self.store.insert(result)
        context.tracker.record(path.name, failed=True)

    def _log_summary(self, context: _JobContext, status: JobStatus, elapsed: float) -> None:
        state = context.tracker.snapshot()
        throughput = state.processed / elapsed if elapsed > 0 else 0.0
        average_ms = context.tracker.inference_ms_total / state.processed if state.processed else 0.0
        peak = context.primary.runtime.pool.peak_in_use if isinstance(context.primary, ClipClassifier) else None
        logger.info(
            "Job %s %s: %d/%d processed, %d errors, %.1fs, %.2f img/s, avg inference %.1f ms, peak sessions %s",
            state.job_id,
            status.value,
            state.processed,
            state.total,
            state.errors,
            elapsed,
            throughput,
            average_ms,
            peak if peak is not None else "n/a",
        )
