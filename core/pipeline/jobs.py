# Path: core/pipeline/jobs.py
# Purpose: Start, cancel, and observe analysis jobs; at most one job runs at a time.
# Layer: core/pipeline.
# Details: Each job runs on a daemon thread with the settings snapshot taken when it was started.

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from config.settings import AnalysisEngine, AnalysisSettings
from core.errors import InvalidJobRequest, JobAlreadyRunning
from core.models.domain import JobState, JobStatus, StreamChunk

from .orchestrator import AnalysisPipeline, JobRequest
from .progress import JobTracker, Subscription

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobRecord:
    """What the manager remembers about the most recent job."""

    job_id: str
    engine: AnalysisEngine
    source_root: Path
    export_root: Path


def _validate_roots(source_root: str | Path, export_root: str | Path) -> tuple[Path, Path]:
    if not str(source_root).strip():
        raise InvalidJobRequest("Source folder is required.")
    if not str(export_root).strip():
        raise InvalidJobRequest("Export folder is required.")
    source = Path(source_root).expanduser()
    export = Path(export_root).expanduser()
    if not source.is_dir():
        raise InvalidJobRequest(f"Source folder does not exist: {source}")
    if export.exists() and not export.is_dir():
        raise InvalidJobRequest(f"Export path is not a folder: {export}")
    if export.resolve() == source.resolve():
        raise InvalidJobRequest("Export folder must differ from the source folder.")
    return source, export


class JobManager:
    """Owns the single live job and its cancellation flag."""

    def __init__(self, pipeline: AnalysisPipeline) -> None:
        self.pipeline = pipeline
        self._lock = threading.Lock()
        self._tracker: Optional[JobTracker] = None
        self._cancel: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None
        self._last_job: Optional[JobRecord] = None

    def start(self, source_root: str | Path, export_root: str | Path, settings: AnalysisSettings) -> str:
        """Validate the request and launch a job; returns its id.

        Raises InvalidJobRequest for unusable roots and JobAlreadyRunning while a job is running.
        """

        source, export = _validate_roots(source_root, export_root)
        with self._lock:
            if self._tracker is not None and self._tracker.snapshot().status is JobStatus.RUNNING:
                raise JobAlreadyRunning(f"Job {self._tracker.job_id} is still running.")
            job_id = str(uuid.uuid4())
            tracker = JobTracker(job_id, self.pipeline.progress)
            cancel = threading.Event()
            request = JobRequest(job_id=job_id, source_root=source, export_root=export, settings=settings.snapshot())
            thread = threading.Thread(
                target=self._run,
                args=(request, tracker, cancel),
                name=f"job-{job_id[:8]}",
                daemon=True,
            )
            self._tracker, self._cancel, self._thread = tracker, cancel, thread
            self._last_job = JobRecord(job_id, settings.engine, source, export)
            thread.start()
        logger.info("Accepted job %s: %s -> %s", job_id, source, export)
        return job_id

    def _run(self, request: JobRequest, tracker: JobTracker, cancel: threading.Event) -> None:
        try:
            self.pipeline.run(request, tracker, cancel)
        except Exception as exc:  # noqa: BLE001 - the job thread must always reach a terminal state
            logger.exception("Job %s crashed", request.job_id)
            tracker.finish(JobStatus.ERROR, message=str(exc))

    def cancel(self, job_id: str) -> None:
        """Request cooperative cancellation. Unknown or finished jobs are ignored."""

        with self._lock:
            if self._tracker is None or self._cancel is None or self._tracker.job_id != job_id:
                logger.debug("Ignoring cancel for unknown job %s", job_id)
                return
            if not self._cancel.is_set():
                logger.info("Cancel requested for job %s", job_id)
            self._cancel.set()

    def snapshot(self) -> Optional[JobState]:
        with self._lock:
            tracker = self._tracker
        return tracker.snapshot() if tracker is not None else None

    @property
    def last_job(self) -> Optional[JobRecord]:
        with self._lock:
            return self._last_job

    def subscribe(self) -> Subscription[JobState]:
        return self.pipeline.progress.subscribe()

    def subscribe_stream(self) -> Subscription[StreamChunk]:
        return self.pipeline.stream.subscribe()

    def wait(self, timeout: Optional[float] = None) -> Optional[JobState]:
        """Block until the current job thread exits (or the timeout passes) and return its state."""

        with self._lock:
            thread = self._thread
        if thread is not None:
            thread.join(timeout)
        return self.snapshot()

    def events(self, job_id: str, poll_seconds: float = 1.0) -> Iterator[JobState]:
        """Yield progress snapshots of one job until it reaches a terminal state."""

        with self.subscribe() as subscription:
            current = self.snapshot()
            if current is None or current.job_id != job_id:
                return
            yield current
            if current.status.is_terminal:
                return
            while True:
                event = subscription.get(timeout=poll_seconds)
                if event is None:
                    # Dropped events are recovered from the tracker.
                    event = self.snapshot()
                    if event is None or event.job_id != job_id:
                        return
                    if not event.status.is_terminal:
                        continue
                if event.job_id != job_id:
                    continue
                yield event
                if event.status.is_terminal:
                    return
