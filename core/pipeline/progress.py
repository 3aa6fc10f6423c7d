# Path: core/pipeline/progress.py
# Purpose: Publish job progress and streamed text to any number of subscribers, and track live job state.
# Layer: core/pipeline.
# Details: Each subscriber owns a bounded buffer that drops its oldest event when full, so publishers never block.

from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Generic, Iterator, List, Optional, TypeVar

from core.models.domain import JobState, JobStatus

T = TypeVar("T")

DEFAULT_BUFFER = 256


class Subscription(Generic[T]):
    """Receiving end of a ProgressChannel."""

    def __init__(self, channel: "ProgressChannel[T]", maxsize: int) -> None:
        self._channel = channel
        self._items: Deque[T] = deque(maxlen=max(1, maxsize))
        self._cond = threading.Condition()
        self._closed = False
        self.dropped = 0

    def _offer(self, item: T) -> None:
        with self._cond:
            if len(self._items) == self._items.maxlen:
                self.dropped += 1
            self._items.append(item)
            self._cond.notify()

    def _finish(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def get(self, timeout: Optional[float] = None) -> Optional[T]:
        """Return the next event, or None on timeout or once closed and drained."""

        with self._cond:
            self._cond.wait_for(lambda: self._items or self._closed, timeout)
            if self._items:
                return self._items.popleft()
            return None

    def __iter__(self) -> Iterator[T]:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._items or self._closed)
                if not self._items:
                    return
                item = self._items.popleft()
            yield item

    def close(self) -> None:
        self._channel.unsubscribe(self)

    def __enter__(self) -> "Subscription[T]":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class ProgressChannel(Generic[T]):
    """Fan-out channel; publishing never waits on slow subscribers."""

    def __init__(self, buffer_size: int = DEFAULT_BUFFER) -> None:
        self.buffer_size = buffer_size
        self._subscribers: List[Subscription[T]] = []
        self._lock = threading.Lock()

    def subscribe(self) -> Subscription[T]:
        subscription: Subscription[T] = Subscription(self, self.buffer_size)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription[T]) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)
        subscription._finish()

    def publish(self, event: T) -> None:
        with self._lock:
            targets = list(self._subscribers)
        for subscription in targets:
            subscription._offer(event)

    def close(self) -> None:
        """Finish every current subscription; they drain what is buffered and then stop."""

        with self._lock:
            targets, self._subscribers = self._subscribers, []
        for subscription in targets:
            subscription._finish()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


class JobTracker:
    """Owns the live JobState of one job.

    Every mutation and the publication of the resulting snapshot happen under one lock,
    so subscribers see ``processed`` strictly increasing.
    """

    def __init__(self, job_id: str, channel: Optional[ProgressChannel[JobState]] = None) -> None:
        self._state = JobState(job_id=job_id, status=JobStatus.RUNNING)
        self._channel = channel
        self._lock = threading.Lock()
        self.inference_ms_total = 0

    @property
    def job_id(self) -> str:
        return self._state.job_id

    def _publish(self) -> None:
        if self._channel is not None:
            self._channel.publish(self._state.copy())

    def set_total(self, total: int, message: Optional[str] = None) -> None:
        with self._lock:
            self._state.total = total
            self._state.message = message
            self._publish()

    def record(self, file_name: str, failed: bool = False, inference_ms: int = 0) -> None:
        """Count one finished item and publish the new state."""

        with self._lock:
            self._state.processed += 1
            if failed:
                self._state.errors += 1
            self._state.current_file = file_name
            self.inference_ms_total += inference_ms
            self._publish()

    def finish(self, status: JobStatus, message: Optional[str] = None) -> None:
        with self._lock:
            if self._state.status.is_terminal:
                return
            self._state.status = status
            if message is not None:
                self._state.message = message
            self._publish()

    def snapshot(self) -> JobState:
        with self._lock:
            return self._state.copy()
