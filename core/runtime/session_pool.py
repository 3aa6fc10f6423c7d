# Path: core/runtime/session_pool.py
# Purpose: Build a fixed-size pool of warmed-up embedding sessions with execution-provider fallback.
# Layer: core/runtime.
# Details: ProviderChain walks accelerators in preference order; SessionPool lends sessions through a bounded arena.

from __future__ import annotations

import logging
import queue
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Sequence

from config.settings import ClipSettings, clamp_concurrency
from core.embedders.base import Embedder
from core.errors import ProviderUnavailable
from core.runtime import capabilities
from core.runtime.capabilities import AcceleratorKind

logger = logging.getLogger(__name__)

EmbedderFactory = Callable[[AcceleratorKind], Embedder]


class ProviderChain:
    """Ordered provider candidates plus a cursor; CPU is always the last entry."""

    def __init__(self, candidates: Sequence[AcceleratorKind]) -> None:
        ordered = [kind for kind in candidates if kind is not AcceleratorKind.CPU]
        self._candidates: List[AcceleratorKind] = ordered + [AcceleratorKind.CPU]
        self._index = 0
        self.failures: List[str] = []

    @property
    def candidates(self) -> List[AcceleratorKind]:
        return list(self._candidates)

    @property
    def current(self) -> AcceleratorKind:
        return self._candidates[self._index]

    def advance(self, error: BaseException) -> AcceleratorKind:
        """Record a failure of the current candidate and move to the next one.

        A failing accelerator is demoted process-wide. A failing CPU ends the chain with ProviderUnavailable.
        """

        failed = self.current
        self.failures.append(f"{failed.value}: {error}")
        if failed is AcceleratorKind.CPU:
            raise ProviderUnavailable(
                f"No execution provider could run the model ({'; '.join(self.failures)})"
            ) from error
        capabilities.demote(failed)
        self._index += 1
        logger.warning("%s failed (%s); falling back to %s", failed.display_name, error, self.current.display_name)
        return self.current


def build_provider_chain(settings: ClipSettings) -> ProviderChain:
    """Enabled accelerators that are compiled in and not demoted, followed by CPU."""

    compiled = set(capabilities.installed_providers())
    candidates: List[AcceleratorKind] = []
    for kind in capabilities.enabled_accelerators(settings):
        if capabilities.is_demoted(kind):
            logger.debug("Skipping demoted provider %s", kind.display_name)
        elif kind.provider_name not in compiled:
            logger.debug("Skipping %s: not part of this onnxruntime build", kind.display_name)
        else:
            candidates.append(kind)
    chain = ProviderChain(candidates)
    logger.info("Provider chain: %s", " -> ".join(kind.value for kind in chain.candidates))
    return chain


class SessionPool:
    """Fixed-capacity arena of sessions bound to one provider.

    ``session()`` blocks while all sessions are lent out, so at most ``capacity`` inferences run at once.
    """

    def __init__(self, sessions: Sequence[Embedder], provider: AcceleratorKind) -> None:
        if not sessions:
            raise ValueError("SessionPool needs at least one session.")
        self.provider = provider
        self.capacity = len(sessions)
        self._arena: "queue.Queue[Embedder]" = queue.Queue(maxsize=self.capacity)
        for embedder in sessions:
            self._arena.put_nowait(embedder)
        self._lock = threading.Lock()
        self._in_use = 0
        self._peak_in_use = 0

    @classmethod
    def build(cls, size: int, factory: EmbedderFactory, chain: ProviderChain) -> "SessionPool":
        """Create ``size`` sessions, walking the chain until a provider builds and warms up."""

        size = clamp_concurrency(size)
        while True:
            kind = chain.current
            started = time.perf_counter()
            try:
                first = factory(kind)
                first.warmup()
                sessions = [first] + [factory(kind) for _ in range(size - 1)]
            except ProviderUnavailable:
                raise
            except Exception as exc:  # noqa: BLE001
                chain.advance(exc)
                continue
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            logger.info("Built %d session(s) on %s in %d ms", size, kind.display_name, elapsed_ms)
            return cls(sessions, kind)

    @contextmanager
    def session(self, timeout: Optional[float] = None) -> Iterator[Embedder]:
        """Lend one session for the duration of the block."""

        embedder = self._arena.get(timeout=timeout)
        with self._lock:
            self._in_use += 1
            self._peak_in_use = max(self._peak_in_use, self._in_use)
        try:
            yield embedder
        finally:
            with self._lock:
                self._in_use -= 1
            self._arena.put_nowait(embedder)

    @property
    def in_use(self) -> int:
        with self._lock:
            return self._in_use

    @property
    def peak_in_use(self) -> int:
        with self._lock:
            return self._peak_in_use

    def reset_peak(self) -> None:
        with self._lock:
            self._peak_in_use = self._in_use


__all__ = ["EmbedderFactory", "ProviderChain", "SessionPool", "build_provider_chain"]
