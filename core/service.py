# Path: core/service.py
# Purpose: Provide the command surface used by the HTTP API and the CLI scripts.
# Layer: core.
# Details: Owns the current settings, the result store, and the single job manager.

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import List, Optional

from config.settings import AnalysisEngine, AnalysisSettings, load_settings, save_settings
from core.classifiers.factory import ClassifierFactory
from core.classifiers.ollama_classifier import check_connection, list_models
from core.export.router import folder_distribution
from core.models.domain import (
    AccelCapabilities,
    Distribution,
    DistributionMode,
    JobState,
    PhotoResult,
    ValueStats,
)
from core.pipeline.jobs import JobManager
from core.pipeline.orchestrator import AnalysisPipeline
from core.runtime import capabilities
from core.storage.result_store import PhotoResultStore

logger = logging.getLogger(__name__)


class AnalysisService:
    """Facade over settings, jobs, and stored results."""

    def __init__(
        self,
        settings_path: Optional[Path | str] = None,
        store: Optional[PhotoResultStore] = None,
        classifiers: Optional[ClassifierFactory] = None,
        settings: Optional[AnalysisSettings] = None,
        probe: Optional[capabilities.Probe] = None,
    ) -> None:
        self.settings_path = Path(settings_path) if settings_path is not None else None
        if settings is not None:
            self._settings = settings
        elif self.settings_path is not None:
            self._settings = load_settings(self.settings_path)
        else:
            self._settings = AnalysisSettings()
        self._settings_lock = threading.Lock()
        if store is None:
            self._settings.database_path.parent.mkdir(parents=True, exist_ok=True)
            store = PhotoResultStore(self._settings.database_path)
        self.store = store
        self.classifiers = classifiers or ClassifierFactory()
        self.pipeline = AnalysisPipeline(store, self.classifiers)
        self.jobs = JobManager(self.pipeline)
        self._probe = probe

    # ------------------------------------------------------------------ jobs

    def start_analysis(self, source_root: str | Path, export_root: str | Path) -> str:
        return self.jobs.start(source_root, export_root, self.get_settings())

    def cancel_analysis(self, job_id: str) -> None:
        self.jobs.cancel(job_id)

    def get_progress(self) -> Optional[JobState]:
        return self.jobs.snapshot()

    # --------------------------------------------------------------- results

    def list_photos(self) -> List[PhotoResult]:
        return self.store.list_photos()

    def get_photo_detail(self, result_id: str) -> Optional[PhotoResult]:
        return self.store.get_photo_detail(result_id)

    def get_distribution(self, mode: DistributionMode | str = DistributionMode.AVG_SCORE) -> Distribution:
        """Aggregate per-category results.

        After a CLIP job whose export tree still exists, the exported files are counted instead,
        so the numbers follow any manual moves between category folders.
        """

        mode = DistributionMode(mode)
        last = self.jobs.last_job
        if last is not None and last.engine is AnalysisEngine.CLIP and last.export_root.is_dir():
            return folder_distribution(last.export_root, mode)
        return self.store.get_distribution(mode)

    def get_value_stats(self) -> ValueStats:
        return self.store.get_value_stats()

    def clear_results(self) -> None:
        self.store.clear()
        logger.info("Cleared stored results")

    # --------------------------------------------------------------- runtime

    def get_clip_accel_capabilities(self) -> AccelCapabilities:
        return capabilities.detect(self.get_settings().clip, probe=self._probe)

    def get_clip_model_files(self) -> List[str]:
        return capabilities.list_model_files(capabilities.resolve_model_dir(self.get_settings().clip.model_dir))

    # -------------------------------------------------------------- settings

    def get_settings(self) -> AnalysisSettings:
        with self._settings_lock:
            return self._settings

    def set_settings(self, settings: AnalysisSettings) -> AnalysisSettings:
        """Replace the current settings; running jobs keep the snapshot they started with.

        Validation on the model clamps concurrency and disables streaming for parallel runs.
        """

        settings = AnalysisSettings.model_validate(settings.model_dump())
        with self._settings_lock:
            previous = self._settings
            self._settings = settings
        if previous.clip != settings.clip or previous.concurrency != settings.concurrency:
            logger.info("CLIP settings changed; the runtime will be rebuilt on the next job")
            self.classifiers.registry.invalidate()
        if self.settings_path is not None:
            save_settings(settings, self.settings_path)
        return settings

    # ---------------------------------------------------------------- remote

    def test_remote_connection(self, base_url: Optional[str] = None) -> str:
        return check_connection(base_url or self.get_settings().remote.base_url, session=self.classifiers.http)

    def list_remote_models(self, base_url: Optional[str] = None) -> List[str]:
        return list_models(base_url or self.get_settings().remote.base_url, session=self.classifiers.http)

    def close(self) -> None:
        self.classifiers.close()
        self.store.close()


__all__ = ["AnalysisService"]
