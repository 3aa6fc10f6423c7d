# Path: api/app.py
# Purpose: Expose a FastAPI application for photo analysis jobs and their results.
# Layer: api.
# Details: Thin HTTP mapping over AnalysisService; progress and stream events are newline-delimited JSON.

from __future__ import annotations

import json
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel

from config.settings import AnalysisSettings
from core.errors import (
    AnalysisError,
    InvalidJobRequest,
    JobAlreadyRunning,
    ProviderUnavailable,
    RemoteEngineError,
)
from core.service import AnalysisService

STREAM_POLL_SECONDS = 1.0

ERROR_STATUS = (
    (JobAlreadyRunning, 409),
    (InvalidJobRequest, 400),
    (RemoteEngineError, 502),
    (ProviderUnavailable, 503),
)


class StartAnalysisRequest(BaseModel):
    source_root: str
    export_root: str


class RemoteRequest(BaseModel):
    base_url: Optional[str] = None


def _ndjson(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False) + "\n"


def _status_for(exc: AnalysisError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


def create_app(service: Optional[AnalysisService] = None):  # type: ignore[override]
    """Create a FastAPI app instance bound to the provided analysis service."""

    from fastapi import FastAPI, HTTPException
    from fastapi.responses import JSONResponse, StreamingResponse

    service = service or AnalysisService()
    app = FastAPI(title="PhotoSort API", version="0.1.0")

    @app.exception_handler(AnalysisError)
    def analysis_error(_request, exc: AnalysisError):
        return JSONResponse(status_code=_status_for(exc), content={"detail": str(exc)})

    @app.get("/health")
    def health() -> Dict[str, str]:
        """Return a simple health status payload."""

        return {"status": "ok"}

    @app.post("/analysis")
    def start_analysis(payload: StartAnalysisRequest) -> Dict[str, str]:
        job_id = service.start_analysis(payload.source_root, payload.export_root)
        return {"job_id": job_id}

    @app.post("/analysis/{job_id}/cancel")
    def cancel_analysis(job_id: str) -> Dict[str, str]:
        service.cancel_analysis(job_id)
        return {"status": "ok"}

    @app.get("/analysis/progress")
    def get_progress() -> Optional[Dict[str, Any]]:
        state = service.get_progress()
        return state.to_dict() if state is not None else None

    @app.get("/analysis/{job_id}/events")
    def progress_events(job_id: str):
        """Stream progress snapshots of one job until it finishes."""

        state = service.get_progress()
        if state is None or state.job_id != job_id:
            raise HTTPException(status_code=404, detail=f"Unknown job: {job_id}")

        def lines() -> Iterator[str]:
            for event in service.jobs.events(job_id, poll_seconds=STREAM_POLL_SECONDS):
                yield _ndjson(event.to_dict())

        return StreamingResponse(lines(), media_type="application/x-ndjson")

    @app.get("/analysis/stream")
    def stream_events():
        """Stream partial remote-engine text while the current job runs."""

        def lines() -> Iterator[str]:
            with service.jobs.subscribe_stream() as subscription:
                while True:
                    chunk = subscription.get(timeout=STREAM_POLL_SECONDS)
                    if chunk is not None:
                        yield _ndjson(chunk.to_dict())
                        continue
                    state = service.get_progress()
                    if subscription.closed or state is None or state.status.is_terminal:
                        return

        return StreamingResponse(lines(), media_type="application/x-ndjson")

    @app.get("/photos")
    def list_photos() -> List[Dict[str, Any]]:
        return [photo.to_dict(include_log=False) for photo in service.list_photos()]

    @app.delete("/photos")
    def clear_results() -> Dict[str, str]:
        service.clear_results()
        return {"status": "ok"}

    @app.get("/photos/{result_id}")
    def get_photo_detail(result_id: str) -> Dict[str, Any]:
        photo = service.get_photo_detail(result_id)
        if photo is None:
            raise HTTPException(status_code=404, detail=f"Unknown photo: {result_id}")
        return photo.to_dict()

    @app.get("/distribution")
    def get_distribution(mode: str = "avg_score") -> Dict[str, Any]:
        try:
            distribution = service.get_distribution(mode)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unknown distribution mode: {mode}") from exc
        return distribution.to_dict()

    @app.get("/value-stats")
    def get_value_stats() -> Dict[str, int]:
        stats = service.get_value_stats()
        return {"valuable": stats.valuable, "not_valuable": stats.not_valuable, "unknown": stats.unknown}

    @app.get("/clip/capabilities")
    def get_clip_accel_capabilities() -> Dict[str, Dict[str, Any]]:
        return service.get_clip_accel_capabilities().to_dict()

    @app.get("/clip/model-files")
    def get_clip_model_files() -> List[str]:
        return service.get_clip_model_files()

    @app.get("/settings")
    def get_settings() -> Dict[str, Any]:
        return service.get_settings().model_dump(mode="json")

    @app.put("/settings")
    def set_settings(settings: AnalysisSettings) -> Dict[str, Any]:
        return service.set_settings(settings).model_dump(mode="json")

    @app.post("/remote/test")
    def test_remote_connection(payload: RemoteRequest) -> Dict[str, str]:
        return {"status": service.test_remote_connection(payload.base_url)}

    @app.post("/remote/models")
    def list_remote_models(payload: RemoteRequest) -> List[str]:
        return service.list_remote_models(payload.base_url)

    return app
