# Path: scripts/analyze_folder.py
# Purpose: CLI tool to classify a folder of photos and copy them into per-category export folders.
# Layer: scripts.
# Details: Runs one job through AnalysisService and renders its progress events with tqdm.

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from tqdm import tqdm

from config import AnalysisEngine, AnalysisSettings, configure_logging, load_settings
from core.models.domain import DistributionMode, JobStatus
from core.service import AnalysisService


def build_settings(args: argparse.Namespace) -> AnalysisSettings:
    """Apply command-line overrides on top of the settings file."""

    settings = load_settings(args.settings) if args.settings else AnalysisSettings.from_env()
    payload = settings.model_dump()
    if args.engine:
        payload["engine"] = args.engine
    if args.concurrency is not None:
        payload["concurrency"] = args.concurrency
    if args.value:
        payload["value_enabled"] = True
    if args.model_dir:
        payload["clip"]["model_dir"] = args.model_dir
    if args.db:
        payload["database_path"] = args.db
    return AnalysisSettings.model_validate(payload)


def main() -> int:
    """Run one analysis job and print a per-category summary."""

    parser = argparse.ArgumentParser(description="Sort photos into category folders with CLIP")
    parser.add_argument("source", type=Path, help="Folder containing photos to analyse")
    parser.add_argument("export", type=Path, help="Folder receiving the sorted copies")
    parser.add_argument("--engine", choices=[engine.value for engine in AnalysisEngine], help="Primary engine")
    parser.add_argument("--concurrency", type=int, help="Concurrent workers (clamped to 1..32)")
    parser.add_argument("--value", action="store_true", help="Also split photos into valuable/not-valuable")
    parser.add_argument("--model-dir", type=Path, help="Directory holding tokenizer.json and onnx/")
    parser.add_argument("--settings", type=Path, help="JSON settings file")
    parser.add_argument("--db", type=Path, help="SQLite file for results")
    parser.add_argument("--log-level", default=None, help="Logging level")
    args = parser.parse_args()

    settings = build_settings(args)
    configure_logging(args.log_level or settings.log_level)
    service = AnalysisService(settings=settings)

    job_id = service.start_analysis(args.source, args.export)
    state = None
    with tqdm(desc="Analysing photos", unit="img") as bar:
        for state in service.jobs.events(job_id):
            bar.total = state.total
            bar.n = state.processed
            bar.set_postfix(errors=state.errors, file=state.current_file or "")
            bar.refresh()

    state = service.jobs.wait() or state
    if state is None:
        print("Job did not report any progress", file=sys.stderr)
        return 1

    print(f"Job {job_id}: {state.status.value}, {state.processed}/{state.total} processed, {state.errors} errors")
    if state.message:
        print(state.message)
    distribution = service.get_distribution(DistributionMode.COUNT_RATIO)
    for category, ratio in distribution.by_category.items():
        print(f"  {category:<12} {ratio:.2%}")
    service.close()
    return 0 if state.status is JobStatus.COMPLETED else 1


if __name__ == "__main__":
    sys.exit(main())
