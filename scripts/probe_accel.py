# Path: scripts/probe_accel.py
# Purpose: CLI tool to report which ONNX Runtime execution providers can run the CLIP model here.
# Layer: scripts.
# Details: Prints one line per provider followed by the model files found.

from __future__ import annotations

import argparse
from pathlib import Path

from config import ClipSettings, configure_logging
from core.runtime import capabilities


def main() -> None:
    parser = argparse.ArgumentParser(description="Probe ONNX Runtime execution providers")
    parser.add_argument("--model-dir", type=Path, help="Directory holding tokenizer.json and onnx/")
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    args = parser.parse_args()

    configure_logging(args.log_level)
    clip = ClipSettings(model_dir=args.model_dir)
    report = capabilities.detect(clip)
    print(f"{'provider':<20} {'supported':<10} {'available':<10} enabled")
    for entry in report.to_dict().values():
        print(f"{entry['name']:<20} {str(entry['supported']):<10} {str(entry['available']):<10} {entry['enabled']}")

    model_dir = capabilities.resolve_model_dir(clip.model_dir)
    print(f"\nmodel dir: {model_dir or 'not found'}")
    for name in capabilities.list_model_files(model_dir):
        print(f"  {name}")


if __name__ == "__main__":
    main()
