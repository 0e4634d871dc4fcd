#!/usr/bin/env python3
"""CLI for calibrating the match threshold and minimum gap on enrolled samples."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional

import pandas as pd

from facegate.config import SETTINGS_BOUNDS, load_scanner_config
from facegate.errors import ConfigError
from facegate.io_utils import dump_json, dump_yaml, ensure_dir, setup_logging
from facegate.recognition.calibration import calibrate, samples_from_frame
from facegate.recognition.similarity import SimilarityEngine


LOGGER = logging.getLogger("scripts.calibrate_thresholds")


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Derive match thresholds from labelled sample embeddings")
    parser.add_argument("samples", type=Path, help="Parquet file with member_id and embedding columns")
    parser.add_argument("--config", type=Path, default=None, help="Scanner configuration YAML")
    parser.add_argument("--target-far", type=float, default=0.001, help="Maximum false-accept rate")
    parser.add_argument(
        "--gap-percentile",
        type=float,
        default=5.0,
        help="Percentile of genuine rank-1 margins used as the minimum gap",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("data/calibration"),
        help="Directory for match_overrides.yaml and calibration_report.json",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> int:
    args = parse_args(argv)
    setup_logging()

    try:
        config = load_scanner_config(args.config)
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2
    if not args.samples.exists():
        LOGGER.error("Samples file not found: %s", args.samples)
        return 4
    df = pd.read_parquet(args.samples)
    samples = samples_from_frame(df)
    LOGGER.info("Loaded %d samples for %d members", sum(len(v) for v in samples.values()), len(samples))

    try:
        report = calibrate(
            samples,
            target_far=args.target_far,
            gap_percentile=args.gap_percentile,
            engine=SimilarityEngine(config.similarity),
        )
    except ValueError as exc:
        LOGGER.error("Calibration failed: %s", exc)
        return 3

    low, high = SETTINGS_BOUNDS["match.threshold"]
    threshold = min(max(report.threshold, low), high)
    if threshold != report.threshold:
        LOGGER.warning("Calibrated threshold %.4f clipped to allowed range [%.2f, %.2f]", report.threshold, low, high)

    ensure_dir(args.output_dir)
    dump_yaml(
        args.output_dir / "match_overrides.yaml",
        {"match": {"threshold": round(threshold, 4), "min_gap": round(report.min_gap, 4)}},
    )
    dump_json(args.output_dir / "calibration_report.json", report)
    LOGGER.info("Wrote calibration outputs to %s", args.output_dir)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
