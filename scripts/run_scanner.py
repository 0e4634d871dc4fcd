#!/usr/bin/env python3
"""CLI for running the live face scanner against an organization gallery."""

from __future__ import annotations

import argparse
import logging
import signal
from pathlib import Path
from typing import Optional

import cv2

from facegate.config import ScannerConfig, load_scanner_config
from facegate.detectors.base import BoundedDetector
from facegate.errors import ConfigError, DetectorUnavailableError, GalleryLoadError
from facegate.io_utils import setup_logging
from facegate.recognition.gallery import GalleryCache, ParquetGalleryStore
from facegate.session.attendance import CsvAttendanceSink
from facegate.session.scanner import ScanSession
from facegate.types import FrameEvent, FrameEventKind


LOGGER = logging.getLogger("scripts.run_scanner")


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scan a camera or video for enrolled members")
    parser.add_argument("--organization", required=True, help="Organization id whose gallery is matched")
    parser.add_argument(
        "--gallery-dir",
        type=Path,
        default=Path("data/galleries"),
        help="Root directory of per-organization gallery parquet files",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Scanner configuration YAML (defaults built in when omitted)",
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--camera", type=int, default=0, help="Camera index for cv2.VideoCapture")
    source.add_argument("--video", type=Path, default=None, help="Video file to scan instead of a camera")
    parser.add_argument(
        "--detector",
        choices=("retina", "mesh"),
        default="retina",
        help="Keypoint detector backend",
    )
    parser.add_argument(
        "--providers",
        type=str,
        nargs="*",
        default=None,
        help="ONNX execution providers for the retina detector",
    )
    parser.add_argument("--attendance-csv", type=Path, default=None, help="Append accepted matches to this CSV")
    parser.add_argument("--similarity-th", type=float, default=None, help="Override match.threshold")
    parser.add_argument("--min-gap", type=float, default=None, help="Override match.min_gap")
    parser.add_argument("--stable-frames", type=int, default=None, help="Override capture.required_stable_frames")
    parser.add_argument("--detector-timeout", type=float, default=None, help="Override session.detector_timeout")
    parser.add_argument("--max-frames", type=int, default=None, help="Stop after this many frames")
    parser.add_argument("--verbose", action="store_true", help="Log per-frame decisions")
    return parser.parse_args(argv)


def resolve_config(args: argparse.Namespace) -> ScannerConfig:
    """Load YAML config and layer CLI overrides on top."""
    config = load_scanner_config(args.config)
    config = config.with_overrides("match", threshold=args.similarity_th, min_gap=args.min_gap)
    config = config.with_overrides("capture", required_stable_frames=args.stable_frames)
    config = config.with_overrides("session", detector_timeout=args.detector_timeout)
    return config


def build_detector(args: argparse.Namespace):
    if args.detector == "mesh":
        from facegate.detectors.face_mesh import FaceMeshDetector

        return FaceMeshDetector()
    from facegate.detectors.face_retina import RetinaFaceDetector

    return RetinaFaceDetector(providers=tuple(args.providers) if args.providers else None)


class LoggingObserver:
    def __init__(self, verbose: bool = False) -> None:
        self.verbose = verbose

    def on_frame(self, event: FrameEvent) -> None:
        if event.kind is FrameEventKind.MATCHED and event.match is not None:
            LOGGER.info(
                "MATCH %s (%s) status=%s confidence=%.3f",
                event.match.member_id,
                event.match.name,
                event.match.status.value if event.match.status else "?",
                event.match.confidence,
            )
        elif event.kind is FrameEventKind.UNMATCHED:
            LOGGER.info("Unrecognized face (quality %.2f, %s)", event.quality_score, event.reason)
        elif self.verbose:
            LOGGER.info("%s quality=%.2f %s", event.kind.value, event.quality_score, event.reason)


def main(argv: Optional[list] = None) -> int:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        config = resolve_config(args)
        detector = build_detector(args)
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2
    except DetectorUnavailableError as exc:
        LOGGER.error("Detector unavailable: %s", exc)
        return 3

    config = config.for_detector(getattr(detector, "keypoint_count", config.embedding.expected_keypoints))

    store = ParquetGalleryStore(args.gallery_dir)
    cache = GalleryCache(store, config.gallery)
    attendance = None
    if args.attendance_csv is not None:
        attendance = CsvAttendanceSink(
            args.attendance_csv,
            args.organization,
            member_exists=lambda member_id: any(
                entry.member_id == member_id for entry in store.load_gallery(args.organization)
            ),
        )

    capture = cv2.VideoCapture(str(args.video) if args.video is not None else args.camera)
    if not capture.isOpened():
        LOGGER.error("Unable to open video source %s", args.video or args.camera)
        return 4

    session = ScanSession(
        args.organization,
        BoundedDetector(detector, timeout=config.session.detector_timeout),
        cache,
        config=config,
        observer=LoggingObserver(verbose=args.verbose),
        attendance=attendance,
        frame_source=capture,
    )
    signal.signal(signal.SIGINT, lambda *_: session.stop_event.set())
    try:
        cache.get(args.organization)
        session.run(max_frames=args.max_frames)
    except GalleryLoadError as exc:
        LOGGER.error("Gallery unavailable: %s", exc)
        return 5
    finally:
        session.close()
        cache.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
