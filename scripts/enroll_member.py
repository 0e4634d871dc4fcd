#!/usr/bin/env python3
"""CLI for enrolling a member into an organization gallery from face images."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional, Sequence

import cv2
import numpy as np
import pandas as pd

from facegate.config import ScannerConfig, ValidatorConfig, load_scanner_config
from facegate.errors import ConfigError, DetectorUnavailableError
from facegate.io_utils import ensure_dir, list_images, setup_logging
from facegate.quality.scorer import QualityScorer
from facegate.quality.validator import FaceValidator
from facegate.recognition.embedder import EmbeddingGenerator, mean_embedding
from facegate.recognition.gallery import ParquetGalleryStore, find_conflicting_members, looks_like_family
from facegate.recognition.similarity import SimilarityEngine
from facegate.types import GalleryEntry, MemberStatus


LOGGER = logging.getLogger("scripts.enroll_member")


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Enroll a member from a directory of face images")
    parser.add_argument("--organization", required=True, help="Organization id")
    parser.add_argument("--member-id", required=True, help="Stable member id")
    parser.add_argument("--name", required=True, help="Display name")
    parser.add_argument(
        "--status",
        choices=[status.value for status in MemberStatus],
        default=MemberStatus.ALLOWED.value,
        help="Access status stored with the member",
    )
    parser.add_argument("--images-dir", type=Path, required=True, help="Directory of face images for this member")
    parser.add_argument(
        "--gallery-dir",
        type=Path,
        default=Path("data/galleries"),
        help="Root directory of per-organization gallery parquet files",
    )
    parser.add_argument("--config", type=Path, default=None, help="Scanner configuration YAML")
    parser.add_argument("--detector", choices=("retina", "mesh"), default="retina")
    parser.add_argument("--providers", type=str, nargs="*", default=None)
    parser.add_argument("--min-samples", type=int, default=1, help="Accepted images required to enroll")
    parser.add_argument("--force", action="store_true", help="Enroll even if the face matches another member")
    return parser.parse_args(argv)


def embed_images(
    paths: Sequence[Path],
    detector,
    validator: FaceValidator,
    scorer: QualityScorer,
    embedder: EmbeddingGenerator,
) -> List[np.ndarray]:
    embeddings: List[np.ndarray] = []
    for path in paths:
        image = cv2.imread(str(path))
        if image is None:
            LOGGER.warning("Unable to read image %s", path)
            continue
        height, width = image.shape[:2]
        faces = detector.detect(image)
        if not faces:
            LOGGER.warning("No face found in %s", path)
            continue
        face = faces[0]
        verdict = validator.validate(face, width, height)
        if not verdict.is_valid:
            LOGGER.warning("Rejected %s: %s", path.name, verdict.reason)
            continue
        quality = scorer.score(face, width, height)
        if not quality.is_valid:
            LOGGER.warning("Rejected %s: %s", path.name, quality.reason)
            continue
        embedding = embedder.generate(face)
        if embedding.size == 0:
            LOGGER.warning("No embedding produced for %s", path.name)
            continue
        LOGGER.info("Accepted %s (quality %.2f)", path.name, quality.score)
        embeddings.append(embedding)
    return embeddings


def append_samples(path: Path, member_id: str, embeddings: Sequence[np.ndarray]) -> None:
    """Keep per-image embeddings for threshold calibration."""
    rows = pd.DataFrame(
        [{"member_id": member_id, "embedding": emb.astype(np.float32).tolist()} for emb in embeddings]
    )
    if path.exists():
        existing = pd.read_parquet(path)
        rows = pd.concat([existing[existing["member_id"] != member_id], rows], ignore_index=True)
    ensure_dir(path.parent)
    rows.to_parquet(path, index=False)


def main(argv: Optional[list] = None) -> int:
    args = parse_args(argv)
    setup_logging()

    try:
        config: ScannerConfig = load_scanner_config(args.config)
        if args.detector == "mesh":
            from facegate.detectors.face_mesh import FaceMeshDetector

            detector = FaceMeshDetector()
        else:
            from facegate.detectors.face_retina import RetinaFaceDetector

            detector = RetinaFaceDetector(providers=tuple(args.providers) if args.providers else None)
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2
    except DetectorUnavailableError as exc:
        LOGGER.error("Detector unavailable: %s", exc)
        return 3

    keypoint_count = detector.keypoint_count
    config = config.for_detector(keypoint_count)

    paths = list(list_images(args.images_dir))
    if not paths:
        LOGGER.error("No images found under %s", args.images_dir)
        return 4
    embeddings = embed_images(
        paths,
        detector,
        FaceValidator(ValidatorConfig.strict_for(keypoint_count)),
        QualityScorer(config.quality),
        EmbeddingGenerator(config.embedding),
    )
    if len(embeddings) < args.min_samples:
        LOGGER.error("Only %d of %d images usable (need %d)", len(embeddings), len(paths), args.min_samples)
        return 4

    centroid = mean_embedding(embeddings)
    store = ParquetGalleryStore(args.gallery_dir)
    gallery = store.load_gallery(args.organization)
    engine = SimilarityEngine(config.similarity)
    conflicts = find_conflicting_members(
        centroid, gallery, engine, threshold=config.match.threshold, exclude_member=args.member_id
    )
    if conflicts:
        for entry, score in conflicts:
            LOGGER.warning("Face resembles enrolled member %s (%s) score=%.3f", entry.member_id, entry.name, score)
        if not args.force:
            LOGGER.error("Refusing to enroll a likely duplicate; pass --force to override")
            return 5
    others = [entry for entry in gallery if entry.member_id != args.member_id]
    if looks_like_family(centroid, others, engine, config.match):
        LOGGER.warning("Face is broadly similar to existing members; matches may be ambiguous")

    entry = GalleryEntry(args.member_id, args.name, MemberStatus.parse(args.status), centroid)
    store.upsert_member(args.organization, entry)
    append_samples(args.gallery_dir / args.organization / "samples.parquet", args.member_id, embeddings)
    LOGGER.info("Enrolled %s (%s) from %d/%d images", args.member_id, args.name, len(embeddings), len(paths))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
