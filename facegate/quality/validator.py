"""Geometric face-shape validation that rejects hands and other non-face detections."""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence

import numpy as np

from facegate import geometry
from facegate.config import ValidatorConfig
from facegate.types import MESH_MIN_LANDMARKS, DetectedFace, ValidationResult

LOGGER = logging.getLogger("facegate.quality.validator")

# FaceMesh landmark indices per region, with the minimum visible count required.
MESH_REGIONS: Dict[str, Sequence[int]] = {
    "left_eye": (33, 7, 163, 144, 145, 153, 154, 155, 133, 173, 157, 158, 159, 160, 161, 246),
    "right_eye": (362, 382, 381, 380, 374, 373, 390, 249, 263, 466, 388, 387, 386, 385, 384, 398),
    "nose": (1, 2, 5, 4, 6, 19, 20, 94, 125, 141, 235, 236, 3, 51, 48, 115, 131, 134, 102, 49, 220, 305),
    "mouth": (
        61, 84, 17, 314, 405, 320, 307, 375, 321, 308, 324, 318,
        13, 82, 81, 80, 78, 95, 88, 178, 87, 14, 317, 402,
    ),
    "outline": (
        10, 338, 297, 332, 284, 251, 389, 356, 454, 323, 361, 288, 397, 365, 379, 378,
        400, 377, 152, 148, 176, 149, 150, 136, 172, 58, 132, 93, 234, 127, 162,
    ),
}
MESH_REGION_MINIMUMS: Dict[str, int] = {
    "left_eye": 10,
    "right_eye": 10,
    "nose": 15,
    "mouth": 18,
    "outline": 20,
}


class FaceValidator:
    """Pure rule set deciding whether a detection is face-shaped."""

    def __init__(self, config: Optional[ValidatorConfig] = None) -> None:
        self.config = config or ValidatorConfig()

    def validate(self, face: DetectedFace, frame_width: float, frame_height: float) -> ValidationResult:
        result = self._run_rules(face, frame_width, frame_height)
        if not result.is_valid:
            LOGGER.debug("Rejected detection: %s", result.reason)
        return result

    def _run_rules(self, face: DetectedFace, frame_width: float, frame_height: float) -> ValidationResult:
        cfg = self.config
        box = face.box
        if box.width <= 0 or box.height <= 0:
            return ValidationResult.reject("empty face box")
        if min(box.width, box.height) < cfg.min_face_size:
            return ValidationResult.reject(
                f"face too small ({box.width:.0f}x{box.height:.0f}px < {cfg.min_face_size:.0f}px)"
            )

        area_ratio = geometry.frame_area_ratio(box, frame_width, frame_height)
        if area_ratio < cfg.min_face_area_ratio:
            return ValidationResult.reject(f"face too far from camera (area ratio {area_ratio:.4f})")
        if area_ratio > cfg.max_face_area_ratio:
            return ValidationResult.reject(f"face too close to camera (area ratio {area_ratio:.3f})")

        points = face.points()
        if len(points) < cfg.min_keypoints:
            return ValidationResult.reject(f"insufficient keypoints ({len(points)}/{cfg.min_keypoints})")
        if not np.all(np.isfinite(points)):
            return ValidationResult.reject("keypoints contain non-finite coordinates")

        aspect = box.aspect_ratio
        if not cfg.min_aspect_ratio <= aspect <= cfg.max_aspect_ratio:
            return ValidationResult.reject(
                f"aspect ratio {aspect:.2f} outside [{cfg.min_aspect_ratio:.2f}, {cfg.max_aspect_ratio:.2f}]"
            )

        if geometry.touches_edge(box, frame_width, frame_height, cfg.edge_margin):
            return ValidationResult.reject("face clipped by frame edge")

        x_spread, y_spread = geometry.keypoint_spread(points, box)
        if x_spread < cfg.min_spread or y_spread < cfg.min_spread:
            return ValidationResult.reject(
                f"keypoints clustered (spread x={x_spread:.2f} y={y_spread:.2f} < {cfg.min_spread:.2f})"
            )

        left, right = geometry.bilateral_counts(points, box)
        if left == 0 or right == 0:
            return ValidationResult.reject("keypoints not distributed on both sides of the face")

        thirds = geometry.vertical_thirds(points, box)
        if sum(1 for count in thirds if count > 0) < 2:
            return ValidationResult.reject("keypoints confined to one vertical band")

        tolerance = cfg.linear_tolerance * math.hypot(box.width, box.height)
        on_line = geometry.linear_fraction(points, tolerance)
        if on_line > cfg.max_linear_fraction:
            return ValidationResult.reject(f"linear keypoint pattern ({on_line:.0%} on one line), likely a hand")

        if cfg.check_mesh_visibility and face.is_mesh:
            return validate_mesh_visibility(face)
        return ValidationResult.ok()


def validate_mesh_visibility(face: DetectedFace, margin: float = 0.1) -> ValidationResult:
    """Require each facial region of a dense mesh to be visible inside the face box."""
    points = face.points()
    if len(points) < MESH_MIN_LANDMARKS:
        return ValidationResult.reject(f"insufficient landmarks detected: {len(points)}/468")

    box = face.box
    pad_x = box.width * margin
    pad_y = box.height * margin
    inside = (
        np.isfinite(points).all(axis=1)
        & (points[:, 0] >= box.x - pad_x)
        & (points[:, 0] <= box.x2 + pad_x)
        & (points[:, 1] >= box.y - pad_y)
        & (points[:, 1] <= box.y2 + pad_y)
    )
    missing: List[str] = []
    for region, indices in MESH_REGIONS.items():
        visible = sum(1 for idx in indices if idx < len(points) and inside[idx])
        if visible < MESH_REGION_MINIMUMS[region]:
            missing.append(f"{region} ({visible}/{len(indices)})")
    if missing:
        return ValidationResult.reject("face regions not visible: " + ", ".join(missing))
    return ValidationResult.ok()
