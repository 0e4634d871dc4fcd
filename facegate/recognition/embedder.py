"""Geometric face embeddings built from detector keypoints or a dense face mesh.

The keypoint path emits, in this fixed order, for K keypoints:

* 4K   per-keypoint relative positions (linear and squared terms)
* 2    keypoint aspect ratio and upper/lower extent ratio
* 3P   pairwise distances over face width, P = K(K-1)/2 (linear, squared, log)
* 3T   three-point angles, T = K(K-1)(K-2)/6 (angle, sin, cos), optional
* 2    left/right centroid asymmetry
* 4    quadrant occupancy
* 3    normalized x/y variance and overall dispersion

so K=6 with angles yields 140 dimensions. The mesh path uses only stable
landmarks (eye corners, nose tip and bridge, mouth corners, jaw contour) and
always yields 666 dimensions. Both paths are L2-normalized by default.

These features are far weaker than a learned face embedding. They shift with
head pose and, on the keypoint path, with sub-pixel jitter of midline points
(nose, mouth center) that straddle the left/right split.
"""

from __future__ import annotations

import logging
import math
from itertools import combinations
from typing import Dict, List, Optional, Sequence

import numpy as np
from scipy.spatial.distance import pdist

from facegate import geometry
from facegate.config import EmbeddingConfig
from facegate.types import DetectedFace, FaceEmbedding, as_embedding, l2_normalize

LOGGER = logging.getLogger("facegate.recognition.embed")

# Stable FaceMesh landmarks; eyelids and inner lip points are left out on purpose
# because they move with expression.
MESH_STABLE_LANDMARKS: Dict[str, int] = {
    "right_eye_outer": 33,
    "right_eye_inner": 133,
    "left_eye_inner": 362,
    "left_eye_outer": 263,
    "nose_tip": 1,
    "nose_bridge": 5,
    "mouth_right": 61,
    "mouth_left": 291,
    "forehead": 10,
    "chin": 152,
    "cheek_right": 234,
    "cheek_left": 454,
    "jaw_right_upper": 172,
    "jaw_left_upper": 397,
    "jaw_right_mid": 136,
    "jaw_left_mid": 365,
    "jaw_right_lower": 150,
    "jaw_left_lower": 379,
    "temple_right": 58,
    "temple_left": 288,
}
# Lip and eyelid points that move with expression; disjoint from the stable set
MESH_EXPRESSION_LANDMARKS = (0, 13, 14, 17, 37, 267, 145, 159, 374, 386)
MESH_EMBEDDING_DIM = 666


def embedding_dimension(num_keypoints: int, include_angles: bool = True) -> int:
    """Length of a keypoint-path embedding for `num_keypoints` keypoints."""
    k = num_keypoints
    pairs = k * (k - 1) // 2
    triples = k * (k - 1) * (k - 2) // 6 if include_angles else 0
    return 4 * k + 2 + 3 * pairs + 3 * triples + 2 + 4 + 3


class EmbeddingGenerator:
    """Deterministic geometric embedder; identical keypoints give identical vectors."""

    def __init__(self, config: Optional[EmbeddingConfig] = None) -> None:
        self.config = config or EmbeddingConfig()

    @property
    def dimension(self) -> int:
        return embedding_dimension(self.config.expected_keypoints, self.config.include_angles)

    def generate(self, face: DetectedFace) -> FaceEmbedding:
        """Return the embedding, or an empty vector when none can be produced."""
        if not face.keypoints:
            LOGGER.debug("No keypoints; embedding unavailable")
            return as_embedding(None)
        points = face.points()
        if not np.all(np.isfinite(points)):
            LOGGER.debug("Non-finite keypoints; embedding unavailable")
            return as_embedding(None)
        if face.is_mesh:
            features = self._mesh_features(points)
        elif len(points) != self.config.expected_keypoints:
            LOGGER.debug(
                "Keypoint count %d differs from expected %d; embedding unavailable",
                len(points),
                self.config.expected_keypoints,
            )
            return as_embedding(None)
        else:
            features = self._keypoint_features(points)
        if features is None:
            return as_embedding(None)
        vector = np.asarray(features, dtype=np.float64)
        if self.config.l2_normalize:
            vector = l2_normalize(vector)
        return vector.astype(np.float32)

    def _keypoint_features(self, points: np.ndarray) -> Optional[List[float]]:
        cfg = self.config
        cx, cy = geometry.keypoint_center(points)
        width, height = geometry.keypoint_extent(points)
        if width <= 0 or height <= 0:
            LOGGER.debug("Degenerate keypoint extent %.1fx%.1f", width, height)
            return None

        rel = (points - np.array([cx, cy])) / np.array([width, height])
        features: List[float] = []
        for rx, ry in rel:
            features.extend(
                [
                    rx * cfg.position_gain,
                    ry * cfg.position_gain,
                    rx * rx * cfg.position_power_gain,
                    ry * ry * cfg.position_power_gain,
                ]
            )

        features.append(width / height * cfg.aspect_gain)
        below = points[:, 1].max() - cy
        above = cy - points[:, 1].min()
        features.append((above / below if below > 0 else 0.0) * cfg.ratio_gain)

        features.extend(self._distance_features(points, width))
        if cfg.include_angles:
            features.extend(self._angle_features(points))
        features.extend(self._symmetry_features(points, cx, width, height))
        features.extend(self._density_features(points, cx, cy, width, height))
        return features

    def _distance_features(self, points: np.ndarray, width: float) -> List[float]:
        cfg = self.config
        dists = pdist(points) / width
        return (
            list(dists * cfg.distance_gain)
            + list(dists * dists * cfg.distance_power_gain)
            + list(np.log1p(dists) * cfg.distance_log_gain)
        )

    def _angle_features(self, points: np.ndarray) -> List[float]:
        cfg = self.config
        features: List[float] = []
        for i, j, k in combinations(range(len(points)), 3):
            angle = geometry.triangle_angle(points[i], points[j], points[k])
            features.extend(
                [
                    angle * cfg.angle_gain,
                    math.sin(angle) * cfg.angle_trig_gain,
                    math.cos(angle) * cfg.angle_trig_gain,
                ]
            )
        return features

    def _symmetry_features(self, points: np.ndarray, cx: float, width: float, height: float) -> List[float]:
        gain = self.config.symmetry_gain
        left = points[points[:, 0] < cx]
        right = points[points[:, 0] > cx]
        if len(left) == 0 or len(right) == 0:
            return [0.0, 0.0]
        left_c = left.mean(axis=0)
        right_c = right.mean(axis=0)
        horizontal = (abs(left_c[0] - cx) - abs(right_c[0] - cx)) / width
        vertical = (left_c[1] - right_c[1]) / height
        return [horizontal * gain, vertical * gain]

    def _density_features(
        self, points: np.ndarray, cx: float, cy: float, width: float, height: float
    ) -> List[float]:
        cfg = self.config
        n = float(len(points))
        xs = points[:, 0]
        ys = points[:, 1]
        quadrants = [
            np.sum((xs < cx) & (ys < cy)),
            np.sum((xs >= cx) & (ys < cy)),
            np.sum((xs < cx) & (ys >= cy)),
            np.sum((xs >= cx) & (ys >= cy)),
        ]
        features = [q / n * cfg.density_gain for q in quadrants]
        x_var = float(np.var(xs))
        y_var = float(np.var(ys))
        features.extend(
            [
                x_var / (width * width) * cfg.variance_gain,
                y_var / (height * height) * cfg.variance_gain,
                math.sqrt(x_var + y_var) / max(width, height) * cfg.variance_gain,
            ]
        )
        return features

    def _mesh_features(self, points: np.ndarray) -> Optional[List[float]]:
        cfg = self.config
        if len(points) <= max(MESH_STABLE_LANDMARKS.values()):
            LOGGER.debug("Mesh with %d landmarks lacks stable points", len(points))
            return None
        stable = points[list(MESH_STABLE_LANDMARKS.values())]
        p = {name: points[idx] for name, idx in MESH_STABLE_LANDMARKS.items()}
        cx, cy = geometry.keypoint_center(stable)
        width, height = geometry.keypoint_extent(stable)
        if width <= 0 or height <= 0:
            return None

        rel = (stable - np.array([cx, cy])) / np.array([width, height])
        features: List[float] = []
        for rx, ry in rel:
            features.extend(
                [
                    rx * cfg.position_gain,
                    ry * cfg.position_gain,
                    rx * rx * cfg.position_power_gain,
                    ry * ry * cfg.position_power_gain,
                ]
            )
        features.extend(self._distance_features(stable, width))

        def dist(a: str, b: str) -> float:
            return float(np.linalg.norm(p[a] - p[b]))

        def ratio(num: float, den: float) -> float:
            return num / den if den > 0 else 0.0

        eye_vec = p["left_eye_outer"] - p["right_eye_outer"]
        mouth_mid = (p["mouth_left"] + p["mouth_right"]) / 2.0
        cheek_width = dist("cheek_left", "cheek_right")
        named = [
            ratio(dist("left_eye_inner", "right_eye_inner"), width) * cfg.distance_gain,
            ratio(dist("left_eye_outer", "right_eye_outer"), width) * cfg.distance_gain,
            math.atan2(eye_vec[1], eye_vec[0]) * cfg.angle_gain,
            ratio(dist("right_eye_outer", "right_eye_inner"), width) * cfg.distance_gain,
            ratio(dist("left_eye_outer", "left_eye_inner"), width) * cfg.distance_gain,
            (p["nose_tip"][0] - cx) / width * cfg.distance_gain,
            (p["nose_tip"][1] - cy) / height * cfg.distance_gain,
            ratio(dist("nose_tip", "nose_bridge"), height) * cfg.distance_gain,
            ratio(dist("mouth_left", "mouth_right"), width) * cfg.distance_gain,
            (mouth_mid[1] - cy) / height * cfg.distance_gain,
            ratio(cheek_width, dist("forehead", "chin")) * cfg.ratio_gain,
            ratio(dist("jaw_left_upper", "jaw_right_upper"), cheek_width) * cfg.ratio_gain,
            ratio(dist("jaw_left_mid", "jaw_right_mid"), cheek_width) * cfg.ratio_gain,
            ratio(dist("jaw_left_lower", "jaw_right_lower"), cheek_width) * cfg.ratio_gain,
            ratio(dist("right_eye_outer", "nose_tip"), dist("left_eye_outer", "nose_tip")) * cfg.ratio_gain,
            ratio(
                float(np.linalg.norm(p["nose_tip"] - mouth_mid)),
                float(np.linalg.norm(mouth_mid - p["chin"])),
            )
            * cfg.ratio_gain,
        ]
        features.extend(named)
        return features


def mean_embedding(embeddings: Sequence[np.ndarray]) -> FaceEmbedding:
    """Centroid of same-length embeddings, re-normalized; empty when none given."""
    usable = [np.asarray(e, dtype=np.float64) for e in embeddings if len(e) > 0]
    if not usable:
        return as_embedding(None)
    lengths = {len(e) for e in usable}
    if len(lengths) != 1:
        raise ValueError(f"Cannot average embeddings of different lengths: {sorted(lengths)}")
    centroid = l2_normalize(np.stack(usable, axis=0).mean(axis=0))
    return centroid.astype(np.float32)
