"""Per-frame quality scoring used to gate embedding and matching."""

from __future__ import annotations

import logging
import math
from typing import Dict, Optional

from facegate import geometry
from facegate.config import QualityConfig
from facegate.types import DetectedFace, QualityAssessment

LOGGER = logging.getLogger("facegate.quality.scorer")


class QualityScorer:
    """Weighted sum of framing sub-scores with a hard-zero gate on critical ones."""

    def __init__(self, config: Optional[QualityConfig] = None) -> None:
        self.config = config or QualityConfig()

    def score(self, face: DetectedFace, frame_width: float, frame_height: float) -> QualityAssessment:
        components = self.components(face, frame_width, frame_height)
        cfg = self.config

        zeroed = [name for name in cfg.critical if components.get(name, 0.0) <= 0.0]
        if zeroed:
            return QualityAssessment(False, 0.0, f"failed {', '.join(zeroed)}", components)

        weights = cfg.weights
        total_weight = sum(weights.values())
        total = sum(components[name] * weight for name, weight in weights.items()) / total_weight
        total = max(0.0, min(1.0, total))
        if math.isclose(total, 1.0, abs_tol=1e-9):
            total = 1.0
        is_valid = total >= cfg.acceptable_threshold
        reason = "ok" if is_valid else f"quality {total:.2f} below {cfg.acceptable_threshold:.2f}"
        return QualityAssessment(is_valid, total, reason, components)

    def components(self, face: DetectedFace, frame_width: float, frame_height: float) -> Dict[str, float]:
        box = face.box
        return {
            "size": self._size_score(geometry.frame_area_ratio(box, frame_width, frame_height)),
            "position": self._position_score(geometry.frame_center_offset(box, frame_width, frame_height)),
            "keypoints": self._keypoint_score(len(face.keypoints)),
            "edge": 0.0 if geometry.touches_edge(box, frame_width, frame_height, self.config.edge_margin) else 1.0,
            "aspect": self._aspect_score(box.aspect_ratio),
        }

    def is_high_quality(self, assessment: QualityAssessment) -> bool:
        return assessment.score >= self.config.high_quality_threshold

    @staticmethod
    def is_perfect(assessment: QualityAssessment) -> bool:
        return assessment.score >= 1.0

    def _size_score(self, ratio: float) -> float:
        cfg = self.config
        if ratio < cfg.size_min_ratio or ratio > cfg.size_max_ratio:
            return 0.0
        if cfg.size_ideal_min <= ratio <= cfg.size_ideal_max:
            return 1.0
        return cfg.size_partial

    def _position_score(self, offset: float) -> float:
        cfg = self.config
        if offset > cfg.position_max:
            return 0.0
        if offset <= cfg.position_ideal:
            return 1.0
        return cfg.position_partial

    def _keypoint_score(self, count: int) -> float:
        cfg = self.config
        if count < cfg.min_keypoints:
            return 0.0
        return min(1.0, count / float(cfg.good_keypoints))

    def _aspect_score(self, aspect: float) -> float:
        cfg = self.config
        if aspect < cfg.aspect_min or aspect > cfg.aspect_max:
            return 0.0
        if cfg.aspect_ideal_min <= aspect <= cfg.aspect_ideal_max:
            return 1.0
        return cfg.aspect_partial
