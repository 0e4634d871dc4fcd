"""Blended embedding similarity (cosine, euclidean, correlation) with a pose check."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from facegate.config import SimilarityConfig

LOGGER = logging.getLogger("facegate.recognition.similarity")

_EPS = 1e-12


@dataclass(frozen=True)
class SimilarityBreakdown:
    cosine: float
    euclidean: float
    pearson: Optional[float]
    pose_consistent: bool
    combined: float


_ZERO = SimilarityBreakdown(0.0, 0.0, None, False, 0.0)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm < _EPS:
        return 0.0
    return float(np.dot(a, b)) / norm


def pearson_correlation(a: np.ndarray, b: np.ndarray) -> Optional[float]:
    """Pearson r, or None when either vector is constant."""
    da = a - a.mean()
    db = b - b.mean()
    denom = float(np.sqrt(np.dot(da, da) * np.dot(db, db)))
    if denom < _EPS:
        return None
    return float(np.dot(da, db)) / denom


class SimilarityEngine:
    """Symmetric similarity in [0, 1]; returns 0 rather than raising on bad input."""

    def __init__(self, config: Optional[SimilarityConfig] = None) -> None:
        self.config = config or SimilarityConfig()

    def similarity(self, a: np.ndarray, b: np.ndarray) -> float:
        return self.compare(a, b).combined

    def compare(self, a: np.ndarray, b: np.ndarray) -> SimilarityBreakdown:
        a = np.asarray(a, dtype=np.float64).reshape(-1)
        b = np.asarray(b, dtype=np.float64).reshape(-1)
        if a.size == 0 or b.size == 0 or a.size != b.size:
            return _ZERO
        if not (np.all(np.isfinite(a)) and np.all(np.isfinite(b))):
            return _ZERO
        if np.linalg.norm(a) < _EPS or np.linalg.norm(b) < _EPS:
            return _ZERO

        cfg = self.config
        cosine = cosine_similarity(a, b)
        euclidean = 1.0 / (1.0 + float(np.linalg.norm(a - b)))
        pearson = pearson_correlation(a, b)

        weighted = cfg.cosine_weight * cosine + cfg.euclidean_weight * euclidean
        total_weight = cfg.cosine_weight + cfg.euclidean_weight
        if pearson is not None:
            # Constant vectors have no defined correlation; drop the term and renormalize
            weighted += cfg.pearson_weight * abs(pearson)
            total_weight += cfg.pearson_weight
        combined = weighted / total_weight if total_weight > 0 else 0.0

        consistent = self.pose_consistent(a, b) if cfg.pose_check else True
        if not consistent:
            combined *= cfg.pose_penalty
        combined = max(0.0, min(1.0, combined))
        return SimilarityBreakdown(cosine, euclidean, pearson, consistent, combined)

    def pose_consistent(self, a: np.ndarray, b: np.ndarray) -> bool:
        """Compare the leading pose-sensitive slice; large relative deviation flags a mismatch."""
        n = min(self.config.pose_slice, len(a), len(b))
        if n == 0:
            return True
        sa = np.asarray(a[:n], dtype=np.float64)
        sb = np.asarray(b[:n], dtype=np.float64)
        scale = (np.abs(sa).mean() + np.abs(sb).mean()) / 2.0
        if scale < _EPS:
            return True
        deviation = float(np.abs(sa - sb).mean() / scale)
        if deviation > self.config.pose_tolerance:
            LOGGER.debug("Pose inconsistency: deviation %.3f > %.3f", deviation, self.config.pose_tolerance)
            return False
        return True
