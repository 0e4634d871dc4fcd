"""Data-driven match threshold and confidence-gap calibration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from itertools import combinations
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.metrics import roc_curve

from facegate.recognition.embedder import mean_embedding
from facegate.recognition.gallery import embedding_from_parquet
from facegate.recognition.similarity import SimilarityEngine

LOGGER = logging.getLogger("facegate.recognition.calibration")


@dataclass
class CalibrationReport:
    threshold: float
    min_gap: float
    target_far: float
    achieved_far: float
    achieved_frr: float
    genuine_pairs: int
    impostor_pairs: int
    gap_probes: int


def samples_from_frame(df: pd.DataFrame) -> Dict[str, List[np.ndarray]]:
    """Group a (member_id, embedding) table into per-member sample lists."""
    samples: Dict[str, List[np.ndarray]] = {}
    for _, row in df.iterrows():
        embedding = embedding_from_parquet(row["embedding"])
        if embedding.size == 0:
            continue
        samples.setdefault(str(row["member_id"]), []).append(embedding)
    return samples


def pair_scores(
    samples: Dict[str, Sequence[np.ndarray]],
    engine: Optional[SimilarityEngine] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Similarity of every sample pair; labels are 1 for same member, 0 otherwise."""
    engine = engine or SimilarityEngine()
    flat = [(member, emb) for member, embs in samples.items() for emb in embs]
    labels: List[int] = []
    scores: List[float] = []
    for (member_a, emb_a), (member_b, emb_b) in combinations(flat, 2):
        labels.append(1 if member_a == member_b else 0)
        scores.append(engine.similarity(emb_a, emb_b))
    return np.asarray(labels, dtype=np.int32), np.asarray(scores, dtype=np.float64)


def threshold_at_far(labels: np.ndarray, scores: np.ndarray, target_far: float) -> Tuple[float, float, float]:
    """Lowest threshold whose false-accept rate stays within `target_far`.

    Returns (threshold, far, frr).
    """
    if labels.min() == labels.max():
        raise ValueError("Calibration needs both genuine and impostor pairs")
    fpr, tpr, thresholds = roc_curve(labels, scores)
    allowed = np.where(fpr <= target_far)[0]
    idx = int(allowed[-1])
    threshold = float(thresholds[idx])
    if not np.isfinite(threshold):
        # roc_curve prepends an infinite threshold that accepts nothing
        threshold = float(scores.max()) + 1e-6
    return min(threshold, 1.0), float(fpr[idx]), float(1.0 - tpr[idx])


def genuine_rank_gaps(
    samples: Dict[str, Sequence[np.ndarray]],
    engine: Optional[SimilarityEngine] = None,
) -> np.ndarray:
    """Leave-one-out margins between the true member and the best other member."""
    engine = engine or SimilarityEngine()
    centroids = {member: mean_embedding(embs) for member, embs in samples.items()}
    gaps: List[float] = []
    for member, embs in samples.items():
        if len(embs) < 2 or len(centroids) < 2:
            continue
        for idx, probe in enumerate(embs):
            own = mean_embedding([e for j, e in enumerate(embs) if j != idx])
            genuine = engine.similarity(probe, own)
            impostor = max(
                engine.similarity(probe, centroid) for other, centroid in centroids.items() if other != member
            )
            gaps.append(genuine - impostor)
    return np.asarray(gaps, dtype=np.float64)


def calibrate(
    samples: Dict[str, Sequence[np.ndarray]],
    target_far: float = 0.001,
    gap_percentile: float = 5.0,
    engine: Optional[SimilarityEngine] = None,
) -> CalibrationReport:
    engine = engine or SimilarityEngine()
    labels, scores = pair_scores(samples, engine)
    if labels.size == 0:
        raise ValueError("Calibration needs at least two samples")
    threshold, far, frr = threshold_at_far(labels, scores, target_far)
    gaps = genuine_rank_gaps(samples, engine)
    positive = gaps[gaps > 0]
    min_gap = float(np.percentile(positive, gap_percentile)) if positive.size else 0.0
    min_gap = float(np.clip(min_gap, 0.0, 0.5))
    LOGGER.info(
        "Calibrated threshold=%.3f (FAR %.4f, FRR %.4f) min_gap=%.3f from %d genuine / %d impostor pairs",
        threshold,
        far,
        frr,
        min_gap,
        int(labels.sum()),
        int((labels == 0).sum()),
    )
    return CalibrationReport(
        threshold=threshold,
        min_gap=min_gap,
        target_far=target_far,
        achieved_far=far,
        achieved_frr=frr,
        genuine_pairs=int(labels.sum()),
        impostor_pairs=int((labels == 0).sum()),
        gap_probes=int(gaps.size),
    )
