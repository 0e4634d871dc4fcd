"""Gallery matching with an absolute threshold plus a runner-up confidence gap."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from facegate.config import MatchConfig
from facegate.recognition.similarity import SimilarityEngine
from facegate.types import GalleryEntry, MatchResult

LOGGER = logging.getLogger("facegate.recognition.matcher")


class MatchDecider:
    """Two-stage gate: best score must clear the threshold and dominate the runner-up."""

    def __init__(
        self,
        config: Optional[MatchConfig] = None,
        engine: Optional[SimilarityEngine] = None,
    ) -> None:
        self.config = config or MatchConfig()
        self.engine = engine or SimilarityEngine()

    def score_gallery(self, probe: np.ndarray, gallery: Sequence[GalleryEntry]) -> List[Tuple[GalleryEntry, float]]:
        scores = [(entry, self.engine.similarity(probe, entry.embedding)) for entry in gallery]
        scores.sort(key=lambda item: item[1], reverse=True)
        return scores

    def topk(self, probe: np.ndarray, gallery: Sequence[GalleryEntry], k: int = 3) -> List[Tuple[str, float]]:
        """Return the top-k member ids and scores without applying any gate."""
        return [(entry.member_id, score) for entry, score in self.score_gallery(probe, gallery)[:k]]

    def effective_threshold(self, threshold: float, best: float, gap: float) -> float:
        """Threshold after adaptive relaxation for confident, well-separated matches."""
        cfg = self.config
        if not cfg.adaptive:
            return threshold
        if best > cfg.adaptive_min_score and gap > cfg.adaptive_min_gap:
            return min(threshold, max(cfg.adaptive_floor, threshold - cfg.adaptive_amount))
        return threshold

    def match(
        self,
        probe: np.ndarray,
        gallery: Sequence[GalleryEntry],
        threshold: Optional[float] = None,
    ) -> MatchResult:
        required = self.config.threshold if threshold is None else threshold
        if len(probe) == 0:
            return MatchResult.rejected("empty_probe", threshold=required)
        if not gallery:
            return MatchResult.rejected("empty_gallery", threshold=required)

        scores = self.score_gallery(probe, gallery)
        top_entry, top_score = scores[0]
        runner_score = scores[1][1] if len(scores) > 1 else 0.0
        gap = top_score - runner_score

        effective = self.effective_threshold(required, top_score, gap)
        if top_score < effective:
            LOGGER.debug("Best score %.3f below threshold %.3f (%s)", top_score, effective, top_entry.member_id)
            return MatchResult.rejected("below_threshold", top_score, runner_score, effective)

        if len(scores) > 1 and gap < self.config.min_gap:
            LOGGER.info(
                "Ambiguous match rejected: %s %.3f vs runner-up %s %.3f (gap %.3f < %.3f)",
                top_entry.member_id,
                top_score,
                scores[1][0].member_id,
                runner_score,
                gap,
                self.config.min_gap,
            )
            return MatchResult.rejected("ambiguous", top_score, runner_score, effective)

        LOGGER.info(
            "Matched %s (%s) score=%.3f gap=%.3f threshold=%.3f",
            top_entry.member_id,
            top_entry.status.value,
            top_score,
            gap,
            effective,
        )
        return MatchResult(
            matched=True,
            confidence=top_score,
            member_id=top_entry.member_id,
            name=top_entry.name,
            status=top_entry.status,
            best_score=top_score,
            runner_up_score=runner_score,
            threshold=effective,
            reason="accepted",
        )
