"""Per-session capture state machine: stability gating and subject handoff."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

import numpy as np

from facegate.config import CaptureConfig, QualityConfig
from facegate.recognition.similarity import SimilarityEngine
from facegate.types import MatchResult, QualityAssessment

LOGGER = logging.getLogger("facegate.capture.state")


class CaptureStatus(str, Enum):
    IDLE = "idle"
    TRACKING = "tracking"
    STABILIZING = "stabilizing"
    CAPTURED = "captured"


class CaptureAction(str, Enum):
    NO_FACE = "no_face"
    LOW_QUALITY = "low_quality"
    STABILIZING = "stabilizing"
    SUBJECT_CHANGED = "subject_changed"
    HANDOFF_WAIT = "handoff_wait"
    CAPTURE = "capture"


@dataclass
class CaptureState:
    """Mutable per-session state; owned by exactly one session loop."""

    status: CaptureStatus = CaptureStatus.IDLE
    stable_frame_count: int = 0
    last_quality_timestamp: Optional[float] = None
    best_quality_score: float = 0.0
    best_quality_embedding: Optional[np.ndarray] = None
    last_probe_embedding: Optional[np.ndarray] = None
    last_detection_timestamp: Optional[float] = None
    last_match: Optional[MatchResult] = None
    # member_id -> timestamp of the last accepted match
    recent_matches: Dict[str, float] = field(default_factory=dict)

    def reset_stability(self) -> None:
        self.stable_frame_count = 0
        self.last_quality_timestamp = None
        self.best_quality_score = 0.0
        self.best_quality_embedding = None

    def reset_subject(self) -> None:
        """Forget everything tied to the current subject."""
        self.reset_stability()
        self.last_probe_embedding = None
        self.last_detection_timestamp = None
        self.last_match = None
        self.recent_matches.clear()


@dataclass(frozen=True)
class CaptureDecision:
    action: CaptureAction
    status: CaptureStatus
    embedding: Optional[np.ndarray] = None
    quality_score: float = 0.0
    reason: str = ""

    @property
    def should_match(self) -> bool:
        return self.action is CaptureAction.CAPTURE


class CaptureStateMachine:
    """Single decision function driving Idle -> Tracking -> Stabilizing -> Captured."""

    def __init__(
        self,
        config: Optional[CaptureConfig] = None,
        quality_config: Optional[QualityConfig] = None,
        engine: Optional[SimilarityEngine] = None,
    ) -> None:
        self.config = config or CaptureConfig()
        self.quality_config = quality_config or QualityConfig()
        self.engine = engine or SimilarityEngine()
        self.state = CaptureState()

    @property
    def status(self) -> CaptureStatus:
        return self.state.status

    def reset(self) -> None:
        self.state = CaptureState()

    def observe(
        self,
        quality: Optional[QualityAssessment],
        embedding: Optional[np.ndarray],
        now: float,
    ) -> CaptureDecision:
        """Advance the state machine with one frame.

        `quality` is None when no usable face was found. `embedding` may be None
        or empty for low quality frames; a high quality frame without an
        embedding is treated as unusable.
        """
        state = self.state
        if quality is None:
            # Handoff memory (last probe, last detection time) survives short gaps
            state.reset_stability()
            state.last_match = None
            state.status = CaptureStatus.IDLE
            return CaptureDecision(CaptureAction.NO_FACE, state.status, reason="no face")

        if quality.score < self.quality_config.high_quality_threshold:
            state.reset_stability()
            state.status = CaptureStatus.TRACKING
            return CaptureDecision(
                CaptureAction.LOW_QUALITY, state.status, quality_score=quality.score, reason=quality.reason
            )

        if embedding is None or len(embedding) == 0:
            state.reset_stability()
            state.status = CaptureStatus.TRACKING
            return CaptureDecision(
                CaptureAction.LOW_QUALITY, state.status, quality_score=quality.score, reason="embedding unavailable"
            )

        if self.is_different_person(embedding):
            if self._within_dwell(now):
                return CaptureDecision(
                    CaptureAction.HANDOFF_WAIT,
                    state.status,
                    quality_score=quality.score,
                    reason="waiting for subject handoff",
                )
            LOGGER.info("Different person detected; resetting capture state")
            state.reset_subject()
            state.last_probe_embedding = embedding
            state.status = CaptureStatus.TRACKING
            return CaptureDecision(
                CaptureAction.SUBJECT_CHANGED, state.status, quality_score=quality.score, reason="new subject"
            )

        state.last_probe_embedding = embedding
        if state.last_quality_timestamp is not None and now - state.last_quality_timestamp <= self.config.stability_window:
            state.stable_frame_count += 1
        else:
            state.stable_frame_count = 1
        state.last_quality_timestamp = now
        if state.best_quality_embedding is None or quality.score > state.best_quality_score:
            state.best_quality_score = quality.score
            state.best_quality_embedding = embedding

        perfect = quality.score >= 1.0
        if perfect or state.stable_frame_count >= self.config.required_stable_frames:
            chosen = state.best_quality_embedding
            LOGGER.debug(
                "Capture triggered (%s) stable=%d best_quality=%.3f",
                "perfect" if perfect else "stable",
                state.stable_frame_count,
                state.best_quality_score,
            )
            state.status = CaptureStatus.CAPTURED
            state.reset_stability()
            return CaptureDecision(
                CaptureAction.CAPTURE,
                state.status,
                embedding=chosen,
                quality_score=quality.score,
                reason="perfect quality" if perfect else "stable",
            )

        state.status = CaptureStatus.STABILIZING
        return CaptureDecision(
            CaptureAction.STABILIZING,
            state.status,
            quality_score=quality.score,
            reason=f"stabilizing {state.stable_frame_count}/{self.config.required_stable_frames}",
        )

    def record_match(self, result: MatchResult, now: float) -> None:
        """Remember the outcome of a capture for handoff and duplicate suppression."""
        state = self.state
        state.last_detection_timestamp = now
        if result.matched and result.member_id is not None:
            state.last_match = result
            state.recent_matches[result.member_id] = now
        else:
            state.last_match = None

    def reject_capture(self, decision: CaptureDecision, reason: str) -> CaptureDecision:
        """Undo a capture that failed the final face check; stability restarts."""
        state = self.state
        state.reset_stability()
        state.status = CaptureStatus.TRACKING
        return CaptureDecision(
            CaptureAction.LOW_QUALITY, state.status, quality_score=decision.quality_score, reason=reason
        )

    def clear_last_match(self) -> None:
        self.state.last_match = None

    def recently_matched(self, member_id: str, now: float) -> bool:
        seen = self.state.recent_matches.get(member_id)
        return seen is not None and now - seen < self.config.recent_match_cooldown

    def is_different_person(self, embedding: np.ndarray) -> bool:
        previous = self.state.last_probe_embedding
        if previous is None:
            return False
        return self.engine.similarity(embedding, previous) < self.config.same_person_threshold

    def _within_dwell(self, now: float) -> bool:
        last = self.state.last_detection_timestamp
        return last is not None and now - last < self.config.handoff_dwell
