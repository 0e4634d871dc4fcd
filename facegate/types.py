"""Common dataclasses and type aliases used across the facegate package."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

# Detector box order: x1, y1, x2, y2 (pixel coordinates)
BBox = Tuple[float, float, float, float]
Point = Tuple[float, float]

# Embeddings are 1D float32 vectors; an empty vector means "no embedding available".
FaceEmbedding = np.ndarray

# Landmark count above which a detection is treated as a dense face mesh.
MESH_MIN_LANDMARKS = 400


class MemberStatus(str, Enum):
    ALLOWED = "Allowed"
    BANNED = "Banned"
    VIP = "VIP"

    @classmethod
    def parse(cls, value: object) -> "MemberStatus":
        if isinstance(value, MemberStatus):
            return value
        text = str(value).strip()
        for status in cls:
            if status.value.lower() == text.lower():
                return status
        raise ValueError(f"Unknown member status: {value!r}")


@dataclass(frozen=True)
class Keypoint:
    """Single detector keypoint in source-frame pixel coordinates."""

    x: float
    y: float
    name: Optional[str] = None


@dataclass(frozen=True)
class FaceBox:
    """Axis-aligned face box: top-left corner plus size."""

    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_xyxy(cls, bbox: BBox) -> "FaceBox":
        x1, y1, x2, y2 = bbox
        return cls(float(x1), float(y1), float(x2 - x1), float(y2 - y1))

    @property
    def x2(self) -> float:
        return self.x + self.width

    @property
    def y2(self) -> float:
        return self.y + self.height

    @property
    def center(self) -> Point:
        return self.x + self.width / 2.0, self.y + self.height / 2.0

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    @property
    def aspect_ratio(self) -> float:
        if self.height <= 0:
            return 0.0
        return self.width / self.height

    def as_xyxy(self) -> BBox:
        return self.x, self.y, self.x2, self.y2


@dataclass
class DetectedFace:
    """Normalized detector output; one per detected face per frame."""

    box: FaceBox
    keypoints: List[Keypoint] = field(default_factory=list)
    confidence: float = 1.0

    @property
    def is_mesh(self) -> bool:
        return len(self.keypoints) >= MESH_MIN_LANDMARKS

    def points(self) -> np.ndarray:
        """Keypoint coordinates as an (N, 2) float64 array."""
        if not self.keypoints:
            return np.zeros((0, 2), dtype=np.float64)
        return np.array([(kp.x, kp.y) for kp in self.keypoints], dtype=np.float64)


@dataclass(eq=False)
class GalleryEntry:
    """Enrolled member embedding owned by the external member store."""

    member_id: str
    name: str
    status: MemberStatus
    embedding: FaceEmbedding

    def __post_init__(self) -> None:
        self.status = MemberStatus.parse(self.status)
        self.embedding = as_embedding(self.embedding)


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    reason: str

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(True, "ok")

    @classmethod
    def reject(cls, reason: str) -> "ValidationResult":
        return cls(False, reason)


@dataclass(frozen=True)
class QualityAssessment:
    """Per-frame quality score with its sub-scores."""

    is_valid: bool
    score: float
    reason: str
    components: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class MatchResult:
    matched: bool
    confidence: float = 0.0
    member_id: Optional[str] = None
    name: Optional[str] = None
    status: Optional[MemberStatus] = None
    best_score: float = 0.0
    runner_up_score: float = 0.0
    threshold: float = 0.0
    reason: str = ""

    @property
    def gap(self) -> float:
        return self.best_score - self.runner_up_score

    @classmethod
    def rejected(
        cls,
        reason: str,
        best_score: float = 0.0,
        runner_up_score: float = 0.0,
        threshold: float = 0.0,
    ) -> "MatchResult":
        return cls(
            matched=False,
            best_score=best_score,
            runner_up_score=runner_up_score,
            threshold=threshold,
            reason=reason,
        )


class FrameEventKind(str, Enum):
    NO_FACE = "noFace"
    LOW_QUALITY = "lowQuality"
    MATCHED = "matched"
    UNMATCHED = "unmatched"


@dataclass
class FrameEvent:
    """Outcome of one processed frame, delivered to the match observer."""

    kind: FrameEventKind
    timestamp: float
    quality_score: float = 0.0
    match: Optional[MatchResult] = None
    probe_embedding: Optional[FaceEmbedding] = None
    capture_status: Optional[str] = None
    reason: str = ""


def as_embedding(values: Optional[Iterable[float]]) -> FaceEmbedding:
    """Coerce a sequence into a 1D float32 embedding vector."""
    if values is None:
        return np.empty((0,), dtype=np.float32)
    arr = np.asarray(values, dtype=np.float32)
    return arr.reshape(-1)


def l2_normalize(vec: np.ndarray, eps: float = 1e-6) -> np.ndarray:
    """L2-normalize the input vector."""
    norm = np.linalg.norm(vec)
    if norm < eps:
        return vec
    return vec / norm
