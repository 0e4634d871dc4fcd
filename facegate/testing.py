"""Deterministic synthetic inputs for tests and dry runs.

Nothing here touches a camera, a model or the network:

    >>> from facegate.testing import frontal_face, blank_frame
    >>> face = frontal_face()
    >>> frame = blank_frame()            # 640x480 black BGR image
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from facegate.recognition.embedder import MESH_STABLE_LANDMARKS
from facegate.types import DetectedFace, FaceBox, GalleryEntry, Keypoint, MemberStatus, l2_normalize

FRAME_WIDTH = 640
FRAME_HEIGHT = 480

# Six BlazeFace-style keypoints for a centered face in a 640x480 frame.
FRONTAL_KEYPOINTS: Tuple[Tuple[str, float, float], ...] = (
    ("right_eye", 280.0, 195.0),
    ("left_eye", 360.0, 195.0),
    ("nose_tip", 320.0, 245.0),
    ("mouth_center", 320.0, 295.0),
    ("right_ear", 225.0, 205.0),
    ("left_ear", 415.0, 205.0),
)
FRONTAL_BOX = FaceBox(210.0, 120.0, 220.0, 240.0)

_MESH_STABLE_POSITIONS: Dict[str, Tuple[float, float]] = {
    "right_eye_outer": (265.0, 200.0),
    "right_eye_inner": (300.0, 202.0),
    "left_eye_inner": (340.0, 202.0),
    "left_eye_outer": (375.0, 200.0),
    "nose_tip": (320.0, 255.0),
    "nose_bridge": (320.0, 235.0),
    "mouth_right": (290.0, 300.0),
    "mouth_left": (350.0, 300.0),
    "forehead": (320.0, 125.0),
    "chin": (320.0, 355.0),
    "cheek_right": (215.0, 230.0),
    "cheek_left": (425.0, 230.0),
    "jaw_right_upper": (235.0, 300.0),
    "jaw_left_upper": (405.0, 300.0),
    "jaw_right_mid": (250.0, 320.0),
    "jaw_left_mid": (390.0, 320.0),
    "jaw_right_lower": (270.0, 338.0),
    "jaw_left_lower": (370.0, 338.0),
    "temple_right": (228.0, 285.0),
    "temple_left": (412.0, 285.0),
}


def blank_frame(width: int = FRAME_WIDTH, height: int = FRAME_HEIGHT) -> np.ndarray:
    return np.zeros((height, width, 3), dtype=np.uint8)


def frontal_face(
    dx: float = 0.0,
    dy: float = 0.0,
    scale: float = 1.0,
    jitter: float = 0.0,
    seed: int = 0,
    box: Optional[FaceBox] = None,
) -> DetectedFace:
    """Well-framed six-keypoint face; `scale` is applied around the box center."""
    base = box or FRONTAL_BOX
    cx, cy = base.center
    rng = np.random.default_rng(seed)
    keypoints: List[Keypoint] = []
    for name, x, y in FRONTAL_KEYPOINTS:
        px = cx + (x - cx) * scale + dx
        py = cy + (y - cy) * scale + dy
        if jitter:
            px += float(rng.normal(0.0, jitter))
            py += float(rng.normal(0.0, jitter))
        keypoints.append(Keypoint(px, py, name))
    width = base.width * scale
    height = base.height * scale
    face_box = FaceBox(cx - width / 2.0 + dx, cy - height / 2.0 + dy, width, height)
    return DetectedFace(box=face_box, keypoints=keypoints, confidence=0.98)


def hand_detection(count: int = 8, box: Optional[FaceBox] = None) -> DetectedFace:
    """Finger-like row of keypoints running diagonally across the box."""
    box = box or FRONTAL_BOX
    xs = np.linspace(box.x + 0.1 * box.width, box.x + 0.9 * box.width, count)
    ys = np.linspace(box.y + 0.1 * box.height, box.y + 0.9 * box.height, count)
    keypoints = [Keypoint(float(x), float(y), f"finger_{idx}") for idx, (x, y) in enumerate(zip(xs, ys))]
    return DetectedFace(box=box, keypoints=keypoints, confidence=0.7)


def mesh_face(seed: int = 0, overrides: Optional[Dict[int, Tuple[float, float]]] = None) -> DetectedFace:
    """468-landmark face: anatomical stable points plus seeded filler landmarks."""
    rng = np.random.default_rng(seed)
    xs = rng.uniform(220.0, 420.0, size=468)
    ys = rng.uniform(130.0, 350.0, size=468)
    points = np.stack([xs, ys], axis=1)
    for name, idx in MESH_STABLE_LANDMARKS.items():
        points[idx] = _MESH_STABLE_POSITIONS[name]
    for idx, (x, y) in (overrides or {}).items():
        points[idx] = (x, y)
    keypoints = [Keypoint(float(x), float(y)) for x, y in points]
    x1, y1 = points.min(axis=0)
    x2, y2 = points.max(axis=0)
    return DetectedFace(box=FaceBox(float(x1), float(y1), float(x2 - x1), float(y2 - y1)), keypoints=keypoints)


def random_embedding(dim: int, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return l2_normalize(rng.normal(size=dim)).astype(np.float32)


def near_duplicate(embedding: np.ndarray, cosine: float, seed: int = 1) -> np.ndarray:
    """Unit vector whose cosine similarity to `embedding` is exactly `cosine`."""
    base = l2_normalize(np.asarray(embedding, dtype=np.float64))
    rng = np.random.default_rng(seed)
    noise = rng.normal(size=base.shape)
    noise -= noise.dot(base) * base
    noise = l2_normalize(noise)
    return (cosine * base + np.sqrt(1.0 - cosine * cosine) * noise).astype(np.float32)


def gallery_entry(
    member_id: str,
    embedding: np.ndarray,
    name: Optional[str] = None,
    status: MemberStatus = MemberStatus.ALLOWED,
) -> GalleryEntry:
    return GalleryEntry(member_id=member_id, name=name or member_id, status=status, embedding=embedding)


class StaticDetector:
    """Returns the same detections for every frame."""

    keypoint_count = len(FRONTAL_KEYPOINTS)

    def __init__(self, faces: Sequence[DetectedFace]) -> None:
        self.faces = list(faces)
        self.calls = 0

    def detect(self, frame: np.ndarray) -> List[DetectedFace]:
        self.calls += 1
        return list(self.faces)


class ScriptedDetector:
    """Plays back one detection list per call, then reports no faces."""

    keypoint_count = len(FRONTAL_KEYPOINTS)

    def __init__(self, script: Iterable[Sequence[DetectedFace]]) -> None:
        self._script = [list(faces) for faces in script]
        self.calls = 0

    def detect(self, frame: np.ndarray) -> List[DetectedFace]:
        self.calls += 1
        if self._script:
            return self._script.pop(0)
        return []


class InMemoryGalleryStore:
    """Dict-backed gallery store with change notifications."""

    def __init__(self, galleries: Optional[Dict[str, List[GalleryEntry]]] = None) -> None:
        self.galleries: Dict[str, List[GalleryEntry]] = {k: list(v) for k, v in (galleries or {}).items()}
        self.loads = 0
        self._listeners = []

    def subscribe(self, listener) -> None:
        self._listeners.append(listener)

    def load_gallery(self, organization_id: str) -> List[GalleryEntry]:
        self.loads += 1
        return list(self.galleries.get(organization_id, []))

    def set_gallery(self, organization_id: str, entries: Sequence[GalleryEntry]) -> None:
        self.galleries[organization_id] = list(entries)
        for listener in list(self._listeners):
            listener(organization_id)


class ListFrameSource:
    """cv2.VideoCapture stand-in yielding a fixed number of frames."""

    def __init__(self, frames: Sequence[np.ndarray]) -> None:
        self._frames = list(frames)
        self.released = False

    def read(self) -> Tuple[bool, Optional[np.ndarray]]:
        if self.released or not self._frames:
            return False, None
        return True, self._frames.pop(0)

    def release(self) -> None:
        self.released = True
