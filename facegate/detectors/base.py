"""Detector protocol, keypoint adapters and a latency-bounded detector wrapper."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, List, Mapping, Optional, Protocol, Sequence

import numpy as np

from facegate.types import DetectedFace, FaceBox, Keypoint

LOGGER = logging.getLogger("facegate.detectors")


class FaceDetector(Protocol):
    keypoint_count: int

    def detect(self, frame: np.ndarray) -> List[DetectedFace]:
        ...


def keypoints_from_landmarks(landmarks: Any, names: Optional[Sequence[str]] = None) -> List[Keypoint]:
    """Normalize detector landmark payloads into Keypoint objects.

    Accepts an (N, 2+) array, a sequence of (x, y[, z]) tuples, or a sequence of
    mappings with ``x``/``y`` keys.
    """
    if landmarks is None:
        return []
    keypoints: List[Keypoint] = []
    for idx, point in enumerate(landmarks):
        name = names[idx] if names is not None and idx < len(names) else None
        if isinstance(point, Mapping):
            x, y = point["x"], point["y"]
            name = point.get("name", name)
        else:
            coords = np.asarray(point, dtype=np.float64).reshape(-1)
            if coords.size < 2:
                raise ValueError(f"Landmark {idx} has fewer than two coordinates")
            x, y = coords[0], coords[1]
        keypoints.append(Keypoint(float(x), float(y), name))
    return keypoints


def box_from_keypoints(keypoints: Sequence[Keypoint]) -> FaceBox:
    xs = [kp.x for kp in keypoints]
    ys = [kp.y for kp in keypoints]
    if not xs:
        return FaceBox(0.0, 0.0, 0.0, 0.0)
    return FaceBox(min(xs), min(ys), max(xs) - min(xs), max(ys) - min(ys))


class BoundedDetector:
    """Runs a detector on a worker thread and bounds how long a frame waits for it.

    A call that exceeds ``timeout`` yields no faces; its eventual result is
    discarded. While a timed-out call is still running, new frames are not
    queued behind it and also yield no faces.
    """

    def __init__(self, detector: FaceDetector, timeout: float = 1.0) -> None:
        self.detector = detector
        self.timeout = timeout
        self.keypoint_count = getattr(detector, "keypoint_count", 0)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="face-detector")
        self._pending: Optional[Future] = None
        self._lock = threading.Lock()
        self.timeouts = 0

    def detect(self, frame: np.ndarray) -> List[DetectedFace]:
        with self._lock:
            if self._pending is not None and not self._pending.done():
                LOGGER.debug("Detector still busy with a previous frame; skipping")
                return []
            future = self._executor.submit(self.detector.detect, frame)
            self._pending = future
        try:
            faces = future.result(timeout=self.timeout)
        except FutureTimeoutError:
            self.timeouts += 1
            LOGGER.warning("Detector exceeded %.2fs; treating frame as no face", self.timeout)
            return []
        except Exception:
            LOGGER.warning("Detector raised; treating frame as no face", exc_info=True)
            return []
        return list(faces or [])

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        close = getattr(self.detector, "close", None)
        if callable(close):
            close()
