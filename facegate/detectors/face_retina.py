"""InsightFace RetinaFace adapter producing five-keypoint detections."""

from __future__ import annotations

import logging
import os
import platform
from typing import List, Optional, Tuple

import numpy as np

from facegate.detectors.base import keypoints_from_landmarks
from facegate.errors import DetectorUnavailableError
from facegate.types import DetectedFace, FaceBox

LOGGER = logging.getLogger("facegate.detectors.retina")

# InsightFace kps order, in image coordinates
RETINA_KEYPOINT_NAMES = ("eye_left", "eye_right", "nose_tip", "mouth_left", "mouth_right")


def _default_providers() -> Tuple[str, ...]:
    """Choose default ONNX providers for RetinaFace."""
    system = platform.system()
    machine = platform.machine().lower()
    if system == "Darwin" and machine in {"arm64", "aarch64"}:
        return ("CoreMLExecutionProvider", "CPUExecutionProvider")
    return ("CPUExecutionProvider",)


class RetinaFaceDetector:
    """Wrapper around the InsightFace detection model returning DetectedFace objects."""

    keypoint_count = len(RETINA_KEYPOINT_NAMES)

    def __init__(
        self,
        providers: Optional[Tuple[str, ...]] = None,
        det_size: Tuple[int, int] = (640, 640),
        det_thresh: float = 0.5,
    ) -> None:
        os.environ.setdefault("OMP_NUM_THREADS", "2")
        os.environ.setdefault("ORT_INTRA_OP_NUM_THREADS", "2")
        try:
            from insightface.app import FaceAnalysis
        except ImportError as exc:  # pragma: no cover - import guard
            raise DetectorUnavailableError(
                "insightface is required for RetinaFaceDetector. "
                "Install it via `pip install facegate[retina]`."
            ) from exc

        self.det_size = det_size
        self.det_thresh = det_thresh
        self.providers = tuple(providers) if providers is not None else _default_providers()
        try:
            self.app = FaceAnalysis(name="buffalo_l", allowed_modules=["detection"], providers=list(self.providers))
            self.app.prepare(ctx_id=0, det_size=self.det_size)
        except Exception as exc:  # pragma: no cover - model download/load
            raise DetectorUnavailableError(f"Unable to load RetinaFace model: {exc}") from exc
        LOGGER.info(
            "Loaded RetinaFace detector det_size=%s det_thresh=%.2f providers=%s",
            det_size,
            det_thresh,
            self.providers,
        )

    def detect(self, frame: np.ndarray) -> List[DetectedFace]:
        """Run RetinaFace on a BGR frame and return faces above the score threshold."""
        faces = self.app.get(frame)
        detections: List[DetectedFace] = []
        for face in faces:
            score = float(face.det_score)
            if score < self.det_thresh:
                continue
            x1, y1, x2, y2 = (float(v) for v in face.bbox)
            keypoints = keypoints_from_landmarks(
                np.asarray(face.kps, dtype=np.float32) if face.kps is not None else None,
                names=RETINA_KEYPOINT_NAMES,
            )
            detections.append(
                DetectedFace(
                    box=FaceBox.from_xyxy((x1, y1, x2, y2)),
                    keypoints=keypoints,
                    confidence=score,
                )
            )
        detections.sort(key=lambda det: det.box.area, reverse=True)
        return detections
