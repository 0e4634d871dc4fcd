"""MediaPipe FaceMesh adapter producing 468-landmark detections."""

from __future__ import annotations

import logging
from typing import List

import cv2
import numpy as np

from facegate.detectors.base import box_from_keypoints
from facegate.errors import DetectorUnavailableError
from facegate.recognition.embedder import MESH_STABLE_LANDMARKS
from facegate.types import DetectedFace, Keypoint

LOGGER = logging.getLogger("facegate.detectors.mesh")

_LANDMARK_NAMES = {idx: name for name, idx in MESH_STABLE_LANDMARKS.items()}


class FaceMeshDetector:
    """Dense-mesh detector; frames are BGR as delivered by OpenCV."""

    keypoint_count = 468

    def __init__(
        self,
        max_faces: int = 1,
        min_detection_confidence: float = 0.5,
        min_tracking_confidence: float = 0.5,
    ) -> None:
        try:
            import mediapipe as mp
        except ImportError as exc:  # pragma: no cover - import guard
            raise DetectorUnavailableError(
                "mediapipe is required for FaceMeshDetector. "
                "Install it via `pip install facegate[mesh]`."
            ) from exc
        try:
            self.mesh = mp.solutions.face_mesh.FaceMesh(
                static_image_mode=False,
                max_num_faces=max_faces,
                refine_landmarks=False,
                min_detection_confidence=min_detection_confidence,
                min_tracking_confidence=min_tracking_confidence,
            )
        except Exception as exc:  # pragma: no cover - model load
            raise DetectorUnavailableError(f"Unable to initialise FaceMesh: {exc}") from exc
        LOGGER.info("Loaded FaceMesh detector max_faces=%d", max_faces)

    def detect(self, frame: np.ndarray) -> List[DetectedFace]:
        height, width = frame.shape[:2]
        results = self.mesh.process(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))
        faces: List[DetectedFace] = []
        for landmarks in results.multi_face_landmarks or []:
            keypoints = [
                Keypoint(lm.x * width, lm.y * height, _LANDMARK_NAMES.get(idx))
                for idx, lm in enumerate(landmarks.landmark)
            ]
            faces.append(DetectedFace(box=box_from_keypoints(keypoints), keypoints=keypoints, confidence=1.0))
        return faces

    def close(self) -> None:
        self.mesh.close()
