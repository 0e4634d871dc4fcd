"""Keypoint geometry helpers shared by the validator, scorer and embedder."""

from __future__ import annotations

import math
from typing import Tuple

import numpy as np

from facegate.types import FaceBox, Point


def keypoint_center(points: np.ndarray) -> Point:
    """Mean position of the keypoints."""
    if len(points) == 0:
        return 0.0, 0.0
    center = points.mean(axis=0)
    return float(center[0]), float(center[1])


def keypoint_extent(points: np.ndarray) -> Tuple[float, float]:
    """Width and height of the keypoints' bounding rectangle."""
    if len(points) == 0:
        return 0.0, 0.0
    span = points.max(axis=0) - points.min(axis=0)
    return float(span[0]), float(span[1])


def keypoint_spread(points: np.ndarray, box: FaceBox) -> Tuple[float, float]:
    """Fraction of the face box covered by the keypoints along x and y."""
    width, height = keypoint_extent(points)
    x_spread = width / box.width if box.width > 0 else 0.0
    y_spread = height / box.height if box.height > 0 else 0.0
    return x_spread, y_spread


def bilateral_counts(points: np.ndarray, box: FaceBox) -> Tuple[int, int]:
    """Count keypoints strictly left and strictly right of the box center."""
    cx, _ = box.center
    xs = points[:, 0] if len(points) else np.zeros(0)
    return int(np.sum(xs < cx)), int(np.sum(xs > cx))


def vertical_thirds(points: np.ndarray, box: FaceBox) -> Tuple[int, int, int]:
    """Keypoint counts in the upper, middle and lower thirds of the face box."""
    if len(points) == 0 or box.height <= 0:
        return 0, 0, 0
    third = box.height / 3.0
    ys = points[:, 1]
    upper = int(np.sum(ys < box.y + third))
    lower = int(np.sum(ys >= box.y + 2.0 * third))
    middle = len(ys) - upper - lower
    return upper, middle, lower


def linear_fraction(points: np.ndarray, tolerance: float) -> float:
    """Share of keypoints lying within `tolerance` pixels of their principal line.

    Fits the dominant axis via SVD of the centered points and measures each
    point's perpendicular distance to it. Close to 1.0 for finger-like rows.
    """
    if len(points) < 3:
        return 0.0
    centered = points - points.mean(axis=0)
    _, _, vt = np.linalg.svd(centered, full_matrices=False)
    normal = vt[-1]
    residuals = np.abs(centered @ normal)
    return float(np.mean(residuals <= tolerance))


def frame_center_offset(box: FaceBox, frame_width: float, frame_height: float) -> float:
    """Distance of the box center from the frame center, normalized to [0, 1]."""
    half_w = frame_width / 2.0
    half_h = frame_height / 2.0
    max_distance = math.hypot(half_w, half_h)
    if max_distance <= 0:
        return 1.0
    cx, cy = box.center
    return math.hypot(cx - half_w, cy - half_h) / max_distance


def edge_clearance(box: FaceBox, frame_width: float, frame_height: float) -> float:
    """Smallest distance between the box and any frame edge (negative when clipped)."""
    return min(box.x, box.y, frame_width - box.x2, frame_height - box.y2)


def touches_edge(box: FaceBox, frame_width: float, frame_height: float, margin: float) -> bool:
    return edge_clearance(box, frame_width, frame_height) < margin


def frame_area_ratio(box: FaceBox, frame_width: float, frame_height: float) -> float:
    frame_area = frame_width * frame_height
    if frame_area <= 0:
        return 0.0
    return box.area / frame_area


def triangle_angle(a: np.ndarray, b: np.ndarray, c: np.ndarray) -> float:
    """Angle at vertex `b` of triangle abc, in radians."""
    v1 = a - b
    v2 = c - b
    n1 = float(np.linalg.norm(v1))
    n2 = float(np.linalg.norm(v2))
    if n1 == 0.0 or n2 == 0.0:
        return 0.0
    cos_angle = float(np.dot(v1, v2)) / (n1 * n2)
    return math.acos(max(-1.0, min(1.0, cos_angle)))
