import math

import numpy as np
import pytest

from facegate import geometry
from facegate.testing import FRONTAL_BOX, frontal_face, hand_detection
from facegate.types import FaceBox


def test_keypoint_center_and_extent():
    points = np.array([[0.0, 0.0], [10.0, 0.0], [10.0, 20.0], [0.0, 20.0]])
    assert geometry.keypoint_center(points) == (5.0, 10.0)
    assert geometry.keypoint_extent(points) == (10.0, 20.0)


def test_empty_points_are_safe():
    empty = np.zeros((0, 2))
    assert geometry.keypoint_center(empty) == (0.0, 0.0)
    assert geometry.keypoint_extent(empty) == (0.0, 0.0)
    assert geometry.vertical_thirds(empty, FRONTAL_BOX) == (0, 0, 0)
    assert geometry.linear_fraction(empty, 5.0) == 0.0


def test_vertical_thirds_counts_frontal_face():
    face = frontal_face()
    upper, middle, lower = geometry.vertical_thirds(face.points(), face.box)
    assert (upper, middle, lower) == (2, 3, 1)


def test_linear_fraction_separates_hand_from_face():
    tol = 0.05 * math.hypot(FRONTAL_BOX.width, FRONTAL_BOX.height)
    assert geometry.linear_fraction(hand_detection().points(), tol) == pytest.approx(1.0)
    assert geometry.linear_fraction(frontal_face().points(), tol) == pytest.approx(0.0)


def test_frame_center_offset_and_edges():
    centered = FaceBox(270.0, 190.0, 100.0, 100.0)
    assert geometry.frame_center_offset(centered, 640, 480) == pytest.approx(0.0)
    corner = FaceBox(0.0, 0.0, 10.0, 10.0)
    assert geometry.frame_center_offset(corner, 640, 480) > 0.9
    assert geometry.touches_edge(corner, 640, 480, margin=5)
    assert not geometry.touches_edge(centered, 640, 480, margin=20)


def test_triangle_angle_right_angle():
    angle = geometry.triangle_angle(np.array([1.0, 0.0]), np.array([0.0, 0.0]), np.array([0.0, 1.0]))
    assert angle == pytest.approx(math.pi / 2)
