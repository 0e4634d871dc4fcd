import dataclasses

from facegate.config import ValidatorConfig
from facegate.quality.validator import MESH_REGION_MINIMUMS, MESH_REGIONS, FaceValidator, validate_mesh_visibility
from facegate.testing import FRAME_HEIGHT, FRAME_WIDTH, frontal_face, hand_detection, mesh_face
from facegate.types import DetectedFace, FaceBox, Keypoint


def _validate(face, config=None):
    return FaceValidator(config).validate(face, FRAME_WIDTH, FRAME_HEIGHT)


def test_frontal_face_passes_lenient_and_strict():
    face = frontal_face()
    assert _validate(face).is_valid
    assert _validate(face, ValidatorConfig.strict()).is_valid


def test_collinear_hand_is_rejected():
    result = _validate(hand_detection())
    assert not result.is_valid
    assert "linear" in result.reason


def test_too_few_keypoints_rejected():
    face = frontal_face()
    face.keypoints = face.keypoints[:3]
    result = _validate(face)
    assert not result.is_valid
    assert "insufficient keypoints" in result.reason


def test_clustered_keypoints_rejected():
    box = FaceBox(210.0, 120.0, 220.0, 240.0)
    keypoints = [
        Keypoint(300.0, 200.0),
        Keypoint(310.0, 205.0),
        Keypoint(325.0, 210.0),
        Keypoint(330.0, 215.0),
        Keypoint(315.0, 220.0),
    ]
    result = _validate(DetectedFace(box=box, keypoints=keypoints))
    assert not result.is_valid
    assert "clustered" in result.reason


def test_one_sided_keypoints_rejected():
    face = frontal_face()
    face.keypoints = [kp for kp in face.keypoints if kp.x <= 320.0]
    face.keypoints.append(Keypoint(250.0, 300.0))
    result = _validate(face)
    assert not result.is_valid
    assert "both sides" in result.reason


def test_single_vertical_band_rejected():
    # wide spread sideways, but every point falls in the upper third of a tall box
    box = FaceBox(210.0, 120.0, 220.0, 240.0)
    keypoints = [
        Keypoint(230.0, 121.0),
        Keypoint(410.0, 121.0),
        Keypoint(250.0, 199.0),
        Keypoint(390.0, 199.0),
        Keypoint(320.0, 150.0),
        Keypoint(300.0, 170.0),
    ]
    result = _validate(DetectedFace(box=box, keypoints=keypoints))
    assert not result.is_valid
    assert "one vertical band" in result.reason


def test_edge_clipped_face_rejected():
    face = frontal_face(dx=-208.0)
    result = _validate(face)
    assert not result.is_valid
    assert "edge" in result.reason


def test_aspect_ratio_modes():
    face = frontal_face()
    face.box = dataclasses.replace(face.box, x=175.0, width=290.0)  # aspect ~1.21
    assert _validate(face).is_valid
    wide = frontal_face()
    wide.box = dataclasses.replace(wide.box, x=150.0, width=340.0)  # aspect ~1.42
    assert _validate(wide).is_valid
    assert not _validate(wide, ValidatorConfig.strict()).is_valid


def test_tiny_face_rejected():
    face = frontal_face(scale=0.05)
    result = _validate(face)
    assert not result.is_valid


def test_mesh_face_passes_visibility():
    face = mesh_face()
    assert face.is_mesh
    assert _validate(face).is_valid


def test_mesh_with_hidden_eye_rejected():
    hidden = {idx: (5.0, 5.0) for idx in (362, 382, 381, 380, 374, 373, 390, 249)}
    face = mesh_face(overrides=hidden)
    face.box = mesh_face().box
    result = validate_mesh_visibility(face)
    assert not result.is_valid
    assert "right_eye" in result.reason


def test_mesh_regions_list_each_landmark_once():
    for name, indices in MESH_REGIONS.items():
        assert len(set(indices)) == len(indices), name
        assert MESH_REGION_MINIMUMS[name] <= len(indices)
