import pytest

from facegate.config import QualityConfig
from facegate.quality.scorer import QualityScorer
from facegate.testing import FRAME_HEIGHT, FRAME_WIDTH, frontal_face, mesh_face
from facegate.types import FaceBox


def _score(face, config=None):
    return QualityScorer(config).score(face, FRAME_WIDTH, FRAME_HEIGHT)


def test_centered_face_scores_perfect():
    scorer = QualityScorer()
    assessment = scorer.score(frontal_face(), FRAME_WIDTH, FRAME_HEIGHT)
    assert assessment.is_valid
    assert assessment.score == 1.0
    assert scorer.is_perfect(assessment)
    assert scorer.is_high_quality(assessment)


def test_off_center_face_hard_zero():
    face = frontal_face(dx=180.0)
    assessment = _score(face)
    assert assessment.score == 0.0
    assert not assessment.is_valid
    assert "position" in assessment.reason


def test_too_small_and_too_large_score_zero():
    assert _score(frontal_face(scale=0.5)).score == 0.0
    big = frontal_face()
    big.box = FaceBox(120.0, 40.0, 400.0, 400.0)
    assert _score(big).components["size"] == 0.0


def test_partial_credit_bands():
    face = frontal_face(scale=0.8)  # area ratio ~0.11, between hard-zero and ideal
    assessment = _score(face)
    assert assessment.components["size"] == pytest.approx(0.6)
    assert assessment.score == pytest.approx(1.0 - 0.25 * 0.4)
    assert not QualityScorer().is_perfect(assessment)


def test_keypoint_score_saturates():
    face = frontal_face()
    face.keypoints = face.keypoints[:5]
    assessment = _score(face)
    assert assessment.components["keypoints"] == pytest.approx(5 / 6)
    assert _score(mesh_face()).components["keypoints"] == 1.0


def test_critical_subscores_are_configurable():
    config = QualityConfig(critical=("size",))
    face = frontal_face()
    face.box = FaceBox(175.0, 140.0, 290.0, 200.0)  # aspect 1.45, ideal size
    assessment = _score(face, config)
    assert assessment.components["aspect"] == 0.0
    assert assessment.score == pytest.approx(0.9)


def test_custom_weights_are_normalized():
    config = QualityConfig(size_weight=1.0, position_weight=1.0, keypoints_weight=1.0, edge_weight=1.0, aspect_weight=1.0)
    assert _score(frontal_face(), config).score == pytest.approx(1.0)
