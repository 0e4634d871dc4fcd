import numpy as np
import pytest

from facegate.config import SimilarityConfig
from facegate.recognition.similarity import SimilarityEngine, pearson_correlation
from facegate.testing import random_embedding


def test_similarity_is_symmetric():
    engine = SimilarityEngine()
    for seed in range(5):
        a = random_embedding(140, seed=seed)
        b = random_embedding(140, seed=seed + 100)
        assert engine.similarity(a, b) == pytest.approx(engine.similarity(b, a), abs=1e-12)


def test_self_similarity_is_one():
    engine = SimilarityEngine()
    a = random_embedding(140, seed=4)
    assert engine.similarity(a, a) == pytest.approx(1.0, abs=1e-6)


def test_bad_inputs_score_zero():
    engine = SimilarityEngine()
    a = random_embedding(140)
    assert engine.similarity(a, random_embedding(80)) == 0.0
    assert engine.similarity(a, np.zeros(0, dtype=np.float32)) == 0.0
    assert engine.similarity(a, np.zeros(140, dtype=np.float32)) == 0.0
    broken = a.copy()
    broken[3] = np.nan
    assert engine.similarity(a, broken) == 0.0


def test_scores_are_clamped_to_unit_interval():
    engine = SimilarityEngine()
    a = random_embedding(64, seed=1)
    for other in (-a, random_embedding(64, seed=2), a * 3.0):
        score = engine.similarity(a, other)
        assert 0.0 <= score <= 1.0


def test_constant_vector_drops_correlation_term():
    engine = SimilarityEngine(SimilarityConfig(pose_check=False))
    a = np.ones(10)
    b = np.arange(1.0, 11.0)
    assert pearson_correlation(a, b) is None
    breakdown = engine.compare(a, b)
    assert breakdown.pearson is None
    expected = (0.5 * breakdown.cosine + 0.3 * breakdown.euclidean) / 0.8
    assert breakdown.combined == pytest.approx(expected)


def test_pose_mismatch_is_penalized():
    a = np.arange(1.0, 9.0)
    b = np.array([-1.0, -2.0, -3.0, -4.0, 5.0, 6.0, 7.0, 8.0])
    checked = SimilarityEngine(SimilarityConfig(pose_slice=4))
    unchecked = SimilarityEngine(SimilarityConfig(pose_slice=4, pose_check=False))
    breakdown = checked.compare(a, b)
    assert not breakdown.pose_consistent
    assert breakdown.combined == pytest.approx(0.5 * unchecked.similarity(a, b))
