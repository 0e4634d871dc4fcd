import numpy as np
import pytest

from facegate.config import EmbeddingConfig
from facegate.recognition.embedder import (
    MESH_EMBEDDING_DIM,
    MESH_EXPRESSION_LANDMARKS,
    MESH_STABLE_LANDMARKS,
    EmbeddingGenerator,
    embedding_dimension,
    mean_embedding,
)
from facegate.testing import frontal_face, mesh_face
from facegate.types import DetectedFace


def test_generate_is_deterministic():
    embedder = EmbeddingGenerator()
    face = frontal_face(jitter=2.0, seed=3)
    first = embedder.generate(face)
    second = embedder.generate(face)
    assert first.dtype == np.float32
    np.testing.assert_array_equal(first, second)


def test_six_keypoint_dimension():
    embedder = EmbeddingGenerator()
    embedding = embedder.generate(frontal_face())
    assert embedding_dimension(6) == 140
    assert embedding_dimension(5) == 91
    assert embedder.dimension == 140
    assert embedding.shape == (140,)
    assert embedding_dimension(6, include_angles=False) == 80
    no_angles = EmbeddingGenerator(EmbeddingConfig(include_angles=False)).generate(frontal_face())
    assert no_angles.shape == (80,)


def test_embedding_is_unit_length():
    embedding = EmbeddingGenerator().generate(frontal_face())
    assert np.linalg.norm(embedding) == pytest.approx(1.0, abs=1e-5)


def test_missing_or_miscounted_keypoints_give_empty():
    embedder = EmbeddingGenerator()
    face = frontal_face()
    empty = DetectedFace(box=face.box, keypoints=[])
    assert embedder.generate(empty).size == 0
    face.keypoints = face.keypoints[:5]
    assert embedder.generate(face).size == 0


def test_translation_and_scale_invariance():
    embedder = EmbeddingGenerator()
    base = embedder.generate(frontal_face())
    shifted = embedder.generate(frontal_face(dx=40.0, dy=-25.0))
    scaled = embedder.generate(frontal_face(scale=0.8))
    np.testing.assert_allclose(base, shifted, atol=1e-5)
    np.testing.assert_allclose(base, scaled, atol=1e-5)


def test_different_geometry_changes_embedding():
    embedder = EmbeddingGenerator()
    base = embedder.generate(frontal_face())
    other = embedder.generate(frontal_face(jitter=8.0, seed=11))
    assert not np.allclose(base, other)


def test_mesh_embedding_dimension():
    embedding = EmbeddingGenerator().generate(mesh_face())
    assert embedding.shape == (MESH_EMBEDDING_DIM,)
    assert np.linalg.norm(embedding) == pytest.approx(1.0, abs=1e-5)


def test_expression_landmarks_are_not_identity_landmarks():
    assert set(MESH_EXPRESSION_LANDMARKS).isdisjoint(MESH_STABLE_LANDMARKS.values())


def test_mesh_embedding_ignores_expression_landmarks():
    embedder = EmbeddingGenerator()
    neutral = embedder.generate(mesh_face(seed=2))
    # lips and eyelids moved across the face, inside the landmark area
    rng = np.random.default_rng(9)
    moved = {
        idx: (float(rng.uniform(230.0, 410.0)), float(rng.uniform(140.0, 340.0)))
        for idx in MESH_EXPRESSION_LANDMARKS
    }
    expressive = embedder.generate(mesh_face(seed=2, overrides=moved))
    np.testing.assert_allclose(neutral, expressive, atol=1e-6)


def test_mean_embedding_is_normalized_centroid():
    a = np.array([1.0, 0.0, 0.0], dtype=np.float32)
    b = np.array([0.0, 1.0, 0.0], dtype=np.float32)
    centroid = mean_embedding([a, b, np.zeros(0, dtype=np.float32)])
    np.testing.assert_allclose(centroid, [np.sqrt(0.5), np.sqrt(0.5), 0.0], atol=1e-6)
    assert mean_embedding([]).size == 0
    with pytest.raises(ValueError):
        mean_embedding([a, np.ones(4, dtype=np.float32)])
