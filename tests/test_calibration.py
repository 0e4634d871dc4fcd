import numpy as np
import pandas as pd
import pytest

from facegate.recognition.calibration import (
    calibrate,
    genuine_rank_gaps,
    pair_scores,
    samples_from_frame,
    threshold_at_far,
)
from facegate.testing import near_duplicate, random_embedding


def _samples(members=3, per_member=4):
    samples = {}
    for m in range(members):
        center = random_embedding(140, seed=m)
        samples[f"m{m}"] = [near_duplicate(center, 0.98, seed=100 * m + i) for i in range(per_member)]
    return samples


def test_pair_scores_label_genuine_and_impostor_pairs():
    labels, scores = pair_scores(_samples())
    assert labels.sum() == 18
    assert (labels == 0).sum() == 48
    assert scores[labels == 1].min() > scores[labels == 0].max()


def test_threshold_separates_clean_populations():
    labels, scores = pair_scores(_samples())
    threshold, far, frr = threshold_at_far(labels, scores, target_far=0.0)
    assert scores[labels == 0].max() < threshold <= 1.0
    assert far == 0.0
    assert frr == 0.0


def test_threshold_requires_both_pair_types():
    with pytest.raises(ValueError):
        threshold_at_far(np.ones(3, dtype=np.int32), np.array([0.9, 0.8, 0.95]), 0.01)


def test_rank_gaps_are_positive_for_separated_members():
    gaps = genuine_rank_gaps(_samples())
    assert gaps.shape == (12,)
    assert (gaps > 0).all()


def test_calibrate_report():
    report = calibrate(_samples(), target_far=0.001)
    assert report.genuine_pairs == 18
    assert report.impostor_pairs == 48
    assert report.gap_probes == 12
    assert 0.0 < report.min_gap <= 0.5
    assert report.achieved_far <= 0.001


def test_samples_from_frame_groups_and_skips_empty():
    df = pd.DataFrame(
        {
            "member_id": ["a", "a", "b", "c"],
            "embedding": [[1.0, 0.0], [0.9, 0.1], [0.0, 1.0], []],
        }
    )
    samples = samples_from_frame(df)
    assert sorted(samples) == ["a", "b"]
    assert len(samples["a"]) == 2
    assert samples["b"][0].dtype == np.float32
