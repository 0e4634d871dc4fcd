import numpy as np
import pytest

from facegate.config import MatchConfig
from facegate.recognition.matcher import MatchDecider
from facegate.testing import gallery_entry, near_duplicate, random_embedding
from facegate.types import MemberStatus

DIM = 140


def test_identical_probe_matches():
    e1 = random_embedding(DIM, seed=1)
    gallery = [gallery_entry("m1", e1, status=MemberStatus.ALLOWED)]
    result = MatchDecider().match(e1.copy(), gallery)
    assert result.matched
    assert result.member_id == "m1"
    assert result.status is MemberStatus.ALLOWED
    assert result.confidence == pytest.approx(1.0, abs=1e-6)
    assert result.runner_up_score == 0.0
    assert result.reason == "accepted"


def test_unrelated_probe_is_rejected():
    gallery = [gallery_entry("m1", random_embedding(DIM, seed=1))]
    result = MatchDecider().match(random_embedding(DIM, seed=2), gallery)
    assert not result.matched
    assert result.member_id is None
    assert result.reason == "below_threshold"
    assert result.best_score < 0.9


def test_near_duplicate_members_are_ambiguous():
    e1 = random_embedding(DIM, seed=1)
    e2 = near_duplicate(e1, 0.97, seed=5)
    gallery = [gallery_entry("m1", e1), gallery_entry("m2", e2)]

    strict = MatchDecider(MatchConfig(min_gap=0.10)).match(e1, gallery)
    assert not strict.matched
    assert strict.reason == "ambiguous"
    assert strict.best_score >= 0.9
    assert strict.runner_up_score >= 0.9
    assert strict.gap < 0.10

    relaxed = MatchDecider(MatchConfig(min_gap=0.05)).match(e1, gallery)
    assert relaxed.matched
    assert relaxed.member_id == "m1"


def test_empty_inputs_are_rejected():
    decider = MatchDecider()
    e1 = random_embedding(DIM)
    assert decider.match(e1, []).reason == "empty_gallery"
    empty = decider.match(np.zeros(0, dtype=np.float32), [gallery_entry("m1", e1)])
    assert not empty.matched
    assert empty.reason == "empty_probe"


def test_length_mismatch_never_matches():
    gallery = [gallery_entry("m1", random_embedding(80, seed=1))]
    result = MatchDecider().match(random_embedding(DIM, seed=1), gallery)
    assert not result.matched
    assert result.best_score == 0.0


def test_threshold_is_monotone():
    e1 = random_embedding(DIM, seed=1)
    gallery = [gallery_entry("m1", e1), gallery_entry("m2", random_embedding(DIM, seed=9))]
    decider = MatchDecider()
    for cosine in (0.99, 0.95, 0.9, 0.8):
        probe = near_duplicate(e1, cosine, seed=3)
        outcomes = [decider.match(probe, gallery, threshold=t).matched for t in np.linspace(0.5, 0.99, 50)]
        # once rejected, a higher threshold never accepts again
        first_reject = outcomes.index(False) if False in outcomes else len(outcomes)
        assert not any(outcomes[first_reject:])


def test_adaptive_relaxation():
    decider = MatchDecider()
    assert decider.effective_threshold(0.90, best=0.88, gap=0.20) == pytest.approx(0.85)
    assert decider.effective_threshold(0.90, best=0.88, gap=0.05) == pytest.approx(0.90)
    assert decider.effective_threshold(0.90, best=0.80, gap=0.20) == pytest.approx(0.90)
    assert decider.effective_threshold(0.72, best=0.95, gap=0.30) == pytest.approx(0.70)
    assert decider.effective_threshold(0.65, best=0.95, gap=0.30) == pytest.approx(0.65)
    fixed = MatchDecider(MatchConfig(adaptive=False))
    assert fixed.effective_threshold(0.90, best=0.88, gap=0.20) == pytest.approx(0.90)


def test_topk_orders_by_score():
    e1 = random_embedding(DIM, seed=1)
    gallery = [
        gallery_entry("far", random_embedding(DIM, seed=7)),
        gallery_entry("exact", e1),
        gallery_entry("close", near_duplicate(e1, 0.9, seed=2)),
    ]
    ranked = MatchDecider().topk(e1, gallery, k=2)
    assert [member for member, _ in ranked] == ["exact", "close"]
    assert ranked[0][1] >= ranked[1][1]
