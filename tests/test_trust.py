"""Tests for trust scoring and the trust filter."""

import pytest

from recsys.config import TrustConfig
from recsys.data import TrustComponents
from service.recommender.fusion import FusedCandidate
from service.recommender.trust import TrustFilter, trust_score

WEIGHTS = TrustConfig().component_weights


def test_full_trust_is_one():
    assert trust_score(TrustComponents(), WEIGHTS) == pytest.approx(1.0)


def test_trust_decays_with_verification_age():
    comps = TrustComponents(days_since_verification=10)
    assert trust_score(comps, WEIGHTS, decay_per_day=0.01) == pytest.approx(0.9)


def test_trust_never_negative():
    comps = TrustComponents(days_since_verification=500)
    assert trust_score(comps, WEIGHTS) == 0.0


def test_weighted_components():
    comps = TrustComponents(
        source_reliability=1.0,
        metadata_accuracy=0.0,
        availability_confidence=0.0,
        recommendation_quality=0.0,
        user_preference_confidence=0.0,
    )
    assert trust_score(comps, WEIGHTS) == pytest.approx(WEIGHTS['source_reliability'])


def _uniform(level, days=0.0):
    return TrustComponents(level, level, level, level, level, days)


def test_filter_drops_low_trust_items():
    trust = {'a': _uniform(0.9), 'b': _uniform(0.3), 'c': _uniform(0.7)}
    candidates = [FusedCandidate(item_id=i, score=1.0) for i in ('a', 'b', 'c')]

    kept, low_confidence = TrustFilter(TrustConfig(threshold=0.6)).apply(candidates, trust.get)

    assert [c.item_id for c in kept] == ['a', 'c']
    assert not low_confidence
    assert kept[0].trust_score == pytest.approx(0.9)
    assert not any(c.low_confidence for c in kept)


def test_all_below_threshold_keeps_single_highest_trust_item():
    levels = [0.10, 0.25, 0.50, 0.12, 0.55, 0.30, 0.05, 0.40, 0.20, 0.33]
    trust = {f'item{i}': _uniform(level) for i, level in enumerate(levels)}
    candidates = [FusedCandidate(item_id=f'item{i}', score=1.0 - i / 10) for i in range(10)]

    kept, low_confidence = TrustFilter(TrustConfig(threshold=0.6)).apply(candidates, trust.get)

    assert low_confidence
    assert len(kept) == 1
    assert kept[0].item_id == 'item4'
    assert kept[0].low_confidence
    assert kept[0].trust_score == pytest.approx(0.55)


def test_ties_below_threshold_keep_first_in_rank_order():
    trust = {'x': _uniform(0.4), 'y': _uniform(0.4)}
    candidates = [FusedCandidate(item_id='y', score=2.0), FusedCandidate(item_id='x', score=1.0)]
    kept, _ = TrustFilter().apply(candidates, trust.get)
    assert [c.item_id for c in kept] == ['y']


def test_empty_input():
    assert TrustFilter().apply([], lambda i: TrustComponents()) == ([], False)
