"""Tests for reciprocal rank fusion and MMR re-ranking."""

import pytest

from recsys.config import FusionConfig
from service.recommender.fusion import FusedCandidate, FusionEngine, jaccard, normalize_weights
from service.recommender.strategies import Candidate, StrategyKind, StrategyOutcome


def ranked(kind, item_ids):
    return StrategyOutcome.ok(
        kind,
        [Candidate(item_id=i, score=1.0 / r, rank=r) for r, i in enumerate(item_ids, start=1)]
    )


def test_normalize_weights_over_present_strategies():
    weights = {'collaborative': 0.35, 'content': 0.25, 'graph': 0.30, 'context': 0.10}
    norm = normalize_weights(weights, ['content', 'graph'])
    assert set(norm) == {'content', 'graph'}
    assert sum(norm.values()) == pytest.approx(1.0)
    assert norm['graph'] == pytest.approx(0.30 / 0.55)


def test_normalize_weights_all_zero_is_uniform():
    norm = normalize_weights({'content': 0.0}, ['content', 'graph'])
    assert norm == {'content': 0.5, 'graph': 0.5}


def test_rrf_scores_and_order():
    engine = FusionEngine(FusionConfig(k_smooth=60))
    fused = engine.reciprocal_rank_fusion([
        ranked(StrategyKind.COLLABORATIVE, ['x', 'y']),
        ranked(StrategyKind.CONTENT, ['y', 'x', 'z']),
    ])
    w_cf, w_cb = 0.35 / 0.60, 0.25 / 0.60

    by_id = {c.item_id: c for c in fused}
    assert by_id['x'].score == pytest.approx(w_cf / 61 + w_cb / 62)
    assert by_id['y'].score == pytest.approx(w_cf / 62 + w_cb / 61)
    assert by_id['z'].score == pytest.approx(w_cb / 63)
    assert by_id['z'].contributions == {'content': pytest.approx(w_cb / 63)}
    assert [c.item_id for c in fused] == ['x', 'y', 'z']


def test_rrf_ignores_abstain_and_partial():
    engine = FusionEngine()
    fused = engine.reciprocal_rank_fusion([
        StrategyOutcome.abstain(StrategyKind.COLLABORATIVE, 'cold start'),
        StrategyOutcome.partial(StrategyKind.GRAPH, 'timeout'),
        ranked(StrategyKind.CONTENT, ['a', 'b']),
    ])
    assert [c.item_id for c in fused] == ['a', 'b']
    # the only answering strategy carries the full weight
    assert fused[0].score == pytest.approx(1.0 / 61)
    assert set(fused[0].contributions) == {'content'}


def test_rrf_ties_break_by_item_id():
    engine = FusionEngine(FusionConfig(weights={'collaborative': 0.5, 'content': 0.5}))
    fused = engine.reciprocal_rank_fusion([
        ranked(StrategyKind.COLLABORATIVE, ['m', 'k']),
        ranked(StrategyKind.CONTENT, ['k', 'm']),
    ])
    assert fused[0].score == pytest.approx(fused[1].score)
    assert [c.item_id for c in fused] == ['k', 'm']


def test_rrf_empty_when_nothing_answers():
    assert FusionEngine().reciprocal_rank_fusion([]) == []


def test_jaccard():
    assert jaccard(frozenset({'a', 'b'}), frozenset({'b', 'c'})) == pytest.approx(1 / 3)
    assert jaccard(frozenset(), frozenset()) == 0.0


def _pool():
    return [
        FusedCandidate(item_id='a', score=1.0),
        FusedCandidate(item_id='b', score=0.9),
        FusedCandidate(item_id='c', score=0.8),
    ]


TAGS = {'a': frozenset({'rock'}), 'b': frozenset({'rock'}), 'c': frozenset({'jazz'})}


def test_mmr_lambda_one_keeps_fused_order():
    engine = FusionEngine()
    page = engine.mmr_rerank(_pool(), TAGS.get, k=3, mmr_lambda=1.0)
    assert [c.item_id for c in page] == ['a', 'b', 'c']


def test_mmr_promotes_diverse_items():
    engine = FusionEngine()
    page = engine.mmr_rerank(_pool(), TAGS.get, k=3, mmr_lambda=0.5)
    assert [c.item_id for c in page] == ['a', 'c', 'b']


def test_mmr_truncates_to_k_without_duplicates():
    engine = FusionEngine()
    page = engine.mmr_rerank(_pool() + [FusedCandidate(item_id='a', score=0.1)], TAGS.get, k=10)
    ids = [c.item_id for c in page]
    assert len(ids) == len(set(ids)) == 3
    assert engine.mmr_rerank(_pool(), TAGS.get, k=2, mmr_lambda=1.0)[-1].item_id == 'b'
