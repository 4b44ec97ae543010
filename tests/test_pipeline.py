"""End-to-end tests for the hybrid recommendation pipeline."""

import logging
import time

import pytest

from recsys.config import PipelineConfig, RecsysConfig
from recsys.data import Item, TrustComponents
from service.recommender import HybridRecommender, ScoringRequest
from service.recommender.strategies import (
    ContentStrategy,
    Strategy,
    StrategyKind,
    StrategyOutcome,
)


def pipeline_config(timeout_ms=5000.0):
    return RecsysConfig(pipeline=PipelineConfig(timeout_ms=timeout_ms, candidate_multiplier=5, max_workers=4))


@pytest.fixture
def recommender(graph, active_registry, embeddings):
    rec = HybridRecommender(graph, active_registry, embeddings, pipeline_config())
    yield rec
    rec.close()


class SlowStrategy(Strategy):
    kind = StrategyKind.GRAPH

    def score(self, ctx):
        time.sleep(1.0)
        return StrategyOutcome.ok(self.kind, [])


class BrokenStrategy(Strategy):
    kind = StrategyKind.COLLABORATIVE

    def score(self, ctx):
        raise RuntimeError("factor matrix unavailable")


class BrokenGraphStrategy(BrokenStrategy):
    kind = StrategyKind.GRAPH


class AbstainingStrategy(Strategy):
    def __init__(self, kind):
        self.kind = kind

    def score(self, ctx):
        return StrategyOutcome.abstain(self.kind, 'nothing to say')


def test_single_interaction_user(recommender):
    response = recommender.recommend(ScoringRequest(user_id='u1', k=5))

    ids = [item.item_id for item in response.items]
    assert 0 < len(ids) <= 5
    assert 'A' not in ids
    assert len(set(ids)) == len(ids)
    assert response.partial is False
    assert response.abstained_strategies == ['collaborative']
    assert response.fallback_method is None
    assert set(response.model_versions) == {'graph'}

    contributors = set()
    for item in response.items:
        contributors.update(item.strategy_contributions)
        assert item.explanation
        assert item.trust_score == pytest.approx(1.0)
    assert contributors <= {'content', 'graph'}
    assert 'content' in contributors and 'graph' in contributors


def test_seen_items_never_returned(recommender, snapshot):
    for user_id in snapshot.user_ids:
        response = recommender.recommend(ScoringRequest(user_id=user_id, k=10))
        seen = {snapshot.item_ids[p] for p in snapshot.user_items(user_id)}
        assert not seen & {item.item_id for item in response.items}


def test_responses_are_deterministic(recommender):
    request = ScoringRequest(user_id='u2', k=4, context={'device': 'mobile'})
    first = recommender.recommend(request)
    second = recommender.recommend(request)
    assert [(i.item_id, i.score) for i in first.items] == [(i.item_id, i.score) for i in second.items]


def test_slow_and_failing_strategies_degrade_the_response(graph, active_registry, embeddings):
    strategies = [BrokenStrategy(), ContentStrategy(embeddings), SlowStrategy()]
    with HybridRecommender(
        graph, active_registry, embeddings, pipeline_config(timeout_ms=100.0), strategies=strategies
    ) as rec:
        start = time.perf_counter()
        response = rec.recommend(ScoringRequest(user_id='u2', k=3))
        elapsed = time.perf_counter() - start

    assert elapsed < 0.9
    assert response.partial is True
    assert sorted(response.degraded_strategies) == ['collaborative', 'graph']
    assert response.items
    assert all(set(item.strategy_contributions) == {'content'} for item in response.items)


def test_failed_strategy_with_abstentions_falls_back_to_popularity(graph, active_registry, embeddings, caplog):
    strategies = [
        AbstainingStrategy(StrategyKind.COLLABORATIVE),
        AbstainingStrategy(StrategyKind.CONTENT),
        BrokenGraphStrategy(),
    ]
    with HybridRecommender(graph, active_registry, embeddings, pipeline_config(), strategies=strategies) as rec:
        with caplog.at_level(logging.INFO, logger='service.recommender'):
            response = rec.recommend(ScoringRequest(user_id='u2', k=3))

    assert response.partial is True
    assert response.degraded_strategies == ['graph']
    assert sorted(response.abstained_strategies) == ['collaborative', 'content']
    assert response.fallback_method == 'popularity'
    assert len(response.items) == 3
    assert not {'A', 'B', 'C'} & {item.item_id for item in response.items}
    partial_logs = [r for r in caplog.records if r.getMessage().startswith('Partial response')]
    assert [r.levelno for r in partial_logs] == [logging.WARNING]


def test_unknown_user_gets_popular_items(recommender):
    response = recommender.recommend(ScoringRequest(user_id='brand-new', k=3))

    assert response.fallback_method == 'popularity'
    assert sorted(response.abstained_strategies) == ['collaborative', 'content', 'graph']
    assert response.partial is False
    assert len(response.items) == 3
    assert all('popularity' in item.strategy_contributions for item in response.items)


def test_all_abstaining_excludes_seen_items(graph, active_registry, embeddings, snapshot):
    strategies = [AbstainingStrategy(kind) for kind in StrategyKind]
    with HybridRecommender(graph, active_registry, embeddings, pipeline_config(), strategies=strategies) as rec:
        response = rec.recommend(ScoringRequest(user_id='u2', k=10))

    ids = [item.item_id for item in response.items]
    assert response.fallback_method == 'popularity'
    assert not {'A', 'B', 'C'} & set(ids)
    assert len(ids) == snapshot.num_items - 3


def test_untrusted_items_are_filtered(graph, active_registry, embeddings):
    graph.add_item(Item(
        'B', tags={'rock', 'indie'}, title='Item B',
        trust=TrustComponents(0.1, 0.1, 0.1, 0.1, 0.1)
    ))
    with HybridRecommender(graph, active_registry, embeddings, pipeline_config()) as rec:
        response = rec.recommend(ScoringRequest(user_id='u1', k=5))

    ids = [item.item_id for item in response.items]
    assert ids
    assert 'B' not in ids
    assert not any(item.low_confidence for item in response.items)


def test_request_validation():
    with pytest.raises(ValueError):
        ScoringRequest(user_id='', k=5)
    with pytest.raises(ValueError):
        ScoringRequest(user_id='u1', k=0)
