"""Tests for the content-based strategy."""

import numpy as np
import pytest

from recsys.config import ContentConfig
from service.recommender.strategies import ContentStrategy, StrategyStatus

from conftest import make_context


def test_single_interaction_user_gets_nearest_items(embeddings, graph, snapshot):
    strategy = ContentStrategy(embeddings, ContentConfig())
    outcome = strategy.score(make_context(snapshot, graph, 'u1', limit=5))

    assert outcome.status == StrategyStatus.OK
    ids = [c.item_id for c in outcome.candidates]
    assert 'A' not in ids
    assert ids[0] == 'B'
    top = outcome.candidates[0]
    assert top.evidence.relation == 'content_similar'
    assert top.evidence.path == ('u1', 'A', 'B')
    assert top.score == pytest.approx(top.evidence.strength, abs=1e-5)


def test_scores_are_cosine_similarities(embeddings, graph, snapshot):
    outcome = ContentStrategy(embeddings).score(make_context(snapshot, graph, 'u4'))
    assert all(-1.0 - 1e-6 <= c.score <= 1.0 + 1e-6 for c in outcome.candidates)


def test_user_without_history_abstains(embeddings, graph, snapshot):
    outcome = ContentStrategy(embeddings).score(make_context(snapshot, graph, 'nobody'))
    assert outcome.status == StrategyStatus.ABSTAIN


def test_history_without_embeddings_abstains(graph, snapshot):
    from recsys.data import EmbeddingStore
    empty = EmbeddingStore(dims={'item': 8})
    outcome = ContentStrategy(empty).score(make_context(snapshot, graph, 'u2'))
    assert outcome.status == StrategyStatus.ABSTAIN


def test_recent_highly_rated_items_dominate(embeddings, graph, snapshot):
    strategy = ContentStrategy(embeddings, ContentConfig(recency_half_life_days=1.0))
    user, history_ids, _ = strategy.user_vector(make_context(snapshot, graph, 'u3'))
    assert history_ids == ['A', 'B', 'D']
    assert np.linalg.norm(user) == pytest.approx(1.0)
    # D is oldest and lowest rated; the preference leans towards A/B
    a = embeddings.get('item', 'A').astype(np.float64)
    d = embeddings.get('item', 'D').astype(np.float64)
    assert user @ (a / np.linalg.norm(a)) > user @ (d / np.linalg.norm(d))


def test_taxonomy_blend_changes_user_vector(embeddings, graph, snapshot):
    plain, _, _ = ContentStrategy(embeddings).user_vector(make_context(snapshot, graph, 'u1'))
    rng = np.random.default_rng(11)
    for tag in ('rock', 'indie'):
        embeddings.put('taxonomy', tag, rng.normal(size=8))
    blended, _, _ = ContentStrategy(embeddings).user_vector(make_context(snapshot, graph, 'u1'))
    assert np.linalg.norm(blended) == pytest.approx(1.0)
    assert not np.allclose(plain, blended)


def test_interactions_recorded_mid_request_do_not_disturb_scoring(embeddings, graph, snapshot, monkeypatch):
    ctx = make_context(snapshot, graph, 'u3')
    original_get = embeddings.get
    recorded = []

    def get_and_record(namespace, key):
        if not recorded:
            recorded.append(graph.record_interaction('u3', 'E', timestamp=snapshot.as_of, rating=5))
        return original_get(namespace, key)

    monkeypatch.setattr(embeddings, 'get', get_and_record)
    strategy = ContentStrategy(embeddings, ContentConfig(recency_half_life_days=1.0))
    _, history_ids, _ = strategy.user_vector(ctx)

    assert recorded
    assert history_ids == ['A', 'B', 'D']
    assert strategy.score(ctx).status == StrategyStatus.OK
    assert graph.get_user('u3').recent_items()[-1] == 'E'
