"""
Shared fixtures: a small interaction graph with embeddings, an in-memory
model registry and helpers for building model artifacts.
"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from recsys.alerting import AlertManager, set_alert_manager
from recsys.config import ALSConfig, GNNConfig, RegistryConfig
from recsys.data import EmbeddingStore, InteractionGraph, Item, TrustComponents
from recsys.model.als import ALSTrainer
from recsys.model.gnn import GNNTrainer
from recsys.registry import InMemoryArtifactStore, ModelArtifact, ModelRegistry
from service.recommender.strategies import ScoringContext, register_model_strategies

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)

ITEM_TAGS = {
    'A': {'rock', 'indie'},
    'B': {'rock', 'indie'},
    'C': {'rock'},
    'D': {'jazz'},
    'E': {'jazz', 'blues'},
    'F': {'pop'},
    'G': {'pop', 'dance'},
    'H': {'classical'},
}

# (user, item, rating, days ago)
INTERACTIONS = [
    ('u1', 'A', 5, 0),
    ('u2', 'A', 5, 1), ('u2', 'B', 4, 2), ('u2', 'C', 4, 3),
    ('u3', 'A', 4, 1), ('u3', 'B', 5, 1), ('u3', 'D', 3, 4),
    ('u4', 'D', 5, 2), ('u4', 'E', 5, 2), ('u4', 'F', 2, 5),
    ('u5', 'F', 5, 1), ('u5', 'G', 4, 1), ('u5', 'H', 3, 6),
    ('u6', 'B', 4, 2), ('u6', 'C', 5, 2), ('u6', 'E', 3, 3),
]


@pytest.fixture(autouse=True)
def quiet_alerts(tmp_path):
    """Alerts go to the log only; no Slack, no alert log file."""
    set_alert_manager(AlertManager(
        config_path=str(tmp_path / 'missing_alerts.yaml'),
        alert_log_path=None
    ))
    yield
    set_alert_manager(None)


def build_graph() -> InteractionGraph:
    graph = InteractionGraph(half_life_days=30.0, history_window=50)
    for item_id, tags in ITEM_TAGS.items():
        graph.add_item(Item(item_id, tags=tags, trust=TrustComponents(), title=f"Item {item_id}"))
    for user_id, item_id, rating, days in INTERACTIONS:
        graph.record_interaction(user_id, item_id, timestamp=NOW - timedelta(days=days), rating=rating)
    return graph


@pytest.fixture
def graph():
    return build_graph()


@pytest.fixture
def snapshot(graph):
    return graph.snapshot(as_of=NOW)


@pytest.fixture
def embeddings():
    """8-dim item embeddings; B is A's nearest neighbor, C the next."""
    rng = np.random.default_rng(3)
    base = rng.normal(size=(len(ITEM_TAGS), 8))
    store = EmbeddingStore(dims={'item': 8, 'user': 8, 'taxonomy': 8})
    vectors = dict(zip(sorted(ITEM_TAGS), base))
    vectors['B'] = vectors['A'] + 0.05 * rng.normal(size=8)
    vectors['C'] = vectors['A'] + 0.6 * rng.normal(size=8)
    for item_id, vec in vectors.items():
        store.put('item', item_id, vec)
    return store


@pytest.fixture
def registry():
    return ModelRegistry(
        InMemoryArtifactStore(),
        RegistryConfig(audit_log_path=None, warmup_requests=2, retire_grace_seconds=30.0)
    )


def make_context(snapshot, graph, user_id, limit=20, **context):
    return ScoringContext(
        user_id=user_id,
        snapshot=snapshot,
        user=graph.get_user(user_id),
        exclude=frozenset(int(p) for p in snapshot.user_items(user_id)),
        limit=limit,
        context=context,
        history=graph.user_history(user_id)
    )


def collaborative_artifact(snapshot, version=1, factors=4, user_factors=None):
    cfg = ALSConfig(factors=factors, epochs=10, random_seed=0)
    trainer = ALSTrainer(
        factors=cfg.factors, regularization=cfg.regularization,
        epochs=cfg.epochs, random_seed=cfg.random_seed
    )
    trainer.fit(snapshot.interactions, show_progress=False)
    params = trainer.to_params(snapshot.user_ids, snapshot.item_ids)
    if user_factors is not None:
        params['user_factors'] = user_factors
    return ModelArtifact.create(
        'collaborative', version, params,
        metrics={'final_loss': trainer.history.losses[-1]},
        metadata={'allow_nan_rows': ['user_factors', 'item_factors']}
    )


def graph_artifact(snapshot, version=1):
    cfg = GNNConfig(
        input_dim=8,
        layer_dims=(8, 4),
        heads=(2, 1),
        fanouts=(4, 4),
        max_epochs=2,
        batch_size=32,
        validation_fraction=0.0,
        random_seed=0
    )
    trainer = GNNTrainer(cfg)
    trainer.fit(snapshot, show_progress=False)
    return ModelArtifact.create(
        'graph', version, trainer.to_params(), metadata=trainer.artifact_metadata()
    )


@pytest.fixture
def active_registry(registry, snapshot):
    """Registry with both model-backed strategies Active at version 1."""
    register_model_strategies(registry)
    registry.publish_and_activate(collaborative_artifact(snapshot))
    registry.publish_and_activate(graph_artifact(snapshot))
    return registry
