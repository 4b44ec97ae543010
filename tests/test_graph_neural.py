"""Tests for neighbor sampling, attention layers, GNN training and serving."""

import numpy as np
import pytest
import torch

from recsys.config import GNNConfig
from recsys.model.gnn import (
    Block,
    GNNTrainer,
    GraphAttentionLayer,
    GraphNeuralRecommender,
    NeighborSampler,
    split_validation,
)
from service.recommender.strategies import (
    GraphModel,
    GraphNeuralStrategy,
    StrategyStatus,
    register_graph,
)

from conftest import graph_artifact, make_context


def test_sample_neighbors_without_replacement(snapshot):
    sampler = NeighborSampler(snapshot, fanouts=(2,))
    node = snapshot.item_node('A')  # A has three users
    rng = np.random.default_rng(0)
    picked = sampler.sample_neighbors(node, 2, rng)
    assert len(picked) == 2
    assert len(set(picked.tolist())) == 2
    assert set(picked.tolist()) <= set(snapshot.neighbors(node)[0].tolist())


def test_small_degree_takes_all_neighbors(snapshot):
    sampler = NeighborSampler(snapshot, fanouts=(10,))
    node = snapshot.user_node('u1')
    picked = sampler.sample_neighbors(node, 10, np.random.default_rng(0))
    assert picked.tolist() == [snapshot.item_node('A')]


def test_blocks_are_consistent(snapshot):
    sampler = NeighborSampler(snapshot, fanouts=(3, 2))
    targets = [snapshot.user_node('u2'), snapshot.item_node('D')]
    input_nodes, blocks = sampler.sample_blocks(targets, np.random.default_rng(1))

    assert len(blocks) == 2
    assert input_nodes[:2].tolist() == targets
    assert blocks[-1].num_dst == 2
    assert blocks[0].num_src == len(input_nodes)
    for outer, inner in zip(blocks, blocks[1:]):
        assert outer.num_dst == inner.num_src
    for block in blocks:
        assert int(block.src_index.max()) < block.num_src
        assert int(block.dst_index.max()) < block.num_dst


def test_layer_without_neighbors_still_combines_self():
    layer = GraphAttentionLayer(in_dim=6, out_dim=4, heads=2)
    block = Block(
        num_dst=3, num_src=3,
        src_index=torch.empty(0, dtype=torch.long),
        dst_index=torch.empty(0, dtype=torch.long)
    )
    out = layer(torch.randn(3, 6), block)
    assert out.shape == (3, 4)
    assert torch.all(torch.isfinite(out))
    assert torch.allclose(out.norm(dim=-1), torch.ones(3), atol=1e-5)


def test_heads_must_divide_output_dim():
    with pytest.raises(ValueError):
        GraphAttentionLayer(in_dim=4, out_dim=5, heads=2)
    with pytest.raises(ValueError):
        GraphNeuralRecommender(num_nodes=4, input_dim=4, layer_dims=(4, 2), heads=(2,))


def test_split_validation_keeps_one_positive_per_user(snapshot):
    train, validation = split_validation(snapshot, 0.5, np.random.default_rng(0))
    assert train.nnz + sum(len(v) for v in validation.values()) == snapshot.interactions.nnz
    for u in range(snapshot.num_users):
        if snapshot.interactions[u].nnz >= 2:
            assert train[u].nnz >= 1
    assert snapshot.user_pos['u1'] not in validation


def test_trainer_produces_serving_params(snapshot):
    cfg = GNNConfig(
        input_dim=8, layer_dims=(8, 4), heads=(2, 1), fanouts=(3, 3),
        max_epochs=3, batch_size=8, validation_fraction=0.3,
        early_stopping_patience=2, eval_k=3, random_seed=0
    )
    trainer = GNNTrainer(cfg)
    summary = trainer.fit(snapshot, show_progress=False)
    params = trainer.to_params()

    assert 1 <= len(trainer.history.epochs) <= 3
    assert all(np.isfinite(trainer.history.losses))
    assert params['item_embeddings'].shape == (snapshot.num_items, 4)
    assert params['state.embedding.weight'].shape == (snapshot.num_nodes, 8)
    assert list(params['item_ids']) == snapshot.item_ids
    assert trainer.artifact_metadata()['config']['layer_dims'] == [8, 4]
    assert 'total_duration_seconds' in summary


def test_trainer_needs_two_items():
    from datetime import datetime, timezone
    from recsys.data import InteractionGraph, Item
    graph = InteractionGraph()
    graph.add_item(Item('only'))
    graph.record_interaction('u', 'only', rating=5, timestamp=datetime(2026, 1, 1, tzinfo=timezone.utc))
    with pytest.raises(ValueError):
        GNNTrainer(GNNConfig(input_dim=4, layer_dims=(4,), heads=(1,))).fit(graph.snapshot())


@pytest.fixture
def gnn_registry(registry, snapshot):
    register_graph(registry)
    registry.publish_and_activate(graph_artifact(snapshot))
    return registry


def test_user_embedding_is_deterministic(gnn_registry, snapshot):
    model: GraphModel = gnn_registry.current('graph').model
    first = model.embed_user(snapshot, 'u2')
    second = model.embed_user(snapshot, 'u2')
    assert first.shape == (4,)
    np.testing.assert_array_equal(first, second)


def test_graph_strategy_ranks_unseen_items_with_paths(gnn_registry, graph, snapshot):
    outcome = GraphNeuralStrategy(gnn_registry).score(make_context(snapshot, graph, 'u1'))

    assert outcome.status == StrategyStatus.OK
    ids = [c.item_id for c in outcome.candidates]
    assert 'A' not in ids
    assert len(ids) == snapshot.num_items - 1
    by_id = {c.item_id: c for c in outcome.candidates}
    # u1 -> A -> u2 -> B is a three-hop path
    assert by_id['B'].evidence.relation == 'graph_path'
    assert by_id['B'].evidence.path[0] == 'u1'
    assert by_id['B'].evidence.path[-1] == 'B'
    assert len(by_id['B'].evidence.path) == 4
    # H is only reachable through u5, far from u1
    assert by_id['H'].evidence.relation == 'graph_embedding'


def test_graph_strategy_abstains_for_unknown_user(gnn_registry, graph, snapshot):
    outcome = GraphNeuralStrategy(gnn_registry).score(make_context(snapshot, graph, 'ghost'))
    assert outcome.status == StrategyStatus.ABSTAIN


def test_graph_strategy_explains_candidates_from_one_traversal(gnn_registry, graph, snapshot, monkeypatch):
    traversals = []
    original = snapshot.bfs_tree

    def counting_bfs_tree(src, max_hops=3):
        traversals.append(src)
        return original(src, max_hops)

    monkeypatch.setattr(snapshot, 'bfs_tree', counting_bfs_tree)
    outcome = GraphNeuralStrategy(gnn_registry).score(make_context(snapshot, graph, 'u2'))

    u2 = snapshot.user_node('u2')
    assert traversals == [u2]
    for cand in outcome.candidates:
        path = snapshot.find_path(u2, snapshot.item_node(cand.item_id), max_hops=3)
        if path is None:
            assert cand.evidence.relation == 'graph_embedding'
        else:
            assert cand.evidence.path == tuple(snapshot.node_label(n) for n in path)
