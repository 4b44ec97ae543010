"""
Graph-neural strategy.

Item final-layer embeddings are precomputed in the artifact. The user's
final-layer embedding is computed per request on the live graph
snapshot, with neighbor sampling seeded by the user id so repeated
requests against the same graph and model are identical. Live nodes the
artifact does not know get a zero input embedding.

Evidence: the shortest user -> history item -> co-interacting user -> item
path in the live graph, when one exists within three hops.
"""

from typing import Any, Dict, Mapping, Optional
import logging
import zlib

import numpy as np
import torch

from recsys.config import GNNConfig
from recsys.model.gnn import GraphNeuralRecommender, NeighborSampler, STATE_PREFIX
from recsys.registry import ModelRegistry, ModelSnapshot
from .base import (
    AlignmentCache,
    Candidate,
    Evidence,
    ScoringContext,
    Strategy,
    StrategyKind,
    StrategyOutcome,
    rank_items,
)

logger = logging.getLogger(__name__)

MAX_PATH_HOPS = 3


class GraphModel:
    """Serving view of a graph-neural artifact."""

    def __init__(
        self,
        network: GraphNeuralRecommender,
        user_ids,
        item_ids,
        item_embeddings: np.ndarray,
        fanouts,
        seed: int
    ):
        self.network = network.eval()
        self.user_ids = [str(u) for u in user_ids]
        self.item_ids = [str(i) for i in item_ids]
        self.user_index = {uid: row for row, uid in enumerate(self.user_ids)}
        self.item_index = {iid: len(self.user_ids) + row for row, iid in enumerate(self.item_ids)}
        self.item_embeddings = np.asarray(item_embeddings, dtype=np.float32)
        self.input_embeddings = network.embedding.weight.detach()
        self.fanouts = tuple(fanouts)
        self.seed = seed
        self.alignment = AlignmentCache(self.item_ids)

    @classmethod
    def from_params(cls, params: Mapping[str, np.ndarray], metadata: Mapping[str, Any]) -> 'GraphModel':
        cfg = dict(metadata.get('config', {}))
        defaults = GNNConfig()
        state = {
            name[len(STATE_PREFIX):]: torch.from_numpy(np.array(value))
            for name, value in params.items() if name.startswith(STATE_PREFIX)
        }
        num_nodes, input_dim = state['embedding.weight'].shape
        network = GraphNeuralRecommender(
            num_nodes=num_nodes,
            input_dim=input_dim,
            layer_dims=cfg.get('layer_dims', defaults.layer_dims),
            heads=cfg.get('heads', defaults.heads),
            negative_slope=cfg.get('leaky_relu_slope', defaults.leaky_relu_slope)
        )
        network.load_state_dict(state)
        return cls(
            network=network,
            user_ids=params['user_ids'],
            item_ids=params['item_ids'],
            item_embeddings=params['item_embeddings'],
            fanouts=cfg.get('fanouts', defaults.fanouts),
            seed=int(cfg.get('random_seed', defaults.random_seed))
        )

    @staticmethod
    def warmup(snapshot: ModelSnapshot, i: int) -> np.ndarray:
        """Score all items against the i-th item's embedding."""
        model: GraphModel = snapshot.model
        if len(model.item_embeddings) == 0:
            return np.zeros(0)
        return model.item_embeddings @ model.item_embeddings[i % len(model.item_embeddings)]

    def artifact_row(self, snapshot, node: int) -> Optional[int]:
        label = snapshot.node_label(node)
        if snapshot.is_item_node(node):
            return self.item_index.get(label)
        return self.user_index.get(label)

    @torch.no_grad()
    def embed_user(self, snapshot, user_id: str) -> Optional[np.ndarray]:
        """Final-layer embedding of ``user_id`` on the live graph."""
        node = snapshot.user_node(user_id)
        if node is None:
            return None
        sampler = NeighborSampler(snapshot, self.fanouts)
        rng = np.random.default_rng([self.seed, zlib.crc32(user_id.encode('utf-8'))])
        input_nodes, blocks = sampler.sample_blocks([node], rng)

        rows = np.full(len(input_nodes), -1, dtype=np.int64)
        for k, live_node in enumerate(input_nodes):
            row = self.artifact_row(snapshot, int(live_node))
            if row is not None:
                rows[k] = row
        known = torch.as_tensor(rows >= 0)
        x = torch.zeros(len(input_nodes), self.input_embeddings.shape[1])
        x[known] = self.input_embeddings[torch.as_tensor(rows[rows >= 0])]
        return self.network.propagate(x, blocks)[0].cpu().numpy()


class GraphNeuralStrategy(Strategy):
    kind = StrategyKind.GRAPH

    def __init__(self, registry: ModelRegistry):
        self.registry = registry

    def _evidence(self, ctx: ScoringContext, tree: Dict[int, Optional[int]], item_pos: int) -> Evidence:
        item_id = ctx.snapshot.item_ids[item_pos]
        path = ctx.snapshot.path_in_tree(tree, ctx.snapshot.num_users + item_pos)
        if path is None:
            return Evidence(relation='graph_embedding', path=(ctx.user_id, item_id))
        return Evidence(
            relation='graph_path',
            path=tuple(ctx.snapshot.node_label(n) for n in path),
            strength=1.0 / len(path)
        )

    def score(self, ctx: ScoringContext) -> StrategyOutcome:
        snap = self.registry.current(self.kind.value)
        if snap is None or snap.model is None:
            return StrategyOutcome.abstain(self.kind, 'no active model')
        model: GraphModel = snap.model

        if ctx.user_id not in model.user_index:
            return StrategyOutcome.abstain(self.kind, 'user not in model')
        user_node = ctx.snapshot.user_node(ctx.user_id)
        if user_node is None:
            return StrategyOutcome.abstain(self.kind, 'user not in graph')

        user = model.embed_user(ctx.snapshot, ctx.user_id)
        rows = model.alignment.rows(ctx.snapshot)
        scores = np.full(ctx.snapshot.num_items, -np.inf)
        known = rows >= 0
        scores[known] = model.item_embeddings[rows[known]] @ user

        ranked = rank_items(scores, ctx.exclude, ctx.limit)
        tree = ctx.snapshot.bfs_tree(user_node, MAX_PATH_HOPS) if ranked else {}
        candidates = [
            Candidate(
                item_id=ctx.snapshot.item_ids[pos],
                score=value,
                rank=rank,
                evidence=self._evidence(ctx, tree, pos)
            )
            for rank, (pos, value) in enumerate(ranked, start=1)
        ]
        return StrategyOutcome.ok(self.kind, candidates, model_version=snap.version)


def register_graph(registry: ModelRegistry) -> None:
    registry.register_strategy(
        StrategyKind.GRAPH.value,
        builder=GraphModel.from_params,
        warmup=GraphModel.warmup
    )
