"""
Neighbor and triplet sampling for the graph-neural strategy.

NeighborSampler builds GraphSAGE-style computation blocks over a
``GraphSnapshot`` arena. For layer l (1-indexed) each destination node
gets at most ``fanouts[l-1]`` neighbors, drawn proportionally to decayed
edge weight and without replacement. When a node has no more neighbors
than the fanout, all of them are taken once (no padding, no repeats).

Blocks are returned input-first: ``blocks[0]`` feeds layer 1. In every
block the destination nodes are a prefix of the source nodes, so a
layer can read each node's own previous embedding by row position.

TripletSampler draws (user, positive, negatives) tuples for BPR.
"""

from typing import Dict, List, Optional, Sequence, Set, Tuple
from dataclasses import dataclass
import logging

import numpy as np
import torch

from recsys.data.graph import GraphSnapshot

logger = logging.getLogger(__name__)


@dataclass
class Block:
    """Bipartite message-passing block for one layer."""
    num_dst: int
    num_src: int
    src_index: torch.Tensor   # (E,) positions into the source node list
    dst_index: torch.Tensor   # (E,) positions into the destination node list

    @property
    def num_edges(self) -> int:
        return int(self.src_index.numel())


class NeighborSampler:
    """Weighted multi-hop neighbor sampler over a snapshot."""

    def __init__(self, snapshot: GraphSnapshot, fanouts: Sequence[int] = (25, 15, 10)):
        self.snapshot = snapshot
        self.fanouts = tuple(fanouts)

    def sample_neighbors(self, node: int, size: int, rng: np.random.Generator) -> np.ndarray:
        nbrs, weights = self.snapshot.neighbors(node)
        if len(nbrs) == 0 or size <= 0:
            return np.empty(0, dtype=np.int64)
        if len(nbrs) <= size:
            return nbrs.astype(np.int64)
        # Tiny floor keeps fully-decayed edges sampleable
        p = np.asarray(weights, dtype=np.float64) + 1e-12
        p /= p.sum()
        return rng.choice(nbrs, size=size, replace=False, p=p).astype(np.int64)

    def sample_blocks(
        self,
        targets: Sequence[int],
        rng: np.random.Generator
    ) -> Tuple[np.ndarray, List[Block]]:
        """
        Sample computation blocks for ``targets`` (unique node indices).

        Returns:
            (input_nodes, blocks): input_nodes feeds layer 1; the first
            len(targets) rows of the final output correspond to targets.
        """
        nodes = [int(n) for n in targets]
        blocks: List[Block] = []

        for fanout in reversed(self.fanouts):
            position = {n: i for i, n in enumerate(nodes)}
            src_nodes = list(nodes)
            src_idx: List[int] = []
            dst_idx: List[int] = []
            for d, node in enumerate(nodes):
                for nbr in self.sample_neighbors(node, fanout, rng):
                    nbr = int(nbr)
                    j = position.get(nbr)
                    if j is None:
                        j = len(src_nodes)
                        position[nbr] = j
                        src_nodes.append(nbr)
                    src_idx.append(j)
                    dst_idx.append(d)
            blocks.insert(0, Block(
                num_dst=len(nodes),
                num_src=len(src_nodes),
                src_index=torch.as_tensor(src_idx, dtype=torch.long),
                dst_index=torch.as_tensor(dst_idx, dtype=torch.long),
            ))
            nodes = src_nodes

        return np.asarray(nodes, dtype=np.int64), blocks


class TripletSampler:
    """
    Uniform negative sampling for BPR: ``negatives`` unseen items per positive.

    Positives and negatives are item positions (0..num_items-1).
    """

    def __init__(
        self,
        positive_pairs: np.ndarray,
        user_pos_sets: Dict[int, Set[int]],
        num_items: int,
        negatives: int = 4,
        random_seed: int = 42
    ):
        self.positive_pairs = np.asarray(positive_pairs, dtype=np.int64).reshape(-1, 2)
        self.user_pos_sets = user_pos_sets
        self.num_items = num_items
        self.negatives = negatives
        self.rng = np.random.default_rng(random_seed)

    def sample_negative(self, user: int, max_attempts: int = 100) -> int:
        positives = self.user_pos_sets.get(user, set())
        for _ in range(max_attempts):
            candidate = int(self.rng.integers(0, self.num_items))
            if candidate not in positives:
                return candidate
        valid = [i for i in range(self.num_items) if i not in positives]
        if not valid:
            raise ValueError(f"Cannot sample negative for user {user}: no valid items")
        return int(self.rng.choice(valid))

    def sample_epoch(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Shuffled (users, positives, negatives[n, negatives]) for one epoch."""
        order = self.rng.permutation(len(self.positive_pairs))
        pairs = self.positive_pairs[order]
        negs = np.empty((len(pairs), self.negatives), dtype=np.int64)
        for row, (u, _) in enumerate(pairs):
            for j in range(self.negatives):
                negs[row, j] = self.sample_negative(int(u))
        return pairs[:, 0], pairs[:, 1], negs
