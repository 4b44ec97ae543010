"""
Multi-head attention aggregation layers for the graph-neural strategy.

Per layer and destination node v with sampled neighbors N(v):

    e_uv   = LeakyReLU(aᵀ [W h_v ‖ W h_u])           (per head)
    α_uv   = softmax_{u ∈ N(v)}(e_uv)                (per head)
    m_v    = ‖_heads Σ_u α_uv W h_u                  (concatenate heads)
    h'_v   = normalize(ELU(Linear([h_v ‖ m_v])))

A node whose sampled neighbor set is empty gets m_v = 0, i.e. it
propagates from its own embedding only.
"""

from typing import List, Optional, Sequence

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from .sampler import Block, NeighborSampler


class GraphAttentionLayer(nn.Module):
    """One sampled multi-head attention aggregation + combine step."""

    def __init__(
        self,
        in_dim: int,
        out_dim: int,
        heads: int,
        negative_slope: float = 0.2,
        dropout: float = 0.0
    ):
        super().__init__()
        if out_dim % heads != 0:
            raise ValueError(f"out_dim ({out_dim}) must be divisible by heads ({heads})")
        self.in_dim = in_dim
        self.out_dim = out_dim
        self.heads = heads
        self.head_dim = out_dim // heads

        self.W = nn.Linear(in_dim, out_dim, bias=False)
        # aᵀ[W h_v ‖ W h_u] split into destination and source halves
        self.attn_dst = nn.Parameter(torch.empty(heads, self.head_dim))
        self.attn_src = nn.Parameter(torch.empty(heads, self.head_dim))
        self.combine = nn.Linear(in_dim + out_dim, out_dim)
        self.leaky_relu = nn.LeakyReLU(negative_slope)
        self.dropout = nn.Dropout(dropout)
        self.reset_parameters()

    def reset_parameters(self):
        nn.init.xavier_uniform_(self.W.weight)
        nn.init.xavier_uniform_(self.attn_dst)
        nn.init.xavier_uniform_(self.attn_src)
        nn.init.xavier_uniform_(self.combine.weight)
        nn.init.zeros_(self.combine.bias)

    def forward(self, h: torch.Tensor, block: Block) -> torch.Tensor:
        n_dst = block.num_dst
        Wh = self.W(h).view(-1, self.heads, self.head_dim)
        message = h.new_zeros(n_dst, self.heads, self.head_dim)

        if block.num_edges > 0:
            src, dst = block.src_index, block.dst_index
            e = self.leaky_relu(
                (Wh[dst] * self.attn_dst).sum(-1) + (Wh[src] * self.attn_src).sum(-1)
            )  # (E, heads)

            # Softmax over each destination's neighbors
            e_max = torch.full((n_dst, self.heads), float('-inf'), dtype=e.dtype, device=e.device)
            e_max = e_max.scatter_reduce(
                0, dst.unsqueeze(-1).expand_as(e), e, reduce='amax', include_self=True
            )
            exp = torch.exp(e - e_max[dst])
            denom = torch.zeros(n_dst, self.heads, dtype=e.dtype, device=e.device).index_add(0, dst, exp)
            alpha = self.dropout(exp / denom[dst].clamp_min(1e-16))

            message = message.index_add(0, dst, alpha.unsqueeze(-1) * Wh[src])

        message = message.reshape(n_dst, self.out_dim)
        out = self.combine(torch.cat([h[:n_dst], message], dim=-1))
        return F.normalize(F.elu(out), dim=-1)


class GraphNeuralRecommender(nn.Module):
    """
    Stack of GraphAttentionLayers over learned node input embeddings.

    Score(u, i) = dot(final_u, final_i).
    """

    def __init__(
        self,
        num_nodes: int,
        input_dim: int = 512,
        layer_dims: Sequence[int] = (256, 128, 64),
        heads: Sequence[int] = (8, 4, 2),
        negative_slope: float = 0.2,
        dropout: float = 0.0
    ):
        super().__init__()
        if len(layer_dims) != len(heads):
            raise ValueError("layer_dims and heads must have the same length")
        self.num_nodes = num_nodes
        self.input_dim = input_dim
        self.layer_dims = tuple(layer_dims)
        self.heads = tuple(heads)

        self.embedding = nn.Embedding(num_nodes, input_dim)
        nn.init.normal_(self.embedding.weight, std=0.1)

        dims = [input_dim] + list(layer_dims)
        self.layers = nn.ModuleList([
            GraphAttentionLayer(dims[i], dims[i + 1], heads[i], negative_slope, dropout)
            for i in range(len(layer_dims))
        ])

    @property
    def output_dim(self) -> int:
        return self.layer_dims[-1]

    def propagate(self, x: torch.Tensor, blocks: List[Block]) -> torch.Tensor:
        """Run all layers on input features ``x`` (rows aligned with block 0 sources)."""
        h = x
        for layer, block in zip(self.layers, blocks):
            h = layer(h, block)
        return h

    def forward(self, input_nodes: torch.Tensor, blocks: List[Block]) -> torch.Tensor:
        return self.propagate(self.embedding(input_nodes), blocks)

    @torch.no_grad()
    def embed_nodes(
        self,
        sampler: NeighborSampler,
        nodes: Sequence[int],
        seed: int = 0,
        batch_size: int = 1024
    ) -> np.ndarray:
        """
        Final-layer embeddings for ``nodes`` with deterministic sampling.

        The sampling RNG for each batch is derived from ``seed`` and the
        batch's first node, so results do not depend on call order.
        """
        was_training = self.training
        self.eval()
        nodes = list(nodes)
        out = np.zeros((len(nodes), self.output_dim), dtype=np.float32)
        for start in range(0, len(nodes), batch_size):
            chunk = nodes[start:start + batch_size]
            rng = np.random.default_rng([seed, int(chunk[0]), len(chunk)])
            input_nodes, blocks = sampler.sample_blocks(chunk, rng)
            h = self(torch.as_tensor(input_nodes, dtype=torch.long), blocks)
            out[start:start + len(chunk)] = h[:len(chunk)].cpu().numpy()
        if was_training:
            self.train()
        return out
