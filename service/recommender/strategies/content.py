"""
Content-based strategy: cosine similarity in the shared item embedding space.

User vector:
    history = Σ w_h e_h / Σ w_h,  w_h = (rating_h / max_rating) · 0.5^(age_h / half_life)
    genre   = Σ_tag count_tag · t_tag / Σ count_tag   (taxonomy embeddings)
    user    = normalize(0.7 · normalize(history) + 0.3 · normalize(genre))

A user without usable history has a zero vector and the strategy
abstains instead of returning near-ties.

Evidence: the history item most similar to the candidate.
"""

from typing import Dict, List, Optional, Tuple
import logging

import numpy as np

from recsys.config import ContentConfig
from recsys.data.embedding_store import EmbeddingStore, l2_normalize
from .base import (
    Candidate,
    Evidence,
    ScoringContext,
    Strategy,
    StrategyKind,
    StrategyOutcome,
    rank_items,
)

logger = logging.getLogger(__name__)

ZERO_NORM = 1e-12


class ContentStrategy(Strategy):
    kind = StrategyKind.CONTENT

    def __init__(self, embeddings: EmbeddingStore, config: Optional[ContentConfig] = None):
        self.embeddings = embeddings
        self.config = config or ContentConfig()

    def user_vector(self, ctx: ScoringContext) -> Tuple[np.ndarray, List[str], np.ndarray]:
        """
        Aggregated preference vector.

        Returns:
            (user vector (zeros on cold start), history item ids, their unit embeddings)
        """
        dim = self.embeddings.dims.get('item', 0)
        zero = np.zeros(dim)
        if not ctx.history:
            return zero, [], np.zeros((0, dim))

        as_of = ctx.snapshot.as_of
        half_life = self.config.recency_half_life_days
        weights: Dict[str, float] = {}
        tag_counts: Dict[str, int] = {}

        for entry in ctx.history:
            vec = self.embeddings.get('item', entry.item_id)
            if vec is None:
                continue
            age_days = max((as_of - entry.timestamp).total_seconds() / 86400.0, 0.0)
            recency = 0.5 ** (age_days / half_life) if half_life > 0 else 1.0
            rating = min(max(entry.rating / self.config.max_rating, 0.0), 1.0)
            weights[entry.item_id] = weights.get(entry.item_id, 0.0) + rating * recency
            for tag in ctx.snapshot.tags(entry.item_id):
                tag_counts[tag] = tag_counts.get(tag, 0) + 1

        if not weights:
            return zero, [], np.zeros((0, dim))

        history_ids = sorted(weights)
        history_emb = np.vstack([self.embeddings.get('item', i) for i in history_ids]).astype(np.float64)
        w = np.array([weights[i] for i in history_ids])
        history_unit = l2_normalize(history_emb)

        if w.sum() <= 0:
            return zero, history_ids, history_unit
        history_vec = (w[:, None] * history_unit).sum(axis=0) / w.sum()

        genre_vec = None
        if 'taxonomy' in self.embeddings.dims and self.embeddings.dims['taxonomy'] == dim:
            rows, counts = [], []
            for tag in sorted(tag_counts):
                t = self.embeddings.get('taxonomy', tag)
                if t is not None:
                    rows.append(t)
                    counts.append(tag_counts[tag])
            if rows:
                c = np.asarray(counts, dtype=np.float64)
                genre_vec = (c[:, None] * l2_normalize(np.vstack(rows).astype(np.float64))).sum(axis=0) / c.sum()

        if genre_vec is None:
            user = history_vec
        else:
            alpha = self.config.history_weight
            user = alpha * l2_normalize(history_vec) + (1 - alpha) * l2_normalize(genre_vec)

        if np.linalg.norm(user) < ZERO_NORM:
            return zero, history_ids, history_unit
        return l2_normalize(user), history_ids, history_unit

    def score(self, ctx: ScoringContext) -> StrategyOutcome:
        user, history_ids, history_unit = self.user_vector(ctx)
        if np.linalg.norm(user) < ZERO_NORM:
            return StrategyOutcome.abstain(self.kind, 'cold start (no embedded history)')

        ids, matrix = self.embeddings.matrix('item')
        if not ids:
            return StrategyOutcome.abstain(self.kind, 'no item embeddings')

        sims = matrix @ user.astype(np.float32)
        scores = np.full(ctx.snapshot.num_items, -np.inf)
        store_rows: Dict[int, int] = {}
        for row, item_id in enumerate(ids):
            pos = ctx.snapshot.item_pos.get(item_id)
            if pos is not None:
                scores[pos] = sims[row]
                store_rows[pos] = row

        candidates = []
        for rank, (pos, value) in enumerate(rank_items(scores, ctx.exclude, ctx.limit), start=1):
            item_unit = matrix[store_rows[pos]].astype(np.float64)
            hist_sims = history_unit @ item_unit
            best = int(np.argmax(hist_sims))
            candidates.append(Candidate(
                item_id=ctx.snapshot.item_ids[pos],
                score=value,
                rank=rank,
                evidence=Evidence(
                    relation='content_similar',
                    path=(ctx.user_id, history_ids[best], ctx.snapshot.item_ids[pos]),
                    strength=float(hist_sims[best])
                )
            ))
        return StrategyOutcome.ok(self.kind, candidates)
