"""
Collaborative strategy: ALS matrix factorization.

Score(u, i) = dot(U[u], V[i]) from the Active collaborative model. The
strategy abstains for users with fewer than ``min_interactions``
interactions in the live graph or without a trained latent vector, and
falls back to popularity for a user whose latent vector is non-finite.

Evidence: the history item nearest to the candidate in latent space.
"""

from typing import Any, Dict, List, Mapping, Optional
import logging

import numpy as np

from recsys.config import ALSConfig
from recsys.data.embedding_store import l2_normalize
from recsys.registry import ModelRegistry, ModelSnapshot
from ..fallback import popular_candidates
from .base import (
    Candidate,
    Evidence,
    ScoringContext,
    Strategy,
    StrategyKind,
    StrategyOutcome,
    AlignmentCache,
    rank_items,
)

logger = logging.getLogger(__name__)


class CollaborativeModel:
    """Serving view of a collaborative artifact."""

    def __init__(
        self,
        user_factors: np.ndarray,
        item_factors: np.ndarray,
        user_ids,
        item_ids,
        trained_users: Optional[np.ndarray] = None
    ):
        self.U = user_factors
        self.V = item_factors
        self.user_ids = [str(u) for u in user_ids]
        self.item_ids = [str(i) for i in item_ids]
        self.user_index = {uid: row for row, uid in enumerate(self.user_ids)}
        self.trained_users = (
            np.asarray(trained_users, dtype=bool) if trained_users is not None
            else np.ones(len(self.user_ids), dtype=bool)
        )
        self.V_unit = l2_normalize(np.nan_to_num(self.V.astype(np.float64)))
        self.alignment = AlignmentCache(self.item_ids)

    @classmethod
    def from_params(cls, params: Mapping[str, np.ndarray], metadata: Mapping[str, Any]) -> 'CollaborativeModel':
        return cls(
            user_factors=params['user_factors'],
            item_factors=params['item_factors'],
            user_ids=params['user_ids'],
            item_ids=params['item_ids'],
            trained_users=params.get('trained_users')
        )

    @staticmethod
    def warmup(snapshot: ModelSnapshot, i: int) -> np.ndarray:
        """Score every item for the i-th trained user."""
        model: CollaborativeModel = snapshot.model
        V = model.V[np.all(np.isfinite(model.V), axis=1)]
        trained = np.flatnonzero(model.trained_users & np.all(np.isfinite(model.U), axis=1))
        if len(trained) == 0:
            return V.sum(axis=1)
        return V @ model.U[trained[i % len(trained)]]


class CollaborativeStrategy(Strategy):
    kind = StrategyKind.COLLABORATIVE

    def __init__(self, registry: ModelRegistry, config: Optional[ALSConfig] = None):
        self.registry = registry
        self.config = config or ALSConfig()

    def _nearest_history(
        self,
        model: CollaborativeModel,
        ctx: ScoringContext,
        history_rows: np.ndarray,
        history_ids: List[str],
        candidate_row: int
    ) -> Optional[Evidence]:
        if len(history_rows) == 0 or candidate_row < 0:
            return None
        sims = model.V_unit[history_rows] @ model.V_unit[candidate_row]
        best = int(np.argmax(sims))
        return Evidence(
            relation='latent_neighbor',
            path=(ctx.user_id, history_ids[best], model.item_ids[candidate_row]),
            strength=float(sims[best])
        )

    def score(self, ctx: ScoringContext) -> StrategyOutcome:
        snap = self.registry.current(self.kind.value)
        if snap is None or snap.model is None:
            return StrategyOutcome.abstain(self.kind, 'no active model')
        model: CollaborativeModel = snap.model

        history = ctx.snapshot.user_items(ctx.user_id)
        if len(history) < self.config.min_interactions:
            return StrategyOutcome.abstain(
                self.kind, f'cold start ({len(history)} < {self.config.min_interactions} interactions)'
            )

        row = model.user_index.get(ctx.user_id)
        if row is None or not model.trained_users[row]:
            return StrategyOutcome.abstain(self.kind, 'user not in model')

        u = model.U[row]
        if not np.all(np.isfinite(u)):
            logger.warning(f"Non-finite latent vector for user {ctx.user_id}, using popularity")
            return StrategyOutcome.ok(
                self.kind,
                popular_candidates(ctx.snapshot, ctx.exclude, ctx.limit),
                model_version=snap.version,
                reason='popularity_fallback'
            )

        rows = model.alignment.rows(ctx.snapshot)
        scores = np.full(ctx.snapshot.num_items, -np.inf)
        known = rows >= 0
        scores[known] = model.V[rows[known]] @ u

        history_rows = rows[history]
        history_ids = [ctx.snapshot.item_ids[p] for p in history]
        keep = history_rows >= 0
        history_rows = history_rows[keep]
        history_ids = [h for h, k in zip(history_ids, keep) if k]

        candidates = [
            Candidate(
                item_id=ctx.snapshot.item_ids[pos],
                score=value,
                rank=rank,
                evidence=self._nearest_history(model, ctx, history_rows, history_ids, int(rows[pos]))
            )
            for rank, (pos, value) in enumerate(rank_items(scores, ctx.exclude, ctx.limit), start=1)
        ]
        return StrategyOutcome.ok(self.kind, candidates, model_version=snap.version)


def register_collaborative(registry: ModelRegistry) -> None:
    registry.register_strategy(
        StrategyKind.COLLABORATIVE.value,
        builder=CollaborativeModel.from_params,
        warmup=CollaborativeModel.warmup
    )
