"""
Fusion Engine: weighted reciprocal rank fusion + MMR diversity re-ranking.

Step 1 (RRF):
    score(item) = Σ_s w_s / (k_smooth + rank_s(item))
over the strategies that returned a ranked list, with weights
renormalized to sum to 1 over those strategies. Items missing from a
list contribute 0 for that strategy.

Step 2 (MMR):
    pick argmax_c  λ · rel(c) − (1 − λ) · max_{s ∈ selected} jaccard(tags(c), tags(s))
with rel(c) = score(c) / max score. Candidates are visited in fused order
and only a strictly better candidate replaces the current best, so λ = 1
reproduces the RRF order and ties always resolve by item id.

Example:
    >>> engine = FusionEngine(FusionConfig())
    >>> fused = engine.reciprocal_rank_fusion(outcomes)
    >>> page = engine.mmr_rerank(fused, snapshot.tags, k=10)
"""

from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence
from dataclasses import dataclass, field
import logging

from recsys.config import FusionConfig
from .strategies.base import Candidate, Evidence, StrategyOutcome, StrategyStatus

logger = logging.getLogger(__name__)


@dataclass
class FusedCandidate:
    """One item after fusion, with per-strategy attribution."""
    item_id: str
    score: float
    ranks: Dict[str, int] = field(default_factory=dict)
    contributions: Dict[str, float] = field(default_factory=dict)
    evidence: Dict[str, Evidence] = field(default_factory=dict)
    trust_score: Optional[float] = None
    low_confidence: bool = False

    def sort_key(self):
        return (-self.score, self.item_id)


def normalize_weights(weights: Dict[str, float], present: Iterable[str]) -> Dict[str, float]:
    """Restrict weights to ``present`` strategies and rescale to sum to 1."""
    present = list(present)
    chosen = {name: max(float(weights.get(name, 0.0)), 0.0) for name in present}
    total = sum(chosen.values())
    if total <= 0:
        return {name: 1.0 / len(present) for name in present} if present else {}
    return {name: w / total for name, w in chosen.items()}


def jaccard(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


class FusionEngine:
    """Merges strategy outcomes into one diversified ranking."""

    def __init__(self, config: Optional[FusionConfig] = None):
        self.config = config or FusionConfig()

    def reciprocal_rank_fusion(self, outcomes: Sequence[StrategyOutcome]) -> List[FusedCandidate]:
        """Fuse the OK outcomes; returns candidates sorted by (-score, item_id)."""
        usable = [o for o in outcomes if o.status == StrategyStatus.OK and o.candidates]
        weights = normalize_weights(self.config.weights, [o.kind.value for o in usable])
        k_smooth = self.config.k_smooth

        fused: Dict[str, FusedCandidate] = {}
        for outcome in usable:
            name = outcome.kind.value
            w = weights[name]
            seen = set()
            for rank, cand in enumerate(sorted(outcome.candidates, key=lambda c: c.rank), start=1):
                if cand.item_id in seen:
                    continue
                seen.add(cand.item_id)
                entry = fused.setdefault(cand.item_id, FusedCandidate(item_id=cand.item_id, score=0.0))
                contribution = w / (k_smooth + rank)
                entry.score += contribution
                entry.ranks[name] = rank
                entry.contributions[name] = contribution
                if cand.evidence is not None:
                    entry.evidence[name] = cand.evidence

        return sorted(fused.values(), key=FusedCandidate.sort_key)

    def mmr_rerank(
        self,
        candidates: Sequence[FusedCandidate],
        tags_of: Callable[[str], FrozenSet[str]],
        k: int,
        mmr_lambda: Optional[float] = None
    ) -> List[FusedCandidate]:
        """Greedy MMR selection of up to ``k`` distinct items."""
        lam = self.config.mmr_lambda if mmr_lambda is None else mmr_lambda
        pool = sorted(candidates, key=FusedCandidate.sort_key)
        if not pool or k <= 0:
            return []

        max_score = max(c.score for c in pool)
        scale = max_score if max_score > 0 else 1.0
        tags = {c.item_id: frozenset(tags_of(c.item_id)) for c in pool}

        selected: List[FusedCandidate] = []
        selected_ids = set()
        # Running max similarity of each remaining candidate to the selection
        max_sim = {c.item_id: 0.0 for c in pool}

        while pool and len(selected) < k:
            best_idx, best_value = None, None
            for idx, cand in enumerate(pool):
                value = lam * (cand.score / scale) - (1.0 - lam) * max_sim[cand.item_id]
                if best_value is None or value > best_value:
                    best_idx, best_value = idx, value
            chosen = pool.pop(best_idx)
            if chosen.item_id in selected_ids:
                continue
            selected.append(chosen)
            selected_ids.add(chosen.item_id)
            chosen_tags = tags[chosen.item_id]
            for cand in pool:
                sim = jaccard(tags[cand.item_id], chosen_tags)
                if sim > max_sim[cand.item_id]:
                    max_sim[cand.item_id] = sim

        return selected
