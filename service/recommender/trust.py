"""
Trust Filter.

    trust₀   = Σ_c weight_c · component_c
    trust(t) = max(0, trust₀ · (1 − decay · days_since_verification))

Items below the threshold are removed. If nothing in the page clears the
threshold, the single highest-trust item is kept and marked low
confidence (first in rank order on ties) so a page is never empty.
"""

from typing import List, Optional, Sequence, Tuple, Callable
import logging

from recsys.config import TrustConfig
from recsys.data.entities import TrustComponents
from .fusion import FusedCandidate

logger = logging.getLogger(__name__)


def trust_score(
    components: TrustComponents,
    weights: dict,
    decay_per_day: float = 0.01
) -> float:
    values = components.as_dict()
    base = sum(float(weights.get(name, 0.0)) * value for name, value in values.items())
    days = max(float(components.days_since_verification), 0.0)
    return max(0.0, base * (1.0 - decay_per_day * days))


class TrustFilter:
    def __init__(self, config: Optional[TrustConfig] = None):
        self.config = config or TrustConfig()

    def score(self, components: TrustComponents) -> float:
        return trust_score(components, self.config.component_weights, self.config.decay_per_day)

    def apply(
        self,
        candidates: Sequence[FusedCandidate],
        trust_of: Callable[[str], TrustComponents]
    ) -> Tuple[List[FusedCandidate], bool]:
        """
        Annotate ``trust_score`` and drop items under the threshold.

        Returns:
            (kept candidates in input order, low_confidence flag)
        """
        if not candidates:
            return [], False

        for cand in candidates:
            cand.trust_score = self.score(trust_of(cand.item_id))

        kept = [c for c in candidates if c.trust_score >= self.config.threshold]
        if kept:
            dropped = len(candidates) - len(kept)
            if dropped:
                logger.debug(f"Trust filter removed {dropped}/{len(candidates)} candidates")
            return kept, False

        best = candidates[0]
        for cand in candidates[1:]:
            if cand.trust_score > best.trust_score:
                best = cand
        best.low_confidence = True
        logger.warning(
            f"No candidate clears trust threshold {self.config.threshold}; "
            f"keeping {best.item_id} (trust={best.trust_score:.3f}) as low confidence"
        )
        return [best], True
