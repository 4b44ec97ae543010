"""
Popularity fallback.

Used when every strategy abstains (brand-new user, no active models) and
by the collaborative strategy for a user whose latent vector is
non-finite. Popularity is the decayed interaction mass per item in the
current graph snapshot; ties break by item id.

Example:
    >>> from service.recommender.fallback import popular_candidates
    >>> popular_candidates(graph.snapshot(), exclude=frozenset(), limit=10)
"""

from typing import FrozenSet, List

from recsys.data.graph import GraphSnapshot
from .strategies.base import Candidate, Evidence

FALLBACK_METHOD = 'popularity'


def popular_candidates(
    snapshot: GraphSnapshot,
    exclude: FrozenSet[int],
    limit: int
) -> List[Candidate]:
    """Top ``limit`` popular items not in ``exclude`` (item positions)."""
    ranked = snapshot.popular_items(limit, exclude=set(exclude))
    return [
        Candidate(
            item_id=snapshot.item_ids[pos],
            score=score,
            rank=rank,
            evidence=Evidence(relation='popular', path=(snapshot.item_ids[pos],), strength=score)
        )
        for rank, (pos, score) in enumerate(ranked, start=1)
    ]
