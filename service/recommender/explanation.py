"""
Explanation generator.

Turns the evidence attached by each strategy into one human-readable
sentence per item. The strongest contributing strategy's evidence is
used; items that only came from the popularity fallback get a generic
popularity line.
"""

from typing import Callable, Optional
import logging

from .fusion import FusedCandidate
from .strategies.base import Evidence

logger = logging.getLogger(__name__)

TEMPLATES = {
    'latent_neighbor': "Recommended because you liked {anchor}",
    'content_similar': "Similar in content to {anchor}, which you interacted with",
    'graph_path': "People who interacted with {anchor} also interacted with {item}",
    'graph_embedding': "Close to your interests in the interaction graph",
    'popular': "Popular right now",
}
DEFAULT_TEMPLATE = "Recommended for you"


class ExplanationGenerator:
    """
    Args:
        title_of: optional lookup from item id to a display title; ids are
            used verbatim when it is missing or returns None.
    """

    def __init__(self, title_of: Optional[Callable[[str], Optional[str]]] = None):
        self.title_of = title_of

    def _name(self, item_id: str) -> str:
        if self.title_of is None:
            return item_id
        title = self.title_of(item_id)
        return title if title else item_id

    def _anchor(self, evidence: Evidence) -> Optional[str]:
        # path is (user, history item, ..., candidate); the anchor is the
        # first history item
        if len(evidence.path) >= 3:
            return evidence.path[1]
        return None

    def render(self, evidence: Evidence, item_id: str) -> str:
        template = TEMPLATES.get(evidence.relation, DEFAULT_TEMPLATE)
        anchor = self._anchor(evidence)
        if '{anchor}' in template and anchor is None:
            return DEFAULT_TEMPLATE
        return template.format(
            anchor=self._name(anchor) if anchor else '',
            item=self._name(item_id)
        )

    def explain(self, candidate: FusedCandidate, fallback_method: Optional[str] = None) -> str:
        if candidate.evidence:
            # strongest contribution wins, strategy name breaks ties
            name = max(
                candidate.evidence,
                key=lambda s: (candidate.contributions.get(s, 0.0), s)
            )
            return self.render(candidate.evidence[name], candidate.item_id)
        if fallback_method == 'popularity':
            return TEMPLATES['popular']
        return DEFAULT_TEMPLATE
