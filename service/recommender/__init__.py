"""
Recommender Service Package.

Hybrid scoring pipeline on top of the recsys core.

Main components:
- HybridRecommender: request pipeline (strategies, fusion, trust, MMR)
- FusionEngine: reciprocal rank fusion and MMR diversity re-ranking
- TrustFilter: trust-score gate with low-confidence fallback
- ExplanationGenerator: evidence-based explanations
- strategies: collaborative, content and graph-neural scorers

Example:
    >>> from service.recommender import HybridRecommender, ScoringRequest
    >>> recommender = HybridRecommender(graph, registry, embeddings)
    >>> response = recommender.recommend(ScoringRequest(user_id='u1', k=10))
"""

from .explanation import ExplanationGenerator
from .fallback import FALLBACK_METHOD, popular_candidates
from .fusion import FusedCandidate, FusionEngine, jaccard, normalize_weights
from .recommender import HybridRecommender
from .schemas import ScoredItem, ScoringRequest, ScoringResponse
from .strategies import register_model_strategies
from .trust import TrustFilter, trust_score

__all__ = [
    # Pipeline
    'HybridRecommender',

    # Fusion
    'FusedCandidate',
    'FusionEngine',
    'jaccard',
    'normalize_weights',

    # Trust & explanations
    'TrustFilter',
    'trust_score',
    'ExplanationGenerator',

    # Fallback
    'FALLBACK_METHOD',
    'popular_candidates',

    # Messages
    'ScoredItem',
    'ScoringRequest',
    'ScoringResponse',

    'register_model_strategies',
]
