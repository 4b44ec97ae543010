"""
Recommendation Service Package.

Serving layer for hybrid recommendations.

Components:
- recommender: request pipeline, strategies, fusion and trust filtering

Usage:
    from service import HybridRecommender, ScoringRequest

    rec = HybridRecommender(graph, registry, embeddings, config)
    response = rec.recommend(ScoringRequest(user_id='u1', k=10))
"""

from service.recommender import (
    HybridRecommender,
    ScoringRequest,
    ScoringResponse,
    register_model_strategies,
)

__all__ = [
    'HybridRecommender',
    'ScoringRequest',
    'ScoringResponse',
    'register_model_strategies',
]
