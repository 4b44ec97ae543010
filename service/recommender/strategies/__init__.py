"""
Scoring strategies: collaborative (ALS), content-based, graph-neural.
"""

from recsys.registry import ModelRegistry

from .base import (
    Candidate,
    Evidence,
    ScoringContext,
    Strategy,
    StrategyKind,
    StrategyOutcome,
    StrategyStatus,
    rank_items,
)
from .collaborative import CollaborativeModel, CollaborativeStrategy, register_collaborative
from .content import ContentStrategy
from .graph_neural import GraphModel, GraphNeuralStrategy, register_graph


def register_model_strategies(registry: ModelRegistry) -> None:
    """Install builders and warm-up hooks for every model-backed strategy."""
    register_collaborative(registry)
    register_graph(registry)


__all__ = [
    'Candidate',
    'Evidence',
    'ScoringContext',
    'Strategy',
    'StrategyKind',
    'StrategyOutcome',
    'StrategyStatus',
    'rank_items',
    'CollaborativeModel',
    'CollaborativeStrategy',
    'ContentStrategy',
    'GraphModel',
    'GraphNeuralStrategy',
    'register_collaborative',
    'register_graph',
    'register_model_strategies',
]
