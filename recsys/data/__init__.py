"""
Data Module.

Read-side data model consumed by the recommendation core:
- entities: User, Item, InteractionEdge, TrustComponents
- graph: InteractionGraph (ingestion side) and GraphSnapshot (read-only arena)
- embedding_store: versioned user/item/taxonomy embeddings
"""

from .entities import (
    Interaction,
    InteractionEdge,
    Item,
    TrustComponents,
    User,
    DEFAULT_HISTORY_WINDOW,
)
from .graph import InteractionGraph, GraphSnapshot, utcnow
from .embedding_store import EmbeddingStore, EmbeddingVersion, l2_normalize

__all__ = [
    'Interaction',
    'InteractionEdge',
    'Item',
    'TrustComponents',
    'User',
    'DEFAULT_HISTORY_WINDOW',
    'InteractionGraph',
    'GraphSnapshot',
    'utcnow',
    'EmbeddingStore',
    'EmbeddingVersion',
    'l2_normalize',
]
