"""
Hybrid Recommendation Core Package.

Submodules:
    data: users, items, interaction graph and embedding store
    model: ALS and graph-neural trainers
    registry: versioned artifacts and hot-swap of Active models
    federated: private federated updates of the collaborative model
    evaluation: offline ranking metrics
"""

__all__ = ['data', 'model', 'registry', 'federated', 'evaluation']
