"""
Model Module.

Submodules:
    als: ALS matrix factorization (collaborative strategy)
    gnn: Graph-neural recommender (sampling, attention layers, BPR trainer)
"""

__all__ = ['als', 'gnn']
