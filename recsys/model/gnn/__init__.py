"""
Graph-neural model: neighbor sampling, attention layers and BPR training.
"""

from .sampler import Block, NeighborSampler, TripletSampler
from .layers import GraphAttentionLayer, GraphNeuralRecommender
from .trainer import GNNTrainer, TrainingHistory, split_validation, STATE_PREFIX

__all__ = [
    'Block',
    'NeighborSampler',
    'TripletSampler',
    'GraphAttentionLayer',
    'GraphNeuralRecommender',
    'GNNTrainer',
    'TrainingHistory',
    'split_validation',
    'STATE_PREFIX',
]
