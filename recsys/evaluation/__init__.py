"""
Evaluation Module.

Ranking metrics used by the offline trainers for validation and early stopping.
"""

from .metrics import recall_at_k, precision_at_k, ndcg_at_k, evaluate_rankings

__all__ = ['recall_at_k', 'precision_at_k', 'ndcg_at_k', 'evaluate_rankings']
