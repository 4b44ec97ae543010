"""
Ranking metrics used for validation during offline training.

Formulas:
    Recall@K    = |Top-K ∩ Relevant| / |Relevant|
    Precision@K = |Top-K ∩ Relevant| / K
    NDCG@K      = DCG@K / IDCG@K with binary relevance, log2 discount

Example:
    >>> recall_at_k([3, 1, 7], {1, 9}, k=2)
    0.5
"""

from typing import Dict, List, Set, Union, Iterable
import logging

import numpy as np

logger = logging.getLogger(__name__)

Predictions = Union[List[int], np.ndarray]


def _top_k(predictions: Predictions, k: int) -> List[int]:
    return list(predictions[:max(min(k, len(predictions)), 0)])


def recall_at_k(predictions: Predictions, ground_truth: Set[int], k: int) -> float:
    """Compute Recall@K; 0.0 when there is nothing relevant to find."""
    if len(ground_truth) == 0 or len(predictions) == 0:
        return 0.0
    hits = len(set(_top_k(predictions, k)) & ground_truth)
    return hits / len(ground_truth)


def precision_at_k(predictions: Predictions, ground_truth: Set[int], k: int) -> float:
    """Compute Precision@K."""
    if k <= 0 or len(predictions) == 0:
        return 0.0
    hits = len(set(_top_k(predictions, k)) & ground_truth)
    return hits / k


def ndcg_at_k(predictions: Predictions, ground_truth: Set[int], k: int) -> float:
    """Compute NDCG@K with binary relevance."""
    if len(ground_truth) == 0 or len(predictions) == 0:
        return 0.0
    top = _top_k(predictions, k)
    dcg = sum(1.0 / np.log2(rank + 2) for rank, item in enumerate(top) if item in ground_truth)
    ideal_hits = min(len(ground_truth), k)
    idcg = sum(1.0 / np.log2(rank + 2) for rank in range(ideal_hits))
    return float(dcg / idcg) if idcg > 0 else 0.0


def evaluate_rankings(
    rankings: Dict[int, Predictions],
    ground_truth: Dict[int, Set[int]],
    k_values: Iterable[int] = (10,)
) -> Dict[str, float]:
    """
    Average recall/ndcg over users that have ground truth.

    Returns:
        Dict like {'recall@10': ..., 'ndcg@10': ...}
    """
    metrics: Dict[str, float] = {}
    users = [u for u in ground_truth if ground_truth[u] and u in rankings]
    for k in k_values:
        if not users:
            metrics[f'recall@{k}'] = 0.0
            metrics[f'ndcg@{k}'] = 0.0
            continue
        metrics[f'recall@{k}'] = float(np.mean([
            recall_at_k(rankings[u], ground_truth[u], k) for u in users
        ]))
        metrics[f'ndcg@{k}'] = float(np.mean([
            ndcg_at_k(rankings[u], ground_truth[u], k) for u in users
        ]))
    return metrics
