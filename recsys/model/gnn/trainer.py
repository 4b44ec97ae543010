"""
Graph-Neural Model Training (offline).

BPR loss over sampled computation blocks:

    L = -mean_{(u, pos, neg)} log σ(score(u, pos) - score(u, neg))

with ``negatives_per_positive`` uniform negatives per positive, Adam,
gradient-norm clipping, mini-batches of positives, and early stopping on
validation Recall@K over a held-out split of each user's positives.
Validation edges are removed from the message-passing graph during
training so they cannot leak into the embeddings being scored.

The resulting parameter blob holds the model state dict, the node id
table, and precomputed final-layer item embeddings for serving.

Example:
    >>> trainer = GNNTrainer(GNNConfig(max_epochs=20))
    >>> summary = trainer.fit(graph.snapshot())
    >>> params = trainer.to_params()
"""

import logging
import time
from typing import Dict, Any, List, Optional, Set, Tuple
from dataclasses import dataclass, field

import numpy as np
import torch
from scipy.sparse import csr_matrix
from tqdm import tqdm

from recsys.config import GNNConfig, config_to_dict
from recsys.data.graph import GraphSnapshot
from recsys.evaluation.metrics import evaluate_rankings
from .layers import GraphNeuralRecommender
from .sampler import NeighborSampler, TripletSampler

logger = logging.getLogger(__name__)

STATE_PREFIX = 'state.'


@dataclass
class TrainingHistory:
    """
    Track training metrics across epochs.

    Attributes:
        epochs: Epoch numbers
        losses: Average BPR loss per epoch
        val_metrics: Validation metric dicts per epoch
        durations: Epoch durations in seconds
    """
    epochs: List[int] = field(default_factory=list)
    losses: List[float] = field(default_factory=list)
    val_metrics: List[Dict[str, float]] = field(default_factory=list)
    durations: List[float] = field(default_factory=list)

    def add_epoch(
        self,
        epoch: int,
        loss: float,
        duration: float,
        val_metrics: Optional[Dict[str, float]] = None
    ):
        self.epochs.append(epoch)
        self.losses.append(loss)
        self.durations.append(duration)
        self.val_metrics.append(val_metrics or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'epochs': self.epochs,
            'losses': self.losses,
            'val_metrics': self.val_metrics,
            'durations': self.durations
        }


def split_validation(
    snapshot: GraphSnapshot,
    fraction: float,
    rng: np.random.Generator
) -> Tuple[csr_matrix, Dict[int, Set[int]]]:
    """
    Hold out ``fraction`` of each user's positives (users with ≥ 2 positives).

    Returns:
        (train_interactions, validation_sets keyed by user position)
    """
    R = snapshot.interactions.tocoo()
    keep = np.ones(R.nnz, dtype=bool)
    validation: Dict[int, Set[int]] = {}
    if fraction <= 0:
        return snapshot.interactions, validation

    by_user: Dict[int, List[int]] = {}
    for idx, u in enumerate(R.row):
        by_user.setdefault(int(u), []).append(idx)

    for u, entries in by_user.items():
        if len(entries) < 2:
            continue
        n_val = max(1, int(round(len(entries) * fraction)))
        n_val = min(n_val, len(entries) - 1)
        held = rng.choice(entries, size=n_val, replace=False)
        keep[held] = False
        validation[u] = {int(R.col[i]) for i in held}

    train = csr_matrix(
        (R.data[keep], (R.row[keep], R.col[keep])),
        shape=snapshot.interactions.shape
    )
    return train, validation


class GNNTrainer:
    """
    Train the graph-neural recommender with BPR.

    Attributes:
        model: GraphNeuralRecommender
        history: TrainingHistory
        best_epoch: Epoch whose weights were kept
    """

    def __init__(self, config: Optional[GNNConfig] = None):
        self.config = config or GNNConfig()
        self.model: Optional[GraphNeuralRecommender] = None
        self.snapshot: Optional[GraphSnapshot] = None
        self.history = TrainingHistory()
        self.best_epoch = 0
        self.is_fitted = False

        torch.manual_seed(self.config.random_seed)
        logger.info(
            f"GNNTrainer initialized: dims={self.config.input_dim}->{list(self.config.layer_dims)}, "
            f"heads={list(self.config.heads)}, fanouts={list(self.config.fanouts)}"
        )

    def _bpr_step(
        self,
        optimizer: torch.optim.Optimizer,
        sampler: NeighborSampler,
        users: np.ndarray,
        pos_items: np.ndarray,
        neg_items: np.ndarray,
        num_users: int,
        rng: np.random.Generator
    ) -> float:
        """One mini-batch update; items are positions, users are node indices."""
        pos_nodes = pos_items + num_users
        neg_nodes = neg_items + num_users

        targets, inverse = np.unique(
            np.concatenate([users, pos_nodes, neg_nodes.ravel()]), return_inverse=True
        )
        input_nodes, blocks = sampler.sample_blocks(targets, rng)
        emb = self.model(torch.as_tensor(input_nodes, dtype=torch.long), blocks)[:len(targets)]

        n = len(users)
        inverse = torch.as_tensor(inverse, dtype=torch.long)
        u_emb = emb[inverse[:n]]
        p_emb = emb[inverse[n:2 * n]]
        n_emb = emb[inverse[2 * n:]].view(n, neg_items.shape[1], -1)

        pos_scores = (u_emb * p_emb).sum(-1, keepdim=True)
        neg_scores = torch.einsum('bd,bkd->bk', u_emb, n_emb)
        loss = -torch.nn.functional.logsigmoid(pos_scores - neg_scores).mean()

        optimizer.zero_grad()
        loss.backward()
        torch.nn.utils.clip_grad_norm_(self.model.parameters(), self.config.grad_clip_norm)
        optimizer.step()
        return float(loss.item())

    def _validate(
        self,
        sampler: NeighborSampler,
        train: csr_matrix,
        validation: Dict[int, Set[int]],
        num_users: int,
        num_items: int
    ) -> Dict[str, float]:
        users = sorted(validation)
        if not users:
            return {}
        k = self.config.eval_k
        user_emb = self.model.embed_nodes(sampler, users, seed=self.config.random_seed)
        item_emb = self.model.embed_nodes(
            sampler, range(num_users, num_users + num_items), seed=self.config.random_seed
        )
        scores = user_emb @ item_emb.T
        rankings = {}
        for row, u in enumerate(users):
            seen = train.indices[train.indptr[u]:train.indptr[u + 1]]
            s = scores[row].copy()
            s[seen] = -np.inf
            rankings[u] = list(np.argsort(-s, kind='stable')[:k])
        return evaluate_rankings(rankings, validation, k_values=(k,))

    def fit(self, snapshot: GraphSnapshot, show_progress: bool = True) -> Dict[str, Any]:
        """
        Train on a graph snapshot.

        Returns:
            Training summary dictionary
        """
        cfg = self.config
        logger.info("=" * 60)
        logger.info("Starting graph-neural BPR training")
        logger.info("=" * 60)
        start_time = time.time()

        rng = np.random.default_rng(cfg.random_seed)
        self.snapshot = snapshot
        num_users, num_items = snapshot.num_users, snapshot.num_items
        if num_users == 0 or num_items < 2:
            raise ValueError("Graph needs at least one user and two items to train")

        train, validation = split_validation(snapshot, cfg.validation_fraction, rng)
        train_snapshot = GraphSnapshot(
            user_ids=snapshot.user_ids,
            item_ids=snapshot.item_ids,
            interactions=train,
            item_tags=snapshot.item_tags,
            item_trust=snapshot.item_trust,
            as_of=snapshot.as_of,
            version=snapshot.version
        )
        sampler = NeighborSampler(train_snapshot, cfg.fanouts)

        coo = train.tocoo()
        positive_pairs = np.stack([coo.row, coo.col], axis=1)
        user_pos_sets: Dict[int, Set[int]] = {}
        for u, i in positive_pairs:
            user_pos_sets.setdefault(int(u), set()).add(int(i))
        for u, items in validation.items():
            user_pos_sets.setdefault(u, set()).update(items)

        triplets = TripletSampler(
            positive_pairs, user_pos_sets, num_items,
            negatives=cfg.negatives_per_positive,
            random_seed=cfg.random_seed
        )

        self.model = GraphNeuralRecommender(
            num_nodes=snapshot.num_nodes,
            input_dim=cfg.input_dim,
            layer_dims=cfg.layer_dims,
            heads=cfg.heads,
            negative_slope=cfg.leaky_relu_slope,
            dropout=cfg.dropout
        )
        optimizer = torch.optim.Adam(
            self.model.parameters(), lr=cfg.learning_rate, weight_decay=cfg.weight_decay
        )

        logger.info(f"Positives: {len(positive_pairs):,}, validation users: {len(validation):,}")
        logger.info(f"Batch size: {cfg.batch_size}, negatives/positive: {cfg.negatives_per_positive}")

        metric_name = f'recall@{cfg.eval_k}'
        best_metric = -np.inf
        best_state = None
        patience_counter = 0
        self.history = TrainingHistory()

        for epoch in range(1, cfg.max_epochs + 1):
            epoch_start = time.time()
            self.model.train()
            users, pos_items, neg_items = triplets.sample_epoch()

            epoch_loss, num_batches = 0.0, 0
            batch_iterator = range(0, len(users), cfg.batch_size)
            if show_progress:
                batch_iterator = tqdm(
                    batch_iterator,
                    desc=f"Epoch {epoch}",
                    total=-(-len(users) // cfg.batch_size),
                    leave=False
                )
            for b in batch_iterator:
                epoch_loss += self._bpr_step(
                    optimizer, sampler,
                    users[b:b + cfg.batch_size],
                    pos_items[b:b + cfg.batch_size],
                    neg_items[b:b + cfg.batch_size],
                    num_users, rng
                )
                num_batches += 1
            epoch_loss /= max(num_batches, 1)

            val_metrics = self._validate(sampler, train, validation, num_users, num_items)
            duration = time.time() - epoch_start
            self.history.add_epoch(epoch, epoch_loss, duration, val_metrics)

            if show_progress:
                msg = f"Epoch {epoch}/{cfg.max_epochs}: loss={epoch_loss:.4f}, time={duration:.1f}s"
                if val_metrics:
                    msg += ", " + ", ".join(f"{k}={v:.4f}" for k, v in val_metrics.items())
                logger.info(msg)

            if not val_metrics:
                # Nothing held out; keep the latest weights
                self.best_epoch = epoch
                continue

            current = val_metrics[metric_name]
            if current > best_metric:
                best_metric = current
                self.best_epoch = epoch
                best_state = {k: v.detach().clone() for k, v in self.model.state_dict().items()}
                patience_counter = 0
            else:
                patience_counter += 1
                if patience_counter >= cfg.early_stopping_patience:
                    logger.info(f"Early stopping at epoch {epoch}")
                    logger.info(f"Best epoch: {self.best_epoch} with {metric_name}={best_metric:.4f}")
                    break

        if best_state is not None:
            self.model.load_state_dict(best_state)
            logger.info(f"Restored best model from epoch {self.best_epoch}")

        self.is_fitted = True
        total_duration = time.time() - start_time
        summary = {
            'total_duration_seconds': total_duration,
            'epochs_completed': len(self.history.epochs),
            'best_epoch': self.best_epoch,
            'final_loss': self.history.losses[-1] if self.history.losses else None,
            metric_name: None if best_metric == -np.inf else float(best_metric),
            'history': self.history.to_dict()
        }
        logger.info(f"Training complete in {total_duration:.1f}s ({len(self.history.epochs)} epochs)")
        return summary

    def to_params(self) -> Dict[str, np.ndarray]:
        """
        Parameter blob for a graph model artifact.

        Item embeddings are recomputed on the full snapshot (training and
        validation edges) with a fixed sampling seed.
        """
        if not self.is_fitted:
            raise RuntimeError("GNNTrainer.fit() must be called first")
        snap = self.snapshot
        sampler = NeighborSampler(snap, self.config.fanouts)
        item_nodes = range(snap.num_users, snap.num_nodes)
        item_embeddings = self.model.embed_nodes(sampler, item_nodes, seed=self.config.random_seed)

        params = {
            f'{STATE_PREFIX}{k}': v.detach().cpu().numpy()
            for k, v in self.model.state_dict().items()
        }
        params['item_embeddings'] = item_embeddings
        params['user_ids'] = np.asarray(snap.user_ids, dtype=str)
        params['item_ids'] = np.asarray(snap.item_ids, dtype=str)
        return params

    def artifact_metadata(self) -> Dict[str, Any]:
        return {
            'config': config_to_dict(self.config),
            'best_epoch': self.best_epoch,
        }
