"""
ALS Matrix Factorization Training.

Implicit-feedback ALS (Hu, Koren & Volinsky) on decayed interaction
weights, fitted with ``implicit.als.AlternatingLeastSquares``:

    minimize  Σ_(u,i) c_ui (p_ui - U[u]·V[i])² + λ (‖U‖² + ‖V‖²)

    p_ui = 1 if r_ui > 0 else 0
    c_ui = α r_ui for observed pairs, 1 otherwise

Factors are seeded here and handed to the model before ``fit`` so that a
fixed ``random_seed`` reproduces the run. Rows with zero interactions are
restored to their initialization afterwards; callers treat them as
cold-start through ``trained_users``. A row that comes back non-finite is
set to NaN and counted; the serving layer falls back to popularity for
that user.

Example:
    >>> trainer = ALSTrainer(factors=64, regularization=0.01, alpha=10.0)
    >>> summary = trainer.fit(snapshot.interactions)
    >>> trainer.U.shape, trainer.V.shape
"""

import logging
import time
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field

import numpy as np
from scipy.sparse import csr_matrix
from implicit.als import AlternatingLeastSquares

logger = logging.getLogger(__name__)


@dataclass
class TrainingHistory:
    """Per-epoch loss and wall time."""
    epochs: List[int] = field(default_factory=list)
    losses: List[float] = field(default_factory=list)
    durations: List[float] = field(default_factory=list)

    def add_epoch(self, epoch: int, loss: float, duration: float):
        self.epochs.append(epoch)
        self.losses.append(loss)
        self.durations.append(duration)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'epochs': self.epochs,
            'losses': self.losses,
            'durations': self.durations
        }


def implicit_loss(
    C: csr_matrix,
    U: np.ndarray,
    V: np.ndarray,
    regularization: float
) -> float:
    """
    Weighted implicit-feedback loss for confidence matrix ``C``.

    The dense part Σ_all (U[u]·V[i])² is computed as the trace of
    (UᵀU)(VᵀV); observed pairs then swap their unit-weight zero-target
    term for the confidence-weighted one.
    """
    U = np.asarray(U, dtype=np.float64)
    V = np.asarray(V, dtype=np.float64)
    u_ok = np.all(np.isfinite(U), axis=1)
    v_ok = np.all(np.isfinite(V), axis=1)
    Uf = np.where(u_ok[:, None], U, 0.0)
    Vf = np.where(v_ok[:, None], V, 0.0)

    dense = float(np.sum((Uf.T @ Uf) * (Vf.T @ Vf)))
    coo = C.tocoo()
    s = np.einsum('ij,ij->i', Uf[coo.row], Vf[coo.col])
    observed = float(np.sum(coo.data * (1.0 - s) ** 2 - s ** 2))
    reg = regularization * (float(np.sum(Uf ** 2)) + float(np.sum(Vf ** 2)))
    return dense + observed + reg


class ALSTrainer:
    """
    Train ALS factors with per-epoch loss tracking.

    ``implicit`` always runs the configured number of epochs; convergence
    is reported as the first epoch whose loss moved by less than
    ``tolerance``.

    Attributes:
        U: User factors (num_users, factors); NaN rows mark failed solves
        V: Item factors (num_items, factors)
        trained_users: Boolean mask of users that had interactions
        trained_items: Boolean mask of items that had interactions
        history: TrainingHistory
        converged_epoch: First epoch under tolerance, or None
    """

    def __init__(
        self,
        factors: int = 64,
        regularization: float = 0.01,
        epochs: int = 50,
        alpha: float = 10.0,
        tolerance: float = 1e-4,
        init_scale: float = 0.01,
        random_seed: int = 42,
        num_threads: int = 0
    ):
        if regularization <= 0:
            raise ValueError("regularization must be positive to keep normal equations invertible")
        if alpha <= 0:
            raise ValueError(f"alpha must be positive, got {alpha}")
        self.factors = factors
        self.regularization = regularization
        self.epochs = epochs
        self.alpha = alpha
        self.tolerance = tolerance
        self.init_scale = init_scale
        self.random_seed = random_seed
        self.num_threads = num_threads

        self.model: Optional[AlternatingLeastSquares] = None
        self.U: Optional[np.ndarray] = None
        self.V: Optional[np.ndarray] = None
        self.trained_users: Optional[np.ndarray] = None
        self.trained_items: Optional[np.ndarray] = None
        self.history = TrainingHistory()
        self.converged_epoch: Optional[int] = None
        self.is_fitted = False

        logger.info(
            f"ALSTrainer initialized: factors={factors}, reg={regularization}, "
            f"alpha={alpha}, epochs={epochs}, tol={tolerance}"
        )

    @property
    def converged(self) -> bool:
        return self.converged_epoch is not None

    def _build_model(self) -> AlternatingLeastSquares:
        return AlternatingLeastSquares(
            factors=self.factors,
            regularization=self.regularization,
            alpha=self.alpha,
            iterations=self.epochs,
            calculate_training_loss=False,
            random_state=self.random_seed,
            use_gpu=False,
            dtype=np.float32,
            num_threads=self.num_threads
        )

    def _on_epoch(self, C: csr_matrix, iteration: int, elapsed: float) -> None:
        epoch = iteration + 1
        loss = implicit_loss(C, self.model.user_factors, self.model.item_factors, self.regularization)
        previous = self.history.losses[-1] if self.history.losses else None
        self.history.add_epoch(epoch, loss, elapsed)

        if self.converged_epoch is None and previous is not None and abs(previous - loss) < self.tolerance:
            self.converged_epoch = epoch
            logger.info(f"Converged at epoch {epoch} (loss delta < {self.tolerance})")
        logger.debug(f"Epoch {epoch}/{self.epochs}: loss={loss:.6f}, time={elapsed:.2f}s")

    def _mark_non_finite(self, factors: np.ndarray) -> int:
        bad = ~np.all(np.isfinite(factors), axis=1)
        factors[bad] = np.nan
        return int(bad.sum())

    def fit(self, R: csr_matrix, show_progress: bool = True) -> Dict[str, Any]:
        """
        Train factors on a (num_users, num_items) interaction matrix.

        Returns:
            Training summary dictionary
        """
        R = csr_matrix(R, dtype=np.float32)
        R.eliminate_zeros()
        num_users, num_items = R.shape
        C = R.multiply(self.alpha).tocsr()

        rng = np.random.default_rng(self.random_seed)
        U0 = rng.normal(0.0, self.init_scale, (num_users, self.factors)).astype(np.float32)
        V0 = rng.normal(0.0, self.init_scale, (num_items, self.factors)).astype(np.float32)
        self.trained_users = np.diff(R.indptr) > 0
        self.trained_items = np.diff(R.tocsc().indptr) > 0
        self.history = TrainingHistory()
        self.converged_epoch = None

        self.model = self._build_model()
        self.model.user_factors = U0.copy()
        self.model.item_factors = V0.copy()

        logger.info(
            f"Starting ALS training: users={num_users:,} ({self.trained_users.sum():,} active), "
            f"items={num_items:,} ({self.trained_items.sum():,} active), nnz={R.nnz:,}"
        )
        start_time = time.time()
        self.model.fit(
            R,
            show_progress=show_progress,
            callback=lambda iteration, elapsed, *rest: self._on_epoch(C, iteration, elapsed)
        )

        U = np.array(self.model.user_factors, dtype=np.float64)
        V = np.array(self.model.item_factors, dtype=np.float64)
        U[~self.trained_users] = U0[~self.trained_users]
        V[~self.trained_items] = V0[~self.trained_items]
        nan_rows = self._mark_non_finite(U)
        nan_items = self._mark_non_finite(V)
        if nan_rows or nan_items:
            logger.warning(f"ALS produced non-finite rows: users={nan_rows}, items={nan_items}")
        self.U, self.V = U, V

        self.is_fitted = True
        total_duration = time.time() - start_time
        logger.info(
            f"ALS training complete: {len(self.history.epochs)} epochs in {total_duration:.2f}s, "
            f"final_loss={self.history.losses[-1] if self.history.losses else float('nan'):.6f}"
        )

        return {
            'total_duration_seconds': total_duration,
            'epochs_completed': len(self.history.epochs),
            'converged': self.converged,
            'converged_epoch': self.converged_epoch,
            'final_loss': self.history.losses[-1] if self.history.losses else None,
            'nan_rows': nan_rows,
            'nan_items': nan_items,
            'U_shape': list(self.U.shape),
            'V_shape': list(self.V.shape),
            'history': self.history.to_dict()
        }

    def to_params(self, user_ids: List[str], item_ids: List[str]) -> Dict[str, np.ndarray]:
        """Parameter blob for a collaborative model artifact."""
        if not self.is_fitted:
            raise RuntimeError("ALSTrainer.fit() must be called first")
        return {
            'user_factors': self.U.astype(np.float32),
            'item_factors': self.V.astype(np.float32),
            'trained_users': self.trained_users,
            'user_ids': np.asarray(user_ids, dtype=str),
            'item_ids': np.asarray(item_ids, dtype=str),
        }
