"""
Differential privacy for federated rounds.

Per client, per round (Gaussian mechanism):

    d_clipped = d * min(1, C / ‖d‖₂)
    d_noised  = d_clipped + N(0, σ² I),   σ = C · z / n

with clip norm C, noise multiplier z and minimum cohort n. Each round is
accounted as (ε, δ)-DP. Across k rounds the accountant uses the tighter of

    basic:     ε_k = k ε,                                  δ_k = k δ
    advanced:  ε_k = sqrt(2k ln(1/δ')) ε + k ε (e^ε − 1),  δ_k = k δ + δ'

and refuses a round before it starts if the projected total would exceed
the configured ceiling.
"""

from typing import Dict, Iterable, Optional, Tuple
import logging
import math
import threading

import numpy as np

from recsys.config import FederatedConfig
from recsys.exceptions import PrivacyBudgetExhausted

logger = logging.getLogger(__name__)


def clip_by_norm(delta: np.ndarray, clip_norm: float) -> np.ndarray:
    """Scale ``delta`` down to L2 norm ``clip_norm`` if it is larger."""
    norm = float(np.linalg.norm(delta))
    if norm <= clip_norm or norm == 0.0:
        return delta.astype(np.float64, copy=True)
    return delta * (clip_norm / norm)


def gaussian_noise_std(clip_norm: float, noise_multiplier: float, n_min: int) -> float:
    return clip_norm * noise_multiplier / n_min


def privatize(
    delta: np.ndarray,
    clip_norm: float,
    noise_std: float,
    rng: np.random.Generator
) -> np.ndarray:
    """Clip then add isotropic Gaussian noise."""
    clipped = clip_by_norm(delta, clip_norm)
    if noise_std <= 0:
        return clipped
    return clipped + rng.normal(0.0, noise_std, size=clipped.shape)


def compose(
    rounds: int,
    epsilon: float,
    delta: float,
    composition_delta: float
) -> Tuple[float, float]:
    """Total (ε, δ) after ``rounds`` rounds of an (ε, δ) mechanism."""
    if rounds <= 0:
        return 0.0, 0.0
    basic = (rounds * epsilon, rounds * delta)
    advanced_eps = (
        math.sqrt(2 * rounds * math.log(1.0 / composition_delta)) * epsilon
        + rounds * epsilon * (math.exp(epsilon) - 1.0)
    )
    advanced = (advanced_eps, rounds * delta + composition_delta)
    return advanced if advanced[0] < basic[0] else basic


class PrivacyAccountant:
    """
    Tracks model-level and per-client privacy spend across rounds.

    Example:
        >>> acct = PrivacyAccountant.from_config(FederatedConfig())
        >>> acct.check_round()          # raises PrivacyBudgetExhausted when over
        >>> acct.record_round(['c1', 'c2'])
        >>> acct.spent()
        (1.0, 1e-05)
    """

    def __init__(
        self,
        round_epsilon: float = 1.0,
        round_delta: float = 1e-5,
        composition_delta: float = 1e-6,
        max_epsilon: float = 8.0,
        max_delta: float = 1e-3
    ):
        self.round_epsilon = round_epsilon
        self.round_delta = round_delta
        self.composition_delta = composition_delta
        self.max_epsilon = max_epsilon
        self.max_delta = max_delta

        self.rounds = 0
        self.client_rounds: Dict[str, int] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: FederatedConfig) -> 'PrivacyAccountant':
        return cls(
            round_epsilon=config.round_epsilon,
            round_delta=config.round_delta,
            composition_delta=config.composition_delta,
            max_epsilon=config.max_epsilon,
            max_delta=config.max_delta
        )

    @property
    def ceiling(self) -> Tuple[float, float]:
        return self.max_epsilon, self.max_delta

    def _total(self, rounds: int) -> Tuple[float, float]:
        return compose(rounds, self.round_epsilon, self.round_delta, self.composition_delta)

    def spent(self) -> Tuple[float, float]:
        return self._total(self.rounds)

    def projected(self) -> Tuple[float, float]:
        """Total spend if one more round runs."""
        return self._total(self.rounds + 1)

    def can_run_round(self) -> bool:
        eps, delta = self.projected()
        return eps <= self.max_epsilon and delta <= self.max_delta

    def check_round(self) -> None:
        """
        Raises:
            PrivacyBudgetExhausted: if one more round would exceed the ceiling
        """
        if not self.can_run_round():
            raise PrivacyBudgetExhausted(self.spent(), self.ceiling, self.projected())

    def record_round(self, participants: Iterable[str]) -> Tuple[float, float]:
        """Charge one round to the model and to every participating client."""
        with self._lock:
            self.rounds += 1
            for client_id in participants:
                self.client_rounds[client_id] = self.client_rounds.get(client_id, 0) + 1
        eps, delta = self.spent()
        logger.info(f"Privacy spend after round {self.rounds}: eps={eps:.4f}, delta={delta:.2e}")
        return eps, delta

    def client_spent(self, client_id: str) -> Tuple[float, float]:
        return self._total(self.client_rounds.get(client_id, 0))

    def client_epsilon(self, client_id: str) -> float:
        return self.client_spent(client_id)[0]
