"""
Error taxonomy for the recommendation core.

Cold-start and strategy timeouts are not exceptions: they are outcome
variants handled by the fusion pipeline (see
``service.recommender.strategies.base.StrategyStatus``). The classes here
cover operator-visible faults and per-upload errors.

Example:
    >>> from recsys.exceptions import PrivacyBudgetExhausted
    >>> try:
    ...     coordinator.run_round(clients)
    ... except PrivacyBudgetExhausted as e:
    ...     alert_privacy_budget_exhausted(e.spent, e.ceiling)
"""

from typing import Optional, Tuple


class RecsysError(Exception):
    """Base class for all recommendation core errors."""


class ModelLoadFailure(RecsysError):
    """A published model version failed to load, validate or warm up."""

    def __init__(self, strategy: str, version: int, reason: str):
        self.strategy = strategy
        self.version = version
        self.reason = reason
        super().__init__(f"Failed to load {strategy} v{version}: {reason}")


class InvalidStateTransition(RecsysError):
    """A model version was asked to move to a state it cannot reach."""


class ArtifactExistsError(RecsysError):
    """Artifact store is append-only; (strategy, version) already published."""


class PrivacyBudgetExhausted(RecsysError):
    """
    Terminal condition: the next federated round would exceed the
    configured (epsilon, delta) ceiling.
    """

    def __init__(
        self,
        spent: Tuple[float, float],
        ceiling: Tuple[float, float],
        projected: Optional[Tuple[float, float]] = None
    ):
        self.spent = spent
        self.ceiling = ceiling
        self.projected = projected
        msg = (
            f"Privacy budget exhausted: spent eps={spent[0]:.4f}, delta={spent[1]:.2e}; "
            f"ceiling eps={ceiling[0]:.4f}, delta={ceiling[1]:.2e}"
        )
        if projected is not None:
            msg += f"; next round would reach eps={projected[0]:.4f}, delta={projected[1]:.2e}"
        super().__init__(msg)


class MalformedClientUpload(RecsysError):
    """A client upload could not be decoded; it is dropped from aggregation."""

    def __init__(self, client_id: str, reason: str):
        self.client_id = client_id
        self.reason = reason
        super().__init__(f"Malformed upload from {client_id}: {reason}")


class AggregationQuorumNotMet(RecsysError):
    """Fewer valid uploads than ``n_min`` arrived before the round deadline."""

    def __init__(self, round_id: str, received: int, required: int):
        self.round_id = round_id
        self.received = received
        self.required = required
        super().__init__(
            f"Round {round_id}: quorum not met ({received}/{required} uploads)"
        )


class StaleBaseVersion(RecsysError):
    """The active version moved while an update derived from an older one was in flight."""

    def __init__(self, strategy: str, expected: Optional[int], active: Optional[int]):
        self.strategy = strategy
        self.expected = expected
        self.active = active
        super().__init__(f"{strategy}: update built on v{expected} but v{active} is active")
