"""
Common types for the scoring strategies.

Strategies form a closed set (``StrategyKind``) with one uniform
capability, ``score(context) -> StrategyOutcome``. An outcome is one of:

- OK: a ranked candidate list
- ABSTAIN: the strategy has nothing meaningful to say (cold start, no
  model); excluded from fusion, not a degradation
- PARTIAL: the strategy failed or timed out; excluded from fusion and the
  response is marked degraded
"""

from typing import Any, Dict, FrozenSet, List, Optional, Tuple
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
import threading

import numpy as np

from recsys.data.entities import Interaction, User
from recsys.data.graph import GraphSnapshot


class StrategyKind(str, Enum):
    COLLABORATIVE = 'collaborative'
    CONTENT = 'content'
    GRAPH = 'graph'


class StrategyStatus(str, Enum):
    OK = 'ok'
    ABSTAIN = 'abstain'
    PARTIAL = 'partial'


@dataclass(frozen=True)
class Evidence:
    """
    Traversal that produced a candidate.

    ``path`` holds node labels from the user to the item, e.g.
    ('u1', 'item_a', 'u7', 'item_b').
    """
    relation: str
    path: Tuple[str, ...]
    strength: float = 0.0


@dataclass(frozen=True)
class Candidate:
    item_id: str
    score: float
    rank: int
    evidence: Optional[Evidence] = None


@dataclass
class StrategyOutcome:
    kind: StrategyKind
    status: StrategyStatus
    candidates: List[Candidate] = field(default_factory=list)
    reason: str = ""
    model_version: Optional[int] = None

    @classmethod
    def ok(cls, kind, candidates, model_version=None, reason="") -> 'StrategyOutcome':
        return cls(kind, StrategyStatus.OK, list(candidates), reason, model_version)

    @classmethod
    def abstain(cls, kind, reason) -> 'StrategyOutcome':
        return cls(kind, StrategyStatus.ABSTAIN, [], reason)

    @classmethod
    def partial(cls, kind, reason) -> 'StrategyOutcome':
        return cls(kind, StrategyStatus.PARTIAL, [], reason)


@dataclass(frozen=True)
class ScoringContext:
    """
    Everything a strategy needs for one request; shared read-only.

    ``history`` is a copy of the user's recency window taken when the
    request started; later interactions do not show up in it.
    """
    user_id: str
    snapshot: GraphSnapshot
    user: Optional[User]
    exclude: FrozenSet[int]
    limit: int
    context: Dict[str, Any] = field(default_factory=dict)
    history: Tuple[Interaction, ...] = ()


class Strategy(ABC):
    kind: StrategyKind

    @abstractmethod
    def score(self, ctx: ScoringContext) -> StrategyOutcome:
        ...


def rank_items(
    scores: np.ndarray,
    exclude: FrozenSet[int],
    limit: int
) -> List[Tuple[int, float]]:
    """
    Top ``limit`` (item position, score) pairs over a snapshot-aligned score vector.

    Non-finite scores and excluded positions are dropped. Snapshot item
    positions follow item-id order, so the stable sort breaks score ties
    by item id.
    """
    scores = np.asarray(scores, dtype=np.float64).copy()
    scores[~np.isfinite(scores)] = -np.inf
    if exclude:
        scores[np.fromiter(exclude, dtype=np.int64)] = -np.inf
    order = np.argsort(-scores, kind='stable')
    ranked = []
    for pos in order:
        if len(ranked) >= limit or scores[pos] == -np.inf:
            break
        ranked.append((int(pos), float(scores[pos])))
    return ranked


def align_items(model_item_ids, snapshot: GraphSnapshot) -> np.ndarray:
    """For each snapshot item position, the model row index (or -1)."""
    index = {str(iid): row for row, iid in enumerate(model_item_ids)}
    return np.array([index.get(iid, -1) for iid in snapshot.item_ids], dtype=np.int64)


class AlignmentCache:
    """``align_items`` memoized on the most recent snapshot version."""

    def __init__(self, model_item_ids):
        self.item_ids = [str(i) for i in model_item_ids]
        self._cached: Optional[Tuple[int, np.ndarray]] = None
        self._lock = threading.Lock()

    def rows(self, snapshot: GraphSnapshot) -> np.ndarray:
        with self._lock:
            cached = self._cached
        if cached is not None and cached[0] == snapshot.version:
            return cached[1]
        rows = align_items(self.item_ids, snapshot)
        with self._lock:
            self._cached = (snapshot.version, rows)
        return rows
