"""
Core records: users, items, interaction edges and trust components.

Users keep only a bounded recency window of interactions; edges are
immutable once recorded and are decayed at read time by the graph.
"""

from typing import Deque, Dict, FrozenSet, Iterable, Optional, Tuple
from dataclasses import dataclass, field
from collections import deque
from datetime import datetime
import math
import threading

import numpy as np

DEFAULT_HISTORY_WINDOW = 50
MAX_RATING = 5.0


@dataclass(frozen=True)
class Interaction:
    """One entry of a user's recency window."""
    item_id: str
    rating: float
    timestamp: datetime


@dataclass(frozen=True)
class InteractionEdge:
    """
    Immutable (user, item, weight, timestamp) edge.

    Weight is derived from an explicit rating when present, otherwise
    from engagement (e.g. normalized dwell time in [0, 1]).
    """
    user_id: str
    item_id: str
    weight: float
    timestamp: datetime

    @classmethod
    def from_signal(
        cls,
        user_id: str,
        item_id: str,
        timestamp: datetime,
        rating: Optional[float] = None,
        engagement: Optional[float] = None,
        max_rating: float = MAX_RATING
    ) -> 'InteractionEdge':
        if rating is None and engagement is None:
            raise ValueError("Interaction needs a rating or an engagement signal")
        if rating is not None:
            weight = float(np.clip(rating / max_rating, 0.0, 1.0))
            if engagement is not None:
                weight = 0.5 * weight + 0.5 * float(np.clip(engagement, 0.0, 1.0))
        else:
            weight = float(np.clip(engagement, 0.0, 1.0))
        return cls(user_id, item_id, weight, timestamp)

    def decayed_weight(self, as_of: datetime, half_life_days: float) -> float:
        """Weight after exponential decay; the stored edge is never mutated."""
        age_days = max((as_of - self.timestamp).total_seconds() / 86400.0, 0.0)
        if half_life_days <= 0:
            return self.weight
        return self.weight * math.pow(0.5, age_days / half_life_days)


@dataclass(frozen=True)
class TrustComponents:
    """Trust inputs supplied by external metadata, each in [0, 1]."""
    source_reliability: float = 1.0
    metadata_accuracy: float = 1.0
    availability_confidence: float = 1.0
    recommendation_quality: float = 1.0
    user_preference_confidence: float = 1.0
    days_since_verification: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        return {
            'source_reliability': self.source_reliability,
            'metadata_accuracy': self.metadata_accuracy,
            'availability_confidence': self.availability_confidence,
            'recommendation_quality': self.recommendation_quality,
            'user_preference_confidence': self.user_preference_confidence,
        }


@dataclass
class Item:
    """Content item as published by the ingestion collaborator."""
    item_id: str
    tags: FrozenSet[str] = frozenset()
    trust: TrustComponents = field(default_factory=TrustComponents)
    title: Optional[str] = None
    features: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        self.tags = frozenset(self.tags)


@dataclass
class User:
    """
    User record, created on first interaction.

    ``history`` is a ring buffer: only the most recent ``window``
    interactions are retained. Readers on other threads take a copy via
    ``recent()``. ``preference`` is written only by local (on-device)
    training.
    """
    user_id: str
    window: int = DEFAULT_HISTORY_WINDOW
    preference: Optional[np.ndarray] = None
    privacy_budget_consumed: float = 0.0
    history: Deque[Interaction] = field(default=None)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.history is None:
            self.history = deque(maxlen=self.window)
        elif not isinstance(self.history, deque) or self.history.maxlen != self.window:
            self.history = deque(self.history, maxlen=self.window)

    def record(self, item_id: str, rating: float, timestamp: datetime) -> None:
        entry = Interaction(item_id, float(rating), timestamp)
        with self._lock:
            self.history.append(entry)

    def recent(self) -> Tuple[Interaction, ...]:
        """Copy of the recency window, oldest first."""
        with self._lock:
            return tuple(self.history)

    def recent_items(self) -> Iterable[str]:
        return [entry.item_id for entry in self.recent()]
