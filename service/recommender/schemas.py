"""
Scoring request/response models.

These are the only types exchanged with the presentation collaborator.
"""

from typing import Any, Dict, List, Optional

import numpy as np
from pydantic import BaseModel, Field, ConfigDict


def sanitize_numpy_types(value: Any) -> Any:
    """Recursively convert numpy scalars/arrays into native Python types."""
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return float(value)
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.ndarray):
        return [sanitize_numpy_types(v) for v in value.tolist()]
    if isinstance(value, dict):
        return {k: sanitize_numpy_types(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [sanitize_numpy_types(v) for v in value]
    return value


class ScoringBaseModel(BaseModel):
    """Base model for scoring messages."""
    model_config = ConfigDict(extra='forbid')


class ScoringRequest(ScoringBaseModel):
    """Rank items for one user."""
    user_id: str = Field(..., min_length=1, description="User identifier")
    k: int = Field(default=10, ge=1, le=100, description="Number of items to return")
    context: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Optional request context (device, time of day, ...)"
    )


class ScoredItem(ScoringBaseModel):
    """One ranked item with its annotations."""
    item_id: str
    score: float
    trust_score: float
    explanation: str
    strategy_contributions: Dict[str, float]
    low_confidence: bool = False


class ScoringResponse(ScoringBaseModel):
    """Ranked, annotated list; ``partial`` marks degraded responses."""
    user_id: str
    items: List[ScoredItem]
    partial: bool = False
    degraded_strategies: List[str] = Field(default_factory=list)
    abstained_strategies: List[str] = Field(default_factory=list)
    model_versions: Dict[str, int] = Field(default_factory=dict)
    fallback_method: Optional[str] = None
    latency_ms: float = 0.0
