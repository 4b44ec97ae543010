"""
Federated round protocol messages.

Coordinator -> client: KeyAdvertisement request (implicit), RoundInit,
UnmaskRequest. Client -> coordinator: KeyAdvertisement, ClientUpload,
UnmaskResponse. The coordinator publishes a RoundResult per round.
"""

from typing import Any, Dict, Mapping, Optional, Tuple
from dataclasses import dataclass, field

import numpy as np


@dataclass(frozen=True)
class KeyAdvertisement:
    client_id: str
    round_id: str
    dh_public: bytes


@dataclass(frozen=True)
class RoundInit:
    """
    Round announcement sent to every cohort member.

    ``item_factors`` is the current global model (read-only); ``peers``
    maps every cohort member to its X25519 public key for this round.
    """
    round_id: str
    version: int
    cohort_size: int
    deadline: float
    item_factors: np.ndarray
    item_ids: Tuple[str, ...]
    aggregator_public_key: bytes
    peers: Mapping[str, bytes]
    clip_norm: float
    noise_std: float
    fixed_point_bits: int
    max_sample_count: int


@dataclass(frozen=True)
class ClientUpload:
    round_id: str
    client_id: str
    encrypted_payload: bytes
    encrypted_key: bytes
    nonce: bytes
    claimed_sample_count: int


@dataclass(frozen=True)
class UnmaskRequest:
    round_id: str
    survivors: Tuple[str, ...]
    dropped: Tuple[str, ...]


@dataclass(frozen=True)
class UnmaskResponse:
    round_id: str
    client_id: str
    self_seed: bytes
    pairwise_seeds: Mapping[str, bytes]


@dataclass
class RoundResult:
    """Outcome of one round; ``new_version`` is None unless ``applied``."""
    round_id: str
    status: str
    applied: bool
    model_version: Optional[int]
    new_version: Optional[int] = None
    metrics: Dict[str, Any] = field(default_factory=dict)
