"""
Federated client (runs on the user's device).

Trains the collaborative model locally on the user's bounded recency
window only. The user's latent vector stays on the device (it is the
``User.preference`` embedding); only a clipped, noised, weighted,
masked and encrypted item-factor delta is uploaded.

Example:
    >>> client = FederatedClient(user, FederatedConfig())
    >>> adv = client.advertise(round_id)
    >>> client.participate(round_init, outbox)   # posts a ClientUpload
    >>> client.unmask(unmask_request)
"""

from typing import Dict, List, Optional, Tuple
from dataclasses import dataclass, field
import logging
import queue
import threading

import numpy as np
from cryptography.hazmat.primitives.asymmetric import x25519

from recsys.config import FederatedConfig
from recsys.data.entities import User, MAX_RATING
from .messages import KeyAdvertisement, RoundInit, ClientUpload, UnmaskRequest, UnmaskResponse
from .privacy import privatize
from .secure_aggregation import (
    generate_dh_keypair,
    derive_pairwise_seed,
    new_self_seed,
    encode_fixed_point,
    mask_update,
    encrypt_update,
)

logger = logging.getLogger(__name__)


@dataclass
class _RoundKeys:
    private_key: x25519.X25519PrivateKey
    self_seed: bytes
    peer_seeds: Dict[str, bytes] = field(default_factory=dict)


class FederatedClient:
    """One participant holding a single user's local data."""

    def __init__(
        self,
        user: User,
        config: Optional[FederatedConfig] = None,
        random_seed: Optional[int] = None,
        max_rating: float = MAX_RATING
    ):
        self.user = user
        self.client_id = user.user_id
        self.config = config or FederatedConfig()
        self.max_rating = max_rating
        self.rng = np.random.default_rng(random_seed)
        self._rounds: Dict[str, _RoundKeys] = {}
        self._lock = threading.Lock()

    # --- key agreement --------------------------------------------------------

    def advertise(self, round_id: str) -> KeyAdvertisement:
        """Generate this round's X25519 key pair and self-mask seed."""
        private, public = generate_dh_keypair()
        with self._lock:
            self._rounds[round_id] = _RoundKeys(private_key=private, self_seed=new_self_seed())
        return KeyAdvertisement(client_id=self.client_id, round_id=round_id, dh_public=public)

    # --- local training -------------------------------------------------------

    def local_examples(self, item_ids: Tuple[str, ...]) -> Tuple[np.ndarray, np.ndarray]:
        """(item positions, normalized ratings) from the recency window."""
        index = {iid: pos for pos, iid in enumerate(item_ids)}
        items: List[int] = []
        ratings: List[float] = []
        for entry in self.user.recent():
            pos = index.get(entry.item_id)
            if pos is None:
                continue
            items.append(pos)
            ratings.append(min(max(entry.rating / self.max_rating, 0.0), 1.0))
        return np.asarray(items, dtype=np.int64), np.asarray(ratings, dtype=np.float64)

    def local_update(self, init: RoundInit) -> Tuple[np.ndarray, int]:
        """
        A few epochs of mini-batch SGD on squared error.

        Returns:
            (item-factor delta, flattened; number of local examples)
        """
        cfg = self.config
        V_global = np.asarray(init.item_factors, dtype=np.float64)
        factors = V_global.shape[1]
        items, ratings = self.local_examples(init.item_ids)
        if len(items) == 0:
            return np.zeros(V_global.size), 0

        u = self.user.preference
        if u is None or np.shape(u) != (factors,) or not np.all(np.isfinite(u)):
            u = self.rng.normal(0.0, 0.01, factors)
        u = np.array(u, dtype=np.float64)
        V = V_global.copy()
        lr, reg = cfg.local_learning_rate, cfg.local_regularization

        for _ in range(cfg.local_epochs):
            order = self.rng.permutation(len(items))
            for b in range(0, len(order), cfg.local_batch_size):
                batch = order[b:b + cfg.local_batch_size]
                idx, r = items[batch], ratings[batch]
                Vb = V[idx]
                err = r - Vb @ u
                grad_u = -(err[:, None] * Vb).mean(axis=0) + reg * u
                grad_V = (-err[:, None] * u[None, :] + reg * Vb) / len(batch)
                np.add.at(V, idx, -lr * grad_V)
                u -= lr * grad_u

        # The user vector never leaves the device
        self.user.preference = u.astype(np.float32)
        return (V - V_global).ravel(), len(items)

    # --- upload ---------------------------------------------------------------

    def build_upload(self, init: RoundInit) -> ClientUpload:
        with self._lock:
            keys = self._rounds.get(init.round_id)
        if keys is None:
            raise RuntimeError(f"{self.client_id}: no keys advertised for round {init.round_id}")

        for peer_id, peer_public in init.peers.items():
            if peer_id != self.client_id:
                keys.peer_seeds[peer_id] = derive_pairwise_seed(keys.private_key, peer_public, init.round_id)

        delta, samples = self.local_update(init)
        weight = min(samples, init.max_sample_count)
        noised = privatize(delta, init.clip_norm, init.noise_std, self.rng)
        encoded = encode_fixed_point(weight * noised, init.fixed_point_bits)
        masked = mask_update(encoded, self.client_id, keys.self_seed, keys.peer_seeds)
        ciphertext, wrapped_key, nonce = encrypt_update(
            masked, init.aggregator_public_key, init.round_id, self.client_id
        )
        return ClientUpload(
            round_id=init.round_id,
            client_id=self.client_id,
            encrypted_payload=ciphertext,
            encrypted_key=wrapped_key,
            nonce=nonce,
            claimed_sample_count=samples
        )

    def participate(self, init: RoundInit, outbox: queue.Queue) -> None:
        """Train, protect and post this round's upload to the coordinator."""
        outbox.put(self.build_upload(init))

    # --- dropout recovery -----------------------------------------------------

    def unmask(self, request: UnmaskRequest) -> UnmaskResponse:
        """
        Reveal this client's self seed and its pairwise seeds with dropped peers.

        Raises:
            ValueError: if the request would reveal both kinds of seed for
                any one client
        """
        survivors, dropped = set(request.survivors), set(request.dropped)
        if survivors & dropped:
            raise ValueError("a client cannot be both surviving and dropped")
        if self.client_id not in survivors:
            raise ValueError(f"{self.client_id} is not a survivor of round {request.round_id}")

        with self._lock:
            keys = self._rounds.pop(request.round_id, None)
        if keys is None:
            raise ValueError(f"{self.client_id}: unknown round {request.round_id}")

        return UnmaskResponse(
            round_id=request.round_id,
            client_id=self.client_id,
            self_seed=keys.self_seed,
            pairwise_seeds={d: keys.peer_seeds[d] for d in sorted(dropped) if d in keys.peer_seeds}
        )
