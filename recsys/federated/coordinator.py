"""
Federated Training Coordinator.

Drives rounds of distributed training over the collaborative item-factor
matrix as an explicit state machine:

    IDLE -> DISTRIBUTING -> COLLECTING -> UNMASKING -> AGGREGATING -> IDLE
    DISTRIBUTING / COLLECTING / UNMASKING / AGGREGATING -> CANCELLED -> IDLE
    IDLE -> HALTED   (privacy budget exhausted, terminal)

Per round:
1. Refuse the round if the privacy accountant's projected spend exceeds
   the ceiling (HALTED, alert, PrivacyBudgetExhausted).
2. Sample a cohort uniformly without replacement; collect X25519 key
   advertisements; send RoundInit with the current global model.
3. Clients run concurrently on a thread pool and post ClientUploads into
   a queue. Uploads are accepted until the deadline; late, duplicate,
   unknown-client, wrong-round and undecryptable uploads are dropped.
   Client threads still running at the deadline are abandoned; the next
   round joins them for at most ``straggler_join_seconds`` before it starts.
4. Below ``n_min`` accepted uploads the round is cancelled and nothing is
   applied. Otherwise survivors reveal self seeds (and pairwise seeds for
   dropped peers), the server removes every mask from the modular sum,
   divides by the total sample weight and applies the average with the
   server learning rate.
5. The average is applied to the version the round trained on and
   published as a new version, provided that version is still Active;
   otherwise the round is cancelled and nobody is charged.

Example:
    >>> coordinator = FederatedCoordinator(registry, config.federated)
    >>> result = coordinator.run_round(clients)
    >>> result.applied, result.new_version
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import concurrent.futures
import logging
import queue
import threading
import time

import numpy as np

from recsys.alerting import alert_privacy_budget_exhausted, alert_quorum_not_met
from recsys.config import FederatedConfig
from recsys.exceptions import (
    AggregationQuorumNotMet,
    InvalidStateTransition,
    MalformedClientUpload,
    ModelLoadFailure,
    PrivacyBudgetExhausted,
    RecsysError,
    StaleBaseVersion,
)
from recsys.logging_utils import TrainingMetricsDB
from recsys.registry import ModelArtifact, ModelRegistry, ModelSnapshot
from .client import FederatedClient
from .messages import ClientUpload, KeyAdvertisement, RoundInit, RoundResult, UnmaskRequest
from .privacy import PrivacyAccountant, gaussian_noise_std
from .secure_aggregation import (
    decode_fixed_point,
    decrypt_update,
    generate_aggregator_keypair,
    ring_sum,
    unmask_sum,
)

logger = logging.getLogger(__name__)

FEDERATED_STRATEGY = 'collaborative'


class RoundState(str, Enum):
    IDLE = 'idle'
    DISTRIBUTING = 'distributing'
    COLLECTING = 'collecting'
    UNMASKING = 'unmasking'
    AGGREGATING = 'aggregating'
    CANCELLED = 'cancelled'
    HALTED = 'halted'


ROUND_TRANSITIONS = {
    RoundState.IDLE: {RoundState.DISTRIBUTING, RoundState.HALTED},
    RoundState.DISTRIBUTING: {RoundState.COLLECTING, RoundState.CANCELLED},
    RoundState.COLLECTING: {RoundState.UNMASKING, RoundState.CANCELLED},
    RoundState.UNMASKING: {RoundState.AGGREGATING, RoundState.CANCELLED},
    RoundState.AGGREGATING: {RoundState.IDLE, RoundState.CANCELLED},
    RoundState.CANCELLED: {RoundState.IDLE},
    RoundState.HALTED: set(),
}


@dataclass
class RoundContext:
    """Mutable bookkeeping for the round in progress."""
    round_id: str
    base: ModelSnapshot
    started_at: str
    cohort: Dict[str, FederatedClient]
    init: Optional[RoundInit] = None
    advertised: Dict[str, KeyAdvertisement] = field(default_factory=dict)
    masked: Dict[str, np.ndarray] = field(default_factory=dict)
    weights: Dict[str, int] = field(default_factory=dict)
    dropped: Dict[str, int] = field(default_factory=lambda: {
        'late': 0,
        'duplicate': 0,
        'unknown_client': 0,
        'wrong_round': 0,
        'malformed': 0,
        'client_error': 0,
    })

    @property
    def version(self) -> int:
        return self.base.version

    @property
    def accepted(self) -> int:
        return len(self.masked)

    @property
    def dropped_total(self) -> int:
        return sum(self.dropped.values())


class FederatedCoordinator:
    """
    Long-lived coordinator; one round at a time.

    Attributes:
        state: Current RoundState
        accountant: PrivacyAccountant
        rounds_completed: Number of rounds applied to the global model
    """

    def __init__(
        self,
        registry: ModelRegistry,
        config: Optional[FederatedConfig] = None,
        metrics_db: Optional[TrainingMetricsDB] = None,
        strategy: str = FEDERATED_STRATEGY,
        rsa_key_size: int = 2048
    ):
        self.registry = registry
        self.config = config or FederatedConfig()
        self.metrics_db = metrics_db
        self.strategy = strategy

        self.accountant = PrivacyAccountant.from_config(self.config)
        self._private_key, self.public_key_pem = generate_aggregator_keypair(rsa_key_size)
        self.rng = np.random.default_rng(self.config.random_seed)

        self.state = RoundState.IDLE
        self.rounds_started = 0
        self.rounds_completed = 0
        self._halt_error: Optional[PrivacyBudgetExhausted] = None
        self._round_lock = threading.Lock()
        self._stragglers: List[concurrent.futures.Future] = []

    # --- state machine --------------------------------------------------------

    def _set_state(self, new_state: RoundState) -> None:
        if new_state not in ROUND_TRANSITIONS[self.state]:
            raise InvalidStateTransition(f"round state {self.state.value} -> {new_state.value}")
        logger.debug(f"Coordinator: {self.state.value} -> {new_state.value}")
        self.state = new_state

    @property
    def halted(self) -> bool:
        return self.state == RoundState.HALTED

    # --- cohort ---------------------------------------------------------------

    def select_cohort(self, population: Sequence[FederatedClient]) -> List[FederatedClient]:
        """Uniform random sample without replacement (seeded by config)."""
        size = min(self.config.cohort_size, len(population))
        if size == 0:
            return []
        chosen = self.rng.choice(len(population), size=size, replace=False)
        return [population[i] for i in sorted(chosen)]

    # --- collection -----------------------------------------------------------

    def _accept_upload(self, ctx: RoundContext, upload: Any, deadline: float) -> None:
        if not isinstance(upload, ClientUpload):
            ctx.dropped['malformed'] += 1
            logger.warning(f"Round {ctx.round_id}: dropped non-upload message {type(upload).__name__}")
            return
        if time.monotonic() > deadline:
            ctx.dropped['late'] += 1
            return
        if upload.round_id != ctx.round_id:
            ctx.dropped['wrong_round'] += 1
            logger.warning(f"Round {ctx.round_id}: dropped upload for round {upload.round_id}")
            return
        if upload.client_id not in ctx.advertised:
            ctx.dropped['unknown_client'] += 1
            logger.warning(f"Round {ctx.round_id}: dropped upload from unknown client {upload.client_id}")
            return
        if upload.client_id in ctx.masked:
            ctx.dropped['duplicate'] += 1
            return

        try:
            if not isinstance(upload.claimed_sample_count, (int, np.integer)) or upload.claimed_sample_count < 0:
                raise MalformedClientUpload(
                    upload.client_id, f"invalid sample count {upload.claimed_sample_count!r}"
                )
            vector = decrypt_update(
                upload.encrypted_payload,
                upload.encrypted_key,
                upload.nonce,
                self._private_key,
                ctx.round_id,
                upload.client_id,
                expected_length=ctx.init.item_factors.size
            )
        except MalformedClientUpload as e:
            ctx.dropped['malformed'] += 1
            logger.warning(f"Round {ctx.round_id}: {e}")
            return

        ctx.masked[upload.client_id] = vector
        ctx.weights[upload.client_id] = min(int(upload.claimed_sample_count), self.config.max_sample_count)

    @property
    def pending_stragglers(self) -> int:
        return sum(1 for f in self._stragglers if not f.done())

    def _join_stragglers(self) -> None:
        """Wait (bounded) for client threads a previous round stopped waiting on."""
        if not self._stragglers:
            return
        _, not_done = concurrent.futures.wait(
            self._stragglers, timeout=self.config.straggler_join_seconds
        )
        self._stragglers = list(not_done)
        if not_done:
            logger.warning(f"{len(not_done)} client threads from earlier rounds still running")

    def _collect(self, ctx: RoundContext, deadline_seconds: float) -> None:
        outbox: queue.Queue = queue.Queue()
        deadline = time.monotonic() + deadline_seconds
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix=f'fl-{ctx.round_id}'
        )
        futures = {
            executor.submit(ctx.cohort[cid].participate, ctx.init, outbox): cid
            for cid in ctx.advertised
        }
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    upload = outbox.get(timeout=min(remaining, 0.05))
                except queue.Empty:
                    if all(f.done() for f in futures) and outbox.empty():
                        break
                    continue
                self._accept_upload(ctx, upload, deadline)

            # Stragglers already queued after the cutoff are counted, not used
            while True:
                try:
                    upload = outbox.get_nowait()
                except queue.Empty:
                    break
                self._accept_upload(ctx, upload, deadline)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
            self._stragglers.extend(f for f in futures if not f.done())

        for future, cid in futures.items():
            if future.done() and not future.cancelled() and future.exception() is not None:
                ctx.dropped['client_error'] += 1
                logger.warning(f"Round {ctx.round_id}: client {cid} failed: {future.exception()}")

    # --- aggregation ----------------------------------------------------------

    def aggregate(self, ctx: RoundContext) -> np.ndarray:
        """
        Unmask the sum of accepted updates and return the weighted average delta.

        Raises:
            AggregationQuorumNotMet: fewer than n_min accepted uploads, or a
                survivor failed to answer the unmask request
        """
        n_min = self.config.n_min
        if ctx.accepted < n_min:
            raise AggregationQuorumNotMet(ctx.round_id, ctx.accepted, n_min)

        self._set_state(RoundState.UNMASKING)
        survivors = tuple(sorted(ctx.masked))
        dropped = tuple(sorted(set(ctx.advertised) - set(ctx.masked)))
        request = UnmaskRequest(round_id=ctx.round_id, survivors=survivors, dropped=dropped)

        self_seeds: Dict[str, bytes] = {}
        dropped_seeds: Dict[Tuple[str, str], bytes] = {}
        for cid in survivors:
            try:
                response = ctx.cohort[cid].unmask(request)
            except Exception as e:
                logger.warning(f"Round {ctx.round_id}: survivor {cid} failed to unmask: {e}")
                raise AggregationQuorumNotMet(ctx.round_id, len(self_seeds), len(survivors)) from e
            self_seeds[cid] = response.self_seed
            for peer, seed in response.pairwise_seeds.items():
                if peer in dropped:
                    dropped_seeds[(cid, peer)] = seed

        missing = [(s, d) for s in survivors for d in dropped if (s, d) not in dropped_seeds]
        if missing:
            raise AggregationQuorumNotMet(ctx.round_id, len(survivors) - len({s for s, _ in missing}), len(survivors))

        self._set_state(RoundState.AGGREGATING)
        length = ctx.init.item_factors.size
        masked_sum = ring_sum((ctx.masked[cid] for cid in survivors), length)
        total = decode_fixed_point(unmask_sum(masked_sum, self_seeds, dropped_seeds), self.config.fixed_point_bits)

        weight = sum(ctx.weights[cid] for cid in survivors)
        if weight <= 0:
            return np.zeros(length)
        return total / weight

    # --- round driver ---------------------------------------------------------

    def _cancel(self, ctx: RoundContext, error: RecsysError) -> RoundResult:
        self._set_state(RoundState.CANCELLED)
        logger.warning(f"Round {ctx.round_id} cancelled: {error}")
        if isinstance(error, AggregationQuorumNotMet):
            alert_quorum_not_met(ctx.round_id, error.received, error.required)
        result = RoundResult(
            round_id=ctx.round_id,
            status='cancelled',
            applied=False,
            model_version=ctx.version,
            metrics=self._round_metrics(ctx, cancel_reason=type(error).__name__)
        )
        self._record(ctx, result)
        self._set_state(RoundState.IDLE)
        return result

    def _round_metrics(self, ctx: RoundContext, **extra) -> Dict[str, Any]:
        eps, delta = self.accountant.spent()
        metrics = {
            'cohort_size': len(ctx.cohort),
            'advertised': len(ctx.advertised),
            'accepted_uploads': ctx.accepted,
            'dropped_uploads': ctx.dropped_total,
            'dropped_by_reason': dict(ctx.dropped),
            'epsilon_spent': eps,
            'delta_spent': delta,
        }
        metrics.update(extra)
        return metrics

    def _record(self, ctx: RoundContext, result: RoundResult) -> None:
        if self.metrics_db is None:
            return
        eps, delta = self.accountant.spent()
        self.metrics_db.log_federated_round(
            round_id=ctx.round_id,
            status=result.status,
            model_version=ctx.version,
            new_version=result.new_version,
            cohort_size=len(ctx.cohort),
            accepted_uploads=ctx.accepted,
            dropped_uploads=ctx.dropped_total,
            epsilon_spent=eps,
            delta_spent=delta,
            metrics=result.metrics,
            started_at=ctx.started_at
        )

    def _check_budget(self) -> None:
        if self._halt_error is not None:
            raise self._halt_error
        try:
            self.accountant.check_round()
        except PrivacyBudgetExhausted as e:
            self._halt_error = e
            self._set_state(RoundState.HALTED)
            logger.error(f"Federated training halted: {e}")
            alert_privacy_budget_exhausted(e.spent, e.ceiling)
            raise

    def _publish(self, ctx: RoundContext, avg_delta: np.ndarray) -> int:
        """
        Apply the average to the snapshot the round trained on and publish.

        Raises:
            StaleBaseVersion: another version became Active during the round
        """
        snapshot = ctx.base
        V = np.asarray(snapshot['item_factors'], dtype=np.float64)
        V_new = V + self.config.server_learning_rate * avg_delta.reshape(V.shape)

        params = {name: np.array(value) for name, value in snapshot.params.items()}
        params['item_factors'] = V_new.astype(np.float32)
        metadata = {
            k: v for k, v in snapshot.metadata.items() if k not in ('shapes', 'checksum')
        }
        metadata['parent_version'] = ctx.version
        metadata['round_id'] = ctx.round_id

        new_version = self.registry.store.next_version(self.strategy)
        artifact = ModelArtifact.create(
            self.strategy,
            new_version,
            params,
            metrics={
                'accepted_uploads': ctx.accepted,
                'delta_norm': float(np.linalg.norm(avg_delta)),
            },
            metadata=metadata
        )
        self.registry.publish_and_activate(artifact, expected_active=ctx.version)
        return new_version

    def _charge(self, ctx: RoundContext) -> Tuple[float, float]:
        eps, delta = self.accountant.record_round(ctx.masked)
        for cid in ctx.masked:
            ctx.cohort[cid].user.privacy_budget_consumed = self.accountant.client_epsilon(cid)
        return eps, delta

    def run_round(
        self,
        clients: Sequence[FederatedClient],
        deadline_seconds: Optional[float] = None
    ) -> RoundResult:
        """
        Run one complete round against the registered client population.

        Returns:
            RoundResult (``applied`` is False for cancelled rounds)

        Raises:
            PrivacyBudgetExhausted: terminal; raised again on every later call
            ModelLoadFailure: the aggregated version failed to activate
        """
        with self._round_lock:
            self._check_budget()

            snapshot = self.registry.current(self.strategy)
            if snapshot is None:
                raise RuntimeError(f"No active {self.strategy} model to train")

            try:
                return self._run_round(snapshot, clients, deadline_seconds)
            except Exception:
                if self.state not in (RoundState.IDLE, RoundState.HALTED):
                    logger.error(f"Round aborted in state {self.state.value}; nothing applied")
                    self.state = RoundState.IDLE
                raise

    def _run_round(self, snapshot, clients, deadline_seconds) -> RoundResult:
        self._join_stragglers()
        self.rounds_started += 1
        round_id = f"round_{self.rounds_started:06d}_v{snapshot.version}"
        deadline_seconds = self.config.round_deadline_seconds if deadline_seconds is None else deadline_seconds

        # --- DISTRIBUTING ---
        self._set_state(RoundState.DISTRIBUTING)
        cohort = self.select_cohort(list(clients))
        ctx = RoundContext(
            round_id=round_id,
            base=snapshot,
            started_at=datetime.now().isoformat(),
            cohort={c.client_id: c for c in cohort}
        )
        logger.info(f"Round {round_id}: cohort={len(cohort)} from population={len(clients)}")

        for cid, client in ctx.cohort.items():
            try:
                adv = client.advertise(round_id)
            except Exception as e:
                ctx.dropped['client_error'] += 1
                logger.warning(f"Round {round_id}: client {cid} failed key advertisement: {e}")
                continue
            if adv.round_id == round_id and adv.client_id == cid:
                ctx.advertised[cid] = adv

        if len(ctx.advertised) < self.config.n_min:
            return self._cancel(
                ctx, AggregationQuorumNotMet(round_id, len(ctx.advertised), self.config.n_min)
            )

        ctx.init = RoundInit(
            round_id=round_id,
            version=snapshot.version,
            cohort_size=len(ctx.advertised),
            deadline=time.time() + deadline_seconds,
            item_factors=snapshot['item_factors'],
            item_ids=tuple(str(i) for i in snapshot['item_ids']),
            aggregator_public_key=self.public_key_pem,
            peers={cid: adv.dh_public for cid, adv in ctx.advertised.items()},
            clip_norm=self.config.clip_norm,
            noise_std=gaussian_noise_std(
                self.config.clip_norm, self.config.noise_multiplier, self.config.n_min
            ),
            fixed_point_bits=self.config.fixed_point_bits,
            max_sample_count=self.config.max_sample_count
        )

        # --- COLLECTING ---
        self._set_state(RoundState.COLLECTING)
        self._collect(ctx, deadline_seconds)
        logger.info(
            f"Round {round_id}: accepted={ctx.accepted}, dropped={ctx.dropped_total} {ctx.dropped}"
        )

        # --- UNMASKING / AGGREGATING ---
        try:
            avg_delta = self.aggregate(ctx)
        except AggregationQuorumNotMet as e:
            return self._cancel(ctx, e)

        # The round is charged once the aggregate reaches the artifact store
        try:
            new_version = self._publish(ctx, avg_delta)
        except StaleBaseVersion as e:
            return self._cancel(ctx, e)
        except ModelLoadFailure:
            self._charge(ctx)
            self._set_state(RoundState.CANCELLED)
            result = RoundResult(
                round_id=round_id,
                status='failed',
                applied=False,
                model_version=ctx.version,
                metrics=self._round_metrics(ctx)
            )
            self._record(ctx, result)
            self._set_state(RoundState.IDLE)
            raise

        eps, delta = self._charge(ctx)

        self.rounds_completed += 1
        result = RoundResult(
            round_id=round_id,
            status='applied',
            applied=True,
            model_version=ctx.version,
            new_version=new_version,
            metrics=self._round_metrics(ctx, delta_norm=float(np.linalg.norm(avg_delta)))
        )
        self._record(ctx, result)
        self._set_state(RoundState.IDLE)
        logger.info(
            f"Round {round_id} applied: v{ctx.version} -> v{new_version}, "
            f"eps={eps:.4f}, delta={delta:.2e}"
        )
        return result
