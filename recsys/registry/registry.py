"""
Model Registry and Hot-Swap Controller.

Tracks every model version per strategy through the lifecycle

    LOADING -> WARMING -> ACTIVE -> RETIRING -> UNLOADED
    LOADING / WARMING -> FAILED

and serves the Active version to scoring threads as an immutable
``ModelSnapshot``. Activation is a single reference replacement under a
short pointer lock: a reader holding a snapshot keeps seeing exactly that
version's parameters for as long as it holds it, and a swap never waits
for readers.

Load, validation or warm-up failures mark the version FAILED, keep the
previous Active version, raise an operator alert and raise
``ModelLoadFailure`` (``poll()`` only logs).

Example:
    >>> registry = ModelRegistry(FileArtifactStore('artifacts/models'))
    >>> registry.register_strategy('collaborative', builder=CollaborativeModel.from_params)
    >>> registry.poll()
    >>> snap = registry.current('collaborative')
    >>> snap.version, snap.model
"""

from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
import logging
import threading
import time

import numpy as np

from recsys.alerting import alert_model_load_failure
from recsys.config import RegistryConfig
from recsys.exceptions import InvalidStateTransition, ModelLoadFailure, StaleBaseVersion
from .artifact_store import ArtifactStore, ModelArtifact, compute_checksum

logger = logging.getLogger(__name__)


# ============================================================================
# States
# ============================================================================

class ModelState(str, Enum):
    LOADING = 'loading'
    WARMING = 'warming'
    ACTIVE = 'active'
    RETIRING = 'retiring'
    UNLOADED = 'unloaded'
    FAILED = 'failed'


ALLOWED_TRANSITIONS = {
    ModelState.LOADING: {ModelState.WARMING, ModelState.FAILED},
    ModelState.WARMING: {ModelState.ACTIVE, ModelState.FAILED},
    ModelState.ACTIVE: {ModelState.RETIRING},
    ModelState.RETIRING: {ModelState.UNLOADED},
    ModelState.UNLOADED: set(),
    ModelState.FAILED: set(),
}


# ============================================================================
# Snapshot
# ============================================================================

@dataclass(frozen=True)
class ModelSnapshot:
    """
    Immutable, version-tagged view of one loaded model.

    ``params`` is a read-only mapping of read-only arrays; ``model`` is
    whatever the strategy's builder produced from them.
    """
    strategy: str
    version: int
    params: Mapping[str, np.ndarray]
    metrics: Mapping[str, Any]
    metadata: Mapping[str, Any]
    model: Any = None
    loaded_at: str = ""

    def __getitem__(self, name: str) -> np.ndarray:
        return self.params[name]


def freeze_params(params: Dict[str, np.ndarray]) -> Mapping[str, np.ndarray]:
    frozen = {}
    for name, value in params.items():
        arr = np.array(value, copy=True)
        arr.setflags(write=False)
        frozen[name] = arr
    return MappingProxyType(frozen)


def validate_artifact(artifact: ModelArtifact) -> None:
    """
    Check declared shapes, checksum and finiteness of floating parameters.

    Raises:
        ValueError: describing the first problem found
    """
    shapes = artifact.metadata.get('shapes')
    if shapes is not None:
        for name, shape in shapes.items():
            if name not in artifact.params:
                raise ValueError(f"missing parameter '{name}'")
            if list(artifact.params[name].shape) != list(shape):
                raise ValueError(
                    f"parameter '{name}' has shape {list(artifact.params[name].shape)}, "
                    f"metadata declares {list(shape)}"
                )
    checksum = artifact.metadata.get('checksum')
    if checksum is not None and compute_checksum(artifact.params) != checksum:
        raise ValueError("parameter checksum mismatch")

    for name, value in artifact.params.items():
        arr = np.asarray(value)
        if np.issubdtype(arr.dtype, np.floating) and not np.all(np.isfinite(arr)):
            # NaN rows in collaborative factors mark failed solves and are allowed
            if artifact.metadata.get('allow_nan_rows') and name in artifact.metadata['allow_nan_rows']:
                continue
            raise ValueError(f"parameter '{name}' contains non-finite values")


@dataclass
class VersionRecord:
    strategy: str
    version: int
    state: ModelState
    snapshot: Optional[ModelSnapshot] = None
    error: Optional[str] = None
    updated_at: str = field(default_factory=lambda: datetime.now().isoformat())
    retired_at: Optional[float] = None


@dataclass
class StrategyHooks:
    builder: Optional[Callable[[Mapping[str, np.ndarray], Mapping[str, Any]], Any]] = None
    warmup: Optional[Callable[[ModelSnapshot, int], Any]] = None


# ============================================================================
# Registry
# ============================================================================

class ModelRegistry:
    """
    Versioned pointer to the Active model per strategy.

    Features:
    - Load / validate / warm / activate new versions
    - Atomic snapshot swap that never blocks readers
    - Grace-period retirement of the previous version
    - Audit trail for every transition
    """

    def __init__(
        self,
        store: ArtifactStore,
        config: Optional[RegistryConfig] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize model registry.

        Args:
            store: Artifact store to load versions from
            config: Registry configuration (grace period, warm-up count, audit log)
            clock: Monotonic clock, injectable for tests
        """
        self.store = store
        self.config = config or RegistryConfig()
        self._clock = clock

        self.audit_log_path = Path(self.config.audit_log_path) if self.config.audit_log_path else None
        if self.audit_log_path is not None:
            self.audit_log_path.parent.mkdir(parents=True, exist_ok=True)

        self._hooks: Dict[str, StrategyHooks] = {}
        self._versions: Dict[str, Dict[int, VersionRecord]] = {}
        self._active: Dict[str, ModelSnapshot] = {}

        # Readers only ever take _pointer_lock, and only for a dict lookup
        self._pointer_lock = threading.Lock()
        self._write_lock = threading.RLock()

    # --- audit ---------------------------------------------------------------

    def _audit_log(self, action: str, strategy: str, version: int, details: str = "") -> None:
        """Write entry to audit log."""
        if self.audit_log_path is None:
            return
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        entry = f"{timestamp} | {action} | {strategy} | v{version} | {details}\n"
        with open(self.audit_log_path, 'a', encoding='utf-8') as f:
            f.write(entry)

    def _transition(self, record: VersionRecord, new_state: ModelState, details: str = "") -> None:
        if new_state not in ALLOWED_TRANSITIONS[record.state]:
            raise InvalidStateTransition(
                f"{record.strategy} v{record.version}: {record.state.value} -> {new_state.value}"
            )
        old = record.state
        record.state = new_state
        record.updated_at = datetime.now().isoformat()
        self._audit_log(new_state.value.upper(), record.strategy, record.version, details)
        logger.debug(f"{record.strategy} v{record.version}: {old.value} -> {new_state.value}")

    # --- configuration -------------------------------------------------------

    def register_strategy(
        self,
        strategy: str,
        builder: Optional[Callable[[Mapping[str, np.ndarray], Mapping[str, Any]], Any]] = None,
        warmup: Optional[Callable[[ModelSnapshot, int], Any]] = None
    ) -> None:
        """
        Register how to build and warm a strategy's model.

        Args:
            builder: (params, metadata) -> model object stored on the snapshot
            warmup: (snapshot, i) -> scores for the i-th representative input;
                any exception or non-finite score fails the version
        """
        with self._write_lock:
            self._hooks[strategy] = StrategyHooks(builder=builder, warmup=warmup)
            self._versions.setdefault(strategy, {})

    # --- reads ---------------------------------------------------------------

    def current(self, strategy: str) -> Optional[ModelSnapshot]:
        """Active snapshot for ``strategy`` (None if nothing is active)."""
        with self._pointer_lock:
            return self._active.get(strategy)

    def active_version(self, strategy: str) -> Optional[int]:
        snap = self.current(strategy)
        return snap.version if snap is not None else None

    def active_versions(self) -> Dict[str, int]:
        with self._pointer_lock:
            return {name: snap.version for name, snap in self._active.items()}

    def state(self, strategy: str, version: int) -> Optional[ModelState]:
        with self._write_lock:
            record = self._versions.get(strategy, {}).get(version)
            return record.state if record else None

    def status(self) -> Dict[str, Any]:
        """Operator view: active version and per-version state for every strategy."""
        with self._write_lock:
            return {
                strategy: {
                    'active_version': self.active_version(strategy),
                    'versions': {
                        version: {
                            'state': record.state.value,
                            'updated_at': record.updated_at,
                            'error': record.error,
                        }
                        for version, record in sorted(records.items())
                    }
                }
                for strategy, records in sorted(self._versions.items())
            }

    # --- lifecycle -----------------------------------------------------------

    def _fail(self, record: VersionRecord, reason: str) -> ModelLoadFailure:
        record.error = reason
        record.snapshot = None
        self._transition(record, ModelState.FAILED, reason)
        logger.warning(f"Model load failure: {record.strategy} v{record.version}: {reason}")
        alert_model_load_failure(record.strategy, record.version, reason)
        return ModelLoadFailure(record.strategy, record.version, reason)

    def _load(self, record: VersionRecord) -> ModelSnapshot:
        artifact = self.store.load(record.strategy, record.version)
        validate_artifact(artifact)
        params = freeze_params(artifact.params)
        metadata = MappingProxyType(dict(artifact.metadata))
        hooks = self._hooks.get(record.strategy, StrategyHooks())
        model = hooks.builder(params, metadata) if hooks.builder else None
        return ModelSnapshot(
            strategy=record.strategy,
            version=record.version,
            params=params,
            metrics=MappingProxyType(dict(artifact.metrics)),
            metadata=metadata,
            model=model,
            loaded_at=datetime.now().isoformat()
        )

    def _warm(self, snapshot: ModelSnapshot) -> None:
        hooks = self._hooks.get(snapshot.strategy, StrategyHooks())
        if hooks.warmup is None:
            return
        for i in range(self.config.warmup_requests):
            scores = hooks.warmup(snapshot, i)
            if scores is None:
                continue
            arr = np.asarray(scores, dtype=np.float64)
            if not np.all(np.isfinite(arr)):
                raise ValueError(f"warm-up request {i} produced non-finite scores")

    def activate(self, strategy: str, version: int) -> ModelSnapshot:
        """
        Load, validate, warm and atomically activate ``(strategy, version)``.

        Returns:
            The new Active snapshot

        Raises:
            ModelLoadFailure: previous Active version stays in place
            InvalidStateTransition: version already went through the lifecycle
        """
        with self._write_lock:
            records = self._versions.setdefault(strategy, {})
            if version in records:
                existing = records[version]
                if existing.state == ModelState.ACTIVE:
                    return existing.snapshot
                raise InvalidStateTransition(
                    f"{strategy} v{version} is {existing.state.value}; cannot activate again"
                )

            record = VersionRecord(strategy=strategy, version=version, state=ModelState.LOADING)
            records[version] = record
            self._audit_log('LOADING', strategy, version)
            start = time.perf_counter()

            try:
                snapshot = self._load(record)
            except Exception as e:
                raise self._fail(record, f"load: {e}") from e

            self._transition(record, ModelState.WARMING)
            try:
                self._warm(snapshot)
            except Exception as e:
                raise self._fail(record, f"warm-up: {e}") from e

            previous = self._active.get(strategy)
            record.snapshot = snapshot
            with self._pointer_lock:
                self._active[strategy] = snapshot
            self._transition(record, ModelState.ACTIVE)

            if previous is not None:
                prev_record = records[previous.version]
                prev_record.retired_at = self._clock()
                self._transition(prev_record, ModelState.RETIRING, f"replaced_by=v{version}")

            elapsed = (time.perf_counter() - start) * 1000
            prev_str = f"v{previous.version}" if previous is not None else "none"
            logger.info(f"Activated {strategy} v{version} (previous {prev_str}) in {elapsed:.1f}ms")
            return snapshot

    def publish_and_activate(
        self,
        artifact: ModelArtifact,
        expected_active: Optional[int] = None
    ) -> ModelSnapshot:
        """
        Publish to the store, then activate.

        With ``expected_active`` set, nothing is published unless that
        version is still the Active one for the strategy.

        Raises:
            StaleBaseVersion: another version was activated in the meantime
        """
        with self._write_lock:
            if expected_active is not None:
                active = self.active_version(artifact.strategy)
                if active != expected_active:
                    raise StaleBaseVersion(artifact.strategy, expected_active, active)
            self.store.publish(artifact)
            self._audit_log('PUBLISH', artifact.strategy, artifact.version)
            return self.activate(artifact.strategy, artifact.version)

    def poll(self) -> List[Tuple[str, int]]:
        """
        Activate any stored version newer than the Active one.

        Failures are logged (and alerted) but not raised.

        Returns:
            List of (strategy, version) activated by this call
        """
        activated = []
        with self._write_lock:
            strategies = sorted(set(self._hooks) | set(self.store.strategies()))
            for strategy in strategies:
                known = self._versions.get(strategy, {})
                active = self.active_version(strategy) or 0
                for version in self.store.list_versions(strategy):
                    if version <= active or version in known:
                        continue
                    try:
                        self.activate(strategy, version)
                        activated.append((strategy, version))
                        active = version
                    except ModelLoadFailure as e:
                        logger.warning(f"Poll: {e}")
        if activated:
            logger.info(f"Poll activated {activated}")
        return activated

    def reap(self, force: bool = False) -> int:
        """
        Unload Retiring versions whose grace period has elapsed.

        Args:
            force: Unload every Retiring version immediately

        Returns:
            Number of versions unloaded
        """
        now = self._clock()
        unloaded = 0
        with self._write_lock:
            for records in self._versions.values():
                for record in records.values():
                    if record.state != ModelState.RETIRING:
                        continue
                    if not force and now - record.retired_at < self.config.retire_grace_seconds:
                        continue
                    record.snapshot = None
                    self._transition(record, ModelState.UNLOADED, 'forced' if force else '')
                    unloaded += 1
        if unloaded:
            logger.info(f"Unloaded {unloaded} retired model version(s)")
        return unloaded
