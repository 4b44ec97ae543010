"""Tests for the artifact stores and the hot-swap model registry."""

import threading

import numpy as np
import pytest

from recsys.config import RegistryConfig
from recsys.exceptions import (
    ArtifactExistsError,
    InvalidStateTransition,
    ModelLoadFailure,
    StaleBaseVersion,
)
from recsys.registry import (
    FileArtifactStore,
    InMemoryArtifactStore,
    ModelArtifact,
    ModelRegistry,
    ModelState,
    validate_artifact,
)


def toy_artifact(version, fill=None, strategy='toy'):
    value = float(version if fill is None else fill)
    return ModelArtifact.create(
        strategy, version,
        {'weights': np.full((64, 16), value, dtype=np.float32), 'bias': np.full(16, value)},
        metrics={'loss': 0.1}
    )


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def toy_registry(clock, tmp_path):
    registry = ModelRegistry(
        InMemoryArtifactStore(),
        RegistryConfig(audit_log_path=str(tmp_path / 'audit.log'), retire_grace_seconds=30.0),
        clock=clock
    )
    registry.register_strategy('toy')
    return registry


# ============================================================================
# Artifact stores
# ============================================================================

def test_file_store_round_trip(tmp_path):
    store = FileArtifactStore(str(tmp_path / 'models'))
    artifact = ModelArtifact.create(
        'collaborative', 247,
        {'item_factors': np.arange(6, dtype=np.float32).reshape(3, 2),
         'item_ids': np.asarray(['a', 'b', 'c'], dtype=str)},
        metrics={'final_loss': 0.5},
        metadata={'parent_version': 246}
    )
    store.publish(artifact)

    loaded = store.load('collaborative', 247)
    np.testing.assert_array_equal(loaded.params['item_factors'], artifact.params['item_factors'])
    assert list(loaded.params['item_ids']) == ['a', 'b', 'c']
    assert loaded.metadata['parent_version'] == 246
    assert loaded.metadata['checksum'] == artifact.metadata['checksum']
    assert (tmp_path / 'models' / 'collaborative' / 'v000247' / 'params.npz').exists()
    validate_artifact(loaded)


def test_file_store_is_append_only(tmp_path):
    store = FileArtifactStore(str(tmp_path))
    store.publish(toy_artifact(1))
    with pytest.raises(ArtifactExistsError):
        store.publish(toy_artifact(1, fill=9))
    np.testing.assert_array_equal(store.load('toy', 1).params['bias'], np.full(16, 1.0))


def test_store_versions(tmp_path):
    for store in (InMemoryArtifactStore(), FileArtifactStore(str(tmp_path))):
        assert store.latest_version('toy') is None
        assert store.next_version('toy') == 1
        store.publish(toy_artifact(3))
        store.publish(toy_artifact(1))
        assert store.list_versions('toy') == [1, 3]
        assert store.next_version('toy') == 4
        assert store.strategies() == ['toy']


def test_validate_detects_tampering():
    artifact = toy_artifact(1)
    artifact.params['bias'] = np.zeros(16)
    with pytest.raises(ValueError, match='checksum'):
        validate_artifact(artifact)


# ============================================================================
# Lifecycle
# ============================================================================

def test_activate_and_retire(toy_registry, tmp_path):
    toy_registry.publish_and_activate(toy_artifact(1))
    toy_registry.publish_and_activate(toy_artifact(2))

    assert toy_registry.active_version('toy') == 2
    assert toy_registry.state('toy', 2) == ModelState.ACTIVE
    assert toy_registry.state('toy', 1) == ModelState.RETIRING

    audit = (tmp_path / 'audit.log').read_text(encoding='utf-8')
    assert '| ACTIVE | toy | v2 |' in audit
    assert '| RETIRING | toy | v1 | replaced_by=v2' in audit


def test_conditional_publish_refuses_moved_base(toy_registry):
    toy_registry.publish_and_activate(toy_artifact(1))
    toy_registry.publish_and_activate(toy_artifact(2))

    with pytest.raises(StaleBaseVersion) as exc:
        toy_registry.publish_and_activate(toy_artifact(3), expected_active=1)
    assert (exc.value.expected, exc.value.active) == (1, 2)
    assert toy_registry.store.list_versions('toy') == [1, 2]
    assert toy_registry.active_version('toy') == 2

    toy_registry.publish_and_activate(toy_artifact(3), expected_active=2)
    assert toy_registry.active_version('toy') == 3


def test_snapshot_params_are_read_only(toy_registry):
    snap = toy_registry.publish_and_activate(toy_artifact(1))
    with pytest.raises(ValueError):
        snap['weights'][0, 0] = 5.0
    with pytest.raises(TypeError):
        snap.params['weights'] = np.zeros(1)


def test_failed_load_keeps_previous_version(toy_registry):
    toy_registry.publish_and_activate(toy_artifact(1))
    bad = toy_artifact(2)
    bad.params['weights'][0, 0] = np.nan
    bad.metadata.pop('checksum')

    with pytest.raises(ModelLoadFailure):
        toy_registry.publish_and_activate(bad)

    assert toy_registry.active_version('toy') == 1
    assert toy_registry.state('toy', 2) == ModelState.FAILED
    assert toy_registry.state('toy', 1) == ModelState.ACTIVE
    assert toy_registry.status()['toy']['versions'][2]['error'].startswith('load:')


def test_failed_warmup_keeps_previous_version(toy_registry):
    def warmup(snapshot, i):
        if snapshot.version == 2:
            return np.array([np.inf])
        return snapshot['bias']

    toy_registry.register_strategy('toy', warmup=warmup)
    toy_registry.publish_and_activate(toy_artifact(1))
    with pytest.raises(ModelLoadFailure):
        toy_registry.publish_and_activate(toy_artifact(2))
    assert toy_registry.active_version('toy') == 1
    assert toy_registry.state('toy', 2) == ModelState.FAILED


def test_builder_result_is_attached(registry):
    registry.register_strategy('toy', builder=lambda params, meta: float(params['bias'].sum()))
    snap = registry.publish_and_activate(toy_artifact(2))
    assert snap.model == pytest.approx(32.0)


def test_cannot_reactivate_failed_or_retired_version(toy_registry):
    toy_registry.publish_and_activate(toy_artifact(1))
    toy_registry.publish_and_activate(toy_artifact(2))
    with pytest.raises(InvalidStateTransition):
        toy_registry.activate('toy', 1)
    # activating the Active version again is a no-op
    assert toy_registry.activate('toy', 2).version == 2


def test_reap_waits_for_grace_period(toy_registry, clock):
    toy_registry.publish_and_activate(toy_artifact(1))
    toy_registry.publish_and_activate(toy_artifact(2))

    clock.now += 10
    assert toy_registry.reap() == 0
    assert toy_registry.state('toy', 1) == ModelState.RETIRING

    clock.now += 25
    assert toy_registry.reap() == 1
    assert toy_registry.state('toy', 1) == ModelState.UNLOADED
    assert toy_registry.state('toy', 2) == ModelState.ACTIVE


def test_forced_reap(toy_registry):
    toy_registry.publish_and_activate(toy_artifact(1))
    toy_registry.publish_and_activate(toy_artifact(2))
    assert toy_registry.reap(force=True) == 1


def test_poll_activates_newer_versions(toy_registry):
    toy_registry.store.publish(toy_artifact(1))
    toy_registry.store.publish(toy_artifact(2))
    assert toy_registry.poll() == [('toy', 1), ('toy', 2)]
    assert toy_registry.active_version('toy') == 2
    assert toy_registry.poll() == []


def test_poll_logs_failures_without_raising(toy_registry):
    toy_registry.publish_and_activate(toy_artifact(1))
    bad = toy_artifact(2)
    bad.params['bias'] = np.zeros(3)
    toy_registry.store.publish(bad)
    assert toy_registry.poll() == []
    assert toy_registry.active_version('toy') == 1
    assert toy_registry.state('toy', 2) == ModelState.FAILED


# ============================================================================
# Concurrency
# ============================================================================

def test_swap_under_concurrent_readers(toy_registry):
    """50 readers never see a snapshot mixing v247 and v248 parameters."""
    toy_registry.publish_and_activate(toy_artifact(247))
    toy_registry.store.publish(toy_artifact(248))

    start = threading.Barrier(51)
    errors = []
    seen_versions = set()
    lock = threading.Lock()

    def reader():
        start.wait()
        for _ in range(200):
            snap = toy_registry.current('toy')
            w = snap['weights']
            b = snap['bias']
            # read slowly so a swap can land mid-request
            first = float(w[0, 0])
            middle = float(w[32].sum() / 16)
            last = float(b[-1])
            if not (first == middle == last == float(snap.version)):
                with lock:
                    errors.append((snap.version, first, middle, last))
            with lock:
                seen_versions.add(snap.version)

    threads = [threading.Thread(target=reader) for _ in range(50)]
    for t in threads:
        t.start()
    start.wait()
    toy_registry.activate('toy', 248)
    for t in threads:
        t.join()

    assert errors == []
    assert seen_versions <= {247, 248}
    assert toy_registry.active_version('toy') == 248
    assert toy_registry.state('toy', 247) == ModelState.RETIRING
