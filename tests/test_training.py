"""Tests for the offline training pipeline."""

import pandas as pd
import pytest

from recsys.config import ALSConfig, GNNConfig, RecsysConfig
from recsys.data import InteractionGraph, Item
from recsys.logging_utils import TrainingMetricsDB
from recsys.registry import ModelState
from recsys.training import main, train_collaborative, train_graph

from conftest import INTERACTIONS, ITEM_TAGS, NOW


@pytest.fixture
def small_config():
    return RecsysConfig(
        als=ALSConfig(factors=4, epochs=5, random_seed=0),
        gnn=GNNConfig(
            input_dim=8, layer_dims=(8, 4), heads=(2, 1), fanouts=(3, 3),
            max_epochs=2, batch_size=16, validation_fraction=0.3, eval_k=3, random_seed=0
        )
    )


@pytest.fixture
def metrics_db(tmp_path):
    return TrainingMetricsDB(str(tmp_path / 'metrics.db'))


def test_train_collaborative_publishes_and_records(snapshot, registry, small_config, metrics_db, tmp_path):
    version = train_collaborative(
        snapshot, registry, small_config, metrics_db,
        run_id='als_test', log_dir=str(tmp_path / 'logs')
    )

    assert version == 1
    assert registry.active_version('collaborative') == 1
    artifact = registry.current('collaborative')
    assert artifact['item_factors'].shape == (snapshot.num_items, 4)
    assert artifact.metadata['run_id'] == 'als_test'

    run = metrics_db.get_run('als_test')
    assert run['status'] == 'completed'
    assert run['artifact_version'] == 1
    assert len(metrics_db.get_epochs('als_test')) == artifact.metrics['epochs_completed']
    assert (tmp_path / 'logs' / 'als.log').exists()


def test_train_graph_without_activation(snapshot, registry, small_config, metrics_db, tmp_path):
    version = train_graph(
        snapshot, registry, small_config, metrics_db,
        activate=False, run_id='gnn_test', log_dir=str(tmp_path / 'logs')
    )

    assert version == 1
    assert registry.active_version('graph') is None
    assert registry.store.list_versions('graph') == [1]
    epochs = metrics_db.get_epochs('gnn_test')
    assert 1 <= len(epochs) <= 2
    assert all(row['loss'] is not None for row in epochs)

    # a later poll picks the published version up
    assert registry.poll() == [('graph', 1)]
    assert registry.state('graph', 1) == ModelState.ACTIVE


def test_failed_run_is_recorded(registry, small_config, metrics_db, tmp_path):
    tiny = InteractionGraph()
    tiny.add_item(Item('only'))
    tiny.record_interaction('u', 'only', timestamp=NOW, rating=4)

    with pytest.raises(ValueError):
        train_graph(
            tiny.snapshot(as_of=NOW), registry, small_config, metrics_db,
            run_id='gnn_fail', log_dir=str(tmp_path / 'logs')
        )
    assert metrics_db.get_run('gnn_fail')['status'] == 'failed'


def test_cli_trains_from_csv(tmp_path, monkeypatch):
    items = pd.DataFrame({
        'item_id': sorted(ITEM_TAGS),
        'tags': ['|'.join(sorted(ITEM_TAGS[i])) for i in sorted(ITEM_TAGS)],
    })
    interactions = pd.DataFrame(
        [(u, i, r, (NOW - pd.Timedelta(days=d)).isoformat()) for u, i, r, d in INTERACTIONS],
        columns=['user_id', 'item_id', 'rating', 'timestamp']
    )
    items.to_csv(tmp_path / 'items.csv', index=False)
    interactions.to_csv(tmp_path / 'interactions.csv', index=False)
    (tmp_path / 'recsys.yaml').write_text('als:\n  factors: 4\n  epochs: 3\n', encoding='utf-8')
    monkeypatch.chdir(tmp_path)

    published = main([
        '--items', 'items.csv',
        '--interactions', 'interactions.csv',
        '--config', 'recsys.yaml',
        '--strategy', 'collaborative',
    ])

    assert published == {'collaborative': 1}
    assert (tmp_path / 'artifacts' / 'models' / 'collaborative' / 'v000001' / 'params.npz').exists()
    assert (tmp_path / 'logs' / 'training_metrics.db').exists()
