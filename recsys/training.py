"""
Offline Training Pipeline.

Trains the model-backed strategies on a graph snapshot and publishes the
result as a new artifact version:
- Step 1: Snapshot the interaction graph
- Step 2: Fit ALS factors or the graph-neural recommender
- Step 3: Record per-epoch metrics in the training metrics DB
- Step 4: Publish to the artifact store and (optionally) activate

Usage:
    # Both strategies, publish and activate
    python -m recsys.training --items data/items.csv --interactions data/interactions.csv

    # ALS only, publish without activating
    python -m recsys.training --items ... --interactions ... --strategy collaborative --no-activate
"""

import argparse
import time
from datetime import datetime
from typing import Any, Dict, Optional

import pandas as pd

from recsys.config import RecsysConfig, config_to_dict, load_config
from recsys.data.graph import GraphSnapshot, InteractionGraph
from recsys.logging_utils import (
    TrainingMetricsDB,
    format_metrics,
    format_params,
    setup_training_logger,
)
from recsys.model.als import ALSTrainer
from recsys.model.gnn import GNNTrainer
from recsys.registry import FileArtifactStore, ModelArtifact, ModelRegistry

COLLABORATIVE = 'collaborative'
GRAPH = 'graph'


def make_run_id(model_type: str) -> str:
    return f"{model_type}_{datetime.now().strftime('%Y%m%d_%H%M%S')}"


def _publish(
    registry: ModelRegistry,
    strategy: str,
    params: Dict[str, Any],
    metrics: Dict[str, Any],
    metadata: Dict[str, Any],
    activate: bool
) -> int:
    version = registry.store.next_version(strategy)
    artifact = ModelArtifact.create(strategy, version, params, metrics=metrics, metadata=metadata)
    if activate:
        registry.publish_and_activate(artifact)
    else:
        registry.store.publish(artifact)
    return version


def train_collaborative(
    snapshot: GraphSnapshot,
    registry: ModelRegistry,
    config: Optional[RecsysConfig] = None,
    metrics_db: Optional[TrainingMetricsDB] = None,
    activate: bool = True,
    run_id: Optional[str] = None,
    log_dir: Optional[str] = None
) -> int:
    """
    Fit ALS on the snapshot and publish a collaborative artifact.

    Returns:
        Published version number
    """
    cfg = (config or RecsysConfig()).als
    run_id = run_id or make_run_id('als')
    logger = setup_training_logger('als', run_id, **({'log_dir': log_dir} if log_dir else {}))
    params = config_to_dict(cfg)
    logger.info(f"Run {run_id} | {format_params(params)}")
    if metrics_db is not None:
        metrics_db.start_run(run_id, COLLABORATIVE, params, snapshot.version)

    try:
        trainer = ALSTrainer(
            factors=cfg.factors,
            regularization=cfg.regularization,
            epochs=cfg.epochs,
            alpha=cfg.alpha,
            tolerance=cfg.tolerance,
            init_scale=cfg.init_scale,
            random_seed=cfg.random_seed
        )
        summary = trainer.fit(snapshot.interactions, show_progress=False)
        history = trainer.history
        if metrics_db is not None:
            for epoch, loss, duration in zip(history.epochs, history.losses, history.durations):
                metrics_db.log_epoch(run_id, epoch, loss=loss, duration_seconds=duration)

        metrics = {
            'final_loss': summary['final_loss'],
            'epochs_completed': summary['epochs_completed'],
            'nan_rows': summary['nan_rows'],
        }
        version = _publish(
            registry,
            COLLABORATIVE,
            trainer.to_params(snapshot.user_ids, snapshot.item_ids),
            metrics=metrics,
            metadata={
                'run_id': run_id,
                'snapshot_version': snapshot.version,
                'allow_nan_rows': ['user_factors'],
            },
            activate=activate
        )
    except Exception as e:
        logger.error(f"Run {run_id} failed: {e}")
        if metrics_db is not None:
            metrics_db.fail_run(run_id, str(e))
        raise

    logger.info(f"Run {run_id} published {COLLABORATIVE} v{version} | {format_metrics(metrics)}")
    if metrics_db is not None:
        metrics_db.complete_run(
            run_id, metrics, artifact_version=version,
            duration_seconds=summary['total_duration_seconds']
        )
    return version


def train_graph(
    snapshot: GraphSnapshot,
    registry: ModelRegistry,
    config: Optional[RecsysConfig] = None,
    metrics_db: Optional[TrainingMetricsDB] = None,
    activate: bool = True,
    run_id: Optional[str] = None,
    log_dir: Optional[str] = None,
    show_progress: bool = False
) -> int:
    """Fit the graph-neural recommender and publish a graph artifact."""
    cfg = (config or RecsysConfig()).gnn
    run_id = run_id or make_run_id('gnn')
    logger = setup_training_logger('gnn', run_id, **({'log_dir': log_dir} if log_dir else {}))
    params = config_to_dict(cfg)
    logger.info(f"Run {run_id} | {format_params(params)}")
    if metrics_db is not None:
        metrics_db.start_run(run_id, GRAPH, params, snapshot.version)

    recall_key, ndcg_key = f'recall@{cfg.eval_k}', f'ndcg@{cfg.eval_k}'
    try:
        trainer = GNNTrainer(cfg)
        summary = trainer.fit(snapshot, show_progress=show_progress)
        history = trainer.history
        if metrics_db is not None:
            for epoch, loss, duration, val in zip(
                history.epochs, history.losses, history.durations, history.val_metrics
            ):
                metrics_db.log_epoch(
                    run_id, epoch, loss=loss,
                    val_recall=val.get(recall_key),
                    val_ndcg=val.get(ndcg_key),
                    duration_seconds=duration
                )

        metrics = {
            'final_loss': summary['final_loss'],
            'best_epoch': summary['best_epoch'],
            recall_key: summary.get(recall_key),
        }
        metadata = trainer.artifact_metadata()
        metadata.update({'run_id': run_id, 'snapshot_version': snapshot.version})
        version = _publish(registry, GRAPH, trainer.to_params(), metrics, metadata, activate)
    except Exception as e:
        logger.error(f"Run {run_id} failed: {e}")
        if metrics_db is not None:
            metrics_db.fail_run(run_id, str(e))
        raise

    logger.info(f"Run {run_id} published {GRAPH} v{version} | {format_metrics(metrics)}")
    if metrics_db is not None:
        metrics_db.complete_run(
            run_id, metrics, artifact_version=version,
            duration_seconds=summary['total_duration_seconds']
        )
    return version


# ============================================================================
# CLI
# ============================================================================

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Train and publish recommender models")
    parser.add_argument('--items', required=True, help="Items CSV (item_id, tags, trust columns)")
    parser.add_argument('--interactions', required=True, help="Interactions CSV")
    parser.add_argument('--config', default=None, help="Path to recsys.yaml")
    parser.add_argument(
        '--strategy', choices=[COLLABORATIVE, GRAPH, 'all'], default='all',
        help="Which model to train"
    )
    parser.add_argument('--no-activate', action='store_true', help="Publish without activating")
    parser.add_argument('--progress', action='store_true', help="Show per-batch progress bars")
    return parser.parse_args(argv)


def main(argv=None) -> Dict[str, int]:
    args = parse_args(argv)
    config = load_config(args.config)

    items_df = pd.read_csv(args.items)
    interactions_df = pd.read_csv(args.interactions, parse_dates=['timestamp'])
    graph = InteractionGraph.from_frames(
        items_df, interactions_df,
        half_life_days=config.graph.edge_half_life_days,
        history_window=config.graph.history_window
    )
    snapshot = graph.snapshot()

    registry = ModelRegistry(FileArtifactStore(config.registry.artifact_root), config.registry)
    metrics_db = TrainingMetricsDB()
    activate = not args.no_activate

    start = time.time()
    published = {}
    if args.strategy in (COLLABORATIVE, 'all'):
        published[COLLABORATIVE] = train_collaborative(snapshot, registry, config, metrics_db, activate)
    if args.strategy in (GRAPH, 'all'):
        published[GRAPH] = train_graph(
            snapshot, registry, config, metrics_db, activate, show_progress=args.progress
        )
    print(f"Published {published} in {time.time() - start:.1f}s")
    return published


if __name__ == '__main__':
    main()
