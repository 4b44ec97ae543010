"""
Logging Utilities for Training, Federated Rounds and Serving.

This module provides structured logging for:
- Offline training runs (ALS, graph-neural)
- Federated training rounds
- Scoring service requests
- Metrics tracking to SQLite

Example:
    >>> from recsys.logging_utils import setup_training_logger, TrainingMetricsDB
    >>> logger = setup_training_logger('gnn', 'gnn_20261017_103000')
    >>> db = TrainingMetricsDB()
    >>> db.start_run('gnn_20261017_103000', 'graph', params)
"""

import logging
import sqlite3
import json
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Any
from contextlib import contextmanager
import threading

# ============================================================================
# Constants
# ============================================================================

DEFAULT_LOG_DIR = "logs"
TRAINING_LOG_DIR = "logs/training"
SERVICE_LOG_DIR = "logs/service"
TRAINING_DB_PATH = "logs/training_metrics.db"

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


# ============================================================================
# Logger Setup
# ============================================================================

def _make_handler(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    return handler


def setup_training_logger(
    model_type: str,
    run_id: str,
    log_dir: str = TRAINING_LOG_DIR,
    console: bool = True
) -> logging.Logger:
    """
    Setup logger for a training run.

    Args:
        model_type: 'als', 'gnn' or 'federated'
        run_id: Unique run identifier
        log_dir: Directory for log files
        console: Whether to also log to console

    Returns:
        Configured logger

    Example:
        >>> logger = setup_training_logger('als', 'als_20261017_103000')
        >>> logger.info("Training started | factors=64, reg=0.01")
    """
    Path(log_dir).mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(f'training.{model_type}.{run_id}')
    logger.setLevel(logging.DEBUG)
    logger.handlers = []

    log_file = Path(log_dir) / f'{model_type}.log'
    logger.addHandler(_make_handler(logging.FileHandler(log_file, encoding='utf-8'), logging.INFO))

    if console:
        logger.addHandler(_make_handler(logging.StreamHandler(), logging.INFO))

    return logger


def setup_service_logger(
    name: str = 'recommender',
    log_dir: str = SERVICE_LOG_DIR,
    console: bool = True
) -> logging.Logger:
    """
    Setup logger for the scoring service.

    Errors are additionally written to ``error.log`` in the same directory.
    """
    Path(log_dir).mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(f'service.{name}')
    logger.setLevel(logging.DEBUG)
    logger.handlers = []

    logger.addHandler(_make_handler(
        logging.FileHandler(Path(log_dir) / f'{name}.log', encoding='utf-8'), logging.INFO
    ))
    logger.addHandler(_make_handler(
        logging.FileHandler(Path(log_dir) / 'error.log', encoding='utf-8'), logging.ERROR
    ))

    if console:
        logger.addHandler(_make_handler(logging.StreamHandler(), logging.INFO))

    return logger


# ============================================================================
# Format Helpers
# ============================================================================

def format_params(params: Dict[str, Any]) -> str:
    """Format parameters for logging."""
    items = []
    for k, v in params.items():
        if isinstance(v, float):
            items.append(f"{k}={v:.4g}")
        else:
            items.append(f"{k}={v}")
    return ", ".join(items)


def format_metrics(metrics: Dict[str, float]) -> str:
    """Format metrics for logging."""
    items = []
    for k, v in metrics.items():
        if v is not None:
            items.append(f"{k}={v:.4f}")
    return ", ".join(items)


# ============================================================================
# Training Metrics Database
# ============================================================================

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS model_runs (
        run_id TEXT PRIMARY KEY,
        strategy TEXT NOT NULL,
        snapshot_version INTEGER,
        status TEXT NOT NULL,
        params TEXT,
        metrics TEXT,
        artifact_version INTEGER,
        error_message TEXT,
        started_at TEXT,
        finished_at TEXT,
        duration_seconds REAL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS epoch_metrics (
        run_id TEXT NOT NULL REFERENCES model_runs(run_id),
        epoch INTEGER NOT NULL,
        loss REAL,
        val_recall REAL,
        val_ndcg REAL,
        duration_seconds REAL,
        recorded_at TEXT,
        PRIMARY KEY (run_id, epoch)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS federated_rounds (
        round_id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        base_version INTEGER,
        new_version INTEGER,
        cohort_size INTEGER,
        accepted_uploads INTEGER,
        dropped_uploads INTEGER,
        epsilon_spent REAL,
        delta_spent REAL,
        details TEXT,
        started_at TEXT,
        finished_at TEXT
    )
    """,
)


def _now() -> str:
    return datetime.now().isoformat(timespec='seconds')


class TrainingMetricsDB:
    """
    SQLite store for offline model runs and federated rounds.

    One row per run in ``model_runs`` (status goes running -> completed
    or failed), one row per epoch in ``epoch_metrics``, and one row per
    federated round in ``federated_rounds``. Connections are opened per
    call and serialized by a lock, so a single instance can be shared by
    the scheduler thread and a training run.

    Example:
        >>> db = TrainingMetricsDB('logs/training_metrics.db')
        >>> db.start_run('als_001', 'collaborative', {'factors': 64})
        >>> db.log_epoch('als_001', 1, loss=0.5, duration_seconds=1.2)
        >>> db.complete_run('als_001', {'final_loss': 0.41}, artifact_version=3)
    """

    def __init__(self, db_path: str = TRAINING_DB_PATH):
        self.db_path = db_path
        self._lock = threading.Lock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextmanager
    def _connect(self):
        with self._lock:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            try:
                with conn:
                    yield conn
            finally:
                conn.close()

    def _query(self, sql: str, args: tuple = ()) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            return [dict(row) for row in conn.execute(sql, args).fetchall()]

    # ------------------------------------------------------------------
    # Offline runs
    # ------------------------------------------------------------------

    def start_run(
        self,
        run_id: str,
        strategy: str,
        params: Dict[str, Any],
        snapshot_version: Optional[int] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO model_runs "
                "(run_id, strategy, snapshot_version, status, params, started_at) "
                "VALUES (?, ?, ?, 'running', ?, ?)",
                (run_id, strategy, snapshot_version, json.dumps(params, default=str), _now())
            )

    def log_epoch(
        self,
        run_id: str,
        epoch: int,
        loss: Optional[float] = None,
        val_recall: Optional[float] = None,
        val_ndcg: Optional[float] = None,
        duration_seconds: Optional[float] = None
    ) -> None:
        """Record one epoch; logging the same epoch twice keeps the latest values."""
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO epoch_metrics "
                "(run_id, epoch, loss, val_recall, val_ndcg, duration_seconds, recorded_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (run_id, epoch, loss, val_recall, val_ndcg, duration_seconds, _now())
            )

    def complete_run(
        self,
        run_id: str,
        metrics: Dict[str, Any],
        artifact_version: Optional[int] = None,
        duration_seconds: Optional[float] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE model_runs SET status = 'completed', metrics = ?, artifact_version = ?, "
                "duration_seconds = ?, finished_at = ? WHERE run_id = ?",
                (json.dumps(metrics, default=float), artifact_version, duration_seconds, _now(), run_id)
            )

    def fail_run(self, run_id: str, error_message: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE model_runs SET status = 'failed', error_message = ?, finished_at = ? "
                "WHERE run_id = ?",
                (error_message, _now(), run_id)
            )

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        rows = self._query("SELECT * FROM model_runs WHERE run_id = ?", (run_id,))
        return rows[0] if rows else None

    def get_epochs(self, run_id: str) -> List[Dict[str, Any]]:
        return self._query(
            "SELECT * FROM epoch_metrics WHERE run_id = ? ORDER BY epoch", (run_id,)
        )

    # ------------------------------------------------------------------
    # Federated rounds
    # ------------------------------------------------------------------

    def log_federated_round(
        self,
        round_id: str,
        status: str,
        model_version: int,
        new_version: Optional[int],
        cohort_size: int,
        accepted_uploads: int,
        dropped_uploads: int,
        epsilon_spent: float,
        delta_spent: float,
        metrics: Optional[Dict[str, Any]] = None,
        started_at: Optional[str] = None
    ) -> None:
        """Record the outcome of one federated round ('applied' or 'cancelled')."""
        finished = _now()
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO federated_rounds VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    round_id, status, model_version, new_version,
                    cohort_size, accepted_uploads, dropped_uploads,
                    epsilon_spent, delta_spent,
                    json.dumps(metrics or {}, default=float),
                    started_at or finished, finished
                )
            )

    def get_federated_rounds(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent rounds first."""
        return self._query(
            "SELECT * FROM federated_rounds ORDER BY finished_at DESC, rowid DESC LIMIT ?",
            (limit,)
        )
