"""
Recommender Automation Scheduler.

Background jobs around the serving core:

- federated_round: run one federated round of the collaborative model
- registry_poll: activate newly published model versions
- registry_reap: unload retired versions after their grace period

A job failure is logged and recorded in the task status file; the job
stays scheduled. The one terminal condition is an exhausted privacy
budget, which removes the federated job for good.

Usage:
    scheduler = RecsysScheduler(registry, coordinator, client_source, cfg)
    scheduler.start()

Run standalone (registry jobs only):
    python -m automation.scheduler
"""

import json
import logging
import os
import tempfile
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
import pytz

from recsys.config import SchedulerConfig, load_config
from recsys.exceptions import PrivacyBudgetExhausted
from recsys.federated import FederatedClient, FederatedCoordinator
from recsys.logging_utils import setup_service_logger
from recsys.registry import FileArtifactStore, ModelRegistry
from service.recommender.strategies import register_model_strategies

logger = logging.getLogger(__name__)

FEDERATED_JOB = "federated_round"
POLL_JOB = "registry_poll"
REAP_JOB = "registry_reap"

_status_lock = threading.Lock()


# =============================================================================
# Task Status Tracking
# =============================================================================

def update_task_status(
    status_file: Optional[str],
    task_name: str,
    status: str,
    error: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Update task status in JSON file.

    Jobs run on the scheduler's thread pool, so the read-modify-write is
    serialized and the file is replaced atomically.
    """
    if not status_file:
        return
    path = Path(status_file)
    path.parent.mkdir(parents=True, exist_ok=True)

    with _status_lock:
        if path.exists():
            with open(path, "r", encoding="utf-8") as f:
                all_status = json.load(f)
        else:
            all_status = {}

        all_status[task_name] = {
            "status": status,
            "timestamp": datetime.now().isoformat(),
            "error": error,
            "details": details or {},
        }

        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(all_status, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


# =============================================================================
# Scheduler
# =============================================================================

class RecsysScheduler:
    """
    Owns the background scheduler and its three jobs.

    Args:
        registry: model registry to poll and reap
        coordinator: federated coordinator; None disables federated rounds
        client_source: returns the clients reachable for the next round
        config: job intervals
    """

    def __init__(
        self,
        registry: ModelRegistry,
        coordinator: Optional[FederatedCoordinator] = None,
        client_source: Optional[Callable[[], Iterable[FederatedClient]]] = None,
        config: Optional[SchedulerConfig] = None,
    ):
        self.registry = registry
        self.coordinator = coordinator
        self.client_source = client_source
        self.config = config or SchedulerConfig()
        self.scheduler = BackgroundScheduler(timezone=pytz.timezone(self.config.timezone))
        self.federated_halted = False
        self._add_jobs()

    def _add_jobs(self) -> None:
        self.scheduler.add_job(
            self.poll_registry,
            "interval",
            seconds=self.config.registry_poll_seconds,
            id=POLL_JOB,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.reap_registry,
            "interval",
            seconds=self.config.registry_reap_seconds,
            id=REAP_JOB,
            max_instances=1,
            coalesce=True,
        )
        if self.coordinator is not None and self.client_source is not None:
            self.scheduler.add_job(
                self.run_federated_round,
                "interval",
                hours=self.config.federated_round_hours,
                id=FEDERATED_JOB,
                max_instances=1,
                coalesce=True,
            )
        else:
            logger.info("Federated rounds disabled (no coordinator or client source)")

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    def poll_registry(self) -> None:
        try:
            activated = self.registry.poll()
            if activated:
                logger.info(f"Activated versions: {activated}")
            update_task_status(
                self.config.status_file, POLL_JOB, "success",
                details={"activated": [list(a) for a in activated]},
            )
        except Exception as e:
            logger.error(f"✗ Registry poll failed: {e}", exc_info=True)
            update_task_status(self.config.status_file, POLL_JOB, "error", str(e))

    def reap_registry(self) -> None:
        try:
            unloaded = self.registry.reap()
            update_task_status(
                self.config.status_file, REAP_JOB, "success", details={"unloaded": unloaded}
            )
        except Exception as e:
            logger.error(f"✗ Registry reap failed: {e}", exc_info=True)
            update_task_status(self.config.status_file, REAP_JOB, "error", str(e))

    def run_federated_round(self) -> None:
        if self.federated_halted:
            return
        logger.info("=" * 60)
        logger.info("TASK: Federated round")
        logger.info("=" * 60)
        try:
            clients = list(self.client_source())
            result = self.coordinator.run_round(clients)
            logger.info(
                f"✓ Federated round {result.round_id}: status={result.status}, "
                f"version={result.model_version}->{result.new_version}"
            )
            update_task_status(
                self.config.status_file, FEDERATED_JOB, result.status,
                details={"round_id": result.round_id, "new_version": result.new_version},
            )
        except PrivacyBudgetExhausted as e:
            self.federated_halted = True
            logger.error(f"✗ Federated rounds halted: {e}")
            update_task_status(self.config.status_file, FEDERATED_JOB, "halted", str(e))
            if self.scheduler.get_job(FEDERATED_JOB) is not None:
                self.scheduler.remove_job(FEDERATED_JOB)
        except Exception as e:
            logger.error(f"✗ Federated round failed: {e}", exc_info=True)
            update_task_status(self.config.status_file, FEDERATED_JOB, "error", str(e))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        logger.info("Starting recommender scheduler")
        for job in self.scheduler.get_jobs():
            logger.info(f"  - {job.id}: {job.trigger}")
        self.scheduler.start()

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        logger.info("Scheduler stopped")


# =============================================================================
# Main Entry Point
# =============================================================================

def main() -> None:
    """Run registry polling and reaping against the configured artifact store."""
    service_logger = setup_service_logger("scheduler")
    config = load_config()
    registry = ModelRegistry(FileArtifactStore(config.registry.artifact_root), config.registry)
    register_model_strategies(registry)

    service_logger.info("=" * 80)
    service_logger.info("RECOMMENDER SCHEDULER STARTING")
    service_logger.info(f"Artifact root: {config.registry.artifact_root}")
    service_logger.info("=" * 80)

    scheduler = RecsysScheduler(registry, config=config.scheduler)
    scheduler.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        service_logger.info("Scheduler stopped by user")
    finally:
        scheduler.shutdown()


if __name__ == "__main__":
    main()
