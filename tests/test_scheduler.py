"""Tests for the background job wrappers (the scheduler itself is never started)."""

import json
import threading

import pytest

from recsys.config import SchedulerConfig
from recsys.exceptions import PrivacyBudgetExhausted
from recsys.federated import RoundResult
from automation import RecsysScheduler, update_task_status
from automation.scheduler import FEDERATED_JOB, POLL_JOB, REAP_JOB


class StubCoordinator:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0

    def run_round(self, clients):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return RoundResult(
            round_id='round_000001_v1', status='applied', applied=True,
            model_version=1, new_version=2, metrics={'clients': len(clients)}
        )


@pytest.fixture
def status_file(tmp_path):
    return tmp_path / 'status' / 'task_status.json'


@pytest.fixture
def scheduler_config(status_file):
    return SchedulerConfig(status_file=str(status_file))


def read_status(path):
    return json.loads(path.read_text(encoding='utf-8'))


def test_update_task_status_merges_entries(status_file):
    update_task_status(str(status_file), 'a', 'success', details={'n': 1})
    update_task_status(str(status_file), 'b', 'error', error='boom')
    status = read_status(status_file)
    assert status['a']['details'] == {'n': 1}
    assert status['b']['error'] == 'boom'


def test_concurrent_status_updates_are_all_kept(status_file):
    names = [f"job_{i}" for i in range(16)]
    barrier = threading.Barrier(len(names))

    def write(name):
        barrier.wait()
        for _ in range(5):
            update_task_status(str(status_file), name, 'success')

    threads = [threading.Thread(target=write, args=(name,)) for name in names]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    status = read_status(status_file)
    assert sorted(status) == sorted(names)
    assert list(status_file.parent.glob('*.tmp')) == []


def test_update_task_status_disabled(tmp_path):
    update_task_status(None, 'a', 'success')
    assert list(tmp_path.iterdir()) == []


def test_jobs_registered(registry, scheduler_config):
    without = RecsysScheduler(registry, config=scheduler_config)
    assert {job.id for job in without.scheduler.get_jobs()} == {POLL_JOB, REAP_JOB}

    with_fl = RecsysScheduler(registry, StubCoordinator(), lambda: [], scheduler_config)
    assert {job.id for job in with_fl.scheduler.get_jobs()} == {POLL_JOB, REAP_JOB, FEDERATED_JOB}


def test_federated_round_records_status(registry, scheduler_config, status_file):
    coordinator = StubCoordinator()
    sched = RecsysScheduler(registry, coordinator, lambda: ['c1', 'c2'], scheduler_config)
    sched.run_federated_round()

    entry = read_status(status_file)[FEDERATED_JOB]
    assert entry['status'] == 'applied'
    assert entry['details']['new_version'] == 2


def test_exhausted_budget_removes_federated_job(registry, scheduler_config, status_file):
    error = PrivacyBudgetExhausted(spent=(8.0, 8e-5), projected=(9.0, 9e-5), ceiling=(8.0, 1e-3))
    coordinator = StubCoordinator(error=error)
    sched = RecsysScheduler(registry, coordinator, lambda: [], scheduler_config)

    sched.run_federated_round()
    assert sched.federated_halted
    assert sched.scheduler.get_job(FEDERATED_JOB) is None
    assert read_status(status_file)[FEDERATED_JOB]['status'] == 'halted'

    sched.run_federated_round()
    assert coordinator.calls == 1


def test_other_failures_keep_the_job(registry, scheduler_config, status_file):
    sched = RecsysScheduler(registry, StubCoordinator(error=RuntimeError('no model')), lambda: [], scheduler_config)
    sched.run_federated_round()

    assert not sched.federated_halted
    assert sched.scheduler.get_job(FEDERATED_JOB) is not None
    assert read_status(status_file)[FEDERATED_JOB]['error'] == 'no model'


def test_registry_jobs(registry, scheduler_config, status_file):
    sched = RecsysScheduler(registry, config=scheduler_config)
    sched.poll_registry()
    sched.reap_registry()
    status = read_status(status_file)
    assert status[POLL_JOB]['details'] == {'activated': []}
    assert status[REAP_JOB]['details'] == {'unloaded': 0}
    sched.shutdown()
