"""
Automation package for the recommender.

Background jobs (federated rounds, registry polling and reaping) run on
an APScheduler background scheduler; see ``automation.scheduler``.
"""

from .scheduler import RecsysScheduler, update_task_status

__all__ = ["RecsysScheduler", "update_task_status"]
