"""Services module for schedules, presence and lifecycle wiring."""

from pserver_lifecycle.services.lifecycle_service import LifecycleService, ReconcileResult
from pserver_lifecycle.services.presence_service import PresenceTracker
from pserver_lifecycle.services.schedule_service import CronScheduler

__all__ = [
    "CronScheduler",
    "LifecycleService",
    "PresenceTracker",
    "ReconcileResult",
]
