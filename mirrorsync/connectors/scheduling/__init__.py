"""
Work Scheduling

Typed units of work and the scheduler that runs them. The dispatcher is
imported from `mirrorsync.connectors.scheduling.dispatcher` directly, since it
depends on the sync components that themselves enqueue work.
"""

from mirrorsync.connectors.scheduling.scheduler import ApschedulerTaskScheduler
from mirrorsync.connectors.scheduling.work import TaskScheduler, WorkItem, WorkKind

__all__ = [
    "ApschedulerTaskScheduler",
    "TaskScheduler",
    "WorkItem",
    "WorkKind",
]
