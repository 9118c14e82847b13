"""
jobspine - time-based dispatch core for Redis-backed job queues.

Moves delayed and retry jobs into their immediate queues once due, and turns
cron definitions into one job per occurrence, safely across any number of
polling processes.
"""

__version__ = "0.1.0"

from jobspine.core.scheduling import (  # noqa: E402
    DispatchLoop,
    JobClient,
    JobEnvelope,
    PeriodicJobDefinition,
    PeriodicRegistry,
    PeriodicScheduler,
    ScheduledDispatcher,
    create_dispatch_loop,
    create_store,
)

__all__ = [
    "__version__",
    "DispatchLoop",
    "JobClient",
    "JobEnvelope",
    "PeriodicJobDefinition",
    "PeriodicRegistry",
    "PeriodicScheduler",
    "ScheduledDispatcher",
    "create_dispatch_loop",
    "create_store",
]
