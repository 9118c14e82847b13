"""Time-based dispatch core for jobspine.

Manifesto:
    Jobs that should run later (delayed jobs, retries, recurring cron jobs)
    sit in shared time-ordered sets. Any number of processes poll those sets
    with no leader election; the store's atomic ``claim`` and ``advance``
    primitives guarantee each due entry is dispatched at most once per
    occurrence.

┌──────────────────────────────────────────────────────────────────────────────┐
│  DISPATCH CORE                                                                │
│                                                                               │
│   JobClient ──perform_in/at──► scheduled set ─┐                               │
│   workers   ──failures──────► retry set ──────┤                               │
│                                               ▼                               │
│                                  ScheduledDispatcher.run_once                 │
│                                     peek_due → claim → push_immediate         │
│                                               │                               │
│   PeriodicRegistry ──register──► periodic set │                               │
│                                       │       │                               │
│                                       ▼       │                               │
│                          PeriodicScheduler.run_once                           │
│                             peek_due → next_after → advance → push            │
│                                       │       │                               │
│                                       ▼       ▼                               │
│                                immediate queues (queue:<name>)                │
│                                                                               │
│   DispatchLoop ticks both passes every ``poll_interval_seconds``.            │
└──────────────────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ Pushing a delayed job without winning ``claim`` first
    ✅ ``claim`` then ``push_immediate``; a lost claim is skipped silently
    ❌ Pushing a periodic job before its score has moved
    ✅ ``advance`` then ``push_immediate``; only the winner pushes
    ❌ Constructing loop components individually in application code
    ✅ ``create_dispatch_loop(settings)`` factory function
"""

from __future__ import annotations

from jobspine.core.logging import configure_logging
from jobspine.core.settings import DispatchSettings, get_settings

from .client import SCHEDULED_SET, JobClient
from .cron import DEFAULT_HORIZON_YEARS, CronExpression, next_after, parse
from .dispatcher import DEFAULT_SETS, DispatchStats, ScheduledDispatcher
from .envelope import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_QUEUE,
    JobEnvelope,
    PeriodicJobDefinition,
    decode,
    decode_definition,
    encode,
    encode_definition,
)
from .periodic import PERIODIC_SET, PeriodicRegistry, PeriodicScheduler, PeriodicStats
from .poller import DispatchLoop, TickResult
from .store import ClaimStore, InMemoryClaimStore, RedisClaimStore, create_store

__all__ = [
    # Cron
    "CronExpression",
    "parse",
    "next_after",
    "DEFAULT_HORIZON_YEARS",
    # Envelope
    "JobEnvelope",
    "PeriodicJobDefinition",
    "encode",
    "decode",
    "encode_definition",
    "decode_definition",
    "DEFAULT_QUEUE",
    "DEFAULT_MAX_RETRIES",
    # Store
    "ClaimStore",
    "InMemoryClaimStore",
    "RedisClaimStore",
    "create_store",
    # Dispatcher
    "ScheduledDispatcher",
    "DispatchStats",
    "DEFAULT_SETS",
    # Periodic
    "PeriodicScheduler",
    "PeriodicRegistry",
    "PeriodicStats",
    "PERIODIC_SET",
    # Client
    "JobClient",
    "SCHEDULED_SET",
    # Loop
    "DispatchLoop",
    "TickResult",
    "create_dispatch_loop",
]


def create_dispatch_loop(
    settings: DispatchSettings | None = None,
    store: ClaimStore | None = None,
    *,
    configure_logs: bool = True,
) -> DispatchLoop:
    """Factory function to create a fully wired dispatch loop.

    Args:
        settings: Configuration (default: cached :func:`get_settings`)
        store: Claim store to use (default: built from ``settings.redis_url``)
        configure_logs: Apply ``settings.log_level`` and ``settings.log_format``
            to the process logging setup

    Returns:
        Configured, not yet started DispatchLoop

    Example:
        >>> loop = create_dispatch_loop()
        >>> loop.start()
    """
    settings = settings or get_settings()
    if configure_logs:
        configure_logging(
            level=settings.log_level,
            json_format=settings.log_format == "json",
        )
    if store is None:
        store = create_store(settings.redis_url, namespace=settings.namespace)

    dispatcher = ScheduledDispatcher(
        store,
        batch_limit=settings.batch_limit,
        dead_set=settings.dead_set,
    )
    scheduler = PeriodicScheduler(
        store,
        set_name=settings.periodic_set,
        batch_limit=settings.batch_limit,
        horizon_years=settings.cron_horizon_years,
    )
    return DispatchLoop.from_settings(dispatcher, scheduler, settings)
