"""Scheduled dispatcher: drains due delayed/retry entries into immediate queues.

Manifesto:
    A delayed job is owned by whichever structure holds its text. Moving it
    from a time-ordered set to an immediate queue is claim-then-push: the
    ``ZREM`` decides the single owner, and only the owner pushes. Losing the
    claim is the normal outcome under concurrency and is never an error.

Tick flow::

    for set_name in set_names:                      (in the given order)
        for member in peek_due(set_name, now, 0, limit):
            claim(set_name, member) ── False ─► lost race, skip
                    │ True
            decode(member) ── MalformedEnvelope ─► quarantine in dead set, continue
                    │
            push_immediate(envelope.queue, member)
            dispatched += 1

    StoreUnavailable anywhere ─► abort the tick, propagate
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

from jobspine.core.errors import MalformedEnvelope
from jobspine.core.logging import LogContext, get_logger
from jobspine.core.timestamps import epoch_seconds, utc_now

from .envelope import decode
from .store import ClaimStore

logger = get_logger(__name__)

DEFAULT_SETS: tuple[str, ...] = ("scheduled", "retry")
DEFAULT_BATCH_LIMIT = 100


@dataclass
class DispatchStats:
    """Running counters for one dispatcher instance."""

    ticks: int = 0
    dispatched: int = 0
    lost_races: int = 0
    malformed: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None


class ScheduledDispatcher:
    """Moves due entries from time-ordered sets to their immediate queues.

    Safe to run from any number of processes against the same store at the
    same time: each due entry is dispatched at most once because only one
    ``claim`` can succeed per member.

    Example:
        >>> dispatcher = ScheduledDispatcher(store)
        >>> dispatcher.run_once(set_names=["scheduled", "retry"])
        3
    """

    def __init__(
        self,
        store: ClaimStore,
        *,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
        dead_set: str | None = "dead",
    ) -> None:
        """Initialize dispatcher.

        Args:
            store: Shared claim store
            batch_limit: Maximum entries peeked per set per tick
            dead_set: Where claimed members that fail to decode are recorded;
                None drops them after logging
        """
        self.store = store
        self.batch_limit = batch_limit
        self.dead_set = dead_set
        self._stats = DispatchStats()

    def run_once(
        self,
        now: datetime | None = None,
        set_names: str | Sequence[str] = DEFAULT_SETS,
    ) -> int:
        """Dispatch every due entry of ``set_names`` once.

        Args:
            now: Reference time (default: current UTC time)
            set_names: Sets to drain, processed in order, each up to ``batch_limit``;
                a single set name may be passed as a string

        Returns:
            Number of envelopes pushed to immediate queues

        Raises:
            StoreUnavailable: The store failed; the rest of the tick is abandoned.
        """
        if isinstance(set_names, str):
            set_names = [set_names]
        now = now or utc_now()
        now_ts = epoch_seconds(now)
        self._stats.ticks += 1
        self._stats.last_tick = now

        count = 0
        try:
            with LogContext(component="dispatcher"):
                for set_name in set_names:
                    count += self._drain(set_name, now_ts)
        except Exception as e:
            self._stats.last_error = str(e)
            raise

        if count:
            logger.info("scheduled_jobs_dispatched", count=count, sets=list(set_names))
        return count

    def _drain(self, set_name: str, now_ts: int) -> int:
        count = 0
        members = self.store.peek_due(set_name, now_ts, 0, self.batch_limit)

        for member in members:
            if not self.store.claim(set_name, member):
                logger.debug("claim_lost", set_name=set_name)
                self._stats.lost_races += 1
                continue

            try:
                envelope = decode(member)
            except MalformedEnvelope as e:
                self._quarantine(set_name, member, now_ts, e)
                continue

            self.store.push_immediate(envelope.queue, member)
            self._stats.dispatched += 1
            count += 1

            logger.debug(
                "job_enqueued",
                jid=envelope.jid,
                job_class=envelope.class_name,
                queue=envelope.queue,
                set_name=set_name,
            )

        return count

    def _quarantine(self, set_name: str, member: str, now_ts: int, error: MalformedEnvelope) -> None:
        self._stats.malformed += 1
        error.with_context(set_name=set_name, member=member[:200])
        logger.error("malformed_entry_skipped", **error.to_dict())

        if self.dead_set and self.dead_set != set_name:
            self.store.add(self.dead_set, member, now_ts)

    def get_stats(self) -> DispatchStats:
        """Get dispatcher statistics."""
        return self._stats

    def reset_stats(self) -> None:
        """Reset dispatcher statistics."""
        self._stats = DispatchStats()


__all__ = ["ScheduledDispatcher", "DispatchStats", "DEFAULT_SETS", "DEFAULT_BATCH_LIMIT"]
