"""Periodic scheduler: advances cron definitions and dispatches one job per occurrence.

Manifesto:
    A periodic definition lives forever in the ``periodic`` set; only its
    score (next-run time) moves. Dispatch is advance-then-push: the
    compare-and-set on the score picks exactly one winner per occurrence,
    and only the winner pushes. Because the push is not transactional with
    the score update, advancing first keeps the duplicate window down to the
    gap between a successful ``advance`` and the push that follows it.

Tick flow::

    for member in peek_due("periodic", now, skipped, limit):
        definition = decode_definition(member) ── MalformedEnvelope ─► report, skip
        next = parse(definition.cron).next_after(now) ── CronError ─► report, skip
        advance("periodic", member, next) ── False ─► another process won, skip
                │ True
        push_immediate(definition.queue, encode(definition.into_envelope(now)))

    StoreUnavailable anywhere ─► abort the tick, propagate

Corrupt definitions are never removed by the scheduler. They stay due and are
reported on every tick until someone re-registers or unregisters them. While a
page contains corrupt definitions the tick pages past them with the number
skipped so far as the offset, so they cannot crowd out valid ones.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from jobspine.core.errors import CronError, JobSpineError, MalformedEnvelope
from jobspine.core.logging import LogContext, get_logger
from jobspine.core.timestamps import epoch_seconds, from_epoch, utc_now

from .cron import DEFAULT_HORIZON_YEARS, parse
from .envelope import (
    PeriodicJobDefinition,
    decode_definition,
    encode,
    encode_definition,
)
from .store import ClaimStore

logger = get_logger(__name__)

PERIODIC_SET = "periodic"
DEFAULT_BATCH_LIMIT = 100

_DISPATCHED = "dispatched"
_LOST = "lost"
_SKIPPED = "skipped"


@dataclass
class PeriodicStats:
    """Running counters for one periodic scheduler instance."""

    ticks: int = 0
    dispatched: int = 0
    lost_races: int = 0
    invalid: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None


class PeriodicScheduler:
    """Dispatches due periodic definitions, one envelope per occurrence.

    Example:
        >>> scheduler = PeriodicScheduler(store)
        >>> scheduler.run_once()
        1
    """

    def __init__(
        self,
        store: ClaimStore,
        *,
        set_name: str = PERIODIC_SET,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
        horizon_years: int = DEFAULT_HORIZON_YEARS,
    ) -> None:
        self.store = store
        self.set_name = set_name
        self.batch_limit = batch_limit
        self.horizon_years = horizon_years
        self._stats = PeriodicStats()

    def run_once(self, now: datetime | None = None) -> int:
        """Advance and dispatch every due definition once.

        Returns:
            Number of envelopes pushed

        Raises:
            StoreUnavailable: The store failed; the rest of the tick is abandoned.
        """
        now = now or utc_now()
        now_ts = epoch_seconds(now)
        self._stats.ticks += 1
        self._stats.last_tick = now

        count = 0
        try:
            with LogContext(component="periodic"):
                skipped = 0
                while True:
                    members = self.store.peek_due(
                        self.set_name, now_ts, skipped, self.batch_limit
                    )
                    page_skipped = 0
                    for member in members:
                        outcome = self._process(member, now)
                        if outcome == _DISPATCHED:
                            count += 1
                        elif outcome == _SKIPPED:
                            page_skipped += 1
                    skipped += page_skipped
                    # skipped definitions stay due, so page past them
                    if len(members) < self.batch_limit or not page_skipped:
                        break
        except Exception as e:
            self._stats.last_error = str(e)
            raise

        if count:
            logger.info("periodic_jobs_dispatched", count=count)
        return count

    def _process(self, member: str, now: datetime) -> str:
        try:
            definition = decode_definition(member)
            next_run = parse(definition.cron).next_after(now, horizon_years=self.horizon_years)
        except (MalformedEnvelope, CronError) as e:
            self._report_invalid(member, e)
            return _SKIPPED

        if not self.store.advance(self.set_name, member, epoch_seconds(next_run)):
            logger.debug("advance_lost", name=definition.name)
            self._stats.lost_races += 1
            return _LOST

        envelope = definition.into_envelope(now)
        self.store.push_immediate(definition.queue, encode(envelope))
        self._stats.dispatched += 1

        logger.debug(
            "periodic_job_enqueued",
            name=definition.name,
            cron=definition.cron,
            jid=envelope.jid,
            job_class=envelope.class_name,
            queue=envelope.queue,
            next_run=next_run.isoformat(),
        )
        return _DISPATCHED

    def _report_invalid(self, member: str, error: JobSpineError) -> None:
        self._stats.invalid += 1
        error.with_context(set_name=self.set_name, member=member[:200])
        logger.error("periodic_definition_skipped", **error.to_dict())

    def get_stats(self) -> PeriodicStats:
        """Get scheduler statistics."""
        return self._stats

    def reset_stats(self) -> None:
        """Reset scheduler statistics."""
        self._stats = PeriodicStats()


class PeriodicRegistry:
    """Registration API for periodic definitions.

    Keeps exactly one member per definition name in the periodic set.
    Registration is an operator action, not part of the dispatch hot path,
    so replacing an existing definition is remove-then-add rather than a
    single atomic step.

    Example:
        >>> registry = PeriodicRegistry(store)
        >>> registry.register(PeriodicJobDefinition(
        ...     name="daily-report",
        ...     cron="0 0 3 * * *",
        ...     class_name="ReportJob",
        ...     queue="reports",
        ... ))
    """

    def __init__(
        self,
        store: ClaimStore,
        *,
        set_name: str = PERIODIC_SET,
        horizon_years: int = DEFAULT_HORIZON_YEARS,
    ) -> None:
        self.store = store
        self.set_name = set_name
        self.horizon_years = horizon_years

    def register(self, definition: PeriodicJobDefinition, now: datetime | None = None) -> datetime:
        """Store ``definition`` with its first run after ``now``.

        Returns:
            The scheduled next-run time

        Raises:
            InvalidExpression / NoMatchFound: The cron expression is unusable.
        """
        next_run = parse(definition.cron).next_after(
            now or utc_now(), horizon_years=self.horizon_years
        )
        member = encode_definition(definition)

        for existing, _score in self._members_named(definition.name):
            if existing != member:
                self.store.claim(self.set_name, existing)

        self.store.add(self.set_name, member, epoch_seconds(next_run))
        logger.info(
            "periodic_job_registered",
            name=definition.name,
            cron=definition.cron,
            queue=definition.queue,
            next_run=next_run.isoformat(),
        )
        return next_run

    def unregister(self, name: str) -> bool:
        """Remove the definition called ``name``. Returns whether one was removed."""
        removed = False
        for member, _score in self._members_named(name):
            removed = self.store.claim(self.set_name, member) or removed
        if removed:
            logger.info("periodic_job_unregistered", name=name)
        return removed

    def definitions(self) -> list[tuple[PeriodicJobDefinition, datetime]]:
        """All decodable definitions with their next-run time, soonest first."""
        result = []
        for member, score in self.store.members(self.set_name):
            try:
                result.append((decode_definition(member), from_epoch(score)))
            except MalformedEnvelope:
                logger.warning("periodic_definition_unreadable", set_name=self.set_name)
        return result

    def destroy_all(self) -> int:
        """Remove every member of the periodic set. Returns how many were removed."""
        removed = 0
        for member, _score in self.store.members(self.set_name):
            if self.store.claim(self.set_name, member):
                removed += 1
        logger.info("periodic_jobs_destroyed", count=removed)
        return removed

    def _members_named(self, name: str) -> list[tuple[str, float]]:
        matches = []
        for member, score in self.store.members(self.set_name):
            try:
                if decode_definition(member).name == name:
                    matches.append((member, score))
            except MalformedEnvelope:
                continue
        return matches


__all__ = ["PeriodicScheduler", "PeriodicRegistry", "PeriodicStats", "PERIODIC_SET"]
