"""Producer helpers: put jobs into immediate queues or the scheduled set.

The dispatch core does not own job submission, but a small client keeps the
wire format in one place and makes the delayed path easy to exercise::

    client = JobClient(store)
    client.perform_async("Mailer", ["welcome", 42])                 # now
    client.perform_in(timedelta(minutes=5), "Mailer", ["reminder"]) # later
    client.perform_at(datetime(2026, 1, 1, tzinfo=UTC), "NewYear")
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

from jobspine.core.logging import get_logger
from jobspine.core.timestamps import epoch_seconds, utc_now

from .envelope import DEFAULT_MAX_RETRIES, DEFAULT_QUEUE, JobEnvelope, encode
from .store import ClaimStore

logger = get_logger(__name__)

SCHEDULED_SET = "scheduled"


class JobClient:
    """Submits job envelopes to a claim store."""

    def __init__(self, store: ClaimStore, *, scheduled_set: str = SCHEDULED_SET) -> None:
        self.store = store
        self.scheduled_set = scheduled_set

    def perform_async(
        self,
        class_name: str,
        args: Sequence[Any] = (),
        *,
        queue: str = DEFAULT_QUEUE,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> JobEnvelope:
        """Push a job straight onto its immediate queue."""
        envelope = JobEnvelope.new(class_name, list(args), queue=queue, max_retries=max_retries)
        self.store.push_immediate(queue, encode(envelope))
        logger.debug("job_pushed", jid=envelope.jid, job_class=class_name, queue=queue)
        return envelope

    def perform_at(
        self,
        when: datetime,
        class_name: str,
        args: Sequence[Any] = (),
        *,
        queue: str = DEFAULT_QUEUE,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> JobEnvelope:
        """Store a job in the scheduled set, due at ``when``."""
        envelope = JobEnvelope.new(class_name, list(args), queue=queue, max_retries=max_retries)
        self.store.add(self.scheduled_set, encode(envelope), epoch_seconds(when))
        logger.debug(
            "job_scheduled",
            jid=envelope.jid,
            job_class=class_name,
            queue=queue,
            due=when.isoformat(),
        )
        return envelope

    def perform_in(
        self,
        delay: timedelta | float,
        class_name: str,
        args: Sequence[Any] = (),
        *,
        queue: str = DEFAULT_QUEUE,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> JobEnvelope:
        """Store a job in the scheduled set, due after ``delay`` (timedelta or seconds)."""
        if not isinstance(delay, timedelta):
            delay = timedelta(seconds=delay)
        if delay < timedelta(0):
            raise ValueError("delay must not be negative")
        return self.perform_at(
            utc_now() + delay, class_name, args, queue=queue, max_retries=max_retries
        )


__all__ = ["JobClient", "SCHEDULED_SET"]
