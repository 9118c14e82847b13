"""Shared fixtures for the dispatch core tests."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from jobspine.core.scheduling.envelope import JobEnvelope, encode
from jobspine.core.scheduling.store import InMemoryClaimStore
from jobspine.core.timestamps import epoch_seconds

NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def store() -> InMemoryClaimStore:
    return InMemoryClaimStore()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def now_ts() -> int:
    return epoch_seconds(NOW)


@pytest.fixture
def make_member():
    """Build encoded envelope text with a deterministic jid."""
    counter = iter(range(1, 1_000_000))

    def _make(class_name: str = "Mailer", queue: str = "default", args=None) -> str:
        envelope = JobEnvelope(
            jid=f"{next(counter):024x}",
            class_name=class_name,
            queue=queue,
            args=list(args) if args is not None else ["welcome", 42],
            created_at=epoch_seconds(NOW) - 3600,
        )
        return encode(envelope)

    return _make
