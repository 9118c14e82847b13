"""
Timestamp and job-id utilities (stdlib-only).

Scores in the time-ordered sets and timestamps inside envelopes are integer
epoch seconds. These helpers keep the datetime ⇄ epoch conversion in one
place so every component truncates the same way.
"""

import secrets
from datetime import UTC, datetime


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def epoch_seconds(dt: datetime) -> int:
    """Convert a datetime to integer epoch seconds (truncated)."""
    return int(ensure_utc(dt).timestamp())


def from_epoch(seconds: float) -> datetime:
    """Convert epoch seconds to an aware UTC datetime."""
    return datetime.fromtimestamp(seconds, UTC)


def generate_jid() -> str:
    """Generate a job id: 24 lowercase hex characters (96 random bits)."""
    return secrets.token_hex(12)
