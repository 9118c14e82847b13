"""Cron expression engine.

Parses 6-field cron expressions and computes the next matching second.

Grammar::

    ┌───────────── second        (0-59)
    │ ┌─────────── minute        (0-59)
    │ │ ┌───────── hour          (0-23)
    │ │ │ ┌─────── day-of-month  (1-31)
    │ │ │ │ ┌───── month         (1-12)
    │ │ │ │ │ ┌─── day-of-week   (0-6, 0 = Sunday)
    │ │ │ │ │ │
    0 0 3 * * *        every day at 03:00:00

Each field is a comma list of items, and each item is one of ``*``, ``n``,
``a-b``, ``*/s``, ``a/s`` (from ``a`` to the field maximum) or ``a-b/s``.

When both day-of-month and day-of-week are restricted (neither starts with
``*``) a day matches if *either* matches, as in Vixie cron. Otherwise both
must match, which reduces to the restricted one.

All evaluation happens in UTC. ``next_after`` searches a bounded horizon
(five years by default) and raises ``NoMatchFound`` beyond it, so sparse or
impossible expressions (``0 0 0 30 2 *``) always terminate.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from jobspine.core.errors import InvalidExpression, NoMatchFound
from jobspine.core.timestamps import ensure_utc

DEFAULT_HORIZON_YEARS = 5

# (name, minimum, maximum) in field order
FIELDS: tuple[tuple[str, int, int], ...] = (
    ("second", 0, 59),
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("day_of_week", 0, 6),
)


@dataclass(frozen=True)
class CronExpression:
    """A compiled cron expression.

    Attributes hold the allowed values of each field. ``dom_restricted`` and
    ``dow_restricted`` record whether the day fields were written without a
    leading ``*``, which selects OR versus AND day matching.
    """

    expression: str
    seconds: frozenset[int]
    minutes: frozenset[int]
    hours: frozenset[int]
    days_of_month: frozenset[int]
    months: frozenset[int]
    days_of_week: frozenset[int]
    dom_restricted: bool
    dow_restricted: bool

    def matches_day(self, dt: datetime) -> bool:
        """Check the day-of-month / day-of-week pair for ``dt``."""
        dom_ok = dt.day in self.days_of_month
        # datetime.weekday(): Monday == 0; cron: Sunday == 0
        dow_ok = (dt.weekday() + 1) % 7 in self.days_of_week
        if self.dom_restricted and self.dow_restricted:
            return dom_ok or dow_ok
        return dom_ok and dow_ok

    def matches(self, dt: datetime) -> bool:
        """Check whether ``dt`` (truncated to the second) satisfies every field."""
        dt = ensure_utc(dt)
        return (
            dt.second in self.seconds
            and dt.minute in self.minutes
            and dt.hour in self.hours
            and dt.month in self.months
            and self.matches_day(dt)
        )

    def next_after(
        self,
        after: datetime,
        horizon_years: int = DEFAULT_HORIZON_YEARS,
    ) -> datetime:
        """Return the smallest whole second strictly greater than ``after`` that matches.

        Args:
            after: Reference time; naive values are treated as UTC.
            horizon_years: How far ahead to search before giving up.

        Returns:
            Aware UTC datetime with ``microsecond == 0``.

        Raises:
            NoMatchFound: No occurrence within the horizon.
        """
        start = ensure_utc(after).replace(microsecond=0) + timedelta(seconds=1)
        limit = start + timedelta(days=366 * horizon_years)
        t = start

        while t <= limit:
            if t.month not in self.months:
                t = _start_of_next_month(t)
                continue
            if not self.matches_day(t):
                t = t.replace(hour=0, minute=0, second=0) + timedelta(days=1)
                continue
            if t.hour not in self.hours:
                t = t.replace(minute=0, second=0) + timedelta(hours=1)
                continue
            if t.minute not in self.minutes:
                t = t.replace(second=0) + timedelta(minutes=1)
                continue
            if t.second not in self.seconds:
                t = t + timedelta(seconds=1)
                continue
            return t

        raise NoMatchFound(
            f"Cron expression {self.expression!r} has no occurrence within "
            f"{horizon_years} years after {start.isoformat()}"
        )

    def __str__(self) -> str:
        return self.expression


def _start_of_next_month(dt: datetime) -> datetime:
    if dt.month == 12:
        return dt.replace(year=dt.year + 1, month=1, day=1, hour=0, minute=0, second=0)
    return dt.replace(month=dt.month + 1, day=1, hour=0, minute=0, second=0)


def _parse_int(text: str, expression: str, name: str) -> int:
    if not (text.isascii() and text.isdigit()):
        raise InvalidExpression(
            f"Invalid value {text!r} in {name} field", expression=expression
        )
    return int(text)


def _parse_field(text: str, name: str, lo: int, hi: int, expression: str) -> frozenset[int]:
    """Parse a single cron field into the set of values it allows."""
    values: set[int] = set()

    for item in text.split(","):
        if not item:
            raise InvalidExpression(f"Empty list item in {name} field", expression=expression)

        step = 1
        if "/" in item:
            base, _, step_text = item.partition("/")
            step = _parse_int(step_text, expression, name)
            if step < 1:
                raise InvalidExpression(f"Step must be >= 1 in {name} field", expression=expression)
        else:
            base = item

        if base == "*":
            start, end = lo, hi
        elif "-" in base:
            first, _, last = base.partition("-")
            start = _parse_int(first, expression, name)
            end = _parse_int(last, expression, name)
        else:
            start = _parse_int(base, expression, name)
            # "a/s" runs from a to the field maximum; a bare "a" is a single value
            end = hi if "/" in item else start

        if not (lo <= start <= hi and lo <= end <= hi):
            raise InvalidExpression(
                f"Value out of range {lo}-{hi} in {name} field: {item!r}",
                expression=expression,
            )
        if start > end:
            raise InvalidExpression(
                f"Range start exceeds end in {name} field: {item!r}",
                expression=expression,
            )

        values.update(range(start, end + 1, step))

    return frozenset(values)


def parse(expression: str) -> CronExpression:
    """Compile a 6-field cron expression.

    Raises:
        InvalidExpression: Wrong field count, unsupported syntax, or a value
            outside the field's legal range.
    """
    if not isinstance(expression, str):
        raise InvalidExpression(f"Cron expression must be a string, got {type(expression).__name__}")

    parts = expression.split()
    if len(parts) != len(FIELDS):
        raise InvalidExpression(
            f"Expected {len(FIELDS)} fields (second minute hour day-of-month month "
            f"day-of-week), got {len(parts)}",
            expression=expression,
        )

    parsed = [
        _parse_field(part, name, lo, hi, expression)
        for part, (name, lo, hi) in zip(parts, FIELDS)
    ]

    return CronExpression(
        expression=" ".join(parts),
        seconds=parsed[0],
        minutes=parsed[1],
        hours=parsed[2],
        days_of_month=parsed[3],
        months=parsed[4],
        days_of_week=parsed[5],
        dom_restricted=not parts[3].startswith("*"),
        dow_restricted=not parts[5].startswith("*"),
    )


def next_after(
    compiled: CronExpression,
    after: datetime,
    horizon_years: int = DEFAULT_HORIZON_YEARS,
) -> datetime:
    """Functional form of :meth:`CronExpression.next_after`."""
    return compiled.next_after(after, horizon_years=horizon_years)


__all__ = ["CronExpression", "parse", "next_after", "DEFAULT_HORIZON_YEARS"]
