"""Job envelope and periodic definition codecs.

Both record types are stored as JSON text: the store uses the member's full
text as its identity key, so encodings must be deterministic and
collision-free for distinct records.

Job envelope wire format (fixed key order, compact separators)::

    {"jid":"…","class":"Mailer","queue":"default","args":[…],
     "created_at":1767225600,"retry_count":0,"retry":25, …extras}

Keys written by other producers (``error_message``, ``failed_at``, …) are kept
in ``extras`` and written back after the fixed keys in sorted order, so entries
moved between sets by older or foreign instances survive a decode/encode cycle.

Periodic definition wire format::

    {"name":"daily-report","cron":"0 0 3 * * *","queue":"reports",
     "class":"ReportJob","args":[…]}

``"retry"`` is appended only when a definition overrides the max retries of
the jobs it dispatches. The next-run time is the member's score, never part of
the text.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from jobspine.core.errors import MalformedEnvelope
from jobspine.core.timestamps import epoch_seconds, generate_jid, utc_now

DEFAULT_QUEUE = "default"
DEFAULT_MAX_RETRIES = 25

_ENVELOPE_KEYS = ("jid", "class", "queue", "args", "created_at", "retry_count", "retry")


@dataclass
class JobEnvelope:
    """A unit of dispatchable work.

    ``class_name`` is an opaque handler name resolved by workers; the
    dispatch core never interprets it.
    """

    jid: str
    class_name: str
    queue: str = DEFAULT_QUEUE
    args: list[Any] = field(default_factory=list)
    created_at: int = 0
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    extras: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.args, tuple):
            self.args = list(self.args)

    @classmethod
    def new(
        cls,
        class_name: str,
        args: list[Any] | tuple[Any, ...] = (),
        *,
        queue: str = DEFAULT_QUEUE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        now: datetime | None = None,
    ) -> JobEnvelope:
        """Build a fresh envelope: new id, retry count 0, creation time ``now``."""
        return cls(
            jid=generate_jid(),
            class_name=class_name,
            queue=queue,
            args=list(args),
            created_at=epoch_seconds(now or utc_now()),
            retry_count=0,
            max_retries=max_retries,
        )


@dataclass
class PeriodicJobDefinition:
    """A durable recurring-job spec stored in the periodic set."""

    name: str
    cron: str
    class_name: str
    queue: str = DEFAULT_QUEUE
    args: list[Any] = field(default_factory=list)
    max_retries: int | None = None

    def __post_init__(self) -> None:
        if isinstance(self.args, tuple):
            self.args = list(self.args)

    def into_envelope(self, now: datetime | None = None) -> JobEnvelope:
        """Build the envelope for one occurrence of this definition."""
        return JobEnvelope.new(
            self.class_name,
            self.args,
            queue=self.queue,
            max_retries=DEFAULT_MAX_RETRIES if self.max_retries is None else self.max_retries,
            now=now,
        )


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def _dumps(payload: dict[str, Any]) -> str:
    try:
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise MalformedEnvelope(f"Value is not JSON-encodable: {exc}", cause=exc) from exc


def encode(envelope: JobEnvelope) -> str:
    """Serialize a job envelope to its stored text form.

    Raises:
        MalformedEnvelope: An argument is not representable (NaN, sets, objects).
    """
    payload: dict[str, Any] = {
        "jid": envelope.jid,
        "class": envelope.class_name,
        "queue": envelope.queue,
        "args": list(envelope.args),
        "created_at": int(envelope.created_at),
        "retry_count": int(envelope.retry_count),
        "retry": int(envelope.max_retries),
    }
    for key in sorted(envelope.extras):
        if key in payload:
            raise MalformedEnvelope(f"Extra key {key!r} shadows a fixed field")
        payload[key] = envelope.extras[key]
    return _dumps(payload)


def encode_definition(definition: PeriodicJobDefinition) -> str:
    """Serialize a periodic definition to its stored text form."""
    payload: dict[str, Any] = {
        "name": definition.name,
        "cron": definition.cron,
        "queue": definition.queue,
        "class": definition.class_name,
        "args": list(definition.args),
    }
    if definition.max_retries is not None:
        payload["retry"] = int(definition.max_retries)
    return _dumps(payload)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _load_object(text: str, kind: str) -> dict[str, Any]:
    if not isinstance(text, str):
        raise MalformedEnvelope(f"{kind} must be text, got {type(text).__name__}")
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise MalformedEnvelope(f"{kind} is not valid JSON: {exc}", cause=exc) from exc
    if not isinstance(data, dict):
        raise MalformedEnvelope(f"{kind} must be a JSON object, got {type(data).__name__}")
    return data


def _required_str(data: dict[str, Any], key: str, kind: str) -> str:
    if key not in data:
        raise MalformedEnvelope(f"{kind} is missing required field {key!r}")
    value = data[key]
    if not isinstance(value, str) or not value:
        raise MalformedEnvelope(f"{kind} field {key!r} must be a non-empty string")
    return value


def _required_args(data: dict[str, Any], kind: str) -> list[Any]:
    if "args" not in data:
        raise MalformedEnvelope(f"{kind} is missing required field 'args'")
    if not isinstance(data["args"], list):
        raise MalformedEnvelope(f"{kind} field 'args' must be a list")
    return data["args"]


def _int_field(data: dict[str, Any], key: str, default: int, kind: str) -> int:
    value = data.get(key, default)
    if value is None:
        # older producers wrote null for counters they had not set yet
        return default
    if isinstance(value, bool):
        raise MalformedEnvelope(f"{kind} field {key!r} must be a number")
    if isinstance(value, float):
        # older producers wrote fractional epoch seconds
        return int(value)
    if not isinstance(value, int):
        raise MalformedEnvelope(f"{kind} field {key!r} must be a number")
    return value


def _max_retries(data: dict[str, Any], default: int | None, kind: str) -> int | None:
    value = data.get("retry", default)
    # boolean retry flags: true = default budget, false = never retry
    if value is True:
        return DEFAULT_MAX_RETRIES
    if value is False:
        return 0
    if value is None or isinstance(value, int):
        return value
    raise MalformedEnvelope(f"{kind} field 'retry' must be an integer or boolean")


def decode(text: str) -> JobEnvelope:
    """Parse stored text into a :class:`JobEnvelope`.

    Raises:
        MalformedEnvelope: Unparseable JSON, missing required field, or a
            field of the wrong type.
    """
    kind = "Job envelope"
    data = _load_object(text, kind)

    max_retries = _max_retries(data, DEFAULT_MAX_RETRIES, kind)
    if max_retries is None:
        raise MalformedEnvelope(f"{kind} field 'retry' must not be null")

    return JobEnvelope(
        jid=_required_str(data, "jid", kind),
        class_name=_required_str(data, "class", kind),
        queue=_required_str(data, "queue", kind),
        args=_required_args(data, kind),
        created_at=_int_field(data, "created_at", 0, kind),
        retry_count=_int_field(data, "retry_count", 0, kind),
        max_retries=max_retries,
        extras={k: v for k, v in data.items() if k not in _ENVELOPE_KEYS},
    )


def decode_definition(text: str) -> PeriodicJobDefinition:
    """Parse stored text into a :class:`PeriodicJobDefinition`.

    The cron expression is only checked for presence here; compiling it is
    the scheduler's job so that syntax errors surface as ``InvalidExpression``.
    """
    kind = "Periodic definition"
    data = _load_object(text, kind)

    return PeriodicJobDefinition(
        name=_required_str(data, "name", kind),
        cron=_required_str(data, "cron", kind),
        class_name=_required_str(data, "class", kind),
        queue=_required_str(data, "queue", kind),
        args=_required_args(data, kind),
        max_retries=_max_retries(data, None, kind),
    )


__all__ = [
    "DEFAULT_QUEUE",
    "DEFAULT_MAX_RETRIES",
    "JobEnvelope",
    "PeriodicJobDefinition",
    "encode",
    "decode",
    "encode_definition",
    "decode_definition",
]
