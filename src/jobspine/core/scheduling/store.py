"""Time-ordered claim store.

Manifesto:
    Many independent processes poll the same sets with no leader and no
    lock service. The only coordination is the store's own atomic
    primitives: ``claim`` (remove-if-present) and ``advance``
    (update-score-if-present-and-lower). Whoever observes ``True`` owns the
    entry for that occurrence; everyone else skips it.

Architecture:
    ::

        ClaimStore (Protocol)
        ├── InMemoryClaimStore  : single process, one threading.Lock
        └── RedisClaimStore     : shared, Redis sorted sets + lists

        Contract:
            peek_due(set, now, offset, limit) → [member, …]   ascending score ≤ now
            claim(set, member)                 → bool          ZREM
            advance(set, member, new_score)    → bool          Lua CAS
            push_immediate(queue, payload)     → None          SADD + LPUSH

        Supplementary:
            add / score / members / cardinality / queue_length

Redis key layout (Sidekiq-compatible)::

    <ns:>scheduled, <ns:>retry, <ns:>dead, <ns:>periodic   sorted sets
    <ns:>queues                                            set of queue names
    <ns:>queue:<name>                                      list, LPUSH producer side

Every Redis operation translates connection and timeout failures into
``StoreUnavailable``. It never means "entry not found".
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol, runtime_checkable

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from jobspine.core.errors import StoreUnavailable
from jobspine.core.logging import get_logger

logger = get_logger(__name__)

QUEUES_KEY = "queues"
QUEUE_PREFIX = "queue:"


@runtime_checkable
class ClaimStore(Protocol):
    """Protocol for shared time-ordered stores.

    Implementations:
        - :class:`InMemoryClaimStore`: tests and single-process use
        - :class:`RedisClaimStore`: multi-process deployments
    """

    def peek_due(self, set_name: str, now: float, offset: int, limit: int) -> list[str]:
        """Members with score ≤ ``now``, ascending by score, at most ``limit``."""
        ...

    def claim(self, set_name: str, member: str) -> bool:
        """Atomically remove ``member``; True only for the caller that removed it."""
        ...

    def advance(self, set_name: str, member: str, new_score: float) -> bool:
        """Atomically move ``member`` to ``new_score`` if present and currently lower."""
        ...

    def push_immediate(self, queue_name: str, payload: str) -> None:
        """Append ``payload`` to the named immediate queue."""
        ...

    def add(self, set_name: str, member: str, score: float) -> None:
        """Insert ``member`` or overwrite its score."""
        ...

    def score(self, set_name: str, member: str) -> float | None:
        """Current score of ``member``, or None if absent."""
        ...

    def members(self, set_name: str) -> list[tuple[str, float]]:
        """All (member, score) pairs ascending by score."""
        ...

    def cardinality(self, set_name: str) -> int:
        """Number of members in the set."""
        ...

    def queue_length(self, queue_name: str) -> int:
        """Number of payloads waiting in the immediate queue."""
        ...


# ------------------------------------------------------------------ #
# In-Memory Store
# ------------------------------------------------------------------ #


class InMemoryClaimStore:
    """Process-local claim store.

    All operations run under a single lock, so ``claim`` and ``advance`` are
    indivisible with respect to other threads sharing the instance.

    Example:
        store = InMemoryClaimStore()
        store.add("retry", payload, score=1767225600)
        store.peek_due("retry", now=1767225700, offset=0, limit=100)
    """

    def __init__(self) -> None:
        self._sets: dict[str, dict[str, float]] = {}
        self._queues: dict[str, list[str]] = {}
        self._lock = threading.Lock()

    def _ordered(self, set_name: str) -> list[tuple[str, float]]:
        entries = self._sets.get(set_name, {})
        # ties break lexicographically, as in a Redis sorted set
        return sorted(entries.items(), key=lambda item: (item[1], item[0]))

    def peek_due(self, set_name: str, now: float, offset: int, limit: int) -> list[str]:
        if limit <= 0:
            return []
        with self._lock:
            due = [member for member, score in self._ordered(set_name) if score <= now]
        return due[offset:offset + limit]

    def claim(self, set_name: str, member: str) -> bool:
        with self._lock:
            entries = self._sets.get(set_name)
            if entries is None or member not in entries:
                return False
            del entries[member]
            return True

    def advance(self, set_name: str, member: str, new_score: float) -> bool:
        with self._lock:
            entries = self._sets.get(set_name)
            if entries is None or member not in entries:
                return False
            if entries[member] >= new_score:
                return False
            entries[member] = new_score
            return True

    def push_immediate(self, queue_name: str, payload: str) -> None:
        with self._lock:
            self._queues.setdefault(queue_name, []).append(payload)

    def add(self, set_name: str, member: str, score: float) -> None:
        with self._lock:
            self._sets.setdefault(set_name, {})[member] = score

    def score(self, set_name: str, member: str) -> float | None:
        with self._lock:
            return self._sets.get(set_name, {}).get(member)

    def members(self, set_name: str) -> list[tuple[str, float]]:
        with self._lock:
            return self._ordered(set_name)

    def cardinality(self, set_name: str) -> int:
        with self._lock:
            return len(self._sets.get(set_name, {}))

    def queue_length(self, queue_name: str) -> int:
        with self._lock:
            return len(self._queues.get(queue_name, []))

    def queue(self, queue_name: str) -> list[str]:
        """Snapshot of an immediate queue, oldest first."""
        with self._lock:
            return list(self._queues.get(queue_name, []))

    def queue_names(self) -> list[str]:
        """Names of every queue that has received a payload."""
        with self._lock:
            return sorted(self._queues)


# ------------------------------------------------------------------ #
# Redis Store
# ------------------------------------------------------------------ #

# Returns 1 if the member existed with a strictly lower score and was moved.
ADVANCE_SCRIPT = """
local current = redis.call('ZSCORE', KEYS[1], ARGV[1])
if not current then
    return 0
end
if tonumber(current) >= tonumber(ARGV[2]) then
    return 0
end
redis.call('ZADD', KEYS[1], 'XX', ARGV[2], ARGV[1])
return 1
"""


@contextmanager
def _translate_errors(operation: str, key: str) -> Iterator[None]:
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        raise StoreUnavailable(
            f"Store unavailable during {operation}: {exc}", cause=exc
        ).with_context(set_name=key) from exc


class RedisClaimStore:
    """Redis-backed claim store.

    The client must be created with ``decode_responses=True`` so members come
    back as ``str``; :meth:`from_url` does this.

    Attributes:
        namespace: Optional prefix joined to every key with ``:``.

    Example:
        store = RedisClaimStore.from_url("redis://localhost:6379/0", namespace="app")
        store.peek_due("scheduled", now=time.time(), offset=0, limit=100)
    """

    def __init__(self, client: Any, *, namespace: str = "") -> None:
        self._client = client
        self.namespace = namespace
        self._advance_script = client.register_script(ADVANCE_SCRIPT)

    @classmethod
    def from_url(cls, url: str, *, namespace: str = "", **kwargs: Any) -> RedisClaimStore:
        """Build a store with its own connection pool."""
        client = redis.Redis.from_url(url, decode_responses=True, **kwargs)
        return cls(client, namespace=namespace)

    def key(self, name: str) -> str:
        """Apply the namespace prefix."""
        return f"{self.namespace}:{name}" if self.namespace else name

    def queue_key(self, queue_name: str) -> str:
        return self.key(f"{QUEUE_PREFIX}{queue_name}")

    def peek_due(self, set_name: str, now: float, offset: int, limit: int) -> list[str]:
        if limit <= 0:
            return []
        key = self.key(set_name)
        with _translate_errors("peek_due", key):
            return list(self._client.zrangebyscore(key, "-inf", now, start=offset, num=limit))

    def claim(self, set_name: str, member: str) -> bool:
        key = self.key(set_name)
        with _translate_errors("claim", key):
            return self._client.zrem(key, member) == 1

    def advance(self, set_name: str, member: str, new_score: float) -> bool:
        key = self.key(set_name)
        with _translate_errors("advance", key):
            return int(self._advance_script(keys=[key], args=[member, new_score])) == 1

    def push_immediate(self, queue_name: str, payload: str) -> None:
        key = self.queue_key(queue_name)
        with _translate_errors("push_immediate", key):
            pipe = self._client.pipeline(transaction=True)
            pipe.sadd(self.key(QUEUES_KEY), queue_name)
            pipe.lpush(key, payload)
            pipe.execute()

    def add(self, set_name: str, member: str, score: float) -> None:
        key = self.key(set_name)
        with _translate_errors("add", key):
            self._client.zadd(key, {member: score})

    def score(self, set_name: str, member: str) -> float | None:
        key = self.key(set_name)
        with _translate_errors("score", key):
            return self._client.zscore(key, member)

    def members(self, set_name: str) -> list[tuple[str, float]]:
        key = self.key(set_name)
        with _translate_errors("members", key):
            return [(m, float(s)) for m, s in self._client.zrange(key, 0, -1, withscores=True)]

    def cardinality(self, set_name: str) -> int:
        key = self.key(set_name)
        with _translate_errors("cardinality", key):
            return int(self._client.zcard(key))

    def queue_length(self, queue_name: str) -> int:
        key = self.queue_key(queue_name)
        with _translate_errors("queue_length", key):
            return int(self._client.llen(key))


def create_store(url: str | None = None, *, namespace: str = "") -> ClaimStore:
    """Create a claim store from a URL.

    ``memory://`` (or None) gives an :class:`InMemoryClaimStore`; anything
    else is handed to Redis.
    """
    if url is None or url.startswith("memory://"):
        logger.debug("claim_store_created", backend="memory")
        return InMemoryClaimStore()
    logger.debug("claim_store_created", backend="redis", namespace=namespace)
    return RedisClaimStore.from_url(url, namespace=namespace)


__all__ = [
    "ClaimStore",
    "InMemoryClaimStore",
    "RedisClaimStore",
    "ADVANCE_SCRIPT",
    "create_store",
]
