"""Tests for jobspine.core.scheduling.dispatcher: ScheduledDispatcher."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from structlog.testing import capture_logs

from jobspine.core.errors import StoreUnavailable
from jobspine.core.scheduling.dispatcher import DispatchStats, ScheduledDispatcher
from jobspine.core.scheduling.envelope import decode
from jobspine.core.scheduling.store import InMemoryClaimStore


class LosingStore(InMemoryClaimStore):
    """Another process claims every member between our peek and our claim."""

    def claim(self, set_name, member):
        super().claim(set_name, member)
        return super().claim(set_name, member)


class FlakyPushStore(InMemoryClaimStore):
    def push_immediate(self, queue_name, payload):
        raise StoreUnavailable("redis went away")


# =============================================================================
# Basic dispatch
# =============================================================================


class TestRunOnce:
    def test_only_due_entries_move(self, store, now, now_ts, make_member):
        due = make_member()
        later = make_member()
        store.add("retry", due, now_ts - 10)
        store.add("retry", later, now_ts + 10)

        count = ScheduledDispatcher(store).run_once(now, ["retry"])

        assert count == 1
        assert store.queue("default") == [due]
        assert store.members("retry") == [(later, now_ts + 10)]

    def test_member_text_pushed_verbatim(self, store, now, now_ts):
        member = '{"jid":"j1","class":"C","queue":"default","args":[],"error_message":"x"}'
        store.add("retry", member, now_ts)
        ScheduledDispatcher(store).run_once(now, ["retry"])
        assert store.queue("default") == [member]

    def test_legacy_envelope_is_dispatched(self, store, now, now_ts):
        member = (
            '{"class":"Mailer","args":["welcome",42],"retry":true,"queue":"default",'
            '"jid":"a1b2c3d4e5f6a1b2c3d4e5f6","created_at":1767225600.5,'
            '"enqueued_at":null,"failed_at":null,"error_message":null,"retry_count":null}'
        )
        store.add("scheduled", member, now_ts - 1)

        count = ScheduledDispatcher(store).run_once(now, ["scheduled"])

        assert count == 1
        assert store.queue("default") == [member]
        assert store.cardinality("dead") == 0

    def test_single_set_name_string(self, store, now, now_ts, make_member):
        member = make_member()
        store.add("retry", member, now_ts)
        assert ScheduledDispatcher(store).run_once(now, "retry") == 1
        assert store.queue("default") == [member]

    def test_routes_to_envelope_queue(self, store, now, now_ts, make_member):
        mail = make_member(queue="mail")
        reports = make_member(queue="reports")
        store.add("scheduled", mail, now_ts - 2)
        store.add("scheduled", reports, now_ts - 1)

        ScheduledDispatcher(store).run_once(now, ["scheduled"])

        assert store.queue("mail") == [mail]
        assert store.queue("reports") == [reports]

    def test_sets_processed_in_order(self, store, now, now_ts, make_member):
        from_retry = make_member()
        from_scheduled = make_member()
        store.add("retry", from_retry, now_ts - 100)
        store.add("scheduled", from_scheduled, now_ts - 1)

        count = ScheduledDispatcher(store).run_once(now, ["scheduled", "retry"])

        assert count == 2
        assert store.queue("default") == [from_scheduled, from_retry]

    def test_default_sets(self, store, now, now_ts, make_member):
        store.add("scheduled", make_member(), now_ts)
        store.add("retry", make_member(), now_ts)
        assert ScheduledDispatcher(store).run_once(now) == 2

    def test_nothing_due(self, store, now, now_ts, make_member):
        store.add("scheduled", make_member(), now_ts + 60)
        assert ScheduledDispatcher(store).run_once(now) == 0
        assert store.queue_names() == []

    def test_batch_limit_per_set(self, store, now, now_ts, make_member):
        for i in range(5):
            store.add("scheduled", make_member(), now_ts - i)

        count = ScheduledDispatcher(store, batch_limit=2).run_once(now, ["scheduled"])

        assert count == 2
        assert store.cardinality("scheduled") == 3

    def test_dispatched_envelope_decodes(self, store, now, now_ts, make_member):
        store.add("scheduled", make_member(class_name="Mailer", args=["hi"]), now_ts)
        ScheduledDispatcher(store).run_once(now, ["scheduled"])
        envelope = decode(store.queue("default")[0])
        assert envelope.class_name == "Mailer"
        assert envelope.args == ["hi"]


# =============================================================================
# Malformed entries
# =============================================================================


class TestMalformedEntries:
    def test_malformed_is_quarantined_and_siblings_continue(self, store, now, now_ts, make_member):
        good = make_member()
        store.add("retry", "garbage", now_ts - 5)
        store.add("retry", good, now_ts - 1)

        dispatcher = ScheduledDispatcher(store)
        count = dispatcher.run_once(now, ["retry"])

        assert count == 1
        assert store.queue("default") == [good]
        assert store.cardinality("retry") == 0
        assert store.members("dead") == [("garbage", now_ts)]
        assert dispatcher.get_stats().malformed == 1

    def test_malformed_logged_as_error(self, store, now, now_ts):
        store.add("retry", '{"jid":"j"}', now_ts)
        with capture_logs() as logs:
            ScheduledDispatcher(store).run_once(now, ["retry"])
        events = [e for e in logs if e["event"] == "malformed_entry_skipped"]
        assert len(events) == 1
        assert events[0]["log_level"] == "error"
        assert events[0]["context"]["set_name"] == "retry"

    def test_no_dead_set_drops_entry(self, store, now, now_ts):
        store.add("retry", "garbage", now_ts)
        ScheduledDispatcher(store, dead_set=None).run_once(now, ["retry"])
        assert store.cardinality("retry") == 0
        assert store.cardinality("dead") == 0

    def test_draining_dead_set_does_not_requeue_into_itself(self, store, now, now_ts):
        store.add("dead", "garbage", now_ts)
        ScheduledDispatcher(store).run_once(now, ["dead"])
        assert store.cardinality("dead") == 0


# =============================================================================
# Races and failures
# =============================================================================


class TestRacesAndFailures:
    def test_lost_claim_is_skipped_quietly(self, now, now_ts, make_member):
        store = LosingStore()
        store.add("retry", make_member(), now_ts)

        dispatcher = ScheduledDispatcher(store)
        with capture_logs() as logs:
            count = dispatcher.run_once(now, ["retry"])

        assert count == 0
        assert store.queue_length("default") == 0
        assert dispatcher.get_stats().lost_races == 1
        assert all(e["log_level"] == "debug" for e in logs if e["event"] == "claim_lost")
        assert not [e for e in logs if e["log_level"] in ("warning", "error")]

    def test_store_unavailable_aborts_tick(self, now, now_ts, make_member):
        store = FlakyPushStore()
        store.add("retry", make_member(), now_ts)

        dispatcher = ScheduledDispatcher(store)
        with pytest.raises(StoreUnavailable):
            dispatcher.run_once(now, ["retry"])
        assert dispatcher.get_stats().last_error == "redis went away"

    def test_concurrent_dispatchers_deliver_exactly_once(self, store, now, now_ts, make_member):
        members = [make_member() for _ in range(200)]
        for i, member in enumerate(members):
            store.add("scheduled", member, now_ts - i)

        dispatchers = [ScheduledDispatcher(store, batch_limit=500) for _ in range(8)]
        barrier = threading.Barrier(len(dispatchers))

        def run(d):
            barrier.wait()
            return d.run_once(now, ["scheduled"])

        with ThreadPoolExecutor(max_workers=len(dispatchers)) as pool:
            counts = list(pool.map(run, dispatchers))

        assert sum(counts) == 200
        queue = store.queue("default")
        assert len(queue) == 200
        assert set(queue) == set(members)
        assert store.cardinality("scheduled") == 0


class TestStats:
    def test_stats_accumulate(self, store, now, now_ts, make_member):
        dispatcher = ScheduledDispatcher(store)
        store.add("scheduled", make_member(), now_ts)
        dispatcher.run_once(now)
        dispatcher.run_once(now)

        stats = dispatcher.get_stats()
        assert stats.ticks == 2
        assert stats.dispatched == 1
        assert stats.last_tick == now

    def test_reset(self, store, now):
        dispatcher = ScheduledDispatcher(store)
        dispatcher.run_once(now)
        dispatcher.reset_stats()
        assert dispatcher.get_stats() == DispatchStats()
