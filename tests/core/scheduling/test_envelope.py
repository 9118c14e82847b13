"""Tests for jobspine.core.scheduling.envelope: job envelope and definition codecs."""

from __future__ import annotations

import json
import re
from datetime import UTC, datetime

import pytest

from jobspine.core.errors import MalformedEnvelope
from jobspine.core.scheduling.envelope import (
    DEFAULT_MAX_RETRIES,
    JobEnvelope,
    PeriodicJobDefinition,
    decode,
    decode_definition,
    encode,
    encode_definition,
)
from jobspine.core.timestamps import epoch_seconds


def envelope(**overrides) -> JobEnvelope:
    fields = {
        "jid": "0123456789abcdef01234567",
        "class_name": "Mailer",
        "queue": "default",
        "args": ["welcome", 42],
        "created_at": 1767225600,
    }
    fields.update(overrides)
    return JobEnvelope(**fields)


# =============================================================================
# Job envelopes
# =============================================================================


class TestEncode:
    def test_fixed_key_order_and_compact_form(self):
        text = encode(envelope())
        assert text == (
            '{"jid":"0123456789abcdef01234567","class":"Mailer","queue":"default",'
            '"args":["welcome",42],"created_at":1767225600,"retry_count":0,"retry":25}'
        )

    def test_deterministic(self):
        assert encode(envelope()) == encode(envelope())

    def test_distinct_envelopes_encode_differently(self):
        assert encode(envelope()) != encode(envelope(jid="ffffffffffffffffffffffff"))

    def test_extras_follow_fixed_keys_sorted(self):
        text = encode(envelope(extras={"z_flag": True, "error_message": "boom"}))
        assert text.endswith(',"retry":25,"error_message":"boom","z_flag":true}')

    def test_extras_cannot_shadow_fixed_keys(self):
        with pytest.raises(MalformedEnvelope, match="shadows"):
            encode(envelope(extras={"queue": "other"}))

    def test_non_ascii_kept_verbatim(self):
        assert "héllo" in encode(envelope(args=["héllo"]))

    def test_nan_rejected(self):
        with pytest.raises(MalformedEnvelope):
            encode(envelope(args=[float("nan")]))

    def test_unserializable_rejected(self):
        with pytest.raises(MalformedEnvelope):
            encode(envelope(args=[{1, 2}]))

    def test_tuple_args_become_list(self):
        assert envelope(args=("a", 1)).args == ["a", 1]


class TestDecode:
    def test_round_trip_preserves_types(self):
        original = envelope(
            args=[1, 2.5, "s", None, True, {"nested": [1, {"deep": "x"}]}],
            retry_count=3,
            max_retries=5,
            extras={"error_message": "boom", "failed_at": 1767225000},
        )
        decoded = decode(encode(original))
        assert decoded == original
        assert isinstance(decoded.args[0], int)
        assert isinstance(decoded.args[1], float)
        assert decoded.args[4] is True

    def test_reencode_is_identical(self):
        text = encode(envelope(extras={"error_class": "KeyError"}))
        assert encode(decode(text)) == text

    def test_defaults_for_optional_fields(self):
        decoded = decode('{"jid":"j1","class":"Mailer","queue":"q","args":[]}')
        assert decoded.created_at == 0
        assert decoded.retry_count == 0
        assert decoded.max_retries == DEFAULT_MAX_RETRIES
        assert decoded.extras == {}

    def test_foreign_key_order_accepted(self):
        text = json.dumps({"args": [1], "queue": "q", "class": "C", "jid": "j", "retry": 2})
        decoded = decode(text)
        assert decoded.class_name == "C"
        assert decoded.max_retries == 2

    def test_fractional_created_at_truncated(self):
        decoded = decode('{"jid":"j","class":"C","queue":"q","args":[],"created_at":1767225600.75}')
        assert decoded.created_at == 1767225600

    def test_null_counters_use_defaults(self):
        decoded = decode(
            '{"jid":"j","class":"C","queue":"q","args":[],"created_at":null,"retry_count":null}'
        )
        assert decoded.retry_count == 0
        assert decoded.created_at == 0

    def test_boolean_retry_flags(self):
        base = '{"jid":"j","class":"C","queue":"q","args":[],"retry":%s}'
        assert decode(base % "true").max_retries == DEFAULT_MAX_RETRIES
        assert decode(base % "false").max_retries == 0

    @pytest.mark.parametrize(
        "text",
        [
            "not json",
            "",
            "[1, 2]",
            '"just a string"',
            '{"class":"C","queue":"q","args":[]}',
            '{"jid":"j","queue":"q","args":[]}',
            '{"jid":"j","class":"C","args":[]}',
            '{"jid":"j","class":"C","queue":"q"}',
            '{"jid":"","class":"C","queue":"q","args":[]}',
            '{"jid":7,"class":"C","queue":"q","args":[]}',
            '{"jid":"j","class":"C","queue":"q","args":"x"}',
            '{"jid":"j","class":"C","queue":"q","args":[],"created_at":"yesterday"}',
            '{"jid":"j","class":"C","queue":"q","args":[],"retry_count":true}',
            '{"jid":"j","class":"C","queue":"q","args":[],"retry":null}',
            '{"jid":"j","class":"C","queue":"q","args":[],"retry":"3"}',
        ],
    )
    def test_malformed(self, text):
        with pytest.raises(MalformedEnvelope):
            decode(text)

    def test_non_text_rejected(self):
        with pytest.raises(MalformedEnvelope, match="must be text"):
            decode(b'{"jid":"j"}')

    def test_malformed_error_chains_cause(self):
        with pytest.raises(MalformedEnvelope) as exc_info:
            decode("{oops")
        assert isinstance(exc_info.value.__cause__, json.JSONDecodeError)


class TestNewEnvelope:
    def test_new_sets_id_and_creation_time(self):
        now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
        env = JobEnvelope.new("Mailer", ("a",), queue="mail", max_retries=3, now=now)
        assert re.fullmatch(r"[0-9a-f]{24}", env.jid)
        assert env.created_at == epoch_seconds(now)
        assert env.retry_count == 0
        assert env.max_retries == 3
        assert env.queue == "mail"
        assert env.args == ["a"]

    def test_new_ids_are_unique(self):
        assert len({JobEnvelope.new("Mailer").jid for _ in range(100)}) == 100


# =============================================================================
# Periodic definitions
# =============================================================================


class TestDefinitionCodec:
    def test_encode_exact(self):
        definition = PeriodicJobDefinition(
            name="daily-report",
            cron="0 0 3 * * *",
            class_name="ReportJob",
            queue="reports",
        )
        assert encode_definition(definition) == (
            '{"name":"daily-report","cron":"0 0 3 * * *","queue":"reports",'
            '"class":"ReportJob","args":[]}'
        )

    def test_encode_with_retry_override(self):
        definition = PeriodicJobDefinition(
            name="n", cron="* * * * * *", class_name="C", max_retries=3
        )
        assert encode_definition(definition).endswith(',"args":[],"retry":3}')

    def test_round_trip(self):
        definition = PeriodicJobDefinition(
            name="sync", cron="0 */5 * * * *", class_name="Sync", queue="q", args=[{"a": 1}]
        )
        assert decode_definition(encode_definition(definition)) == definition

    @pytest.mark.parametrize(
        "text",
        [
            "junk",
            '{"cron":"* * * * * *","queue":"q","class":"C","args":[]}',
            '{"name":"n","queue":"q","class":"C","args":[]}',
            '{"name":"n","cron":"* * * * * *","class":"C","args":[]}',
            '{"name":"n","cron":"* * * * * *","queue":"q","args":[]}',
            '{"name":"n","cron":"* * * * * *","queue":"q","class":"C","args":{}}',
        ],
    )
    def test_malformed(self, text):
        with pytest.raises(MalformedEnvelope):
            decode_definition(text)

    def test_invalid_cron_is_not_checked_here(self):
        definition = decode_definition(
            '{"name":"n","cron":"bogus","queue":"q","class":"C","args":[]}'
        )
        assert definition.cron == "bogus"


class TestIntoEnvelope:
    def test_builds_fresh_envelope(self):
        now = datetime(2026, 1, 1, 3, 0, 0, tzinfo=UTC)
        definition = PeriodicJobDefinition(
            name="daily-report", cron="0 0 3 * * *", class_name="ReportJob",
            queue="reports", args=["daily"],
        )
        env = definition.into_envelope(now)
        assert env.class_name == "ReportJob"
        assert env.queue == "reports"
        assert env.args == ["daily"]
        assert env.created_at == epoch_seconds(now)
        assert env.retry_count == 0
        assert env.max_retries == DEFAULT_MAX_RETRIES

    def test_retry_override(self):
        definition = PeriodicJobDefinition(
            name="n", cron="* * * * * *", class_name="C", max_retries=0
        )
        assert definition.into_envelope().max_retries == 0

    def test_each_occurrence_gets_new_jid(self):
        definition = PeriodicJobDefinition(name="n", cron="* * * * * *", class_name="C")
        assert definition.into_envelope().jid != definition.into_envelope().jid

    def test_args_are_copied(self):
        definition = PeriodicJobDefinition(name="n", cron="* * * * * *", class_name="C", args=[1])
        env = definition.into_envelope()
        env.args.append(2)
        assert definition.args == [1]
