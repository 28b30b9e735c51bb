"""Tests for Prometheus metrics helper functions."""

from __future__ import annotations

from invoicing_runtime.observability.metrics import (
    CACHE_LOOKUPS,
    COMMANDS_TOTAL,
    DEAD_LETTERS,
    EVENTS_HANDLED,
    EVENTS_SENT,
    record_cache_lookup,
    record_command,
    record_event_handled,
    record_event_sent,
)


class TestMetricsHelpers:
    def test_record_command_increments_counter(self):
        counter = COMMANDS_TOTAL.labels(command="MetricsCmd", kind="command", outcome="success")
        before = counter._value.get()
        record_command("MetricsCmd", "command", "success", 0.01)
        assert counter._value.get() == before + 1

    def test_record_event_sent(self):
        before = EVENTS_SENT.labels(event="metrics-test")._value.get()
        record_event_sent("metrics-test")
        assert EVENTS_SENT.labels(event="metrics-test")._value.get() == before + 1

    def test_dead_letter_counts_both(self):
        handled = EVENTS_HANDLED.labels(event="metrics-dl", outcome="dead_letter")
        dead = DEAD_LETTERS.labels(event="metrics-dl")
        handled_before, dead_before = handled._value.get(), dead._value.get()

        record_event_handled("metrics-dl", "dead_letter")

        assert handled._value.get() == handled_before + 1
        assert dead._value.get() == dead_before + 1

    def test_success_does_not_dead_letter(self):
        dead = DEAD_LETTERS.labels(event="metrics-ok")
        before = dead._value.get()
        record_event_handled("metrics-ok", "success")
        assert dead._value.get() == before

    def test_cache_hit_and_miss_labels(self):
        hits = CACHE_LOOKUPS.labels(cache="metrics-cache", result="hit")
        misses = CACHE_LOOKUPS.labels(cache="metrics-cache", result="miss")
        hits_before, misses_before = hits._value.get(), misses._value.get()

        record_cache_lookup("metrics-cache", True)
        record_cache_lookup("metrics-cache", False)
        record_cache_lookup("metrics-cache", False)

        assert hits._value.get() == hits_before + 1
        assert misses._value.get() == misses_before + 2
