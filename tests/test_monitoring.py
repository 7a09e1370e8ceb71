"""
Tests for metrics, structured logging and the request middleware.
"""

import json
import logging

import pytest

from monitoring.logging import (
    REDACTED,
    ConsoleFormatter,
    ContextFilter,
    JSONFormatter,
    LoggingContext,
    clear_request_context,
    get_request_context,
    scrub,
    set_request_context,
)
from monitoring.metrics import MetricsCollector
from monitoring.middleware import normalize_path

ADDRESS = "0x1234" + "0" * 32 + "abcd"


@pytest.fixture(autouse=True)
def clean_context():
    clear_request_context()
    yield
    clear_request_context()


def make_record(message, level=logging.INFO, **extra):
    record = logging.LogRecord("claims", level, __file__, 10, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    ContextFilter().filter(record)
    return record


class TestScrub:
    """Tests for redaction."""

    def test_shortens_addresses(self):
        assert scrub(f"Claim completed for {ADDRESS}") == "Claim completed for 0x1234...abcd"

    def test_redacts_assignments_and_bearer(self):
        assert scrub("api_key=abc123") == f"api_key={REDACTED}"
        assert scrub("Authorization: Bearer tok.en") == f"Authorization: Bearer {REDACTED}"

    def test_redacts_secret_keys(self):
        data = {"webhook_secret": "s3cret", "X-Royalty-Signature": "abc", "amount": 5}
        assert scrub(data) == {"webhook_secret": REDACTED, "X-Royalty-Signature": REDACTED, "amount": 5}

    def test_nested(self):
        assert scrub({"items": [{"token": "t"}]}) == {"items": [{"token": REDACTED}]}


class TestContext:
    def test_logging_context_restores_previous(self):
        set_request_context(request_id="req-1")
        with LoggingContext(monitor="derivative"):
            assert get_request_context() == {"request_id": "req-1", "monitor": "derivative"}
        assert get_request_context() == {"request_id": "req-1"}

    def test_context_restored_after_error(self):
        try:
            with LoggingContext(monitor="trend"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert get_request_context() == {}


class TestFormatters:
    """Tests for the JSON and console formatters."""

    def test_json_record(self):
        with LoggingContext(request_id="req-9"):
            record = make_record(f"Paid {ADDRESS}", subject_id="ch-1")

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "claims"
        assert entry["message"] == "Paid 0x1234...abcd"
        assert entry["context"] == {"request_id": "req-9"}
        assert entry["subject_id"] == "ch-1"
        assert "location" not in entry

    def test_json_warning_has_location(self):
        entry = json.loads(JSONFormatter().format(make_record("slow", logging.WARNING)))
        assert entry["location"].endswith(":10")

    def test_console_line(self):
        line = ConsoleFormatter().format(make_record("token=abc", duration_ms=3))
        assert "[claims]" in line
        assert f"token={REDACTED}" in line
        assert "duration_ms=3" in line


class TestMetricsCollector:
    """Tests for counters, gauges and histograms."""

    def test_counters_by_label(self):
        collector = MetricsCollector()
        collector.increment("claims_processed", labels={"tier": "premium"})
        collector.increment("claims_processed", labels={"tier": "free"}, value=2)

        assert collector.get_counter("claims_processed", labels={"tier": "free"}) == 2
        assert collector.counter_total("claims_processed") == 3

    def test_gauge(self):
        collector = MetricsCollector()
        collector.set_gauge("scheduler_running", 1)
        assert collector.get_gauge("scheduler_running") == 1
        assert collector.get_all()["gauges"]["scheduler_running"] == 1

    def test_histogram(self):
        collector = MetricsCollector()
        collector.timing("claim_duration_ms", 7)
        collector.timing("claim_duration_ms", 300)

        histogram = collector.get_histogram("claim_duration_ms")
        assert histogram.count == 2
        assert histogram.to_dict()["buckets"]["10"] == 1
        assert histogram.to_dict()["buckets"]["+Inf"] == 2

    def test_prometheus_output(self):
        collector = MetricsCollector(prefix="royalty")
        collector.increment("claims_failed", labels={"code": "BLOCKCHAIN_ERROR"})
        collector.timing("claim_duration_ms", 12)

        text = collector.to_prometheus()

        assert "# TYPE royalty_claims_failed counter" in text
        assert 'royalty_claims_failed{code="BLOCKCHAIN_ERROR"} 1' in text
        assert 'royalty_claim_duration_ms_bucket{le="25"} 1' in text
        assert "royalty_claim_duration_ms_count 1" in text

    def test_reset(self):
        collector = MetricsCollector()
        collector.increment("detection_events")
        collector.reset()
        assert collector.counter_total("detection_events") == 0


class TestNormalizePath:
    def test_addresses_and_ids(self):
        assert normalize_path(f"/royalties/history/{ADDRESS}") == "/royalties/history/:address"
        assert normalize_path("/detection/events/42/processed") == "/detection/events/:id/processed"
        assert normalize_path("/") == "/"
