import json
import logging

import pytest

from lounge.observability.logging_config import JsonFormatter, mask_sensitive
from lounge.observability.metrics import (
    get_counter_value,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
    recent_events,
    record_event,
    reset_metrics,
    set_gauge,
    track_latency,
)


def test_metrics_snapshot_accumulates_counts():
    reset_metrics()
    increment_counter("test_counter")
    increment_counter("test_counter", amount=2, labels={"route": "/example"})
    set_gauge("test_gauge", 5)
    observe_latency("test_latency", 100, labels={"route": "/example"})
    observe_latency("test_latency", 50, labels={"route": "/example"})

    snapshot = get_metrics_snapshot()
    counters = snapshot["counters"]["test_counter"]
    assert len(counters) == 2
    assert get_counter_value("test_counter", {"route": "/example"}) == 2

    gauges = snapshot["gauges"]["test_gauge"]
    assert gauges[0]["value"] == 5

    hist = snapshot["histograms"]["test_latency"][0]["stats"]
    assert hist["count"] == 2
    assert hist["max"] == 100
    assert hist["avg"] == 75


def test_track_latency_records_even_on_error():
    with pytest.raises(RuntimeError):
        with track_latency("report_generation_ms", labels={"report_type": "revenue"}):
            raise RuntimeError("boom")

    (entry,) = get_metrics_snapshot()["histograms"]["report_generation_ms"]
    assert entry["labels"] == {"report_type": "revenue"}
    assert entry["stats"]["count"] == 1


def test_recent_events_newest_first():
    record_event("payment_failed", {"payment_id": 1})
    record_event("session_started", {"session_id": 7})
    record_event("payment_failed", {"payment_id": 2})

    failures = recent_events("payment_failed")
    assert [e["payload"]["payment_id"] for e in failures] == [2, 1]
    assert len(recent_events(limit=1)) == 1


def test_mask_sensitive_hides_credentials():
    masked = mask_sensitive(
        {"Password": "secret", "Amount": 40, "nested": [{"access_token": "abc", "PhoneNumber": "254712345678"}]}
    )
    assert masked == {"Password": "***", "Amount": 40, "nested": [{"access_token": "***", "PhoneNumber": "254712345678"}]}


def test_json_formatter_includes_extra_context():
    record = logging.LogRecord("lounge.test", logging.INFO, __file__, 1, "Payment completed", (), None)
    record.payment_id = 12

    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "INFO"
    assert payload["message"] == "Payment completed"
    assert payload["context"] == {"payment_id": 12}
