import json
import logging

from src.observability.logging_config import JsonFormatter
from src.observability.metrics import (
    MetricsRegistry,
    get_counter_value,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
    record_event,
    reset_metrics,
)


def test_metrics_snapshot_accumulates_counts():
    reset_metrics()
    increment_counter("test_counter")
    increment_counter("test_counter", amount=2, labels={"route": "/example"})
    observe_latency("test_latency", 100, labels={"route": "/example"})
    observe_latency("test_latency", 50, labels={"route": "/example"})
    record_event("order_settled", {"order_number": "BK-1"})

    snapshot = get_metrics_snapshot()
    counters = snapshot["counters"]["test_counter"]
    assert len(counters) == 2
    assert get_counter_value("test_counter") == 3
    assert get_counter_value("test_counter", labels={"route": "/example"}) == 2

    hist = snapshot["histograms"]["test_latency"][0]["stats"]
    assert hist["count"] == 2
    assert hist["max"] == 100
    assert hist["avg"] == 75

    assert snapshot["events"][-1]["name"] == "order_settled"


def test_event_log_is_bounded():
    registry = MetricsRegistry(max_events=3)
    for index in range(5):
        registry.event("tick", {"index": index})

    events = registry.snapshot()["events"]
    assert [event["payload"]["index"] for event in events] == [2, 3, 4]


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("checkout", logging.INFO, __file__, 1, "Order settled", (), None)
    record.order_number = "BK-42"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "Order settled"
    assert payload["level"] == "INFO"
    assert payload["fields"] == {"order_number": "BK-42"}
