import json
import logging

import pytest

from solana_launch_sniper.monitoring.logger import (
    REDACTED,
    StructuredFormatter,
    _CorrelationFilter,
    correlation_scope,
    current_correlation_id,
    redact,
)
from solana_launch_sniper.monitoring.metrics import METRICS, MetricsRegistry


def test_correlation_scope_nests_and_restores():
    assert current_correlation_id() == "-"
    with correlation_scope("outer") as outer:
        assert outer == "outer"
        with correlation_scope() as inner:
            assert inner != "outer"
            assert current_correlation_id() == inner
        assert current_correlation_id() == "outer"
    assert current_correlation_id() == "-"


def test_structured_formatter_emits_json_with_extras():
    record = logging.LogRecord("sniper", logging.INFO, __file__, 1, "bought %s", ("mint",), None)
    record.signature = "abc"
    with correlation_scope("req-1"):
        _CorrelationFilter().filter(record)
    payload = json.loads(StructuredFormatter().format(record))
    assert payload["message"] == "bought mint"
    assert payload["correlation_id"] == "req-1"
    assert payload["extra"] == {"signature": "abc"}


def test_formatter_masks_key_material():
    record = logging.LogRecord("wallet", logging.INFO, __file__, 1, "loaded", (), None)
    record.private_key = "5J..."
    record.details = {"keypair_path": "/tmp/id.json", "owner": "abc"}
    payload = json.loads(StructuredFormatter().format(record))
    assert payload["extra"]["private_key"] == REDACTED
    assert payload["extra"]["details"] == {"keypair_path": REDACTED, "owner": "abc"}


def test_redact_leaves_input_untouched():
    values = {"WALLET_SECRET": "x", "mint": "m"}
    assert redact(values) == {"WALLET_SECRET": REDACTED, "mint": "m"}
    assert values["WALLET_SECRET"] == "x"


def test_labeled_series_are_counted_separately():
    registry = MetricsRegistry()
    registry.increment("rpc_errors", method="sendTransaction")
    registry.increment("rpc_errors", method="sendTransaction")
    registry.increment("rpc_errors", method="getBalance")
    assert registry.get("rpc_errors", method="sendTransaction") == 2
    assert registry.get("rpc_errors", method="getBalance") == 1
    assert registry.get("rpc_errors") == 0
    assert registry.total("rpc_errors") == 3
    snapshot = registry.snapshot()
    assert snapshot["counters"]['rpc_errors{method="getBalance"}'] == 1


def test_timed_records_even_when_block_raises():
    registry = MetricsRegistry()
    with pytest.raises(RuntimeError):
        with registry.timed("dispatch_latency_seconds", side="buy"):
            raise RuntimeError("boom")
    latencies = registry.snapshot()["latencies"]
    assert latencies['dispatch_latency_seconds{side="buy"}']["count"] == 1


def test_prometheus_export_sanitizes_names_and_declares_types_once():
    METRICS.reset()
    METRICS.increment("tier_sells", tier=1)
    METRICS.increment("tier_sells", tier=2)
    METRICS.gauge("open.positions", 2)
    METRICS.observe("dispatch_latency_seconds", 0.5)
    output = METRICS.export_prometheus()
    assert "open_positions 2.0" in output
    assert "open.positions" not in output
    assert output.count("# TYPE tier_sells counter") == 1
    assert 'tier_sells{tier="2"} 1.0' in output
    assert 'dispatch_latency_seconds{quantile="0.5"} 0.5' in output
    assert "dispatch_latency_seconds_count 1" in output
    METRICS.reset()
