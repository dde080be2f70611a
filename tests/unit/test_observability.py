from xlai.utils.observability import RequestMetrics, time_phase


def test_request_metrics_snapshot():
    metrics = RequestMetrics()
    metrics.record("/api/send", 10.0)
    metrics.record("/api/send", 20.0)
    metrics.record("/api/rephrase", 5.0)
    metrics.record_phase("intensity", 12.0)
    metrics.record_phase("rephrase", 25.0)
    metrics.increment_counter("intensity::fail_open")

    with time_phase(metrics, "phase_test"):
        pass

    snapshot = metrics.snapshot()
    assert snapshot["/api/send"]["count"] == 2
    assert snapshot["/api/send"]["avg_latency_ms"] == 15.0
    assert snapshot["/api/send"]["p50_latency_ms"] == 10.0
    assert snapshot["/api/send"]["p95_latency_ms"] == 20.0
    assert snapshot["/api/rephrase"]["count"] == 1

    phases = snapshot["phases"]
    assert phases["intensity"]["count"] == 1
    assert phases["intensity"]["avg_latency_ms"] == 12.0
    assert phases["rephrase"]["avg_latency_ms"] == 25.0
    assert phases["phase_test"]["count"] == 1

    counters = snapshot.get("counters", {})
    assert counters["intensity::fail_open"] == 1


def test_reset_clears_everything():
    metrics = RequestMetrics()
    metrics.record("/api/health", 1.0)
    metrics.increment_counter("completion::success")
    metrics.reset()
    assert metrics.snapshot() == {}
