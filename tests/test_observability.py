"""Tests for per-engine metrics."""

from observability import Metrics, log_run_summary


def test_counters():
    metrics = Metrics()
    metrics.counter("ingest.enqueued")
    metrics.counter("ingest.enqueued", 2)
    assert metrics.count("ingest.enqueued") == 3
    assert metrics.count("missing") == 0


def test_timer_records_duration():
    metrics = Metrics()
    with metrics.timer("rank"):
        pass
    with metrics.timer("rank"):
        pass
    summary = metrics.summary()["timers"]["rank"]
    assert summary["count"] == 2
    assert summary["min"] >= 0.0


def test_timer_records_on_error():
    metrics = Metrics()
    try:
        with metrics.timer("rank"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass
    assert metrics.summary()["timers"]["rank"]["count"] == 1


def test_instances_are_independent():
    a, b = Metrics(), Metrics()
    a.counter("facts.inserted")
    assert b.summary() == {"counters": {}, "timers": {}}


def test_reset_and_log():
    metrics = Metrics()
    metrics.counter("facts.rejected")
    log_run_summary(metrics)
    metrics.reset()
    assert metrics.summary()["counters"] == {}
