import pytest

from flashcycle.metrics import DEFAULT_OPERATIONS, PerformanceMetrics

from conftest import FakeClock


def test_default_operations_are_reported():
    metrics = PerformanceMetrics()
    assert set(metrics.get_metrics()) == set(DEFAULT_OPERATIONS)
    assert metrics.get_metrics()["cycle_generation"]["count"] == 0


def test_timings_and_success_rate():
    clock = FakeClock(0.0)
    metrics = PerformanceMetrics(clock=clock)

    op = metrics.start_operation("cycle_generation")
    clock.advance(0.2)
    assert metrics.end_operation("cycle_generation", True, op) == pytest.approx(0.2)

    op = metrics.start_operation("cycle_generation")
    clock.advance(0.4)
    metrics.end_operation("cycle_generation", False, op)

    stats = metrics.get_metrics()["cycle_generation"]
    assert stats["count"] == 2
    assert stats["success_rate"] == 0.5
    assert stats["avg_ms"] == pytest.approx(300.0)
    assert stats["min_ms"] == pytest.approx(200.0)
    assert stats["max_ms"] == pytest.approx(400.0)


def test_overlapping_operations_without_id_close_oldest_first():
    clock = FakeClock(0.0)
    metrics = PerformanceMetrics(clock=clock)

    metrics.start_operation("arbitrage_execution")
    clock.advance(1.0)
    metrics.start_operation("arbitrage_execution")
    clock.advance(1.0)

    assert metrics.end_operation("arbitrage_execution") == pytest.approx(2.0)
    assert metrics.get_metrics()["arbitrage_execution"]["active"] == 1


def test_end_without_start_is_ignored():
    assert PerformanceMetrics().end_operation("strategy_building") is None


def test_track_records_failure_on_exception():
    metrics = PerformanceMetrics()

    with pytest.raises(RuntimeError):
        with metrics.track("custom_step"):
            raise RuntimeError("boom")

    stats = metrics.get_metrics()["custom_step"]
    assert stats["count"] == 1
    assert stats["success_rate"] == 0.0

    metrics.reset()
    assert "custom_step" not in metrics.get_metrics()
