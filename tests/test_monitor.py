"""Tests for the execution monitors."""

import logging
import threading

import pytest

from core.clock import ManualClock
from monitor.execution_monitor import (
    FAILURE,
    SKIPPED,
    SUCCESS,
    InMemoryExecutionMonitor,
    NoopExecutionMonitor,
)


@pytest.fixture
def clock():
    return ManualClock(1_000)


@pytest.fixture
def monitor(clock):
    return InMemoryExecutionMonitor(capacity=100, clock=clock)


# ── Counters ─────────────────────────────────────────────────────────────────

def test_start_then_success(monitor):
    monitor.record_execution_start("A", "alpha")
    monitor.record_execution_success("A", "alpha", duration=50)
    stats = monitor.get_stats()
    assert stats.total_executions == 1
    assert stats.successful_executions == 1
    assert stats.average_execution_duration == 50
    assert stats.success_rate == 1.0


def test_duration_measured_from_start_when_not_given(monitor, clock):
    monitor.record_execution_start("A", "alpha")
    clock.advance(30)
    monitor.record_execution_success("A", "alpha")
    record = monitor.get_recent_records()[0]
    assert record.duration == 30
    assert record.started_at == 1_000
    assert record.completed_at == 1_030


def test_average_is_running_mean_over_timed_runs(monitor):
    for duration in (10, 20, 60):
        monitor.record_execution_start("A", "alpha")
        monitor.record_execution_success("A", "alpha", duration=duration)
    monitor.record_execution_skipped("A", "alpha", "overlap")
    stats = monitor.get_stats()
    assert stats.total_executions == 4
    assert stats.skipped_executions == 1
    assert stats.average_execution_duration == pytest.approx(30)


def test_failure_recorded(monitor, clock):
    monitor.record_execution_start("A", "alpha")
    clock.advance(5)
    monitor.record_execution_failure("A", "alpha", RuntimeError("boom"))
    stats = monitor.get_stats()
    assert stats.failed_executions == 1
    assert stats.last_failure_at == 1_005
    assert stats.last_success_at is None
    record = monitor.get_recent_records()[0]
    assert record.status == FAILURE
    assert record.error == "boom"


def test_skip_recorded_with_reason(monitor):
    monitor.record_execution_skipped("A", "alpha", "previous run still in flight")
    record = monitor.get_recent_records()[0]
    assert record.status == SKIPPED
    assert record.reason == "previous run still in flight"
    assert record.duration is None


def test_finish_without_start_still_counts(monitor, caplog):
    with caplog.at_level(logging.WARNING):
        monitor.record_execution_success("A", "alpha", duration=7)
    assert monitor.get_stats().successful_executions == 1
    assert "No pending start" in caplog.text


# ── History ──────────────────────────────────────────────────────────────────

def test_ring_buffer_evicts_oldest(clock):
    monitor = InMemoryExecutionMonitor(capacity=2, clock=clock)
    for uuid in ("one", "two", "three"):
        monitor.record_execution_start(uuid, uuid)
        monitor.record_execution_success(uuid, uuid, duration=1)
    assert [r.task_uuid for r in monitor.get_recent_records()] == ["two", "three"]
    assert monitor.get_stats().total_executions == 3


def test_recent_records_limit_newest_last(monitor):
    for uuid in ("a", "b", "c"):
        monitor.record_execution_start(uuid, uuid)
        monitor.record_execution_success(uuid, uuid, duration=1)
    assert [r.task_uuid for r in monitor.get_recent_records(2)] == ["b", "c"]
    assert monitor.get_recent_records(0) == []


def test_records_are_copies(monitor):
    monitor.record_execution_start("A", "alpha")
    monitor.record_execution_success("A", "alpha", duration=1)
    monitor.get_recent_records()[0].status = "tampered"
    assert monitor.get_recent_records()[0].status == SUCCESS


def test_running_tracks_pending_starts(monitor):
    monitor.record_execution_start("A", "alpha")
    assert [r.task_uuid for r in monitor.get_running()] == ["A"]
    monitor.record_execution_success("A", "alpha", duration=1)
    assert monitor.get_running() == []


def test_invalid_capacity():
    with pytest.raises(ValueError):
        InMemoryExecutionMonitor(capacity=0)


# ── Per task / reset / summary ───────────────────────────────────────────────

def test_per_task_stats(monitor):
    monitor.record_execution_start("A", "alpha")
    monitor.record_execution_success("A", "alpha", duration=1)
    monitor.record_execution_start("B", "beta")
    monitor.record_execution_failure("B", "beta", "bad", duration=2)
    assert monitor.get_task_stats("A").successful_executions == 1
    assert monitor.get_task_stats("B").failed_executions == 1
    assert monitor.get_task_stats("C") is None


def test_reset(monitor):
    monitor.record_execution_start("A", "alpha")
    monitor.record_execution_success("A", "alpha", duration=1)
    monitor.reset()
    assert monitor.get_stats().total_executions == 0
    assert monitor.get_recent_records() == []


def test_summary_lists_recent(monitor):
    monitor.record_execution_start("A", "alpha")
    monitor.record_execution_success("A", "alpha", duration=12)
    text = monitor.summary()
    assert "alpha" in text
    assert "Succeeded : 1" in text


def test_repeated_failures_raise_alert(monitor, caplog):
    with caplog.at_level(logging.ERROR):
        for _ in range(3):
            monitor.record_execution_start("A", "alpha")
            monitor.record_execution_failure("A", "alpha", "down", duration=1)
    assert "Task failing repeatedly" in caplog.text


def test_stats_to_dict(monitor):
    monitor.record_execution_start("A", "alpha")
    monitor.record_execution_success("A", "alpha", duration=50)
    data = monitor.get_stats().to_dict()
    assert data["total_executions"] == 1
    assert data["success_rate"] == 1.0


# ── Locking variants ─────────────────────────────────────────────────────────

@pytest.mark.parametrize("thread_safe", [True, False])
def test_single_threaded_use_without_lock(clock, thread_safe):
    monitor = InMemoryExecutionMonitor(capacity=10, clock=clock, thread_safe=thread_safe)
    monitor.record_execution_start("A", "alpha")
    monitor.record_execution_success("A", "alpha", duration=1)
    assert monitor.get_stats().total_executions == 1


def test_concurrent_reports_from_threads(clock):
    monitor = InMemoryExecutionMonitor(capacity=50, clock=clock, thread_safe=True)

    def worker(n: int) -> None:
        for i in range(200):
            uuid = f"w{n}-{i}"
            monitor.record_execution_start(uuid, uuid)
            monitor.record_execution_success(uuid, uuid, duration=1)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    stats = monitor.get_stats()
    assert stats.total_executions == 800
    assert stats.successful_executions == 800
    assert len(monitor.get_recent_records()) == 50


# ── Noop ─────────────────────────────────────────────────────────────────────

def test_noop_monitor():
    monitor = NoopExecutionMonitor()
    monitor.record_execution_start("A", "alpha")
    monitor.record_execution_success("A", "alpha", duration=5)
    monitor.record_execution_failure("A", "alpha", "x")
    monitor.record_execution_skipped("A", "alpha", "y")
    assert monitor.get_stats().total_executions == 0
    assert monitor.get_recent_records() == []
