"""Tests for the shared backoff pause, run coordination and rate tracking."""

import pytest

from photoferry.backoff import BackoffController
from photoferry.coordination import CancellationToken, RunRegistry
from photoferry.errors import OperationCancelled
from photoferry.rate import UploadRateTracker


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


def test_pause_is_per_identity():
    clock = FakeClock()
    backoff = BackoffController(clock=clock, sleep=clock.sleep)

    backoff.pause("alice", 5.0, reason="rate limited")

    assert backoff.is_paused("alice")
    assert not backoff.is_paused("bob")
    assert backoff.remaining_pause("alice") == pytest.approx(5.0)


def test_shorter_pause_never_replaces_longer_one():
    clock = FakeClock()
    backoff = BackoffController(clock=clock, sleep=clock.sleep)

    backoff.pause("alice", 10.0)
    backoff.pause("alice", 2.0)
    assert backoff.remaining_pause("alice") == pytest.approx(10.0)

    backoff.pause("alice", 15.0)
    assert backoff.remaining_pause("alice") == pytest.approx(15.0)


def test_pause_expires():
    clock = FakeClock()
    backoff = BackoffController(clock=clock, sleep=clock.sleep)
    backoff.pause("alice", 3.0)

    clock.now += 3.5

    assert backoff.remaining_pause("alice") == 0.0
    assert not backoff.is_paused("alice")


def test_non_positive_pause_is_ignored():
    backoff = BackoffController()
    backoff.pause("alice", 0)

    assert not backoff.is_paused("alice")


def test_wait_while_paused_sleeps_until_pause_ends():
    clock = FakeClock()
    backoff = BackoffController(clock=clock, sleep=clock.sleep)
    backoff.pause("alice", 4.0)

    backoff.wait_while_paused("alice")

    assert clock.now >= 1004.0
    assert not backoff.is_paused("alice")


def test_wait_while_paused_returns_when_cancelled():
    backoff = BackoffController()
    backoff.pause("alice", 60.0)
    token = CancellationToken()
    token.cancel()

    backoff.wait_while_paused("alice", token)

    assert backoff.is_paused("alice")


def test_cancellation_token():
    token = CancellationToken()
    token.raise_if_cancelled()
    assert token.wait(0) is False

    token.cancel()

    assert token.cancelled
    assert token.wait(5) is True
    with pytest.raises(OperationCancelled):
        token.raise_if_cancelled("stopped")


def test_run_registry_allows_one_run_per_identity():
    registry = RunRegistry()

    first = registry.begin("alice")
    assert first is not None
    assert registry.begin("alice") is None
    assert registry.begin("bob") is not None

    registry.end(first)

    assert not registry.is_active("alice")
    assert first.token.cancelled
    assert registry.begin("alice") is not None


def test_run_registry_request_stop():
    registry = RunRegistry()
    state = registry.begin("alice")

    assert registry.request_stop("alice") is True
    assert state.stop_requested
    assert state.token.cancelled
    assert registry.request_stop("bob") is False


def test_rate_tracker_window():
    clock = FakeClock()
    tracker = UploadRateTracker(clock=clock)
    assert tracker.stats()["is_tracking"] is False

    tracker.add(1000)
    clock.now += 6
    tracker.add(3000)
    clock.now += 4

    stats = tracker.stats()
    assert stats["is_tracking"] is True
    assert stats["total_uploaded_count"] == 2
    assert stats["total_uploaded_size"] == 4000
    assert stats["items_per_second"] == pytest.approx(0.2)
    assert stats["bytes_per_second"] == pytest.approx(400.0)

    # Buckets older than a minute fall out of the window but totals remain.
    clock.now += 120
    stats = tracker.stats()
    assert stats["is_tracking"] is False
    assert stats["items_per_second"] == 0.0
    assert stats["total_uploaded_count"] == 2

    tracker.reset()
    assert tracker.stats()["total_uploaded_count"] == 0
