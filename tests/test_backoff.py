"""
Tests for import_relay/workers/backoff.py - poll error backoff.
"""

from __future__ import annotations

import pytest

from import_relay.workers.backoff import BACKOFF_JITTER, BackoffState


def test_first_failure_uses_initial_delay():
    state = BackoffState(initial_delay=1.0, max_delay=60.0)

    delay = state.record_failure()

    assert 1.0 <= delay <= 1.0 * (1 + BACKOFF_JITTER)
    assert state.consecutive_failures == 1


def test_delay_grows_exponentially_and_caps():
    state = BackoffState(initial_delay=1.0, max_delay=5.0)

    for _ in range(3):
        state.record_failure()
    assert state.next_delay() == 4.0

    for _ in range(5):
        delay = state.record_failure()
    assert state.next_delay() == 5.0
    assert delay <= 5.0


def test_success_resets_consecutive_but_keeps_total():
    state = BackoffState(initial_delay=0.0, max_delay=0.0)
    state.record_failure()
    state.record_failure()

    state.record_success()

    assert state.consecutive_failures == 0
    assert state.total_failures == 2
    assert state.next_delay() == 0.0


@pytest.mark.parametrize("failures,unhealthy", [(9, False), (10, True)])
def test_unhealthy_threshold(failures, unhealthy):
    state = BackoffState(initial_delay=0.0, max_delay=0.0)
    for _ in range(failures):
        state.record_failure()

    assert state.is_unhealthy() is unhealthy


def test_time_since_last_failure():
    state = BackoffState()
    assert state.time_since_last_failure is None

    state.record_failure()

    assert state.time_since_last_failure >= 0
