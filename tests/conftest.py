"""
tests/conftest.py

Pytest fixtures for the import relay test suite.

The fakes live in tests/helpers.py; fixtures here wire them together
the way ImportRelayRunner.from_settings wires the real collaborators.
"""

from __future__ import annotations

import pytest

from import_relay.core.config import Settings, reset_settings
from import_relay.workers.consumer import ImportConsumer
from import_relay.workers.failure_publisher import FailurePublisher
from tests.helpers import (
    FAILURES_TOPIC,
    FakeAck,
    FakeGateway,
    FakeProducer,
    RecordingMetrics,
    make_settings,
)


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset the settings cache before and after each test."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def metrics() -> RecordingMetrics:
    return RecordingMetrics()


@pytest.fixture
def producer() -> FakeProducer:
    return FakeProducer()


@pytest.fixture
def publisher(producer: FakeProducer, metrics: RecordingMetrics) -> FailurePublisher:
    return FailurePublisher(producer, FAILURES_TOPIC, metrics)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def import_consumer(gateway: FakeGateway, publisher: FailurePublisher, metrics: RecordingMetrics) -> ImportConsumer:
    return ImportConsumer(gateway, publisher, metrics)


@pytest.fixture
def ack() -> FakeAck:
    return FakeAck()
