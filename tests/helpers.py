"""
tests/helpers.py

In-memory fakes for the import relay test suite.

Nothing here talks to Kafka or the import service: the broker client,
the producer and the gateway are replaced by in-memory fakes that record
what the code under test did to them.
"""

from __future__ import annotations

import json
import os
from contextlib import contextmanager
from typing import Any, Generator
from unittest.mock import patch

from import_relay.core.config import Settings
from import_relay.core.error_taxonomy import FailureCategory
from import_relay.workers.gateway import ImportResponse, ImportStatus

FAILURES_TOPIC = "importacao.falhas"


# =============================================================================
# FAKES
# =============================================================================


class FakeAck:
    """Counts acknowledgments."""

    def __init__(self) -> None:
        self.count = 0

    def acknowledge(self) -> None:
        self.count += 1


class FakeGateway:
    """
    Scripted ImportGateway.

    Each call pops the next outcome: an ImportResponse is returned, an
    exception is raised. The last outcome repeats once the script runs out.
    """

    def __init__(self, *outcomes: ImportResponse | BaseException):
        self.outcomes = list(outcomes) or [ImportResponse(ImportStatus.IMPORTED)]
        self.requests: list[Any] = []

    def call(self, request: Any) -> ImportResponse:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class RecordingMetrics:
    """MetricsRecorder that keeps plain counters for assertions."""

    def __init__(self) -> None:
        self.counts: dict[str, int] = {}
        self.failures: list[tuple[FailureCategory, str | None]] = []
        self.durations: list[float] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def _inc(self, name: str) -> None:
        self.counts[name] = self.counts.get(name, 0) + 1

    def message_received(self) -> None:
        self._inc("received")

    def message_invalid(self) -> None:
        self._inc("invalid")

    def import_processed(self) -> None:
        self._inc("processed")

    def import_succeeded(self) -> None:
        self._inc("succeeded")

    def import_already_existing(self) -> None:
        self._inc("already_existing")

    def failure_published(self) -> None:
        self._inc("failures_published")

    def failure_recorded(self, category: FailureCategory, detail: str | None) -> None:
        self.failures.append((category, detail))

    def observe_duration(self, seconds: float) -> None:
        self.durations.append(seconds)

    @contextmanager
    def track_in_flight(self) -> Generator[None, None, None]:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            yield
        finally:
            self.in_flight -= 1


class FakeProducer:
    """Records produced records; flush() returns the configured backlog."""

    def __init__(self, fail_with: BaseException | None = None, backlog: int = 0):
        self.records: list[dict[str, Any]] = []
        self.fail_with = fail_with
        self.backlog = backlog
        self.flushes = 0

    def produce(self, topic: str, key: Any = None, value: Any = None, **kwargs: Any) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.records.append({"topic": topic, "key": key, "value": value, **kwargs})

    def poll(self, timeout: float = 0) -> int:
        return 0

    def flush(self, timeout: float = 0) -> int:
        self.flushes += 1
        return self.backlog

    def records_for(self, topic: str) -> list[dict[str, Any]]:
        return [r for r in self.records if r["topic"] == topic]

    def envelopes(self, topic: str = FAILURES_TOPIC) -> list[dict[str, Any]]:
        return [json.loads(r["value"]) for r in self.records_for(topic)]


class FakeKafkaError:
    def __init__(self, code: int, fatal: bool = False, text: str = "broker error"):
        self._code = code
        self._fatal = fatal
        self._text = text

    def code(self) -> int:
        return self._code

    def fatal(self) -> bool:
        return self._fatal

    def __str__(self) -> str:
        return self._text


class FakeMessage:
    """Stand-in for confluent_kafka.Message."""

    def __init__(
        self,
        value: bytes | None,
        *,
        topic: str = "importacao.solicitacoes",
        partition: int = 0,
        offset: int = 0,
        key: bytes | None = None,
        error: FakeKafkaError | None = None,
    ):
        self._value = value
        self._topic = topic
        self._partition = partition
        self._offset = offset
        self._key = key
        self._error = error

    def value(self) -> bytes | None:
        return self._value

    def key(self) -> bytes | None:
        return self._key

    def topic(self) -> str:
        return self._topic

    def partition(self) -> int:
        return self._partition

    def offset(self) -> int:
        return self._offset

    def error(self) -> FakeKafkaError | None:
        return self._error


class FakeKafkaConsumer:
    """
    Replays a list of messages, then sets the stop event so the poll loop ends.
    """

    def __init__(self, messages: list[FakeMessage], stop_event: Any = None):
        self.messages = list(messages)
        self.stop_event = stop_event
        self.config: dict[str, Any] | None = None
        self.subscriptions: list[list[str]] = []
        self.commits: list[FakeMessage] = []
        self.seeks: list[Any] = []
        self.closed = False

    def subscribe(self, topics: list[str]) -> None:
        self.subscriptions.append(topics)

    def poll(self, timeout: float = 0) -> FakeMessage | None:
        if self.messages:
            return self.messages.pop(0)
        if self.stop_event is not None:
            self.stop_event.set()
        return None

    def commit(self, message: FakeMessage | None = None, asynchronous: bool = True) -> None:
        self.commits.append(message)

    def seek(self, partition: Any) -> None:
        self.seeks.append(partition)

    def close(self) -> None:
        self.closed = True


def make_settings(**overrides: Any) -> Settings:
    """Settings isolated from the real environment, with no retry delay."""
    values: dict[str, Any] = {"RETRY_BACKOFF_SECONDS": 0.0, "POLL_TIMEOUT_SECONDS": 0.01}
    values.update(overrides)
    with patch.dict(os.environ, {}, clear=True):
        return Settings(_env_file=None, **values)  # type: ignore[call-arg]


def payload_bytes(**fields: Any) -> bytes:
    return json.dumps(fields).encode("utf-8")
