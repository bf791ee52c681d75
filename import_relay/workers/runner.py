"""
Import Relay - Runner

Owns the broker side of the relay:
- A fixed pool of worker threads, each with its own Kafka consumer in the
  same consumer group. Kafka assigns partitions across them, so messages
  of one partition are handled in order by one worker.
- Manual offset commits: a message is committed only when the import
  consumer acknowledges it.
- Message-level retry: a TransientInfraError is retried on a fixed
  interval, RETRY_ATTEMPTS times after the first delivery. Once retries
  are exhausted the raw message goes to IMPORT_DEAD_LETTER_TOPIC (when
  configured) and its offset is committed.
- Graceful shutdown on SIGTERM/SIGINT with structured boot, shutdown and
  crash reports.

Usage:
    import-relay                      # concurrency from CONSUMER_CONCURRENCY
    import-relay --concurrency 4
    python -m import_relay --print-config
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import socket
import threading
import time
import traceback
from datetime import datetime, timezone
from typing import Any, Callable

from confluent_kafka import Consumer, KafkaError, KafkaException, Producer, TopicPartition
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_fixed,
)

from import_relay import __version__
from import_relay.core.config import Settings, get_settings, load_environment
from import_relay.core.error_taxonomy import TransientInfraError
from import_relay.core.logging import LogContext, configure_worker_logging
from import_relay.core.metrics import PrometheusMetricsRecorder, start_metrics_server
from import_relay.workers.backoff import BackoffState
from import_relay.workers.consumer import ImportConsumer
from import_relay.workers.failure_publisher import FailurePublisher
from import_relay.workers.gateway import GrpcImportGateway, create_channel
from import_relay.workers.policy import Outcome

logger = logging.getLogger(__name__)

# Seconds to wait for a dead-lettered record to be delivered before committing
DEAD_LETTER_FLUSH_TIMEOUT = 10.0
# Seconds to wait for each worker thread on shutdown
WORKER_JOIN_TIMEOUT = 30.0

ConsumerFactory = Callable[[dict[str, Any]], Any]


class KafkaAcknowledgment:
    """Synchronously commits the offset following one message."""

    def __init__(self, consumer: Any, msg: Any):
        self.consumer = consumer
        self.msg = msg
        self.acknowledged = False

    def acknowledge(self) -> None:
        if self.acknowledged:
            return
        self.consumer.commit(message=self.msg, asynchronous=False)
        self.acknowledged = True


def dead_letter_headers(msg: Any, error: TransientInfraError, attempts: int) -> list[tuple[str, bytes]]:
    """Headers describing why and where from a message was dead-lettered."""
    return [
        ("x-error-type", type(error).__name__.encode("utf-8")),
        ("x-error-message", str(error).encode("utf-8")),
        ("x-attempts", str(attempts).encode("utf-8")),
        ("x-source-topic", msg.topic().encode("utf-8")),
        ("x-source-partition", str(msg.partition()).encode("utf-8")),
        ("x-source-offset", str(msg.offset()).encode("utf-8")),
    ]


class ImportWorker:
    """
    One poll loop with its own Kafka consumer.

    Everything passed in is shared across workers; the Kafka consumer and
    the counters are private to this worker.
    """

    def __init__(
        self,
        name: str,
        settings: Settings,
        import_consumer: ImportConsumer,
        producer: Any,
        stop_event: threading.Event,
        consumer_factory: ConsumerFactory = Consumer,
    ):
        self.name = name
        self.settings = settings
        self.import_consumer = import_consumer
        self.producer = producer
        self.stop_event = stop_event
        self.consumer_factory = consumer_factory

        self.backoff = BackoffState()
        self.error: BaseException | None = None

        self.messages_handled = 0
        self.messages_failed = 0
        self.messages_dead_lettered = 0
        self.messages_skipped = 0

    @property
    def max_attempts(self) -> int:
        """First delivery plus RETRY_ATTEMPTS retries."""
        return self.settings.RETRY_ATTEMPTS + 1

    def run(self) -> None:
        """Poll until the stop event is set. A fatal error is kept in self.error."""
        consumer = self.consumer_factory(self.settings.kafka_consumer_config())
        consumer.subscribe([self.settings.IMPORT_REQUESTS_TOPIC])
        logger.info(
            "Worker %s subscribed to %s",
            self.name,
            self.settings.IMPORT_REQUESTS_TOPIC,
            extra={"worker": self.name, "topic": self.settings.IMPORT_REQUESTS_TOPIC},
        )

        try:
            while not self.stop_event.is_set():
                msg = consumer.poll(self.settings.POLL_TIMEOUT_SECONDS)
                if msg is None:
                    continue
                if msg.error():
                    self._handle_poll_error(msg.error())
                    continue
                self.backoff.record_success()
                self.handle_message(consumer, msg)
        except Exception as e:
            self.error = e
            logger.critical("Worker %s stopped on fatal error: %s", self.name, e, exc_info=True)
        finally:
            consumer.close()
            logger.info(
                "Worker %s closed handled=%d failed=%d dead_lettered=%d skipped=%d",
                self.name,
                self.messages_handled,
                self.messages_failed,
                self.messages_dead_lettered,
                self.messages_skipped,
                extra={"worker": self.name},
            )

    def _handle_poll_error(self, error: Any) -> None:
        if error.code() == KafkaError._PARTITION_EOF:
            return
        if error.fatal():
            raise KafkaException(error)

        delay = self.backoff.record_failure()
        logger.warning(
            "Kafka poll error on %s: %s (retry in %.1fs)",
            self.name,
            error,
            delay,
            extra={"worker": self.name, "attempt": self.backoff.consecutive_failures},
        )
        if self.backoff.is_unhealthy():
            logger.error("Worker %s has seen %d consecutive poll errors", self.name, self.backoff.consecutive_failures)
        self.stop_event.wait(delay)

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts) | stop_when_event_set(self.stop_event),
            wait=wait_fixed(self.settings.RETRY_BACKOFF_SECONDS),
            retry=retry_if_exception_type(TransientInfraError),
            sleep=self.stop_event.wait,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def handle_message(self, consumer: Any, msg: Any) -> None:
        """Run one message to a terminal state, retrying transient failures."""
        with LogContext(
            topic=msg.topic(),
            partition=msg.partition(),
            offset=msg.offset(),
            worker=self.name,
        ):
            ack = KafkaAcknowledgment(consumer, msg)
            attempt_number = 0
            try:
                for attempt in self._retrying():
                    with attempt:
                        attempt_number = attempt.retry_state.attempt_number
                        with LogContext(attempt=attempt_number, max_attempts=self.max_attempts):
                            decision = self.import_consumer.consume(msg.value(), ack)
            except TransientInfraError as e:
                self._retries_exhausted(consumer, msg, e, attempt_number)
                return
            except KafkaException as e:
                # Commit failed; the offset stays behind and the message may be redelivered
                logger.error("Offset commit failed: %s", e, extra={"worker": self.name})
                return

            self.messages_handled += 1
            if decision.outcome is Outcome.PERMANENT_FAILURE:
                self.messages_failed += 1

    def _retries_exhausted(self, consumer: Any, msg: Any, error: TransientInfraError, attempts: int) -> None:
        if self.stop_event.is_set():
            logger.warning(
                "Shutdown during retries; message left uncommitted for redelivery",
                extra={"attempt": attempts, "max_attempts": self.max_attempts},
            )
            return

        topic = self.settings.IMPORT_DEAD_LETTER_TOPIC
        if topic is None:
            logger.error(
                "Retries exhausted and no dead-letter topic configured; skipping message: %s",
                error,
                extra={"attempt": attempts, "max_attempts": self.max_attempts, **error.to_log_dict()},
            )
            if self._commit(consumer, msg):
                self.messages_skipped += 1
            return

        try:
            self.producer.produce(
                topic,
                key=msg.key(),
                value=msg.value(),
                headers=dead_letter_headers(msg, error, attempts),
            )
            remaining = self.producer.flush(DEAD_LETTER_FLUSH_TIMEOUT)
            if remaining:
                raise KafkaException(f"{remaining} record(s) still queued after flush")
        except (KafkaException, BufferError) as e:
            logger.error(
                "Dead-letter publish failed, rewinding to redeliver the message: %s",
                e,
                extra={"topic": topic},
                exc_info=True,
            )
            consumer.seek(TopicPartition(msg.topic(), msg.partition(), msg.offset()))
            return

        if not self._commit(consumer, msg):
            return
        self.messages_dead_lettered += 1
        logger.error(
            "Retries exhausted; message routed to dead-letter topic %s",
            topic,
            extra={"attempt": attempts, "max_attempts": self.max_attempts, **error.to_log_dict()},
        )

    def _commit(self, consumer: Any, msg: Any) -> bool:
        try:
            consumer.commit(message=msg, asynchronous=False)
        except KafkaException as e:
            logger.error("Offset commit failed: %s", e, extra={"worker": self.name})
            return False
        return True


class ImportRelayRunner:
    """
    Process-level owner of the worker pool and the shared collaborators.

    Args:
        settings: Relay settings.
        import_consumer: Shared per-message processor.
        producer: Shared Kafka producer (failure and dead-letter topics).
        consumer_factory: Builds a Kafka consumer from a config dict.
        channel: gRPC channel closed on shutdown, when the runner built it.
    """

    def __init__(
        self,
        settings: Settings,
        import_consumer: ImportConsumer,
        producer: Any,
        consumer_factory: ConsumerFactory = Consumer,
        channel: Any | None = None,
    ):
        self.settings = settings
        self.import_consumer = import_consumer
        self.producer = producer
        self.consumer_factory = consumer_factory
        self.channel = channel

        self.stop_event = threading.Event()
        self.workers: list[ImportWorker] = []
        self._threads: list[threading.Thread] = []
        self._start_time: float | None = None
        self._shutdown_reason: str | None = None
        self._hostname = socket.gethostname()
        self._pid = os.getpid()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ImportRelayRunner":
        """Wire the production collaborators."""
        metrics = PrometheusMetricsRecorder()
        producer = Producer(settings.kafka_producer_config())
        channel = create_channel(settings)
        gateway = GrpcImportGateway(channel, timeout=settings.IMPORT_GRPC_TIMEOUT_SECONDS)
        publisher = FailurePublisher(producer, settings.IMPORT_FAILURES_TOPIC, metrics)
        import_consumer = ImportConsumer(gateway, publisher, metrics)
        return cls(settings, import_consumer, producer, channel=channel)

    # -------------------------------------------------------------------------
    # Structured Lifecycle Logging
    # -------------------------------------------------------------------------

    def _uptime(self) -> float:
        if self._start_time is None:
            return 0.0
        return round(time.monotonic() - self._start_time, 2)

    def _totals(self) -> dict[str, int]:
        return {
            "messages_handled": sum(w.messages_handled for w in self.workers),
            "messages_failed": sum(w.messages_failed for w in self.workers),
            "messages_dead_lettered": sum(w.messages_dead_lettered for w in self.workers),
            "messages_skipped": sum(w.messages_skipped for w in self.workers),
        }

    def _emit_boot_report(self) -> None:
        boot_data = {
            "event": "RELAY_BOOT",
            "data": {
                "requests_topic": self.settings.IMPORT_REQUESTS_TOPIC,
                "failures_topic": self.settings.IMPORT_FAILURES_TOPIC,
                "dead_letter_topic": self.settings.IMPORT_DEAD_LETTER_TOPIC,
                "group_id": self.settings.KAFKA_GROUP_ID,
                "grpc_target": self.settings.grpc_target,
                "concurrency": self.settings.CONSUMER_CONCURRENCY,
                "retry_attempts": self.settings.RETRY_ATTEMPTS,
                "env": self.settings.ENVIRONMENT,
                "hostname": self._hostname,
                "pid": self._pid,
                "version": __version__,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        }
        logger.info(json.dumps(boot_data))

    def _emit_shutdown_report(self, reason: str) -> None:
        shutdown_data = {
            "event": "RELAY_SHUTDOWN",
            "data": {
                "uptime_seconds": self._uptime(),
                **self._totals(),
                "reason": reason,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        }
        logger.info(json.dumps(shutdown_data))

    def _emit_crash_report(self, worker: ImportWorker) -> None:
        error = worker.error
        crash_data = {
            "event": "RELAY_CRASH",
            "data": {
                "worker": worker.name,
                "uptime_seconds": self._uptime(),
                **self._totals(),
                "error": str(error),
                "error_type": type(error).__name__,
                "traceback": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        }
        logger.critical(json.dumps(crash_data))

    # -------------------------------------------------------------------------
    # Signal Handling
    # -------------------------------------------------------------------------

    def _setup_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._handle_shutdown_signal)
        signal.signal(signal.SIGINT, self._handle_shutdown_signal)

    def _handle_shutdown_signal(self, signum: int, frame: Any) -> None:
        sig_name = signal.Signals(signum).name
        logger.info("Received %s, initiating graceful shutdown", sig_name)
        self.stop(f"{sig_name} (Deployment/Scale-down)")

    def stop(self, reason: str = "Stop requested") -> None:
        if self._shutdown_reason is None:
            self._shutdown_reason = reason
        self.stop_event.set()

    # -------------------------------------------------------------------------
    # Main Run Loop
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start CONSUMER_CONCURRENCY worker threads."""
        self._start_time = time.monotonic()
        for index in range(self.settings.CONSUMER_CONCURRENCY):
            worker = ImportWorker(
                f"import-worker-{index}",
                self.settings,
                self.import_consumer,
                self.producer,
                self.stop_event,
                consumer_factory=self.consumer_factory,
            )
            thread = threading.Thread(target=worker.run, name=worker.name, daemon=True)
            self.workers.append(worker)
            self._threads.append(thread)
            thread.start()

    def run(self, install_signal_handlers: bool = True) -> int:
        """
        Run the pool until a signal arrives or a worker crashes.

        Returns:
            Exit code (0 for clean shutdown, 1 if a worker crashed).
        """
        if install_signal_handlers:
            self._setup_signal_handlers()

        self._emit_boot_report()
        self.start()

        crashed: ImportWorker | None = None
        while not self.stop_event.is_set():
            crashed = next((w for w in self.workers if w.error is not None), None)
            if crashed is not None:
                self.stop("Worker crash")
                break
            if not any(t.is_alive() for t in self._threads):
                self.stop("All workers exited")
                break
            self.stop_event.wait(1.0)

        self.shutdown()

        if crashed is not None:
            self._emit_crash_report(crashed)
            return 1

        self._emit_shutdown_report(self._shutdown_reason or "Normal exit")
        return 0

    def shutdown(self) -> None:
        """Stop workers, then drain the producer and close the channel."""
        self.stop_event.set()
        for thread in self._threads:
            thread.join(WORKER_JOIN_TIMEOUT)
            if thread.is_alive():
                logger.warning("Worker %s did not stop within %.0fs", thread.name, WORKER_JOIN_TIMEOUT)

        # Failure envelopes and dead letters share one producer
        self.import_consumer.publisher.flush(DEAD_LETTER_FLUSH_TIMEOUT)

        if self.channel is not None:
            self.channel.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="import-relay",
        description="Relay import requests from Kafka to the GED import service",
    )
    parser.add_argument("--concurrency", type=int, help="Worker threads (overrides CONSUMER_CONCURRENCY)")
    parser.add_argument("--env-file", help="dotenv file to load (default: IMPORT_RELAY_ENV_FILE or .env)")
    parser.add_argument("--print-config", action="store_true", help="Print the effective configuration and exit")
    args = parser.parse_args(argv)

    if args.concurrency is not None and args.concurrency < 1:
        parser.error("--concurrency must be at least 1")

    load_environment(args.env_file)
    settings = get_settings()
    if args.concurrency is not None:
        settings = settings.model_copy(update={"CONSUMER_CONCURRENCY": args.concurrency})

    configure_worker_logging("import_relay", level=settings.LOG_LEVEL, json_output=settings.LOG_JSON)

    if args.print_config:
        print(json.dumps(settings.effective_config(), indent=2, default=str))
        return 0

    if settings.METRICS_PORT is not None:
        start_metrics_server(settings.METRICS_PORT)
        logger.info("Metrics exposed on :%d/metrics", settings.METRICS_PORT)

    runner = ImportRelayRunner.from_settings(settings)
    return runner.run()


if __name__ == "__main__":
    raise SystemExit(main())
