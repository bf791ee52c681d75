"""
Import Relay - Import Consumer

Processes one import request message end to end:

    decode -> map -> gateway call -> decide -> (publish failure | ack | raise)

The consumer owns no broker or transport: the runner hands it raw bytes
and an Acknowledgment, and it is constructed with its gateway, failure
publisher and metrics recorder so tests can substitute fakes.

Contract with the caller:
- consume() returns normally once the message reached SUCCESS or
  PERMANENT_FAILURE; the acknowledgment has been issued by then.
- consume() raises TransientInfraError on TRANSIENT_FAILURE without
  acknowledging; the caller retries the same message.
"""

from __future__ import annotations

import logging
from typing import Protocol

from import_relay.core.error_taxonomy import DecodeError, FailureCategory
from import_relay.core.logging import LogContext, Timer
from import_relay.core.metrics import MetricsRecorder
from import_relay.workers.failure_publisher import FailurePublisher
from import_relay.workers.gateway import ImportGateway, ImportStatus
from import_relay.workers.payload import ImportRequestPayload, decode
from import_relay.workers.policy import (
    Decision,
    DecodeResult,
    DispatchResult,
    Outcome,
    decide,
)
from import_relay.workers.request_mapper import to_request

logger = logging.getLogger(__name__)


class Acknowledgment(Protocol):
    """Commits progress for exactly one delivered message."""

    def acknowledge(self) -> None: ...


class ImportConsumer:
    """
    Stateless per-message processor shared by every worker thread.

    Only the collaborators are shared, and each of them is thread-safe.
    """

    def __init__(
        self,
        gateway: ImportGateway,
        publisher: FailurePublisher,
        metrics: MetricsRecorder,
    ):
        self.gateway = gateway
        self.publisher = publisher
        self.metrics = metrics

    def consume(self, raw: bytes | str | None, ack: Acknowledgment) -> Decision:
        """
        Process one message.

        Args:
            raw: Message value as delivered by the broker.
            ack: Acknowledgment for this message.

        Returns:
            The Decision that was applied.

        Raises:
            TransientInfraError: The gateway call failed; the message was not acknowledged.
        """
        self.metrics.message_received()
        with self.metrics.track_in_flight(), Timer() as timer:
            try:
                decode_result = self._decode(raw)
                payload = decode_result.payload
                with LogContext(
                    correlation_id=payload.correlation_id if payload is not None else None,
                    index_id=payload.index_id if payload is not None else None,
                ):
                    dispatch_result = self._dispatch(payload) if decode_result.decoded else None
                    decision = decide(decode_result, dispatch_result)
                    self._apply(decision, ack, timer)
            finally:
                self.metrics.observe_duration(timer.elapsed_seconds)
        return decision

    def _decode(self, raw: bytes | str | None) -> DecodeResult:
        try:
            return DecodeResult(payload=decode(raw))
        except DecodeError as e:
            return DecodeResult(error=e)

    def _dispatch(self, payload: ImportRequestPayload) -> DispatchResult:
        # Mapping sits inside the guarded block: any failure here is retried
        try:
            response = self.gateway.call(to_request(payload))
        except Exception as e:
            return DispatchResult(error=e)
        return DispatchResult(response=response)

    def _apply(self, decision: Decision, ack: Acknowledgment, timer: Timer) -> None:
        self._record(decision)
        self._log(decision, timer)

        if decision.failure is not None:
            self.publisher.send(decision.failure)

        if decision.acknowledge:
            ack.acknowledge()

        if decision.propagate:
            raise decision.error

    def _record(self, decision: Decision) -> None:
        if decision.status is not None:
            self.metrics.import_processed()
            if decision.status is ImportStatus.IMPORTED:
                self.metrics.import_succeeded()
            elif decision.status is ImportStatus.ALREADY_EXISTS:
                self.metrics.import_already_existing()

        if decision.category is not None:
            if decision.category is FailureCategory.DESERIALIZATION:
                self.metrics.message_invalid()
            self.metrics.failure_recorded(decision.category, decision.detail)

    def _log(self, decision: Decision, timer: Timer) -> None:
        extra = {
            "outcome": decision.outcome.value,
            "duration_ms": round(timer.elapsed_ms, 2),
            "status": decision.status.name if decision.status is not None else None,
            "failure_category": decision.category.value if decision.category is not None else None,
            "failure_detail": decision.detail,
        }

        if decision.outcome is Outcome.SUCCESS:
            logger.info("Import completed", extra=extra)
        elif decision.outcome is Outcome.PERMANENT_FAILURE:
            logger.warning(
                "Import failed permanently: %s",
                decision.failure.failure_message if decision.failure is not None else "",
                extra={**extra, "retryable": False},
            )
        else:
            logger.error(
                "Import call failed, message will be retried: %s",
                decision.error,
                extra={**extra, "retryable": True},
            )
