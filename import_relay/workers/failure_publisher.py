"""
Import Relay - Failure Publisher

Emits a failure envelope to the failures topic for every permanently
failed import request, so downstream tooling can remediate it.

Envelope format (JSON, keyed by the stringified idIndice):
    {"falha": "<message>", "idIndice": 42, "correlationId": "abc"}

`correlationId` is omitted when unknown; `idIndice` is 0 when the index id
could not be recovered (e.g. the message never decoded).

Publishing is best-effort. By the time an envelope is sent the source
message is already acknowledged, so a publish failure is logged and
counted but never raised.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from import_relay.core.error_taxonomy import PublishError
from import_relay.core.metrics import MetricsRecorder
from import_relay.workers.payload import ImportRequestPayload

logger = logging.getLogger(__name__)

# Message used when the remote service sent none
DEFAULT_FAILURE_MESSAGE = "Erro nao informado"


class FailureEnvelope(BaseModel):
    """A single failed import, as published on the failures topic."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    failure_message: str = Field(alias="falha")
    index_id: int = Field(default=0, alias="idIndice")
    correlation_id: str | None = Field(default=None, alias="correlationId")

    @classmethod
    def for_payload(
        cls,
        payload: ImportRequestPayload | None,
        message: str | None,
        correlation_id: str | None = None,
    ) -> "FailureEnvelope":
        """
        Build the envelope for a failed message.

        Args:
            payload: Decoded payload, or None when decoding failed.
            message: Failure description; None falls back to DEFAULT_FAILURE_MESSAGE.
            correlation_id: Caller correlation id, if any.
        """
        index_id = payload.index_id if payload is not None else None
        if message is None:
            message = DEFAULT_FAILURE_MESSAGE
        return cls(
            failure_message=message,
            index_id=index_id if index_id is not None else 0,
            correlation_id=correlation_id,
        )

    @property
    def key(self) -> str:
        """Record key on the failures topic."""
        return str(self.index_id)

    def to_json(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


class FailurePublisher:
    """
    Sends FailureEnvelopes through a confluent_kafka Producer.

    The producer is thread-safe and shared by every worker.
    """

    def __init__(self, producer: Any, topic: str, metrics: MetricsRecorder):
        self.producer = producer
        self.topic = topic
        self.metrics = metrics

    def publish(
        self,
        payload: ImportRequestPayload | None,
        message: str | None,
        correlation_id: str | None = None,
    ) -> bool:
        """Build and send the envelope for a failed message. Returns True when handed off."""
        return self.send(FailureEnvelope.for_payload(payload, message, correlation_id))

    def send(self, envelope: FailureEnvelope) -> bool:
        """
        Hand an envelope to the producer.

        Returns:
            True when the producer accepted the record, False otherwise.
            Never raises.
        """
        try:
            self.producer.produce(
                self.topic,
                key=envelope.key,
                value=envelope.to_json(),
                on_delivery=self._on_delivery,
            )
            # Serve delivery callbacks of earlier records
            self.producer.poll(0)
        except Exception as e:
            error = PublishError(f"Failed to publish failure envelope: {e}", detail=type(e).__name__)
            logger.error(
                "Failure envelope not published",
                extra={
                    "topic": self.topic,
                    "index_id": envelope.index_id,
                    "correlation_id": envelope.correlation_id,
                    **error.to_log_dict(),
                },
                exc_info=True,
            )
            return False

        self.metrics.failure_published()
        logger.info(
            "Failure envelope published",
            extra={
                "topic": self.topic,
                "index_id": envelope.index_id,
                "correlation_id": envelope.correlation_id,
            },
        )
        return True

    def _on_delivery(self, err: Any, msg: Any) -> None:
        if err is not None:
            logger.error(
                "Failure envelope delivery failed: %s",
                err,
                extra={"topic": self.topic, "failure_category": PublishError.category.value},
            )
            return
        logger.debug(
            "Failure envelope delivered",
            extra={"topic": msg.topic(), "partition": msg.partition(), "offset": msg.offset()},
        )

    def flush(self, timeout: float = 10.0) -> int:
        """Wait for outstanding records on the producer. Returns the number still queued."""
        remaining = self.producer.flush(timeout)
        if remaining:
            logger.warning("%d record(s) still queued in producer after flush", remaining, extra={"topic": self.topic})
        return remaining
