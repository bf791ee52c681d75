"""
Import Relay - Retry/Ack Policy

Pure decision logic: given the decode result and the dispatch result of
one message, decide whether to acknowledge it, publish a failure envelope,
or propagate the error so the broker layer retries.

    Outcome            Acknowledge  Publish failure  Propagate
    SUCCESS            yes          no               no
    PERMANENT_FAILURE  yes          yes              no
    TRANSIENT_FAILURE  no           no               yes

No I/O happens here; the consumer applies the Decision.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from import_relay.core.error_taxonomy import (
    BusinessError,
    DecodeError,
    FailureCategory,
    TransientInfraError,
    sanitize_detail,
)
from import_relay.workers.failure_publisher import FailureEnvelope
from import_relay.workers.gateway import ImportResponse, ImportStatus
from import_relay.workers.payload import ImportRequestPayload

# Prefix of the failure message for messages that never decoded
INVALID_PAYLOAD_PREFIX = "Payload invalido: "

SUCCESS_STATUSES = frozenset({ImportStatus.IMPORTED, ImportStatus.ALREADY_EXISTS})


class Outcome(str, Enum):
    """Terminal state of one message."""

    SUCCESS = "success"
    PERMANENT_FAILURE = "permanent_failure"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass(frozen=True)
class DecodeResult:
    """Either a payload or the DecodeError that prevented one."""

    payload: ImportRequestPayload | None = None
    error: DecodeError | None = None

    @property
    def decoded(self) -> bool:
        return self.error is None and self.payload is not None


@dataclass(frozen=True)
class DispatchResult:
    """Either the gateway response or the exception the call raised."""

    response: ImportResponse | None = None
    error: BaseException | None = None


@dataclass(frozen=True)
class Decision:
    """
    What to do with a message.

    Attributes:
        outcome: Terminal state.
        acknowledge: Commit the message offset.
        failure: Envelope to publish, when the outcome calls for one.
        error: Exception to raise so the broker layer retries.
        category: Failure category for metrics, None on success.
        detail: Bounded failure detail for metrics, None on success.
        status: Remote status when the gateway answered.
    """

    outcome: Outcome
    acknowledge: bool
    failure: FailureEnvelope | None = None
    error: TransientInfraError | None = None
    category: FailureCategory | None = None
    detail: str | None = None
    status: ImportStatus | None = None

    @property
    def propagate(self) -> bool:
        return self.error is not None


def decide(decode_result: DecodeResult, dispatch_result: DispatchResult | None = None) -> Decision:
    """
    Classify one message and derive its Decision.

    Args:
        decode_result: Outcome of decoding the raw message.
        dispatch_result: Outcome of the gateway call. Required when the
            message decoded; ignored otherwise.

    Returns:
        Decision for the message.
    """
    if not decode_result.decoded:
        error = decode_result.error
        reason = str(error) if error is not None else "empty message"
        return Decision(
            outcome=Outcome.PERMANENT_FAILURE,
            acknowledge=True,
            failure=FailureEnvelope.for_payload(None, INVALID_PAYLOAD_PREFIX + reason),
            category=FailureCategory.DESERIALIZATION,
            detail=error.metric_detail if error is not None else sanitize_detail(None),
        )

    if dispatch_result is None:
        raise ValueError("dispatch_result is required for a decoded message")

    payload = decode_result.payload

    if dispatch_result.error is not None:
        error = as_transient(dispatch_result.error)
        return Decision(
            outcome=Outcome.TRANSIENT_FAILURE,
            acknowledge=False,
            error=error,
            category=FailureCategory.TECHNICAL,
            detail=error.metric_detail,
        )

    response = dispatch_result.response
    if response is None:
        raise ValueError("dispatch_result carries neither a response nor an error")

    if response.status in SUCCESS_STATUSES:
        return Decision(outcome=Outcome.SUCCESS, acknowledge=True, status=response.status)

    rejection = BusinessError(response.message, detail=sanitize_detail(response.message))
    return Decision(
        outcome=Outcome.PERMANENT_FAILURE,
        acknowledge=True,
        failure=FailureEnvelope.for_payload(payload, rejection.message, payload.correlation_id),
        category=rejection.category,
        detail=rejection.metric_detail,
        status=response.status,
    )


def as_transient(error: BaseException) -> TransientInfraError:
    """Anything raised while dispatching is retried; keep the original as the cause."""
    if isinstance(error, TransientInfraError):
        return error
    wrapped = TransientInfraError(f"{type(error).__name__}: {error}", code=type(error).__name__)
    wrapped.__cause__ = error
    return wrapped
