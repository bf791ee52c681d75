"""
Import Relay - Import Gateway

Synchronous client for the remote GED import service.

The gateway has exactly two outcomes the consumer cares about:
- It returns an ImportResponse. A status of ERROR is a business failure
  reported *by* the remote service.
- It raises. Every transport failure (unreachable, deadline exceeded,
  remote unavailable) surfaces as TransientInfraError.

Retries are NOT done here: the runner retries the whole message so that
acknowledgment and retry stay in one place.

Usage:
    from import_relay.workers.gateway import GrpcImportGateway, create_channel

    channel = create_channel(settings)
    gateway = GrpcImportGateway(channel, timeout=settings.IMPORT_GRPC_TIMEOUT_SECONDS)
    response = gateway.call(to_request(payload))
"""

from __future__ import annotations

import functools
import logging
import sys
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import grpc
from google.protobuf import json_format

from import_relay.core.error_taxonomy import TransientInfraError
from import_relay.workers.request_mapper import ImportIndexRequest

if TYPE_CHECKING:
    from import_relay.core.config import Settings

logger = logging.getLogger(__name__)

PROTO_DIR = Path(__file__).resolve().parent / "protos"
PROTO_FILE = "importacao_ged.proto"

# Channel options: client-side round robin over resolved addresses, keepalive pings
CHANNEL_OPTIONS = (
    ("grpc.lb_policy_name", "round_robin"),
    ("grpc.keepalive_time_ms", 30_000),
    ("grpc.keepalive_timeout_ms", 10_000),
)


class ImportStatus(IntEnum):
    """Closed set of import outcomes reported by the remote service."""

    IMPORTED = 1
    ALREADY_EXISTS = 2
    ERROR = 3


@dataclass(frozen=True)
class ImportResponse:
    """Typed response of one import call."""

    status: ImportStatus
    message: str = ""


class ImportGateway(Protocol):
    """Interface consumed by the import consumer."""

    def call(self, request: ImportIndexRequest) -> ImportResponse: ...


@functools.lru_cache(maxsize=1)
def load_protos() -> tuple[Any, Any]:
    """
    Compile importacao_ged.proto at runtime.

    Returns:
        (messages module, services module) as produced by grpc.protos_and_services.
    """
    proto_dir = str(PROTO_DIR)
    if proto_dir not in sys.path:
        # protos_and_services resolves .proto paths against sys.path
        sys.path.append(proto_dir)
    return grpc.protos_and_services(PROTO_FILE)


def create_channel(settings: Settings) -> grpc.Channel:
    """Build the channel to the import service. Plaintext, as deployed."""
    logger.info("Opening gRPC channel target=%s", settings.grpc_target)
    return grpc.insecure_channel(settings.grpc_target, options=list(CHANNEL_OPTIONS))


def to_import_response(response: Any) -> ImportResponse:
    """
    Convert an ImportarIndiceResponse message.

    A status outside the known enum (including the unspecified zero value)
    is reported as ERROR so it is never mistaken for a success.
    """
    try:
        status = ImportStatus(int(response.status))
    except ValueError:
        message = response.mensagem or f"Unknown import status {int(response.status)}"
        return ImportResponse(status=ImportStatus.ERROR, message=message)
    return ImportResponse(status=status, message=response.mensagem)


class GrpcImportGateway:
    """
    Blocking gRPC implementation of ImportGateway.

    The stub is thread-safe and shared by every worker; each call carries
    its own deadline so a hung server can never block a worker forever.
    """

    def __init__(
        self,
        channel: grpc.Channel | None,
        *,
        timeout: float,
        stub: Any | None = None,
    ):
        """
        Args:
            channel: Channel from create_channel(). Ignored when stub is given.
            timeout: Per-call deadline in seconds.
            stub: Pre-built stub (tests inject fakes here).
        """
        protos, services = load_protos()
        self._protos = protos
        if stub is None:
            if channel is None:
                raise ValueError("GrpcImportGateway needs a channel or a stub")
            stub = services.ImportacaoGedServiceStub(channel)
        self._stub = stub
        self.timeout = timeout

    def build_message(self, request: ImportIndexRequest) -> Any:
        """Protobuf ImportarIndiceRequest for a mapped request."""
        return json_format.ParseDict(request.to_wire(), self._protos.ImportarIndiceRequest())

    def call(self, request: ImportIndexRequest) -> ImportResponse:
        message = self.build_message(request)
        try:
            response = self._stub.ImportarIndice(message, timeout=self.timeout)
        except grpc.RpcError as e:
            code = e.code() if callable(getattr(e, "code", None)) else None
            details = e.details() if callable(getattr(e, "details", None)) else str(e)
            code_name = code.name if code is not None else None
            raise TransientInfraError(
                f"ImportarIndice failed: {code_name or 'UNKNOWN'}: {details}",
                code=code_name,
            ) from e
        return to_import_response(response)
