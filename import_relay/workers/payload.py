"""
Import Relay - Import Request Payload

Defines the contract for messages on the import requests topic.

Every field is optional: validation of the content is deferred to the
remote import service. Decoding only guarantees structure and types.
Unknown fields are ignored so producers can add fields ahead of the relay.

Usage:
    from import_relay.workers.payload import decode

    try:
        payload = decode(message.value())
    except DecodeError:
        # Permanent failure - acknowledge and publish, never retry
        ...
"""

from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from import_relay.core.error_taxonomy import DecodeError

_MODEL_CONFIG = ConfigDict(
    extra="ignore",
    populate_by_name=True,
    frozen=True,
    coerce_numbers_to_str=True,
)

# Widths of the remote contract: ids are int64, counters and flags int32
Int64 = Annotated[int, Field(ge=-(2**63), le=2**63 - 1)]
Int32 = Annotated[int, Field(ge=-(2**31), le=2**31 - 1)]


class LegacyIndex(BaseModel):
    """Index record exported from the legacy GED database."""

    model_config = _MODEL_CONFIG

    index_id: Int64 | None = Field(default=None, alias="idIndice")
    project_id: Int64 | None = Field(default=None, alias="idProjeto")
    index_fields: dict[str, str] | None = Field(default=None, alias="campos")
    file: str | None = Field(default=None, alias="arquivo")
    page_count: Int32 | None = Field(default=None, alias="npaginas")
    size: float | None = Field(default=None, alias="tamanho")
    creator_user_id: Int32 | None = Field(default=None, alias="idUsuarioCreate")
    ocr: str | None = None
    batch: str | None = Field(default=None, alias="lote")
    publication_date: str | None = Field(default=None, alias="dataPublicacao")
    publication_time: str | None = Field(default=None, alias="horaPublicacao")
    extension: str | None = Field(default=None, alias="ext")
    ocr_status: Int32 | None = Field(default=None, alias="ocrStatus")
    storage: str | None = None


class FormField(BaseModel):
    """One form answer attached to the imported index."""

    model_config = _MODEL_CONFIG

    field_id: Int64 | None = Field(default=None, alias="campoId")
    value: str | None = Field(default=None, alias="valor")


class ImportRequestPayload(BaseModel):
    """
    An import request as published on the requests topic.

    Example:
        {
            "legacy": {"idIndice": 42, "idProjeto": 7, "campos": {"nome": "Ana"}},
            "clienteId": 1,
            "projetoId": 7,
            "formData": [{"campoId": 3, "valor": "2024"}],
            "correlationId": "abc"
        }
    """

    model_config = _MODEL_CONFIG

    legacy_index: LegacyIndex | None = Field(default=None, alias="legacy")
    cliente_id: Int64 | None = Field(default=None, alias="clienteId")
    departamento_id: Int64 | None = Field(default=None, alias="departamentoId")
    projeto_id: Int64 | None = Field(default=None, alias="projetoId")
    formulario_id: Int64 | None = Field(default=None, alias="formularioId")
    lote_id: Int64 | None = Field(default=None, alias="loteId")
    usuario_id: Int64 | None = Field(default=None, alias="usuarioId")
    form_data: list[FormField | None] | None = Field(default=None, alias="formData")
    base_mount_path: str | None = Field(default=None, alias="baseMountPath")
    correlation_id: str | None = Field(default=None, alias="correlationId")

    @property
    def index_id(self) -> int | None:
        """Legacy index id when the payload carries one."""
        if self.legacy_index is None:
            return None
        return self.legacy_index.index_id


def decode(raw: bytes | str | None) -> ImportRequestPayload:
    """
    Parse and validate raw message bytes into an ImportRequestPayload.

    Args:
        raw: Message value as delivered by the broker.

    Returns:
        Validated ImportRequestPayload instance.

    Raises:
        DecodeError: On empty input, malformed JSON, a non-object document
            or a type mismatch. No partial result is ever returned.
    """
    if raw is None or len(raw) == 0:
        raise DecodeError("empty message", reason="empty_message")

    try:
        return ImportRequestPayload.model_validate_json(raw)
    except ValidationError as e:
        errors = e.errors()
        reason = errors[0]["type"] if errors else None
        raise DecodeError(_summarize(e), reason=reason) from e


def _summarize(error: ValidationError) -> str:
    """One-line description of the first validation problem."""
    errors = error.errors()
    if not errors:
        return str(error)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    summary = f"{location}: {message}" if location else message
    if len(errors) > 1:
        summary += f" (+{len(errors) - 1} more)"
    return summary
