"""
Import Relay - Request Mapper

Converts a decoded ImportRequestPayload into the request sent to the
remote import service.

Rules:
- A field is set only when present in the payload; absent never becomes 0 or "".
- String fields additionally need non-blank content.
- The legacy field map is set only when it has entries.
- Form answers without a field id are skipped; a missing value becomes "".

The mapping is pure: the same payload always yields a byte-identical request.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from import_relay.workers.payload import FormField, ImportRequestPayload, LegacyIndex

# Aliases are the field names of importacao_ged.proto
_REQUEST_CONFIG = ConfigDict(frozen=True, populate_by_name=True)


class LegacyIndexRecord(BaseModel):
    """`LegacyIndice` message of the import RPC."""

    model_config = _REQUEST_CONFIG

    index_id: int | None = Field(default=None, serialization_alias="id_indice")
    project_id: int | None = Field(default=None, serialization_alias="id_projeto")
    index_fields: dict[str, str] | None = Field(default=None, serialization_alias="campos")
    file: str | None = Field(default=None, serialization_alias="arquivo")
    page_count: int | None = Field(default=None, serialization_alias="npaginas")
    size: float | None = Field(default=None, serialization_alias="tamanho")
    creator_user_id: int | None = Field(default=None, serialization_alias="id_usuario_create")
    ocr: str | None = Field(default=None, serialization_alias="ocr")
    batch: str | None = Field(default=None, serialization_alias="lote")
    publication_date: str | None = Field(default=None, serialization_alias="data_publicacao")
    publication_time: str | None = Field(default=None, serialization_alias="hora_publicacao")
    extension: str | None = Field(default=None, serialization_alias="ext")
    ocr_status: int | None = Field(default=None, serialization_alias="ocr_status")
    storage: str | None = Field(default=None, serialization_alias="storage")


class FormDataItem(BaseModel):
    """`FormDataItem` message of the import RPC."""

    model_config = _REQUEST_CONFIG

    field_id: int = Field(serialization_alias="campo_id")
    value: str = Field(default="", serialization_alias="valor")


class ImportIndexRequest(BaseModel):
    """`ImportarIndiceRequest` message of the import RPC."""

    model_config = _REQUEST_CONFIG

    legacy: LegacyIndexRecord | None = Field(default=None, serialization_alias="legacy")
    cliente_id: int | None = Field(default=None, serialization_alias="cliente_id")
    departamento_id: int | None = Field(default=None, serialization_alias="departamento_id")
    projeto_id: int | None = Field(default=None, serialization_alias="projeto_id")
    formulario_id: int | None = Field(default=None, serialization_alias="formulario_id")
    lote_id: int | None = Field(default=None, serialization_alias="lote_id")
    usuario_id: int | None = Field(default=None, serialization_alias="usuario_id")
    base_mount_path: str | None = Field(default=None, serialization_alias="base_mount_path")
    correlation_id: str | None = Field(default=None, serialization_alias="correlation_id")
    form_data: tuple[FormDataItem, ...] = Field(default=(), serialization_alias="form_data")

    def to_wire(self) -> dict[str, Any]:
        """Dict keyed by proto field names; unset fields are absent."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_bytes(self) -> bytes:
        """Canonical serialized form, used for comparison and debugging."""
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


def _text(value: str | None) -> str | None:
    """Keep a string only when it has non-blank content."""
    if value is None or not value.strip():
        return None
    return value


def to_legacy_record(legacy: LegacyIndex) -> LegacyIndexRecord:
    return LegacyIndexRecord(
        index_id=legacy.index_id,
        project_id=legacy.project_id,
        index_fields=dict(legacy.index_fields) if legacy.index_fields else None,
        file=_text(legacy.file),
        page_count=legacy.page_count,
        size=legacy.size,
        creator_user_id=legacy.creator_user_id,
        ocr=_text(legacy.ocr),
        batch=_text(legacy.batch),
        publication_date=_text(legacy.publication_date),
        publication_time=_text(legacy.publication_time),
        extension=_text(legacy.extension),
        ocr_status=legacy.ocr_status,
        storage=_text(legacy.storage),
    )


def to_form_data(items: list[FormField | None] | None) -> tuple[FormDataItem, ...]:
    if not items:
        return ()
    return tuple(
        FormDataItem(field_id=item.field_id, value=item.value if item.value is not None else "")
        for item in items
        if item is not None and item.field_id is not None
    )


def to_request(payload: ImportRequestPayload) -> ImportIndexRequest:
    """
    Build the remote request for a decoded payload.

    Args:
        payload: Decoded import request.

    Returns:
        ImportIndexRequest with only the present fields set.
    """
    return ImportIndexRequest(
        legacy=to_legacy_record(payload.legacy_index) if payload.legacy_index is not None else None,
        cliente_id=payload.cliente_id,
        departamento_id=payload.departamento_id,
        projeto_id=payload.projeto_id,
        formulario_id=payload.formulario_id,
        lote_id=payload.lote_id,
        usuario_id=payload.usuario_id,
        base_mount_path=_text(payload.base_mount_path),
        correlation_id=_text(payload.correlation_id),
        form_data=to_form_data(payload.form_data),
    )
