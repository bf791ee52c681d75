"""
Tests for import_relay/workers/payload.py - inbound message decoding.
"""

from __future__ import annotations

import json

import pytest

from import_relay.core.error_taxonomy import DecodeError, FailureCategory
from import_relay.workers.payload import ImportRequestPayload, decode


def _raw(doc) -> bytes:
    return json.dumps(doc).encode("utf-8")


class TestDecodeValid:
    def test_full_payload(self):
        payload = decode(
            _raw(
                {
                    "legacy": {
                        "idIndice": 42,
                        "idProjeto": 7,
                        "campos": {"nome": "Ana", "cpf": "123"},
                        "arquivo": "doc.pdf",
                        "npaginas": 3,
                        "tamanho": 1.5,
                        "idUsuarioCreate": 9,
                        "ocr": "texto",
                        "lote": "L1",
                        "dataPublicacao": "2024-01-02",
                        "horaPublicacao": "10:00",
                        "ext": "pdf",
                        "ocrStatus": 1,
                        "storage": "s3",
                    },
                    "clienteId": 1,
                    "departamentoId": 2,
                    "projetoId": 7,
                    "formularioId": 4,
                    "loteId": 5,
                    "usuarioId": 6,
                    "formData": [{"campoId": 3, "valor": "2024"}],
                    "baseMountPath": "/mnt/ged",
                    "correlationId": "abc",
                }
            )
        )

        assert payload.index_id == 42
        assert payload.legacy_index.index_fields == {"nome": "Ana", "cpf": "123"}
        assert payload.legacy_index.page_count == 3
        assert payload.legacy_index.size == 1.5
        assert payload.legacy_index.extension == "pdf"
        assert payload.departamento_id == 2
        assert payload.form_data[0].field_id == 3
        assert payload.form_data[0].value == "2024"
        assert payload.base_mount_path == "/mnt/ged"
        assert payload.correlation_id == "abc"

    def test_empty_object_decodes_with_everything_absent(self):
        payload = decode(b"{}")

        assert payload == ImportRequestPayload()
        assert payload.legacy_index is None
        assert payload.index_id is None
        assert payload.form_data is None

    def test_unknown_fields_are_ignored(self):
        payload = decode(_raw({"clienteId": 1, "novoCampo": "x", "legacy": {"idIndice": 1, "extra": True}}))

        assert payload.cliente_id == 1
        assert payload.index_id == 1

    def test_explicit_nulls_are_absent(self):
        payload = decode(_raw({"legacy": None, "departamentoId": None, "formData": [None]}))

        assert payload.legacy_index is None
        assert payload.departamento_id is None
        assert payload.form_data == [None]

    def test_accepts_str(self):
        assert decode('{"clienteId": 5}').cliente_id == 5

    def test_numeric_string_value_in_form_data(self):
        payload = decode(_raw({"formData": [{"campoId": 1, "valor": 2024}]}))

        assert payload.form_data[0].value == "2024"


class TestDecodeInvalid:
    @pytest.mark.parametrize("raw", [None, b"", ""])
    def test_empty_message(self, raw):
        with pytest.raises(DecodeError) as exc_info:
            decode(raw)

        assert exc_info.value.reason == "empty_message"

    @pytest.mark.parametrize(
        "raw",
        [
            b"not json",
            b'{"clienteId": 1',
            b"[1, 2, 3]",
            b'"just a string"',
            b'{"clienteId": "abc"}',
            b'{"legacy": {"campos": {"a": null}}}',
            b'{"formData": {"campoId": 1}}',
            b'{"clienteId": 99999999999999999999}',
            b'{"legacy": {"idIndice": 9223372036854775808}}',
            b'{"legacy": {"npaginas": 3000000000}}',
            b'{"legacy": {"ocrStatus": -2147483649}}',
            b'{"formData": [{"campoId": 99999999999999999999}]}',
        ],
        ids=[
            "garbage",
            "truncated",
            "array",
            "string",
            "type_mismatch",
            "null_map_value",
            "object_for_list",
            "int64_overflow",
            "index_id_overflow",
            "int32_overflow",
            "int32_underflow",
            "field_id_overflow",
        ],
    )
    def test_malformed_input_raises(self, raw):
        with pytest.raises(DecodeError):
            decode(raw)

    def test_error_is_classified_as_deserialization(self):
        with pytest.raises(DecodeError) as exc_info:
            decode(b'{"clienteId": "abc"}')

        error = exc_info.value
        assert error.category is FailureCategory.DESERIALIZATION
        assert error.retryable is False
        assert "clienteId" in str(error)
        assert error.reason == "int_parsing"


class TestIntegerWidths:
    def test_bounds_are_accepted(self):
        payload = decode(
            _raw(
                {
                    "clienteId": 2**63 - 1,
                    "legacy": {"idIndice": -(2**63), "npaginas": 2**31 - 1, "idUsuarioCreate": -(2**31)},
                    "formData": [{"campoId": 2**63 - 1}],
                }
            )
        )

        assert payload.cliente_id == 2**63 - 1
        assert payload.index_id == -(2**63)
        assert payload.legacy_index.page_count == 2**31 - 1
        assert payload.legacy_index.creator_user_id == -(2**31)
        assert payload.form_data[0].field_id == 2**63 - 1

    def test_out_of_range_is_a_decode_error(self):
        with pytest.raises(DecodeError) as exc_info:
            decode(b'{"legacy": {"npaginas": 3000000000}}')

        assert exc_info.value.retryable is False
        assert exc_info.value.reason == "less_than_equal"
        assert "npaginas" in str(exc_info.value)
