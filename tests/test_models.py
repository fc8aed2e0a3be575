"""
Tests for wire message parsing and the error taxonomy.
"""

import pytest

from errors import (
    AckTimeout,
    PasscodeFull,
    ProtocolViolation,
    RegistryError,
    TransferError,
    error_from_code,
)
from transfer.models import (
    ErrorMessage,
    FileChunkReceived,
    FileTransferInit,
    decode_frame,
    parse_message,
)


class TestParseMessage:

    def test_discriminates_on_type(self):
        message = parse_message(
            {
                "type": "FILE_CHUNK_RECEIVED",
                "transferId": "t-1",
                "chunkNumber": 2,
                "chunkData": "YWJj",
            }
        )
        assert isinstance(message, FileChunkReceived)
        assert message.chunk_number == 2

    def test_unknown_fields_are_ignored(self):
        message = parse_message(
            {
                "type": "FILE_TRANSFER_INIT",
                "fileName": "a.txt",
                "fileSize": 1,
                "fileType": "text/plain",
                "totalChunks": 1,
                "clientVersion": "web-2",
            }
        )
        assert isinstance(message, FileTransferInit)
        assert message.transfer_id is None

    def test_unknown_type(self):
        with pytest.raises(ProtocolViolation):
            parse_message({"type": "HELLO"})

    def test_negative_chunk_number(self):
        with pytest.raises(ProtocolViolation):
            parse_message(
                {"type": "FILE_CHUNK_RECEIVED", "transferId": "t", "chunkNumber": -1, "chunkData": ""}
            )

    def test_to_wire_uses_camel_case_and_drops_nones(self):
        assert ErrorMessage(message="boom", code="ACK_TIMEOUT").to_wire() == {
            "type": "ERROR",
            "message": "boom",
            "code": "ACK_TIMEOUT",
        }


class TestDecodeFrame:

    def test_object(self):
        assert decode_frame('{"type": "ERROR", "message": "x"}')["type"] == "ERROR"

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '"text"'])
    def test_rejects_non_objects(self, raw):
        with pytest.raises(ProtocolViolation):
            decode_frame(raw)


class TestErrorFromCode:

    def test_known_code(self):
        error = error_from_code("PASSCODE_FULL", "full")
        assert isinstance(error, PasscodeFull)
        assert isinstance(error, RegistryError)
        assert str(error) == "full"

    def test_transfer_code(self):
        assert isinstance(error_from_code("ACK_TIMEOUT", "late"), AckTimeout)

    @pytest.mark.parametrize("code", [None, "", "SOMETHING_NEW"])
    def test_unknown_code_falls_back(self, code):
        error = error_from_code(code, "?")
        assert type(error) is TransferError
