"""
Tests for the receiver state machine.
"""

from errors import ChecksumMismatch, CodecError, ProtocolViolation, SizeMismatch
from security.integrity import digest_bytes
from transfer.codec import encode
from transfer.models import (
    ErrorMessage,
    FileChunkAck,
    FileChunkReceived,
    FileTransferInit,
    FileTransferInitReceived,
    ReceiverState,
)
from transfer.receiver import ReceiverMachine


def _init(data: bytes, chunk_size: int = 4, **extra) -> FileTransferInit:
    return FileTransferInit(
        file_name="notes.txt",
        file_size=len(data),
        file_type="text/plain",
        total_chunks=max(1, -(-len(data) // chunk_size)),
        transfer_id="t-1",
        **extra,
    )


def _chunks(data: bytes, chunk_size: int = 4, transfer_id: str = "t-1"):
    pieces = [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)] or [b""]
    return [
        FileChunkReceived(transfer_id=transfer_id, chunk_number=n, chunk_data=encode(p))
        for n, p in enumerate(pieces)
    ]


class TestInit:

    def test_adopts_proposed_transfer_id(self):
        machine = ReceiverMachine()
        step = machine.on_init(_init(b"abcdefgh"))
        assert machine.state == ReceiverState.INITIATED
        assert step.outbound == [FileTransferInitReceived(transfer_id="t-1")]
        assert step.progress == 0

    def test_mints_transfer_id_when_missing(self):
        machine = ReceiverMachine()
        message = _init(b"abc").model_copy(update={"transfer_id": None})
        step = machine.on_init(message)
        assert machine.transfer_id
        assert step.outbound[0].transfer_id == machine.transfer_id

    def test_zero_chunk_announcement_completes_immediately(self):
        machine = ReceiverMachine()
        message = _init(b"").model_copy(update={"total_chunks": 0})
        step = machine.on_init(message)
        assert step.state == ReceiverState.COMPLETE
        assert step.delivery.payload == b""
        assert isinstance(step.outbound[0], FileTransferInitReceived)


class TestChunks:

    def test_in_order_delivery(self):
        data = b"0123456789"
        machine = ReceiverMachine()
        machine.on_init(_init(data))
        steps = [machine.on_chunk(c) for c in _chunks(data)]

        assert [s.progress for s in steps] == [33, 67, 100]
        assert steps[0].state == ReceiverState.RECEIVING
        delivery = steps[-1].delivery
        assert delivery.payload == data
        assert delivery.file_name == "notes.txt"
        assert delivery.media_type == "text/plain"
        assert machine.state == ReceiverState.COMPLETE
        assert machine.finish().state == ReceiverState.IDLE

    def test_out_of_order_chunks_are_placed_by_number(self):
        data = b"0123456789"
        machine = ReceiverMachine()
        machine.on_init(_init(data))
        chunks = _chunks(data)
        machine.on_chunk(chunks[2])
        machine.on_chunk(chunks[0])
        step = machine.on_chunk(chunks[1])
        assert step.delivery.payload == data

    def test_zero_byte_file_single_empty_chunk(self):
        machine = ReceiverMachine()
        machine.on_init(_init(b""))
        step = machine.on_chunk(_chunks(b"")[0])
        assert step.delivery.payload == b""

    def test_duplicate_chunk_ignored(self):
        data = b"0123456789"
        machine = ReceiverMachine()
        machine.on_init(_init(data))
        first = _chunks(data)[0]
        machine.on_chunk(first)
        step = machine.on_chunk(first)
        assert step.outbound == []
        assert step.progress == 33
        assert machine.received_count == 1

    def test_out_of_range_chunk_fails(self):
        machine = ReceiverMachine()
        machine.on_init(_init(b"abcd"))
        step = machine.on_chunk(
            FileChunkReceived(transfer_id="t-1", chunk_number=5, chunk_data="")
        )
        assert step.state == ReceiverState.ERROR
        assert isinstance(step.error, ProtocolViolation)
        [message] = step.outbound
        assert isinstance(message, ErrorMessage)
        assert message.code == "PROTOCOL_VIOLATION"
        assert message.transfer_id == "t-1"

    def test_foreign_transfer_id_fails(self):
        machine = ReceiverMachine()
        machine.on_init(_init(b"abcd"))
        step = machine.on_chunk(_chunks(b"abcd", transfer_id="other")[0])
        assert isinstance(step.error, ProtocolViolation)

    def test_chunk_while_idle_is_dropped(self):
        machine = ReceiverMachine()
        step = machine.on_chunk(_chunks(b"abcd")[0])
        assert step.state == ReceiverState.IDLE
        assert step.outbound == []

    def test_window_triggers_acks(self):
        data = b"abcdefgh"
        machine = ReceiverMachine()
        machine.on_init(_init(data, ack_window=2))
        step = machine.on_chunk(_chunks(data)[0])
        assert step.outbound == [FileChunkAck(transfer_id="t-1", chunk_number=0)]


class TestValidation:

    def test_size_mismatch_fails_without_delivery(self):
        machine = ReceiverMachine()
        machine.on_init(_init(b"abcd").model_copy(update={"file_size": 5}))
        step = machine.on_chunk(_chunks(b"abcd")[0])
        assert step.state == ReceiverState.ERROR
        assert isinstance(step.error, SizeMismatch)
        assert step.delivery is None

    def test_checksum_mismatch_fails(self):
        data = b"abcd"
        machine = ReceiverMachine()
        machine.on_init(_init(data, sha256=digest_bytes(b"dcba")))
        step = machine.on_chunk(_chunks(data)[0])
        assert isinstance(step.error, ChecksumMismatch)
        assert step.outbound[-1].code == "CHECKSUM_MISMATCH"

    def test_reset_discards_partial_buffer(self):
        data = b"abcdefgh"
        machine = ReceiverMachine()
        machine.on_init(_init(data))
        machine.on_chunk(_chunks(data)[0])
        assert machine.reset().state == ReceiverState.IDLE
        assert machine.received_count == 0

    def test_failed_reassembly_withholds_the_final_ack(self):
        data = b"abcdefgh"
        machine = ReceiverMachine()
        machine.on_init(_init(data, ack_window=2))
        first, second = _chunks(data)
        machine.on_chunk(first)
        step = machine.on_chunk(second.model_copy(update={"chunk_data": "@@@@"}))
        assert isinstance(step.error, CodecError)
        [message] = step.outbound
        assert isinstance(message, ErrorMessage)
        assert message.code == "CODEC_ERROR"
        assert message.transfer_id == "t-1"
