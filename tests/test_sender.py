"""
Tests for the sender state machine and acknowledgment strategies.
"""

import asyncio

import pytest

from errors import AckTimeout, NoActivePeer
from transfer.codec import decode
from transfer.models import (
    ErrorMessage,
    FileChunk,
    FileTransferInitReceived,
    SenderState,
    TransferFile,
)
from transfer.sender import SenderMachine, UnacknowledgedStreaming, WindowedAck, percent


def _streaming(data: bytes, chunk_size: int = 4) -> SenderMachine:
    machine = SenderMachine("ABC234", chunk_size=chunk_size)
    machine.announce("notes.txt", len(data), "text/plain", paired=True)
    machine.announced()
    machine.on_init_ack(FileTransferInitReceived(transfer_id="t-1"))
    return machine


class TestPercent:

    @pytest.mark.parametrize(
        "done,total,expected",
        [(0, 3, 0), (1, 3, 33), (2, 3, 67), (3, 3, 100), (1, 2, 50), (1, 8, 13), (0, 0, 100)],
    )
    def test_rounds_half_up(self, done, total, expected):
        assert percent(done, total) == expected


class TestAnnounce:

    def test_requires_a_peer(self):
        machine = SenderMachine("ABC234")
        with pytest.raises(NoActivePeer):
            machine.announce("a.bin", 10, "application/octet-stream", paired=False)
        assert machine.state == SenderState.IDLE

    def test_emits_transfer_file(self):
        machine = SenderMachine("ABC234", chunk_size=1024 * 1024)
        step = machine.announce(
            "photo.png", int(2.5 * 1024 * 1024), "image/png", paired=True, sha256="ab" * 32
        )
        assert step.state == SenderState.ANNOUNCED
        assert step.progress == 0
        [message] = step.outbound
        assert isinstance(message, TransferFile)
        wire = message.to_wire()
        assert wire["type"] == "TRANSFER_FILE"
        assert wire["targetPasscode"] == "ABC234"
        assert wire["fileName"] == "photo.png"
        assert wire["fileType"] == "image/png"
        assert wire["totalChunks"] == 3
        assert "ackWindow" not in wire

    def test_zero_byte_file_announces_one_chunk(self):
        machine = SenderMachine("ABC234")
        step = machine.announce("empty.txt", 0, "text/plain", paired=True)
        assert step.outbound[0].total_chunks == 1


class TestStreaming:

    def test_full_send(self):
        data = b"0123456789"
        machine = _streaming(data)
        assert machine.state == SenderState.STREAMING
        assert machine.transfer_id == "t-1"

        progress = []
        sent = b""
        for i in range(3):
            step = machine.next_chunk(data[i * 4:(i + 1) * 4])
            [chunk] = step.outbound
            assert isinstance(chunk, FileChunk)
            assert chunk.chunk_number == i
            assert chunk.transfer_id == "t-1"
            sent += decode(chunk.chunk_data)
            progress.append(step.progress)

        assert sent == data
        assert progress == [33, 67, 100]
        assert machine.state == SenderState.COMPLETE
        assert machine.finish().state == SenderState.IDLE
        assert machine.transfer_id is None

    def test_no_chunks_after_the_last(self):
        machine = _streaming(b"abcd")
        machine.next_chunk(b"abcd")
        with pytest.raises(RuntimeError):
            machine.next_chunk(b"")

    def test_oversized_slice_rejected(self):
        machine = _streaming(b"abcdefgh")
        with pytest.raises(ValueError):
            machine.next_chunk(b"abcdefgh")

    def test_announced_after_early_init_ack_keeps_streaming(self):
        machine = SenderMachine("ABC234", chunk_size=4)
        machine.announce("notes.txt", 8, "text/plain", paired=True)
        machine.on_init_ack(FileTransferInitReceived(transfer_id="t-1"))
        step = machine.announced()
        assert step.state == SenderState.STREAMING
        assert machine.transfer_id == "t-1"
        assert machine.next_chunk(b"abcd").outbound[0].chunk_number == 0

    def test_init_ack_ignored_when_idle(self):
        machine = SenderMachine("ABC234")
        step = machine.on_init_ack(FileTransferInitReceived(transfer_id="stray"))
        assert step.state == SenderState.IDLE
        assert machine.transfer_id is None


class TestFailure:

    def test_fail_notifies_peer_and_drops_cursor(self):
        machine = _streaming(b"abcdefgh")
        machine.next_chunk(b"abcd")
        step = machine.fail(AckTimeout("too slow"))
        assert step.state == SenderState.ERROR
        assert isinstance(step.error, AckTimeout)
        [message] = step.outbound
        assert isinstance(message, ErrorMessage)
        assert message.code == "ACK_TIMEOUT"
        assert message.transfer_id == "t-1"
        assert machine.next_chunk_number == 0

    def test_fail_without_notify(self):
        machine = _streaming(b"abcd")
        assert machine.fail(AckTimeout("x"), notify_peer=False).outbound == []

    def test_fail_before_init_ack_stays_silent(self):
        machine = SenderMachine("ABC234")
        machine.announce("a.bin", 10, "application/octet-stream", paired=True)
        machine.announced()
        step = machine.fail(AckTimeout("no ack"))
        assert step.state == SenderState.ERROR
        assert step.outbound == []

    def test_fail_when_idle_is_a_no_op(self):
        machine = SenderMachine("ABC234")
        step = machine.fail(AckTimeout("x"))
        assert step.state == SenderState.IDLE
        assert step.outbound == []

    def test_reset_returns_to_idle(self):
        machine = _streaming(b"abcd")
        assert machine.reset().state == SenderState.IDLE
        assert not machine.active


class TestAckStrategies:

    async def test_unacknowledged_never_waits(self):
        strategy = UnacknowledgedStreaming()
        assert strategy.window is None
        await asyncio.wait_for(strategy.wait_for_slot(1000), timeout=0.1)

    async def test_window_blocks_until_acked(self):
        strategy = WindowedAck(2)
        await strategy.wait_for_slot(0)
        await strategy.wait_for_slot(1)

        waiter = asyncio.ensure_future(strategy.wait_for_slot(2))
        await asyncio.sleep(0.01)
        assert not waiter.done()

        strategy.on_ack(0)
        await asyncio.wait_for(waiter, timeout=0.5)

    def test_window_must_be_positive(self):
        with pytest.raises(ValueError):
            WindowedAck(0)

    async def test_window_drain_waits_for_the_final_ack(self):
        strategy = WindowedAck(2)
        strategy.on_ack(1)

        drain = asyncio.ensure_future(strategy.wait_for_all(3))
        await asyncio.sleep(0.01)
        assert not drain.done()

        strategy.on_ack(2)
        await asyncio.wait_for(drain, timeout=0.5)
        await asyncio.wait_for(UnacknowledgedStreaming().wait_for_all(3), timeout=0.1)
