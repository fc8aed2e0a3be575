"""
Receiver side of a transfer.

Chunks are stored by ``chunkNumber`` rather than arrival order, so the
transfer only completes once every index ``0..totalChunks-1`` is present.
Decoding is deferred to the reassembler.
"""

import logging
import uuid

from errors import (
    ChecksumMismatch,
    CodecError,
    PassdropError,
    ProtocolViolation,
    SizeMismatch,
)
from transfer.models import (
    Delivery,
    ErrorMessage,
    FileChunkAck,
    FileChunkReceived,
    FileTransferInit,
    FileTransferInitReceived,
    ReceiverState,
    Step,
)
from transfer.reassembler import reassemble
from transfer.sender import percent

logger = logging.getLogger(__name__)

_IN_FLIGHT = (ReceiverState.INITIATED, ReceiverState.RECEIVING)


class ReceiverMachine:
    """Inbound half of one file exchange."""

    def __init__(self) -> None:
        self.state = ReceiverState.IDLE
        self._clear()

    def _clear(self) -> None:
        self.transfer_id: str | None = None
        self.file_name = ""
        self.file_size = 0
        self.media_type = ""
        self.total_chunks = 0
        self.sha256: str | None = None
        self.ack_window: int | None = None
        self.progress = 0
        self.error: Exception | None = None
        self._chunks: dict[int, str] = {}

    @property
    def received_count(self) -> int:
        return len(self._chunks)

    @property
    def active(self) -> bool:
        return self.state in _IN_FLIGHT

    def on_init(self, message: FileTransferInit) -> Step:
        """IDLE -> INITIATED; answers with the assigned transfer id."""
        if self.state != ReceiverState.IDLE:
            raise RuntimeError(f"Receiver is {self.state.value}, expected idle")

        self.transfer_id = message.transfer_id or uuid.uuid4().hex
        self.file_name = message.file_name
        self.file_size = message.file_size
        self.media_type = message.file_type
        self.total_chunks = message.total_chunks
        self.sha256 = message.sha256
        self.ack_window = message.ack_window
        self._chunks = {}
        self.progress = 0
        self.state = ReceiverState.INITIATED
        logger.info(
            f"Incoming '{self.file_name}' ({self.file_size} bytes, "
            f"{self.total_chunks} chunks) as {self.transfer_id}"
        )

        outbound = [FileTransferInitReceived(transfer_id=self.transfer_id)]
        if self.total_chunks == 0:
            # Peers using a strict ceil() announce empty files with no chunks
            return self._complete(outbound)
        return Step(state=self.state, outbound=outbound, progress=0)

    def on_chunk(self, message: FileChunkReceived) -> Step:
        if not self.active:
            logger.warning(
                f"Dropping chunk {message.chunk_number} of {message.transfer_id} "
                f"while {self.state.value}"
            )
            return Step(state=self.state)
        if message.transfer_id != self.transfer_id:
            return self.fail(
                ProtocolViolation(
                    f"Chunk for {message.transfer_id} arrived on {self.transfer_id}"
                )
            )

        number = message.chunk_number
        if number >= self.total_chunks:
            return self.fail(
                ProtocolViolation(
                    f"Chunk {number} out of range for {self.total_chunks} chunks"
                )
            )
        if number in self._chunks:
            logger.warning(f"Duplicate chunk {number} for {self.transfer_id}, ignored")
            return Step(state=self.state, progress=self.progress)

        self._chunks[number] = message.chunk_data
        self.state = ReceiverState.RECEIVING
        self.progress = percent(len(self._chunks), self.total_chunks)

        outbound = []
        if self.ack_window:
            outbound.append(
                FileChunkAck(transfer_id=self.transfer_id, chunk_number=number)
            )
        if len(self._chunks) == self.total_chunks:
            return self._complete(outbound)
        return Step(state=self.state, outbound=outbound, progress=self.progress)

    def _complete(self, outbound: list) -> Step:
        ordered = [self._chunks[i] for i in range(self.total_chunks)]
        try:
            result = reassemble(ordered, self.media_type, self.file_size, self.sha256)
        except (CodecError, SizeMismatch, ChecksumMismatch) as e:
            # The final chunk stays unacknowledged; the peer gets ERROR instead
            return self.fail(e)

        self._chunks = {}
        self.progress = 100
        self.state = ReceiverState.COMPLETE
        logger.info(f"Transfer {self.transfer_id} complete: {len(result.payload)} bytes")
        return Step(
            state=self.state,
            outbound=outbound,
            progress=100,
            delivery=Delivery(
                transfer_id=self.transfer_id,
                file_name=self.file_name,
                media_type=result.media_type,
                payload=result.payload,
            ),
        )

    def finish(self) -> Step:
        """COMPLETE -> IDLE once the delivery has been handed off."""
        if self.state != ReceiverState.COMPLETE:
            raise RuntimeError(f"Receiver is {self.state.value}, expected complete")
        self.state = ReceiverState.IDLE
        self._clear()
        return Step(state=self.state)

    def fail(self, error: Exception, notify_peer: bool = True) -> Step:
        """Move an in-flight transfer to ERROR and discard the partial buffer."""
        if not self.active:
            return Step(state=self.state)
        logger.warning(f"Receive of '{self.file_name}' failed: {error}")
        self.state = ReceiverState.ERROR
        self.error = error
        self._chunks = {}
        outbound = []
        if notify_peer:
            outbound.append(
                ErrorMessage(
                    message=str(error),
                    code=getattr(error, "code", PassdropError.code),
                    transfer_id=self.transfer_id,
                )
            )
        return Step(state=self.state, outbound=outbound, error=error)

    def reset(self) -> Step:
        self.state = ReceiverState.IDLE
        self._clear()
        return Step(state=self.state)
