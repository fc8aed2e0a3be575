"""
Sender side of a transfer.

``SenderMachine`` is a pure state machine: every operation returns a
``Step`` describing the new state and the frames to put on the wire. The
async driving (ack timeout, file reads, socket writes) lives in
``transfer.manager``.

    IDLE -> ANNOUNCED -> AWAITING_INIT_ACK -> STREAMING -> COMPLETE -> IDLE

Any in-flight state can drop to ERROR.
"""

import asyncio
import logging

from config import CHUNK_SIZE
from errors import NoActivePeer, PassdropError
from transfer.codec import encode, total_chunks
from transfer.models import (
    ErrorMessage,
    FileChunk,
    FileTransferInitReceived,
    SenderState,
    Step,
    TransferFile,
)

logger = logging.getLogger(__name__)

_IN_FLIGHT = (
    SenderState.ANNOUNCED,
    SenderState.AWAITING_INIT_ACK,
    SenderState.STREAMING,
)


def percent(done: int, total: int) -> int:
    """Integer percentage, rounding halves up."""
    if total <= 0:
        return 100
    return (200 * done + total) // (2 * total)


class SenderMachine:
    """Outbound half of one file exchange."""

    def __init__(
        self,
        passcode: str,
        chunk_size: int = CHUNK_SIZE,
        ack_window: int | None = None,
    ) -> None:
        self.passcode = passcode
        self.chunk_size = chunk_size
        self.ack_window = ack_window
        self.state = SenderState.IDLE
        self._clear()

    def _clear(self) -> None:
        self.transfer_id: str | None = None
        self.file_name = ""
        self.file_size = 0
        self.media_type = ""
        self.total_chunks = 0
        self.progress = 0
        self.error: Exception | None = None
        self._cursor = 0

    @property
    def next_chunk_number(self) -> int:
        return self._cursor

    @property
    def active(self) -> bool:
        return self.state in _IN_FLIGHT

    def _require(self, *states: SenderState) -> None:
        if self.state not in states:
            raise RuntimeError(
                f"Sender is {self.state.value}, expected one of "
                f"{', '.join(s.value for s in states)}"
            )

    def announce(
        self,
        file_name: str,
        file_size: int,
        media_type: str,
        paired: bool,
        sha256: str | None = None,
    ) -> Step:
        """IDLE -> ANNOUNCED. Raises NoActivePeer if nobody is paired."""
        self._require(SenderState.IDLE)
        if not paired:
            raise NoActivePeer(f"No peer connected on passcode {self.passcode}")

        self.file_name = file_name
        self.file_size = file_size
        self.media_type = media_type
        self.total_chunks = total_chunks(file_size, self.chunk_size)
        self.state = SenderState.ANNOUNCED
        logger.info(
            f"Announcing '{file_name}' ({file_size} bytes, "
            f"{self.total_chunks} chunks) on {self.passcode}"
        )
        return Step(
            state=self.state,
            outbound=[
                TransferFile(
                    target_passcode=self.passcode,
                    file_name=file_name,
                    file_size=file_size,
                    file_type=media_type,
                    total_chunks=self.total_chunks,
                    sha256=sha256,
                    ack_window=self.ack_window,
                )
            ],
            progress=0,
        )

    def announced(self) -> Step:
        """
        The announcement is on the wire; start waiting for the ack.

        The ack can overtake the write, in which case the machine is already
        STREAMING and this is a no-op.
        """
        if self.state == SenderState.STREAMING:
            return Step(state=self.state)
        self._require(SenderState.ANNOUNCED)
        self.state = SenderState.AWAITING_INIT_ACK
        return Step(state=self.state)

    def on_init_ack(self, message: FileTransferInitReceived) -> Step:
        if self.state not in (SenderState.ANNOUNCED, SenderState.AWAITING_INIT_ACK):
            logger.warning(
                f"Ignoring init ack {message.transfer_id} while {self.state.value}"
            )
            return Step(state=self.state)
        self.transfer_id = message.transfer_id
        self.state = SenderState.STREAMING
        logger.info(f"Transfer {self.transfer_id} acknowledged, streaming")
        return Step(state=self.state)

    def next_chunk(self, data: bytes) -> Step:
        """Encode the next slice and advance the cursor."""
        self._require(SenderState.STREAMING)
        if len(data) > self.chunk_size:
            raise ValueError(
                f"Slice of {len(data)} bytes exceeds chunk size {self.chunk_size}"
            )
        if self._cursor >= self.total_chunks:
            raise ValueError("All chunks have already been emitted")

        message = FileChunk(
            target_passcode=self.passcode,
            transfer_id=self.transfer_id,
            chunk_number=self._cursor,
            chunk_data=encode(data),
        )
        self._cursor += 1
        self.progress = percent(self._cursor, self.total_chunks)
        if self._cursor == self.total_chunks:
            self.state = SenderState.COMPLETE
            logger.info(f"Transfer {self.transfer_id}: all {self.total_chunks} chunks sent")
        return Step(state=self.state, outbound=[message], progress=self.progress)

    def finish(self) -> Step:
        """COMPLETE -> IDLE."""
        self._require(SenderState.COMPLETE)
        self.state = SenderState.IDLE
        self._clear()
        return Step(state=self.state)

    def fail(self, error: Exception, notify_peer: bool = True) -> Step:
        """Move an in-flight transfer to ERROR and drop its cursor."""
        if not self.active:
            return Step(state=self.state)
        logger.warning(f"Send of '{self.file_name}' failed: {error}")
        self.state = SenderState.ERROR
        self.error = error
        self._cursor = 0
        outbound = []
        # An ERROR without a transferId would abort every transfer on the peer
        if notify_peer and self.transfer_id is not None:
            outbound.append(
                ErrorMessage(
                    message=str(error),
                    code=getattr(error, "code", PassdropError.code),
                    transfer_id=self.transfer_id,
                )
            )
        return Step(state=self.state, outbound=outbound, error=error)

    def reset(self) -> Step:
        """Back to IDLE from anywhere, discarding the transfer."""
        self.state = SenderState.IDLE
        self._clear()
        return Step(state=self.state)


# --- Acknowledgment strategies ---

class AckStrategy:
    """Decides when the next chunk may be emitted."""

    window: int | None = None

    async def wait_for_slot(self, chunk_number: int) -> None:
        return None

    async def wait_for_all(self, total_chunks: int) -> None:
        """Block until every chunk of the transfer has been acknowledged."""
        return None

    def on_ack(self, chunk_number: int) -> None:
        return None


class UnacknowledgedStreaming(AckStrategy):
    """Send every chunk as soon as the previous one is written."""


class WindowedAck(AckStrategy):
    """
    Allow at most ``window`` chunks in flight without a FILE_CHUNK_ACK.

    The window is announced in TRANSFER_FILE so the receiver knows to ack.
    The receiver only acks the final chunk once the file reassembled, so
    ``wait_for_all`` doubles as a delivery confirmation.
    """

    def __init__(self, window: int) -> None:
        if window < 1:
            raise ValueError("window must be >= 1")
        self.window = window
        self._highest_acked = -1
        self._advanced = asyncio.Event()

    async def wait_for_slot(self, chunk_number: int) -> None:
        while chunk_number - self._highest_acked > self.window:
            self._advanced.clear()
            await self._advanced.wait()

    async def wait_for_all(self, total_chunks: int) -> None:
        await self.wait_for_slot(total_chunks - 1 + self.window)

    def on_ack(self, chunk_number: int) -> None:
        if chunk_number > self._highest_acked:
            self._highest_acked = chunk_number
            self._advanced.set()
