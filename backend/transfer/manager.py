"""
Transfer Manager — drives file transfers over one relay connection.

Reads frames from a PeerLink, routes them by ``type`` to independent
sender/receiver state machines (one per transfer), and performs the
effects those machines ask for: writing frames, waiting for the init ack,
reporting progress and handing finished files to the deliver callback.
"""

import asyncio
import inspect
import io
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from config import (
    ACK_TIMEOUT,
    CHUNK_SIZE,
    COMPLETE_DISPLAY_DELAY,
    RELAY_URL,
    TRANSFER_DEADLINE_BASE,
    TRANSFER_DEADLINE_PER_CHUNK,
)
from errors import (
    AckTimeout,
    ConnectionLost,
    NoActivePeer,
    PassdropError,
    ProtocolViolation,
    RegistryError,
    TransferError,
    TransferFailed,
    error_from_code,
)
from security.integrity import digest_stream
from transfer.delivery import DirectorySink
from transfer.link import PeerLink, WebSocketLink
from transfer.models import (
    Delivery,
    ErrorMessage,
    FileChunkAck,
    FileChunkReceived,
    FileTransferInit,
    FileTransferInitReceived,
    MessageType,
    NewUserConnected,
    PasscodeSet,
    ReceiverState,
    SenderState,
    SetPasscode,
    Step,
    TransferDirection,
    TransferInfo,
    TransferReset,
    UserDisconnected,
    WireMessage,
    parse_message,
)
from transfer.receiver import ReceiverMachine
from transfer.sender import AckStrategy, SenderMachine, UnacknowledgedStreaming

logger = logging.getLogger(__name__)


@dataclass
class _Abort:
    error: Exception
    notify_peer: bool = False
    reset: bool = False


class _Aborted(Exception):
    def __init__(self, abort: _Abort) -> None:
        super().__init__(str(abort.error))
        self.abort = abort


@dataclass
class _Outbound:
    """Book-keeping for one send in progress."""
    machine: SenderMachine
    info: TransferInfo
    strategy: AckStrategy
    ack: asyncio.Future
    abort: asyncio.Future


class TransferManager:
    """Runs the transfer protocol for one client connection."""

    def __init__(
        self,
        link: PeerLink,
        passcode: str,
        deliver=None,
        *,
        ack_timeout: float = ACK_TIMEOUT,
        chunk_size: int = CHUNK_SIZE,
        display_delay: float = COMPLETE_DISPLAY_DELAY,
        deadline_base: float = TRANSFER_DEADLINE_BASE,
        deadline_per_chunk: float = TRANSFER_DEADLINE_PER_CHUNK,
        ack_strategy_factory=UnacknowledgedStreaming,
    ) -> None:
        self._link = link
        self.passcode = passcode.strip().upper()
        self._deliver = deliver if deliver is not None else DirectorySink()
        self._ack_timeout = ack_timeout
        self._chunk_size = chunk_size
        self._display_delay = display_delay
        self._deadline_base = deadline_base
        self._deadline_per_chunk = deadline_per_chunk
        self._ack_strategy_factory = ack_strategy_factory

        self._paired = asyncio.Event()
        self._pairing_settled = asyncio.Event()
        self._pairing_error: PassdropError | None = None
        self._announce_lock = asyncio.Lock()
        self._pending: _Outbound | None = None
        self._outbound: dict[str, _Outbound] = {}
        self._receivers: dict[str, tuple[ReceiverMachine, TransferInfo]] = {}
        self._incoming: asyncio.Queue = asyncio.Queue()
        self._history: list[TransferInfo] = []
        self._event_callbacks: list = []  # async fn(event_type, data)
        self._reader_task: asyncio.Task | None = None

        self._handlers = {
            MessageType.PASSCODE_SET.value: self._on_passcode_set,
            MessageType.NEW_USER_CONNECTED.value: self._on_peer_connected,
            MessageType.USER_DISCONNECTED.value: self._on_peer_disconnected,
            MessageType.FILE_TRANSFER_INIT.value: self._on_transfer_init,
            MessageType.FILE_TRANSFER_INIT_RECEIVED.value: self._on_init_ack,
            MessageType.FILE_CHUNK_RECEIVED.value: self._on_chunk,
            MessageType.FILE_CHUNK_ACK.value: self._on_chunk_ack,
            MessageType.TRANSFER_RESET.value: self._on_reset,
            MessageType.ERROR.value: self._on_error,
        }

    @classmethod
    async def connect(
        cls, passcode: str, url: str = RELAY_URL, deliver=None, **kwargs
    ) -> "TransferManager":
        """Open a relay connection, start reading and claim/join ``passcode``."""
        link = await WebSocketLink.connect(url)
        manager = cls(link, passcode, deliver, **kwargs)
        manager.start()
        await manager.set_passcode()
        return manager

    # --- Lifecycle ---

    @property
    def paired(self) -> bool:
        return self._paired.is_set()

    def start(self) -> None:
        """Start the inbound message loop in the background."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self.run())

    async def run(self) -> None:
        """Process inbound frames one at a time until the link drops."""
        while True:
            try:
                data = await self._link.receive_json()
            except ProtocolViolation as e:
                logger.warning(f"Ignoring bad frame: {e}")
                continue
            except ConnectionLost as e:
                logger.info(f"Relay connection lost: {e}")
                await self._on_connection_lost(e)
                return
            await self.handle_frame(data)

    async def close(self) -> None:
        """Abort active transfers, notify the peer and close the link."""
        if self._active_count():
            await self._abort_everything(
                ConnectionLost("Local side closed the connection"), notify_peer=True
            )
        if self._reader_task:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        await self._link.close()

    # --- Events ---

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def get_transfers(self) -> list[TransferInfo]:
        """Every transfer seen on this connection, oldest first."""
        return list(self._history)

    # --- Pairing ---

    async def set_passcode(self) -> None:
        await self._send(SetPasscode(passcode=self.passcode))

    async def wait_paired(self, timeout: float | None = None) -> None:
        """Block until a peer is connected; raises the relay's pairing error."""
        await asyncio.wait_for(self._pairing_settled.wait(), timeout)
        if self._pairing_error is not None:
            raise self._pairing_error

    # --- Sending ---

    async def send_file(self, path, media_type: str | None = None) -> TransferInfo:
        path = Path(path)
        media_type = (
            media_type
            or mimetypes.guess_type(path.name)[0]
            or "application/octet-stream"
        )
        file_size = path.stat().st_size
        with open(path, "rb") as f:
            return await self._send_stream(f, path.name, file_size, media_type)

    async def send_bytes(
        self,
        payload: bytes,
        file_name: str,
        media_type: str = "application/octet-stream",
    ) -> TransferInfo:
        return await self._send_stream(
            io.BytesIO(payload), file_name, len(payload), media_type
        )

    async def _send_stream(
        self, stream: BinaryIO, file_name: str, file_size: int, media_type: str
    ) -> TransferInfo:
        """
        Announce, wait for the init ack, then stream every chunk.

        Raises:
            NoActivePeer: nobody is paired on the passcode.
            TransferFailed: the transfer ended in ERROR (or was reset); the
                underlying error is chained.
        """
        strategy = self._ack_strategy_factory()
        machine = SenderMachine(self.passcode, self._chunk_size, strategy.window)
        sha256 = await asyncio.to_thread(digest_stream, stream, self._chunk_size)

        async with self._announce_lock:
            step = machine.announce(file_name, file_size, media_type, self.paired, sha256)
            loop = asyncio.get_running_loop()
            out = _Outbound(
                machine=machine,
                info=TransferInfo(
                    passcode=self.passcode,
                    file_name=file_name,
                    file_size=file_size,
                    media_type=media_type,
                    total_chunks=machine.total_chunks,
                    direction=TransferDirection.SENDING,
                    state=machine.state.value,
                ),
                strategy=strategy,
                ack=loop.create_future(),
                abort=loop.create_future(),
            )
            self._history.append(out.info)
            self._pending = out
            try:
                await self._apply(step, out.info)
                await self._apply(machine.announced(), out.info)
                await self._until(out.ack, out, timeout=self._ack_timeout)
            except asyncio.TimeoutError:
                await self._fail_sender(
                    out,
                    _Abort(
                        AckTimeout(
                            f"No FILE_TRANSFER_INIT_RECEIVED within {self._ack_timeout}s"
                        ),
                        notify_peer=True,
                    ),
                )
            except _Aborted as e:
                await self._fail_sender(out, e.abort)
            except PassdropError as e:
                await self._fail_sender(out, _Abort(e, notify_peer=True))
            finally:
                self._pending = None

        transfer_id = machine.transfer_id
        deadline = self._deadline_base + self._deadline_per_chunk * machine.total_chunks
        try:
            await asyncio.wait_for(self._stream(out, stream), deadline)
        except asyncio.TimeoutError:
            await self._fail_sender(
                out,
                _Abort(
                    TransferError(f"Transfer did not finish within {deadline:.0f}s"),
                    notify_peer=True,
                ),
            )
        except _Aborted as e:
            await self._fail_sender(out, e.abort)
        except PassdropError as e:
            await self._fail_sender(out, _Abort(e, notify_peer=True))
        finally:
            self._outbound.pop(transfer_id, None)

        if self._display_delay:
            await asyncio.sleep(self._display_delay)
        await self._apply(machine.finish(), out.info)
        return out.info

    async def _stream(self, out: _Outbound, stream: BinaryIO) -> None:
        machine = out.machine
        while machine.state == SenderState.STREAMING:
            await self._until(out.strategy.wait_for_slot(machine.next_chunk_number), out)
            data = await asyncio.to_thread(stream.read, self._chunk_size)
            step = await asyncio.to_thread(machine.next_chunk, data)
            self._check_abort(out)
            out.info.chunks_done = machine.next_chunk_number
            await self._apply(step, out.info)
        await self._until(out.strategy.wait_for_all(machine.total_chunks), out)

    async def _until(self, awaitable, out: _Outbound, timeout: float | None = None):
        """Await ``awaitable`` unless the transfer is aborted first."""
        task = asyncio.ensure_future(awaitable)
        try:
            done, _ = await asyncio.wait(
                {task, out.abort},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        self._check_abort(out, task)
        if task in done:
            return task.result()
        task.cancel()
        raise asyncio.TimeoutError

    @staticmethod
    def _check_abort(out: _Outbound, task: asyncio.Future | None = None) -> None:
        if out.abort.done():
            if task is not None and not task.done():
                task.cancel()
            raise _Aborted(out.abort.result())

    async def _fail_sender(self, out: _Outbound, abort: _Abort) -> None:
        transfer_id = out.machine.transfer_id
        if abort.reset:
            step = out.machine.reset()
        else:
            step = out.machine.fail(abort.error, notify_peer=abort.notify_peer)
        out.info.error_message = str(abort.error)
        await self._apply_quietly(step, out.info)
        if out.machine.state != SenderState.IDLE:
            await self._apply_quietly(out.machine.reset(), out.info)
        self._outbound.pop(transfer_id, None)
        await self._emit(
            "transfer_failed",
            {**out.info.model_dump(), "code": getattr(abort.error, "code", None)},
        )
        raise TransferFailed(transfer_id, abort.error) from abort.error

    # --- Receiving ---

    async def next_incoming(self, timeout: float | None = None) -> Delivery:
        """
        Wait for the next inbound transfer to finish.

        Raises:
            TransferFailed: the inbound transfer failed, was reset, or the
                connection dropped.
        """
        outcome = await asyncio.wait_for(self._incoming.get(), timeout)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def _finish_receiver(
        self,
        receiver: ReceiverMachine,
        info: TransferInfo,
        error: Exception | None = None,
    ) -> None:
        """
        Retire an inbound machine that reached COMPLETE or ERROR.

        ``error`` on a COMPLETE machine means the file reassembled but could
        not be delivered; the peer is told and the transfer counts as failed.
        """
        transfer_id = info.transfer_id
        self._receivers.pop(transfer_id, None)
        if receiver.state == ReceiverState.COMPLETE:
            await self._apply(receiver.finish(), info)
            if error is None:
                return
            await self._send_quietly(
                ErrorMessage(
                    message=str(error),
                    code=getattr(error, "code", PassdropError.code),
                    transfer_id=transfer_id,
                )
            )
        info.error_message = str(error)
        if receiver.state != ReceiverState.IDLE:
            await self._apply_quietly(receiver.reset(), info)
        await self._emit(
            "transfer_failed", {**info.model_dump(), "code": getattr(error, "code", None)}
        )
        failure = TransferFailed(transfer_id, error)
        failure.__cause__ = error
        self._incoming.put_nowait(failure)

    async def _deliver_file(self, delivery: Delivery, info: TransferInfo) -> Exception | None:
        """Hand a finished file to the deliver callback; returns its error, if any."""
        try:
            result = self._deliver(delivery.payload, delivery.file_name, delivery.media_type)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Deliver callback failed for '{delivery.file_name}': {e}", exc_info=True)
            return e
        await self._emit("file_delivered", info.model_dump())
        self._incoming.put_nowait(delivery)
        return None

    # --- Reset ---

    async def reset(self, transfer_id: str | None = None) -> None:
        """
        Tear down one transfer (or all of them) on both sides.

        The relay session stays open; both machines end up IDLE.
        """
        try:
            await self._send(TransferReset(transfer_id=transfer_id))
        except ConnectionLost as e:
            logger.debug(f"Could not tell peer about reset: {e}")
        await self._reset_local(transfer_id, TransferError("Transfer reset locally"))

    async def _reset_local(self, transfer_id: str | None, reason: Exception) -> None:
        for tid, (receiver, info) in list(self._receivers.items()):
            if transfer_id is None or tid == transfer_id:
                await self._apply(receiver.reset(), info)
                await self._finish_receiver(receiver, info, reason)
        for out in self._matching_outbound(transfer_id):
            self._abort(out, _Abort(reason, reset=True))

    # --- Inbound routing ---

    async def handle_frame(self, data: dict) -> None:
        """Route one decoded frame to its handler."""
        try:
            message = parse_message(data)
        except ProtocolViolation as e:
            logger.warning(f"Dropping frame: {e}")
            return
        handler = self._handlers.get(message.type)
        if handler is None:
            logger.warning(f"No handler for {message.type} on the client side")
            return
        await handler(message)

    async def _on_passcode_set(self, message: PasscodeSet) -> None:
        logger.info(f"Passcode {message.passcode} is {message.state}, waiting for peer")

    async def _on_peer_connected(self, message: NewUserConnected) -> None:
        logger.info(f"Peer connected on {self.passcode}")
        self._paired.set()
        self._pairing_settled.set()
        await self._emit("peer_connected", {"passcode": self.passcode})

    async def _on_peer_disconnected(self, message: UserDisconnected) -> None:
        logger.info(f"Peer left {self.passcode}")
        self._paired.clear()
        self._pairing_settled.clear()
        await self._abort_everything(ConnectionLost("Peer disconnected"), notify_peer=False)
        await self._emit("peer_disconnected", {"passcode": self.passcode})

    async def _on_transfer_init(self, message: FileTransferInit) -> None:
        receiver = ReceiverMachine()
        step = receiver.on_init(message)
        info = TransferInfo(
            transfer_id=receiver.transfer_id,
            passcode=self.passcode,
            file_name=receiver.file_name,
            file_size=receiver.file_size,
            media_type=receiver.media_type,
            total_chunks=receiver.total_chunks,
            direction=TransferDirection.RECEIVING,
            state=receiver.state.value,
        )
        self._history.append(info)
        self._receivers[receiver.transfer_id] = (receiver, info)
        await self._apply_receiver_step(receiver, info, step)

    async def _on_chunk(self, message: FileChunkReceived) -> None:
        entry = self._receivers.get(message.transfer_id)
        if entry is None:
            logger.warning(
                f"Chunk {message.chunk_number} for unknown transfer {message.transfer_id}"
            )
            return
        receiver, info = entry
        await self._apply_receiver_step(receiver, info, receiver.on_chunk(message))

    async def _apply_receiver_step(
        self, receiver: ReceiverMachine, info: TransferInfo, step: Step
    ) -> None:
        if step.error is None:
            info.chunks_done = receiver.received_count
        await self._apply_quietly(step, info)
        if step.delivery is not None:
            error = await self._deliver_file(step.delivery, info)
            await self._finish_receiver(receiver, info, error)
        elif step.error is not None:
            await self._finish_receiver(receiver, info, step.error)

    async def _on_init_ack(self, message: FileTransferInitReceived) -> None:
        out = self._pending
        if out is None or out.ack.done():
            logger.warning(f"Unexpected init ack for {message.transfer_id}")
            return
        step = out.machine.on_init_ack(message)
        if out.machine.state != SenderState.STREAMING:
            return
        out.info.transfer_id = message.transfer_id
        self._outbound[message.transfer_id] = out
        await self._apply(step, out.info)
        out.ack.set_result(message.transfer_id)

    async def _on_chunk_ack(self, message: FileChunkAck) -> None:
        out = self._outbound.get(message.transfer_id)
        if out is not None:
            out.strategy.on_ack(message.chunk_number)

    async def _on_reset(self, message: TransferReset) -> None:
        logger.info(f"Peer reset {message.transfer_id or 'all transfers'}")
        await self._reset_local(message.transfer_id, TransferError("Transfer reset by peer"))

    async def _on_error(self, message: ErrorMessage) -> None:
        error = error_from_code(message.code, message.message)
        logger.warning(f"Relay/peer error [{message.code}]: {message.message}")

        if isinstance(error, RegistryError):
            self._pairing_error = error
            self._pairing_settled.set()
            return
        if isinstance(error, NoActivePeer):
            self._paired.clear()

        if message.transfer_id:
            entry = self._receivers.get(message.transfer_id)
            if entry is not None:
                receiver, info = entry
                await self._apply_receiver_step(
                    receiver, info, receiver.fail(error, notify_peer=False)
                )
            for out in self._matching_outbound(message.transfer_id):
                self._abort(out, _Abort(error))
            return
        await self._abort_everything(error, notify_peer=False)

    async def _on_connection_lost(self, error: ConnectionLost) -> None:
        self._paired.clear()
        await self._abort_everything(error, notify_peer=True)
        self._incoming.put_nowait(TransferFailed(None, error))

    # --- Helpers ---

    def _active_count(self) -> int:
        return len(self._receivers) + len(self._outbound) + (1 if self._pending else 0)

    def _matching_outbound(self, transfer_id: str | None) -> list[_Outbound]:
        if transfer_id is None:
            outs = list(self._outbound.values())
            if self._pending is not None:
                outs.append(self._pending)
            return outs
        out = self._outbound.get(transfer_id)
        return [out] if out is not None else []

    @staticmethod
    def _abort(out: _Outbound, abort: _Abort) -> None:
        if not out.abort.done():
            out.abort.set_result(abort)

    async def _abort_everything(self, error: Exception, notify_peer: bool) -> None:
        for receiver, info in list(self._receivers.values()):
            await self._apply_receiver_step(
                receiver, info, receiver.fail(error, notify_peer=notify_peer)
            )
        for out in self._matching_outbound(None):
            # Written here rather than by the send task, which may only wake
            # up after the link is closed
            if notify_peer and out.machine.transfer_id is not None:
                await self._send_quietly(
                    ErrorMessage(
                        message=str(error),
                        code=getattr(error, "code", PassdropError.code),
                        transfer_id=out.machine.transfer_id,
                    )
                )
            self._abort(out, _Abort(error))

    async def _send(self, message: WireMessage) -> None:
        await self._link.send_json(message.to_wire())

    async def _send_quietly(self, message: WireMessage) -> None:
        try:
            await self._send(message)
        except ConnectionLost as e:
            logger.debug(f"Could not send {message.type}: {e}")

    async def _apply(self, step: Step, info: TransferInfo) -> None:
        """Record a step on ``info``, emit events, then write its frames."""
        state_changed = info.state != step.state.value
        info.state = step.state.value
        if step.progress is not None:
            info.progress_percent = step.progress
        if state_changed:
            await self._emit("transfer_state", info.model_dump())
        if step.progress is not None:
            await self._emit("transfer_progress", info.model_dump())
        for message in step.outbound:
            await self._send(message)

    async def _apply_quietly(self, step: Step, info: TransferInfo) -> None:
        """Like _apply, but a dead link only gets logged."""
        try:
            await self._apply(step, info)
        except ConnectionLost as e:
            logger.debug(f"Could not send {len(step.outbound)} frame(s): {e}")

