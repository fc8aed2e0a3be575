"""WebSocket relay: pairs connections by passcode and forwards frames."""

import asyncio
import json
import logging
import uuid

from fastapi import WebSocket

from errors import NoActivePeer, ProtocolViolation, RegistryError
from pairing.models import SessionState
from pairing.registry import SessionRegistry
from transfer.models import ErrorMessage, MessageType, PasscodeSet, SetPasscode

logger = logging.getLogger(__name__)

# Frames only the relay may originate
_RELAY_ONLY = {
    MessageType.PASSCODE_SET.value,
    MessageType.NEW_USER_CONNECTED.value,
    MessageType.USER_DISCONNECTED.value,
    MessageType.FILE_TRANSFER_INIT.value,
    MessageType.FILE_CHUNK_RECEIVED.value,
}

# Frames whose targetPasscode must match the sender's own session
_TARGETED = {MessageType.TRANSFER_FILE.value, MessageType.FILE_CHUNK.value}


class RelayConnection:
    """One client socket. Sends are serialized per connection."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.id = uuid.uuid4().hex[:8]
        self._send_lock = asyncio.Lock()

    async def send_json(self, data: dict) -> None:
        message = json.dumps(data)
        async with self._send_lock:
            await self.websocket.send_text(message)


class RelayHub:
    """Routes client frames: pairing to the registry, the rest to the peer."""

    def __init__(self, registry: SessionRegistry) -> None:
        self._registry = registry
        self._connections: set[RelayConnection] = set()
        self._lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> RelayConnection:
        await websocket.accept()
        conn = RelayConnection(websocket)
        async with self._lock:
            self._connections.add(conn)
        logger.info(f"Relay client {conn.id} connected. Total: {len(self._connections)}")
        return conn

    async def disconnect(self, conn) -> None:
        async with self._lock:
            self._connections.discard(conn)
        passcode = await self._registry.leave(conn)
        logger.info(
            f"Relay client {getattr(conn, 'id', '?')} disconnected"
            f"{f' from {passcode}' if passcode else ''}. Total: {len(self._connections)}"
        )

    async def handle_frame(self, conn, data: dict) -> None:
        """Process one decoded frame from ``conn``."""
        kind = data.get("type")
        if kind == MessageType.SET_PASSCODE.value:
            await self._set_passcode(conn, data)
            return
        if kind in _RELAY_ONLY or not isinstance(kind, str):
            await self._reply_error(conn, ProtocolViolation(f"Clients may not send {kind!r} frames"))
            return

        peer = self._registry.peer_of(conn)
        if peer is None:
            await self._reply_error(
                conn, NoActivePeer("No peer connected on this passcode"), data
            )
            return

        if kind in _TARGETED:
            own = self._registry.passcode_of(conn)
            if data.get("targetPasscode") != own:
                await self._reply_error(
                    conn,
                    ProtocolViolation(f"targetPasscode does not match session {own}"),
                    data,
                )
                return

        if kind == MessageType.TRANSFER_FILE.value:
            forwarded = {
                **data,
                "type": MessageType.FILE_TRANSFER_INIT.value,
                "transferId": data.get("transferId") or uuid.uuid4().hex,
            }
        elif kind == MessageType.FILE_CHUNK.value:
            forwarded = {**data, "type": MessageType.FILE_CHUNK_RECEIVED.value}
        else:
            forwarded = data

        try:
            await peer.send_json(forwarded)
        except Exception as e:
            logger.warning(f"Forwarding {kind} failed: {e}")

    async def _set_passcode(self, conn, data: dict) -> None:
        try:
            request = SetPasscode.model_validate(data)
        except ValueError:
            await self._reply_error(conn, ProtocolViolation("SET_PASSCODE needs a passcode"))
            return
        passcode = request.passcode.strip().upper()
        try:
            handle = await self._registry.set_passcode(passcode, conn)
        except RegistryError as e:
            logger.info(f"SET_PASSCODE {passcode} rejected: {e.code}")
            await self._reply_error(conn, e)
            return
        if handle.state == SessionState.WAITING:
            await conn.send_json(
                PasscodeSet(passcode=passcode, state=handle.state.value).to_wire()
            )

    @staticmethod
    async def _reply_error(conn, error: Exception, data: dict | None = None) -> None:
        transfer_id = (data or {}).get("transferId")
        message = ErrorMessage(
            message=str(error),
            code=getattr(error, "code", None),
            transfer_id=transfer_id if isinstance(transfer_id, str) else None,
        )
        try:
            await conn.send_json(message.to_wire())
        except Exception as e:
            logger.debug(f"Could not report error to client: {e}")
