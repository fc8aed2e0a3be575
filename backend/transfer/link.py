"""Duplex JSON links between a client and the relay."""

import asyncio
import json
import logging

import websockets
from websockets.exceptions import ConnectionClosed

from config import CONNECT_TIMEOUT, MAX_FRAME_SIZE, RELAY_URL
from errors import ConnectionLost
from transfer.models import decode_frame

logger = logging.getLogger(__name__)


class PeerLink:
    """One JSON object per frame, in both directions."""

    @property
    def closed(self) -> bool:
        raise NotImplementedError

    async def send_json(self, data: dict) -> None:
        raise NotImplementedError

    async def receive_json(self) -> dict:
        """Next frame. Raises ConnectionLost once the link is gone."""
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class WebSocketLink(PeerLink):
    """PeerLink over a ``websockets`` client connection.

    Sends are serialized with a lock so frames from concurrent transfers never
    interleave on the socket.
    """

    def __init__(self, connection) -> None:
        self._ws = connection
        self._send_lock = asyncio.Lock()
        self._closed = False

    @classmethod
    async def connect(
        cls, url: str = RELAY_URL, timeout: float = CONNECT_TIMEOUT
    ) -> "WebSocketLink":
        try:
            connection = await asyncio.wait_for(
                websockets.connect(
                    url,
                    max_size=MAX_FRAME_SIZE,
                    ping_interval=30,
                    ping_timeout=10,
                    close_timeout=5,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Connection timeout to relay at {url}")
            raise ConnectionError(f"Timeout connecting to {url}")
        except OSError as e:
            logger.error(f"Failed to connect to relay at {url}: {e}")
            raise ConnectionError(f"Failed to connect to {url}: {e}") from e

        logger.info(f"Connected to relay at {url}")
        return cls(connection)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_json(self, data: dict) -> None:
        if self._closed:
            raise ConnectionLost("Link is closed")
        message = json.dumps(data)
        async with self._send_lock:
            try:
                await self._ws.send(message)
            except ConnectionClosed as e:
                self._closed = True
                raise ConnectionLost(f"Relay connection closed: {e}") from e
        logger.debug(f"Sent {data.get('type')} ({len(message)} bytes)")

    async def receive_json(self) -> dict:
        if self._closed:
            raise ConnectionLost("Link is closed")
        try:
            raw = await self._ws.recv()
        except ConnectionClosed as e:
            self._closed = True
            raise ConnectionLost(f"Relay connection closed: {e}") from e
        return decode_frame(raw)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.close()
        except Exception as e:
            logger.debug(f"Error closing relay connection: {e}")
