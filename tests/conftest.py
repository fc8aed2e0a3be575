"""
Shared pytest fixtures for Passdrop tests.

Provides:
- In-memory PeerLink wired through a real RelayHub/SessionRegistry
- Paired TransferManager fixtures with a collecting deliver callback
- A fake relay-side connection for registry tests
"""

import asyncio
import json
import sys
from pathlib import Path

import pytest

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from api.websocket import RelayHub
from errors import ConnectionLost
from pairing.registry import SessionRegistry
from transfer.link import PeerLink
from transfer.manager import TransferManager

_CLOSED = object()


class FakeConnection:
    """Relay-side connection that records every frame sent to it."""

    def __init__(self, name: str = "conn") -> None:
        self.name = name
        self.sent: list[dict] = []

    async def send_json(self, data: dict) -> None:
        self.sent.append(data)

    def types(self) -> list[str]:
        return [frame["type"] for frame in self.sent]

    def __repr__(self) -> str:
        return f"FakeConnection({self.name})"


class _RelaySide:
    """What the hub sees for a MemoryLink: frames it sends land in the link's inbox."""

    def __init__(self, link: "MemoryLink") -> None:
        self._link = link

    async def send_json(self, data: dict) -> None:
        if self._link.closed:
            raise ConnectionError("client gone")
        self._link.received.append(data)
        self._link._inbox.put_nowait(json.loads(json.dumps(data)))


class MemoryLink(PeerLink):
    """
    PeerLink that hands each frame straight to a RelayHub.

    ``drop_if`` silently discards matching outbound frames; ``fail_on``
    simulates the socket dying just as a matching frame is written;
    ``rewrite`` alters frames in transit; ``send_delay`` keeps ``send_json``
    suspended after the hub has the frame, like a slow socket flush.
    """

    def __init__(self, hub: RelayHub) -> None:
        self._hub = hub
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.relay_side = _RelaySide(self)
        self.sent: list[dict] = []
        self.received: list[dict] = []
        self.drop_if = None
        self.fail_on = None
        self.rewrite = None
        self.send_delay = 0.0

    @property
    def closed(self) -> bool:
        return self._closed

    def sent_types(self) -> list[str]:
        return [frame["type"] for frame in self.sent]

    def received_types(self) -> list[str]:
        return [frame["type"] for frame in self.received]

    async def send_json(self, data: dict) -> None:
        if self._closed:
            raise ConnectionLost("Link is closed")
        if self.fail_on is not None and self.fail_on(data):
            await self.lose()
            raise ConnectionLost("Simulated connection drop")
        if self.drop_if is not None and self.drop_if(data):
            return
        if self.rewrite is not None:
            data = self.rewrite(data)
        self.sent.append(data)
        await self._hub.handle_frame(self.relay_side, json.loads(json.dumps(data)))
        if self.send_delay:
            await asyncio.sleep(self.send_delay)

    async def receive_json(self) -> dict:
        item = await self._inbox.get()
        if item is _CLOSED:
            raise ConnectionLost("Link is closed")
        return item

    async def lose(self) -> None:
        """Drop the connection the way a dead socket would."""
        if self._closed:
            return
        self._closed = True
        self._inbox.put_nowait(_CLOSED)
        await self._hub.disconnect(self.relay_side)

    async def close(self) -> None:
        await self.lose()


async def wait_until(condition, timeout: float = 2.0) -> None:
    """Poll ``condition`` until it is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class Collector:
    """Deliver callback and event sink in one."""

    def __init__(self) -> None:
        self.delivered: list[tuple[bytes, str, str]] = []
        self.events: list[tuple[str, dict]] = []

    async def __call__(self, payload: bytes, file_name: str, media_type: str) -> None:
        self.delivered.append((payload, file_name, media_type))

    async def on_event(self, event_type: str, data: dict) -> None:
        self.events.append((event_type, data))

    def progress(self, direction: str) -> list[int]:
        return [
            data["progress_percent"]
            for event_type, data in self.events
            if event_type == "transfer_progress" and data["direction"] == direction
        ]


# ============================================================================
# Relay Fixtures
# ============================================================================

@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def hub(registry):
    return RelayHub(registry)


@pytest.fixture
async def make_client(hub):
    """Factory for TransferManagers on MemoryLinks; closes them afterwards."""
    created: list[TransferManager] = []

    def factory(passcode: str, deliver=None, **kwargs):
        kwargs.setdefault("display_delay", 0)
        link = MemoryLink(hub)
        collector = Collector()
        manager = TransferManager(link, passcode, deliver or collector, **kwargs)
        manager.on_event(collector.on_event)
        manager.start()
        created.append(manager)
        return manager, link, collector

    yield factory

    for manager in created:
        await manager.close()


@pytest.fixture
async def paired(registry, make_client):
    """
    Factory for a sender/receiver pair already matched on a fresh passcode.

    Keyword arguments go to the sender's TransferManager; ``receiver_deliver``
    replaces the receiver's collecting deliver callback.
    """

    async def factory(receiver_deliver=None, **sender_kwargs):
        passcode = await registry.issue()
        sender, sender_link, sender_events = make_client(passcode, **sender_kwargs)
        await sender.set_passcode()
        receiver, receiver_link, received = make_client(passcode, receiver_deliver)
        await receiver.set_passcode()
        await sender.wait_paired(timeout=2)
        await receiver.wait_paired(timeout=2)
        return {
            "passcode": passcode,
            "sender": sender,
            "sender_link": sender_link,
            "sender_events": sender_events,
            "receiver": receiver,
            "receiver_link": receiver_link,
            "received": received,
        }

    return factory
