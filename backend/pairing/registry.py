"""
Session Registry — passcode to connection bindings.

A passcode moves UNCLAIMED (issued) -> WAITING (one peer) -> PAIRED (two
peers) and is destroyed when either peer leaves or when it sits unpaired
longer than the TTL. Mutations for one passcode are serialized through a
striped set of asyncio locks so two concurrent joins can never both win.

Connections are opaque to the registry apart from an async
``send_json(dict)`` used for pairing notifications.
"""

import asyncio
import logging
import secrets
import time
import zlib
from dataclasses import dataclass, field

from config import (
    ALLOW_UNISSUED_PASSCODES,
    PASSCODE_ALPHABET,
    PASSCODE_LENGTH,
    PASSCODE_TTL,
    SWEEP_INTERVAL,
)
from errors import PasscodeConflict, PasscodeFull, UnknownPasscode
from pairing.models import SessionHandle, SessionState
from transfer.models import ErrorMessage, NewUserConnected, UserDisconnected, WireMessage

logger = logging.getLogger(__name__)

_LOCK_STRIPES = 64


@dataclass
class _Session:
    passcode: str
    created_at: float
    connections: list = field(default_factory=list)

    @property
    def state(self) -> SessionState:
        return SessionState.PAIRED if len(self.connections) == 2 else SessionState.WAITING


class SessionRegistry:
    """Owns every passcode slot and the connections bound to it."""

    def __init__(
        self,
        ttl: float = PASSCODE_TTL,
        passcode_length: int = PASSCODE_LENGTH,
        allow_unissued: bool = ALLOW_UNISSUED_PASSCODES,
        clock=time.monotonic,
    ) -> None:
        self._ttl = ttl
        self._passcode_length = passcode_length
        self._allow_unissued = allow_unissued
        self._clock = clock
        self._reserved: dict[str, float] = {}  # passcode -> issued at
        self._sessions: dict[str, _Session] = {}
        self._by_connection: dict = {}  # connection -> passcode
        self._stripes = [asyncio.Lock() for _ in range(_LOCK_STRIPES)]
        self._sweep_task: asyncio.Task | None = None

    def _lock_for(self, passcode: str) -> asyncio.Lock:
        return self._stripes[zlib.crc32(passcode.encode("utf-8")) % _LOCK_STRIPES]

    # --- Lifecycle ---

    async def start(self, interval: float = SWEEP_INTERVAL) -> None:
        """Start the background TTL sweep."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(interval))

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                await self.expire()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in passcode sweep: {e}")

    # --- Operations ---

    async def issue(self) -> str:
        """Generate and reserve a passcode nobody is using."""
        while True:
            passcode = "".join(
                secrets.choice(PASSCODE_ALPHABET) for _ in range(self._passcode_length)
            )
            async with self._lock_for(passcode):
                if passcode in self._reserved or passcode in self._sessions:
                    continue
                self._reserved[passcode] = self._clock()
            logger.info(f"Issued passcode {passcode}")
            return passcode

    async def claim(self, passcode: str, connection) -> SessionHandle:
        """
        Bind ``connection`` to ``passcode`` as the first peer.

        Re-claiming by the same connection returns the existing session.

        Raises:
            PasscodeConflict: the passcode is PAIRED, WAITING on another
                connection, or ``connection`` already holds another passcode.
            UnknownPasscode: the passcode was never issued (or has expired).
        """
        async with self._lock_for(passcode):
            return self._claim(passcode, connection)

    async def join(self, passcode: str, connection) -> SessionHandle:
        """
        Bind ``connection`` as the second peer and notify both sides.

        Raises:
            UnknownPasscode: nobody has claimed the passcode.
            PasscodeFull: the passcode already has two peers.
            PasscodeConflict: ``connection`` is already bound somewhere.
        """
        async with self._lock_for(passcode):
            return await self._join(passcode, connection)

    async def set_passcode(self, passcode: str, connection) -> SessionHandle:
        """Claim or join, whichever ``SET_PASSCODE`` means right now."""
        async with self._lock_for(passcode):
            session = self._sessions.get(passcode)
            if session is not None and connection not in session.connections:
                return await self._join(passcode, connection)
            return self._claim(passcode, connection)

    # Both helpers expect the passcode's lock to be held

    def _claim(self, passcode: str, connection) -> SessionHandle:
        session = self._sessions.get(passcode)
        if session is not None:
            if session.state == SessionState.PAIRED:
                raise PasscodeConflict(f"Passcode {passcode} is already paired")
            if connection in session.connections:
                return self._handle(session)
            raise PasscodeConflict(f"Passcode {passcode} is already claimed")

        if passcode not in self._reserved and not self._allow_unissued:
            raise UnknownPasscode(f"Passcode {passcode} was not issued or has expired")
        self._check_unbound(connection, passcode)

        self._reserved.pop(passcode, None)
        session = _Session(passcode=passcode, created_at=self._clock())
        session.connections.append(connection)
        self._sessions[passcode] = session
        self._by_connection[connection] = passcode
        logger.info(f"Passcode {passcode} claimed, waiting for peer")
        return self._handle(session)

    async def _join(self, passcode: str, connection) -> SessionHandle:
        session = self._sessions.get(passcode)
        if session is None:
            raise UnknownPasscode(f"No session for passcode {passcode}")
        if session.state == SessionState.PAIRED:
            raise PasscodeFull(f"Passcode {passcode} already has two peers")
        if connection in session.connections:
            raise PasscodeConflict(f"Connection already holds passcode {passcode}")
        self._check_unbound(connection, passcode)

        session.connections.append(connection)
        self._by_connection[connection] = passcode
        logger.info(f"Passcode {passcode} paired")
        for conn in session.connections:
            await self._notify(conn, NewUserConnected(passcode=passcode))
        return self._handle(session)

    async def leave(self, connection) -> str | None:
        """
        Destroy the session ``connection`` belongs to.

        The remaining peer, if any, gets USER_DISCONNECTED. Returns the
        passcode that was released.
        """
        passcode = self._by_connection.get(connection)
        if passcode is None:
            return None
        async with self._lock_for(passcode):
            session = self._sessions.get(passcode)
            if session is None or connection not in session.connections:
                self._by_connection.pop(connection, None)
                return None
            del self._sessions[passcode]
            for conn in session.connections:
                self._by_connection.pop(conn, None)
            remaining = [c for c in session.connections if c is not connection]
            logger.info(f"Passcode {passcode} released ({len(remaining)} peer(s) notified)")
            for conn in remaining:
                await self._notify(conn, UserDisconnected(passcode=passcode))
        return passcode

    async def expire(self, now: float | None = None) -> list[str]:
        """Drop issued and WAITING passcodes older than the TTL."""
        now = self._clock() if now is None else now
        expired = []
        for passcode, issued_at in list(self._reserved.items()):
            if now - issued_at >= self._ttl:
                async with self._lock_for(passcode):
                    if self._reserved.pop(passcode, None) is not None:
                        expired.append(passcode)
        for passcode, session in list(self._sessions.items()):
            if session.state != SessionState.WAITING or now - session.created_at < self._ttl:
                continue
            async with self._lock_for(passcode):
                current = self._sessions.get(passcode)
                if current is not session or current.state != SessionState.WAITING:
                    continue
                del self._sessions[passcode]
                for conn in session.connections:
                    self._by_connection.pop(conn, None)
                    await self._notify(
                        conn,
                        ErrorMessage(
                            message=f"Passcode {passcode} expired before a peer joined",
                            code=UnknownPasscode.code,
                        ),
                    )
                expired.append(passcode)
        if expired:
            logger.info(f"Expired {len(expired)} passcode(s)")
        return expired

    # --- Lookups ---

    def passcode_of(self, connection) -> str | None:
        return self._by_connection.get(connection)

    def peer_of(self, connection):
        """The other connection of a PAIRED session, else None."""
        passcode = self._by_connection.get(connection)
        session = self._sessions.get(passcode) if passcode else None
        if session is None or session.state != SessionState.PAIRED:
            return None
        return next(c for c in session.connections if c is not connection)

    def get(self, passcode: str) -> SessionHandle | None:
        session = self._sessions.get(passcode)
        if session is not None:
            return self._handle(session)
        issued_at = self._reserved.get(passcode)
        if issued_at is not None:
            return SessionHandle(
                passcode=passcode,
                state=SessionState.UNCLAIMED,
                peers=0,
                created_at=issued_at,
                expires_at=issued_at + self._ttl,
            )
        return None

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    # --- Helpers ---

    def _check_unbound(self, connection, passcode: str) -> None:
        bound = self._by_connection.get(connection)
        if bound is not None and bound != passcode:
            raise PasscodeConflict(f"Connection already holds passcode {bound}")

    def _handle(self, session: _Session) -> SessionHandle:
        return SessionHandle(
            passcode=session.passcode,
            state=session.state,
            peers=len(session.connections),
            created_at=session.created_at,
            expires_at=(
                session.created_at + self._ttl
                if session.state == SessionState.WAITING
                else None
            ),
        )

    @staticmethod
    async def _notify(connection, message: WireMessage) -> None:
        try:
            await connection.send_json(message.to_wire())
        except Exception as e:
            logger.warning(f"Could not deliver {message.type} to a peer: {e}")
