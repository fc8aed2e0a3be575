"""Pydantic models for passcode pairing."""

from enum import Enum

from pydantic import BaseModel


class SessionState(str, Enum):
    """Lifecycle of a passcode slot."""
    UNCLAIMED = "unclaimed"  # issued, nobody connected yet
    WAITING = "waiting"  # claimed by one peer
    PAIRED = "paired"  # two peers matched


class SessionHandle(BaseModel):
    """Snapshot of a pairing slot returned by registry operations."""
    passcode: str
    state: SessionState
    peers: int
    created_at: float
    expires_at: float | None = None
