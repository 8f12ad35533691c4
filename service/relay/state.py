"""Shared session state definitions for the WhatsApp relay."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class SessionPhase(str, enum.Enum):
    """
    Session phases in lifecycle order:

    1. INITIALIZING        - Client being (re)built, no challenge yet
    2. AWAITING_CHALLENGE  - QR challenge issued, waiting for a phone to scan it
    3. READY               - Authenticated, sends allowed
    4. DISCONNECTED        - Session lost; rebuild scheduled
    5. AUTH_FAILED         - Authentication rejected; rebuild scheduled
    """
    INITIALIZING = "initializing"
    AWAITING_CHALLENGE = "awaiting_challenge"
    READY = "ready"
    DISCONNECTED = "disconnected"
    AUTH_FAILED = "auth_failed"


class LifecycleEvent(str, enum.Enum):
    INITIALIZE = "initialize"
    CHALLENGE = "challenge"
    READY = "ready"
    DISCONNECTED = "disconnected"
    AUTH_FAILURE = "auth_failure"


class ConnectionStatus(str, enum.Enum):
    CONNECTED = "connected"
    QR_CODE_NEEDED = "qr_code_needed"
    CONNECTING = "connecting"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class SessionState:
    """Snapshot of the single session; replaced wholesale, never edited in place."""

    phase: SessionPhase = SessionPhase.INITIALIZING
    raw_challenge: Optional[str] = None
    encoded_challenge: Optional[str] = None

    def __post_init__(self) -> None:
        if self.phase == SessionPhase.AWAITING_CHALLENGE and not self.raw_challenge:
            raise ValueError("awaiting_challenge requires a raw challenge")
        if self.phase == SessionPhase.READY and (self.raw_challenge or self.encoded_challenge):
            raise ValueError("ready session cannot carry a challenge")
        if self.encoded_challenge and not self.raw_challenge:
            raise ValueError("encoded challenge without a raw challenge")

    @property
    def is_ready(self) -> bool:
        return self.phase == SessionPhase.READY


_PRE_READY = {SessionPhase.INITIALIZING, SessionPhase.AWAITING_CHALLENGE}
_TORN_DOWN = {SessionPhase.DISCONNECTED, SessionPhase.AUTH_FAILED}


def transition(phase: SessionPhase, event: LifecycleEvent) -> SessionPhase:
    """Pure lifecycle transition.

    READY may only be left towards DISCONNECTED, and a torn-down session only
    becomes live again through INITIALIZE.
    """
    if event == LifecycleEvent.INITIALIZE:
        return SessionPhase.INITIALIZING
    if event == LifecycleEvent.DISCONNECTED:
        return SessionPhase.DISCONNECTED

    if event == LifecycleEvent.CHALLENGE:
        if phase in _PRE_READY:
            return SessionPhase.AWAITING_CHALLENGE
        if phase == SessionPhase.READY:
            # A fresh challenge while ready means the pairing was dropped.
            return SessionPhase.DISCONNECTED
        return phase

    if event == LifecycleEvent.READY:
        if phase in _PRE_READY or phase == SessionPhase.READY:
            return SessionPhase.READY
        return phase

    if event == LifecycleEvent.AUTH_FAILURE:
        if phase in (SessionPhase.READY, SessionPhase.DISCONNECTED):
            return SessionPhase.DISCONNECTED
        return SessionPhase.AUTH_FAILED

    raise ValueError(f"Unknown lifecycle event: {event!r}")


def needs_rebuild(phase: SessionPhase) -> bool:
    return phase in _TORN_DOWN


@dataclass
class RelayEvent:
    """Lifecycle event distributed to UI clients over the local WebSocket."""

    type: str
    phase: SessionPhase
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


__all__ = [
    "ConnectionStatus",
    "LifecycleEvent",
    "RelayEvent",
    "SessionPhase",
    "SessionState",
    "needs_rebuild",
    "transition",
]
