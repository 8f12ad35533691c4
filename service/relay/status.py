"""Externally visible connectivity status."""
from __future__ import annotations

from .state import ConnectionStatus, SessionPhase, SessionState


def derive_status(state: SessionState, client_active: bool) -> ConnectionStatus:
    if state.phase == SessionPhase.READY:
        return ConnectionStatus.CONNECTED
    if state.phase == SessionPhase.AWAITING_CHALLENGE:
        return ConnectionStatus.QR_CODE_NEEDED
    if client_active:
        return ConnectionStatus.CONNECTING
    return ConnectionStatus.DISCONNECTED


def describe(status: ConnectionStatus) -> str:
    return f"Connection status: {status.value}"


__all__ = ["derive_status", "describe"]
