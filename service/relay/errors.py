"""Error taxonomy shared by the session controller, dispatch queue and HTTP layer."""
from __future__ import annotations

from typing import Optional


class RelayError(RuntimeError):
    """Base class for failures that surface to callers as structured results."""

    code: str = "relay_error"
    http_status: int = 500

    def __init__(self, description: str, *, log_message: Optional[str] = None) -> None:
        super().__init__(log_message or description)
        self.description = description


class InitializationError(RelayError):
    """Client construction or start failed; retried by the reinitialization cycle."""

    code = "initialization_failed"


class TeardownError(RelayError):
    """Destroying the client or clearing the session store failed; logged and swallowed."""

    code = "teardown_failed"


class NotReadyError(RelayError):
    """A send was attempted while no ready session exists."""

    code = "not_ready"
    http_status = 503


class SendError(RelayError):
    """Transport-level send failure; retried with backoff by the dispatch queue."""

    code = "send_failed"


class EncodingError(RelayError):
    """No challenge is available to encode, or rendering it failed."""

    code = "no_qr_available"

    def __init__(self, description: str, *, code: Optional[str] = None, log_message: Optional[str] = None) -> None:
        super().__init__(description, log_message=log_message)
        if code:
            self.code = code


class AlreadyConnectedError(RelayError):
    """QR requested while the session is already authenticated."""

    code = "already_connected"
    http_status = 409


class AuthenticationError(RelayError):
    """Missing or wrong API key."""

    code = "unauthorized"
    http_status = 401


class MessageValidationError(RelayError):
    """Submitted message is missing a recipient or a body."""

    code = "validation_error"
    http_status = 400


__all__ = [
    "AlreadyConnectedError",
    "AuthenticationError",
    "EncodingError",
    "InitializationError",
    "MessageValidationError",
    "NotReadyError",
    "RelayError",
    "SendError",
    "TeardownError",
]
