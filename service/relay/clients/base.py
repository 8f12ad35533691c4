"""Contract between the session controller and a messaging automation client."""
from __future__ import annotations

import enum
import inspect
from abc import ABC, abstractmethod
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

EventHandler = Callable[..., Union[None, Awaitable[None]]]


class ClientEvent(str, enum.Enum):
    QR = "qr"
    READY = "ready"
    DISCONNECTED = "disconnected"
    AUTH_FAILURE = "auth_failure"


@dataclass(frozen=True)
class SentMessage:
    message_id: str
    chat_id: str
    timestamp: Optional[float] = None


class AutomationClient(ABC):
    """
    Base class for automation clients.

    Subclasses implement ``initialize``, ``destroy``, ``send_message`` and
    ``is_active`` and call ``_emit`` to deliver lifecycle events, one at a
    time, to the registered handlers.
    """

    def __init__(self) -> None:
        self._handlers: Dict[ClientEvent, List[EventHandler]] = {}

    def on(self, event: ClientEvent, handler: EventHandler) -> None:
        self._handlers.setdefault(ClientEvent(event), []).append(handler)

    async def _emit(self, event: ClientEvent, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception("client.%s handler failed: %s", event.value, e)

    @property
    @abstractmethod
    def is_active(self) -> bool:
        ...

    @abstractmethod
    async def initialize(self) -> None:
        ...

    @abstractmethod
    async def destroy(self) -> None:
        ...

    @abstractmethod
    async def send_message(self, chat_id: str, body: str) -> SentMessage:
        ...


__all__ = ["AutomationClient", "ClientEvent", "EventHandler", "SentMessage"]
