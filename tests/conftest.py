from __future__ import annotations

from pathlib import Path
from typing import Any, List, Optional

import fakeredis
import pytest

from relay.clients.base import AutomationClient, ClientEvent, SentMessage
from relay.config import SessionSettings, Settings
from relay.dispatch.queue import DispatchQueue, JobPolicy


class FakeClient(AutomationClient):
    """In-memory stand-in for the browser automation client."""

    def __init__(self, *, fail_init: bool = False, fail_destroy: bool = False) -> None:
        super().__init__()
        self.fail_init = fail_init
        self.fail_destroy = fail_destroy
        self.initialized = False
        self.destroyed = False
        self.sent: List[tuple[str, str]] = []

    @property
    def is_active(self) -> bool:
        return self.initialized and not self.destroyed

    async def initialize(self) -> None:
        if self.fail_init:
            raise RuntimeError("browser failed to launch")
        self.initialized = True

    async def destroy(self) -> None:
        self.destroyed = True
        if self.fail_destroy:
            raise RuntimeError("EBUSY: resource busy or locked")

    async def send_message(self, chat_id: str, body: str) -> SentMessage:
        self.sent.append((chat_id, body))
        return SentMessage(message_id=f"true_{chat_id}_{len(self.sent)}", chat_id=chat_id)

    async def emit(self, event: ClientEvent, *args: Any) -> None:
        await self._emit(event, *args)


class FakeClientFactory:
    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.clients: List[FakeClient] = []

    def __call__(self, settings: Settings) -> FakeClient:
        client = FakeClient(**self.kwargs)
        self.clients.append(client)
        return client

    @property
    def latest(self) -> Optional[FakeClient]:
        return self.clients[-1] if self.clients else None


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "session": SessionSettings(session_dir=tmp_path / "session", reinit_delay_seconds=0.01),
        "log_directory": tmp_path / "logs",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_queue(*, clock=None, **policy: Any) -> DispatchQueue:
    redis = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    kwargs: dict[str, Any] = {"prefix": "test:queue", "policy": JobPolicy(**policy)}
    if clock is not None:
        kwargs["clock"] = clock
    return DispatchQueue(redis, **kwargs)


class ManualClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)
