"""Lifecycle orchestration for the single WhatsApp Web session."""
from __future__ import annotations

import asyncio
import logging
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Any, Dict, List, Optional

from .clients.base import AutomationClient, ClientEvent, SentMessage
from .clients.whatsapp_web import WhatsAppWebClient
from .config import Settings, get_settings
from .errors import AlreadyConnectedError, InitializationError, NotReadyError
from .qr import EncodedChallenge, get_encoded
from .state import ConnectionStatus, LifecycleEvent, RelayEvent, SessionPhase, SessionState, needs_rebuild, transition
from .status import derive_status

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Settings], AutomationClient]


def default_client_factory(settings: Settings) -> AutomationClient:
    return WhatsAppWebClient(settings.browser, settings.session.session_dir)


class SessionController:
    """Owns the automation client and keeps ``SessionState`` consistent with it."""

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._client_factory = client_factory or default_client_factory
        self._client: Optional[AutomationClient] = None
        self._state = SessionState()
        self._generation = 0
        self._init_lock = asyncio.Lock()
        self._reinit_task: Optional[asyncio.Task[None]] = None
        self._ui_subscribers: List[asyncio.Queue[RelayEvent]] = []
        self._stopped = False

    # ------------------------------------------------------------
    # Read side (workers, status reporter, HTTP layer)
    # ------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def phase(self) -> SessionPhase:
        return self._state.phase

    @property
    def generation(self) -> int:
        return self._generation

    def is_ready(self) -> bool:
        return self._state.phase == SessionPhase.READY

    def status(self) -> ConnectionStatus:
        client = self._client
        return derive_status(self._state, bool(client and client.is_active))

    async def get_qr_code(self) -> EncodedChallenge:
        state = self._state
        if state.phase == SessionPhase.READY:
            raise AlreadyConnectedError("Already connected to WhatsApp; no QR code needed.")
        # PNG encoding is CPU-bound; events may replace the state while it runs.
        loop = asyncio.get_running_loop()
        encoded, cached = await loop.run_in_executor(None, get_encoded, state)
        # Only memoize if no event replaced the state while rendering.
        if cached is not state and self._state is state:
            self._state = cached
        return encoded

    async def send_message(self, chat_id: str, body: str) -> SentMessage:
        client = self._client
        if client is None:
            raise NotReadyError("WhatsApp client is not running")
        return await client.send_message(chat_id, body)

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------

    async def initialize(self) -> None:
        """Tear down whatever exists, wipe the credential store, and start a fresh client."""
        async with self._init_lock:
            if self._stopped:
                logger.info("session.initialize: controller stopped; skipping")
                return

            self._generation += 1
            generation = self._generation
            logger.info("session.initialize: starting generation=%d", generation)

            await self._destroy_client()
            await self._clean_session_dir()
            self._set_state(SessionState(phase=transition(self._state.phase, LifecycleEvent.INITIALIZE)))

            try:
                client = self._client_factory(self.settings)
            except Exception as e:
                self._initialization_failed(InitializationError("Failed to construct WhatsApp client", log_message=str(e)))
                return

            self._bind(client, generation)
            self._client = client

            try:
                await client.initialize()
                logger.info("session.initialize: client started generation=%d", generation)
            except Exception as e:
                self._initialization_failed(InitializationError("Failed to start WhatsApp client", log_message=str(e)))

    async def stop(self) -> None:
        logger.info("Stopping session controller")
        self._stopped = True

        task = self._reinit_task
        self._reinit_task = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping reinit task: %s", e)

        async with self._init_lock:
            self._generation += 1
            await self._destroy_client()
            self._set_state(SessionState(phase=SessionPhase.DISCONNECTED))
        logger.info("Session controller stopped")

    def _bind(self, client: AutomationClient, generation: int) -> None:
        def guarded(handler: Callable[..., None]) -> Callable[..., None]:
            def _handler(*args: Any) -> None:
                if generation != self._generation:
                    logger.debug("session: dropping event from stale generation=%d", generation)
                    return
                handler(*args)
            return _handler

        client.on(ClientEvent.QR, guarded(self.on_challenge))
        client.on(ClientEvent.READY, guarded(self.on_ready))
        client.on(ClientEvent.DISCONNECTED, guarded(self.on_disconnected))
        client.on(ClientEvent.AUTH_FAILURE, guarded(self.on_auth_failure))

    # ------------------------------------------------------------
    # Event handlers - synchronous, never block the event stream
    # ------------------------------------------------------------

    def on_challenge(self, raw: str) -> None:
        if not raw:
            logger.warning("session.challenge: empty challenge ignored")
            return
        logger.info("session.challenge: QR received")
        phase = transition(self._state.phase, LifecycleEvent.CHALLENGE)
        if phase == SessionPhase.AWAITING_CHALLENGE:
            self._set_state(SessionState(phase=phase, raw_challenge=raw))
        else:
            self._apply(phase, reason=f"challenge received in phase {self._state.phase.value}")

    def on_ready(self) -> None:
        logger.info("session.ready: client is ready")
        self._apply(transition(self._state.phase, LifecycleEvent.READY))

    def on_disconnected(self, reason: Any = None) -> None:
        logger.warning("session.disconnected: reason=%s", reason)
        self._apply(transition(self._state.phase, LifecycleEvent.DISCONNECTED), reason=str(reason))

    def on_auth_failure(self, reason: Any = None) -> None:
        logger.error("session.auth_failure: %s", reason)
        self._apply(transition(self._state.phase, LifecycleEvent.AUTH_FAILURE), reason=str(reason))

    def _apply(self, phase: SessionPhase, *, reason: Optional[str] = None) -> None:
        current = self._state
        if phase == current.phase and phase != SessionPhase.READY:
            logger.debug("session: event ignored in phase=%s", phase.value)
            if needs_rebuild(phase):
                self._schedule_reinitialize(reason or phase.value)
            return
        self._set_state(SessionState(phase=phase), error=reason)
        if needs_rebuild(phase):
            self._schedule_reinitialize(reason or phase.value)

    def _initialization_failed(self, exc: InitializationError) -> None:
        logger.error("session.initialize failed: %s (%s)", exc.description, exc)
        self._set_state(SessionState(phase=SessionPhase.DISCONNECTED), error=exc.description)
        self._schedule_reinitialize("initialization_failed")

    def _schedule_reinitialize(self, reason: str) -> None:
        if self._stopped:
            return
        if self._reinit_task and not self._reinit_task.done():
            logger.info("session.reinit already pending; ignoring trigger reason=%s", reason)
            return
        delay = self.settings.session.reinit_delay_seconds
        logger.info("session.reinit scheduled in %.1fs reason=%s", delay, reason)
        self._reinit_task = asyncio.create_task(self._delayed_reinitialize(delay), name="session-reinit")

    async def _delayed_reinitialize(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            # Clear the slot first so triggers raised during this rebuild can schedule the next one.
            self._reinit_task = None
            await self.initialize()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("session.reinit crashed: %s", e)

    # ------------------------------------------------------------
    # Teardown helpers - best effort, never raise
    # ------------------------------------------------------------

    async def _destroy_client(self) -> None:
        client = self._client
        self._client = None
        if client is None:
            return
        try:
            await client.destroy()
            logger.info("session.destroy: client destroyed")
        except Exception as e:
            logger.warning("session.destroy: ignoring teardown error %s", e)

    async def _clean_session_dir(self) -> None:
        path = Path(self.settings.session.session_dir)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, shutil.rmtree, path)
            logger.info("session.cleanup: removed %s", path)
        except FileNotFoundError:
            pass
        except Exception as e:
            logger.warning("session.cleanup: could not remove %s: %s", path, e)

    # ------------------------------------------------------------
    # UI fan-out
    # ------------------------------------------------------------

    def register_ui(self) -> asyncio.Queue[RelayEvent]:
        queue: asyncio.Queue[RelayEvent] = asyncio.Queue(maxsize=self.settings.session.ui_event_queue_size)
        self._ui_subscribers.append(queue)
        queue.put_nowait(self._snapshot_event())
        return queue

    def unregister_ui(self, queue: asyncio.Queue[RelayEvent]) -> None:
        if queue in self._ui_subscribers:
            self._ui_subscribers.remove(queue)

    def _set_state(self, state: SessionState, *, error: Optional[str] = None) -> None:
        previous = self._state.phase
        self._state = state
        if previous != state.phase:
            logger.info("session.phase: %s -> %s", previous.value, state.phase.value)
        self._broadcast(self._snapshot_event(error=error))

    def _snapshot_event(self, *, error: Optional[str] = None) -> RelayEvent:
        data: Dict[str, Any] = {
            "connectionStatus": self.status().value,
            "generation": self._generation,
            "qr_available": bool(self._state.raw_challenge),
        }
        return RelayEvent(type="state", phase=self._state.phase, data=data, error=error)

    def _broadcast(self, event: RelayEvent) -> None:
        for queue in list(self._ui_subscribers):
            try:
                if queue.full():
                    try:
                        queue.get_nowait()
                    except asyncio.QueueEmpty:
                        pass
                queue.put_nowait(event)
            except Exception as e:
                logger.warning("Failed to broadcast event to subscriber: %s", e)


__all__ = ["ClientFactory", "SessionController", "default_client_factory"]
