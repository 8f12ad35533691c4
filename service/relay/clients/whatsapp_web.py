"""WhatsApp Web automation over a persistent headless Chromium profile."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import urllib.parse
import uuid
from pathlib import Path
from typing import Any, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from ..config import BrowserSettings
from ..errors import NotReadyError, SendError, TeardownError
from .base import AutomationClient, ClientEvent, SentMessage

logger = logging.getLogger(__name__)

# Container-friendly Chromium flags
CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
    "--disable-extensions",
    "--disable-background-networking",
    "--disable-background-timer-throttling",
    "--disable-breakpad",
    "--disable-hang-monitor",
    "--disable-renderer-backgrounding",
    "--mute-audio",
    "--no-default-browser-check",
    "--password-store=basic",
    "--use-mock-keychain",
]

# The raw pairing challenge lives in the data-ref attribute of the QR container.
CHALLENGE_SELECTOR = "div[data-ref]"

LOGIN_MARKERS = [
    'div[data-testid="chat-list-search"]',
    'div[aria-label="Chat list"]',
    'header[data-testid="chatlist-header"]',
    'div[data-testid="chat-list"]',
    "#pane-side",
]

SEND_SELECTORS = [
    "[data-testid='send']",
    "button[aria-label='Send']",
    "span[data-icon='send']",
    "[data-testid='compose-btn-send']",
]


def _digits_only(value: str) -> str:
    return "".join(ch for ch in value if ch.isdigit())


class WhatsAppWebClient(AutomationClient):
    """Drives WhatsApp Web and reports pairing / connectivity changes as events."""

    def __init__(self, settings: BrowserSettings, session_dir: Path) -> None:
        super().__init__()
        self.settings = settings
        self.session_dir = Path(session_dir)
        self._playwright: Optional[Any] = None
        self._context: Optional[Any] = None
        self._page: Optional[Any] = None
        self._monitor_task: Optional[asyncio.Task[None]] = None
        self._send_lock = asyncio.Lock()
        self._ready = False
        self._last_challenge: Optional[str] = None
        self._started_at: float = 0.0

    @property
    def is_active(self) -> bool:
        return self._context is not None

    async def initialize(self) -> None:
        self.session_dir.mkdir(parents=True, exist_ok=True)
        logger.info("whatsapp_web.initialize: launching chromium profile=%s headless=%s", self.session_dir, self.settings.headless)

        self._playwright = await async_playwright().start()
        self._context = await self._playwright.chromium.launch_persistent_context(
            user_data_dir=str(self.session_dir),
            headless=self.settings.headless,
            args=CHROMIUM_ARGS,
            viewport={"width": 1280, "height": 900},
            user_agent=self.settings.user_agent,
        )
        pages = self._context.pages
        self._page = pages[0] if pages else await self._context.new_page()
        await self._page.goto(
            self.settings.url,
            wait_until="domcontentloaded",
            timeout=self.settings.auth_timeout_seconds * 1000,
        )
        self._started_at = time.monotonic()
        self._monitor_task = asyncio.create_task(self._monitor(), name="whatsapp-web-monitor")

    async def destroy(self) -> None:
        self._ready = False
        self._last_challenge = None

        task = self._monitor_task
        self._monitor_task = None
        if task and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        failures = []
        if self._context is not None:
            try:
                await self._context.close()
            except Exception as e:
                failures.append(f"context: {e}")
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                failures.append(f"playwright: {e}")
        self._context = None
        self._page = None
        self._playwright = None

        if failures:
            raise TeardownError("Browser teardown incomplete", log_message="; ".join(failures))
        logger.info("whatsapp_web.destroy: browser closed")

    async def send_message(self, chat_id: str, body: str) -> SentMessage:
        page = self._page
        if page is None or page.is_closed():
            raise NotReadyError("WhatsApp client is not running")

        phone = _digits_only(chat_id.split("@", 1)[0])
        if not phone:
            raise SendError(f"Invalid destination: {chat_id}")

        url = f"{self.settings.url}send?phone={phone}&text={urllib.parse.quote(body, safe='')}"
        timeout_ms = self.settings.send_timeout_seconds * 1000

        async with self._send_lock:
            try:
                await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
            except PlaywrightError as e:
                raise SendError(f"Failed to open chat {chat_id}", log_message=str(e)) from e

            for selector in SEND_SELECTORS:
                try:
                    button = page.locator(selector).first
                    await button.wait_for(state="visible", timeout=timeout_ms)
                    await button.click()
                    break
                except PlaywrightTimeoutError:
                    continue
            else:
                raise SendError(f"Send button not found for {chat_id}")

            # Give the outgoing bubble time to leave the compose box.
            await page.wait_for_timeout(1000)

        message_id = f"true_{chat_id}_{uuid.uuid4().hex[:20].upper()}"
        return SentMessage(message_id=message_id, chat_id=chat_id, timestamp=time.time())

    async def _monitor(self) -> None:
        try:
            while True:
                if not await self._poll_once():
                    return
                await asyncio.sleep(self.settings.poll_interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("whatsapp_web.monitor crashed: %s", e)
            await self._emit(ClientEvent.DISCONNECTED, "MONITOR_ERROR")

    async def _poll_once(self) -> bool:
        """Inspect the page once; returns False after a terminal event."""
        page = self._page
        if page is None or page.is_closed():
            logger.warning("whatsapp_web.poll: page closed")
            await self._emit(ClientEvent.DISCONNECTED, "NAVIGATION")
            return False

        if await self._is_logged_in(page):
            if not self._ready:
                self._ready = True
                self._last_challenge = None
                await self._emit(ClientEvent.READY)
            return True

        challenge = await self._read_challenge(page)
        if challenge:
            if self._ready:
                self._ready = False
                await self._emit(ClientEvent.DISCONNECTED, "LOGOUT")
                return False
            if challenge != self._last_challenge:
                self._last_challenge = challenge
                await self._emit(ClientEvent.QR, challenge)
            return True

        waited = time.monotonic() - self._started_at
        if not self._ready and self._last_challenge is None and waited > self.settings.auth_timeout_seconds:
            await self._emit(ClientEvent.AUTH_FAILURE, f"no challenge or chat list after {waited:.0f}s")
            return False
        return True

    @staticmethod
    async def _is_logged_in(page: Any) -> bool:
        for marker in LOGIN_MARKERS:
            with contextlib.suppress(PlaywrightError):
                locator = page.locator(marker)
                if await locator.count() and await locator.first.is_visible():
                    return True
        return False

    @staticmethod
    async def _read_challenge(page: Any) -> Optional[str]:
        with contextlib.suppress(PlaywrightError):
            locator = page.locator(CHALLENGE_SELECTOR)
            if await locator.count():
                return await locator.first.get_attribute("data-ref")
        return None


__all__ = ["WhatsAppWebClient"]
