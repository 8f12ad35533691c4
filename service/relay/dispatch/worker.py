"""Worker pool draining the dispatch queue through the WhatsApp session."""
from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from ..config import Settings
from ..errors import SendError
from ..session_controller import SessionController
from .queue import DispatchJob, DispatchQueue, JobResult

logger = logging.getLogger(__name__)

CHAT_SUFFIX = "@c.us"


def to_chat_id(recipient: str) -> str:
    """Translate a phone number into WhatsApp's chat addressing form."""
    recipient = recipient.strip()
    if CHAT_SUFFIX in recipient:
        return recipient
    return f"{recipient}{CHAT_SUFFIX}"


class WorkerPool:
    """N concurrent consumers; each handles one job at a time."""

    def __init__(
        self,
        queue: DispatchQueue,
        controller: SessionController,
        *,
        concurrency: int = 1,
        poll_interval: float = 0.5,
        send_timeout: float = 60.0,
    ) -> None:
        self.queue = queue
        self.controller = controller
        self.concurrency = max(int(concurrency), 1)
        self.poll_interval = poll_interval
        self.send_timeout = send_timeout
        self._tasks: List[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        await self.queue.recover()
        self._tasks = [
            asyncio.create_task(self._worker_loop(index), name=f"dispatch-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info("worker.pool started concurrency=%d", self.concurrency)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping worker task: %s", e)
        self._tasks.clear()
        logger.info("worker.pool stopped")

    async def _worker_loop(self, index: int) -> None:
        while True:
            try:
                job = await self.queue.reserve()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("worker-%d: reserve failed: %s", index, e)
                await asyncio.sleep(self.poll_interval)
                continue

            if job is None:
                await asyncio.sleep(self.poll_interval)
                continue

            try:
                await self.run_job(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Queue bookkeeping failed; the job stays in the active list until recover().
                logger.exception("worker-%d: bookkeeping failed for job=%s: %s", index, job.id, e)

    async def run_job(self, job: DispatchJob) -> JobResult:
        try:
            result = await self.process(job)
        except Exception as e:
            logger.error("worker.send_error: job=%s to=%s error=%s", job.id, job.recipient, e)
            return await self.queue.fail(job, e)
        await self.queue.complete(job, result)
        return result

    async def process(self, job: DispatchJob) -> JobResult:
        """
        Execute one attempt.

        A session that is not ready yields a non-retryable result instead of
        an exception, so the attempt is consumed without entering the
        queue's retry path. Send errors propagate to the retry path.
        """
        if not self.controller.is_ready():
            logger.error("worker.not_ready: job=%s to=%s; WhatsApp client is not ready", job.id, job.recipient)
            return JobResult.non_retryable("WhatsApp client is not ready.")

        chat_id = to_chat_id(job.recipient)
        logger.info("worker.sending: job=%s to=%s attempt=%d", job.id, chat_id, job.attempt + 1)
        try:
            sent = await asyncio.wait_for(self.controller.send_message(chat_id, job.body), timeout=self.send_timeout)
        except asyncio.TimeoutError as exc:
            raise SendError(f"Send to {chat_id} timed out after {self.send_timeout:.0f}s") from exc

        logger.info("worker.sent: job=%s to=%s message_id=%s", job.id, chat_id, sent.message_id)
        return JobResult.success(sent.message_id)


def build_pool(queue: DispatchQueue, controller: SessionController, settings: Optional[Settings] = None) -> WorkerPool:
    settings = settings or controller.settings
    return WorkerPool(
        queue,
        controller,
        concurrency=settings.worker_concurrency,
        poll_interval=settings.queue.poll_interval_seconds,
        send_timeout=settings.queue.send_timeout_seconds,
    )


__all__ = ["CHAT_SUFFIX", "WorkerPool", "build_pool", "to_chat_id"]
