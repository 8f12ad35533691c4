import asyncio

import pytest

from conftest import ManualClock, make_queue
from relay.clients.base import SentMessage
from relay.dispatch.queue import JobOutcome, JobState
from relay.dispatch.worker import WorkerPool, to_chat_id


class StubController:
    def __init__(self, ready=True, errors=None, delay=0.0):
        self.ready = ready
        self.errors = list(errors or [])
        self.delay = delay
        self.sent = []

    def is_ready(self):
        return self.ready

    async def send_message(self, chat_id, body):
        self.sent.append((chat_id, body))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return SentMessage(message_id=f"true_{chat_id}_{len(self.sent)}", chat_id=chat_id)


@pytest.mark.parametrize(
    "recipient, expected",
    [
        ("5511999990001", "5511999990001@c.us"),
        (" 5511999990001 ", "5511999990001@c.us"),
        ("5511999990001@c.us", "5511999990001@c.us"),
    ],
)
def test_to_chat_id(recipient, expected):
    assert to_chat_id(recipient) == expected


def test_successful_send_completes_job():
    async def scenario():
        queue = make_queue()
        controller = StubController()
        pool = WorkerPool(queue, controller)
        job_id = await queue.enqueue("5511999990001", "hello")

        result = await pool.run_job(await queue.reserve())

        assert result.outcome is JobOutcome.SUCCESS
        assert controller.sent == [("5511999990001@c.us", "hello")]
        stored = await queue.get_job(job_id)
        assert stored.state is JobState.COMPLETED
        assert stored.message_id == "true_5511999990001@c.us_1"

    asyncio.run(scenario())


def test_not_ready_is_non_retryable():
    async def scenario():
        queue = make_queue(attempts=3)
        controller = StubController(ready=False)
        pool = WorkerPool(queue, controller)
        job_id = await queue.enqueue("5511999990001", "hello")

        result = await pool.run_job(await queue.reserve())

        assert result.outcome is JobOutcome.NON_RETRYABLE
        assert controller.sent == []
        stored = await queue.get_job(job_id)
        assert stored.state is JobState.COMPLETED
        assert stored.outcome is JobOutcome.NON_RETRYABLE
        assert stored.last_error == "WhatsApp client is not ready."
        counts = await queue.counts()
        assert counts["delayed"] == 0
        assert counts["failed"] == 0

    asyncio.run(scenario())


def test_send_succeeds_on_second_attempt():
    clock = ManualClock(1000.0)

    async def scenario():
        queue = make_queue(clock=clock, attempts=3, backoff_delay_ms=1000)
        controller = StubController(errors=[RuntimeError("detached frame")])
        pool = WorkerPool(queue, controller)
        job_id = await queue.enqueue("5511999990001", "hello")

        first = await pool.run_job(await queue.reserve())
        assert first.outcome is JobOutcome.RETRYABLE

        clock.now = 1000.5
        assert await queue.reserve() is None
        clock.now = 1001.0
        second = await pool.run_job(await queue.reserve())

        assert second.outcome is JobOutcome.SUCCESS
        stored = await queue.get_job(job_id)
        assert stored.attempt == 2
        assert stored.state is JobState.COMPLETED
        assert len(controller.sent) == 2

    asyncio.run(scenario())


def test_send_timeout_enters_retry_path():
    async def scenario():
        queue = make_queue(attempts=2)
        controller = StubController(delay=1.0)
        pool = WorkerPool(queue, controller, send_timeout=0.01)
        job_id = await queue.enqueue("5511999990001", "hello")

        result = await pool.run_job(await queue.reserve())

        assert result.outcome is JobOutcome.RETRYABLE
        stored = await queue.get_job(job_id)
        assert stored.state is JobState.DELAYED
        assert "timed out" in stored.last_error

    asyncio.run(scenario())


def test_failing_job_stops_after_max_attempts():
    clock = ManualClock(1000.0)

    async def scenario():
        queue = make_queue(clock=clock, attempts=3, backoff_delay_ms=1000)
        controller = StubController(errors=[RuntimeError("boom")] * 10)
        pool = WorkerPool(queue, controller)
        job_id = await queue.enqueue("5511999990001", "hello")

        runs = 0
        while runs < 10:
            clock.now += 10
            job = await queue.reserve()
            if job is None:
                break
            await pool.run_job(job)
            runs += 1

        assert runs == 3
        assert len(controller.sent) == 3
        stored = await queue.get_job(job_id)
        assert stored.state is JobState.FAILED
        assert [j.id for j in await queue.dead_letters()] == [job_id]

    asyncio.run(scenario())


def test_pool_drains_queue_in_background():
    async def scenario():
        queue = make_queue()
        controller = StubController()
        pool = WorkerPool(queue, controller, concurrency=2, poll_interval=0.01)
        ids = [await queue.enqueue(f"551199999000{n}", f"msg {n}") for n in range(4)]

        await pool.start()
        assert pool.running
        for _ in range(200):
            jobs = [await queue.get_job(job_id) for job_id in ids]
            if all(job.state is JobState.COMPLETED for job in jobs):
                break
            await asyncio.sleep(0.01)
        await pool.stop()

        assert not pool.running
        assert sorted(body for _, body in controller.sent) == [f"msg {n}" for n in range(4)]
        for job_id in ids:
            assert (await queue.get_job(job_id)).state is JobState.COMPLETED

    asyncio.run(scenario())
