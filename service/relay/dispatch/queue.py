"""Durable, at-least-once dispatch queue backed by Redis."""
from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from ..config import Settings
from ..errors import MessageValidationError

logger = logging.getLogger(__name__)


class JobState(str, enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


class JobOutcome(str, enum.Enum):
    SUCCESS = "success"
    NON_RETRYABLE = "non_retryable"
    RETRYABLE = "retryable"


@dataclass(frozen=True)
class JobResult:
    """Outcome of one execution attempt."""

    outcome: JobOutcome
    message_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def success(cls, message_id: str) -> "JobResult":
        return cls(JobOutcome.SUCCESS, message_id=message_id)

    @classmethod
    def non_retryable(cls, reason: str) -> "JobResult":
        return cls(JobOutcome.NON_RETRYABLE, reason=reason)

    @classmethod
    def retryable(cls, error: str) -> "JobResult":
        return cls(JobOutcome.RETRYABLE, reason=error)


@dataclass(frozen=True)
class JobPolicy:
    attempts: int = 3
    backoff_type: str = "exponential"
    backoff_delay_ms: int = 1000
    remove_on_complete: bool = True
    remove_on_fail: int = 50

    @classmethod
    def from_settings(cls, settings: Settings) -> "JobPolicy":
        return cls(
            attempts=settings.job_attempts,
            backoff_delay_ms=settings.job_backoff_ms,
            remove_on_fail=settings.queue.remove_on_fail,
        )


def backoff_delay_ms(backoff_type: str, base_ms: int, attempt: int) -> int:
    """Delay before the retry that follows failed execution number ``attempt`` (1-based)."""
    if backoff_type == "fixed":
        return base_ms
    return base_ms * 2 ** max(attempt - 1, 0)


@dataclass
class DispatchJob:
    id: str
    recipient: str
    body: str
    attempt: int = 0
    max_attempts: int = 3
    backoff_base_ms: int = 1000
    backoff_type: str = "exponential"
    remove_on_complete: bool = True
    remove_on_fail: int = 50
    state: JobState = JobState.WAITING
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    outcome: Optional[JobOutcome] = None
    message_id: Optional[str] = None
    last_error: Optional[str] = None

    def to_mapping(self) -> Dict[str, str]:
        mapping: Dict[str, Any] = {
            "id": self.id,
            "recipient": self.recipient,
            "body": self.body,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "backoff_base_ms": self.backoff_base_ms,
            "backoff_type": self.backoff_type,
            "remove_on_complete": int(self.remove_on_complete),
            "remove_on_fail": self.remove_on_fail,
            "state": self.state.value,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "outcome": self.outcome.value if self.outcome else None,
            "message_id": self.message_id,
            "last_error": self.last_error,
        }
        return {k: str(v) for k, v in mapping.items() if v is not None}

    @classmethod
    def from_mapping(cls, data: Dict[str, str]) -> "DispatchJob":
        return cls(
            id=data["id"],
            recipient=data["recipient"],
            body=data["body"],
            attempt=int(data.get("attempt", 0)),
            max_attempts=int(data.get("max_attempts", 1)),
            backoff_base_ms=int(data.get("backoff_base_ms", 0)),
            backoff_type=data.get("backoff_type", "exponential"),
            remove_on_complete=data.get("remove_on_complete", "1") == "1",
            remove_on_fail=int(data.get("remove_on_fail", 50)),
            state=JobState(data.get("state", JobState.WAITING.value)),
            created_at=float(data.get("created_at", 0.0)),
            finished_at=float(data["finished_at"]) if data.get("finished_at") else None,
            outcome=JobOutcome(data["outcome"]) if data.get("outcome") else None,
            message_id=data.get("message_id"),
            last_error=data.get("last_error"),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "recipient": self.recipient,
            "attempt": self.attempt,
            "maxAttempts": self.max_attempts,
            "state": self.state.value,
            "outcome": self.outcome.value if self.outcome else None,
            "messageId": self.message_id,
            "lastError": self.last_error,
            "createdAt": self.created_at,
            "finishedAt": self.finished_at,
        }


class DispatchQueue:
    """
    Redis layout under ``prefix``:

    - ``:id``        job id counter
    - ``:job:<id>``  job hash
    - ``:wait``      ids ready to run (LPUSH in, taken from the right)
    - ``:active``    ids reserved by a worker
    - ``:delayed``   retry schedule, scored by due time in ms
    - ``:failed``    dead-letter ids, newest first, capped by ``remove_on_fail``
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        *,
        prefix: str = "relay:whatsappMessages",
        policy: Optional[JobPolicy] = None,
        result_ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self.prefix = prefix
        self.policy = policy or JobPolicy()
        self.result_ttl_seconds = result_ttl_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, redis: Optional[aioredis.Redis] = None) -> "DispatchQueue":
        client = redis or aioredis.from_url(settings.resolved_redis_url, decode_responses=True)
        return cls(
            client,
            prefix=settings.queue.prefix,
            policy=JobPolicy.from_settings(settings),
            result_ttl_seconds=settings.queue.result_ttl_seconds,
        )

    # ------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------

    def _key(self, suffix: str) -> str:
        return f"{self.prefix}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------

    async def enqueue(self, recipient: Optional[str], body: Optional[str], policy: Optional[JobPolicy] = None) -> str:
        """Persist a send request and return its job id without waiting for delivery."""
        recipient = str(recipient).strip() if recipient is not None else ""
        body = str(body) if body is not None else ""
        if not recipient or not body.strip():
            raise MessageValidationError("Number and message are required.")

        policy = policy or self.policy
        job_id = str(await self._redis.incr(self._key("id")))
        job = DispatchJob(
            id=job_id,
            recipient=recipient,
            body=body,
            max_attempts=policy.attempts,
            backoff_base_ms=policy.backoff_delay_ms,
            backoff_type=policy.backoff_type,
            remove_on_complete=policy.remove_on_complete,
            remove_on_fail=policy.remove_on_fail,
            created_at=self._clock(),
        )
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job_id), mapping=job.to_mapping())
            pipe.lpush(self._key("wait"), job_id)
            await pipe.execute()
        logger.info("queue.enqueued: job=%s recipient=%s attempts=%d", job_id, recipient, policy.attempts)
        return job_id

    # ------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------

    async def promote_due(self) -> int:
        """Move delayed jobs whose backoff elapsed back to the wait list."""
        delayed = self._key("delayed")
        due = await self._redis.zrangebyscore(delayed, "-inf", self._now_ms())
        promoted = 0
        for job_id in due:
            if await self._promote(job_id):
                promoted += 1
        if promoted:
            logger.debug("queue.promoted: %d delayed job(s)", promoted)
        return promoted

    async def _promote(self, job_id: str) -> bool:
        # The id leaves :delayed and enters :wait in one MULTI, so a failed round trip leaves it delayed.
        delayed = self._key("delayed")
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(delayed)
                if await pipe.zscore(delayed, job_id) is None:
                    # Another worker promoted it first.
                    return False
                pipe.multi()
                pipe.zrem(delayed, job_id)
                pipe.hset(self._job_key(job_id), "state", JobState.WAITING.value)
                pipe.lpush(self._key("wait"), job_id)
                await pipe.execute()
            except WatchError:
                logger.debug("queue.promote: job=%s raced with another worker", job_id)
                return False
        return True

    async def reserve(self) -> Optional[DispatchJob]:
        await self.promote_due()
        while True:
            job_id = await self._redis.lmove(self._key("wait"), self._key("active"), "RIGHT", "LEFT")
            if job_id is None:
                return None
            data = await self._redis.hgetall(self._job_key(job_id))
            if not data:
                logger.warning("queue.reserve: dropping orphaned job id=%s", job_id)
                await self._redis.lrem(self._key("active"), 0, job_id)
                continue
            job = DispatchJob.from_mapping(data)
            job.state = JobState.ACTIVE
            await self._redis.hset(self._job_key(job_id), "state", JobState.ACTIVE.value)
            return job

    async def complete(self, job: DispatchJob, result: JobResult) -> None:
        job.attempt += 1
        job.state = JobState.COMPLETED
        job.outcome = result.outcome
        job.message_id = result.message_id
        job.last_error = result.reason
        job.finished_at = self._clock()

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 0, job.id)
            pipe.hset(self._job_key(job.id), mapping=job.to_mapping())
            if job.remove_on_complete:
                pipe.expire(self._job_key(job.id), self.result_ttl_seconds)
            await pipe.execute()
        logger.info("queue.completed: job=%s outcome=%s", job.id, result.outcome.value)

    async def fail(self, job: DispatchJob, error: BaseException) -> JobResult:
        """Record a failed execution; schedule a retry or dead-letter the job."""
        job.attempt += 1
        job.last_error = str(error) or error.__class__.__name__
        result = JobResult.retryable(job.last_error)

        if job.attempt < job.max_attempts:
            delay = backoff_delay_ms(job.backoff_type, job.backoff_base_ms, job.attempt)
            job.state = JobState.DELAYED
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self._key("active"), 0, job.id)
                pipe.hset(self._job_key(job.id), mapping=job.to_mapping())
                pipe.zadd(self._key("delayed"), {job.id: self._now_ms() + delay})
                await pipe.execute()
            logger.warning(
                "queue.retry_scheduled: job=%s attempt=%d/%d delay_ms=%d error=%s",
                job.id, job.attempt, job.max_attempts, delay, job.last_error,
            )
            return result

        job.state = JobState.FAILED
        job.outcome = JobOutcome.RETRYABLE
        job.finished_at = self._clock()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 0, job.id)
            pipe.hset(self._job_key(job.id), mapping=job.to_mapping())
            pipe.lpush(self._key("failed"), job.id)
            await pipe.execute()
        await self._trim_dead_letters(job.remove_on_fail)
        logger.error("queue.dead_lettered: job=%s attempts=%d error=%s", job.id, job.attempt, job.last_error)
        return result

    async def _trim_dead_letters(self, keep: int) -> None:
        keep = max(keep, 0)
        overflow = await self._redis.lrange(self._key("failed"), keep, -1)
        if not overflow:
            return
        async with self._redis.pipeline(transaction=True) as pipe:
            for job_id in overflow:
                pipe.delete(self._job_key(job_id))
            if keep:
                pipe.ltrim(self._key("failed"), 0, keep - 1)
            else:
                pipe.delete(self._key("failed"))
            await pipe.execute()

    async def recover(self) -> int:
        """Return jobs stranded in the active list (crash mid-send) to the wait list."""
        recovered = 0
        while await self._redis.lmove(self._key("active"), self._key("wait"), "RIGHT", "RIGHT") is not None:
            recovered += 1
        if recovered:
            logger.warning("queue.recovered: %d job(s) returned to wait list", recovered)
        return recovered

    # ------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------

    async def get_job(self, job_id: str) -> Optional[DispatchJob]:
        data = await self._redis.hgetall(self._job_key(job_id))
        if not data:
            return None
        return DispatchJob.from_mapping(data)

    async def dead_letters(self, limit: int = 50) -> List[DispatchJob]:
        ids = await self._redis.lrange(self._key("failed"), 0, max(limit, 1) - 1)
        jobs = []
        for job_id in ids:
            job = await self.get_job(job_id)
            if job:
                jobs.append(job)
        return jobs

    async def counts(self) -> Dict[str, int]:
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.llen(self._key("wait"))
            pipe.llen(self._key("active"))
            pipe.zcard(self._key("delayed"))
            pipe.llen(self._key("failed"))
            waiting, active, delayed, failed = await pipe.execute()
        return {"waiting": waiting, "active": active, "delayed": delayed, "failed": failed}

    async def aclose(self) -> None:
        try:
            await self._redis.aclose()
        except Exception as e:
            logger.warning("Error closing Redis client: %s", e)


__all__ = [
    "DispatchJob",
    "DispatchQueue",
    "JobOutcome",
    "JobPolicy",
    "JobResult",
    "JobState",
    "backoff_delay_ms",
]
