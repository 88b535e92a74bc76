"""Durable job queues with retry, delay and retention semantics."""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

import redis.asyncio as redis


LOGGER = logging.getLogger("orchestrator.queue")


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class JobOptions:
    """Per-job scheduling options.

    ``remove_on_complete`` and ``remove_on_fail`` accept ``True`` to drop the
    job immediately, ``False`` to keep it, or an integer to keep only the most
    recent N jobs in that state.
    """

    delay: float = 0.0
    attempts: int = 1
    backoff_delay: float = 0.0
    remove_on_complete: bool | int = False
    remove_on_fail: bool | int = False

    def backoff_for(self, attempts_made: int) -> float:
        if self.backoff_delay <= 0:
            return 0.0
        return self.backoff_delay * (2 ** max(0, attempts_made - 1))


@dataclass(slots=True)
class QueueJob:
    id: str
    name: str
    payload: Dict[str, Any]
    options: JobOptions = field(default_factory=JobOptions)
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    ready_at: float = 0.0
    failed_reason: Optional[str] = None
    created_at: float = field(default_factory=time.time)


def _empty_counts() -> Dict[str, int]:
    return {state.value: 0 for state in JobState}


class TaskQueue:
    """Queue interface consumed by dispatchers, schedulers and workers."""

    name: str

    async def enqueue(
        self,
        job_id: str,
        name: str,
        payload: Dict[str, Any],
        options: Optional[JobOptions] = None,
    ) -> bool:  # pragma: no cover - interface
        """Add a job. Returns ``False`` when a job with *job_id* is already retained."""

        raise NotImplementedError

    async def get(self, job_id: str) -> Optional[QueueJob]:  # pragma: no cover - interface
        raise NotImplementedError

    async def remove(self, job_id: str, *, force: bool = False) -> bool:  # pragma: no cover - interface
        """Remove a job that is not currently being processed.

        With ``force`` an active job is removed as well; its consumer is assumed
        to be gone.
        """

        raise NotImplementedError

    async def release_stalled(self) -> List[str]:  # pragma: no cover - interface
        """Move jobs left active by a dead consumer back to waiting."""

        raise NotImplementedError

    async def reserve(self) -> Optional[QueueJob]:  # pragma: no cover - interface
        raise NotImplementedError

    async def complete(self, job_id: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def fail(self, job_id: str, error: str) -> bool:  # pragma: no cover - interface
        """Record a failed attempt. Returns ``True`` when the job will be retried."""

        raise NotImplementedError

    async def pause(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def resume(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def is_paused(self) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    async def active_count(self) -> int:  # pragma: no cover - interface
        raise NotImplementedError

    async def counts(self) -> Dict[str, int]:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryTaskQueue(TaskQueue):
    """In-process queue used for tests and single-node deployments."""

    def __init__(self, name: str, *, clock=time.time) -> None:
        self.name = name
        self._clock = clock
        self._jobs: Dict[str, QueueJob] = {}
        self._order: Dict[str, int] = {}
        self._sequence = itertools.count()
        self._completed: Deque[str] = deque()
        self._failed: Deque[str] = deque()
        self._paused = False
        self._lock = asyncio.Lock()

    async def enqueue(
        self,
        job_id: str,
        name: str,
        payload: Dict[str, Any],
        options: Optional[JobOptions] = None,
    ) -> bool:
        opts = options or JobOptions()
        async with self._lock:
            if job_id in self._jobs:
                return False
            now = self._clock()
            self._jobs[job_id] = QueueJob(
                id=job_id,
                name=name,
                payload=dict(payload),
                options=opts,
                state=JobState.DELAYED if opts.delay > 0 else JobState.WAITING,
                ready_at=now + max(0.0, opts.delay),
            )
            self._order[job_id] = next(self._sequence)
            return True

    async def get(self, job_id: str) -> Optional[QueueJob]:
        async with self._lock:
            return self._jobs.get(job_id)

    async def remove(self, job_id: str, *, force: bool = False) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or (job.state is JobState.ACTIVE and not force):
                return False
            self._forget(job_id)
            return True

    async def release_stalled(self) -> List[str]:
        async with self._lock:
            now = self._clock()
            released = []
            for job in self._jobs.values():
                if job.state is JobState.ACTIVE:
                    job.state = JobState.WAITING
                    job.ready_at = now
                    released.append(job.id)
            return released

    async def reserve(self) -> Optional[QueueJob]:
        async with self._lock:
            if self._paused:
                return None
            now = self._clock()
            ready = [
                job
                for job in self._jobs.values()
                if job.state in (JobState.WAITING, JobState.DELAYED) and job.ready_at <= now
            ]
            if not ready:
                return None
            job = min(ready, key=lambda item: (item.ready_at, self._order[item.id]))
            job.state = JobState.ACTIVE
            job.attempts_made += 1
            return job

    async def complete(self, job_id: str) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.state = JobState.COMPLETED
            self._retain(job, self._completed, job.options.remove_on_complete)

    async def fail(self, job_id: str, error: str) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            job.failed_reason = error
            if job.attempts_made < job.options.attempts:
                job.state = JobState.DELAYED
                job.ready_at = self._clock() + job.options.backoff_for(job.attempts_made)
                return True
            job.state = JobState.FAILED
            self._retain(job, self._failed, job.options.remove_on_fail)
            return False

    async def pause(self) -> None:
        self._paused = True

    async def resume(self) -> None:
        self._paused = False

    async def is_paused(self) -> bool:
        return self._paused

    async def active_count(self) -> int:
        async with self._lock:
            return sum(1 for job in self._jobs.values() if job.state is JobState.ACTIVE)

    async def counts(self) -> Dict[str, int]:
        async with self._lock:
            now = self._clock()
            counts = _empty_counts()
            for job in self._jobs.values():
                state = job.state
                if state in (JobState.WAITING, JobState.DELAYED):
                    state = JobState.DELAYED if job.ready_at > now else JobState.WAITING
                counts[state.value] += 1
            return counts

    def _retain(self, job: QueueJob, history: Deque[str], policy: bool | int) -> None:
        if policy is True:
            self._forget(job.id)
            return
        history.append(job.id)
        if policy is False or isinstance(policy, bool):
            return
        while len(history) > max(0, int(policy)):
            self._forget(history.popleft())

    def _forget(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)
        self._order.pop(job_id, None)
        for history in (self._completed, self._failed):
            if job_id in history:
                history.remove(job_id)


class RedisTaskQueue(TaskQueue):
    """Redis backed queue: a hash per job, a sorted set of ready times and an active set."""

    def __init__(
        self,
        name: str,
        url: str | None = None,
        *,
        prefix: str = "orchestrator:queue",
        client: Optional[redis.Redis] = None,
    ) -> None:
        if client is None and not url:
            raise ValueError("RedisTaskQueue requires a url or a client")
        self.name = name
        self._client = client if client is not None else redis.from_url(url, decode_responses=True)
        self._base = f"{prefix}:{name}"

    def _job_key(self, job_id: str) -> str:
        return f"{self._base}:job:{job_id}"

    @property
    def _scheduled_key(self) -> str:
        return f"{self._base}:scheduled"

    @property
    def _active_key(self) -> str:
        return f"{self._base}:active"

    @property
    def _paused_key(self) -> str:
        return f"{self._base}:paused"

    def _history_key(self, state: JobState) -> str:
        return f"{self._base}:{state.value}"

    async def enqueue(
        self,
        job_id: str,
        name: str,
        payload: Dict[str, Any],
        options: Optional[JobOptions] = None,
    ) -> bool:
        opts = options or JobOptions()
        key = self._job_key(job_id)
        state = JobState.DELAYED if opts.delay > 0 else JobState.WAITING
        if not await self._client.hsetnx(key, "state", state.value):
            return False
        ready_at = time.time() + max(0.0, opts.delay)
        await self._client.hset(
            key,
            mapping={
                "name": name,
                "payload": json.dumps(payload, default=str),
                "options": json.dumps(asdict(opts)),
                "attempts_made": 0,
                "ready_at": ready_at,
                "created_at": time.time(),
            },
        )
        await self._client.zadd(self._scheduled_key, {job_id: ready_at})
        return True

    async def get(self, job_id: str) -> Optional[QueueJob]:
        data = await self._client.hgetall(self._job_key(job_id))
        if not data or "state" not in data:
            return None
        return QueueJob(
            id=job_id,
            name=data.get("name", ""),
            payload=json.loads(data.get("payload") or "{}"),
            options=JobOptions(**json.loads(data.get("options") or "{}")),
            state=JobState(data["state"]),
            attempts_made=int(data.get("attempts_made") or 0),
            ready_at=float(data.get("ready_at") or 0.0),
            failed_reason=data.get("failed_reason"),
            created_at=float(data.get("created_at") or 0.0),
        )

    async def remove(self, job_id: str, *, force: bool = False) -> bool:
        state = await self._client.hget(self._job_key(job_id), "state")
        if state is None or (state == JobState.ACTIVE.value and not force):
            return False
        await self._client.srem(self._active_key, job_id)
        await self._forget(job_id)
        return True

    async def release_stalled(self) -> List[str]:
        released: List[str] = []
        for job_id in await self._client.smembers(self._active_key):
            await self._client.srem(self._active_key, job_id)
            key = self._job_key(job_id)
            if await self._client.hget(key, "state") != JobState.ACTIVE.value:
                continue
            ready_at = time.time()
            await self._client.hset(key, mapping={"state": JobState.WAITING.value, "ready_at": ready_at})
            await self._client.zadd(self._scheduled_key, {job_id: ready_at})
            released.append(job_id)
        return released

    async def reserve(self) -> Optional[QueueJob]:
        if await self.is_paused():
            return None
        candidates = await self._client.zrangebyscore(
            self._scheduled_key, "-inf", time.time(), start=0, num=1
        )
        if not candidates:
            return None
        job_id = candidates[0]
        if not await self._client.zrem(self._scheduled_key, job_id):
            return None
        key = self._job_key(job_id)
        await self._client.sadd(self._active_key, job_id)
        await self._client.hset(key, "state", JobState.ACTIVE.value)
        await self._client.hincrby(key, "attempts_made", 1)
        return await self.get(job_id)

    async def complete(self, job_id: str) -> None:
        job = await self.get(job_id)
        await self._client.srem(self._active_key, job_id)
        if job is None:
            return
        await self._client.hset(self._job_key(job_id), "state", JobState.COMPLETED.value)
        await self._retain(job_id, JobState.COMPLETED, job.options.remove_on_complete)

    async def fail(self, job_id: str, error: str) -> bool:
        job = await self.get(job_id)
        await self._client.srem(self._active_key, job_id)
        if job is None:
            return False
        key = self._job_key(job_id)
        if job.attempts_made < job.options.attempts:
            ready_at = time.time() + job.options.backoff_for(job.attempts_made)
            await self._client.hset(
                key,
                mapping={
                    "state": JobState.DELAYED.value,
                    "ready_at": ready_at,
                    "failed_reason": error,
                },
            )
            await self._client.zadd(self._scheduled_key, {job_id: ready_at})
            return True
        await self._client.hset(key, mapping={"state": JobState.FAILED.value, "failed_reason": error})
        await self._retain(job_id, JobState.FAILED, job.options.remove_on_fail)
        return False

    async def pause(self) -> None:
        await self._client.set(self._paused_key, "1")

    async def resume(self) -> None:
        await self._client.delete(self._paused_key)

    async def is_paused(self) -> bool:
        return bool(await self._client.exists(self._paused_key))

    async def active_count(self) -> int:
        return int(await self._client.scard(self._active_key))

    async def counts(self) -> Dict[str, int]:
        now = time.time()
        counts = _empty_counts()
        counts[JobState.WAITING.value] = int(await self._client.zcount(self._scheduled_key, "-inf", now))
        counts[JobState.DELAYED.value] = int(
            await self._client.zcount(self._scheduled_key, f"({now}", "+inf")
        )
        counts[JobState.ACTIVE.value] = await self.active_count()
        counts[JobState.COMPLETED.value] = int(await self._client.llen(self._history_key(JobState.COMPLETED)))
        counts[JobState.FAILED.value] = int(await self._client.llen(self._history_key(JobState.FAILED)))
        return counts

    async def close(self) -> None:
        await self._client.aclose()

    async def _retain(self, job_id: str, state: JobState, policy: bool | int) -> None:
        if policy is True:
            await self._client.delete(self._job_key(job_id))
            return
        history = self._history_key(state)
        await self._client.lpush(history, job_id)
        if isinstance(policy, bool):
            return
        keep = max(0, int(policy))
        overflow: List[str] = await self._client.lrange(history, keep, -1)
        for stale_id in overflow:
            await self._client.delete(self._job_key(stale_id))
        if keep:
            await self._client.ltrim(history, 0, keep - 1)
        else:
            await self._client.delete(history)

    async def _forget(self, job_id: str) -> None:
        await self._client.zrem(self._scheduled_key, job_id)
        await self._client.lrem(self._history_key(JobState.COMPLETED), 0, job_id)
        await self._client.lrem(self._history_key(JobState.FAILED), 0, job_id)
        await self._client.delete(self._job_key(job_id))


def build_queue(name: str, redis_url: str | None, *, prefix: str = "orchestrator:queue") -> TaskQueue:
    if redis_url:
        try:
            return RedisTaskQueue(name, redis_url, prefix=prefix)
        except Exception:  # pragma: no cover - fallback when redis unavailable
            LOGGER.warning("redis queue initialisation failed", extra={"queue": name}, exc_info=True)
    return MemoryTaskQueue(name)


__all__ = [
    "JobOptions",
    "JobState",
    "MemoryTaskQueue",
    "QueueJob",
    "RedisTaskQueue",
    "TaskQueue",
    "build_queue",
]
