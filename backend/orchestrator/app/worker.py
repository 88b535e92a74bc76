"""Background consumers that feed queued jobs to their handlers."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .queue import QueueJob, TaskQueue


LOGGER = logging.getLogger("orchestrator.worker")

JobHandler = Callable[[QueueJob], Awaitable[object]]


class QueueWorker:
    """Reserve jobs from *queue* one at a time and run *handler* on them."""

    def __init__(
        self,
        queue: TaskQueue,
        handler: JobHandler,
        *,
        poll_interval: float = 0.5,
        name: Optional[str] = None,
    ) -> None:
        self._queue = queue
        self._handler = handler
        self._poll_interval = poll_interval
        self._name = name or f"worker-{queue.name}"
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self._name)

    async def close(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def run_once(self) -> bool:
        """Process at most one ready job. Returns ``False`` when nothing was ready."""

        job = await self._queue.reserve()
        if job is None:
            return False
        try:
            await self._handler(job)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            retried = await self._queue.fail(job.id, str(exc) or exc.__class__.__name__)
            LOGGER.warning(
                "queue_job_failed",
                extra={
                    "queue": self._queue.name,
                    "job_id": job.id,
                    "job_name": job.name,
                    "attempt": job.attempts_made,
                    "retrying": retried,
                },
                exc_info=True,
            )
        else:
            await self._queue.complete(job.id)
            LOGGER.debug("queue_job_completed", extra={"queue": self._queue.name, "job_id": job.id})
        return True

    async def _run(self) -> None:
        while True:
            try:
                processed = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("queue_worker_iteration_failed", extra={"queue": self._queue.name})
                processed = False
            if not processed:
                await asyncio.sleep(self._poll_interval)


__all__ = ["JobHandler", "QueueWorker"]
