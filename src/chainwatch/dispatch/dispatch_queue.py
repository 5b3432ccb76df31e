"""
Dispatch Queue: priority-ordered, retrying work queue in front of scoring.

1. enqueue() wraps a ComplianceEvent in a QueueJob with a priority computed
   once from the event
2. A bounded pool of workers pulls the highest-priority eligible job
3. A failed job is retried after base_delay * 2^attempt (capped)
4. After max_attempts it is dead-lettered and on_exhausted runs exactly once;
   PersistenceFailure is the exception: it is retried indefinitely
5. stats() exposes waiting / delayed / in-flight / completed / dead-lettered
6. Jobs still waiting or delayed when the workers stop are dead-lettered too,
   since their cursor has already moved past them

Two heaps back the queue: ready jobs keyed by (-priority, sequence) and
delayed jobs keyed by next_eligible_at. Jobs of equal priority run in
enqueue order, though nothing downstream relies on that.
"""

import asyncio
import heapq
import itertools
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from chainwatch.framework.config_loader import QueueConfig
from chainwatch.framework.errors import PersistenceFailure, ProcessingExhausted
from chainwatch.framework.models import ComplianceEvent, DeadLetter, QueueJob

logger = logging.getLogger(__name__)

JobHandler = Callable[[QueueJob], Awaitable[None]]
ExhaustedHandler = Callable[[DeadLetter], Awaitable[None]]


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number attempt (0-based): base * 2^attempt, capped."""
    return min(base_delay * (2 ** attempt), max_delay)


class DispatchQueue:
    """
    Usage (PipelineManager):
        queue = DispatchQueue(config.queue, handler, PriorityPolicy(config.priority), on_exhausted)
        await gate.admit(event)          # gate calls queue.enqueue
        await asyncio.gather(queue.run(), ...)
        queue.close()                    # stop accepting, drain what is left
        queue.shutdown()                 # workers exit after their current job
    """

    def __init__(
        self,
        config: QueueConfig,
        handler: JobHandler,
        priority: Callable[[ComplianceEvent], int],
        on_exhausted: Optional[ExhaustedHandler] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._handler = handler
        self._priority = priority
        self._on_exhausted = on_exhausted
        self._clock = clock

        self._ready: list[tuple[int, int, QueueJob]] = []
        self._delayed: list[tuple[float, int, QueueJob]] = []
        self._seq = itertools.count()
        self._cond = asyncio.Condition()
        self._stop: asyncio.Event = asyncio.Event()
        self._closing = False
        self._wake_task: Optional[asyncio.Task] = None

        self._in_flight = 0
        self._completed = 0
        self._retried = 0
        self.dead_letters: list[DeadLetter] = []

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(self, event: ComplianceEvent) -> QueueJob:
        """
        Raises:
            RuntimeError: If the queue was closed or shut down
        """
        if self._closing or self._stop.is_set():
            raise RuntimeError("dispatch queue is not accepting jobs")
        job = QueueJob(job_id=event.event_id, event=event, priority=self._priority(event))
        async with self._cond:
            heapq.heappush(self._ready, (-job.priority, next(self._seq), job))
            self._cond.notify_all()
        return job

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Run the worker pool until shutdown(), or until closed and drained."""
        logger.info("DispatchQueue started | workers=%d | max_attempts=%d", self.config.workers, self.config.max_attempts)
        await asyncio.gather(*(self._worker(n) for n in range(self.config.workers)))
        await self._dead_letter_remaining()
        logger.info("DispatchQueue stopped | %s", self._format_stats())

    async def _worker(self, worker_id: int) -> None:
        while True:
            job = await self._next_job()
            if job is None:
                return
            try:
                await self._handler(job)
            except Exception as exc:
                await self._handle_failure(job, exc)
            else:
                self._completed += 1
            finally:
                async with self._cond:
                    self._in_flight -= 1
                    self._cond.notify_all()

    async def _next_job(self) -> Optional[QueueJob]:
        async with self._cond:
            while True:
                if self._stop.is_set():
                    return None
                self._promote_due()
                if self._ready:
                    _, _, job = heapq.heappop(self._ready)
                    self._in_flight += 1
                    return job
                if self._closing and not self._delayed and self._in_flight == 0:
                    self._cond.notify_all()
                    return None
                timeout = self._delayed[0][0] - self._clock() if self._delayed else None
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job = heapq.heappop(self._delayed)
            heapq.heappush(self._ready, (-job.priority, next(self._seq), job))

    async def _handle_failure(self, job: QueueJob, exc: Exception) -> None:
        job.attempts += 1
        job.last_error = f"{type(exc).__name__}: {exc}"
        persistence = isinstance(exc, PersistenceFailure)

        if persistence or job.attempts < self.config.max_attempts:
            delay = self.retry_delay(job.attempts - 1)
            job.next_eligible_at = self._clock() + delay
            self._retried += 1
            logger.log(
                logging.ERROR if persistence and job.attempts >= self.config.max_attempts else logging.WARNING,
                "DispatchQueue job failed, retrying in %.2fs | job_id=%s | attempt=%d | error=%s",
                delay,
                job.job_id,
                job.attempts,
                job.last_error,
            )
            async with self._cond:
                heapq.heappush(self._delayed, (job.next_eligible_at, next(self._seq), job))
                self._cond.notify_all()
            return

        logger.error("%s", ProcessingExhausted(job.job_id, job.attempts, job.last_error))
        await self._dead_letter(job, job.last_error or "unknown error")

    async def _dead_letter_remaining(self) -> None:
        """Jobs still waiting or delayed when the workers stop are dead-lettered, never dropped."""
        async with self._cond:
            remaining = [job for _, _, job in sorted(self._ready)] + [job for _, _, job in sorted(self._delayed)]
            self._ready.clear()
            self._delayed.clear()
        if remaining:
            logger.warning("DispatchQueue stopped with unfinished jobs, dead-lettering | jobs=%d", len(remaining))
        for job in remaining:
            reason = "shutdown before processing"
            if job.last_error:
                reason = f"shutdown before completion; last error: {job.last_error}"
            logger.error("DispatchQueue job dead-lettered on shutdown | job_id=%s | attempts=%d", job.job_id, job.attempts)
            await self._dead_letter(job, reason)

    async def _dead_letter(self, job: QueueJob, reason: str) -> None:
        dead_letter = DeadLetter(job_id=job.job_id, event=job.event, attempts=job.attempts, last_error=reason)
        self.dead_letters.append(dead_letter)
        if self._on_exhausted is not None:
            try:
                await self._on_exhausted(dead_letter)
            except Exception as handler_exc:
                logger.error(
                    "Dead-letter handler failed; record kept in memory | job_id=%s | error=%s",
                    job.job_id,
                    handler_exc,
                )

    def retry_delay(self, attempt: int) -> float:
        return backoff_delay(attempt, self.config.base_delay_seconds, self.config.max_delay_seconds)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def join(self) -> None:
        """Wait until no job is waiting, delayed or in flight."""
        async with self._cond:
            await self._cond.wait_for(lambda: not self._ready and not self._delayed and self._in_flight == 0)

    def close(self) -> None:
        """Stop accepting jobs; workers exit once everything queued has finished."""
        self._closing = True
        self._schedule_wake()

    def shutdown(self) -> None:
        """Workers exit after finishing their current job."""
        self._stop.set()
        self._schedule_wake()

    def _schedule_wake(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop, so no worker is waiting
        self._wake_task = loop.create_task(self._wake())

    async def _wake(self) -> None:
        async with self._cond:
            self._cond.notify_all()

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        return {
            "waiting": len(self._ready),
            "delayed": len(self._delayed),
            "in_flight": self._in_flight,
            "completed": self._completed,
            "dead_lettered": len(self.dead_letters),
            "retried": self._retried,
        }

    def _format_stats(self) -> str:
        return " | ".join(f"{k}={v}" for k, v in self.stats().items())
