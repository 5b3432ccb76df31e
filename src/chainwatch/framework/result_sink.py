"""
Result sink: authoritative persistence plus alert routing.

ResultSink takes ScoredEvents from the scoring workers and:
1. Upserts them into Storage keyed by event id, retrying briefly; if every
   attempt fails it raises PersistenceFailure so the dispatch queue keeps the
   job (persistence is the one failure allowed to hold a job back)
2. Notifies the AlertSink when an alert is required and the row is new, so a
   redelivered event never alerts twice. A row found after a failed write
   (the write may have landed before erroring) still counts as new
3. Retries failed notifications in the background, independently of the
   persistence write
4. Records dead-lettered jobs and raises the processing-exhausted alert
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from chainwatch.framework.config_loader import SinkConfig
from chainwatch.framework.errors import PersistenceFailure
from chainwatch.framework.interfaces import AlertSink, Storage
from chainwatch.framework.models import DeadLetter, QueueJob, ScoredEvent

if TYPE_CHECKING:
    from chainwatch.scoring.engine import ScoringEngine

logger = logging.getLogger(__name__)


class ResultSink:
    """
    Routes scored events to storage and the alerting collaborator.

    Usage (ProcessingHandler):
        sink = ResultSink(storage, alert_sink, config.sinks)
        await sink.deliver(scored)
        await sink.handle_exhausted(dead_letter)     # DispatchQueue on_exhausted
        await sink.aclose()                          # waits for pending alert retries
    """

    def __init__(self, storage: Storage, alert_sink: AlertSink, config: Optional[SinkConfig] = None):
        """
        Initialize the result sink.

        Args:
            storage: Authoritative store for scored events, cursors, dead-letters
            alert_sink: External alerting collaborator
            config: Retry settings (defaults from SinkConfig)
        """
        self.storage = storage
        self.alert_sink = alert_sink
        self.config = config or SinkConfig()
        self._retries: set[asyncio.Task] = set()
        # Event ids whose upsert raised; the row may exist without its alert having been sent
        self._unconfirmed: set[str] = set()

        self.persisted = 0
        self.duplicates = 0
        self.notified = 0
        self.notify_failures = 0

    async def deliver(self, scored: ScoredEvent) -> bool:
        """
        Persist a scored event and alert if required.

        Returns:
            True if the event was newly created in storage

        Raises:
            PersistenceFailure: If every persistence attempt failed
        """
        created = await self._persist(scored)
        if not created:
            self.duplicates += 1
            if scored.alert_required:
                logger.debug("Alert suppressed for redelivered event | event_id=%s", scored.event_id)
            return False

        if scored.alert_required:
            await self._send(
                lambda: self.alert_sink.notify(scored, scored.flags), f"alert event_id={scored.event_id}"
            )
        return True

    async def handle_exhausted(self, dead_letter: DeadLetter) -> None:
        """Record a dead-lettered job and raise the processing-exhausted alert once."""
        try:
            await self.storage.record_dead_letter(dead_letter)
        except Exception as exc:
            logger.error(
                "Dead-letter write failed | job_id=%s | error=%s", dead_letter.job_id, exc
            )
        await self._send(
            lambda: self.alert_sink.notify_exhausted(dead_letter), f"exhausted job_id={dead_letter.job_id}"
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _persist(self, scored: ScoredEvent) -> bool:
        attempts = max(1, self.config.persist_attempts)
        last_error: Optional[Exception] = None
        for attempt in range(attempts):
            try:
                created = await self.storage.upsert(scored)
            except Exception as exc:
                last_error = exc
                self._unconfirmed.add(scored.event_id)
                logger.warning(
                    "Persist failed | event_id=%s | attempt=%d/%d | error=%s",
                    scored.event_id,
                    attempt + 1,
                    attempts,
                    exc,
                )
                if attempt + 1 < attempts:
                    await asyncio.sleep(self.config.persist_base_delay_seconds * (2 ** attempt))
                continue
            self.persisted += 1
            if scored.event_id in self._unconfirmed:
                self._unconfirmed.discard(scored.event_id)
                if not created:
                    logger.info("Existing row after failed write treated as new | event_id=%s", scored.event_id)
                    created = True
            return created

        logger.error("Persist attempts exhausted | event_id=%s | error=%s", scored.event_id, last_error)
        raise PersistenceFailure(f"could not persist {scored.event_id}: {last_error}") from last_error

    # ------------------------------------------------------------------
    # Notification
    # ------------------------------------------------------------------

    async def _send(self, send: Callable[[], Awaitable[None]], what: str) -> None:
        try:
            await send()
        except Exception as exc:
            self.notify_failures += 1
            logger.warning("Notification failed, retrying in background | %s | error=%s", what, exc)
            task = asyncio.ensure_future(self._retry_send(send, what))
            self._retries.add(task)
            task.add_done_callback(self._retries.discard)
            return
        self.notified += 1

    async def _retry_send(self, send: Callable[[], Awaitable[None]], what: str) -> None:
        delay = self.config.notify_base_delay_seconds
        for attempt in range(2, self.config.notify_max_attempts + 1):
            await asyncio.sleep(delay)
            try:
                await send()
            except Exception as exc:
                self.notify_failures += 1
                logger.warning(
                    "Notification retry failed | %s | attempt=%d/%d | error=%s",
                    what,
                    attempt,
                    self.config.notify_max_attempts,
                    exc,
                )
                delay *= 2
                continue
            self.notified += 1
            return
        logger.error("Notification abandoned | %s | attempts=%d", what, self.config.notify_max_attempts)

    @property
    def pending_notifications(self) -> int:
        return len(self._retries)

    async def aclose(self, timeout: Optional[float] = None) -> None:
        """Wait for background notification retries, cancelling them after timeout."""
        if not self._retries:
            return
        done, pending = await asyncio.wait(set(self._retries), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Notification retries cancelled on close | pending=%d", len(pending))

    def stats(self) -> dict[str, Any]:
        return {
            "persisted": self.persisted,
            "duplicates": self.duplicates,
            "notified": self.notified,
            "notify_failures": self.notify_failures,
            "pending_notifications": self.pending_notifications,
        }


class ProcessingHandler:
    """
    Dispatch queue job handler: score once, then deliver.

    The ScoredEvent is cached on the job, so a retry after PersistenceFailure
    re-delivers the same result instead of scoring (and recording history) again.
    """

    def __init__(self, engine: "ScoringEngine", sink: ResultSink) -> None:
        self.engine = engine
        self.sink = sink

    async def __call__(self, job: QueueJob) -> None:
        if job.result is None:
            job.result = await self.engine.score(job.event)
        await self.sink.deliver(job.result)
