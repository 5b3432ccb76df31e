"""
Generic Source Listener, one per (source, subscription).

Every source kind shares this listener; source-specific work is delegated to
the SourceAdapter. Each cycle:
1. Selects the best healthy endpoint from the health registry
2. Reads the head and computes the next window [cursor+1, min(head, cursor+chunk_size)]
3. Fetches the window (re-selecting an endpoint on failure, up to fetch_attempts)
4. Canonicalizes every raw event and admits it through the dedup gate
5. Advances the cursor to the window end, only if all of the above succeeded

A failed window leaves the cursor where it was, so the next cycle retries
the same positions (at-least-once, no skipped positions).

State machine:
    IDLE -> POLLING -> PROCESSING -> IDLE
    any failure -> BACKOFF -> POLLING
    shutdown() -> STOPPED
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from chainwatch.framework.base_adapter import SourceAdapter
from chainwatch.framework.config_loader import SourceConfig, SubscriptionConfig
from chainwatch.framework.errors import NoHealthyEndpoint, WindowFetchFailed
from chainwatch.framework.models import EndpointHealth
from chainwatch.ingest.canonicalizer import Canonicalizer
from chainwatch.ingest.cursor_store import CursorTracker
from chainwatch.ingest.dedup_cache import DedupGate
from chainwatch.ingest.health_registry import EndpointHealthRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ListenerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    PROCESSING = "processing"
    BACKOFF = "backoff"
    STOPPED = "stopped"


class SourceListener:
    """
    Polls one subscription of one source and feeds canonical events downstream.

    Usage (PipelineManager):
        listener = SourceListener(source, subscription, adapter, registry,
                                  canonicalizer, gate, cursor)
        await asyncio.gather(listener.run(), ...)
        listener.shutdown()
    """

    _INITIAL_BACKOFF_SECONDS = 1.0

    def __init__(
        self,
        source: SourceConfig,
        subscription: SubscriptionConfig,
        adapter: SourceAdapter,
        registry: EndpointHealthRegistry,
        canonicalizer: Canonicalizer,
        gate: DedupGate,
        cursor: CursorTracker,
    ) -> None:
        self.source = source
        self.subscription = subscription
        self.adapter = adapter
        self.registry = registry
        self.canonicalizer = canonicalizer
        self.gate = gate
        self.cursor = cursor

        self.state = ListenerState.IDLE
        self.last_head: Optional[int] = None
        self.last_error: Optional[str] = None
        self.windows_completed = 0
        self.events_admitted = 0
        self._stop: asyncio.Event = asyncio.Event()

    # ------------------------------------------------------------------
    # One polling cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> bool:
        """
        Process at most one window.

        Returns:
            True if the listener is still behind the head after this window

        Raises:
            NoHealthyEndpoint: If no endpoint of the source is healthy
            WindowFetchFailed: If the head or the window could not be fetched or
                               handed downstream; the cursor was not advanced
        """
        if self.cursor.cursor is None:
            await self.cursor.load()

        self.state = ListenerState.POLLING
        cursor = self.cursor.position
        start = cursor + 1

        head = await self._with_failover(
            lambda ep: self.adapter.head_position(ep), start, start, "head"
        )
        self.last_head = head
        if head < start:
            self.state = ListenerState.IDLE
            return False

        end = min(head, cursor + self.source.chunk_size)
        raws = await self._with_failover(
            lambda ep: self.adapter.fetch_window(ep, self.subscription, start, end), start, end, "window"
        )

        self.state = ListenerState.PROCESSING
        admitted = 0
        for raw in sorted(raws, key=lambda r: (r.position, r.sub_index)):
            if self._stop.is_set():
                # Abandon without committing; the window is retried on restart
                logger.info(
                    "SourceListener abandoned window on shutdown | source=%s | subscription=%s | window=%d-%d",
                    self.source.id,
                    self.subscription.id,
                    start,
                    end,
                )
                return False
            event = self.canonicalizer.canonicalize(raw)
            if event is None:
                continue
            try:
                if await self.gate.admit(event):
                    admitted += 1
            except Exception as exc:
                raise WindowFetchFailed(
                    self.source.id, self.subscription.id, start, end, f"enqueue failed: {exc}"
                ) from exc

        try:
            await self.cursor.advance(end)
        except Exception as exc:
            raise WindowFetchFailed(
                self.source.id, self.subscription.id, start, end, f"cursor write failed: {exc}"
            ) from exc

        self.windows_completed += 1
        self.events_admitted += admitted
        self.state = ListenerState.IDLE
        logger.debug(
            "SourceListener window committed | source=%s | subscription=%s | window=%d-%d | raw=%d | admitted=%d",
            self.source.id,
            self.subscription.id,
            start,
            end,
            len(raws),
            admitted,
        )
        return end < head

    async def _with_failover(
        self, op: Callable[[EndpointHealth], Awaitable[T]], start: int, end: int, what: str
    ) -> T:
        """Run op against the best endpoint, re-selecting after each failure."""
        last_error: Optional[Exception] = None
        for _ in range(self.source.fetch_attempts):
            endpoint = self.registry.select_best()
            try:
                result = await op(endpoint)
            except Exception as exc:
                last_error = exc
                self.registry.report_failure(endpoint.url, str(exc))
                logger.warning(
                    "SourceListener %s fetch failed | source=%s | subscription=%s | url=%s | error=%s",
                    what,
                    self.source.id,
                    self.subscription.id,
                    endpoint.url,
                    exc,
                )
                continue
            self.registry.report_success(endpoint.url)
            return result
        raise WindowFetchFailed(self.source.id, self.subscription.id, start, end, f"{what}: {last_error}")

    # ------------------------------------------------------------------
    # Polling loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """
        Poll until shutdown() is called.

        Backs off exponentially (1s -> 2s -> 4s -> ... -> max_backoff_seconds)
        on any failure and resets after a successful cycle. While behind the
        head the next window starts immediately.
        """
        logger.info(
            "SourceListener started | source=%s | subscription=%s | type=%s | target=%s",
            self.source.id,
            self.subscription.id,
            self.subscription.type,
            self.subscription.target,
        )
        delay = self._INITIAL_BACKOFF_SECONDS
        while not self._stop.is_set():
            try:
                behind = await self.run_cycle()
                delay = self._INITIAL_BACKOFF_SECONDS
                self.last_error = None
            except Exception as exc:
                if self._stop.is_set():
                    break
                self.state = ListenerState.BACKOFF
                self.last_error = str(exc)
                level = logging.WARNING if isinstance(exc, (NoHealthyEndpoint, WindowFetchFailed)) else logging.ERROR
                logger.log(
                    level,
                    "SourceListener cycle failed, backing off %.1fs | source=%s | subscription=%s | error=%s",
                    delay,
                    self.source.id,
                    self.subscription.id,
                    exc,
                )
                await self._sleep(delay)
                delay = min(delay * 2, self.source.max_backoff_seconds)
                continue

            if not behind:
                await self._sleep(self.source.poll_interval_seconds)

        self.state = ListenerState.STOPPED
        logger.info("SourceListener stopped | source=%s | subscription=%s", self.source.id, self.subscription.id)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def shutdown(self) -> None:
        self._stop.set()

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def lag(self) -> Optional[int]:
        cursor = self.cursor.cursor
        if cursor is None or self.last_head is None:
            return None
        return max(0, self.last_head - cursor.position)

    def snapshot(self) -> dict[str, Any]:
        cursor = self.cursor.cursor
        return {
            "source_id": self.source.id,
            "subscription_id": self.subscription.id,
            "state": self.state.value,
            "cursor": cursor.position if cursor else None,
            "head": self.last_head,
            "lag": self.lag,
            "windows_completed": self.windows_completed,
            "events_admitted": self.events_admitted,
            "records_skipped": self.canonicalizer.skipped,
            "last_error": self.last_error,
        }
