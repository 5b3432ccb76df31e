"""
Endpoint Health Registry, one per source.

Tracks the endpoint pool of a source, probes it on a fixed interval
independent of listener activity, and answers "best healthy endpoint now":
1. probe_all() issues a bounded liveness call to every endpoint
2. An endpoint turns unhealthy after failure_threshold consecutive errors
   and healthy again after a single success
3. select_best() returns the lowest-latency healthy endpoint, configured
   priority breaking ties (and deciding outright before any latency is known)
4. Status flips are published as HealthTransition records

Listeners report the failures they observe, so failover does not have to wait
for the next probe. Records are immutable and replaced whole, so readers never
see a half-updated record and no lock is held across I/O.
"""

import asyncio
import logging
import math
import time
from dataclasses import replace
from typing import Callable, Optional

from chainwatch.framework.base_adapter import SourceAdapter
from chainwatch.framework.config_loader import SourceConfig
from chainwatch.framework.errors import NoHealthyEndpoint
from chainwatch.framework.models import EndpointHealth, HealthStatus, HealthTransition, utcnow

logger = logging.getLogger(__name__)

TransitionCallback = Callable[[HealthTransition], None]


class EndpointHealthRegistry:
    """
    Health state for the endpoints of a single source.

    Usage (PipelineManager):
        registry = EndpointHealthRegistry(source_config, adapter)
        registry.subscribe(on_transition)
        await asyncio.gather(registry.run(), ...)
        endpoint = registry.select_best()        # from SourceListener
        registry.shutdown()
    """

    def __init__(self, source: SourceConfig, adapter: SourceAdapter) -> None:
        self.source = source
        self.adapter = adapter
        self._records: dict[str, EndpointHealth] = {
            ep.url: EndpointHealth(url=ep.url, priority=ep.priority, weight=ep.weight, timeout=ep.timeout)
            for ep in source.endpoints
        }
        self._callbacks: list[TransitionCallback] = []
        self._stop: asyncio.Event = asyncio.Event()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, url: str) -> EndpointHealth:
        return self._records[url]

    def endpoints(self) -> list[EndpointHealth]:
        return list(self._records.values())

    def healthy_count(self) -> int:
        return sum(1 for r in self._records.values() if r.is_healthy)

    def select_best(self) -> EndpointHealth:
        """
        Return the best healthy endpoint.

        Raises:
            NoHealthyEndpoint: If every endpoint is unhealthy (retryable)
        """
        healthy = [r for r in self._records.values() if r.is_healthy]
        if not healthy:
            raise NoHealthyEndpoint(self.source.id)
        return min(
            healthy,
            key=lambda r: (r.latency_ms if r.latency_ms is not None else math.inf, r.priority, r.url),
        )

    def snapshot(self) -> list[dict]:
        """Observability surface: one dict per endpoint."""
        return [r.to_dict() for r in self._records.values()]

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def subscribe(self, callback: TransitionCallback) -> None:
        self._callbacks.append(callback)

    def record_probe(
        self, url: str, ok: bool, latency_ms: Optional[float] = None, error: Optional[str] = None
    ) -> EndpointHealth:
        """Apply one probe outcome and return the new record."""
        return self._apply(url, ok, latency_ms, error, probed=True)

    def report_failure(self, url: str, error: str) -> EndpointHealth:
        """Failure observed by a listener; counts toward the threshold like a failed probe."""
        return self._apply(url, False, None, error, probed=False)

    def report_success(self, url: str) -> EndpointHealth:
        return self._apply(url, True, None, None, probed=False)

    def _apply(
        self, url: str, ok: bool, latency_ms: Optional[float], error: Optional[str], probed: bool
    ) -> EndpointHealth:
        current = self._records[url]
        now = utcnow()
        if ok:
            latency = current.latency_ms
            if latency_ms is not None:
                alpha = self.source.latency_alpha
                latency = latency_ms if latency is None else alpha * latency_ms + (1 - alpha) * latency
            updated = replace(
                current,
                status=HealthStatus.HEALTHY,
                latency_ms=latency,
                consecutive_errors=0,
                last_error=None,
                last_probed_at=now if probed else current.last_probed_at,
            )
        else:
            errors = current.consecutive_errors + 1
            status = HealthStatus.UNHEALTHY if errors >= self.source.failure_threshold else current.status
            updated = replace(
                current,
                status=status,
                consecutive_errors=errors,
                last_error=error,
                last_probed_at=now if probed else current.last_probed_at,
            )

        self._records[url] = updated
        if updated.status is not current.status:
            self._emit(
                HealthTransition(
                    source_id=self.source.id,
                    url=url,
                    previous=current.status,
                    current=updated.status,
                    consecutive_errors=updated.consecutive_errors,
                    at=now,
                )
            )
        return updated

    def _emit(self, transition: HealthTransition) -> None:
        if transition.current is HealthStatus.HEALTHY:
            logger.info("Endpoint recovered | source=%s | url=%s", transition.source_id, transition.url)
        else:
            logger.warning(
                "Endpoint unhealthy | source=%s | url=%s | consecutive_errors=%d | error=%s",
                transition.source_id,
                transition.url,
                transition.consecutive_errors,
                self._records[transition.url].last_error,
            )
        for callback in self._callbacks:
            try:
                callback(transition)
            except Exception as exc:
                logger.warning("Health transition callback failed (non-fatal) | error=%s", exc)

    # ------------------------------------------------------------------
    # Probe loop
    # ------------------------------------------------------------------

    async def probe_all(self) -> None:
        await asyncio.gather(*(self._probe_one(r) for r in list(self._records.values())))

    async def _probe_one(self, endpoint: EndpointHealth) -> None:
        started = time.perf_counter()
        try:
            await asyncio.wait_for(self.adapter.probe(endpoint), timeout=endpoint.timeout)
        except asyncio.TimeoutError:
            self.record_probe(endpoint.url, False, error=f"probe timeout after {endpoint.timeout}s")
        except Exception as exc:
            self.record_probe(endpoint.url, False, error=str(exc))
        else:
            self.record_probe(endpoint.url, True, latency_ms=(time.perf_counter() - started) * 1000)

    async def run(self) -> None:
        """Probe every probe_interval_seconds until shutdown() is called."""
        logger.info(
            "EndpointHealthRegistry started | source=%s | endpoints=%d | interval=%.1fs",
            self.source.id,
            len(self._records),
            self.source.probe_interval_seconds,
        )
        while not self._stop.is_set():
            await self.probe_all()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.source.probe_interval_seconds)
            except asyncio.TimeoutError:
                pass

    def shutdown(self) -> None:
        self._stop.set()
