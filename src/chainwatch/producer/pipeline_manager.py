"""
PipelineManager: reads pipeline.yaml, builds every component, runs the event loop.

This is the core orchestrator of the chainwatch process:
1. Loads config/pipeline.yaml to determine active sources and settings
2. Instantiates a SourceAdapter subclass per source (unknown kinds are skipped)
3. Wires health registry -> listeners -> canonicalizer -> dedup gate ->
   dispatch queue -> scoring engine -> result sink
4. Runs asyncio.gather(registry.run()..., listener.run()..., queue.run(), metrics)

Components are constructed here and injected, never module-level singletons,
so tests can build several isolated pipelines side by side.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from chainwatch.connectors.evm_adapter import EvmAdapter
from chainwatch.connectors.solana_adapter import SolanaAdapter
from chainwatch.connectors.subgraph_adapter import SubgraphAdapter
from chainwatch.dispatch.dispatch_queue import DispatchQueue
from chainwatch.dispatch.priority import PriorityPolicy
from chainwatch.framework.base_adapter import SourceAdapter
from chainwatch.framework.config_loader import ConfigLoader, PipelineConfig, SourceConfig
from chainwatch.framework.interfaces import AlertSink, LookupService, Storage
from chainwatch.framework.models import HealthTransition
from chainwatch.framework.result_sink import ProcessingHandler, ResultSink
from chainwatch.framework.rule_registry import RuleRegistry
from chainwatch.ingest.canonicalizer import Canonicalizer
from chainwatch.ingest.cursor_store import CursorTracker
from chainwatch.ingest.dedup_cache import DedupCache, DedupGate
from chainwatch.ingest.health_registry import EndpointHealthRegistry
from chainwatch.ingest.source_listener import SourceListener
from chainwatch.scoring.engine import ScoringEngine
from chainwatch.scoring.lookup import build_lookup
from chainwatch.sinks.alert_sinks import LogAlertSink, SnsAlertSink
from chainwatch.sinks.cloudwatch_metrics import MetricsPublisher, metric
from chainwatch.sinks.dynamodb_storage import DynamoDBStorage
from chainwatch.sinks.memory_storage import InMemoryStorage

logger = logging.getLogger(__name__)

# Registry maps config source kinds -> adapter class
_ADAPTER_REGISTRY: dict[str, type[SourceAdapter]] = {
    "evm": EvmAdapter,
    "solana": SolanaAdapter,
    "subgraph": SubgraphAdapter,
}


@dataclass
class SourceRuntime:
    """Per-source components: one adapter and registry, one listener per subscription."""

    source: SourceConfig
    adapter: SourceAdapter
    registry: EndpointHealthRegistry
    canonicalizer: Canonicalizer
    listeners: list[SourceListener] = field(default_factory=list)


class PipelineManager:
    """
    Orchestrates the ingestion and scoring pipeline.

    Usage:
        manager = PipelineManager()
        asyncio.run(manager.run())       # called from main.py
        manager.shutdown()               # called from signal handler

    storage / alert_sink / lookup / adapters may be injected (tests, embedding);
    otherwise they are built from the sinks and lookup sections of the config.
    """

    DEFAULT_CONFIG_PATH = ConfigLoader.DEFAULT_CONFIG_PATH
    MAX_TRANSITIONS_KEPT = 100

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        config_path: str = DEFAULT_CONFIG_PATH,
        storage: Optional[Storage] = None,
        alert_sink: Optional[AlertSink] = None,
        lookup: Optional[LookupService] = None,
        adapters: Optional[dict[str, type[SourceAdapter]]] = None,
    ) -> None:
        self._config = config
        self._config_path = config_path
        self._adapters = adapters if adapters is not None else dict(_ADAPTER_REGISTRY)
        self.storage = storage
        self.alert_sink = alert_sink
        self.lookup = lookup

        self.sources: list[SourceRuntime] = []
        self.queue: Optional[DispatchQueue] = None
        self.engine: Optional[ScoringEngine] = None
        self.sink: Optional[ResultSink] = None
        self.dedup: Optional[DedupCache] = None
        self.gate: Optional[DedupGate] = None
        self.metrics: Optional[MetricsPublisher] = None
        self.transitions: deque[HealthTransition] = deque(maxlen=self.MAX_TRANSITIONS_KEPT)
        self._built = False

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def load_config(self) -> PipelineConfig:
        """Load and parse config/pipeline.yaml (or return the injected config)."""
        if self._config is None:
            self._config = ConfigLoader(self._config_path).load()
        return self._config

    def build_storage(self, config: PipelineConfig) -> Storage:
        sinks = config.sinks
        if sinks.storage == "dynamodb":
            return DynamoDBStorage(sinks.events_table, sinks.cursors_table, sinks.dead_letters_table, sinks.region)
        return InMemoryStorage()

    def build_alert_sink(self, config: PipelineConfig) -> AlertSink:
        sinks = config.sinks
        if sinks.alert_sink == "sns":
            return SnsAlertSink(sinks.sns_topic_arn, sinks.region)
        return LogAlertSink()

    def build_sources(self, config: PipelineConfig) -> list[SourceRuntime]:
        """
        Instantiate adapters, registries, canonicalizers and listeners per source.

        Unknown source kinds are logged as warnings and skipped.

        Raises:
            ValueError: If a source declares a subscription type its adapter cannot watch
            RuntimeError: If storage and the dedup gate have not been built yet
        """
        if self.gate is None or self.storage is None:
            raise RuntimeError("build_sources() needs storage and the dedup gate, call build() first")
        runtimes: list[SourceRuntime] = []
        for source in config.sources:
            adapter_cls = self._adapters.get(source.kind)
            if adapter_cls is None:
                logger.warning("Unknown source kind '%s' for source %s, skipping", source.kind, source.id)
                continue
            adapter = adapter_cls(source)
            adapter.validate()

            registry = EndpointHealthRegistry(source, adapter)
            registry.subscribe(self.transitions.append)
            runtime = SourceRuntime(
                source=source, adapter=adapter, registry=registry, canonicalizer=Canonicalizer(source)
            )
            for subscription in source.subscriptions:
                cursor = CursorTracker(self.storage, source.id, subscription.id, subscription.start_position)
                runtime.listeners.append(
                    SourceListener(
                        source, subscription, adapter, registry, runtime.canonicalizer, self.gate, cursor
                    )
                )
            runtimes.append(runtime)
            logger.info(
                "Registered source: %s (%s) | endpoints=%d | subscriptions=%d",
                source.id,
                adapter_cls.__name__,
                len(source.endpoints),
                len(source.subscriptions),
            )
        return runtimes

    def build(self) -> None:
        """Construct every component once. Safe to call repeatedly."""
        if self._built:
            return
        config = self.load_config()

        self.storage = self.storage or self.build_storage(config)
        self.alert_sink = self.alert_sink or self.build_alert_sink(config)
        self.lookup = self.lookup or build_lookup(config.lookup)

        self.engine = ScoringEngine(
            config.scoring,
            RuleRegistry(config.scoring).load_active_rules(),
            self.lookup,
            pep_lists=config.lookup.pep_lists,
        )
        self.sink = ResultSink(self.storage, self.alert_sink, config.sinks)
        self.queue = DispatchQueue(
            config.queue,
            ProcessingHandler(self.engine, self.sink),
            PriorityPolicy(config.priority),
            on_exhausted=self.sink.handle_exhausted,
        )
        self.dedup = DedupCache(config.dedup.ttl_seconds, config.dedup.max_entries)
        self.gate = DedupGate(self.dedup, self.queue.enqueue)
        self.sources = self.build_sources(config)

        if config.sinks.metrics_enabled:
            self.metrics = MetricsPublisher(
                self.collect_metrics,
                config.sinks.metrics_namespace,
                config.sinks.region,
                config.sinks.metrics_interval_seconds,
            )
        self._built = True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """
        Main async entry point: builds components and runs them until shutdown().

        Called by main.py via loop.run_until_complete(manager.run()).
        """
        self.build()
        if self.queue is None or self.sink is None:
            raise RuntimeError("PipelineManager.build() did not construct the queue and result sink")
        if not self.sources:
            logger.error("No runnable sources configured in pipeline.yaml, exiting")
            return

        config = self.load_config()
        logger.info(
            "PipelineManager starting | sources=%d | listeners=%d | workers=%d | storage=%s | alerts=%s",
            len(self.sources),
            sum(len(r.listeners) for r in self.sources),
            config.queue.workers,
            type(self.storage).__name__,
            type(self.alert_sink).__name__,
        )

        # First probe before listeners start, so selection starts from measured latencies
        await asyncio.gather(*(r.registry.probe_all() for r in self.sources))

        tasks = [r.registry.run() for r in self.sources]
        tasks += [listener.run() for r in self.sources for listener in r.listeners]
        tasks.append(self.queue.run())
        if self.metrics is not None:
            tasks.append(self.metrics.run())
        try:
            await asyncio.gather(*tasks)
        finally:
            await self._close()

    def shutdown(self) -> None:
        """
        Signal every component to stop gracefully.

        Listeners stop (an in-flight window is abandoned without committing its
        cursor), the queue stops accepting work and drains for up to
        shutdown_grace_seconds, then workers exit after their current job.
        """
        logger.info("PipelineManager shutdown initiated")
        for runtime in self.sources:
            runtime.registry.shutdown()
            for listener in runtime.listeners:
                listener.shutdown()
        if self.metrics is not None:
            self.metrics.shutdown()
        if self.queue is not None:
            self.queue.close()
            grace = self.load_config().queue.shutdown_grace_seconds
            asyncio.get_event_loop().call_later(grace, self.queue.shutdown)

    async def _close(self) -> None:
        for runtime in self.sources:
            await runtime.adapter.aclose()
        if self.lookup is not None:
            await self.lookup.aclose()
        if self.sink is not None:
            await self.sink.aclose(timeout=self.load_config().queue.shutdown_grace_seconds)
        if self.queue is not None:
            logger.info("PipelineManager stopped | queue=%s", self.queue.stats())

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        """Health, queue, cursor/lag and sink counters for the monitoring layer to poll."""
        return {
            "endpoints": {r.source.id: r.registry.snapshot() for r in self.sources},
            "listeners": [listener.snapshot() for r in self.sources for listener in r.listeners],
            "queue": self.queue.stats() if self.queue else {},
            "results": self.sink.stats() if self.sink else {},
            "dedup": {
                "entries": len(self.dedup) if self.dedup else 0,
                "duplicates_dropped": self.gate.dropped if self.gate else 0,
            },
            "health_transitions": [
                {"source_id": t.source_id, "url": t.url, "status": t.current.value, "at": t.at.isoformat()}
                for t in self.transitions
            ],
        }

    def collect_metrics(self) -> list[dict[str, Any]]:
        data: list[dict[str, Any]] = []
        if self.queue is not None:
            stats = self.queue.stats()
            data += [
                metric("QueueWaiting", stats["waiting"]),
                metric("QueueDelayed", stats["delayed"]),
                metric("QueueInFlight", stats["in_flight"]),
                metric("JobsCompleted", stats["completed"]),
                metric("JobsDeadLettered", stats["dead_lettered"]),
            ]
        for runtime in self.sources:
            data.append(metric("HealthyEndpoints", runtime.registry.healthy_count(), Source=runtime.source.id))
            for listener in runtime.listeners:
                if listener.lag is not None:
                    data.append(
                        metric(
                            "ListenerLag",
                            listener.lag,
                            Source=runtime.source.id,
                            Subscription=listener.subscription.id,
                        )
                    )
        return data
