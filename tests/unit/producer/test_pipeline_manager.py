"""
Unit tests for PipelineManager.

Adapters, storage and the alert sink are injected, so no network or AWS
call is made.

Tests cover:
- build_sources() instantiates one adapter per known kind, one listener per subscription
- build_sources() skips unknown source kinds with a warning
- build_sources() before build() is rejected
- build_storage() / build_alert_sink() pick the configured backends
- run() returns immediately when no source is runnable
- End to end: a window with one large transfer and one malformed record
  produces one persisted, alerting result and exactly one notification
- Re-reading an uncommitted window after a restart does not alert twice
- A failed notification is retried without holding the job back
- snapshot() / collect_metrics() expose queue, listener and endpoint state
- shutdown() stops every component and closes the adapters
"""

import asyncio
import logging
from unittest.mock import patch

import pytest

from chainwatch.framework.config_loader import (
    LookupConfig,
    PipelineConfig,
    QueueConfig,
    RuleConfig,
    ScoringConfig,
    SinkConfig,
)
from chainwatch.producer.pipeline_manager import PipelineManager
from chainwatch.scoring.lookup import StaticListLookup
from chainwatch.sinks.alert_sinks import LogAlertSink, SnsAlertSink
from chainwatch.sinks.dynamodb_storage import DynamoDBStorage
from chainwatch.sinks.memory_storage import InMemoryStorage
from fakes import ONE_ETH, FakeAdapter, RecordingAlertSink, evm_tx, make_source, make_subscription

CURSOR_KEY = ("eth-test", "treasury")


def _config(**sink_overrides) -> PipelineConfig:
    return PipelineConfig(
        sources=(make_source(), make_source(id="btc-test", kind="bitcoin")),
        queue=QueueConfig(
            workers=2,
            max_attempts=2,
            base_delay_seconds=0.01,
            max_delay_seconds=0.05,
            shutdown_grace_seconds=0.5,
        ),
        scoring=ScoringConfig(
            alert_threshold=40,
            rules=(
                RuleConfig(id="value_over_threshold", params={"threshold": "1000"}),
                RuleConfig(id="unknown_counterpart"),
            ),
        ),
        lookup=LookupConfig(pep_lists=()),
        sinks=SinkConfig(notify_base_delay_seconds=0.01),
    )


def _manager(storage: InMemoryStorage, alert_sink: RecordingAlertSink, config=None) -> PipelineManager:
    manager = PipelineManager(
        config=config or _config(),
        storage=storage,
        alert_sink=alert_sink,
        lookup=StaticListLookup({}),
        adapters={"evm": FakeAdapter},
    )
    manager.build()
    adapter = manager.sources[0].adapter
    adapter.head = 101
    adapter.blocks = {
        100: [{"hash": "0xbroken"}],
        101: [evm_tx(101, 0, value_wei=5000 * ONE_ETH)],
    }
    return manager


async def _ingest_and_drain(manager: PipelineManager) -> None:
    """One listener cycle, then run the workers until the queue is empty."""
    await manager.sources[0].listeners[0].run_cycle()
    workers = asyncio.ensure_future(manager.queue.run())
    await manager.queue.join()
    manager.queue.close()
    await asyncio.wait_for(workers, timeout=2)
    await manager.sink.aclose(timeout=2)


class TestBuild:
    """Test component construction."""

    def test_known_kinds_registered(self) -> None:
        config = _config()
        config = PipelineConfig(
            sources=(
                make_source(
                    subscriptions=(make_subscription(), make_subscription(id="usdc", type="contract")),
                ),
            ),
            scoring=config.scoring,
        )
        manager = PipelineManager(config=config, lookup=StaticListLookup({}), adapters={"evm": FakeAdapter})
        manager.build()

        assert len(manager.sources) == 1
        runtime = manager.sources[0]
        assert isinstance(runtime.adapter, FakeAdapter)
        assert [listener.subscription.id for listener in runtime.listeners] == ["treasury", "usdc"]

    def test_unknown_kind_skipped(self, caplog: pytest.LogCaptureFixture) -> None:
        manager = PipelineManager(config=_config(), lookup=StaticListLookup({}), adapters={"evm": FakeAdapter})
        with caplog.at_level(logging.WARNING, logger="chainwatch.producer.pipeline_manager"):
            manager.build()

        assert [r.source.id for r in manager.sources] == ["eth-test"]
        assert any("btc-test" in r.getMessage() for r in caplog.records)

    def test_build_sources_before_build_rejected(self) -> None:
        manager = PipelineManager(config=_config(), lookup=StaticListLookup({}), adapters={"evm": FakeAdapter})
        with pytest.raises(RuntimeError, match=r"call build\(\) first"):
            manager.build_sources(manager.load_config())

    def test_build_is_idempotent(self) -> None:
        manager = _manager(InMemoryStorage(), RecordingAlertSink())
        sources = manager.sources
        manager.build()
        assert manager.sources is sources

    def test_default_backends(self) -> None:
        manager = PipelineManager(config=_config(), lookup=StaticListLookup({}), adapters={"evm": FakeAdapter})
        manager.build()

        assert isinstance(manager.storage, InMemoryStorage)
        assert isinstance(manager.alert_sink, LogAlertSink)

    def test_aws_backends(self) -> None:
        manager = PipelineManager(config=_config())
        sinks = SinkConfig(storage="dynamodb", alert_sink="sns", sns_topic_arn="arn:aws:sns:us-east-1:1:alerts")
        config = PipelineConfig(sources=(), sinks=sinks)
        with patch("boto3.client"):
            assert isinstance(manager.build_storage(config), DynamoDBStorage)
            assert isinstance(manager.build_alert_sink(config), SnsAlertSink)

    def test_run_without_sources_returns(self) -> None:
        config = PipelineConfig(sources=(make_source(id="btc-test", kind="bitcoin"),))
        manager = PipelineManager(config=config, lookup=StaticListLookup({}), adapters={"evm": FakeAdapter})

        asyncio.run(asyncio.wait_for(manager.run(), timeout=2))

        assert manager.sources == []


class TestEndToEnd:
    """Listener -> dedup -> queue -> scoring -> storage/alerts, all in memory."""

    def setup_method(self) -> None:
        self.storage = InMemoryStorage()
        self.alerts = RecordingAlertSink()
        self.manager = _manager(self.storage, self.alerts)

    def test_large_transfer_persisted_and_alerted_once(self) -> None:
        asyncio.run(_ingest_and_drain(self.manager))

        assert len(self.storage.events) == 1
        (scored,) = self.storage.events.values()
        assert scored.event.position == 101
        assert scored.alert_required is True
        assert scored.flags == ("value_over_threshold",)
        assert len(self.alerts.notified) == 1
        assert self.storage.cursors[CURSOR_KEY] == 101

    def test_redelivered_window_does_not_alert_twice(self) -> None:
        asyncio.run(_ingest_and_drain(self.manager))

        # Restart before the cursor write reached storage: the window is read again
        del self.storage.cursors[CURSOR_KEY]
        restarted = _manager(self.storage, self.alerts)
        asyncio.run(_ingest_and_drain(restarted))

        assert len(self.storage.events) == 1
        assert self.storage.upserts == 2
        assert len(self.alerts.notified) == 1
        assert restarted.sink.stats()["duplicates"] == 1

    def test_failed_notification_retried(self) -> None:
        alerts = RecordingAlertSink(fail_times=1)
        manager = _manager(InMemoryStorage(), alerts)

        asyncio.run(_ingest_and_drain(manager))

        assert manager.queue.stats()["completed"] == 1
        assert manager.queue.stats()["dead_lettered"] == 0
        assert alerts.attempts == 2
        assert len(alerts.notified) == 1
        assert manager.sink.stats()["notify_failures"] == 1

    def test_snapshot(self) -> None:
        asyncio.run(_ingest_and_drain(self.manager))
        snapshot = self.manager.snapshot()

        assert set(snapshot["endpoints"]) == {"eth-test"}
        listener = snapshot["listeners"][0]
        assert listener["cursor"] == 101
        assert listener["lag"] == 0
        assert listener["records_skipped"] == 1
        assert snapshot["queue"]["completed"] == 1
        assert snapshot["results"]["persisted"] == 1
        assert snapshot["results"]["notified"] == 1
        assert snapshot["dedup"] == {"entries": 1, "duplicates_dropped": 0}

    def test_collect_metrics(self) -> None:
        asyncio.run(_ingest_and_drain(self.manager))
        data = {d["MetricName"]: d for d in self.manager.collect_metrics()}

        assert data["JobsCompleted"]["Value"] == 1.0
        assert data["QueueWaiting"]["Value"] == 0.0
        assert data["HealthyEndpoints"]["Value"] == 2.0
        assert data["HealthyEndpoints"]["Dimensions"] == [{"Name": "Source", "Value": "eth-test"}]
        assert data["ListenerLag"]["Value"] == 0.0


class TestLifecycle:
    """Test run() / shutdown() with every component running."""

    def test_shutdown_stops_everything(self) -> None:
        storage = InMemoryStorage()
        alerts = RecordingAlertSink()
        manager = _manager(storage, alerts)

        async def scenario() -> None:
            task = asyncio.ensure_future(manager.run())
            for _ in range(200):
                if storage.cursors.get(CURSOR_KEY) == 101 and manager.queue.stats()["completed"] == 1:
                    break
                await asyncio.sleep(0.01)
            manager.shutdown()
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())

        assert len(storage.events) == 1
        assert len(alerts.notified) == 1
        assert manager.sources[0].adapter.closed is True
        assert manager.snapshot()["listeners"][0]["state"] == "stopped"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
