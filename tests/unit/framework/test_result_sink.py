"""
Unit tests for ResultSink and ProcessingHandler.

Tests cover:
- deliver(): persists, alerts exactly once for a new alert-worthy row
- Redelivered events (row already present) never alert again
- Persistence retries, then PersistenceFailure
- A row committed by a write that then failed still alerts once
- Notification failures are retried in the background without failing delivery
- handle_exhausted(): dead-letter recorded and exhausted alert raised
- ProcessingHandler scores once and re-delivers the cached result on retry
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from chainwatch.framework.config_loader import SinkConfig
from chainwatch.framework.errors import PersistenceFailure
from chainwatch.framework.models import ComplianceStatus, DeadLetter, QueueJob, ScoredEvent, utcnow
from chainwatch.framework.result_sink import ProcessingHandler, ResultSink
from chainwatch.sinks.memory_storage import InMemoryStorage
from fakes import RecordingAlertSink, make_event

FAST = SinkConfig(persist_attempts=3, persist_base_delay_seconds=0, notify_max_attempts=3, notify_base_delay_seconds=0.001)


def make_scored(alert_required: bool = True, **event_overrides) -> ScoredEvent:
    return ScoredEvent(
        event=make_event(**event_overrides),
        risk_score=80 if alert_required else 10,
        flags=("value_over_threshold",) if alert_required else (),
        alert_required=alert_required,
        status=ComplianceStatus.ESCALATED if alert_required else ComplianceStatus.APPROVED,
        processed_at=utcnow(),
    )


class FlakyStorage(InMemoryStorage):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def upsert(self, scored: ScoredEvent) -> bool:
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("storage unreachable")
        return await super().upsert(scored)


class WriteThenTimeoutStorage(InMemoryStorage):
    """Commits the row, then reports a timeout for the first `failures` upserts."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def upsert(self, scored: ScoredEvent) -> bool:
        created = await super().upsert(scored)
        if self.failures > 0:
            self.failures -= 1
            raise TimeoutError("write acknowledged too late")
        return created


class TestDeliver:
    """Test persistence and alert routing."""

    def setup_method(self) -> None:
        self.storage = InMemoryStorage()
        self.alerts = RecordingAlertSink()
        self.sink = ResultSink(self.storage, self.alerts, FAST)

    def test_new_alert_row_notifies_once(self) -> None:
        scored = make_scored()

        assert asyncio.run(self.sink.deliver(scored)) is True
        assert self.storage.events[scored.event_id] is scored
        assert len(self.alerts.notified) == 1
        assert self.alerts.notified[0][1] == ("value_over_threshold",)

    def test_redelivery_does_not_alert_again(self) -> None:
        scored = make_scored()

        async def scenario():
            return [await self.sink.deliver(scored), await self.sink.deliver(scored)]

        assert asyncio.run(scenario()) == [True, False]
        assert len(self.alerts.notified) == 1
        assert len(self.storage.events) == 1
        assert self.sink.stats()["duplicates"] == 1

    def test_no_alert_below_threshold(self) -> None:
        asyncio.run(self.sink.deliver(make_scored(alert_required=False)))
        assert self.alerts.notified == []
        assert self.sink.persisted == 1


class TestPersistence:
    def test_transient_failure_retried(self) -> None:
        storage = FlakyStorage(failures=2)
        sink = ResultSink(storage, RecordingAlertSink(), FAST)

        assert asyncio.run(sink.deliver(make_scored())) is True
        assert len(storage.events) == 1

    def test_exhausted_attempts_raise_persistence_failure(self) -> None:
        alerts = RecordingAlertSink()
        sink = ResultSink(FlakyStorage(failures=10), alerts, FAST)

        with pytest.raises(PersistenceFailure):
            asyncio.run(sink.deliver(make_scored()))
        assert alerts.notified == []

    def test_row_written_before_timeout_still_alerts(self) -> None:
        storage = WriteThenTimeoutStorage(failures=1)
        alerts = RecordingAlertSink()
        sink = ResultSink(storage, alerts, FAST)

        assert asyncio.run(sink.deliver(make_scored())) is True
        assert len(storage.events) == 1
        assert len(alerts.notified) == 1

    def test_row_written_before_persistence_failure_alerts_on_retry(self) -> None:
        storage = WriteThenTimeoutStorage(failures=3)
        alerts = RecordingAlertSink()
        sink = ResultSink(storage, alerts, FAST)
        scored = make_scored()

        async def scenario():
            with pytest.raises(PersistenceFailure):
                await sink.deliver(scored)
            created = await sink.deliver(scored)
            again = await sink.deliver(scored)
            return created, again

        assert asyncio.run(scenario()) == (True, False)
        assert len(alerts.notified) == 1


class TestNotificationRetry:
    def test_failed_notification_retried_in_background(self) -> None:
        alerts = RecordingAlertSink(fail_times=1)
        sink = ResultSink(InMemoryStorage(), alerts, FAST)

        async def scenario():
            created = await sink.deliver(make_scored())
            pending = sink.pending_notifications
            await sink.aclose(timeout=1.0)
            return created, pending

        created, pending = asyncio.run(scenario())

        assert created is True
        assert pending == 1
        assert len(alerts.notified) == 1
        assert sink.notify_failures == 1
        assert sink.notified == 1

    def test_notification_abandoned_after_max_attempts(self) -> None:
        alerts = RecordingAlertSink(fail_times=10)
        sink = ResultSink(InMemoryStorage(), alerts, FAST)

        async def scenario():
            await sink.deliver(make_scored())
            await sink.aclose(timeout=1.0)

        asyncio.run(scenario())
        assert alerts.attempts == FAST.notify_max_attempts
        assert alerts.notified == []


class TestExhausted:
    def test_dead_letter_recorded_and_alerted(self) -> None:
        storage = InMemoryStorage()
        alerts = RecordingAlertSink()
        sink = ResultSink(storage, alerts, FAST)
        event = make_event()
        dead_letter = DeadLetter(job_id=event.event_id, event=event, attempts=5, last_error="RuntimeError: boom")

        asyncio.run(sink.handle_exhausted(dead_letter))

        assert storage.dead_letters[event.event_id] is dead_letter
        assert alerts.exhausted == [dead_letter]


class TestProcessingHandler:
    """Test score-once semantics across persistence retries."""

    def test_scores_once_across_retries(self) -> None:
        scored = make_scored()
        engine = MagicMock()
        engine.score = AsyncMock(return_value=scored)
        storage = FlakyStorage(failures=3)
        handler = ProcessingHandler(engine, ResultSink(storage, RecordingAlertSink(), FAST))
        job = QueueJob(job_id=scored.event_id, event=scored.event, priority=0)

        async def scenario():
            with pytest.raises(PersistenceFailure):
                await handler(job)
            await handler(job)

        asyncio.run(scenario())

        engine.score.assert_awaited_once_with(scored.event)
        assert job.result is scored
        assert scored.event_id in storage.events


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
