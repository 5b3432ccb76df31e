"""
Bounded in-process activity history used by the pattern rules.

Keeps, per participant, the most recent activities inside a time window
(capped at max_per_participant) and, per source, a rolling sample of
normalized values for the anomaly baseline. Time is the event's observed_at,
not wall-clock, so catch-up after downtime is judged on chain time.
"""

from collections import deque
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from chainwatch.framework.models import ComplianceEvent


@dataclass(frozen=True)
class Activity:
    event_id: str
    timestamp: float
    from_address: Optional[str]
    to_address: Optional[str]
    value: Optional[Decimal]


class ActivityHistory:
    def __init__(self, window_seconds: float, max_per_participant: int = 500, max_per_source: int = 1000) -> None:
        self.window_seconds = window_seconds
        self.max_per_participant = max_per_participant
        self.max_per_source = max_per_source
        self._by_participant: dict[str, deque[Activity]] = {}
        self._source_values: dict[str, deque[Decimal]] = {}
        self._source_seen: dict[str, set[str]] = {}

    def record(self, event: ComplianceEvent) -> None:
        activity = Activity(
            event_id=event.event_id,
            timestamp=event.observed_at.timestamp(),
            from_address=event.from_address,
            to_address=event.to_address,
            value=event.normalized_value,
        )
        for participant in set(event.participants):
            entries = self._by_participant.setdefault(participant, deque(maxlen=self.max_per_participant))
            if any(a.event_id == activity.event_id for a in entries):
                continue
            entries.append(activity)
            cutoff = activity.timestamp - self.window_seconds
            while entries and entries[0].timestamp < cutoff:
                entries.popleft()

        if event.normalized_value is not None:
            seen = self._source_seen.setdefault(event.source_id, set())
            if event.event_id not in seen:
                values = self._source_values.setdefault(event.source_id, deque(maxlen=self.max_per_source))
                if len(values) == values.maxlen:
                    seen.clear()  # keep the id set roughly as bounded as the samples
                seen.add(event.event_id)
                values.append(event.normalized_value)

    def activity(self, participant: str, since: Optional[float] = None, until: Optional[float] = None) -> list[Activity]:
        """Activities of a participant, oldest first, optionally within [since, until]."""
        entries = self._by_participant.get(participant, ())
        return sorted(
            (
                a
                for a in entries
                if (since is None or a.timestamp >= since) and (until is None or a.timestamp <= until)
            ),
            key=lambda a: a.timestamp,
        )

    def outgoing(self, sender: str, since: Optional[float] = None) -> list[Activity]:
        return [a for a in self.activity(sender, since=since) if a.from_address == sender]

    def source_average(self, source_id: str) -> Optional[Decimal]:
        values = self._source_values.get(source_id)
        if not values:
            return None
        return sum(values, Decimal(0)) / len(values)

    def source_samples(self, source_id: str) -> int:
        return len(self._source_values.get(source_id, ()))

    def participants(self) -> int:
        return len(self._by_participant)
