"""In-process Storage backend for local runs and tests."""

from typing import Optional

from chainwatch.framework.interfaces import Storage
from chainwatch.framework.models import DeadLetter, ScoredEvent


class InMemoryStorage(Storage):
    def __init__(self) -> None:
        self.events: dict[str, ScoredEvent] = {}
        self.cursors: dict[tuple[str, str], int] = {}
        self.dead_letters: dict[str, DeadLetter] = {}
        self.upserts = 0

    async def upsert(self, scored: ScoredEvent) -> bool:
        self.upserts += 1
        created = scored.event_id not in self.events
        self.events[scored.event_id] = scored
        return created

    async def read_cursor(self, source_id: str, subscription_id: str) -> Optional[int]:
        return self.cursors.get((source_id, subscription_id))

    async def write_cursor(self, source_id: str, subscription_id: str, position: int) -> None:
        current = self.cursors.get((source_id, subscription_id))
        if current is not None and position < current:
            raise ValueError(f"cursor regression for {source_id}/{subscription_id}: {position} < {current}")
        self.cursors[(source_id, subscription_id)] = position

    async def record_dead_letter(self, dead_letter: DeadLetter) -> None:
        self.dead_letters[dead_letter.job_id] = dead_letter
