"""
Collaborator contracts consumed by the pipeline core.

Storage, alerting and sanctions/PEP lookups live outside the core; the core
only depends on these abstract interfaces so tests can run isolated pipeline
instances against in-memory implementations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from chainwatch.framework.models import DeadLetter, ScoredEvent


@dataclass(frozen=True)
class LookupResult:
    listed: bool
    lists: tuple[str, ...] = ()


class LookupService(ABC):
    """Sanctions / PEP list lookup for a participant identifier."""

    @abstractmethod
    async def check_participant(self, identifier: str) -> LookupResult:
        """
        Check one participant (address, account, entity id).

        Raises:
            LookupUnavailable: If the lookup cannot answer (timeout, outage).
                Callers must treat this as "unknown", never as "not listed".
        """

    async def aclose(self) -> None:
        """Release network resources. No-op by default."""


class Storage(ABC):
    """Authoritative persistence for scored results, cursors and dead-letters."""

    @abstractmethod
    async def upsert(self, scored: ScoredEvent) -> bool:
        """
        Insert or replace the result keyed by event id.

        Returns:
            True if no row existed for this id before the write.
        """

    @abstractmethod
    async def read_cursor(self, source_id: str, subscription_id: str) -> Optional[int]:
        """Last committed position, or None on first run."""

    @abstractmethod
    async def write_cursor(self, source_id: str, subscription_id: str, position: int) -> None:
        """Persist a new watermark for (source, subscription)."""

    @abstractmethod
    async def record_dead_letter(self, dead_letter: DeadLetter) -> None:
        """Persist a job that exhausted its attempts."""


class AlertSink(ABC):
    """External alerting collaborator."""

    @abstractmethod
    async def notify(self, scored: ScoredEvent, flags: tuple[str, ...]) -> None:
        """Raise an alert for a scored event. Raises on delivery failure."""

    @abstractmethod
    async def notify_exhausted(self, dead_letter: DeadLetter) -> None:
        """Raise a ProcessingExhausted alert for a dead-lettered job."""
