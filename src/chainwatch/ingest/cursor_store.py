"""
Cursor Store: resumable, monotonic watermark per (source, subscription).

The cursor is the last fully processed position. On first run it sits just
below the configured start position, so the first window begins exactly at
start_position. The tracker is the single writer for its key.
"""

import logging
from typing import Optional

from chainwatch.framework.interfaces import Storage
from chainwatch.framework.models import ListenerCursor, utcnow

logger = logging.getLogger(__name__)


class CursorTracker:
    def __init__(self, storage: Storage, source_id: str, subscription_id: str, start_position: int) -> None:
        self.storage = storage
        self.source_id = source_id
        self.subscription_id = subscription_id
        self.start_position = start_position
        self._cursor: Optional[ListenerCursor] = None

    @property
    def position(self) -> int:
        if self._cursor is None:
            raise RuntimeError("CursorTracker.load() must be awaited first")
        return self._cursor.position

    @property
    def cursor(self) -> Optional[ListenerCursor]:
        return self._cursor

    async def load(self) -> int:
        """Read the stored watermark, or initialize one below start_position."""
        stored = await self.storage.read_cursor(self.source_id, self.subscription_id)
        if stored is None:
            position = self.start_position - 1
            logger.info(
                "Cursor initialized | source=%s | subscription=%s | start_position=%d",
                self.source_id,
                self.subscription_id,
                self.start_position,
            )
        else:
            position = stored
            logger.info(
                "Cursor resumed | source=%s | subscription=%s | position=%d",
                self.source_id,
                self.subscription_id,
                position,
            )
        self._cursor = ListenerCursor(self.source_id, self.subscription_id, position)
        return position

    async def advance(self, position: int) -> None:
        """
        Commit a new watermark after a window completed.

        Raises:
            ValueError: If position would move the cursor backwards
        """
        current = self.position
        if position < current:
            raise ValueError(
                f"cursor regression for {self.source_id}/{self.subscription_id}: {position} < {current}"
            )
        if position == current:
            return
        await self.storage.write_cursor(self.source_id, self.subscription_id, position)
        self._cursor = ListenerCursor(self.source_id, self.subscription_id, position, utcnow())
