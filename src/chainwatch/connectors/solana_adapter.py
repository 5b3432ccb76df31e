"""
Solana source adapter (slot-based smart-contract chain).

- head:               getSlot (finalized commitment)
- address / program:  getBlock per slot, keeping transactions whose account
                      keys include the watched account or program id

Skipped slots are normal on Solana (a leader may produce no block) and are
not failures. A block that is merely not available yet is a failure so the
window is retried instead of silently skipping it.
"""

import asyncio
import logging
from typing import Any, Optional

from chainwatch.connectors.rpc_transport import JsonRpcTransport, TransportPool
from chainwatch.framework.base_adapter import SourceAdapter
from chainwatch.framework.config_loader import SourceConfig, SubscriptionConfig
from chainwatch.framework.errors import EndpointUnavailable, JsonRpcError
from chainwatch.framework.models import EndpointHealth, RawEvent

logger = logging.getLogger(__name__)

# Slot was skipped, or is missing from long-term storage
SKIPPED_SLOT_CODES = frozenset({-32007, -32009})

_BLOCK_OPTIONS = {
    "encoding": "json",
    "transactionDetails": "full",
    "rewards": False,
    "maxSupportedTransactionVersion": 0,
    "commitment": "finalized",
}


def account_keys(tx: dict[str, Any]) -> list[str]:
    """Static account keys plus addresses loaded through lookup tables (v0 txs)."""
    keys = list(tx["transaction"]["message"]["accountKeys"])
    loaded = (tx.get("meta") or {}).get("loadedAddresses") or {}
    keys.extend(loaded.get("writable") or [])
    keys.extend(loaded.get("readonly") or [])
    return keys


class SolanaAdapter(SourceAdapter):
    """
    Fetches transactions touching a watched account or program.

    Positions are slots; sub_index is the transaction's index within its block.
    """

    kind = "solana"
    subscription_types = frozenset({"address", "program"})

    _DEFAULT_SLOT_CONCURRENCY = 4

    def __init__(self, source: SourceConfig) -> None:
        super().__init__(source)
        self._pool = TransportPool(JsonRpcTransport)

    async def head_position(self, endpoint: EndpointHealth) -> int:
        result = await self._rpc(endpoint).call("getSlot", [{"commitment": "finalized"}])
        if not isinstance(result, int):
            raise EndpointUnavailable(endpoint.url, f"invalid slot {result!r}")
        return result

    async def fetch_window(
        self, endpoint: EndpointHealth, subscription: SubscriptionConfig, start: int, end: int
    ) -> list[RawEvent]:
        watched = subscription.target
        concurrency = int(subscription.options.get("slot_concurrency", self._DEFAULT_SLOT_CONCURRENCY))
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def fetch(slot: int) -> Optional[dict[str, Any]]:
            async with semaphore:
                return await self._get_block(endpoint, slot)

        blocks = await asyncio.gather(*(fetch(s) for s in range(start, end + 1)))

        events: list[RawEvent] = []
        skipped = 0
        for slot, block in zip(range(start, end + 1), blocks):
            if block is None:
                skipped += 1
                continue
            for index, tx in enumerate(block.get("transactions") or []):
                try:
                    keys = account_keys(tx)
                except (KeyError, TypeError):
                    keys = []  # left for the canonicalizer to reject
                if watched not in keys:
                    continue
                events.append(
                    self.raw_event(
                        subscription,
                        slot,
                        index,
                        {
                            "type": "transaction",
                            "transaction": tx,
                            "slot": slot,
                            "block_time": block.get("blockTime"),
                            "watched": watched,
                            "subscription_type": subscription.type,
                        },
                    )
                )

        logger.debug(
            "SolanaAdapter window fetched | source=%s | subscription=%s | slots=%d-%d | skipped=%d | matches=%d",
            self.source.id,
            subscription.id,
            start,
            end,
            skipped,
            len(events),
        )
        return events

    async def aclose(self) -> None:
        await self._pool.aclose()

    async def _get_block(self, endpoint: EndpointHealth, slot: int) -> Optional[dict[str, Any]]:
        try:
            return await self._rpc(endpoint).call("getBlock", [slot, _BLOCK_OPTIONS])
        except JsonRpcError as exc:
            if exc.code in SKIPPED_SLOT_CODES:
                return None
            raise

    def _rpc(self, endpoint: EndpointHealth) -> JsonRpcTransport:
        return self._pool.get(endpoint.url, endpoint.timeout)
