"""
EVM source adapter for account-based chains (Ethereum, Hyperledger Besu, ...).

Polls a JSON-RPC endpoint by block height:
- head:      eth_blockNumber
- address:   eth_getBlockByNumber(full=True) per block, keeping transactions
             whose from/to is the watched wallet
- contract:  one eth_getLogs call over the whole window for the watched
             contract (optionally narrowed by topics)

Positions are block heights. sub_index is the transaction index for
wallet subscriptions and the log index for contract subscriptions, both
unique within a block.
"""

import asyncio
import logging
from typing import Any, Optional

from chainwatch.connectors.rpc_transport import JsonRpcTransport, TransportPool
from chainwatch.framework.base_adapter import SourceAdapter
from chainwatch.framework.config_loader import SourceConfig, SubscriptionConfig
from chainwatch.framework.errors import EndpointUnavailable
from chainwatch.framework.models import EndpointHealth, RawEvent

logger = logging.getLogger(__name__)


def hex_to_int(value: Any) -> int:
    """Decode a JSON-RPC quantity ("0x1a") or a plain int/str into an int."""
    if isinstance(value, int):
        return value
    text = str(value)
    return int(text, 16) if text.lower().startswith("0x") else int(text)


class EvmAdapter(SourceAdapter):
    """
    Fetches wallet transactions and contract logs from an EVM JSON-RPC node.

    Usage (PipelineManager):
        adapter = EvmAdapter(source_config)
        adapter.validate()
        head = await adapter.head_position(endpoint)
        raws = await adapter.fetch_window(endpoint, subscription, 101, 150)
    """

    kind = "evm"
    subscription_types = frozenset({"address", "contract"})

    _DEFAULT_BLOCK_CONCURRENCY = 4

    def __init__(self, source: SourceConfig) -> None:
        super().__init__(source)
        self._pool = TransportPool(JsonRpcTransport)

    async def head_position(self, endpoint: EndpointHealth) -> int:
        result = await self._rpc(endpoint).call("eth_blockNumber")
        try:
            return hex_to_int(result)
        except (TypeError, ValueError):
            raise EndpointUnavailable(endpoint.url, f"invalid block number {result!r}") from None

    async def fetch_window(
        self, endpoint: EndpointHealth, subscription: SubscriptionConfig, start: int, end: int
    ) -> list[RawEvent]:
        if subscription.type == "address":
            return await self._fetch_wallet_transactions(endpoint, subscription, start, end)
        return await self._fetch_contract_logs(endpoint, subscription, start, end)

    async def aclose(self) -> None:
        await self._pool.aclose()

    # ------------------------------------------------------------------
    # Wallet subscriptions
    # ------------------------------------------------------------------

    async def _fetch_wallet_transactions(
        self, endpoint: EndpointHealth, subscription: SubscriptionConfig, start: int, end: int
    ) -> list[RawEvent]:
        watched = subscription.target.lower()
        concurrency = int(subscription.options.get("block_concurrency", self._DEFAULT_BLOCK_CONCURRENCY))
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def fetch(number: int) -> Optional[dict[str, Any]]:
            async with semaphore:
                return await self._rpc(endpoint).call("eth_getBlockByNumber", [hex(number), True])

        # gather preserves argument order, so blocks come back ascending
        blocks = await asyncio.gather(*(fetch(n) for n in range(start, end + 1)))

        events: list[RawEvent] = []
        for number, block in zip(range(start, end + 1), blocks):
            if block is None:
                # Head moved past a block the node cannot serve yet; retry the window
                raise EndpointUnavailable(endpoint.url, f"block {number} not available")
            block_ts = hex_to_int(block["timestamp"]) if block.get("timestamp") is not None else None
            for fallback_index, tx in enumerate(block.get("transactions") or []):
                if not isinstance(tx, dict):
                    continue  # node returned hashes only; nothing to match on
                sender = (tx.get("from") or "").lower()
                recipient = (tx.get("to") or "").lower()
                if watched not in (sender, recipient):
                    continue
                index = tx.get("transactionIndex")
                sub_index = hex_to_int(index) if index is not None else fallback_index
                events.append(
                    self.raw_event(
                        subscription,
                        number,
                        sub_index,
                        {"type": "transaction", "tx": tx, "block_timestamp": block_ts, "watched": watched},
                    )
                )

        logger.debug(
            "EvmAdapter wallet window fetched | source=%s | subscription=%s | blocks=%d-%d | matches=%d",
            self.source.id,
            subscription.id,
            start,
            end,
            len(events),
        )
        return events

    # ------------------------------------------------------------------
    # Contract subscriptions
    # ------------------------------------------------------------------

    async def _fetch_contract_logs(
        self, endpoint: EndpointHealth, subscription: SubscriptionConfig, start: int, end: int
    ) -> list[RawEvent]:
        log_filter: dict[str, Any] = {
            "fromBlock": hex(start),
            "toBlock": hex(end),
            "address": subscription.target,
        }
        topics = subscription.options.get("topics")
        if topics:
            log_filter["topics"] = list(topics)

        logs = await self._rpc(endpoint).call("eth_getLogs", [log_filter])
        if not isinstance(logs, list):
            raise EndpointUnavailable(endpoint.url, "eth_getLogs did not return a list")

        timestamps: dict[int, Optional[int]] = {}
        if subscription.options.get("resolve_timestamps", False):
            numbers = sorted({hex_to_int(log["blockNumber"]) for log in logs if log.get("blockNumber")})
            timestamps = await self._block_timestamps(endpoint, numbers)

        events: list[RawEvent] = []
        for log in logs:
            if log.get("removed"):
                continue  # reorged out
            try:
                number = hex_to_int(log["blockNumber"])
                log_index = hex_to_int(log["logIndex"])
            except (KeyError, TypeError, ValueError):
                # Pending logs carry null positions; they reappear once mined
                continue
            events.append(
                self.raw_event(
                    subscription,
                    number,
                    log_index,
                    {
                        "type": "log",
                        "log": log,
                        "block_timestamp": timestamps.get(number),
                        "watched": subscription.target.lower(),
                    },
                )
            )
        events.sort(key=lambda e: (e.position, e.sub_index))
        return events

    async def _block_timestamps(self, endpoint: EndpointHealth, numbers: list[int]) -> dict[int, Optional[int]]:
        rpc = self._rpc(endpoint)
        headers = await asyncio.gather(*(rpc.call("eth_getBlockByNumber", [hex(n), False]) for n in numbers))
        return {
            n: hex_to_int(h["timestamp"]) if h and h.get("timestamp") is not None else None
            for n, h in zip(numbers, headers)
        }

    def _rpc(self, endpoint: EndpointHealth) -> JsonRpcTransport:
        return self._pool.get(endpoint.url, endpoint.timeout)
