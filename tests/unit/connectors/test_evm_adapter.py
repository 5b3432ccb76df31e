"""
Unit tests for EvmAdapter.

Tests cover:
- hex_to_int() decodes JSON-RPC quantities and plain numbers
- head_position(): eth_blockNumber decoding, invalid replies -> EndpointUnavailable
- fetch_window() for address subscriptions: per-block eth_getBlockByNumber,
  case-insensitive from/to matching, (block, tx index) ordering
- A block the node cannot serve yet fails the whole window
- fetch_window() for contract subscriptions: one eth_getLogs call with topics,
  removed / pending logs skipped, optional block timestamp resolution
- validate() rejects subscription types the EVM adapter cannot watch
"""

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from chainwatch.connectors.evm_adapter import EvmAdapter, hex_to_int
from chainwatch.framework.errors import EndpointUnavailable
from fakes import BLOCK_TS, COUNTERPART, WATCHED, evm_block, evm_tx, make_endpoint, make_source, make_subscription

CONTRACT = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def _adapter(subscription=None) -> tuple[EvmAdapter, MagicMock]:
    sub = subscription or make_subscription()
    adapter = EvmAdapter(make_source(subscriptions=(sub,)))
    rpc = MagicMock()
    rpc.call = AsyncMock()
    adapter._pool.get = MagicMock(return_value=rpc)
    return adapter, rpc


def _log(block: int, index: int, **overrides: Any) -> dict[str, Any]:
    log = {
        "address": CONTRACT,
        "topics": [TRANSFER_TOPIC, "0x" + "0" * 24 + WATCHED[2:], "0x" + "0" * 24 + COUNTERPART[2:]],
        "data": hex(5_000_000),
        "blockNumber": hex(block),
        "logIndex": hex(index),
        "transactionHash": f"0x{block:x}{index:x}",
        "removed": False,
    }
    log.update(overrides)
    return log


class TestHexToInt:
    def test_quantities(self) -> None:
        assert hex_to_int("0x1a") == 26
        assert hex_to_int("0X10") == 16
        assert hex_to_int(42) == 42
        assert hex_to_int("42") == 42


class TestHeadPosition:
    """Test eth_blockNumber handling."""

    def test_decodes_block_number(self) -> None:
        adapter, rpc = _adapter()
        rpc.call.return_value = "0x1406f40"

        assert asyncio.run(adapter.head_position(make_endpoint())) == 21_000_000
        rpc.call.assert_awaited_once_with("eth_blockNumber")

    def test_invalid_reply_is_endpoint_failure(self) -> None:
        adapter, rpc = _adapter()
        rpc.call.return_value = None

        with pytest.raises(EndpointUnavailable):
            asyncio.run(adapter.head_position(make_endpoint()))

    def test_probe_uses_head(self) -> None:
        adapter, rpc = _adapter()
        rpc.call.return_value = "0x1"
        asyncio.run(adapter.probe(make_endpoint()))
        rpc.call.assert_awaited_once_with("eth_blockNumber")


class TestWalletWindow:
    """Test address subscriptions (full blocks filtered by from/to)."""

    def setup_method(self) -> None:
        self.adapter, self.rpc = _adapter()
        mixed_case = "0x" + WATCHED[2:].upper()
        self.blocks = {
            100: evm_block(
                100,
                [
                    evm_tx(100, 0, sender=WATCHED),
                    evm_tx(100, 1, sender=COUNTERPART, recipient="0x" + "2" * 40),
                    evm_tx(100, 2, sender=COUNTERPART, recipient=mixed_case),
                ],
            ),
            101: evm_block(101, [evm_tx(101, 0, sender=COUNTERPART, recipient=WATCHED)]),
            102: evm_block(102, []),
        }

        async def call(method: str, params: list) -> Any:
            assert method == "eth_getBlockByNumber"
            assert params[1] is True
            return self.blocks.get(int(params[0], 16))

        self.rpc.call.side_effect = call

    def test_matches_sender_and_recipient(self) -> None:
        raws = asyncio.run(self.adapter.fetch_window(make_endpoint(), make_subscription(), 100, 102))

        assert [(r.position, r.sub_index) for r in raws] == [(100, 0), (100, 2), (101, 0)]
        assert all(r.source_id == "eth-test" and r.source_kind == "evm" for r in raws)
        assert all(r.subscription_id == "treasury" for r in raws)

    def test_payload_shape(self) -> None:
        raws = asyncio.run(self.adapter.fetch_window(make_endpoint(), make_subscription(), 101, 101))

        payload = raws[0].payload
        assert payload["type"] == "transaction"
        assert payload["block_timestamp"] == BLOCK_TS
        assert payload["watched"] == WATCHED
        assert payload["tx"]["to"] == WATCHED

    def test_one_call_per_block(self) -> None:
        asyncio.run(self.adapter.fetch_window(make_endpoint(), make_subscription(), 100, 102))
        assert self.rpc.call.await_count == 3

    def test_missing_block_fails_window(self) -> None:
        with pytest.raises(EndpointUnavailable, match="103"):
            asyncio.run(self.adapter.fetch_window(make_endpoint(), make_subscription(), 102, 103))


class TestContractWindow:
    """Test contract subscriptions (eth_getLogs over the window)."""

    def setup_method(self) -> None:
        self.subscription = make_subscription(
            id="usdc", type="contract", target=CONTRACT, options={"topics": [TRANSFER_TOPIC]}
        )
        self.adapter, self.rpc = _adapter(self.subscription)

    def test_single_get_logs_call_with_filter(self) -> None:
        self.rpc.call.return_value = []

        asyncio.run(self.adapter.fetch_window(make_endpoint(), self.subscription, 100, 150))

        self.rpc.call.assert_awaited_once_with(
            "eth_getLogs",
            [{"fromBlock": hex(100), "toBlock": hex(150), "address": CONTRACT, "topics": [TRANSFER_TOPIC]}],
        )

    def test_logs_sorted_and_filtered(self) -> None:
        self.rpc.call.return_value = [
            _log(101, 0),
            _log(100, 7),
            _log(100, 3, removed=True),
            _log(100, 2, blockNumber=None, logIndex=None),
            _log(100, 1),
        ]

        raws = asyncio.run(self.adapter.fetch_window(make_endpoint(), self.subscription, 100, 101))

        assert [(r.position, r.sub_index) for r in raws] == [(100, 1), (100, 7), (101, 0)]
        assert raws[0].payload["type"] == "log"
        assert raws[0].payload["block_timestamp"] is None

    def test_non_list_reply_is_endpoint_failure(self) -> None:
        self.rpc.call.return_value = {"oops": True}
        with pytest.raises(EndpointUnavailable):
            asyncio.run(self.adapter.fetch_window(make_endpoint(), self.subscription, 100, 101))

    def test_resolve_timestamps(self) -> None:
        subscription = make_subscription(
            id="usdc", type="contract", target=CONTRACT, options={"resolve_timestamps": True}
        )
        adapter, rpc = _adapter(subscription)

        async def call(method: str, params: list) -> Any:
            if method == "eth_getLogs":
                return [_log(100, 0), _log(101, 0)]
            return {"timestamp": hex(BLOCK_TS + int(params[0], 16) - 100)}

        rpc.call.side_effect = call

        raws = asyncio.run(adapter.fetch_window(make_endpoint(), subscription, 100, 101))

        assert [r.payload["block_timestamp"] for r in raws] == [BLOCK_TS, BLOCK_TS + 1]


class TestValidate:
    def test_program_subscription_rejected(self) -> None:
        adapter = EvmAdapter(make_source(subscriptions=(make_subscription(type="program"),)))
        with pytest.raises(ValueError, match="program"):
            adapter.validate()

    def test_supported_subscriptions_accepted(self) -> None:
        subs = (make_subscription(), make_subscription(id="logs", type="contract", target=CONTRACT))
        EvmAdapter(make_source(subscriptions=subs)).validate()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
