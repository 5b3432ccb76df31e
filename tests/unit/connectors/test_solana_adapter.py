"""
Unit tests for SolanaAdapter.

Tests cover:
- head_position(): getSlot with finalized commitment, invalid replies rejected
- fetch_window(): one getBlock per slot, keeping transactions whose account
  keys (static or loaded through lookup tables) include the watched account
- Skipped slots (-32007 / -32009) are not failures; other RPC errors are
- account_keys() merges loadedAddresses
"""

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from chainwatch.connectors.solana_adapter import SolanaAdapter, account_keys
from chainwatch.framework.errors import JsonRpcError
from fakes import make_endpoint, make_source, make_subscription

WALLET = "5tzFkiKscXHK5ZXCGbXZxdw7gTjjD1mBwuoFbhUvuAi9"
OTHER = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
PROGRAM = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"


def solana_tx(keys: list[str], signature: str = "sig", loaded: dict | None = None) -> dict[str, Any]:
    meta: dict[str, Any] = {
        "err": None,
        "fee": 5000,
        "preBalances": [10_000_000] * len(keys),
        "postBalances": [10_000_000] * len(keys),
    }
    if loaded is not None:
        meta["loadedAddresses"] = loaded
    return {"transaction": {"signatures": [signature], "message": {"accountKeys": keys}}, "meta": meta}


def _adapter(subscription=None) -> tuple[SolanaAdapter, MagicMock]:
    sub = subscription or make_subscription(id="hot-wallet", target=WALLET)
    adapter = SolanaAdapter(make_source(id="sol-test", kind="solana", subscriptions=(sub,)))
    rpc = MagicMock()
    rpc.call = AsyncMock()
    adapter._pool.get = MagicMock(return_value=rpc)
    return adapter, rpc


class TestAccountKeys:
    def test_static_keys_only(self) -> None:
        assert account_keys(solana_tx([WALLET, OTHER])) == [WALLET, OTHER]

    def test_loaded_addresses_appended(self) -> None:
        tx = solana_tx([WALLET], loaded={"writable": [OTHER], "readonly": [PROGRAM]})
        assert account_keys(tx) == [WALLET, OTHER, PROGRAM]


class TestHeadPosition:
    def test_finalized_slot(self) -> None:
        adapter, rpc = _adapter()
        rpc.call.return_value = 300_000_123

        assert asyncio.run(adapter.head_position(make_endpoint())) == 300_000_123
        rpc.call.assert_awaited_once_with("getSlot", [{"commitment": "finalized"}])

    def test_invalid_slot(self) -> None:
        adapter, rpc = _adapter()
        rpc.call.return_value = "soon"
        with pytest.raises(Exception, match="invalid slot"):
            asyncio.run(adapter.head_position(make_endpoint()))


class TestFetchWindow:
    """Test slot iteration, matching and skipped-slot handling."""

    def setup_method(self) -> None:
        self.subscription = make_subscription(id="hot-wallet", target=WALLET)
        self.adapter, self.rpc = _adapter(self.subscription)
        self.blocks = {
            10: {
                "blockTime": 1_738_751_400,
                "transactions": [
                    solana_tx([OTHER, PROGRAM], "unrelated"),
                    solana_tx([OTHER, WALLET], "incoming"),
                ],
            },
            12: {
                "blockTime": 1_738_751_401,
                "transactions": [solana_tx([OTHER], "via-lookup-table", loaded={"writable": [WALLET]})],
            },
        }

        async def call(method: str, params: list) -> Any:
            assert method == "getBlock"
            slot = params[0]
            if slot not in self.blocks:
                raise JsonRpcError("https://sol.example.com", -32007, f"Slot {slot} was skipped")
            return self.blocks[slot]

        self.rpc.call.side_effect = call

    def test_matches_watched_account(self) -> None:
        raws = asyncio.run(self.adapter.fetch_window(make_endpoint(), self.subscription, 10, 12))

        assert [(r.position, r.sub_index) for r in raws] == [(10, 1), (12, 0)]
        signatures = [r.payload["transaction"]["transaction"]["signatures"][0] for r in raws]
        assert signatures == ["incoming", "via-lookup-table"]

    def test_payload_carries_slot_context(self) -> None:
        raws = asyncio.run(self.adapter.fetch_window(make_endpoint(), self.subscription, 10, 10))

        payload = raws[0].payload
        assert payload["slot"] == 10
        assert payload["block_time"] == 1_738_751_400
        assert payload["watched"] == WALLET
        assert payload["subscription_type"] == "address"
        assert raws[0].source_kind == "solana"

    def test_skipped_slot_is_not_a_failure(self) -> None:
        raws = asyncio.run(self.adapter.fetch_window(make_endpoint(), self.subscription, 11, 11))
        assert raws == []

    def test_other_rpc_errors_fail_the_window(self) -> None:
        async def call(method: str, params: list) -> Any:
            raise JsonRpcError("https://sol.example.com", -32004, "Block not available for slot")

        self.rpc.call.side_effect = call
        with pytest.raises(JsonRpcError):
            asyncio.run(self.adapter.fetch_window(make_endpoint(), self.subscription, 10, 10))

    def test_program_subscription(self) -> None:
        subscription = make_subscription(id="jupiter", type="program", target=PROGRAM)
        raws = asyncio.run(self.adapter.fetch_window(make_endpoint(), subscription, 10, 12))

        assert [(r.position, r.sub_index) for r in raws] == [(10, 0)]
        assert raws[0].payload["subscription_type"] == "program"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
