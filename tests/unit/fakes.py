"""
Shared test doubles and builders for the unit tests.

- make_source() / make_event(): small, valid configs and canonical events
- evm_tx() / evm_block(): JSON-RPC shaped EVM payloads
- FakeAdapter: scripted heads, blocks and failing endpoints, no network
- RecordingAlertSink: records notifications, optionally failing the first N
- UnavailableLookup: a lookup collaborator that is always down
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from chainwatch.framework.base_adapter import SourceAdapter
from chainwatch.framework.config_loader import EndpointConfig, SourceConfig, SubscriptionConfig
from chainwatch.framework.errors import EndpointUnavailable, LookupUnavailable
from chainwatch.framework.interfaces import AlertSink, LookupResult, LookupService
from chainwatch.framework.lineage import generate_event_id
from chainwatch.framework.models import ComplianceEvent, DeadLetter, EndpointHealth, EventKind, RawEvent, ScoredEvent

WATCHED = "0x28c6c06298d514db089934071355e5743bf21d60"
COUNTERPART = "0x1111111111111111111111111111111111111111"
SANCTIONED = "0x8589427373d6d84e98730d7795d8f6f8731fda16"
BRIDGE = "0x3ee18b2214aff97000d974cf647e7c347e8fa585"

PRIMARY_URL = "https://rpc-a.example.com"
BACKUP_URL = "https://rpc-b.example.com"

BLOCK_TS = 1_738_751_400  # 2025-02-05T10:30:00Z

ONE_ETH = 10**18


def make_subscription(**overrides: Any) -> SubscriptionConfig:
    fields: dict[str, Any] = {
        "id": "treasury",
        "type": "address",
        "target": WATCHED,
        "start_position": 100,
        "options": {},
    }
    fields.update(overrides)
    return SubscriptionConfig(**fields)


def make_source(**overrides: Any) -> SourceConfig:
    fields: dict[str, Any] = {
        "id": "eth-test",
        "kind": "evm",
        "endpoints": (
            EndpointConfig(url=PRIMARY_URL, priority=0, timeout=1.0),
            EndpointConfig(url=BACKUP_URL, priority=1, timeout=1.0),
        ),
        "subscriptions": (make_subscription(),),
        "chunk_size": 10,
        "poll_interval_seconds": 0.01,
        "probe_interval_seconds": 0.01,
        "failure_threshold": 3,
        "max_backoff_seconds": 0.05,
        "fetch_attempts": 2,
        "reference_price": Decimal("1"),
        "bridge_contracts": frozenset({BRIDGE}),
    }
    fields.update(overrides)
    return SourceConfig(**fields)


def make_endpoint(url: str = PRIMARY_URL, **overrides: Any) -> EndpointHealth:
    fields: dict[str, Any] = {"url": url, "priority": 0, "weight": 1, "timeout": 1.0}
    fields.update(overrides)
    return EndpointHealth(**fields)


def make_event(**overrides: Any) -> ComplianceEvent:
    position = overrides.pop("position", 100)
    sub_index = overrides.pop("sub_index", 0)
    source_id = overrides.pop("source_id", "eth-test")
    subscription_id = overrides.pop("subscription_id", "treasury")
    fields: dict[str, Any] = {
        "event_id": generate_event_id(source_id, subscription_id, position, sub_index),
        "source_id": source_id,
        "source_kind": "evm",
        "subscription_id": subscription_id,
        "position": position,
        "sub_index": sub_index,
        "kind": EventKind.TRANSFER,
        "from_address": WATCHED,
        "to_address": COUNTERPART,
        "amount": Decimal("1"),
        "asset": "ETH",
        "normalized_value": Decimal("1"),
        "observed_at": datetime.fromtimestamp(BLOCK_TS, tz=timezone.utc),
        "reference": "0xabc",
    }
    fields.update(overrides)
    return ComplianceEvent(**fields)


def evm_tx(
    block: int,
    index: int,
    sender: str = WATCHED,
    recipient: Optional[str] = COUNTERPART,
    value_wei: int = ONE_ETH,
    call_data: str = "0x",
) -> dict[str, Any]:
    return {
        "hash": f"0x{block:08x}{index:04x}",
        "blockNumber": hex(block),
        "transactionIndex": hex(index),
        "from": sender,
        "to": recipient,
        "value": hex(value_wei),
        "input": call_data,
    }


def evm_block(number: int, transactions: list[dict[str, Any]], timestamp: int = BLOCK_TS) -> dict[str, Any]:
    return {"number": hex(number), "timestamp": hex(timestamp), "transactions": transactions}


def evm_raw(tx: dict[str, Any], position: int = 100, sub_index: int = 0, **overrides: Any) -> RawEvent:
    fields: dict[str, Any] = {
        "source_id": "eth-test",
        "source_kind": "evm",
        "subscription_id": "treasury",
        "position": position,
        "sub_index": sub_index,
        "payload": {"type": "transaction", "tx": tx, "block_timestamp": BLOCK_TS, "watched": WATCHED},
    }
    fields.update(overrides)
    return RawEvent(**fields)


class FakeAdapter(SourceAdapter):
    """
    Scripted adapter: head, per-position payloads, per-position block
    timestamps and failing URLs are plain attributes tests set directly.
    Every call is recorded as (op, url, start, end).
    """

    kind = "evm"
    subscription_types = frozenset({"address", "contract"})

    def __init__(self, source: SourceConfig) -> None:
        super().__init__(source)
        self.head = 0
        self.blocks: dict[int, list[dict[str, Any]]] = {}
        self.timestamps: dict[int, Any] = {}
        self.failing: set[str] = set()
        self.calls: list[tuple[str, str, int, int]] = []
        self.closed = False

    async def head_position(self, endpoint: EndpointHealth) -> int:
        self.calls.append(("head", endpoint.url, -1, -1))
        if endpoint.url in self.failing:
            raise EndpointUnavailable(endpoint.url, "scripted failure")
        return self.head

    async def fetch_window(
        self, endpoint: EndpointHealth, subscription: SubscriptionConfig, start: int, end: int
    ) -> list[RawEvent]:
        self.calls.append(("window", endpoint.url, start, end))
        if endpoint.url in self.failing:
            raise EndpointUnavailable(endpoint.url, "scripted failure")
        events = []
        for position in range(start, end + 1):
            for index, tx in enumerate(self.blocks.get(position, [])):
                events.append(
                    self.raw_event(
                        subscription,
                        position,
                        index,
                        {
                            "type": "transaction",
                            "tx": tx,
                            "block_timestamp": self.timestamps.get(position, BLOCK_TS),
                            "watched": subscription.target,
                        },
                    )
                )
        return events

    async def aclose(self) -> None:
        self.closed = True

    def window_calls(self) -> list[tuple[str, int, int]]:
        return [(url, start, end) for op, url, start, end in self.calls if op == "window"]


class RecordingAlertSink(AlertSink):
    def __init__(self, fail_times: int = 0) -> None:
        self.fail_times = fail_times
        self.notified: list[tuple[ScoredEvent, tuple[str, ...]]] = []
        self.exhausted: list[DeadLetter] = []
        self.attempts = 0

    async def notify(self, scored: ScoredEvent, flags: tuple[str, ...]) -> None:
        self.attempts += 1
        if self.attempts <= self.fail_times:
            raise ConnectionError("alert channel down")
        self.notified.append((scored, flags))

    async def notify_exhausted(self, dead_letter: DeadLetter) -> None:
        self.exhausted.append(dead_letter)


class UnavailableLookup(LookupService):
    def __init__(self) -> None:
        self.calls = 0

    async def check_participant(self, identifier: str) -> LookupResult:
        self.calls += 1
        raise LookupUnavailable(identifier, "screening API down")
