"""
Canonicalizer: source-shaped RawEvent -> ComplianceEvent.

One pure mapping function per source kind. Mapping never raises out of
Canonicalizer.canonicalize(): a malformed or unrecognized record is logged,
counted and dropped (None), so one bad record cannot stall a window.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

from chainwatch.connectors.solana_adapter import account_keys
from chainwatch.framework.config_loader import SourceConfig, SubscriptionConfig
from chainwatch.framework.errors import CanonicalizationSkipped
from chainwatch.framework.lineage import generate_event_id
from chainwatch.framework.models import ComplianceEvent, EventKind, RawEvent

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
ERC20_TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


# ------------------------------------------------------------------
# Shared helpers
# ------------------------------------------------------------------


def _quantity(value: Any) -> int:
    if isinstance(value, int):
        return value
    text = str(value)
    return int(text, 16) if text.lower().startswith("0x") else int(text)


def _scale(base_units: int, decimals: int) -> Decimal:
    return Decimal(base_units).scaleb(-decimals)


def _timestamp(value: Any, fallback: datetime) -> datetime:
    if value is None:
        return fallback
    return datetime.fromtimestamp(_quantity(value), tz=timezone.utc)


def _evm_address(value: Any) -> Optional[str]:
    return str(value).lower() if value else None


def _topic_address(topic: str) -> str:
    # Indexed address topics are left-padded to 32 bytes
    return "0x" + topic[-40:].lower()


def _entity_ref(value: Any) -> Optional[str]:
    """Subgraph relations come back either as a scalar id or as {id: ...}."""
    if isinstance(value, dict):
        value = value.get("id")
    if value is None or value == "":
        return None
    text = str(value)
    return text.lower() if text.startswith("0x") else text


# ------------------------------------------------------------------
# Per-kind mappers (raw, source, subscription) -> field dict
# ------------------------------------------------------------------


def map_evm(raw: RawEvent, source: SourceConfig, subscription: SubscriptionConfig) -> dict[str, Any]:
    payload = raw.payload
    if payload.get("type") == "transaction":
        tx = payload["tx"]
        sender = _evm_address(tx["from"])
        recipient = _evm_address(tx.get("to"))
        call_data = tx.get("input") or "0x"
        if recipient and recipient in source.bridge_contracts:
            kind = EventKind.CROSS_SOURCE_TRANSFER
        elif recipient is None or call_data not in ("0x", ""):
            kind = EventKind.CONTRACT_INTERACTION
        else:
            kind = EventKind.TRANSFER
        return {
            "kind": kind,
            "from_address": sender,
            "to_address": recipient,
            "amount": _scale(_quantity(tx["value"]), source.native_decimals),
            "asset": source.native_asset,
            "observed_at": _timestamp(payload.get("block_timestamp"), raw.observed_at),
            "reference": tx.get("hash"),
        }

    if payload.get("type") == "log":
        log = payload["log"]
        contract = _evm_address(log["address"])
        topics = [str(t).lower() for t in log.get("topics") or []]
        is_transfer = len(topics) == 3 and topics[0] == ERC20_TRANSFER_TOPIC
        decimals = int(subscription.options.get("decimals", 18))

        if is_transfer:
            sender, recipient = _topic_address(topics[1]), _topic_address(topics[2])
            data = log.get("data") or "0x"
            amount: Optional[Decimal] = _scale(_quantity(data) if data != "0x" else 0, decimals)
        else:
            sender, recipient, amount = None, contract, None

        if contract in source.bridge_contracts:
            kind = EventKind.CROSS_SOURCE_TRANSFER
        elif is_transfer:
            kind = EventKind.TRANSFER
        else:
            kind = EventKind.CONTRACT_INTERACTION
        return {
            "kind": kind,
            "from_address": sender,
            "to_address": recipient,
            "amount": amount,
            "asset": subscription.options.get("asset") or contract,
            "observed_at": _timestamp(payload.get("block_timestamp"), raw.observed_at),
            "reference": log.get("transactionHash"),
        }

    raise CanonicalizationSkipped(f"unrecognized evm payload type {payload.get('type')!r}")


def map_solana(raw: RawEvent, source: SourceConfig, subscription: SubscriptionConfig) -> dict[str, Any]:
    payload = raw.payload
    tx = payload["transaction"]
    meta = tx["meta"]
    if meta is None:
        raise CanonicalizationSkipped("transaction without meta")
    if meta.get("err") is not None:
        raise CanonicalizationSkipped(f"failed transaction: {meta['err']}")

    keys = account_keys(tx)
    pre, post = meta["preBalances"], meta["postBalances"]
    if len(pre) != len(post) or len(pre) < len(keys):
        raise CanonicalizationSkipped("balance arrays do not match account keys")
    deltas = {key: post[i] - pre[i] for i, key in enumerate(keys)}

    watched = payload["watched"]
    signatures = tx["transaction"].get("signatures") or []
    observed_at = _timestamp(payload.get("block_time"), raw.observed_at)
    base = {"observed_at": observed_at, "reference": signatures[0] if signatures else None}

    own = deltas.get(watched, 0)
    if payload.get("subscription_type") == "program" or own == 0:
        # Program invocation, or the watched account was touched without moving lamports
        return base | {
            "kind": EventKind.CONTRACT_INTERACTION,
            "from_address": keys[0],
            "to_address": watched,
            "amount": None,
            "asset": source.native_asset,
        }

    others = {k: d for k, d in deltas.items() if k != watched}
    if own > 0:
        counterpart = min(others, key=others.get, default=None)
        sender, recipient, lamports = counterpart, watched, own
    else:
        counterpart = max(others, key=others.get, default=None)
        gained = others.get(counterpart, 0) if counterpart else 0
        # Sender's own delta includes the fee; the recipient's gain is the transfer
        sender, recipient, lamports = watched, counterpart, gained if gained > 0 else -own
    return base | {
        "kind": EventKind.TRANSFER,
        "from_address": sender,
        "to_address": recipient,
        "amount": _scale(lamports, source.native_decimals),
        "asset": source.native_asset,
    }


def map_subgraph(raw: RawEvent, source: SourceConfig, subscription: SubscriptionConfig) -> dict[str, Any]:
    row = raw.payload["row"]
    opts = subscription.options
    value = row.get(opts.get("value_field", "value"))
    amount = _scale(int(str(value)), int(opts.get("decimals", 18))) if value is not None else None
    return {
        "kind": EventKind.INDEX_ENTITY_CHANGE,
        "from_address": _entity_ref(row.get(opts.get("from_field", "from"))),
        "to_address": _entity_ref(row.get(opts.get("to_field", "to"))),
        "amount": amount,
        "asset": opts.get("asset") or raw.payload.get("entity"),
        "observed_at": _timestamp(row.get(opts.get("timestamp_field", "blockTimestamp")), raw.observed_at),
        "reference": row.get("transactionHash") or str(row["id"]),
    }


MAPPERS: dict[str, Callable[[RawEvent, SourceConfig, SubscriptionConfig], dict[str, Any]]] = {
    "evm": map_evm,
    "solana": map_solana,
    "subgraph": map_subgraph,
}


class Canonicalizer:
    """
    Maps one source's raw events into the canonical ComplianceEvent.

    Usage:
        canonicalizer = Canonicalizer(source_config)
        event = canonicalizer.canonicalize(raw)  # None if dropped
    """

    def __init__(self, source: SourceConfig):
        if source.kind not in MAPPERS:
            raise ValueError(f"No canonical mapping for source kind '{source.kind}'")
        self.source = source
        self._mapper = MAPPERS[source.kind]
        self._subscriptions = {s.id: s for s in source.subscriptions}
        self.skipped = 0

    def canonicalize(self, raw: RawEvent) -> Optional[ComplianceEvent]:
        subscription = self._subscriptions.get(raw.subscription_id)
        try:
            if subscription is None:
                raise CanonicalizationSkipped(f"unknown subscription {raw.subscription_id}")
            return self._build(raw, self._mapper(raw, self.source, subscription))
        except Exception as exc:
            self.skipped += 1
            logger.warning(
                "Canonicalizer dropped record | source=%s | subscription=%s | position=%d | sub_index=%d | reason=%s",
                raw.source_id,
                raw.subscription_id,
                raw.position,
                raw.sub_index,
                exc if isinstance(exc, CanonicalizationSkipped) else f"{type(exc).__name__}: {exc}",
            )
            return None

    def _build(self, raw: RawEvent, fields: dict[str, Any]) -> ComplianceEvent:
        amount = fields["amount"]
        return ComplianceEvent(
            event_id=generate_event_id(raw.source_id, raw.subscription_id, raw.position, raw.sub_index),
            source_id=raw.source_id,
            source_kind=raw.source_kind,
            subscription_id=raw.subscription_id,
            position=raw.position,
            sub_index=raw.sub_index,
            normalized_value=amount * self.source.reference_price if amount is not None else None,
            raw=raw.payload,
            **fields,
        )
