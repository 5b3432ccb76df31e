"""
Base adapter abstraction for source integration.

Every source kind (EVM chain, Solana, subgraph index, ...) inherits from
SourceAdapter and implements the small capability the generic SourceListener
needs:
1. Reporting the current head position of an endpoint
2. Fetching raw, source-shaped events for a bounded position window
3. A lightweight liveness probe for the health registry
4. Graceful release of network clients

Adapters are stateless with respect to progress: cursors belong to the
listener, endpoint choice belongs to the health registry.
"""

from abc import ABC, abstractmethod
from typing import Any

from chainwatch.framework.config_loader import SourceConfig, SubscriptionConfig
from chainwatch.framework.models import EndpointHealth, RawEvent


class SourceAdapter(ABC):
    """
    Abstract base class for source adapters.

    Subclasses implement specific sources (EvmAdapter, SolanaAdapter, etc.).
    """

    # Subclasses override these
    kind: str  # e.g., "evm"
    subscription_types: frozenset[str]  # e.g., {"address", "contract"}

    def __init__(self, source: SourceConfig):
        """
        Initialize the adapter.

        Args:
            source: Parsed source configuration (endpoints, subscriptions, units)
        """
        self.source = source

    def validate(self) -> None:
        """
        Setup-only. Validates subscriptions against what this adapter can watch.

        No network I/O happens here.

        Raises:
            ValueError: If a subscription type is not supported by this source kind
        """
        for sub in self.source.subscriptions:
            if sub.type not in self.subscription_types:
                raise ValueError(
                    f"{type(self).__name__} does not support subscription type "
                    f"'{sub.type}' (source={self.source.id}, subscription={sub.id})"
                )

    @abstractmethod
    async def head_position(self, endpoint: EndpointHealth) -> int:
        """
        Return the latest position the endpoint can serve.

        Raises:
            EndpointUnavailable: If the endpoint cannot be reached in time
        """

    @abstractmethod
    async def fetch_window(
        self, endpoint: EndpointHealth, subscription: SubscriptionConfig, start: int, end: int
    ) -> list[RawEvent]:
        """
        Fetch every raw event for subscription within [start, end] inclusive.

        Output order is (position, sub_index) ascending. A window is all or
        nothing: any endpoint failure raises and the caller retries the whole
        window.

        Raises:
            EndpointUnavailable: If the endpoint fails mid-window
        """

    async def probe(self, endpoint: EndpointHealth) -> None:
        """Liveness probe used by the health registry. Defaults to a head query."""
        await self.head_position(endpoint)

    async def aclose(self) -> None:
        """Release pooled network clients. No-op by default."""

    def raw_event(
        self, subscription: SubscriptionConfig, position: int, sub_index: int, payload: dict[str, Any]
    ) -> RawEvent:
        return RawEvent(
            source_id=self.source.id,
            source_kind=self.kind,
            subscription_id=subscription.id,
            position=int(position),
            sub_index=int(sub_index),
            payload=payload,
        )
