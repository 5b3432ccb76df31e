"""
Subgraph (decentralized index) source adapter over GraphQL.

Positions are indexed block numbers. The head is the block the index has
processed (`_meta.block.number`), which lags the chain; windows never run past
it so rows are only read once the index has settled them.
Rows without a usable block field or id are logged and dropped.

Subscription options:
    fields:       entity fields to select (default: transfer-shaped entity)
    block_field:  numeric block field used for the window (default blockNumber)
    block_type:   GraphQL scalar of the block field (default BigInt)
    page_size:    rows per page (default 500, graph-node caps at 1000)
    where:        extra equality filters merged into the where clause
"""

import json
import logging
from typing import Any

from chainwatch.connectors.rpc_transport import GraphQLTransport, TransportPool
from chainwatch.framework.base_adapter import SourceAdapter
from chainwatch.framework.config_loader import SourceConfig, SubscriptionConfig
from chainwatch.framework.errors import EndpointUnavailable
from chainwatch.framework.models import EndpointHealth, RawEvent

logger = logging.getLogger(__name__)

DEFAULT_FIELDS = ("id", "from", "to", "value", "blockNumber", "blockTimestamp", "transactionHash")

HEAD_QUERY = "{ _meta { block { number } } }"


def build_window_query(subscription: SubscriptionConfig) -> str:
    """Render the paged window query for the subscription's entity collection."""
    opts = subscription.options
    fields = list(opts.get("fields") or DEFAULT_FIELDS)
    block_field = opts.get("block_field", "blockNumber")
    if "id" not in fields:
        fields.insert(0, "id")
    if block_field not in fields:
        fields.append(block_field)
    block_type = opts.get("block_type", "BigInt")

    filters = [f"{block_field}_gte: $start", f"{block_field}_lte: $end", "id_gt: $lastId"]
    filters.extend(f"{key}: {json.dumps(value)}" for key, value in (opts.get("where") or {}).items())

    return (
        f"query Window($start: {block_type}!, $end: {block_type}!, $lastId: ID!, $first: Int!) {{\n"
        f"  rows: {subscription.target}(first: $first, orderBy: id, orderDirection: asc, "
        f"where: {{{', '.join(filters)}}}) {{\n"
        f"    {' '.join(fields)}\n"
        f"  }}\n"
        f"}}"
    )


class SubgraphAdapter(SourceAdapter):
    """Pages an entity collection of a subgraph by block-number window."""

    kind = "subgraph"
    subscription_types = frozenset({"entity"})

    def __init__(self, source: SourceConfig) -> None:
        super().__init__(source)
        self._pool = TransportPool(GraphQLTransport)

    async def head_position(self, endpoint: EndpointHealth) -> int:
        data = await self._gql(endpoint).query(HEAD_QUERY)
        try:
            return int(data["_meta"]["block"]["number"])
        except (KeyError, TypeError, ValueError):
            raise EndpointUnavailable(endpoint.url, f"invalid _meta response {data!r}") from None

    async def fetch_window(
        self, endpoint: EndpointHealth, subscription: SubscriptionConfig, start: int, end: int
    ) -> list[RawEvent]:
        query = build_window_query(subscription)
        block_field = subscription.options.get("block_field", "blockNumber")
        page_size = int(subscription.options.get("page_size", 500))
        block_type = subscription.options.get("block_type", "BigInt")
        # BigInt variables travel as strings
        as_var = str if block_type == "BigInt" else int

        rows: list[Any] = []
        last_id = ""
        while True:
            data = await self._gql(endpoint).query(
                query,
                {"start": as_var(start), "end": as_var(end), "lastId": last_id, "first": page_size},
            )
            page = data.get("rows")
            if not isinstance(page, list):
                raise EndpointUnavailable(endpoint.url, f"entity '{subscription.target}' not returned")
            rows.extend(page)
            if len(page) < page_size:
                break
            ids = [r["id"] for r in page if isinstance(r, dict) and r.get("id") is not None]
            if not ids:
                raise EndpointUnavailable(endpoint.url, f"page of '{subscription.target}' has no row ids to page from")
            last_id = str(ids[-1])

        # Rows come back ordered by id; identity needs (block, stable ordinal)
        ordered: list[tuple[int, str, dict[str, Any]]] = []
        for row in rows:
            try:
                ordered.append((int(row[block_field]), str(row["id"]), row))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning(
                    "SubgraphAdapter dropped row without usable %s/id | source=%s | subscription=%s | window=%d-%d | error=%r",
                    block_field,
                    self.source.id,
                    subscription.id,
                    start,
                    end,
                    exc,
                )
        ordered.sort(key=lambda item: (item[0], item[1]))

        events: list[RawEvent] = []
        current_block, ordinal = None, 0
        for block, _, row in ordered:
            if block != current_block:
                current_block, ordinal = block, 0
            events.append(
                self.raw_event(
                    subscription,
                    block,
                    ordinal,
                    {"type": "entity", "entity": subscription.target, "row": row},
                )
            )
            ordinal += 1
        return events

    async def aclose(self) -> None:
        await self._pool.aclose()

    def _gql(self, endpoint: EndpointHealth) -> GraphQLTransport:
        return self._pool.get(endpoint.url, endpoint.timeout)
