"""
Request/response transports for source endpoints.

- JsonRpcTransport: JSON-RPC 2.0 over HTTP(S) (httpx) or WS(S) (websockets),
  picked from the endpoint URL scheme.
- GraphQLTransport: GraphQL POST over HTTP(S) (httpx), used by index sources.

Every call is bounded by the endpoint's timeout. Timeouts, HTTP status
errors, socket errors and malformed responses all surface as
EndpointUnavailable so callers can fail over uniformly.
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Optional

import httpx
import websockets
from websockets.exceptions import WebSocketException

from chainwatch.framework.errors import EndpointUnavailable, JsonRpcError

logger = logging.getLogger(__name__)

_USER_AGENT = "chainwatch/1.0"


class JsonRpcTransport:
    """
    Minimal JSON-RPC client bound to one endpoint URL.

    HTTP endpoints reuse one pooled httpx.AsyncClient. WebSocket endpoints
    open a short-lived connection per call.
    """

    def __init__(self, url: str, timeout: float) -> None:
        self.url = url
        self.timeout = timeout
        self._ids = itertools.count(1)
        self._is_ws = url.startswith(("ws://", "wss://"))
        self._client: Optional[httpx.AsyncClient] = None

    async def call(self, method: str, params: Optional[list[Any]] = None) -> Any:
        """
        Invoke a JSON-RPC method and return its result.

        Raises:
            JsonRpcError: The endpoint returned an error object.
            EndpointUnavailable: Transport failure, timeout or malformed reply.
        """
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params if params is not None else [],
        }
        if self._is_ws:
            response = await self._call_ws(payload)
        else:
            response = await self._call_http(payload)
        return self._unwrap(response)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _call_http(self, payload: dict[str, Any]) -> Any:
        client = self._ensure_client()
        try:
            resp = await client.post(self.url, json=payload)
            resp.raise_for_status()
            return resp.json()
        except httpx.TimeoutException:
            raise EndpointUnavailable(self.url, f"timeout after {self.timeout}s") from None
        except httpx.HTTPError as exc:
            raise EndpointUnavailable(self.url, f"http error: {exc}") from exc
        except ValueError as exc:
            raise EndpointUnavailable(self.url, f"invalid json: {exc}") from exc

    async def _call_ws(self, payload: dict[str, Any]) -> Any:
        try:
            return await asyncio.wait_for(self._ws_round_trip(payload), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise EndpointUnavailable(self.url, f"timeout after {self.timeout}s") from None
        except (WebSocketException, OSError) as exc:
            raise EndpointUnavailable(self.url, f"websocket error: {exc}") from exc
        except ValueError as exc:
            raise EndpointUnavailable(self.url, f"invalid json: {exc}") from exc

    async def _ws_round_trip(self, payload: dict[str, Any]) -> Any:
        async with websockets.connect(self.url, open_timeout=self.timeout) as ws:
            await ws.send(json.dumps(payload))
            # Skip subscription notifications that may share the socket
            while True:
                message = json.loads(await ws.recv())
                if isinstance(message, dict) and message.get("id") == payload["id"]:
                    return message

    def _unwrap(self, response: Any) -> Any:
        if not isinstance(response, dict):
            raise EndpointUnavailable(self.url, "response is not a JSON-RPC object")
        error = response.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise JsonRpcError(self.url, code, message)
        if "result" not in response:
            raise EndpointUnavailable(self.url, "response has neither result nor error")
        return response["result"]

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout, headers={"User-Agent": _USER_AGENT}
            )
        return self._client


class GraphQLTransport:
    """GraphQL-over-HTTP client bound to one index endpoint."""

    def __init__(self, url: str, timeout: float) -> None:
        self.url = url
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def query(self, query: str, variables: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """
        Run a query and return its data object.

        Raises:
            EndpointUnavailable: Transport failure, timeout or GraphQL errors.
        """
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout, headers={"User-Agent": _USER_AGENT}
            )
        try:
            resp = await self._client.post(self.url, json={"query": query, "variables": variables or {}})
            resp.raise_for_status()
            body = resp.json()
        except httpx.TimeoutException:
            raise EndpointUnavailable(self.url, f"timeout after {self.timeout}s") from None
        except httpx.HTTPError as exc:
            raise EndpointUnavailable(self.url, f"http error: {exc}") from exc
        except ValueError as exc:
            raise EndpointUnavailable(self.url, f"invalid json: {exc}") from exc

        if not isinstance(body, dict):
            raise EndpointUnavailable(self.url, "response is not a GraphQL object")
        if body.get("errors"):
            messages = "; ".join(str(e.get("message", e)) for e in body["errors"] if isinstance(e, dict))
            raise EndpointUnavailable(self.url, f"graphql errors: {messages or body['errors']}")
        data = body.get("data")
        if not isinstance(data, dict):
            raise EndpointUnavailable(self.url, "response has no data")
        return data

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class TransportPool:
    """Lazily created transports keyed by endpoint URL, closed together."""

    def __init__(self, factory: type) -> None:
        self._factory = factory
        self._transports: dict[str, Any] = {}

    def get(self, url: str, timeout: float) -> Any:
        transport = self._transports.get(url)
        if transport is None:
            transport = self._factory(url, timeout)
            self._transports[url] = transport
        return transport

    async def aclose(self) -> None:
        for url, transport in list(self._transports.items()):
            try:
                await transport.aclose()
            except Exception as exc:
                logger.warning("Transport close failed (non-fatal) | url=%s | error=%s", url, exc)
        self._transports.clear()
