"""
Sanctions / PEP lookup implementations.

- StaticListLookup: named lists loaded from configuration (inline or a YAML file)
- HttpLookupService: remote screening API over httpx with a bearer token
- CompositeLookup: asks every configured service; a positive answer from any
  service wins, otherwise an unavailable service makes the result unknown

An unreachable lookup never reads as "not listed": HttpLookupService raises
LookupUnavailable and the scoring rules flag the event instead.
"""

import logging
from typing import Any, Iterable, Optional

import httpx
import yaml

from chainwatch.framework.config_loader import LookupConfig
from chainwatch.framework.errors import LookupUnavailable
from chainwatch.framework.interfaces import LookupResult, LookupService

logger = logging.getLogger(__name__)


def _normalize(identifier: str) -> str:
    # EVM addresses are case-insensitive; base58 identifiers are not
    return identifier.lower() if identifier.startswith("0x") else identifier


class StaticListLookup(LookupService):
    """In-memory named lists, e.g. {"OFAC_SDN": [...], "PEP": [...]}."""

    def __init__(self, lists: dict[str, Iterable[str]]) -> None:
        self._index: dict[str, list[str]] = {}
        for name, entries in lists.items():
            for entry in entries:
                self._index.setdefault(_normalize(str(entry)), []).append(name)

    @classmethod
    def from_config(cls, config: LookupConfig) -> "StaticListLookup":
        lists: dict[str, list[str]] = {name: list(entries) for name, entries in config.lists.items()}
        if config.lists_file:
            with open(config.lists_file) as f:
                loaded: dict[str, Any] = yaml.safe_load(f) or {}
            for name, entries in loaded.items():
                lists.setdefault(str(name), []).extend(str(e) for e in entries or [])
        logger.info(
            "StaticListLookup loaded | lists=%d | entries=%d",
            len(lists),
            sum(len(v) for v in lists.values()),
        )
        return cls(lists)

    async def check_participant(self, identifier: str) -> LookupResult:
        names = self._index.get(_normalize(identifier), [])
        return LookupResult(listed=bool(names), lists=tuple(sorted(set(names))))


class HttpLookupService(LookupService):
    """
    Remote screening API.

    GET {base_url}/sanctions/addresses/{identifier}
        200 {"listed": bool, "lists": [...]}
        404 not listed
    Anything else (timeouts, 5xx, malformed bodies) raises LookupUnavailable.
    """

    def __init__(self, base_url: str, timeout: float = 5.0, api_key: Optional[str] = None) -> None:
        headers = {"User-Agent": "chainwatch/1.0", "Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers)

    async def check_participant(self, identifier: str) -> LookupResult:
        url = f"{self.base_url}/sanctions/addresses/{identifier}"
        try:
            resp = await self._client.get(url)
            if resp.status_code == 404:
                return LookupResult(listed=False)
            resp.raise_for_status()
            body = resp.json()
            return LookupResult(listed=bool(body["listed"]), lists=tuple(body.get("lists") or ()))
        except httpx.TimeoutException:
            raise LookupUnavailable(identifier, "timeout") from None
        except httpx.HTTPError as exc:
            raise LookupUnavailable(identifier, f"http error: {exc}") from exc
        except (ValueError, KeyError, TypeError) as exc:
            raise LookupUnavailable(identifier, f"malformed response: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


class CompositeLookup(LookupService):
    def __init__(self, services: list[LookupService]) -> None:
        self.services = services

    async def check_participant(self, identifier: str) -> LookupResult:
        lists: list[str] = []
        unavailable: Optional[LookupUnavailable] = None
        for service in self.services:
            try:
                result = await service.check_participant(identifier)
            except LookupUnavailable as exc:
                unavailable = exc
                continue
            lists.extend(result.lists)
            if result.listed and not result.lists:
                lists.append(type(service).__name__)
        if lists:
            return LookupResult(listed=True, lists=tuple(dict.fromkeys(lists)))
        if unavailable is not None:
            raise unavailable
        return LookupResult(listed=False)

    async def aclose(self) -> None:
        for service in self.services:
            await service.aclose()


def build_lookup(config: LookupConfig) -> LookupService:
    services: list[LookupService] = [StaticListLookup.from_config(config)]
    if config.http_base_url:
        services.append(HttpLookupService(config.http_base_url, config.http_timeout, config.api_key))
    return services[0] if len(services) == 1 else CompositeLookup(services)
