from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from credstore.logging import get_logger

LOCATION_FIELDS = ("city", "country", "country_code", "state", "state_code")


@dataclass
class GeoLookupError(Exception):
    message: str
    status_code: int

    def __str__(self) -> str:
        return self.message


class GeoResolver(Protocol):
    async def lookup(self, ip: str) -> Optional[Dict[str, Any]]:
        ...


class NullGeoResolver:
    """Resolver used when no lookup service is configured."""

    async def lookup(self, ip: str) -> Optional[Dict[str, Any]]:
        return None


class HttpGeoResolver:
    """Resolve an IP address to a coarse location through a JSON HTTP endpoint.

    ``url_template`` contains an ``{ip}`` placeholder. The response body must
    be a JSON object; only the known location keys are kept.
    """

    def __init__(
        self,
        url_template: str,
        *,
        timeout: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url_template = url_template
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.logger = get_logger(__name__)

    async def lookup(self, ip: str) -> Optional[Dict[str, Any]]:
        if not ip:
            return None
        url = self.url_template.format(ip=ip)
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise GeoLookupError("geo lookup request failed", 502) from exc
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise GeoLookupError("geo lookup returned an error", response.status_code)
        try:
            payload = response.json()
        except ValueError as exc:
            raise GeoLookupError("geo lookup returned invalid JSON", 502) from exc
        if not isinstance(payload, dict):
            raise GeoLookupError("geo lookup returned a non-object payload", 502)
        location = {key: payload[key] for key in LOCATION_FIELDS if payload.get(key)}
        return location or None

    async def close(self) -> None:
        await self._client.aclose()
