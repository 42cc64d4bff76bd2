from __future__ import annotations

import logging
from typing import Any, Final

import httpx

from tenantshift.core.config import get_settings
from tenantshift.core.errors import ProviderConfigError, ProviderError, ProviderUnavailableError
from tenantshift.providers.dns.base import DnsRecord


logger = logging.getLogger(__name__)


class HttpApiDnsProvider:
    """Routing records through a REST record API; propagation observed via DNS-over-HTTPS.

    Each configured DoH JSON endpoint is treated as one vantage point.
    """

    provider: Final[str] = "http_api"

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        if not self._settings.dns_api_base_url:
            raise ProviderConfigError("DNS_API_BASE_URL is required for the http_api DNS provider")
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._settings.dns_api_token:
            headers["Authorization"] = f"Bearer {self._settings.dns_api_token}"
        return headers

    def _record_url(self, domain: str) -> str:
        return f"{self._settings.dns_api_base_url.rstrip('/')}/records/{domain}"

    def vantage_points(self) -> list[str]:
        urls = [item.strip() for item in self._settings.dns_doh_urls.split(",") if item.strip()]
        if not urls:
            raise ProviderConfigError("DNS_DOH_URLS must list at least one resolver")
        return urls

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._get_client().request(method, url, **kwargs)
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            raise ProviderUnavailableError(f"Routing provider unreachable: {type(exc).__name__}") from exc
        if response.status_code >= 500:
            raise ProviderUnavailableError(f"Routing provider error: {response.status_code}")
        return response

    async def get_record(self, domain: str) -> DnsRecord | None:
        response = await self._request("GET", self._record_url(domain), headers=self._headers())
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise ProviderError(f"Routing record lookup failed: {response.status_code}")
        body = response.json()
        return DnsRecord(target=str(body["target"]), ttl=int(body["ttl"]))

    async def set_record(self, domain: str, target: str, ttl: int) -> None:
        response = await self._request(
            "PUT",
            self._record_url(domain),
            json={"target": target, "ttl": ttl},
            headers=self._headers(),
        )
        if response.status_code >= 400:
            raise ProviderError(f"Routing record update failed: {response.status_code}")
        logger.info("dns_record_updated domain=%s target=%s ttl=%s", domain, target, ttl)

    async def resolve(self, domain: str, *, vantage: str) -> str | None:
        response = await self._request(
            "GET",
            vantage,
            params={"name": domain, "type": "CNAME"},
            headers={"Accept": "application/dns-json"},
        )
        if response.status_code >= 400:
            raise ProviderError(f"Resolver {vantage} failed: {response.status_code}")
        answers = response.json().get("Answer") or []
        if not answers:
            return None
        # The last answer in a CNAME chain is the record we control.
        return str(answers[-1].get("data", "")).rstrip(".") or None
