from __future__ import annotations

import json

import httpx
import pytest

from tenantshift.core.config import get_settings
from tenantshift.core.errors import ProviderConfigError, ProviderError, ProviderUnavailableError
from tenantshift.providers.dns.http_api import HttpApiDnsProvider


@pytest.fixture
def dns_env(monkeypatch) -> None:
    monkeypatch.setenv("DNS_API_BASE_URL", "https://dns.example.test/api/")
    monkeypatch.setenv("DNS_API_TOKEN", "dns-token")
    monkeypatch.setenv("DNS_DOH_URLS", "https://doh-a.example.test/resolve, https://doh-b.example.test/resolve")
    get_settings.cache_clear()


def test_base_url_is_required(monkeypatch) -> None:
    monkeypatch.delenv("DNS_API_BASE_URL", raising=False)
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError):
        HttpApiDnsProvider()


@pytest.mark.asyncio
async def test_records_round_trip_through_rest_api(dns_env) -> None:
    store: dict[str, dict] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer dns-token"
        domain = request.url.path.rsplit("/", 1)[-1]
        if request.method == "PUT":
            store[domain] = json.loads(request.content)
            return httpx.Response(204)
        if domain not in store:
            return httpx.Response(404)
        return httpx.Response(200, json=store[domain])

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        provider = HttpApiDnsProvider(client=client)
        assert await provider.get_record("acme.tenants.example.net") is None
        await provider.set_record("acme.tenants.example.net", "shared-1.shared.local", 300)
        record = await provider.get_record("acme.tenants.example.net")

    assert record.target == "shared-1.shared.local"
    assert record.ttl == 300
    assert provider.vantage_points() == [
        "https://doh-a.example.test/resolve",
        "https://doh-b.example.test/resolve",
    ]


@pytest.mark.asyncio
async def test_resolve_reads_last_answer_of_cname_chain(dns_env) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["name"] == "acme.tenants.example.net"
        return httpx.Response(
            200,
            json={
                "Answer": [
                    {"name": "acme.tenants.example.net.", "data": "edge.example.net."},
                    {"name": "edge.example.net.", "data": "dep-1.dedicated.local."},
                ]
            },
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        provider = HttpApiDnsProvider(client=client)
        target = await provider.resolve("acme.tenants.example.net", vantage="https://doh-a.example.test/resolve")
    assert target == "dep-1.dedicated.local"


@pytest.mark.asyncio
async def test_server_errors_are_unavailable_and_client_errors_are_fatal(dns_env) -> None:
    statuses = iter([503, 409])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        provider = HttpApiDnsProvider(client=client)
        with pytest.raises(ProviderUnavailableError):
            await provider.set_record("acme.tenants.example.net", "x.local", 60)
        with pytest.raises(ProviderError) as excinfo:
            await provider.set_record("acme.tenants.example.net", "x.local", 60)
    assert not isinstance(excinfo.value, ProviderUnavailableError)
