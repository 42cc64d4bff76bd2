from __future__ import annotations

from tenantshift.core.config import get_settings
from tenantshift.core.errors import ProviderConfigError
from tenantshift.providers.dns.base import DnsProvider
from tenantshift.providers.dns.http_api import HttpApiDnsProvider
from tenantshift.providers.dns.local import LocalDnsProvider


_DNS_PROVIDERS: dict[str, type[DnsProvider]] = {
    "local": LocalDnsProvider,
    "http_api": HttpApiDnsProvider,
}


def get_dns_provider() -> DnsProvider:
    settings = get_settings()
    provider_cls = _DNS_PROVIDERS.get((settings.dns_provider or "local").lower())
    if provider_cls is None:
        raise ProviderConfigError(f"Unsupported DNS provider: {settings.dns_provider}")
    return provider_cls()
