from __future__ import annotations

from dataclasses import dataclass, field
from typing import Final

from tenantshift.core.config import get_settings
from tenantshift.core.errors import ProviderError
from tenantshift.providers.dns.base import DnsRecord


@dataclass
class _VantageView:
    # What one resolver currently answers and how many more polls until it refreshes.
    target: str | None
    stale_polls: int = 0


@dataclass
class LocalDnsState:
    records: dict[str, DnsRecord] = field(default_factory=dict)
    views: dict[tuple[str, str], _VantageView] = field(default_factory=dict)
    # Polls each vantage keeps answering the previous target after a change.
    propagation_polls: int = 0
    frozen_domains: set[str] = field(default_factory=set)
    failing_domains: set[str] = field(default_factory=set)
    set_calls: list[tuple[str, str, int]] = field(default_factory=list)

    def never_propagate(self, domain: str) -> None:
        self.frozen_domains.add(domain)

    def fail_updates(self, domain: str) -> None:
        self.failing_domains.add(domain)


_state: LocalDnsState | None = None


def get_local_dns_state() -> LocalDnsState:
    global _state
    if _state is None:
        _state = LocalDnsState()
    return _state


def reset_local_dns_state() -> None:
    global _state
    _state = None


class LocalDnsProvider:
    provider: Final[str] = "local"

    def __init__(self, state: LocalDnsState | None = None) -> None:
        self._state = state or get_local_dns_state()

    def vantage_points(self) -> list[str]:
        raw = get_settings().cutover_vantage_points
        points = [item.strip() for item in raw.split(",") if item.strip()]
        return points or ["default"]

    async def get_record(self, domain: str) -> DnsRecord | None:
        return self._state.records.get(domain)

    async def set_record(self, domain: str, target: str, ttl: int) -> None:
        if domain in self._state.failing_domains:
            raise ProviderError(f"Routing provider rejected update for {domain}")
        previous = self._state.records.get(domain)
        self._state.records[domain] = DnsRecord(target=target, ttl=ttl)
        self._state.set_calls.append((domain, target, ttl))
        if previous is None or previous.target == target:
            return
        for vantage in self.vantage_points():
            view = self._state.views.setdefault((domain, vantage), _VantageView(target=previous.target))
            view.stale_polls = self._state.propagation_polls

    async def resolve(self, domain: str, *, vantage: str) -> str | None:
        record = self._state.records.get(domain)
        if record is None:
            return None
        view = self._state.views.get((domain, vantage))
        if view is None:
            return record.target
        if domain in self._state.frozen_domains:
            return view.target
        if view.stale_polls > 0:
            view.stale_polls -= 1
            return view.target
        view.target = record.target
        return record.target
