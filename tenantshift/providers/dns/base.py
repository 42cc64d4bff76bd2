from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class DnsRecord:
    target: str
    ttl: int


class DnsProvider(Protocol):
    provider: str

    def vantage_points(self) -> list[str]:
        ...

    async def get_record(self, domain: str) -> DnsRecord | None:
        ...

    async def set_record(self, domain: str, target: str, ttl: int) -> None:
        ...

    async def resolve(self, domain: str, *, vantage: str) -> str | None:
        ...
