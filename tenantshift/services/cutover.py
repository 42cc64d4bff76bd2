from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging

from tenantshift.core.config import get_settings
from tenantshift.core.errors import CutoverError, CutoverTimeoutError, ProviderError
from tenantshift.providers.dns.base import DnsProvider
from tenantshift.providers.dns.factory import get_dns_provider
from tenantshift.services.resilience import Sleeper
from tenantshift.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def routing_domain_for(tenant_id: str) -> str:
    return f"{tenant_id}.{get_settings().routing_domain_suffix}"


@dataclass(frozen=True)
class SwitchResult:
    domain: str
    previous_target: str | None
    target: str
    waited_s: float


@dataclass
class PropagationResult:
    domain: str
    target: str
    attempts: int
    observed: dict[str, str | None] = field(default_factory=dict)


class CutoverManager:
    """Two-phase TTL cutover of a tenant's routing record.

    The TTL is lowered on the old target first and allowed to expire, then the
    record is switched. Propagation is confirmed from every vantage point
    before the TTL goes back to normal.
    """

    def __init__(self, provider: DnsProvider | None = None, *, sleep: Sleeper | None = None) -> None:
        self._provider = provider or get_dns_provider()
        self._sleep = sleep or asyncio.sleep
        self._settings = get_settings()

    @property
    def provider(self) -> DnsProvider:
        return self._provider

    async def publish(self, domain: str, target: str) -> None:
        # Initial routing for a freshly placed tenant; no cutover dance needed.
        try:
            await self._provider.set_record(domain, target, self._settings.cutover_normal_ttl_s)
        except ProviderError as exc:
            raise CutoverError(f"Routing record for {domain} could not be published") from exc

    async def switch(self, domain: str, target: str) -> SwitchResult:
        low_ttl = self._settings.cutover_low_ttl_s
        try:
            current = await self._provider.get_record(domain)
            if current is not None and current.target == target:
                # Re-entry after a crash: the switch already happened.
                return SwitchResult(domain=domain, previous_target=None, target=target, waited_s=0.0)
            waited = 0.0
            if current is not None:
                await self._provider.set_record(domain, current.target, low_ttl)
                waited = self._ttl_wait(current.ttl)
                logger.info("cutover_ttl_lowered domain=%s ttl=%s wait_s=%s", domain, low_ttl, waited)
                await self._sleep(waited)
            await self._provider.set_record(domain, target, low_ttl)
        except ProviderError as exc:
            raise CutoverError(f"Routing record for {domain} could not be switched") from exc
        logger.info("cutover_record_switched domain=%s target=%s", domain, target)
        return SwitchResult(
            domain=domain,
            previous_target=current.target if current is not None else None,
            target=target,
            waited_s=waited,
        )

    def _ttl_wait(self, previous_ttl: int) -> float:
        if self._settings.cutover_ttl_wait_s is not None:
            return max(0.0, float(self._settings.cutover_ttl_wait_s))
        # Caches may hold the old answer for its full original TTL.
        return float(max(previous_ttl, self._settings.cutover_low_ttl_s))

    async def confirm_propagation(self, domain: str, target: str) -> PropagationResult:
        attempts = max(1, self._settings.cutover_poll_attempts)
        result = PropagationResult(domain=domain, target=target, attempts=0)
        vantages = self._provider.vantage_points()
        for attempt in range(1, attempts + 1):
            result.attempts = attempt
            for vantage in vantages:
                try:
                    result.observed[vantage] = await self._provider.resolve(domain, vantage=vantage)
                except ProviderError as exc:
                    # One flaky resolver only costs this attempt.
                    logger.warning(
                        "cutover_resolve_failed domain=%s vantage=%s error=%s", domain, vantage, type(exc).__name__
                    )
                    result.observed[vantage] = None
            if all(result.observed.get(vantage) == target for vantage in vantages):
                logger.info("cutover_propagated domain=%s target=%s attempts=%s", domain, target, attempt)
                return result
            if attempt < attempts:
                await self._sleep(self._settings.cutover_poll_interval_s)
        increment_counter("cutover_timeouts_total")
        raise CutoverTimeoutError(
            f"Routing for {domain} did not resolve to the new target after {attempts} attempts"
        )

    async def restore_ttl(self, domain: str, target: str) -> None:
        try:
            await self._provider.set_record(domain, target, self._settings.cutover_normal_ttl_s)
        except ProviderError as exc:
            raise CutoverError(f"Routing TTL for {domain} could not be restored") from exc

    async def restore_routing(self, domain: str, source_target: str) -> bool:
        # Rollback path; True when the record actually had to be moved back.
        record = await self._provider.get_record(domain)
        if record is not None and record.target == source_target and record.ttl == self._settings.cutover_normal_ttl_s:
            return False
        await self._provider.set_record(domain, source_target, self._settings.cutover_normal_ttl_s)
        logger.warning("cutover_routing_restored domain=%s target=%s", domain, source_target)
        return True
