from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import json
import logging
from typing import Any, Final, Protocol

import httpx

from tenantshift.core.config import get_settings
from tenantshift.core.errors import ProviderConfigError
from tenantshift.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationResult:
    sent: bool
    status_code: int | None
    message: str


class Notifier(Protocol):
    provider: str

    async def send(self, *, tenant_id: str, event_kind: str, payload: dict[str, Any]) -> NotificationResult:
        ...


class LogNotifier:
    provider: Final[str] = "log"

    async def send(self, *, tenant_id: str, event_kind: str, payload: dict[str, Any]) -> NotificationResult:
        level = logging.CRITICAL if event_kind == "migration.failed" else logging.INFO
        logger.log(level, "tenant_notification tenant_id=%s event=%s payload=%s", tenant_id, event_kind, payload)
        return NotificationResult(sent=True, status_code=None, message="logged")


def build_signature(secret: str, payload: bytes) -> str:
    # HMAC SHA256 over the exact request body.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class WebhookNotifier:
    provider: Final[str] = "webhook"

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        settings = get_settings()
        if not settings.notify_webhook_url or not settings.notify_webhook_secret:
            raise ProviderConfigError("NOTIFY_WEBHOOK_URL and NOTIFY_WEBHOOK_SECRET are required")
        self._url = settings.notify_webhook_url
        self._secret = settings.notify_webhook_secret
        self._timeout = settings.notify_webhook_timeout_ms / 1000.0
        self._client = client

    async def send(self, *, tenant_id: str, event_kind: str, payload: dict[str, Any]) -> NotificationResult:
        body = json.dumps(
            {"tenant_id": tenant_id, "event": event_kind, "payload": payload},
            separators=(",", ":"),
            ensure_ascii=False,
            default=str,
        ).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-TenantShift-Signature": build_signature(self._secret, body),
            "X-TenantShift-Event": event_kind,
        }
        if self._client is not None:
            response = await self._client.post(self._url, content=body, headers=headers, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._url, content=body, headers=headers)
        sent = response.status_code < 400
        return NotificationResult(
            sent=sent,
            status_code=response.status_code,
            message="delivered" if sent else f"receiver returned {response.status_code}",
        )


_NOTIFIERS: dict[str, type[Notifier]] = {
    "log": LogNotifier,
    "webhook": WebhookNotifier,
}

_override: Notifier | None = None


def set_notifier(notifier: Notifier | None) -> None:
    # Tests swap in a recording notifier; None restores settings-based selection.
    global _override
    _override = notifier


def get_notifier() -> Notifier:
    if _override is not None:
        return _override
    settings = get_settings()
    notifier_cls = _NOTIFIERS.get((settings.notify_provider or "log").lower())
    if notifier_cls is None:
        raise ProviderConfigError(f"Unsupported notification provider: {settings.notify_provider}")
    return notifier_cls()


async def notify(tenant_id: str, event_kind: str, payload: dict[str, Any]) -> NotificationResult:
    # Fire-and-forget: delivery problems are logged and never reach the caller.
    try:
        result = await get_notifier().send(tenant_id=tenant_id, event_kind=event_kind, payload=payload)
    except Exception as exc:  # noqa: BLE001 - notifications must never block a migration
        increment_counter("notifications_failed_total")
        logger.warning("notification_failed tenant_id=%s event=%s error=%s", tenant_id, event_kind, type(exc).__name__)
        return NotificationResult(sent=False, status_code=None, message=type(exc).__name__)
    if not result.sent:
        increment_counter("notifications_failed_total")
        logger.warning(
            "notification_not_delivered tenant_id=%s event=%s detail=%s", tenant_id, event_kind, result.message
        )
    return result
